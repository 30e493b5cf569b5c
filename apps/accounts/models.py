from django.contrib.auth.models import AbstractUser
from django.db import models


class UserRole(models.TextChoices):
    CUSTOMER = "CUSTOMER", "Customer"
    DESIGNER = "DESIGNER", "Designer"
    BUSINESS_OWNER = "BUSINESS_OWNER", "Business Owner"
    SHOP_OWNER = "SHOP_OWNER", "Shop Owner"
    ADMIN = "ADMIN", "Admin"


class User(AbstractUser):
    role = models.CharField(max_length=20, choices=UserRole.choices, default=UserRole.CUSTOMER)


class PayoutAccount(models.Model):
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="payout_account")
    bank_code = models.CharField(max_length=32)
    account_number = models.CharField(max_length=64)
    account_holder_name = models.CharField(max_length=255)
    email = models.EmailField(blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def is_complete(self):
        return bool(self.bank_code and self.account_number and self.account_holder_name)

    def __str__(self):
        return f"{self.account_holder_name} ({self.bank_code})"
