import uuid

from django.db import models


class Product(models.Model):
    """Catalog item a customization request refers to. Owned by the catalog service."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sku = models.CharField(max_length=64, unique=True, db_index=True)
    name = models.CharField(max_length=255, db_index=True)
    default_price = models.DecimalField(max_digits=12, decimal_places=2)
    is_customizable = models.BooleanField(default=True)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def save(self, *args, **kwargs):
        self.sku = (self.sku or "").strip().upper()
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.sku} {self.name}"
