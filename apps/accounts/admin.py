from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as DjangoUserAdmin

from .models import PayoutAccount, User


@admin.register(User)
class UserAdmin(DjangoUserAdmin):
    fieldsets = DjangoUserAdmin.fieldsets + (("Design Hub", {"fields": ("role",)}),)
    list_display = DjangoUserAdmin.list_display + ("role",)


@admin.register(PayoutAccount)
class PayoutAccountAdmin(admin.ModelAdmin):
    list_display = ("user", "bank_code", "account_holder_name", "updated_at")
    search_fields = ("user__username", "account_holder_name")
