from django.contrib import admin

from apps.catalog.models import Product


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("sku", "name", "default_price", "is_customizable", "is_active", "updated_at")
    list_filter = ("is_active", "is_customizable")
    search_fields = ("sku", "name")
