from django.contrib import admin

from apps.customizations.models import CustomizationRequest, StatusTransition


class StatusTransitionInline(admin.TabularInline):
    model = StatusTransition
    extra = 0
    readonly_fields = ("from_status", "to_status", "actor", "note", "created_at")
    can_delete = False


@admin.register(CustomizationRequest)
class CustomizationRequestAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "customer",
        "designer",
        "printing_shop",
        "product",
        "status",
        "payment_status",
        "design_fee",
        "designer_paid_at",
        "created_at",
    )
    list_filter = ("status", "payment_status")
    search_fields = ("id", "customer__username", "designer__username", "designer_payout_reference", "payment_reference")
    autocomplete_fields = ("customer", "designer", "printing_shop", "product")
    readonly_fields = (
        "designer_payout_reference",
        "designer_payout_id",
        "designer_paid_at",
        "shop_payout_reference",
        "shop_payout_id",
        "shop_paid_at",
        "created_at",
        "updated_at",
    )
    inlines = [StatusTransitionInline]


@admin.register(StatusTransition)
class StatusTransitionAdmin(admin.ModelAdmin):
    list_display = ("request", "from_status", "to_status", "actor", "created_at")
    list_filter = ("to_status",)
    search_fields = ("request__id", "note")
