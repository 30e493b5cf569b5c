from decimal import Decimal

from django.contrib.auth import get_user_model
from rest_framework import serializers

from apps.customizations.models import CustomizationRequest, StatusTransition
from apps.escrow.references import PAYOUT_ROLES


class StatusTransitionSerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True, default=None)

    class Meta:
        model = StatusTransition
        fields = ["id", "from_status", "to_status", "actor", "actor_username", "note", "created_at"]
        read_only_fields = fields


class CustomizationRequestSerializer(serializers.ModelSerializer):
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    status_label = serializers.CharField(source="get_status_display", read_only=True)
    pricing_agreement = serializers.SerializerMethodField()
    payment_details = serializers.SerializerMethodField()
    history = StatusTransitionSerializer(many=True, read_only=True)

    class Meta:
        model = CustomizationRequest
        fields = [
            "id",
            "customer",
            "designer",
            "printing_shop",
            "product",
            "product_sku",
            "product_name",
            "instructions",
            "status",
            "status_label",
            "pricing_agreement",
            "payment_details",
            "designer_final_file",
            "designer_final_file_url",
            "designer_preview_image",
            "designer_notes",
            "rejection_reason",
            "revision_count",
            "final_design_url",
            "approved_at",
            "created_at",
            "updated_at",
            "history",
        ]
        read_only_fields = fields

    def get_pricing_agreement(self, obj):
        if obj.design_fee is None:
            return None
        return {
            "design_fee": str(obj.design_fee),
            "production_fee": str(obj.production_fee),
            "agreed_at": obj.pricing_agreed_at,
        }

    def get_payment_details(self, obj):
        return {
            "payment_status": obj.payment_status,
            "paid_amount": str(obj.paid_amount),
            "designer_payout_id": obj.designer_payout_id or None,
            "designer_paid_at": obj.designer_paid_at,
            "shop_payout_id": obj.shop_payout_id or None,
            "shop_paid_at": obj.shop_paid_at,
        }


class CustomizationRequestListSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = CustomizationRequest
        fields = ["id", "customer", "designer", "printing_shop", "product", "product_name", "status", "created_at", "updated_at"]
        read_only_fields = fields


class CustomizationRequestCreateSerializer(serializers.Serializer):
    product = serializers.UUIDField()
    printing_shop = serializers.IntegerField(required=False, allow_null=True)
    instructions = serializers.CharField(required=False, allow_blank=True, default="")


class AssignActionSerializer(serializers.Serializer):
    designer_id = serializers.IntegerField(required=False, allow_null=True)


class UploadFinalActionSerializer(serializers.Serializer):
    final_file = serializers.CharField(required=False, allow_blank=True, default="")
    preview_image = serializers.CharField(required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ApproveActionSerializer(serializers.Serializer):
    message_id = serializers.CharField(required=False, allow_blank=True, allow_null=True, default=None)

    def to_internal_value(self, data):
        if hasattr(data, "get") and "messageId" in data and "message_id" not in data:
            data = {"message_id": data.get("messageId")}
        return super().to_internal_value(data)


class RejectActionSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class CancelActionSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


ACTION_SERIALIZERS = {
    "assign": AssignActionSerializer,
    "uploadFinal": UploadFinalActionSerializer,
    "approve": ApproveActionSerializer,
    "reject": RejectActionSerializer,
    "cancel": CancelActionSerializer,
}


class PricingSerializer(serializers.Serializer):
    design_fee = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    production_fee = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=Decimal("0.00"), required=False, default=Decimal("0.00")
    )


class EscrowPaymentSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    reference = serializers.CharField(max_length=128)


class ReleasePayoutSerializer(serializers.Serializer):
    role = serializers.ChoiceField(choices=PAYOUT_ROLES)


class SelectShopSerializer(serializers.Serializer):
    shop_id = serializers.IntegerField()

    def to_internal_value(self, data):
        if hasattr(data, "get") and "shopId" in data and "shop_id" not in data:
            data = {"shop_id": data.get("shopId")}
        return super().to_internal_value(data)


class ShopPricingSerializer(serializers.Serializer):
    production_fee = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.00"))

    def to_internal_value(self, data):
        if hasattr(data, "get") and "printingCost" in data and "production_fee" not in data:
            data = {"production_fee": data.get("printingCost")}
        return super().to_internal_value(data)


class PrintingShopSerializer(serializers.ModelSerializer):
    name = serializers.SerializerMethodField()
    accepts_payouts = serializers.SerializerMethodField()

    class Meta:
        model = get_user_model()
        fields = ["id", "username", "name", "accepts_payouts"]
        read_only_fields = fields

    def get_name(self, obj):
        return obj.get_full_name() or obj.username

    def get_accepts_payouts(self, obj):
        account = getattr(obj, "payout_account", None)
        return bool(account and account.is_complete)
