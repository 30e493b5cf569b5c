from rest_framework import serializers

from apps.customizations.models import CustomizationRequest
from apps.escrow.services import designer_commission


class PendingPayoutSerializer(serializers.ModelSerializer):
    customer_username = serializers.CharField(source="customer.username", read_only=True)
    designer_username = serializers.CharField(source="designer.username", read_only=True, default=None)
    payout_amount = serializers.SerializerMethodField()
    payout_requested = serializers.SerializerMethodField()

    class Meta:
        model = CustomizationRequest
        fields = [
            "id",
            "customer",
            "customer_username",
            "designer",
            "designer_username",
            "design_fee",
            "payout_amount",
            "payout_requested",
            "designer_payout_reference",
            "designer_payout_failure_code",
            "approved_at",
        ]
        read_only_fields = fields

    def get_payout_amount(self, obj):
        if obj.designer_payout_amount is not None:
            return str(obj.designer_payout_amount)
        return str(designer_commission(obj).net)

    def get_payout_requested(self, obj):
        return bool(obj.designer_payout_reference)
