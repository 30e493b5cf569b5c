import logging

from django.conf import settings
from rest_framework import generics
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.common.permissions import RolePermission
from apps.escrow.serializers import PendingPayoutSerializer
from apps.escrow.services import pending_designer_payouts
from apps.escrow.webhooks import DisbursementWebhookHandler, result_as_dict

logger = logging.getLogger(__name__)


class DisbursementWebhookView(APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request):
        return Response({"message": "Disbursement webhook endpoint", "status": "active"})

    def post(self, request):
        signature = request.headers.get(settings.DISBURSEMENT_WEBHOOK_HEADER, "")
        results = DisbursementWebhookHandler().handle(request.body, signature)
        return Response(
            {
                "success": True,
                "message": f"Processed {len(results)} disbursement event(s)",
                "results": [result_as_dict(result) for result in results],
            },
            status=200,
        )


class PendingPayoutListView(generics.ListAPIView):
    serializer_class = PendingPayoutSerializer
    permission_classes = [RolePermission]
    capability_map = {
        "get": ["payouts.view"],
    }

    def get_queryset(self):
        return pending_designer_payouts()
