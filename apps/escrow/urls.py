from django.urls import path

from apps.escrow.views import DisbursementWebhookView, PendingPayoutListView

urlpatterns = [
    path("webhooks/disbursement/", DisbursementWebhookView.as_view(), name="disbursement-webhook"),
    path("payouts/pending/", PendingPayoutListView.as_view(), name="pending-payout-list"),
]
