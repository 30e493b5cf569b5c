import uuid

from django.db import models


class EventType(models.TextChoices):
    REQUEST_CREATED = "customization.request.created", "Request Created"
    DESIGNER_ASSIGNED = "customization.designer.assigned", "Designer Assigned"
    DESIGN_COMPLETED = "customization.design.completed", "Design Completed"
    DESIGN_REJECTED = "customization.design.rejected", "Design Rejected"
    DESIGN_APPROVED = "customization.design.approved", "Design Approved"
    READY_FOR_PRODUCTION = "customization.ready_for_production", "Ready For Production"
    REQUEST_CANCELLED = "customization.request.cancelled", "Request Cancelled"
    SHOP_SELECTED = "customization.shop.selected", "Shop Selected"
    PAYMENT_HELD = "escrow.payment.held", "Payment Held"
    PAYOUT_REQUESTED = "escrow.payout.requested", "Payout Requested"
    PAYOUT_FAILED = "escrow.payout.failed", "Payout Failed"
    DESIGNER_DISBURSEMENT_COMPLETED = "disbursement.designer.completed", "Designer Disbursement Completed"
    SHOP_DISBURSEMENT_COMPLETED = "disbursement.shop.completed", "Shop Disbursement Completed"
    DISBURSEMENT_FAILED = "disbursement.failed", "Disbursement Failed"


class OutboxStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    DELIVERED = "DELIVERED", "Delivered"
    FAILED = "FAILED", "Failed"


class OutboxEvent(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event_type = models.CharField(max_length=64, choices=EventType.choices)
    aggregate_id = models.CharField(max_length=64)
    payload = models.JSONField(default=dict)
    dedup_key = models.CharField(max_length=160, unique=True, null=True, blank=True)
    status = models.CharField(max_length=16, choices=OutboxStatus.choices, default=OutboxStatus.PENDING)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    delivered_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="outbox_status_created_idx"),
            models.Index(fields=["aggregate_id", "event_type"], name="outbox_aggregate_type_idx"),
        ]

    def __str__(self):
        return f"{self.event_type} {self.aggregate_id}"
