import uuid

from django.db import models


class CustomizationStatus(models.TextChoices):
    PENDING_DESIGNER_REVIEW = "pending_designer_review", "Pending Designer Review"
    ASSIGNED = "assigned", "Assigned"
    IN_PROGRESS = "in_progress", "In Progress"
    AWAITING_CUSTOMER_APPROVAL = "awaiting_customer_approval", "Awaiting Customer Approval"
    READY_FOR_PRODUCTION = "ready_for_production", "Ready For Production"
    REJECTED = "rejected", "Rejected"
    CANCELLED = "cancelled", "Cancelled"


TERMINAL_STATUSES = frozenset({CustomizationStatus.READY_FOR_PRODUCTION, CustomizationStatus.CANCELLED})


class PaymentStatus(models.TextChoices):
    UNPAID = "unpaid", "Unpaid"
    HELD = "held", "Held In Escrow"


class CustomizationRequest(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.ForeignKey("accounts.User", on_delete=models.PROTECT, related_name="customization_requests")
    designer = models.ForeignKey(
        "accounts.User", on_delete=models.PROTECT, null=True, blank=True, related_name="design_assignments"
    )
    printing_shop = models.ForeignKey(
        "accounts.User", on_delete=models.PROTECT, null=True, blank=True, related_name="production_requests"
    )
    product = models.ForeignKey("catalog.Product", on_delete=models.PROTECT, related_name="customization_requests")
    instructions = models.TextField(blank=True)
    status = models.CharField(
        max_length=32, choices=CustomizationStatus.choices, default=CustomizationStatus.PENDING_DESIGNER_REVIEW
    )

    # Pricing agreement
    design_fee = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    production_fee = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    pricing_agreed_at = models.DateTimeField(null=True, blank=True)

    # Escrow ledger
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.UNPAID)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    payment_reference = models.CharField(max_length=128, blank=True)
    payment_received_at = models.DateTimeField(null=True, blank=True)
    designer_payout_reference = models.CharField(max_length=128, blank=True)
    designer_payout_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    designer_payout_requested_at = models.DateTimeField(null=True, blank=True)
    designer_payout_id = models.CharField(max_length=128, blank=True)
    designer_paid_at = models.DateTimeField(null=True, blank=True)
    designer_payout_failure_code = models.CharField(max_length=64, blank=True)
    shop_payout_reference = models.CharField(max_length=128, blank=True)
    shop_payout_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    shop_payout_requested_at = models.DateTimeField(null=True, blank=True)
    shop_payout_id = models.CharField(max_length=128, blank=True)
    shop_paid_at = models.DateTimeField(null=True, blank=True)
    shop_payout_failure_code = models.CharField(max_length=64, blank=True)

    # Design artifacts
    designer_final_file = models.CharField(max_length=500, blank=True)
    designer_final_file_url = models.URLField(max_length=500, blank=True)
    designer_preview_image = models.URLField(max_length=500, blank=True)
    designer_notes = models.TextField(blank=True)
    rejection_reason = models.TextField(blank=True)
    revision_count = models.PositiveIntegerField(default=0)
    final_design_url = models.URLField(max_length=500, blank=True)

    approved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="custreq_status_created_idx"),
            models.Index(fields=["customer", "status"], name="custreq_customer_status_idx"),
            models.Index(fields=["designer", "status"], name="custreq_designer_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(paid_amount__gte=0), name="custreq_paid_amount_gte_zero"),
            models.CheckConstraint(condition=models.Q(production_fee__gte=0), name="custreq_production_fee_gte_zero"),
        ]

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def payout_fields(self, role):
        return {
            "reference": getattr(self, f"{role}_payout_reference"),
            "amount": getattr(self, f"{role}_payout_amount"),
            "requested_at": getattr(self, f"{role}_payout_requested_at"),
            "payout_id": getattr(self, f"{role}_payout_id"),
            "paid_at": getattr(self, f"{role}_paid_at"),
            "failure_code": getattr(self, f"{role}_payout_failure_code"),
        }

    def __str__(self):
        return f"{self.id} ({self.status})"


class StatusTransition(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    request = models.ForeignKey(CustomizationRequest, on_delete=models.CASCADE, related_name="history")
    from_status = models.CharField(max_length=32, choices=CustomizationStatus.choices, blank=True)
    to_status = models.CharField(max_length=32, choices=CustomizationStatus.choices)
    actor = models.ForeignKey("accounts.User", on_delete=models.SET_NULL, null=True, blank=True)
    note = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["request", "created_at"], name="transition_request_idx"),
        ]
