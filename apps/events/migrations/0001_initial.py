# Generated manually for the transactional outbox.

import uuid

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="OutboxEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("customization.request.created", "Request Created"),
                            ("customization.designer.assigned", "Designer Assigned"),
                            ("customization.design.completed", "Design Completed"),
                            ("customization.design.rejected", "Design Rejected"),
                            ("customization.design.approved", "Design Approved"),
                            ("customization.ready_for_production", "Ready For Production"),
                            ("customization.request.cancelled", "Request Cancelled"),
                            ("customization.shop.selected", "Shop Selected"),
                            ("escrow.payment.held", "Payment Held"),
                            ("escrow.payout.requested", "Payout Requested"),
                            ("escrow.payout.failed", "Payout Failed"),
                            ("disbursement.designer.completed", "Designer Disbursement Completed"),
                            ("disbursement.shop.completed", "Shop Disbursement Completed"),
                            ("disbursement.failed", "Disbursement Failed"),
                        ],
                        max_length=64,
                    ),
                ),
                ("aggregate_id", models.CharField(max_length=64)),
                ("payload", models.JSONField(default=dict)),
                ("dedup_key", models.CharField(blank=True, max_length=160, null=True, unique=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("PENDING", "Pending"), ("DELIVERED", "Delivered"), ("FAILED", "Failed")],
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="outbox_status_created_idx"),
                    models.Index(fields=["aggregate_id", "event_type"], name="outbox_aggregate_type_idx"),
                ],
            },
        ),
    ]
