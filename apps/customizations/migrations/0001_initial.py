# Generated manually for customization requests and their status history.

import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

STATUS_CHOICES = [
    ("pending_designer_review", "Pending Designer Review"),
    ("assigned", "Assigned"),
    ("in_progress", "In Progress"),
    ("awaiting_customer_approval", "Awaiting Customer Approval"),
    ("ready_for_production", "Ready For Production"),
    ("rejected", "Rejected"),
    ("cancelled", "Cancelled"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("catalog", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="CustomizationRequest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("instructions", models.TextField(blank=True)),
                ("status", models.CharField(choices=STATUS_CHOICES, default="pending_designer_review", max_length=32)),
                ("design_fee", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("production_fee", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("pricing_agreed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payment_status",
                    models.CharField(
                        choices=[("unpaid", "Unpaid"), ("held", "Held In Escrow")],
                        default="unpaid",
                        max_length=16,
                    ),
                ),
                ("paid_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("payment_reference", models.CharField(blank=True, max_length=128)),
                ("payment_received_at", models.DateTimeField(blank=True, null=True)),
                ("designer_payout_reference", models.CharField(blank=True, max_length=128)),
                ("designer_payout_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("designer_payout_requested_at", models.DateTimeField(blank=True, null=True)),
                ("designer_payout_id", models.CharField(blank=True, max_length=128)),
                ("designer_paid_at", models.DateTimeField(blank=True, null=True)),
                ("designer_payout_failure_code", models.CharField(blank=True, max_length=64)),
                ("shop_payout_reference", models.CharField(blank=True, max_length=128)),
                ("shop_payout_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("shop_payout_requested_at", models.DateTimeField(blank=True, null=True)),
                ("shop_payout_id", models.CharField(blank=True, max_length=128)),
                ("shop_paid_at", models.DateTimeField(blank=True, null=True)),
                ("shop_payout_failure_code", models.CharField(blank=True, max_length=64)),
                ("designer_final_file", models.CharField(blank=True, max_length=500)),
                ("designer_final_file_url", models.URLField(blank=True, max_length=500)),
                ("designer_preview_image", models.URLField(blank=True, max_length=500)),
                ("designer_notes", models.TextField(blank=True)),
                ("rejection_reason", models.TextField(blank=True)),
                ("revision_count", models.PositiveIntegerField(default=0)),
                ("final_design_url", models.URLField(blank=True, max_length=500)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="customization_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "designer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="design_assignments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "printing_shop",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="production_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="customization_requests",
                        to="catalog.product",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="custreq_status_created_idx"),
                    models.Index(fields=["customer", "status"], name="custreq_customer_status_idx"),
                    models.Index(fields=["designer", "status"], name="custreq_designer_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(paid_amount__gte=0), name="custreq_paid_amount_gte_zero"),
                    models.CheckConstraint(
                        condition=models.Q(production_fee__gte=0), name="custreq_production_fee_gte_zero"
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="StatusTransition",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("from_status", models.CharField(blank=True, choices=STATUS_CHOICES, max_length=32)),
                ("to_status", models.CharField(choices=STATUS_CHOICES, max_length=32)),
                ("note", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="history",
                        to="customizations.customizationrequest",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at"],
                "indexes": [models.Index(fields=["request", "created_at"], name="transition_request_idx")],
            },
        ),
    ]
