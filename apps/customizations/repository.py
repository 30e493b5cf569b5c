"""Single write path for ``CustomizationRequest``.

Each writer owns a disjoint slice of the record and may only patch that
slice, so orthogonal writers (a status transition and a webhook confirming a
payout) never clobber each other. Writes are conditional updates: the caller
states the values it read, and the update only lands if they still hold.
"""

import logging
import uuid

from django.utils import timezone

from apps.common.exceptions import ResourceNotFound
from apps.customizations.models import CustomizationRequest

logger = logging.getLogger(__name__)

LIFECYCLE = "lifecycle"
ESCROW = "escrow"
WEBHOOK = "webhook"

_PAYOUT_REQUEST_FIELDS = {
    f"{role}_{suffix}"
    for role in ("designer", "shop")
    for suffix in ("payout_reference", "payout_amount", "payout_requested_at", "payout_failure_code")
}

OWNED_FIELDS = {
    LIFECYCLE: frozenset(
        {
            "status",
            "designer_id",
            "printing_shop_id",
            "designer_final_file",
            "designer_final_file_url",
            "designer_preview_image",
            "designer_notes",
            "rejection_reason",
            "revision_count",
            "final_design_url",
            "approved_at",
        }
    ),
    ESCROW: frozenset(
        {
            "design_fee",
            "production_fee",
            "pricing_agreed_at",
            "payment_status",
            "paid_amount",
            "payment_reference",
            "payment_received_at",
        }
        | _PAYOUT_REQUEST_FIELDS
    ),
    WEBHOOK: frozenset(
        {
            "designer_payout_id",
            "designer_paid_at",
            "designer_payout_failure_code",
            "shop_payout_id",
            "shop_paid_at",
            "shop_payout_failure_code",
        }
    ),
}


def get_request(request_id, *, queryset=None):
    try:
        pk = request_id if isinstance(request_id, uuid.UUID) else uuid.UUID(str(request_id))
    except (TypeError, ValueError):
        raise ResourceNotFound("Customization request not found.")
    queryset = queryset if queryset is not None else CustomizationRequest.objects.all()
    request = queryset.filter(pk=pk).first()
    if request is None:
        raise ResourceNotFound("Customization request not found.")
    return request


def conditional_update(request_id, *, owner, changes, expected=None):
    """Patch ``changes`` only if every ``expected`` lookup still matches. Returns True when a row changed."""
    allowed = OWNED_FIELDS[owner]
    foreign = set(changes) - allowed
    if foreign:
        raise ValueError(f"{owner} writer cannot modify {sorted(foreign)}")

    filters = {"pk": request_id}
    filters.update(expected or {})
    updated = CustomizationRequest.objects.filter(**filters).update(**changes, updated_at=timezone.now())
    if not updated:
        logger.info("Conditional update by %s on %s did not match %s", owner, request_id, expected)
    return updated == 1
