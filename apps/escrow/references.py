"""External references sent to the disbursement provider.

Format: ``{role}-payout-{request uuid hex}-{unix millis}``. The provider echoes
the reference back in webhooks; it is the only link from a callback to the
request and the party being paid, so the format must stay stable.
"""

import re
import time
import uuid
from dataclasses import dataclass

from apps.common.exceptions import ValidationFailed

DESIGNER = "designer"
SHOP = "shop"
PAYOUT_ROLES = (DESIGNER, SHOP)

TEST = "test"
UNKNOWN = "unknown"

# Placeholder ids the provider uses in dashboard "send test webhook" calls.
TEST_EXTERNAL_IDS = frozenset({"disb-1234567890", "1"})
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


@dataclass(frozen=True)
class PayoutReference:
    role: str
    request_id: uuid.UUID
    timestamp_ms: int


def build_external_id(role, request_id, *, timestamp_ms=None):
    if role not in PAYOUT_ROLES:
        raise ValueError(f"Unknown payout role: {role}")
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    request_hex = request_id.hex if isinstance(request_id, uuid.UUID) else uuid.UUID(str(request_id)).hex
    return f"{role}-payout-{request_hex}-{timestamp_ms}"


def classify_external_id(external_id):
    external_id = (external_id or "").strip()
    for role in PAYOUT_ROLES:
        if external_id.startswith(f"{role}-payout-"):
            return role
    if not external_id or external_id in TEST_EXTERNAL_IDS or UUID_RE.match(external_id):
        return TEST
    return UNKNOWN


def parse_external_id(external_id):
    parts = (external_id or "").strip().split("-")
    if len(parts) != 4 or parts[0] not in PAYOUT_ROLES or parts[1] != "payout":
        raise ValidationFailed(f"Invalid external ID format: {external_id}", code="invalid_external_id")
    try:
        request_id = uuid.UUID(hex=parts[2])
    except ValueError:
        raise ValidationFailed(f"Invalid external ID format: {external_id}", code="invalid_external_id")
    if not parts[3].isdigit():
        raise ValidationFailed(f"Invalid external ID format: {external_id}", code="invalid_external_id")
    return PayoutReference(role=parts[0], request_id=request_id, timestamp_ms=int(parts[3]))
