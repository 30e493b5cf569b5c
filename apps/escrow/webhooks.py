"""Disbursement webhook reconciliation.

The provider delivers at least once and in three payload shapes. Every
payload is first normalized into ``DisbursementEvent`` values; reconciliation
only ever sees that canonical form. Confirmations patch the payout fields
guarded by "payout id still unset" and by the reference currently claimed on
the request, so a redelivery finds the id already recorded and becomes a
no-op, and a delivery for a superseded reference never touches the live claim.
"""

import enum
import json
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.utils import timezone

from apps.audit.models import AuditSource
from apps.audit.services import record_audit
from apps.common.exceptions import InvalidSignature, ValidationFailed
from apps.customizations.repository import WEBHOOK, conditional_update, get_request
from apps.escrow.gateway import get_disbursement_gateway
from apps.escrow.references import DESIGNER, TEST, UNKNOWN, classify_external_id, parse_external_id
from apps.events.models import EventType
from apps.events.services import publish

logger = logging.getLogger(__name__)

COMPLETED = "COMPLETED"
FAILED = "FAILED"
SUCCESS_STATUSES = frozenset({"COMPLETED", "SUCCEEDED"})
FAILURE_STATUSES = frozenset({"FAILED"})


class PayloadShape(enum.Enum):
    ENVELOPE = "envelope"
    BATCH = "batch"
    SINGLE = "single"


class Outcome:
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    FAILURE_RECORDED = "failure_recorded"
    STALE = "stale"
    TEST_WEBHOOK = "test_webhook"
    IGNORED = "ignored"


@dataclass(frozen=True)
class DisbursementEvent:
    disbursement_id: str
    external_id: str
    status: str
    amount: Decimal = None
    failure_code: str = ""
    shape: PayloadShape = PayloadShape.SINGLE


@dataclass(frozen=True)
class WebhookResult:
    external_id: str
    disbursement_id: str
    status: str
    outcome: str
    request_id: str = ""
    role: str = ""


def _amount(value):
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationFailed(f"Invalid disbursement amount: {value}", code="malformed_payload")


def detect_shape(payload):
    if not isinstance(payload, dict):
        raise ValidationFailed("Webhook payload must be a JSON object.", code="malformed_payload")
    if payload.get("event") and isinstance(payload.get("data"), dict):
        return PayloadShape.ENVELOPE
    if isinstance(payload.get("disbursements"), list):
        return PayloadShape.BATCH
    if any(key in payload for key in ("id", "external_id", "status")):
        return PayloadShape.SINGLE
    raise ValidationFailed("Unrecognized disbursement webhook payload.", code="malformed_payload")


def _from_disbursement(entry, shape):
    if not isinstance(entry, dict):
        raise ValidationFailed("Disbursement entries must be JSON objects.", code="malformed_payload")
    return DisbursementEvent(
        disbursement_id=str(entry.get("id") or ""),
        external_id=str(entry.get("external_id") or ""),
        status=str(entry.get("status") or "").upper(),
        amount=_amount(entry.get("amount")),
        failure_code=str(entry.get("failure_code") or ""),
        shape=shape,
    )


def _from_envelope(payload):
    data = payload["data"]
    status = str(data.get("status") or "").upper()
    return DisbursementEvent(
        disbursement_id=str(data.get("id") or ""),
        external_id=str(data.get("reference_id") or data.get("external_id") or ""),
        status=COMPLETED if status == "SUCCEEDED" else status,
        amount=_amount(data.get("amount")),
        failure_code=str(data.get("failure_code") or ""),
        shape=PayloadShape.ENVELOPE,
    )


def normalize_payload(payload):
    shape = detect_shape(payload)
    if shape is PayloadShape.ENVELOPE:
        return [_from_envelope(payload)]
    if shape is PayloadShape.BATCH:
        if not payload["disbursements"]:
            raise ValidationFailed("Batch webhook contains no disbursements.", code="malformed_payload")
        return [_from_disbursement(entry, shape) for entry in payload["disbursements"]]
    return [_from_disbursement(payload, shape)]


class DisbursementWebhookHandler:
    def __init__(self, gateway=None):
        self.gateway = gateway or get_disbursement_gateway()

    def handle(self, raw_body, signature):
        self.verify(raw_body, signature)
        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationFailed("Webhook body is not valid JSON.", code="malformed_payload")

        events = normalize_payload(payload)
        logger.info("Disbursement webhook with %s event(s), shape=%s", len(events), events[0].shape.value)

        # Reject the whole delivery before touching anything if a reference is unusable.
        for event in events:
            kind = classify_external_id(event.external_id)
            if kind == UNKNOWN:
                logger.error("Unknown external ID format: %s", event.external_id)
                raise ValidationFailed(f"Unknown external ID format: {event.external_id}", code="unknown_external_id")
            if kind != TEST:
                parse_external_id(event.external_id)

        return [self.reconcile(event) for event in events]

    def verify(self, raw_body, signature):
        if not signature:
            logger.warning("Disbursement webhook without signature")
            raise InvalidSignature("Missing signature.")
        try:
            valid = self.gateway.verify_webhook_signature(raw_body, signature)
        except Exception:
            logger.exception("Webhook signature verification raised")
            valid = False
        if not valid:
            logger.warning("Disbursement webhook with invalid signature")
            raise InvalidSignature("Invalid signature.")

    def reconcile(self, event):
        if classify_external_id(event.external_id) == TEST:
            logger.info("Test webhook received (%s), skipping", event.external_id or "no external id")
            return WebhookResult(
                external_id=event.external_id,
                disbursement_id=event.disbursement_id,
                status=event.status,
                outcome=Outcome.TEST_WEBHOOK,
            )

        reference = parse_external_id(event.external_id)
        request = get_request(reference.request_id)

        if event.status in SUCCESS_STATUSES:
            outcome = self._apply_success(request, reference.role, event)
        elif event.status in FAILURE_STATUSES:
            outcome = self._apply_failure(request, reference.role, event)
        else:
            logger.info("Disbursement %s is %s, nothing to reconcile", event.external_id, event.status)
            outcome = Outcome.IGNORED

        return WebhookResult(
            external_id=event.external_id,
            disbursement_id=event.disbursement_id,
            status=event.status,
            outcome=outcome,
            request_id=str(request.pk),
            role=reference.role,
        )

    def _apply_success(self, request, role, event):
        if not event.disbursement_id:
            raise ValidationFailed("Completed disbursement without an id.", code="malformed_payload")

        fields = request.payout_fields(role)
        if event.amount is not None and fields["amount"] is not None and event.amount != fields["amount"]:
            logger.warning("Disbursement %s amount %s differs from requested %s", event.disbursement_id, event.amount, fields["amount"])

        with transaction.atomic():
            applied = conditional_update(
                request.pk,
                owner=WEBHOOK,
                expected={f"{role}_payout_id": "", f"{role}_payout_reference": event.external_id},
                changes={
                    f"{role}_payout_id": event.disbursement_id,
                    f"{role}_paid_at": timezone.now(),
                    f"{role}_payout_failure_code": "",
                },
            )
            if not applied:
                request.refresh_from_db(fields=[f"{role}_payout_id", f"{role}_payout_reference"])
                recorded = getattr(request, f"{role}_payout_id")
                claimed = getattr(request, f"{role}_payout_reference")
                if recorded and recorded == event.disbursement_id:
                    logger.info("Disbursement %s already reconciled", event.disbursement_id)
                    return Outcome.DUPLICATE
                logger.error(
                    "Unexpected disbursement %s (%s) for %s payout of %s: claimed %s, recorded %s",
                    event.disbursement_id,
                    event.external_id,
                    role,
                    request.pk,
                    claimed or "nothing",
                    recorded or "nothing",
                )
                record_audit(
                    action=f"escrow.{role}_payout.conflict",
                    entity_type="customization_request",
                    entity_id=request.pk,
                    payload={
                        "recorded": recorded,
                        "received": event.disbursement_id,
                        "claimed_reference": claimed,
                        "external_id": event.external_id,
                    },
                    source=AuditSource.WEBHOOK,
                )
                return Outcome.CONFLICT

            record_audit(
                action=f"escrow.{role}_payout.completed",
                entity_type="customization_request",
                entity_id=request.pk,
                payload={
                    "disbursement_id": event.disbursement_id,
                    "external_id": event.external_id,
                    "amount": str(event.amount) if event.amount is not None else None,
                },
                source=AuditSource.WEBHOOK,
            )
            event_type = (
                EventType.DESIGNER_DISBURSEMENT_COMPLETED if role == DESIGNER else EventType.SHOP_DISBURSEMENT_COMPLETED
            )
            publish(
                event_type,
                {
                    "request_id": str(request.pk),
                    "recipient_id": request.designer_id if role == DESIGNER else request.printing_shop_id,
                    "amount": str(event.amount) if event.amount is not None else None,
                    "disbursement_id": event.disbursement_id,
                },
                aggregate_id=request.pk,
                dedup_key=f"disbursement-completed:{event.disbursement_id}",
            )

        logger.info("%s payout completed for %s (%s)", role, request.pk, event.disbursement_id)
        return Outcome.APPLIED

    def _apply_failure(self, request, role, event):
        logger.error(
            "Disbursement failed: request=%s role=%s disbursement=%s code=%s",
            request.pk,
            role,
            event.disbursement_id,
            event.failure_code,
        )
        with transaction.atomic():
            applied = conditional_update(
                request.pk,
                owner=WEBHOOK,
                expected={f"{role}_payout_id": "", f"{role}_payout_reference": event.external_id},
                changes={f"{role}_payout_failure_code": event.failure_code or FAILED},
            )
            if not applied:
                request.refresh_from_db(fields=[f"{role}_payout_id", f"{role}_payout_reference"])
                claimed = getattr(request, f"{role}_payout_reference")
                if claimed != event.external_id:
                    # Another disbursement holds the claim; it must not inherit this failure.
                    logger.warning(
                        "Failure for %s ignored, %s payout of %s is now claimed by %s",
                        event.external_id,
                        role,
                        request.pk,
                        claimed or "nothing",
                    )
                    record_audit(
                        action=f"escrow.{role}_payout.stale_failure",
                        entity_type="customization_request",
                        entity_id=request.pk,
                        payload={
                            "external_id": event.external_id,
                            "claimed_reference": claimed,
                            "failure_code": event.failure_code,
                        },
                        source=AuditSource.WEBHOOK,
                    )
                    return Outcome.STALE
            _, created = publish(
                EventType.DISBURSEMENT_FAILED,
                {
                    "request_id": str(request.pk),
                    "role": role,
                    "disbursement_id": event.disbursement_id,
                    "external_id": event.external_id,
                    "failure_code": event.failure_code,
                    "amount": str(event.amount) if event.amount is not None else None,
                },
                aggregate_id=request.pk,
                dedup_key=f"disbursement-failed:{event.disbursement_id or event.external_id}",
            )
            if created:
                record_audit(
                    action=f"escrow.{role}_payout.failed",
                    entity_type="customization_request",
                    entity_id=request.pk,
                    payload={"disbursement_id": event.disbursement_id, "failure_code": event.failure_code},
                    source=AuditSource.WEBHOOK,
                )
        return Outcome.FAILURE_RECORDED if created else Outcome.DUPLICATE


def result_as_dict(result):
    return asdict(result)
