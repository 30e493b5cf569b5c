import logging
from dataclasses import dataclass
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from apps.accounts.models import PayoutAccount
from apps.audit.models import AuditSource
from apps.audit.services import record_audit
from apps.common.exceptions import ActionForbidden, InvalidState, ValidationFailed
from apps.customizations.models import CustomizationRequest, CustomizationStatus, PaymentStatus, TERMINAL_STATUSES
from apps.customizations.repository import ESCROW, conditional_update, get_request
from apps.escrow.commission import CommissionQuote, calculate_commission
from apps.escrow.gateway import DisbursementGatewayError, DisbursementRequest, get_disbursement_gateway
from apps.escrow.references import DESIGNER, SHOP, build_external_id
from apps.events.models import EventType
from apps.events.services import publish

logger = logging.getLogger(__name__)

# Failure codes recorded by the release itself rather than by the provider webhook.
PAYOUT_UNCONFIRMED = "UNCONFIRMED"
PAYOUT_REJECTED = "REJECTED"


@dataclass(frozen=True)
class PayoutResult:
    role: str
    request_id: str
    external_id: str
    amount: Decimal
    commission: CommissionQuote
    disbursement_id: str = ""
    created: bool = True

    def as_dict(self):
        return {
            "role": self.role,
            "request_id": self.request_id,
            "external_id": self.external_id,
            "amount": str(self.amount),
            "commission": self.commission.as_dict(),
            "disbursement_id": self.disbursement_id,
            "created": self.created,
        }


def _quantize(amount):
    return Decimal(str(amount)).quantize(Decimal("0.01"))


def designer_commission(request):
    return calculate_commission(customization_design_fee=request.design_fee or 0)


def shop_commission(request):
    return calculate_commission(product_subtotal=request.production_fee or 0, design_subtotal=0)


def set_pricing_agreement(request_id, *, actor, design_fee, production_fee=0):
    request = get_request(request_id)
    if not actor.is_admin and request.designer_id != actor.user_id:
        raise ActionForbidden("Only the assigned designer can set the pricing agreement.")
    if request.status in TERMINAL_STATUSES or request.status == CustomizationStatus.PENDING_DESIGNER_REVIEW:
        raise InvalidState(f"Cannot set pricing while the request is {request.status}.")
    if request.payment_status != PaymentStatus.UNPAID:
        raise InvalidState("The pricing agreement is locked once payment has been taken.")

    design_fee = _quantize(design_fee)
    production_fee = _quantize(production_fee or 0)
    if design_fee <= 0:
        raise ValidationFailed("design_fee must be greater than 0.")
    if production_fee < 0:
        raise ValidationFailed("production_fee cannot be negative.")
    if production_fee > 0 and not request.printing_shop_id:
        raise ValidationFailed("production_fee requires a printing shop on the request.")

    with transaction.atomic():
        updated = conditional_update(
            request.pk,
            owner=ESCROW,
            expected={"payment_status": PaymentStatus.UNPAID},
            changes={"design_fee": design_fee, "production_fee": production_fee, "pricing_agreed_at": timezone.now()},
        )
        if not updated:
            raise InvalidState("The pricing agreement is locked once payment has been taken.")
        record_audit(
            actor_id=actor.user_id,
            action="escrow.pricing.set",
            entity_type="customization_request",
            entity_id=request.pk,
            payload={"design_fee": str(design_fee), "production_fee": str(production_fee)},
        )

    request.refresh_from_db()
    return request


def set_shop_pricing(request_id, *, actor, production_fee):
    """The attached printing shop quotes its production fee."""
    request = get_request(request_id)
    if not request.printing_shop_id:
        raise ValidationFailed("No printing shop has been selected for this request.", code="no_printing_shop")
    if not actor.is_admin and request.printing_shop_id != actor.user_id:
        raise ActionForbidden("You can only add pricing for your own shop.")
    if request.status in TERMINAL_STATUSES:
        raise InvalidState(f"Cannot set shop pricing while the request is {request.status}.")
    if request.design_fee is None:
        raise InvalidState("No pricing agreement found. The designer must set the design fee first.")
    if request.payment_status != PaymentStatus.UNPAID:
        raise InvalidState("Shop pricing is locked once payment has been taken.")

    production_fee = _quantize(production_fee)
    if production_fee < 0:
        raise ValidationFailed("production_fee cannot be negative.")

    with transaction.atomic():
        updated = conditional_update(
            request.pk,
            owner=ESCROW,
            expected={"payment_status": PaymentStatus.UNPAID, "printing_shop_id": request.printing_shop_id},
            changes={"production_fee": production_fee, "pricing_agreed_at": timezone.now()},
        )
        if not updated:
            raise InvalidState("The request was changed by someone else. Reload and try again.")
        record_audit(
            actor_id=actor.user_id,
            action="escrow.shop_pricing.set",
            entity_type="customization_request",
            entity_id=request.pk,
            payload={"shop_id": request.printing_shop_id, "production_fee": str(production_fee)},
        )

    request.refresh_from_db()
    return request


def clear_production_fee(request_id):
    return conditional_update(
        request_id,
        owner=ESCROW,
        expected={"payment_status": PaymentStatus.UNPAID, "production_fee__gt": 0},
        changes={"production_fee": Decimal("0.00")},
    )


def capture_escrow_payment(request_id, *, actor, amount, reference):
    """Record the customer's payment as held in escrow. Returns ``(request, created)``."""
    request = get_request(request_id)
    reference = (reference or "").strip()
    if not reference:
        raise ValidationFailed("A payment reference is required.")
    if request.design_fee is None:
        raise InvalidState("No pricing agreement found. Cannot take payment.")
    if request.status == CustomizationStatus.CANCELLED:
        raise InvalidState("Cannot take payment for a cancelled request.")

    if request.payment_status == PaymentStatus.HELD:
        if request.payment_reference == reference:
            return request, False
        raise InvalidState("Payment has already been taken for this request.")

    amount = _quantize(amount)
    required = _quantize(request.design_fee + request.production_fee)
    if amount < required:
        raise ValidationFailed(f"Payment of {amount} does not cover the agreed total of {required}.")

    with transaction.atomic():
        updated = conditional_update(
            request.pk,
            owner=ESCROW,
            expected={"payment_status": PaymentStatus.UNPAID},
            changes={
                "payment_status": PaymentStatus.HELD,
                "paid_amount": amount,
                "payment_reference": reference,
                "payment_received_at": timezone.now(),
            },
        )
        if not updated:
            raise InvalidState("Payment has already been taken for this request.")
        record_audit(
            actor_id=actor.user_id,
            action="escrow.payment.held",
            entity_type="customization_request",
            entity_id=request.pk,
            payload={"amount": str(amount), "reference": reference},
        )
        publish(
            EventType.PAYMENT_HELD,
            {"request_id": str(request.pk), "customer_id": request.customer_id, "amount": str(amount)},
            aggregate_id=request.pk,
            dedup_key=f"payment-held:{request.pk}",
        )

    request.refresh_from_db()
    logger.info("Payment %s held in escrow for request %s", reference, request.pk)
    return request, True


def release_designer_payment(request_id, *, gateway=None, retry_failed=False):
    request = get_request(request_id, queryset=CustomizationRequest.objects.select_related("designer"))
    if request.payment_status != PaymentStatus.HELD:
        raise InvalidState("No payment details found for this request.")
    if request.status != CustomizationStatus.READY_FOR_PRODUCTION:
        raise InvalidState("Designer payout is only released once the customer approves the design.")
    if not request.designer_id:
        raise InvalidState("No designer assigned to this request.")
    if not request.design_fee or request.design_fee <= 0:
        raise InvalidState("No pricing agreement found. Cannot process payout.")

    return _release(
        request,
        role=DESIGNER,
        recipient=request.designer,
        quote=designer_commission(request),
        description=f"Design fee payment for customization request #{request.pk}",
        gateway=gateway,
        retry_failed=retry_failed,
    )


def release_shop_payment(request_id, *, gateway=None, retry_failed=False):
    request = get_request(request_id, queryset=CustomizationRequest.objects.select_related("printing_shop"))
    if request.payment_status != PaymentStatus.HELD:
        raise InvalidState("No payment details found for this request.")
    if not request.printing_shop_id:
        raise InvalidState("No printing shop assigned to this request.")
    if request.status != CustomizationStatus.READY_FOR_PRODUCTION:
        raise InvalidState("Shop payout is only released for requests ready for production.")
    if not request.designer_payout_reference:
        raise InvalidState("Designer must be paid before the shop payout is released.")
    if request.production_fee <= 0:
        raise InvalidState("No production fee agreed for this request.")

    return _release(
        request,
        role=SHOP,
        recipient=request.printing_shop,
        quote=shop_commission(request),
        description=f"Production payment for customization request #{request.pk}",
        gateway=gateway,
        retry_failed=retry_failed,
    )


def _existing_result(request, role, quote):
    fields = request.payout_fields(role)
    return PayoutResult(
        role=role,
        request_id=str(request.pk),
        external_id=fields["reference"],
        amount=fields["amount"] if fields["amount"] is not None else quote.net,
        commission=quote,
        disbursement_id=fields["payout_id"],
        created=False,
    )


def _release(request, *, role, recipient, quote, description, gateway, retry_failed):
    fields = request.payout_fields(role)
    expected = {f"{role}_payout_reference": ""}
    external_id = None
    if fields["reference"]:
        can_retry = retry_failed and fields["failure_code"] and not fields["payout_id"]
        if not can_retry:
            logger.info("%s payout for %s already requested as %s", role, request.pk, fields["reference"])
            return _existing_result(request, role, quote)
        expected = {
            f"{role}_payout_reference": fields["reference"],
            f"{role}_payout_failure_code": fields["failure_code"],
            f"{role}_payout_id": "",
        }
        if fields["failure_code"] == PAYOUT_UNCONFIRMED:
            # The provider may already hold this disbursement; resend under the same key.
            external_id = fields["reference"]

    account = PayoutAccount.objects.filter(user=recipient).first()
    if account is None or not account.is_complete:
        raise ValidationFailed(
            f"{role.capitalize()} payout information is incomplete. Bank details are required.",
            code="payout_account_incomplete",
        )

    net = fields["amount"] if external_id else quote.net
    if net is None or net <= 0:
        raise ValidationFailed(f"Invalid {role} payout amount.")

    external_id = external_id or build_external_id(role, request.pk)
    claimed = conditional_update(
        request.pk,
        owner=ESCROW,
        expected=expected,
        changes={
            f"{role}_payout_reference": external_id,
            f"{role}_payout_amount": net,
            f"{role}_payout_requested_at": timezone.now(),
            f"{role}_payout_failure_code": "",
        },
    )
    if not claimed:
        request.refresh_from_db()
        logger.info("%s payout for %s claimed concurrently", role, request.pk)
        return _existing_result(request, role, quote)

    gateway = gateway or get_disbursement_gateway()
    try:
        disbursement = gateway.create_disbursement(
            DisbursementRequest(
                external_id=external_id,
                amount=net,
                bank_code=account.bank_code,
                account_holder_name=account.account_holder_name,
                account_number=account.account_number,
                description=description,
                email_to=[account.email] if account.email else [],
            )
        )
    except DisbursementGatewayError as exc:
        _record_gateway_error(request, role, external_id, exc)
        raise

    with transaction.atomic():
        record_audit(
            action=f"escrow.{role}_payout.requested",
            entity_type="customization_request",
            entity_id=request.pk,
            payload={
                "external_id": external_id,
                "disbursement_id": disbursement.id,
                "amount": str(net),
                "commission": str(quote.amount),
            },
            source=AuditSource.SYSTEM,
        )
        publish(
            EventType.PAYOUT_REQUESTED,
            {
                "request_id": str(request.pk),
                "role": role,
                "recipient_id": recipient.pk,
                "amount": str(net),
                "disbursement_id": disbursement.id,
                "external_id": external_id,
            },
            aggregate_id=request.pk,
            dedup_key=f"payout-requested:{external_id}",
        )

    logger.info("Disbursement %s accepted by provider as %s", external_id, disbursement.id)
    return PayoutResult(
        role=role,
        request_id=str(request.pk),
        external_id=external_id,
        amount=net,
        commission=quote,
        disbursement_id=disbursement.id,
    )


def _record_gateway_error(request, role, external_id, exc):
    if exc.rejected:
        logger.warning("Disbursement %s rejected by provider: %s", external_id, exc)
        # Nothing exists under this key, so the claim goes back for a fresh release.
        changes = {
            f"{role}_payout_reference": "",
            f"{role}_payout_amount": None,
            f"{role}_payout_requested_at": None,
            f"{role}_payout_failure_code": exc.error_code or PAYOUT_REJECTED,
        }
        action = f"escrow.{role}_payout.rejected"
    else:
        logger.error("Disbursement %s outcome unknown, keeping the claim: %s", external_id, exc)
        changes = {f"{role}_payout_failure_code": PAYOUT_UNCONFIRMED}
        action = f"escrow.{role}_payout.unconfirmed"

    with transaction.atomic():
        conditional_update(
            request.pk,
            owner=ESCROW,
            expected={f"{role}_payout_reference": external_id, f"{role}_payout_id": ""},
            changes=changes,
        )
        record_audit(
            action=action,
            entity_type="customization_request",
            entity_id=request.pk,
            payload={
                "external_id": external_id,
                "error": str(exc),
                "error_code": exc.error_code,
                "status_code": exc.status_code,
            },
            source=AuditSource.SYSTEM,
        )


def escrow_summary(request):
    quote = designer_commission(request)
    return {
        "request_id": str(request.pk),
        "payment_status": request.payment_status,
        "paid_amount": str(request.paid_amount),
        "design_fee": str(request.design_fee) if request.design_fee is not None else None,
        "production_fee": str(request.production_fee),
        "designer_commission": quote.as_dict(),
        "designer": _payout_summary(request, DESIGNER),
        "shop": _payout_summary(request, SHOP) if request.printing_shop_id else None,
    }


def _payout_summary(request, role):
    fields = request.payout_fields(role)
    return {
        "reference": fields["reference"],
        "amount": str(fields["amount"]) if fields["amount"] is not None else None,
        "requested_at": fields["requested_at"],
        "payout_id": fields["payout_id"],
        "paid_at": fields["paid_at"],
        "failure_code": fields["failure_code"],
        "paid": bool(fields["paid_at"]),
    }


def pending_designer_payouts():
    return (
        CustomizationRequest.objects.select_related("customer", "designer")
        .filter(
            status=CustomizationStatus.READY_FOR_PRODUCTION,
            payment_status=PaymentStatus.HELD,
            designer_paid_at__isnull=True,
        )
        .order_by("approved_at")
    )
