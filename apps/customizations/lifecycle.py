"""Customization request state machine.

Every operation takes the caller as an explicit ``Actor``. Guards run in a
fixed order: the request must exist (404), the actor must be the party
entitled to act (403), and the current status must allow the move (409).
Status writes are compare-and-swap on the status read at the start of the
operation, so of two concurrent callers only one can move the request.
"""

import logging
from dataclasses import dataclass

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import APIException

from apps.accounts.models import UserRole
from apps.audit.services import record_audit
from apps.catalog.models import Product
from apps.common.exceptions import ActionForbidden, InvalidState, ResourceNotFound, ValidationFailed
from apps.customizations.collaborators import MessageLookupError, get_file_store, get_message_lookup
from apps.customizations.models import CustomizationRequest, CustomizationStatus, PaymentStatus, StatusTransition
from apps.customizations.repository import LIFECYCLE, conditional_update, get_request
from apps.escrow import services as escrow_services
from apps.escrow.gateway import DisbursementGatewayError
from apps.events.models import EventType
from apps.events.services import publish

logger = logging.getLogger(__name__)

S = CustomizationStatus

NON_TERMINAL_STATUSES = (
    S.PENDING_DESIGNER_REVIEW,
    S.ASSIGNED,
    S.IN_PROGRESS,
    S.AWAITING_CUSTOMER_APPROVAL,
    S.REJECTED,
)

TRANSITIONS = {
    (S.PENDING_DESIGNER_REVIEW, S.ASSIGNED),
    (S.ASSIGNED, S.IN_PROGRESS),
    (S.REJECTED, S.IN_PROGRESS),
    (S.IN_PROGRESS, S.AWAITING_CUSTOMER_APPROVAL),
    (S.AWAITING_CUSTOMER_APPROVAL, S.READY_FOR_PRODUCTION),
    (S.AWAITING_CUSTOMER_APPROVAL, S.IN_PROGRESS),
} | {(status, S.CANCELLED) for status in NON_TERMINAL_STATUSES}

DESIGNER_ROLES = (UserRole.DESIGNER, UserRole.BUSINESS_OWNER)


def can_transition(current, target):
    return (current, target) in TRANSITIONS


@dataclass
class ApprovalResult:
    request: CustomizationRequest
    final_design_url: str
    payout_processed: bool
    payout_error: str = ""
    payout: object = None

    def as_response(self):
        data = {
            "status": self.request.status,
            "finalDesignUrl": self.final_design_url,
            "payoutProcessed": self.payout_processed,
        }
        if self.payout_error:
            data["payoutError"] = self.payout_error
        return data


def _transition(request, target, *, actor, changes=None, note=""):
    current = request.status
    if not can_transition(current, target):
        raise InvalidState(f"Cannot move request from {current} to {target}.")

    updated = conditional_update(
        request.pk,
        owner=LIFECYCLE,
        expected={"status": current},
        changes={"status": target, **(changes or {})},
    )
    if not updated:
        logger.warning("Stale transition %s -> %s on %s by user %s", current, target, request.pk, actor.user_id)
        raise InvalidState("The request was changed by someone else. Reload and try again.")

    StatusTransition.objects.create(
        request_id=request.pk,
        from_status=current,
        to_status=target,
        actor_id=actor.user_id,
        note=note[:255],
    )
    record_audit(
        actor_id=actor.user_id,
        action=f"customization.{target}",
        entity_type="customization_request",
        entity_id=request.pk,
        payload={"from": current, "to": target, "note": note},
    )
    request.refresh_from_db()
    logger.info("Request %s moved %s -> %s by user %s", request.pk, current, target, actor.user_id)
    return request


def create_request(*, actor, product_id, printing_shop_id=None, instructions=""):
    product = Product.objects.filter(pk=product_id, is_active=True).first()
    if product is None:
        raise ResourceNotFound("Product not found.")
    if not product.is_customizable:
        raise ValidationFailed("This product cannot be customized.")

    printing_shop = None
    if printing_shop_id is not None:
        printing_shop = _active_shops().filter(pk=printing_shop_id).first()
        if printing_shop is None:
            raise ResourceNotFound("Printing shop not found.")

    with transaction.atomic():
        request = CustomizationRequest.objects.create(
            customer_id=actor.user_id,
            product=product,
            printing_shop=printing_shop,
            instructions=instructions or "",
        )
        StatusTransition.objects.create(
            request=request,
            from_status="",
            to_status=request.status,
            actor_id=actor.user_id,
            note="Request submitted",
        )
        record_audit(
            actor_id=actor.user_id,
            action="customization.create",
            entity_type="customization_request",
            entity_id=request.pk,
            payload={"product_id": str(product.pk)},
        )
        publish(
            EventType.REQUEST_CREATED,
            {"request_id": str(request.pk), "customer_id": actor.user_id, "product_id": str(product.pk)},
            aggregate_id=request.pk,
        )
    return request


def assign_designer(request_id, *, actor, designer_id=None):
    request = get_request(request_id)
    if not actor.can_design:
        raise ActionForbidden("Only designers can take customization requests.")

    if actor.is_admin and designer_id is not None:
        designer = get_user_model().objects.filter(pk=designer_id).first()
        if designer is None:
            raise ResourceNotFound("Designer not found.")
        if designer.role not in DESIGNER_ROLES:
            raise ValidationFailed("User is not a designer.")
    else:
        if designer_id is not None and designer_id != actor.user_id:
            raise ActionForbidden("Designers can only assign requests to themselves.")
        designer_id = actor.user_id

    if request.status != S.PENDING_DESIGNER_REVIEW:
        raise InvalidState("Request is no longer available.")

    with transaction.atomic():
        _transition(request, S.ASSIGNED, actor=actor, changes={"designer_id": designer_id}, note="Designer assigned")
        publish(
            EventType.DESIGNER_ASSIGNED,
            {"request_id": str(request.pk), "designer_id": designer_id, "customer_id": request.customer_id},
            aggregate_id=request.pk,
        )
    return request


def upload_final_design(request_id, *, actor, final_file, preview_image, notes=""):
    request = get_request(request_id)
    if request.designer_id != actor.user_id:
        raise ActionForbidden("You are not assigned to this request.")
    if request.status not in (S.ASSIGNED, S.IN_PROGRESS, S.REJECTED):
        raise InvalidState("Request is not in progress.")

    if not final_file or not preview_image:
        raise ValidationFailed("Both a final file and a preview image are required.", code="missing_design_files")
    store = get_file_store()
    stored_final = store.get(final_file)
    stored_preview = store.get(preview_image)
    if stored_final is None or stored_preview is None:
        raise ValidationFailed("Uploaded design files could not be found.", code="unknown_file_reference")

    with transaction.atomic():
        if request.status in (S.ASSIGNED, S.REJECTED):
            _transition(request, S.IN_PROGRESS, actor=actor, note="Designer started work")
        _transition(
            request,
            S.AWAITING_CUSTOMER_APPROVAL,
            actor=actor,
            changes={
                "designer_final_file": stored_final.reference,
                "designer_final_file_url": stored_final.url,
                "designer_preview_image": stored_preview.url,
                "designer_notes": notes or "",
            },
            note="Final design uploaded",
        )
        publish(
            EventType.DESIGN_COMPLETED,
            {"request_id": str(request.pk), "designer_id": actor.user_id, "customer_id": request.customer_id},
            aggregate_id=request.pk,
        )
    return request


SHOP_SELECTABLE_STATUSES = frozenset(NON_TERMINAL_STATUSES)


def _active_shops():
    return get_user_model().objects.filter(role=UserRole.SHOP_OWNER, is_active=True)


def select_printing_shop(request_id, *, actor, shop_id):
    request = get_request(request_id)
    if request.customer_id != actor.user_id:
        raise ActionForbidden("Only the customer can choose the printing shop.")
    if request.status not in SHOP_SELECTABLE_STATUSES:
        raise InvalidState(f"Cannot change the printing shop while the request is {request.status}.")
    if request.payment_status != PaymentStatus.UNPAID:
        raise InvalidState("The printing shop is locked once payment has been taken.")

    shop = _active_shops().filter(pk=shop_id).first()
    if shop is None:
        raise ResourceNotFound("Printing shop not found.")
    if request.printing_shop_id == shop.pk:
        return request

    previous = request.printing_shop_id
    with transaction.atomic():
        updated = conditional_update(
            request.pk,
            owner=LIFECYCLE,
            expected={"status": request.status, "printing_shop_id": previous, "payment_status": PaymentStatus.UNPAID},
            changes={"printing_shop_id": shop.pk},
        )
        if not updated:
            raise InvalidState("The request was changed by someone else. Reload and try again.")
        # A quote from the previous shop does not carry over.
        escrow_services.clear_production_fee(request.pk)
        record_audit(
            actor_id=actor.user_id,
            action="customization.shop_selected",
            entity_type="customization_request",
            entity_id=request.pk,
            payload={"from": previous, "to": shop.pk},
        )
        publish(
            EventType.SHOP_SELECTED,
            {"request_id": str(request.pk), "shop_id": shop.pk, "customer_id": request.customer_id, "designer_id": request.designer_id},
            aggregate_id=request.pk,
        )
    logger.info("Request %s printing shop %s -> %s", request.pk, previous, shop.pk)
    request.refresh_from_db()
    return request


def available_printing_shops(request_id, *, actor):
    """Active shops the customer can pick from, the current choice first."""
    request = get_request(request_id)
    if not actor.is_admin and actor.user_id not in (request.customer_id, request.designer_id):
        raise ActionForbidden("Only the customer or the designer can browse printing shops.")
    shops = list(_active_shops().select_related("payout_account").order_by("username"))
    shops.sort(key=lambda shop: shop.pk != request.printing_shop_id)
    return shops


def _final_design_url(request, message_id):
    if message_id:
        try:
            url = get_message_lookup().final_design_url(message_id, request)
        except MessageLookupError as exc:
            logger.warning("Could not read final design from message %s: %s", message_id, exc)
            url = None
        if url:
            return url
    return request.designer_final_file_url


def approve_design(request_id, *, actor, message_id=None, gateway=None):
    request = get_request(request_id)
    if request.customer_id != actor.user_id:
        raise ActionForbidden("Only the customer can approve the design.")
    if request.status != S.AWAITING_CUSTOMER_APPROVAL:
        raise InvalidState(f"Cannot approve design in current status: {request.status}")

    final_design_url = _final_design_url(request, message_id)
    if not final_design_url:
        raise ValidationFailed("No final design is attached to this request.", code="missing_final_design")

    with transaction.atomic():
        _transition(
            request,
            S.READY_FOR_PRODUCTION,
            actor=actor,
            changes={"approved_at": timezone.now(), "final_design_url": final_design_url},
            note="Customer approved the design",
        )
        publish(
            EventType.DESIGN_APPROVED,
            {
                "request_id": str(request.pk),
                "customer_id": request.customer_id,
                "designer_id": request.designer_id,
                "final_design_url": final_design_url,
            },
            aggregate_id=request.pk,
            dedup_key=f"design-approved:{request.pk}",
        )
        if request.printing_shop_id:
            publish(
                EventType.READY_FOR_PRODUCTION,
                {"request_id": str(request.pk), "shop_id": request.printing_shop_id, "final_design_url": final_design_url},
                aggregate_id=request.pk,
                dedup_key=f"ready-for-production:{request.pk}",
            )

    # The approval is committed; a payout problem is reported, never rolled back.
    result = ApprovalResult(request=request, final_design_url=final_design_url, payout_processed=True)
    try:
        result.payout = escrow_services.release_designer_payment(request.pk, gateway=gateway)
    except (DisbursementGatewayError, APIException) as exc:
        result.payout_processed = False
        result.payout_error = str(getattr(exc, "detail", exc))
        logger.warning("Designer payout for %s not processed: %s", request.pk, result.payout_error)
    except Exception as exc:
        result.payout_processed = False
        result.payout_error = f"Unexpected error while releasing the designer payout ({exc.__class__.__name__})."
        logger.exception("Designer payout for %s crashed", request.pk)

    if not result.payout_processed:
        publish(
            EventType.PAYOUT_FAILED,
            {
                "request_id": str(request.pk),
                "role": "designer",
                "designer_id": request.designer_id,
                "error": result.payout_error,
            },
            aggregate_id=request.pk,
        )
    request.refresh_from_db()
    return result


def reject_design(request_id, *, actor, reason):
    request = get_request(request_id)
    if request.customer_id != actor.user_id:
        raise ActionForbidden("Only the customer can reject the design.")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A rejection reason is required.", code="missing_reason")
    if request.status != S.AWAITING_CUSTOMER_APPROVAL:
        raise InvalidState("Request is not awaiting approval.")

    with transaction.atomic():
        _transition(
            request,
            S.IN_PROGRESS,
            actor=actor,
            changes={"rejection_reason": reason, "revision_count": F("revision_count") + 1},
            note=f"Revision requested: {reason}",
        )
        publish(
            EventType.DESIGN_REJECTED,
            {
                "request_id": str(request.pk),
                "customer_id": request.customer_id,
                "designer_id": request.designer_id,
                "reason": reason,
                "revision": request.revision_count,
            },
            aggregate_id=request.pk,
        )
    return request


def cancel_request(request_id, *, actor, reason=""):
    request = get_request(request_id)
    if request.customer_id != actor.user_id and not actor.is_admin:
        raise ActionForbidden("Only the customer or an admin can cancel this request.")
    if request.status not in NON_TERMINAL_STATUSES:
        raise InvalidState("Cannot cancel this request.")

    with transaction.atomic():
        _transition(request, S.CANCELLED, actor=actor, note=reason or "Cancelled")
        publish(
            EventType.REQUEST_CANCELLED,
            {
                "request_id": str(request.pk),
                "customer_id": request.customer_id,
                "designer_id": request.designer_id,
                "payment_status": request.payment_status,
                "reason": reason,
            },
            aggregate_id=request.pk,
        )
    return request
