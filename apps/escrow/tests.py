import base64
import hashlib
import hmac
import json
import uuid
from decimal import Decimal
from unittest import mock

import httpx
from django.contrib.auth import get_user_model
from django.test import SimpleTestCase
from django.utils import timezone
from rest_framework.test import APITestCase

from apps.accounts.models import PayoutAccount
from apps.audit.models import AuditLog
from apps.catalog.models import Product
from apps.common.exceptions import InvalidState, ValidationFailed
from apps.customizations.models import CustomizationRequest, CustomizationStatus, PaymentStatus
from apps.escrow import services
from apps.escrow.commission import CommissionType, calculate_commission
from apps.escrow.gateway import (
    Disbursement,
    DisbursementGatewayError,
    DisbursementRequest,
    XenditDisbursementGateway,
)
from apps.escrow.references import DESIGNER, SHOP, TEST, UNKNOWN, build_external_id, classify_external_id, parse_external_id
from apps.escrow.webhooks import PayloadShape, detect_shape, normalize_payload
from apps.events.models import EventType, OutboxEvent

User = get_user_model()
S = CustomizationStatus

WEBHOOK_URL = "/api/v1/webhooks/disbursement/"
WEBHOOK_TOKEN = "test-webhook-token"


def sign(body):
    return hmac.new(WEBHOOK_TOKEN.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


class CommissionTests(SimpleTestCase):
    def test_customization_fee_uses_customization_rate(self):
        quote = calculate_commission(customization_design_fee=Decimal("100.00"))
        self.assertEqual(quote.type, CommissionType.CUSTOMIZATION)
        self.assertEqual(quote.rate, Decimal("0.10"))
        self.assertEqual(quote.amount, Decimal("10.00"))
        self.assertEqual(quote.net, Decimal("90.00"))

    def test_design_dominant_order(self):
        quote = calculate_commission(product_subtotal=Decimal("40.00"), design_subtotal=Decimal("60.00"))
        self.assertEqual(quote.type, CommissionType.DESIGN_DOMINANT)
        self.assertEqual(quote.base, Decimal("100.00"))
        self.assertEqual(quote.amount, Decimal("10.00"))

    def test_product_dominant_order(self):
        quote = calculate_commission(product_subtotal=Decimal("80.00"), design_subtotal=Decimal("20.00"))
        self.assertEqual(quote.type, CommissionType.PRODUCT_DOMINANT)
        self.assertEqual(quote.rate, Decimal("0.08"))
        self.assertEqual(quote.amount, Decimal("8.00"))

    def test_empty_order_has_no_commission(self):
        quote = calculate_commission()
        self.assertEqual(quote.type, CommissionType.NONE)
        self.assertEqual(quote.rate, Decimal("0"))
        self.assertEqual(quote.amount, Decimal("0.00"))

    def test_amounts_round_half_up_to_cents(self):
        self.assertEqual(calculate_commission(customization_design_fee=Decimal("33.33")).amount, Decimal("3.33"))
        self.assertEqual(calculate_commission(customization_design_fee=Decimal("0.05")).amount, Decimal("0.01"))

    def test_same_inputs_same_quote(self):
        first = calculate_commission(product_subtotal="12.34", design_subtotal="56.78")
        second = calculate_commission(product_subtotal=Decimal("12.34"), design_subtotal=Decimal("56.78"))
        self.assertEqual(first, second)

    def test_negative_inputs_are_rejected(self):
        with self.assertRaises(ValueError):
            calculate_commission(customization_design_fee=Decimal("-1.00"))


class ExternalIdTests(SimpleTestCase):
    def test_request_id_is_third_segment(self):
        request_id = uuid.uuid4()
        external_id = build_external_id(DESIGNER, request_id, timestamp_ms=1700000000000)
        self.assertEqual(external_id, f"designer-payout-{request_id.hex}-1700000000000")
        reference = parse_external_id(external_id)
        self.assertEqual(reference.role, DESIGNER)
        self.assertEqual(reference.request_id, request_id)
        self.assertEqual(reference.timestamp_ms, 1700000000000)

    def test_classification(self):
        self.assertEqual(classify_external_id(build_external_id(SHOP, uuid.uuid4())), SHOP)
        self.assertEqual(classify_external_id("disb-1234567890"), TEST)
        self.assertEqual(classify_external_id(""), TEST)
        self.assertEqual(classify_external_id(str(uuid.uuid4())), TEST)
        self.assertEqual(classify_external_id("order-55"), UNKNOWN)

    def test_malformed_reference_is_rejected(self):
        for external_id in ("designer-payout-abc-1", "designer-payout-123", f"designer-payout-{uuid.uuid4().hex}-soon"):
            with self.assertRaises(ValidationFailed):
                parse_external_id(external_id)


class XenditGatewayTests(SimpleTestCase):
    def make_request(self):
        return DisbursementRequest(
            external_id="designer-payout-abc-1",
            amount=Decimal("90.00"),
            bank_code="BCA",
            account_holder_name="Dina Designer",
            account_number="1234567890",
            description="Design fee payment",
            email_to=["dina@example.com"],
        )

    def gateway(self, handler):
        return XenditDisbursementGateway(
            api_base="https://xendit.test",
            secret_key="xnd_test_key",
            webhook_token=WEBHOOK_TOKEN,
            timeout=5,
            transport=httpx.MockTransport(handler),
        )

    def test_create_disbursement_posts_idempotent_request(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"id": "disb-77", "external_id": "designer-payout-abc-1", "amount": 90, "status": "PENDING"},
            )

        disbursement = self.gateway(handler).create_disbursement(self.make_request())

        self.assertEqual(disbursement, Disbursement(id="disb-77", external_id="designer-payout-abc-1", amount=Decimal("90"), status="PENDING"))
        self.assertEqual(seen["url"], "https://xendit.test/disbursements")
        self.assertEqual(seen["headers"]["X-IDEMPOTENCY-KEY"], "designer-payout-abc-1")
        expected_auth = base64.b64encode(b"xnd_test_key:").decode("ascii")
        self.assertEqual(seen["headers"]["Authorization"], f"Basic {expected_auth}")
        self.assertEqual(seen["body"]["amount"], 90.0)
        self.assertEqual(seen["body"]["email_to"], ["dina@example.com"])

    def test_provider_rejection_carries_error_code(self):
        def handler(request):
            return httpx.Response(400, json={"error_code": "INVALID_DESTINATION", "message": "Bank account not found"})

        with self.assertRaises(DisbursementGatewayError) as ctx:
            self.gateway(handler).create_disbursement(self.make_request())
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.error_code, "INVALID_DESTINATION")
        self.assertIn("Bank account not found", str(ctx.exception))
        self.assertTrue(ctx.exception.rejected)

    def test_server_error_and_duplicate_key_are_not_rejections(self):
        responses = [
            httpx.Response(503, json={"error_code": "SERVER_ERROR", "message": "Try again"}),
            httpx.Response(400, json={"error_code": "DUPLICATE_TRANSACTION_ERROR", "message": "Key already used"}),
            httpx.Response(429, json={"error_code": "RATE_LIMIT_EXCEEDED", "message": "Slow down"}),
        ]
        for response in responses:
            with self.subTest(status=response.status_code):
                with self.assertRaises(DisbursementGatewayError) as ctx:
                    self.gateway(lambda request, response=response: response).create_disbursement(self.make_request())
                self.assertFalse(ctx.exception.rejected)

    def test_timeout_becomes_gateway_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with self.assertRaises(DisbursementGatewayError) as ctx:
            self.gateway(handler).create_disbursement(self.make_request())
        self.assertFalse(ctx.exception.rejected)
        self.assertIsNone(ctx.exception.status_code)

    def test_webhook_signature(self):
        gateway = self.gateway(lambda request: httpx.Response(200))
        body = '{"id": "disb-1"}'
        self.assertTrue(gateway.verify_webhook_signature(body.encode("utf-8"), sign(body)))
        self.assertFalse(gateway.verify_webhook_signature(body.encode("utf-8"), "0" * 64))
        self.assertFalse(gateway.verify_webhook_signature(body.encode("utf-8"), ""))


class PayloadShapeTests(SimpleTestCase):
    def test_detects_the_three_shapes(self):
        self.assertEqual(detect_shape({"event": "disbursement", "data": {"id": "d"}}), PayloadShape.ENVELOPE)
        self.assertEqual(detect_shape({"disbursements": [{"id": "d"}]}), PayloadShape.BATCH)
        self.assertEqual(detect_shape({"id": "d", "status": "COMPLETED"}), PayloadShape.SINGLE)

    def test_envelope_success_is_normalized(self):
        events = normalize_payload(
            {"event": "disbursement", "data": {"id": "d-1", "reference_id": "ref", "status": "SUCCEEDED", "amount": 90}}
        )
        self.assertEqual(events[0].status, "COMPLETED")
        self.assertEqual(events[0].external_id, "ref")
        self.assertEqual(events[0].amount, Decimal("90"))

    def test_unrecognized_payload_is_rejected(self):
        with self.assertRaises(ValidationFailed):
            detect_shape({"hello": "world"})
        with self.assertRaises(ValidationFailed):
            normalize_payload({"disbursements": []})


class EscrowTestMixin:
    def setUp(self):
        self.admin = User.objects.create_user(username="admin_es", password="admin123", role="ADMIN")
        self.customer = User.objects.create_user(username="customer_es", password="customer123", role="CUSTOMER")
        self.designer = User.objects.create_user(username="designer_es", password="designer123", role="DESIGNER")
        self.shop = User.objects.create_user(username="shop_es", password="shop123", role="SHOP_OWNER")
        for user, name in ((self.designer, "Dina Designer"), (self.shop, "Print Shop")):
            PayoutAccount.objects.create(user=user, bank_code="BCA", account_number="99887766", account_holder_name=name)
        self.product = Product.objects.create(sku="mug-001", name="Mug", default_price=Decimal("80.00"))

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def make_request(self, status=S.READY_FOR_PRODUCTION, **fields):
        values = {
            "customer": self.customer,
            "designer": self.designer,
            "product": self.product,
            "status": status,
            "design_fee": Decimal("100.00"),
            "payment_status": PaymentStatus.HELD,
            "paid_amount": Decimal("100.00"),
            "payment_reference": "INV-1",
            "designer_final_file_url": "https://files.example.com/final.png",
        }
        values.update(fields)
        return CustomizationRequest.objects.create(**values)

    def mock_gateway(self, disbursement_id="disb-001"):
        gateway = mock.Mock()
        gateway.create_disbursement.side_effect = lambda req: Disbursement(
            id=disbursement_id, external_id=req.external_id, amount=req.amount, status="PENDING"
        )
        return gateway


class EscrowServiceTests(EscrowTestMixin, APITestCase):
    def test_designer_payout_is_requested_once(self):
        customization = self.make_request()
        gateway = self.mock_gateway()

        first = services.release_designer_payment(customization.pk, gateway=gateway)
        second = services.release_designer_payment(customization.pk, gateway=gateway)

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(first.external_id, second.external_id)
        self.assertEqual(first.amount, Decimal("90.00"))
        self.assertEqual(gateway.create_disbursement.call_count, 1)
        self.assertEqual(OutboxEvent.objects.filter(event_type=EventType.PAYOUT_REQUESTED).count(), 1)

    def test_payout_requires_approved_design(self):
        customization = self.make_request(status=S.AWAITING_CUSTOMER_APPROVAL)
        with self.assertRaises(InvalidState):
            services.release_designer_payment(customization.pk, gateway=self.mock_gateway())

    def test_incomplete_bank_details_block_payout(self):
        PayoutAccount.objects.filter(user=self.designer).update(account_number="")
        customization = self.make_request()
        with self.assertRaises(ValidationFailed) as ctx:
            services.release_designer_payment(customization.pk, gateway=self.mock_gateway())
        self.assertEqual(ctx.exception.detail.code, "payout_account_incomplete")
        customization.refresh_from_db()
        self.assertEqual(customization.designer_payout_reference, "")

    def test_provider_rejection_hands_the_claim_back(self):
        customization = self.make_request()
        gateway = mock.Mock()
        gateway.create_disbursement.side_effect = DisbursementGatewayError(
            "Bank account not found", status_code=400, error_code="INVALID_DESTINATION", rejected=True
        )

        with self.assertRaises(DisbursementGatewayError):
            services.release_designer_payment(customization.pk, gateway=gateway)

        customization.refresh_from_db()
        self.assertEqual(customization.designer_payout_reference, "")
        self.assertIsNone(customization.designer_payout_amount)
        self.assertEqual(customization.designer_payout_failure_code, "INVALID_DESTINATION")
        self.assertTrue(AuditLog.objects.filter(action="escrow.designer_payout.rejected").exists())

        retried = services.release_designer_payment(customization.pk, gateway=self.mock_gateway())
        self.assertTrue(retried.created)
        customization.refresh_from_db()
        self.assertEqual(customization.designer_payout_failure_code, "")

    def test_timeout_keeps_the_claim_and_reuses_the_key(self):
        customization = self.make_request()
        keys = []

        def create_disbursement(req):
            keys.append(req.external_id)
            if len(keys) == 1:
                raise DisbursementGatewayError("Disbursement provider timed out")
            return Disbursement(id="disb-late", external_id=req.external_id, amount=req.amount, status="PENDING")

        gateway = mock.Mock()
        gateway.create_disbursement.side_effect = create_disbursement

        with self.assertRaises(DisbursementGatewayError):
            services.release_designer_payment(customization.pk, gateway=gateway)

        customization.refresh_from_db()
        claimed = customization.designer_payout_reference
        self.assertEqual(claimed, keys[0])
        self.assertEqual(customization.designer_payout_amount, Decimal("90.00"))
        self.assertEqual(customization.designer_payout_failure_code, services.PAYOUT_UNCONFIRMED)
        self.assertTrue(AuditLog.objects.filter(action="escrow.designer_payout.unconfirmed").exists())

        again = services.release_designer_payment(customization.pk, gateway=gateway)
        self.assertFalse(again.created)
        self.assertEqual(len(keys), 1)

        resent = services.release_designer_payment(customization.pk, gateway=gateway, retry_failed=True)
        self.assertTrue(resent.created)
        self.assertEqual(resent.external_id, claimed)
        self.assertEqual(set(keys), {claimed})
        customization.refresh_from_db()
        self.assertEqual(customization.designer_payout_reference, claimed)
        self.assertEqual(customization.designer_payout_failure_code, "")

    def test_reported_failure_after_timeout_gets_a_new_key(self):
        customization = self.make_request()
        gateway = mock.Mock()
        gateway.create_disbursement.side_effect = DisbursementGatewayError("Disbursement provider unreachable")
        with self.assertRaises(DisbursementGatewayError):
            services.release_designer_payment(customization.pk, gateway=gateway)
        customization.refresh_from_db()
        first_key = customization.designer_payout_reference

        CustomizationRequest.objects.filter(pk=customization.pk).update(designer_payout_failure_code="INVALID_DESTINATION")
        retried = services.release_designer_payment(customization.pk, gateway=self.mock_gateway(), retry_failed=True)

        self.assertTrue(retried.created)
        self.assertNotEqual(retried.external_id, first_key)

    def test_shop_payout_waits_for_designer_payout(self):
        customization = self.make_request(printing_shop=self.shop, production_fee=Decimal("50.00"), paid_amount=Decimal("150.00"))
        with self.assertRaises(InvalidState):
            services.release_shop_payment(customization.pk, gateway=self.mock_gateway())

        services.release_designer_payment(customization.pk, gateway=self.mock_gateway("disb-designer"))
        result = services.release_shop_payment(customization.pk, gateway=self.mock_gateway("disb-shop"))

        self.assertEqual(result.commission.type, "product_dominant")
        self.assertEqual(result.amount, Decimal("46.00"))
        self.assertTrue(result.external_id.startswith(f"shop-payout-{customization.pk.hex}-"))

    def test_pending_payouts_exclude_confirmed_ones(self):
        waiting = self.make_request()
        self.make_request(designer_payout_id="disb-9", designer_paid_at=timezone.now())
        self.make_request(status=S.IN_PROGRESS)
        self.assertEqual(list(services.pending_designer_payouts()), [waiting])


class EscrowEndpointTests(EscrowTestMixin, APITestCase):
    def test_pricing_is_locked_once_payment_is_held(self):
        customization = self.make_request(status=S.IN_PROGRESS)
        self.auth_as("designer_es", "designer123")
        response = self.client.post(
            f"/api/v1/customizations/{customization.pk}/pricing/", {"design_fee": "120.00"}, format="json"
        )
        self.assertEqual(response.status_code, 409)

    def test_only_assigned_designer_sets_pricing(self):
        other = User.objects.create_user(username="other_designer_es", password="designer123", role="DESIGNER")
        customization = self.make_request(status=S.ASSIGNED, designer=other, payment_status=PaymentStatus.UNPAID)
        self.auth_as("designer_es", "designer123")
        response = self.client.post(
            f"/api/v1/customizations/{customization.pk}/pricing/", {"design_fee": "120.00"}, format="json"
        )
        self.assertEqual(response.status_code, 403)

    def test_production_fee_requires_printing_shop(self):
        customization = self.make_request(status=S.ASSIGNED, payment_status=PaymentStatus.UNPAID, paid_amount=Decimal("0"))
        self.auth_as("designer_es", "designer123")
        response = self.client.post(
            f"/api/v1/customizations/{customization.pk}/pricing/",
            {"design_fee": "120.00", "production_fee": "30.00"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_escrow_capture_is_idempotent_per_reference(self):
        customization = self.make_request(
            status=S.IN_PROGRESS, payment_status=PaymentStatus.UNPAID, paid_amount=Decimal("0"), payment_reference=""
        )
        self.auth_as("admin_es", "admin123")
        url = f"/api/v1/customizations/{customization.pk}/escrow-payment/"

        short = self.client.post(url, {"amount": "50.00", "reference": "INV-7"}, format="json")
        self.assertEqual(short.status_code, 400)

        first = self.client.post(url, {"amount": "100.00", "reference": "INV-7"}, format="json")
        again = self.client.post(url, {"amount": "100.00", "reference": "INV-7"}, format="json")
        other = self.client.post(url, {"amount": "100.00", "reference": "INV-8"}, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(again.status_code, 200)
        self.assertEqual(other.status_code, 409)
        self.assertEqual(OutboxEvent.objects.filter(event_type=EventType.PAYMENT_HELD).count(), 1)

    def test_customer_cannot_capture_payment(self):
        customization = self.make_request(status=S.IN_PROGRESS, payment_status=PaymentStatus.UNPAID)
        self.auth_as("customer_es", "customer123")
        response = self.client.post(
            f"/api/v1/customizations/{customization.pk}/escrow-payment/",
            {"amount": "100.00", "reference": "INV-9"},
            format="json",
        )
        self.assertEqual(response.status_code, 403)

    def test_escrow_summary_for_party(self):
        customization = self.make_request()
        self.auth_as("customer_es", "customer123")
        response = self.client.get(f"/api/v1/customizations/{customization.pk}/escrow/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["payment_status"], "held")
        self.assertEqual(response.data["designer_commission"]["amount"], "10.00")
        self.assertFalse(response.data["designer"]["paid"])
        self.assertIsNone(response.data["shop"])

    def test_admin_retries_failed_payout(self):
        customization = self.make_request(
            designer_payout_reference=build_external_id(DESIGNER, uuid.uuid4(), timestamp_ms=1),
            designer_payout_failure_code="INSUFFICIENT_BALANCE",
        )
        self.auth_as("admin_es", "admin123")
        with mock.patch("apps.escrow.services.get_disbursement_gateway", return_value=self.mock_gateway("disb-retry")):
            response = self.client.post(
                f"/api/v1/customizations/{customization.pk}/release-payout/", {"role": "designer"}, format="json"
            )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["created"])
        self.assertEqual(response.data["disbursement_id"], "disb-retry")
        customization.refresh_from_db()
        self.assertEqual(customization.designer_payout_failure_code, "")
        self.assertEqual(customization.designer_payout_reference, response.data["external_id"])

    def test_release_reports_provider_failure(self):
        customization = self.make_request()
        gateway = mock.Mock()
        gateway.create_disbursement.side_effect = DisbursementGatewayError("Provider down")
        self.auth_as("admin_es", "admin123")
        with mock.patch("apps.escrow.services.get_disbursement_gateway", return_value=gateway):
            response = self.client.post(
                f"/api/v1/customizations/{customization.pk}/release-payout/", {"role": "designer"}, format="json"
            )
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.data["code"], "payout_failed")

    def test_designer_cannot_release_payouts(self):
        customization = self.make_request()
        self.auth_as("designer_es", "designer123")
        response = self.client.post(
            f"/api/v1/customizations/{customization.pk}/release-payout/", {"role": "designer"}, format="json"
        )
        self.assertEqual(response.status_code, 403)

    def test_pending_payouts_listing(self):
        customization = self.make_request()
        self.auth_as("admin_es", "admin123")
        response = self.client.get("/api/v1/payouts/pending/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 1)
        row = response.data["results"][0]
        self.assertEqual(row["id"], str(customization.pk))
        self.assertEqual(row["payout_amount"], "90.00")
        self.assertFalse(row["payout_requested"])

        self.auth_as("customer_es", "customer123")
        self.assertEqual(self.client.get("/api/v1/payouts/pending/").status_code, 403)


class DisbursementWebhookTests(EscrowTestMixin, APITestCase):
    def setUp(self):
        super().setUp()
        self.customization = self.make_request(printing_shop=self.shop, production_fee=Decimal("50.00"))
        self.designer_ref = build_external_id(DESIGNER, self.customization.pk, timestamp_ms=1700000000000)
        self.shop_ref = build_external_id(SHOP, self.customization.pk, timestamp_ms=1700000000001)
        CustomizationRequest.objects.filter(pk=self.customization.pk).update(
            designer_payout_reference=self.designer_ref,
            designer_payout_amount=Decimal("90.00"),
            shop_payout_reference=self.shop_ref,
            shop_payout_amount=Decimal("46.00"),
        )

    def post_webhook(self, payload, signature=None):
        body = payload if isinstance(payload, str) else json.dumps(payload)
        return self.client.post(
            WEBHOOK_URL,
            data=body,
            content_type="application/json",
            HTTP_X_CALLBACK_TOKEN=sign(body) if signature is None else signature,
        )

    def test_completed_disbursement_marks_designer_paid(self):
        response = self.post_webhook(
            {"id": "disb-100", "external_id": self.designer_ref, "status": "COMPLETED", "amount": 90}
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["success"])
        self.assertEqual(response.data["results"][0]["outcome"], "applied")

        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_id, "disb-100")
        self.assertIsNotNone(self.customization.designer_paid_at)
        self.assertEqual(self.customization.status, S.READY_FOR_PRODUCTION)
        self.assertEqual(self.customization.shop_payout_id, "")

    def test_redelivery_is_a_no_op(self):
        payload = {"id": "disb-100", "external_id": self.designer_ref, "status": "COMPLETED", "amount": 90}
        self.post_webhook(payload)
        self.customization.refresh_from_db()
        paid_at = self.customization.designer_paid_at

        replay = self.post_webhook(payload)

        self.assertEqual(replay.status_code, 200)
        self.assertEqual(replay.data["results"][0]["outcome"], "duplicate")
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_paid_at, paid_at)
        self.assertEqual(
            OutboxEvent.objects.filter(event_type=EventType.DESIGNER_DISBURSEMENT_COMPLETED).count(), 1
        )

    def test_second_disbursement_id_is_flagged_not_applied(self):
        self.post_webhook({"id": "disb-100", "external_id": self.designer_ref, "status": "COMPLETED"})
        response = self.post_webhook({"id": "disb-200", "external_id": self.designer_ref, "status": "COMPLETED"})

        self.assertEqual(response.data["results"][0]["outcome"], "conflict")
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_id, "disb-100")
        self.assertTrue(AuditLog.objects.filter(action="escrow.designer_payout.conflict").exists())

    def test_envelope_shape(self):
        response = self.post_webhook(
            {
                "event": "disbursement.succeeded",
                "data": {"id": "disb-300", "reference_id": self.designer_ref, "status": "SUCCEEDED", "amount": 90},
            }
        )
        self.assertEqual(response.status_code, 200)
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_id, "disb-300")

    def test_batch_reconciles_every_entry(self):
        response = self.post_webhook(
            {
                "disbursements": [
                    {"id": "disb-401", "external_id": self.designer_ref, "status": "COMPLETED"},
                    {"id": "disb-402", "external_id": self.shop_ref, "status": "COMPLETED"},
                ]
            }
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["outcome"] for row in response.data["results"]], ["applied", "applied"])
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_id, "disb-401")
        self.assertEqual(self.customization.shop_payout_id, "disb-402")
        self.assertIsNotNone(self.customization.shop_paid_at)

    def test_failed_disbursement_is_recorded(self):
        payload = {
            "id": "disb-500",
            "external_id": self.designer_ref,
            "status": "FAILED",
            "failure_code": "INVALID_DESTINATION",
        }
        response = self.post_webhook(payload)
        replay = self.post_webhook(payload)

        self.assertEqual(response.data["results"][0]["outcome"], "failure_recorded")
        self.assertEqual(replay.data["results"][0]["outcome"], "duplicate")
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_failure_code, "INVALID_DESTINATION")
        self.assertEqual(self.customization.designer_payout_id, "")
        self.assertIsNone(self.customization.designer_paid_at)
        self.assertEqual(OutboxEvent.objects.filter(event_type=EventType.DISBURSEMENT_FAILED).count(), 1)

    def test_failure_for_superseded_reference_leaves_live_claim_alone(self):
        old_ref = build_external_id(DESIGNER, self.customization.pk, timestamp_ms=1690000000000)
        response = self.post_webhook(
            {"id": "disb-old", "external_id": old_ref, "status": "FAILED", "failure_code": "INVALID_DESTINATION"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["results"][0]["outcome"], "stale")
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_reference, self.designer_ref)
        self.assertEqual(self.customization.designer_payout_failure_code, "")
        self.assertFalse(OutboxEvent.objects.filter(event_type=EventType.DISBURSEMENT_FAILED).exists())
        self.assertTrue(AuditLog.objects.filter(action="escrow.designer_payout.stale_failure").exists())

        gateway = self.mock_gateway()
        result = services.release_designer_payment(self.customization.pk, gateway=gateway, retry_failed=True)
        self.assertFalse(result.created)
        gateway.create_disbursement.assert_not_called()

    def test_completion_for_superseded_reference_is_a_conflict(self):
        old_ref = build_external_id(DESIGNER, self.customization.pk, timestamp_ms=1690000000000)
        stale = self.post_webhook({"id": "disb-old", "external_id": old_ref, "status": "COMPLETED", "amount": 90})

        self.assertEqual(stale.data["results"][0]["outcome"], "conflict")
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_id, "")
        self.assertIsNone(self.customization.designer_paid_at)
        conflict = AuditLog.objects.get(action="escrow.designer_payout.conflict")
        self.assertEqual(conflict.payload["claimed_reference"], self.designer_ref)
        self.assertFalse(OutboxEvent.objects.filter(event_type=EventType.DESIGNER_DISBURSEMENT_COMPLETED).exists())

        live = self.post_webhook({"id": "disb-live", "external_id": self.designer_ref, "status": "COMPLETED", "amount": 90})
        self.assertEqual(live.data["results"][0]["outcome"], "applied")
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_id, "disb-live")

    def test_completion_clears_unconfirmed_marker(self):
        CustomizationRequest.objects.filter(pk=self.customization.pk).update(
            designer_payout_failure_code=services.PAYOUT_UNCONFIRMED
        )
        self.post_webhook({"id": "disb-101", "external_id": self.designer_ref, "status": "COMPLETED"})
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_id, "disb-101")
        self.assertEqual(self.customization.designer_payout_failure_code, "")

    def test_provider_test_webhook_is_acknowledged(self):
        response = self.post_webhook({"id": "disb-test", "external_id": "disb-1234567890", "status": "COMPLETED"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["results"][0]["outcome"], "test_webhook")

    def test_unknown_reference_format_is_rejected(self):
        response = self.post_webhook({"id": "disb-600", "external_id": "order-55", "status": "COMPLETED"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "unknown_external_id")

    def test_malformed_designer_reference_is_rejected(self):
        response = self.post_webhook({"id": "disb-601", "external_id": "designer-payout-nothex-1", "status": "COMPLETED"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_external_id")

    def test_batch_with_one_bad_reference_changes_nothing(self):
        response = self.post_webhook(
            {
                "disbursements": [
                    {"id": "disb-701", "external_id": self.designer_ref, "status": "COMPLETED"},
                    {"id": "disb-702", "external_id": "order-55", "status": "COMPLETED"},
                ]
            }
        )
        self.assertEqual(response.status_code, 400)
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_id, "")

    def test_missing_request_is_not_found(self):
        ghost_ref = build_external_id(DESIGNER, uuid.uuid4(), timestamp_ms=1)
        response = self.post_webhook({"id": "disb-800", "external_id": ghost_ref, "status": "COMPLETED"})
        self.assertEqual(response.status_code, 404)

    def test_bad_signature_is_unauthorized(self):
        payload = {"id": "disb-900", "external_id": self.designer_ref, "status": "COMPLETED"}
        self.assertEqual(self.post_webhook(payload, signature="forged").status_code, 401)
        self.assertEqual(self.post_webhook(payload, signature="").status_code, 401)
        self.customization.refresh_from_db()
        self.assertEqual(self.customization.designer_payout_id, "")

    def test_invalid_json_is_rejected(self):
        response = self.post_webhook("{not json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "malformed_payload")

    def test_get_reports_active(self):
        response = self.client.get(WEBHOOK_URL)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "active")
