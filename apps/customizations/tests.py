import uuid
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.test import override_settings
from rest_framework.test import APITestCase

from apps.accounts.models import PayoutAccount
from apps.catalog.models import Product
from apps.common.actors import Actor
from apps.common.exceptions import InvalidState
from apps.customizations import lifecycle
from apps.customizations.collaborators import MessageLookupError
from apps.customizations.models import CustomizationRequest, CustomizationStatus, PaymentStatus, StatusTransition
from apps.customizations.repository import ESCROW, LIFECYCLE, WEBHOOK, conditional_update
from apps.escrow.gateway import Disbursement, DisbursementGatewayError
from apps.events.models import EventType, OutboxEvent

User = get_user_model()
S = CustomizationStatus


class ChatMessageLookup:
    def final_design_url(self, message_id, request):
        return f"https://chat.example.com/{message_id}/final.png"


class UnavailableMessageLookup:
    def final_design_url(self, message_id, request):
        raise MessageLookupError("chat store offline")


class BrokenMessageLookup:
    def final_design_url(self, message_id, request):
        raise RuntimeError("bug in lookup backend")


def accepted_disbursement(external_id="", amount=Decimal("90.00")):
    return Disbursement(id="disb-001", external_id=external_id, amount=amount, status="PENDING")


class CustomizationTestMixin:
    def setUp(self):
        self.admin = User.objects.create_user(username="admin_cz", password="admin123", role="ADMIN")
        self.customer = User.objects.create_user(username="customer_cz", password="customer123", role="CUSTOMER")
        self.other_customer = User.objects.create_user(username="other_cz", password="other123", role="CUSTOMER")
        self.designer = User.objects.create_user(username="designer_cz", password="designer123", role="DESIGNER")
        self.shop = User.objects.create_user(username="shop_cz", password="shop123", role="SHOP_OWNER")
        PayoutAccount.objects.create(
            user=self.designer,
            bank_code="BCA",
            account_number="1234567890",
            account_holder_name="Dina Designer",
            email="dina@example.com",
        )
        self.product = Product.objects.create(sku="tee-001", name="Basic Tee", default_price=Decimal("150.00"))

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def make_request(self, status=S.AWAITING_CUSTOMER_APPROVAL, **fields):
        values = {
            "customer": self.customer,
            "designer": self.designer,
            "product": self.product,
            "status": status,
            "design_fee": Decimal("100.00"),
            "payment_status": PaymentStatus.HELD,
            "paid_amount": Decimal("100.00"),
            "payment_reference": "INV-1",
            "designer_final_file": "https://files.example.com/final.png",
            "designer_final_file_url": "https://files.example.com/final.png",
            "designer_preview_image": "https://files.example.com/preview.png",
        }
        values.update(fields)
        return CustomizationRequest.objects.create(**values)

    def url(self, request, suffix=""):
        return f"/api/v1/customizations/{request.pk}/{suffix}"


class CustomizationFlowTests(CustomizationTestMixin, APITestCase):
    def test_full_flow_from_submission_to_designer_payout(self):
        self.auth_as("customer_cz", "customer123")
        created = self.client.post(
            "/api/v1/customizations/",
            {"product": str(self.product.id), "instructions": "Logo on the front"},
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.data["status"], "pending_designer_review")
        request_id = created.data["id"]

        self.auth_as("designer_cz", "designer123")
        assigned = self.client.patch(f"/api/v1/customizations/{request_id}/", {"action": "assign"}, format="json")
        self.assertEqual(assigned.status_code, 200)
        self.assertEqual(assigned.data["status"], "assigned")
        self.assertEqual(assigned.data["designer"], self.designer.id)

        priced = self.client.post(f"/api/v1/customizations/{request_id}/pricing/", {"design_fee": "100.00"}, format="json")
        self.assertEqual(priced.status_code, 200)
        self.assertEqual(priced.data["pricing_agreement"]["design_fee"], "100.00")

        self.auth_as("admin_cz", "admin123")
        paid = self.client.post(
            f"/api/v1/customizations/{request_id}/escrow-payment/",
            {"amount": "100.00", "reference": "INV-100"},
            format="json",
        )
        self.assertEqual(paid.status_code, 201)
        self.assertEqual(paid.data["payment_status"], "held")

        self.auth_as("designer_cz", "designer123")
        uploaded = self.client.patch(
            f"/api/v1/customizations/{request_id}/",
            {
                "action": "uploadFinal",
                "final_file": "https://files.example.com/final.png",
                "preview_image": "https://files.example.com/preview.png",
                "notes": "Two colour print",
            },
            format="json",
        )
        self.assertEqual(uploaded.status_code, 200)
        self.assertEqual(uploaded.data["status"], "awaiting_customer_approval")

        self.auth_as("customer_cz", "customer123")
        with mock.patch("apps.escrow.services.get_disbursement_gateway") as gateway_factory:
            gateway_factory.return_value.create_disbursement.return_value = accepted_disbursement()
            approved = self.client.post(f"/api/v1/customizations/{request_id}/approve-design/", {}, format="json")

        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.data["status"], "ready_for_production")
        self.assertEqual(approved.data["finalDesignUrl"], "https://files.example.com/final.png")
        self.assertTrue(approved.data["payoutProcessed"])
        self.assertNotIn("payoutError", approved.data)

        sent = gateway_factory.return_value.create_disbursement.call_args.args[0]
        self.assertEqual(sent.amount, Decimal("90.00"))
        self.assertEqual(sent.bank_code, "BCA")

        customization = CustomizationRequest.objects.get(pk=request_id)
        self.assertEqual(customization.designer_payout_amount, Decimal("90.00"))
        self.assertTrue(customization.designer_payout_reference.startswith(f"designer-payout-{customization.pk.hex}-"))
        self.assertEqual(sent.external_id, customization.designer_payout_reference)
        self.assertIsNone(customization.designer_paid_at)
        self.assertIsNotNone(customization.approved_at)
        self.assertEqual(
            list(customization.history.values_list("to_status", flat=True)),
            ["pending_designer_review", "assigned", "in_progress", "awaiting_customer_approval", "ready_for_production"],
        )
        self.assertTrue(OutboxEvent.objects.filter(event_type=EventType.PAYOUT_REQUESTED).exists())

    def test_shop_owner_cannot_submit_requests(self):
        self.auth_as("shop_cz", "shop123")
        response = self.client.post("/api/v1/customizations/", {"product": str(self.product.id)}, format="json")
        self.assertEqual(response.status_code, 403)

    def test_unknown_product_is_not_found(self):
        self.auth_as("customer_cz", "customer123")
        response = self.client.post("/api/v1/customizations/", {"product": str(uuid.uuid4())}, format="json")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "not_found")

    def test_printing_shop_must_be_a_shop_owner(self):
        self.auth_as("customer_cz", "customer123")
        response = self.client.post(
            "/api/v1/customizations/",
            {"product": str(self.product.id), "printing_shop": self.designer.id},
            format="json",
        )
        self.assertEqual(response.status_code, 404)

    def test_list_only_shows_requests_the_caller_is_party_to(self):
        mine = self.make_request(status=S.IN_PROGRESS)
        self.make_request(status=S.IN_PROGRESS, customer=self.other_customer)
        open_request = self.make_request(
            status=S.PENDING_DESIGNER_REVIEW, customer=self.other_customer, designer=None, payment_status=PaymentStatus.UNPAID
        )

        self.auth_as("customer_cz", "customer123")
        response = self.client.get("/api/v1/customizations/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["id"] for row in response.data["results"]], [str(mine.id)])

        self.auth_as("designer_cz", "designer123")
        response = self.client.get("/api/v1/customizations/?status=pending_designer_review")
        self.assertEqual([row["id"] for row in response.data["results"]], [str(open_request.id)])

        self.auth_as("admin_cz", "admin123")
        response = self.client.get("/api/v1/customizations/")
        self.assertEqual(response.data["count"], 3)

    def test_retrieve_of_foreign_request_is_not_found(self):
        foreign = self.make_request(customer=self.other_customer)
        self.auth_as("customer_cz", "customer123")
        response = self.client.get(self.url(foreign))
        self.assertEqual(response.status_code, 404)


class LifecycleGuardTests(CustomizationTestMixin, APITestCase):
    def test_unknown_request_is_not_found(self):
        self.auth_as("customer_cz", "customer123")
        response = self.client.patch(f"/api/v1/customizations/{uuid.uuid4()}/", {"action": "cancel"}, format="json")
        self.assertEqual(response.status_code, 404)

    def test_unknown_action_is_rejected(self):
        customization = self.make_request()
        self.auth_as("customer_cz", "customer123")
        response = self.client.patch(self.url(customization), {"action": "teleport"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_action")

    def test_customer_cannot_take_a_request(self):
        customization = self.make_request(status=S.PENDING_DESIGNER_REVIEW, designer=None)
        self.auth_as("customer_cz", "customer123")
        response = self.client.patch(self.url(customization), {"action": "assign"}, format="json")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["code"], "forbidden")

    def test_taken_request_cannot_be_assigned_again(self):
        customization = self.make_request(status=S.ASSIGNED)
        self.auth_as("designer_cz", "designer123")
        response = self.client.patch(self.url(customization), {"action": "assign"}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "invalid_state")

    def test_only_assigned_designer_can_upload(self):
        other_designer = User.objects.create_user(username="other_designer", password="designer123", role="DESIGNER")
        customization = self.make_request(status=S.IN_PROGRESS, designer=other_designer)
        self.auth_as("designer_cz", "designer123")
        response = self.client.patch(
            self.url(customization),
            {
                "action": "uploadFinal",
                "final_file": "https://files.example.com/final.png",
                "preview_image": "https://files.example.com/preview.png",
            },
            format="json",
        )
        self.assertEqual(response.status_code, 403)

    def test_upload_requires_resolvable_files(self):
        customization = self.make_request(status=S.IN_PROGRESS)
        self.auth_as("designer_cz", "designer123")
        response = self.client.patch(
            self.url(customization),
            {"action": "uploadFinal", "final_file": "local/final.png", "preview_image": "local/preview.png"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "unknown_file_reference")

    def test_only_customer_can_approve(self):
        customization = self.make_request()
        self.auth_as("other_cz", "other123")
        response = self.client.post(self.url(customization, "approve-design/"), {}, format="json")
        self.assertEqual(response.status_code, 403)
        customization.refresh_from_db()
        self.assertEqual(customization.status, S.AWAITING_CUSTOMER_APPROVAL)

    def test_approve_outside_awaiting_approval_conflicts(self):
        customization = self.make_request(status=S.IN_PROGRESS)
        self.auth_as("customer_cz", "customer123")
        response = self.client.post(self.url(customization, "approve-design/"), {}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertIn("in_progress", str(response.data["detail"]))

    def test_approve_without_final_design_is_rejected(self):
        customization = self.make_request(designer_final_file_url="")
        self.auth_as("customer_cz", "customer123")
        response = self.client.post(self.url(customization, "approve-design/"), {}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "missing_final_design")

    def test_reject_requires_reason(self):
        customization = self.make_request()
        self.auth_as("customer_cz", "customer123")
        response = self.client.patch(self.url(customization), {"action": "reject", "reason": "  "}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "missing_reason")

    def test_reject_sends_design_back_for_revision(self):
        customization = self.make_request()
        self.auth_as("customer_cz", "customer123")
        response = self.client.patch(
            self.url(customization), {"action": "reject", "reason": "Logo is too small"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "in_progress")
        self.assertEqual(response.data["revision_count"], 1)
        self.assertEqual(response.data["rejection_reason"], "Logo is too small")
        self.assertTrue(OutboxEvent.objects.filter(event_type=EventType.DESIGN_REJECTED).exists())

    def test_cancel_terminal_request_conflicts(self):
        customization = self.make_request(status=S.READY_FOR_PRODUCTION)
        self.auth_as("customer_cz", "customer123")
        response = self.client.patch(self.url(customization), {"action": "cancel"}, format="json")
        self.assertEqual(response.status_code, 409)

    def test_admin_can_cancel_any_open_request(self):
        customization = self.make_request(status=S.IN_PROGRESS)
        self.auth_as("admin_cz", "admin123")
        response = self.client.patch(self.url(customization), {"action": "cancel", "reason": "Duplicate"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "cancelled")


class ApprovalPayoutTests(CustomizationTestMixin, APITestCase):
    def test_gateway_failure_does_not_block_approval(self):
        customization = self.make_request()
        self.auth_as("customer_cz", "customer123")
        with mock.patch("apps.escrow.services.get_disbursement_gateway") as gateway_factory:
            gateway_factory.return_value.create_disbursement.side_effect = DisbursementGatewayError("Provider down")
            response = self.client.patch(self.url(customization), {"action": "approve"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "ready_for_production")
        self.assertFalse(response.data["payoutProcessed"])
        self.assertIn("Provider down", response.data["payoutError"])

        customization.refresh_from_db()
        self.assertEqual(customization.status, S.READY_FOR_PRODUCTION)
        self.assertTrue(customization.designer_payout_reference.startswith("designer-payout-"))
        self.assertEqual(customization.designer_payout_failure_code, "UNCONFIRMED")
        failed = OutboxEvent.objects.get(event_type=EventType.PAYOUT_FAILED)
        self.assertEqual(failed.payload["request_id"], str(customization.pk))

    def test_missing_escrow_payment_is_reported_not_raised(self):
        customization = self.make_request(payment_status=PaymentStatus.UNPAID, paid_amount=Decimal("0.00"))
        self.auth_as("customer_cz", "customer123")
        with mock.patch("apps.escrow.services.get_disbursement_gateway") as gateway_factory:
            response = self.client.post(self.url(customization, "approve-design/"), {}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data["payoutProcessed"])
        self.assertIn("No payment details", response.data["payoutError"])
        gateway_factory.return_value.create_disbursement.assert_not_called()

    def test_repeated_approval_pays_designer_once(self):
        customization = self.make_request()
        self.auth_as("customer_cz", "customer123")
        with mock.patch("apps.escrow.services.get_disbursement_gateway") as gateway_factory:
            gateway_factory.return_value.create_disbursement.return_value = accepted_disbursement()
            first = self.client.post(self.url(customization, "approve-design/"), {}, format="json")
            second = self.client.post(self.url(customization, "approve-design/"), {}, format="json")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(gateway_factory.return_value.create_disbursement.call_count, 1)
        self.assertEqual(OutboxEvent.objects.filter(event_type=EventType.DESIGN_APPROVED).count(), 1)

    @override_settings(CUSTOMIZATION_MESSAGE_LOOKUP="apps.customizations.tests.ChatMessageLookup")
    def test_final_design_is_read_from_chat_message(self):
        customization = self.make_request()
        self.auth_as("customer_cz", "customer123")
        with mock.patch("apps.escrow.services.get_disbursement_gateway") as gateway_factory:
            gateway_factory.return_value.create_disbursement.return_value = accepted_disbursement()
            response = self.client.post(self.url(customization, "approve-design/"), {"messageId": "msg-42"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["finalDesignUrl"], "https://chat.example.com/msg-42/final.png")
        customization.refresh_from_db()
        self.assertEqual(customization.final_design_url, "https://chat.example.com/msg-42/final.png")

    @override_settings(CUSTOMIZATION_MESSAGE_LOOKUP="apps.customizations.tests.UnavailableMessageLookup")
    def test_unreadable_chat_message_falls_back_to_uploaded_file(self):
        customization = self.make_request()
        self.auth_as("customer_cz", "customer123")
        with mock.patch("apps.escrow.services.get_disbursement_gateway") as gateway_factory:
            gateway_factory.return_value.create_disbursement.return_value = accepted_disbursement()
            response = self.client.post(self.url(customization, "approve-design/"), {"messageId": "msg-42"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["finalDesignUrl"], "https://files.example.com/final.png")

    @override_settings(CUSTOMIZATION_MESSAGE_LOOKUP="apps.customizations.tests.BrokenMessageLookup")
    def test_lookup_bug_is_not_hidden(self):
        customization = self.make_request()
        with self.assertRaises(RuntimeError):
            lifecycle.approve_design(customization.pk, actor=Actor.from_user(self.customer), message_id="msg-42")

        customization.refresh_from_db()
        self.assertEqual(customization.status, S.AWAITING_CUSTOMER_APPROVAL)

    def test_ready_for_production_event_when_shop_attached(self):
        customization = self.make_request(printing_shop=self.shop)
        self.auth_as("customer_cz", "customer123")
        with mock.patch("apps.escrow.services.get_disbursement_gateway") as gateway_factory:
            gateway_factory.return_value.create_disbursement.return_value = accepted_disbursement()
            self.client.post(self.url(customization, "approve-design/"), {}, format="json")

        event = OutboxEvent.objects.get(event_type=EventType.READY_FOR_PRODUCTION)
        self.assertEqual(event.payload["shop_id"], self.shop.id)


class PrintingShopTests(CustomizationTestMixin, APITestCase):
    def setUp(self):
        super().setUp()
        self.other_shop = User.objects.create_user(username="shop2_cz", password="shop123", role="SHOP_OWNER")

    def unpaid_request(self, **fields):
        values = {
            "status": S.IN_PROGRESS,
            "payment_status": PaymentStatus.UNPAID,
            "paid_amount": Decimal("0.00"),
            "payment_reference": "",
        }
        values.update(fields)
        return self.make_request(**values)

    def test_customer_switches_shop_and_old_quote_is_dropped(self):
        customization = self.unpaid_request(printing_shop=self.shop, production_fee=Decimal("40.00"))
        self.auth_as("customer_cz", "customer123")
        response = self.client.post(self.url(customization, "select-shop/"), {"shopId": self.other_shop.id}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["printing_shop"], self.other_shop.id)
        self.assertEqual(response.data["pricing_agreement"]["production_fee"], "0.00")
        event = OutboxEvent.objects.get(event_type=EventType.SHOP_SELECTED)
        self.assertEqual(event.payload["shop_id"], self.other_shop.id)

    def test_only_the_customer_selects_the_shop(self):
        customization = self.unpaid_request()
        self.auth_as("designer_cz", "designer123")
        response = self.client.post(self.url(customization, "select-shop/"), {"shop_id": self.shop.id}, format="json")
        self.assertEqual(response.status_code, 403)

    def test_shop_cannot_change_after_approval_or_payment(self):
        approved = self.unpaid_request(status=S.READY_FOR_PRODUCTION)
        paid = self.make_request(status=S.IN_PROGRESS)
        self.auth_as("customer_cz", "customer123")
        for customization in (approved, paid):
            response = self.client.post(self.url(customization, "select-shop/"), {"shop_id": self.shop.id}, format="json")
            self.assertEqual(response.status_code, 409)
            customization.refresh_from_db()
            self.assertIsNone(customization.printing_shop_id)

    def test_selected_user_must_run_a_shop(self):
        customization = self.unpaid_request()
        self.auth_as("customer_cz", "customer123")
        response = self.client.post(self.url(customization, "select-shop/"), {"shop_id": self.designer.id}, format="json")
        self.assertEqual(response.status_code, 404)

    def test_available_shops_put_current_choice_first(self):
        customization = self.unpaid_request(printing_shop=self.other_shop)
        self.auth_as("designer_cz", "designer123")
        response = self.client.get(self.url(customization, "available-shops/"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual([shop["id"] for shop in response.data], [self.other_shop.id, self.shop.id])
        self.assertFalse(response.data[0]["accepts_payouts"])

        self.auth_as("other_cz", "other123")
        self.assertEqual(self.client.get(self.url(customization, "available-shops/")).status_code, 403)

    def test_attached_shop_quotes_production_fee(self):
        customization = self.unpaid_request(printing_shop=self.shop)
        self.auth_as("shop_cz", "shop123")
        response = self.client.post(self.url(customization, "shop-pricing/"), {"printingCost": "35.50"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["pricing_agreement"]["production_fee"], "35.50")
        self.assertEqual(response.data["pricing_agreement"]["design_fee"], "100.00")

    def test_only_the_attached_shop_quotes(self):
        customization = self.unpaid_request(printing_shop=self.shop)
        self.auth_as("shop2_cz", "shop123")
        foreign = self.client.post(self.url(customization, "shop-pricing/"), {"production_fee": "10.00"}, format="json")
        self.auth_as("customer_cz", "customer123")
        customer = self.client.post(self.url(customization, "shop-pricing/"), {"production_fee": "10.00"}, format="json")

        self.assertEqual(foreign.status_code, 403)
        self.assertEqual(customer.status_code, 403)
        customization.refresh_from_db()
        self.assertEqual(customization.production_fee, Decimal("0.00"))

    def test_shop_pricing_needs_a_selected_shop(self):
        customization = self.unpaid_request()
        self.auth_as("shop_cz", "shop123")
        response = self.client.post(self.url(customization, "shop-pricing/"), {"production_fee": "10.00"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "no_printing_shop")

    def test_shop_pricing_is_locked_once_payment_is_held(self):
        customization = self.make_request(status=S.IN_PROGRESS, printing_shop=self.shop)
        self.auth_as("shop_cz", "shop123")
        response = self.client.post(self.url(customization, "shop-pricing/"), {"production_fee": "10.00"}, format="json")
        self.assertEqual(response.status_code, 409)

    def test_negative_printing_cost_is_rejected(self):
        customization = self.unpaid_request(printing_shop=self.shop)
        self.auth_as("shop_cz", "shop123")
        response = self.client.post(self.url(customization, "shop-pricing/"), {"printingCost": "-1.00"}, format="json")
        self.assertEqual(response.status_code, 400)


class ConcurrencyTests(CustomizationTestMixin, APITestCase):
    def test_stale_transition_loses_to_concurrent_writer(self):
        customization = self.make_request(status=S.PENDING_DESIGNER_REVIEW, designer=None)
        stale = CustomizationRequest.objects.get(pk=customization.pk)

        rival = User.objects.create_user(username="rival_designer", password="designer123", role="DESIGNER")
        lifecycle.assign_designer(customization.pk, actor=Actor.from_user(rival))

        with mock.patch("apps.customizations.lifecycle.get_request", return_value=stale):
            with self.assertRaises(InvalidState):
                lifecycle.assign_designer(customization.pk, actor=Actor.from_user(self.designer))

        customization.refresh_from_db()
        self.assertEqual(customization.designer_id, rival.id)
        self.assertEqual(StatusTransition.objects.filter(request=customization, to_status=S.ASSIGNED).count(), 1)

    def test_conditional_update_checks_expected_values(self):
        customization = self.make_request(status=S.IN_PROGRESS)
        self.assertFalse(
            conditional_update(
                customization.pk,
                owner=LIFECYCLE,
                expected={"status": S.AWAITING_CUSTOMER_APPROVAL},
                changes={"status": S.READY_FOR_PRODUCTION},
            )
        )
        self.assertTrue(
            conditional_update(
                customization.pk,
                owner=LIFECYCLE,
                expected={"status": S.IN_PROGRESS},
                changes={"status": S.AWAITING_CUSTOMER_APPROVAL},
            )
        )

    def test_writers_cannot_touch_fields_they_do_not_own(self):
        customization = self.make_request()
        with self.assertRaises(ValueError):
            conditional_update(customization.pk, owner=WEBHOOK, changes={"status": S.CANCELLED})
        with self.assertRaises(ValueError):
            conditional_update(customization.pk, owner=LIFECYCLE, changes={"designer_payout_id": "disb-1"})
        with self.assertRaises(ValueError):
            conditional_update(customization.pk, owner=ESCROW, changes={"designer_paid_at": None})

    def test_payout_confirmation_survives_concurrent_transition(self):
        customization = self.make_request(status=S.READY_FOR_PRODUCTION, designer_payout_reference="designer-payout-x-1")
        stale = CustomizationRequest.objects.get(pk=customization.pk)
        conditional_update(
            customization.pk,
            owner=WEBHOOK,
            expected={"designer_payout_id": ""},
            changes={"designer_payout_id": "disb-9"},
        )
        conditional_update(stale.pk, owner=LIFECYCLE, changes={"designer_notes": "archived"})

        customization.refresh_from_db()
        self.assertEqual(customization.designer_payout_id, "disb-9")
        self.assertEqual(customization.designer_notes, "archived")


class TransitionTableTests(APITestCase):
    def test_terminal_statuses_have_no_outgoing_moves(self):
        for terminal in (S.READY_FOR_PRODUCTION, S.CANCELLED):
            for target in S.values:
                self.assertFalse(lifecycle.can_transition(terminal, target))

    def test_every_open_status_can_be_cancelled(self):
        for status in lifecycle.NON_TERMINAL_STATUSES:
            self.assertTrue(lifecycle.can_transition(status, S.CANCELLED))

    def test_approval_only_from_awaiting_customer_approval(self):
        allowed = [status for status in S.values if lifecycle.can_transition(status, S.READY_FOR_PRODUCTION)]
        self.assertEqual(allowed, [S.AWAITING_CUSTOMER_APPROVAL])
