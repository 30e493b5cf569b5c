from django.db.models import Q
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.common.actors import Actor
from apps.common.exceptions import PayoutFailed, ValidationFailed
from apps.common.permissions import RolePermission, has_capability
from apps.customizations import lifecycle
from apps.customizations.models import CustomizationRequest, CustomizationStatus
from apps.customizations.repository import get_request
from apps.customizations.serializers import (
    ACTION_SERIALIZERS,
    CustomizationRequestCreateSerializer,
    CustomizationRequestListSerializer,
    CustomizationRequestSerializer,
    EscrowPaymentSerializer,
    PricingSerializer,
    PrintingShopSerializer,
    ReleasePayoutSerializer,
    SelectShopSerializer,
    ShopPricingSerializer,
)
from apps.escrow import services as escrow_services
from apps.escrow.gateway import DisbursementGatewayError
from apps.escrow.references import DESIGNER


class CustomizationRequestViewSet(viewsets.ModelViewSet):
    queryset = (
        CustomizationRequest.objects.select_related("customer", "designer", "printing_shop", "product")
        .prefetch_related("history__actor")
        .order_by("-created_at")
    )
    serializer_class = CustomizationRequestSerializer
    permission_classes = [RolePermission]
    http_method_names = ["get", "post", "patch", "head", "options"]
    capability_map = {
        "list": ["customizations.view"],
        "retrieve": ["customizations.view"],
        "create": ["customizations.create"],
        "partial_update": ["customizations.act"],
        "approve_design": ["customizations.act"],
        "pricing": ["customizations.pricing"],
        "select_shop": ["customizations.act"],
        "available_shops": ["customizations.act"],
        "shop_pricing": ["customizations.shop_pricing"],
        "escrow_payment": ["escrow.capture"],
        "release_payout": ["escrow.release"],
        "escrow": ["escrow.view"],
    }

    def get_queryset(self):
        queryset = super().get_queryset()
        user = self.request.user
        if not has_capability(user, "customizations.view.all"):
            actor = Actor.from_user(user)
            visible = Q(customer=user) | Q(designer=user) | Q(printing_shop=user)
            if actor.can_design:
                visible |= Q(status=CustomizationStatus.PENDING_DESIGNER_REVIEW)
            queryset = queryset.filter(visible)

        status_param = self.request.query_params.get("status")
        if status_param:
            queryset = queryset.filter(status=status_param)
        return queryset

    def get_serializer_class(self):
        if self.action == "list":
            return CustomizationRequestListSerializer
        return CustomizationRequestSerializer

    def _actor(self):
        return Actor.from_user(self.request.user)

    def _detail(self, request_id):
        return CustomizationRequestSerializer(get_request(request_id, queryset=self.queryset)).data

    def create(self, request, *args, **kwargs):
        serializer = CustomizationRequestCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        created = lifecycle.create_request(
            actor=self._actor(),
            product_id=serializer.validated_data["product"],
            printing_shop_id=serializer.validated_data.get("printing_shop"),
            instructions=serializer.validated_data.get("instructions", ""),
        )
        return Response(self._detail(created.pk), status=status.HTTP_201_CREATED)

    def partial_update(self, request, *args, **kwargs):
        action_name = request.data.get("action")
        action_serializer_class = ACTION_SERIALIZERS.get(action_name)
        if action_serializer_class is None:
            raise ValidationFailed(
                f"action must be one of: {', '.join(ACTION_SERIALIZERS)}.",
                code="invalid_action",
            )
        serializer = action_serializer_class(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        actor = self._actor()
        pk = kwargs.get("pk")

        if action_name == "approve":
            result = lifecycle.approve_design(pk, actor=actor, message_id=data.get("message_id"))
            return Response(result.as_response(), status=200)

        if action_name == "assign":
            lifecycle.assign_designer(pk, actor=actor, designer_id=data.get("designer_id"))
        elif action_name == "uploadFinal":
            lifecycle.upload_final_design(
                pk,
                actor=actor,
                final_file=data["final_file"],
                preview_image=data["preview_image"],
                notes=data["notes"],
            )
        elif action_name == "reject":
            lifecycle.reject_design(pk, actor=actor, reason=data["reason"])
        elif action_name == "cancel":
            lifecycle.cancel_request(pk, actor=actor, reason=data["reason"])
        return Response(self._detail(pk), status=200)

    @action(detail=True, methods=["post"], url_path="approve-design")
    def approve_design(self, request, pk=None):
        serializer = ACTION_SERIALIZERS["approve"](data=request.data)
        serializer.is_valid(raise_exception=True)
        result = lifecycle.approve_design(pk, actor=self._actor(), message_id=serializer.validated_data.get("message_id"))
        return Response(result.as_response(), status=200)

    @action(detail=True, methods=["post"])
    def pricing(self, request, pk=None):
        serializer = PricingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        escrow_services.set_pricing_agreement(
            pk,
            actor=self._actor(),
            design_fee=serializer.validated_data["design_fee"],
            production_fee=serializer.validated_data["production_fee"],
        )
        return Response(self._detail(pk), status=200)

    @action(detail=True, methods=["post"], url_path="select-shop")
    def select_shop(self, request, pk=None):
        serializer = SelectShopSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        lifecycle.select_printing_shop(pk, actor=self._actor(), shop_id=serializer.validated_data["shop_id"])
        return Response(self._detail(pk), status=200)

    @action(detail=True, methods=["get"], url_path="available-shops")
    def available_shops(self, request, pk=None):
        shops = lifecycle.available_printing_shops(pk, actor=self._actor())
        return Response(PrintingShopSerializer(shops, many=True).data, status=200)

    @action(detail=True, methods=["post"], url_path="shop-pricing")
    def shop_pricing(self, request, pk=None):
        serializer = ShopPricingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        escrow_services.set_shop_pricing(pk, actor=self._actor(), production_fee=serializer.validated_data["production_fee"])
        return Response(self._detail(pk), status=200)

    @action(detail=True, methods=["post"], url_path="escrow-payment")
    def escrow_payment(self, request, pk=None):
        serializer = EscrowPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        updated, created = escrow_services.capture_escrow_payment(
            pk,
            actor=self._actor(),
            amount=serializer.validated_data["amount"],
            reference=serializer.validated_data["reference"],
        )
        return Response(escrow_services.escrow_summary(updated), status=201 if created else 200)

    @action(detail=True, methods=["post"], url_path="release-payout")
    def release_payout(self, request, pk=None):
        serializer = ReleasePayoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        release = (
            escrow_services.release_designer_payment
            if serializer.validated_data["role"] == DESIGNER
            else escrow_services.release_shop_payment
        )
        try:
            result = release(pk, retry_failed=True)
        except DisbursementGatewayError as exc:
            raise PayoutFailed(str(exc))
        return Response(result.as_dict(), status=200)

    @action(detail=True, methods=["get"])
    def escrow(self, request, pk=None):
        customization = self.get_object()
        return Response(escrow_services.escrow_summary(customization), status=200)
