from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import get_request_id
from common.exceptions import operation_failure_response
from common.permissions import RoleCapabilityPermission, actor_from_user
from purchasing import services
from purchasing.serializers import (
    AcceptQuantitiesSerializer,
    CheckoutFinanceSerializer,
    FinanceVerificationSerializer,
    PurchaseHistorySerializer,
    PurchaseOrderCreateSerializer,
    PurchaseOrderSerializer,
    PurchaseOrderUpdateSerializer,
    ReceivePurchaseOrderSerializer,
    RegisterQuantitiesSerializer,
    RejectSerializer,
    StatusUpdateSerializer,
)


class PurchaseOrderViewSet(viewsets.GenericViewSet):
    """HTTP surface for the purchase order workflow.

    Views only parse payloads and render results; every rule lives in
    ``purchasing.services``.
    """

    serializer_class = PurchaseOrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "purchase.view",
        "retrieve": "purchase.view",
        "history": "purchase.view",
        "create": "purchase.create",
        "update": "purchase.update",
        "accept_quantities": "purchase.accept",
        "accept_all": "purchase.accept",
        "register_received": "purchase.register",
        "receive": "purchase.register",
        "finance_verification": "purchase.finance",
        "checkout_finance": "purchase.finance",
        "final_approval": "purchase.approve",
        "reject": "purchase.reject",
        "cancel": "purchase.cancel",
        "update_status": "purchase.status",
    }

    def _actor(self):
        return actor_from_user(self.request.user)

    def _validated(self, serializer_class):
        serializer = serializer_class(data=self.request.data)
        serializer.is_valid(raise_exception=True)
        return serializer

    def _respond(self, result, status_code=status.HTTP_200_OK):
        if not result.ok:
            return operation_failure_response(result)
        return Response(self.get_serializer(result.data).data, status=status_code)

    def list(self, request):
        result = services.list_purchase_orders(
            actor=self._actor(),
            status=request.query_params.get("status"),
            branch_id=request.query_params.get("branch"),
            created_by=request.query_params.get("created_by"),
        )
        if not result.ok:
            return operation_failure_response(result)

        page = self.paginate_queryset(result.data)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return Response(self.get_serializer(result.data, many=True).data)

    def retrieve(self, request, pk=None):
        return self._respond(services.get_purchase_order(actor=self._actor(), order_id=pk))

    def create(self, request):
        serializer = self._validated(PurchaseOrderCreateSerializer)
        actor = self._actor()
        branch_id = serializer.validated_data.get("branch_id") or actor.branch_id
        if branch_id is None:
            raise ValidationError({"branch_id": ["This field is required for users without a branch."]})

        result = services.create_purchase_order(
            actor=actor,
            branch_id=branch_id,
            items=serializer.to_items(),
            request_id=get_request_id(request),
        )
        return self._respond(result, status.HTTP_201_CREATED)

    def update(self, request, pk=None):
        serializer = self._validated(PurchaseOrderUpdateSerializer)
        result = services.update_purchase_order(
            actor=self._actor(),
            order_id=pk,
            items=serializer.to_items(),
            request_id=get_request_id(request),
        )
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="accept-quantities")
    def accept_quantities(self, request, pk=None):
        serializer = self._validated(AcceptQuantitiesSerializer)
        result = services.accept_quantities_by_admin(
            actor=self._actor(),
            order_id=pk,
            items=serializer.to_items(),
            request_id=get_request_id(request),
        )
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="accept-all")
    def accept_all(self, request, pk=None):
        result = services.accept_all_requested(actor=self._actor(), order_id=pk, request_id=get_request_id(request))
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="register-received")
    def register_received(self, request, pk=None):
        serializer = self._validated(RegisterQuantitiesSerializer)
        result = services.register_received_quantities(
            actor=self._actor(),
            order_id=pk,
            items=serializer.to_items(),
            request_id=get_request_id(request),
        )
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="receive")
    def receive(self, request, pk=None):
        serializer = self._validated(ReceivePurchaseOrderSerializer)
        result = services.receive_purchase_order(
            actor=self._actor(),
            order_id=pk,
            items=serializer.to_items(),
            request_id=get_request_id(request),
        )
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="finance-verification")
    def finance_verification(self, request, pk=None):
        serializer = self._validated(FinanceVerificationSerializer)
        result = services.finance_verification(
            actor=self._actor(),
            order_id=pk,
            items=serializer.to_items(),
            supplier_id=serializer.validated_data.get("supplier_id"),
            request_id=get_request_id(request),
        )
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="checkout-finance")
    def checkout_finance(self, request, pk=None):
        serializer = self._validated(CheckoutFinanceSerializer)
        result = services.checkout_by_finance(
            actor=self._actor(),
            order_id=pk,
            supplier_id=serializer.validated_data.get("supplier_id"),
            request_id=get_request_id(request),
        )
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="final-approval")
    def final_approval(self, request, pk=None):
        result = services.final_approval_by_admin(actor=self._actor(), order_id=pk, request_id=get_request_id(request))
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="reject")
    def reject(self, request, pk=None):
        serializer = self._validated(RejectSerializer)
        result = services.reject_purchase_order(
            actor=self._actor(),
            order_id=pk,
            reason=serializer.validated_data["reason"],
            request_id=get_request_id(request),
        )
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        result = services.cancel_purchase_order(actor=self._actor(), order_id=pk, request_id=get_request_id(request))
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="status")
    def update_status(self, request, pk=None):
        serializer = self._validated(StatusUpdateSerializer)
        result = services.update_purchase_order_status(
            actor=self._actor(),
            order_id=pk,
            target=serializer.validated_data["status"],
            reason=serializer.validated_data.get("reason"),
            request_id=get_request_id(request),
        )
        return self._respond(result)

    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request, pk=None):
        result = services.get_purchase_history(actor=self._actor(), order_id=pk)
        if not result.ok:
            return operation_failure_response(result)
        return Response(PurchaseHistorySerializer(result.data, many=True).data)
