from rest_framework import viewsets
from rest_framework.permissions import IsAuthenticated

from common.permissions import RoleCapabilityPermission
from core.views import scoped_queryset_for_user
from inventory.models import Product, Stock, StockMovement, Supplier
from inventory.serializers import ProductSerializer, StockMovementSerializer, StockSerializer, SupplierSerializer


class ProductViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Product.objects.filter(is_active=True).order_by("sku")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}


class SupplierViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Supplier.objects.filter(is_active=True).order_by("code")
    serializer_class = SupplierSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}


class StockViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Stock.objects.filter(is_active=True).select_related("product", "branch").order_by("branch__code", "product__sku")
    serializer_class = StockSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        branch_id = self.request.query_params.get("branch")
        product_id = self.request.query_params.get("product")
        if branch_id:
            qs = qs.filter(branch_id=branch_id)
        if product_id:
            qs = qs.filter(product_id=product_id)
        return qs


class StockMovementViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockMovement.objects.filter(is_active=True).select_related("product", "performed_by").order_by("-movement_date")
    serializer_class = StockMovementSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        for param, field in (
            ("branch", "branch_id"),
            ("product", "product_id"),
            ("purchase_order", "purchase_order_id"),
            ("movement_type", "movement_type"),
        ):
            value = self.request.query_params.get(param)
            if value:
                qs = qs.filter(**{field: value})
        return qs
