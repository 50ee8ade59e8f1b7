from rest_framework import serializers

from common.utils import to_money
from purchasing.models import PurchaseHistory, PurchaseOrder, PurchaseOrderItem, PurchaseOrderStatus
from purchasing.services import AcceptItem, FinanceItem, NewItem, ReceivedItem, RegisterItem
from purchasing.workflow import MAX_QUANTITY


class PurchaseOrderItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    total_price = serializers.DecimalField(max_digits=14, decimal_places=2, read_only=True)

    class Meta:
        model = PurchaseOrderItem
        fields = [
            "id",
            "product",
            "product_name",
            "product_sku",
            "quantity_requested",
            "quantity_accepted",
            "quantity_registered",
            "finance_verified",
            "unit_price",
            "total_price",
            "accepted_at",
            "accepted_by",
            "registered_at",
            "registered_by",
            "registration_edit_count",
            "last_registration_edit_at",
            "finance_verified_at",
            "finance_verified_by",
            "price_set_at",
            "price_set_by",
            "price_edit_count",
            "approved_at",
            "approved_by",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PurchaseOrderSerializer(serializers.ModelSerializer):
    items = serializers.SerializerMethodField()
    branch_name = serializers.CharField(source="branch.name", read_only=True)
    supplier_name = serializers.SerializerMethodField()
    created_by_username = serializers.CharField(source="created_by.username", read_only=True)
    total_value = serializers.SerializerMethodField()

    class Meta:
        model = PurchaseOrder
        fields = [
            "id",
            "branch",
            "branch_name",
            "created_by",
            "created_by_username",
            "supplier",
            "supplier_name",
            "status",
            "is_active",
            "items",
            "total_value",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def _items(self, obj):
        items = [item for item in obj.items.all() if item.is_active or not obj.is_active]
        return sorted(items, key=lambda item: (item.created_at, str(item.id)))

    def get_items(self, obj):
        return PurchaseOrderItemSerializer(self._items(obj), many=True).data

    def get_total_value(self, obj):
        total = sum((item.total_price for item in self._items(obj) if item.total_price is not None), 0)
        return str(to_money(total))

    def get_supplier_name(self, obj):
        return obj.supplier.name if obj.supplier_id else None


class PurchaseHistorySerializer(serializers.ModelSerializer):
    performed_by_username = serializers.CharField(source="performed_by.username", read_only=True)

    class Meta:
        model = PurchaseHistory
        fields = ["id", "purchase_order", "action", "performed_by", "performed_by_username", "details", "request_id", "created_at"]
        read_only_fields = fields


class NewItemSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    quantity_requested = serializers.IntegerField(min_value=1, max_value=MAX_QUANTITY)


class PurchaseOrderCreateSerializer(serializers.Serializer):
    branch_id = serializers.UUIDField(required=False)
    items = NewItemSerializer(many=True, allow_empty=False)

    def to_items(self):
        return [NewItem(**entry) for entry in self.validated_data["items"]]


class PurchaseOrderUpdateSerializer(serializers.Serializer):
    items = NewItemSerializer(many=True, allow_empty=False)

    def to_items(self):
        return [NewItem(**entry) for entry in self.validated_data["items"]]


class AcceptItemSerializer(serializers.Serializer):
    item_id = serializers.UUIDField()
    quantity_accepted = serializers.IntegerField(min_value=0, max_value=MAX_QUANTITY)


class AcceptQuantitiesSerializer(serializers.Serializer):
    items = AcceptItemSerializer(many=True, allow_empty=False)

    def to_items(self):
        return [AcceptItem(**entry) for entry in self.validated_data["items"]]


class RegisterItemSerializer(serializers.Serializer):
    item_id = serializers.UUIDField()
    quantity_registered = serializers.IntegerField(min_value=0, max_value=MAX_QUANTITY)


class RegisterQuantitiesSerializer(serializers.Serializer):
    items = RegisterItemSerializer(many=True, allow_empty=False)

    def to_items(self):
        return [RegisterItem(**entry) for entry in self.validated_data["items"]]


class ReceivedItemSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    quantity_received = serializers.IntegerField(min_value=0, max_value=MAX_QUANTITY)


class ReceivePurchaseOrderSerializer(serializers.Serializer):
    items = ReceivedItemSerializer(many=True, allow_empty=False)

    def to_items(self):
        return [ReceivedItem(**entry) for entry in self.validated_data["items"]]


class FinanceItemSerializer(serializers.Serializer):
    item_id = serializers.UUIDField()
    finance_verified = serializers.BooleanField(required=False, allow_null=True, default=None)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True, default=None)


class FinanceVerificationSerializer(serializers.Serializer):
    supplier_id = serializers.UUIDField(required=False, allow_null=True)
    items = FinanceItemSerializer(many=True, allow_empty=False)

    def to_items(self):
        return [FinanceItem(**entry) for entry in self.validated_data["items"]]


class CheckoutFinanceSerializer(serializers.Serializer):
    supplier_id = serializers.UUIDField(required=False, allow_null=True)


class RejectSerializer(serializers.Serializer):
    reason = serializers.CharField(allow_blank=False, trim_whitespace=True)


class StatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=PurchaseOrderStatus.choices)
    reason = serializers.CharField(required=False, allow_blank=True)
