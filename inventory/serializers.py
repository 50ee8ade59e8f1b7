from rest_framework import serializers

from inventory.models import Product, Stock, StockMovement, Supplier


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = ["id", "sku", "name", "price", "category", "is_active", "created_at", "updated_at"]
        read_only_fields = fields


class SupplierSerializer(serializers.ModelSerializer):
    class Meta:
        model = Supplier
        fields = ["id", "code", "name", "is_active", "created_at", "updated_at"]
        read_only_fields = fields


class StockSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    branch_name = serializers.CharField(source="branch.name", read_only=True)

    class Meta:
        model = Stock
        fields = ["id", "product", "product_name", "product_sku", "branch", "branch_name", "quantity", "updated_at"]
        read_only_fields = fields


class StockMovementSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    performed_by_username = serializers.CharField(source="performed_by.username", read_only=True)

    class Meta:
        model = StockMovement
        fields = [
            "id",
            "product",
            "product_name",
            "branch",
            "purchase_order",
            "movement_type",
            "quantity",
            "previous_quantity",
            "new_quantity",
            "unit_price",
            "reason",
            "performed_by",
            "performed_by_username",
            "movement_date",
        ]
        read_only_fields = fields
