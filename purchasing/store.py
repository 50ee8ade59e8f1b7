import uuid

from django.db import transaction

from core.models import Branch
from inventory.models import Product, Supplier
from purchasing.errors import InvariantViolationError, NotFoundError
from purchasing.models import PurchaseHistory, PurchaseOrder, PurchaseOrderItem


def atomic():
    return transaction.atomic()


def load_order(order_id, *, for_update=True):
    """Load an active purchase order.

    With ``for_update`` the order row stays locked until the surrounding
    transaction ends, which serializes transitions on the same order.
    """
    try:
        order_id = order_id if isinstance(order_id, uuid.UUID) else uuid.UUID(str(order_id))
    except (TypeError, ValueError):
        raise NotFoundError(f"Purchase order {order_id} not found.")

    qs = PurchaseOrder.objects.filter(id=order_id, is_active=True)
    if for_update:
        qs = qs.select_for_update()
    order = qs.first()
    if order is None:
        raise NotFoundError(f"Purchase order {order_id} not found.")
    return order


def load_items(order):
    return list(
        PurchaseOrderItem.objects.filter(purchase_order=order, is_active=True)
        .select_related("product")
        .order_by("created_at", "id")
    )


def save_order(order, fields=None):
    update_fields = list(fields or ["status"])
    if "updated_at" not in update_fields:
        update_fields.append("updated_at")
    order.save(update_fields=update_fields)
    return order


def save_items(items, fields):
    update_fields = list(fields)
    if "updated_at" not in update_fields:
        update_fields.append("updated_at")
    for item in items:
        item.save(update_fields=update_fields)


def create_items(order, lines):
    return [
        PurchaseOrderItem.objects.create(
            purchase_order=order,
            product=product,
            quantity_requested=quantity,
        )
        for product, quantity in lines
    ]


def replace_items(order, lines):
    PurchaseOrderItem.objects.filter(purchase_order=order).delete()
    return create_items(order, lines)


def get_active_branch(branch_id):
    branch = Branch.objects.filter(id=branch_id, is_active=True).first()
    if branch is None:
        raise NotFoundError(f"Branch {branch_id} not found or inactive.", {"branch_id": [str(branch_id)]})
    return branch


def get_active_products(product_ids):
    wanted = {str(product_id) for product_id in product_ids}
    products = {str(product.id): product for product in Product.objects.filter(id__in=wanted, is_active=True)}
    missing = sorted(wanted - set(products))
    if missing:
        raise InvariantViolationError(
            "Some products were not found or are inactive.",
            {"product_id": [f"Product {product_id} not found or inactive." for product_id in missing]},
        )
    return products


def get_active_supplier(supplier_id):
    supplier = Supplier.objects.filter(id=supplier_id, is_active=True).first()
    if supplier is None:
        raise NotFoundError(f"Supplier {supplier_id} not found or inactive.", {"supplier_id": [str(supplier_id)]})
    return supplier


def order_queryset():
    return PurchaseOrder.objects.filter(is_active=True).select_related("branch", "created_by", "supplier").prefetch_related(
        "items__product"
    )


def history_queryset(order):
    return PurchaseHistory.objects.filter(purchase_order=order, is_active=True).select_related("performed_by")
