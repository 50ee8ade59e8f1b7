import logging
from decimal import Decimal

from inventory.models import Product, Stock, StockMovement
from common.utils import to_money
from purchasing.errors import InvariantViolationError, NotFoundError

logger = logging.getLogger("inventory.ledger")


def load_stock(product_id, branch_id, *, for_update=False):
    qs = Stock.objects.filter(product_id=product_id, branch_id=branch_id)
    if for_update:
        qs = qs.select_for_update()
    return qs.first()


def get_stock_balance(product_id, branch_id):
    stock = load_stock(product_id, branch_id)
    return stock.quantity if stock else Decimal("0")


def apply_stock_movement(
    *,
    product,
    branch_id,
    quantity,
    performed_by_id,
    purchase_order=None,
    unit_price=None,
    movement_type=StockMovement.MovementType.PURCHASE,
    reason="",
):
    """Apply a signed quantity delta to the (product, branch) balance and log it.

    Must run inside a transaction. The stock row is locked for the rest of the
    transaction; a missing row is created at zero first. A delta that would
    drive the balance below zero raises ``InvariantViolationError`` and leaves
    nothing behind once the caller's transaction rolls back.
    """
    delta = Decimal(quantity)
    stock, created = Stock.objects.select_for_update().get_or_create(
        product_id=product.id,
        branch_id=branch_id,
        defaults={"quantity": Decimal("0")},
    )

    previous = Decimal(stock.quantity)
    new_quantity = previous + delta
    if new_quantity < 0:
        raise InvariantViolationError(
            f"Stock for product {product.id} cannot go below zero.",
            {"quantity": [f"Balance {previous} cannot absorb {delta}."]},
        )

    stock.quantity = new_quantity
    stock.is_active = True
    stock.save(update_fields=["quantity", "is_active", "updated_at"])

    movement = StockMovement.objects.create(
        product_id=product.id,
        branch_id=branch_id,
        purchase_order=purchase_order,
        movement_type=movement_type,
        quantity=delta,
        previous_quantity=previous,
        new_quantity=new_quantity,
        unit_price=to_money(unit_price) if unit_price is not None else None,
        reason=reason,
        performed_by_id=performed_by_id,
    )
    logger.info(
        "stock_movement_applied product=%s previous=%s new=%s created=%s",
        product.id,
        previous,
        new_quantity,
        created,
        extra={
            "branch_id": branch_id,
            "order_id": purchase_order.id if purchase_order else None,
            "actor_id": performed_by_id,
        },
    )
    return stock, movement


def update_product_unit_price(product_id, unit_price):
    product = Product.objects.select_for_update().filter(id=product_id).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found.")
    product.price = to_money(unit_price)
    product.save(update_fields=["price", "updated_at"])
    return product
