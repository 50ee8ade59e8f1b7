import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone

from common.audit import record_purchase_history
from common.permissions import CROSS_BRANCH_ROLES
from common.utils import to_money
from inventory.services import apply_stock_movement, update_product_unit_price
from purchasing import store, workflow
from purchasing.errors import (
    AUTHENTICATION_FAILED,
    PERSISTENCE_FAILURE,
    InvalidTransitionError,
    InvariantViolationError,
    OperationResult,
    PurchaseWorkflowError,
)
from purchasing.models import PurchaseOrder, PurchaseOrderStatus

logger = logging.getLogger("purchasing.workflow")


@dataclass(frozen=True)
class NewItem:
    product_id: uuid.UUID
    quantity_requested: int


@dataclass(frozen=True)
class AcceptItem:
    item_id: uuid.UUID
    quantity_accepted: int


@dataclass(frozen=True)
class RegisterItem:
    item_id: uuid.UUID
    quantity_registered: int


@dataclass(frozen=True)
class ReceivedItem:
    id: uuid.UUID
    quantity_received: int


@dataclass(frozen=True)
class FinanceItem:
    item_id: uuid.UUID
    finance_verified: bool | None = None
    unit_price: Decimal | None = None


def _execute(operation, actor, order_id, body, success_message, quiet=False):
    """Run one operation as a single transaction and fold failures into a result.

    Domain errors raised by ``body`` roll the transaction back before they are
    converted here; nothing escapes this boundary except programming errors.
    """
    if actor is None:
        logger.warning(
            "%s rejected: no actor",
            operation,
            extra={"order_id": order_id, "transition": operation, "error_code": AUTHENTICATION_FAILED},
        )
        return OperationResult.failure(AUTHENTICATION_FAILED, "The acting user could not be resolved.")

    try:
        with store.atomic():
            data = body()
    except PurchaseWorkflowError as exc:
        transition = operation
        if isinstance(exc, InvalidTransitionError):
            transition = f"{exc.current}->{exc.target}"
        logger.warning(
            "%s failed: %s",
            operation,
            exc.message,
            extra={"order_id": order_id, "actor_id": actor.user_id, "transition": transition, "error_code": exc.code},
        )
        return OperationResult.failure(exc.code, exc.message, exc.errors)
    except DatabaseError:
        logger.exception(
            "%s failed to persist",
            operation,
            extra={"order_id": order_id, "actor_id": actor.user_id, "transition": operation, "error_code": PERSISTENCE_FAILURE},
        )
        return OperationResult.failure(PERSISTENCE_FAILURE, "The purchase order could not be saved. Please retry.")

    if not quiet:
        logger.info(
            "%s succeeded",
            operation,
            extra={
                "order_id": getattr(data, "id", order_id),
                "actor_id": actor.user_id,
                "transition": operation,
            },
        )
    return OperationResult.success(data, success_message)


def _as_uuid(value, field):
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvariantViolationError(f"{value!r} is not a valid id.", {field: [str(value)]})


def _as_quantity(value, field, item_id):
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvariantViolationError(
            f"Quantity for {item_id} must be a whole number.",
            {field: [str(item_id)]},
        )
    if value > workflow.MAX_QUANTITY:
        raise InvariantViolationError(
            f"Quantity for {item_id} cannot exceed {workflow.MAX_QUANTITY}.",
            {field: [str(item_id)]},
        )
    return value


def _as_price(value, item):
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvariantViolationError(f"Unit price for item {item.id} is not a number.", {"unit_price": [str(item.id)]})
    if not price.is_finite():
        raise InvariantViolationError(f"Unit price for item {item.id} is not a number.", {"unit_price": [str(item.id)]})
    workflow.check_unit_price(item, price)
    if price > workflow.MAX_UNIT_PRICE:
        raise InvariantViolationError(
            f"Unit price for item {item.id} cannot exceed {workflow.MAX_UNIT_PRICE}.",
            {"unit_price": [str(item.id)]},
        )
    return to_money(price)


def _load_for_transition(actor, order_id, capability):
    workflow.ensure_capability(actor, capability)
    order = store.load_order(order_id)
    workflow.ensure_branch_access(actor, order.branch_id)
    return order


def _require_entries(entries):
    if not entries:
        raise InvariantViolationError("At least one item is required.", {"items": ["This list may not be empty."]})


def _change_status(order, target, fields=("status",)):
    if order.status != target:
        workflow.ensure_transition(order.status, target)
        order.status = target
    store.save_order(order, list(fields))


def _validate_lines(items):
    _require_entries(items)
    lines = []
    for entry in items:
        product_id = _as_uuid(entry.product_id, "product_id")
        quantity = _as_quantity(entry.quantity_requested, "quantity_requested", product_id)
        if quantity <= 0:
            raise InvariantViolationError(
                f"Requested quantity for product {product_id} must be greater than zero.",
                {"quantity_requested": [str(product_id)]},
            )
        lines.append((product_id, quantity))

    products = store.get_active_products([product_id for product_id, _ in lines])
    return [(products[str(product_id)], quantity) for product_id, quantity in lines]


def create_purchase_order(*, actor, branch_id, items, request_id=None):
    def body():
        workflow.ensure_capability(actor, "purchase.create")
        branch = store.get_active_branch(_as_uuid(branch_id, "branch_id"))
        workflow.ensure_branch_access(actor, branch.id)
        lines = _validate_lines(items)
        order = PurchaseOrder.objects.create(
            branch=branch,
            created_by_id=actor.user_id,
            status=PurchaseOrderStatus.PENDING_ADMIN_ACCEPTANCE.value,
        )
        store.create_items(order, lines)
        return order

    return _execute("create_purchase_order", actor, None, body, "Purchase order created successfully.")


def _accept_quantities(actor, order_id, items, request_id):
    order = _load_for_transition(actor, order_id, "purchase.accept")
    workflow.ensure_status_in(order, workflow.ACCEPTABLE_STATUSES, workflow.ACCEPTED_BY_ADMIN)
    _require_entries(items)

    all_items = store.load_items(order)
    by_id = {item.id: item for item in all_items}
    entries = [(_as_uuid(entry.item_id, "item_id"), entry) for entry in items]
    workflow.ensure_items_belong(by_id, [item_id for item_id, _ in entries])

    now = timezone.now()
    touched = []
    for item_id, entry in entries:
        item = by_id[item_id]
        quantity = _as_quantity(entry.quantity_accepted, "quantity_accepted", item_id)
        workflow.check_accepted_quantity(item, quantity)
        item.quantity_accepted = quantity
        item.accepted_at = now
        item.accepted_by_id = actor.user_id
        touched.append(item)
    store.save_items(touched, ["quantity_accepted", "accepted_at", "accepted_by"])

    _change_status(order, workflow.status_after_acceptance(all_items))
    record_purchase_history(
        order=order,
        action="QuantitiesAcceptedByAdmin",
        actor_id=actor.user_id,
        details="Admin reviewed and accepted purchase quantities",
        request_id=request_id,
    )
    return order


def accept_quantities_by_admin(*, actor, order_id, items, request_id=None):
    return _execute(
        "accept_quantities_by_admin",
        actor,
        order_id,
        lambda: _accept_quantities(actor, order_id, items, request_id),
        "Quantities accepted successfully.",
    )


def accept_all_requested(*, actor, order_id, request_id=None):
    def body():
        workflow.ensure_capability(actor, "purchase.accept")
        order = store.load_order(order_id)
        entries = [AcceptItem(item.id, item.quantity_requested) for item in store.load_items(order)]
        return _accept_quantities(actor, order_id, entries, request_id)

    return _execute("accept_all_requested", actor, order_id, body, "All requested quantities accepted.")


def _register_quantities(actor, order_id, items, request_id):
    order = _load_for_transition(actor, order_id, "purchase.register")
    workflow.ensure_status_in(order, workflow.REGISTRABLE_STATUSES, workflow.COMPLETELY_REGISTERED)
    _require_entries(items)

    all_items = store.load_items(order)
    by_id = {item.id: item for item in all_items}
    entries = [(_as_uuid(entry.item_id, "item_id"), entry) for entry in items]
    workflow.ensure_items_belong(by_id, [item_id for item_id, _ in entries])

    now = timezone.now()
    touched = []
    for item_id, entry in entries:
        item = by_id[item_id]
        quantity = _as_quantity(entry.quantity_registered, "quantity_registered", item_id)
        workflow.check_registered_quantity(item, quantity)
        if item.quantity_registered is not None:
            item.registration_edit_count += 1
            item.last_registration_edit_at = now
        item.quantity_registered = quantity
        item.registered_at = now
        item.registered_by_id = actor.user_id
        touched.append(item)
    store.save_items(
        touched,
        ["quantity_registered", "registered_at", "registered_by", "registration_edit_count", "last_registration_edit_at"],
    )

    _change_status(order, workflow.status_after_registration(all_items))
    record_purchase_history(
        order=order,
        action="QuantitiesRegisteredBySales",
        actor_id=actor.user_id,
        details="Sales registered received quantities after purchase",
        request_id=request_id,
    )
    return order


def register_received_quantities(*, actor, order_id, items, request_id=None):
    return _execute(
        "register_received_quantities",
        actor,
        order_id,
        lambda: _register_quantities(actor, order_id, items, request_id),
        "Received quantities registered successfully.",
    )


def receive_purchase_order(*, actor, order_id, items, request_id=None):
    entries = [RegisterItem(item.id, item.quantity_received) for item in items]
    return _execute(
        "receive_purchase_order",
        actor,
        order_id,
        lambda: _register_quantities(actor, order_id, entries, request_id),
        "Received quantities registered successfully.",
    )


def _finance_verification(actor, order_id, items, supplier_id, request_id):
    order = _load_for_transition(actor, order_id, "purchase.finance")
    workflow.ensure_status_in(order, workflow.FINANCE_STATUSES, workflow.PROCESSED_BY_FINANCE)
    _require_entries(items)

    fields = ["status"]
    if supplier_id:
        order.supplier = store.get_active_supplier(_as_uuid(supplier_id, "supplier_id"))
        fields.append("supplier")

    all_items = store.load_items(order)
    by_id = {item.id: item for item in all_items}
    entries = [(_as_uuid(entry.item_id, "item_id"), entry) for entry in items]
    workflow.ensure_items_belong(by_id, [item_id for item_id, _ in entries])

    now = timezone.now()
    processed = []
    for item_id, entry in entries:
        item = by_id[item_id]
        if (item.quantity_registered or 0) <= 0:
            raise InvariantViolationError(
                f"Item {item.id} has no registered quantity to verify.",
                {"quantity_registered": [str(item.id)]},
            )
        if entry.finance_verified is not None:
            item.finance_verified = bool(entry.finance_verified)
            item.finance_verified_at = now
            item.finance_verified_by_id = actor.user_id
        if entry.unit_price is not None:
            price = _as_price(entry.unit_price, item)
            if item.unit_price != price:
                if item.unit_price is not None:
                    item.price_edit_count += 1
                item.unit_price = price
                item.price_set_at = now
                item.price_set_by_id = actor.user_id
        processed.append(item)
    store.save_items(
        processed,
        [
            "finance_verified",
            "finance_verified_at",
            "finance_verified_by",
            "unit_price",
            "price_set_at",
            "price_set_by",
            "price_edit_count",
        ],
    )

    _change_status(order, workflow.status_after_finance(order.status, processed, all_items), fields)
    verified = sum(1 for item in all_items if item.finance_verified is True)
    record_purchase_history(
        order=order,
        action="FinanceVerification",
        actor_id=actor.user_id,
        details=f"Finance verification completed. Verified items: {verified}/{len(all_items)}",
        request_id=request_id,
    )
    return order


def finance_verification(*, actor, order_id, items, supplier_id=None, request_id=None):
    return _execute(
        "finance_verification",
        actor,
        order_id,
        lambda: _finance_verification(actor, order_id, items, supplier_id, request_id),
        "Finance verification completed.",
    )


def checkout_by_finance(*, actor, order_id, supplier_id=None, request_id=None):
    def body():
        workflow.ensure_capability(actor, "purchase.finance")
        order = store.load_order(order_id)
        entries = [
            FinanceItem(item.id, True, item.unit_price)
            for item in store.load_items(order)
            if (item.quantity_registered or 0) > 0
        ]
        return _finance_verification(actor, order_id, entries, supplier_id, request_id)

    return _execute("checkout_by_finance", actor, order_id, body, "Finance checkout completed.")


def _final_approval(actor, order_id, request_id):
    order = _load_for_transition(actor, order_id, "purchase.approve")
    workflow.ensure_status_in(order, workflow.APPROVABLE_STATUSES, workflow.FULLY_APPROVED)
    workflow.ensure_transition(order.status, workflow.FULLY_APPROVED)

    now = timezone.now()
    total_value = Decimal("0")
    approved = []
    for item in store.load_items(order):
        if not workflow.qualifies_for_stock(item):
            continue
        update_product_unit_price(item.product_id, item.unit_price)
        apply_stock_movement(
            product=item.product,
            branch_id=order.branch_id,
            quantity=item.quantity_registered,
            performed_by_id=actor.user_id,
            purchase_order=order,
            unit_price=item.unit_price,
            reason=f"Purchase order {order.id} - unit price {item.unit_price}",
        )
        item.approved_at = now
        item.approved_by_id = actor.user_id
        total_value += item.total_price
        approved.append(item)

    if not approved:
        raise InvariantViolationError(
            "No verified and priced items to commit to stock.",
            {"items": ["At least one item must be registered, verified and priced."]},
        )
    store.save_items(approved, ["approved_at", "approved_by"])

    _change_status(order, workflow.FULLY_APPROVED)
    record_purchase_history(
        order=order,
        action="FinalApprovedByAdmin",
        actor_id=actor.user_id,
        details=f"Admin gave final approval. Updated stock and prices. Total value: {to_money(total_value)}",
        request_id=request_id,
    )
    return order


def final_approval_by_admin(*, actor, order_id, request_id=None):
    return _execute(
        "final_approval_by_admin",
        actor,
        order_id,
        lambda: _final_approval(actor, order_id, request_id),
        "Purchase order approved and stock updated.",
    )


def _reject(actor, order_id, reason, request_id):
    workflow.ensure_capability(actor, "purchase.reject")
    reason = (reason or "").strip()
    if not reason:
        raise InvariantViolationError("A rejection reason is required.", {"reason": ["This field may not be blank."]})
    max_length = getattr(settings, "PURCHASE_REJECT_REASON_MAX_LENGTH", 500)
    if len(reason) > max_length:
        raise InvariantViolationError(
            f"Rejection reason cannot exceed {max_length} characters.",
            {"reason": [f"Ensure this field has no more than {max_length} characters."]},
        )

    order = _load_for_transition(actor, order_id, "purchase.reject")
    workflow.ensure_transition(order.status, workflow.REJECTED)
    _change_status(order, workflow.REJECTED)
    record_purchase_history(
        order=order,
        action="Rejected",
        actor_id=actor.user_id,
        details=f"Purchase order rejected. Reason: {reason}",
        request_id=request_id,
    )
    return order


def reject_purchase_order(*, actor, order_id, reason, request_id=None):
    return _execute(
        "reject_purchase_order",
        actor,
        order_id,
        lambda: _reject(actor, order_id, reason, request_id),
        "Purchase order rejected.",
    )


def _cancel(actor, order_id, request_id):
    order = _load_for_transition(actor, order_id, "purchase.cancel")
    previous = order.status
    workflow.ensure_transition(order.status, workflow.CANCELLED)

    items = store.load_items(order)
    for item in items:
        item.is_active = False
    store.save_items(items, ["is_active"])

    order.is_active = False
    _change_status(order, workflow.CANCELLED, ("status", "is_active"))
    record_purchase_history(
        order=order,
        action="Cancelled",
        actor_id=actor.user_id,
        details=f"Purchase order cancelled while {previous}.",
        request_id=request_id,
    )
    return order


def cancel_purchase_order(*, actor, order_id, request_id=None):
    return _execute(
        "cancel_purchase_order",
        actor,
        order_id,
        lambda: _cancel(actor, order_id, request_id),
        "Purchase order cancelled.",
    )


def update_purchase_order(*, actor, order_id, items, request_id=None):
    def body():
        order = _load_for_transition(actor, order_id, "purchase.update")
        workflow.ensure_status_in(order, workflow.EDITABLE_STATUSES, workflow.PENDING_ADMIN_ACCEPTANCE)
        lines = _validate_lines(items)
        store.replace_items(order, lines)
        store.save_order(order, ["updated_at"])
        record_purchase_history(
            order=order,
            action="PurchaseOrderUpdated",
            actor_id=actor.user_id,
            details=f"Purchase order items replaced ({len(lines)} item(s)).",
            request_id=request_id,
        )
        return order

    return _execute("update_purchase_order", actor, order_id, body, "Purchase order updated successfully.")


def update_purchase_order_status(*, actor, order_id, target, reason=None, request_id=None):
    """Move an order to ``target``, validated against the transition table.

    Targets that carry side effects run their dedicated operation inside the
    same transaction so stock, deactivation and audit rows are never skipped.
    """

    def body():
        workflow.ensure_capability(actor, "purchase.status")
        target_status = str(target)
        if target_status not in PurchaseOrderStatus.values:
            raise InvariantViolationError(f"Unknown status {target!r}.", {"status": [str(target)]})

        if target_status == workflow.FULLY_APPROVED:
            return _final_approval(actor, order_id, request_id)
        if target_status == workflow.CANCELLED:
            return _cancel(actor, order_id, request_id)
        if target_status == workflow.REJECTED:
            return _reject(actor, order_id, reason or "Status updated to rejected.", request_id)

        order = store.load_order(order_id)
        workflow.ensure_branch_access(actor, order.branch_id)
        previous = order.status
        workflow.ensure_transition(previous, target_status)
        _change_status(order, target_status)
        record_purchase_history(
            order=order,
            action="StatusUpdated",
            actor_id=actor.user_id,
            details=f"Status changed from {previous} to {target_status}.",
            request_id=request_id,
        )
        return order

    return _execute("update_purchase_order_status", actor, order_id, body, "Purchase order status updated.")


def get_purchase_order(*, actor, order_id):
    def body():
        workflow.ensure_capability(actor, "purchase.view")
        order = store.load_order(order_id, for_update=False)
        workflow.ensure_branch_access(actor, order.branch_id)
        return store.order_queryset().get(id=order.id)

    return _execute("get_purchase_order", actor, order_id, body, "Purchase order retrieved.", quiet=True)


def list_purchase_orders(*, actor, status=None, branch_id=None, created_by=None):
    def body():
        workflow.ensure_capability(actor, "purchase.view")
        qs = store.order_queryset()
        if getattr(settings, "PURCHASING_BRANCH_SCOPING", True) and not actor.has_any_role(CROSS_BRANCH_ROLES):
            qs = qs.filter(branch_id=actor.branch_id) if actor.branch_id else qs.none()
        if status:
            if status not in PurchaseOrderStatus.values:
                raise InvariantViolationError(f"Unknown status {status!r}.", {"status": [str(status)]})
            qs = qs.filter(status=status)
        if branch_id:
            qs = qs.filter(branch_id=_as_uuid(branch_id, "branch"))
        if created_by:
            qs = qs.filter(created_by_id=_as_uuid(created_by, "created_by"))
        return qs

    return _execute("list_purchase_orders", actor, None, body, "Purchase orders retrieved.", quiet=True)


def get_purchase_history(*, actor, order_id):
    def body():
        workflow.ensure_capability(actor, "purchase.view")
        order = store.load_order(order_id, for_update=False)
        workflow.ensure_branch_access(actor, order.branch_id)
        return list(store.history_queryset(order))

    return _execute("get_purchase_history", actor, order_id, body, "Purchase history retrieved.", quiet=True)
