"""Transition table and pure checks for the purchase order workflow.

Nothing here touches the database. Every status change made by
``purchasing.services`` goes through ``ensure_transition`` against
``ALLOWED_TRANSITIONS``.
"""

from decimal import Decimal

from django.conf import settings

from common.permissions import actor_has_capability
from purchasing.errors import (
    InvalidTransitionError,
    InvariantViolationError,
    PermissionDeniedError,
)
from purchasing.models import PurchaseOrderStatus

PENDING_ADMIN_ACCEPTANCE = PurchaseOrderStatus.PENDING_ADMIN_ACCEPTANCE.value
ACCEPTED_BY_ADMIN = PurchaseOrderStatus.ACCEPTED_BY_ADMIN.value
PENDING_REGISTRATION = PurchaseOrderStatus.PENDING_REGISTRATION.value
PARTIALLY_REGISTERED = PurchaseOrderStatus.PARTIALLY_REGISTERED.value
COMPLETELY_REGISTERED = PurchaseOrderStatus.COMPLETELY_REGISTERED.value
PENDING_FINANCE_PROCESSING = PurchaseOrderStatus.PENDING_FINANCE_PROCESSING.value
PROCESSED_BY_FINANCE = PurchaseOrderStatus.PROCESSED_BY_FINANCE.value
FULLY_APPROVED = PurchaseOrderStatus.FULLY_APPROVED.value
REJECTED = PurchaseOrderStatus.REJECTED.value
CANCELLED = PurchaseOrderStatus.CANCELLED.value

ALLOWED_TRANSITIONS = {
    PENDING_ADMIN_ACCEPTANCE: frozenset({ACCEPTED_BY_ADMIN, REJECTED, CANCELLED}),
    ACCEPTED_BY_ADMIN: frozenset(
        {PENDING_REGISTRATION, PARTIALLY_REGISTERED, COMPLETELY_REGISTERED, REJECTED, CANCELLED}
    ),
    PENDING_REGISTRATION: frozenset({PARTIALLY_REGISTERED, COMPLETELY_REGISTERED, REJECTED}),
    PARTIALLY_REGISTERED: frozenset({COMPLETELY_REGISTERED, REJECTED}),
    COMPLETELY_REGISTERED: frozenset({PENDING_FINANCE_PROCESSING, PROCESSED_BY_FINANCE, REJECTED}),
    PENDING_FINANCE_PROCESSING: frozenset({PROCESSED_BY_FINANCE, REJECTED}),
    PROCESSED_BY_FINANCE: frozenset({FULLY_APPROVED, REJECTED}),
    FULLY_APPROVED: frozenset(),
    REJECTED: frozenset(),
    CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

ACCEPTABLE_STATUSES = frozenset({PENDING_ADMIN_ACCEPTANCE})
REGISTRABLE_STATUSES = frozenset({ACCEPTED_BY_ADMIN, PENDING_REGISTRATION, PARTIALLY_REGISTERED})
FINANCE_STATUSES = frozenset({COMPLETELY_REGISTERED, PENDING_FINANCE_PROCESSING})
APPROVABLE_STATUSES = frozenset({PROCESSED_BY_FINANCE})
EDITABLE_STATUSES = frozenset({PENDING_ADMIN_ACCEPTANCE})

# Column limits of PurchaseOrderItem quantities and unit_price.
MAX_QUANTITY = 2147483647
MAX_UNIT_PRICE = Decimal("9999999999.99")


def is_allowed_transition(current, target):
    return str(target) in ALLOWED_TRANSITIONS.get(str(current), frozenset())


def ensure_transition(current, target):
    if not is_allowed_transition(current, target):
        raise InvalidTransitionError(current, target)


def ensure_status_in(order, statuses, target):
    """Reject an operation whose precondition status does not hold.

    ``target`` is the status the operation is heading to; it only appears in
    the error so the caller can log which transition was refused.
    """
    if order.status not in statuses:
        expected = ", ".join(sorted(str(status) for status in statuses))
        raise InvalidTransitionError(
            order.status,
            target,
            message=f"Purchase order is {order.status}; expected one of: {expected}.",
        )


def ensure_capability(actor, capability):
    if not actor_has_capability(actor, capability):
        raise PermissionDeniedError(
            f"Roles {', '.join(sorted(actor.roles)) or 'none'} may not perform {capability}.",
            {"capability": [capability]},
        )


def ensure_branch_access(actor, branch_id):
    if not getattr(settings, "PURCHASING_BRANCH_SCOPING", True):
        return
    if not actor.can_access_branch(branch_id):
        raise PermissionDeniedError(
            "You do not have access to this branch.",
            {"branch_id": [str(branch_id)]},
        )


def ensure_items_belong(order_items, item_ids):
    unknown = [str(item_id) for item_id in item_ids if item_id not in order_items]
    if unknown:
        raise InvariantViolationError(
            "Some items do not belong to this purchase order.",
            {"items": [f"Item {item_id} not found in this purchase order." for item_id in unknown]},
        )


def check_accepted_quantity(item, quantity_accepted):
    if quantity_accepted is None or quantity_accepted < 0:
        raise InvariantViolationError(
            f"Accepted quantity for item {item.id} must be zero or more.",
            {"quantity_accepted": [str(item.id)]},
        )
    if quantity_accepted > item.quantity_requested:
        raise InvariantViolationError(
            f"Accepted quantity ({quantity_accepted}) cannot exceed requested quantity "
            f"({item.quantity_requested}) for item {item.id}.",
            {"quantity_accepted": [str(item.id)]},
        )


def check_registered_quantity(item, quantity_registered):
    if item.quantity_accepted is None:
        raise InvariantViolationError(
            f"Item {item.id} has not been accepted by admin.",
            {"quantity_registered": [str(item.id)]},
        )
    if quantity_registered is None or quantity_registered < 0:
        raise InvariantViolationError(
            f"Registered quantity for item {item.id} must be zero or more.",
            {"quantity_registered": [str(item.id)]},
        )
    if quantity_registered > item.quantity_accepted:
        raise InvariantViolationError(
            f"Registered quantity ({quantity_registered}) cannot exceed accepted quantity "
            f"({item.quantity_accepted}) for item {item.id}.",
            {"quantity_registered": [str(item.id)]},
        )


def check_unit_price(item, unit_price):
    if unit_price is not None and unit_price <= 0:
        raise InvariantViolationError(
            f"Unit price for item {item.id} must be greater than zero.",
            {"unit_price": [str(item.id)]},
        )


def status_after_acceptance(items):
    if all((item.quantity_accepted or 0) == 0 for item in items):
        return REJECTED
    return ACCEPTED_BY_ADMIN


def status_after_registration(items):
    # Items accepted at zero have nothing to receive.
    registered = [(item.quantity_registered or 0) > 0 for item in items if (item.quantity_accepted or 0) > 0]
    if registered and all(registered):
        return COMPLETELY_REGISTERED
    if any(registered):
        return PARTIALLY_REGISTERED
    return PENDING_REGISTRATION


def status_after_finance(current, processed_items, all_items):
    all_verified = bool(processed_items) and all(item.finance_verified is True for item in processed_items)
    any_verified = any(item.finance_verified is True for item in processed_items)
    all_priced = all(item.unit_price is not None for item in all_items if (item.quantity_registered or 0) > 0)
    if all_verified and all_priced:
        return PROCESSED_BY_FINANCE
    if any_verified:
        return PENDING_FINANCE_PROCESSING
    return str(current)


def qualifies_for_stock(item):
    return (item.quantity_registered or 0) > 0 and item.finance_verified is True and item.unit_price is not None
