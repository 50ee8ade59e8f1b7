import logging

from purchasing.models import PurchaseHistory

logger = logging.getLogger("purchasing.audit")


def get_request_id(request):
    if request is None:
        return None
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID") or request.META.get("HTTP_X_REQUEST_ID")


def record_purchase_history(*, order, action, actor_id, details="", request_id=None):
    """Append an immutable history row for a purchase order.

    Called inside the same transaction as the change it describes, so a rolled
    back transition never leaves a history row behind.
    """
    entry = PurchaseHistory.objects.create(
        purchase_order=order,
        action=action,
        performed_by_id=actor_id,
        details=details or "",
        request_id=request_id,
    )
    logger.info(
        "purchase_history_recorded",
        extra={"order_id": order.id, "actor_id": actor_id, "transition": action, "request_id": request_id},
    )
    return entry
