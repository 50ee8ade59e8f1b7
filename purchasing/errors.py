from dataclasses import dataclass, field

NOT_FOUND = "not_found"
PERMISSION_DENIED = "permission_denied"
INVALID_TRANSITION = "invalid_transition"
INVARIANT_VIOLATION = "invariant_violation"
PERSISTENCE_FAILURE = "persistence_failure"
AUTHENTICATION_FAILED = "authentication_failed"


@dataclass
class OperationResult:
    ok: bool
    data: object = None
    message: str = ""
    code: str | None = None
    errors: dict = field(default_factory=dict)

    @classmethod
    def success(cls, data=None, message="OK"):
        return cls(ok=True, data=data, message=message)

    @classmethod
    def failure(cls, code, message, errors=None):
        return cls(ok=False, code=code, message=message, errors=errors or {})


class PurchaseWorkflowError(Exception):
    """Base class for failures raised inside a workflow transaction.

    Raising one of these inside ``transaction.atomic()`` rolls the unit back;
    the operation boundary turns it into ``OperationResult.failure``.
    """

    code = INVARIANT_VIOLATION

    def __init__(self, message, errors=None):
        self.message = message
        self.errors = errors or {}
        super().__init__(message)


class NotFoundError(PurchaseWorkflowError):
    code = NOT_FOUND


class PermissionDeniedError(PurchaseWorkflowError):
    code = PERMISSION_DENIED


class InvalidTransitionError(PurchaseWorkflowError):
    code = INVALID_TRANSITION

    def __init__(self, current, target, message=None):
        self.current = current
        self.target = target
        super().__init__(
            message or f"Cannot move purchase order from {current} to {target}.",
            {"status": [f"{current} -> {target} is not an allowed transition."]},
        )


class InvariantViolationError(PurchaseWorkflowError):
    code = INVARIANT_VIOLATION
