import logging
import uuid
from dataclasses import dataclass, field

from rest_framework.exceptions import AuthenticationFailed
from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

SALES = User.Role.SALES.value
FINANCE = User.Role.FINANCE.value
MANAGER = User.Role.MANAGER.value

ROLE_CAPABILITY_MATRIX = {
    "purchase.view": {SALES, FINANCE, MANAGER},
    "purchase.create": {SALES, MANAGER},
    "purchase.update": {SALES, MANAGER},
    "purchase.accept": {MANAGER},
    "purchase.register": {SALES, MANAGER},
    "purchase.finance": {FINANCE, MANAGER},
    "purchase.approve": {MANAGER},
    "purchase.reject": {MANAGER, FINANCE},
    "purchase.cancel": {SALES, MANAGER},
    "purchase.status": {MANAGER},
    "inventory.view": {SALES, FINANCE, MANAGER},
}

# Roles that may act on any branch; everyone else is bound to their own branch.
CROSS_BRANCH_ROLES = frozenset({MANAGER, FINANCE})


class AuthenticationError(AuthenticationFailed):
    default_detail = "The acting user could not be resolved."
    default_code = "authentication_failed"


@dataclass(frozen=True)
class Actor:
    """Who is performing a workflow operation.

    An actor with no ``branch_id`` is a global actor; otherwise it is bound to
    that branch. The workflow only ever looks at ``roles`` and ``branch_id``.
    """

    user_id: uuid.UUID
    roles: frozenset = field(default_factory=frozenset)
    branch_id: uuid.UUID | None = None

    GLOBAL = "global"
    BRANCH = "branch"

    @property
    def kind(self):
        return self.GLOBAL if self.branch_id is None else self.BRANCH

    def has_any_role(self, roles):
        return bool(self.roles & set(roles))

    def can_access_branch(self, branch_id):
        if self.has_any_role(CROSS_BRANCH_ROLES):
            return True
        return self.branch_id is not None and str(self.branch_id) == str(branch_id)


def get_user_roles(user):
    if not user or not user.is_authenticated:
        return frozenset()
    if user.is_superuser:
        return frozenset({MANAGER})

    roles = set()
    role = getattr(user, "role", None)
    if role:
        roles.add(str(role))
    elif getattr(user, "is_staff", False):
        roles.add(MANAGER)

    valid_roles = set(User.Role.values)
    roles.update(name for name in user.groups.values_list("name", flat=True) if name in valid_roles)
    return frozenset(roles)


def actor_from_user(user):
    if not user or not getattr(user, "is_authenticated", False):
        raise AuthenticationError()
    return Actor(user_id=user.id, roles=get_user_roles(user), branch_id=getattr(user, "branch_id", None))


def actor_has_capability(actor, capability):
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return actor.has_any_role(allowed_roles)


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    return actor_has_capability(actor_from_user(user), capability)


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s roles=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                ",".join(sorted(get_user_roles(request.user))),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed
