import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

ALL_LEVELS = {User.AccessLevel.USER, User.AccessLevel.DEPARTMENT_ADMIN, User.AccessLevel.SUPER_ADMIN}
ADMIN_LEVELS = {User.AccessLevel.DEPARTMENT_ADMIN, User.AccessLevel.SUPER_ADMIN}

ACCESS_CAPABILITY_MATRIX = {
    "department.view": ALL_LEVELS,
    "department.manage": {User.AccessLevel.SUPER_ADMIN},
    "inventory.view": ALL_LEVELS,
    "inventory.update": ALL_LEVELS,
    "parts.manage": ADMIN_LEVELS,
    "stock.transaction.create": ALL_LEVELS,
    "stock.transaction.approve": ADMIN_LEVELS,
    "stock.transaction.reverse": ADMIN_LEVELS,
    "stock.transaction.delete": {User.AccessLevel.SUPER_ADMIN},
    "audit.view": ADMIN_LEVELS,
}


def get_access_level(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.AccessLevel.SUPER_ADMIN
    return getattr(user, "access_level", None) or User.AccessLevel.USER


def has_elevated_scope(user):
    return get_access_level(user) == User.AccessLevel.SUPER_ADMIN


def can_access_department(user, department_id):
    if has_elevated_scope(user):
        return True
    user_department_id = getattr(user, "department_id", None)
    return bool(user_department_id) and str(user_department_id) == str(department_id)


def scoped_queryset_for_user(queryset, user, field="department_id"):
    if not user.is_authenticated:
        return queryset.none()

    if has_elevated_scope(user):
        return queryset

    if getattr(user, "department_id", None):
        return queryset.filter(**{field: user.department_id})

    return queryset.none()


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_levels = ACCESS_CAPABILITY_MATRIX.get(capability)
    if not allowed_levels:
        return False
    return get_access_level(user) in allowed_levels


def log_denied(request, view, capability, action_key):
    logger.warning(
        "permission_denied capability=%s user=%s access_level=%s method=%s path=%s view=%s action=%s",
        capability,
        getattr(request.user, "username", "anonymous"),
        get_access_level(request.user),
        request.method,
        request.path,
        view.__class__.__name__,
        action_key,
    )


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates access-level capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            log_denied(request, view, capability, action_key)
        return allowed
