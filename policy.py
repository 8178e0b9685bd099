"""
policy.py - Authorization gate.

Each endpoint names the capability it needs; resolve_capabilities() maps a caller's
role and permission grants to the full capability set once per request.
"""

from database import IMPERSONATION_PERMISSION
from users import get_permission_names

# Orders
PLACE_ORDER = "orders:place"
CREATE_ORDER_FOR_CUSTOMER = "orders:create_for_customer"
READ_OWN_ORDERS = "orders:read_own"
READ_ASSIGNED_ORDERS = "orders:read_assigned"
READ_ALL_ORDERS = "orders:read_all"
EDIT_OWN_ORDERS = "orders:edit_own"
MANAGE_ORDERS = "orders:manage"
ADVANCE_ASSIGNED_ORDERS = "orders:advance_assigned"
MAKE_OFFERS = "offers:make"

# Users & impersonation
IMPERSONATE = "users:impersonate"
READ_USERS = "users:read"
MANAGE_PERMISSIONS = "users:manage_permissions"
READ_IMPERSONATION_LOGS = "impersonation:read_logs"

# Notifications & notes
SEND_NOTIFICATIONS = "notifications:send"
MANAGE_ADMIN_NOTES = "admin_notes:manage"

_CUSTOMER = frozenset([PLACE_ORDER, READ_OWN_ORDERS, EDIT_OWN_ORDERS])
_DRIVER = frozenset([READ_ASSIGNED_ORDERS, ADVANCE_ASSIGNED_ORDERS, MAKE_OFFERS])
_STAFF = frozenset([
    CREATE_ORDER_FOR_CUSTOMER, READ_ALL_ORDERS, MANAGE_ORDERS, READ_USERS,
    SEND_NOTIFICATIONS, MANAGE_ADMIN_NOTES,
])
_ADMIN = _STAFF | {IMPERSONATE, MANAGE_PERMISSIONS, READ_IMPERSONATION_LOGS}

# Grants that add capabilities to a subadmin
_SUBADMIN_GRANTS = {
    IMPERSONATION_PERMISSION: IMPERSONATE,
}


def resolve_capabilities(role, grants=()):
    if role == "admin":
        return _ADMIN
    if role == "subadmin":
        return _STAFF | {_SUBADMIN_GRANTS[g] for g in grants if g in _SUBADMIN_GRANTS}
    if role == "customer":
        return _CUSTOMER
    if role == "driver":
        return _DRIVER
    return frozenset()


def build_caller(conn, user):
    """The identity services see: id, role and the resolved capability set."""
    grants = get_permission_names(conn, user["id"]) if user["role"] == "subadmin" else []
    return {
        "id": user["id"],
        "role": user["role"],
        "capabilities": resolve_capabilities(user["role"], grants),
    }


def can(caller, capability):
    return capability in caller["capabilities"]


def is_staff(caller):
    return caller["role"] in ("admin", "subadmin")
