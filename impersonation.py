"""
impersonation.py - Let an admin (or a subadmin holding the user_impersonation grant)
act as another user for the rest of their session.

The session keeps the primary identity in "user_id" and, while impersonating, an
override record under "impersonation". The effective user is derived from those two
keys, so stopping is just dropping the override.
"""

import logging
import sqlite3

from database import IMPERSONATION_PERMISSION, new_id, utc_now
from errors import InvalidStateError, NotFoundError, OriginalUserMissingError, PermissionDenied, ValidationError
from users import get_permission_names, get_user

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user_id"
SESSION_OVERRIDE_KEY = "impersonation"


def effective_user_id(session):
    override = session.get(SESSION_OVERRIDE_KEY)
    if override:
        return override["targetUserId"]
    return session.get(SESSION_USER_KEY)


def can_impersonate(conn, user_id):
    user = get_user(conn, user_id)
    if not user or not user["is_active"]:
        return False
    if user["role"] == "admin":
        return True
    if user["role"] == "subadmin":
        return IMPERSONATION_PERMISSION in get_permission_names(conn, user_id)
    return False


def log_json(row):
    return {
        "id": row["id"],
        "adminId": row["admin_id"],
        "targetUserId": row["target_user_id"],
        "targetUserRole": row["target_user_role"],
        "action": row["action"],
        "ipAddress": row["ip_address"],
        "userAgent": row["user_agent"],
        "createdAt": row["created_at"],
    }


def write_log(conn, admin_id, target_user_id, target_user_role, action, request_meta=None):
    """Append an audit entry. A failed write is logged and never blocks the caller."""
    request_meta = request_meta or {}
    entry_id = new_id()
    try:
        conn.execute(
            """INSERT INTO impersonation_logs (id, admin_id, target_user_id, target_user_role, action,
                   ip_address, user_agent, created_at) VALUES (?,?,?,?,?,?,?,?)""",
            [entry_id, admin_id, target_user_id, target_user_role, action,
             request_meta.get("ipAddress"), request_meta.get("userAgent"), utc_now()]
        )
        conn.commit()
    except sqlite3.Error:
        logger.exception("Could not write impersonation %s log for %s -> %s", action, admin_id, target_user_id)
        return None
    return entry_id


def start_impersonation(conn, session, caller, target_user_id, request_meta=None):
    if session.get(SESSION_OVERRIDE_KEY):
        raise InvalidStateError("Already impersonating a user; stop the current impersonation first")
    if not can_impersonate(conn, caller["id"]):
        raise PermissionDenied("You do not have permission to impersonate users")
    if target_user_id == caller["id"]:
        raise ValidationError("You cannot impersonate yourself")
    original = get_user(conn, caller["id"])
    target = get_user(conn, target_user_id)
    if not target:
        raise NotFoundError("User not found")
    if not target["is_active"]:
        raise InvalidStateError("Cannot impersonate a deactivated user")
    if original["role"] != "admin" and target["role"] == "admin":
        raise PermissionDenied("Sub-admins cannot impersonate admins")

    write_log(conn, original["id"], target["id"], target["role"], "start", request_meta)
    session[SESSION_USER_KEY] = original["id"]
    session[SESSION_OVERRIDE_KEY] = {
        "originalUserId": original["id"],
        "originalUserRole": original["role"],
        "targetUserId": target["id"],
        "targetUserRole": target["role"],
        "startedAt": utc_now(),
    }
    logger.info("%s %s started impersonating %s %s", original["role"], original["id"], target["role"], target["id"])
    return target


def stop_impersonation(conn, session, request_meta=None):
    override = session.get(SESSION_OVERRIDE_KEY)
    if not override:
        raise InvalidStateError("Not currently impersonating")
    original = get_user(conn, override["originalUserId"])
    if not original:
        # The impersonating account vanished mid-session; end the session entirely.
        session.pop(SESSION_OVERRIDE_KEY, None)
        session.pop(SESSION_USER_KEY, None)
        logger.critical(
            "Original user %s disappeared while impersonating %s; session ended",
            override["originalUserId"], override["targetUserId"]
        )
        raise OriginalUserMissingError("Original user not found")

    write_log(conn, original["id"], override["targetUserId"], override["targetUserRole"], "stop", request_meta)
    session.pop(SESSION_OVERRIDE_KEY, None)
    session[SESSION_USER_KEY] = original["id"]
    logger.info("%s %s stopped impersonating %s", original["role"], original["id"], override["targetUserId"])
    return original


def get_status(session):
    override = session.get(SESSION_OVERRIDE_KEY)
    if not override:
        return {"isImpersonating": False}
    return {
        "isImpersonating": True,
        "originalUser": {"id": override["originalUserId"], "role": override["originalUserRole"]},
        "targetUser": {"id": override["targetUserId"], "role": override["targetUserRole"]},
        "startedAt": override["startedAt"],
    }


def list_logs(conn, admin_id=None, target_user_id=None):
    sql = "SELECT * FROM impersonation_logs"
    clauses, vals = [], []
    if admin_id:
        clauses.append("admin_id=?"); vals.append(admin_id)
    if target_user_id:
        clauses.append("target_user_id=?"); vals.append(target_user_id)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at DESC, rowid DESC"
    return [log_json(r) for r in conn.execute(sql, vals).fetchall()]
