"""
notifications.py - Notification records and fan-out helpers.

Fan-out is best-effort: every recipient row is committed on its own, a failed insert
is logged and counted, and the loop carries on. Callers get {"sent": n, "failed": m}.
"""

import logging
import sqlite3

from database import new_id, utc_now
from errors import NotFoundError, PermissionDenied, ValidationError
from policy import is_staff
from users import get_user, list_users

logger = logging.getLogger(__name__)


def notification_json(row):
    if row is None:
        return None
    return {
        "id": row["id"],
        "userId": row["user_id"],
        "title": row["title"],
        "message": row["message"],
        "type": row["type"],
        "read": bool(row["read"]),
        "createdAt": row["created_at"],
    }


def validate_payload(payload):
    for f in ["title", "message"]:
        if not payload.get(f) or not isinstance(payload[f], str):
            raise ValidationError(f"Field '{f}' is required", f)
    return {
        "title": payload["title"],
        "message": payload["message"],
        "type": payload.get("type") or "general",
    }


def create_notification(conn, user_id, payload):
    """Write a single notification; errors propagate."""
    payload = validate_payload(payload)
    if not get_user(conn, user_id):
        raise NotFoundError("User not found")
    nid = new_id()
    conn.execute(
        "INSERT INTO notifications (id, user_id, title, message, type, read, created_at) VALUES (?,?,?,?,?,0,?)",
        [nid, user_id, payload["title"], payload["message"], payload["type"], utc_now()]
    )
    conn.commit()
    return get_notification(conn, nid)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

def _deliver(conn, user_ids, payload):
    result = {"sent": 0, "failed": 0}
    for uid in user_ids:
        try:
            conn.execute(
                "INSERT INTO notifications (id, user_id, title, message, type, read, created_at) VALUES (?,?,?,?,?,0,?)",
                [new_id(), uid, payload["title"], payload["message"], payload["type"], utc_now()]
            )
            conn.commit()
            result["sent"] += 1
        except sqlite3.Error:
            logger.exception("Failed to write notification %r for user %s", payload["title"], uid)
            result["failed"] += 1
    return result


def send_to_user(conn, user_id, payload):
    return _deliver(conn, [user_id], validate_payload(payload))


def send_to_user_ids(conn, user_ids, payload):
    return _deliver(conn, list(user_ids), validate_payload(payload))


def send_to_role(conn, role, payload, exclude_user_id=None):
    payload = validate_payload(payload)
    users = list_users(conn, role=role, active_only=True)
    return _deliver(conn, [u["id"] for u in users if u["id"] != exclude_user_id], payload)


def send_to_all(conn, payload, exclude_user_id=None):
    return send_to_filtered_users(conn, lambda user: True, payload, exclude_user_id)


def send_to_all_except_roles(conn, roles, payload, exclude_user_id=None):
    excluded = set(roles)
    return send_to_filtered_users(conn, lambda user: user["role"] not in excluded, payload, exclude_user_id)


def send_to_filtered_users(conn, predicate, payload, exclude_user_id=None):
    payload = validate_payload(payload)
    users = list_users(conn, active_only=True)
    ids = [u["id"] for u in users if u["id"] != exclude_user_id and predicate(u)]
    return _deliver(conn, ids, payload)



def send_alert_to_admins(conn, title, message):
    return send_to_all_except_roles(conn, ["customer", "driver"], {"title": title, "message": message, "type": "alert"})


def send_order_notification(conn, user_id, title, message):
    return send_to_user(conn, user_id, {"title": title, "message": message, "type": "order"})


# ---------------------------------------------------------------------------
# Recipient side
# ---------------------------------------------------------------------------

def get_notification(conn, notification_id):
    row = conn.execute("SELECT * FROM notifications WHERE id=?", [notification_id]).fetchone()
    if not row:
        raise NotFoundError("Notification not found")
    return notification_json(row)


def list_for_user(conn, user_id, unread_only=False):
    sql = "SELECT * FROM notifications WHERE user_id=?"
    if unread_only:
        sql += " AND read=0"
    sql += " ORDER BY created_at DESC, rowid DESC"
    return [notification_json(r) for r in conn.execute(sql, [user_id]).fetchall()]


def mark_read(conn, notification_id, caller, read=True):
    notification = get_notification(conn, notification_id)
    if notification["userId"] != caller["id"]:
        raise PermissionDenied("You can only update your own notifications")
    conn.execute("UPDATE notifications SET read=? WHERE id=?", [1 if read else 0, notification_id])
    conn.commit()
    return get_notification(conn, notification_id)


def mark_all_read(conn, user_id):
    cur = conn.execute("UPDATE notifications SET read=1 WHERE user_id=? AND read=0", [user_id])
    conn.commit()
    return cur.rowcount


def delete_notification(conn, notification_id, caller):
    notification = get_notification(conn, notification_id)
    if notification["userId"] != caller["id"] and not is_staff(caller):
        raise PermissionDenied("You can only delete your own notifications")
    conn.execute("DELETE FROM notifications WHERE id=?", [notification_id])
    conn.commit()
