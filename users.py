"""
users.py - User accounts and subadmin permission grants.
"""

import sqlite3

from database import check_password, hash_password, new_id, row_to_dict, rows_to_list, utc_now
from errors import NotFoundError, ValidationError

ROLES = ("customer", "driver", "admin", "subadmin")


def public_user(row):
    """Wire shape of a user row; the password hash never leaves the server."""
    if row is None:
        return None
    return {
        "id": row["id"],
        "email": row["email"],
        "fullName": row["full_name"],
        "phone": row["phone"],
        "role": row["role"],
        "isActive": bool(row["is_active"]),
        "createdAt": row["created_at"],
    }


def get_user(conn, user_id):
    if not user_id:
        return None
    return row_to_dict(conn.execute("SELECT * FROM users WHERE id=?", [user_id]).fetchone())


def get_user_by_email(conn, email):
    return row_to_dict(conn.execute("SELECT * FROM users WHERE email=?", [email.strip().lower()]).fetchone())


def list_users(conn, role=None, active_only=False):
    sql = "SELECT * FROM users"
    clauses, vals = [], []
    if role:
        clauses.append("role=?"); vals.append(role)
    if active_only:
        clauses.append("is_active=1")
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at, id"
    return rows_to_list(conn.execute(sql, vals).fetchall())


def create_user(conn, email, full_name, role="customer", password=None, phone=None, user_id=None):
    for field, value in (("email", email), ("fullName", full_name)):
        if not value:
            raise ValidationError(f"Field '{field}' is required", field)
    if role not in ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {list(ROLES)}", "role")
    uid = user_id or new_id()
    try:
        conn.execute(
            "INSERT INTO users (id, email, password_hash, full_name, phone, role, created_at) VALUES (?,?,?,?,?,?,?)",
            [uid, email.strip().lower(), hash_password(password) if password else None,
             full_name, phone, role, utc_now()]
        )
        conn.commit()
    except sqlite3.IntegrityError:
        raise ValidationError("User already exists", "email")
    return get_user(conn, uid)


def authenticate(conn, email, password):
    user = get_user_by_email(conn, email)
    if not user or not user["is_active"] or not check_password(password, user["password_hash"]):
        return None
    return user


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

def list_permissions(conn):
    rows = conn.execute("SELECT id, name, description FROM permissions ORDER BY name").fetchall()
    return rows_to_list(rows)


def get_permission_names(conn, user_id):
    rows = conn.execute(
        "SELECT p.name FROM permission_grants g JOIN permissions p ON p.id=g.permission_id WHERE g.user_id=? ORDER BY p.name",
        [user_id]
    ).fetchall()
    return [r[0] for r in rows]


def _permission_id(conn, name):
    row = conn.execute("SELECT id FROM permissions WHERE name=?", [name]).fetchone()
    if not row:
        raise NotFoundError(f"Permission '{name}' not found")
    return row[0]


def grant_permission(conn, user_id, name):
    if not get_user(conn, user_id):
        raise NotFoundError("User not found")
    pid = _permission_id(conn, name)
    conn.execute(
        "INSERT OR IGNORE INTO permission_grants (id, user_id, permission_id, created_at) VALUES (?,?,?,?)",
        [new_id(), user_id, pid, utc_now()]
    )
    conn.commit()
    return get_permission_names(conn, user_id)


def revoke_permission(conn, user_id, name):
    pid = _permission_id(conn, name)
    cur = conn.execute("DELETE FROM permission_grants WHERE user_id=? AND permission_id=?", [user_id, pid])
    conn.commit()
    return cur.rowcount > 0
