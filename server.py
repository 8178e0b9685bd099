#!/usr/bin/env python3
"""
server.py - Flask server for the delivery marketplace API
Orders, driver offers, impersonation, notifications and subcategory admin notes over SQLite.

Run directly (python server.py) or under gunicorn: gunicorn "server:create_app()"
"""

import logging
import os
import re
from datetime import datetime, timezone

from flask import Flask, current_app, jsonify, request, session
from flask_cors import CORS

import admin_notes
import impersonation
import notifications
import orders
import users
from database import DEFAULT_DB_PATH, get_connection, init_db
from errors import ApiError
from policy import (
    MANAGE_ADMIN_NOTES, MANAGE_ORDERS, MANAGE_PERMISSIONS, READ_IMPERSONATION_LOGS, READ_USERS,
    SEND_NOTIFICATIONS, build_caller, can, is_staff,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

def create_app(config=None):
    app = Flask(__name__)
    app.config.update(
        DATABASE_PATH=os.environ.get("DATABASE_PATH", DEFAULT_DB_PATH),
        SECRET_KEY=os.environ.get("SESSION_SECRET", "marketplace-dev-secret"),
        SEED_DATA=os.environ.get("SEED_DATA", "1").lower() not in ("0", "false", "no"),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
    )
    if config:
        app.config.update(config)

    CORS(app, supports_credentials=True)
    app.add_url_rule(
        "/api/<path:route>", "api_handler", api_handler,
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    )
    init_db(app.config["DATABASE_PATH"], seed=app.config["SEED_DATA"])
    return app


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

def get_current_user(conn):
    """The effective user: the impersonated user while an impersonation is active."""
    user_id = impersonation.effective_user_id(session)
    if not user_id:
        return None
    user = users.get_user(conn, user_id)
    if not user or not user["is_active"]:
        return None
    return user


def request_meta():
    return {
        "ipAddress": request.remote_addr or "",
        "userAgent": request.headers.get("User-Agent", ""),
    }


# ---------------------------------------------------------------------------
# Route matching helper
# ---------------------------------------------------------------------------

def match(pattern, path):
    regex = re.sub(r":([a-zA-Z_]+)", r"(?P<\1>[^/]+)", pattern)
    regex = "^" + regex + "$"
    m = re.match(regex, path)
    if m:
        return m.groupdict()
    return None


def query_params():
    return {k: v for k, v in request.args.items()}


def forbidden(message="Insufficient permissions"):
    return {"status": 403, "body": {"message": message}}


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

def api_handler(route):
    if request.method == "OPTIONS":
        return "", 204

    path = "/" + route
    # Strip trailing slashes
    if len(path) > 1:
        path = path.rstrip("/")

    method = request.method
    params = query_params()
    body = request.get_json(silent=True)
    if body is None:
        body = {}
    if not isinstance(body, dict):
        return jsonify({"message": "Expected a JSON object"}), 400

    conn = get_connection(current_app.config["DATABASE_PATH"])
    try:
        result = dispatch(method, path, params, body, conn)
        return jsonify(result.get("body", {})), result.get("status", 200)
    except ApiError as exc:
        if exc.status >= 500:
            logger.error("%s %s failed: %s", method, path, exc.message)
        return jsonify(exc.to_body()), exc.status
    except Exception:
        logger.exception("Unhandled error on %s %s", method, path)
        return jsonify({"message": "Internal server error"}), 500
    finally:
        conn.close()


def dispatch(method, path, params, body, conn):
    """Route dispatcher - returns dict with 'status' and 'body' keys."""

    # ----- HEALTH CHECK -----
    if method == "GET" and path == "/health":
        return {"status": 200, "body": {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }}

    # ----- AUTH -----
    if method == "POST" and path == "/login":
        email = (body.get("email") or body.get("username") or "").strip().lower()
        password = body.get("password", "")
        if not email or not password:
            return {"status": 400, "body": {"message": "email and password required"}}
        user = users.authenticate(conn, email, password)
        if not user:
            return {"status": 401, "body": {"message": "Invalid credentials"}}
        session.clear()
        session[impersonation.SESSION_USER_KEY] = user["id"]
        return {"status": 200, "body": users.public_user(user)}

    if method == "POST" and path == "/logout":
        session.clear()
        return {"status": 200, "body": {"message": "Logged out"}}

    # ----- IMPERSONATION EXIT -----
    # Served for the primary identity even when the impersonated user is no longer active
    if path in ("/impersonate/stop", "/impersonate/status"):
        if not session.get(impersonation.SESSION_USER_KEY):
            return {"status": 401, "body": {"message": "Authentication required"}}
        if method == "POST" and path == "/impersonate/stop":
            original = impersonation.stop_impersonation(conn, session, request_meta())
            return {"status": 200, "body": {
                "message": "Impersonation stopped",
                "originalUser": users.public_user(original),
            }}
        if method == "GET" and path == "/impersonate/status":
            return {"status": 200, "body": impersonation.get_status(session)}

    # All routes below require auth
    current_user = get_current_user(conn)
    if not current_user:
        return {"status": 401, "body": {"message": "Authentication required"}}
    caller = build_caller(conn, current_user)

    if method == "GET" and path == "/user":
        return {"status": 200, "body": users.public_user(current_user)}

    # ----- USERS & PERMISSIONS -----
    if method == "GET" and path == "/users":
        if not can(caller, READ_USERS):
            return forbidden()
        rows = users.list_users(conn, role=params.get("role"))
        return {"status": 200, "body": [users.public_user(r) for r in rows]}

    m = match("/users/:id", path)
    if m and method == "GET":
        if not can(caller, READ_USERS) and m["id"] != caller["id"]:
            return forbidden()
        user = users.get_user(conn, m["id"])
        if not user:
            return {"status": 404, "body": {"message": "User not found"}}
        return {"status": 200, "body": users.public_user(user)}

    if method == "GET" and path == "/permissions":
        if not can(caller, MANAGE_PERMISSIONS):
            return forbidden("Admin access required")
        return {"status": 200, "body": users.list_permissions(conn)}

    m = match("/users/:id/permissions", path)
    if m:
        if not can(caller, MANAGE_PERMISSIONS):
            return forbidden("Admin access required")
        target = users.get_user(conn, m["id"])
        if not target:
            return {"status": 404, "body": {"message": "User not found"}}
        if method == "GET":
            return {"status": 200, "body": {"permissions": users.get_permission_names(conn, m["id"])}}
        if method == "POST":
            if not body.get("permission"):
                return {"status": 400, "body": {"message": "Field 'permission' is required"}}
            if target["role"] != "subadmin":
                return {"status": 400, "body": {"message": "Permissions can only be granted to sub-admins"}}
            names = users.grant_permission(conn, m["id"], body["permission"])
            return {"status": 200, "body": {"permissions": names}}

    m = match("/users/:id/permissions/:name", path)
    if m and method == "DELETE":
        if not can(caller, MANAGE_PERMISSIONS):
            return forbidden("Admin access required")
        if not users.revoke_permission(conn, m["id"], m["name"]):
            return {"status": 404, "body": {"message": "Permission not granted"}}
        return {"status": 200, "body": {"permissions": users.get_permission_names(conn, m["id"])}}

    # ----- ORDERS -----
    if method == "GET" and path == "/orders":
        return {"status": 200, "body": orders.list_orders(conn, caller, params)}

    if method == "GET" and path == "/orders/available":
        return {"status": 200, "body": orders.list_open_orders(conn, caller)}

    if method == "POST" and path == "/orders":
        return {"status": 201, "body": orders.create_order(conn, body, caller)}

    m = match("/orders/:id", path)
    if m:
        if method == "GET":
            return {"status": 200, "body": orders.get_order_for(conn, m["id"], caller)}
        if method == "PATCH":
            return {"status": 200, "body": orders.update_order(conn, m["id"], body, caller)}

    m = match("/orders/:id/status", path)
    if m and method == "POST":
        return {"status": 200, "body": orders.advance_order_status(conn, m["id"], body.get("status"), caller)}

    m = match("/orders/:id/assign", path)
    if m and method == "POST":
        if not can(caller, MANAGE_ORDERS):
            return forbidden("Admin or Sub-Admin access required")
        if not body.get("driverId"):
            return {"status": 400, "body": {"message": "Field 'driverId' is required"}}
        return {"status": 200, "body": orders.assign_driver(conn, m["id"], body["driverId"])}

    # ----- ORDER OFFERS -----
    if method == "GET" and path == "/order-offers":
        return {"status": 200, "body": orders.list_offers(conn, caller, params)}

    if method == "POST" and path == "/order-offers":
        if not body.get("orderId"):
            return {"status": 400, "body": {"message": "Field 'orderId' is required"}}
        return {"status": 201, "body": orders.create_offer(conn, body["orderId"], body.get("price"), caller)}

    m = match("/order-offers/:id/accept", path)
    if m and method == "POST":
        return {"status": 200, "body": orders.accept_offer(conn, m["id"], caller)}

    # ----- IMPERSONATION -----
    m = match("/impersonate/user/:userId", path)
    if m and method == "POST":
        target = impersonation.start_impersonation(conn, session, caller, m["userId"], request_meta())
        return {"status": 200, "body": {
            "message": f"Now impersonating {target['full_name']}",
            "targetUser": users.public_user(target),
        }}

    if method == "GET" and path == "/impersonate/logs":
        if not can(caller, READ_IMPERSONATION_LOGS):
            return forbidden("Admin access required")
        logs = impersonation.list_logs(conn, params.get("adminId"), params.get("targetUserId"))
        return {"status": 200, "body": logs}

    # ----- NOTIFICATIONS -----
    if method == "GET" and path == "/notifications":
        unread_only = params.get("unread", "").lower() in ("1", "true")
        return {"status": 200, "body": notifications.list_for_user(conn, current_user["id"], unread_only)}

    if method == "POST" and path == "/notifications":
        if not can(caller, SEND_NOTIFICATIONS):
            return forbidden("Admin or Sub-Admin access required")
        if not body.get("userId"):
            return {"status": 400, "body": {"message": "Field 'userId' is required"}}
        return {"status": 201, "body": notifications.create_notification(conn, body["userId"], body)}

    if method == "POST" and path == "/notifications/read-all":
        return {"status": 200, "body": {"updated": notifications.mark_all_read(conn, current_user["id"])}}

    if method == "POST" and path.startswith("/notifications/send-to-"):
        if not can(caller, SEND_NOTIFICATIONS):
            return forbidden("Admin or Sub-Admin access required")
        exclude = body.get("excludeUserId")
        if path == "/notifications/send-to-role":
            if body.get("role") not in users.ROLES:
                return {"status": 400, "body": {"message": f"Invalid role. Must be one of: {list(users.ROLES)}"}}
            return {"status": 200, "body": notifications.send_to_role(conn, body["role"], body, exclude)}
        if path == "/notifications/send-to-all":
            return {"status": 200, "body": notifications.send_to_all(conn, body, exclude)}
        if path == "/notifications/send-to-multiple":
            user_ids = body.get("userIds")
            if not isinstance(user_ids, list) or not user_ids:
                return {"status": 400, "body": {"message": "Field 'userIds' must be a non-empty list"}}
            return {"status": 200, "body": notifications.send_to_user_ids(conn, user_ids, body)}
        if path == "/notifications/send-to-all-except-roles":
            roles = body.get("roles")
            if not isinstance(roles, list) or any(r not in users.ROLES for r in roles):
                return {"status": 400, "body": {"message": f"Field 'roles' must be a list of: {list(users.ROLES)}"}}
            return {"status": 200, "body": notifications.send_to_all_except_roles(conn, roles, body, exclude)}

    m = match("/notifications/:id", path)
    if m:
        if method == "GET":
            notification = notifications.get_notification(conn, m["id"])
            if notification["userId"] != current_user["id"] and not is_staff(caller):
                return forbidden("You can only read your own notifications")
            return {"status": 200, "body": notification}
        if method == "PATCH":
            read = body.get("read", True)
            if not isinstance(read, bool):
                return {"status": 400, "body": {"message": "read must be a boolean"}}
            return {"status": 200, "body": notifications.mark_read(conn, m["id"], caller, read)}
        if method == "DELETE":
            notifications.delete_notification(conn, m["id"], caller)
            return {"status": 200, "body": {"message": "Notification deleted"}}

    # ----- ADMIN NOTES -----
    m = match("/subcategories/:id/admin-notes", path)
    if m and method == "GET":
        return {"status": 200, "body": admin_notes.list_notes(conn, m["id"], active_only=True)}

    if path == "/admin-notes" or path.startswith("/admin-notes/"):
        if not can(caller, MANAGE_ADMIN_NOTES):
            return forbidden("Admin or Sub-Admin access required")
        if method == "GET" and path == "/admin-notes":
            return {"status": 200, "body": admin_notes.list_notes(conn, params.get("subcategoryId"))}
        if method == "POST" and path == "/admin-notes":
            return {"status": 201, "body": admin_notes.create_note(conn, body)}
        m = match("/admin-notes/:id", path)
        if m and method == "PATCH":
            return {"status": 200, "body": admin_notes.update_note(conn, m["id"], body)}
        if m and method == "DELETE":
            admin_notes.delete_note(conn, m["id"])
            return {"status": 200, "body": {"message": "Admin note deleted"}}

    # 404
    return {"status": 404, "body": {"message": f"Route not found: {method} {path}"}}


# ---------------------------------------------------------------------------
# Init and run
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    app = create_app()
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=False)
