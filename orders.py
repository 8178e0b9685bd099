"""
orders.py - Order lifecycle: creation, role-scoped reads, updates, status transitions,
driver assignment and driver offers.

Status flow:  new -> pending -> in_progress -> picked_up -> delivered
              any non-terminal status -> cancelled
"""

import json
import logging
import math
import random
import sqlite3
import time

from admin_notes import render_notes
from database import new_id, utc_now
from errors import InternalError, InvalidStateError, NotFoundError, PermissionDenied, ValidationError
from notifications import send_alert_to_admins, send_order_notification, send_to_user
from policy import (
    ADVANCE_ASSIGNED_ORDERS, CREATE_ORDER_FOR_CUSTOMER, EDIT_OWN_ORDERS, MAKE_OFFERS,
    MANAGE_ORDERS, PLACE_ORDER, READ_ALL_ORDERS, READ_ASSIGNED_ORDERS, READ_OWN_ORDERS, can,
)
from users import get_user

logger = logging.getLogger(__name__)

STATUSES = ("new", "pending", "in_progress", "picked_up", "delivered", "cancelled")
TERMINAL_STATUSES = ("delivered", "cancelled")

TRANSITIONS = {
    "new": ("pending", "cancelled"),
    "pending": ("in_progress", "cancelled"),
    "in_progress": ("picked_up", "cancelled"),
    "picked_up": ("delivered", "cancelled"),
    "delivered": (),
    "cancelled": (),
}

# Steps an assigned driver may take on their own
DRIVER_TRANSITIONS = {
    "pending": ("in_progress",),
    "in_progress": ("picked_up",),
    "picked_up": ("delivered",),
}

CUSTOMER_STATUS_MESSAGES = {
    "new": "Your order has been received and is waiting for a driver.",
    "pending": "A driver has been assigned to your order.",
    "in_progress": "Your order is now in progress.",
    "picked_up": "Your order has been picked up and is on its way.",
    "delivered": "Your order has been delivered successfully.",
    "cancelled": "Your order has been cancelled.",
}

DRIVER_STATUS_MESSAGES = {
    "new": "A new order is waiting for you.",
    "pending": "You have been assigned a new order.",
    "in_progress": "The order is now in progress.",
    "picked_up": "You have picked up the order.",
    "delivered": "You have delivered the order successfully.",
    "cancelled": "An order assigned to you has been cancelled.",
}

PRICING_OPTIONS = ("auto_accept", "choose_offer")

# wire name -> column
ORDER_FIELDS = {
    "customerId": "customer_id",
    "driverId": "driver_id",
    "serviceId": "service_id",
    "subcategoryId": "subcategory_id",
    "status": "status",
    "location": "location",
    "notes": "notes",
    "customerNotes": "customer_notes",
    "adminNotesDisplayed": "admin_notes_displayed",
    "paymentMethod": "payment_method",
    "totalAmount": "total_amount",
    "pricingOption": "pricing_option",
    "scheduledFor": "scheduled_for",
}

# Fields a customer patch may never touch; they are dropped without an error
CUSTOMER_PROTECTED_FIELDS = ("status", "customerId", "driverId", "requestNumber", "adminNotesDisplayed")

REQUEST_NUMBER_ATTEMPTS = 5


def generate_request_number():
    return f"REQ-{int(time.time() * 1000)}-{random.randint(0, 999)}"


def order_json(row):
    return {
        "id": row["id"],
        "requestNumber": row["request_number"],
        "customerId": row["customer_id"],
        "driverId": row["driver_id"],
        "serviceId": row["service_id"],
        "subcategoryId": row["subcategory_id"],
        "status": row["status"],
        "location": json.loads(row["location"]) if row["location"] else None,
        "notes": row["notes"],
        "customerNotes": row["customer_notes"],
        "adminNotesDisplayed": row["admin_notes_displayed"],
        "paymentMethod": row["payment_method"],
        "totalAmount": row["total_amount"],
        "pricingOption": row["pricing_option"],
        "scheduledFor": row["scheduled_for"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def offer_json(row):
    return {
        "id": row["id"],
        "orderId": row["order_id"],
        "driverId": row["driver_id"],
        "price": row["price"],
        "accepted": bool(row["accepted"]),
        "createdAt": row["created_at"],
    }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _amount(value, field):
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field)
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field)
    if not math.isfinite(amount):
        raise ValidationError(f"{field} must be a finite number", field)
    if amount < 0:
        raise ValidationError(f"{field} must not be negative", field)
    return amount


def validate_order(data, partial=False):
    """Check an order payload in field order; the first problem found is raised."""
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object")
    for f in ["customerId", "serviceId"]:
        if f in data or (not partial and f == "serviceId"):
            if not isinstance(data.get(f), str) or not data[f].strip():
                raise ValidationError(f"Field '{f}' is required", f)
    if "location" in data or not partial:
        if not isinstance(data.get("location"), dict) or not data["location"]:
            raise ValidationError("Field 'location' is required", "location")
        for side in ["pickup", "dropoff"]:
            if side in data["location"] and not isinstance(data["location"][side], dict):
                raise ValidationError(f"location.{side} must be an address object", "location")
    if "status" in data and data["status"] not in STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {list(STATUSES)}", "status")
    if "driverId" in data and (not isinstance(data["driverId"], str) or not data["driverId"]):
        raise ValidationError("driverId must be a user id", "driverId")
    for f in ["subcategoryId", "notes", "customerNotes", "adminNotesDisplayed", "paymentMethod", "scheduledFor"]:
        if data.get(f) is not None and not isinstance(data[f], str):
            raise ValidationError(f"{f} must be a string", f)
    if data.get("totalAmount") is not None:
        _amount(data["totalAmount"], "totalAmount")
    if data.get("pricingOption") is not None and data["pricingOption"] not in PRICING_OPTIONS:
        raise ValidationError(f"Invalid pricingOption. Must be one of: {list(PRICING_OPTIONS)}", "pricingOption")


def _column_value(key, value):
    if key == "location":
        return json.dumps(value)
    if key == "totalAmount" and value is not None:
        return float(value)
    return value


def _require_user_with_role(conn, user_id, role):
    user = get_user(conn, user_id)
    if not user or user["role"] != role or not user["is_active"]:
        raise ValidationError(f"{user_id} is not an active {role}", f"{role}Id")
    return user


def check_transition(current, new_status):
    if current == new_status:
        raise InvalidStateError(f"Order is already at status '{current}'")
    if current in TERMINAL_STATUSES:
        raise InvalidStateError(f"Order is {current} and can no longer change status")
    if new_status not in TRANSITIONS[current]:
        raise InvalidStateError(f"Cannot move an order from '{current}' to '{new_status}'")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_order(conn, order_id):
    row = conn.execute("SELECT * FROM orders WHERE id=?", [order_id]).fetchone()
    if not row:
        raise NotFoundError("Order not found")
    return order_json(row)


def can_access(order, caller):
    if can(caller, READ_ALL_ORDERS):
        return True
    if can(caller, READ_OWN_ORDERS) and order["customerId"] == caller["id"]:
        return True
    if can(caller, READ_ASSIGNED_ORDERS) and order["driverId"] == caller["id"]:
        return True
    return False


def get_order_for(conn, order_id, caller):
    order = get_order(conn, order_id)
    if not can_access(order, caller):
        raise PermissionDenied("You do not have access to this order")
    return order


def list_orders(conn, caller, filters=None):
    filters = filters or {}
    clauses, vals = [], []
    if can(caller, READ_ALL_ORDERS):
        for key in ["customerId", "driverId"]:
            if filters.get(key):
                clauses.append(f"{ORDER_FIELDS[key]}=?"); vals.append(filters[key])
    elif can(caller, READ_OWN_ORDERS):
        clauses.append("customer_id=?"); vals.append(caller["id"])
    elif can(caller, READ_ASSIGNED_ORDERS):
        clauses.append("driver_id=?"); vals.append(caller["id"])
    else:
        raise PermissionDenied("Insufficient permissions")
    if filters.get("status"):
        if filters["status"] not in STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {list(STATUSES)}", "status")
        clauses.append("status=?"); vals.append(filters["status"])
    sql = "SELECT * FROM orders WHERE " + " AND ".join(clauses) if clauses else "SELECT * FROM orders"
    sql += " ORDER BY created_at DESC, rowid DESC"
    return [order_json(r) for r in conn.execute(sql, vals).fetchall()]


def list_open_orders(conn, caller):
    """Unassigned new orders a driver can make an offer on."""
    if not can(caller, MAKE_OFFERS):
        raise PermissionDenied("Only drivers can browse open orders")
    rows = conn.execute(
        "SELECT * FROM orders WHERE status='new' AND driver_id IS NULL ORDER BY created_at DESC, rowid DESC"
    ).fetchall()
    return [order_json(r) for r in rows]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def create_order(conn, data, caller):
    validate_order(data)
    if can(caller, CREATE_ORDER_FOR_CUSTOMER):
        if not data.get("customerId"):
            raise ValidationError("Field 'customerId' is required", "customerId")
        _require_user_with_role(conn, data["customerId"], "customer")
        customer_id = data["customerId"]
        driver_id = data.get("driverId")
        if driver_id:
            _require_user_with_role(conn, driver_id, "driver")
        # Staff may pick the initial status (auto-accept path)
        status = data.get("status") or ("pending" if driver_id else "new")
        if driver_id and status == "new":
            raise ValidationError("An order with a driver starts at 'pending' or later", "status")
        if not driver_id and status not in ("new", "cancelled"):
            raise ValidationError(f"An order at '{status}' needs a driverId", "driverId")
    elif can(caller, PLACE_ORDER):
        customer_id = caller["id"]
        driver_id = None
        status = "new"
    else:
        raise PermissionDenied("Only customers and staff can create orders")

    admin_notes = render_notes(conn, data.get("subcategoryId")) or data.get("adminNotesDisplayed")
    oid = new_id()
    now = utc_now()
    for _ in range(REQUEST_NUMBER_ATTEMPTS):
        request_number = generate_request_number()
        try:
            conn.execute(
                """INSERT INTO orders (id, request_number, customer_id, driver_id, service_id, subcategory_id, status,
                       location, notes, customer_notes, admin_notes_displayed, payment_method, total_amount,
                       pricing_option, scheduled_for, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                [oid, request_number, customer_id, driver_id, data["serviceId"], data.get("subcategoryId"), status,
                 json.dumps(data["location"]), data.get("notes"), data.get("customerNotes"), admin_notes,
                 data.get("paymentMethod"), _column_value("totalAmount", data.get("totalAmount")),
                 data.get("pricingOption"), data.get("scheduledFor"), now, now]
            )
            conn.commit()
            break
        except sqlite3.IntegrityError as e:
            if "request_number" not in str(e):
                raise
            logger.warning("Request number %s already taken, retrying", request_number)
    else:
        raise InternalError("Could not allocate a request number")

    logger.info("Order %s created for customer %s by %s", request_number, customer_id, caller["id"])
    if status == "new":
        send_alert_to_admins(conn, f"Order {request_number}", "A new order is waiting for a driver.")
    return get_order(conn, oid)


def update_order(conn, order_id, patch, caller):
    order = get_order(conn, order_id)
    if not isinstance(patch, dict):
        raise ValidationError("Expected a JSON object")

    if can(caller, MANAGE_ORDERS):
        patch = dict(patch)
    elif can(caller, EDIT_OWN_ORDERS):
        if order["customerId"] != caller["id"]:
            raise PermissionDenied("You can only update your own orders")
        dropped = [f for f in CUSTOMER_PROTECTED_FIELDS if f in patch]
        if dropped:
            logger.info("Ignoring %s in customer update of order %s", dropped, order_id)
        patch = {k: v for k, v in patch.items() if k not in CUSTOMER_PROTECTED_FIELDS}
    else:
        raise PermissionDenied("Only the order's customer or staff can update orders")

    validate_order(patch, partial=True)
    new_status = patch.pop("status", None)
    driver_id = patch.pop("driverId", None)

    # Check everything before the first write
    status_after_assign = order["status"]
    if driver_id:
        _require_user_with_role(conn, driver_id, "driver")
        if order["status"] in TERMINAL_STATUSES:
            raise InvalidStateError(f"Order is {order['status']} and can no longer be assigned")
        status_after_assign = "pending"
    if "customerId" in patch:
        _require_user_with_role(conn, patch["customerId"], "customer")
    if new_status and new_status != status_after_assign:
        check_transition(status_after_assign, new_status)
        if new_status == "pending" and not (driver_id or order["driverId"]):
            raise InvalidStateError("Assign a driver before moving the order to pending")

    fields, vals = [], []
    for key, column in ORDER_FIELDS.items():
        if key in patch:
            fields.append(f"{column}=?"); vals.append(_column_value(key, patch[key]))
    if fields:
        fields.append("updated_at=?"); vals.append(utc_now())
        vals.append(order_id)
        conn.execute(f"UPDATE orders SET {', '.join(fields)} WHERE id=?", vals)
        conn.commit()

    if driver_id:
        assign_driver(conn, order_id, driver_id)
    if new_status and new_status != status_after_assign:
        update_order_status(conn, order_id, new_status)
    return get_order(conn, order_id)


def notify_status_change(conn, order):
    """Tell the customer, and the driver if one is assigned, about the order's status."""
    title = f"Order {order['requestNumber']}"
    status = order["status"]
    result = send_order_notification(conn, order["customerId"], title, CUSTOMER_STATUS_MESSAGES[status])
    if order["driverId"]:
        driver_result = send_order_notification(conn, order["driverId"], title, DRIVER_STATUS_MESSAGES[status])
        result = {k: result[k] + driver_result[k] for k in result}
    if result["failed"]:
        logger.error("Order %s: %d status notification(s) could not be written", order["id"], result["failed"])
    return result


def update_order_status(conn, order_id, new_status):
    if new_status not in STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {list(STATUSES)}", "status")
    order = get_order(conn, order_id)
    check_transition(order["status"], new_status)
    if new_status == "pending" and not order["driverId"]:
        raise InvalidStateError("Assign a driver before moving the order to pending")
    conn.execute("UPDATE orders SET status=?, updated_at=? WHERE id=?", [new_status, utc_now(), order_id])
    conn.commit()
    logger.info("Order %s: %s -> %s", order["requestNumber"], order["status"], new_status)
    order = get_order(conn, order_id)
    notify_status_change(conn, order)
    return order


def advance_order_status(conn, order_id, new_status, caller):
    order = get_order(conn, order_id)
    if can(caller, MANAGE_ORDERS):
        return update_order_status(conn, order_id, new_status)
    if not can(caller, ADVANCE_ASSIGNED_ORDERS):
        raise PermissionDenied("Insufficient permissions")
    if order["driverId"] != caller["id"]:
        raise PermissionDenied("This order is not assigned to you")
    if new_status == "cancelled":
        raise PermissionDenied("Drivers cannot cancel orders")
    if new_status not in STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {list(STATUSES)}", "status")
    if new_status not in DRIVER_TRANSITIONS.get(order["status"], ()):
        logger.warning("Driver %s tried to move order %s from %s to %s",
                       caller["id"], order_id, order["status"], new_status)
        raise InvalidStateError(f"Cannot move an order from '{order['status']}' to '{new_status}'")
    return update_order_status(conn, order_id, new_status)


def assign_driver(conn, order_id, driver_id):
    """Attach a driver; the order always goes (back) to pending."""
    order = get_order(conn, order_id)
    _require_user_with_role(conn, driver_id, "driver")
    if order["status"] in TERMINAL_STATUSES:
        raise InvalidStateError(f"Order is {order['status']} and can no longer be assigned")
    conn.execute(
        "UPDATE orders SET driver_id=?, status='pending', updated_at=? WHERE id=?",
        [driver_id, utc_now(), order_id]
    )
    conn.commit()
    logger.info("Order %s assigned to driver %s", order["requestNumber"], driver_id)
    order = get_order(conn, order_id)
    notify_status_change(conn, order)
    return order


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------

def get_offer(conn, offer_id):
    row = conn.execute("SELECT * FROM order_offers WHERE id=?", [offer_id]).fetchone()
    if not row:
        raise NotFoundError("Offer not found")
    return offer_json(row)


def create_offer(conn, order_id, price, caller):
    if not can(caller, MAKE_OFFERS):
        raise PermissionDenied("Only drivers can make offers")
    order = get_order(conn, order_id)
    if price is None:
        raise ValidationError("Field 'price' is required", "price")
    price = _amount(price, "price")
    if price == 0:
        raise ValidationError("price must be greater than zero", "price")
    if order["status"] != "new" or order["driverId"]:
        raise InvalidStateError("Order is no longer open for offers")
    existing = conn.execute(
        "SELECT id FROM order_offers WHERE order_id=? AND driver_id=?", [order_id, caller["id"]]
    ).fetchone()
    if existing:
        raise InvalidStateError("You already made an offer on this order")
    offer_id = new_id()
    conn.execute(
        "INSERT INTO order_offers (id, order_id, driver_id, price, accepted, created_at) VALUES (?,?,?,?,0,?)",
        [offer_id, order_id, caller["id"], price, utc_now()]
    )
    conn.commit()
    send_to_user(conn, order["customerId"], {
        "title": f"Order {order['requestNumber']}",
        "message": f"A driver offered {price:.2f} for your order.",
        "type": "offer",
    })
    return get_offer(conn, offer_id)


def list_offers(conn, caller, filters=None):
    filters = filters or {}
    sql = "SELECT f.* FROM order_offers f JOIN orders o ON o.id=f.order_id"
    clauses, vals = [], []
    if can(caller, READ_ALL_ORDERS):
        if filters.get("driverId"):
            clauses.append("f.driver_id=?"); vals.append(filters["driverId"])
    elif can(caller, MAKE_OFFERS):
        clauses.append("f.driver_id=?"); vals.append(caller["id"])
    elif can(caller, READ_OWN_ORDERS):
        clauses.append("o.customer_id=?"); vals.append(caller["id"])
    else:
        raise PermissionDenied("Insufficient permissions")
    if filters.get("orderId"):
        clauses.append("f.order_id=?"); vals.append(filters["orderId"])
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY f.price, f.created_at"
    return [offer_json(r) for r in conn.execute(sql, vals).fetchall()]


def accept_offer(conn, offer_id, caller):
    offer = get_offer(conn, offer_id)
    order = get_order(conn, offer["orderId"])
    if not can(caller, MANAGE_ORDERS):
        if not can(caller, EDIT_OWN_ORDERS) or order["customerId"] != caller["id"]:
            raise PermissionDenied("Only the order's customer can accept offers")
    if offer["accepted"]:
        raise InvalidStateError("Offer has already been accepted")
    if order["status"] != "new" or order["driverId"]:
        raise InvalidStateError("Order is no longer open for offers")
    _require_user_with_role(conn, offer["driverId"], "driver")

    # Offer, price and assignment land in one commit
    try:
        conn.execute("UPDATE order_offers SET accepted=1 WHERE id=?", [offer_id])
        conn.execute(
            "UPDATE orders SET driver_id=?, status='pending', total_amount=?, updated_at=? WHERE id=?",
            [offer["driverId"], offer["price"], utc_now(), order["id"]]
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    logger.info("Order %s: offer %s accepted, assigned to driver %s",
                order["requestNumber"], offer_id, offer["driverId"])
    order = get_order(conn, order["id"])
    notify_status_change(conn, order)
    return order
