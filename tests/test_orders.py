import pytest

import admin_notes
import orders
from errors import InternalError, InvalidStateError, NotFoundError, PermissionDenied, ValidationError

LOCATION = {"pickup": {"address": "1 King Fahd Rd"}, "dropoff": {"address": "22 Olaya St"}}


def messages_for(conn, user_id):
    rows = conn.execute("SELECT message FROM notifications WHERE user_id=? ORDER BY rowid", [user_id]).fetchall()
    return [r[0] for r in rows]


# ---------------------------------------------------------------------------
# create_order
# ---------------------------------------------------------------------------

def test_customer_order_starts_new_with_request_number(place_order):
    order = place_order()
    assert order["status"] == "new"
    assert order["customerId"] == "customer-1"
    assert order["driverId"] is None
    assert order["requestNumber"].startswith("REQ-")
    assert order["location"]["pickup"]["address"]


def test_request_numbers_are_unique(place_order):
    numbers = {place_order()["requestNumber"] for _ in range(25)}
    assert len(numbers) == 25


def test_request_number_collision_is_retried(place_order, monkeypatch):
    numbers = iter(["REQ-1-1", "REQ-1-1", "REQ-1-2"])
    monkeypatch.setattr(orders, "generate_request_number", lambda: next(numbers))
    first = place_order()
    second = place_order()
    assert first["requestNumber"] == "REQ-1-1"
    assert second["requestNumber"] == "REQ-1-2"


def test_customer_cannot_choose_status_or_driver(place_order):
    order = place_order(status="delivered", driverId="driver-7", customerId="customer-2")
    assert order["status"] == "new"
    assert order["driverId"] is None
    assert order["customerId"] == "customer-1"


def test_first_validation_error_is_reported(conn, as_caller):
    with pytest.raises(ValidationError) as exc:
        orders.create_order(conn, {}, as_caller("customer-1"))
    assert exc.value.message == "Field 'serviceId' is required"

    with pytest.raises(ValidationError) as exc:
        orders.create_order(conn, {"serviceId": "svc-water"}, as_caller("customer-1"))
    assert exc.value.message == "Field 'location' is required"


@pytest.mark.parametrize("extra, field", [
    ({"totalAmount": "lots"}, "totalAmount"),
    ({"totalAmount": -5}, "totalAmount"),
    ({"pricingOption": "haggle"}, "pricingOption"),
    ({"notes": 12}, "notes"),
    ({"location": {"pickup": "somewhere"}}, "location"),
])
def test_invalid_fields_are_rejected(place_order, extra, field):
    with pytest.raises(ValidationError) as exc:
        place_order(**extra)
    assert exc.value.field == field


def test_drivers_cannot_create_orders(place_order):
    with pytest.raises(PermissionDenied):
        place_order(by="driver-7")


def test_staff_create_for_customer_with_auto_accept_status(place_order):
    order = place_order(by="admin-1", customerId="customer-2", driverId="driver-7", status="in_progress")
    assert order["customerId"] == "customer-2"
    assert order["driverId"] == "driver-7"
    assert order["status"] == "in_progress"


def test_staff_order_with_driver_defaults_to_pending(place_order):
    order = place_order(by="subadmin-1", customerId="customer-2", driverId="driver-7")
    assert order["status"] == "pending"


def test_staff_must_name_a_real_customer(place_order):
    with pytest.raises(ValidationError) as exc:
        place_order(by="admin-1")
    assert exc.value.field == "customerId"
    with pytest.raises(ValidationError):
        place_order(by="admin-1", customerId="driver-7")


@pytest.mark.parametrize("status", ["pending", "in_progress", "delivered"])
def test_staff_order_past_new_needs_a_driver(place_order, status):
    with pytest.raises(ValidationError) as exc:
        place_order(by="admin-1", customerId="customer-2", status=status)
    assert exc.value.field == "driverId"


def test_staff_order_with_driver_cannot_stay_new(place_order):
    with pytest.raises(ValidationError) as exc:
        place_order(by="admin-1", customerId="customer-2", driverId="driver-7", status="new")
    assert exc.value.field == "status"


def test_staff_may_record_a_cancelled_order_without_driver(place_order):
    order = place_order(by="admin-1", customerId="customer-2", status="cancelled")
    assert order["status"] == "cancelled"
    assert order["driverId"] is None


@pytest.mark.parametrize("amount", [float("inf"), float("-inf"), float("nan"), "Infinity", "NaN"])
def test_amounts_must_be_finite(place_order, amount):
    with pytest.raises(ValidationError) as exc:
        place_order(totalAmount=amount)
    assert exc.value.field == "totalAmount"


def test_new_orders_alert_staff(conn, place_order):
    order = place_order()
    rows = conn.execute("SELECT user_id, title FROM notifications WHERE type='alert' ORDER BY user_id").fetchall()
    assert [tuple(r) for r in rows] == [("admin-1", f"Order {order['requestNumber']}"),
                                        ("subadmin-1", f"Order {order['requestNumber']}")]


def test_assigned_staff_order_sends_no_alert(conn, place_order):
    place_order(by="admin-1", customerId="customer-2", driverId="driver-7")
    assert conn.execute("SELECT COUNT(*) FROM notifications WHERE type='alert'").fetchone()[0] == 0


def test_request_number_attempts_run_out(conn, place_order, monkeypatch):
    place_order()
    monkeypatch.setattr(orders, "generate_request_number", lambda: "REQ-1-1")
    place_order()
    with pytest.raises(InternalError) as exc:
        place_order()
    assert exc.value.status == 500
    assert conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0] == 2


def test_active_admin_notes_are_injected_by_priority(conn, place_order):
    admin_notes.create_note(conn, {"subcategoryId": "sub-1", "title": "Gate", "content": "Use the north gate", "priority": 1})
    admin_notes.create_note(conn, {"subcategoryId": "sub-1", "title": "Hours", "content": "Deliver before 5pm", "priority": 5})
    admin_notes.create_note(conn, {"subcategoryId": "sub-1", "title": "Old", "content": "Ignore me", "priority": 9,
                                   "isActive": False})
    order = place_order(subcategoryId="sub-1", adminNotesDisplayed="typed by hand")
    assert order["adminNotesDisplayed"] == "Hours: Deliver before 5pm\n\nGate: Use the north gate"


def test_caller_admin_notes_kept_when_subcategory_has_none(place_order):
    order = place_order(subcategoryId="sub-empty", adminNotesDisplayed="typed by hand")
    assert order["adminNotesDisplayed"] == "typed by hand"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def test_list_orders_is_role_scoped(conn, place_order, as_caller):
    a = place_order()
    b = place_order()
    c = place_order(by="customer-2")
    orders.assign_driver(conn, b["id"], "driver-7")

    mine = orders.list_orders(conn, as_caller("customer-1"))
    assert {o["id"] for o in mine} == {a["id"], b["id"]}
    assert all(o["customerId"] == "customer-1" for o in mine)

    assigned = orders.list_orders(conn, as_caller("driver-7"))
    assert [o["id"] for o in assigned] == [b["id"]]
    assert orders.list_orders(conn, as_caller("driver-8")) == []

    for staff in ("admin-1", "subadmin-1"):
        assert {o["id"] for o in orders.list_orders(conn, as_caller(staff))} == {a["id"], b["id"], c["id"]}


def test_list_orders_filters(conn, place_order, as_caller):
    place_order()
    b = place_order(by="customer-2")
    admin = as_caller("admin-1")
    assert [o["id"] for o in orders.list_orders(conn, admin, {"customerId": "customer-2"})] == [b["id"]]
    assert len(orders.list_orders(conn, admin, {"status": "new"})) == 2
    assert orders.list_orders(conn, admin, {"status": "delivered"}) == []
    with pytest.raises(ValidationError):
        orders.list_orders(conn, admin, {"status": "lost"})


def test_list_orders_newest_first(conn, place_order, as_caller):
    ids = [place_order()["id"] for _ in range(3)]
    assert [o["id"] for o in orders.list_orders(conn, as_caller("customer-1"))] == ids[::-1]


def test_unknown_role_cannot_list():
    with pytest.raises(PermissionDenied):
        orders.list_orders(None, {"id": "x", "role": "guest", "capabilities": frozenset()})


def test_get_order_is_idempotent(conn, place_order):
    order = place_order()
    assert orders.get_order(conn, order["id"]) == orders.get_order(conn, order["id"]) == order


def test_get_missing_order(conn):
    with pytest.raises(NotFoundError):
        orders.get_order(conn, "nope")


def test_order_access_rules(conn, place_order, as_caller):
    order = place_order()
    orders.assign_driver(conn, order["id"], "driver-7")
    for uid in ("customer-1", "driver-7", "admin-1", "subadmin-1"):
        assert orders.get_order_for(conn, order["id"], as_caller(uid))["id"] == order["id"]
    for uid in ("customer-2", "driver-8"):
        with pytest.raises(PermissionDenied):
            orders.get_order_for(conn, order["id"], as_caller(uid))


def test_open_orders_for_drivers(conn, place_order, as_caller):
    open_order = place_order()
    taken = place_order()
    orders.assign_driver(conn, taken["id"], "driver-7")
    assert [o["id"] for o in orders.list_open_orders(conn, as_caller("driver-8"))] == [open_order["id"]]
    with pytest.raises(PermissionDenied):
        orders.list_open_orders(conn, as_caller("customer-1"))


# ---------------------------------------------------------------------------
# update_order
# ---------------------------------------------------------------------------

def test_customer_status_is_silently_dropped(conn, place_order, as_caller):
    order = place_order()
    updated = orders.update_order(conn, order["id"], {"status": "delivered", "notes": "Ring twice"}, as_caller("customer-1"))
    assert updated["status"] == "new"
    assert updated["notes"] == "Ring twice"
    assert orders.get_order(conn, order["id"])["status"] == "new"


def test_customer_status_only_patch_is_a_no_op(conn, place_order, as_caller):
    order = place_order()
    updated = orders.update_order(conn, order["id"], {"status": "cancelled"}, as_caller("customer-1"))
    assert updated == order


def test_customer_cannot_reassign_or_take_over(conn, place_order, as_caller):
    order = place_order()
    updated = orders.update_order(
        conn, order["id"], {"driverId": "driver-7", "customerId": "customer-2", "adminNotesDisplayed": "x"},
        as_caller("customer-1"),
    )
    assert updated["driverId"] is None
    assert updated["customerId"] == "customer-1"
    assert updated["adminNotesDisplayed"] is None


def test_customer_cannot_touch_other_orders(conn, place_order, as_caller):
    order = place_order(by="customer-2")
    with pytest.raises(PermissionDenied):
        orders.update_order(conn, order["id"], {"notes": "mine now"}, as_caller("customer-1"))


def test_drivers_cannot_use_generic_update(conn, place_order, as_caller):
    order = place_order()
    orders.assign_driver(conn, order["id"], "driver-7")
    with pytest.raises(PermissionDenied):
        orders.update_order(conn, order["id"], {"notes": "x"}, as_caller("driver-7"))


def test_update_missing_order(conn, as_caller):
    with pytest.raises(NotFoundError):
        orders.update_order(conn, "nope", {"notes": "x"}, as_caller("admin-1"))


def test_admin_updates_fields_and_status(conn, place_order, as_caller):
    order = place_order()
    updated = orders.update_order(
        conn, order["id"], {"notes": "Fragile", "totalAmount": "150", "status": "cancelled"}, as_caller("admin-1"),
    )
    assert updated["notes"] == "Fragile"
    assert updated["totalAmount"] == 150.0
    assert updated["status"] == "cancelled"
    assert messages_for(conn, "customer-1") == ["Your order has been cancelled."]


def test_admin_patch_with_driver_assigns(conn, place_order, as_caller):
    order = place_order()
    updated = orders.update_order(conn, order["id"], {"driverId": "driver-7", "status": "pending"}, as_caller("admin-1"))
    assert updated["driverId"] == "driver-7"
    assert updated["status"] == "pending"


def test_admin_patch_with_unchanged_status_is_accepted(conn, place_order, as_caller):
    order = place_order()
    updated = orders.update_order(conn, order["id"], {"status": "new", "notes": "x"}, as_caller("admin-1"))
    assert updated["status"] == "new"
    assert messages_for(conn, "customer-1") == []


def test_admin_invalid_transition_writes_nothing(conn, place_order, as_caller):
    order = place_order()
    with pytest.raises(InvalidStateError):
        orders.update_order(conn, order["id"], {"notes": "x", "status": "delivered"}, as_caller("admin-1"))
    assert orders.get_order(conn, order["id"]) == order


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

def test_full_lifecycle_notifies_customer_and_driver(conn, place_order):
    order = place_order()
    orders.assign_driver(conn, order["id"], "driver-7")
    for status in ("in_progress", "picked_up", "delivered"):
        order = orders.update_order_status(conn, order["id"], status)
    assert order["status"] == "delivered"

    customer = messages_for(conn, "customer-1")
    driver = messages_for(conn, "driver-7")
    assert customer.count("Your order has been delivered successfully.") == 1
    assert driver.count("You have delivered the order successfully.") == 1
    assert customer[-1] == "Your order has been delivered successfully."
    assert len(customer) == len(driver) == 4


def test_delivered_writes_exactly_one_notification_each(conn, place_order):
    order = place_order()
    orders.assign_driver(conn, order["id"], "driver-7")
    orders.update_order_status(conn, order["id"], "in_progress")
    orders.update_order_status(conn, order["id"], "picked_up")
    before = conn.execute("SELECT COUNT(*) FROM notifications").fetchone()[0]
    orders.update_order_status(conn, order["id"], "delivered")
    rows = conn.execute(
        "SELECT user_id, title, type FROM notifications ORDER BY rowid LIMIT -1 OFFSET ?", [before]
    ).fetchall()
    assert sorted(r[0] for r in rows) == ["customer-1", "driver-7"]
    assert all(r[1] == f"Order {order['requestNumber']}" and r[2] == "order" for r in rows)


def test_cancel_unassigned_order_notifies_customer_only(conn, place_order):
    order = place_order()
    orders.update_order_status(conn, order["id"], "cancelled")
    rows = conn.execute("SELECT user_id FROM notifications WHERE type='order'").fetchall()
    assert [r[0] for r in rows] == ["customer-1"]


@pytest.mark.parametrize("status", ["pending", "in_progress", "picked_up"])
def test_cancel_from_any_active_status(conn, place_order, status):
    order = place_order(by="admin-1", customerId="customer-1", driverId="driver-7", status=status)
    assert orders.update_order_status(conn, order["id"], "cancelled")["status"] == "cancelled"


@pytest.mark.parametrize("terminal", ["delivered", "cancelled"])
def test_terminal_statuses_are_final(conn, place_order, terminal):
    order = place_order(by="admin-1", customerId="customer-1", driverId="driver-7", status=terminal)
    for status in orders.STATUSES:
        with pytest.raises(InvalidStateError):
            orders.update_order_status(conn, order["id"], status)


def test_steps_cannot_be_skipped(conn, place_order):
    order = place_order()
    orders.assign_driver(conn, order["id"], "driver-7")
    with pytest.raises(InvalidStateError):
        orders.update_order_status(conn, order["id"], "delivered")
    with pytest.raises(InvalidStateError):
        orders.update_order_status(conn, order["id"], "new")


def test_pending_needs_a_driver(conn, place_order):
    order = place_order()
    with pytest.raises(InvalidStateError):
        orders.update_order_status(conn, order["id"], "pending")


def test_unknown_status_value(conn, place_order):
    order = place_order()
    with pytest.raises(ValidationError):
        orders.update_order_status(conn, order["id"], "teleported")


def test_status_update_survives_notification_store_failure(conn, place_order, caplog):
    order = place_order()
    conn.execute("DROP TABLE notifications")
    conn.commit()
    updated = orders.update_order_status(conn, order["id"], "cancelled")
    assert updated["status"] == "cancelled"
    assert any(r.levelname == "ERROR" for r in caplog.records)


# ---------------------------------------------------------------------------
# assign_driver / advance_order_status
# ---------------------------------------------------------------------------

def test_assign_driver_on_new_order(conn, place_order):
    order = place_order()
    assigned = orders.assign_driver(conn, order["id"], "driver-7")
    assert assigned["status"] == "pending"
    assert assigned["driverId"] == "driver-7"
    assert messages_for(conn, "customer-1") == ["A driver has been assigned to your order."]
    assert messages_for(conn, "driver-7") == ["You have been assigned a new order."]


def test_reassignment_resets_to_pending(conn, place_order):
    order = place_order()
    orders.assign_driver(conn, order["id"], "driver-7")
    orders.update_order_status(conn, order["id"], "in_progress")
    reassigned = orders.assign_driver(conn, order["id"], "driver-8")
    assert reassigned["status"] == "pending"
    assert reassigned["driverId"] == "driver-8"


def test_assign_requires_a_driver_account(conn, place_order):
    order = place_order()
    with pytest.raises(ValidationError):
        orders.assign_driver(conn, order["id"], "customer-2")
    with pytest.raises(NotFoundError):
        orders.assign_driver(conn, "nope", "driver-7")


def test_cannot_assign_finished_order(conn, place_order):
    order = place_order()
    orders.update_order_status(conn, order["id"], "cancelled")
    with pytest.raises(InvalidStateError):
        orders.assign_driver(conn, order["id"], "driver-7")


def test_assigned_driver_moves_order_forward(conn, place_order, as_caller):
    order = place_order()
    orders.assign_driver(conn, order["id"], "driver-7")
    driver = as_caller("driver-7")
    assert orders.advance_order_status(conn, order["id"], "in_progress", driver)["status"] == "in_progress"
    assert orders.advance_order_status(conn, order["id"], "picked_up", driver)["status"] == "picked_up"
    with pytest.raises(PermissionDenied):
        orders.advance_order_status(conn, order["id"], "cancelled", driver)
    with pytest.raises(PermissionDenied):
        orders.advance_order_status(conn, order["id"], "delivered", as_caller("driver-8"))
    with pytest.raises(PermissionDenied):
        orders.advance_order_status(conn, order["id"], "delivered", as_caller("customer-1"))


def test_driver_cannot_skip_steps(conn, place_order, as_caller):
    order = place_order()
    orders.assign_driver(conn, order["id"], "driver-7")
    with pytest.raises(InvalidStateError):
        orders.advance_order_status(conn, order["id"], "delivered", as_caller("driver-7"))


def test_staff_status_path_allows_cancel(conn, place_order, as_caller):
    order = place_order()
    assert orders.advance_order_status(conn, order["id"], "cancelled", as_caller("subadmin-1"))["status"] == "cancelled"


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------

def test_offer_and_accept(conn, place_order, as_caller):
    order = place_order()
    offer = orders.create_offer(conn, order["id"], 120, as_caller("driver-7"))
    assert offer["accepted"] is False
    assert messages_for(conn, "customer-1") == ["A driver offered 120.00 for your order."]

    accepted = orders.accept_offer(conn, offer["id"], as_caller("customer-1"))
    assert accepted["status"] == "pending"
    assert accepted["driverId"] == "driver-7"
    assert accepted["totalAmount"] == 120.0
    assert orders.get_offer(conn, offer["id"])["accepted"] is True


def test_offer_rules(conn, place_order, as_caller):
    order = place_order()
    orders.create_offer(conn, order["id"], 100, as_caller("driver-7"))
    with pytest.raises(InvalidStateError):
        orders.create_offer(conn, order["id"], 90, as_caller("driver-7"))
    with pytest.raises(PermissionDenied):
        orders.create_offer(conn, order["id"], 90, as_caller("customer-1"))
    with pytest.raises(ValidationError):
        orders.create_offer(conn, order["id"], 0, as_caller("driver-8"))
    with pytest.raises(ValidationError):
        orders.create_offer(conn, order["id"], None, as_caller("driver-8"))


def test_only_the_customer_accepts(conn, place_order, as_caller):
    order = place_order()
    offer = orders.create_offer(conn, order["id"], 100, as_caller("driver-7"))
    with pytest.raises(PermissionDenied):
        orders.accept_offer(conn, offer["id"], as_caller("customer-2"))
    with pytest.raises(PermissionDenied):
        orders.accept_offer(conn, offer["id"], as_caller("driver-7"))


def test_order_closes_after_acceptance(conn, place_order, as_caller):
    order = place_order()
    first = orders.create_offer(conn, order["id"], 100, as_caller("driver-7"))
    second = orders.create_offer(conn, order["id"], 95, as_caller("driver-8"))
    orders.accept_offer(conn, first["id"], as_caller("customer-1"))
    with pytest.raises(InvalidStateError):
        orders.accept_offer(conn, second["id"], as_caller("customer-1"))
    with pytest.raises(InvalidStateError):
        orders.accept_offer(conn, first["id"], as_caller("admin-1"))


def test_list_offers_scoping(conn, place_order, as_caller):
    mine = place_order()
    theirs = place_order(by="customer-2")
    a = orders.create_offer(conn, mine["id"], 100, as_caller("driver-7"))
    b = orders.create_offer(conn, theirs["id"], 80, as_caller("driver-7"))
    c = orders.create_offer(conn, mine["id"], 90, as_caller("driver-8"))

    assert [o["id"] for o in orders.list_offers(conn, as_caller("customer-1"))] == [c["id"], a["id"]]
    assert [o["id"] for o in orders.list_offers(conn, as_caller("driver-7"))] == [b["id"], a["id"]]
    assert len(orders.list_offers(conn, as_caller("admin-1"))) == 3
    assert [o["id"] for o in orders.list_offers(conn, as_caller("admin-1"), {"orderId": theirs["id"]})] == [b["id"]]


def test_offer_price_must_be_finite(conn, place_order, as_caller):
    order = place_order()
    for price in (float("inf"), float("nan")):
        with pytest.raises(ValidationError):
            orders.create_offer(conn, order["id"], price, as_caller("driver-7"))
    assert orders.list_offers(conn, as_caller("admin-1")) == []


def test_offer_from_deactivated_driver_leaves_order_open(conn, place_order, as_caller):
    order = place_order()
    offer = orders.create_offer(conn, order["id"], 40, as_caller("driver-7"))
    conn.execute("UPDATE users SET is_active=0 WHERE id='driver-7'")
    conn.commit()

    with pytest.raises(ValidationError):
        orders.accept_offer(conn, offer["id"], as_caller("customer-1"))
    assert orders.get_offer(conn, offer["id"])["accepted"] is False
    assert orders.get_order(conn, order["id"]) == order

    # The driver comes back and the same offer can still be taken
    conn.execute("UPDATE users SET is_active=1 WHERE id='driver-7'")
    conn.commit()
    accepted = orders.accept_offer(conn, offer["id"], as_caller("customer-1"))
    assert accepted["status"] == "pending"
    assert accepted["driverId"] == "driver-7"
    assert accepted["totalAmount"] == 40.0


def test_accepting_an_offer_notifies_both_sides(conn, place_order, as_caller):
    order = place_order()
    offer = orders.create_offer(conn, order["id"], 75, as_caller("driver-8"))
    orders.accept_offer(conn, offer["id"], as_caller("admin-1"))
    assert messages_for(conn, "customer-1")[-1] == "A driver has been assigned to your order."
    assert messages_for(conn, "driver-8") == ["You have been assigned a new order."]
