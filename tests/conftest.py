import pytest

import orders
import users
from database import get_connection, init_db
from policy import build_caller
from server import create_app

PASSWORD = "secret-pass"

PEOPLE = [
    ("admin-1", "admin"),
    ("subadmin-1", "subadmin"),
    ("driver-7", "driver"),
    ("driver-8", "driver"),
    ("customer-1", "customer"),
    ("customer-2", "customer"),
]

LOCATION = {
    "pickup": {"address": "1 King Fahd Rd", "lat": 24.71, "lng": 46.67},
    "dropoff": {"address": "22 Olaya St", "lat": 24.69, "lng": 46.68},
}


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "test.db")
    init_db(path, seed=False)
    return path


@pytest.fixture
def conn(db_path):
    c = get_connection(db_path)
    yield c
    c.close()


@pytest.fixture
def people(conn):
    """admin-1, subadmin-1, driver-7, driver-8, customer-1, customer-2; all share PASSWORD."""
    return {
        uid: users.create_user(conn, f"{uid}@example.com", uid.replace("-", " ").title(), role, PASSWORD, user_id=uid)
        for uid, role in PEOPLE
    }


@pytest.fixture
def as_caller(conn, people):
    def _caller(user_id):
        return build_caller(conn, users.get_user(conn, user_id))
    return _caller


@pytest.fixture
def place_order(conn, as_caller):
    def _place(by="customer-1", **extra):
        data = {"serviceId": "svc-water", "location": LOCATION}
        data.update(extra)
        return orders.create_order(conn, data, as_caller(by))
    return _place


@pytest.fixture
def app(db_path):
    return create_app({
        "TESTING": True,
        "DATABASE_PATH": db_path,
        "SEED_DATA": False,
        "SECRET_KEY": "test-secret",
    })


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client, people):
    def _login(user_id):
        resp = client.post("/api/login", json={"email": f"{user_id}@example.com", "password": PASSWORD})
        assert resp.status_code == 200, resp.get_json()
        return resp.get_json()
    return _login
