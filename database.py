"""
database.py - SQLite schema, connection and row helpers.
"""

import hashlib
import hmac
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data.db")

IMPERSONATION_PERMISSION = "user_impersonation"

# ---------------------------------------------------------------------------
# Connection helpers
# ---------------------------------------------------------------------------

def get_connection(path=None):
    conn = sqlite3.connect(path or DEFAULT_DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def row_to_dict(row):
    if row is None:
        return None
    return dict(row)


def rows_to_list(rows):
    return [dict(r) for r in rows]


def new_id():
    return uuid.uuid4().hex


def utc_now():
    return datetime.now(timezone.utc).isoformat()


def hash_password(password, salt=None):
    salt = salt or os.urandom(16).hex()
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000).hex()
    return f"{salt}${digest}"


def check_password(password, stored):
    if not stored or "$" not in stored:
        return False
    salt, _ = stored.split("$", 1)
    return hmac.compare_digest(hash_password(password, salt), stored)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    full_name TEXT NOT NULL,
    phone TEXT,
    role TEXT NOT NULL DEFAULT 'customer' CHECK(role IN ('customer','driver','admin','subadmin')),
    is_active INTEGER DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS permissions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    description TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS permission_grants (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    permission_id TEXT NOT NULL REFERENCES permissions(id),
    created_at TEXT NOT NULL,
    UNIQUE(user_id, permission_id)
);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    request_number TEXT NOT NULL UNIQUE,
    customer_id TEXT NOT NULL REFERENCES users(id),
    driver_id TEXT REFERENCES users(id),
    service_id TEXT NOT NULL,
    subcategory_id TEXT,
    status TEXT NOT NULL DEFAULT 'new' CHECK(status IN ('new','pending','in_progress','picked_up','delivered','cancelled')),
    location TEXT NOT NULL,
    notes TEXT,
    customer_notes TEXT,
    admin_notes_displayed TEXT,
    payment_method TEXT,
    total_amount REAL,
    pricing_option TEXT CHECK(pricing_option IN ('auto_accept','choose_offer')),
    scheduled_for TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS order_offers (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL REFERENCES orders(id),
    driver_id TEXT NOT NULL REFERENCES users(id),
    price REAL NOT NULL,
    accepted INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS admin_notes (
    id TEXT PRIMARY KEY,
    subcategory_id TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    priority INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS impersonation_logs (
    id TEXT PRIMARY KEY,
    admin_id TEXT NOT NULL REFERENCES users(id),
    target_user_id TEXT NOT NULL REFERENCES users(id),
    target_user_role TEXT NOT NULL CHECK(target_user_role IN ('customer','driver','admin','subadmin')),
    action TEXT NOT NULL CHECK(action IN ('start','stop')),
    ip_address TEXT,
    user_agent TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    type TEXT DEFAULT 'general',
    read INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_orders_customer ON orders(customer_id);
CREATE INDEX IF NOT EXISTS idx_orders_driver ON orders(driver_id);
CREATE INDEX IF NOT EXISTS idx_offers_order ON order_offers(order_id);
CREATE INDEX IF NOT EXISTS idx_admin_notes_subcategory ON admin_notes(subcategory_id);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);
CREATE INDEX IF NOT EXISTS idx_impersonation_admin ON impersonation_logs(admin_id);
"""

SEED_USERS = [
    ("admin@example.com", "Super Admin", "admin", "1234567890"),
    ("subadmin@example.com", "Support Sub-Admin", "subadmin", "1234500000"),
    ("driver@example.com", "John Driver", "driver", "0987654321"),
    ("customer@example.com", "Jane Customer", "customer", "1122334455"),
]

SEED_PASSWORD = "password123"


def init_db(path=None, seed=True):
    """Create all tables and insert seed data if not already present."""
    conn = get_connection(path)
    try:
        conn.executescript(SCHEMA)
        now = utc_now()
        conn.execute(
            "INSERT OR IGNORE INTO permissions (id, name, description, created_at) VALUES (?,?,?,?)",
            [new_id(), IMPERSONATION_PERMISSION, "Permission to impersonate users", now]
        )
        conn.commit()

        if seed and conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 0:
            logger.info("Seeding database...")
            for email, full_name, role, phone in SEED_USERS:
                conn.execute(
                    "INSERT INTO users (id, email, password_hash, full_name, phone, role, created_at) VALUES (?,?,?,?,?,?,?)",
                    [new_id(), email, hash_password(SEED_PASSWORD), full_name, phone, role, now]
                )
            conn.commit()
            logger.info("Seeding complete")
    finally:
        conn.close()
