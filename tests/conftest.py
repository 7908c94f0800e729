import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import create_access_token, rate_store
from database import create_document, ensure_indexes, get_db
from notifications import get_notifier

ADDRESS = {
    "first_name": "Asha",
    "last_name": "Rao",
    "address": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
    "phone": "9876543210",
}


class RecordingNotifier:
    """Stands in for NotificationService and remembers every event it was asked to send."""

    def __init__(self):
        self.sent = []

    def __getattr__(self, name):
        if not name.startswith("send_"):
            raise AttributeError(name)

        def send(*args):
            self.sent.append((name, args))
            return {"success": True, "results": {}}
        return send

    def events(self):
        return [name for name, _ in self.sent]


@pytest.fixture
def db():
    database = mongomock.MongoClient().marketplace_test
    ensure_indexes(database)
    return database


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(db, notifier):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_notifier] = lambda: notifier
    rate_store.clear()
    with TestClient(main.app, raise_server_exceptions=False) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def seller(db):
    seller_id = create_document(db, "sellers", {
        "store_name": "Clay Works",
        "email": "clay@example.com",
        "contact_number": "9123456780",
        "password_hash": "not-a-real-hash",
        "total_orders": 0,
        "total_revenue": 0.0,
    })
    return {"_id": seller_id, "store_name": "Clay Works", "email": "clay@example.com"}


@pytest.fixture
def customer(db):
    customer_id = create_document(db, "customers", {
        "name": "Asha Rao",
        "email": "asha@example.com",
        "phone": "9876543210",
        "password_hash": "not-a-real-hash",
        "role": "customer",
        "is_active": True,
        "total_orders": 0,
        "total_spent": 0.0,
    })
    return {"_id": customer_id, "name": "Asha Rao", "email": "asha@example.com", "phone": "9876543210"}


@pytest.fixture
def admin(db):
    admin_id = create_document(db, "customers", {
        "name": "Ops Admin",
        "email": "ops@example.com",
        "password_hash": "not-a-real-hash",
        "role": "admin",
        "is_active": True,
    })
    return {"_id": admin_id, "role": "admin"}


@pytest.fixture
def make_product(db, seller):
    def make(**overrides):
        doc = {
            "name": "Terracotta Vase",
            "description": "Hand thrown vase",
            "price": 100.0,
            "original_price": 120.0,
            "sku": "TV-001",
            "category": "Home Decor",
            "image": "/vase.png",
            "stock": 10,
            "low_stock_threshold": 5,
            "in_stock": True,
            "delivery_days": 5,
            "seller_id": seller["_id"],
            "rating": 0.0,
            "review_count": 0,
            "status": "active",
        }
        doc.update(overrides)
        return create_document(db, "products", doc)
    return make


def bearer(subject_id, role):
    return {"Authorization": f"Bearer {create_access_token({'sub': subject_id, 'role': role})}"}


@pytest.fixture
def customer_headers(customer):
    return bearer(customer["_id"], "customer")


@pytest.fixture
def seller_headers(seller):
    return bearer(seller["_id"], "seller")


@pytest.fixture
def admin_headers(admin):
    return bearer(admin["_id"], "admin")
