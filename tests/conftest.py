import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import create_token, hash_password
from database import create_document, ensure_indexes, get_db
from schemas import Product, User

_counter = itertools.count(1)

SHIPPING_ADDRESS = {
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
}


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    database = client["rbac_store_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(role="customer", email=None, password="secret123", is_active=True, name=None):
        n = next(_counter)
        doc = User(
            name=name or f"{role.title()} {n}",
            email=email or f"{role}{n}@shop.com",
            password_hash=hash_password(password),
            role=role,
            is_active=is_active,
        ).model_dump()
        create_document(db, "user", doc)
        return doc

    return _make


@pytest.fixture
def make_product(db):
    def _make(seller, price=30.0, stock=10, **overrides):
        n = next(_counter)
        data = {
            "name": f"Product {n}",
            "description": "A perfectly ordinary product for tests",
            "category": "books",
            "price": price,
            "stock": stock,
            "images": ["https://img.shop.com/p.png"],
            "seller": seller["_id"],
            "sku": f"SKU-TEST-{n}",
        }
        data.update(overrides)
        doc = Product(**data).model_dump()
        create_document(db, "product", doc)
        return doc

    return _make


@pytest.fixture
def auth():
    def _headers(user):
        return {"Authorization": f"Bearer {create_token(user)}"}

    return _headers


@pytest.fixture
def place_order(client, auth):
    def _place(customer, items, **extra):
        body = {
            "items": [{"product": str(p["_id"]), "quantity": q} for p, q in items],
            "shipping_address": SHIPPING_ADDRESS,
            "payment": {"method": "credit_card"},
        }
        body.update(extra)
        return client.post("/api/orders", json=body, headers=auth(customer))

    return _place


@pytest.fixture
def customer(make_user):
    return make_user("customer")


@pytest.fixture
def seller(make_user):
    return make_user("seller")


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def courier(make_user):
    return make_user("delivery")
