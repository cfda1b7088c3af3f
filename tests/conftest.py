"""Pytest fixtures for the Gebeya API tests."""

import jwt
import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes, get_db
from schemas import ImageRef
from storage import get_object_store

JWT_SECRET = "test-secret"


class MemoryObjectStore:
    """In-memory stand-in for the S3 store."""

    def __init__(self):
        self.objects = {}
        self.deleted = []

    def put(self, data, content_type, key_hint):
        key = f"{key_hint}-{len(self.objects) + len(self.deleted) + 1}"
        self.objects[key] = (data, content_type)
        return ImageRef(url=f"https://cdn.test/{key}", storage_key=key)

    def delete(self, key):
        self.deleted.append(key)
        self.objects.pop(key, None)


def make_token(user_id, role=None):
    claims = {"userId": user_id}
    if role:
        claims["role"] = role
    return jwt.encode(claims, JWT_SECRET, algorithm="HS256")


@pytest.fixture
def mongo_db():
    """A fresh in-memory database with the production indexes."""
    db = mongomock.MongoClient()["gebeya_test"]
    ensure_indexes(db)
    return db


@pytest.fixture
def object_store():
    return MemoryObjectStore()


@pytest.fixture
def api_client(mongo_db, object_store, monkeypatch):
    """Test client wired to the in-memory database and object store."""
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    from main import app

    app.dependency_overrides[get_db] = lambda: mongo_db
    app.dependency_overrides[get_object_store] = lambda: object_store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_token('admin-1', role='admin')}"}


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {make_token('user-1')}"}


@pytest.fixture
def make_product(mongo_db):
    """Insert a product document directly and return its id."""

    def _make(name="Coffee Beans", price=10.0, stock_quantity=5, sold=0, **extra):
        data = {
            "name": name,
            "price": price,
            "short_description": "",
            "full_description": "",
            "stock_quantity": stock_quantity,
            "sold": sold,
            "category": None,
            "discount": 0,
            "has_discount": False,
            "images": [],
        }
        data.update(extra)
        return create_document(mongo_db, "product", data)

    return _make


@pytest.fixture
def order_payload():
    def _payload(items, user_id="user-1", **extra):
        body = {"user_id": user_id, "name": "Abebe Kebede", "amount": 20.0, "items": items}
        body.update(extra)
        return body

    return _payload
