"""Shared fixtures: an in-memory Mongo database, a fresh category cache and auth headers."""
import os
from datetime import datetime, timedelta, timezone

os.environ.pop("DATABASE_URL", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

import settings
from auth import create_access_token, hash_password
from category_cache import CategoryCache
from database import ensure_indexes, get_db
from main import app, get_category_cache

ALLOWED = ["http://localhost:3000", "https://shop.example.com", "https://preview--shop"]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def cache(clock):
    return CategoryCache(ttl=300, max_entries=16, clock=clock)


@pytest.fixture
def client(db, cache, monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "ALLOWED_ORIGINS", list(ALLOWED))
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_category_cache] = lambda: cache
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, role: str = "user", email: str = None) -> dict:
    doc = {
        "name": f"{role.title()} Person",
        "email": email or f"{role}@example.com",
        "passwordHash": hash_password("secret123"),
        "role": role,
        "createdAt": datetime.now(timezone.utc),
    }
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


def bearer(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user['_id'])})}"}


@pytest.fixture
def admin(db):
    return make_user(db, "admin")


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


@pytest.fixture
def user(db):
    return make_user(db, "user")


@pytest.fixture
def user_headers(user):
    return bearer(user)


def seed_product(db, name: str, offset: int = 0, **fields) -> str:
    """Insert a product directly; `offset` spaces createdAt so newest-first order is predictable."""
    doc = {
        "name": name,
        "slug": name.lower().replace(" ", "-"),
        "description": f"{name} description",
        "price": 100,
        "stock": 10,
        "images": [],
        "createdAt": datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=offset),
    }
    doc.update(fields)
    return str(db["product"].insert_one(doc).inserted_id)


def seed_category(db, name: str, **fields) -> str:
    doc = {"name": name, "slug": name.lower().replace(" ", "-"), "description": "", "isActive": True}
    doc.update(fields)
    return str(db["category"].insert_one(doc).inserted_id)
