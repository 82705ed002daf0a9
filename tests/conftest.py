"""Global pytest configuration and fixtures.

The database is an in-memory mongomock instance patched into both the
`database` module and `main`, so every test starts from empty collections.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import database  # noqa: E402
import main  # noqa: E402


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def mongo(monkeypatch):
    """Fresh in-memory database with the application's indexes."""
    test_db = mongomock.MongoClient()["storefront_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    database.ensure_indexes()
    return test_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


# =============================================================================
# Users
# =============================================================================


def insert_user(mongo, email, role=0, password="secret123", answer="blue", name="Test User"):
    doc = {
        "name": name,
        "email": email,
        "password": main.hash_password(password),
        "phone": "81234567",
        "address": "1 Market Street",
        "answer": answer,
        "role": role,
    }
    doc["_id"] = mongo["users"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def admin_user(mongo):
    return insert_user(mongo, "admin@example.com", role=1, name="Admin")


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": main.create_token(admin_user)}


@pytest.fixture
def shopper(mongo):
    return insert_user(mongo, "shopper@example.com", name="Shopper")


@pytest.fixture
def shopper_headers(shopper):
    return {"Authorization": f"Bearer {main.create_token(shopper)}"}


# =============================================================================
# Catalog
# =============================================================================


def insert_category(mongo, name, slug=None):
    doc = {"name": name, "slug": slug or name.lower().replace(" ", "-")}
    doc["_id"] = mongo["categories"].insert_one(doc).inserted_id
    return doc


def insert_product(mongo, name, price, category_id, description="", quantity=5, photo=None):
    doc = {
        "_id": ObjectId(),
        "name": name,
        "slug": name.lower().replace(" ", "-"),
        "description": description or f"{name} description",
        "price": price,
        "category": category_id,
        "quantity": quantity,
        "shipping": True,
        "photo": photo,
        "created_at": datetime.now(timezone.utc),
    }
    mongo["products"].insert_one(doc)
    return doc


@pytest.fixture
def catalog_data(mongo):
    """Two categories and five products spread over a range of prices."""
    books = insert_category(mongo, "Book")
    gadgets = insert_category(mongo, "Gadgets")
    products = [
        insert_product(mongo, "Novel", 15.0, books["_id"], description="A gripping mystery story"),
        insert_product(mongo, "Textbook", 79.99, books["_id"], description="Comprehensive course notes"),
        insert_product(mongo, "Laptop", 1499.99, gadgets["_id"], description="A powerful laptop"),
        insert_product(mongo, "Smartphone", 999.99, gadgets["_id"], description="High-end phone"),
        insert_product(mongo, "Cable", 5.0, gadgets["_id"], description="USB cable for a laptop"),
    ]
    return {"books": books, "gadgets": gadgets, "products": products}
