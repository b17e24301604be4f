"""Shared pytest fixtures: an app wired to mongomock and a temp object store."""

import io
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import bcrypt
import mongomock
import pytest

from storefront import create_app
from storefront.storage import LocalObjectStore

ADMIN_EMAIL = "admin@example.com"
CUSTOMER_EMAIL = "customer@example.com"
PASSWORD = "secret123"


def make_config(tmp_path, **overrides):
    config = {
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "JWT_SECRET_KEY": "test-jwt-secret-with-enough-length",
        "JWT_COOKIE_CSRF_PROTECT": False,
        "STORAGE_ROOT": str(tmp_path / "storage"),
    }
    config.update(overrides)
    return config


def create_user(database, email, password=PASSWORD, admin=False):
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=4))
    user_id = database.users.insert_one({"email": email, "password": hashed}).inserted_id
    if admin:
        database.app_admins.insert_one({"id": str(user_id)})
    return user_id


def log_in(client, email, password=PASSWORD):
    response = client.post("/login", data={"email": email, "password": password})
    assert response.status_code == 302
    return client


def image(name="photo.png", content=b"\x89PNG fake image bytes"):
    return (io.BytesIO(content), name)


@pytest.fixture
def database():
    return mongomock.MongoClient().storefront_test


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "storage"))


@pytest.fixture
def app(tmp_path, database, object_store):
    return create_app(make_config(tmp_path), database=database, object_store=object_store)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(app, database):
    create_user(database, ADMIN_EMAIL, admin=True)
    return log_in(app.test_client(), ADMIN_EMAIL)


@pytest.fixture
def customer_client(app, database):
    create_user(database, CUSTOMER_EMAIL)
    return log_in(app.test_client(), CUSTOMER_EMAIL)


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.public_url.side_effect = lambda key: f"https://cdn.example.com/{key}"
    return store


@pytest.fixture
def mock_store_app(tmp_path, database, mock_store):
    return create_app(make_config(tmp_path), database=database, object_store=mock_store)


@pytest.fixture
def mock_store_admin_client(mock_store_app, database):
    create_user(database, ADMIN_EMAIL, admin=True)
    return log_in(mock_store_app.test_client(), ADMIN_EMAIL)


@pytest.fixture
def seeded_products(database):
    now = datetime.utcnow()
    documents = [
        {
            "title": "Leather Bag",
            "description": "Brown handbag",
            "brand": "Longchamp",
            "price": 120.0,
            "category": "bags",
            "condition": "new",
            "is_available": True,
            "main_image_url": "https://cdn.example.com/bag.png",
            "secondary_image_urls": [],
            "created_at": now - timedelta(days=3),
        },
        {
            "title": "Running Shoes",
            "description": "Light trail shoes with a LEATHER trim",
            "brand": "Nike",
            "price": 80.0,
            "category": "shoes",
            "condition": "used",
            "is_available": True,
            "main_image_url": "https://cdn.example.com/shoes.png",
            "secondary_image_urls": [],
            "created_at": now - timedelta(days=2),
        },
        {
            "title": "Summer Dress",
            "description": "Cotton",
            "brand": "Zara",
            "price": 25.5,
            "category": "clothes",
            "condition": "new",
            "is_available": False,
            "main_image_url": "https://cdn.example.com/dress.png",
            "secondary_image_urls": [],
            "created_at": now - timedelta(days=1),
        },
        {
            "title": "Vintage Watch",
            "description": "Swiss made",
            "brand": "Nike Vintage",
            "price": 300.0,
            "category": "accessories",
            "condition": "used",
            "is_available": True,
            "main_image_url": "https://cdn.example.com/watch.png",
            "secondary_image_urls": [{"url": "https://cdn.example.com/watch-2.png"}],
            "created_at": now,
        },
    ]
    database.data.insert_many(documents)
    return documents


def csrf_token(client):
    return client.get_cookie("csrf_access_token").value


@pytest.fixture
def csrf_app(tmp_path, database, object_store):
    config = make_config(tmp_path, JWT_COOKIE_CSRF_PROTECT=True)
    return create_app(config, database=database, object_store=object_store)


@pytest.fixture
def csrf_admin_client(csrf_app, database):
    create_user(database, ADMIN_EMAIL, admin=True)
    return log_in(csrf_app.test_client(), ADMIN_EMAIL)


@pytest.fixture
def csrf_customer_client(csrf_app, database):
    create_user(database, CUSTOMER_EMAIL)
    return log_in(csrf_app.test_client(), CUSTOMER_EMAIL)
