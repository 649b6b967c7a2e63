"""Pytest fixtures for the storefront backend tests."""

from datetime import datetime

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from carts import add_item

TEST_JWT_SECRET = "test-secret-key-for-storefront-tests-0123456789"


@pytest.fixture
def db():
    """An in-memory MongoDB database."""
    client = mongomock.MongoClient()
    return client["storefront_test"]


@pytest.fixture
def app(db):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": TEST_JWT_SECRET,
            "DEFAULT_ADMIN_EMAIL": "",
            "STRIPE_SECRET_KEY": "sk_test_storefront",
            "STRIPE_API_BASE": "https://stripe.test",
            "PUBLIC_URL": "https://shop.example.com",
            "RESEND_ORDER_API_KEY": "",
            "STORE_CURRENCY": "usd",
        },
        database=db,
    )


@pytest.fixture
def client(app):
    return app.test_client()


def insert_user(db, email, role="standard"):
    result = db.users.insert_one(
        {"email": email, "name": email.split("@")[0], "role": role}
    )
    return db.users.find_one({"_id": result.inserted_id})


def auth_headers(app, email):
    with app.app_context():
        token = create_access_token(identity=email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer(db):
    return insert_user(db, "shopper@example.com")


@pytest.fixture
def admin(db):
    return insert_user(db, "admin@example.com", role="admin")


@pytest.fixture
def customer_headers(app, customer):
    return auth_headers(app, customer["email"])


@pytest.fixture
def admin_headers(app, admin):
    return auth_headers(app, admin["email"])


@pytest.fixture
def make_product(db):
    """Factory inserting products priced in cents."""

    def _make(title="Widget", price=2500, stock=10, is_active=True):
        document = {
            "title": title,
            "description": "",
            "price": price,
            "stock": stock,
            "is_active": is_active,
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow(),
        }
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return _make


def put_in_cart(db, user, product, quantity=1):
    return add_item(db, str(user["_id"]), str(product["_id"]), quantity)


def set_config(db, tax_percent=0, shipping_fee=0, free_shipping_threshold=0):
    db.payment_config.replace_one(
        {"_id": "payment_config"},
        {
            "_id": "payment_config",
            "tax_percent": tax_percent,
            "shipping_fee": shipping_fee,
            "free_shipping_threshold": free_shipping_threshold,
        },
        upsert=True,
    )
