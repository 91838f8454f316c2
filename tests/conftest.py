"""Pytest fixtures for the storefront tests."""

import json
from datetime import datetime, timedelta

import jwt
import mongomock
import pytest
import stripe
from bson import ObjectId
from fastapi.testclient import TestClient

import config
from carts import CartStore
from checkout import CheckoutDispatcher
from database import create_document, ensure_indexes
from errors import WebhookSignatureError
from payments import build_strategies
from schemas import Product, SizeQuantity


class FixedRng:
    """Stands in for random.Random; ``value`` below a success rate means approved."""

    def __init__(self, value: float = 0.0):
        self.value = value

    def random(self) -> float:
        return self.value


class FakeGateway:
    """Records provider calls instead of talking to Stripe."""

    VALID_SIGNATURE = "t=1,v1=valid"

    def __init__(self):
        self.sessions = []
        self.customers = []
        self.fail = False

    def find_or_create_customer(self, email, name, user_id):
        if self.fail:
            raise stripe.APIConnectionError("provider unreachable")
        self.customers.append({"email": email, "name": name, "user_id": user_id})
        return "cus_test_1"

    def create_session(self, **params):
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append(params)
        return {"id": session_id, "url": f"https://checkout.test/{session_id}"}

    def construct_event(self, payload, signature):
        if signature != self.VALID_SIGNATURE:
            raise WebhookSignatureError()
        return json.loads(payload)


@pytest.fixture
def db():
    """A fresh in-memory MongoDB database."""
    client = mongomock.MongoClient()
    database = client["shopkart_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def rng():
    return FixedRng(0.0)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_product(db):
    """Insert a product; ``sizes`` maps size -> quantity."""

    def _make(name="Air Zoom", brand="Nike", price=2000.0, sizes=None):
        sizes = {9: 5} if sizes is None else sizes
        slug = name.lower().replace(" ", "-")
        product = Product(
            name=name,
            brand=brand,
            slug=slug,
            image=f"https://img.test/{slug}.png",
            price=price,
            size_quantity=[SizeQuantity(size=s, quantity=q) for s, q in sizes.items()],
        )
        return create_document(db, "product", product)

    return _make


@pytest.fixture
def make_user(db):
    def _make(name="Asha", email="asha@example.com", is_admin=False):
        doc = {"name": name, "email": email, "is_admin": is_admin, "favorites": []}
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def carts(db):
    return CartStore(db)


@pytest.fixture
def dispatcher(db, gateway, rng):
    return CheckoutDispatcher(db, build_strategies(gateway, rng))


@pytest.fixture
def billing():
    return {
        "full_name": "Asha Rao",
        "email": "asha@example.com",
        "phone": "9999999999",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "KA",
        "pincode": "560001",
    }


def stock_of(db, product_id, size):
    product = db["product"].find_one({"_id": ObjectId(product_id)})
    for bucket in product.get("size_quantity", []):
        if bucket["size"] == size:
            return bucket["quantity"]
    return None


@pytest.fixture
def stock(db):
    """stock(product_id, size) -> quantity, or None once the bucket is gone."""
    return lambda product_id, size: stock_of(db, product_id, size)


def make_token(user, expires_in=timedelta(hours=1)):
    payload = {"sub": str(user["_id"]), "email": user.get("email"), "exp": datetime.utcnow() + expires_in}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


@pytest.fixture
def auth_headers():
    return lambda user, **kw: {"Authorization": f"Bearer {make_token(user, **kw)}"}


@pytest.fixture
def client(db, gateway, rng):
    """TestClient with the database, payment gateway and random source overridden."""
    from database import get_db
    from main import app, get_gateway, get_rng

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_rng] = lambda: rng
    yield TestClient(app)
    app.dependency_overrides.clear()
