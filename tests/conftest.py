"""
Shared fixtures for the Zyra Store API tests.

MongoDB is replaced by mongomock, Stripe API calls by ``StubStripeGateway``
(webhook signatures still go through the real Stripe SDK), and outgoing email
is captured in ``outbox`` instead of being sent through Resend.
"""

import hashlib
import hmac
import json
import re
import time
from collections import namedtuple
from typing import Dict, List, Optional

import bcrypt
import mongomock
import pytest
import resend
from flask_jwt_extended import create_access_token

import zyra_store.app as app_module
from zyra_store import emails
from zyra_store.app import create_app
from zyra_store.payments import StripeGateway
from zyra_store.timeutils import utcnow

WEBHOOK_SECRET = "whsec_test_secret_for_signatures"
ADMIN_EMAIL = "owner@zyra.test"
DEFAULT_PASSWORD = "Secret123"
SHIPPING_ADDRESS = {
    "street": "12 Market Street",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
    "country": "US",
}

AuthUser = namedtuple("AuthUser", "id email password headers document")


class StubStripeGateway(StripeGateway):
    """Keeps PaymentIntents in memory; webhook verification is inherited."""

    def __init__(self):
        super().__init__("sk_test_stub", WEBHOOK_SECRET, currency="usd")
        self.intents: Dict[str, Dict] = {}
        self.intents_by_key: Dict[str, str] = {}
        self.refunds: List[Dict] = []
        self.cancelled: List[str] = []

    def create_payment_intent(self, amount_minor, metadata=None, idempotency_key=None, currency=None):
        if idempotency_key and idempotency_key in self.intents_by_key:
            return dict(self.intents[self.intents_by_key[idempotency_key]])
        intent_id = f"pi_test_{len(self.intents) + 1:04d}"
        self.intents[intent_id] = {
            "id": intent_id,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret_abc",
            "amount": amount_minor,
            "currency": currency or self.currency,
            "latest_charge": None,
            "last_payment_error": None,
            "metadata": dict(metadata or {}),
        }
        if idempotency_key:
            self.intents_by_key[idempotency_key] = intent_id
        return dict(self.intents[intent_id])

    def retrieve_payment_intent(self, intent_id):
        return dict(self.intents[intent_id])

    def cancel_payment_intent(self, intent_id):
        self.cancelled.append(intent_id)
        self.intents[intent_id]["status"] = "canceled"
        return dict(self.intents[intent_id])

    def create_refund(self, intent_id, amount_minor=None, reason=None, idempotency_key=None):
        refund = {
            "id": f"re_test_{len(self.refunds) + 1:04d}",
            "status": "succeeded",
            "amount": amount_minor or self.intents[intent_id]["amount"],
            "currency": self.currency,
            "payment_intent": intent_id,
            "reason": reason,
        }
        self.refunds.append(refund)
        return dict(refund)

    def set_intent_status(self, intent_id, status, last_payment_error=None):
        self.intents[intent_id]["status"] = status
        self.intents[intent_id]["last_payment_error"] = last_payment_error


def sign_webhook_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_event(event_type: str, data_object: Dict) -> str:
    return json.dumps(
        {
            "id": f"evt_{int(time.time() * 1000)}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
    )


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["zyra_test"]


@pytest.fixture
def gateway():
    return StubStripeGateway()


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    sent: List[Dict] = []

    def capture(payload):
        sent.append(payload)
        return True, None

    monkeypatch.setattr(emails, "send_email_via_resend", capture)
    return sent


@pytest.fixture
def app(monkeypatch, mongo_db, gateway):
    monkeypatch.setattr(resend, "api_key", None)

    class FakePyMongo:
        def __init__(self, flask_app):
            self.db = mongo_db

    monkeypatch.setattr(app_module, "PyMongo", FakePyMongo)
    flask_app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length-1234",
            "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
            "BCRYPT_LOG_ROUNDS": 4,
            "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "RESEND_API_KEY": "re_test",
            "TRUSTED_PROXY_HOPS": 0,
        }
    )
    flask_app.extensions["payment_gateway"] = gateway
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app, mongo_db):
    counter = {"value": 0}

    def _make_user(
        email: Optional[str] = None,
        role: str = "customer",
        name: str = "Test Shopper",
        password: str = DEFAULT_PASSWORD,
        verified: bool = True,
        active: bool = True,
    ) -> AuthUser:
        counter["value"] += 1
        email = email or f"shopper{counter['value']}@zyra.test"
        now = utcnow()
        document = {
            "email": email,
            "name": name,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=4)),
            "role": role,
            "email_verified": verified,
            "is_active": active,
            "created_at": now,
            "updated_at": now,
        }
        document["_id"] = mongo_db.users.insert_one(document).inserted_id
        with app.app_context():
            token = create_access_token(identity=str(document["_id"]))
        return AuthUser(
            document["_id"], email, password, {"Authorization": f"Bearer {token}"}, document
        )

    return _make_user


@pytest.fixture
def customer(make_user):
    return make_user(name="Casey Customer")


@pytest.fixture
def admin(make_user):
    return make_user(email=ADMIN_EMAIL, role="admin", name="Store Owner")


@pytest.fixture
def moderator(make_user):
    return make_user(role="moderator", name="Morgan Moderator")


@pytest.fixture
def category(mongo_db):
    now = utcnow()
    document = {
        "name": "Skincare",
        "slug": "skincare",
        "description": "Creams and serums",
        "created_at": now,
        "updated_at": now,
    }
    document["_id"] = mongo_db.categories.insert_one(document).inserted_id
    return document


@pytest.fixture
def make_product(mongo_db, category):
    def _make_product(
        name: str = "Rose Serum",
        sku: str = "SER-001",
        price: float = 25.0,
        stock: int = 10,
        is_active: bool = True,
        category_id=None,
        **extra,
    ):
        now = utcnow()
        document = {
            "name": name,
            "slug": sku.lower(),
            "sku": sku,
            "description": "",
            "price": price,
            "compare_at_price": None,
            "stock": stock,
            "category_id": category_id or category["_id"],
            "images": [],
            "is_active": is_active,
            "is_featured": False,
            "average_rating": 0.0,
            "review_count": 0,
            "created_at": now,
            "updated_at": now,
            **extra,
        }
        document["_id"] = mongo_db.products.insert_one(document).inserted_id
        return document

    return _make_product


@pytest.fixture
def product(make_product):
    return make_product()


@pytest.fixture
def place_order(client):
    def _place_order(user: AuthUser, items: List[Dict], **payload):
        body = {
            "items": [
                {"product_id": str(item["product_id"]), "quantity": item.get("quantity", 1)}
                for item in items
            ],
            "shipping_address": SHIPPING_ADDRESS,
            **payload,
        }
        response = client.post("/api/orders", json=body, headers=user.headers)
        assert response.status_code == 201, response.get_json()
        return response.get_json()["order"]

    return _place_order


def extract_code(email_payload: Dict) -> str:
    match = re.search(r"\b(\d{6})\b", email_payload["text"])
    assert match, email_payload["text"]
    return match.group(1)
