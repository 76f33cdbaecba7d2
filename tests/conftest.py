import hashlib
import hmac
import json
import os
import time
import uuid

os.environ.setdefault("FLASK_ENV", "testing")

import jwt
import pytest

from app import create_app
from models import db, User, UserRole
from services.errors import UpstreamError
from services.processor import StripeProcessor

WEBHOOK_SECRET = "whsec_test"
ADMIN_EMAIL = "owner@maoun.app"


class FakeProcessor(StripeProcessor):
    """Stripe en memoria. La verificación de firmas usa la librería real"""

    def __init__(self):
        super().__init__(api_key="sk_test_dummy", scan_limit=100)
        self.customers = []
        self.subscriptions = {}
        self.sessions = []
        self.cancelled = []
        self.extended = []
        self.fail = False
        self.search_lag = False

    def _check(self):
        if self.fail:
            raise UpstreamError(detail="stripe caído")

    def add_customer(self, email, customer_id=None):
        customer = {"id": customer_id or f"cus_{uuid.uuid4().hex[:10]}", "email": email}
        self.customers.append(customer)
        return customer

    def add_subscription(self, customer_id, period_end, status="active", sub_id=None, product="prod_test"):
        sub = {
            "id": sub_id or f"sub_{uuid.uuid4().hex[:10]}",
            "customer": customer_id,
            "status": status,
            "current_period_end": period_end,
            "cancel_at_period_end": False,
            "items": {"data": [{"price": {"product": product}}]},
        }
        self.subscriptions[sub["id"]] = sub
        return sub

    def find_customer(self, email):
        self._check()
        if not self.search_lag:
            for customer in self.customers:
                if customer["email"] == email:
                    return customer
        for customer in self.customers[:self.scan_limit]:
            if (customer["email"] or "").lower() == email.lower():
                return customer
        return None

    def active_subscription(self, customer_id):
        self._check()
        for sub in self.subscriptions.values():
            if sub["customer"] == customer_id and sub["status"] == "active":
                return sub
        return None

    def retrieve_subscription(self, subscription_id):
        self._check()
        if subscription_id not in self.subscriptions:
            raise UpstreamError(detail="No such subscription")
        return self.subscriptions[subscription_id]

    def customer_email(self, customer_id):
        self._check()
        for customer in self.customers:
            if customer["id"] == customer_id:
                return customer["email"].lower()
        return None

    def create_checkout_session(self, **params):
        self._check()
        self.sessions.append(params)
        session_id = f"cs_test_{len(self.sessions)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def extend_subscription(self, subscription_id, trial_end):
        self._check()
        sub = self.retrieve_subscription(subscription_id)
        self.extended.append((subscription_id, trial_end))
        sub["trial_end"] = trial_end
        sub["current_period_end"] = trial_end
        sub["status"] = "trialing"
        return sub

    def cancel_subscription(self, subscription_id, immediately=False):
        self._check()
        sub = self.retrieve_subscription(subscription_id)
        self.cancelled.append((subscription_id, immediately))
        if immediately:
            sub["status"] = "canceled"
        else:
            sub["cancel_at_period_end"] = True
        return sub


@pytest.fixture
def app():
    application = create_app("testing")
    processor = FakeProcessor()
    application.extensions["processor"] = processor
    with application.app_context():
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def processor(app):
    return app.extensions["processor"]


@pytest.fixture
def make_token(app):
    def _make(user_id, email, expires_in=3600):
        claims = {
            "sub": user_id,
            "email": email,
            "aud": app.config["AUTH_JWT_AUDIENCE"],
            "exp": int(time.time()) + expires_in,
        }
        return jwt.encode(claims, app.config["AUTH_JWT_SECRET"], algorithm="HS256")
    return _make


@pytest.fixture
def admin_headers(app, make_token):
    user = User(id="admin-1", email="admin@maoun.app")
    db.session.add(user)
    db.session.add(UserRole(user_id=user.id, role="admin"))
    db.session.commit()
    return {"Authorization": f"Bearer {make_token(user.id, user.email)}"}


def new_device_id():
    return str(uuid.uuid4())


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_payload(event_type, obj, event_id=None):
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:10]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }).encode("utf-8")
