import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import hashlib
import hmac
import json
import time
from itertools import count

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sprout_payments.config import Settings, get_settings
from sprout_payments.database import Base, get_db
from sprout_payments.dependencies import get_razorpay_client, get_stripe_gateway
from sprout_payments.errors import ProviderError
from sprout_payments.main import app
from sprout_payments.orchestrator import PaymentOrchestrator
from sprout_payments.providers.razorpay import RazorpayClient
from sprout_payments.providers.stripe_gateway import StripeGateway
from sprout_payments.utils.rate_limiter import in_memory_rate_limiter

RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-jwt-secret"
ADMIN_KEY = "admin-test-key"


class FakeRazorpayClient(RazorpayClient):
    def __init__(self):
        super().__init__(key_id="rzp_test_key", key_secret=RAZORPAY_KEY_SECRET, api_base="https://razorpay.invalid/v1")
        self._ids = count(1)
        self.created = []
        self.fail_with = None
        self.order_payments = {}
        self.provider_orders = {}

    def create_order(self, order_request):
        if self.fail_with is not None:
            raise self.fail_with
        self.created.append(order_request)
        order = {
            "id": f"order_Test{next(self._ids)}",
            "amount": order_request.amount_minor,
            "currency": order_request.currency,
            "receipt": order_request.receipt,
            "notes": order_request.notes,
            "status": "created",
        }
        self.provider_orders[order["id"]] = order
        return order

    def fetch_order(self, order_id):
        if order_id not in self.provider_orders:
            raise ProviderError("Razorpay request failed", details={"status": 400}, provider="razorpay")
        return self.provider_orders[order_id]

    def fetch_order_payments(self, order_id):
        return self.order_payments.get(order_id, [])


class FakeStripeGateway(StripeGateway):
    def __init__(self):
        super().__init__(api_key="sk_test_fake")
        self._ids = count(1)
        self.customer_lookups = []
        self.prices = []
        self.sessions = []
        self.canceled = []

    def find_or_create_customer(self, *, user_id, email):
        self.customer_lookups.append((user_id, email))
        return f"cus_{user_id}"

    def create_recurring_price(self, **kwargs):
        self.prices.append(kwargs)
        return f"price_{len(self.prices)}"

    def create_checkout_session(self, params):
        self.sessions.append(params)
        session_id = f"cs_test_{next(self._ids)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def cancel_at_period_end(self, subscription_id):
        self.canceled.append(subscription_id)
        return {
            "id": subscription_id,
            "cancel_at_period_end": True,
            "cancel_at": 1893456000,
            "current_period_end": 1893456000,
        }


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=RAZORPAY_KEY_SECRET,
        razorpay_webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        stripe_secret_key="sk_test_fake",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        supabase_jwt_secret=JWT_SECRET,
        admin_api_key=ADMIN_KEY,
        rate_limit_backend="memory",
    )


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def razorpay_client():
    return FakeRazorpayClient()


@pytest.fixture
def stripe_gateway():
    return FakeStripeGateway()


@pytest.fixture
def orchestrator(db_session, settings, razorpay_client, stripe_gateway):
    return PaymentOrchestrator(db=db_session, settings=settings, razorpay=razorpay_client, stripe_gateway=stripe_gateway)


@pytest.fixture
def client(db_session, settings, razorpay_client, stripe_gateway):
    def override_get_db():
        yield db_session

    in_memory_rate_limiter.reset()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_razorpay_client] = lambda: razorpay_client
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def sign_razorpay():
    def _sign(order_id, payment_id, secret=RAZORPAY_KEY_SECRET):
        message = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture
def razorpay_webhook_request():
    def _build(payload, secret=RAZORPAY_WEBHOOK_SECRET):
        body = json.dumps(payload).encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return body, {"X-Razorpay-Signature": signature, "Content-Type": "application/json"}

    return _build


@pytest.fixture
def stripe_webhook_request():
    def _build(payload, secret=STRIPE_WEBHOOK_SECRET, timestamp=None):
        body = json.dumps(payload).encode("utf-8")
        timestamp = int(timestamp or time.time())
        signed = f"{timestamp}.{body.decode('utf-8')}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return body, {"stripe-signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}

    return _build


@pytest.fixture
def auth_headers():
    def _headers(user_id="u1", email="u1@example.com"):
        token = jwt.encode(
            {"sub": user_id, "email": email, "aud": "authenticated", "exp": int(time.time()) + 3600},
            JWT_SECRET,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers
