import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from billing.services import gateway as gateway_module
from billing.services.gateway import (
    CheckoutResult,
    PaymentGateway,
    PaymentStatus,
    PaymentStatusResult,
    reset_payment_gateways,
)
from billing.services.idempotency import reset_idempotency_guard

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(PaymentGateway):
    """In-memory gateway recording calls instead of talking to a provider."""

    provider = "stripe"
    supports_account_history = True

    def __init__(self):
        self.calls: List[tuple] = []
        self.cancel_error: Optional[Exception] = None
        self.resume_error: Optional[Exception] = None
        self.checkout_error: Optional[Exception] = None
        self.payment_status = PaymentStatusResult(status=PaymentStatus.PENDING)
        self.history: List[Dict[str, Any]] = []
        self.forgotten: List[str] = []

    def create_checkout_session(self, user, plan_id, duration_months, options):
        self.calls.append(("checkout", plan_id, duration_months, options))
        if self.checkout_error:
            raise self.checkout_error
        return CheckoutResult(session_id="cs_test_123", url="https://checkout.test/cs_test_123", customer_id="cus_test")

    def cancel_subscription(self, subscription, immediate=False):
        self.calls.append(("cancel", subscription.provider_subscription_id, immediate))
        if self.cancel_error:
            raise self.cancel_error
        return True

    def resume_subscription(self, subscription):
        self.calls.append(("resume", subscription.provider_subscription_id))
        if self.resume_error:
            raise self.resume_error
        return True

    def verify_payment_status(self, session_id):
        self.calls.append(("verify", session_id))
        return self.payment_status

    def get_billing_history(self, customer_id):
        return list(self.history)

    def forget_customer(self, customer_id):
        self.forgotten.append(customer_id)


@pytest.fixture(autouse=True)
def _reset_billing_singletons():
    reset_idempotency_guard()
    reset_payment_gateways()
    yield
    reset_idempotency_guard()
    reset_payment_gateways()


@pytest.fixture
def fake_gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setitem(gateway_module._gateway_instances, "stripe", fake)
    return fake


@pytest.fixture
def make_user(db):
    counter = {"value": 0}

    def _make_user(**overrides):
        counter["value"] += 1
        index = counter["value"]
        params = {
            "username": f"learner{index}",
            "email": f"learner{index}@example.com",
            "password": "pass1234",
        }
        params.update(overrides)
        return get_user_model().objects.create_user(**params)

    return _make_user


@pytest.fixture
def user(make_user):
    return make_user(username="alice", email="alice@example.com")


@pytest.fixture
def api_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def webhook_secret(settings):
    settings.STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    return WEBHOOK_SECRET


def _sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _stripe_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_test_1") -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }
    )


@pytest.fixture
def sign_payload():
    return _sign_payload


@pytest.fixture
def stripe_event():
    return _stripe_event
