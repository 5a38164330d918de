# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
import hashlib
import hmac
import itertools
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest

# The engine is built at import time, so point it at a throwaway file first.
_DB_DIR = tempfile.mkdtemp(prefix="catering-payments-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_DB_DIR) / 'test.db'}"

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

import main  # noqa: E402
from database.models import User  # noqa: E402
from database.session import Base, SessionLocal, engine  # noqa: E402
from svc.coinbase_commerce import CoinbaseCharge  # noqa: E402
from svc.errors import ProviderError  # noqa: E402
from utils.provider_config import ProviderConfig  # noqa: E402
from verifiers.signature_verifier import coinbase_signature  # noqa: E402

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
COINBASE_WEBHOOK_SECRET = "coinbase_test_secret"


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "client" in getattr(item, "fixturenames", ()):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


class FakeStripeGateway:
    """Records every call; ``fail_with`` makes the next provider call raise."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fail_with: Optional[str] = None
        self.session_ids = (f"cs_test_{n}" for n in itertools.count(1))
        self.customer_ids = (f"cus_test_{n}" for n in itertools.count(1))
        self.sessions: Dict[str, Dict[str, Any]] = {}

    def _maybe_fail(self) -> None:
        if self.fail_with:
            raise ProviderError(self.fail_with)

    def create_customer(self, *, user_id: str, email: Optional[str], name: Optional[str]) -> str:
        self.calls.append(("create_customer", user_id))
        self._maybe_fail()
        return next(self.customer_ids)

    def create_checkout_session(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("create_checkout_session", params))
        self._maybe_fail()
        session_id = next(self.session_ids)
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        self.calls.append(("retrieve_checkout_session", session_id))
        self._maybe_fail()
        return self.sessions[session_id]

    def expire_checkout_session(self, session_id: str) -> None:
        self.calls.append(("expire_checkout_session", session_id))

    def cancel_subscription(self, subscription_id: str) -> None:
        self.calls.append(("cancel_subscription", subscription_id))
        self._maybe_fail()

    def calls_named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    @property
    def last_session_params(self) -> Dict[str, Any]:
        return self.calls_named("create_checkout_session")[-1][1]


class FakeCoinbaseClient:
    def __init__(self) -> None:
        self.charges: List[Dict[str, Any]] = []
        self.fail_with: Optional[str] = None

    def create_charge(self, **kwargs: Any) -> CoinbaseCharge:
        self.charges.append(kwargs)
        if self.fail_with:
            raise ProviderError(self.fail_with)
        code = f"CHARGE{len(self.charges)}"
        return CoinbaseCharge(code=code, hosted_url=f"https://commerce.coinbase.test/charges/{code}")


@pytest.fixture()
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        stripe_secret_key="sk_test_123",
        stripe_publishable_key="pk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        coinbase_api_key="cb_api_key",
        coinbase_webhook_secret=COINBASE_WEBHOOK_SECRET,
        frontend_base_url="https://brew.example",
    )


@pytest.fixture()
def stripe_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture()
def coinbase_client() -> FakeCoinbaseClient:
    return FakeCoinbaseClient()


@pytest.fixture()
def db() -> Generator[Session, None, None]:
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add_all(
        [
            User(id="user-1", email="ada@example.com", name="Ada Lovelace"),
            User(id="user-2", email="grace@example.com", name="Grace Hopper"),
        ]
    )
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db, provider_config, stripe_gateway, coinbase_client) -> Generator[TestClient, None, None]:
    app = main.app
    app.dependency_overrides[main.get_provider_config] = lambda: provider_config
    app.dependency_overrides[main.get_stripe_gateway] = lambda: stripe_gateway
    app.dependency_overrides[main.get_coinbase_client] = lambda: coinbase_client
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def stripe_signature_header(
    payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None
) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture()
def stripe_signer() -> Callable[..., str]:
    return stripe_signature_header


@pytest.fixture()
def send_stripe_event(client) -> Callable[..., Any]:
    def _send(event_type: str, obj: Dict[str, Any], *, event_id: str = "evt_1", signed: bool = True):
        payload = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if signed:
            headers["Stripe-Signature"] = stripe_signature_header(payload)
        return client.post("/api/webhooks/stripe", content=payload, headers=headers)

    return _send


@pytest.fixture()
def send_coinbase_event(client) -> Callable[..., Any]:
    def _send(event_type: str, charge: Dict[str, Any], *, event_id: str = "cb-evt-1", signature: Optional[str] = None):
        body = {"id": f"delivery-{event_id}", "event": {"id": event_id, "type": event_type, "data": charge}}
        payload = json.dumps(body).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-CC-Webhook-Signature": signature or coinbase_signature(payload, COINBASE_WEBHOOK_SECRET),
        }
        return client.post("/api/webhooks/coinbase", content=payload, headers=headers)

    return _send
