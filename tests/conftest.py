import asyncio
import base64
import datetime as dt
import json
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

_TMP = Path(tempfile.mkdtemp(prefix="limetto-tests-"))

# Engine and JWT settings are read at import time; set them before importing app.*
os.environ["DATABASE_URL"] = f"sqlite:///{(_TMP / 'test.db').as_posix()}"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-with-at-least-32-bytes!!"
os.environ["EMAIL_OUTBOX_DIR"] = str(_TMP / "outbox")
os.environ["DODO_PAYMENTS_WEBHOOK_KEY"] = "whsec_" + base64.b64encode(
    b"limetto-webhook-test-secret-0123"
).decode()
os.environ["DODO_API_KEY_TEST"] = "dodo_test_key"
os.environ["DODOPAYMENTS_GENERIC_SUBSCRIPTION_PRODUCT_ID"] = "pdt_generic"
os.environ["CRON_SECRET"] = "cron-secret"
os.environ["PAYMENT_MODE"] = "test"
os.environ["PUBLIC_BASE_URL"] = "https://app.limetto.test"
for _name in ("SUPABASE_JWT_JWKS_URL", "SUPABASE_ISS", "SUPABASE_JWT_ISSUER", "REDIS_URL", "SMTP_HOST"):
    os.environ.pop(_name, None)

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from standardwebhooks.webhooks import Webhook

from app.data import events, profiles
from app.db import engine
from app.services import rate_limit
from app.services.dodo import ProviderError

events.init_db()

UTC = dt.timezone.utc


@pytest.fixture(autouse=True)
def _clean_state() -> Iterator[None]:
    with engine.begin() as conn:
        conn.execute(text("DELETE FROM webhook_events"))
        conn.execute(text("DELETE FROM profiles"))
    rate_limit.reset_memory_counters()
    yield


class FakeDodoClient:
    """In-memory stand-in for DodoClient; records every call."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, dict] = {}
        self.payments: Dict[str, dict] = {}
        self.calls: list[tuple[str, Any]] = []
        self.customer_seq = 0
        self.subscription_response: Optional[dict] = None
        self.subscription_delay: float = 0.0
        self.portal_response: dict = {"link": "https://portal.dodo.test/session/abc"}
        self.fail_with: Optional[ProviderError] = None

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        self.calls.append(("retrieve_subscription", subscription_id))
        self._maybe_fail()
        if subscription_id not in self.subscriptions:
            raise ProviderError(f"GET /subscriptions/{subscription_id} returned 404", status_code=404)
        return self.subscriptions[subscription_id]

    async def retrieve_payment(self, payment_id: str) -> dict:
        self.calls.append(("retrieve_payment", payment_id))
        self._maybe_fail()
        if payment_id not in self.payments:
            raise ProviderError(f"GET /payments/{payment_id} returned 404", status_code=404)
        return self.payments[payment_id]

    async def create_customer(self, email: str, name: str) -> dict:
        self.calls.append(("create_customer", email))
        self._maybe_fail()
        self.customer_seq += 1
        return {"customer_id": f"cus_{self.customer_seq}", "email": email, "name": name}

    async def create_subscription(self, **kwargs) -> dict:
        self.calls.append(("create_subscription", kwargs))
        if self.subscription_delay:
            await asyncio.sleep(self.subscription_delay)
        self._maybe_fail()
        if self.subscription_response is not None:
            return self.subscription_response
        return {
            "subscription_id": "sub_new",
            "payment_link": "https://checkout.dodo.test/sub_new",
            "metadata": kwargs.get("metadata"),
        }

    async def create_portal_session(self, customer_id: str) -> dict:
        self.calls.append(("create_portal_session", customer_id))
        self._maybe_fail()
        return self.portal_response

    def called(self, name: str) -> list:
        return [arg for (n, arg) in self.calls if n == name]


@pytest.fixture()
def fake_dodo() -> FakeDodoClient:
    return FakeDodoClient()


@pytest.fixture()
def client(fake_dodo: FakeDodoClient) -> Iterator[TestClient]:
    from app.main import app
    from app.services.dodo import get_dodo_client

    app.dependency_overrides[get_dodo_client] = lambda: fake_dodo
    test_client = TestClient(app)
    try:
        yield test_client
    finally:
        test_client.close()
        app.dependency_overrides.clear()


def make_token(user_id: str, email: Optional[str] = None, **claims: Any) -> str:
    payload = {"sub": user_id, "email": email or f"{user_id}@example.com", **claims}
    return jwt.encode(payload, os.environ["SUPABASE_JWT_SECRET"], algorithm="HS256")


def auth_headers(user_id: str, **claims: Any) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, **claims)}"}


def signed_webhook(
    payload: dict,
    *,
    webhook_id: Optional[str] = None,
    secret: Optional[str] = None,
    timestamp: Optional[dt.datetime] = None,
) -> tuple[bytes, Dict[str, str]]:
    """Serialize ``payload`` and return (body, Standard Webhooks headers)."""
    body = json.dumps(payload)
    msg_id = webhook_id or f"msg_{uuid.uuid4().hex}"
    ts = timestamp or dt.datetime.now(UTC)
    signature = Webhook(secret or os.environ["DODO_PAYMENTS_WEBHOOK_KEY"]).sign(msg_id, ts, body)
    headers = {
        "webhook-id": msg_id,
        "webhook-timestamp": str(int(ts.timestamp())),
        "webhook-signature": signature,
        "content-type": "application/json",
    }
    return body.encode("utf-8"), headers


def make_profile(user_id: str = "user_1", **fields: Any) -> str:
    profiles.ensure_profile(
        user_id,
        fields.pop("email", f"{user_id}@example.com"),
        fields.pop("name", "Test User"),
        fields.pop("chosen_category_id", None),
    )
    if fields:
        profiles.update_profile(user_id, **fields)
    return user_id
