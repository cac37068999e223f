import datetime as dt
import os
from pathlib import Path

import pytest
from sqlalchemy import text

from app.data import events, profiles
from app.db import engine
from app.services import webhooks
from app.services.dodo import ProviderError
from app.services.webhooks import EventType, HANDLERS, parse_event, is_trial_period

from conftest import make_profile, signed_webhook

UTC = dt.timezone.utc
CREATED = "2025-01-01T00:00:00Z"
TRIAL_END = "2025-01-15T00:00:00Z"


def _subscription(sub_id="sub_1", user_id="user_1", *, trial_days=14, status="active", **extra):
    data = {
        "subscription_id": sub_id,
        "status": status,
        "trial_period_days": trial_days,
        "created_at": CREATED,
        "next_billing_date": TRIAL_END if trial_days else "2025-02-01T00:00:00Z",
        "metadata": {
            "supabase_user_id": user_id,
            "supabase_category_id": "cat_7",
            "dodopayments_customer_id": "cus_1",
        },
        "customer": {"customer_id": "cus_1", "email": "user_1@example.com", "name": "Test User"},
    }
    data.update(extra)
    return data


def _sub_event(kind: str, sub_id: str = "sub_1") -> dict:
    return {
        "type": kind,
        "data": {"payload_type": "Subscription", "subscription_id": sub_id},
    }


def _pay_event(kind: str, payment_id: str = "pay_1") -> dict:
    return {"type": kind, "data": {"payload_type": "Payment", "payment_id": payment_id}}


def _post(client, payload, **kw):
    body, headers = signed_webhook(payload, **kw)
    return client.post("/api/webhook", content=body, headers=headers)


def _snapshot():
    with engine.begin() as conn:
        return [tuple(r) for r in conn.execute(text("SELECT * FROM profiles ORDER BY id")).all()]


def _outbox_count() -> int:
    outbox = Path(os.environ["EMAIL_OUTBOX_DIR"])
    return len(list(outbox.glob("*.eml"))) if outbox.exists() else 0


# --- parsing ------------------------------------------------------------------


def test_every_event_type_has_a_handler():
    assert set(HANDLERS) == set(EventType)


def test_parse_event_maps_known_types():
    event = parse_event(_sub_event("subscription.on_hold", "sub_9"), "msg_1")
    assert event.kind is EventType.SUBSCRIPTION_ON_HOLD
    assert event.object_id == "sub_9"
    assert event.payload_type.value == "Subscription"


def test_parse_event_returns_none_for_unknown_type():
    assert parse_event({"type": "dispute.opened", "data": {}}) is None


def test_parse_event_rejects_mismatched_payload_type():
    payload = {"type": "payment.succeeded", "data": {"payload_type": "Subscription", "payment_id": "p"}}
    with pytest.raises(webhooks.WebhookValidationError):
        parse_event(payload)


def test_parse_event_requires_object_id():
    with pytest.raises(webhooks.WebhookValidationError):
        parse_event({"type": "subscription.active", "data": {"payload_type": "Subscription"}})


def test_is_trial_period():
    assert is_trial_period(_subscription())
    assert not is_trial_period(_subscription(trial_days=0))
    assert not is_trial_period(_subscription(next_billing_date=CREATED))


# --- verification ---------------------------------------------------------------


def test_invalid_signature_is_rejected_without_state_change(client, fake_dodo):
    make_profile("user_1")
    fake_dodo.subscriptions["sub_1"] = _subscription()
    before = _snapshot()

    response = _post(
        client,
        _sub_event("subscription.active"),
        secret="whsec_" + "d3Jvbmctc2VjcmV0LXdyb25nLXNlY3JldA==",
    )

    assert response.status_code == 400
    assert _snapshot() == before
    assert fake_dodo.calls == []


def test_missing_signature_headers_rejected(client):
    response = client.post("/api/webhook", content=b'{"type":"subscription.active"}')
    assert response.status_code == 400


def test_stale_timestamp_rejected(client):
    old = dt.datetime.now(UTC) - dt.timedelta(hours=1)
    response = _post(client, _sub_event("subscription.active"), timestamp=old)
    assert response.status_code == 400


def test_webhook_not_configured(client, fake_dodo, monkeypatch):
    body, headers = signed_webhook(_sub_event("subscription.active"))
    monkeypatch.delenv("DODO_PAYMENTS_WEBHOOK_KEY")

    response = client.post("/api/webhook", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json() == {"error": "Webhook not configured"}
    assert fake_dodo.calls == []


# --- subscription events ----------------------------------------------------------


def test_subscription_active_with_trial(client, fake_dodo):
    make_profile("user_1")
    fake_dodo.subscriptions["sub_1"] = _subscription()

    response = _post(client, _sub_event("subscription.active"))

    assert response.status_code == 200
    assert response.json()["applied"] is True
    profile = profiles.get_profile("user_1")
    assert profile.subscription_status == "trialing"
    assert profile.is_trialing is True
    assert profile.trial_ends_at == dt.datetime(2025, 1, 15, tzinfo=UTC)
    assert profile.has_ever_trialed is True
    assert profile.chosen_category_id == "cat_7"
    assert profile.dodopayments_subscription_id == "sub_1"
    assert profile.dodopayments_customer_id == "cus_1"
    assert profile.subscribed_at is not None
    assert profile.next_billing_at == dt.datetime(2025, 1, 15, tzinfo=UTC)


def test_subscription_active_without_trial(client, fake_dodo):
    make_profile("user_1")
    fake_dodo.subscriptions["sub_1"] = _subscription(trial_days=0)

    _post(client, _sub_event("subscription.active"))

    profile = profiles.get_profile("user_1")
    assert profile.subscription_status == "active"
    assert profile.is_trialing is False
    assert profile.trial_ends_at is None
    assert profile.next_billing_at == dt.datetime(2025, 2, 1, tzinfo=UTC)
    assert profile.has_ever_trialed is True


def test_subscription_active_sends_notification(client, fake_dodo):
    make_profile("user_1")
    fake_dodo.subscriptions["sub_1"] = _subscription()
    before = _outbox_count()

    _post(client, _sub_event("subscription.active"))

    assert _outbox_count() == before + 1


def test_subscription_active_replay_is_noop(client, fake_dodo, monkeypatch):
    make_profile("user_1")
    fake_dodo.subscriptions["sub_1"] = _subscription()
    _post(client, _sub_event("subscription.active"))

    writes = []
    monkeypatch.setattr(
        profiles, "update_profile", lambda uid, **f: writes.append((uid, f)) or 1
    )
    response = _post(client, _sub_event("subscription.active"))

    assert response.status_code == 200
    assert response.json()["message"] == "Already processed"
    assert response.json()["applied"] is False
    assert writes == []


def test_same_delivery_id_is_processed_once(client, fake_dodo):
    make_profile("user_1")
    fake_dodo.subscriptions["sub_1"] = _subscription()
    _post(client, _sub_event("subscription.active"), webhook_id="msg_fixed")

    response = _post(client, _sub_event("subscription.active"), webhook_id="msg_fixed")

    assert response.json()["message"] == "Already processed"
    assert len(fake_dodo.called("retrieve_subscription")) == 1
    assert events.is_webhook_processed("msg_fixed")


def test_active_after_provider_cancelled_is_stale(client, fake_dodo):
    make_profile("user_1", subscription_status="cancelled")
    fake_dodo.subscriptions["sub_1"] = _subscription(status="cancelled")

    response = _post(client, _sub_event("subscription.active"))

    assert response.status_code == 200
    assert response.json()["message"] == "Stale event ignored"
    assert profiles.get_profile("user_1").subscription_status == "cancelled"


def test_renewed_clears_trial(client, fake_dodo):
    make_profile(
        "user_1",
        subscription_status="trialing",
        is_trialing=True,
        trial_ends_at=dt.datetime(2025, 1, 15, tzinfo=UTC),
        has_ever_trialed=True,
    )
    fake_dodo.subscriptions["sub_1"] = _subscription(
        status="active", next_billing_date="2025-02-15T00:00:00Z"
    )

    response = _post(client, _sub_event("subscription.renewed"))

    assert response.status_code == 200
    profile = profiles.get_profile("user_1")
    assert profile.subscription_status == "active"
    assert profile.is_trialing is False
    assert profile.trial_ends_at is None
    assert profile.next_billing_at == dt.datetime(2025, 2, 15, tzinfo=UTC)
    assert profile.has_ever_trialed is True


@pytest.mark.parametrize(
    "kind,expected",
    [
        ("subscription.on_hold", "on_hold"),
        ("subscription.cancelled", "cancelled"),
        ("subscription.failed", "cancelled"),
        ("subscription.trial_end", "trial_ended"),
        ("subscription.expired", "expired"),
    ],
)
def test_status_only_transitions(client, fake_dodo, kind, expected):
    make_profile("user_1", subscription_status="active", has_ever_trialed=True)
    fake_dodo.subscriptions["sub_1"] = _subscription(status="cancelled")

    response = _post(client, _sub_event(kind))

    assert response.status_code == 200
    profile = profiles.get_profile("user_1")
    assert profile.subscription_status == expected
    assert profile.has_ever_trialed is True


def test_cancellation_sends_notification(client, fake_dodo):
    make_profile("user_1", subscription_status="active")
    fake_dodo.subscriptions["sub_1"] = _subscription(status="cancelled")
    before = _outbox_count()

    _post(client, _sub_event("subscription.cancelled"))

    assert _outbox_count() == before + 1


def test_invalid_metadata_is_rejected(client, fake_dodo):
    make_profile("user_1")
    fake_dodo.subscriptions["sub_1"] = _subscription(metadata={"supabase_user_id": "user_1"})

    response = _post(client, _sub_event("subscription.active"))

    assert response.status_code == 400
    assert profiles.get_profile("user_1").subscription_status == "none"


def test_unknown_user_is_not_found(client, fake_dodo):
    fake_dodo.subscriptions["sub_1"] = _subscription(user_id="ghost")

    response = _post(client, _sub_event("subscription.active"))

    assert response.status_code == 404


def test_provider_failure_returns_502(client, fake_dodo):
    make_profile("user_1")
    fake_dodo.fail_with = ProviderError("GET /subscriptions/sub_1 returned 503", status_code=503)

    response = _post(client, _sub_event("subscription.active"))

    assert response.status_code == 502


def test_failed_delivery_is_not_recorded(client, fake_dodo):
    fake_dodo.subscriptions["sub_1"] = _subscription(user_id="ghost")

    _post(client, _sub_event("subscription.active"), webhook_id="msg_retry")

    assert not events.is_webhook_processed("msg_retry")


def test_unknown_event_type_is_acknowledged(client, fake_dodo):
    response = _post(client, {"type": "dispute.opened", "data": {"dispute_id": "dp_1"}})

    assert response.status_code == 200
    assert response.json()["ignored"] is True
    assert fake_dodo.calls == []


# --- payment events ----------------------------------------------------------------


def _payment(payment_id="pay_1", **extra):
    data = {
        "payment_id": payment_id,
        "created_at": "2025-02-01T10:00:00Z",
        "total_amount": 2999,
        "currency": "USD",
        "customer": {"customer_id": "cus_1", "email": "user_1@example.com", "name": "Test User"},
        "metadata": {"supabase_user_id": "user_1"},
    }
    data.update(extra)
    return data


def test_payment_succeeded_updates_profile(client, fake_dodo):
    make_profile("user_1")
    fake_dodo.payments["pay_1"] = _payment()

    response = _post(client, _pay_event("payment.succeeded"))

    assert response.status_code == 200
    profile = profiles.get_profile("user_1")
    assert profile.payment_status == "succeeded"
    assert profile.last_payment_at == dt.datetime(2025, 2, 1, 10, 0, tzinfo=UTC)
    assert profile.dodopayments_last_payment_id == "pay_1"
    assert profile.dodopayments_customer_id == "cus_1"


def test_duplicate_payment_succeeded_updates_once(client, fake_dodo, monkeypatch):
    make_profile("user_1")
    fake_dodo.payments["pay_1"] = _payment()
    real_update = profiles.update_profile
    writes = []

    def counting_update(user_id, **fields):
        writes.append(fields)
        return real_update(user_id, **fields)

    monkeypatch.setattr(profiles, "update_profile", counting_update)

    first = _post(client, _pay_event("payment.succeeded"))
    second = _post(client, _pay_event("payment.succeeded"))

    assert first.json()["applied"] is True
    assert second.json()["applied"] is False
    assert len(writes) == 1


def test_payment_user_resolved_from_customer_id(client, fake_dodo):
    make_profile("user_1", dodopayments_customer_id="cus_1")
    fake_dodo.payments["pay_1"] = _payment(metadata={})

    response = _post(client, _pay_event("payment.succeeded"))

    assert response.status_code == 200
    assert profiles.get_profile("user_1").payment_status == "succeeded"


def test_payment_with_unresolvable_user_is_rejected(client, fake_dodo):
    fake_dodo.payments["pay_1"] = _payment(metadata={}, customer={"customer_id": "cus_unknown"})

    response = _post(client, _pay_event("payment.succeeded"))

    assert response.status_code == 400


def test_payment_failed_sets_status(client, fake_dodo):
    make_profile("user_1", payment_status="succeeded")
    fake_dodo.payments["pay_2"] = _payment("pay_2")

    response = _post(client, _pay_event("payment.failed", "pay_2"))

    assert response.status_code == 200
    assert profiles.get_profile("user_1").payment_status == "failed"


def test_payment_without_created_at_is_rejected(client, fake_dodo):
    make_profile("user_1")
    fake_dodo.payments["pay_1"] = _payment(created_at=None)

    response = _post(client, _pay_event("payment.succeeded"))

    assert response.status_code == 400
    assert "created_at" in response.json()["details"]
    assert profiles.get_profile("user_1").payment_status is None
