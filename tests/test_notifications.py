import datetime as dt
from pathlib import Path

import pytest

from app.core.config import get_settings
from app.services import notifications


def test_render_fills_template():
    subject, body = notifications.render(
        get_settings(), "trial_activated", user_name="Ada", trial_end_date="January 15, 2025"
    )
    assert subject == "Your Free Trial is Now Active!"
    assert "Hi Ada," in body
    assert "Your trial will end on January 15, 2025." in body
    assert "https://app.limetto.test/dashboard" in body


def test_render_unknown_template():
    with pytest.raises(KeyError):
        notifications.render(get_settings(), "nope")


def test_format_helpers():
    assert notifications.format_amount(29.99) == "$29.99"
    assert notifications.format_amount(1200, "eur") == "1,200.00 EUR"
    assert notifications.format_date(dt.datetime(2025, 3, 7, tzinfo=dt.timezone.utc)) == "March 7, 2025"
    assert notifications.format_date("2025-01-15T00:00:00Z") == "January 15, 2025"
    assert notifications.format_date(None) == "N/A"


def test_send_without_smtp_writes_outbox(tmp_path, monkeypatch):
    monkeypatch.setenv("EMAIL_OUTBOX_DIR", str(tmp_path))

    sent = notifications.send_notification(
        get_settings(), "ada@example.com", "payment_success", user_name="Ada", amount="$29.99"
    )

    assert sent is False
    (eml,) = list(Path(tmp_path).glob("*.eml"))
    content = eml.read_text(encoding="utf-8")
    assert "Subject: Payment Received - Thank You!" in content
    assert "payment of $29.99" in content


def test_send_requires_recipient():
    with pytest.raises(ValueError):
        notifications.send_notification(get_settings(), None, "payment_success")


def test_notify_never_raises(monkeypatch):
    def boom(*_a, **_kw):
        raise RuntimeError("smtp exploded")

    monkeypatch.setattr(notifications, "send_notification", boom)

    assert notifications.notify(get_settings(), "ada@example.com", "payment_success") is False
    assert notifications.notify(get_settings(), None, "subscription_started") is False


def test_render_signup_templates():
    subject, body = notifications.render(get_settings(), "welcome", user_name="Ada")
    assert subject == "Welcome to Limetto!"
    assert "https://app.limetto.test/dashboard" in body

    subject, body = notifications.render(get_settings(), "signup_confirmation", user_name="Ada")
    assert subject == "Welcome to Limetto! Confirm your email"
    assert "confirmation email" in body
    assert "https://app.limetto.test/login" in body


def test_payment_reminders_count_deliveries_and_outbox_separately(tmp_path, monkeypatch):
    from conftest import make_profile

    monkeypatch.setenv("EMAIL_OUTBOX_DIR", str(tmp_path))
    today = dt.date(2025, 3, 10)
    due_at = dt.datetime(2025, 3, 11, 9, tzinfo=dt.timezone.utc)
    make_profile("smtp_ok", subscription_status="active", next_billing_at=due_at)
    make_profile("smtp_down", subscription_status="active", next_billing_at=due_at)
    make_profile("no_email", email=None, subscription_status="active", next_billing_at=due_at)
    monkeypatch.setattr(
        notifications, "_send_email", lambda cfg, to_addr, subject, body: to_addr.startswith("smtp_ok")
    )

    run = notifications.send_payment_reminders(get_settings(), today=today)

    assert (run.due, run.sent, run.outboxed, run.processed) == (3, 1, 1, 2)
    assert len(list(Path(tmp_path).glob("*.eml"))) == 1
