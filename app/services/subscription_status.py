"""Dashboard-facing subscription status.

``classify`` maps a profile to the message shown on the account page and
whether the user has to act (subscribe, renew, fix a payment). Rules are
evaluated top to bottom and the first match wins; several rules overlap
(a cancelled user who once trialed matches both the cancelled and the
trial-used rule), so the order of ``RULES`` is part of the contract.
"""

import datetime as dt
from dataclasses import dataclass
from typing import Callable

from app.core.types import Profile, SubscriptionDetails, SubscriptionStatus as S
from app.data.profiles import to_utc, utc_now


@dataclass(frozen=True)
class _Facts:
    status: str
    trial_ends_at: dt.datetime | None
    has_ever_trialed: bool
    now: dt.datetime


Predicate = Callable[[_Facts], bool]
Outcome = Callable[[_Facts], SubscriptionDetails]


def _format_date(value: dt.datetime | None) -> str:
    if value is None:
        return "N/A"
    return f"{value:%B} {value.day}, {value.year}"


def _ok(message: str) -> SubscriptionDetails:
    return SubscriptionDetails(status_message=message, action_needed=False)


def _act(message: str, action: str) -> SubscriptionDetails:
    return SubscriptionDetails(
        status_message=message,
        action_needed=True,
        action_message=action,
        show_subscribe_button=True,
    )


RULES: list[tuple[str, Predicate, Outcome]] = [
    (
        "active",
        lambda f: f.status == S.ACTIVE.value,
        lambda f: _ok("Subscribed (Active)"),
    ),
    (
        "trialing",
        lambda f: f.status == S.TRIALING.value,
        lambda f: _ok(f"Trial Active (ends {_format_date(f.trial_ends_at)})"),
    ),
    (
        "payment_issue",
        lambda f: f.status in (S.FAILED.value, S.INCOMPLETE.value),
        lambda f: _act(
            "Payment Issue Detected",
            "There was an issue with your payment. Please update your details.",
        ),
    ),
    (
        "ended",
        lambda f: f.status in (S.CANCELLED.value, S.PAST_DUE.value),
        lambda f: _act(
            "Subscription Expired / Cancelled",
            "Your subscription has ended. Renew now to regain access!",
        ),
    ),
    (
        "trial_expired",
        lambda f: f.trial_ends_at is not None
        and f.trial_ends_at < f.now
        and f.status != S.ACTIVE.value,
        lambda f: _act("Trial Expired", "Your trial has ended. Subscribe to continue!"),
    ),
    (
        "trial_used",
        lambda f: f.has_ever_trialed
        and f.status not in (S.ACTIVE.value, S.TRIALING.value),
        lambda f: _act(
            "Trial Used / Not Subscribed",
            "You've used your trial. Subscribe to unlock full features!",
        ),
    ),
    (
        "never_trialed",
        lambda f: not f.has_ever_trialed
        and f.trial_ends_at is None
        and f.status == S.NONE.value,
        lambda f: _act(
            "No Trial Started / Not Subscribed",
            "Start your trial or subscribe to explore features!",
        ),
    ),
    (
        "unclear",
        lambda f: True,
        lambda f: _act(
            f"Status: {f.status or 'N/A'}",
            "It looks like your subscription status is unclear.",
        ),
    ),
]


def match_rule(profile: Profile, now: dt.datetime | None = None) -> tuple[str, SubscriptionDetails]:
    """Return (rule name, details) for the first matching rule."""
    facts = _Facts(
        status=(profile.subscription_status or "").strip(),
        trial_ends_at=to_utc(profile.trial_ends_at),
        has_ever_trialed=bool(profile.has_ever_trialed),
        now=to_utc(now) or utc_now(),
    )
    for name, predicate, outcome in RULES:
        if predicate(facts):
            return name, outcome(facts)
    raise AssertionError("catch-all rule did not match")  # pragma: no cover


def classify(profile: Profile, now: dt.datetime | None = None) -> SubscriptionDetails:
    return match_rule(profile, now)[1]
