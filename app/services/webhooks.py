"""Dodo Payments webhook reconciliation.

Flow for every delivery:
    1. Verify the Standard Webhooks signature over the raw body.
    2. Parse into a ``WebhookEvent`` (unknown types are acknowledged and logged).
    3. Skip deliveries whose ``webhook-id`` was already processed.
    4. Re-read the subscription/payment from the provider; the webhook body is
       only a pointer.
    5. Apply the transition for the event type to the user's profile and send
       the matching notification (best-effort).

Subscription transitions:
    subscription.active      -> trialing | active (trial when the plan has trial
                                days and the first charge is after creation)
    subscription.renewed     -> provider status, trial cleared
    subscription.on_hold     -> on_hold
    subscription.cancelled   -> cancelled
    subscription.failed      -> cancelled
    subscription.trial_end   -> trial_ended
    subscription.expired     -> expired

Payment transitions:
    payment.succeeded        -> payment_status=succeeded (deduped on id + timestamp)
    payment.failed           -> payment_status=failed
"""

import datetime as dt
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError
from standardwebhooks.webhooks import Webhook, WebhookVerificationError
from starlette.concurrency import run_in_threadpool

from app.core.config import Settings
from app.core.types import Profile, SubscriptionStatus, WebhookResult
from app.data import events, profiles
from app.data.profiles import ProfileNotFoundError, to_utc, utc_now
from app.services import notifications
from app.services.dodo import DodoClient

log = logging.getLogger(__name__)

__all__ = [
    "EventType",
    "PayloadType",
    "WebhookEvent",
    "WebhookValidationError",
    "WebhookVerificationError",
    "ProfileNotFoundError",
    "reconcile",
]

SIGNATURE_HEADERS = ("webhook-id", "webhook-signature", "webhook-timestamp")


class WebhookValidationError(ValueError):
    """Event or provider object is missing required fields."""


class PayloadType(str, Enum):
    SUBSCRIPTION = "Subscription"
    PAYMENT = "Payment"


class EventType(str, Enum):
    SUBSCRIPTION_ACTIVE = "subscription.active"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_ON_HOLD = "subscription.on_hold"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_FAILED = "subscription.failed"
    SUBSCRIPTION_TRIAL_END = "subscription.trial_end"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"

    @property
    def payload_type(self) -> PayloadType:
        if self.value.startswith("subscription."):
            return PayloadType.SUBSCRIPTION
        return PayloadType.PAYMENT


@dataclass(frozen=True)
class WebhookEvent:
    kind: EventType
    object_id: str
    webhook_id: Optional[str] = None

    @property
    def payload_type(self) -> PayloadType:
        return self.kind.payload_type


class SubscriptionMetadata(BaseModel):
    supabase_user_id: str = Field(min_length=1)
    supabase_category_id: str = Field(min_length=1)
    dodopayments_customer_id: Optional[str] = None


@dataclass
class ReconcileContext:
    client: DodoClient
    cfg: Settings
    now: dt.datetime


# Provider statuses after which an activation/renewal delivery is stale
_TERMINAL_PROVIDER_STATUSES = {"cancelled", "expired", "failed"}

_RESULT_MESSAGES = {
    "applied": "Webhook processed successfully",
    "skipped": "Already processed",
    "stale": "Stale event ignored",
}


# ---------------------------------------------------------------------------
# Verification & parsing
# ---------------------------------------------------------------------------


def verify_payload(raw_body: bytes, headers: Mapping[str, str], secret: str) -> dict:
    """Verify the signature and return the decoded JSON body.

    Raises WebhookVerificationError on a missing/invalid signature or a
    timestamp outside the replay window.
    """
    wh_headers = {name: headers.get(name) or "" for name in SIGNATURE_HEADERS}
    verifier = Webhook(secret)
    try:
        payload = verifier.verify(raw_body.decode("utf-8"), wh_headers)
    except UnicodeDecodeError as e:
        raise WebhookVerificationError("Body is not valid UTF-8") from e
    except ValueError as e:
        # Signed but not JSON
        raise WebhookVerificationError("Body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise WebhookValidationError("Webhook body must be a JSON object")
    return payload


def parse_event(payload: dict, webhook_id: Optional[str] = None) -> Optional[WebhookEvent]:
    """Map a verified body to a WebhookEvent; None for event types we don't handle."""
    etype = payload.get("type")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise WebhookValidationError("Webhook body has no data object")
    try:
        kind = EventType(etype)
    except ValueError:
        return None
    declared = data.get("payload_type")
    if declared and declared != kind.payload_type.value:
        raise WebhookValidationError(
            f"payload_type {declared!r} does not match event {kind.value}"
        )
    id_field = (
        "subscription_id" if kind.payload_type is PayloadType.SUBSCRIPTION else "payment_id"
    )
    object_id = data.get(id_field)
    if not isinstance(object_id, str) or not object_id:
        raise WebhookValidationError(f"Missing {id_field} for {kind.value}")
    return WebhookEvent(kind=kind, object_id=object_id, webhook_id=webhook_id)


def parse_metadata(metadata: Any) -> SubscriptionMetadata:
    try:
        return SubscriptionMetadata.model_validate(metadata or {})
    except ValidationError as e:
        raise WebhookValidationError(f"Invalid subscription metadata: {e.errors()}") from e


def is_trial_period(subscription: dict) -> bool:
    """Trial when the plan has trial days and the first charge is after creation."""
    try:
        days = int(subscription.get("trial_period_days") or 0)
    except (TypeError, ValueError):
        days = 0
    next_billing = to_utc(subscription.get("next_billing_date"))
    created = to_utc(subscription.get("created_at"))
    return days > 0 and next_billing is not None and created is not None and next_billing > created


def _customer_of(obj: dict) -> dict:
    customer = obj.get("customer")
    return customer if isinstance(customer, dict) else {}


def _recipient(profile: Profile, provider_obj: dict) -> tuple[Optional[str], Optional[str]]:
    customer = _customer_of(provider_obj)
    return (profile.email or customer.get("email"), profile.name or customer.get("name"))


async def _notify(ctx: ReconcileContext, profile: Profile, provider_obj: dict, key: str, **data) -> None:
    to_addr, name = _recipient(profile, provider_obj)
    await run_in_threadpool(
        notifications.notify, ctx.cfg, to_addr, key, user_name=name, **data
    )


# ---------------------------------------------------------------------------
# Subscription events
# ---------------------------------------------------------------------------


async def _load_subscription(
    ctx: ReconcileContext, event: WebhookEvent
) -> tuple[dict, SubscriptionMetadata, Profile]:
    subscription = await ctx.client.retrieve_subscription(event.object_id)
    meta = parse_metadata(subscription.get("metadata"))
    profile = profiles.get_profile(meta.supabase_user_id)
    if profile is None:
        raise ProfileNotFoundError(meta.supabase_user_id)
    return subscription, meta, profile


def _already_applied(profile: Profile, subscription_id: str, target: str) -> bool:
    return (
        profile.dodopayments_subscription_id == subscription_id
        and profile.subscription_status == target
    )


def _customer_id(meta: SubscriptionMetadata, subscription: dict) -> Optional[str]:
    return meta.dodopayments_customer_id or _customer_of(subscription).get("customer_id")


async def _on_subscription_active(ctx: ReconcileContext, event: WebhookEvent) -> str:
    subscription, meta, profile = await _load_subscription(ctx, event)
    if (subscription.get("status") or "") in _TERMINAL_PROVIDER_STATUSES:
        log.warning(
            "webhook.subscription stale event=%s sub=%s provider_status=%s",
            event.kind.value, event.object_id, subscription.get("status"),
        )
        return "stale"

    trialing = is_trial_period(subscription)
    target = SubscriptionStatus.TRIALING if trialing else SubscriptionStatus.ACTIVE
    if _already_applied(profile, event.object_id, target.value):
        return "skipped"

    next_billing = to_utc(subscription.get("next_billing_date"))
    fields: dict[str, Any] = {
        "subscription_status": target,
        "is_trialing": trialing,
        "trial_ends_at": next_billing if trialing else None,
        "has_ever_trialed": True,
        "next_billing_at": next_billing,
        "chosen_category_id": meta.supabase_category_id,
        "dodopayments_subscription_id": event.object_id,
        "subscribed_at": ctx.now,
    }
    customer_id = _customer_id(meta, subscription)
    if customer_id:
        fields["dodopayments_customer_id"] = customer_id
    profiles.update_profile(profile.id, **fields)
    log.info(
        "webhook.subscription event=%s user=%s sub=%s status=%s",
        event.kind.value, profile.id, event.object_id, target.value,
    )

    if trialing:
        await _notify(
            ctx, profile, subscription, "trial_activated",
            trial_end_date=notifications.format_date(next_billing),
        )
    else:
        await _notify(ctx, profile, subscription, "subscription_started")
    return "applied"


async def _on_subscription_renewed(ctx: ReconcileContext, event: WebhookEvent) -> str:
    subscription, meta, profile = await _load_subscription(ctx, event)
    status = (subscription.get("status") or SubscriptionStatus.ACTIVE.value).strip()
    if status in _TERMINAL_PROVIDER_STATUSES:
        log.warning(
            "webhook.subscription stale event=%s sub=%s provider_status=%s",
            event.kind.value, event.object_id, status,
        )
        return "stale"

    fields: dict[str, Any] = {
        "subscription_status": status,
        "is_trialing": False,
        "trial_ends_at": None,
        "next_billing_at": to_utc(subscription.get("next_billing_date")),
        "dodopayments_subscription_id": event.object_id,
        "subscribed_at": ctx.now,
    }
    customer_id = _customer_id(meta, subscription)
    if customer_id:
        fields["dodopayments_customer_id"] = customer_id
    profiles.update_profile(profile.id, **fields)
    log.info(
        "webhook.subscription event=%s user=%s sub=%s status=%s",
        event.kind.value, profile.id, event.object_id, status,
    )
    await _notify(ctx, profile, subscription, "subscription_renewed")
    return "applied"


def _status_only(target: SubscriptionStatus, notification: Optional[str] = None):
    async def handler(ctx: ReconcileContext, event: WebhookEvent) -> str:
        subscription, _meta, profile = await _load_subscription(ctx, event)
        if _already_applied(profile, event.object_id, target.value):
            return "skipped"
        profiles.update_profile(profile.id, subscription_status=target)
        log.info(
            "webhook.subscription event=%s user=%s sub=%s status=%s",
            event.kind.value, profile.id, event.object_id, target.value,
        )
        if notification:
            await _notify(
                ctx, profile, subscription, notification,
                access_end_date=notifications.format_date(
                    to_utc(subscription.get("next_billing_date"))
                ),
            )
        return "applied"

    handler.__name__ = f"_on_subscription_{target.value}"
    return handler


# ---------------------------------------------------------------------------
# Payment events
# ---------------------------------------------------------------------------


async def _load_payment(ctx: ReconcileContext, event: WebhookEvent) -> tuple[dict, Optional[str], Profile]:
    payment = await ctx.client.retrieve_payment(event.object_id)
    metadata = payment.get("metadata") if isinstance(payment.get("metadata"), dict) else {}
    customer_id = (
        _customer_of(payment).get("customer_id")
        or payment.get("customer_id")
        or metadata.get("dodopayments_customer_id")
    )
    user_id = metadata.get("supabase_user_id")
    if not isinstance(user_id, str) or not user_id:
        user_id = profiles.find_user_id_by_customer(customer_id)
    if not user_id:
        raise WebhookValidationError(
            f"Payment {event.object_id} has no supabase_user_id and an unknown customer"
        )
    profile = profiles.get_profile(user_id)
    if profile is None:
        raise ProfileNotFoundError(user_id)
    return payment, customer_id, profile


async def _on_payment_succeeded(ctx: ReconcileContext, event: WebhookEvent) -> str:
    payment, customer_id, profile = await _load_payment(ctx, event)
    paid_at = to_utc(payment.get("created_at"))
    if paid_at is None:
        raise WebhookValidationError(f"Payment {event.object_id} has no created_at")

    if (
        profile.payment_status == "succeeded"
        and to_utc(profile.last_payment_at) == paid_at
        and profile.dodopayments_last_payment_id == event.object_id
    ):
        return "skipped"

    fields: dict[str, Any] = {
        "last_payment_at": paid_at,
        "payment_status": "succeeded",
        "dodopayments_last_payment_id": event.object_id,
    }
    if customer_id:
        fields["dodopayments_customer_id"] = customer_id
    profiles.update_profile(profile.id, **fields)
    log.info(
        "webhook.payment event=%s user=%s payment=%s",
        event.kind.value, profile.id, event.object_id,
    )

    amount = None
    total = payment.get("total_amount")
    if isinstance(total, (int, float)):
        amount = notifications.format_amount(total / 100, payment.get("currency") or "USD")
    await _notify(ctx, profile, payment, "payment_success", amount=amount)
    return "applied"


async def _on_payment_failed(ctx: ReconcileContext, event: WebhookEvent) -> str:
    _payment, _customer_id, profile = await _load_payment(ctx, event)
    profiles.update_profile(profile.id, payment_status="failed")
    log.info(
        "webhook.payment event=%s user=%s payment=%s",
        event.kind.value, profile.id, event.object_id,
    )
    return "applied"


Handler = Callable[[ReconcileContext, WebhookEvent], Awaitable[str]]

HANDLERS: dict[EventType, Handler] = {
    EventType.SUBSCRIPTION_ACTIVE: _on_subscription_active,
    EventType.SUBSCRIPTION_RENEWED: _on_subscription_renewed,
    EventType.SUBSCRIPTION_ON_HOLD: _status_only(SubscriptionStatus.ON_HOLD),
    EventType.SUBSCRIPTION_CANCELLED: _status_only(
        SubscriptionStatus.CANCELLED, "subscription_cancelled"
    ),
    EventType.SUBSCRIPTION_FAILED: _status_only(
        SubscriptionStatus.CANCELLED, "subscription_cancelled"
    ),
    EventType.SUBSCRIPTION_TRIAL_END: _status_only(SubscriptionStatus.TRIAL_ENDED),
    EventType.SUBSCRIPTION_EXPIRED: _status_only(SubscriptionStatus.EXPIRED),
    EventType.PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EventType.PAYMENT_FAILED: _on_payment_failed,
}

_unhandled = set(EventType) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"No webhook handler for: {sorted(e.value for e in _unhandled)}")


async def reconcile(
    raw_body: bytes,
    headers: Mapping[str, str],
    *,
    secret: str,
    client: DodoClient,
    cfg: Settings,
    now: Optional[dt.datetime] = None,
) -> WebhookResult:
    payload = verify_payload(raw_body, headers, secret)
    webhook_id = headers.get("webhook-id") or None
    event = parse_event(payload, webhook_id)
    if event is None:
        log.warning("webhook.unhandled type=%s id=%s", payload.get("type"), webhook_id)
        return WebhookResult(
            message="Event type not handled", event=payload.get("type"), ignored=True
        )

    if events.is_webhook_processed(webhook_id):
        log.info("webhook.duplicate id=%s event=%s", webhook_id, event.kind.value)
        return WebhookResult(message="Already processed", event=event.kind.value)

    ctx = ReconcileContext(client=client, cfg=cfg, now=to_utc(now) or utc_now())
    result = await HANDLERS[event.kind](ctx, event)
    events.record_webhook(webhook_id, event.kind.value, event.object_id, result)
    return WebhookResult(
        message=_RESULT_MESSAGES.get(result, "Webhook processed successfully"),
        event=event.kind.value,
        applied=result == "applied",
    )
