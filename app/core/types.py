import datetime as dt
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, Any, Dict


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"
    FAILED = "failed"
    INCOMPLETE = "incomplete"
    PAST_DUE = "past_due"
    EXPIRED = "expired"
    TRIAL_ENDED = "trial_ended"


class Profile(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    # Kept as plain str so unknown values read from the DB still classify
    subscription_status: str = SubscriptionStatus.NONE.value
    is_trialing: bool = False
    trial_ends_at: Optional[dt.datetime] = None
    has_ever_trialed: bool = False
    next_billing_at: Optional[dt.datetime] = None
    subscribed_at: Optional[dt.datetime] = None
    last_payment_at: Optional[dt.datetime] = None
    payment_status: Optional[str] = None
    dodopayments_customer_id: Optional[str] = None
    dodopayments_subscription_id: Optional[str] = None
    dodopayments_last_payment_id: Optional[str] = None
    chosen_category_id: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class SubscriptionDetails(BaseModel):
    status_message: str
    action_needed: bool
    action_message: str = ""
    show_subscribe_button: bool = False


class BillingAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zipcode: Optional[str] = None


class CheckoutRequest(BaseModel):
    supabaseUserId: Optional[str] = None
    supabaseCategoryId: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    billing: Optional[BillingAddress] = None


class CheckoutResponse(BaseModel):
    payment_link: str
    subscription_id: Optional[str] = None


class SignupEmailRequest(BaseModel):
    # The welcome form posts `to`, the signup form posts `email`
    to: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def recipient(self) -> Optional[str]:
        return (self.to or self.email or "").strip() or None


class WebhookResult(BaseModel):
    ok: bool = True
    message: str = "Webhook processed successfully"
    event: Optional[str] = None
    applied: bool = False
    ignored: bool = False


class MeResponse(BaseModel):
    userId: str
    email: Optional[str] = None
    profile: Optional[Dict[str, Any]] = None
    subscription: SubscriptionDetails


class SweepResponse(BaseModel):
    success: bool
    updated: int = Field(default=0, ge=0)
