import asyncio
import logging
from typing import Optional

import pycountry

from app.core.config import Settings
from app.core.types import BillingAddress, CheckoutRequest, CheckoutResponse
from app.data import profiles
from app.services.dodo import BillingNotConfigured, DodoClient, ProviderError

log = logging.getLogger(__name__)


class CheckoutValidationError(ValueError):
    """Request is missing signup/billing fields or names an unknown country."""


class CheckoutFailed(Exception):
    """Provider failed, timed out, or returned no payment link."""


def resolve_country(value: Optional[str]) -> Optional[str]:
    """ISO 3166 alpha-2 code for a country name or code, or None if unknown."""
    if not value or not value.strip():
        return None
    try:
        return pycountry.countries.lookup(value.strip()).alpha_2
    except LookupError:
        return None


def validate_request(req: CheckoutRequest) -> tuple[CheckoutRequest, str]:
    """Return the request and its billing country code, or raise CheckoutValidationError."""
    if not (
        req.supabaseUserId
        and req.supabaseCategoryId
        and req.email
        and req.name
        and req.billing
        and req.billing.country
    ):
        raise CheckoutValidationError("Missing required signup or billing fields")
    code = resolve_country(req.billing.country)
    if not code:
        raise CheckoutValidationError(f"Invalid country: {req.billing.country}")
    return req, code


def _billing_payload(billing: BillingAddress, country_code: str) -> dict:
    data = billing.model_dump(exclude_none=True)
    data["country"] = country_code
    return data


async def resolve_customer(client: DodoClient, user_id: str, email: str, name: str) -> str:
    """Stored customer id if the profile has one; otherwise create and persist it."""
    existing = profiles.get_customer_id(user_id)
    if existing:
        log.info("checkout.customer reuse user=%s customer=%s", user_id, existing)
        return existing

    created = await client.create_customer(email=email, name=name)
    customer_id = created.get("customer_id")
    if not customer_id:
        raise ProviderError("Customer creation returned no customer_id", body=created)
    stored = profiles.set_customer_id_once(user_id, customer_id)
    if stored and stored != customer_id:
        # Another checkout persisted first; keep the stored one
        log.warning(
            "checkout.customer race user=%s created=%s stored=%s", user_id, customer_id, stored
        )
        return stored
    log.info("checkout.customer created user=%s customer=%s", user_id, customer_id)
    return customer_id


async def create_subscription_checkout(
    client: DodoClient, cfg: Settings, req: CheckoutRequest
) -> CheckoutResponse:
    req, country_code = validate_request(req)
    if not cfg.DODO_PRODUCT_ID:
        raise BillingNotConfigured("DODOPAYMENTS_GENERIC_SUBSCRIPTION_PRODUCT_ID is not set")

    user_id = req.supabaseUserId
    profiles.ensure_profile(user_id, req.email, req.name, req.supabaseCategoryId)

    async def _create() -> dict:
        customer_id = await resolve_customer(client, user_id, req.email, req.name)
        return await client.create_subscription(
            product_id=cfg.DODO_PRODUCT_ID,
            customer_id=customer_id,
            billing=_billing_payload(req.billing, country_code),
            metadata={
                "supabase_user_id": user_id,
                "supabase_category_id": req.supabaseCategoryId,
                "dodopayments_customer_id": customer_id,
            },
            return_url=cfg.PUBLIC_BASE_URL,
        )

    try:
        subscription = await asyncio.wait_for(_create(), timeout=cfg.CHECKOUT_TIMEOUT_S)
    except asyncio.TimeoutError as e:
        log.error("checkout.timeout user=%s after=%ss", user_id, cfg.CHECKOUT_TIMEOUT_S)
        raise CheckoutFailed(
            f"Subscription creation timed out after {cfg.CHECKOUT_TIMEOUT_S:g}s"
        ) from e
    except ProviderError as e:
        raise CheckoutFailed(str(e)) from e

    payment_link = subscription.get("payment_link")
    if not payment_link:
        log.error("checkout.no_payment_link user=%s response=%s", user_id, subscription)
        raise CheckoutFailed("No payment link received")

    log.info(
        "checkout.subscription user=%s sub=%s metadata=%s",
        user_id,
        subscription.get("subscription_id"),
        subscription.get("metadata"),
    )
    return CheckoutResponse(
        payment_link=payment_link,
        subscription_id=subscription.get("subscription_id"),
    )
