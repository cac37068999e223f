import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.core.auth import SessionContext, get_session, resolve_session
from app.core.config import Settings, get_settings
from app.core.types import CheckoutRequest, CheckoutResponse
from app.data import profiles
from app.services import webhooks
from app.services.checkout import (
    CheckoutFailed,
    CheckoutValidationError,
    create_subscription_checkout,
)
from app.services.dodo import (
    BillingNotConfigured,
    DodoClient,
    ProviderError,
    get_dodo_client,
    require_client,
)
from app.services.rate_limit import allow_checkout_ip, allow_checkout_user

router = APIRouter(prefix="/api")
log = logging.getLogger("billing")


def client_ip(request: Request) -> Optional[str]:
    fwd = request.headers.get("x-forwarded-for")
    return (fwd.split(",")[0].strip() if fwd else None) or (
        request.client.host if request.client else None
    )


@router.post("/webhook")
async def dodo_webhook(
    request: Request,
    cfg: Settings = Depends(get_settings),
    client: Optional[DodoClient] = Depends(get_dodo_client),
):
    # Only billing endpoint without auth; protected by signature verification
    secret = cfg.DODO_PAYMENTS_WEBHOOK_KEY
    if not (secret and client):
        log.error("webhook.not_configured secret=%s client=%s", bool(secret), bool(client))
        return JSONResponse({"error": "Webhook not configured"}, status_code=400)

    raw_body = await request.body()
    try:
        result = await webhooks.reconcile(
            raw_body, request.headers, secret=secret, client=client, cfg=cfg
        )
    except webhooks.WebhookVerificationError as e:
        log.warning("webhook.verification_failed id=%s err=%s", request.headers.get("webhook-id"), e)
        return JSONResponse({"error": "Webhook verification failed"}, status_code=400)
    except webhooks.WebhookValidationError as e:
        log.error("webhook.invalid id=%s err=%s", request.headers.get("webhook-id"), e)
        return JSONResponse({"error": "Invalid webhook payload", "details": str(e)}, status_code=400)
    except webhooks.ProfileNotFoundError as e:
        log.error("webhook.user_not_found user=%s", e)
        return JSONResponse({"error": "User not found"}, status_code=404)
    except ProviderError as e:
        log.error("webhook.provider_failed id=%s err=%s", request.headers.get("webhook-id"), e)
        return JSONResponse({"error": "Payment provider unavailable"}, status_code=502)
    except Exception:
        log.exception("webhook.handler_error id=%s", request.headers.get("webhook-id"))
        return JSONResponse({"error": "Webhook failed"}, status_code=400)

    return result.model_dump()


@router.post("/checkout/subscription", response_model=CheckoutResponse)
async def checkout_subscription(
    body: CheckoutRequest,
    request: Request,
    cfg: Settings = Depends(get_settings),
    client: Optional[DodoClient] = Depends(get_dodo_client),
):
    session: Optional[SessionContext] = getattr(request.state, "session", None)
    if session is None:
        session = await run_in_threadpool(resolve_session, request)
    if session and body.supabaseUserId and session.user_id != body.supabaseUserId:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

    if not await allow_checkout_ip(client_ip(request)):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"reason": "rate_limited_ip", "retry": 60},
        )
    if not await allow_checkout_user(body.supabaseUserId):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"reason": "rate_limited_user", "retry": 60},
        )

    try:
        return await create_subscription_checkout(require_client(client), cfg, body)
    except CheckoutValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except (BillingNotConfigured, CheckoutFailed) as e:
        log.error("checkout.failed user=%s err=%s", body.supabaseUserId, e)
        return JSONResponse(
            {"error": "Failed to create subscription", "details": str(e)}, status_code=500
        )
    except Exception as e:
        log.exception("checkout.unexpected user=%s", body.supabaseUserId)
        return JSONResponse(
            {"error": "Failed to create subscription", "details": str(e)}, status_code=500
        )


@router.post("/manage-payment-method")
async def manage_payment_method(
    session: SessionContext = Depends(get_session),
    client: Optional[DodoClient] = Depends(get_dodo_client),
):
    try:
        customer_id = profiles.get_customer_id(session.user_id)
    except Exception:
        log.exception("portal.profile_fetch_failed user=%s", session.user_id)
        customer_id = None
    if not customer_id:
        return JSONResponse({"error": "Customer ID not found for this user."}, status_code=400)
    if client is None:
        return JSONResponse({"error": "Payment provider not configured"}, status_code=500)

    try:
        portal = await client.create_portal_session(customer_id)
    except ProviderError as e:
        return JSONResponse(
            {"error": "Failed to create portal session.", "details": e.body or str(e)},
            status_code=502,
        )
    session_url = portal.get("link") or portal.get("session_url")
    if not session_url:
        log.error("portal.no_link user=%s response=%s", session.user_id, portal)
        return JSONResponse({"error": "Failed to create portal session."}, status_code=502)
    log.info("portal.session user=%s customer=%s", session.user_id, customer_id)
    return {"session_url": session_url}
