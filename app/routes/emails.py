import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.core.config import Settings, get_settings
from app.core.types import SignupEmailRequest
from app.routes.billing import client_ip
from app.services.notifications import notify
from app.services.rate_limit import allow_email_ip

router = APIRouter(prefix="/api")
log = logging.getLogger("emails")


async def _send(request: Request, body: SignupEmailRequest, cfg: Settings, key: str):
    if not await allow_email_ip(client_ip(request)):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"reason": "rate_limited_ip", "retry": 60},
        )
    to_addr = body.recipient
    if not to_addr:
        return JSONResponse({"error": "Recipient email is required"}, status_code=400)

    delivered = await run_in_threadpool(notify, cfg, to_addr, key, user_name=body.name)
    log.info("email.%s to=%s delivered=%s", key, to_addr, delivered)
    return {"success": True}


@router.post("/send-welcome-email")
async def send_welcome_email(
    body: SignupEmailRequest,
    request: Request,
    cfg: Settings = Depends(get_settings),
):
    return await _send(request, body, cfg, "welcome")


@router.post("/send-signup-confirmation")
async def send_signup_confirmation(
    body: SignupEmailRequest,
    request: Request,
    cfg: Settings = Depends(get_settings),
):
    return await _send(request, body, cfg, "signup_confirmation")
