import datetime as dt
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.core.config import Settings, get_settings
from app.core.types import SweepResponse
from app.services.notifications import send_payment_reminders
from app.services.trial_sweeper import sweep_expired_trials

router = APIRouter(prefix="/api")
log = logging.getLogger("cron")


def _authorized(cfg: Settings, authorization: Optional[str]) -> bool:
    """Bearer CRON_SECRET check; callers skip it when no secret is configured."""
    expected = f"Bearer {cfg.CRON_SECRET}"
    return bool(authorization) and hmac.compare_digest(authorization, expected)


@router.get("/cron/update-trials", response_model=SweepResponse)
async def update_trials(
    authorization: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
):
    if cfg.CRON_SECRET and not _authorized(cfg, authorization):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    try:
        updated = await run_in_threadpool(sweep_expired_trials)
    except Exception as e:
        log.exception("cron.update_trials_failed")
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)
    return SweepResponse(success=True, updated=updated)


@router.post("/email/payment-reminders")
async def payment_reminders(
    authorization: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
):
    if cfg.CRON_SECRET and not _authorized(cfg, authorization):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    try:
        run = await run_in_threadpool(send_payment_reminders, cfg)
    except Exception as e:
        log.exception("cron.payment_reminders_failed")
        return JSONResponse(
            {"error": "Failed to process payment reminders", "details": str(e)},
            status_code=500,
        )
    return {
        "success": True,
        "message": f"Processed {run.processed} payment reminders",
        "sent": run.sent,
        "outboxed": run.outboxed,
    }


@router.get("/email/payment-reminders")
async def payment_reminders_status():
    return {
        "message": "Payment reminder cron job endpoint is active",
        "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
    }
