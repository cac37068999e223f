"""Request-time access gate.

Runs before every navigational request (static assets, the webhook endpoint
and the auth confirmation callback are excluded). Anonymous users are sent to
login, signed-in users are kept off the auth pages, and protected pages
require an active subscription or an unexpired trial. Profile lookup errors
deny access.
"""

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence
from urllib.parse import urlencode

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse

from app.core.auth import SessionContext, resolve_session
from app.core.config import Settings
from app.core.types import SubscriptionStatus
from app.data import profiles
from app.data.profiles import to_utc, utc_now

log = logging.getLogger(__name__)

LOGIN_PATH = "/login"
SIGNUP_PATH = "/signup"
DASHBOARD_PATH = "/dashboard"
SUBSCRIBE_PATH = "/subscribe"

GateFieldsLoader = Callable[[str], "tuple[str, dt.datetime | None]"]


@dataclass(frozen=True)
class GateConfig:
    protected: Sequence[str] = field(default_factory=tuple)
    subscription_exempt: Sequence[str] = field(default_factory=tuple)
    excluded: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "GateConfig":
        return cls(
            protected=tuple(cfg.PROTECTED_PATHS),
            subscription_exempt=tuple(cfg.SUBSCRIPTION_EXEMPT_PATHS),
            excluded=tuple(cfg.GATE_EXCLUDED_PATHS),
        )


@dataclass(frozen=True)
class GateDecision:
    allow: bool
    location: Optional[str] = None
    reason: str = "pass"


ALLOW = GateDecision(allow=True)


def matches_any(path: str, prefixes: Sequence[str]) -> bool:
    """Exact match or ``prefix/...`` match against any configured path."""
    for p in prefixes:
        p = p.rstrip("/") or "/"
        if path == p or path.startswith(f"{p}/"):
            return True
    return False


def is_excluded(path: str, cfg: GateConfig) -> bool:
    if matches_any(path, cfg.excluded):
        return True
    # Files (favicon.svg, robots.txt, bundles) never go through the gate
    last = path.rsplit("/", 1)[-1]
    return "." in last


def _redirect(location: str, reason: str) -> GateDecision:
    return GateDecision(allow=False, location=location, reason=reason)


def has_entitlement(status: str, trial_ends_at: dt.datetime | None, now: dt.datetime) -> bool:
    is_active = status == SubscriptionStatus.ACTIVE.value
    ends = to_utc(trial_ends_at)
    is_trialing = status == SubscriptionStatus.TRIALING.value and ends is not None and ends > now
    return is_active or is_trialing


def evaluate(
    identity: Optional[SessionContext],
    path: str,
    load_gate_fields: GateFieldsLoader,
    cfg: GateConfig,
    now: dt.datetime | None = None,
) -> GateDecision:
    is_protected = matches_any(path, cfg.protected)
    is_exempt = matches_any(path, cfg.subscription_exempt)

    if identity is None and is_protected:
        location = LOGIN_PATH
        if path != LOGIN_PATH:
            location = f"{LOGIN_PATH}?{urlencode({'redirectedFrom': path}, safe='/')}"
        return _redirect(location, "unauthenticated")

    if identity is not None and (path.startswith(LOGIN_PATH) or path.startswith(SIGNUP_PATH)):
        return _redirect(DASHBOARD_PATH, "already_signed_in")

    if identity is not None and is_protected and not is_exempt:
        try:
            status, trial_ends_at = load_gate_fields(identity.user_id)
        except Exception as e:
            log.error("gate.profile_fetch_failed user=%s err=%s", identity.user_id, e)
            return _redirect(SUBSCRIBE_PATH, "profile_unavailable")
        if not has_entitlement(status, trial_ends_at, to_utc(now) or utc_now()):
            return _redirect(SUBSCRIBE_PATH, "not_entitled")

    return ALLOW


class AccessGateMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        settings: Settings,
        load_gate_fields: Optional[GateFieldsLoader] = None,
    ):
        super().__init__(app)
        self.cfg = GateConfig.from_settings(settings)
        self._load = load_gate_fields

    def _load_gate_fields(self, user_id: str):
        loader = self._load or profiles.get_gate_fields
        return loader(user_id)

    async def dispatch(self, request, call_next):
        path = request.url.path
        if is_excluded(path, self.cfg):
            return await call_next(request)

        session = await run_in_threadpool(resolve_session, request)
        request.state.session = session
        decision = await run_in_threadpool(
            evaluate, session, path, self._load_gate_fields, self.cfg
        )
        if not decision.allow:
            log.info(
                "gate.redirect path=%s user=%s reason=%s to=%s",
                path,
                session.user_id if session else None,
                decision.reason,
                decision.location,
            )
            return RedirectResponse(decision.location, status_code=307)
        return await call_next(request)
