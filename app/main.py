import os
import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import FileResponse, Response
from starlette.staticfiles import StaticFiles

from app.core.auth import SessionContext, get_session
from app.core.config import get_settings
from app.core.logging import setup_logging
from app.core.types import MeResponse, Profile
from app.data import profiles
from app.data.events import init_db
from app.db import engine, ping
from app.routes import billing, cron, emails
from app.services.access_gate import AccessGateMiddleware
from app.services.subscription_status import classify

setup_logging()
init_db()
app = FastAPI(title="Limetto", version="1.0")
log = logging.getLogger(__name__)

# Serve built frontend if present
_STATIC_CANDIDATES = ["web/dist", "web/build"]
STATIC_DIR = next(
    (p for p in _STATIC_CANDIDATES if os.path.exists(os.path.join(p, "index.html"))),
    None,
)
if STATIC_DIR and os.path.isdir(os.path.join(STATIC_DIR, "assets")):
    app.mount(
        "/assets",
        StaticFiles(directory=os.path.join(STATIC_DIR, "assets")),
        name="assets",
    )
INDEX_PATH = os.path.join(STATIC_DIR, "index.html") if STATIC_DIR else None

cfg = get_settings()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if os.getenv("ENABLE_HSTS", "0").strip().lower() in ("1", "true", "yes", "on"):
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=63072000; includeSubDomains; preload",
            )
        return response


# Last added runs outermost: security headers, CORS, gzip, then the gate
app.add_middleware(AccessGateMiddleware, settings=cfg)
app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cfg.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/api/me", response_model=MeResponse)
async def me(session: SessionContext = Depends(get_session)):
    meta = session.user_metadata or {}
    profile = None
    try:
        profiles.ensure_profile(
            session.user_id,
            session.email,
            meta.get("name") or meta.get("full_name"),
            meta.get("chosen_category_id"),
        )
        profile = profiles.get_profile(session.user_id)
    except Exception:
        log.exception("me.profile_failed user=%s", session.user_id)
    if profile is None:
        profile = Profile(id=session.user_id, email=session.email)

    return MeResponse(
        userId=session.user_id,
        email=session.email,
        profile=profile.model_dump(mode="json"),
        subscription=classify(profile),
    )


@app.get("/healthz")
async def healthz():
    return {"ok": True}


app.include_router(billing.router)
app.include_router(cron.router)
app.include_router(emails.router)


@app.get("/api/_db/health")
async def db_health():
    """Lightweight DB probe used locally and in deploy health checks."""
    try:
        ping()
        return {"dialect": engine.dialect.name, "ok": True}
    except Exception as e:
        return JSONResponse(
            {"dialect": engine.dialect.name, "ok": False, "error": str(e)},
            status_code=500,
        )


def _index_response():
    if INDEX_PATH and os.path.exists(INDEX_PATH):
        return FileResponse(INDEX_PATH)
    return Response(
        "Frontend build not found. Run `npm run build` in ./web.",
        media_type="text/plain",
        status_code=404,
    )


@app.get("/")
async def index():
    return _index_response()


@app.get("/{full_path:path}")
async def spa(full_path: str):
    # API paths never fall through to the SPA shell
    if full_path.startswith("api/"):
        return Response(status_code=404)
    return _index_response()
