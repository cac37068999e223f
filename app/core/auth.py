# --- Supabase JWT verification (RS256 via JWKS, HS256 via shared secret) ---
import os
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from fastapi import HTTPException, Request
from jwt import (
    decode as jwt_decode,
    PyJWKClient,
    InvalidTokenError,
    get_unverified_header,
)

log = logging.getLogger(__name__)

SUPABASE_JWKS_URL = os.environ.get("SUPABASE_JWT_JWKS_URL")
SUPABASE_JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET")
SUPABASE_ISS = os.environ.get("SUPABASE_ISS") or os.environ.get("SUPABASE_JWT_ISSUER")
ACCESS_TOKEN_COOKIE = os.environ.get("SUPABASE_ACCESS_TOKEN_COOKIE", "sb-access-token")

if not (SUPABASE_JWKS_URL or SUPABASE_JWT_SECRET):
    log.warning(
        "SUPABASE_JWT_JWKS_URL / SUPABASE_JWT_SECRET not set; every request is treated as anonymous."
    )
_JWK_CLIENT: Optional[PyJWKClient] = (
    PyJWKClient(SUPABASE_JWKS_URL) if SUPABASE_JWKS_URL else None
)


@dataclass(frozen=True)
class SessionContext:
    """Identity of the caller for a single request."""

    user_id: str
    email: Optional[str] = None
    user_metadata: Optional[Dict[str, Any]] = None


def _check_issuer(claims: Dict[str, Any]) -> Dict[str, Any]:
    if SUPABASE_ISS and claims.get("iss") != SUPABASE_ISS:
        raise InvalidTokenError("Invalid issuer")
    return claims


def verify_token(token: str) -> Dict[str, Any]:
    try:
        header = get_unverified_header(token)
    except Exception as e:
        raise InvalidTokenError("Invalid JWT header") from e

    alg = header.get("alg")

    # RS256/ES256 via JWKS (newer Supabase projects)
    if alg in ("RS256", "ES256"):
        if not _JWK_CLIENT:
            raise InvalidTokenError("JWKS client not configured")
        signing_key = _JWK_CLIENT.get_signing_key_from_jwt(token).key
        claims = jwt_decode(
            token, signing_key, algorithms=[alg], options={"verify_aud": False}
        )
        return _check_issuer(claims)

    # HS256 via shared secret (many existing Supabase projects)
    if alg == "HS256":
        if not SUPABASE_JWT_SECRET:
            raise InvalidTokenError("HS256 token but SUPABASE_JWT_SECRET not set")
        claims = jwt_decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
        return _check_issuer(claims)

    raise InvalidTokenError(f"Unsupported alg: {alg}")


def _token_from_request(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1]
    return request.cookies.get(ACCESS_TOKEN_COOKIE)


def resolve_session(request: Request) -> Optional[SessionContext]:
    """Verify the request's Supabase token; None when absent or invalid."""
    token = _token_from_request(request)
    if not token:
        return None
    try:
        claims = verify_token(token)
    except Exception:
        # Expired/invalid/missing/JWKS issues all mean anonymous
        return None
    sub = claims.get("sub")
    if not sub:
        return None
    return SessionContext(
        user_id=sub,
        email=claims.get("email"),
        user_metadata=claims.get("user_metadata") or None,
    )


def get_session(request: Request) -> SessionContext:
    """Dependency: the caller's session, or 401.

    The access gate stores the resolved session on ``request.state``; routes
    outside the gate resolve it here.
    """
    session = getattr(request.state, "session", None)
    if session is None:
        session = resolve_session(request)
    if session is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return session
