# app/core/config.py
import os
import json
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

# Load .env into process environment early
load_dotenv()


def _get(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None else default


def _get_list(name: str, default_list: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default_list)
    s = raw.strip()
    # Try JSON first
    if s.startswith("[") and s.endswith("]"):
        try:
            parsed = json.loads(s)
            if isinstance(parsed, list):
                return [str(x) for x in parsed]
        except Exception:
            pass
    # Fallback to CSV
    return [x.strip() for x in s.split(",") if x.strip()]


def _get_float(name: str, default: float) -> float:
    try:
        return float(_get(name, str(default)) or default)
    except Exception:
        return default


DEFAULT_PROTECTED_PATHS = ["/dashboard", "/profile", "/settings", "/leads"]
DEFAULT_SUBSCRIPTION_EXEMPT_PATHS = ["/subscribe", "/api/checkout/subscription"]
DEFAULT_GATE_EXCLUDED_PATHS = ["/assets", "/_next", "/api/webhook", "/auth/confirm"]


@dataclass(frozen=True)
class Settings:
    CORS_ORIGINS: List[str] = field(default_factory=lambda: ["*"])
    PUBLIC_BASE_URL: str = "http://localhost:3000"
    # Dodo Payments (server-side)
    PAYMENT_MODE: str = "test"  # test | live
    DODO_API_KEY_TEST: str | None = None
    DODO_API_KEY_LIVE: str | None = None
    DODO_API_BASE_URL: str | None = None
    DODO_PAYMENTS_WEBHOOK_KEY: str | None = None
    DODO_PRODUCT_ID: str | None = None
    CHECKOUT_TIMEOUT_S: float = 30.0
    PROVIDER_HTTP_TIMEOUT_S: float = 15.0
    CRON_SECRET: str | None = None
    # Access gate
    PROTECTED_PATHS: List[str] = field(
        default_factory=lambda: list(DEFAULT_PROTECTED_PATHS)
    )
    SUBSCRIPTION_EXEMPT_PATHS: List[str] = field(
        default_factory=lambda: list(DEFAULT_SUBSCRIPTION_EXEMPT_PATHS)
    )
    GATE_EXCLUDED_PATHS: List[str] = field(
        default_factory=lambda: list(DEFAULT_GATE_EXCLUDED_PATHS)
    )
    # Reminder emails
    REMINDER_AMOUNT: float = 29.99
    REMINDER_CURRENCY: str = "USD"
    # SMTP (notifications)
    SMTP_HOST: str | None = None
    SMTP_PORT: int | None = None
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_FROM: str | None = None

    @property
    def is_live(self) -> bool:
        return self.PAYMENT_MODE == "live"

    @property
    def dodo_api_key(self) -> str | None:
        return self.DODO_API_KEY_LIVE if self.is_live else self.DODO_API_KEY_TEST

    @property
    def dodo_api_base(self) -> str:
        if self.DODO_API_BASE_URL:
            return self.DODO_API_BASE_URL.rstrip("/")
        if self.is_live:
            return "https://live.dodopayments.com"
        return "https://test.dodopayments.com"


def get_settings() -> Settings:
    payment_mode = (_get("PAYMENT_MODE", "test") or "test").strip().lower()
    smtp_port = _get("SMTP_PORT")

    return Settings(
        CORS_ORIGINS=_get_list("CORS_ORIGINS", ["*"]),
        PUBLIC_BASE_URL=(
            _get("PUBLIC_BASE_URL") or _get("NEXT_PUBLIC_BASE_URL") or "http://localhost:3000"
        ).strip().rstrip("/"),
        PAYMENT_MODE="live" if payment_mode == "live" else "test",
        DODO_API_KEY_TEST=_get("DODO_API_KEY_TEST"),
        DODO_API_KEY_LIVE=_get("DODO_API_KEY_LIVE"),
        DODO_API_BASE_URL=_get("DODO_API_BASE_URL"),
        DODO_PAYMENTS_WEBHOOK_KEY=_get("DODO_PAYMENTS_WEBHOOK_KEY"),
        DODO_PRODUCT_ID=_get("DODOPAYMENTS_GENERIC_SUBSCRIPTION_PRODUCT_ID"),
        CHECKOUT_TIMEOUT_S=_get_float("CHECKOUT_TIMEOUT_S", 30.0),
        PROVIDER_HTTP_TIMEOUT_S=_get_float("PROVIDER_HTTP_TIMEOUT_S", 15.0),
        CRON_SECRET=_get("CRON_SECRET"),
        PROTECTED_PATHS=_get_list("PROTECTED_PATHS", DEFAULT_PROTECTED_PATHS),
        SUBSCRIPTION_EXEMPT_PATHS=_get_list(
            "SUBSCRIPTION_EXEMPT_PATHS", DEFAULT_SUBSCRIPTION_EXEMPT_PATHS
        ),
        GATE_EXCLUDED_PATHS=_get_list("GATE_EXCLUDED_PATHS", DEFAULT_GATE_EXCLUDED_PATHS),
        REMINDER_AMOUNT=_get_float("REMINDER_AMOUNT", 29.99),
        REMINDER_CURRENCY=(_get("REMINDER_CURRENCY", "USD") or "USD").strip().upper(),
        SMTP_HOST=_get("SMTP_HOST"),
        SMTP_PORT=(int(float(smtp_port or 0)) if smtp_port else None),
        SMTP_USER=_get("SMTP_USER"),
        SMTP_PASSWORD=_get("SMTP_PASSWORD"),
        SMTP_FROM=_get("SMTP_FROM") or _get("SMTP_USER"),
    )
