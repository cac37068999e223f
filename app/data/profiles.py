# Profile store (SQLite + Postgres)
# Table:
#   profiles(
#     id TEXT PRIMARY KEY,               -- Supabase user id
#     email TEXT, name TEXT,
#     subscription_status TEXT NOT NULL, -- none | trialing | active | on_hold | ...
#     is_trialing BOOLEAN, trial_ends_at TIMESTAMP, has_ever_trialed BOOLEAN,
#     next_billing_at TIMESTAMP,         -- provider next_billing_date
#     subscribed_at TIMESTAMP, last_payment_at TIMESTAMP, payment_status TEXT,
#     dodopayments_customer_id TEXT, dodopayments_subscription_id TEXT,
#     dodopayments_last_payment_id TEXT, chosen_category_id TEXT,
#     created_at TIMESTAMP
#   )
import datetime as dt
import logging
from typing import Any, Iterable

from sqlalchemy import text

from app.core.types import Profile, SubscriptionStatus
from app.db import engine, is_postgres, is_sqlite

log = logging.getLogger(__name__)

PROFILE_COLUMNS = (
    "id",
    "email",
    "name",
    "subscription_status",
    "is_trialing",
    "trial_ends_at",
    "has_ever_trialed",
    "next_billing_at",
    "subscribed_at",
    "last_payment_at",
    "payment_status",
    "dodopayments_customer_id",
    "dodopayments_subscription_id",
    "dodopayments_last_payment_id",
    "chosen_category_id",
    "created_at",
)
_TIMESTAMP_COLUMNS = {
    "trial_ends_at",
    "next_billing_at",
    "subscribed_at",
    "last_payment_at",
    "created_at",
}
_BOOL_COLUMNS = {"is_trialing", "has_ever_trialed"}
_UPDATABLE = set(PROFILE_COLUMNS) - {"id", "created_at"}


class ProfileNotFoundError(LookupError):
    """No profiles row exists for the given user id."""


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_utc(value: Any) -> dt.datetime | None:
    """Normalize a DB or provider timestamp to a timezone-aware UTC datetime.

    Postgres hands back datetimes, SQLite hands back ISO text; provider
    payloads use ISO-8601 with a trailing 'Z'.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if "T" not in s and " " in s:
            s = s.replace(" ", "T", 1)
        try:
            d = dt.datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
        if d.tzinfo is None:
            return d.replace(tzinfo=dt.timezone.utc)
        return d.astimezone(dt.timezone.utc)
    return None


def _db_ts(value: dt.datetime | None):
    """Bind value for a timestamp column.

    SQLite stores fixed-width UTC ISO text so that string comparison orders
    correctly; Postgres takes the aware datetime as-is.
    """
    if value is None:
        return None
    value = to_utc(value)
    if is_sqlite():
        return value.isoformat(timespec="microseconds")
    return value


def _ts_type() -> str:
    return "TIMESTAMPTZ" if is_postgres() else "TEXT"


def init_db() -> None:
    ts = _ts_type()
    with engine.begin() as conn:
        conn.execute(
            text(
                f"""
            CREATE TABLE IF NOT EXISTS profiles(
                id TEXT PRIMARY KEY,
                email TEXT,
                name TEXT,
                subscription_status TEXT NOT NULL DEFAULT 'none',
                is_trialing BOOLEAN NOT NULL DEFAULT FALSE,
                trial_ends_at {ts},
                has_ever_trialed BOOLEAN NOT NULL DEFAULT FALSE,
                next_billing_at {ts},
                subscribed_at {ts},
                last_payment_at {ts},
                payment_status TEXT,
                dodopayments_customer_id TEXT,
                dodopayments_subscription_id TEXT,
                dodopayments_last_payment_id TEXT,
                chosen_category_id TEXT,
                created_at {ts}
            )
            """
            )
        )
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS idx_profiles_status_trial "
                "ON profiles(subscription_status, trial_ends_at)"
            )
        )
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS idx_profiles_customer "
                "ON profiles(dodopayments_customer_id)"
            )
        )
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS idx_profiles_status_billing "
                "ON profiles(subscription_status, next_billing_at)"
            )
        )


def _row_to_profile(row) -> Profile:
    data = dict(row)
    for col in _TIMESTAMP_COLUMNS:
        data[col] = to_utc(data.get(col))
    for col in _BOOL_COLUMNS:
        data[col] = bool(data.get(col))
    data["subscription_status"] = data.get("subscription_status") or SubscriptionStatus.NONE.value
    return Profile(**data)


def ensure_profile(
    user_id: str,
    email: str | None = None,
    name: str | None = None,
    chosen_category_id: str | None = None,
) -> None:
    """
    Best-effort insert of a profiles row at signup. No-op when it already exists.
    """
    if not user_id:
        return
    params = {
        "id": user_id,
        "email": email,
        "name": name,
        "cat": chosen_category_id,
        "created_at": _db_ts(utc_now()),
    }
    sql_pg = (
        "INSERT INTO profiles (id, email, name, chosen_category_id, created_at) "
        "VALUES (:id, :email, :name, :cat, :created_at) "
        "ON CONFLICT (id) DO NOTHING"
    )
    sql_sqlite = (
        "INSERT OR IGNORE INTO profiles (id, email, name, chosen_category_id, created_at) "
        "VALUES (:id, :email, :name, :cat, :created_at)"
    )
    with engine.begin() as conn:
        conn.execute(text(sql_pg if is_postgres() else sql_sqlite), params)


def get_profile(user_id: str) -> Profile | None:
    if not user_id:
        return None
    cols = ", ".join(PROFILE_COLUMNS)
    with engine.begin() as conn:
        row = (
            conn.execute(
                text(f"SELECT {cols} FROM profiles WHERE id = :uid LIMIT 1"),
                {"uid": user_id},
            )
            .mappings()
            .first()
        )
    return _row_to_profile(row) if row else None


def require_profile(user_id: str) -> Profile:
    profile = get_profile(user_id)
    if profile is None:
        raise ProfileNotFoundError(user_id)
    return profile


def get_gate_fields(user_id: str) -> tuple[str, dt.datetime | None]:
    """Return (subscription_status, trial_ends_at) for the access gate."""
    with engine.begin() as conn:
        row = conn.execute(
            text(
                "SELECT subscription_status, trial_ends_at FROM profiles "
                "WHERE id = :uid LIMIT 1"
            ),
            {"uid": user_id},
        ).first()
    if not row:
        raise ProfileNotFoundError(user_id)
    return (row[0] or SubscriptionStatus.NONE.value), to_utc(row[1])


def update_profile(user_id: str, **fields: Any) -> int:
    """Apply a single-row UPDATE and return the affected row count.

    ``has_ever_trialed`` is only ever written as true.
    """
    if not user_id:
        return 0
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Unknown profile columns: {sorted(unknown)}")
    if fields.get("has_ever_trialed") is False:
        fields.pop("has_ever_trialed")
    if not fields:
        return 0
    params: dict[str, Any] = {"uid": user_id}
    assignments = []
    for col, value in fields.items():
        if isinstance(value, SubscriptionStatus):
            value = value.value
        if col in _TIMESTAMP_COLUMNS:
            value = _db_ts(value)
        elif col in _BOOL_COLUMNS:
            value = bool(value)
        params[col] = value
        assignments.append(f"{col} = :{col}")
    sql = f"UPDATE profiles SET {', '.join(assignments)} WHERE id = :uid"
    with engine.begin() as conn:
        res = conn.execute(text(sql), params)
    return res.rowcount or 0


def get_customer_id(user_id: str) -> str | None:
    if not user_id:
        return None
    with engine.begin() as conn:
        res = conn.execute(
            text("SELECT dodopayments_customer_id FROM profiles WHERE id = :uid LIMIT 1"),
            {"uid": user_id},
        ).first()
        return res[0] if res and res[0] else None


def set_customer_id_once(user_id: str, customer_id: str) -> str | None:
    """Persist a customer id only if none is stored yet; return the stored id.

    A concurrent checkout that won the race keeps its id; the caller gets
    that one back and should use it.
    """
    if not user_id or not customer_id:
        return None
    with engine.begin() as conn:
        conn.execute(
            text(
                "UPDATE profiles SET dodopayments_customer_id = :cid "
                "WHERE id = :uid AND dodopayments_customer_id IS NULL"
            ),
            {"uid": user_id, "cid": customer_id},
        )
        res = conn.execute(
            text("SELECT dodopayments_customer_id FROM profiles WHERE id = :uid LIMIT 1"),
            {"uid": user_id},
        ).first()
    return res[0] if res and res[0] else None


def find_user_id_by_customer(customer_id: str | None) -> str | None:
    if not customer_id:
        return None
    with engine.begin() as conn:
        res = conn.execute(
            text("SELECT id FROM profiles WHERE dodopayments_customer_id = :cid LIMIT 1"),
            {"cid": customer_id},
        ).first()
        return res[0] if res and res[0] else None


def mark_expired_trials(now: dt.datetime) -> int:
    """Move every trialing profile whose trial_ends_at is past to trial_ended."""
    with engine.begin() as conn:
        res = conn.execute(
            text(
                "UPDATE profiles SET subscription_status = :ended, is_trialing = :false "
                "WHERE subscription_status = :trialing "
                "AND trial_ends_at IS NOT NULL AND trial_ends_at < :now"
            ),
            {
                "ended": SubscriptionStatus.TRIAL_ENDED.value,
                "trialing": SubscriptionStatus.TRIALING.value,
                "false": False,
                "now": _db_ts(now),
            },
        )
    return res.rowcount or 0


def profiles_billing_on(day: dt.date, statuses: Iterable[str] = ("active",)) -> list[Profile]:
    """Profiles in one of ``statuses`` whose next charge falls on ``day`` (UTC)."""
    start = dt.datetime(day.year, day.month, day.day, tzinfo=dt.timezone.utc)
    end = start + dt.timedelta(days=1)
    status_list = [s.value if isinstance(s, SubscriptionStatus) else s for s in statuses]
    placeholders = ", ".join(f":s{i}" for i in range(len(status_list)))
    params: dict[str, Any] = {f"s{i}": s for i, s in enumerate(status_list)}
    params.update({"start": _db_ts(start), "end": _db_ts(end)})
    cols = ", ".join(PROFILE_COLUMNS)
    with engine.begin() as conn:
        rows = (
            conn.execute(
                text(
                    f"SELECT {cols} FROM profiles "
                    f"WHERE subscription_status IN ({placeholders}) "
                    "AND next_billing_at >= :start AND next_billing_at < :end "
                    "ORDER BY id"
                ),
                params,
            )
            .mappings()
            .all()
        )
    return [_row_to_profile(r) for r in rows]
