# Webhook delivery ledger (SQLite + Postgres)
# Table:
#   webhook_events(
#     webhook_id TEXT PRIMARY KEY,   -- Standard Webhooks `webhook-id` header
#     event_type TEXT NOT NULL,
#     object_id TEXT,                -- subscription_id | payment_id
#     result TEXT,                   -- applied | skipped | stale
#     processed_at TEXT NOT NULL
#   )
import datetime as dt
import threading

from sqlalchemy import text

from app.data.profiles import init_db as init_profiles
from app.db import engine, is_postgres

_INIT_LOCK = threading.Lock()


def _utc_now_iso() -> str:
    """UTC timestamp, second precision, with trailing 'Z'."""
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def init_db():
    with _INIT_LOCK:
        init_profiles()
        with engine.begin() as conn:
            conn.execute(
                text(
                    """
                CREATE TABLE IF NOT EXISTS webhook_events(
                    webhook_id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    object_id TEXT,
                    result TEXT,
                    processed_at TEXT NOT NULL
                )
                """
                )
            )
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS idx_webhook_events_object "
                    "ON webhook_events(object_id)"
                )
            )


def is_webhook_processed(webhook_id: str | None) -> bool:
    if not webhook_id:
        return False
    with engine.begin() as conn:
        row = conn.execute(
            text("SELECT 1 FROM webhook_events WHERE webhook_id = :wid LIMIT 1"),
            {"wid": webhook_id},
        ).first()
    return row is not None


def record_webhook(
    webhook_id: str | None, event_type: str, object_id: str | None, result: str
) -> bool:
    """Record a processed delivery. Returns False if it was already recorded."""
    if not webhook_id:
        return False
    params = {
        "wid": webhook_id,
        "etype": event_type,
        "oid": object_id,
        "result": result,
        "ts": _utc_now_iso(),
    }
    sql_pg = (
        "INSERT INTO webhook_events (webhook_id, event_type, object_id, result, processed_at) "
        "VALUES (:wid, :etype, :oid, :result, :ts) ON CONFLICT (webhook_id) DO NOTHING"
    )
    sql_sqlite = (
        "INSERT OR IGNORE INTO webhook_events (webhook_id, event_type, object_id, result, processed_at) "
        "VALUES (:wid, :etype, :oid, :result, :ts)"
    )
    with engine.begin() as conn:
        res = conn.execute(text(sql_pg if is_postgres() else sql_sqlite), params)
    return (res.rowcount or 0) > 0
