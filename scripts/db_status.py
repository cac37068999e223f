"""Print the database dialect, billing tables and a subscription status breakdown."""
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from sqlalchemy import inspect, text
from app.db import engine, dialect, ping

TABLES = ("profiles", "webhook_events")


def main() -> int:
    print("dialect:", dialect())
    print("url:", engine.url.render_as_string(hide_password=True))
    try:
        ping()
        print("db: ok")
    except Exception as e:
        print("db error:", e)
        return 1

    existing = set(inspect(engine).get_table_names())
    for name in TABLES:
        print(f"{name} table:", name in existing)
    if "profiles" not in existing:
        return 1

    with engine.begin() as conn:
        rows = conn.execute(
            text(
                "SELECT subscription_status, COUNT(*) FROM profiles "
                "GROUP BY subscription_status ORDER BY subscription_status"
            )
        ).all()
        processed = (
            conn.execute(text("SELECT COUNT(*) FROM webhook_events")).scalar()
            if "webhook_events" in existing
            else 0
        )
    for status, count in rows:
        print(f"  {status}: {count}")
    print("webhook deliveries processed:", processed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
