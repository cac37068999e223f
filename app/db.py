import os
import logging
from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine

load_dotenv()

log = logging.getLogger(__name__)

DB_ECHO = os.getenv("DB_ECHO") == "1"


def normalize_url(url: str) -> str:
    """Hosted Postgres providers hand out ``postgres://``; SQLAlchemy wants ``postgresql://``."""
    url = url.strip()
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


DATABASE_URL = normalize_url(os.getenv("DATABASE_URL", "sqlite:///data/limetto.db"))


def _sqlite_path(url: str) -> str | None:
    if not url.startswith("sqlite:///"):
        return None
    path = url.replace("sqlite:///", "", 1)
    return None if path == ":memory:" else path


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite:"):
        path = _sqlite_path(url)
        if path and os.path.dirname(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
        eng = create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
            echo=DB_ECHO,
        )

        # Webhooks, cron and page requests write concurrently in dev
        @event.listens_for(eng, "connect")
        def _sqlite_pragmas(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL")
                cur.execute("PRAGMA synchronous=NORMAL")
                cur.execute("PRAGMA busy_timeout=5000")
            finally:
                cur.close()

        return eng

    # Supabase Postgres
    connect_args = {}
    statement_timeout_ms = os.getenv("DB_STATEMENT_TIMEOUT_MS")
    if statement_timeout_ms:
        connect_args["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE_S", "300")),
        connect_args=connect_args,
        echo=DB_ECHO,
    )


engine = _build_engine(DATABASE_URL)


def dialect() -> str:
    return engine.dialect.name


def is_sqlite() -> bool:
    return engine.dialect.name == "sqlite"


def is_postgres() -> bool:
    return engine.dialect.name == "postgresql"


def ping() -> None:
    """Round-trip ``SELECT 1``; raises on connection failure."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


log.info(
    "DB engine ready dialect=%s url=%s",
    dialect(),
    engine.url.render_as_string(hide_password=True),
)
