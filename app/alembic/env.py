from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine

from app.db import engine, is_sqlite

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Raw-SQL data layer; revisions are written by hand
target_metadata = None


def _url() -> str:
    # `alembic -x db_url=...` targets a database other than DATABASE_URL
    return context.get_x_argument(as_dictionary=True).get("db_url") or str(engine.url)


def run_migrations_offline() -> None:
    """Emit SQL for the billing tables without a DB connection."""
    context.configure(
        url=_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=is_sqlite(),
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = context.get_x_argument(as_dictionary=True).get("db_url")
    connectable = create_engine(url) if url else engine
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
