"""
Alembic migration environment for PHIGuard.

The URL normally arrives through the Config object (ensure_schema() sets
``sqlalchemy.url``). From the command line, ``alembic upgrade head`` resolves
it the same way the service does: DATABASE_URL, then PHIGUARD_DB_PATH, then
/tmp/phiguard.db.

No MetaData is attached; revisions are written by hand with ``op`` calls
because the runtime talks to the tables through sqlite3, not the ORM.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, event, pool

from phiguard.app.db.migrate import get_database_url

config = context.config

# ensure_schema() turns this off so the service keeps its own logging setup.
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _url() -> str:
    return config.get_main_option("sqlalchemy.url") or get_database_url()


def run_migrations_offline() -> None:
    """Emit the DDL as SQL text (``alembic upgrade head --sql``)."""
    context.configure(
        url=_url(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _url()
    is_sqlite = url.startswith("sqlite")

    engine = create_engine(
        url,
        poolclass=pool.NullPool,
        connect_args={"check_same_thread": False} if is_sqlite else {},
    )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _sqlite_busy_timeout(dbapi_connection, connection_record):
            # The service may hold the audit write lock while a migration starts
            dbapi_connection.execute("PRAGMA busy_timeout = 30000")

    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=None,
            render_as_batch=is_sqlite,
            transaction_per_migration=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
