"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect
from sqlmodel import SQLModel, create_engine, Session

from signal_bot.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
)

# Columns added after the first release of each table: table -> {name: DDL type}
_COLUMN_ADDITIONS = {
    "trade": {
        "realized_pnl": "FLOAT NOT NULL DEFAULT 0",
        "stop_loss_price": "FLOAT",
        "last_tp_level": "INTEGER NOT NULL DEFAULT 0",
        "is_from_averaging": "BOOLEAN NOT NULL DEFAULT FALSE",
    },
    "strategy": {
        "cycle_reset_at": "TIMESTAMP",
    },
}


def _run_migrations(bind=None):
    """Run lightweight schema migrations for columns added to existing tables."""
    from sqlalchemy import text

    bind = bind or engine
    inspector = inspect(bind)
    tables = set(inspector.get_table_names())

    for table, additions in _COLUMN_ADDITIONS.items():
        if table not in tables:
            continue
        columns = {col["name"] for col in inspector.get_columns(table)}
        for name, ddl in additions.items():
            if name in columns:
                continue
            logger.info(f"Migrating: adding {table}.{name}")
            with bind.connect() as conn:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
                conn.commit()

    if "trade" not in tables:
        return

    existing_indexes = {idx["name"] for idx in inspector.get_indexes("trade")}
    if "ix_trade_open_lookup" not in existing_indexes:
        with bind.connect() as conn:
            conn.execute(text(
                "CREATE INDEX ix_trade_open_lookup "
                "ON trade (strategy_id, symbol, side, status)"
            ))
            conn.commit()


def create_db_and_tables(bind=None):
    """Create all tables. Called on startup."""
    import signal_bot.models  # noqa: F401  (populate metadata)

    bind = bind or engine
    SQLModel.metadata.create_all(bind)
    _run_migrations(bind)


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
