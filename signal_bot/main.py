"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from signal_bot.config import settings
from signal_bot.database import create_db_and_tables
from signal_bot.utils.logging import setup_logging
from signal_bot.api import webhook, strategies, trades, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()
    # Reconcile the ledger with the exchanges before the monitors start acting on it
    from signal_bot.engine.runtime import position_sync
    await position_sync.run()
    from signal_bot.engine.scheduler import start_scheduler, stop_scheduler
    start_scheduler()

    yield

    stop_scheduler()


app = FastAPI(
    title="Signal Bot",
    description="Futures signal bot: webhook execution with stop-loss, take-profit and position reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(strategies.router)
app.include_router(trades.router)
app.include_router(system.router)
