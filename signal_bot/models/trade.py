"""Trade model — one tracked position slice, open or closed."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class Trade(SQLModel, table=True):
    __tablename__ = "trade"

    id: int | None = Field(default=None, primary_key=True)
    strategy_id: int = Field(foreign_key="strategy.id", index=True)
    symbol: str = Field(index=True)
    side: str  # "BUY" | "SELL"
    type: str = "MARKET"  # "MARKET" | "LIMIT"
    entry_price: float = 0.0
    exit_price: float | None = None
    quantity: float = 0.0  # remaining open size
    initial_quantity: float | None = None  # first-cycle anchor for non-compounding sizing
    pnl: float = 0.0  # realized + unrealized
    realized_pnl: float = 0.0  # sum of closed slices
    status: str = Field(default="OPEN", index=True)
    exchange_order_id: str | None = None
    stop_loss_order: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    stop_loss_price: float | None = None
    take_profit_order: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    close_reason: str | None = None
    closed_at: datetime | None = None
    last_tp_level: int = 0
    is_from_averaging: bool = False
    error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
