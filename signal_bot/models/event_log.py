"""EventLog model — persisted record of notable reconciliation events."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class EventLog(SQLModel, table=True):
    __tablename__ = "event_log"

    id: int | None = Field(default=None, primary_key=True)
    strategy_id: int | None = Field(default=None, index=True)
    trade_id: int | None = Field(default=None, index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    level: str = "info"  # "info", "warning", "error"
    action: str  # "order_execution", "position_sync", "stop_loss", "take_profit"
    message: str | None = None
