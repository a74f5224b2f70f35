"""Trade ledger — persistence operations the engine relies on.

All writes open their own short session. Closing a trade is a conditional
UPDATE on ``status == 'OPEN'`` so that when several loops race to close the
same trade, exactly one wins and the others see ``False``.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from signal_bot.models.event_log import EventLog
from signal_bot.models.strategy import Strategy
from signal_bot.models.trade import Trade
from signal_bot.utils.constants import CLOSED, OPEN

logger = logging.getLogger(__name__)


class TradeLedger:
    def __init__(self, engine: Engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ----- strategies ---------------------------------------------------

    def get_strategy(self, strategy_id: int) -> Strategy | None:
        with self._session() as session:
            return session.get(Strategy, strategy_id)

    def list_active_strategies(self) -> list[Strategy]:
        """Active strategies that have credentials and an execution target."""
        with self._session() as session:
            rows = session.exec(
                select(Strategy).where(Strategy.is_active == True)  # noqa: E712
            ).all()
        return [s for s in rows if s.has_credentials and s.execution_enabled]

    # ----- trade reads --------------------------------------------------

    def get_trade(self, trade_id: int) -> Trade | None:
        with self._session() as session:
            return session.get(Trade, trade_id)

    def find_by_status(self, status: str) -> list[Trade]:
        with self._session() as session:
            stmt = select(Trade).where(Trade.status == status).order_by(Trade.created_at, Trade.id)
            return list(session.exec(stmt).all())

    def find_open(
        self,
        strategy_id: int,
        symbol: str | None = None,
        side: str | None = None,
    ) -> list[Trade]:
        """OPEN trades for a strategy, oldest first."""
        with self._session() as session:
            stmt = select(Trade).where(Trade.strategy_id == strategy_id, Trade.status == OPEN)
            if symbol is not None:
                stmt = stmt.where(Trade.symbol == symbol)
            if side is not None:
                stmt = stmt.where(Trade.side == side)
            stmt = stmt.order_by(Trade.created_at, Trade.id)
            return list(session.exec(stmt).all())

    def find_latest_with_initial_quantity(self, strategy_id: int) -> Trade | None:
        with self._session() as session:
            stmt = (
                select(Trade)
                .where(Trade.strategy_id == strategy_id, Trade.initial_quantity.is_not(None))
                .order_by(Trade.created_at.desc(), Trade.id.desc())
            )
            return session.exec(stmt).first()

    def count_closed(self, strategy_id: int, since: datetime | None = None) -> int:
        with self._session() as session:
            stmt = select(func.count()).select_from(Trade).where(
                Trade.strategy_id == strategy_id, Trade.status == CLOSED
            )
            if since is not None:
                stmt = stmt.where(Trade.closed_at >= since)
            return session.exec(stmt).one()

    # ----- trade writes -------------------------------------------------

    def create_trade(self, **fields: Any) -> Trade:
        trade = Trade(**fields)
        with self._session() as session:
            session.add(trade)
            session.commit()
            session.refresh(trade)
        return trade

    def update_trade(self, trade_id: int, only_open: bool = True, **fields: Any) -> bool:
        """Atomically update one trade row. Returns False if nothing matched."""
        if not fields:
            return False
        stmt = update(Trade).where(Trade.id == trade_id)
        if only_open:
            stmt = stmt.where(Trade.status == OPEN)
        with self._session() as session:
            result = session.execute(stmt.values(**fields))
            session.commit()
        return result.rowcount == 1

    def close_trade(
        self,
        trade_id: int,
        *,
        exit_price: float | None,
        pnl: float,
        reason: str,
        **fields: Any,
    ) -> bool:
        """OPEN → CLOSED transition. False means another loop closed it first."""
        closed = self.update_trade(
            trade_id,
            status=CLOSED,
            exit_price=exit_price,
            pnl=pnl,
            close_reason=reason,
            closed_at=datetime.now(timezone.utc),
            **fields,
        )
        if not closed:
            logger.info(f"[trade {trade_id}] already closed, skipping {reason}")
        return closed

    def mark_error(self, trade_id: int, error: str) -> bool:
        return self.update_trade(trade_id, only_open=False, status="ERROR", error=error)

    # ----- events -------------------------------------------------------

    def log_event(
        self,
        action: str,
        message: str,
        level: str = "info",
        strategy_id: int | None = None,
        trade_id: int | None = None,
    ):
        with self._session() as session:
            session.add(EventLog(
                strategy_id=strategy_id,
                trade_id=trade_id,
                level=level,
                action=action,
                message=message,
            ))
            session.commit()

    # ----- reporting ----------------------------------------------------

    def trade_stats(self, strategy_id: int | None = None) -> dict:
        with self._session() as session:
            stmt = select(Trade)
            if strategy_id is not None:
                stmt = stmt.where(Trade.strategy_id == strategy_id)
            trades = session.exec(stmt).all()

        closed = [t for t in trades if t.status == CLOSED]
        wins = [t for t in closed if (t.pnl or 0) > 0]
        return {
            "total": len(trades),
            "open": sum(1 for t in trades if t.status == OPEN),
            "closed": len(closed),
            "errors": sum(1 for t in trades if t.status == "ERROR"),
            "wins": len(wins),
            "losses": sum(1 for t in closed if (t.pnl or 0) < 0),
            "win_rate": (len(wins) / len(closed) * 100) if closed else 0.0,
            "realized_pnl": sum(t.pnl or 0 for t in closed),
            "unrealized_pnl": sum(t.pnl or 0 for t in trades if t.status == OPEN),
        }
