"""Position sync — reconcile open trades with exchange positions.

The exchange is the source of truth for size, entry price and P&L; the local
trade ledger is brought in line with it on every run.

Scenarios handled:
1. Exchange position with one matching OPEN trade → refresh quantity/entry/pnl
2. Exchange position with several matching OPEN trades → keep the oldest,
   close the others as zero-pnl MANUAL duplicates
3. Exchange position on the opposite side of a local trade → correct the side
4. Exchange position with no local trade → logged as an orphan, never imported
5. OPEN trade with no exchange position → close as MANUAL at the last fill
   price, unless it is a resting LIMIT entry or was created moments ago
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from signal_bot.config import settings
from signal_bot.engine.pricing import slice_pnl
from signal_bot.models.strategy import Strategy
from signal_bot.models.trade import Trade
from signal_bot.services.exchange import AdapterPool, ExchangeAdapter, Position, build_adapter
from signal_bot.services.protective import load_state
from signal_bot.services.trade_ledger import TradeLedger
from signal_bot.utils.constants import LIMIT, MANUAL, PENDING_ORDER_STATUSES, opposite_side

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    synced: int = 0
    closed: int = 0
    imported: int = 0
    consolidated: int = 0

    def as_dict(self) -> dict:
        return asdict(self)

    @property
    def changed(self) -> bool:
        return any(asdict(self).values())


def _differs(a: float | None, b: float | None) -> bool:
    if a is None or b is None:
        return a != b
    return abs(a - b) > 1e-9 * max(1.0, abs(b))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PositionSync:
    def __init__(
        self,
        ledger: TradeLedger,
        adapter_factory=build_adapter,
        grace_seconds: float | None = None,
    ):
        self.ledger = ledger
        self.adapter_factory = adapter_factory
        self.grace_seconds = settings.sync_grace_seconds if grace_seconds is None else grace_seconds
        self.last_sync_time: datetime | None = None
        self.last_result: SyncResult | None = None
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def status(self) -> dict:
        return {
            "in_progress": self.in_progress,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "last_result": self.last_result.as_dict() if self.last_result else None,
        }

    async def run(self) -> SyncResult | None:
        """Sync every active strategy. Returns None if a run is already in flight."""
        if self._lock.locked():
            logger.warning("Position sync: previous run still in progress, skipping")
            return None

        async with self._lock:
            result = SyncResult()
            strategies = self.ledger.list_active_strategies()
            async with AdapterPool(self.adapter_factory) as pool:
                for strategy in strategies:
                    try:
                        await self._sync_strategy(strategy, pool.get(strategy), result)
                    except Exception as e:
                        logger.error(f"Position sync: strategy {strategy.id} failed: {e}", exc_info=True)

            self.last_sync_time = datetime.now(timezone.utc)
            self.last_result = result
            if result.changed:
                logger.info(f"Position sync complete: {result.as_dict()}")
            return result

    async def _sync_strategy(self, strategy: Strategy, adapter: ExchangeAdapter, result: SyncResult):
        positions = await adapter.get_positions()
        remote: dict[tuple[str, str], Position] = {
            (p.symbol, p.side): p for p in positions if p.size > 0
        }

        for (symbol, side), position in remote.items():
            matches = self.ledger.find_open(strategy.id, symbol, side)
            if not matches:
                corrected = self._correct_side(strategy, position, remote)
                if corrected is None:
                    logger.info(
                        f"Position sync: [strategy {strategy.id}] orphan {side} {position.size} {symbol} "
                        f"on exchange with no local trade, not importing"
                    )
                    continue
                matches = [corrected]

            if len(matches) == 1:
                if self._apply_snapshot(matches[0], position):
                    result.synced += 1
            else:
                await self._consolidate(strategy, adapter, position, matches, result)

        # Second pass: rows written by order execution while the first pass ran
        for (symbol, side), position in remote.items():
            matches = self.ledger.find_open(strategy.id, symbol, side)
            if len(matches) > 1:
                await self._consolidate(strategy, adapter, position, matches, result)

        for trade in self.ledger.find_open(strategy.id):
            if (trade.symbol, trade.side) in remote:
                continue
            if self._too_recent(trade):
                continue
            if trade.type == LIMIT and trade.exchange_order_id:
                status = await adapter.get_order_status(trade.symbol, trade.exchange_order_id)
                if status is None or status in PENDING_ORDER_STATUSES:
                    logger.debug(f"Position sync: trade {trade.id} LIMIT entry not active yet ({status})")
                    continue
            if await self._close_as_manual(strategy, adapter, trade):
                result.closed += 1

    def _too_recent(self, trade: Trade) -> bool:
        age = datetime.now(timezone.utc) - _as_utc(trade.created_at)
        return age < timedelta(seconds=self.grace_seconds)

    def _apply_snapshot(self, trade: Trade, position: Position) -> bool:
        """Overwrite size/entry/pnl from the exchange. Returns True if anything changed."""
        fields = {}
        if _differs(trade.quantity, position.size):
            fields["quantity"] = position.size
        if position.entry_price > 0 and _differs(trade.entry_price, position.entry_price):
            fields["entry_price"] = position.entry_price
        pnl = trade.realized_pnl + position.unrealized_pnl
        if _differs(trade.pnl, pnl):
            fields["pnl"] = pnl
        if not fields:
            return False
        return self.ledger.update_trade(trade.id, **fields)

    def _correct_side(
        self,
        strategy: Strategy,
        position: Position,
        remote: dict[tuple[str, str], Position],
    ) -> Trade | None:
        """Adopt a local trade recorded on the wrong side of this position."""
        wrong_side = opposite_side(position.side)
        if (position.symbol, wrong_side) in remote:
            return None
        candidates = self.ledger.find_open(strategy.id, position.symbol, wrong_side)
        if not candidates:
            return None

        trade = candidates[0]
        if not self.ledger.update_trade(trade.id, side=position.side):
            return None
        message = (
            f"Trade {trade.id} {position.symbol} recorded as {wrong_side} but exchange "
            f"holds {position.side}; side corrected"
        )
        logger.warning(f"Position sync: [strategy {strategy.id}] {message}")
        self.ledger.log_event("position_sync", message, level="warning",
                              strategy_id=strategy.id, trade_id=trade.id)
        trade.side = position.side
        return trade

    async def _consolidate(
        self,
        strategy: Strategy,
        adapter: ExchangeAdapter,
        position: Position,
        matches: list[Trade],
        result: SyncResult,
    ):
        primary, *duplicates = matches
        if self._apply_snapshot(primary, position):
            result.synced += 1

        for dup in duplicates:
            await adapter.cancel_protective(dup.symbol, load_state(dup.stop_loss_order))
            await adapter.cancel_protective(dup.symbol, load_state(dup.take_profit_order))
            closed = self.ledger.close_trade(
                dup.id,
                exit_price=dup.entry_price,
                pnl=0.0,
                reason=MANUAL,
                quantity=0.0,
                realized_pnl=0.0,
                stop_loss_order=None,
                take_profit_order=None,
            )
            if closed:
                result.consolidated += 1

        message = (
            f"Consolidated {len(duplicates)} duplicate {position.side} {position.symbol} "
            f"trade(s) into trade {primary.id}"
        )
        logger.warning(f"Position sync: [strategy {strategy.id}] {message}")
        self.ledger.log_event("position_sync", message, level="warning",
                              strategy_id=strategy.id, trade_id=primary.id)

    async def _close_as_manual(self, strategy: Strategy, adapter: ExchangeAdapter, trade: Trade) -> bool:
        await adapter.cancel_protective(trade.symbol, load_state(trade.stop_loss_order))
        await adapter.cancel_protective(trade.symbol, load_state(trade.take_profit_order))

        exit_price = await adapter.exit_price(trade.symbol)
        pnl = trade.realized_pnl + slice_pnl(trade.side, trade.entry_price, exit_price, trade.quantity)
        closed = self.ledger.close_trade(
            trade.id,
            exit_price=exit_price,
            pnl=pnl,
            reason=MANUAL,
            quantity=0.0,
            stop_loss_order=None,
            take_profit_order=None,
        )
        if closed:
            message = (
                f"Trade {trade.id} {trade.side} {trade.symbol} has no exchange position; "
                f"closed as MANUAL @ {exit_price} (pnl={pnl:.4f})"
            )
            logger.warning(f"Position sync: [strategy {strategy.id}] {message}")
            self.ledger.log_event("position_sync", message, level="warning",
                                  strategy_id=strategy.id, trade_id=trade.id)
        return closed
