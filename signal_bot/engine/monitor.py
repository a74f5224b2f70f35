"""Shared per-trade polling loop for the stop-loss and take-profit monitors."""

import logging

from signal_bot.engine.pricing import slice_pnl
from signal_bot.models.strategy import Strategy
from signal_bot.models.trade import Trade
from signal_bot.services.exchange import AdapterPool, ExchangeAdapter, build_adapter
from signal_bot.services.protective import load_state
from signal_bot.services.symbol_rules import Normalizer, SymbolRulesCache
from signal_bot.services.trade_ledger import TradeLedger
from signal_bot.utils.constants import OPEN

logger = logging.getLogger(__name__)


class TradeMonitor:
    """Walks every OPEN trade once per tick and hands it to ``check_trade``."""

    name = "monitor"

    def __init__(
        self,
        ledger: TradeLedger,
        adapter_factory=build_adapter,
        normalizer: Normalizer | None = None,
    ):
        self.ledger = ledger
        self.adapter_factory = adapter_factory
        self.normalizer = normalizer or Normalizer(SymbolRulesCache())

    async def run(self) -> int:
        """One tick. Returns the number of trades closed."""
        trades = self.ledger.find_by_status(OPEN)
        if not trades:
            return 0

        strategies: dict[int, Strategy | None] = {}
        closed = 0
        async with AdapterPool(self.adapter_factory) as pool:
            for trade in trades:
                if trade.strategy_id not in strategies:
                    strategies[trade.strategy_id] = self.ledger.get_strategy(trade.strategy_id)
                strategy = strategies[trade.strategy_id]
                if strategy is None or not strategy.has_credentials or not strategy.execution_enabled:
                    continue
                try:
                    if await self.check_trade(strategy, pool.get(strategy), trade):
                        closed += 1
                except Exception as e:
                    logger.error(f"[trade {trade.id} {trade.symbol}] {self.name} check failed: {e}", exc_info=True)
        return closed

    async def check_trade(self, strategy: Strategy, adapter: ExchangeAdapter, trade: Trade) -> bool:
        raise NotImplementedError

    async def close_remaining(
        self,
        adapter: ExchangeAdapter,
        trade: Trade,
        price: float,
        reason: str,
        **fields,
    ) -> bool:
        """Market-close whatever is left of the trade and record the closure."""
        qty_str = await self.normalizer.quantity(adapter, trade.symbol, trade.quantity)
        result = await adapter.close_position(trade.symbol, trade.side, qty_str)
        if not result.success:
            logger.warning(
                f"[trade {trade.id} {trade.symbol}] {reason} close of {qty_str} failed: {result.error}"
            )
            return False
        await self.cancel_legs(adapter, trade)
        return self.record_close(trade, result.filled_price or price, reason, **fields)

    async def cancel_legs(self, adapter: ExchangeAdapter, trade: Trade):
        await adapter.cancel_protective(trade.symbol, load_state(trade.stop_loss_order))
        await adapter.cancel_protective(trade.symbol, load_state(trade.take_profit_order))

    def record_close(self, trade: Trade, exit_price: float, reason: str, **fields) -> bool:
        """OPEN → CLOSED with the remaining quantity valued at ``exit_price``."""
        pnl = trade.realized_pnl + slice_pnl(trade.side, trade.entry_price, exit_price, trade.quantity)
        closed = self.ledger.close_trade(
            trade.id,
            exit_price=exit_price,
            pnl=pnl,
            reason=reason,
            quantity=0.0,
            realized_pnl=pnl,
            stop_loss_order=None,
            take_profit_order=None,
            **fields,
        )
        if closed:
            message = f"{trade.side} {trade.symbol} closed by {reason} @ {exit_price} (pnl={pnl:.4f})"
            logger.info(f"[trade {trade.id}] {message}")
            self.ledger.log_event(self.name, message, strategy_id=trade.strategy_id, trade_id=trade.id)
        return closed
