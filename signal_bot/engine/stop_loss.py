"""Stop-loss monitor.

Per open trade, every tick:

* ratchet the stop toward profit as take-profit levels are crossed
  (break-even on the first, previous target on later ones);
* then track the stop itself: a position-attached stop is considered hit
  once the position is gone, an order-based stop once its order fills, and
  with no exchange stop at all the monitor compares the ticker to the stored
  stop price and closes the trade with a market order.
"""

import logging

from signal_bot.config import settings
from signal_bot.engine.monitor import TradeMonitor
from signal_bot.engine.pricing import (
    highest_crossed_level,
    improves_stop,
    ratchet_stop,
    stop_hit,
    stop_loss_price,
)
from signal_bot.models.strategy import Strategy
from signal_bot.models.trade import Trade
from signal_bot.services.exchange import ExchangeAdapter, ExchangeError
from signal_bot.services.protective import PositionLevel, SingleOrder, dump_state, load_state
from signal_bot.utils.constants import (
    DEAD_ORDER_STATUSES,
    ORDER_FILLED,
    PENDING_ORDER_STATUSES,
    STOP_LOSS,
)

logger = logging.getLogger(__name__)


class StopLossMonitor(TradeMonitor):
    name = "stop_loss"

    def __init__(self, *args, breakeven_offset_pct: float | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.breakeven_offset_pct = (
            settings.breakeven_offset_pct if breakeven_offset_pct is None else breakeven_offset_pct
        )

    async def check_trade(self, strategy: Strategy, adapter: ExchangeAdapter, trade: Trade) -> bool:
        await self.ratchet(strategy, adapter, trade)

        state = load_state(trade.stop_loss_order)
        tag = f"[trade {trade.id} {trade.symbol}]"

        if isinstance(state, PositionLevel):
            if await adapter.get_position(trade.symbol, trade.side) is not None:
                return False
            exit_price = await adapter.exit_price(trade.symbol)
            stop = trade.stop_loss_price or state.price
            if stop is not None and not stop_hit(trade.side, exit_price, stop):
                # Flat for some other reason; take-profit monitor or sync will close it
                return False
            await adapter.cancel_protective(trade.symbol, load_state(trade.take_profit_order))
            return self.record_close(trade, exit_price, STOP_LOSS)

        if isinstance(state, SingleOrder):
            status = await adapter.get_order_status(trade.symbol, state.order_id)
            if status == ORDER_FILLED:
                exit_price = await adapter.exit_price(trade.symbol)
                await adapter.cancel_protective(trade.symbol, load_state(trade.take_profit_order))
                return self.record_close(trade, exit_price, STOP_LOSS)
            if status in PENDING_ORDER_STATUSES:
                return False
            if status in DEAD_ORDER_STATUSES:
                logger.warning(f"{tag} stop order {state.order_id} {status}, falling back to price polling")
                self.ledger.update_trade(trade.id, stop_loss_order=None)
                trade.stop_loss_order = None

        return await self._check_price(strategy, adapter, trade)

    async def _check_price(self, strategy: Strategy, adapter: ExchangeAdapter, trade: Trade) -> bool:
        stop = trade.stop_loss_price
        if stop is None and strategy.stop_loss_pct:
            stop = stop_loss_price(trade.side, trade.entry_price, strategy.stop_loss_pct)
        if stop is None:
            return False

        price = await adapter.get_ticker(trade.symbol)
        if not stop_hit(trade.side, price, stop):
            return False

        logger.warning(f"[trade {trade.id} {trade.symbol}] stop {stop} hit at {price}, closing {trade.quantity}")
        return await self.close_remaining(adapter, trade, price, STOP_LOSS)

    async def ratchet(self, strategy: Strategy, adapter: ExchangeAdapter, trade: Trade) -> bool:
        """Move the stop forward past crossed take-profit levels. Never moves it back."""
        if not (strategy.move_sl_to_breakeven or strategy.break_again):
            return False
        levels = strategy.take_profit_levels()
        if not levels:
            return False

        position = await adapter.get_position(trade.symbol, trade.side)
        mark = position.mark_price if position and position.mark_price else await adapter.get_ticker(trade.symbol)
        crossed = max(
            highest_crossed_level(trade.side, trade.entry_price, mark, levels),
            trade.last_tp_level,
        )
        candidate = ratchet_stop(
            trade.side,
            trade.entry_price,
            crossed,
            levels,
            self.breakeven_offset_pct,
            strategy.move_sl_to_breakeven,
            strategy.break_again,
        )
        if candidate is None:
            return False

        price_str = await self.normalizer.price(adapter, trade.symbol, candidate)
        new_stop = float(price_str)
        if not improves_stop(trade.side, new_stop, trade.stop_loss_price):
            return False

        qty_str = await self.normalizer.quantity(adapter, trade.symbol, trade.quantity)
        try:
            state = await adapter.replace_stop_loss(
                trade.symbol, trade.side, qty_str, price_str, load_state(trade.stop_loss_order)
            )
        except ExchangeError as e:
            logger.error(f"[trade {trade.id} {trade.symbol}] moving stop to {price_str} failed: {e}")
            return False

        state_data = dump_state(state)
        if not self.ledger.update_trade(trade.id, stop_loss_price=new_stop, stop_loss_order=state_data):
            return False

        message = f"stop moved {trade.stop_loss_price} -> {new_stop} after TP{crossed} level (mark {mark})"
        logger.info(f"[trade {trade.id} {trade.symbol}] {message}")
        self.ledger.log_event(self.name, message, strategy_id=trade.strategy_id, trade_id=trade.id)
        trade.stop_loss_price = new_stop
        trade.stop_loss_order = state_data
        return True
