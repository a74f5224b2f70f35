"""Take-profit monitor.

Tracks a trade's targets in one of three ways depending on what was placed:

* ladder of partial orders: each filled leg adds its slice of P&L, the
  remaining size is re-read from the exchange position and the trade
  closes once that position is flat;
* single target order or position-attached target: the trade closes when
  it fills / the position disappears;
* nothing on the exchange: the ticker is compared to the strategy's TP
  levels and partial closes are sent as reduce-only market orders.
"""

import logging

from signal_bot.engine.monitor import TradeMonitor
from signal_bot.engine.pricing import (
    highest_crossed_level,
    slice_pnl,
    target_hit,
)
from signal_bot.models.strategy import Strategy
from signal_bot.models.trade import Trade
from signal_bot.services.exchange import ExchangeAdapter
from signal_bot.services.protective import (
    Ladder,
    PositionLevel,
    SingleOrder,
    dump_state,
    load_state,
)
from signal_bot.utils.constants import (
    DEAD_ORDER_STATUSES,
    ORDER_FILLED,
    QTY_EPSILON,
    TAKE_PROFIT,
    take_profit_reason,
)

logger = logging.getLogger(__name__)


class TakeProfitMonitor(TradeMonitor):
    name = "take_profit"

    async def check_trade(self, strategy: Strategy, adapter: ExchangeAdapter, trade: Trade) -> bool:
        state = load_state(trade.take_profit_order)
        tag = f"[trade {trade.id} {trade.symbol}]"

        if isinstance(state, PositionLevel):
            if await adapter.get_position(trade.symbol, trade.side) is not None:
                return False
            exit_price = await adapter.exit_price(trade.symbol)
            if state.price is not None and not target_hit(trade.side, exit_price, state.price):
                return False
            await adapter.cancel_protective(trade.symbol, load_state(trade.stop_loss_order))
            return self.record_close(trade, exit_price, TAKE_PROFIT)

        if isinstance(state, SingleOrder):
            status = await adapter.get_order_status(trade.symbol, state.order_id)
            if status == ORDER_FILLED:
                exit_price = await adapter.exit_price(trade.symbol)
                await adapter.cancel_protective(trade.symbol, load_state(trade.stop_loss_order))
                return self.record_close(trade, exit_price, TAKE_PROFIT)
            if status not in DEAD_ORDER_STATUSES:
                return False
            logger.warning(f"{tag} take-profit order {state.order_id} {status}, falling back to price polling")
            self.ledger.update_trade(trade.id, take_profit_order=None)
            trade.take_profit_order = None

        if isinstance(state, Ladder):
            return await self._check_ladder(strategy, adapter, trade, state)

        return await self._check_price(strategy, adapter, trade)

    async def _check_ladder(
        self,
        strategy: Strategy,
        adapter: ExchangeAdapter,
        trade: Trade,
        ladder: Ladder,
    ) -> bool:
        tag = f"[trade {trade.id} {trade.symbol}]"
        remaining = ladder
        realized = trade.realized_pnl
        last_level = trade.last_tp_level
        last_fill = None

        for leg in sorted(ladder.legs, key=lambda leg: leg.level):
            status = await adapter.get_order_status(trade.symbol, leg.order_id)
            if status == ORDER_FILLED:
                realized += slice_pnl(trade.side, trade.entry_price, leg.price, leg.quantity)
                last_level = max(last_level, leg.level)
                last_fill = leg.price
                remaining = remaining.without(leg.order_id)
                logger.info(f"{tag} TP{leg.level} filled: {leg.quantity} @ {leg.price}")
            elif status in DEAD_ORDER_STATUSES:
                remaining = remaining.without(leg.order_id)
                logger.warning(f"{tag} TP{leg.level} order {leg.order_id} {status}, dropping leg")

        if remaining == ladder:
            return False

        if last_fill is not None:
            # Position sync may already have written the post-fill size, so
            # the remote position is the only reliable remainder.
            position = await adapter.get_position(trade.symbol, trade.side)
            trade.realized_pnl = realized
            trade.last_tp_level = last_level
            if position is None:
                trade.quantity = 0.0
                await adapter.cancel_protective(trade.symbol, remaining)
                await adapter.cancel_protective(trade.symbol, load_state(trade.stop_loss_order))
                return self.record_close(trade, last_fill, take_profit_reason(last_level), last_tp_level=last_level)
            trade.quantity = position.size
            logger.info(f"{tag} remaining on exchange: {position.size}")

            if last_level >= self._final_level(strategy, ladder) and not remaining.legs:
                # Leftover from lot-step rounding
                return await self.close_remaining(
                    adapter, trade, last_fill, take_profit_reason(last_level), last_tp_level=last_level,
                )

        state_data = dump_state(remaining)
        pnl = trade.pnl
        if last_fill is not None:
            pnl = realized + slice_pnl(trade.side, trade.entry_price, last_fill, trade.quantity)
        self.ledger.update_trade(
            trade.id,
            quantity=trade.quantity,
            realized_pnl=realized,
            pnl=pnl,
            last_tp_level=last_level,
            take_profit_order=state_data,
        )
        trade.take_profit_order = state_data
        return False


    async def _check_price(self, strategy: Strategy, adapter: ExchangeAdapter, trade: Trade) -> bool:
        levels = strategy.take_profit_levels()
        if not levels:
            return False
        tag = f"[trade {trade.id} {trade.symbol}]"
        final_level = levels[-1][0]

        price = await adapter.get_ticker(trade.symbol)
        if trade.last_tp_level >= final_level:
            # Every level already taken; only a remainder is left
            return await self.close_remaining(
                adapter, trade, price, take_profit_reason(trade.last_tp_level),
            )

        pending = [lvl for lvl in levels if lvl[0] > trade.last_tp_level]
        crossed = highest_crossed_level(trade.side, trade.entry_price, price, pending)
        if not crossed:
            return False

        if crossed == final_level:
            logger.info(f"{tag} TP{crossed} reached at {price}, closing remaining {trade.quantity}")
            return await self.close_remaining(
                adapter, trade, price, take_profit_reason(crossed), last_tp_level=crossed,
            )

        qty_pct = next(q for level, _, q in levels if level == crossed)
        qty_str = await self.normalizer.quantity(adapter, trade.symbol, trade.quantity * qty_pct / 100)
        close_qty = float(qty_str)
        if close_qty >= trade.quantity - QTY_EPSILON:
            return await self.close_remaining(
                adapter, trade, price, take_profit_reason(crossed), last_tp_level=crossed,
            )

        result = await adapter.close_position(trade.symbol, trade.side, qty_str)
        if not result.success:
            logger.warning(f"{tag} TP{crossed} partial close of {qty_str} failed: {result.error}")
            return False

        fill = result.filled_price or price
        realized = trade.realized_pnl + slice_pnl(trade.side, trade.entry_price, fill, close_qty)
        remaining = trade.quantity - close_qty
        self.ledger.update_trade(
            trade.id,
            quantity=remaining,
            realized_pnl=realized,
            pnl=realized + slice_pnl(trade.side, trade.entry_price, fill, remaining),
            last_tp_level=crossed,
        )
        message = f"TP{crossed} closed {close_qty} @ {fill}, remaining {remaining} (realized {realized:.4f})"
        logger.info(f"{tag} {message}")
        self.ledger.log_event(self.name, message, strategy_id=trade.strategy_id, trade_id=trade.id)
        return False

    def _final_level(self, strategy: Strategy, ladder: Ladder) -> int:
        levels = strategy.take_profit_levels()
        if levels:
            return levels[-1][0]
        return max((leg.level for leg in ladder.legs), default=0)
