"""Signal → order execution.

Turns one incoming signal into an entry order plus its protective legs:

1. Policy checks (inactive, paused, single-cycle already used).
2. Safety gate: a strategy with neither testnet nor real-account execution
   enabled only ever produces an ERROR trade, with no exchange calls.
3. Direction filter and same-symbol conflicts (averaging, one-way flip).
   In one-way mode the opposite side is closed here, before the new entry
   is priced, so a rejected entry never leaves the old side open.
4. Entry price (next-candle offset) and quantity resolution.
5. Minimum notional check.
6. Pre-save the trade as OPEN so Position Sync reconciles into it, then
   configure margin/leverage, place the entry and its stop/targets.

Anything the exchange rejects along the way leaves the trade in ERROR with
the upstream code and message.
"""

import asyncio
import logging

from signal_bot.config import settings
from signal_bot.engine.pricing import (
    next_candle_price,
    slice_pnl,
    stop_loss_price,
    take_profit_price,
)
from signal_bot.models.strategy import Strategy
from signal_bot.models.trade import Trade
from signal_bot.schemas.signal import Signal, SignalResult
from signal_bot.services.exchange import ExchangeAdapter, ExchangeError, build_adapter
from signal_bot.services.protective import Ladder, LadderLeg, dump_state
from signal_bot.services.symbol_rules import Normalizer, SymbolRulesCache
from signal_bot.services.trade_ledger import TradeLedger
from signal_bot.utils.constants import ERROR, LIMIT, MARKET, OPEN, SIGNAL

logger = logging.getLogger(__name__)

SAFETY_GATE_MESSAGE = "Strategy must have either testnet or real account enabled"
DUPLICATE_MESSAGE = "Position already open (averaging disabled)"


class StrategyNotFoundError(LookupError):
    pass


def normalize_symbol(symbol: str) -> str:
    """``BTC/USDT``, ``BTC-USDT`` and ``BTCUSDT.P`` all become ``BTCUSDT``."""
    text = symbol.strip().upper()
    if text.endswith(".P"):
        text = text[:-2]
    return text.split(":")[0].replace("/", "").replace("-", "")


class OrderExecutor:
    def __init__(
        self,
        ledger: TradeLedger,
        adapter_factory=build_adapter,
        normalizer: Normalizer | None = None,
        settle_seconds: float | None = None,
        min_notional: float | None = None,
    ):
        self.ledger = ledger
        self.adapter_factory = adapter_factory
        self.normalizer = normalizer or Normalizer(SymbolRulesCache())
        self.settle_seconds = settings.flip_settle_seconds if settle_seconds is None else settle_seconds
        self.min_notional = settings.min_notional if min_notional is None else min_notional

    async def process_signal(self, signal: Signal) -> SignalResult:
        strategy = self.ledger.get_strategy(signal.strategy_id)
        if strategy is None:
            raise StrategyNotFoundError(f"Strategy {signal.strategy_id} not found")

        tag = f"[strategy {strategy.id}]"
        symbol = normalize_symbol(signal.symbol)
        side = signal.action
        logger.info(f"{tag} Signal {side} {symbol} type={signal.order_type} price={signal.price}")

        rejection = self._policy_rejection(strategy)
        if rejection:
            logger.info(f"{tag} Skipping signal: {rejection}")
            return SignalResult(status="skipped", message=rejection)

        if not strategy.execution_enabled:
            trade = self._record_error(
                strategy, symbol, side, signal.order_type,
                quantity=signal.quantity or strategy.default_quantity,
                price=signal.price or 0.0,
                error=SAFETY_GATE_MESSAGE,
            )
            logger.warning(f"{tag} {SAFETY_GATE_MESSAGE}; trade {trade.id} recorded as ERROR")
            return SignalResult(status="error", message=SAFETY_GATE_MESSAGE, trade_id=trade.id)

        open_trades = self.ledger.find_open(strategy.id, symbol)
        same_side = [t for t in open_trades if t.side == side]
        to_flip = [t for t in open_trades if t.side != side] if not strategy.hedge_mode else []

        if not strategy.allows_side(side):
            message = f"Direction {strategy.direction} does not allow {side} entries"
            if to_flip:
                adapter = self.adapter_factory(strategy)
                try:
                    error = await self._close_opposite(strategy, adapter, symbol, to_flip)
                finally:
                    await adapter.close()
                if error:
                    return SignalResult(status="error", message=error)
                message += f"; closed {len(to_flip)} opposite trade(s)"
            logger.info(f"{tag} {message}")
            return SignalResult(status="skipped", message=message)

        if same_side and not strategy.allow_averaging:
            logger.info(f"{tag} {DUPLICATE_MESSAGE} for {symbol} {side}")
            return SignalResult(status="skipped", message=DUPLICATE_MESSAGE)

        adapter = self.adapter_factory(strategy)
        try:
            if to_flip:
                error = await self._close_opposite(strategy, adapter, symbol, to_flip)
                if error:
                    return SignalResult(status="error", message=error)
            return await self._execute(strategy, signal, adapter, symbol, side, bool(same_side))
        finally:
            await adapter.close()

    def _policy_rejection(self, strategy: Strategy) -> str | None:
        if not strategy.is_active:
            return "Strategy is inactive"
        if strategy.pause_new_orders:
            return "Strategy is paused (new orders disabled)"
        if strategy.trading_mode == "SINGLE":
            if self.ledger.count_closed(strategy.id, since=strategy.cycle_reset_at) > 0:
                return "Single-cycle strategy already completed a trade"
        return None

    async def _execute(
        self,
        strategy: Strategy,
        signal: Signal,
        adapter: ExchangeAdapter,
        symbol: str,
        side: str,
        averaging: bool,
    ) -> SignalResult:
        tag = f"[strategy {strategy.id}]"
        order_type = signal.order_type
        price = signal.price
        if strategy.next_candle_entry and strategy.next_candle_pct > 0 and price:
            price = next_candle_price(side, price, strategy.next_candle_pct)
            order_type = LIMIT
            logger.info(f"{tag} Next-candle entry: LIMIT at {price} ({strategy.next_candle_pct}% offset)")
        elif order_type == LIMIT and price is None:
            order_type = MARKET

        trade: Trade | None = None
        quantity = signal.quantity or strategy.default_quantity
        try:
            reference_price = price or await adapter.get_ticker(symbol)
            quantity, anchor = await self._resolve_quantity(strategy, signal, adapter, reference_price)

            notional = quantity * reference_price
            if notional < self.min_notional:
                message = f"Notional too low (< {self.min_notional:g} USDT)"
                trade = self._record_error(
                    strategy, symbol, side, order_type, quantity, reference_price,
                    f"{message}: {notional:.2f} USDT",
                )
                logger.warning(f"{tag} {message}: {quantity} {symbol} ≈ {notional:.2f} USDT")
                return SignalResult(status="error", message=message, trade_id=trade.id)

            trade = self.ledger.create_trade(
                strategy_id=strategy.id,
                symbol=symbol,
                side=side,
                type=order_type,
                entry_price=reference_price,
                quantity=quantity,
                initial_quantity=anchor,
                status=OPEN,
                is_from_averaging=averaging,
            )

            await self._configure(strategy, adapter, symbol)
            qty_str = await self.normalizer.quantity(adapter, symbol, quantity)
            price_str = await self.normalizer.price(adapter, symbol, price) if order_type == LIMIT else None

            result = await adapter.place_order(symbol, side, order_type, qty_str, price_str)
            if not result.success:
                raise ExchangeError(result.error or "entry order rejected")

            entry_price = result.filled_price or price or reference_price
            filled_qty = float(qty_str)
            fields = {
                "entry_price": entry_price,
                "quantity": filled_qty,
                "exchange_order_id": result.order_id,
            }
            if anchor is not None:
                fields["initial_quantity"] = filled_qty
            fields.update(await self._attach_protection(
                strategy, signal, adapter, symbol, side, filled_qty, entry_price,
            ))
            self.ledger.update_trade(trade.id, **fields)

        except ExchangeError as e:
            error = str(e)
            if trade is None:
                trade = self._record_error(strategy, symbol, side, order_type, quantity, price or 0.0, error)
            else:
                self.ledger.mark_error(trade.id, error)
            logger.error(f"{tag} Order execution failed for {symbol} {side}: {error}")
            self.ledger.log_event(
                "order_execution", f"{symbol} {side} failed: {error}", level="error",
                strategy_id=strategy.id, trade_id=trade.id,
            )
            return SignalResult(status="error", message=error, trade_id=trade.id)

        logger.info(
            f"{tag} Opened trade {trade.id}: {side} {filled_qty} {symbol} @ {entry_price} "
            f"(order {result.order_id})"
        )
        return SignalResult(
            status="success",
            message=f"{side} {filled_qty} {symbol} @ {entry_price}",
            trade_id=trade.id,
        )

    async def _resolve_quantity(
        self,
        strategy: Strategy,
        signal: Signal,
        adapter: ExchangeAdapter,
        price: float,
    ) -> tuple[float, float | None]:
        """Return (quantity, initial-quantity anchor to persist or None)."""
        tag = f"[strategy {strategy.id}]"
        if signal.quantity:
            return signal.quantity, None

        if signal.account_percentage:
            balance = await adapter.get_balance()
            qty = balance * signal.account_percentage / 100 / price
            logger.info(f"{tag} {signal.account_percentage}% of {balance:.2f} USDT -> {qty}")
            return qty, None

        if strategy.use_account_pct and strategy.account_pct > 0:
            if not strategy.enable_compound:
                previous = self.ledger.find_latest_with_initial_quantity(strategy.id)
                if previous is not None:
                    logger.info(f"{tag} Compounding off: reusing first-cycle quantity {previous.initial_quantity}")
                    return previous.initial_quantity, None
            balance = await adapter.get_balance()
            qty = balance * strategy.account_pct / 100 / price
            logger.info(f"{tag} Strategy {strategy.account_pct}% of {balance:.2f} USDT -> {qty}")
            return qty, (qty if not strategy.enable_compound else None)

        return strategy.default_quantity, None

    async def _configure(self, strategy: Strategy, adapter: ExchangeAdapter, symbol: str):
        try:
            await adapter.set_margin_mode(symbol, strategy.margin_mode, strategy.leverage)
        except ExchangeError as e:
            logger.warning(
                f"[strategy {strategy.id}] Could not set {strategy.margin_mode} x{strategy.leverage} on {symbol}: {e}"
            )

    async def _close_opposite(
        self,
        strategy: Strategy,
        adapter: ExchangeAdapter,
        symbol: str,
        trades: list[Trade],
    ) -> str | None:
        """Flatten the opposite side before a one-way flip. Returns an error message on failure."""
        tag = f"[strategy {strategy.id}]"
        try:
            await adapter.cancel_all_orders(symbol)
            for trade in trades:
                try:
                    position = await adapter.get_position(symbol, trade.side)
                    size = position.size if position else 0.0
                except ExchangeError as e:
                    logger.warning(f"{tag} Position lookup failed, using local quantity {trade.quantity}: {e}")
                    size = trade.quantity

                if size > 0:
                    qty_str = await self.normalizer.quantity(adapter, symbol, size)
                    result = await adapter.close_position(symbol, trade.side, qty_str)
                    if not result.success:
                        raise ExchangeError(result.error or "close order rejected")
                else:
                    logger.info(f"{tag} {trade.side} position on {symbol} already flat")

                exit_price = await adapter.get_ticker(symbol)
                pnl = trade.realized_pnl + slice_pnl(trade.side, trade.entry_price, exit_price, trade.quantity)
                self.ledger.close_trade(
                    trade.id,
                    exit_price=exit_price,
                    pnl=pnl,
                    reason=SIGNAL,
                    quantity=0.0,
                    stop_loss_order=None,
                    take_profit_order=None,
                )
                logger.info(f"{tag} Closed {trade.side} trade {trade.id} on {symbol} @ {exit_price} (pnl={pnl:.4f})")
        except ExchangeError as e:
            message = f"Failed to close opposite position: {e}"
            logger.error(f"{tag} {message}")
            return message

        if self.settle_seconds > 0:
            await asyncio.sleep(self.settle_seconds)
        return None

    async def _attach_protection(
        self,
        strategy: Strategy,
        signal: Signal,
        adapter: ExchangeAdapter,
        symbol: str,
        side: str,
        quantity: float,
        entry_price: float,
    ) -> dict:
        """Place stop-loss and take-profit legs. Failures are logged and left to the monitors."""
        tag = f"[strategy {strategy.id}]"
        fields: dict = {}
        qty_str = await self.normalizer.quantity(adapter, symbol, quantity)

        stop = signal.stop_loss
        if stop is None and strategy.stop_loss_pct:
            stop = stop_loss_price(side, entry_price, strategy.stop_loss_pct)
        if stop is not None:
            stop_str = await self.normalizer.price(adapter, symbol, stop)
            fields["stop_loss_price"] = float(stop_str)
            try:
                state = await adapter.place_stop_loss(symbol, side, qty_str, stop_str)
                fields["stop_loss_order"] = dump_state(state)
            except ExchangeError as e:
                logger.error(f"{tag} Stop-loss at {stop_str} on {symbol} failed, monitor will poll price: {e}")

        if signal.take_profit is not None:
            target_str = await self.normalizer.price(adapter, symbol, signal.take_profit)
            try:
                state = await adapter.place_take_profit(symbol, side, qty_str, target_str)
                fields["take_profit_order"] = dump_state(state)
            except ExchangeError as e:
                logger.error(f"{tag} Take-profit at {target_str} on {symbol} failed: {e}")
            return fields

        legs = []
        for level, pct, qty_pct in strategy.take_profit_levels():
            leg_qty = await self.normalizer.quantity(adapter, symbol, quantity * qty_pct / 100)
            leg_price = await self.normalizer.price(adapter, symbol, take_profit_price(side, entry_price, pct))
            try:
                order_id = await adapter.place_take_profit_leg(symbol, side, leg_qty, leg_price)
            except ExchangeError as e:
                logger.error(f"{tag} TP{level} at {leg_price} on {symbol} failed: {e}")
                continue
            legs.append(LadderLeg(level=level, order_id=order_id, quantity=float(leg_qty), price=float(leg_price)))
        if legs:
            fields["take_profit_order"] = dump_state(Ladder(tuple(legs)))
        return fields

    def _record_error(
        self,
        strategy: Strategy,
        symbol: str,
        side: str,
        order_type: str,
        quantity: float,
        price: float,
        error: str,
    ) -> Trade:
        return self.ledger.create_trade(
            strategy_id=strategy.id,
            symbol=symbol,
            side=side,
            type=order_type,
            entry_price=price,
            quantity=quantity,
            status=ERROR,
            error=error,
        )
