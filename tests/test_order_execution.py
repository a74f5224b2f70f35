"""Tests for signal → order execution: gating, sizing, flips and protective legs."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import Session

from signal_bot.engine.order_execution import (
    DUPLICATE_MESSAGE,
    SAFETY_GATE_MESSAGE,
    OrderExecutor,
    StrategyNotFoundError,
    normalize_symbol,
)
from signal_bot.schemas.signal import Signal
from signal_bot.services.exchange import ExchangeError
from signal_bot.services.protective import Ladder, SingleOrder, load_state
from signal_bot.utils.constants import BUY, CLOSED, ERROR, MANUAL, OPEN, SELL, SIGNAL


def _signal(strategy, action=BUY, **kwargs) -> Signal:
    return Signal(strategy_id=strategy.id, symbol="BTCUSDT", action=action, **kwargs)


@pytest.fixture
def executor(ledger, factory, normalizer):
    return OrderExecutor(ledger, factory, normalizer, settle_seconds=0, min_notional=10)


# ---------------------------------------------------------------------------
# 1. Symbol normalization
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw, expected", [
    ("BTCUSDT", "BTCUSDT"),
    ("btcusdt.p", "BTCUSDT"),
    ("BTC/USDT", "BTCUSDT"),
    ("BTC/USDT:USDT", "BTCUSDT"),
    (" eth-usdt ", "ETHUSDT"),
])
def test_normalize_symbol(raw, expected):
    assert normalize_symbol(raw) == expected


# ---------------------------------------------------------------------------
# 2. Gating: unknown strategy, policy, safety gate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_strategy_raises(executor):
    with pytest.raises(StrategyNotFoundError):
        await executor.process_signal(Signal(strategy_id=999, symbol="BTCUSDT", action=BUY))


@pytest.mark.asyncio
async def test_safety_gate_records_error_without_exchange_calls(ledger, normalizer, make_strategy):
    strategy = make_strategy(is_testnet=False, is_real_account=False)
    factory = MagicMock()
    executor = OrderExecutor(ledger, factory, normalizer, settle_seconds=0)

    result = await executor.process_signal(_signal(strategy, quantity=0.01))

    assert result.status == "error"
    assert result.message == SAFETY_GATE_MESSAGE
    factory.assert_not_called()
    trade = ledger.get_trade(result.trade_id)
    assert trade.status == ERROR
    assert trade.error == SAFETY_GATE_MESSAGE


@pytest.mark.asyncio
async def test_paused_strategy_is_skipped(executor, adapter, make_strategy):
    strategy = make_strategy(pause_new_orders=True)
    result = await executor.process_signal(_signal(strategy, quantity=0.01))
    assert result.status == "skipped"
    assert adapter.orders == []


@pytest.mark.asyncio
async def test_single_mode_blocks_after_closed_trade_until_reset(
    executor, ledger, adapter, make_strategy, make_trade
):
    strategy = make_strategy(trading_mode="SINGLE")
    done = make_trade(strategy)
    ledger.close_trade(done.id, exit_price=50500.0, pnl=5.0, reason=MANUAL)

    blocked = await executor.process_signal(_signal(strategy, quantity=0.01))
    assert blocked.status == "skipped"
    assert "Single-cycle" in blocked.message

    assert adapter.orders == []

    strategy.cycle_reset_at = datetime.now(timezone.utc)
    with Session(ledger.engine, expire_on_commit=False) as session:
        session.add(strategy)
        session.commit()

    allowed = await executor.process_signal(_signal(strategy, quantity=0.01))
    assert allowed.status == "success"


# ---------------------------------------------------------------------------
# 3. Entry placement and protective legs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_market_entry_places_stop_and_ladder(executor, ledger, adapter, make_strategy):
    strategy = make_strategy(stop_loss_pct=2.0, take_profit_pct_1=1.0, take_profit_pct_2=2.0)

    result = await executor.process_signal(_signal(strategy, quantity=0.01))

    assert result.status == "success"
    trade = ledger.get_trade(result.trade_id)
    assert trade.status == OPEN
    assert trade.quantity == pytest.approx(0.01)
    assert trade.entry_price == 50000.0
    assert trade.exchange_order_id == "ord-1"
    assert ("margin", "BTCUSDT", "ISOLATED", 10) in adapter.margin_calls

    entry = adapter.orders[0]
    assert entry["side"] == BUY and entry["type"] == "MARKET" and not entry["reduce_only"]
    assert float(entry["quantity"]) == pytest.approx(0.01)

    assert trade.stop_loss_price == pytest.approx(49000.0)
    assert isinstance(load_state(trade.stop_loss_order), SingleOrder)

    ladder = load_state(trade.take_profit_order)
    assert isinstance(ladder, Ladder)
    assert [leg.level for leg in ladder.legs] == [1, 2]
    assert [leg.price for leg in ladder.legs] == [pytest.approx(50500.0), pytest.approx(51000.0)]
    assert all(leg.quantity == pytest.approx(0.003) for leg in ladder.legs)


@pytest.mark.asyncio
async def test_signal_take_profit_replaces_ladder(executor, ledger, adapter, make_strategy):
    strategy = make_strategy(take_profit_pct_1=1.0)

    result = await executor.process_signal(
        _signal(strategy, quantity=0.01, stop_loss=48000, take_profit=53000)
    )

    trade = ledger.get_trade(result.trade_id)
    assert trade.stop_loss_price == 48000.0
    assert isinstance(load_state(trade.take_profit_order), SingleOrder)
    assert [t["price"] for t in adapter.targets] == ["53000.0"]


@pytest.mark.asyncio
async def test_notional_too_low_records_error(executor, ledger, adapter, make_strategy):
    strategy = make_strategy()

    result = await executor.process_signal(_signal(strategy, quantity=0.0001))

    assert result.status == "error"
    assert result.message == "Notional too low (< 10 USDT)"
    assert ledger.get_trade(result.trade_id).status == ERROR
    assert adapter.orders == []


@pytest.mark.asyncio
async def test_rejected_entry_marks_trade_error(executor, ledger, adapter, make_strategy):
    strategy = make_strategy()
    adapter.entry_error = "[-2019] Margin is insufficient."

    result = await executor.process_signal(_signal(strategy, quantity=0.01))

    assert result.status == "error"
    assert "-2019" in result.message
    trade = ledger.get_trade(result.trade_id)
    assert trade.status == ERROR
    assert "Margin is insufficient" in trade.error
    assert ledger.find_open(strategy.id) == []


@pytest.mark.asyncio
async def test_next_candle_entry_becomes_offset_limit(executor, ledger, adapter, make_strategy):
    strategy = make_strategy(next_candle_entry=True, next_candle_pct=1.0)

    result = await executor.process_signal(_signal(strategy, quantity=0.01, price=50000))

    entry = adapter.orders[0]
    assert entry["type"] == "LIMIT"
    assert entry["price"] == "49500.0"
    trade = ledger.get_trade(result.trade_id)
    assert trade.type == "LIMIT"
    assert trade.entry_price == pytest.approx(49500.0)


# ---------------------------------------------------------------------------
# 4. Same-symbol conflicts: duplicates, averaging, one-way flips
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_duplicate_same_side_is_skipped(ledger, normalizer, adapter, make_strategy, make_trade):
    strategy = make_strategy()
    make_trade(strategy)
    factory = MagicMock(return_value=adapter)
    executor = OrderExecutor(ledger, factory, normalizer, settle_seconds=0)

    result = await executor.process_signal(_signal(strategy, quantity=0.01))

    assert result.status == "skipped"
    assert result.message == DUPLICATE_MESSAGE
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_averaging_adds_flagged_trade(executor, ledger, make_strategy, make_trade):
    strategy = make_strategy(allow_averaging=True)
    make_trade(strategy)

    result = await executor.process_signal(_signal(strategy, quantity=0.01))

    assert result.status == "success"
    assert len(ledger.find_open(strategy.id, "BTCUSDT", BUY)) == 2
    assert ledger.get_trade(result.trade_id).is_from_averaging is True


@pytest.mark.asyncio
async def test_one_way_flip_closes_opposite_first(executor, ledger, adapter, make_strategy, make_trade):
    strategy = make_strategy()
    old = make_trade(strategy, side=BUY, quantity=0.01, entry_price=50000.0)
    adapter.set_position(side=BUY, size=0.01)
    adapter.ticker = 51000.0

    result = await executor.process_signal(_signal(strategy, action=SELL, quantity=0.01))

    assert result.status == "success"
    closed = ledger.get_trade(old.id)
    assert closed.status == CLOSED
    assert closed.close_reason == SIGNAL
    assert closed.pnl == pytest.approx(10.0)
    assert closed.quantity == 0.0

    close_order, entry_order = adapter.orders
    assert close_order["side"] == SELL and close_order["reduce_only"]
    assert entry_order["side"] == SELL and not entry_order["reduce_only"]
    assert adapter.cancel_all_calls == ["BTCUSDT"]

    open_trades = ledger.find_open(strategy.id, "BTCUSDT")
    assert [t.side for t in open_trades] == [SELL]


@pytest.mark.asyncio
async def test_flip_closes_opposite_even_when_entry_notional_too_low(
    executor, ledger, adapter, make_strategy, make_trade
):
    strategy = make_strategy()
    old = make_trade(strategy, side=BUY, quantity=0.01)
    adapter.set_position(side=BUY, size=0.01)

    result = await executor.process_signal(_signal(strategy, action=SELL, quantity=0.0001))

    assert result.status == "error"
    assert result.message == "Notional too low (< 10 USDT)"
    assert ledger.get_trade(old.id).status == CLOSED
    assert ledger.get_trade(result.trade_id).status == ERROR
    [close_order] = adapter.orders
    assert close_order["reduce_only"]


@pytest.mark.asyncio
async def test_flip_closes_opposite_even_when_sizing_fails(
    executor, ledger, adapter, make_strategy, make_trade
):
    strategy = make_strategy()
    old = make_trade(strategy, side=SELL, quantity=0.01)
    adapter.set_position(side=SELL, size=0.01)
    adapter.get_balance = AsyncMock(side_effect=ExchangeError("Too many requests", code="-1003"))

    result = await executor.process_signal(_signal(strategy, action=BUY, account_percentage=10))

    assert result.status == "error"
    assert "-1003" in result.message
    assert ledger.get_trade(old.id).status == CLOSED
    assert ledger.find_open(strategy.id) == []


@pytest.mark.asyncio
async def test_hedge_mode_keeps_both_sides(executor, ledger, adapter, make_strategy, make_trade):
    strategy = make_strategy(hedge_mode=True)
    make_trade(strategy, side=BUY)

    result = await executor.process_signal(_signal(strategy, action=SELL, quantity=0.01))

    assert result.status == "success"
    assert sorted(t.side for t in ledger.find_open(strategy.id, "BTCUSDT")) == [BUY, SELL]
    assert all(not o["reduce_only"] for o in adapter.orders)


@pytest.mark.asyncio
async def test_direction_filter_only_closes_opposite(executor, ledger, adapter, make_strategy, make_trade):
    strategy = make_strategy(direction="LONG")
    old = make_trade(strategy, side=BUY)
    adapter.set_position(side=BUY, size=0.01)

    result = await executor.process_signal(_signal(strategy, action=SELL, quantity=0.01))

    assert result.status == "skipped"
    assert "closed 1 opposite" in result.message
    assert ledger.get_trade(old.id).status == CLOSED
    assert ledger.find_open(strategy.id) == []
    assert len(adapter.orders) == 1


@pytest.mark.asyncio
async def test_direction_filter_without_position_makes_no_calls(ledger, normalizer, make_strategy):
    strategy = make_strategy(direction="SHORT")
    factory = MagicMock()
    executor = OrderExecutor(ledger, factory, normalizer, settle_seconds=0)

    result = await executor.process_signal(_signal(strategy, action=BUY, quantity=0.01))

    assert result.status == "skipped"
    factory.assert_not_called()


# ---------------------------------------------------------------------------
# 5. Sizing
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_signal_account_percentage_uses_balance(executor, ledger, adapter, make_strategy):
    strategy = make_strategy()
    adapter.balance = 2000.0

    result = await executor.process_signal(_signal(strategy, account_percentage=25))

    # 25% of 2000 USDT at 50000
    assert ledger.get_trade(result.trade_id).quantity == pytest.approx(0.01)


@pytest.mark.asyncio
async def test_compounding_off_reuses_first_cycle_quantity(executor, ledger, adapter, make_strategy):
    strategy = make_strategy(use_account_pct=True, account_pct=10.0, enable_compound=False)

    first = await executor.process_signal(_signal(strategy))
    first_trade = ledger.get_trade(first.trade_id)
    assert first_trade.quantity == pytest.approx(0.002)
    assert first_trade.initial_quantity == pytest.approx(0.002)
    ledger.close_trade(first_trade.id, exit_price=51000.0, pnl=2.0, reason=MANUAL)

    adapter.balance = 5000.0
    second = await executor.process_signal(_signal(strategy))

    assert ledger.get_trade(second.trade_id).quantity == pytest.approx(0.002)


@pytest.mark.asyncio
async def test_compounding_on_follows_balance(executor, ledger, adapter, make_strategy):
    strategy = make_strategy(use_account_pct=True, account_pct=10.0, enable_compound=True)

    first = await executor.process_signal(_signal(strategy))
    ledger.close_trade(first.trade_id, exit_price=51000.0, pnl=2.0, reason=MANUAL)
    adapter.balance = 5000.0
    second = await executor.process_signal(_signal(strategy))

    assert ledger.get_trade(second.trade_id).quantity == pytest.approx(0.01)
    assert ledger.get_trade(second.trade_id).initial_quantity is None
