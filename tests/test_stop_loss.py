"""Tests for the stop-loss monitor: order tracking, price polling and the ratchet."""

import pytest

from signal_bot.engine.stop_loss import StopLossMonitor
from signal_bot.services.exchange.base import OrderResult
from signal_bot.services.protective import SingleOrder, load_state
from signal_bot.utils.constants import CLOSED, OPEN, SELL, STOP_LOSS
from tests.fakes import FakeAdapter


@pytest.fixture
def monitor(ledger, factory, normalizer):
    return StopLossMonitor(ledger, factory, normalizer, breakeven_offset_pct=0.1)


@pytest.fixture
def ratchet_strategy(make_strategy):
    def _make(**overrides):
        fields = {
            "take_profit_pct_1": 1.0,
            "take_profit_pct_2": 2.0,
            "take_profit_pct_3": 3.0,
            "move_sl_to_breakeven": True,
        }
        fields.update(overrides)
        return make_strategy(**fields)
    return _make


# ---------------------------------------------------------------------------
# 1. Price polling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_percentage_stop_closes_with_market_order(monitor, ledger, adapter, make_strategy, make_trade):
    trade = make_trade(make_strategy(stop_loss_pct=2.0))
    adapter.ticker = 48900.0

    assert await monitor.run() == 1

    closed = ledger.get_trade(trade.id)
    assert closed.status == CLOSED
    assert closed.close_reason == STOP_LOSS
    assert closed.exit_price == 48900.0
    assert closed.pnl == pytest.approx(-11.0)
    assert adapter.orders[0]["side"] == SELL and adapter.orders[0]["reduce_only"]


@pytest.mark.asyncio
async def test_stop_not_reached_keeps_trade_open(monitor, ledger, adapter, make_strategy, make_trade):
    trade = make_trade(make_strategy(stop_loss_pct=2.0))
    adapter.ticker = 49500.0

    assert await monitor.run() == 0
    assert ledger.get_trade(trade.id).status == OPEN
    assert adapter.orders == []


@pytest.mark.asyncio
async def test_stored_stop_price_wins_over_percentage(monitor, ledger, adapter, make_strategy, make_trade):
    trade = make_trade(make_strategy(stop_loss_pct=5.0), side=SELL, stop_loss_price=50500.0)
    adapter.ticker = 50600.0

    assert await monitor.run() == 1
    assert ledger.get_trade(trade.id).pnl == pytest.approx(-6.0)


@pytest.mark.asyncio
async def test_failed_close_leaves_trade_open(monitor, ledger, make_strategy, make_trade):
    strategy = make_strategy(stop_loss_pct=2.0)
    trade = make_trade(strategy)
    adapter = FakeAdapter()
    adapter.ticker = 48000.0

    async def reject(*args, **kwargs):
        return OrderResult(success=False, error="[-2022] ReduceOnly Order is rejected.")

    adapter.place_order = reject
    monitor.adapter_factory = lambda s: adapter

    assert await monitor.run() == 0
    assert ledger.get_trade(trade.id).status == OPEN


# ---------------------------------------------------------------------------
# 2. Exchange stop orders
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_filled_stop_order_closes_and_cancels_targets(monitor, ledger, adapter, make_strategy, make_trade):
    trade = make_trade(
        make_strategy(),
        stop_loss_price=49000.0,
        stop_loss_order={"kind": "single", "order_id": "sl-1"},
        take_profit_order={"kind": "single", "order_id": "tp-1"},
    )
    adapter.statuses["sl-1"] = "FILLED"
    adapter.last_fill = 48990.0

    assert await monitor.run() == 1

    closed = ledger.get_trade(trade.id)
    assert closed.close_reason == STOP_LOSS
    assert closed.exit_price == 48990.0
    assert closed.stop_loss_order is None and closed.take_profit_order is None
    assert adapter.cancelled == ["tp-1"]
    assert adapter.orders == []


@pytest.mark.asyncio
async def test_working_stop_order_is_trusted(monitor, ledger, adapter, make_strategy, make_trade):
    trade = make_trade(
        make_strategy(),
        stop_loss_price=49000.0,
        stop_loss_order={"kind": "single", "order_id": "sl-1"},
    )
    adapter.statuses["sl-1"] = "NEW"
    adapter.ticker = 48000.0

    assert await monitor.run() == 0
    assert ledger.get_trade(trade.id).status == OPEN


@pytest.mark.asyncio
async def test_cancelled_stop_order_falls_back_to_polling(monitor, ledger, adapter, make_strategy, make_trade):
    trade = make_trade(
        make_strategy(),
        stop_loss_price=49000.0,
        stop_loss_order={"kind": "single", "order_id": "sl-1"},
    )
    adapter.statuses["sl-1"] = "CANCELED"
    adapter.ticker = 48500.0

    assert await monitor.run() == 1
    assert ledger.get_trade(trade.id).close_reason == STOP_LOSS
    assert len(adapter.orders) == 1


@pytest.mark.asyncio
async def test_position_stop_closes_when_flat_past_stop(monitor, ledger, adapter, make_strategy, make_trade):
    trade = make_trade(
        make_strategy(),
        stop_loss_price=49000.0,
        stop_loss_order={"kind": "position", "price": 49000.0},
    )
    adapter.last_fill = 48950.0

    assert await monitor.run() == 1
    assert ledger.get_trade(trade.id).close_reason == STOP_LOSS


@pytest.mark.asyncio
async def test_position_stop_ignores_flat_position_above_stop(monitor, ledger, adapter, make_strategy, make_trade):
    trade = make_trade(
        make_strategy(),
        stop_loss_price=49000.0,
        stop_loss_order={"kind": "position", "price": 49000.0},
    )
    adapter.last_fill = 52000.0

    assert await monitor.run() == 0
    assert ledger.get_trade(trade.id).status == OPEN


# ---------------------------------------------------------------------------
# 3. Ratchet
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_level_moves_stop_to_breakeven(monitor, ledger, adapter, ratchet_strategy, make_trade):
    trade = make_trade(
        ratchet_strategy(),
        stop_loss_price=49000.0,
        stop_loss_order={"kind": "single", "order_id": "sl-0"},
    )
    adapter.statuses["sl-0"] = "NEW"
    adapter.set_position(size=0.01, mark_price=50600.0)

    await monitor.run()

    moved = ledger.get_trade(trade.id)
    assert moved.status == OPEN
    assert moved.stop_loss_price == pytest.approx(50050.0)
    assert "sl-0" in adapter.cancelled
    new_state = load_state(moved.stop_loss_order)
    assert isinstance(new_state, SingleOrder) and new_state.order_id != "sl-0"
    assert adapter.stops[-1]["price"] == "50050.0"


@pytest.mark.asyncio
async def test_stop_never_moves_back(monitor, ledger, adapter, ratchet_strategy, make_trade):
    trade = make_trade(ratchet_strategy(break_again=True), stop_loss_price=49000.0)

    adapter.set_position(size=0.01, mark_price=51100.0)
    await monitor.run()
    assert ledger.get_trade(trade.id).stop_loss_price == pytest.approx(50500.0)

    adapter.set_position(size=0.01, mark_price=50600.0)
    await monitor.run()
    assert ledger.get_trade(trade.id).stop_loss_price == pytest.approx(50500.0)

    adapter.set_position(size=0.01, mark_price=51600.0)
    await monitor.run()
    assert ledger.get_trade(trade.id).stop_loss_price == pytest.approx(51000.0)


@pytest.mark.asyncio
async def test_breakeven_only_stays_at_entry_after_later_levels(
    monitor, ledger, adapter, ratchet_strategy, make_trade
):
    trade = make_trade(ratchet_strategy(break_again=False), stop_loss_price=49000.0)
    adapter.set_position(size=0.01, mark_price=51600.0)

    await monitor.run()

    assert ledger.get_trade(trade.id).stop_loss_price == pytest.approx(50050.0)


@pytest.mark.asyncio
async def test_short_ratchet_moves_stop_down(monitor, ledger, adapter, ratchet_strategy, make_trade):
    trade = make_trade(ratchet_strategy(), side=SELL, stop_loss_price=51000.0)
    adapter.set_position(side=SELL, size=0.01, mark_price=49400.0)

    await monitor.run()

    assert ledger.get_trade(trade.id).stop_loss_price == pytest.approx(49950.0)


@pytest.mark.asyncio
async def test_ratchet_uses_taken_levels_when_price_pulls_back(
    monitor, ledger, adapter, ratchet_strategy, make_trade
):
    trade = make_trade(ratchet_strategy(), stop_loss_price=49000.0, last_tp_level=1)
    adapter.set_position(size=0.01, mark_price=50100.0)

    await monitor.run()

    assert ledger.get_trade(trade.id).stop_loss_price == pytest.approx(50050.0)


@pytest.mark.asyncio
async def test_position_level_venue_moves_attached_stop(ledger, normalizer, ratchet_strategy, make_trade):
    adapter = FakeAdapter(position_level=True)
    adapter.set_position(size=0.01, mark_price=50600.0)
    monitor = StopLossMonitor(ledger, lambda s: adapter, normalizer, breakeven_offset_pct=0.1)
    trade = make_trade(
        ratchet_strategy(),
        stop_loss_price=49000.0,
        stop_loss_order={"kind": "position", "price": 49000.0},
    )

    await monitor.run()

    moved = ledger.get_trade(trade.id)
    assert moved.stop_loss_order == {"kind": "position", "price": 50050.0}
    assert adapter.cancelled == []
