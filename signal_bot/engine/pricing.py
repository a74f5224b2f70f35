"""Price and P&L arithmetic shared by execution and the monitors."""

from signal_bot.utils.constants import BUY


def slice_pnl(side: str, entry_price: float, exit_price: float, quantity: float) -> float:
    """Realized P&L for closing ``quantity`` of a ``side`` position."""
    if side == BUY:
        return (exit_price - entry_price) * quantity
    return (entry_price - exit_price) * quantity


def stop_loss_price(side: str, entry_price: float, pct: float) -> float:
    if side == BUY:
        return entry_price * (1 - pct / 100)
    return entry_price * (1 + pct / 100)


def take_profit_price(side: str, entry_price: float, pct: float) -> float:
    if side == BUY:
        return entry_price * (1 + pct / 100)
    return entry_price * (1 - pct / 100)


def stop_hit(side: str, price: float, stop: float) -> bool:
    return price <= stop if side == BUY else price >= stop


def target_hit(side: str, price: float, target: float) -> bool:
    return price >= target if side == BUY else price <= target


def improves_stop(side: str, candidate: float, current: float | None) -> bool:
    """True if ``candidate`` is strictly tighter than ``current``."""
    if current is None:
        return True
    return candidate > current if side == BUY else candidate < current


def next_candle_price(side: str, price: float, offset_pct: float) -> float:
    """Limit price offset in the trade's favour for next-candle entries."""
    offset = price * offset_pct / 100
    return price - offset if side == BUY else price + offset


def highest_crossed_level(
    side: str,
    entry_price: float,
    price: float,
    levels: list[tuple[int, float, float]],
) -> int:
    """Highest configured take-profit level whose target ``price`` has reached."""
    crossed = 0
    for level, pct, _ in levels:
        if target_hit(side, price, take_profit_price(side, entry_price, pct)):
            crossed = max(crossed, level)
    return crossed


def ratchet_stop(
    side: str,
    entry_price: float,
    crossed_level: int,
    levels: list[tuple[int, float, float]],
    breakeven_offset_pct: float,
    move_to_breakeven: bool,
    break_again: bool,
) -> float | None:
    """Stop price implied by the highest crossed level, or None if no move applies.

    First crossing moves the stop just past entry; each later crossing moves
    it to the previous level's target when ``break_again`` is set.
    """
    if crossed_level <= 0 or not (move_to_breakeven or break_again):
        return None

    reached = [(level, pct) for level, pct, _ in levels if level <= crossed_level]
    if not reached:
        return None

    if len(reached) >= 2 and break_again:
        _, prior_pct = reached[-2]
        return take_profit_price(side, entry_price, prior_pct)
    return take_profit_price(side, entry_price, breakeven_offset_pct)
