"""Per-symbol lot/tick rules and the normalizer that applies them."""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Awaitable, Callable

from signal_bot.utils.constants import DEFAULT_MIN_QTY, DEFAULT_PRICE_TICK, DEFAULT_QTY_STEP

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SymbolRules:
    qty_step: Decimal
    price_tick: Decimal
    min_qty: Decimal


DEFAULT_RULES = SymbolRules(
    qty_step=Decimal(DEFAULT_QTY_STEP),
    price_tick=Decimal(DEFAULT_PRICE_TICK),
    min_qty=Decimal(DEFAULT_MIN_QTY),
)

RulesLoader = Callable[[str], Awaitable[SymbolRules]]


class SymbolRulesCache:
    """Caches symbol rules per (venue, symbol).

    With ``ttl_seconds=None`` entries live for the whole process. Failed
    lookups fall back to ``DEFAULT_RULES`` and are not cached, so the next
    call retries the exchange.
    """

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[SymbolRules, float]] = {}

    async def get(self, venue: str, symbol: str, loader: RulesLoader) -> SymbolRules:
        key = (venue, symbol)
        cached = self._entries.get(key)
        if cached is not None:
            rules, stored_at = cached
            if self.ttl_seconds is None or self._clock() - stored_at < self.ttl_seconds:
                return rules

        try:
            rules = await loader(symbol)
        except Exception as e:
            logger.warning(f"Symbol rules lookup failed for {venue}:{symbol}, using defaults: {e}")
            return DEFAULT_RULES

        self._entries[key] = (rules, self._clock())
        logger.info(
            f"Symbol rules {venue}:{symbol}: step={rules.qty_step} tick={rules.price_tick} min={rules.min_qty}"
        )
        return rules

    def clear(self):
        self._entries.clear()


def _quantize_to_step(value: Decimal, step: Decimal, rounding: str) -> Decimal:
    if step <= 0:
        return value
    units = (value / step).quantize(Decimal("1"), rounding=rounding)
    return (units * step).quantize(step)


def normalize_quantity(value: float | str | Decimal, rules: SymbolRules) -> Decimal:
    """Floor to the lot step, then clamp up to the minimum quantity."""
    qty = _quantize_to_step(Decimal(str(value)), rules.qty_step, ROUND_DOWN)
    if qty < rules.min_qty:
        qty = rules.min_qty
    return qty


def normalize_price(value: float | str | Decimal, rules: SymbolRules) -> Decimal:
    """Round to the nearest price tick."""
    return _quantize_to_step(Decimal(str(value)), rules.price_tick, ROUND_HALF_UP)


class Normalizer:
    """Turns desired quantities/prices into exchange-legal strings."""

    def __init__(self, cache: SymbolRulesCache):
        self.cache = cache

    async def rules_for(self, adapter, symbol: str) -> SymbolRules:
        return await self.cache.get(adapter.venue_key, symbol, adapter.get_symbol_rules)

    async def quantity(self, adapter, symbol: str, value: float) -> str:
        rules = await self.rules_for(adapter, symbol)
        return format(normalize_quantity(value, rules), "f")

    async def price(self, adapter, symbol: str, value: float) -> str:
        rules = await self.rules_for(adapter, symbol)
        return format(normalize_price(value, rules), "f")
