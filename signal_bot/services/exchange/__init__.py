"""Exchange adapters and the factory that picks one per strategy."""

import logging

from signal_bot.models.strategy import Strategy
from signal_bot.services.encryption import decrypt
from signal_bot.services.exchange.base import (
    ExchangeAdapter,
    ExchangeError,
    OrderResult,
    Position,
)
from signal_bot.services.exchange.binance import BinanceFuturesAdapter
from signal_bot.services.exchange.bybit import BybitFuturesAdapter

logger = logging.getLogger(__name__)

ADAPTERS: dict[str, type[ExchangeAdapter]] = {
    "binance": BinanceFuturesAdapter,
    "bybit": BybitFuturesAdapter,
}


def build_adapter(strategy: Strategy) -> ExchangeAdapter:
    """Decrypt the strategy's credentials and build its venue adapter."""
    adapter_cls = ADAPTERS.get(strategy.exchange)
    if adapter_cls is None:
        raise ValueError(f"Unsupported exchange: {strategy.exchange}")
    return adapter_cls(
        api_key=decrypt(strategy.api_key_encrypted),
        api_secret=decrypt(strategy.api_secret_encrypted),
        testnet=strategy.is_testnet,
        hedge_mode=strategy.hedge_mode,
    )


class AdapterPool:
    """One adapter per strategy for the duration of a tick.

    Usage:
        async with AdapterPool(build_adapter) as pool:
            adapter = pool.get(strategy)
    """

    def __init__(self, factory=build_adapter):
        self._factory = factory
        self._adapters: dict[int, ExchangeAdapter] = {}

    def get(self, strategy: Strategy) -> ExchangeAdapter:
        adapter = self._adapters.get(strategy.id)
        if adapter is None:
            adapter = self._factory(strategy)
            self._adapters[strategy.id] = adapter
        return adapter

    async def __aenter__(self) -> "AdapterPool":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        for strategy_id, adapter in self._adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Closing adapter for strategy {strategy_id} failed: {e}")
        self._adapters.clear()


__all__ = [
    "ADAPTERS",
    "AdapterPool",
    "BinanceFuturesAdapter",
    "BybitFuturesAdapter",
    "ExchangeAdapter",
    "ExchangeError",
    "OrderResult",
    "Position",
    "build_adapter",
]
