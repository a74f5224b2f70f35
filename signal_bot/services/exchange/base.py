"""Exchange adapter interface shared by every futures venue.

The engine only talks to venues through ``ExchangeAdapter``. Venue
differences in how protective legs are attached (separate stop orders vs
a stop attached to the position) live behind ``place_stop_loss``,
``place_take_profit`` and friends, which return a ``ProtectiveOrderState``
the monitors can track without knowing which venue produced it.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

from signal_bot.services.protective import (
    ProtectiveOrderState,
    SingleOrder,
    order_ids,
)
from signal_bot.services.symbol_rules import SymbolRules
from signal_bot.utils.constants import MARKET, opposite_side

logger = logging.getLogger(__name__)

_CODE_RE = re.compile(r'"(?:code|retCode)"\s*:\s*"?(-?\d+)')
_MSG_RE = re.compile(r'"(?:msg|retMsg)"\s*:\s*"([^"]*)"')


class ExchangeError(Exception):
    """A venue rejected a request or could not be reached."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}" if self.code else self.message

    @classmethod
    def from_exception(cls, exc: Exception) -> "ExchangeError":
        """Pull the upstream code/message out of a ccxt error string."""
        text = str(exc)
        code = _CODE_RE.search(text)
        msg = _MSG_RE.search(text)
        return cls(msg.group(1) if msg else text, code.group(1) if code else None)


@dataclass
class OrderResult:
    success: bool
    order_id: str | None = None
    error: str | None = None
    filled_price: float | None = None
    filled_amount: float | None = None
    order_status: str | None = None
    raw_response: str | None = None


@dataclass(frozen=True)
class Position:
    symbol: str
    side: str  # "BUY" | "SELL"
    size: float
    entry_price: float
    unrealized_pnl: float
    mark_price: float
    leverage: float


def raw(payload) -> str:
    try:
        return json.dumps(payload, default=str)[:2000]
    except (TypeError, ValueError):
        return str(payload)[:2000]


class ExchangeAdapter(ABC):
    """Async capability set for one futures venue account."""

    name: str = "exchange"

    def __init__(self, api_key: str, api_secret: str, testnet: bool = True, hedge_mode: bool = False):
        self.testnet = testnet
        self.hedge_mode = hedge_mode
        self._api_key = api_key
        self._api_secret = api_secret

    @property
    def venue_key(self) -> str:
        return f"{self.name}:{'testnet' if self.testnet else 'mainnet'}"

    # ----- core capabilities -------------------------------------------

    @abstractmethod
    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: str,
        price: str | None = None,
        *,
        reduce_only: bool = False,
        stop_loss: str | None = None,
        take_profit: str | None = None,
    ) -> OrderResult:
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        ...

    @abstractmethod
    async def cancel_all_orders(self, symbol: str):
        ...

    @abstractmethod
    async def get_positions(self, symbol: str | None = None) -> list[Position]:
        """Open positions with non-zero size."""

    @abstractmethod
    async def get_order_status(self, symbol: str, order_id: str) -> str | None:
        """Canonical status, checking live orders then history. None if unknown."""

    @abstractmethod
    async def get_ticker(self, symbol: str) -> float:
        ...

    @abstractmethod
    async def get_last_fill_price(self, symbol: str) -> float | None:
        ...

    @abstractmethod
    async def get_balance(self) -> float:
        """Available quote-currency (USDT) balance."""

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int):
        ...

    @abstractmethod
    async def set_margin_mode(self, symbol: str, mode: str, leverage: int):
        ...

    async def set_position_stop(
        self,
        symbol: str,
        side: str,
        stop_price: str | None = None,
        take_profit_price: str | None = None,
    ) -> bool:
        """Attach a stop/target to the position. Only some venues support it."""
        return False

    @abstractmethod
    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        ...

    @abstractmethod
    async def close(self):
        ...

    # ----- protective legs ---------------------------------------------

    @abstractmethod
    async def place_stop_loss(
        self, symbol: str, side: str, quantity: str, stop_price: str
    ) -> ProtectiveOrderState:
        """Protect a position opened on ``side``. Raises ExchangeError on rejection."""

    @abstractmethod
    async def place_take_profit(
        self, symbol: str, side: str, quantity: str, price: str
    ) -> ProtectiveOrderState:
        """Single full-size target for a position opened on ``side``."""

    @abstractmethod
    async def place_take_profit_leg(
        self, symbol: str, side: str, quantity: str, price: str
    ) -> str:
        """One partial target; returns the order id."""

    async def replace_stop_loss(
        self,
        symbol: str,
        side: str,
        quantity: str,
        stop_price: str,
        current: ProtectiveOrderState,
    ) -> ProtectiveOrderState:
        """Move an existing stop. Order-based stops are cancelled and re-placed."""
        await self.cancel_protective(symbol, current)
        return await self.place_stop_loss(symbol, side, quantity, stop_price)

    async def cancel_protective(self, symbol: str, state: ProtectiveOrderState):
        """Best-effort cancel of the orders behind a state.

        Position-level stops are shared by every trade on the position and
        are left in place.
        """
        for order_id in order_ids(state):
            try:
                await self.cancel_order(symbol, order_id)
            except ExchangeError as e:
                logger.warning(f"[{self.name}] cancel {order_id} on {symbol} failed: {e}")

    async def close_position(self, symbol: str, side: str, quantity: str) -> OrderResult:
        """Reduce-only market order closing ``quantity`` of a ``side`` position."""
        return await self.place_order(
            symbol, opposite_side(side), MARKET, quantity, reduce_only=True
        )

    async def get_position(self, symbol: str, side: str) -> Position | None:
        for position in await self.get_positions(symbol):
            if position.symbol == symbol and position.side == side:
                return position
        return None

    async def exit_price(self, symbol: str) -> float:
        """Last fill price, falling back to the ticker."""
        try:
            price = await self.get_last_fill_price(symbol)
        except ExchangeError as e:
            logger.warning(f"[{self.name}] last fill lookup failed for {symbol}: {e}")
            price = None
        if price:
            return price
        return await self.get_ticker(symbol)


def single_order_or_raise(result: OrderResult) -> SingleOrder:
    if not result.success or not result.order_id:
        raise ExchangeError(result.error or "order rejected")
    return SingleOrder(result.order_id)
