"""Bybit v5 linear perpetual adapter (position-level stop venue).

Stop-losses and signal take-profits are attached to the position with the
v5 trading-stop endpoint rather than placed as separate orders; ladder legs
are plain reduce-only limit orders.
"""

import logging
from decimal import Decimal

import ccxt.async_support as ccxt

from signal_bot.services.exchange.base import (
    ExchangeAdapter,
    ExchangeError,
    OrderResult,
    Position,
    raw,
)
from signal_bot.services.protective import PositionLevel, ProtectiveOrderState
from signal_bot.services.symbol_rules import DEFAULT_RULES, SymbolRules
from signal_bot.utils.constants import (
    BUY,
    LIMIT,
    ORDER_CANCELED,
    ORDER_EXPIRED,
    ORDER_FILLED,
    ORDER_NEW,
    ORDER_PARTIALLY_FILLED,
    SELL,
    opposite_side,
)

logger = logging.getLogger(__name__)

CATEGORY = "linear"

_ORDER_STATUS = {
    "Created": ORDER_NEW,
    "New": ORDER_NEW,
    "Untriggered": ORDER_NEW,
    "Triggered": ORDER_NEW,
    "Active": ORDER_NEW,
    "PartiallyFilled": ORDER_PARTIALLY_FILLED,
    "Filled": ORDER_FILLED,
    "Cancelled": ORDER_CANCELED,
    "PartiallyFilledCanceled": ORDER_CANCELED,
    "Rejected": ORDER_CANCELED,
    "Deactivated": ORDER_EXPIRED,
}

# retCodes that mean "already in the requested state"
_NOT_MODIFIED = {"110043", "110026", "34040"}


def _venue_side(side: str) -> str:
    return "Buy" if side == BUY else "Sell"


def _result_list(resp: dict) -> list[dict]:
    return (resp or {}).get("result", {}).get("list", []) or []


class BybitFuturesAdapter(ExchangeAdapter):
    name = "bybit"

    def __init__(self, api_key: str, api_secret: str, testnet: bool = True, hedge_mode: bool = False):
        super().__init__(api_key, api_secret, testnet=testnet, hedge_mode=hedge_mode)
        self._exchange = None

    def _ensure_exchange(self):
        """Lazily build the ccxt client."""
        if self._exchange is None:
            self._exchange = ccxt.bybit({
                "apiKey": self._api_key,
                "secret": self._api_secret,
                "enableRateLimit": True,
                "options": {
                    "defaultType": "future",
                    "accountType": "UNIFIED",
                    "adjustForTimeDifference": True,
                    "recvWindow": 10000,
                    "brokerId": "",
                },
            })
            if self.testnet:
                self._exchange.set_sandbox_mode(True)
            logger.info(f"Bybit linear client initialized (testnet={self.testnet})")
        return self._exchange

    def _position_idx(self, position_side: str) -> int:
        if not self.hedge_mode:
            return 0
        return 1 if position_side == BUY else 2

    async def _call(self, method: str, params: dict, ignore_not_modified: bool = False) -> dict:
        exchange = self._ensure_exchange()
        try:
            return await getattr(exchange, method)(params)
        except ccxt.BaseError as e:
            error = ExchangeError.from_exception(e)
            if ignore_not_modified and error.code in _NOT_MODIFIED:
                logger.debug(f"[bybit] {method}: not modified")
                return {"retCode": 0, "retMsg": "not modified"}
            raise error from e

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
        position_side = opposite_side(side) if reduce_only else side
        params = {
            "category": CATEGORY,
            "symbol": symbol,
            "side": _venue_side(side),
            "orderType": "Limit" if order_type == LIMIT else "Market",
            "qty": quantity,
            "positionIdx": self._position_idx(position_side),
        }
        if order_type == LIMIT:
            if price is None:
                return OrderResult(success=False, error="LIMIT order requires a price")
            params["price"] = price
            params["timeInForce"] = "GTC"
        if reduce_only:
            params["reduceOnly"] = True
        if stop_loss:
            params["stopLoss"] = stop_loss
            params["slTriggerBy"] = "MarkPrice"
        if take_profit:
            params["takeProfit"] = take_profit
            params["tpTriggerBy"] = "MarkPrice"

        try:
            resp = await self._call("privatePostV5OrderCreate", params)
        except ExchangeError as e:
            logger.error(f"[bybit] {side} {order_type} {quantity} {symbol} rejected: {e}")
            return OrderResult(success=False, error=str(e))

        order_id = resp.get("result", {}).get("orderId")
        logger.info(f"[bybit] {side} {order_type} {quantity} {symbol} -> order {order_id}")
        return OrderResult(
            success=True,
            order_id=str(order_id),
            order_status=ORDER_NEW,
            raw_response=raw(resp),
        )

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            await self._call("privatePostV5OrderCancel", {
                "category": CATEGORY, "symbol": symbol, "orderId": order_id,
            })
            return True
        except ExchangeError as e:
            # 110001: order does not exist or is already finished
            if e.code == "110001":
                return False
            raise

    async def cancel_all_orders(self, symbol: str):
        await self._call("privatePostV5OrderCancelAll", {"category": CATEGORY, "symbol": symbol})
        logger.info(f"[bybit] cancelled open orders on {symbol}")

    async def get_positions(self, symbol: str | None = None) -> list[Position]:
        params = {"category": CATEGORY}
        if symbol:
            params["symbol"] = symbol
        else:
            params["settleCoin"] = "USDT"
        resp = await self._call("privateGetV5PositionList", params)

        positions = []
        for row in _result_list(resp):
            size = float(row.get("size") or 0)
            if size == 0 or row.get("side") not in ("Buy", "Sell"):
                continue
            positions.append(Position(
                symbol=row["symbol"],
                side=BUY if row["side"] == "Buy" else SELL,
                size=size,
                entry_price=float(row.get("avgPrice") or 0),
                unrealized_pnl=float(row.get("unrealisedPnl") or 0),
                mark_price=float(row.get("markPrice") or 0),
                leverage=float(row.get("leverage") or 0),
            ))
        return positions

    async def get_order_status(self, symbol: str, order_id: str) -> str | None:
        params = {"category": CATEGORY, "symbol": symbol, "orderId": order_id}
        try:
            rows = _result_list(await self._call("privateGetV5OrderRealtime", params))
            if not rows:
                rows = _result_list(await self._call("privateGetV5OrderHistory", params))
        except ExchangeError as e:
            logger.warning(f"[bybit] status lookup for {order_id} on {symbol} failed: {e}")
            return None
        if not rows:
            return None
        return _ORDER_STATUS.get(rows[0].get("orderStatus"))

    async def get_ticker(self, symbol: str) -> float:
        rows = _result_list(await self._call("publicGetV5MarketTickers", {
            "category": CATEGORY, "symbol": symbol,
        }))
        if not rows:
            raise ExchangeError(f"No ticker for {symbol}")
        return float(rows[0]["lastPrice"])

    async def get_last_fill_price(self, symbol: str) -> float | None:
        rows = _result_list(await self._call("privateGetV5ExecutionList", {
            "category": CATEGORY, "symbol": symbol, "limit": 1,
        }))
        if not rows:
            return None
        return float(rows[0]["execPrice"])

    async def get_balance(self) -> float:
        rows = _result_list(await self._call("privateGetV5AccountWalletBalance", {
            "accountType": "UNIFIED", "coin": "USDT",
        }))
        for account in rows:
            for coin in account.get("coin", []):
                if coin.get("coin") != "USDT":
                    continue
                available = coin.get("availableToWithdraw")
                if available not in (None, ""):
                    return float(available)
                # availableToWithdraw is often blank on unified accounts
                wallet = float(coin.get("walletBalance") or 0)
                used = float(coin.get("totalPositionIM") or 0)
                return wallet - used
        logger.warning("[bybit] no USDT balance in wallet response")
        return 0.0

    async def set_leverage(self, symbol: str, leverage: int):
        await self._call("privatePostV5PositionSetLeverage", {
            "category": CATEGORY,
            "symbol": symbol,
            "buyLeverage": str(leverage),
            "sellLeverage": str(leverage),
        }, ignore_not_modified=True)

    async def set_margin_mode(self, symbol: str, mode: str, leverage: int):
        await self._call("privatePostV5PositionSwitchIsolated", {
            "category": CATEGORY,
            "symbol": symbol,
            "tradeMode": 1 if mode == "ISOLATED" else 0,
            "buyLeverage": str(leverage),
            "sellLeverage": str(leverage),
        }, ignore_not_modified=True)
        await self.set_leverage(symbol, leverage)

    async def set_position_stop(
        self,
        symbol: str,
        side: str,
        stop_price: str | None = None,
        take_profit_price: str | None = None,
    ) -> bool:
        params = {
            "category": CATEGORY,
            "symbol": symbol,
            "tpslMode": "Full",
            "positionIdx": self._position_idx(side),
        }
        if stop_price is not None:
            params["stopLoss"] = stop_price
            params["slTriggerBy"] = "MarkPrice"
        if take_profit_price is not None:
            params["takeProfit"] = take_profit_price
            params["tpTriggerBy"] = "MarkPrice"
        await self._call("privatePostV5PositionTradingStop", params, ignore_not_modified=True)
        logger.info(f"[bybit] trading stop on {symbol} {side}: sl={stop_price} tp={take_profit_price}")
        return True

    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        rows = _result_list(await self._call("publicGetV5MarketInstrumentsInfo", {
            "category": CATEGORY, "symbol": symbol,
        }))
        if not rows:
            raise ExchangeError(f"Unknown symbol {symbol}")
        lot = rows[0].get("lotSizeFilter", {})
        price_filter = rows[0].get("priceFilter", {})
        return SymbolRules(
            qty_step=Decimal(lot.get("qtyStep") or DEFAULT_RULES.qty_step),
            price_tick=Decimal(price_filter.get("tickSize") or DEFAULT_RULES.price_tick),
            min_qty=Decimal(lot.get("minOrderQty") or DEFAULT_RULES.min_qty),
        )

    async def place_stop_loss(
        self, symbol: str, side: str, quantity: str, stop_price: str
    ) -> ProtectiveOrderState:
        await self.set_position_stop(symbol, side, stop_price=stop_price)
        return PositionLevel(float(stop_price))

    async def place_take_profit(
        self, symbol: str, side: str, quantity: str, price: str
    ) -> ProtectiveOrderState:
        await self.set_position_stop(symbol, side, take_profit_price=price)
        return PositionLevel(float(price))

    async def place_take_profit_leg(
        self, symbol: str, side: str, quantity: str, price: str
    ) -> str:
        result = await self.place_order(
            symbol, opposite_side(side), LIMIT, quantity, price, reduce_only=True
        )
        if not result.success or not result.order_id:
            raise ExchangeError(result.error or "take-profit order rejected")
        return result.order_id

    async def close(self):
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None
