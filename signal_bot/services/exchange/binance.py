"""Binance USDⓈ-M futures adapter (per-order stop venue).

Talks to the raw ``/fapi`` endpoints through ccxt's implicit API so that
symbols stay in exchange form (``BTCUSDT``) and ccxt only handles signing
and rate limiting. Conditional orders (STOP_MARKET / TAKE_PROFIT_MARKET)
go through the algo order endpoints; their ids carry an ``algo-`` prefix so
status and cancel calls are routed to the right endpoint.
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
    single_order_or_raise,
)
from signal_bot.services.protective import ProtectiveOrderState
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

ALGO_PREFIX = "algo-"

_ORDER_STATUS = {
    "NEW": ORDER_NEW,
    "PARTIALLY_FILLED": ORDER_PARTIALLY_FILLED,
    "FILLED": ORDER_FILLED,
    "CANCELED": ORDER_CANCELED,
    "REJECTED": ORDER_CANCELED,
    "EXPIRED": ORDER_EXPIRED,
    "EXPIRED_IN_MATCH": ORDER_EXPIRED,
}

_ALGO_STATUS = {
    "NEW": ORDER_NEW,
    "TRIGGERING": ORDER_NEW,
    "TRIGGERED": ORDER_FILLED,
    "FINISHED": ORDER_FILLED,
    "CANCELED": ORDER_CANCELED,
    "REJECTED": ORDER_CANCELED,
    "EXPIRED": ORDER_EXPIRED,
}


class BinanceFuturesAdapter(ExchangeAdapter):
    name = "binance"

    def __init__(self, api_key: str, api_secret: str, testnet: bool = True, hedge_mode: bool = False):
        super().__init__(api_key, api_secret, testnet=testnet, hedge_mode=hedge_mode)
        self._exchange = None

    def _ensure_exchange(self):
        """Lazily build the ccxt client."""
        if self._exchange is None:
            self._exchange = ccxt.binanceusdm({
                "apiKey": self._api_key,
                "secret": self._api_secret,
                "enableRateLimit": True,
                "options": {
                    "defaultType": "future",
                    "adjustForTimeDifference": True,
                    "recvWindow": 10000,
                },
            })
            if self.testnet:
                try:
                    self._exchange.set_sandbox_mode(True)
                except ccxt.NotSupported:
                    # Newer ccxt releases route futures testing through demo trading
                    self._exchange.enable_demo_trading(True)
            logger.info(f"Binance futures client initialized (testnet={self.testnet})")
        return self._exchange

    def _position_side(self, side: str, reduce_only: bool) -> str:
        position_side = side if not reduce_only else opposite_side(side)
        return "LONG" if position_side == BUY else "SHORT"

    def _order_params(self, side: str, reduce_only: bool) -> dict:
        if self.hedge_mode:
            # Hedge-mode accounts reject reduceOnly; positionSide selects the leg.
            return {"positionSide": self._position_side(side, reduce_only)}
        return {"reduceOnly": "true"} if reduce_only else {}

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
        exchange = self._ensure_exchange()
        params = {
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "quantity": quantity,
            "newOrderRespType": "RESULT",
            **self._order_params(side, reduce_only),
        }
        if order_type == LIMIT:
            if price is None:
                return OrderResult(success=False, error="LIMIT order requires a price")
            params["price"] = price
            params["timeInForce"] = "GTC"

        try:
            resp = await exchange.fapiPrivatePostOrder(params)
        except ccxt.BaseError as e:
            error = ExchangeError.from_exception(e)
            logger.error(f"[binance] {side} {order_type} {quantity} {symbol} rejected: {error}")
            return OrderResult(success=False, error=str(error))

        avg_price = float(resp.get("avgPrice") or 0) or None
        filled = float(resp.get("executedQty") or 0) or None
        logger.info(
            f"[binance] {side} {order_type} {quantity} {symbol} -> order {resp.get('orderId')} "
            f"status={resp.get('status')} avg={avg_price}"
        )
        return OrderResult(
            success=True,
            order_id=str(resp.get("orderId")),
            filled_price=avg_price,
            filled_amount=filled,
            order_status=_ORDER_STATUS.get(resp.get("status")),
            raw_response=raw(resp),
        )

    async def _place_conditional(
        self, symbol: str, side: str, order_type: str, quantity: str, trigger_price: str
    ) -> OrderResult:
        exchange = self._ensure_exchange()
        params = {
            "algoType": "CONDITIONAL",
            "symbol": symbol,
            "side": opposite_side(side),
            "type": order_type,
            "triggerPrice": trigger_price,
            "quantity": quantity,
            "workingType": "MARK_PRICE",
            "timeInForce": "GTC",
            **self._order_params(opposite_side(side), True),
        }
        try:
            resp = await exchange.fapiPrivatePostAlgoOrder(params)
        except ccxt.BaseError as e:
            error = ExchangeError.from_exception(e)
            logger.error(f"[binance] {order_type} @ {trigger_price} on {symbol} rejected: {error}")
            return OrderResult(success=False, error=str(error))

        algo_id = resp.get("algoId")
        logger.info(f"[binance] {order_type} {quantity} {symbol} @ {trigger_price} -> algo {algo_id}")
        return OrderResult(success=True, order_id=f"{ALGO_PREFIX}{algo_id}", raw_response=raw(resp))

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        exchange = self._ensure_exchange()
        try:
            if order_id.startswith(ALGO_PREFIX):
                await exchange.fapiPrivateDeleteAlgoOrder({
                    "symbol": symbol, "algoId": order_id[len(ALGO_PREFIX):],
                })
            else:
                await exchange.fapiPrivateDeleteOrder({"symbol": symbol, "orderId": order_id})
            return True
        except ccxt.OrderNotFound:
            return False
        except ccxt.BaseError as e:
            raise ExchangeError.from_exception(e) from e

    async def cancel_all_orders(self, symbol: str):
        exchange = self._ensure_exchange()
        try:
            await exchange.fapiPrivateDeleteAllOpenOrders({"symbol": symbol})
            algo_res = await exchange.fapiPrivateGetOpenAlgoOrders({"symbol": symbol})
        except ccxt.BaseError as e:
            raise ExchangeError.from_exception(e) from e

        algo_orders = algo_res.get("orders", []) if isinstance(algo_res, dict) else algo_res or []
        for order in algo_orders:
            await self.cancel_order(symbol, f"{ALGO_PREFIX}{order['algoId']}")
        logger.info(f"[binance] cancelled open orders on {symbol} ({len(algo_orders)} algo)")

    async def get_positions(self, symbol: str | None = None) -> list[Position]:
        exchange = self._ensure_exchange()
        params = {"symbol": symbol} if symbol else {}
        try:
            rows = await exchange.fapiPrivateV2GetPositionRisk(params)
        except ccxt.BaseError as e:
            raise ExchangeError.from_exception(e) from e

        positions = []
        for row in rows or []:
            amount = float(row.get("positionAmt") or 0)
            if amount == 0:
                continue
            positions.append(Position(
                symbol=row["symbol"],
                side=BUY if amount > 0 else SELL,
                size=abs(amount),
                entry_price=float(row.get("entryPrice") or 0),
                unrealized_pnl=float(row.get("unRealizedProfit") or 0),
                mark_price=float(row.get("markPrice") or 0),
                leverage=float(row.get("leverage") or 0),
            ))
        return positions

    async def get_order_status(self, symbol: str, order_id: str) -> str | None:
        exchange = self._ensure_exchange()
        try:
            if order_id.startswith(ALGO_PREFIX):
                resp = await exchange.fapiPrivateGetAlgoOrder({"algoId": order_id[len(ALGO_PREFIX):]})
                return _ALGO_STATUS.get(resp.get("algoStatus"))
            # /fapi/v1/order covers both open and historical orders
            resp = await exchange.fapiPrivateGetOrder({"symbol": symbol, "orderId": order_id})
            return _ORDER_STATUS.get(resp.get("status"))
        except ccxt.BaseError as e:
            logger.warning(f"[binance] status lookup for {order_id} on {symbol} failed: {e}")
            return None

    async def get_ticker(self, symbol: str) -> float:
        exchange = self._ensure_exchange()
        try:
            resp = await exchange.fapiPublicGetTickerPrice({"symbol": symbol})
        except ccxt.BaseError as e:
            raise ExchangeError.from_exception(e) from e
        return float(resp["price"])

    async def get_last_fill_price(self, symbol: str) -> float | None:
        exchange = self._ensure_exchange()
        try:
            fills = await exchange.fapiPrivateGetUserTrades({"symbol": symbol, "limit": 1})
        except ccxt.BaseError as e:
            raise ExchangeError.from_exception(e) from e
        if not fills:
            return None
        return float(fills[-1]["price"])

    async def get_balance(self) -> float:
        exchange = self._ensure_exchange()
        try:
            balances = await exchange.fapiPrivateV2GetBalance()
        except ccxt.BaseError as e:
            raise ExchangeError.from_exception(e) from e
        for row in balances or []:
            if row.get("asset") == "USDT":
                return float(row.get("availableBalance") or 0)
        return 0.0

    async def set_leverage(self, symbol: str, leverage: int):
        exchange = self._ensure_exchange()
        try:
            await exchange.fapiPrivatePostLeverage({"symbol": symbol, "leverage": leverage})
        except ccxt.BaseError as e:
            raise ExchangeError.from_exception(e) from e

    async def set_margin_mode(self, symbol: str, mode: str, leverage: int):
        exchange = self._ensure_exchange()
        margin_type = "ISOLATED" if mode == "ISOLATED" else "CROSSED"
        try:
            await exchange.fapiPrivatePostMarginType({"symbol": symbol, "marginType": margin_type})
        except ccxt.BaseError as e:
            error = ExchangeError.from_exception(e)
            # -4046: "No need to change margin type."
            if error.code != "-4046":
                raise error from e
        await self.set_leverage(symbol, leverage)

    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        exchange = self._ensure_exchange()
        try:
            info = await exchange.fapiPublicGetExchangeInfo()
        except ccxt.BaseError as e:
            raise ExchangeError.from_exception(e) from e

        for entry in info.get("symbols", []):
            if entry.get("symbol") != symbol:
                continue
            filters = {f["filterType"]: f for f in entry.get("filters", [])}
            lot = filters.get("LOT_SIZE", {})
            price_filter = filters.get("PRICE_FILTER", {})
            return SymbolRules(
                qty_step=Decimal(lot.get("stepSize") or DEFAULT_RULES.qty_step),
                price_tick=Decimal(price_filter.get("tickSize") or DEFAULT_RULES.price_tick),
                min_qty=Decimal(lot.get("minQty") or DEFAULT_RULES.min_qty),
            )
        raise ExchangeError(f"Unknown symbol {symbol}")

    async def place_stop_loss(
        self, symbol: str, side: str, quantity: str, stop_price: str
    ) -> ProtectiveOrderState:
        result = await self._place_conditional(symbol, side, "STOP_MARKET", quantity, stop_price)
        return single_order_or_raise(result)

    async def place_take_profit(
        self, symbol: str, side: str, quantity: str, price: str
    ) -> ProtectiveOrderState:
        result = await self._place_conditional(symbol, side, "TAKE_PROFIT_MARKET", quantity, price)
        return single_order_or_raise(result)

    async def place_take_profit_leg(
        self, symbol: str, side: str, quantity: str, price: str
    ) -> str:
        result = await self._place_conditional(symbol, side, "TAKE_PROFIT_MARKET", quantity, price)
        return single_order_or_raise(result).order_id

    async def close(self):
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None
