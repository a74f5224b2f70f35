"""Shared constants for trades, strategies and exchanges."""

EXCHANGES = ["binance", "bybit"]

BUY = "BUY"
SELL = "SELL"
SIDES = [BUY, SELL]

MARKET = "MARKET"
LIMIT = "LIMIT"
ORDER_TYPES = [MARKET, LIMIT]

DIRECTIONS = ["LONG", "SHORT", "BOTH"]
MARGIN_MODES = ["ISOLATED", "CROSS"]
TRADING_MODES = ["CYCLE", "SINGLE"]

# Trade status
OPEN = "OPEN"
CLOSED = "CLOSED"
SIMULATED = "SIMULATED"
ERROR = "ERROR"
TRADE_STATUSES = [OPEN, CLOSED, SIMULATED, ERROR]

# Close reasons
STOP_LOSS = "STOP_LOSS"
TAKE_PROFIT = "TAKE_PROFIT"
MANUAL = "MANUAL"
SIGNAL = "SIGNAL"
LIQUIDATION = "LIQUIDATION"


def take_profit_reason(level: int) -> str:
    return f"TAKE_PROFIT_{level}"


# Canonical order statuses returned by exchange adapters
ORDER_NEW = "NEW"
ORDER_PARTIALLY_FILLED = "PARTIALLY_FILLED"
ORDER_FILLED = "FILLED"
ORDER_CANCELED = "CANCELED"
ORDER_EXPIRED = "EXPIRED"
PENDING_ORDER_STATUSES = {ORDER_NEW, ORDER_PARTIALLY_FILLED}
DEAD_ORDER_STATUSES = {ORDER_CANCELED, ORDER_EXPIRED}

# Symbol rule fallbacks when the exchange lookup fails
DEFAULT_QTY_STEP = "0.001"
DEFAULT_PRICE_TICK = "0.01"
DEFAULT_MIN_QTY = "0.001"

# Remaining quantity at or below this is treated as flat
QTY_EPSILON = 1e-9


def opposite_side(side: str) -> str:
    return SELL if side == BUY else BUY
