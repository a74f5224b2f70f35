"""Database models."""

from signal_bot.models.strategy import Strategy
from signal_bot.models.trade import Trade
from signal_bot.models.event_log import EventLog

__all__ = [
    "Strategy",
    "Trade",
    "EventLog",
]
