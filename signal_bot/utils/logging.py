"""Logging setup for the service."""

import logging

from signal_bot.config import settings

_NOISY_LOGGERS = ("apscheduler", "ccxt", "httpx", "urllib3", "asyncio")
_configured = False


def setup_logging(level: str | None = None):
    """Configure the root logger once from settings."""
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True
