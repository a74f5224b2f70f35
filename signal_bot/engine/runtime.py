"""Process-wide engine instances wired to the configured database."""

from signal_bot.config import settings
from signal_bot.database import engine
from signal_bot.engine.order_execution import OrderExecutor
from signal_bot.engine.position_sync import PositionSync
from signal_bot.engine.stop_loss import StopLossMonitor
from signal_bot.engine.take_profit import TakeProfitMonitor
from signal_bot.services.exchange import build_adapter
from signal_bot.services.symbol_rules import Normalizer, SymbolRulesCache
from signal_bot.services.trade_ledger import TradeLedger

ledger = TradeLedger(engine)
rules_cache = SymbolRulesCache(ttl_seconds=settings.symbol_rules_ttl_seconds)
normalizer = Normalizer(rules_cache)

order_executor = OrderExecutor(ledger, build_adapter, normalizer)
position_sync = PositionSync(ledger, build_adapter)
stop_loss_monitor = StopLossMonitor(ledger, build_adapter, normalizer)
take_profit_monitor = TakeProfitMonitor(ledger, build_adapter, normalizer)
