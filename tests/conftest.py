"""Shared fixtures: in-memory ledger, scripted fake exchange, strategy factory."""

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from signal_bot.database import create_db_and_tables
from signal_bot.models.strategy import Strategy
from signal_bot.services.symbol_rules import Normalizer, SymbolRulesCache
from signal_bot.services.trade_ledger import TradeLedger
from signal_bot.utils.constants import BUY, OPEN
from tests.fakes import FakeAdapter


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(engine):
    return TradeLedger(engine)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def factory(adapter):
    return lambda strategy: adapter


@pytest.fixture
def normalizer():
    return Normalizer(SymbolRulesCache())


@pytest.fixture
def make_strategy(engine):
    def _make(**overrides) -> Strategy:
        fields = {
            "name": "test",
            "exchange": "binance",
            "api_key_encrypted": "enc-key",
            "api_secret_encrypted": "enc-secret",
        }
        fields.update(overrides)
        strategy = Strategy(**fields)
        with Session(engine, expire_on_commit=False) as session:
            session.add(strategy)
            session.commit()
            session.refresh(strategy)
        return strategy
    return _make


@pytest.fixture
def make_trade(ledger):
    def _make(strategy, **overrides):
        fields = {
            "strategy_id": strategy.id,
            "symbol": "BTCUSDT",
            "side": BUY,
            "entry_price": 50000.0,
            "quantity": 0.01,
            "status": OPEN,
        }
        fields.update(overrides)
        return ledger.create_trade(**fields)
    return _make
