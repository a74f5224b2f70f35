"""Tests for the HTTP surface: webhook auth, strategy CRUD and trade endpoints."""

from unittest.mock import AsyncMock

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlmodel import Session

from signal_bot.config import settings
from signal_bot.database import get_session
from signal_bot.engine import runtime
from signal_bot.engine.order_execution import StrategyNotFoundError
from signal_bot.engine.position_sync import SyncResult
from signal_bot.main import app
from signal_bot.schemas.signal import SignalResult
from signal_bot.services import encryption
from signal_bot.utils.constants import BUY, CLOSED

PAYLOAD = {"strategy_id": 1, "symbol": "BTCUSDT.P", "action": "buy", "secret": "s3cret"}


@pytest.fixture
def client(engine, monkeypatch):
    def _session():
        with Session(engine) as session:
            yield session

    monkeypatch.setattr(settings, "webhook_secret", "s3cret")
    monkeypatch.setattr(settings, "api_token", "")
    monkeypatch.setattr(settings, "encryption_key", Fernet.generate_key().decode())
    encryption.reset_cipher()
    app.dependency_overrides[get_session] = _session
    # No context manager: the lifespan (scheduler, startup sync) stays off
    yield TestClient(app)
    app.dependency_overrides.clear()
    encryption.reset_cipher()


# ---------------------------------------------------------------------------
# 1. Webhook
# ---------------------------------------------------------------------------

def test_webhook_rejects_wrong_secret(client):
    resp = client.post("/api/webhook/tradingview", json={**PAYLOAD, "secret": "nope"})
    assert resp.status_code == 401


def test_webhook_unavailable_without_configured_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "")
    resp = client.post("/api/webhook/tradingview", json=PAYLOAD)
    assert resp.status_code == 503


def test_webhook_passes_signal_without_secret(client, monkeypatch):
    process = AsyncMock(return_value=SignalResult(status="success", message="ok", trade_id=7))
    monkeypatch.setattr(runtime.order_executor, "process_signal", process)

    resp = client.post("/api/webhook/tradingview", json={**PAYLOAD, "quantity": "", "price": "50000"})

    assert resp.status_code == 200
    assert resp.json() == {"status": "success", "message": "ok", "trade_id": 7}
    signal = process.await_args.args[0]
    assert signal.action == BUY
    assert signal.quantity is None
    assert signal.price == 50000.0
    assert not hasattr(signal, "secret")


def test_webhook_unknown_strategy_is_404(client, monkeypatch):
    process = AsyncMock(side_effect=StrategyNotFoundError("Strategy 1 not found"))
    monkeypatch.setattr(runtime.order_executor, "process_signal", process)

    resp = client.post("/api/webhook/tradingview", json=PAYLOAD)

    assert resp.status_code == 404


def test_webhook_rejects_bad_action(client):
    resp = client.post("/api/webhook/tradingview", json={**PAYLOAD, "action": "hold"})
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# 2. Strategies
# ---------------------------------------------------------------------------

NEW_STRATEGY = {
    "name": "btc-scalper",
    "exchange": "binance",
    "api_key": "key",
    "api_secret": "secret",
    "take_profit_pct_1": 1.0,
    "take_profit_pct_2": 2.0,
}


def test_create_strategy_hides_credentials(client):
    resp = client.post("/api/strategies", json=NEW_STRATEGY)

    assert resp.status_code == 201
    body = resp.json()
    assert body["has_credentials"] is True
    assert "api_key" not in body and "api_key_encrypted" not in body


def test_take_profit_levels_must_increase(client):
    resp = client.post("/api/strategies", json={**NEW_STRATEGY, "take_profit_pct_2": 0.5})
    assert resp.status_code == 422

    strategy_id = client.post("/api/strategies", json=NEW_STRATEGY).json()["id"]
    resp = client.put(f"/api/strategies/{strategy_id}", json={"take_profit_pct_1": 3.0})
    assert resp.status_code == 422


def test_pause_and_reset_single(client):
    strategy_id = client.post("/api/strategies", json={**NEW_STRATEGY, "trading_mode": "SINGLE"}).json()["id"]

    assert client.post(f"/api/strategies/{strategy_id}/pause").json()["pause_new_orders"] is True
    body = client.post(f"/api/strategies/{strategy_id}/reset-single").json()
    assert body["pause_new_orders"] is False
    assert body["trading_mode"] == "SINGLE"
    assert body["cycle_reset_at"] is not None


def test_delete_strategy_with_open_trade_conflicts(client, ledger):
    strategy_id = client.post("/api/strategies", json=NEW_STRATEGY).json()["id"]
    ledger.create_trade(strategy_id=strategy_id, symbol="BTCUSDT", side=BUY, quantity=0.01)

    assert client.delete(f"/api/strategies/{strategy_id}").status_code == 409


def test_admin_routes_require_token_when_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "api_token", "admin")

    assert client.get("/api/strategies").status_code == 401
    assert client.get("/api/strategies", headers={"X-API-Token": "admin"}).status_code == 200
    assert client.get("/api/system/health").status_code == 200


# ---------------------------------------------------------------------------
# 3. Trades and sync
# ---------------------------------------------------------------------------

def test_list_trades_filters_by_status(client, ledger, make_strategy):
    strategy = make_strategy()
    ledger.create_trade(strategy_id=strategy.id, symbol="BTCUSDT", side=BUY, quantity=0.01)
    done = ledger.create_trade(strategy_id=strategy.id, symbol="ETHUSDT", side=BUY, quantity=0.1)
    ledger.close_trade(done.id, exit_price=3100.0, pnl=10.0, reason="MANUAL")

    resp = client.get("/api/trades", params={"status": "closed"})

    assert [t["id"] for t in resp.json()] == [done.id]
    assert resp.json()[0]["status"] == CLOSED
    assert client.get("/api/trades/999").status_code == 404


def test_forced_sync_reports_counts(client, monkeypatch):
    monkeypatch.setattr(runtime.position_sync, "run", AsyncMock(return_value=SyncResult(closed=2)))

    resp = client.post("/api/trades/sync")

    assert resp.json() == {"status": "ok", "synced": 0, "closed": 2, "imported": 0, "consolidated": 0}


def test_forced_sync_skipped_while_running(client, monkeypatch):
    monkeypatch.setattr(runtime.position_sync, "run", AsyncMock(return_value=None))

    assert client.post("/api/trades/sync").json()["status"] == "skipped"
    assert "in_progress" in client.get("/api/trades/sync/status").json()
