"""Webhook API — receives TradingView-style trade signals."""

from fastapi import APIRouter, HTTPException

from signal_bot.api.deps import check_webhook_secret
from signal_bot.schemas.signal import Signal, SignalResult, WebhookSignal

router = APIRouter(prefix="/api/webhook", tags=["webhook"])


@router.post("/tradingview", response_model=SignalResult)
async def receive_signal(payload: WebhookSignal):
    check_webhook_secret(payload.secret)

    from signal_bot.engine.order_execution import StrategyNotFoundError
    from signal_bot.engine.runtime import order_executor
    from signal_bot.services.encryption import CredentialError

    signal = Signal.model_validate(payload.model_dump(exclude={"secret"}))
    try:
        return await order_executor.process_signal(signal)
    except StrategyNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CredentialError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/tradingview/health")
def webhook_health():
    return {"status": "ok"}
