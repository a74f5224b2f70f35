"""Trade history API, plus manual position sync."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from signal_bot.api.deps import require_api_token
from signal_bot.database import get_session
from signal_bot.models.trade import Trade

router = APIRouter(prefix="/api/trades", tags=["trades"], dependencies=[Depends(require_api_token)])


@router.get("")
def list_trades(
    strategy_id: int | None = None,
    status: str | None = None,
    symbol: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Trade).order_by(Trade.created_at.desc(), Trade.id.desc())
    if strategy_id is not None:
        stmt = stmt.where(Trade.strategy_id == strategy_id)
    if status is not None:
        stmt = stmt.where(Trade.status == status.upper())
    if symbol is not None:
        stmt = stmt.where(Trade.symbol == symbol.upper())
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/stats")
def trade_stats(strategy_id: int | None = None):
    from signal_bot.engine.runtime import ledger
    return ledger.trade_stats(strategy_id)


@router.post("/sync")
async def sync_positions():
    """Run one position-sync pass now. Skipped if a scheduled pass is running."""
    from signal_bot.engine.runtime import position_sync

    result = await position_sync.run()
    if result is None:
        return {"status": "skipped", "message": "Sync already in progress"}
    return {"status": "ok", **result.as_dict()}


@router.get("/sync/status")
def sync_status():
    from signal_bot.engine.runtime import position_sync
    return position_sync.status()


@router.get("/{trade_id}")
def get_trade(trade_id: int, session: Session = Depends(get_session)):
    trade = session.get(Trade, trade_id)
    if not trade:
        raise HTTPException(status_code=404, detail="Trade not found")
    return trade
