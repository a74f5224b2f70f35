"""System API — health check, scheduler status, event logs."""

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from signal_bot.api.deps import require_api_token
from signal_bot.database import get_session
from signal_bot.models.event_log import EventLog

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(require_api_token)])
def scheduler_status():
    """Current scheduler state with job details."""
    from signal_bot.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.get("/logs", dependencies=[Depends(require_api_token)])
def event_logs(
    strategy_id: int | None = None,
    trade_id: int | None = None,
    level: str | None = None,
    action: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(EventLog).order_by(EventLog.timestamp.desc(), EventLog.id.desc())
    if strategy_id is not None:
        stmt = stmt.where(EventLog.strategy_id == strategy_id)
    if trade_id is not None:
        stmt = stmt.where(EventLog.trade_id == trade_id)
    if level is not None:
        stmt = stmt.where(EventLog.level == level)
    if action is not None:
        stmt = stmt.where(EventLog.action == action)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()
