"""CRUD API for strategies, plus pause/resume controls."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlmodel import Session, select

from signal_bot.api.deps import require_api_token
from signal_bot.database import get_session
from signal_bot.models.strategy import Strategy
from signal_bot.models.trade import Trade
from signal_bot.schemas.strategy import StrategyCreate, StrategyRead, StrategyUpdate
from signal_bot.services.encryption import encrypt
from signal_bot.utils.constants import OPEN

router = APIRouter(prefix="/api/strategies", tags=["strategies"], dependencies=[Depends(require_api_token)])


def _get_or_404(session: Session, strategy_id: int) -> Strategy:
    strategy = session.get(Strategy, strategy_id)
    if not strategy:
        raise HTTPException(status_code=404, detail="Strategy not found")
    return strategy


def _save(session: Session, strategy: Strategy) -> Strategy:
    strategy.updated_at = datetime.now(timezone.utc)
    session.add(strategy)
    session.commit()
    session.refresh(strategy)
    return strategy


@router.get("", response_model=list[StrategyRead])
def list_strategies(
    active: bool | None = None,
    session: Session = Depends(get_session),
):
    stmt = select(Strategy)
    if active is not None:
        stmt = stmt.where(Strategy.is_active == active)
    return session.exec(stmt).all()


@router.post("", response_model=StrategyRead, status_code=201)
def create_strategy(
    data: StrategyCreate,
    session: Session = Depends(get_session),
):
    payload = data.model_dump(exclude={"api_key", "api_secret"})
    strategy = Strategy(
        **payload,
        api_key_encrypted=encrypt(data.api_key),
        api_secret_encrypted=encrypt(data.api_secret),
    )
    session.add(strategy)
    session.commit()
    session.refresh(strategy)
    return strategy


@router.get("/{strategy_id}", response_model=StrategyRead)
def get_strategy(strategy_id: int, session: Session = Depends(get_session)):
    return _get_or_404(session, strategy_id)


@router.put("/{strategy_id}", response_model=StrategyRead)
def update_strategy(
    strategy_id: int,
    data: StrategyUpdate,
    session: Session = Depends(get_session),
):
    strategy = _get_or_404(session, strategy_id)
    update_data = data.model_dump(exclude_unset=True)

    for field, column in (("api_key", "api_key_encrypted"), ("api_secret", "api_secret_encrypted")):
        value = update_data.pop(field, None)
        if value:
            setattr(strategy, column, encrypt(value.strip()))

    # Validate the merged take-profit ladder so partial updates cannot break it.
    merged = {**strategy.model_dump(), **update_data, "api_key": "x", "api_secret": "x"}
    try:
        StrategyCreate.model_validate(merged)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))

    for key, value in update_data.items():
        setattr(strategy, key, value)
    return _save(session, strategy)


@router.delete("/{strategy_id}", status_code=204)
def delete_strategy(strategy_id: int, session: Session = Depends(get_session)):
    strategy = _get_or_404(session, strategy_id)

    open_trade = session.exec(
        select(Trade).where(Trade.strategy_id == strategy_id, Trade.status == OPEN)
    ).first()
    if open_trade:
        raise HTTPException(
            status_code=409,
            detail="Cannot delete strategy with open trades. Close them first.",
        )

    session.delete(strategy)
    session.commit()


@router.post("/{strategy_id}/pause", response_model=StrategyRead)
def pause_strategy(strategy_id: int, session: Session = Depends(get_session)):
    strategy = _get_or_404(session, strategy_id)
    strategy.pause_new_orders = True
    return _save(session, strategy)


@router.post("/{strategy_id}/resume", response_model=StrategyRead)
def resume_strategy(strategy_id: int, session: Session = Depends(get_session)):
    strategy = _get_or_404(session, strategy_id)
    strategy.pause_new_orders = False
    return _save(session, strategy)


@router.post("/{strategy_id}/reset-single", response_model=StrategyRead)
def reset_single_cycle(strategy_id: int, session: Session = Depends(get_session)):
    """Start a new SINGLE-mode cycle: trades closed before now no longer count."""
    strategy = _get_or_404(session, strategy_id)
    if strategy.trading_mode != "SINGLE":
        raise HTTPException(status_code=400, detail="Strategy is not in SINGLE mode")
    strategy.cycle_reset_at = datetime.now(timezone.utc)
    strategy.pause_new_orders = False
    return _save(session, strategy)


@router.post("/pause-all")
def pause_all(session: Session = Depends(get_session)):
    return _set_pause_all(session, True)


@router.post("/resume-all")
def resume_all(session: Session = Depends(get_session)):
    return _set_pause_all(session, False)


def _set_pause_all(session: Session, paused: bool) -> dict:
    strategies = session.exec(select(Strategy)).all()
    now = datetime.now(timezone.utc)
    for strategy in strategies:
        strategy.pause_new_orders = paused
        strategy.updated_at = now
        session.add(strategy)
    session.commit()
    return {"updated": len(strategies), "paused": paused}
