"""Pydantic schemas for Strategy API."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class StrategyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    exchange: Literal["binance", "bybit"] = "binance"
    is_active: bool = True
    is_testnet: bool = True
    is_real_account: bool = False
    api_key: str = Field(min_length=1)  # raw key, encrypted before storage
    api_secret: str = Field(min_length=1)
    direction: Literal["LONG", "SHORT", "BOTH"] = "BOTH"
    leverage: int = Field(default=10, ge=1, le=125)
    margin_mode: Literal["ISOLATED", "CROSS"] = "ISOLATED"
    default_quantity: float = Field(default=0.002, gt=0)
    use_account_pct: bool = False
    account_pct: float = Field(default=10.0, gt=0, le=100)
    enable_compound: bool = True
    stop_loss_pct: float | None = Field(default=None, gt=0, lt=100)
    take_profit_pct_1: float | None = Field(default=None, gt=0)
    take_profit_pct_2: float | None = Field(default=None, gt=0)
    take_profit_pct_3: float | None = Field(default=None, gt=0)
    take_profit_qty_1: float = Field(default=33.0, ge=0, le=100)
    take_profit_qty_2: float = Field(default=33.0, ge=0, le=100)
    take_profit_qty_3: float = Field(default=34.0, ge=0, le=100)
    move_sl_to_breakeven: bool = False
    break_again: bool = False
    next_candle_entry: bool = False
    next_candle_pct: float = Field(default=0.0, ge=0, lt=100)
    trading_mode: Literal["CYCLE", "SINGLE"] = "CYCLE"
    allow_averaging: bool = False
    hedge_mode: bool = False
    pause_new_orders: bool = False

    @field_validator("name", "api_key", "api_secret")
    @classmethod
    def _trim_required_text(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @model_validator(mode="after")
    def _validate_take_profits(self):
        pcts = [p for p in (self.take_profit_pct_1, self.take_profit_pct_2, self.take_profit_pct_3) if p]
        if pcts != sorted(pcts) or len(set(pcts)) != len(pcts):
            raise ValueError("take-profit percentages must be strictly increasing")
        return self


class StrategyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    is_active: bool | None = None
    is_testnet: bool | None = None
    is_real_account: bool | None = None
    api_key: str | None = None
    api_secret: str | None = None
    direction: Literal["LONG", "SHORT", "BOTH"] | None = None
    leverage: int | None = Field(default=None, ge=1, le=125)
    margin_mode: Literal["ISOLATED", "CROSS"] | None = None
    default_quantity: float | None = Field(default=None, gt=0)
    use_account_pct: bool | None = None
    account_pct: float | None = Field(default=None, gt=0, le=100)
    enable_compound: bool | None = None
    stop_loss_pct: float | None = Field(default=None, gt=0, lt=100)
    take_profit_pct_1: float | None = Field(default=None, gt=0)
    take_profit_pct_2: float | None = Field(default=None, gt=0)
    take_profit_pct_3: float | None = Field(default=None, gt=0)
    take_profit_qty_1: float | None = Field(default=None, ge=0, le=100)
    take_profit_qty_2: float | None = Field(default=None, ge=0, le=100)
    take_profit_qty_3: float | None = Field(default=None, ge=0, le=100)
    move_sl_to_breakeven: bool | None = None
    break_again: bool | None = None
    next_candle_entry: bool | None = None
    next_candle_pct: float | None = Field(default=None, ge=0, lt=100)
    trading_mode: Literal["CYCLE", "SINGLE"] | None = None
    allow_averaging: bool | None = None
    hedge_mode: bool | None = None
    pause_new_orders: bool | None = None


class StrategyRead(BaseModel):
    id: int
    name: str
    exchange: str
    is_active: bool
    is_testnet: bool
    is_real_account: bool
    direction: str
    leverage: int
    margin_mode: str
    default_quantity: float
    use_account_pct: bool
    account_pct: float
    enable_compound: bool
    stop_loss_pct: float | None
    take_profit_pct_1: float | None
    take_profit_pct_2: float | None
    take_profit_pct_3: float | None
    take_profit_qty_1: float
    take_profit_qty_2: float
    take_profit_qty_3: float
    move_sl_to_breakeven: bool
    break_again: bool
    next_candle_entry: bool
    next_candle_pct: float
    trading_mode: str
    allow_averaging: bool
    hedge_mode: bool
    pause_new_orders: bool
    cycle_reset_at: datetime | None = None
    has_credentials: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
