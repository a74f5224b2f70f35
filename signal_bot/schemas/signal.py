"""Pydantic schemas for incoming trade signals."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator


class Signal(BaseModel):
    strategy_id: int = Field(ge=1)
    symbol: str = Field(min_length=1, max_length=40)
    action: Literal["BUY", "SELL"]
    order_type: Literal["MARKET", "LIMIT"] = "MARKET"
    price: float | None = Field(default=None, gt=0)
    quantity: float | None = Field(default=None, gt=0)
    account_percentage: float | None = Field(default=None, gt=0, le=100)
    stop_loss: float | None = Field(default=None, gt=0)
    take_profit: float | None = Field(default=None, gt=0)

    @field_validator("action", "order_type", mode="before")
    @classmethod
    def _upper(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("symbol")
    @classmethod
    def _trim_symbol(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("price", "quantity", "account_percentage", "stop_loss", "take_profit", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        # TradingView templates send "" for unset placeholders
        if isinstance(value, str) and not value.strip():
            return None
        return value


class WebhookSignal(Signal):
    secret: str = ""


class SignalResult(BaseModel):
    status: Literal["success", "skipped", "error"]
    message: str
    trade_id: int | None = None
