"""Strategy model — per-webhook trading configuration."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Strategy(SQLModel, table=True):
    __tablename__ = "strategy"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    exchange: str = "binance"  # "binance" | "bybit"
    is_active: bool = True
    is_testnet: bool = True
    is_real_account: bool = False

    # Credentials (Fernet-encrypted, decrypted only by the adapter factory)
    api_key_encrypted: str = ""
    api_secret_encrypted: str = ""

    direction: str = "BOTH"  # "LONG" | "SHORT" | "BOTH"
    leverage: int = 10
    margin_mode: str = "ISOLATED"  # "ISOLATED" | "CROSS"

    # Sizing
    default_quantity: float = 0.002
    use_account_pct: bool = False
    account_pct: float = 10.0
    enable_compound: bool = True

    # Protection
    stop_loss_pct: float | None = None
    take_profit_pct_1: float | None = None
    take_profit_pct_2: float | None = None
    take_profit_pct_3: float | None = None
    take_profit_qty_1: float = 33.0
    take_profit_qty_2: float = 33.0
    take_profit_qty_3: float = 34.0
    move_sl_to_breakeven: bool = False
    break_again: bool = False

    # Entry
    next_candle_entry: bool = False
    next_candle_pct: float = 0.0

    trading_mode: str = "CYCLE"  # "CYCLE" | "SINGLE"
    allow_averaging: bool = False
    hedge_mode: bool = False
    pause_new_orders: bool = False
    cycle_reset_at: datetime | None = None  # SINGLE mode counts closed trades after this

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def take_profit_levels(self) -> list[tuple[int, float, float]]:
        """Configured (level, price_pct, close_qty_pct) triples, ascending."""
        levels = []
        for level in (1, 2, 3):
            pct = getattr(self, f"take_profit_pct_{level}")
            qty_pct = getattr(self, f"take_profit_qty_{level}")
            if pct and pct > 0 and qty_pct and qty_pct > 0:
                levels.append((level, pct, qty_pct))
        return levels

    def allows_side(self, side: str) -> bool:
        if self.direction == "LONG":
            return side == "BUY"
        if self.direction == "SHORT":
            return side == "SELL"
        return True

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key_encrypted and self.api_secret_encrypted)

    @property
    def execution_enabled(self) -> bool:
        return self.is_testnet or self.is_real_account
