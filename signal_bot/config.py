"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'signal_bot.db'}"
    encryption_key: str = ""  # Fernet key; generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Shared secrets
    webhook_secret: str = ""
    api_token: str = ""

    # Loop intervals
    sync_interval_seconds: int = 10
    monitor_interval_seconds: int = 5

    # Execution
    flip_settle_seconds: float = 2.0
    min_notional: float = 10.0
    breakeven_offset_pct: float = 0.1
    sync_grace_seconds: int = 30
    symbol_rules_ttl_seconds: float | None = None  # None = keep for process lifetime

    model_config = {"env_prefix": "SB_", "env_file": ".env"}


settings = Settings()
