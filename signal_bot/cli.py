"""CLI tool for admin operations.

Usage:
    python -m signal_bot.cli add-strategy
    python -m signal_bot.cli sync
"""

import asyncio
import getpass
import sys

from pydantic import ValidationError
from sqlmodel import Session, select

from signal_bot.database import engine, create_db_and_tables
from signal_bot.models.strategy import Strategy
from signal_bot.schemas.strategy import StrategyCreate
from signal_bot.services.encryption import encrypt
from signal_bot.utils.logging import setup_logging


def _ask(prompt: str, default: str = "") -> str:
    suffix = f" [{default}]" if default else ""
    return input(f"{prompt}{suffix}: ").strip() or default


def _ask_bool(prompt: str, default: bool) -> bool:
    answer = _ask(f"{prompt} (y/n)", "y" if default else "n")
    return answer.lower().startswith("y")


def add_strategy():
    """Create a strategy interactively. Credentials are encrypted before storage."""
    create_db_and_tables()

    name = _ask("Strategy name")
    if not name:
        print("Name cannot be empty.")
        sys.exit(1)

    with Session(engine) as session:
        existing = session.exec(select(Strategy).where(Strategy.name == name)).first()
        if existing:
            print(f"Strategy '{name}' already exists (id={existing.id}).")
            sys.exit(1)

    raw = {
        "name": name,
        "exchange": _ask("Exchange (binance/bybit)", "binance").lower(),
        "is_testnet": _ask_bool("Use testnet", True),
        "api_key": getpass.getpass("API key: "),
        "api_secret": getpass.getpass("API secret: "),
        "direction": _ask("Direction (LONG/SHORT/BOTH)", "BOTH").upper(),
        "leverage": _ask("Leverage", "10"),
        "default_quantity": _ask("Default quantity", "0.002"),
        "stop_loss_pct": _ask("Stop-loss % (blank for none)") or None,
        "take_profit_pct_1": _ask("Take-profit 1 % (blank for none)") or None,
    }
    if raw["take_profit_pct_1"]:
        raw["take_profit_pct_2"] = _ask("Take-profit 2 % (blank for none)") or None
        if raw["take_profit_pct_2"]:
            raw["take_profit_pct_3"] = _ask("Take-profit 3 % (blank for none)") or None

    try:
        data = StrategyCreate.model_validate(raw)
    except ValidationError as e:
        print("Invalid strategy:")
        for err in e.errors(include_url=False):
            print(f"  {'.'.join(str(p) for p in err['loc'])}: {err['msg']}")
        sys.exit(1)

    strategy = Strategy(
        **data.model_dump(exclude={"api_key", "api_secret"}),
        api_key_encrypted=encrypt(data.api_key),
        api_secret_encrypted=encrypt(data.api_secret),
    )
    with Session(engine) as session:
        session.add(strategy)
        session.commit()
        session.refresh(strategy)

    print(f"\nStrategy '{strategy.name}' created with id {strategy.id}.")
    print(f"Webhook payloads must carry \"strategy_id\": {strategy.id}.")


def sync():
    """Run one position sync against every active strategy and print the counts."""
    setup_logging()
    create_db_and_tables()

    from signal_bot.engine.runtime import position_sync

    result = asyncio.run(position_sync.run())
    if result is None:
        print("Sync skipped: another run is in progress.")
        return
    for key, value in result.as_dict().items():
        print(f"{key:>13}: {value}")


COMMANDS = {
    "add-strategy": add_strategy,
    "sync": sync,
}


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m signal_bot.cli <command>")
        print(f"Commands: {', '.join(COMMANDS)}")
        sys.exit(1)

    command = COMMANDS.get(sys.argv[1])
    if command is None:
        print(f"Unknown command: {sys.argv[1]}")
        sys.exit(1)
    command()


if __name__ == "__main__":
    main()
