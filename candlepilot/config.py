"""CandlePilot — application configuration.

Loads .env variables into a typed config object and reads the seed
strategies from ``strategies.json``.
Validates numeric variables on startup.
"""

import json
import logging
import os
import pathlib
from dataclasses import dataclass

from dotenv import load_dotenv

from candlepilot.models.strategy_config import StrategyConfig

logger = logging.getLogger("candlepilot.config")

_DEFAULT_STRATEGIES_PATH = str(
    pathlib.Path(__file__).resolve().parent.parent / "strategies.json"
)


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    binance_rest_base: str
    binance_ws_base: str
    db_path: str
    log_level: str
    api_port: int
    snapshot_interval_seconds: float
    max_window: int
    backfill_limit: int
    webhook_timeout_seconds: float
    strategies_path: str


def _env_number(name: str, default: str, cast, minimum: float = 0):
    raw = os.environ.get(name, default)
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}") from None
    if value <= minimum:
        raise ValueError(f"Environment variable {name} must be > {minimum}, got {value}")
    return value


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the variable when a
    numeric variable is malformed or out of range.
    """
    load_dotenv(dotenv_path=env_path)

    return Config(
        binance_rest_base=os.environ.get("BINANCE_REST_BASE", "https://fapi.binance.com/fapi/v1"),
        binance_ws_base=os.environ.get("BINANCE_WS_BASE", "wss://fstream.binance.com/stream?streams="),
        db_path=os.environ.get("DB_PATH", "data/candlepilot.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=_env_number("API_PORT", "3001", int),
        snapshot_interval_seconds=_env_number("SNAPSHOT_INTERVAL_SECONDS", "5", float),
        max_window=_env_number("MAX_WINDOW", "550", int),
        backfill_limit=_env_number("BACKFILL_LIMIT", "499", int),
        webhook_timeout_seconds=_env_number("WEBHOOK_TIMEOUT_SECONDS", "10", float),
        strategies_path=os.environ.get("STRATEGIES_PATH", _DEFAULT_STRATEGIES_PATH),
    )


def load_default_strategies(path: str | None = None) -> list[StrategyConfig]:
    """Read seed strategies from a JSON file.

    Expected shape: ``{"strategies": [{"id": ..., "symbol": ...}, ...]}``.
    Falls back to a single default strategy when the file is missing.
    """
    path = path or _DEFAULT_STRATEGIES_PATH
    file = pathlib.Path(path)
    if not file.exists():
        logger.info("No strategies file at %s, using the built-in default.", path)
        return [StrategyConfig(id="default")]

    data = json.loads(file.read_text(encoding="utf-8"))
    return [StrategyConfig.from_dict(item) for item in data.get("strategies", [])]
