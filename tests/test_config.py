"""Tests for candlepilot.config and the strategy config model."""

import json

import pytest

from candlepilot.config import load_config, load_default_strategies
from candlepilot.models.strategy_config import (
    LevelConfig,
    StrategyConfig,
    merge_config,
    validate_config,
)

_ENV_VARS = [
    "BINANCE_REST_BASE",
    "BINANCE_WS_BASE",
    "DB_PATH",
    "LOG_LEVEL",
    "API_PORT",
    "SNAPSHOT_INTERVAL_SECONDS",
    "MAX_WINDOW",
    "BACKFILL_LIMIT",
    "WEBHOOK_TIMEOUT_SECONDS",
    "STRATEGIES_PATH",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Ensure CandlePilot env vars are cleared between tests."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


# ── Environment ──────────────────────────────────────────────────────────


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        cfg = load_config(str(tmp_path / "missing.env"))
        assert cfg.binance_rest_base == "https://fapi.binance.com/fapi/v1"
        assert cfg.binance_ws_base == "wss://fstream.binance.com/stream?streams="
        assert cfg.db_path == "data/candlepilot.db"
        assert cfg.api_port == 3001
        assert cfg.snapshot_interval_seconds == 5.0
        assert cfg.max_window == 550
        assert cfg.backfill_limit == 499
        assert cfg.webhook_timeout_seconds == 10.0

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DB_PATH", ":memory:")
        monkeypatch.setenv("MAX_WINDOW", "300")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        cfg = load_config(str(tmp_path / "missing.env"))
        assert cfg.db_path == ":memory:"
        assert cfg.max_window == 300
        assert cfg.log_level == "DEBUG"

    def test_reads_env_file(self, monkeypatch, tmp_path):
        # Register the vars with monkeypatch so values loaded from the file are undone
        for var in ("API_PORT", "BACKFILL_LIMIT"):
            monkeypatch.setenv(var, "1")
            monkeypatch.delenv(var)
        env_file = tmp_path / ".env"
        env_file.write_text("API_PORT=4100\nBACKFILL_LIMIT=200\n", encoding="utf-8")
        cfg = load_config(str(env_file))
        assert cfg.api_port == 4100
        assert cfg.backfill_limit == 200

    def test_malformed_number_names_variable(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MAX_WINDOW", "lots")
        with pytest.raises(ValueError, match="MAX_WINDOW"):
            load_config(str(tmp_path / "missing.env"))

    def test_non_positive_number_rejected(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SNAPSHOT_INTERVAL_SECONDS", "0")
        with pytest.raises(ValueError, match="SNAPSHOT_INTERVAL_SECONDS"):
            load_config(str(tmp_path / "missing.env"))


class TestLoadDefaultStrategies:
    def test_reads_file(self, tmp_path):
        path = tmp_path / "strategies.json"
        path.write_text(json.dumps({"strategies": [
            {"id": "a", "symbol": "ETHUSDT", "timeframe": "1h"},
            {"id": "b", "take_profit_levels": [{"label": "T", "percent": 1, "fraction": 1}]},
        ]}), encoding="utf-8")
        strategies = load_default_strategies(str(path))
        assert [s.id for s in strategies] == ["a", "b"]
        assert strategies[0].symbol == "ETHUSDT"
        assert strategies[1].take_profit_levels == (LevelConfig("T", 1.0, 1.0),)

    def test_missing_file_falls_back(self, tmp_path):
        strategies = load_default_strategies(str(tmp_path / "nope.json"))
        assert len(strategies) == 1
        assert strategies[0].id == "default"

    def test_shipped_file_is_valid(self):
        for strategy in load_default_strategies():
            assert validate_config(strategy) == []


# ── Strategy config ──────────────────────────────────────────────────────


class TestStrategyConfig:
    def test_defaults(self):
        cfg = StrategyConfig(id="x")
        assert (cfg.ema_short_period, cfg.ema_mid_period, cfg.ema_long_period) == (7, 25, 99)
        assert (cfg.macd_fast, cfg.macd_slow, cfg.macd_signal) == (50, 150, 9)
        assert cfg.leverage == 5
        assert validate_config(cfg) == []

    def test_dict_round_trip_keeps_levels(self):
        cfg = StrategyConfig(id="x", stop_loss_levels=(LevelConfig("SL", 2.0, 0.5),))
        restored = StrategyConfig.from_dict(json.loads(json.dumps(cfg.to_dict())))
        assert restored == cfg

    def test_from_dict_ignores_unknown_keys(self):
        cfg = StrategyConfig.from_dict({"id": "x", "colour": "blue"})
        assert cfg.id == "x"

    def test_merge_partial_update(self):
        cfg = merge_config(StrategyConfig(id="x"), {"trade_amount": 50.0, "id": "y"})
        assert cfg.trade_amount == 50.0
        assert cfg.id == "x"

    def test_merge_unknown_field(self):
        with pytest.raises(KeyError, match="colour"):
            merge_config(StrategyConfig(id="x"), {"colour": "blue"})

    def test_validation_problems(self):
        cfg = StrategyConfig(
            id="x",
            symbol="",
            trade_amount=0,
            ema_short_period=0,
            entry_rule="astrology",
            take_profit_levels=(LevelConfig("T", 1.0, 0.5), LevelConfig("T", -1.0, 1.5)),
        )
        problems = " | ".join(validate_config(cfg))
        assert "symbol" in problems
        assert "trade_amount" in problems
        assert "ema_short_period" in problems
        assert "astrology" in problems
        assert "unique" in problems
        assert "percent" in problems
        assert "fraction" in problems

    def test_wrong_types_reported_not_raised(self):
        cfg = StrategyConfig(
            id="x",
            trade_amount="1000",
            ema_short_period=2.5,
            leverage=True,
            allow_long="yes",
        )
        problems = validate_config(cfg)
        assert "trade_amount must be a number" in problems
        assert "ema_short_period must be an integer" in problems
        assert "leverage must be an integer" in problems
        assert "allow_long must be true or false" in problems
