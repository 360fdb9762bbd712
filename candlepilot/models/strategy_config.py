"""Strategy configuration dataclasses.

Represents one strategy instance in the multi-strategy registry.
"""

from dataclasses import asdict, dataclass, field, fields, replace

from candlepilot.strategy.signals import ENTRY_RULES


@dataclass(frozen=True)
class LevelConfig:
    """A take-profit or stop-loss level.

    ``percent`` is the price move from entry (in %) that triggers the level;
    ``fraction`` is the share of the initial quantity it closes.
    """

    label: str
    percent: float
    fraction: float


def _default_tp_levels() -> tuple[LevelConfig, ...]:
    return (
        LevelConfig(label="TP1", percent=2.0, fraction=0.5),
        LevelConfig(label="TP2", percent=5.0, fraction=0.5),
    )


def _default_sl_levels() -> tuple[LevelConfig, ...]:
    return (LevelConfig(label="SL1", percent=3.0, fraction=1.0),)


@dataclass(frozen=True)
class StrategyConfig:
    """Configuration for a single strategy instance.

    Each instance watches one ``symbol``/``timeframe`` kline stream and owns
    its own window, position and trade counters.
    """

    id: str
    name: str = "Strategy #1"
    symbol: str = "BTCUSDT"
    timeframe: str = "15m"
    trade_amount: float = 1000.0
    leverage: int = 5
    max_daily_trades: int = 5
    entry_rule: str = "ema_macd"  # signal registry key
    allow_long: bool = True
    allow_short: bool = True
    ema_short_period: int = 7
    ema_mid_period: int = 25
    ema_long_period: int = 99
    macd_fast: int = 50
    macd_slow: int = 150
    macd_signal: int = 9
    take_profit_levels: tuple[LevelConfig, ...] = field(default_factory=_default_tp_levels)
    stop_loss_levels: tuple[LevelConfig, ...] = field(default_factory=_default_sl_levels)
    trailing_stop_pct: float = 0.0  # 0 disables the trailing exit
    exit_on_reverse_signal: bool = False
    webhook_url: str = ""
    secret: str = ""

    def to_dict(self) -> dict:
        """Return a JSON-compatible dict (levels as lists of dicts)."""
        data = asdict(self)
        data["take_profit_levels"] = [asdict(lv) for lv in self.take_profit_levels]
        data["stop_loss_levels"] = [asdict(lv) for lv in self.stop_loss_levels]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StrategyConfig":
        """Build a config from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for key in ("take_profit_levels", "stop_loss_levels"):
            if key in kwargs:
                kwargs[key] = _parse_levels(kwargs[key])
        return cls(**kwargs)


def _parse_levels(raw) -> tuple[LevelConfig, ...]:
    levels = []
    for item in raw or ():
        if isinstance(item, LevelConfig):
            levels.append(item)
        else:
            levels.append(
                LevelConfig(
                    label=str(item["label"]),
                    percent=float(item["percent"]),
                    fraction=float(item["fraction"]),
                )
            )
    return tuple(levels)


def merge_config(config: StrategyConfig, updates: dict) -> StrategyConfig:
    """Apply a partial update to *config*.

    ``id`` can never be changed.  Unknown keys raise ``KeyError``.
    """
    known = {f.name for f in fields(StrategyConfig)}
    unknown = [k for k in updates if k not in known]
    if unknown:
        raise KeyError(f"Unknown config field(s): {', '.join(sorted(unknown))}")

    changes = {k: v for k, v in updates.items() if k != "id"}
    for key in ("take_profit_levels", "stop_loss_levels"):
        if key in changes:
            changes[key] = _parse_levels(changes[key])
    return replace(config, **changes)


_PERIOD_FIELDS = (
    "ema_short_period", "ema_mid_period", "ema_long_period",
    "macd_fast", "macd_slow", "macd_signal",
)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config: StrategyConfig) -> list[str]:
    """Return a list of human-readable problems (empty when valid).

    Wrong types are reported, never raised.
    """
    problems: list[str] = []

    for name in ("symbol", "timeframe"):
        value = getattr(config, name)
        if not isinstance(value, str) or not value:
            problems.append(f"{name} must be a non-empty string")

    if not _is_number(config.trade_amount):
        problems.append("trade_amount must be a number")
    elif config.trade_amount <= 0:
        problems.append("trade_amount must be positive")

    for name in ("leverage", "max_daily_trades"):
        if not _is_int(getattr(config, name)):
            problems.append(f"{name} must be an integer")
    if _is_int(config.max_daily_trades) and config.max_daily_trades < 0:
        problems.append("max_daily_trades must not be negative")

    for name in _PERIOD_FIELDS:
        value = getattr(config, name)
        if not _is_int(value):
            problems.append(f"{name} must be an integer")
        elif value <= 0:
            problems.append(f"{name} must be positive")

    if not _is_number(config.trailing_stop_pct):
        problems.append("trailing_stop_pct must be a number")
    elif config.trailing_stop_pct < 0:
        problems.append("trailing_stop_pct must not be negative")

    for name in ("allow_long", "allow_short", "exit_on_reverse_signal"):
        if not isinstance(getattr(config, name), bool):
            problems.append(f"{name} must be true or false")

    for kind, levels in (
        ("take_profit_levels", config.take_profit_levels),
        ("stop_loss_levels", config.stop_loss_levels),
    ):
        labels = [lv.label for lv in levels]
        if len(labels) != len(set(labels)):
            problems.append(f"{kind} labels must be unique")
        for lv in levels:
            if not _is_number(lv.percent) or lv.percent <= 0:
                problems.append(f"{kind} '{lv.label}': percent must be positive")
            if not _is_number(lv.fraction) or not 0 < lv.fraction <= 1:
                problems.append(f"{kind} '{lv.label}': fraction must be in (0, 1]")

    if not isinstance(config.entry_rule, str) or config.entry_rule not in ENTRY_RULES:
        problems.append(
            f"unknown entry_rule '{config.entry_rule}' "
            f"(available: {', '.join(ENTRY_RULES)})"
        )
    return problems
