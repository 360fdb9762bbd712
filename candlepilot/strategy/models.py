"""Strategy data models — typed representations for candles, indicators, positions and actions."""

from dataclasses import asdict, dataclass, field
from typing import Optional


FLAT = "FLAT"
LONG = "LONG"
SHORT = "SHORT"
DIRECTIONS = (FLAT, LONG, SHORT)


@dataclass(frozen=True)
class Candle:
    """A single kline bar.  ``open_time`` is epoch milliseconds."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    is_final: bool = True


@dataclass(frozen=True)
class IndicatorFrame:
    """Derived indicator values for one candle.

    ``None`` means the value is undefined (not enough history).
    """

    ema_short: Optional[float] = None
    ema_mid: Optional[float] = None
    ema_long: Optional[float] = None
    macd_line: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None


@dataclass(frozen=True)
class PositionState:
    """Open position of one strategy instance.

    ``FLAT`` ⇔ ``remaining_quantity == 0``.  The hit sets record which
    take-profit / stop-loss levels already fired for the current position.
    """

    direction: str = FLAT
    initial_quantity: float = 0.0
    remaining_quantity: float = 0.0
    entry_price: float = 0.0
    highest_price: float = 0.0
    lowest_price: float = 0.0
    open_time: int = 0
    tp_levels_hit: frozenset[str] = field(default_factory=frozenset)
    sl_levels_hit: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_flat(self) -> bool:
        return self.direction == FLAT

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tp_levels_hit"] = sorted(self.tp_levels_hit)
        data["sl_levels_hit"] = sorted(self.sl_levels_hit)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PositionState":
        direction = data.get("direction", FLAT)
        if direction not in DIRECTIONS:
            raise ValueError(f"Unknown position direction: {direction!r}")
        return cls(
            direction=direction,
            initial_quantity=float(data.get("initial_quantity", 0.0)),
            remaining_quantity=float(data.get("remaining_quantity", 0.0)),
            entry_price=float(data.get("entry_price", 0.0)),
            highest_price=float(data.get("highest_price", 0.0)),
            lowest_price=float(data.get("lowest_price", 0.0)),
            open_time=int(data.get("open_time", 0)),
            tp_levels_hit=frozenset(data.get("tp_levels_hit", ())),
            sl_levels_hit=frozenset(data.get("sl_levels_hit", ())),
        )


@dataclass(frozen=True)
class TradeStats:
    """Daily trade counter.  ``last_trade_date`` is a local ``YYYY-MM-DD``."""

    daily_trade_count: int = 0
    last_trade_date: str = ""
    last_exit_bar_time: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TradeStats":
        return cls(
            daily_trade_count=int(data.get("daily_trade_count", 0)),
            last_trade_date=str(data.get("last_trade_date", "")),
            last_exit_bar_time=int(data.get("last_exit_bar_time", 0)),
        )


@dataclass(frozen=True)
class EmittedAction:
    """A webhook payload produced by one state transition."""

    secret: str
    action: str  # "buy", "sell" or "buy_to_cover"
    position: str  # "long", "short" or "flat"
    symbol: str
    trade_amount: float
    leverage: int
    timestamp: str
    strategy_name: str
    level_label: str
    execution_price: float
    execution_quantity: float
    exchange: str = "BINANCE"

    @property
    def is_manual(self) -> bool:
        return self.strategy_name == MANUAL_STRATEGY_NAME

    def to_payload(self) -> dict:
        """Return the JSON body posted to the webhook endpoint."""
        return {
            "secret": self.secret,
            "action": self.action,
            "position": self.position,
            "symbol": self.symbol,
            "trade_amount": self.trade_amount,
            "leverage": self.leverage,
            "timestamp": self.timestamp,
            "tv_exchange": self.exchange,
            "strategy_name": self.strategy_name,
            "tp_level": self.level_label,
            "execution_price": self.execution_price,
            "execution_quantity": self.execution_quantity,
        }


MANUAL_STRATEGY_NAME = "Manual_Override"
MANUAL_LEVEL_LABEL = "Manual"
