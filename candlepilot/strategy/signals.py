"""Entry rules — map the latest enriched bar to a directional signal.

Each rule takes the candle window and its indicator frames (same length)
and returns ``"long"``, ``"short"`` or ``None``.  A rule that reads an
undefined indicator returns ``None``: missing data is never a trigger.
"""

from typing import Callable, Optional, Sequence

from candlepilot.strategy.models import Candle, IndicatorFrame

EntryRule = Callable[[Sequence[Candle], Sequence[IndicatorFrame]], Optional[str]]


def _defined(*values) -> bool:
    return all(v is not None for v in values)


def ema_trend(candles: Sequence[Candle], frames: Sequence[IndicatorFrame]) -> Optional[str]:
    """Stacked EMAs with price on the right side of the fast one.

    - **long**:  close > EMA(short) > EMA(mid) > EMA(long)
    - **short**: close < EMA(short) < EMA(mid) < EMA(long)
    """
    if not candles or not frames:
        return None
    f = frames[-1]
    close = candles[-1].close
    if not _defined(f.ema_short, f.ema_mid, f.ema_long):
        return None

    if close > f.ema_short > f.ema_mid > f.ema_long:
        return "long"
    if close < f.ema_short < f.ema_mid < f.ema_long:
        return "short"
    return None


def ema_cross(candles: Sequence[Candle], frames: Sequence[IndicatorFrame]) -> Optional[str]:
    """EMA(short) crossing EMA(mid) between the previous and the latest bar."""
    if len(frames) < 2:
        return None
    prev, cur = frames[-2], frames[-1]
    if not _defined(prev.ema_short, prev.ema_mid, cur.ema_short, cur.ema_mid):
        return None

    if prev.ema_short <= prev.ema_mid and cur.ema_short > cur.ema_mid:
        return "long"
    if prev.ema_short >= prev.ema_mid and cur.ema_short < cur.ema_mid:
        return "short"
    return None


def macd_cross(candles: Sequence[Candle], frames: Sequence[IndicatorFrame]) -> Optional[str]:
    """MACD histogram changing sign between the previous and the latest bar."""
    if len(frames) < 2:
        return None
    prev, cur = frames[-2].macd_histogram, frames[-1].macd_histogram
    if not _defined(prev, cur):
        return None

    if prev <= 0 < cur:
        return "long"
    if prev >= 0 > cur:
        return "short"
    return None


def ema_macd(candles: Sequence[Candle], frames: Sequence[IndicatorFrame]) -> Optional[str]:
    """EMA trend confirmed by MACD momentum.

    The EMA stack decides the direction; MACD line and histogram must
    agree in sign (both > 0 for long, both < 0 for short).
    """
    direction = ema_trend(candles, frames)
    if direction is None:
        return None
    f = frames[-1]
    if not _defined(f.macd_line, f.macd_histogram):
        return None

    if direction == "long" and f.macd_line > 0 and f.macd_histogram > 0:
        return "long"
    if direction == "short" and f.macd_line < 0 and f.macd_histogram < 0:
        return "short"
    return None


ENTRY_RULES: dict[str, EntryRule] = {
    "ema_trend": ema_trend,
    "ema_cross": ema_cross,
    "macd_cross": macd_cross,
    "ema_macd": ema_macd,
}


def get_entry_rule(name: str) -> EntryRule:
    """Look up an entry rule by registry key.

    Raises ``KeyError`` if the rule name is not registered.
    """
    if name not in ENTRY_RULES:
        raise KeyError(
            f"Unknown entry rule '{name}'. "
            f"Available: {', '.join(ENTRY_RULES.keys())}"
        )
    return ENTRY_RULES[name]
