"""Technical indicators — EMA and MACD over a candle window. Pure functions, no I/O.

Every series has the same length as its input.  Entries without enough
history are ``None``; they are never coerced to 0.

The series are recomputed from the first candle of the window on every
call, so the EMA seed moves whenever the window is truncated.  Long-period
values are therefore an approximation that depends on the window size.
"""

from typing import Optional, Sequence

from candlepilot.strategy.models import Candle, IndicatorFrame


def ema_from_values(values: Sequence[Optional[float]], period: int) -> list[Optional[float]]:
    """Calculate an Exponential Moving Average over raw values.

    Uses the standard EMA formula:
        ``EMA_today = value × k + EMA_yesterday × (1 - k)``
    where ``k = 2 / (period + 1)``.

    Leading ``None`` values are skipped; the seed is the SMA of the first
    *period* defined values and sits at index ``first + period - 1``.  If
    fewer than *period* defined values follow the first one, the whole
    series is ``None``.

    Raises ``ValueError`` if *period* is not positive.
    """
    if period <= 0:
        raise ValueError(f"EMA period must be positive, got {period}")

    n = len(values)
    result: list[Optional[float]] = [None] * n

    first = next((i for i, v in enumerate(values) if v is not None), None)
    if first is None or n - first < period:
        return result

    seed_window = values[first : first + period]
    if any(v is None for v in seed_window):
        return result

    k = 2.0 / (period + 1)
    seed_idx = first + period - 1
    result[seed_idx] = sum(seed_window) / period

    for i in range(seed_idx + 1, n):
        value = values[i]
        prev = result[i - 1]
        if value is None or prev is None:
            # Gap in the input: undefined from here on
            break
        result[i] = value * k + prev * (1 - k)

    return result


def calculate_ema(candles: Sequence[Candle], period: int) -> list[Optional[float]]:
    """EMA of candle closes.  See :func:`ema_from_values`."""
    return ema_from_values([c.close for c in candles], period)


def calculate_macd(
    candles: Sequence[Candle],
    fast: int,
    slow: int,
    signal: int,
) -> tuple[list[Optional[float]], list[Optional[float]], list[Optional[float]]]:
    """Calculate the MACD triple.

    line      = EMA(fast) − EMA(slow)
    signal    = EMA(signal) of the line, starting at its first defined value
    histogram = line − signal

    Returns ``(line, signal, histogram)``, each the same length as
    *candles*.  Any undefined operand makes the result undefined.
    """
    ema_fast = calculate_ema(candles, fast)
    ema_slow = calculate_ema(candles, slow)

    line: list[Optional[float]] = [
        f - s if f is not None and s is not None else None
        for f, s in zip(ema_fast, ema_slow)
    ]
    signal_line = ema_from_values(line, signal)
    histogram: list[Optional[float]] = [
        m - s if m is not None and s is not None else None
        for m, s in zip(line, signal_line)
    ]
    return line, signal_line, histogram


def enrich(candles: Sequence[Candle], config) -> list[IndicatorFrame]:
    """Compute one ``IndicatorFrame`` per candle using *config*'s periods.

    *config* is a ``StrategyConfig`` (or any object with the period
    attributes).
    """
    if not candles:
        return []

    ema_short = calculate_ema(candles, config.ema_short_period)
    ema_mid = calculate_ema(candles, config.ema_mid_period)
    ema_long = calculate_ema(candles, config.ema_long_period)
    line, signal_line, histogram = calculate_macd(
        candles, config.macd_fast, config.macd_slow, config.macd_signal,
    )

    return [
        IndicatorFrame(
            ema_short=ema_short[i],
            ema_mid=ema_mid[i],
            ema_long=ema_long[i],
            macd_line=line[i],
            macd_signal=signal_line[i],
            macd_histogram=histogram[i],
        )
        for i in range(len(candles))
    ]
