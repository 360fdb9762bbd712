"""Bar window — capped, strictly time-ordered candle sequence. Pure functions, no I/O."""

from typing import Sequence

from candlepilot.strategy.models import Candle

DEFAULT_MAX_WINDOW = 550


def merge_bar(
    window: Sequence[Candle],
    candle: Candle,
    max_window: int = DEFAULT_MAX_WINDOW,
) -> tuple[Candle, ...]:
    """Merge *candle* into *window* and return the new window.

    Rules:
        - same ``open_time`` as the last bar → replace it in place
          (partial intra-bar update, or the final version of the bar);
        - newer ``open_time`` → append;
        - older ``open_time`` → ignored (the window stays strictly
          increasing).

    The result is truncated to the newest *max_window* candles.
    """
    if window:
        last = window[-1]
        if candle.open_time == last.open_time:
            merged = tuple(window[:-1]) + (candle,)
        elif candle.open_time > last.open_time:
            merged = tuple(window) + (candle,)
        else:
            return tuple(window)
    else:
        merged = (candle,)

    if max_window > 0 and len(merged) > max_window:
        merged = merged[-max_window:]
    return merged


def merge_backfill(
    backfill: Sequence[Candle],
    live: Sequence[Candle],
    max_window: int = DEFAULT_MAX_WINDOW,
) -> tuple[Candle, ...]:
    """Install a backfilled window, then replay *live* bars received meanwhile.

    Live bars at or after the last backfilled ``open_time`` win over the
    backfilled version of the same bar.
    """
    window: tuple[Candle, ...] = ()
    for candle in sorted(backfill, key=lambda c: c.open_time):
        window = merge_bar(window, candle, max_window)
    for candle in live:
        window = merge_bar(window, candle, max_window)
    return window
