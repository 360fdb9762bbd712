"""Tests for candlepilot.strategy.window — bar merge rules and the window cap."""

from candlepilot.strategy.models import Candle
from candlepilot.strategy.window import merge_backfill, merge_bar


def _bar(minute: int, close: float = 100.0, is_final: bool = True) -> Candle:
    return Candle(
        open_time=minute * 60_000, open=close, high=close, low=close,
        close=close, volume=1.0, is_final=is_final,
    )


class TestMergeBar:
    def test_append_newer_bar(self):
        window = merge_bar((_bar(0),), _bar(1))
        assert [c.open_time for c in window] == [0, 60_000]

    def test_same_open_time_replaces_last(self):
        window = merge_bar((_bar(0), _bar(1, 100.0, is_final=False)), _bar(1, 105.0))
        assert len(window) == 2
        assert window[-1].close == 105.0
        assert window[-1].is_final

    def test_older_bar_ignored(self):
        window = (_bar(0), _bar(2))
        assert merge_bar(window, _bar(1)) == window

    def test_first_bar_into_empty_window(self):
        assert merge_bar((), _bar(3)) == (_bar(3),)

    def test_truncates_to_max_window(self):
        window = ()
        for minute in range(10):
            window = merge_bar(window, _bar(minute), max_window=4)
        assert len(window) == 4
        assert window[0].open_time == 6 * 60_000
        assert window[-1].open_time == 9 * 60_000

    def test_strictly_increasing(self):
        window = ()
        for minute in (0, 1, 1, 3, 2, 4):
            window = merge_bar(window, _bar(minute))
        times = [c.open_time for c in window]
        assert times == sorted(set(times))


class TestMergeBackfill:
    def test_live_bars_replayed_on_top(self):
        backfill = [_bar(0), _bar(1), _bar(2, 100.0)]
        live = (_bar(2, 101.0), _bar(3, 102.0))
        window = merge_backfill(backfill, live)
        assert [c.open_time // 60_000 for c in window] == [0, 1, 2, 3]
        assert window[2].close == 101.0

    def test_unsorted_backfill_sorted(self):
        window = merge_backfill([_bar(2), _bar(0), _bar(1)], ())
        assert [c.open_time // 60_000 for c in window] == [0, 1, 2]

    def test_backfill_respects_cap(self):
        window = merge_backfill([_bar(m) for m in range(20)], (), max_window=5)
        assert len(window) == 5
        assert window[-1].open_time == 19 * 60_000
