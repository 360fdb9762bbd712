"""Tests for the risk module.

Covers position sizing, take-profit / stop-loss level triggers and the
trailing exit.
"""

import pytest

from candlepilot.models.strategy_config import LevelConfig
from candlepilot.risk.levels import (
    stop_loss_hit,
    stop_loss_price,
    take_profit_hit,
    take_profit_price,
    trailing_stop_hit,
)
from candlepilot.risk.position_sizer import calculate_quantity
from candlepilot.strategy.models import LONG, SHORT


# ── Position sizing ──────────────────────────────────────────────────────


class TestPositionSizing:
    """Unit tests for calculate_quantity()."""

    def test_quantity(self):
        """1000 USDT at 100 → 10 units."""
        assert calculate_quantity(1000.0, 100.0) == pytest.approx(10.0)

    def test_zero_price_gives_zero(self):
        assert calculate_quantity(1000.0, 0.0) == 0.0

    def test_negative_price_gives_zero(self):
        assert calculate_quantity(1000.0, -5.0) == 0.0

    def test_zero_amount_gives_zero(self):
        assert calculate_quantity(0.0, 100.0) == 0.0


# ── Level prices ─────────────────────────────────────────────────────────


class TestLevelPrices:
    def test_long_prices(self):
        assert take_profit_price(100.0, LONG, 5.0) == pytest.approx(105.0)
        assert stop_loss_price(100.0, LONG, 3.0) == pytest.approx(97.0)

    def test_short_prices(self):
        assert take_profit_price(100.0, SHORT, 5.0) == pytest.approx(95.0)
        assert stop_loss_price(100.0, SHORT, 3.0) == pytest.approx(103.0)

    def test_flat_direction_rejected(self):
        with pytest.raises(ValueError, match="direction"):
            take_profit_price(100.0, "FLAT", 5.0)


# ── Triggers ─────────────────────────────────────────────────────────────


class TestTriggers:
    TP = LevelConfig(label="TP1", percent=5.0, fraction=0.5)
    SL = LevelConfig(label="SL1", percent=3.0, fraction=1.0)

    def test_long_take_profit(self):
        assert not take_profit_hit(104.9, 100.0, LONG, self.TP)
        assert take_profit_hit(105.0, 100.0, LONG, self.TP)
        assert take_profit_hit(110.0, 100.0, LONG, self.TP)

    def test_short_take_profit(self):
        assert not take_profit_hit(95.1, 100.0, SHORT, self.TP)
        assert take_profit_hit(95.0, 100.0, SHORT, self.TP)

    def test_long_stop_loss(self):
        assert not stop_loss_hit(97.5, 100.0, LONG, self.SL)
        assert stop_loss_hit(97.0, 100.0, LONG, self.SL)

    def test_short_stop_loss(self):
        assert not stop_loss_hit(102.0, 100.0, SHORT, self.SL)
        assert stop_loss_hit(103.5, 100.0, SHORT, self.SL)

    def test_exact_threshold_with_float_noise(self):
        # 0.1 + 0.2 style noise must not hide an exact hit
        level = LevelConfig(label="TP", percent=10.0, fraction=1.0)
        assert take_profit_hit(0.33, 0.3, LONG, level)

    def test_zero_entry_never_triggers(self):
        assert not take_profit_hit(100.0, 0.0, LONG, self.TP)
        assert not stop_loss_hit(0.0, 0.0, LONG, self.SL)


class TestTrailingStop:
    def test_disabled_when_zero(self):
        assert not trailing_stop_hit(50.0, 100.0, 50.0, LONG, 0.0)

    def test_long_retrace(self):
        assert not trailing_stop_hit(99.0, 100.0, 90.0, LONG, 2.0)
        assert trailing_stop_hit(97.9, 100.0, 90.0, LONG, 2.0)

    def test_short_retrace(self):
        assert not trailing_stop_hit(91.0, 120.0, 90.0, SHORT, 2.0)
        assert trailing_stop_hit(92.0, 120.0, 90.0, SHORT, 2.0)
