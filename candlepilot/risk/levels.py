"""Take-profit / stop-loss level triggers and trailing exit — pure math, no I/O.

Levels are percentages measured from the entry price:

  - take-profit fires on a favourable move of ``percent`` %;
  - stop-loss fires on an adverse move of ``percent`` %;
  - the trailing exit fires when price retraces ``trailing_pct`` % from
    the best price seen since entry.
"""

from candlepilot.models.strategy_config import LevelConfig
from candlepilot.strategy.models import LONG, SHORT

# Absorbs float noise so a move of exactly `percent` % still triggers
_PCT_TOLERANCE = 1e-9


def take_profit_price(entry_price: float, direction: str, percent: float) -> float:
    """Return the price at which a take-profit level of *percent* triggers."""
    if direction == LONG:
        return entry_price * (1 + percent / 100.0)
    if direction == SHORT:
        return entry_price * (1 - percent / 100.0)
    raise ValueError(f"direction must be LONG or SHORT, got '{direction}'")


def stop_loss_price(entry_price: float, direction: str, percent: float) -> float:
    """Return the price at which a stop-loss level of *percent* triggers."""
    if direction == LONG:
        return entry_price * (1 - percent / 100.0)
    if direction == SHORT:
        return entry_price * (1 + percent / 100.0)
    raise ValueError(f"direction must be LONG or SHORT, got '{direction}'")


def _favourable_move_pct(price: float, entry_price: float, direction: str) -> float:
    """Signed % move from *entry_price* in the position's favour."""
    if entry_price <= 0:
        return 0.0
    if direction == LONG:
        return (price - entry_price) / entry_price * 100.0
    if direction == SHORT:
        return (entry_price - price) / entry_price * 100.0
    raise ValueError(f"direction must be LONG or SHORT, got '{direction}'")


def take_profit_hit(price: float, entry_price: float, direction: str, level: LevelConfig) -> bool:
    """``True`` when *price* has reached or passed the TP threshold."""
    if entry_price <= 0:
        return False
    return _favourable_move_pct(price, entry_price, direction) >= level.percent - _PCT_TOLERANCE


def stop_loss_hit(price: float, entry_price: float, direction: str, level: LevelConfig) -> bool:
    """``True`` when *price* has reached or passed the SL threshold."""
    if entry_price <= 0:
        return False
    return -_favourable_move_pct(price, entry_price, direction) >= level.percent - _PCT_TOLERANCE


def trailing_stop_hit(
    price: float,
    highest_price: float,
    lowest_price: float,
    direction: str,
    trailing_pct: float,
) -> bool:
    """``True`` when *price* retraced *trailing_pct* % from the best extreme.

    A non-positive *trailing_pct* disables the trailing exit.
    """
    if trailing_pct <= 0:
        return False
    if direction == LONG:
        return highest_price > 0 and price <= highest_price * (1 - trailing_pct / 100.0)
    if direction == SHORT:
        return lowest_price > 0 and price >= lowest_price * (1 + trailing_pct / 100.0)
    return False
