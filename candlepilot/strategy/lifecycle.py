"""Position lifecycle state machine — FLAT / LONG / SHORT.

Pure functions: given the enriched window and the current position and
trade counters, return the next position, counters and the actions to
emit.  No I/O, no clocks other than the injected ``now``.

The hit sets and the ``direction`` field are the only record of what has
already fired, so re-evaluating a bar against the state it produced emits
nothing new.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional, Sequence

from candlepilot.models.strategy_config import LevelConfig, StrategyConfig
from candlepilot.risk.levels import stop_loss_hit, take_profit_hit, trailing_stop_hit
from candlepilot.risk.position_sizer import calculate_quantity
from candlepilot.strategy.models import (
    FLAT,
    LONG,
    MANUAL_LEVEL_LABEL,
    MANUAL_STRATEGY_NAME,
    SHORT,
    Candle,
    EmittedAction,
    IndicatorFrame,
    PositionState,
    TradeStats,
)
from candlepilot.strategy.signals import get_entry_rule

ENTRY_LABEL = "Entry"
TRAILING_LABEL = "Trailing"
REVERSE_LABEL = "Reverse"

# Remaining quantity below this share of the initial quantity counts as closed
_QTY_TOLERANCE = 1e-9

_SIGNAL_TO_DIRECTION = {"long": LONG, "short": SHORT}


@dataclass(frozen=True)
class Evaluation:
    """Result of one state-machine step."""

    position: PositionState
    stats: TradeStats
    actions: tuple[EmittedAction, ...] = ()


# ── Helpers ──────────────────────────────────────────────────────────────


def roll_daily_stats(stats: TradeStats, now: datetime) -> TradeStats:
    """Reset the daily counter when *now* falls on a new local calendar day."""
    today = now.date().isoformat()
    if stats.last_trade_date != today:
        return replace(stats, daily_trade_count=0, last_trade_date=today)
    return stats


def _timestamp(now: datetime) -> str:
    return now.astimezone(timezone.utc).isoformat()


def _settle(remaining: float, initial: float) -> float:
    if remaining <= initial * _QTY_TOLERANCE:
        return 0.0
    return remaining


def _open_position(direction: str, price: float, quantity: float, open_time: int) -> PositionState:
    return PositionState(
        direction=direction,
        initial_quantity=quantity,
        remaining_quantity=quantity,
        entry_price=price,
        highest_price=price,
        lowest_price=price,
        open_time=open_time,
    )


def _entry_action(
    config: StrategyConfig,
    direction: str,
    price: float,
    quantity: float,
    now: datetime,
    strategy_name: Optional[str] = None,
    level_label: str = ENTRY_LABEL,
) -> EmittedAction:
    return EmittedAction(
        secret=config.secret,
        action="buy" if direction == LONG else "sell",
        position="long" if direction == LONG else "short",
        symbol=config.symbol,
        trade_amount=config.trade_amount,
        leverage=config.leverage,
        timestamp=_timestamp(now),
        strategy_name=strategy_name or config.name,
        level_label=level_label,
        execution_price=price,
        execution_quantity=quantity,
    )


def _exit_action(
    config: StrategyConfig,
    direction: str,
    price: float,
    quantity: float,
    remaining: float,
    level_label: str,
    now: datetime,
    strategy_name: Optional[str] = None,
) -> EmittedAction:
    if remaining > 0:
        position = "long" if direction == LONG else "short"
    else:
        position = "flat"
    return EmittedAction(
        secret=config.secret,
        action="sell" if direction == LONG else "buy_to_cover",
        position=position,
        symbol=config.symbol,
        trade_amount=quantity * price,
        leverage=config.leverage,
        timestamp=_timestamp(now),
        strategy_name=strategy_name or config.name,
        level_label=level_label,
        execution_price=price,
        execution_quantity=quantity,
    )


def _permitted(signal: Optional[str], config: StrategyConfig) -> Optional[str]:
    if signal == "long" and not config.allow_long:
        return None
    if signal == "short" and not config.allow_short:
        return None
    return signal


# ── Automatic evaluation ─────────────────────────────────────────────────


def evaluate(
    candles: Sequence[Candle],
    frames: Sequence[IndicatorFrame],
    config: StrategyConfig,
    position: PositionState,
    stats: TradeStats,
    now: Optional[datetime] = None,
) -> Evaluation:
    """Run one state-machine step for the latest bar of *candles*.

    Args:
        candles: Current window, oldest-first.
        frames: Indicator frames for *candles* (same length).
        config: Strategy configuration.
        position: Committed position state.
        stats: Committed trade counters.
        now: Evaluation time (local).  Defaults to ``datetime.now()``;
             accepting it as a parameter keeps the step deterministic in
             tests.

    Returns:
        ``Evaluation`` with the next position, counters and actions.
    """
    if now is None:
        now = datetime.now()
    stats = roll_daily_stats(stats, now)

    if not candles:
        return Evaluation(position, stats)

    signal = get_entry_rule(config.entry_rule)(candles, frames)

    if position.is_flat:
        return _evaluate_entry(candles[-1], _permitted(signal, config), config, position, stats, now)
    return _evaluate_exit(candles[-1], signal, config, position, stats, now)


def _evaluate_entry(
    bar: Candle,
    signal: Optional[str],
    config: StrategyConfig,
    position: PositionState,
    stats: TradeStats,
    now: datetime,
) -> Evaluation:
    if signal is None:
        return Evaluation(position, stats)
    if stats.daily_trade_count >= config.max_daily_trades:
        return Evaluation(position, stats)
    # Never re-open on the bar that just closed a position
    if stats.last_exit_bar_time and bar.open_time == stats.last_exit_bar_time:
        return Evaluation(position, stats)

    price = bar.close
    quantity = calculate_quantity(config.trade_amount, price)
    if quantity <= 0:
        return Evaluation(position, stats)

    direction = _SIGNAL_TO_DIRECTION[signal]
    new_position = _open_position(direction, price, quantity, bar.open_time)
    new_stats = replace(stats, daily_trade_count=stats.daily_trade_count + 1)
    action = _entry_action(config, direction, price, quantity, now)
    return Evaluation(new_position, new_stats, (action,))


def _fire_levels(
    levels: Sequence[LevelConfig],
    already_hit: frozenset[str],
    triggered,
    remaining: float,
    initial: float,
) -> tuple[list[tuple[LevelConfig, float, float]], frozenset[str], float]:
    """Fire every pending level whose threshold *triggered* accepts.

    Returns ``(fills, hit_set, remaining)`` where each fill is
    ``(level, quantity, remaining_after)``.
    """
    fills: list[tuple[LevelConfig, float, float]] = []
    hit = set(already_hit)
    for level in levels:
        if remaining <= 0:
            break
        if level.label in hit or not triggered(level):
            continue
        hit.add(level.label)
        quantity = min(level.fraction * initial, remaining)
        remaining = _settle(remaining - quantity, initial)
        fills.append((level, quantity, remaining))
    return fills, frozenset(hit), remaining


def _evaluate_exit(
    bar: Candle,
    signal: Optional[str],
    config: StrategyConfig,
    position: PositionState,
    stats: TradeStats,
    now: datetime,
) -> Evaluation:
    direction = position.direction
    price = bar.close
    entry = position.entry_price
    initial = position.initial_quantity

    highest = max(position.highest_price, bar.high)
    lowest = min(position.lowest_price, bar.low) if position.lowest_price > 0 else bar.low

    actions: list[EmittedAction] = []
    remaining = position.remaining_quantity

    tp_fills, tp_hit, remaining = _fire_levels(
        config.take_profit_levels,
        position.tp_levels_hit,
        lambda lv: take_profit_hit(price, entry, direction, lv),
        remaining,
        initial,
    )
    sl_fills, sl_hit, remaining = _fire_levels(
        config.stop_loss_levels,
        position.sl_levels_hit,
        lambda lv: stop_loss_hit(price, entry, direction, lv),
        remaining,
        initial,
    )
    for level, quantity, left in tp_fills + sl_fills:
        actions.append(_exit_action(config, direction, price, quantity, left, level.label, now))

    if remaining > 0:
        final_label = None
        if trailing_stop_hit(price, highest, lowest, direction, config.trailing_stop_pct):
            final_label = TRAILING_LABEL
        elif config.exit_on_reverse_signal and signal is not None \
                and _SIGNAL_TO_DIRECTION[signal] != direction:
            final_label = REVERSE_LABEL
        if final_label is not None:
            actions.append(_exit_action(config, direction, price, remaining, 0.0, final_label, now))
            remaining = 0.0

    if remaining <= 0:
        return Evaluation(
            PositionState(),
            replace(stats, last_exit_bar_time=bar.open_time),
            tuple(actions),
        )

    new_position = replace(
        position,
        remaining_quantity=remaining,
        highest_price=highest,
        lowest_price=lowest,
        tp_levels_hit=tp_hit,
        sl_levels_hit=sl_hit,
    )
    return Evaluation(new_position, stats, tuple(actions))


# ── Manual override ──────────────────────────────────────────────────────


def manual_order(
    kind: str,
    config: StrategyConfig,
    position: PositionState,
    stats: TradeStats,
    last_price: float,
    now: Optional[datetime] = None,
) -> Evaluation:
    """Force a transition to LONG, SHORT or FLAT at *last_price*.

    - LONG / SHORT: opens a fresh position (replacing any open one) and
      increments the daily counter.  The daily cap is not checked.
    - FLAT: closes all remaining quantity; a no-op when already flat.
    - Any manual order at a non-positive price is refused (no state change).

    Raises ``ValueError`` for an unknown *kind*.
    """
    kind = kind.upper()
    if kind not in (LONG, SHORT, FLAT):
        raise ValueError(f"kind must be LONG, SHORT or FLAT, got '{kind}'")
    if now is None:
        now = datetime.now()
    stats = roll_daily_stats(stats, now)

    if kind == FLAT:
        if position.is_flat or last_price <= 0:
            return Evaluation(position, stats)
        action = _exit_action(
            config,
            position.direction,
            last_price,
            position.remaining_quantity,
            0.0,
            MANUAL_LEVEL_LABEL,
            now,
            strategy_name=MANUAL_STRATEGY_NAME,
        )
        return Evaluation(PositionState(), stats, (action,))

    quantity = calculate_quantity(config.trade_amount, last_price)
    if quantity <= 0:
        return Evaluation(position, stats)

    new_position = _open_position(kind, last_price, quantity, int(now.timestamp() * 1000))
    new_stats = replace(stats, daily_trade_count=stats.daily_trade_count + 1)
    action = _entry_action(
        config,
        kind,
        last_price,
        quantity,
        now,
        strategy_name=MANUAL_STRATEGY_NAME,
        level_label=MANUAL_LEVEL_LABEL,
    )
    return Evaluation(new_position, new_stats, (action,))
