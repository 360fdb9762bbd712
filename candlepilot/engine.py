"""CandlePilot — per-strategy engine (single writer).

Each ``StrategyEngine`` owns one ``StrategyRuntime`` and an ``asyncio.Lock``.
Every mutation (bar, config update, manual order, backfill) runs
read → evaluate → write under that lock, and the committed runtime is a
frozen dataclass replaced in one assignment, so observers only ever see
committed state.

Evaluation is pure and synchronous: nothing awaits inside the critical
section.  Dispatching actions and persisting snapshots are the caller's
job, after the commit.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Optional, Sequence

from candlepilot.broker.binance_client import instrument_key
from candlepilot.models.strategy_config import StrategyConfig, merge_config, validate_config
from candlepilot.strategy.indicators import enrich
from candlepilot.strategy.lifecycle import Evaluation, evaluate, manual_order
from candlepilot.strategy.models import (
    Candle,
    EmittedAction,
    IndicatorFrame,
    PositionState,
    TradeStats,
)
from candlepilot.strategy.window import DEFAULT_MAX_WINDOW, merge_backfill, merge_bar

logger = logging.getLogger("candlepilot.engine")


@dataclass(frozen=True)
class StrategyRuntime:
    """Committed state of one strategy instance.

    ``ready`` is ``False`` until the initial window has been backfilled;
    ``window_epoch`` increments on every window reset so that a backfill
    requested for an older symbol/timeframe is discarded.
    """

    config: StrategyConfig
    window: tuple[Candle, ...] = ()
    frames: tuple[IndicatorFrame, ...] = ()
    position: PositionState = field(default_factory=PositionState)
    stats: TradeStats = field(default_factory=TradeStats)
    last_price: float = 0.0
    ready: bool = False
    window_epoch: int = 0

    @property
    def instrument_key(self) -> str:
        return instrument_key(self.config.symbol, self.config.timeframe)

    def to_dict(self, include_window: bool = False) -> dict:
        """JSON-compatible view for observers."""
        data = {
            "id": self.config.id,
            "config": self.config.to_dict(),
            "position": self.position.to_dict(),
            "stats": self.stats.to_dict(),
            "last_price": self.last_price,
            "ready": self.ready,
            "window_size": len(self.window),
            "latest_indicators": (
                asdict(self.frames[-1]) if self.frames else None
            ),
        }
        if include_window:
            data["window"] = [asdict(c) for c in self.window]
        return data


@dataclass(frozen=True)
class StepResult:
    """Outcome of one serialized engine step."""

    runtime: StrategyRuntime
    actions: tuple[EmittedAction, ...] = ()
    state_changed: bool = False


class StrategyEngine:
    """Serialized evaluator for one strategy instance.

    Args:
        config: Strategy configuration.
        max_window: Maximum number of candles kept in the window.
        position: Restored position (defaults to flat).
        stats: Restored trade counters (defaults to empty).
    """

    def __init__(
        self,
        config: StrategyConfig,
        max_window: int = DEFAULT_MAX_WINDOW,
        position: Optional[PositionState] = None,
        stats: Optional[TradeStats] = None,
    ) -> None:
        self._max_window = max_window
        self._lock = asyncio.Lock()
        self._runtime = StrategyRuntime(
            config=config,
            position=position or PositionState(),
            stats=stats or TradeStats(),
        )

    # ── Read-only views ──────────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self._runtime.config.id

    @property
    def runtime(self) -> StrategyRuntime:
        """The last committed runtime."""
        return self._runtime

    @property
    def instrument_key(self) -> str:
        return self._runtime.instrument_key

    def snapshot(self) -> dict:
        """Return ``{config, position, stats}`` of the committed runtime."""
        rt = self._runtime
        return {
            "config": rt.config.to_dict(),
            "position": rt.position.to_dict(),
            "stats": rt.stats.to_dict(),
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict, max_window: int = DEFAULT_MAX_WINDOW) -> "StrategyEngine":
        """Rebuild an engine from a snapshot.

        The window starts empty and not ready: nothing is re-evaluated and
        no historical action is re-emitted.
        """
        config = StrategyConfig.from_dict(snapshot["config"])
        if not isinstance(config.symbol, str) or not isinstance(config.timeframe, str):
            raise ValueError(f"Strategy '{config.id}' has an unroutable symbol or timeframe")
        position = PositionState.from_dict(snapshot.get("position") or {})
        stats = TradeStats.from_dict(snapshot.get("stats") or {})
        return cls(config, max_window=max_window, position=position, stats=stats)

    # ── Serialized mutations ─────────────────────────────────────────────

    async def apply_bar(
        self,
        candle: Candle,
        now: Optional[datetime] = None,
        key: Optional[str] = None,
    ) -> StepResult:
        """Merge *candle* into the window and run one evaluation.

        When *key* is given and no longer matches the instance (its symbol
        or timeframe changed while the bar was queued), the bar is dropped.
        """
        async with self._lock:
            if key is not None and key != self._runtime.instrument_key:
                return StepResult(self._runtime)
            result = self._step_bar(self._runtime, candle, now)
            self._runtime = result.runtime
            return result

    async def manual_order(self, kind: str, now: Optional[datetime] = None) -> StepResult:
        """Force a LONG / SHORT / FLAT transition at the last known price."""
        async with self._lock:
            rt = self._runtime
            ev = manual_order(kind, rt.config, rt.position, rt.stats, rt.last_price, now)
            logger.info(
                "Strategy '%s' — manual %s at %.8g: %d action(s).",
                self.id, kind.upper(), rt.last_price, len(ev.actions),
            )
            result = self._apply_evaluation(rt, rt, ev)
            self._runtime = result.runtime
            return result

    async def update_config(self, updates: dict) -> StepResult:
        """Apply a partial config update.

        A symbol or timeframe change empties the window, zeroes
        ``last_price`` and marks the runtime not ready (re-backfill needed).

        Raises:
            KeyError: Unknown config field.
            ValueError: The merged config is invalid.
        """
        async with self._lock:
            rt = self._runtime
            new_config = merge_config(rt.config, updates)
            problems = validate_config(new_config)
            if problems:
                raise ValueError("; ".join(problems))

            if (new_config.symbol, new_config.timeframe) != (rt.config.symbol, rt.config.timeframe):
                new_rt = replace(
                    rt,
                    config=new_config,
                    window=(),
                    frames=(),
                    last_price=0.0,
                    ready=False,
                    window_epoch=rt.window_epoch + 1,
                )
                logger.info(
                    "Strategy '%s' — switched to %s %s, window reset.",
                    self.id, new_config.symbol, new_config.timeframe,
                )
            else:
                new_rt = replace(
                    rt,
                    config=new_config,
                    frames=tuple(enrich(rt.window, new_config)),
                )

            self._runtime = new_rt
            return StepResult(new_rt, (), True)

    async def load_backfill(self, candles: Sequence[Candle], epoch: int) -> bool:
        """Install the initial window fetched for window *epoch*.

        Bars that arrived while the backfill was in flight are replayed
        on top of it.  Nothing is evaluated and nothing is emitted.

        Returns:
            ``True`` if installed, ``False`` if the window was reset since
            the request (stale backfill).
        """
        async with self._lock:
            rt = self._runtime
            if epoch != rt.window_epoch:
                logger.info(
                    "Strategy '%s' — discarding stale backfill (epoch %d != %d).",
                    self.id, epoch, rt.window_epoch,
                )
                return False

            window = merge_backfill(candles, rt.window, self._max_window)
            self._runtime = replace(
                rt,
                window=window,
                frames=self._safe_enrich(window, rt.config),
                last_price=window[-1].close if window else rt.last_price,
                ready=True,
            )
            logger.info(
                "Strategy '%s' — backfilled %d candle(s) for %s.",
                self.id, len(window), rt.instrument_key,
            )
            return True

    # ── Internals ────────────────────────────────────────────────────────

    def _safe_enrich(self, window: Sequence[Candle], config: StrategyConfig) -> tuple[IndicatorFrame, ...]:
        try:
            return tuple(enrich(window, config))
        except (TypeError, ValueError) as exc:
            logger.warning("Strategy '%s' — indicators unavailable: %s", self.id, exc)
            return ()

    def _step_bar(self, rt: StrategyRuntime, candle: Candle, now: Optional[datetime]) -> StepResult:
        if rt.window and candle.open_time < rt.window[-1].open_time:
            logger.debug(
                "Strategy '%s' — ignoring out-of-order bar %d.", self.id, candle.open_time,
            )
            return StepResult(rt)

        window = merge_bar(rt.window, candle, self._max_window)
        merged = replace(rt, window=window, last_price=candle.close)

        if not rt.ready:
            return StepResult(merged)

        problems = validate_config(rt.config)
        if problems:
            logger.warning(
                "Strategy '%s' — invalid config, evaluation skipped: %s",
                self.id, "; ".join(problems),
            )
            return StepResult(merged)

        try:
            frames = tuple(enrich(window, rt.config))
            ev = evaluate(window, frames, rt.config, rt.position, rt.stats, now)
        except Exception:
            logger.exception("Strategy '%s' — evaluation failed.", self.id)
            return StepResult(merged)

        return self._apply_evaluation(rt, replace(merged, frames=frames), ev)

    @staticmethod
    def _apply_evaluation(
        before: StrategyRuntime,
        base: StrategyRuntime,
        ev: Evaluation,
    ) -> StepResult:
        new_rt = replace(base, position=ev.position, stats=ev.stats)
        changed = ev.position != before.position or ev.stats != before.stats
        return StepResult(new_rt, ev.actions, changed)
