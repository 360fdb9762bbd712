"""EngineManager — registry of strategy instances and bar router.

Owns one ``StrategyEngine`` per strategy id.  Incoming klines are routed by
instrument key (``symbol@kline_timeframe``) to every subscribed instance;
each instance applies the bar under its own lock, so instances on
different instruments proceed independently while one instance never sees
two interleaved evaluations.

Action dispatch and snapshot persistence happen after the commit and never
block the next bar: dispatch is a fire-and-forget task, persistence runs
on a single background worker.
"""

import asyncio
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional, Protocol

from candlepilot.engine import StrategyEngine, StrategyRuntime, StepResult
from candlepilot.models.strategy_config import StrategyConfig, validate_config
from candlepilot.strategy.models import Candle, EmittedAction
from candlepilot.strategy.window import DEFAULT_MAX_WINDOW

logger = logging.getLogger("candlepilot.engine_manager")


class MarketData(Protocol):
    async def fetch_candles(self, symbol: str, interval: str, limit: int = 499) -> list[Candle]:
        ...


class ActionSink(Protocol):
    def dispatch(self, action: EmittedAction, endpoint: str, secret: str, strategy_id: str = "") -> None:
        ...


class SnapshotStore(Protocol):
    def save(self, strategy_id: str, snapshot: dict) -> None:
        ...

    def load(self, strategy_id: str) -> Optional[dict]:
        ...

    def load_all(self) -> list[dict]:
        ...

    def delete(self, strategy_id: str) -> None:
        ...


class EngineManager:
    """Lifecycle manager for one-or-many strategy instances.

    Args:
        market_data: Backfill source (``BinanceClient`` or compatible).
        dispatcher:  Action sink (``WebhookDispatcher`` or compatible).
        store:       Snapshot store (``SnapshotRepo`` or compatible).
        max_window:  Candle window cap per instance.
        backfill_limit: Number of candles requested per backfill.
    """

    def __init__(
        self,
        market_data: Optional[MarketData] = None,
        dispatcher: Optional[ActionSink] = None,
        store: Optional[SnapshotStore] = None,
        max_window: int = DEFAULT_MAX_WINDOW,
        backfill_limit: int = 499,
    ) -> None:
        self._market_data = market_data
        self._dispatcher = dispatcher
        self._store = store
        self._max_window = max_window
        self._backfill_limit = backfill_limit
        self._engines: dict[str, StrategyEngine] = {}
        self._pending_saves: set[asyncio.Future] = set()
        # One worker keeps store calls in commit order
        self._store_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshot")
        self._routing_version = 0
        self._running = False

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def engines(self) -> dict[str, StrategyEngine]:
        """Map of strategy id → ``StrategyEngine``."""
        return dict(self._engines)

    @property
    def strategy_ids(self) -> list[str]:
        return list(self._engines.keys())

    @property
    def routing_version(self) -> int:
        """Incremented whenever the set of routing keys may have changed."""
        return self._routing_version

    def routing_keys(self) -> list[str]:
        """Distinct instrument keys with at least one subscribed instance."""
        return sorted({e.instrument_key for e in self._engines.values()})

    def new_strategy_config(self, **overrides) -> StrategyConfig:
        """Build a default config with a fresh id and a numbered name."""
        defaults = dict(
            id=uuid.uuid4().hex[:9],
            name=f"Strategy #{len(self._engines) + 1}",
        )
        defaults.update(overrides)
        return StrategyConfig.from_dict(defaults)

    def add_strategy(self, config: StrategyConfig) -> str:
        """Register a fresh instance and return its id.

        Raises:
            ValueError: Invalid config or duplicate id.
        """
        problems = validate_config(config)
        if problems:
            raise ValueError("; ".join(problems))
        if config.id in self._engines:
            raise ValueError(f"Strategy '{config.id}' already exists")

        engine = StrategyEngine(config, max_window=self._max_window)
        self._register(engine)
        self._persist(engine)
        logger.info(
            "Registered strategy '%s' (%s) on %s",
            config.id, config.name, engine.instrument_key,
        )
        return config.id

    def restore(self, snapshot: dict) -> str:
        """Register an instance rebuilt from *snapshot* and return its id.

        The restored instance starts unready with an empty window; it is
        not evaluated until its backfill arrives.
        """
        engine = StrategyEngine.from_snapshot(snapshot, max_window=self._max_window)
        if engine.id in self._engines:
            raise ValueError(f"Strategy '{engine.id}' already exists")
        self._register(engine)
        logger.info(
            "Restored strategy '%s' (%s, position %s).",
            engine.id, engine.runtime.config.name, engine.runtime.position.direction,
        )
        return engine.id

    def restore_all(self) -> int:
        """Restore every snapshot from the store.  Returns the count.

        A malformed snapshot is logged and skipped.
        """
        if self._store is None:
            return 0
        restored = 0
        for snapshot in self._store.load_all():
            try:
                self.restore(snapshot)
                restored += 1
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Skipping unreadable snapshot: %s", exc)
        return restored

    def remove_strategy(self, strategy_id: str) -> bool:
        """Stop routing to *strategy_id*.  Returns ``False`` if unknown."""
        engine = self._engines.pop(strategy_id, None)
        if engine is None:
            return False
        self._routing_version += 1
        if self._store is not None:
            self._run_store_call(self._store.delete, strategy_id)
        logger.info("Removed strategy '%s'.", strategy_id)
        return True

    def get_runtime(self, strategy_id: str) -> StrategyRuntime:
        """Return the committed runtime.  Raises ``KeyError`` if unknown."""
        return self._engines[strategy_id].runtime

    def snapshot(self, strategy_id: str) -> dict:
        """Return ``{config, position, stats}``.  Raises ``KeyError`` if unknown."""
        return self._engines[strategy_id].snapshot()

    async def update_config(self, strategy_id: str, updates: dict) -> StrategyRuntime:
        """Partially update a config.  See ``StrategyEngine.update_config``."""
        engine = self._engines[strategy_id]
        before = engine.instrument_key
        result = await engine.update_config(updates)
        if engine.instrument_key != before:
            self._routing_version += 1
        self._persist(engine)
        return result.runtime

    async def apply_bar(
        self,
        key: str,
        candle: Candle,
        now: Optional[datetime] = None,
    ) -> list[EmittedAction]:
        """Route *candle* to every instance subscribed to *key*.

        Returns every action emitted by the step, in instance order.
        """
        actions: list[EmittedAction] = []
        for engine in [e for e in self._engines.values() if e.instrument_key == key]:
            if self._engines.get(engine.id) is not engine:
                continue  # removed while an earlier instance was stepping
            result = await engine.apply_bar(candle, now, key=key)
            self._after_commit(engine, result)
            actions.extend(result.actions)
        return actions

    async def manual_order(
        self,
        strategy_id: str,
        kind: str,
        now: Optional[datetime] = None,
    ) -> list[EmittedAction]:
        """Force a LONG / SHORT / FLAT transition.  Raises ``KeyError`` if unknown."""
        engine = self._engines[strategy_id]
        result = await engine.manual_order(kind, now)
        self._after_commit(engine, result)
        return list(result.actions)

    # ── Backfill ─────────────────────────────────────────────────────────

    async def load_backfill(self, strategy_id: str, candles: list[Candle], epoch: int) -> bool:
        """Install *candles* as the window of *strategy_id* if *epoch* still matches.

        Raises ``KeyError`` if unknown.  See ``StrategyEngine.load_backfill``.
        """
        return await self._engines[strategy_id].load_backfill(candles, epoch)

    async def backfill(self, strategy_id: str) -> bool:
        """Fetch and install the initial window of *strategy_id*.

        Returns ``True`` when installed.  Fetch errors are logged; the
        instance stays unready and is retried by :meth:`backfill_pending`.
        """
        engine = self._engines.get(strategy_id)
        if engine is None or self._market_data is None:
            return False

        rt = engine.runtime
        epoch = rt.window_epoch
        try:
            candles = await self._market_data.fetch_candles(
                rt.config.symbol, rt.config.timeframe, limit=self._backfill_limit,
            )
        except Exception as exc:
            logger.warning(
                "Strategy '%s' — backfill of %s failed: %s",
                strategy_id, rt.instrument_key, exc,
            )
            return False
        if self._engines.get(strategy_id) is not engine:
            return False  # removed while the fetch was in flight
        return await self.load_backfill(strategy_id, candles, epoch)

    async def backfill_pending(self) -> int:
        """Backfill every unready instance.  Returns how many succeeded.

        A failure in one instance is logged and never stops the others.
        """
        pending = [sid for sid, e in self._engines.items() if not e.runtime.ready]
        if not pending:
            return 0
        results = await asyncio.gather(
            *(self.backfill(sid) for sid in pending), return_exceptions=True,
        )
        for sid, result in zip(pending, results):
            if isinstance(result, Exception):
                logger.error("Strategy '%s' — backfill install failed: %s", sid, result)
        return sum(1 for ok in results if ok is True)

    # ── Background loops ─────────────────────────────────────────────────

    async def run_backfill_loop(self, interval: float = 5.0) -> None:
        """Keep backfilling unready instances until :meth:`stop`."""
        self._running = True
        while self._running:
            await self.backfill_pending()
            await asyncio.sleep(interval)

    async def run_periodic_snapshots(self, interval: float = 5.0) -> None:
        """Save every instance every *interval* seconds until :meth:`stop`."""
        self._running = True
        while self._running:
            await asyncio.sleep(interval)
            self.save_all()

    def stop(self) -> None:
        """Signal the background loops to stop."""
        self._running = False

    def save_all(self) -> None:
        """Persist a snapshot of every instance."""
        for engine in list(self._engines.values()):
            self._persist(engine)

    async def drain(self) -> None:
        """Wait for in-flight saves and deliveries (shutdown and tests)."""
        if self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)
        drain = getattr(self._dispatcher, "drain", None)
        if drain is not None:
            await drain()

    # ── Internals ────────────────────────────────────────────────────────

    def _register(self, engine: StrategyEngine) -> None:
        self._engines[engine.id] = engine
        self._routing_version += 1

    def _after_commit(self, engine: StrategyEngine, result: StepResult) -> None:
        config = result.runtime.config
        for action in result.actions:
            logger.info(
                "Strategy '%s' — %s %s %s qty=%.8g @ %.8g (%s)",
                engine.id, action.action, action.position, action.symbol,
                action.execution_quantity, action.execution_price, action.level_label,
            )
            if self._dispatcher is None:
                continue
            try:
                self._dispatcher.dispatch(action, config.webhook_url, config.secret, strategy_id=engine.id)
            except Exception as exc:
                logger.warning("Strategy '%s' — dispatch not scheduled: %s", engine.id, exc)
        if result.state_changed:
            self._persist(engine)

    def _persist(self, engine: StrategyEngine) -> None:
        if self._store is None:
            return
        self._run_store_call(self._store.save, engine.id, engine.snapshot())

    def _run_store_call(self, fn, *args) -> None:
        """Run a store call off the event loop, or inline when no loop runs."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._guarded_store_call(fn, *args)
            return
        future = loop.run_in_executor(self._store_executor, self._guarded_store_call, fn, *args)
        self._pending_saves.add(future)
        future.add_done_callback(self._pending_saves.discard)

    @staticmethod
    def _guarded_store_call(fn, *args) -> None:
        try:
            fn(*args)
        except Exception as exc:
            # In-memory state stays authoritative; the next periodic save retries
            logger.error(
                "Snapshot store call %s%r failed: %s",
                getattr(fn, "__name__", "store"), args[:1], exc,
            )
