"""Internal API routers — /strategies, /actions endpoints.

No business logic, no DB access. Delegates to the engine manager and the
action log repo.  Every read returns committed state only.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

logger = logging.getLogger("candlepilot.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_engine_manager = None  # Set via configure_routers()
_action_log = None      # Set via configure_routers()


def configure_routers(engine_manager=None, action_log=None) -> None:
    """Inject dependencies from the application startup.

    Args:
        engine_manager: An ``EngineManager`` instance.
        action_log: An ``ActionLogRepo`` instance (or duck-type for tests).
    """
    global _engine_manager, _action_log  # noqa: PLW0603
    _engine_manager = engine_manager
    _action_log = action_log


def _unknown(strategy_id: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"Unknown strategy: {strategy_id}"})


def _rejected(exc: Exception) -> JSONResponse:
    message = exc.args[0] if isinstance(exc, KeyError) and exc.args else str(exc)
    return JSONResponse(status_code=400, content={"status": "error", "errors": [str(message)]})


def _known(strategy_id: str) -> bool:
    return _engine_manager is not None and strategy_id in _engine_manager.strategy_ids


# ── Observation ──────────────────────────────────────────────────────────


@router.get("/strategies")
async def list_strategies():
    """Return the committed runtime of every strategy."""
    if _engine_manager is None:
        return {"strategies": {}}
    return {
        "strategies": {
            sid: engine.runtime.to_dict()
            for sid, engine in _engine_manager.engines.items()
        }
    }


@router.get("/strategies/{strategy_id}")
async def get_strategy(strategy_id: str, window: bool = Query(default=False)):
    """Return one strategy's committed runtime (optionally with its candles)."""
    if not _known(strategy_id):
        return _unknown(strategy_id)
    return _engine_manager.get_runtime(strategy_id).to_dict(include_window=window)


@router.get("/actions")
async def get_actions(
    limit: int = Query(default=50, ge=1, le=500),
    strategy: Optional[str] = Query(default=None),
):
    """Return recently emitted actions with their delivery status."""
    if _action_log is None:
        return {"actions": [], "total": 0}
    return _action_log.get_actions(limit=limit, strategy_id=strategy)


# ── Control ──────────────────────────────────────────────────────────────


@router.post("/strategies")
async def add_strategy(body: Optional[dict] = None):
    """Create a strategy from defaults overlaid with *body*, then backfill it."""
    if _engine_manager is None:
        return JSONResponse(status_code=503, content={"error": "Engine manager not configured"})
    try:
        config = _engine_manager.new_strategy_config(**(body or {}))
        strategy_id = _engine_manager.add_strategy(config)
    except (KeyError, TypeError, ValueError) as exc:
        return _rejected(exc)

    await _engine_manager.backfill(strategy_id)
    return {"status": "ok", **_engine_manager.get_runtime(strategy_id).to_dict()}


@router.patch("/strategies/{strategy_id}")
async def update_strategy(strategy_id: str, body: dict):
    """Partially update a strategy config.

    A symbol/timeframe change resets the window and triggers a backfill.
    """
    if not _known(strategy_id):
        return _unknown(strategy_id)
    try:
        runtime = await _engine_manager.update_config(strategy_id, body)
    except (KeyError, TypeError, ValueError) as exc:
        return _rejected(exc)

    if not runtime.ready:
        await _engine_manager.backfill(strategy_id)
    logger.info("Updated config for %s: %s", strategy_id, sorted(body))
    return {"status": "ok", **_engine_manager.get_runtime(strategy_id).to_dict()}


@router.delete("/strategies/{strategy_id}")
async def remove_strategy(strategy_id: str):
    """Remove a strategy; it stops receiving bars immediately."""
    if _engine_manager is None or not _engine_manager.remove_strategy(strategy_id):
        return _unknown(strategy_id)
    return {"status": "ok", "id": strategy_id}


@router.post("/strategies/{strategy_id}/orders")
async def manual_order(strategy_id: str, body: dict):
    """Force a LONG / SHORT / FLAT transition at the last known price.

    Body: ``{"type": "LONG" | "SHORT" | "FLAT"}``.
    """
    if not _known(strategy_id):
        return _unknown(strategy_id)
    kind = str(body.get("type", ""))
    try:
        actions = await _engine_manager.manual_order(strategy_id, kind)
    except ValueError as exc:
        return _rejected(exc)
    return {
        "status": "ok",
        "actions": [a.to_payload() for a in actions],
        "position": _engine_manager.get_runtime(strategy_id).position.to_dict(),
    }
