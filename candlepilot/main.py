"""CandlePilot — application entry point.

Boots the FastAPI internal server and provides the CLI entry point that
runs the kline stream, backfills and periodic snapshots.
"""

import logging

from fastapi import FastAPI

from candlepilot.api.routers import router

app = FastAPI(title="CandlePilot Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("candlepilot")


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}


def build_manager(config):
    """Wire the Binance client, dispatcher, repos and manager from *config*.

    Restores every stored snapshot; seeds from the strategies file when
    the store is empty.

    Returns:
        ``(manager, action_log)``
    """
    from candlepilot.broker.binance_client import BinanceClient
    from candlepilot.config import load_default_strategies
    from candlepilot.dispatch.webhook import WebhookDispatcher
    from candlepilot.engine_manager import EngineManager
    from candlepilot.repos.action_log_repo import ActionLogRepo
    from candlepilot.repos.snapshot_repo import SnapshotRepo

    action_log = ActionLogRepo(config.db_path)
    manager = EngineManager(
        market_data=BinanceClient(config.binance_rest_base),
        dispatcher=WebhookDispatcher(action_log, timeout=config.webhook_timeout_seconds),
        store=SnapshotRepo(config.db_path),
        max_window=config.max_window,
        backfill_limit=config.backfill_limit,
    )

    restored = manager.restore_all()
    if restored:
        logger.info("Restored %d strategy(ies) from %s.", restored, config.db_path)
    else:
        for strategy in load_default_strategies(config.strategies_path):
            try:
                manager.add_strategy(strategy)
            except (TypeError, ValueError) as exc:
                logger.error("Skipping seed strategy '%s': %s", strategy.id, exc)
    return manager, action_log


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and start the engine (and API server)."""
    import argparse
    import asyncio
    import signal

    from candlepilot.api.routers import configure_routers
    from candlepilot.config import load_config
    from candlepilot.repos.db import init_db

    parser = argparse.ArgumentParser(description="CandlePilot strategy engine")
    parser.add_argument("--port", type=int, default=None, help="API port (default: API_PORT)")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the strategy engine without the API server",
    )
    args = parser.parse_args()

    config = load_config(args.env_file)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_db(config.db_path)

    manager, action_log = build_manager(config)
    configure_routers(engine_manager=manager, action_log=action_log)

    from candlepilot.broker.kline_stream import KlineStream

    stream = KlineStream(manager, config.binance_ws_base)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        stream.stop()
        manager.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    port = args.port or config.api_port
    asyncio.run(_run_all(manager, stream, config, None if args.engine_only else port))


async def _run_all(manager, stream, config, port) -> None:
    """Run the stream, backfill loop, snapshot loop and (optionally) uvicorn."""
    import asyncio

    logger.info(
        "Starting CandlePilot with %d strategy(ies) on %s.",
        len(manager.strategy_ids), ", ".join(manager.routing_keys()) or "no instruments",
    )

    tasks = [
        stream.run(),
        manager.run_backfill_loop(),
        manager.run_periodic_snapshots(config.snapshot_interval_seconds),
    ]
    server = None
    if port is not None:
        import uvicorn

        server = uvicorn.Server(
            uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
        )
        tasks.append(_serve_then_stop(server, manager, stream))
        logger.info("API available at http://localhost:%d", port)

    results = await asyncio.gather(*tasks, return_exceptions=True)
    manager.save_all()
    await manager.drain()
    logger.info("CandlePilot stopped. Results: %s", results)


async def _serve_then_stop(server, manager, stream) -> None:
    # uvicorn installs its own SIGINT handler; stop the engine once it exits
    try:
        await server.serve()
    finally:
        stream.stop()
        manager.stop()


if __name__ == "__main__":
    _run_cli()
