"""Binance combined kline stream — feeds live bars into the EngineManager.

Subscribes to one ``<symbol>@kline_<interval>`` stream per routing key,
reconnects with backoff when the connection drops, and resubscribes when
the set of routing keys changes (strategy added, removed, or moved to a
new symbol/timeframe).
"""

import asyncio
import json
import logging

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from candlepilot.broker.binance_client import parse_kline_event

logger = logging.getLogger("candlepilot.stream")

_RECONNECT_BASE_DELAY = 1.0  # seconds; doubles each failed attempt
_RECONNECT_MAX_DELAY = 30.0
_KEY_POLL_SECONDS = 1.0


class KlineStream:
    """Websocket listener for the manager's routing keys.

    Args:
        manager: ``EngineManager`` providing ``routing_keys()``,
                 ``routing_version`` and ``apply_bar()``.
        ws_base: Combined-stream URL prefix, e.g.
                 ``wss://fstream.binance.com/stream?streams=``.
    """

    def __init__(self, manager, ws_base: str) -> None:
        self._manager = manager
        self._ws_base = ws_base
        self._running = False
        self._websocket = None

    def stream_url(self, keys: list[str]) -> str:
        return f"{self._ws_base}{'/'.join(keys)}"

    def stop(self) -> None:
        """Signal the listener to stop after the current message."""
        self._running = False

    async def handle_message(self, raw: str) -> None:
        """Parse one combined-stream message and route its kline.

        Malformed messages are logged and dropped; the stream keeps running.
        """
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Kline stream JSON decode error: %s", exc)
            return
        if not isinstance(msg, dict):
            return

        data = msg.get("data")
        stream = msg.get("stream")
        if not data or not stream:
            return
        try:
            candle = parse_kline_event(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.error("Kline stream malformed kline on %s: %r", stream, exc)
            return
        if candle is None:
            return
        try:
            await self._manager.apply_bar(stream, candle)
        except Exception:
            logger.exception("Kline stream failed to apply bar on %s", stream)

    async def run(self) -> None:
        """Listen until :meth:`stop`, reconnecting on errors."""
        self._running = True
        delay = _RECONNECT_BASE_DELAY

        while self._running:
            keys = self._manager.routing_keys()
            if not keys:
                await asyncio.sleep(_KEY_POLL_SECONDS)
                continue

            version = self._manager.routing_version
            url = self.stream_url(keys)
            try:
                async with websockets.connect(url, ping_interval=20, ping_timeout=10) as ws:
                    self._websocket = ws
                    logger.info("Kline stream connected: %s", ", ".join(keys))
                    delay = _RECONNECT_BASE_DELAY
                    watcher = asyncio.create_task(self._watch_keys(ws, version))
                    try:
                        async for message in ws:
                            if not self._running:
                                break
                            await self.handle_message(message)
                    finally:
                        watcher.cancel()
            except ConnectionClosed:
                logger.warning("Kline stream connection closed — reconnecting in %.1fs", delay)
                await asyncio.sleep(delay)
            except (WebSocketException, OSError) as exc:
                logger.error("Kline stream error: %s — reconnecting in %.1fs", exc, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, _RECONNECT_MAX_DELAY)
            finally:
                self._websocket = None

        logger.info("Kline stream stopped.")

    async def _watch_keys(self, ws, version: int) -> None:
        """Close *ws* when the routing keys change so :meth:`run` resubscribes."""
        while self._running and self._manager.routing_version == version:
            await asyncio.sleep(_KEY_POLL_SECONDS)
        if self._running:
            logger.info("Routing keys changed — resubscribing.")
        await ws.close()
