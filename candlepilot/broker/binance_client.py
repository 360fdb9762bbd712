"""Binance USDⓈ-M futures REST client (backfill) and kline message parsing.

Handles fetching the initial candle window for a symbol/timeframe and
converting both REST rows and websocket kline events into ``Candle``s.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from candlepilot.strategy.models import Candle

logger = logging.getLogger("candlepilot.broker")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}


def instrument_key(symbol: str, timeframe: str) -> str:
    """Routing key of a kline stream, e.g. ``"btcusdt@kline_15m"``."""
    return f"{symbol.lower()}@kline_{timeframe}"


def parse_rest_kline(row: list) -> Candle:
    """Convert one ``/klines`` row into a final ``Candle``.

    Row layout: ``[openTime, open, high, low, close, volume, ...]``.
    """
    return Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
        is_final=True,
    )


def parse_kline_event(event: dict[str, Any]) -> Optional[Candle]:
    """Convert a websocket ``kline`` event into a ``Candle``.

    Returns ``None`` for any other event type.
    """
    if event.get("e") != "kline":
        return None
    k = event["k"]
    return Candle(
        open_time=int(k["t"]),
        open=float(k["o"]),
        high=float(k["h"]),
        low=float(k["l"]),
        close=float(k["c"]),
        volume=float(k["v"]),
        is_final=bool(k["x"]),
    )


class BinanceClient:
    """Async client for the public kline endpoint.

    Args:
        base_url: REST base, e.g. ``https://fapi.binance.com/fapi/v1``.
        transport: Optional ``httpx`` transport (tests inject a
            ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str = "https://fapi.binance.com/fapi/v1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _get_with_retry(self, url: str, params: dict) -> httpx.Response:
        """Execute a GET with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient(transport=self._transport) as client:
                    resp = await client.get(url, params=params, timeout=30.0)

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Binance GET %s returned %d — retry %d/%d in %.1fs",
                        url, resp.status_code, attempt + 1, _MAX_RETRIES, delay,
                    )
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    await asyncio.sleep(delay)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Binance GET %s transport error (%s) — retry %d/%d in %.1fs",
                    url, exc, attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        # All retries exhausted — raise the last error
        raise last_exc  # type: ignore[misc]

    # ── Candle data ──────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        symbol: str,
        interval: str,
        limit: int = 499,
    ) -> list[Candle]:
        """Fetch the most recent klines.

        Args:
            symbol: e.g. ``"BTCUSDT"``
            interval: e.g. ``"15m"``, ``"1h"``
            limit: number of klines (max 1500)

        Returns:
            List of ``Candle`` objects ordered oldest-first.

        Raises:
            ValueError: If the response body is not a list of klines.
        """
        resp = await self._get_with_retry(
            f"{self._base_url}/klines",
            params={"symbol": symbol, "interval": interval, "limit": limit},
        )
        data = resp.json()
        if not isinstance(data, list):
            raise ValueError(f"Invalid kline response for {symbol} {interval}: {data!r}")

        candles = [parse_rest_kline(row) for row in data]
        candles.sort(key=lambda c: c.open_time)
        return candles
