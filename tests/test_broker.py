"""Tests for candlepilot.broker — Binance REST client and kline stream with mocked I/O."""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from candlepilot.broker import binance_client
from candlepilot.broker.binance_client import (
    BinanceClient,
    instrument_key,
    parse_kline_event,
    parse_rest_kline,
)
from candlepilot.broker.kline_stream import KlineStream
from candlepilot.strategy.models import Candle


# ── Mock Binance responses ───────────────────────────────────────────────

MOCK_KLINES_RESPONSE = [
    [1704067260000, "42010.5", "42100.0", "41990.0", "42050.0", "12.5", 1704067319999, "0", 10, "0", "0", "0"],
    [1704067200000, "42000.0", "42080.0", "41950.0", "42010.5", "20.1", 1704067259999, "0", 12, "0", "0", "0"],
]

MOCK_KLINE_EVENT = {
    "e": "kline",
    "E": 1704067230000,
    "s": "BTCUSDT",
    "k": {
        "t": 1704067200000,
        "T": 1704067259999,
        "s": "BTCUSDT",
        "i": "1m",
        "o": "42000.0",
        "c": "42010.5",
        "h": "42080.0",
        "l": "41950.0",
        "v": "20.1",
        "x": False,
    },
}


@pytest.fixture
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(binance_client, "_RETRY_BASE_DELAY", 0.0)


# ── Parsing ──────────────────────────────────────────────────────────────


def test_instrument_key():
    assert instrument_key("BTCUSDT", "15m") == "btcusdt@kline_15m"


def test_parse_rest_kline():
    candle = parse_rest_kline(MOCK_KLINES_RESPONSE[1])
    assert candle == Candle(1704067200000, 42000.0, 42080.0, 41950.0, 42010.5, 20.1, True)


def test_parse_kline_event():
    candle = parse_kline_event(MOCK_KLINE_EVENT)
    assert candle.open_time == 1704067200000
    assert candle.close == pytest.approx(42010.5)
    assert candle.is_final is False


def test_parse_other_event_returns_none():
    assert parse_kline_event({"e": "aggTrade"}) is None


# ── REST client ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fetch_candles_sorted_oldest_first():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["params"] = dict(request.url.params)
        return httpx.Response(200, json=MOCK_KLINES_RESPONSE)

    client = BinanceClient("https://fapi.test/fapi/v1", transport=httpx.MockTransport(handler))
    candles = await client.fetch_candles("BTCUSDT", "1m", limit=2)

    assert captured["url"].startswith("https://fapi.test/fapi/v1/klines")
    assert captured["params"] == {"symbol": "BTCUSDT", "interval": "1m", "limit": "2"}
    assert [c.open_time for c in candles] == [1704067200000, 1704067260000]
    assert all(c.is_final for c in candles)


@pytest.mark.asyncio
async def test_fetch_candles_rejects_non_list():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"code": -1121}))
    client = BinanceClient(transport=transport)
    with pytest.raises(ValueError, match="Invalid kline response"):
        await client.fetch_candles("NOPE", "1m")


@pytest.mark.asyncio
async def test_retries_on_rate_limit(no_retry_delay):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(429, json={"msg": "slow down"})
        return httpx.Response(200, json=MOCK_KLINES_RESPONSE)

    client = BinanceClient(transport=httpx.MockTransport(handler))
    candles = await client.fetch_candles("BTCUSDT", "1m")
    assert len(attempts) == 3
    assert len(candles) == 2


@pytest.mark.asyncio
async def test_retries_exhausted_raises(no_retry_delay):
    client = BinanceClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_candles("BTCUSDT", "1m")


@pytest.mark.asyncio
async def test_client_error_not_retried(no_retry_delay):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(400, json={"msg": "bad symbol"})

    client = BinanceClient(transport=httpx.MockTransport(handler))
    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_candles("BAD", "1m")
    assert len(attempts) == 1


# ── Kline stream ─────────────────────────────────────────────────────────


def _stream():
    manager = MagicMock()
    manager.apply_bar = AsyncMock(return_value=[])
    return KlineStream(manager, "wss://stream.test/stream?streams="), manager


def test_stream_url():
    stream, _ = _stream()
    url = stream.stream_url(["btcusdt@kline_1m", "ethusdt@kline_1h"])
    assert url == "wss://stream.test/stream?streams=btcusdt@kline_1m/ethusdt@kline_1h"


@pytest.mark.asyncio
async def test_handle_message_routes_kline():
    stream, manager = _stream()
    await stream.handle_message(json.dumps({"stream": "btcusdt@kline_1m", "data": MOCK_KLINE_EVENT}))
    manager.apply_bar.assert_awaited_once()
    key, candle = manager.apply_bar.await_args.args
    assert key == "btcusdt@kline_1m"
    assert candle.open_time == 1704067200000
    assert candle.is_final is False


@pytest.mark.asyncio
async def test_handle_message_ignores_noise(caplog):
    stream, manager = _stream()
    await stream.handle_message("{not json")
    await stream.handle_message(json.dumps({"result": None, "id": 1}))
    await stream.handle_message(json.dumps({"stream": "btcusdt@aggTrade", "data": {"e": "aggTrade"}}))
    manager.apply_bar.assert_not_awaited()
    assert "JSON decode error" in caplog.text


@pytest.mark.asyncio
async def test_handle_message_drops_malformed_kline(caplog):
    stream, manager = _stream()
    await stream.handle_message('{"stream":"btcusdt@kline_1m","data":{"e":"kline","k":{"t":1}}}')
    await stream.handle_message(json.dumps({"stream": "btcusdt@kline_1m", "data": "kline"}))
    await stream.handle_message(json.dumps(["btcusdt@kline_1m"]))
    manager.apply_bar.assert_not_awaited()
    assert "malformed kline" in caplog.text


@pytest.mark.asyncio
async def test_handle_message_survives_apply_failure(caplog):
    stream, manager = _stream()
    manager.apply_bar.side_effect = RuntimeError("engine exploded")
    await stream.handle_message(json.dumps({"stream": "btcusdt@kline_1m", "data": MOCK_KLINE_EVENT}))
    manager.apply_bar.assert_awaited_once()
    assert "failed to apply bar" in caplog.text
