"""Tests for candlepilot.dispatch.webhook — fire-and-forget webhook delivery."""

import json
from unittest.mock import MagicMock

import httpx
import pytest

from candlepilot.dispatch.webhook import WebhookDispatcher
from candlepilot.strategy.models import EmittedAction


def _action(**overrides) -> EmittedAction:
    data = dict(
        secret="",
        action="buy",
        position="long",
        symbol="BTCUSDT",
        trade_amount=1000.0,
        leverage=5,
        timestamp="2024-01-02T12:00:00+00:00",
        strategy_name="Strategy #1",
        level_label="Entry",
        execution_price=100.0,
        execution_quantity=10.0,
    )
    data.update(overrides)
    return EmittedAction(**data)


def test_payload_shape():
    payload = _action().to_payload()
    assert payload["tv_exchange"] == "BINANCE"
    assert payload["tp_level"] == "Entry"
    assert set(payload) == {
        "secret", "action", "position", "symbol", "trade_amount", "leverage",
        "timestamp", "tv_exchange", "strategy_name", "tp_level",
        "execution_price", "execution_quantity",
    }


@pytest.mark.asyncio
async def test_delivers_json_and_records_sent():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(200)

    log = MagicMock()
    dispatcher = WebhookDispatcher(log, transport=httpx.MockTransport(handler))
    action = _action()
    dispatcher.dispatch(action, "http://hook.test/in", "s3cret", strategy_id="s1")
    assert dispatcher.pending == 1
    await dispatcher.drain()

    assert received[0]["secret"] == "s3cret"
    assert received[0]["execution_quantity"] == 10.0
    log.insert_action.assert_called_once_with("s1", action, "sent", None)
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_failed_delivery_recorded_not_raised(caplog):
    log = MagicMock()
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    dispatcher = WebhookDispatcher(log, transport=transport)
    dispatcher.dispatch(_action(), "http://hook.test/in", "", strategy_id="s1")
    await dispatcher.drain()

    args = log.insert_action.call_args.args
    assert args[2] == "failed"
    assert "500" in args[3]
    assert "webhook delivery" in caplog.text


@pytest.mark.asyncio
async def test_transport_error_recorded():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    log = MagicMock()
    dispatcher = WebhookDispatcher(log, transport=httpx.MockTransport(handler))
    dispatcher.dispatch(_action(), "http://hook.test/in", "")
    await dispatcher.drain()
    assert log.insert_action.call_args.args[2] == "failed"


@pytest.mark.asyncio
async def test_empty_endpoint_skipped():
    calls = []
    log = MagicMock()
    dispatcher = WebhookDispatcher(log, transport=httpx.MockTransport(lambda r: calls.append(r)))
    dispatcher.dispatch(_action(), "", "")
    await dispatcher.drain()
    assert calls == []
    assert log.insert_action.call_args.args[2] == "skipped"


@pytest.mark.asyncio
async def test_action_log_failure_is_logged(caplog):
    log = MagicMock()
    log.insert_action.side_effect = RuntimeError("db locked")
    dispatcher = WebhookDispatcher(log, transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    dispatcher.dispatch(_action(), "http://hook.test/in", "", strategy_id="s1")
    await dispatcher.drain()
    assert "db locked" in caplog.text
