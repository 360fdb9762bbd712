"""Webhook dispatcher — best-effort, fire-and-forget delivery of emitted actions.

``dispatch()`` schedules the POST on the running event loop and returns
immediately.  A failed delivery is logged and recorded in the action log;
it is never retried here and never touches strategy state.
"""

import asyncio
import logging
from typing import Optional

import httpx

from candlepilot.repos.action_log_repo import ActionLogRepo
from candlepilot.strategy.models import EmittedAction

logger = logging.getLogger("candlepilot.dispatch")


class WebhookDispatcher:
    """Posts ``EmittedAction`` payloads as JSON.

    Args:
        action_log: Optional ``ActionLogRepo`` recording each delivery.
        timeout: Per-request timeout in seconds.
        transport: Optional ``httpx`` transport (tests inject a
            ``MockTransport``).
    """

    def __init__(
        self,
        action_log: Optional[ActionLogRepo] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._action_log = action_log
        self._timeout = timeout
        self._transport = transport
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._pending)

    def dispatch(
        self,
        action: EmittedAction,
        endpoint: str,
        secret: str,
        strategy_id: str = "",
    ) -> None:
        """Schedule delivery of *action* to *endpoint* and return at once.

        Must be called from within a running event loop.
        """
        task = asyncio.get_running_loop().create_task(
            self._send(action, endpoint, secret, strategy_id)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every in-flight delivery (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _send(
        self,
        action: EmittedAction,
        endpoint: str,
        secret: str,
        strategy_id: str,
    ) -> str:
        payload = action.to_payload()
        if secret:
            payload["secret"] = secret

        if not endpoint:
            logger.info(
                "Strategy '%s' — no webhook URL, %s %s not sent.",
                strategy_id, action.action, action.level_label,
            )
            await self._record(strategy_id, action, "skipped", None)
            return "skipped"

        status, error = "sent", None
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.post(endpoint, json=payload, timeout=self._timeout)
            resp.raise_for_status()
            logger.info(
                "Strategy '%s' — webhook %s %s (%s) delivered.",
                strategy_id, action.action, action.position, action.level_label,
            )
        except httpx.HTTPError as exc:
            status, error = "failed", str(exc) or exc.__class__.__name__
            logger.warning(
                "Strategy '%s' — webhook delivery to %s failed: %s",
                strategy_id, endpoint, error,
            )

        await self._record(strategy_id, action, status, error)
        return status

    async def _record(
        self,
        strategy_id: str,
        action: EmittedAction,
        status: str,
        error: Optional[str],
    ) -> None:
        if self._action_log is None:
            return
        try:
            await asyncio.to_thread(
                self._action_log.insert_action, strategy_id, action, status, error,
            )
        except Exception as exc:
            logger.error("Failed to record action for '%s': %s", strategy_id, exc)
