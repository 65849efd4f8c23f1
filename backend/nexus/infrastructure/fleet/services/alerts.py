"""
Operator alerts - best-effort notification when a VM cannot be recovered

Features:
- Structured log notifier (default)
- JSON webhook notifier (chat / paging integrations)
- Fire-and-forget dispatch that never blocks the health loop
"""

import asyncio
from datetime import datetime
from typing import Optional, Protocol, Set

import aiohttp
import structlog

logger = structlog.get_logger(__name__)


class AlertNotifier(Protocol):
    """Anything that can deliver an operator alert."""

    async def notify(self, vm_id: str, message: str) -> None:
        ...


class LogAlertNotifier:
    """Emit operator alerts as error-level log events."""

    async def notify(self, vm_id: str, message: str) -> None:
        logger.error("Operator alert", vm_id=vm_id, alert=message)


class WebhookAlertNotifier:
    """POST operator alerts as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def notify(self, vm_id: str, message: str) -> None:
        payload = {
            "vm_id": vm_id,
            "message": message,
            "text": f"[OPERATOR ALERT] VM {vm_id}: {message}",
            "timestamp": datetime.utcnow().isoformat(),
        }

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.url, json=payload) as response:
                response.raise_for_status()


class AlertDispatcher:
    """
    Schedules alert delivery in the background.

    Delivery failures are logged and never reach the caller.
    """

    def __init__(self, notifier: Optional[AlertNotifier] = None):
        self.notifier = notifier or LogAlertNotifier()
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, vm_id: str, message: str) -> asyncio.Task:
        """Start delivering an alert and return immediately."""
        task = asyncio.create_task(
            self._deliver(vm_id, message),
            name=f"alert-{vm_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for all in-flight alerts to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _deliver(self, vm_id: str, message: str) -> None:
        try:
            await self.notifier.notify(vm_id, message)
        except Exception as e:
            logger.error(
                "Alert delivery failed",
                vm_id=vm_id,
                error=str(e),
            )
