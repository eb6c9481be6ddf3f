"""Local notification port and an event-loop backed implementation.

The engine never delivers notifications itself; it hands ``(id, delay,
payload)`` triples to a :class:`NotificationPort`.  Scheduling an id that is
already pending replaces the pending notification.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

CATEGORY_TREATMENT_TIMER = "TREATMENT_TIMER"
CATEGORY_REMINDER = "DOSE_REMINDER"


@dataclass(frozen=True)
class NotificationPayload:
    title: str
    body: str
    category: str = CATEGORY_TREATMENT_TIMER
    room_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class NotificationPort(Protocol):
    """Protocol for local notification schedulers."""

    async def schedule(
        self, notification_id: str, fire_in_seconds: float, payload: NotificationPayload
    ) -> None:
        """Schedule (or replace) *notification_id* to fire after a delay."""
        ...

    async def cancel(self, ids: Iterable[str]) -> None:
        """Cancel pending notifications; unknown ids are ignored."""
        ...

    async def list_pending(self) -> list[str]:
        """Return the ids of notifications that have not fired yet."""
        ...


class LoopNotificationPort:
    """Fires notifications with ``loop.call_later`` inside the daemon process.

    Fired notifications are logged and passed to *deliver* when given.
    """

    def __init__(
        self, deliver: Callable[[str, NotificationPayload], None] | None = None
    ) -> None:
        self._deliver = deliver
        self._handles: dict[str, asyncio.TimerHandle] = {}

    async def schedule(
        self, notification_id: str, fire_in_seconds: float, payload: NotificationPayload
    ) -> None:
        existing = self._handles.pop(notification_id, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._handles[notification_id] = loop.call_later(
            max(fire_in_seconds, 0), self._fire, notification_id, payload
        )
        logger.debug("Scheduled notification %s in %.0fs", notification_id, fire_in_seconds)

    async def cancel(self, ids: Iterable[str]) -> None:
        for notification_id in ids:
            handle = self._handles.pop(notification_id, None)
            if handle is not None:
                handle.cancel()

    async def list_pending(self) -> list[str]:
        return sorted(self._handles)

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def _fire(self, notification_id: str, payload: NotificationPayload) -> None:
        self._handles.pop(notification_id, None)
        logger.info("Notification %s: %s | %s", notification_id, payload.title, payload.body)
        if self._deliver is None:
            return
        try:
            self._deliver(notification_id, payload)
        except Exception:
            logger.exception("Notification delivery failed for %s", notification_id)
