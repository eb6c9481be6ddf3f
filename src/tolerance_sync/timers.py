"""Per-room treatment timer state machine.

States per room: ``Idle -> Running -> {Expired, Stopped, Snoozed -> Running}``.

A local log of a treatment item in the current cycle starts (or restarts) the
room's timer; unlogging a treatment item stops it.  Timers live in
:attr:`TimerEngine.active_timers`, keyed by room id, and survive room
switches.  Every transition is persisted to the :class:`LocalCache` and to
``rooms/<roomId>/treatmentTimer`` so other devices in the room see it.

Starting a timer supersedes the previous one for that room: its pending
notifications are cancelled before the new ones are scheduled.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from tolerance_sync.config import TimerConfig
from tolerance_sync.core.clock import Clock
from tolerance_sync.core.metrics import SyncMetrics
from tolerance_sync.core.telemetry import get_tracer
from tolerance_sync.errors import RemoteError
from tolerance_sync.models import Category, LogEntry, TreatmentTimer, User, new_timer_id
from tolerance_sync.notifications import (
    CATEGORY_TREATMENT_TIMER,
    NotificationPayload,
    NotificationPort,
)
from tolerance_sync.storage.cache import LocalCache
from tolerance_sync.store import ChangeOrigin, EntityStore, ResourceKind, StoreChange
from tolerance_sync.sync import TAG_DAILY_RESET

logger = logging.getLogger(__name__)

DEFAULT_PARTICIPANT = "TIPs App"

TimerWriter = Callable[[str, TreatmentTimer | None], Awaitable[None]]


@dataclass(frozen=True)
class TimerAlert:
    """Raised when a timer expires while treatment items remain unlogged."""

    room_id: str
    timer: TreatmentTimer
    participant: str


def notification_ids(timer_id: str, room_id: str, count: int) -> list[str]:
    return [f"{timer_id}_room_{room_id}_repeat_{i}" for i in range(count)]


def merge_timers(
    local: TreatmentTimer | None, remote: TreatmentTimer | None, now: datetime
) -> TreatmentTimer | None:
    """Pick the authoritative timer for a room.

    Both active: the later end time wins (equal end times keep *local*).
    Only one present: it is kept while active and unexpired.
    """
    if local is not None and remote is not None and local.is_active and remote.is_active:
        return remote if remote.end_time > local.end_time else local
    if local is not None and local.is_running(now):
        return local
    if remote is not None and remote.is_running(now):
        return remote
    return None


class TimerEngine:
    """Owns the treatment timers of every room the user has visited.

    Parameters
    ----------
    store:
        Entity store of the active room; consumption log changes drive
        starts and stops.
    cache:
        Local durable timer persistence.
    notifications:
        Port used to schedule the end-of-timer alerts.
    clock:
        Source of "now" and of the calendar day.
    config:
        Duration, snooze and repeat defaults.
    remote_writer:
        Coroutine persisting a room's timer remotely (``None`` clears it).
    on_alert:
        Called with a :class:`TimerAlert` when a timer expires while the
        treatment category is incomplete.
    """

    def __init__(
        self,
        *,
        store: EntityStore,
        cache: LocalCache,
        notifications: NotificationPort,
        clock: Clock,
        config: TimerConfig | None = None,
        remote_writer: TimerWriter | None = None,
        on_alert: Callable[[TimerAlert], None] | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._notifications = notifications
        self._clock = clock
        self._config = config or TimerConfig()
        self._remote_writer = remote_writer
        self._on_alert = on_alert
        self._metrics = metrics or SyncMetrics()
        self.active_timers: dict[str, TreatmentTimer] = {}
        self._last_expired: dict[str, TreatmentTimer] = {}
        self._dirty = False
        self._tasks: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        # Timers this device ended; stale remote echoes never revive them.
        self._ended_ids: set[str] = set()
        # room id -> mutation id of the log that started the room's timer
        self._started_by: dict[str, str] = {}
        # room id -> id of the local timer whose write has echoed back remotely
        self._confirmed: dict[str, str] = {}
        self._unsubscribe: Callable[[], None] | None = None
        # Bound by the room session.
        self.room_id: str | None = None
        self.user: User | None = None

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def observe(self) -> None:
        """Start reacting to local consumption log changes."""
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._on_store_change)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def wait_idle(self) -> None:
        """Wait for timer transitions triggered by store changes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Awaitable[object], name: str) -> None:
        task = asyncio.get_running_loop().create_task(self._serialized(coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    async def _serialized(self, coro: Awaitable[object]) -> object:
        # Background transitions run one at a time so remote writes land in order.
        async with self._lock:
            return await coro

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Timer task %s failed", task.get_name(), exc_info=task.exception())

    def _on_store_change(self, change: StoreChange) -> None:
        if change.resource.kind is not ResourceKind.CONSUMPTION_LOG or self.room_id is None:
            return
        room_id = self.room_id
        if change.origin is ChangeOrigin.ROLLBACK:
            if change.mutation_id and self._started_by.get(room_id) == change.mutation_id:
                del self._started_by[room_id]
                self._spawn(self.stop(room_id), name=f"timer-stop-{room_id}")
            return
        if change.origin is not ChangeOrigin.LOCAL or change.tag == TAG_DAILY_RESET:
            return
        cycle = self._store.current_cycle(self._clock)
        if cycle is None or change.resource.cycle_id != cycle.id:
            return

        today = self._clock.today()
        logged: list[str] = []
        unlogged: list[str] = []
        for item_id in sorted(change.keys):
            item = self._store.item(cycle.id, item_id)
            if item is None or item.category is not Category.TREATMENT:
                continue
            before: list[LogEntry] = change.previous.get(item_id) or []
            was_logged = any(self._clock.day_of(e.timestamp) == today for e in before)
            is_logged = self._store.is_logged_today(cycle.id, item_id, self._clock)
            if is_logged and not was_logged:
                logged.append(item_id)
            elif was_logged and not is_logged:
                unlogged.append(item_id)

        if logged:
            remaining = [
                i.id
                for i in self._store.unlogged_items(cycle.id, Category.TREATMENT, self._clock)
            ]
            if change.mutation_id:
                self._started_by[room_id] = change.mutation_id
            self._spawn(
                self._on_treatment_logged(
                    room_id, remaining=remaining, logged=logged, participant=cycle.patient_name
                ),
                name=f"timer-log-{room_id}",
            )
        elif unlogged:
            self._spawn(self.stop(room_id), name=f"timer-stop-{room_id}")

    async def _on_treatment_logged(
        self, room_id: str, *, remaining: list[str], logged: list[str], participant: str
    ) -> None:
        # Logging the last unlogged item ends a running timer; from idle it starts one.
        if not remaining and room_id in self.active_timers:
            await self.stop(room_id)
            return
        await self.start(room_id, item_ids=remaining or logged, participant=participant)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _duration(self) -> float:
        if self.user is not None and self.user.treatment_timer_duration > 0:
            return self.user.treatment_timer_duration
        return self._config.duration_seconds

    async def start(
        self,
        room_id: str,
        *,
        item_ids: list[str],
        participant: str | None = None,
        duration: float | None = None,
    ) -> TreatmentTimer:
        """Start a new timer for *room_id*, superseding any previous one."""
        previous = self.active_timers.get(room_id)
        if previous is not None:
            self._ended_ids.add(previous.id)
            await self._notifications.cancel(previous.notification_ids)

        now = self._clock.now()
        timer = TreatmentTimer(
            id=new_timer_id(),
            is_active=True,
            end_time=now + timedelta(seconds=duration or self._duration()),
            associated_item_ids=list(item_ids),
            room_name=participant or DEFAULT_PARTICIPANT,
        )
        timer = timer.model_copy(
            update={"notification_ids": await self._schedule(room_id, timer)}
        )
        self.active_timers[room_id] = timer
        self._last_expired.pop(room_id, None)
        self._metrics.timer_started()
        logger.info(
            "Started timer %s for room %s ending %s", timer.id, room_id, timer.end_time.isoformat()
        )
        await self._persist(room_id, timer)
        return timer

    async def stop(self, room_id: str) -> bool:
        """Stop the timer of *room_id*; other rooms are untouched."""
        timer = self.active_timers.pop(room_id, None)
        self._last_expired.pop(room_id, None)
        if timer is None:
            return False
        self._ended_ids.add(timer.id)
        self._started_by.pop(room_id, None)
        await self._notifications.cancel(timer.notification_ids)
        logger.info("Stopped timer %s for room %s", timer.id, room_id)
        await self._persist(room_id, None, flush=True)
        return True

    async def discard(self, room_id: str) -> None:
        """Forget a room's timer locally without touching the shared copy."""
        timer = self.active_timers.pop(room_id, None)
        self._started_by.pop(room_id, None)
        self._last_expired.pop(room_id, None)
        if timer is not None:
            self._ended_ids.add(timer.id)
            await self._notifications.cancel(timer.notification_ids)
            await self._persist_local(flush=True)

    async def stop_all(self) -> None:
        for room_id in list(self.active_timers):
            await self.stop(room_id)

    async def snooze(self, room_id: str, seconds: float | None = None) -> TreatmentTimer | None:
        """Push the end of a running (or just expired) timer out by *seconds*."""
        timer = self.active_timers.get(room_id) or self._last_expired.get(room_id)
        if timer is None:
            return None
        await self._notifications.cancel(timer.notification_ids)
        snoozed = timer.model_copy(
            update={
                "is_active": True,
                "end_time": self._clock.now()
                + timedelta(seconds=seconds or self._config.snooze_seconds),
            }
        )
        snoozed = snoozed.model_copy(
            update={"notification_ids": await self._schedule(room_id, snoozed)}
        )
        self.active_timers[room_id] = snoozed
        self._ended_ids.discard(snoozed.id)
        self._last_expired.pop(room_id, None)
        logger.info("Snoozed timer %s for room %s", snoozed.id, room_id)
        await self._persist(room_id, snoozed, flush=True)
        return snoozed

    async def tick(self) -> list[TimerAlert]:
        """Expire every timer whose end time has passed."""
        now = self._clock.now()
        alerts: list[TimerAlert] = []
        with get_tracer().start_as_current_span("timers.tick") as span:
            span.set_attribute("tolerance.active_timers", len(self.active_timers))
            for room_id, timer in list(self.active_timers.items()):
                if timer.end_time > now:
                    continue
                alert = await self._expire(room_id, timer)
                if alert is not None:
                    alerts.append(alert)
            if self._dirty:
                await self._persist_local(flush=True)
        return alerts

    async def _expire(self, room_id: str, timer: TreatmentTimer) -> TimerAlert | None:
        del self.active_timers[room_id]
        self._ended_ids.add(timer.id)
        self._started_by.pop(room_id, None)
        self._last_expired[room_id] = timer
        logger.info("Timer %s for room %s expired", timer.id, room_id)
        await self._persist(room_id, None, flush=True)

        if room_id == self.room_id:
            cycle = self._store.current_cycle(self._clock)
            if cycle is not None and self._store.is_category_complete(
                cycle.id, Category.TREATMENT, self._clock
            ):
                return None
        alert = TimerAlert(room_id, timer, timer.room_name or DEFAULT_PARTICIPANT)
        if self._on_alert is not None:
            try:
                self._on_alert(alert)
            except Exception:
                logger.exception("Timer alert callback failed for room %s", room_id)
        return alert

    # ------------------------------------------------------------------
    # Recovery and cross-device merge
    # ------------------------------------------------------------------

    async def recover(self) -> dict[str, TreatmentTimer]:
        """Restore persisted timers after a restart.

        Notifications are rescheduled only for timers with none pending.
        """
        now = self._clock.now()
        stored = await self._cache.load_timers()
        pending = await self._notifications.list_pending()
        discarded = 0
        for room_id, timer in stored.items():
            if not timer.is_running(now):
                discarded += 1
                continue
            if not any(nid.startswith(timer.id) for nid in pending):
                ids = await self._schedule(room_id, timer)
                timer = timer.model_copy(update={"notification_ids": ids})
            self.active_timers[room_id] = timer
        if discarded:
            await self._persist_local(flush=True)
        logger.info(
            "Recovered %d timers (%d expired discarded)", len(self.active_timers), discarded
        )
        return dict(self.active_timers)

    def on_remote_timer(self, room_id: str, timer: TreatmentTimer | None) -> None:
        """Listener hook: merge a remote timer snapshot in the background."""
        self._spawn(self.merge_remote(room_id, timer), name=f"timer-merge-{room_id}")

    async def merge_remote(
        self, room_id: str, remote: TreatmentTimer | None
    ) -> TreatmentTimer | None:
        local = self.active_timers.get(room_id)
        if remote is None:
            if local is not None and self._confirmed.get(room_id) == local.id:
                await self._stopped_elsewhere(room_id, local)
                return None
            # Unconfirmed: the clear predates this device's write.
            return local
        if remote.id in self._ended_ids:
            remote = None
        elif local is not None and remote.id == local.id:
            self._confirmed[room_id] = local.id
        merged = merge_timers(local, remote, self._clock.now())
        if merged is None or merged is local:
            return local
        if local is not None and local.id == merged.id and local.end_time == merged.end_time:
            return local

        if local is not None:
            await self._notifications.cancel(local.notification_ids)
        adopted = merged.model_copy(
            update={"notification_ids": await self._schedule(room_id, merged)}
        )
        self.active_timers[room_id] = adopted
        self._confirmed[room_id] = adopted.id
        self._started_by.pop(room_id, None)
        self._last_expired.pop(room_id, None)
        logger.info("Adopted remote timer %s for room %s", adopted.id, room_id)
        await self._persist_local(flush=True)
        return adopted

    async def _stopped_elsewhere(self, room_id: str, timer: TreatmentTimer) -> None:
        """Another device cleared the shared timer; drop ours without writing back."""
        del self.active_timers[room_id]
        self._confirmed.pop(room_id, None)
        self._started_by.pop(room_id, None)
        self._last_expired.pop(room_id, None)
        self._ended_ids.add(timer.id)
        await self._notifications.cancel(timer.notification_ids)
        logger.info("Timer %s for room %s was stopped on another device", timer.id, room_id)
        await self._persist_local(flush=True)

    # ------------------------------------------------------------------
    # Notifications and persistence
    # ------------------------------------------------------------------

    async def _schedule(self, room_id: str, timer: TreatmentTimer) -> list[str]:
        if self.user is None or not self.user.treatment_food_timer_enabled:
            logger.debug("Timer notifications disabled for room %s", room_id)
            return []
        participant = timer.room_name or DEFAULT_PARTICIPANT
        delay = max(timer.remaining_seconds(self._clock.now()), 1)
        ids = notification_ids(timer.id, room_id, self._config.repeat_count)
        minutes = max(round(self._duration() / 60), 1)
        for i, notification_id in enumerate(ids):
            payload = NotificationPayload(
                title=f"{participant}: Time for next treatment food",
                body=f"Your {minutes} minute treatment food timer has ended.",
                category=CATEGORY_TREATMENT_TIMER,
                room_id=room_id,
                data={"timerId": timer.id, "participantName": participant},
            )
            await self._notifications.schedule(notification_id, delay + i, payload)
        self._metrics.notifications_scheduled(len(ids))
        return ids

    async def _persist_local(self, *, flush: bool = False) -> None:
        saved = await self._cache.save_timers(dict(self.active_timers), flush=flush)
        self._dirty = not saved

    async def _persist(
        self, room_id: str, timer: TreatmentTimer | None, *, flush: bool = False
    ) -> None:
        await self._persist_local(flush=flush)
        if self._remote_writer is None:
            return
        try:
            await self._remote_writer(room_id, timer)
        except RemoteError as exc:
            logger.warning("Could not write timer for room %s: %s", room_id, exc)
