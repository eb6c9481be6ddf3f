"""Room session: the shared sync context and room administration.

:class:`SyncContext` replaces global singletons: every component receives
the collaborators it needs from it.  :class:`RoomSession` owns the ordered
room-switch sequence::

    verify access -> detach old listeners -> clear room state
      -> persist active room id (cache + roomAccess flags)
      -> attach new listeners -> full remote pull

Treatment timers live in the :class:`TimerEngine` and survive switches.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from tolerance_sync.config import SyncConfig
from tolerance_sync.core.clock import Clock
from tolerance_sync.core.logging import set_room_context
from tolerance_sync.core.metrics import SyncMetrics
from tolerance_sync.errors import (
    InvitationError,
    PermissionDeniedError,
    RemoteError,
    RoomLimitError,
)
from tolerance_sync.images import ProfileImages
from tolerance_sync.models import (
    DEFAULT_UNIT_NAMES,
    Category,
    Cycle,
    Invitation,
    InvitationStatus,
    RoomAccess,
    Unit,
    User,
    decode_record,
    decode_room_access,
    new_id,
)
from tolerance_sync.notifications import NotificationPort
from tolerance_sync.reminders import cancel_reminders, reminder_id, schedule_reminders
from tolerance_sync.remote.base import RemoteStore
from tolerance_sync.storage.blobs import BlobStore, LocalBlobStore
from tolerance_sync.storage.cache import LocalCache
from tolerance_sync.store import EntityStore
from tolerance_sync.sync import RemoteSync
from tolerance_sync.timers import TimerAlert, TimerEngine

logger = logging.getLogger(__name__)

FOOD_CHALLENGE_WEEKS = 12

_PLAN_PATTERN = re.compile(r"room(0[1-5])$")
_OPEN_INVITATION_STATUSES = (
    InvitationStatus.INVITED,
    InvitationStatus.SENT,
    InvitationStatus.CREATED,
)


def plan_room_limit(plan_id: str | None) -> int:
    """Room limit granted by a subscription plan id (``...room01`` to ``...room05``)."""
    if not plan_id:
        return 0
    match = _PLAN_PATTERN.search(plan_id)
    return int(match.group(1)) if match else 0


def default_units() -> list[Unit]:
    return [Unit(id=new_id(), name=name) for name in DEFAULT_UNIT_NAMES]


@dataclass
class SyncContext:
    """Every collaborator of one signed-in session."""

    config: SyncConfig
    clock: Clock
    remote: RemoteStore
    cache: LocalCache
    store: EntityStore
    sync: RemoteSync
    timers: TimerEngine
    notifications: NotificationPort
    images: ProfileImages
    metrics: SyncMetrics = field(default_factory=SyncMetrics)
    active_room_id: str | None = None
    current_user: User | None = None

    @classmethod
    def create(
        cls,
        config: SyncConfig,
        *,
        remote: RemoteStore,
        notifications: NotificationPort,
        blobs: BlobStore,
        cache: LocalCache | None = None,
        clock: Clock | None = None,
        on_alert: Callable[[TimerAlert], None] | None = None,
    ) -> SyncContext:
        clock = clock or Clock(config.tzinfo)
        metrics = SyncMetrics(config.name)
        cache = cache or LocalCache.from_directory(
            Path(config.cache.dir), timer_debounce_seconds=config.cache.timer_debounce_seconds
        )
        store = EntityStore(metrics=metrics)
        sync = RemoteSync(
            remote, store, clock, config=config.remote, policy=config.policy, metrics=metrics
        )
        timers = TimerEngine(
            store=store,
            cache=cache,
            notifications=notifications,
            clock=clock,
            config=config.timer,
            remote_writer=sync.write_timer,
            on_alert=on_alert,
            metrics=metrics,
        )
        sync.add_timer_observer(timers.on_remote_timer)
        images = ProfileImages(
            blobs=blobs,
            cache=LocalBlobStore(Path(config.cache.dir) / "images"),
            store=store,
            sync=sync,
        )
        return cls(
            config=config,
            clock=clock,
            remote=remote,
            cache=cache,
            store=store,
            sync=sync,
            timers=timers,
            notifications=notifications,
            images=images,
            metrics=metrics,
        )


class RoomSession:
    """Room selection, membership and per-user settings on top of a context."""

    def __init__(self, context: SyncContext) -> None:
        self.context = context
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover timers, resolve the configured identity and reopen the last room."""
        ctx = self.context
        if self._started:
            return
        self._started = True
        ctx.timers.observe()
        await ctx.timers.recover()

        identity = ctx.config.identity
        if identity.auth_id and ctx.current_user is None:
            try:
                await self.user_for_identity(identity.auth_id, identity.display_name)
            except RemoteError as exc:
                cached = await ctx.cache.load_user(identity.auth_id)
                if cached is None:
                    logger.warning("Cannot resolve user for %s: %s", identity.auth_id, exc)
                    return
                logger.warning("Remote unreachable; continuing as cached user %s", cached.id)
                self._set_user(cached)
        if ctx.current_user is None:
            logger.info("No user identity configured; session idle")
            return

        room_id = await ctx.cache.load_active_room() or ctx.current_user.active_room_id()
        if room_id is not None:
            try:
                await self.switch_room(room_id)
            except PermissionDeniedError as exc:
                logger.warning("Cannot reopen room %s: %s", room_id, exc.user_message)
            except RemoteError as exc:
                logger.warning("Cannot reopen room %s: %s", room_id, exc)

    async def stop(self) -> None:
        ctx = self.context
        if not self._started:
            return
        self._started = False
        room_id = ctx.sync.attached_room
        if room_id is not None:
            await ctx.cache.save_room_snapshot(room_id, ctx.store.export_snapshot())
            ctx.sync.detach(room_id)
        await ctx.timers.wait_idle()
        ctx.timers.close()
        await ctx.cache.save_timers(dict(ctx.timers.active_timers), flush=True)
        await ctx.images.close()
        logger.info("Room session stopped")

    async def tick(self) -> list[TimerAlert]:
        """Periodic work: timer expiry, daily reset and reminder upkeep."""
        ctx = self.context
        alerts = await ctx.timers.tick()
        if ctx.sync.attached_room is not None:
            try:
                await ctx.sync.check_and_reset_if_needed()
            except PermissionDeniedError:
                logger.debug("Daily reset skipped")
            await self._ensure_reminders()
        return alerts

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _set_user(self, user: User | None) -> None:
        self.context.current_user = user
        self.context.sync.user = user
        self.context.timers.user = user

    async def _cache_user(self, user: User, auth_id: str | None = None) -> None:
        auth_id = auth_id or user.auth_id or self.context.config.identity.auth_id
        if auth_id:
            await self.context.cache.save_user(auth_id, user)

    async def user_for_identity(self, auth_id: str, display_name: str | None = None) -> User:
        """Resolve the user mapped to *auth_id*, creating both on first sign-in."""
        sync = self.context.sync
        user_id = await sync.read(f"auth_mapping/{auth_id}")
        if isinstance(user_id, str) and user_id:
            payload = await sync.read(f"users/{user_id}")
            user = decode_record(User, payload, resource="users", key=user_id)
            if user is not None:
                self._set_user(user)
                await self._cache_user(user, auth_id)
                logger.info("Signed in as existing user %s", user_id)
                return user
            logger.warning("auth_mapping for %s points at unreadable user %s", auth_id, user_id)

        user = User(
            id=new_id(),
            name=display_name or "User",
            is_admin=False,
            auth_id=auth_id,
            treatment_food_timer_enabled=True,
        )
        await sync.update_values(
            "", {f"users/{user.id}": user.to_remote(), f"auth_mapping/{auth_id}": user.id}
        )
        self._set_user(user)
        await self._cache_user(user, auth_id)
        logger.info("Created user %s for identity %s", user.id, auth_id)
        return user

    async def save_user(self, user: User) -> None:
        """Persist the global profile and, when a member, the room copy."""
        ctx = self.context
        await ctx.sync.set_value(f"users/{user.id}", user.to_remote())
        self._set_user(user)
        await self._cache_user(user)
        member = ctx.store.member(user.id)
        if member is not None:
            await ctx.sync.save_member(member.model_copy(update={"name": user.name}))

    async def set_reminder(
        self, category: Category, *, enabled: bool, at: datetime | None = None
    ) -> User | None:
        user = self.context.current_user
        if user is None:
            return None
        reminder_times = dict(user.reminder_times)
        if at is not None:
            reminder_times[category] = at
        updated = user.model_copy(
            update={
                "reminders_enabled": {**user.reminders_enabled, category: enabled},
                "reminder_times": reminder_times,
            }
        )
        await self.save_user(updated)
        await self._reschedule_reminders()
        return updated

    async def set_treatment_timer(
        self, *, enabled: bool, duration_seconds: float | None = None
    ) -> User | None:
        user = self.context.current_user
        if user is None:
            return None
        update: dict[str, Any] = {"treatment_food_timer_enabled": enabled}
        if duration_seconds is not None:
            update["treatment_timer_duration"] = duration_seconds
        updated = user.model_copy(update=update)
        await self.save_user(updated)
        return updated

    async def set_subscription(self, plan_id: str | None) -> User | None:
        """Record the user's plan and the room limit it grants."""
        user = self.context.current_user
        if user is None:
            return None
        updated = user.model_copy(
            update={"subscription_plan": plan_id, "room_limit": plan_room_limit(plan_id)}
        )
        await self.save_user(updated)
        return updated

    # ------------------------------------------------------------------
    # Room switching
    # ------------------------------------------------------------------

    async def switch_room(self, room_id: str) -> bool:
        """Make *room_id* the active room; ``False`` when no user is signed in."""
        ctx = self.context
        user = ctx.current_user
        if user is None:
            return False
        if ctx.sync.attached_room == room_id:
            return True

        try:
            access = decode_room_access(await ctx.sync.read(f"users/{user.id}/roomAccess"))
        except RemoteError as exc:
            if room_id not in user.room_access:
                raise
            logger.warning("roomAccess unreadable, using cached access for %s: %s", user.id, exc)
            access = dict(user.room_access)
        if room_id not in access:
            raise PermissionDeniedError("You no longer have access to this room.")

        previous = ctx.sync.attached_room
        if previous is not None:
            await ctx.cache.save_room_snapshot(previous, ctx.store.export_snapshot())
            ctx.sync.detach(previous)
        ctx.store.clear_room_state()

        await self._persist_active_room(user, access, room_id)

        cached = await ctx.cache.load_room_snapshot(room_id)
        if cached:
            ctx.store.import_snapshot(cached)

        ctx.sync.attach(room_id)
        try:
            await ctx.sync.pull()
        except RemoteError as exc:
            logger.warning("Initial pull of room %s failed; relying on listeners: %s", room_id, exc)

        logger.info("Switched room %s -> %s", previous, room_id)
        await self._reschedule_reminders()
        return True

    async def _persist_active_room(
        self, user: User, access: dict[str, RoomAccess], room_id: str
    ) -> None:
        ctx = self.context
        updated = {
            rid: entry.model_copy(update={"is_active": rid == room_id})
            for rid, entry in access.items()
        }
        ctx.active_room_id = room_id
        ctx.timers.room_id = room_id
        set_room_context(room_id)
        user = user.model_copy(update={"room_access": updated})
        self._set_user(user)
        await self._cache_user(user)
        await ctx.cache.save_active_room(room_id)
        try:
            await ctx.sync.set_value(
                f"users/{user.id}/roomAccess", {rid: a.to_remote() for rid, a in updated.items()}
            )
        except RemoteError as exc:
            # Active room flags are advisory.
            logger.warning("Could not update roomAccess flags for %s: %s", user.id, exc)

    async def _close_room(self, room_id: str) -> None:
        """Leave *room_id* as the active room, moving to another accessible one."""
        ctx = self.context
        user = ctx.current_user
        if ctx.active_room_id != room_id:
            return
        remaining = [rid for rid in (user.room_access if user else {}) if rid != room_id]
        if remaining:
            await self.switch_room(remaining[0])
            return
        if ctx.sync.attached_room is not None:
            ctx.sync.detach(ctx.sync.attached_room)
        ctx.store.clear_room_state()
        ctx.active_room_id = None
        ctx.timers.room_id = None
        set_room_context(None)
        await ctx.cache.save_active_room(None)

    # ------------------------------------------------------------------
    # Room administration
    # ------------------------------------------------------------------

    async def create_room(
        self, participant_name: str, *, profile_image: bytes | None = None
    ) -> str | None:
        """Create a room owned by the current user and switch to it."""
        ctx = self.context
        user = ctx.current_user
        if user is None:
            return None
        if not participant_name.strip():
            raise ValueError("Participant name is required")
        if user.room_limit <= 0:
            raise RoomLimitError("You need an active subscription to create a room.")
        if len(user.owned_rooms) >= user.room_limit:
            raise RoomLimitError(
                f"You've reached your room limit ({user.room_limit}). "
                "Please upgrade your subscription."
            )

        now = ctx.clock.now()
        room_id = new_id()
        cycle = Cycle(
            id=new_id(),
            number=1,
            patient_name=participant_name.strip(),
            start_date=now,
            food_challenge_date=now + timedelta(weeks=FOOD_CHALLENGE_WEEKS),
        )
        access = {
            rid: entry.model_copy(update={"is_active": False})
            for rid, entry in user.room_access.items()
        }
        access[room_id] = RoomAccess(joined_at=now, is_active=True)
        owned = [*user.owned_rooms, room_id]
        member = User(id=user.id, name=user.name, is_admin=True)

        room = f"rooms/{room_id}"
        await ctx.sync.update_values(
            "",
            {
                f"{room}/users/{user.id}": member.to_remote(),
                f"{room}/cycles/{cycle.id}": cycle.to_remote(),
                f"{room}/units": {unit.id: unit.to_remote() for unit in default_units()},
                f"{room}/createdAt": now.isoformat().replace("+00:00", "Z"),
                f"users/{user.id}/ownedRooms": owned,
                f"users/{user.id}/roomAccess": {rid: a.to_remote() for rid, a in access.items()},
            },
        )
        self._set_user(user.model_copy(update={"owned_rooms": owned, "room_access": access}))
        logger.info("Created room %s for participant %s", room_id, cycle.patient_name)

        await self.switch_room(room_id)
        if profile_image is not None:
            await ctx.images.upload(cycle.id, profile_image)
        return room_id

    async def join_room(self, code: str) -> str | None:
        """Accept an invitation code and switch to its room."""
        ctx = self.context
        user = ctx.current_user
        if user is None:
            return None
        payload = await ctx.sync.read(f"invitations/{code}")
        invitation = (
            decode_record(Invitation, payload, resource="invitations", key=None)
            if payload is not None
            else None
        )
        if invitation is None or invitation.status not in _OPEN_INVITATION_STATUSES:
            raise InvitationError("This invitation code is invalid or has already been used.")
        room_id = invitation.room_id
        if await ctx.sync.read(f"rooms/{room_id}/users") is None:
            raise InvitationError("The room associated with this invitation no longer exists.")

        now = ctx.clock.now()
        access = {
            rid: entry.model_copy(update={"is_active": False})
            for rid, entry in user.room_access.items()
        }
        access[room_id] = RoomAccess(joined_at=now, is_active=True)
        member = User(id=user.id, name=user.name, is_admin=invitation.is_admin)
        await ctx.sync.update_values(
            "",
            {
                f"users/{user.id}/roomAccess": {rid: a.to_remote() for rid, a in access.items()},
                f"rooms/{room_id}/users/{user.id}": member.to_remote(),
                f"invitations/{code}/status": InvitationStatus.ACCEPTED.value,
                f"invitations/{code}/acceptedBy": user.id,
            },
        )
        self._set_user(user.model_copy(update={"room_access": access}))
        logger.info("Joined room %s with invitation %s", room_id, code)
        await self.switch_room(room_id)
        return room_id

    async def leave_room(self, room_id: str) -> bool:
        ctx = self.context
        user = ctx.current_user
        if user is None:
            return False
        await ctx.sync.update_values(
            "",
            {
                f"users/{user.id}/roomAccess/{room_id}": None,
                f"rooms/{room_id}/users/{user.id}": None,
            },
        )
        access = {rid: a for rid, a in user.room_access.items() if rid != room_id}
        self._set_user(user.model_copy(update={"room_access": access}))
        await ctx.timers.discard(room_id)
        await cancel_reminders(ctx.notifications, user.id, room_id)
        await self._close_room(room_id)
        logger.info("Left room %s", room_id)
        return True

    async def delete_room(self, room_id: str) -> bool:
        """Delete a room owned by the current user.

        Member access is always revoked; the room subtree itself is removed
        only when the cascade policy is enabled.
        """
        ctx = self.context
        user = ctx.current_user
        if user is None:
            return False
        if room_id not in user.owned_rooms:
            raise PermissionDeniedError("Only the room owner can delete this room.")

        members = await ctx.sync.read(f"rooms/{room_id}/users")
        member_ids = set(members) if isinstance(members, dict) else set()
        member_ids.add(user.id)
        owned = [rid for rid in user.owned_rooms if rid != room_id]

        values: dict[str, Any] = {
            f"users/{member_id}/roomAccess/{room_id}": None for member_id in sorted(member_ids)
        }
        values[f"users/{user.id}/ownedRooms"] = owned or None
        if ctx.config.policy.cascade_delete:
            values[f"rooms/{room_id}"] = None
        else:
            values[f"rooms/{room_id}/users"] = None
        await ctx.sync.update_values("", values)

        access = {rid: a for rid, a in user.room_access.items() if rid != room_id}
        self._set_user(user.model_copy(update={"owned_rooms": owned, "room_access": access}))
        await ctx.timers.discard(room_id)
        await cancel_reminders(ctx.notifications, user.id, room_id)
        await self._close_room(room_id)
        logger.info("Deleted room %s (cascade=%s)", room_id, ctx.config.policy.cascade_delete)
        return True

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def _participant(self) -> str | None:
        cycle = self.context.store.current_cycle(self.context.clock)
        return cycle.patient_name if cycle is not None else None

    async def _reschedule_reminders(self) -> list[str]:
        ctx = self.context
        if ctx.current_user is None or ctx.active_room_id is None:
            return []
        return await schedule_reminders(
            ctx.notifications,
            ctx.current_user,
            ctx.active_room_id,
            ctx.clock,
            participant=self._participant(),
        )

    async def _ensure_reminders(self) -> None:
        """Reschedule once any enabled reminder has fired."""
        ctx = self.context
        user = ctx.current_user
        if user is None or ctx.active_room_id is None:
            return
        expected = {
            reminder_id(user.id, category, ctx.active_room_id)
            for category in Category
            if user.reminders_enabled.get(category) and category in user.reminder_times
        }
        if expected - set(await ctx.notifications.list_pending()):
            await self._reschedule_reminders()
