"""Daily per-category dose reminders.

Each enabled category gets one pending notification at the user's chosen
time of day, identified as ``reminder_<userId>_<Category>_<roomId>``.  The
next fire time is computed with croniter in the configured timezone; the
daemon tick reschedules a reminder once it has fired.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from croniter import croniter

from tolerance_sync.core.clock import Clock
from tolerance_sync.models import Category, User
from tolerance_sync.notifications import CATEGORY_REMINDER, NotificationPayload, NotificationPort

logger = logging.getLogger(__name__)

REMINDER_PREFIX = "reminder_"
DEFAULT_PARTICIPANT = "TIPs Program"


def reminder_id(user_id: str, category: Category, room_id: str) -> str:
    return f"{REMINDER_PREFIX}{user_id}_{category.value}_{room_id}"


def daily_cron(reminder_time: datetime, clock: Clock) -> str:
    """Cron expression firing daily at *reminder_time*'s local hour and minute."""
    local = reminder_time.astimezone(clock.tz)
    return f"{local.minute} {local.hour} * * *"


def next_fire(reminder_time: datetime, clock: Clock, *, now: datetime | None = None) -> datetime:
    """Next occurrence (UTC) of the daily reminder after *now*."""
    anchor = (now or clock.now()).astimezone(clock.tz)
    fire_at = croniter(daily_cron(reminder_time, clock), anchor).get_next(datetime)
    if fire_at.tzinfo is None:
        fire_at = fire_at.replace(tzinfo=clock.tz)
    return fire_at.astimezone(UTC)


async def schedule_reminders(
    port: NotificationPort,
    user: User,
    room_id: str,
    clock: Clock,
    *,
    participant: str | None = None,
) -> list[str]:
    """Replace the reminders of *user* in *room_id*; returns the scheduled ids."""
    participant = participant or DEFAULT_PARTICIPANT
    now = clock.now()
    scheduled: list[str] = []
    await port.cancel([reminder_id(user.id, category, room_id) for category in Category])
    for category in Category:
        reminder_time = user.reminder_times.get(category)
        if not user.reminders_enabled.get(category) or reminder_time is None:
            continue
        notification_id = reminder_id(user.id, category, room_id)
        fire_at = next_fire(reminder_time, clock, now=now)
        payload = NotificationPayload(
            title=f"{participant}: Dose reminder for {category.value}",
            body=f"Have you logged all items in {category.value} for {participant}?",
            category=CATEGORY_REMINDER,
            room_id=room_id,
            data={"category": category.value},
        )
        await port.schedule(notification_id, (fire_at - now).total_seconds(), payload)
        scheduled.append(notification_id)
    if scheduled:
        logger.info("Scheduled %d reminders for room %s", len(scheduled), room_id)
    return scheduled


async def cancel_reminders(port: NotificationPort, user_id: str, room_id: str) -> None:
    await port.cancel([reminder_id(user_id, category, room_id) for category in Category])
