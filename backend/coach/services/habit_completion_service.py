"""Record one habit completion per local calendar day and keep counters and streaks in step with the log."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from coach.config import settings
from coach.services.frequency import normalize_frequency_settings, period_window

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

logger = logging.getLogger(__name__)


@dataclass
class CompletionLogged:
    habit_id: UUID
    title: str
    completion_id: UUID
    completed_at: datetime
    completed_on: date
    streak: int
    longest_streak: int
    related_goal: dict[str, Any] | None = None
    updated_instance_ids: list[UUID] = field(default_factory=list)


@dataclass
class CompletionConflict:
    habit_id: UUID
    title: str
    completed_on: date
    reason: Literal["already_completed", "period_target_reached"]

    @property
    def message(self) -> str:
        if self.reason == "period_target_reached":
            return f"'{self.title}' already hit its target for this period."
        return f"'{self.title}' is already logged for {self.completed_on.isoformat()}."


def _now() -> datetime:
    """Wrapper for deterministic tests."""
    return datetime.now(timezone.utc)


def _zone(name: str | None) -> ZoneInfo:
    for candidate in (name, settings.default_timezone, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back", candidate)
    return ZoneInfo("UTC")


def compute_streaks(completion_days: Iterable[date], today: date) -> tuple[int, int]:
    """
    (current, longest) consecutive-day streaks from the completion log.

    The current streak counts back from today, or from yesterday when today
    has no completion yet, so an unfinished day does not break it.
    """
    days = sorted(set(completion_days))
    if not days:
        return 0, 0

    longest = 1
    run = 1
    for previous, current in zip(days, days[1:]):
        run = run + 1 if current - previous == timedelta(days=1) else 1
        longest = max(longest, run)

    logged = set(days)
    anchor = today if today in logged else today - timedelta(days=1)
    current_streak = 0
    while anchor in logged:
        current_streak += 1
        anchor -= timedelta(days=1)

    return current_streak, longest


async def user_local_today(connection: AsyncConnection, user_id: UUID) -> tuple[date, datetime]:
    """The user's calendar day plus the UTC instant it was read at."""
    async with connection.cursor() as cursor:
        await cursor.execute("SELECT timezone FROM users WHERE id = %s", (user_id,))
        row = await cursor.fetchone()

    now = _now()
    tz = _zone(row.get("timezone") if row else None)
    return now.astimezone(tz).date(), now


async def log_habit_completion(
    connection: AsyncConnection,
    user_id: UUID,
    habit_id: UUID,
    habit_title: str,
    *,
    goal_id: UUID | None = None,
    notes: str | None = None,
) -> CompletionLogged | CompletionConflict:
    local_day, now = await user_local_today(connection, user_id)

    async with connection.transaction():
        async with connection.cursor() as cursor:
            await cursor.execute(
                """
                SELECT hi.id, hi.goal_instance_id, hi.frequency_settings, gd.title AS goal_title
                FROM habit_instances hi
                JOIN goal_instances gi ON gi.id = hi.goal_instance_id
                JOIN goal_definitions gd ON gd.id = gi.goal_definition_id
                WHERE hi.habit_definition_id = %s
                  AND hi.user_id = %s
                  AND gi.status = 'active'
                  AND gi.archived = FALSE
                ORDER BY hi.created_at ASC
                """,
                (habit_id, user_id),
            )
            instances = await cursor.fetchall()

            targets = [row for row in instances if goal_id is not None and row["goal_instance_id"] == goal_id]
            if not targets:
                targets = instances

            cadence = normalize_frequency_settings(targets[0]["frequency_settings"] if targets else None)
            if cadence["frequency"] != "daily":
                period_start, period_end = period_window(local_day, cadence["frequency"])
                await cursor.execute(
                    """
                    SELECT COUNT(*) AS count
                    FROM habit_completions
                    WHERE habit_definition_id = %s
                      AND user_id = %s
                      AND completed_on BETWEEN %s AND %s
                    """,
                    (habit_id, user_id, period_start, period_end),
                )
                counted = await cursor.fetchone()
                if counted and counted["count"] >= cadence["per_period_target"]:
                    logger.info("Habit %s already met its %s target", habit_id, cadence["frequency"])
                    return CompletionConflict(habit_id, habit_title, local_day, "period_target_reached")

            # The unique index on (habit, user, day) is the duplicate check.
            await cursor.execute(
                """
                INSERT INTO habit_completions (habit_definition_id, user_id, completed_at, completed_on, notes)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (habit_definition_id, user_id, completed_on) DO NOTHING
                RETURNING id, completed_at
                """,
                (habit_id, user_id, now, local_day, notes),
            )
            inserted = await cursor.fetchone()
            if inserted is None:
                logger.info("Duplicate completion for habit %s on %s", habit_id, local_day)
                return CompletionConflict(habit_id, habit_title, local_day, "already_completed")

            await cursor.execute(
                """
                SELECT DISTINCT completed_on
                FROM habit_completions
                WHERE habit_definition_id = %s
                  AND user_id = %s
                ORDER BY completed_on DESC
                """,
                (habit_id, user_id),
            )
            streak, longest = compute_streaks((row["completed_on"] for row in await cursor.fetchall()), local_day)

            instance_ids = [row["id"] for row in targets]
            if instance_ids:
                await cursor.execute(
                    """
                    UPDATE habit_instances
                    SET current_value = current_value + 1,
                        goal_specific_streak = %s
                    WHERE id = ANY(%s)
                    """,
                    (streak, instance_ids),
                )

            await cursor.execute(
                """
                UPDATE habit_definitions
                SET global_completions = global_completions + 1,
                    global_streak = %s
                WHERE id = %s
                  AND user_id = %s
                """,
                (streak, habit_id, user_id),
            )

            related_goal: dict[str, Any] | None = None
            if targets:
                related_goal = {"id": targets[0]["goal_instance_id"], "title": targets[0]["goal_title"]}
            elif goal_id is not None:
                await cursor.execute(
                    """
                    SELECT gi.id, gd.title
                    FROM goal_instances gi
                    JOIN goal_definitions gd ON gd.id = gi.goal_definition_id
                    WHERE gi.id = %s
                      AND gi.user_id = %s
                    """,
                    (goal_id, user_id),
                )
                fallback = await cursor.fetchone()
                if fallback is not None:
                    related_goal = {"id": fallback["id"], "title": fallback["title"]}

    return CompletionLogged(
        habit_id=habit_id,
        title=habit_title,
        completion_id=inserted["id"],
        completed_at=inserted["completed_at"],
        completed_on=local_day,
        streak=streak,
        longest_streak=longest,
        related_goal=related_goal,
        updated_instance_ids=instance_ids,
    )
