"""Habit writes: linking habits to goals, progress-preserving replacement, and habit status changes."""

from __future__ import annotations

import json
import logging
from datetime import date
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID

from coach.services.frequency import calculate_frequency_settings
from coach.services.identifiers import resolve_goal_instance, resolve_habit_definition
from coach.services.progress_service import (
    combined_progress,
    fetch_habit_counters,
    habit_based_progress,
    preserving_offset,
)

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

logger = logging.getLogger(__name__)

HabitAction = Literal["pause", "resume", "change_frequency", "archive"]


def _today() -> date:
    """Wrapper for deterministic tests."""
    return date.today()


async def upsert_habit_definition(
    connection: AsyncConnection,
    user_id: UUID,
    title: str,
    description: str | None,
) -> tuple[UUID, bool]:
    """Reuse the user's habit with the same name (reactivating it) or create one. Returns (id, reused)."""
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT id, is_active
            FROM habit_definitions
            WHERE user_id = %s
              AND LOWER(name) = LOWER(%s)
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (user_id, title.strip()),
        )
        existing = await cursor.fetchone()

        if existing is not None:
            if not existing["is_active"]:
                await cursor.execute(
                    "UPDATE habit_definitions SET is_active = TRUE WHERE id = %s AND user_id = %s",
                    (existing["id"], user_id),
                )
                logger.info("Reactivated archived habit %s for a new goal link", existing["id"])
            return existing["id"], True

        await cursor.execute(
            """
            INSERT INTO habit_definitions (user_id, name, description, is_active)
            VALUES (%s, %s, %s, TRUE)
            RETURNING id
            """,
            (user_id, title.strip(), (description or "").strip()),
        )
        created = await cursor.fetchone()

    return created["id"], False


async def link_habit_to_goal(
    connection: AsyncConnection,
    user_id: UUID,
    goal: dict[str, Any],
    habit_definition_id: UUID,
    *,
    frequency: str = "daily",
    per_period_target: int = 1,
) -> UUID | None:
    """Create the habit instance for (habit, goal). Returns None when the pair is already linked."""
    settings = calculate_frequency_settings(goal.get("target_date"), frequency, per_period_target, _today())
    frequency_settings = {
        "frequency": settings["frequency"],
        "per_period_target": settings["per_period_target"],
        "periods_count": settings["periods_count"],
    }

    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            INSERT INTO habit_instances (
                habit_definition_id, goal_instance_id, user_id,
                target_value, current_value, goal_specific_streak, frequency_settings
            )
            VALUES (%s, %s, %s, %s, 0, 0, %s::jsonb)
            ON CONFLICT (habit_definition_id, goal_instance_id) DO NOTHING
            RETURNING id
            """,
            (
                habit_definition_id,
                goal["id"],
                user_id,
                settings["target_value"],
                json.dumps(frequency_settings),
            ),
        )
        row = await cursor.fetchone()

    return row["id"] if row else None


async def _detach_habits(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_id: UUID,
    habit_ids: list[UUID],
) -> list[dict[str, Any]]:
    """Unlink habits from one goal; habits left with no goal at all are archived, never deleted."""
    if not habit_ids:
        return []

    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            DELETE FROM habit_instances hi
            USING habit_definitions hd
            WHERE hd.id = hi.habit_definition_id
              AND hi.user_id = %s
              AND hi.goal_instance_id = %s
              AND hi.habit_definition_id = ANY(%s)
            RETURNING hi.habit_definition_id, hd.name
            """,
            (user_id, goal_instance_id, list(habit_ids)),
        )
        removed = [{"id": row["habit_definition_id"], "title": row["name"]} for row in await cursor.fetchall()]

        for habit in removed:
            habit_id = habit["id"]
            await cursor.execute(
                """
                SELECT id
                FROM habit_instances
                WHERE habit_definition_id = %s
                  AND user_id = %s
                LIMIT 1
                """,
                (habit_id, user_id),
            )
            if await cursor.fetchone() is None:
                await cursor.execute(
                    "UPDATE habit_definitions SET is_active = FALSE WHERE id = %s AND user_id = %s",
                    (habit_id, user_id),
                )
                logger.info("Archived orphaned habit %s", habit_id)

    return removed


async def _goal_habit_progress(connection: AsyncConnection, user_id: UUID, goal_instance_id: UUID) -> float:
    counters = await fetch_habit_counters(connection, user_id, [goal_instance_id])
    return habit_based_progress(counters.get(goal_instance_id, []))


async def replace_goal_habits(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_id: UUID,
    *,
    remove_habit_ids: list[UUID],
    new_habits: list[dict[str, Any]],
) -> dict[str, Any]:
    """
    Swap habits under one goal without moving its displayed progress.

    The combined value is read before any change; after the swap the manual
    offset absorbs the difference so the goal shows the same number until
    new completions arrive. Everything happens in one transaction.
    """
    async with connection.transaction():
        goal = await resolve_goal_instance(connection, user_id, goal_instance_id)

        before_habit_progress = await _goal_habit_progress(connection, user_id, goal["id"])
        before_combined = combined_progress(before_habit_progress, goal.get("current_value"))

        removed = await _detach_habits(connection, user_id, goal["id"], remove_habit_ids)

        added: list[dict[str, Any]] = []
        for habit in new_habits:
            habit_definition_id, reused = await upsert_habit_definition(
                connection, user_id, habit["title"], habit.get("description")
            )
            habit_instance_id = await link_habit_to_goal(
                connection,
                user_id,
                goal,
                habit_definition_id,
                frequency=habit.get("frequency") or "daily",
                per_period_target=habit.get("per_period_target") or 1,
            )
            added.append(
                {
                    "habit_definition_id": habit_definition_id,
                    "habit_instance_id": habit_instance_id,
                    "title": habit["title"],
                    "description": habit.get("description") or "",
                    "reused": reused,
                }
            )

        after_habit_progress = await _goal_habit_progress(connection, user_id, goal["id"])
        new_offset = preserving_offset(before_combined, after_habit_progress)

        async with connection.cursor() as cursor:
            await cursor.execute(
                "UPDATE goal_instances SET current_value = %s WHERE id = %s AND user_id = %s",
                (new_offset, goal["id"], user_id),
            )

    return {
        "goal_id": goal["id"],
        "goal_title": goal["title"],
        "removed_habits": removed,
        "added_habits": added,
        "progress_before": round(before_combined),
        "progress_after": round(combined_progress(after_habit_progress, new_offset)),
        "manual_offset": new_offset,
    }


async def update_habit(
    connection: AsyncConnection,
    user_id: UUID,
    habit_id: UUID,
    action: HabitAction,
    value: Any = None,
) -> dict[str, Any]:
    habit = await resolve_habit_definition(connection, user_id, habit_id)

    if action in {"pause", "archive", "resume"}:
        is_active = action == "resume"
        async with connection.cursor() as cursor:
            await cursor.execute(
                "UPDATE habit_definitions SET is_active = %s WHERE id = %s AND user_id = %s",
                (is_active, habit_id, user_id),
            )
        if action == "pause":
            resume_date = value.get("resume_date") if isinstance(value, dict) else None
            message = f"Paused '{habit['name']}'" + (f" until {resume_date}." if resume_date else ".")
        elif action == "archive":
            message = f"Archived '{habit['name']}'."
        else:
            message = f"Resumed '{habit['name']}'."
        return {"habit_id": habit_id, "title": habit["name"], "action": action, "message": message}

    if action == "change_frequency":
        value = value if isinstance(value, dict) else {"frequency": value}
        frequency = str(value.get("frequency") or "daily")
        per_period_target = int(value.get("per_period_target") or 1)

        async with connection.transaction():
            async with connection.cursor() as cursor:
                await cursor.execute(
                    """
                    SELECT hi.id, gi.target_date
                    FROM habit_instances hi
                    JOIN goal_instances gi ON gi.id = hi.goal_instance_id
                    WHERE hi.habit_definition_id = %s
                      AND hi.user_id = %s
                    """,
                    (habit_id, user_id),
                )
                instances = await cursor.fetchall()

                for instance in instances:
                    settings = calculate_frequency_settings(
                        instance["target_date"], frequency, per_period_target, _today()
                    )
                    await cursor.execute(
                        """
                        UPDATE habit_instances
                        SET frequency_settings = %s::jsonb,
                            target_value = %s
                        WHERE id = %s
                        """,
                        (
                            json.dumps(
                                {
                                    "frequency": settings["frequency"],
                                    "per_period_target": settings["per_period_target"],
                                    "periods_count": settings["periods_count"],
                                }
                            ),
                            settings["target_value"],
                            instance["id"],
                        ),
                    )

        return {
            "habit_id": habit_id,
            "title": habit["name"],
            "action": action,
            "frequency": frequency,
            "per_period_target": per_period_target,
            "updated_instances": len(instances),
            "message": f"'{habit['name']}' is now {per_period_target}x {frequency}.",
        }

    raise ValueError(f"Unsupported habit action: {action}")
