"""Goal writes used by coach actions: manual progress credit, completion, adjustment, archiving, and creation with habits."""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID

from coach.services import priority_store
from coach.services.frequency import calculate_frequency_settings, normalize_frequency_settings
from coach.services.habits_service import link_habit_to_goal, upsert_habit_definition
from coach.services.identifiers import InvalidIdentifierError, resolve_goal_instance
from coach.services.progress_service import (
    combined_progress,
    fetch_habit_counters,
    habit_based_progress,
)

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

logger = logging.getLogger(__name__)

GoalTerm = Literal["short", "medium", "long"]
MILESTONES: tuple[int, ...] = (25, 50, 75)
MANUAL_PROGRESS_CEILING = 99
MAX_BARE_INCREMENT = 10
DEFAULT_INCREMENT = 5

_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)")


def _now() -> datetime:
    """Wrapper for deterministic tests."""
    return datetime.now(timezone.utc)


def target_progress_from_text(update_text: str, current_progress: float) -> float:
    """
    Interpret a free-text progress update as a new combined total.

    "60%" sets the total to 60; "3" adds 3 points (at most 10); anything
    without a number adds 5. Only an explicit percentage can lower the total.
    Nothing here pushes it to 100, which only completion can set.
    """
    percent = _PERCENT_RE.search(update_text or "")
    if percent:
        target = float(percent.group(1))
    else:
        number = _NUMBER_RE.search(update_text or "")
        increment = min(float(number.group(1)), MAX_BARE_INCREMENT) if number else DEFAULT_INCREMENT
        target = current_progress + increment
        return max(current_progress, min(target, float(MANUAL_PROGRESS_CEILING)))
    return max(0.0, min(target, float(MANUAL_PROGRESS_CEILING)))


def crossed_milestones(before: float, after: float) -> list[int]:
    return [milestone for milestone in MILESTONES if before < milestone <= after]


async def list_active_goal_candidates(connection: AsyncConnection, user_id: UUID) -> list[dict[str, Any]]:
    """Active, non-archived goal instances, oldest first."""
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT gi.id, gi.target_date, gi.created_at, gd.title, gd.description,
                   lm.name AS life_metric
            FROM goal_instances gi
            JOIN goal_definitions gd ON gd.id = gi.goal_definition_id
            LEFT JOIN life_metric_definitions lm ON lm.id = gd.life_metric_id
            WHERE gi.user_id = %s
              AND gi.status = 'active'
              AND gi.archived = FALSE
              AND gd.archived = FALSE
            ORDER BY gi.created_at ASC, gi.id ASC
            """,
            (user_id,),
        )
        return await cursor.fetchall()


async def update_goal_progress(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_id: UUID,
    update_text: str,
) -> dict[str, Any]:
    """Credit manual progress by moving the goal's offset; habit counters are untouched."""
    async with connection.transaction():
        goal = await resolve_goal_instance(connection, user_id, goal_instance_id)
        if goal["status"] == "completed":
            raise ValueError(f"'{goal['title']}' is already completed.")
        if goal.get("archived"):
            raise ValueError(f"'{goal['title']}' is archived.")

        counters = await fetch_habit_counters(connection, user_id, [goal["id"]])
        habit_progress = habit_based_progress(counters.get(goal["id"], []))
        before = combined_progress(habit_progress, goal.get("current_value"))

        after = target_progress_from_text(update_text, before)
        new_offset = int(round(after - habit_progress))

        async with connection.cursor() as cursor:
            await cursor.execute(
                "UPDATE goal_instances SET current_value = %s WHERE id = %s AND user_id = %s",
                (new_offset, goal["id"], user_id),
            )

    after_combined = combined_progress(habit_progress, new_offset)
    return {
        "goal_id": goal["id"],
        "title": goal["title"],
        "previous_progress": int(round(before)),
        "progress": int(round(after_combined)),
        "manual_offset": new_offset,
        "milestones": crossed_milestones(before, after_combined),
    }


async def complete_goal(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_id: UUID,
) -> dict[str, Any]:
    goal = await resolve_goal_instance(connection, user_id, goal_instance_id)
    if goal["status"] == "completed":
        return {"goal_id": goal["id"], "title": goal["title"], "progress": 100, "already_completed": True}

    completed_at = _now()
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            UPDATE goal_instances
            SET status = 'completed',
                completed_at = %s
            WHERE id = %s
              AND user_id = %s
            """,
            (completed_at, goal["id"], user_id),
        )

    logger.info("Goal %s completed", goal["id"])
    return {
        "goal_id": goal["id"],
        "title": goal["title"],
        "progress": 100,
        "completed_at": completed_at,
        "already_completed": False,
    }


async def _find_life_metric_id(connection: AsyncConnection, user_id: UUID, life_metric: str | None) -> UUID | None:
    if not life_metric:
        return None
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT id
            FROM life_metric_definitions
            WHERE user_id = %s
              AND (id::text = %s OR LOWER(name) = LOWER(%s))
            LIMIT 1
            """,
            (user_id, life_metric.strip(), life_metric.strip()),
        )
        row = await cursor.fetchone()
    return row["id"] if row else None


async def create_goal_with_habits(
    connection: AsyncConnection,
    user_id: UUID,
    *,
    title: str,
    description: str | None,
    life_metric: str | None,
    term: GoalTerm | None,
    target_date: date | None,
    habits: list[dict[str, Any]],
) -> dict[str, Any]:
    """Create a goal definition, its first instance, and the linked habits. Focus is left alone."""
    async with connection.transaction():
        life_metric_id = await _find_life_metric_id(connection, user_id, life_metric)

        async with connection.cursor() as cursor:
            await cursor.execute(
                """
                INSERT INTO goal_definitions (user_id, title, description, category, life_metric_id, term)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (user_id, title.strip(), (description or "").strip(), life_metric, life_metric_id, term),
            )
            definition = await cursor.fetchone()

            await cursor.execute(
                """
                INSERT INTO goal_instances (goal_definition_id, user_id, target_value, current_value, target_date, status)
                VALUES (%s, %s, 100, 0, %s, 'active')
                RETURNING id, target_date, created_at
                """,
                (definition["id"], user_id, target_date),
            )
            instance = await cursor.fetchone()

        goal = {"id": instance["id"], "target_date": instance["target_date"]}
        linked: list[dict[str, Any]] = []
        for habit in habits:
            habit_definition_id, reused = await upsert_habit_definition(
                connection, user_id, habit["title"], habit.get("description")
            )
            await link_habit_to_goal(
                connection,
                user_id,
                goal,
                habit_definition_id,
                frequency=habit.get("frequency") or "daily",
                per_period_target=habit.get("per_period_target") or 1,
            )
            linked.append({"id": habit_definition_id, "title": habit["title"], "reused": reused})

    logger.info("Created goal %s with %s habits", instance["id"], len(linked))
    return {
        "goal_id": instance["id"],
        "goal_definition_id": definition["id"],
        "title": title.strip(),
        "target_date": instance["target_date"],
        "habits": linked,
    }


async def _resize_goal_habits(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_id: UUID,
    target_date: date,
) -> int:
    """Recompute each linked habit's target for a new goal deadline; cadence is kept."""
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT id, frequency_settings
            FROM habit_instances
            WHERE goal_instance_id = %s
              AND user_id = %s
            """,
            (goal_instance_id, user_id),
        )
        instances = await cursor.fetchall()

        for instance in instances:
            cadence = normalize_frequency_settings(instance.get("frequency_settings"))
            sized = calculate_frequency_settings(
                target_date, cadence["frequency"], cadence["per_period_target"], _now().date()
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
                            "frequency": sized["frequency"],
                            "per_period_target": sized["per_period_target"],
                            "periods_count": sized["periods_count"],
                        }
                    ),
                    sized["target_value"],
                    instance["id"],
                ),
            )
    return len(instances)


async def adjust_goal(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_id: UUID,
    *,
    title: str | None = None,
    target_date: date | None = None,
) -> dict[str, Any]:
    """
    Rename a goal and/or move its deadline.

    The title lives on the definition, the deadline on the instance. A new
    deadline resizes the linked habits' targets, so displayed progress follows
    the new horizon.
    """
    new_title = (title or "").strip() or None
    if new_title is None and target_date is None:
        raise ValueError("Nothing to adjust: pass a new title or target_date.")

    async with connection.transaction():
        goal = await resolve_goal_instance(connection, user_id, goal_instance_id)
        if goal.get("archived"):
            raise ValueError(f"'{goal['title']}' is archived.")

        resized = 0
        async with connection.cursor() as cursor:
            if new_title is not None:
                await cursor.execute(
                    "UPDATE goal_definitions SET title = %s WHERE id = %s AND user_id = %s",
                    (new_title, goal["goal_definition_id"], user_id),
                )
            if target_date is not None:
                await cursor.execute(
                    "UPDATE goal_instances SET target_date = %s WHERE id = %s AND user_id = %s",
                    (target_date, goal["id"], user_id),
                )
        if target_date is not None:
            resized = await _resize_goal_habits(connection, user_id, goal["id"], target_date)

    logger.info("Adjusted goal %s", goal["id"])
    return {
        "goal_id": goal["id"],
        "title": new_title or goal["title"],
        "previous_title": goal["title"],
        "target_date": target_date or goal.get("target_date"),
        "previous_target_date": goal.get("target_date"),
        "resized_habits": resized,
    }


async def archive_goals(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_ids: list[UUID],
    source_thread_id: str | None = None,
) -> dict[str, Any]:
    """
    Archive goals in bulk: the instance and its definition are flagged, the
    definition loses its category, and archived goals leave the focus set.

    Ids that do not resolve are reported in ``skipped`` instead of failing the batch.
    """
    archived: list[dict[str, Any]] = []
    skipped: list[dict[str, Any]] = []

    async with connection.transaction():
        for goal_instance_id in dict.fromkeys(goal_instance_ids):
            try:
                goal = await resolve_goal_instance(connection, user_id, goal_instance_id)
            except InvalidIdentifierError as exc:
                skipped.append({"goal_id": goal_instance_id, "error": str(exc)})
                continue
            if goal.get("archived"):
                skipped.append({"goal_id": goal["id"], "error": f"'{goal['title']}' is already archived."})
                continue

            async with connection.cursor() as cursor:
                await cursor.execute(
                    """
                    UPDATE goal_definitions
                    SET archived = TRUE,
                        life_metric_id = NULL
                    WHERE id = %s
                      AND user_id = %s
                    """,
                    (goal["goal_definition_id"], user_id),
                )
                await cursor.execute(
                    """
                    UPDATE goal_instances
                    SET status = 'archived',
                        archived = TRUE
                    WHERE id = %s
                      AND user_id = %s
                    """,
                    (goal["id"], user_id),
                )
            archived.append({"goal_id": goal["id"], "goal_definition_id": goal["goal_definition_id"], "title": goal["title"]})

        archived_ids = {entry["goal_id"] for entry in archived}
        snapshot = await priority_store.latest(connection, user_id)
        focus_items = snapshot["items"] if snapshot else []
        remaining = [item for item in focus_items if UUID(str(item.get("goalInstanceId"))) not in archived_ids]
        removed_from_focus = len(focus_items) - len(remaining)
        if removed_from_focus:
            await priority_store.apply(connection, user_id, remaining, source_thread_id, enforce_limit=False)

    logger.info("Archived %s goals (%s skipped)", len(archived), len(skipped))
    return {"archived": archived, "skipped": skipped, "removed_from_focus": removed_from_focus}
