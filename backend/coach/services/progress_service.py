"""Goal progress derived from linked habit counters plus a manual offset.

Progress is never stored as a percentage. Every read recomputes it from
`habit_instances` counters and the goal instance's `current_value`, which
holds only the manual offset:

    progress = clamp(min(avg(habit %), 90) + manual_offset, 0, 100)
    progress = 100 when status == "completed"
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

HABIT_PROGRESS_CAP = 90.0


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def habit_progress_pct(current_value: int | None, target_value: int | None) -> float:
    """Completion ratio of one habit instance as a percentage, saturating at 100."""
    target = target_value or 0
    if target <= 0:
        return 0.0
    return min((current_value or 0) / target, 1.0) * 100


def habit_based_progress(habits: Iterable[dict[str, Any]]) -> float:
    """Average habit completion across a goal's habit instances, capped at 90."""
    rows = list(habits)
    if not rows:
        return 0.0
    total = sum(habit_progress_pct(row.get("current_value"), row.get("target_value")) for row in rows)
    return min(total / len(rows), HABIT_PROGRESS_CAP)


def combined_progress(habit_progress: float, manual_offset: int | float | None) -> float:
    """Unrounded habit + manual total, clamped to [0, 100]."""
    return _clamp(habit_progress + (manual_offset or 0))


def combine_progress(habit_progress: float, manual_offset: int | float | None, status: str | None) -> int:
    if status == "completed":
        return 100
    return int(round(combined_progress(habit_progress, manual_offset)))


def preserving_offset(before_combined: float, after_habit_progress: float) -> int:
    """Manual offset that keeps the combined value unchanged after the habit set changes."""
    offset = round(before_combined - after_habit_progress)
    # Keep the offset inside the range where it can still move the clamped total.
    return int(_clamp(offset, -HABIT_PROGRESS_CAP, 100.0))


def goal_progress_from_rows(goal_row: dict[str, Any], habit_rows: Iterable[dict[str, Any]]) -> int:
    return combine_progress(
        habit_based_progress(habit_rows),
        goal_row.get("current_value"),
        goal_row.get("status"),
    )


async def fetch_habit_counters(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_ids: list[UUID],
) -> dict[UUID, list[dict[str, Any]]]:
    """Habit instance counters grouped by goal instance id."""
    grouped: dict[UUID, list[dict[str, Any]]] = {goal_id: [] for goal_id in goal_instance_ids}
    if not goal_instance_ids:
        return grouped

    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT goal_instance_id, habit_definition_id, current_value, target_value
            FROM habit_instances
            WHERE goal_instance_id = ANY(%s)
              AND user_id = %s
            """,
            (list(goal_instance_ids), user_id),
        )
        rows = await cursor.fetchall()

    for row in rows:
        grouped.setdefault(row["goal_instance_id"], []).append(row)
    return grouped


async def compute_goal_progress(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_id: UUID,
) -> int:
    """Fresh progress for one goal instance, in [0, 100]."""
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT id, status, current_value
            FROM goal_instances
            WHERE id = %s
              AND user_id = %s
            """,
            (goal_instance_id, user_id),
        )
        goal_row = await cursor.fetchone()

    if goal_row is None:
        raise LookupError("Goal not found")

    counters = await fetch_habit_counters(connection, user_id, [goal_instance_id])
    return goal_progress_from_rows(goal_row, counters.get(goal_instance_id, []))
