"""Scoped, read-only views of a user's goals, habits, insights, and categories.

Every view is recomputed from source rows on each call: progress from habit
counters plus the manual offset, habit rates and streaks from the completion
log. The only write is seeding default categories for a user who has none.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID

from coach.config import settings
from coach.services import priority_store
from coach.services.frequency import normalize_frequency_settings
from coach.services.habit_completion_service import compute_streaks, user_local_today
from coach.services.identifiers import parse_identifier
from coach.services.progress_service import fetch_habit_counters, goal_progress_from_rows

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

logger = logging.getLogger(__name__)

ContextScope = Literal["focus", "goals", "habits", "insights", "categories"]
VALID_SCOPES: tuple[str, ...] = ("focus", "goals", "habits", "insights", "categories")
GOAL_STATUS_FILTERS: tuple[str, ...] = ("active", "completed", "paused", "archived", "all")

DEFAULT_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("Career Growth", "#6366F1"),
    ("Health & Fitness", "#10B981"),
    ("Personal Development", "#8B5CF6"),
    ("Finance", "#F59E0B"),
    ("Relationships", "#EC4899"),
    ("Mental Health", "#0EA5E9"),
)

FOCUS_INSIGHT_LIMIT = 5
INSIGHT_LIMIT = 20

_GOAL_COLUMNS = """
    gi.id, gi.goal_definition_id, gi.status, gi.current_value, gi.target_date, gi.archived,
    gi.created_at, gd.title, gd.description, gd.term, lm.name AS life_metric,
    (SELECT COUNT(*) FROM habit_instances hi WHERE hi.goal_instance_id = gi.id) AS habit_count
"""


def _goal_view(row: dict[str, Any], progress: int) -> dict[str, Any]:
    return {
        "id": row["id"],
        "goal_definition_id": row["goal_definition_id"],
        "title": row["title"],
        "description": row.get("description") or "",
        "term": row.get("term"),
        "life_metric": row.get("life_metric"),
        "status": "archived" if row.get("archived") else row["status"],
        "target_date": row.get("target_date"),
        "habit_count": int(row.get("habit_count") or 0),
        "progress": progress,
    }


async def _fetch_goal_rows(connection: AsyncConnection, where_clause: str, params: list[object]) -> list[dict[str, Any]]:
    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            SELECT {_GOAL_COLUMNS}
            FROM goal_instances gi
            JOIN goal_definitions gd ON gd.id = gi.goal_definition_id
            LEFT JOIN life_metric_definitions lm ON lm.id = gd.life_metric_id
            WHERE {where_clause}
            ORDER BY gi.created_at ASC
            """,
            params,
        )
        return await cursor.fetchall()


async def _with_progress(connection: AsyncConnection, user_id: UUID, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    counters = await fetch_habit_counters(connection, user_id, [row["id"] for row in rows])
    return [_goal_view(row, goal_progress_from_rows(row, counters.get(row["id"], []))) for row in rows]


async def _fetch_insights(
    connection: AsyncConnection,
    user_id: UUID,
    *,
    life_metric_id: UUID | None,
    order_clause: str,
    limit: int,
) -> list[dict[str, Any]]:
    filters = ["i.user_id = %s"]
    params: list[object] = [user_id]
    if life_metric_id is not None:
        filters.append(
            "EXISTS (SELECT 1 FROM insight_life_metrics ilm WHERE ilm.insight_id = i.id AND ilm.life_metric_id = %s)"
        )
        params.append(life_metric_id)
    params.append(limit)

    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            SELECT i.id, i.title, i.explanation, i.confidence, i.created_at,
                   COALESCE(SUM(CASE WHEN v.is_upvote THEN 1 ELSE -1 END) FILTER (WHERE v.insight_id IS NOT NULL), 0) AS votes
            FROM insights i
            LEFT JOIN insight_votes v ON v.insight_id = i.id
            WHERE {" AND ".join(filters)}
            GROUP BY i.id, i.title, i.explanation, i.confidence, i.created_at
            ORDER BY {order_clause}
            LIMIT %s
            """,
            params,
        )
        rows = await cursor.fetchall()

    return [
        {
            "id": row["id"],
            "title": row["title"],
            "explanation": row.get("explanation") or "",
            "confidence": row.get("confidence"),
            "votes": int(row.get("votes") or 0),
            "created_at": row.get("created_at"),
        }
        for row in rows
    ]


async def read_focus(connection: AsyncConnection, user_id: UUID) -> dict[str, Any]:
    goal_ids = await priority_store.latest_goal_ids(connection, user_id)
    insights = await _fetch_insights(
        connection, user_id, life_metric_id=None, order_clause="i.created_at DESC", limit=FOCUS_INSIGHT_LIMIT
    )
    if not goal_ids:
        return {"scope": "focus", "priority_goals": [], "habits": [], "insights": insights}

    rows = await _fetch_goal_rows(connection, "gi.user_id = %s AND gi.id = ANY(%s)", [user_id, goal_ids])
    by_id = {goal["id"]: goal for goal in await _with_progress(connection, user_id, rows)}

    priority_goals: list[dict[str, Any]] = []
    for rank, goal_id in enumerate(goal_ids, start=1):
        goal = by_id.get(goal_id)
        if goal is not None:
            priority_goals.append({**goal, "rank": rank})

    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT hd.id, hd.name, hd.description, hd.global_streak, hi.goal_instance_id
            FROM habit_instances hi
            JOIN habit_definitions hd ON hd.id = hi.habit_definition_id
            WHERE hi.user_id = %s
              AND hi.goal_instance_id = ANY(%s)
              AND hd.is_active = TRUE
            ORDER BY hi.created_at ASC
            """,
            (user_id, goal_ids),
        )
        habit_rows = await cursor.fetchall()

    habits: dict[UUID, dict[str, Any]] = {}
    for row in habit_rows:
        habit = habits.setdefault(
            row["id"],
            {
                "id": row["id"],
                "title": row["name"],
                "description": row.get("description") or "",
                "streak": int(row.get("global_streak") or 0),
                "goal_ids": [],
            },
        )
        habit["goal_ids"].append(row["goal_instance_id"])

    return {
        "scope": "focus",
        "priority_goals": priority_goals,
        "habits": list(habits.values()),
        "insights": insights,
    }


async def read_goals(connection: AsyncConnection, user_id: UUID, status: str = "active") -> dict[str, Any]:
    if status not in GOAL_STATUS_FILTERS:
        raise ValueError(f"status must be one of: {', '.join(GOAL_STATUS_FILTERS)}")

    filters = ["gi.user_id = %s"]
    params: list[object] = [user_id]
    if status == "active":
        filters.extend(["gi.status = 'active'", "gi.archived = FALSE", "gd.archived = FALSE"])
    elif status == "archived":
        filters.append("(gi.archived = TRUE OR gd.archived = TRUE)")
    elif status != "all":
        filters.append("gi.status = %s")
        params.append(status)

    rows = await _fetch_goal_rows(connection, " AND ".join(filters), params)
    if status == "active":
        # Goals without habits cannot be acted on by the coach.
        rows = [row for row in rows if int(row.get("habit_count") or 0) > 0]

    goals = await _with_progress(connection, user_id, rows)
    return {"scope": "goals", "status": status, "count": len(goals), "goals": goals}


async def read_habits(connection: AsyncConnection, user_id: UUID, days: int | None = None) -> dict[str, Any]:
    window_days = settings.habit_window_days if days is None else days
    if window_days < 1 or window_days > 365:
        raise ValueError("days must be between 1 and 365")

    today, _ = await user_local_today(connection, user_id)
    window_start = today - timedelta(days=window_days - 1)

    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT id, name, description, created_at
            FROM habit_definitions
            WHERE user_id = %s
              AND is_active = TRUE
            ORDER BY created_at ASC
            """,
            (user_id,),
        )
        definitions = await cursor.fetchall()

        habit_ids = [row["id"] for row in definitions]
        if not habit_ids:
            return {"scope": "habits", "days": window_days, "habits": []}

        await cursor.execute(
            """
            SELECT habit_definition_id, completed_on
            FROM habit_completions
            WHERE user_id = %s
              AND habit_definition_id = ANY(%s)
            """,
            (user_id, habit_ids),
        )
        completion_rows = await cursor.fetchall()

        await cursor.execute(
            """
            SELECT hi.habit_definition_id, hi.goal_instance_id, hi.frequency_settings, gd.title AS goal_title
            FROM habit_instances hi
            JOIN goal_instances gi ON gi.id = hi.goal_instance_id
            JOIN goal_definitions gd ON gd.id = gi.goal_definition_id
            WHERE hi.user_id = %s
              AND hi.habit_definition_id = ANY(%s)
            ORDER BY hi.created_at ASC
            """,
            (user_id, habit_ids),
        )
        link_rows = await cursor.fetchall()

    completions: dict[UUID, set] = {habit_id: set() for habit_id in habit_ids}
    for row in completion_rows:
        completions.setdefault(row["habit_definition_id"], set()).add(row["completed_on"])

    links: dict[UUID, list[dict[str, Any]]] = {habit_id: [] for habit_id in habit_ids}
    for row in link_rows:
        links.setdefault(row["habit_definition_id"], []).append(row)

    habits: list[dict[str, Any]] = []
    for definition in definitions:
        days_logged = completions.get(definition["id"], set())
        in_window = [day for day in days_logged if window_start <= day <= today]
        streak, longest = compute_streaks(days_logged, today)
        habit_links = links.get(definition["id"], [])
        cadence = normalize_frequency_settings(habit_links[0]["frequency_settings"] if habit_links else None)

        habits.append(
            {
                "id": definition["id"],
                "title": definition["name"],
                "description": definition.get("description") or "",
                "frequency": cadence["frequency"],
                "per_period_target": cadence["per_period_target"],
                "completions_in_window": len(in_window),
                "completion_rate": min(round(len(in_window) / window_days * 100), 100),
                "current_streak": streak,
                "longest_streak": longest,
                "completed_today": today in days_logged,
                "goals": [{"id": link["goal_instance_id"], "title": link["goal_title"]} for link in habit_links],
            }
        )

    return {"scope": "habits", "days": window_days, "habits": habits}


async def read_insights(connection: AsyncConnection, user_id: UUID, life_metric: Any = None) -> dict[str, Any]:
    life_metric_id = parse_identifier(life_metric, kind="life metric", scope="categories") if life_metric else None
    insights = await _fetch_insights(
        connection,
        user_id,
        life_metric_id=life_metric_id,
        order_clause="i.confidence DESC NULLS LAST, i.created_at DESC",
        limit=INSIGHT_LIMIT,
    )
    return {"scope": "insights", "count": len(insights), "insights": insights}


async def _fetch_categories(connection: AsyncConnection, user_id: UUID) -> list[dict[str, Any]]:
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT lm.id, lm.name, lm.description, lm.color,
                   (
                       SELECT COUNT(*)
                       FROM goal_definitions gd
                       JOIN goal_instances gi ON gi.goal_definition_id = gd.id
                       WHERE gd.life_metric_id = lm.id
                         AND gi.status = 'active'
                         AND gi.archived = FALSE
                   ) AS active_goal_count
            FROM life_metric_definitions lm
            WHERE lm.user_id = %s
              AND lm.is_active = TRUE
            ORDER BY lm.created_at ASC, lm.name ASC
            """,
            (user_id,),
        )
        return await cursor.fetchall()


async def seed_default_categories(connection: AsyncConnection, user_id: UUID) -> None:
    async with connection.cursor() as cursor:
        for name, color in DEFAULT_CATEGORIES:
            await cursor.execute(
                """
                INSERT INTO life_metric_definitions (user_id, name, color)
                VALUES (%s, %s, %s)
                """,
                (user_id, name, color),
            )
    logger.info("Seeded default categories for user %s", user_id)


async def read_categories(connection: AsyncConnection, user_id: UUID) -> dict[str, Any]:
    rows = await _fetch_categories(connection, user_id)
    if not rows:
        await seed_default_categories(connection, user_id)
        rows = await _fetch_categories(connection, user_id)

    categories = [
        {
            "id": row["id"],
            "name": row["name"],
            "description": row.get("description") or "",
            "color": row.get("color"),
            "active_goal_count": int(row.get("active_goal_count") or 0),
        }
        for row in rows
    ]
    return {"scope": "categories", "categories": categories}


SUMMARY_SCOPES: tuple[str, ...] = ("goals", "habits", "life_metric")
SUMMARY_TIMEFRAMES: dict[str, int] = {"last_7_days": 7, "last_30_days": 30}
ON_TRACK_PROGRESS = 60
NEEDS_ATTENTION_PROGRESS = 40
STRONG_STREAK_DAYS = 7


def _average(values: list[int]) -> int:
    return int(round(sum(values) / len(values))) if values else 0


def _goal_summary(goals: list[dict[str, Any]]) -> dict[str, Any]:
    progress = [goal["progress"] for goal in goals]
    return {
        "total_goals": len(goals),
        "avg_progress": _average(progress),
        "on_track": sum(1 for value in progress if value >= ON_TRACK_PROGRESS),
        "needs_attention": sum(1 for value in progress if value < NEEDS_ATTENTION_PROGRESS),
    }


async def summarize_progress(
    connection: AsyncConnection,
    user_id: UUID,
    scope: str,
    filters: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Aggregate answer to "how am I doing?", built on the same views as get_context.

    goals: active goals (optionally narrowed by ``goal_ids``) with average progress and
    on-track / needs-attention counts. habits: completion rate and streaks over
    ``last_7_days`` or ``last_30_days``. life_metric: the goals of one category.
    """
    filters = filters or {}

    if scope == "goals":
        goals = (await read_goals(connection, user_id))["goals"]
        wanted = {parse_identifier(value, kind="goal instance", scope="goals") for value in filters.get("goal_ids") or []}
        if wanted:
            goals = [goal for goal in goals if goal["id"] in wanted]
        return {"scope": "goals", "summary": _goal_summary(goals), "goals": goals}

    if scope == "habits":
        timeframe = str(filters.get("timeframe") or "last_30_days")
        if timeframe not in SUMMARY_TIMEFRAMES:
            raise ValueError(f"timeframe must be one of: {', '.join(SUMMARY_TIMEFRAMES)}")
        habits = (await read_habits(connection, user_id, days=SUMMARY_TIMEFRAMES[timeframe]))["habits"]
        return {
            "scope": "habits",
            "timeframe": timeframe,
            "summary": {
                "total_habits": len(habits),
                "avg_completion_rate": _average([habit["completion_rate"] for habit in habits]),
                "strong_streaks": sum(1 for habit in habits if habit["current_streak"] >= STRONG_STREAK_DAYS),
                "total_completions": sum(habit["completions_in_window"] for habit in habits),
            },
            "habits": habits,
        }

    if scope == "life_metric":
        wanted = str(filters.get("life_metric") or "").strip()
        if not wanted:
            raise ValueError("filters.life_metric is required for the life_metric scope")
        metric = next(
            (
                row
                for row in await _fetch_categories(connection, user_id)
                if str(row["id"]) == wanted or row["name"].lower() == wanted.lower()
            ),
            None,
        )
        if metric is None:
            raise LookupError(
                f"Life metric '{wanted}' was not found. Call get_context with scope 'categories' and use a name from that result."
            )
        goals = [
            goal
            for goal in (await read_goals(connection, user_id))["goals"]
            if (goal.get("life_metric") or "").lower() == metric["name"].lower()
        ]
        return {
            "scope": "life_metric",
            "life_metric": metric["name"],
            "summary": {**_goal_summary(goals), "color": metric.get("color")},
            "goals": goals,
        }

    raise ValueError(f"scope must be one of: {', '.join(SUMMARY_SCOPES)}")


async def read_context(
    connection: AsyncConnection,
    user_id: UUID,
    scope: ContextScope,
    filters: dict[str, Any] | None = None,
) -> dict[str, Any]:
    filters = filters or {}

    if scope == "focus":
        return await read_focus(connection, user_id)
    if scope == "goals":
        return await read_goals(connection, user_id, status=str(filters.get("status") or "active"))
    if scope == "habits":
        days = filters.get("days")
        return await read_habits(connection, user_id, days=int(days) if days is not None else None)
    if scope == "insights":
        return await read_insights(connection, user_id, life_metric=filters.get("life_metric"))
    if scope == "categories":
        return await read_categories(connection, user_id)

    raise ValueError(f"scope must be one of: {', '.join(VALID_SCOPES)}")
