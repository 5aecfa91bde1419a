"""Append-only store of ranked focus sets.

The current focus set is whatever the newest `priority_snapshots` row says.
Rows are never updated or deleted; clearing focus writes an empty snapshot.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any
from uuid import UUID

from coach.config import settings
from coach.services.identifiers import InvalidIdentifierError, parse_identifier

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

logger = logging.getLogger(__name__)

FOCUS_LIMIT_CHOICES: tuple[int, ...] = (3, 4, 5)


def _item_goal_id(item: dict[str, Any]) -> UUID:
    raw = item.get("goalInstanceId") or item.get("goal_instance_id") or item.get("goal_id")
    return parse_identifier(raw, kind="goal instance", scope="goals")


def normalize_snapshot_items(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order by rank (list position breaks ties) and renumber 1..n. Duplicate goals are rejected."""
    indexed: list[tuple[float, int, dict[str, Any]]] = []
    for position, item in enumerate(items):
        rank = item.get("rank")
        try:
            sort_rank = float(rank) if rank is not None else float(position + 1)
        except (TypeError, ValueError):
            sort_rank = float(position + 1)
        indexed.append((sort_rank, position, item))
    indexed.sort(key=lambda entry: (entry[0], entry[1]))

    normalized: list[dict[str, Any]] = []
    seen: set[UUID] = set()
    for new_rank, (_, _, item) in enumerate(indexed, start=1):
        goal_id = _item_goal_id(item)
        if goal_id in seen:
            raise ValueError(f"Goal {goal_id} appears more than once in the focus set")
        seen.add(goal_id)
        entry: dict[str, Any] = {"goalInstanceId": str(goal_id), "rank": new_rank}
        reason = item.get("reason")
        if reason:
            entry["reason"] = str(reason)
        normalized.append(entry)
    return normalized


async def get_focus_limit(connection: AsyncConnection, user_id: UUID) -> int:
    async with connection.cursor() as cursor:
        await cursor.execute("SELECT focus_goal_limit FROM users WHERE id = %s", (user_id,))
        row = await cursor.fetchone()

    limit = row.get("focus_goal_limit") if row else None
    if limit not in FOCUS_LIMIT_CHOICES:
        return settings.default_focus_goal_limit
    return int(limit)


async def set_focus_limit(connection: AsyncConnection, user_id: UUID, limit: int) -> int:
    if limit not in FOCUS_LIMIT_CHOICES:
        raise ValueError("focus_goal_limit must be 3, 4, or 5")

    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            INSERT INTO users (id, focus_goal_limit)
            VALUES (%s, %s)
            ON CONFLICT (id) DO UPDATE
            SET focus_goal_limit = EXCLUDED.focus_goal_limit
            RETURNING focus_goal_limit
            """,
            (user_id, limit),
        )
        row = await cursor.fetchone()

    stored = int(row["focus_goal_limit"])
    snapshot = await latest(connection, user_id)
    if snapshot and len(snapshot["items"]) > stored:
        ordered = sorted(snapshot["items"], key=lambda item: item.get("rank") or 0)
        await apply(connection, user_id, ordered[:stored], snapshot.get("source_thread_id"))
        logger.info("Focus limit lowered to %s; trimmed the current focus set", stored)
    return stored


async def latest(connection: AsyncConnection, user_id: UUID) -> dict[str, Any] | None:
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT id, user_id, items, source_thread_id, created_at
            FROM priority_snapshots
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (user_id,),
        )
        row = await cursor.fetchone()

    if row is None:
        return None
    items = row["items"]
    if isinstance(items, str):
        items = json.loads(items)
    return {**row, "items": items or []}


async def latest_goal_ids(connection: AsyncConnection, user_id: UUID) -> list[UUID]:
    """Goal instance ids of the current focus set, in rank order."""
    snapshot = await latest(connection, user_id)
    if snapshot is None:
        return []
    ordered = sorted(snapshot["items"], key=lambda item: item.get("rank") or 0)
    return [_item_goal_id(item) for item in ordered]


async def apply(
    connection: AsyncConnection,
    user_id: UUID,
    items: list[dict[str, Any]],
    source_thread_id: str | None = None,
    *,
    enforce_limit: bool = True,
) -> dict[str, Any]:
    """Write a new snapshot after checking size, uniqueness, and ownership.

    Pass ``enforce_limit=False`` only for writes that cannot grow the set.
    """
    normalized = normalize_snapshot_items(items)

    limit = await get_focus_limit(connection, user_id) if enforce_limit else None
    if limit is not None and len(normalized) > limit:
        raise ValueError(f"Focus set can hold at most {limit} goals")

    if normalized:
        goal_ids = [UUID(item["goalInstanceId"]) for item in normalized]
        async with connection.cursor() as cursor:
            await cursor.execute(
                """
                SELECT id
                FROM goal_instances
                WHERE user_id = %s
                  AND id = ANY(%s)
                """,
                (user_id, goal_ids),
            )
            owned = {row["id"] for row in await cursor.fetchall()}
        missing = [str(goal_id) for goal_id in goal_ids if goal_id not in owned]
        if missing:
            raise InvalidIdentifierError(
                f"Unknown goal instance ids: {', '.join(missing)}. "
                "Call get_context with scope 'goals' and use ids from that result."
            )

    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            INSERT INTO priority_snapshots (user_id, items, source_thread_id)
            VALUES (%s, %s::jsonb, %s)
            RETURNING id, user_id, items, source_thread_id, created_at
            """,
            (user_id, json.dumps(normalized), source_thread_id),
        )
        row = await cursor.fetchone()

    logger.info("Wrote focus snapshot %s with %s goals", row["id"], len(normalized))
    return {**row, "items": normalized}


async def clear(
    connection: AsyncConnection,
    user_id: UUID,
    source_thread_id: str | None = None,
) -> dict[str, Any]:
    return await apply(connection, user_id, [], source_thread_id)


async def remove_goal(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_id: UUID,
    source_thread_id: str | None = None,
) -> dict[str, Any]:
    """Supersede the current snapshot with one that lacks the given goal; ranks close up."""
    snapshot = await latest(connection, user_id)
    items = snapshot["items"] if snapshot else []
    remaining = [item for item in items if _item_goal_id(item) != goal_instance_id]
    if len(remaining) == len(items):
        raise ValueError(f"Goal {goal_instance_id} is not in the current focus set")
    return await apply(connection, user_id, remaining, source_thread_id, enforce_limit=False)
