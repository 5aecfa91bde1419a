"""Canonical identifier checks shared by every write action.

Actions only accept stable ids. Titles, paraphrases, or ids from the wrong
table are rejected with an instruction to re-fetch context instead of being
guessed at.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any


class InvalidIdentifierError(LookupError):
    """Raised when an action receives an id that does not name a record the user owns."""


def parse_identifier(value: Any, *, kind: str, scope: str) -> UUID:
    """Parse a UUID or explain how to get a real one."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value).strip())
    except (TypeError, ValueError, AttributeError) as exc:
        raise ValueError(
            f"'{value}' is not a {kind} id. Call get_context with scope '{scope}' "
            f"and pass the {kind} id from that result."
        ) from exc


async def resolve_goal_instance(
    connection: AsyncConnection,
    user_id: UUID,
    goal_instance_id: UUID,
) -> dict[str, Any]:
    """Load one goal instance with its definition fields, or explain why the id is wrong."""
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT gi.id, gi.goal_definition_id, gi.status, gi.current_value, gi.target_value,
                   gi.target_date, gi.archived, gi.created_at, gd.title, gd.description
            FROM goal_instances gi
            JOIN goal_definitions gd ON gd.id = gi.goal_definition_id
            WHERE gi.id = %s
              AND gi.user_id = %s
            """,
            (goal_instance_id, user_id),
        )
        row = await cursor.fetchone()

        if row is not None:
            return row

        await cursor.execute(
            """
            SELECT gi.id
            FROM goal_instances gi
            JOIN goal_definitions gd ON gd.id = gi.goal_definition_id
            WHERE gd.id = %s
              AND gd.user_id = %s
            ORDER BY gi.created_at DESC
            LIMIT 1
            """,
            (goal_instance_id, user_id),
        )
        by_definition = await cursor.fetchone()

    if by_definition is not None:
        raise InvalidIdentifierError(
            f"{goal_instance_id} is a goal definition id; this action needs the goal instance id "
            f"({by_definition['id']}). Call get_context with scope 'goals' to get instance ids."
        )

    raise InvalidIdentifierError(
        f"Goal {goal_instance_id} was not found for this user. "
        "Call get_context with scope 'goals' and use an id from that result."
    )


async def resolve_habit_definition(
    connection: AsyncConnection,
    user_id: UUID,
    habit_id: UUID,
) -> dict[str, Any]:
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT id, name, description, is_active, created_at
            FROM habit_definitions
            WHERE id = %s
              AND user_id = %s
            """,
            (habit_id, user_id),
        )
        row = await cursor.fetchone()

    if row is None:
        raise InvalidIdentifierError(
            f"Habit {habit_id} was not found for this user. "
            "Call get_context with scope 'habits' and use an id from that result."
        )
    return row
