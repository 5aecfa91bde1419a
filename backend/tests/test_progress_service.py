from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from coach.services import progress_service


def _run(coro):
    return asyncio.run(coro)


class FakeProgressCursor:
    def __init__(self, connection):
        self.connection = connection
        self._rows = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def execute(self, query, params=None):
        normalized = " ".join(query.split())
        self._rows = []

        if normalized.startswith("SELECT id, status, current_value FROM goal_instances"):
            goal_id, user_id = params
            row = self.connection.goals.get(goal_id)
            if row and row["user_id"] == user_id:
                self._rows = [row]
            return

        if normalized.startswith("SELECT goal_instance_id, habit_definition_id, current_value, target_value FROM habit_instances"):
            goal_ids, user_id = params
            self._rows = [
                habit
                for habit in self.connection.habit_instances
                if habit["goal_instance_id"] in goal_ids and habit["user_id"] == user_id
            ]
            return

        raise AssertionError(f"Unexpected query: {normalized}")

    async def fetchone(self):
        return self._rows[0] if self._rows else None

    async def fetchall(self):
        return list(self._rows)


class FakeProgressConnection:
    def __init__(self):
        self.goals = {}
        self.habit_instances = []

    def cursor(self):
        return FakeProgressCursor(self)


def test_habit_progress_pct_saturates_and_handles_zero_target() -> None:
    assert progress_service.habit_progress_pct(5, 10) == 50.0
    assert progress_service.habit_progress_pct(15, 10) == 100.0
    assert progress_service.habit_progress_pct(3, 0) == 0.0
    assert progress_service.habit_progress_pct(None, None) == 0.0


def test_habit_based_progress_is_capped_at_90() -> None:
    habits = [{"current_value": 30, "target_value": 30}, {"current_value": 30, "target_value": 30}]
    assert progress_service.habit_based_progress(habits) == 90.0
    assert progress_service.habit_based_progress([]) == 0.0


def test_two_habits_and_manual_offset_combine_to_65() -> None:
    habits = [{"current_value": 5, "target_value": 10}, {"current_value": 7, "target_value": 10}]
    progress = progress_service.combine_progress(progress_service.habit_based_progress(habits), 5, "active")
    assert progress == 65


@pytest.mark.parametrize(
    ("habit_progress", "offset", "status", "expected"),
    [
        (90.0, 50, "active", 100),
        (10.0, -40, "active", 0),
        (0.0, 0, "completed", 100),
        (12.0, -100, "completed", 100),
        (45.4, None, "paused", 45),
    ],
)
def test_combine_progress_stays_in_bounds(habit_progress, offset, status, expected) -> None:
    assert progress_service.combine_progress(habit_progress, offset, status) == expected


def test_preserving_offset_keeps_combined_value() -> None:
    before = progress_service.combined_progress(60.0, 10)
    offset = progress_service.preserving_offset(before, 20.0)
    assert offset == 50
    assert progress_service.combined_progress(20.0, offset) == before


def test_compute_goal_progress_reads_fresh_rows() -> None:
    connection = FakeProgressConnection()
    user_id = uuid4()
    goal_id = uuid4()
    connection.goals[goal_id] = {"id": goal_id, "user_id": user_id, "status": "active", "current_value": 5}
    connection.habit_instances = [
        {"goal_instance_id": goal_id, "habit_definition_id": uuid4(), "user_id": user_id, "current_value": 5, "target_value": 10},
        {"goal_instance_id": goal_id, "habit_definition_id": uuid4(), "user_id": user_id, "current_value": 7, "target_value": 10},
    ]

    assert _run(progress_service.compute_goal_progress(connection, user_id, goal_id)) == 65

    connection.habit_instances[0]["current_value"] = 10
    assert _run(progress_service.compute_goal_progress(connection, user_id, goal_id)) == 90

    connection.goals[goal_id]["status"] = "completed"
    assert _run(progress_service.compute_goal_progress(connection, user_id, goal_id)) == 100


def test_compute_goal_progress_unknown_goal_raises_lookup() -> None:
    connection = FakeProgressConnection()
    with pytest.raises(LookupError):
        _run(progress_service.compute_goal_progress(connection, uuid4(), uuid4()))
