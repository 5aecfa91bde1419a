from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from uuid import uuid4

import pytest

from coach.services import goals_service


def _run(coro):
    return asyncio.run(coro)


class FakeGoalCursor:
    def __init__(self, connection):
        self.connection = connection
        self._rows = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def execute(self, query, params=None):
        normalized = " ".join(query.split())
        db = self.connection
        db.queries.append(normalized)
        self._rows = []

        if normalized.startswith("SELECT gi.id, gi.goal_definition_id, gi.status"):
            goal = db.goals.get(params[0])
            self._rows = [goal] if goal else []
            return

        if normalized.startswith("SELECT gi.id FROM goal_instances gi JOIN goal_definitions gd"):
            return

        if normalized.startswith("SELECT goal_instance_id, habit_definition_id, current_value, target_value"):
            goal_ids, user_id = params
            self._rows = [row for row in db.habit_instances if row["goal_instance_id"] in goal_ids]
            return

        if normalized.startswith("UPDATE goal_instances SET current_value = %s"):
            offset, goal_id, user_id = params
            db.goals[goal_id]["current_value"] = offset
            return

        if normalized.startswith("UPDATE goal_instances SET status = 'completed'"):
            completed_at, goal_id, user_id = params
            db.goals[goal_id]["status"] = "completed"
            db.goals[goal_id]["completed_at"] = completed_at
            return

        if normalized.startswith("UPDATE goal_definitions SET title = %s"):
            title, definition_id, user_id = params
            for goal in db.goals.values():
                if goal["goal_definition_id"] == definition_id:
                    goal["title"] = title
            return

        if normalized.startswith("UPDATE goal_instances SET target_date = %s"):
            target_date, goal_id, user_id = params
            db.goals[goal_id]["target_date"] = target_date
            return

        if normalized.startswith("SELECT id, frequency_settings FROM habit_instances"):
            goal_id, user_id = params
            self._rows = [row for row in db.habit_instances if row["goal_instance_id"] == goal_id]
            return

        if normalized.startswith("UPDATE habit_instances SET frequency_settings = %s::jsonb"):
            frequency_settings, target_value, instance_id = params
            for row in db.habit_instances:
                if row["id"] == instance_id:
                    row["frequency_settings"] = json.loads(frequency_settings)
                    row["target_value"] = target_value
            return

        if normalized.startswith("UPDATE goal_definitions SET archived = TRUE, life_metric_id = NULL"):
            definition_id, user_id = params
            db.detached_definitions.append(definition_id)
            return

        if normalized.startswith("UPDATE goal_instances SET status = 'archived', archived = TRUE"):
            goal_id, user_id = params
            db.goals[goal_id]["status"] = "archived"
            db.goals[goal_id]["archived"] = True
            return

        if normalized.startswith("SELECT id FROM life_metric_definitions"):
            user_id, key, name = params
            metric_id = db.life_metrics.get(name.lower())
            self._rows = [{"id": metric_id}] if metric_id else []
            return

        if normalized.startswith("INSERT INTO goal_definitions"):
            db.inserted_definition = params
            self._rows = [{"id": uuid4()}]
            return

        if normalized.startswith("INSERT INTO goal_instances"):
            definition_id, user_id, target_date = params
            self._rows = [{"id": uuid4(), "target_date": target_date, "created_at": datetime.now(timezone.utc)}]
            return

        raise AssertionError(f"Unexpected query: {normalized}")

    async def fetchone(self):
        return self._rows[0] if self._rows else None

    async def fetchall(self):
        return list(self._rows)


class FakeGoalConnection:
    def __init__(self):
        self.goals = {}
        self.habit_instances = []
        self.life_metrics = {}
        self.queries = []
        self.inserted_definition = None
        self.detached_definitions = []

    def cursor(self):
        return FakeGoalCursor(self)

    @asynccontextmanager
    async def transaction(self):
        yield

    def add_goal(self, title, current_value=0, status="active", habit_counters=()):
        goal_id = uuid4()
        self.goals[goal_id] = {
            "id": goal_id,
            "goal_definition_id": uuid4(),
            "status": status,
            "current_value": current_value,
            "target_value": 100,
            "target_date": None,
            "archived": False,
            "created_at": None,
            "title": title,
            "description": "",
        }
        for current, target in habit_counters:
            self.habit_instances.append(
                {
                    "id": uuid4(),
                    "goal_instance_id": goal_id,
                    "habit_definition_id": uuid4(),
                    "current_value": current,
                    "target_value": target,
                    "frequency_settings": {"frequency": "daily", "per_period_target": 1, "periods_count": target},
                }
            )
        return goal_id


@pytest.mark.parametrize(
    ("text", "current", "expected"),
    [
        ("I'm at 60% now", 20.0, 60.0),
        ("made 3 more points of progress", 40.0, 43.0),
        ("did 25 pages", 40.0, 50.0),
        ("made some progress", 40.0, 45.0),
        ("basically done, 100%", 40.0, 99.0),
        ("a bit more", 97.0, 99.0),
        ("made more progress", 100.0, 100.0),
        ("2 more sessions", 99.5, 99.5),
        ("back down to 80%", 100.0, 80.0),
    ],
)
def test_target_progress_from_text(text, current, expected) -> None:
    assert goals_service.target_progress_from_text(text, current) == expected


def test_crossed_milestones() -> None:
    assert goals_service.crossed_milestones(20, 55) == [25, 50]
    assert goals_service.crossed_milestones(50, 60) == []
    assert goals_service.crossed_milestones(74, 75) == [75]


def test_update_goal_progress_moves_offset_only() -> None:
    connection = FakeGoalConnection()
    user_id = uuid4()
    goal_id = connection.add_goal("Write thesis", current_value=0, habit_counters=[(4, 10)])

    result = _run(goals_service.update_goal_progress(connection, user_id, goal_id, "I'm at 60%"))

    assert result["previous_progress"] == 40
    assert result["progress"] == 60
    assert result["manual_offset"] == 20
    assert result["milestones"] == [50]
    assert connection.goals[goal_id]["current_value"] == 20
    assert connection.habit_instances[0]["current_value"] == 4


def test_update_goal_progress_never_lowers_a_full_total_without_a_percentage() -> None:
    connection = FakeGoalConnection()
    user_id = uuid4()
    goal_id = connection.add_goal("Run a marathon", current_value=10, habit_counters=[(10, 10)])

    result = _run(goals_service.update_goal_progress(connection, user_id, goal_id, "made more progress"))

    assert result["previous_progress"] == 100
    assert result["progress"] == 100
    assert result["manual_offset"] == 10
    assert connection.goals[goal_id]["current_value"] == 10


def test_update_goal_progress_rejects_completed_goal() -> None:
    connection = FakeGoalConnection()
    goal_id = connection.add_goal("Done already", status="completed")

    with pytest.raises(ValueError, match="already completed"):
        _run(goals_service.update_goal_progress(connection, uuid4(), goal_id, "10%"))


def test_complete_goal_is_idempotent(monkeypatch) -> None:
    fixed = datetime(2026, 3, 9, 12, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(goals_service, "_now", lambda: fixed)
    connection = FakeGoalConnection()
    goal_id = connection.add_goal("Ship landing page")

    first = _run(goals_service.complete_goal(connection, uuid4(), goal_id))
    second = _run(goals_service.complete_goal(connection, uuid4(), goal_id))

    assert first == {
        "goal_id": goal_id,
        "title": "Ship landing page",
        "progress": 100,
        "completed_at": fixed,
        "already_completed": False,
    }
    assert second["already_completed"] is True
    assert sum(1 for query in connection.queries if "SET status = 'completed'" in query) == 1


def test_create_goal_with_habits_links_each_habit(monkeypatch) -> None:
    connection = FakeGoalConnection()
    connection.life_metrics["health & fitness"] = uuid4()
    linked = []

    async def fake_upsert(conn, user_id, title, description):
        return uuid4(), title == "Stretch"

    async def fake_link(conn, user_id, goal, habit_definition_id, *, frequency, per_period_target):
        linked.append((goal["id"], frequency, per_period_target))
        return uuid4()

    monkeypatch.setattr(goals_service, "upsert_habit_definition", fake_upsert)
    monkeypatch.setattr(goals_service, "link_habit_to_goal", fake_link)

    result = _run(
        goals_service.create_goal_with_habits(
            connection,
            uuid4(),
            title="  Run a half marathon ",
            description="Spring race",
            life_metric="Health & Fitness",
            term="medium",
            target_date=date(2026, 5, 1),
            habits=[
                {"title": "Long run", "frequency": "weekly", "per_period_target": 1},
                {"title": "Stretch"},
            ],
        )
    )

    assert result["title"] == "Run a half marathon"
    assert result["target_date"] == date(2026, 5, 1)
    assert [habit["reused"] for habit in result["habits"]] == [False, True]
    assert [(frequency, target) for _, frequency, target in linked] == [("weekly", 1), ("daily", 1)]
    assert all(goal_id == result["goal_id"] for goal_id, _, _ in linked)
    assert connection.inserted_definition[4] == connection.life_metrics["health & fitness"]


def test_update_goal_progress_rejects_archived_goal() -> None:
    connection = FakeGoalConnection()
    goal_id = connection.add_goal("Old plan")
    connection.goals[goal_id]["archived"] = True

    with pytest.raises(ValueError, match="archived"):
        _run(goals_service.update_goal_progress(connection, uuid4(), goal_id, "10%"))


def test_adjust_goal_renames_and_resizes_habits_for_new_deadline(monkeypatch) -> None:
    monkeypatch.setattr(goals_service, "_now", lambda: datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))
    connection = FakeGoalConnection()
    goal_id = connection.add_goal("Run 5k", habit_counters=[(2, 30)])

    result = _run(
        goals_service.adjust_goal(
            connection, uuid4(), goal_id, title="  Run a sub-25 5k ", target_date=date(2026, 3, 15)
        )
    )

    assert result["title"] == "Run a sub-25 5k"
    assert result["previous_title"] == "Run 5k"
    assert result["target_date"] == date(2026, 3, 15)
    assert result["previous_target_date"] is None
    assert result["resized_habits"] == 1
    assert connection.goals[goal_id]["title"] == "Run a sub-25 5k"
    assert connection.goals[goal_id]["target_date"] == date(2026, 3, 15)
    habit = connection.habit_instances[0]
    assert habit["target_value"] == 14
    assert habit["frequency_settings"] == {"frequency": "daily", "per_period_target": 1, "periods_count": 14}
    assert habit["current_value"] == 2


def test_adjust_goal_title_only_leaves_habits_alone() -> None:
    connection = FakeGoalConnection()
    goal_id = connection.add_goal("Read more", habit_counters=[(1, 30)])

    result = _run(goals_service.adjust_goal(connection, uuid4(), goal_id, title="Read 12 books"))

    assert result["resized_habits"] == 0
    assert connection.habit_instances[0]["target_value"] == 30
    assert not any(query.startswith("UPDATE goal_instances SET target_date") for query in connection.queries)


def test_adjust_goal_needs_a_change() -> None:
    connection = FakeGoalConnection()
    goal_id = connection.add_goal("Read more")

    with pytest.raises(ValueError, match="Nothing to adjust"):
        _run(goals_service.adjust_goal(connection, uuid4(), goal_id, title="   "))


def test_archive_goals_flags_goals_and_drops_them_from_focus(monkeypatch) -> None:
    connection = FakeGoalConnection()
    user_id = uuid4()
    stale = connection.add_goal("Learn Spanish")
    kept = connection.add_goal("Run 5k")
    unknown = uuid4()
    applied = []

    async def fake_latest(conn, user_id_arg):
        return {"items": [{"goalInstanceId": str(stale), "rank": 1}, {"goalInstanceId": str(kept), "rank": 2}]}

    async def fake_apply(conn, user_id_arg, items, source_thread_id=None, *, enforce_limit=True):
        applied.append((items, source_thread_id, enforce_limit))
        return {"items": items}

    monkeypatch.setattr(goals_service.priority_store, "latest", fake_latest)
    monkeypatch.setattr(goals_service.priority_store, "apply", fake_apply)

    result = _run(goals_service.archive_goals(connection, user_id, [stale, unknown, stale], "thread-3"))

    assert [entry["title"] for entry in result["archived"]] == ["Learn Spanish"]
    assert [entry["goal_id"] for entry in result["skipped"]] == [unknown]
    assert "was not found" in result["skipped"][0]["error"]
    assert result["removed_from_focus"] == 1
    assert connection.goals[stale]["status"] == "archived"
    assert connection.goals[stale]["archived"] is True
    assert connection.goals[kept]["archived"] is False
    assert connection.detached_definitions == [connection.goals[stale]["goal_definition_id"]]
    assert applied == [([{"goalInstanceId": str(kept), "rank": 2}], "thread-3", False)]

    again = _run(goals_service.archive_goals(connection, user_id, [stale]))
    assert again["archived"] == []
    assert "already archived" in again["skipped"][0]["error"]
