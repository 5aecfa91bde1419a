from __future__ import annotations

import asyncio
from uuid import uuid4

from coach.services import habit_matcher
from coach.services.habit_matcher import HabitCandidate, HabitMatch, HabitNoMatch


def _run(coro):
    return asyncio.run(coro)


def _habit(name: str, description: str = "", goal_ids=()) -> HabitCandidate:
    return HabitCandidate(id=uuid4(), name=name, description=description, goal_ids=tuple(goal_ids))


class FakeMatcherCursor:
    def __init__(self, connection):
        self.connection = connection
        self._rows = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def execute(self, query, params=None):
        normalized = " ".join(query.split())
        if normalized.startswith("SELECT hd.id, hd.name, hd.description, hd.created_at"):
            self._rows = list(self.connection.rows)
            return
        raise AssertionError(f"Unexpected query: {normalized}")

    async def fetchall(self):
        return list(self._rows)


class FakeMatcherConnection:
    def __init__(self, rows):
        self.rows = rows

    def cursor(self):
        return FakeMatcherCursor(self)


def _match(description, candidates, goal_id=None, focus_goal_ids=()):
    rows = [
        {
            "id": candidate.id,
            "name": candidate.name,
            "description": candidate.description,
            "created_at": None,
            "goal_ids": list(candidate.goal_ids),
        }
        for candidate in candidates
    ]
    connection = FakeMatcherConnection(rows)
    return _run(habit_matcher.match_habit(connection, uuid4(), description, goal_id, focus_goal_ids=focus_goal_ids))


def test_run_report_resolves_to_morning_run() -> None:
    run_goal = uuid4()
    morning_run = _habit("Morning run", "30 minutes easy pace", goal_ids=[run_goal])
    habits = [_habit("Read 20 pages", "Before bed"), morning_run, _habit("Budget review", "Check spending")]

    result = _match("I went for my run today", habits)

    assert isinstance(result, HabitMatch)
    assert result.habit.id == morning_run.id
    assert result.stage == "token_score"


def test_stages_run_in_order() -> None:
    meditate = _habit("Meditate", "Ten minutes of breathing")
    journal = _habit("Evening journal", "Write three lines about the day")

    assert habit_matcher.match_exact_name("meditate", [journal, meditate]).stage == "exact"
    assert habit_matcher.match_name_substring("did my evening journal", [meditate, journal]).habit is journal
    assert habit_matcher.match_name_substring("journal", [meditate, journal]).habit is journal
    assert habit_matcher.match_description_substring("breathing", [journal, meditate]).habit is meditate
    assert habit_matcher.match_exact_name("journal", [meditate, journal]) is None


def test_longest_contained_name_wins() -> None:
    run = _habit("Run")
    long_run = _habit("Long run")

    result = habit_matcher.match_name_substring("finished my long run", [run, long_run])

    assert result.habit is long_run


def test_name_containment_respects_word_boundaries() -> None:
    run = _habit("Run", "Easy jog")
    journal = _habit("Journal", "Write before bed")

    assert habit_matcher.match_name_substring("I had brunch", [run, journal]) is None
    assert habit_matcher.match_name_substring("run", [_habit("Brunch with friends")]) is None
    assert habit_matcher.match_description_substring("jogging", [run]) is None
    assert habit_matcher.match_name_substring("quick run before work", [run]).habit is run

    result = _match("I had brunch", [run, journal])

    assert isinstance(result, HabitNoMatch)
    assert result.available_titles == ["Run", "Journal"]


def test_low_overlap_returns_no_match_with_all_titles() -> None:
    habits = [_habit("Read 20 pages", "Before bed"), _habit("Drink water", "Eight glasses")]

    result = _match("called grandma about holiday plans", habits)

    assert isinstance(result, HabitNoMatch)
    assert result.reason == "no_match"
    assert result.available_titles == ["Read 20 pages", "Drink water"]
    assert "called grandma" in result.message


def test_empty_pool_is_no_habits() -> None:
    result = _match("ran", [])

    assert isinstance(result, HabitNoMatch)
    assert result.reason == "no_habits"


def test_token_threshold_accepts_score_even_with_low_coverage() -> None:
    candidate = _habit("Strength training session", "Gym workout lifting weights")
    tokens = ["strength", "training", "gym", "yesterday", "knee", "sore"]

    score, coverage = habit_matcher.score_candidate(tokens, candidate)

    assert score == 7
    assert coverage < 0.6
    matched = habit_matcher.match_by_tokens(
        "strength training gym knee sore", [candidate], min_coverage=0.6, min_score=5
    )
    assert matched is not None


def test_thresholds_are_configurable() -> None:
    candidate = _habit("Stretch", "Mobility routine")

    loose = habit_matcher.match_by_tokens("stretch hamstrings quads", [candidate], min_coverage=0.3, min_score=5)
    strict = habit_matcher.match_by_tokens("stretch hamstrings quads", [candidate], min_coverage=0.6, min_score=5)

    assert loose is not None
    assert strict is None


def test_goal_scope_narrows_pool() -> None:
    goal_a = uuid4()
    goal_b = uuid4()
    walk_a = _habit("Walk", goal_ids=[goal_a])
    walk_b = _habit("Walk the dog", goal_ids=[goal_b])

    result = _match("walk", [walk_a, walk_b], goal_id=goal_b)

    assert result.habit.id == walk_b.id


def test_goal_without_habits_falls_back_to_full_pool() -> None:
    walk = _habit("Walk", goal_ids=[uuid4()])

    result = _match("walk", [walk], goal_id=uuid4())

    assert result.habit.id == walk.id


def test_focus_scope_applies_only_to_large_pools_and_retries_full_pool() -> None:
    focus_goal = uuid4()
    focus_habit = _habit("Piano practice", goal_ids=[focus_goal])
    others = [_habit(f"Other habit {index}") for index in range(9)]
    outside = _habit("Swim laps")

    pools = habit_matcher.candidate_pools(
        [focus_habit, *others, outside],
        goal_id=None,
        focus_goal_ids=[focus_goal],
        focus_scope_threshold=8,
    )
    assert pools[0] == [focus_habit]
    assert len(pools) == 2

    small = habit_matcher.candidate_pools([focus_habit, outside], goal_id=None, focus_goal_ids=[focus_goal], focus_scope_threshold=8)
    assert small == [[focus_habit, outside]]

    result = _match("swim laps", [focus_habit, *others, outside], focus_goal_ids=[focus_goal])
    assert result.habit.id == outside.id
