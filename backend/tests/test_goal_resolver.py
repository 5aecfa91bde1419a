from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from coach.ai.gemini_client import GeminiResponseError
from coach.services import goal_resolver
from coach.services.goal_resolver import GoalCandidate


def _run(coro):
    return asyncio.run(coro)


BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _goal(title: str, description: str = "", age_days: int = 0) -> GoalCandidate:
    return GoalCandidate(
        id=uuid4(),
        title=title,
        description=description,
        created_at=BASE_TIME - timedelta(days=age_days),
    )


def _sample_goals() -> list[GoalCandidate]:
    return [
        _goal("Save $500", "Build an emergency savings buffer", age_days=30),
        _goal("Ship landing page", "Launch the product site", age_days=20),
        _goal("Run 5k", "Get back into cardio", age_days=10),
    ]


def test_numbered_list_returns_goals_in_stated_order() -> None:
    goals = _sample_goals()
    reasoning = "1. Ship landing page, 2. Run 5k, 3. Save $500"

    resolution = _run(goal_resolver.resolve_goals(reasoning, goals, 3))

    assert [resolved.goal.title for resolved in resolution.goals] == ["Ship landing page", "Run 5k", "Save $500"]
    assert [resolved.rank for resolved in resolution.goals] == [1, 2, 3]
    assert {resolved.stage for resolved in resolution.goals} == {"title_match"}
    assert resolution.snapshot_items[0] == {"goalInstanceId": str(goals[1].id), "rank": 1}


def test_explicit_list_shorter_than_limit_is_not_padded() -> None:
    goals = _sample_goals() + [_goal("Read 12 books", age_days=40)]

    resolution = _run(goal_resolver.resolve_goals("1. Run 5k\n2. Read 12 books", goals, 5))

    assert resolution.required == 2
    assert [resolved.goal.title for resolved in resolution.goals] == ["Run 5k", "Read 12 books"]


def test_extract_structured_titles_handles_marker_markdown_and_quotes() -> None:
    assert goal_resolver.extract_structured_titles("Prioritize: Run 5k, Save $500") == ["Run 5k", "Save $500"]
    assert goal_resolver.extract_structured_titles("1. **Run 5k** - build stamina\n2. Save $500: emergency fund") == [
        "Run 5k - build stamina",
        "Save $500: emergency fund",
    ]
    assert goal_resolver.extract_structured_titles('Start with "Run 5k" this week.') == ["Run 5k"]
    assert goal_resolver.extract_structured_titles("No structure here at all.") == []


def test_match_titles_prefers_equality_then_containment() -> None:
    goals = [_goal("Run 5k race"), _goal("Run 5k")]

    matched = goal_resolver.match_titles(["run 5K", "5k race"], goals)

    assert [goal.title for goal in matched] == ["Run 5k", "Run 5k race"]


def test_model_extraction_fills_gap_and_ignores_unknown_lines() -> None:
    goals = _sample_goals()
    calls = []

    async def extractor(reasoning, titles, count):
        calls.append((titles, count))
        return ["Run 5k", "Learn Spanish"]

    resolution = _run(goal_resolver.resolve_goals("Cardio matters most right now.", goals, 2, extractor))

    assert calls and calls[0][1] == 2
    assert resolution.goals[0].goal.title == "Run 5k"
    assert resolution.goals[0].stage == "model_extraction"
    assert len(resolution.goals) == 2
    assert resolution.goals[1].goal.title == "Save $500"


def test_extractor_failure_degrades_to_keyword_scoring() -> None:
    goals = _sample_goals()

    async def failing_extractor(reasoning, titles, count):
        raise GeminiResponseError("unparseable")

    resolution = _run(
        goal_resolver.resolve_goals("Money matters: build savings and budget", goals, 1, failing_extractor)
    )

    assert [resolved.goal.title for resolved in resolution.goals] == ["Save $500"]
    assert resolution.goals[0].stage == "keyword_score"


def test_keyword_ties_prefer_older_goal() -> None:
    older = _goal("Morning yoga", age_days=50)
    newer = _goal("Evening yoga", age_days=5)

    ranked = goal_resolver.score_by_keywords("more yoga please", [newer, older])

    assert ranked == [older, newer]


def test_fallback_fills_with_oldest_goals() -> None:
    goals = _sample_goals()

    resolution = _run(goal_resolver.resolve_goals("whatever you think is best", goals, 2))

    assert [resolved.goal.title for resolved in resolution.goals] == ["Save $500", "Ship landing page"]
    assert {resolved.stage for resolved in resolution.goals} == {"fallback"}


def test_mentioned_titles_are_used_without_explicit_list() -> None:
    goals = _sample_goals()

    resolution = _run(goal_resolver.resolve_goals("This month Run 5k comes before Ship landing page.", goals, 2))

    assert [resolved.goal.title for resolved in resolution.goals] == ["Run 5k", "Ship landing page"]


def test_no_candidates_resolves_to_nothing() -> None:
    resolution = _run(goal_resolver.resolve_goals("1. Run 5k", [], 3))

    assert resolution.goals == []
    assert resolution.required == 0


def test_card_item_includes_optional_fields_only_when_present() -> None:
    goal = GoalCandidate(id=uuid4(), title="Run 5k", target_date=datetime(2026, 6, 1).date(), life_metric="Health & Fitness")
    item = goal_resolver.ResolvedGoal(goal=goal, rank=1, stage="title_match").card_item()

    assert item["targetDate"] == "2026-06-01"
    assert item["lifeMetric"] == "Health & Fitness"

    bare = goal_resolver.ResolvedGoal(goal=GoalCandidate(id=uuid4(), title="Read"), rank=2, stage="fallback").card_item()
    assert "targetDate" not in bare
    assert "lifeMetric" not in bare


def test_trailing_reasons_are_cut_only_when_the_item_matches_nothing() -> None:
    goals = _sample_goals()
    reasoning = "1. **Run 5k** - build stamina\n2. Save $500: emergency fund\n3. Ship landing page (launch week)"

    resolution = _run(goal_resolver.resolve_goals(reasoning, goals, 3))

    assert [resolved.goal.title for resolved in resolution.goals] == ["Run 5k", "Save $500", "Ship landing page"]


def test_titles_with_colons_keep_their_numbered_order() -> None:
    goals = [
        _goal("Health: sleep 8 hours", age_days=3),
        _goal("Health: run 5k", age_days=2),
        _goal("Career: ship v2", age_days=1),
    ]
    reasoning = "1. Health: run 5k\n2. Health: sleep 8 hours\n3. Career: ship v2"

    resolution = _run(goal_resolver.resolve_goals(reasoning, goals, 3))

    assert resolution.required == 3
    assert [resolved.goal.title for resolved in resolution.goals] == [
        "Health: run 5k",
        "Health: sleep 8 hours",
        "Career: ship v2",
    ]
    assert {resolved.stage for resolved in resolution.goals} == {"title_match"}


def test_parenthesised_titles_are_not_merged() -> None:
    goals = [_goal("Run 5k (spring)", age_days=3), _goal("Run 5k (fall)", age_days=2), _goal("Save $500", age_days=1)]

    resolution = _run(goal_resolver.resolve_goals("1. Run 5k (spring), 2. Run 5k (fall), 3. Save $500", goals, 3))

    assert [resolved.goal.title for resolved in resolution.goals] == ["Run 5k (spring)", "Run 5k (fall)", "Save $500"]


def test_marker_list_splits_on_commas_only() -> None:
    goals = [
        _goal("Sleep 8 hours", age_days=4),
        _goal("Eat well and sleep", age_days=3),
        _goal("Run 5k", age_days=2),
        _goal("Save $500", age_days=1),
    ]
    reasoning = "Prioritize: Eat well and sleep, Run 5k, Save $500"

    assert goal_resolver.extract_structured_titles(reasoning) == ["Eat well and sleep", "Run 5k", "Save $500"]

    resolution = _run(goal_resolver.resolve_goals(reasoning, goals, 3))

    assert [resolved.goal.title for resolved in resolution.goals] == ["Eat well and sleep", "Run 5k", "Save $500"]
