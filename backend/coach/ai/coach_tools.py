"""Coach action set: argument models, Gemini function schemas, and the dispatcher.

The action set is closed. `CoachTool` names every action, `_TOOL_SPECS`
maps each to its argument model, and `dispatch_coach_tool` handles each one
in a single if-chain. Every handler returns ``{"kind", "summary", "data"}``
and, when the UI should render something, a ``"card"`` payload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

from coach.ai.cards import (
    CompletedHabit,
    HabitCompletionCard,
    HabitCompletionErrorCard,
    HabitReviewCard,
    HabitReviewItem,
    OptimizationCard,
    OptimizationRecommendation,
    PrioritizationCard,
    PrioritizationItem,
    ProgressSummaryCard,
    ProgressSummaryItem,
)
from coach.services import priority_store
from coach.services.frequency import VALID_FREQUENCIES
from coach.services.goal_resolver import GoalCandidate, TitleExtractor, resolve_goals
from coach.services.goals_service import (
    adjust_goal,
    archive_goals,
    complete_goal,
    create_goal_with_habits,
    list_active_goal_candidates,
    update_goal_progress,
)
from coach.services.habit_completion_service import CompletionConflict, log_habit_completion, user_local_today
from coach.services.habit_matcher import HabitNoMatch, match_habit
from coach.services.habits_service import replace_goal_habits, update_habit
from coach.services.identifiers import parse_identifier
from coach.services.state_reader import read_context, read_habits, summarize_progress

logger = logging.getLogger(__name__)

REVIEW_HABIT_LIMIT = 6


class CoachToolArgumentError(Exception):
    """Raised when coach tool args are invalid."""


class CoachTool(str, Enum):
    GET_CONTEXT = "get_context"
    PRIORITIZE_GOALS = "prioritize_goals"
    REMOVE_PRIORITY = "remove_priority"
    LOG_HABIT_COMPLETION = "log_habit_completion"
    REVIEW_DAILY_HABITS = "review_daily_habits"
    UPDATE_HABIT = "update_habit"
    OPTIMIZE_HABITS = "optimize_habits"
    UPDATE_GOAL_PROGRESS = "update_goal_progress"
    COMPLETE_GOAL = "complete_goal"
    CREATE_GOAL_WITH_HABITS = "create_goal_with_habits"
    ADJUST_GOAL = "adjust_goal"
    ARCHIVE_GOALS = "archive_goals"
    SHOW_PROGRESS_SUMMARY = "show_progress_summary"


@dataclass
class ToolContext:
    """Everything one request's actions need; built per request, never shared."""

    connection: Any
    user_id: UUID
    thread_id: str
    extractor: TitleExtractor | None = None


def _goal_id(value: Any) -> Any:
    if value is None or value == "":
        return None
    return parse_identifier(value, kind="goal instance", scope="goals")


def _habit_id(value: Any) -> Any:
    return parse_identifier(value, kind="habit", scope="habits")


class GetContextArgs(BaseModel):
    scope: Literal["focus", "goals", "habits", "insights", "categories"]
    filters: dict[str, Any] = Field(default_factory=dict)


class PrioritizeGoalsArgs(BaseModel):
    reasoning: str = Field(min_length=1, max_length=4000)


class RemovePriorityArgs(BaseModel):
    goal_id: UUID | None = None

    @field_validator("goal_id", mode="before")
    @classmethod
    def validate_goal_id(cls, value: Any) -> Any:
        return _goal_id(value)


class LogHabitCompletionArgs(BaseModel):
    habit_description: str = Field(min_length=1, max_length=300)
    goal_id: UUID | None = None
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("goal_id", mode="before")
    @classmethod
    def validate_goal_id(cls, value: Any) -> Any:
        return _goal_id(value)


class ReviewDailyHabitsArgs(BaseModel):
    review_date: date | None = Field(default=None, validation_alias=AliasChoices("date", "review_date"))
    pre_checked: list[UUID] = Field(default_factory=list)

    @field_validator("pre_checked", mode="before")
    @classmethod
    def validate_pre_checked(cls, value: Any) -> Any:
        return [_habit_id(item) for item in value or []]


class UpdateHabitArgs(BaseModel):
    habit_id: UUID
    action: Literal["pause", "resume", "change_frequency", "archive"]
    value: Any = None

    @field_validator("habit_id", mode="before")
    @classmethod
    def validate_habit_id(cls, value: Any) -> Any:
        return _habit_id(value)

    @model_validator(mode="after")
    def ensure_frequency_value(self) -> UpdateHabitArgs:
        if self.action != "change_frequency":
            return self
        value = self.value if isinstance(self.value, dict) else {"frequency": self.value}
        if value.get("frequency") not in VALID_FREQUENCIES:
            raise ValueError("change_frequency needs value.frequency of daily, weekly, or monthly")
        per_period_target = value.get("per_period_target", value.get("perPeriodTarget", 1))
        try:
            per_period_target = int(per_period_target)
        except (TypeError, ValueError) as exc:
            raise ValueError("value.per_period_target must be a whole number") from exc
        if per_period_target < 1:
            raise ValueError("value.per_period_target must be >= 1")
        self.value = {"frequency": value["frequency"], "per_period_target": per_period_target}
        return self


class NewHabitArgs(BaseModel):
    title: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=500)
    frequency: Literal["daily", "weekly", "monthly"] = "daily"
    per_period_target: int = Field(
        default=1,
        ge=1,
        le=31,
        validation_alias=AliasChoices("per_period_target", "perPeriodTarget"),
    )


class OptimizeHabitsArgs(BaseModel):
    goal_id: UUID
    remove_habit_ids: list[UUID] = Field(default_factory=list)
    new_habits: list[NewHabitArgs] = Field(min_length=1, max_length=5)

    @field_validator("goal_id", mode="before")
    @classmethod
    def validate_goal_id(cls, value: Any) -> Any:
        return _goal_id(value)

    @field_validator("remove_habit_ids", mode="before")
    @classmethod
    def validate_remove_habit_ids(cls, value: Any) -> Any:
        return [_habit_id(item) for item in value or []]


class UpdateGoalProgressArgs(BaseModel):
    goal_id: UUID
    progress_update: str = Field(min_length=1, max_length=300)

    @field_validator("goal_id", mode="before")
    @classmethod
    def validate_goal_id(cls, value: Any) -> Any:
        return _goal_id(value)


class CompleteGoalArgs(BaseModel):
    goal_id: UUID

    @field_validator("goal_id", mode="before")
    @classmethod
    def validate_goal_id(cls, value: Any) -> Any:
        return _goal_id(value)


class CreateGoalWithHabitsArgs(BaseModel):
    title: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=1000)
    life_metric: str | None = Field(default=None, max_length=120)
    term: Literal["short", "medium", "long"] | None = None
    target_date: date | None = None
    habits: list[NewHabitArgs] = Field(min_length=1, max_length=5)


class AdjustGoalArgs(BaseModel):
    goal_id: UUID
    title: str | None = Field(default=None, max_length=120)
    target_date: date | None = None
    reason: str | None = Field(default=None, max_length=500)

    @field_validator("goal_id", mode="before")
    @classmethod
    def validate_goal_id(cls, value: Any) -> Any:
        return _goal_id(value)

    @model_validator(mode="after")
    def ensure_change(self) -> AdjustGoalArgs:
        if not (self.title or "").strip() and self.target_date is None:
            raise ValueError("adjust_goal needs a new title or target_date")
        return self


class ArchiveGoalsArgs(BaseModel):
    goal_ids: list[UUID] = Field(min_length=1, max_length=20)
    reason: str | None = Field(default=None, max_length=500)

    @field_validator("goal_ids", mode="before")
    @classmethod
    def validate_goal_ids(cls, value: Any) -> Any:
        return [_goal_id(item) for item in value or []]


class ShowProgressSummaryArgs(BaseModel):
    scope: Literal["goals", "habits", "life_metric"]
    filters: dict[str, Any] = Field(default_factory=dict)


_TOOL_SPECS: dict[CoachTool, tuple[type[BaseModel], str]] = {
    CoachTool.GET_CONTEXT: (
        GetContextArgs,
        "Read the user's current state. Scopes: focus, goals, habits, insights, categories. "
        "Call this before any action that needs an id.",
    ),
    CoachTool.PRIORITIZE_GOALS: (
        PrioritizeGoalsArgs,
        "Propose a ranked focus set from your reasoning. Shows a card for the user to accept; nothing is saved.",
    ),
    CoachTool.REMOVE_PRIORITY: (
        RemovePriorityArgs,
        "Remove one goal from the focus set, or clear the focus set when goal_id is omitted.",
    ),
    CoachTool.LOG_HABIT_COMPLETION: (
        LogHabitCompletionArgs,
        "Log that the user did a habit today, described in their words.",
    ),
    CoachTool.REVIEW_DAILY_HABITS: (
        ReviewDailyHabitsArgs,
        "Show today's habit checklist. pre_checked lists habit ids the user already said they did.",
    ),
    CoachTool.UPDATE_HABIT: (
        UpdateHabitArgs,
        "Pause, resume, archive, or change the frequency of one habit.",
    ),
    CoachTool.OPTIMIZE_HABITS: (
        OptimizeHabitsArgs,
        "Replace habits under one goal after the user agreed. Goal progress is preserved.",
    ),
    CoachTool.UPDATE_GOAL_PROGRESS: (
        UpdateGoalProgressArgs,
        "Credit manual progress on a goal, e.g. '60%' or 'finished the first draft'.",
    ),
    CoachTool.COMPLETE_GOAL: (
        CompleteGoalArgs,
        "Mark a goal as completed.",
    ),
    CoachTool.CREATE_GOAL_WITH_HABITS: (
        CreateGoalWithHabitsArgs,
        "Create a goal with 1-5 habits after the user approved it. Does not change the focus set.",
    ),
    CoachTool.ADJUST_GOAL: (
        AdjustGoalArgs,
        "Rename a goal or move its target date when circumstances change. Habit targets follow the new date.",
    ),
    CoachTool.ARCHIVE_GOALS: (
        ArchiveGoalsArgs,
        "Archive one or more goals the user wants to drop. Archived goals leave the focus set.",
    ),
    CoachTool.SHOW_PROGRESS_SUMMARY: (
        ShowProgressSummaryArgs,
        "Show a progress summary card for goals, habits, or one life metric when the user asks how they are doing.",
    ),
}

_GOAL_ID_SCHEMA = {"type": "STRING", "description": "Goal instance id from get_context"}
_NEW_HABIT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING"},
        "description": {"type": "STRING"},
        "frequency": {"type": "STRING", "enum": list(VALID_FREQUENCIES)},
        "per_period_target": {"type": "INTEGER"},
    },
    "required": ["title"],
}


def coach_tool_schemas() -> list[dict[str, Any]]:
    """Gemini function declaration schemas for the coach action set."""
    properties: dict[CoachTool, tuple[dict[str, Any], list[str]]] = {
        CoachTool.GET_CONTEXT: (
            {
                "scope": {"type": "STRING", "enum": ["focus", "goals", "habits", "insights", "categories"]},
                "filters": {
                    "type": "OBJECT",
                    "properties": {
                        "status": {"type": "STRING", "enum": ["active", "completed", "paused", "archived", "all"]},
                        "days": {"type": "INTEGER"},
                        "life_metric": {"type": "STRING"},
                    },
                },
            },
            ["scope"],
        ),
        CoachTool.PRIORITIZE_GOALS: ({"reasoning": {"type": "STRING"}}, ["reasoning"]),
        CoachTool.REMOVE_PRIORITY: ({"goal_id": _GOAL_ID_SCHEMA}, []),
        CoachTool.LOG_HABIT_COMPLETION: (
            {
                "habit_description": {"type": "STRING"},
                "goal_id": _GOAL_ID_SCHEMA,
                "notes": {"type": "STRING"},
            },
            ["habit_description"],
        ),
        CoachTool.REVIEW_DAILY_HABITS: (
            {
                "date": {"type": "STRING", "description": "YYYY-MM-DD"},
                "pre_checked": {"type": "ARRAY", "items": {"type": "STRING"}},
            },
            [],
        ),
        CoachTool.UPDATE_HABIT: (
            {
                "habit_id": {"type": "STRING"},
                "action": {"type": "STRING", "enum": ["pause", "resume", "change_frequency", "archive"]},
                "value": {
                    "type": "OBJECT",
                    "properties": {
                        "frequency": {"type": "STRING", "enum": list(VALID_FREQUENCIES)},
                        "per_period_target": {"type": "INTEGER"},
                        "resume_date": {"type": "STRING", "description": "YYYY-MM-DD"},
                    },
                },
            },
            ["habit_id", "action"],
        ),
        CoachTool.OPTIMIZE_HABITS: (
            {
                "goal_id": _GOAL_ID_SCHEMA,
                "remove_habit_ids": {"type": "ARRAY", "items": {"type": "STRING"}},
                "new_habits": {"type": "ARRAY", "items": _NEW_HABIT_SCHEMA},
            },
            ["goal_id", "new_habits"],
        ),
        CoachTool.UPDATE_GOAL_PROGRESS: (
            {"goal_id": _GOAL_ID_SCHEMA, "progress_update": {"type": "STRING"}},
            ["goal_id", "progress_update"],
        ),
        CoachTool.COMPLETE_GOAL: ({"goal_id": _GOAL_ID_SCHEMA}, ["goal_id"]),
        CoachTool.CREATE_GOAL_WITH_HABITS: (
            {
                "title": {"type": "STRING"},
                "description": {"type": "STRING"},
                "life_metric": {"type": "STRING", "description": "Category name from get_context('categories')"},
                "term": {"type": "STRING", "enum": ["short", "medium", "long"]},
                "target_date": {"type": "STRING", "description": "YYYY-MM-DD"},
                "habits": {"type": "ARRAY", "items": _NEW_HABIT_SCHEMA},
            },
            ["title", "habits"],
        ),
        CoachTool.ADJUST_GOAL: (
            {
                "goal_id": _GOAL_ID_SCHEMA,
                "title": {"type": "STRING"},
                "target_date": {"type": "STRING", "description": "YYYY-MM-DD"},
                "reason": {"type": "STRING"},
            },
            ["goal_id"],
        ),
        CoachTool.ARCHIVE_GOALS: (
            {
                "goal_ids": {"type": "ARRAY", "items": _GOAL_ID_SCHEMA},
                "reason": {"type": "STRING"},
            },
            ["goal_ids"],
        ),
        CoachTool.SHOW_PROGRESS_SUMMARY: (
            {
                "scope": {"type": "STRING", "enum": ["goals", "habits", "life_metric"]},
                "filters": {
                    "type": "OBJECT",
                    "properties": {
                        "goal_ids": {"type": "ARRAY", "items": {"type": "STRING"}},
                        "timeframe": {"type": "STRING", "enum": ["last_7_days", "last_30_days"]},
                        "life_metric": {"type": "STRING"},
                    },
                },
            },
            ["scope"],
        ),
    }

    schemas: list[dict[str, Any]] = []
    for tool in CoachTool:
        props, required = properties[tool]
        parameters: dict[str, Any] = {"type": "OBJECT", "properties": props}
        if required:
            parameters["required"] = required
        schemas.append({"name": tool.value, "description": _TOOL_SPECS[tool][1], "parameters": parameters})
    return schemas


def _validate_args(tool_name: str, args: dict[str, Any]) -> tuple[CoachTool, BaseModel]:
    try:
        tool = CoachTool(tool_name)
    except ValueError as exc:
        raise CoachToolArgumentError(f"Unknown tool: {tool_name}") from exc
    model_cls = _TOOL_SPECS[tool][0]
    try:
        return tool, model_cls.model_validate(args or {})
    except ValidationError as exc:
        raise CoachToolArgumentError(str(exc)) from exc


async def _prioritize(ctx: ToolContext, payload: PrioritizeGoalsArgs) -> dict[str, Any]:
    rows = await list_active_goal_candidates(ctx.connection, ctx.user_id)
    candidates = [GoalCandidate.from_row(row) for row in rows]
    limit = await priority_store.get_focus_limit(ctx.connection, ctx.user_id)
    resolution = await resolve_goals(payload.reasoning, candidates, limit, ctx.extractor)

    if not resolution.goals:
        return {"kind": "read", "summary": "No active goals to prioritize.", "data": {"goals": []}}

    card = PrioritizationCard(
        items=[PrioritizationItem.model_validate(item) for item in resolution.card_items],
        snapshot_items=resolution.snapshot_items,
    )
    titles = ", ".join(goal.goal.title for goal in resolution.goals)
    return {
        "kind": "proposal",
        "summary": f"Proposed focus ({len(resolution.goals)} of limit {limit}): {titles}. Awaiting the user's confirmation.",
        "data": {"goals": resolution.card_items, "limit": limit, "persisted": False},
        "card": card.payload(),
    }


async def _log_completion(ctx: ToolContext, payload: LogHabitCompletionArgs) -> dict[str, Any]:
    focus_goal_ids = await priority_store.latest_goal_ids(ctx.connection, ctx.user_id)
    match = await match_habit(
        ctx.connection,
        ctx.user_id,
        payload.habit_description,
        payload.goal_id,
        focus_goal_ids=focus_goal_ids,
    )

    if isinstance(match, HabitNoMatch):
        card = HabitCompletionErrorCard(reason=match.reason, message=match.message, active_habits=match.available_titles)
        return {
            "kind": "no_match",
            "summary": f"{match.message} Active habits: {', '.join(match.available_titles) or 'none'}.",
            "data": {"description": match.description, "active_habits": match.available_titles},
            "card": card.payload(),
        }

    result = await log_habit_completion(
        ctx.connection,
        ctx.user_id,
        match.habit.id,
        match.habit.name,
        goal_id=payload.goal_id,
        notes=payload.notes,
    )

    if isinstance(result, CompletionConflict):
        card = HabitCompletionErrorCard(reason=result.reason, message=result.message)
        return {
            "kind": "conflict",
            "summary": result.message,
            "data": {"habit_id": result.habit_id, "title": result.title, "reason": result.reason},
            "card": card.payload(),
        }

    related_goal = None
    if result.related_goal is not None:
        related_goal = {"id": str(result.related_goal["id"]), "title": result.related_goal["title"]}
    card = HabitCompletionCard(
        habit=CompletedHabit(
            id=str(result.habit_id),
            title=result.title,
            completed_at=result.completed_at.isoformat(),
            streak=result.streak,
            related_goal=related_goal,
        )
    )
    return {
        "kind": "write",
        "summary": f"Logged '{result.title}' (streak {result.streak}).",
        "data": {
            "habit_id": result.habit_id,
            "title": result.title,
            "completed_on": result.completed_on,
            "streak": result.streak,
            "longest_streak": result.longest_streak,
            "related_goal": result.related_goal,
            "matched_by": match.stage,
        },
        "card": card.payload(),
    }


async def _review_habits(ctx: ToolContext, payload: ReviewDailyHabitsArgs) -> dict[str, Any]:
    today, _ = await user_local_today(ctx.connection, ctx.user_id)
    review_date = payload.review_date or today
    habits = (await read_habits(ctx.connection, ctx.user_id))["habits"]

    focus_goal_ids = set(await priority_store.latest_goal_ids(ctx.connection, ctx.user_id))
    focus_habits = [habit for habit in habits if focus_goal_ids.intersection(goal["id"] for goal in habit["goals"])]
    selected = (focus_habits or habits)[:REVIEW_HABIT_LIMIT]

    pre_checked = set(payload.pre_checked)
    items = [
        HabitReviewItem(
            id=str(habit["id"]),
            title=habit["title"],
            description=habit["description"],
            completed=habit["id"] in pre_checked or (review_date == today and habit["completed_today"]),
            streak=habit["current_streak"],
        )
        for habit in selected
    ]
    card = HabitReviewCard(date=review_date.isoformat(), habits=items)
    return {
        "kind": "read",
        "summary": f"Prepared a checklist of {len(items)} habits for {review_date.isoformat()}.",
        "data": {"date": review_date, "habits": [item.payload() for item in items]},
        "card": card.payload(),
    }


async def _optimize(ctx: ToolContext, payload: OptimizeHabitsArgs) -> dict[str, Any]:
    result = await replace_goal_habits(
        ctx.connection,
        ctx.user_id,
        payload.goal_id,
        remove_habit_ids=payload.remove_habit_ids,
        new_habits=[habit.model_dump() for habit in payload.new_habits],
    )
    recommendations = [
        OptimizationRecommendation(type="remove", title=habit["title"], target_id=str(habit["id"]))
        for habit in result["removed_habits"]
    ] + [
        OptimizationRecommendation(
            type="add",
            title=habit["title"],
            description=habit["description"],
            target_id=str(habit["habit_definition_id"]),
        )
        for habit in result["added_habits"]
    ]
    summary = (
        f"Updated habits for '{result['goal_title']}': {len(result['added_habits'])} added, "
        f"{len(result['removed_habits'])} removed; progress held at {result['progress_after']}%."
    )
    card = OptimizationCard(summary=summary, recommendations=recommendations)
    return {"kind": "write", "summary": summary, "data": result, "card": card.payload()}


async def _progress_summary(ctx: ToolContext, payload: ShowProgressSummaryArgs) -> dict[str, Any]:
    result = await summarize_progress(ctx.connection, ctx.user_id, payload.scope, payload.filters)
    summary = result["summary"]

    if payload.scope == "habits":
        items = [
            ProgressSummaryItem(
                id=str(habit["id"]),
                title=habit["title"],
                completion_rate=habit["completion_rate"],
                streak=habit["current_streak"],
            )
            for habit in result["habits"]
        ]
        text = (
            f"{summary['total_habits']} habits, {summary['avg_completion_rate']}% average completion "
            f"over {result['timeframe'].replace('_', ' ')}; {summary['strong_streaks']} on a 7+ day streak."
        )
    else:
        items = [
            ProgressSummaryItem(id=str(goal["id"]), title=goal["title"], progress=goal["progress"])
            for goal in result["goals"]
        ]
        text = (
            f"{summary['total_goals']} goals at {summary['avg_progress']}% on average; "
            f"{summary['on_track']} on track, {summary['needs_attention']} need attention."
        )
        if payload.scope == "life_metric":
            text = f"{result['life_metric']}: {text}"

    card = ProgressSummaryCard(
        scope=payload.scope,
        summary=summary,
        items=items,
        timeframe=result.get("timeframe"),
        life_metric=result.get("life_metric"),
    )
    return {"kind": "read", "summary": text, "data": result, "card": card.payload()}


async def dispatch_coach_tool(
    ctx: ToolContext,
    tool_name: str,
    args: dict[str, Any],
) -> dict[str, Any]:
    tool, payload = _validate_args(tool_name, args)

    if tool is CoachTool.GET_CONTEXT:
        result = await read_context(ctx.connection, ctx.user_id, payload.scope, payload.filters)
        return {"kind": "read", "summary": f"Loaded {payload.scope} context.", "data": result}

    if tool is CoachTool.PRIORITIZE_GOALS:
        return await _prioritize(ctx, payload)

    if tool is CoachTool.REMOVE_PRIORITY:
        if payload.goal_id is None:
            snapshot = await priority_store.clear(ctx.connection, ctx.user_id, ctx.thread_id)
            summary = "Cleared the focus set."
        else:
            snapshot = await priority_store.remove_goal(ctx.connection, ctx.user_id, payload.goal_id, ctx.thread_id)
            summary = f"Removed the goal from focus; {len(snapshot['items'])} goals remain."
        return {"kind": "write", "summary": summary, "data": snapshot}

    if tool is CoachTool.LOG_HABIT_COMPLETION:
        return await _log_completion(ctx, payload)

    if tool is CoachTool.REVIEW_DAILY_HABITS:
        return await _review_habits(ctx, payload)

    if tool is CoachTool.UPDATE_HABIT:
        result = await update_habit(ctx.connection, ctx.user_id, payload.habit_id, payload.action, payload.value)
        return {"kind": "write", "summary": result["message"], "data": result}

    if tool is CoachTool.OPTIMIZE_HABITS:
        return await _optimize(ctx, payload)

    if tool is CoachTool.UPDATE_GOAL_PROGRESS:
        result = await update_goal_progress(ctx.connection, ctx.user_id, payload.goal_id, payload.progress_update)
        summary = f"'{result['title']}' moved from {result['previous_progress']}% to {result['progress']}%."
        if result["milestones"]:
            summary += f" Milestone reached: {result['milestones'][-1]}%."
        return {"kind": "write", "summary": summary, "data": result}

    if tool is CoachTool.COMPLETE_GOAL:
        result = await complete_goal(ctx.connection, ctx.user_id, payload.goal_id)
        if result["already_completed"]:
            summary = f"'{result['title']}' was already completed."
        else:
            summary = f"Marked '{result['title']}' as completed."
        return {"kind": "write", "summary": summary, "data": result}

    if tool is CoachTool.CREATE_GOAL_WITH_HABITS:
        result = await create_goal_with_habits(
            ctx.connection,
            ctx.user_id,
            title=payload.title,
            description=payload.description,
            life_metric=payload.life_metric,
            term=payload.term,
            target_date=payload.target_date,
            habits=[habit.model_dump() for habit in payload.habits],
        )
        return {
            "kind": "write",
            "summary": f"Created goal '{result['title']}' with {len(result['habits'])} habits.",
            "data": result,
        }

    if tool is CoachTool.ADJUST_GOAL:
        result = await adjust_goal(
            ctx.connection, ctx.user_id, payload.goal_id, title=payload.title, target_date=payload.target_date
        )
        changes = []
        if result["title"] != result["previous_title"]:
            changes.append(f"renamed to '{result['title']}'")
        if payload.target_date is not None:
            changes.append(f"due {result['target_date'].isoformat()}")
        summary = f"Adjusted '{result['previous_title']}': {', '.join(changes) or 'no change'}."
        if payload.reason:
            summary += f" Reason: {payload.reason}"
        return {"kind": "write", "summary": summary, "data": result}

    if tool is CoachTool.ARCHIVE_GOALS:
        result = await archive_goals(ctx.connection, ctx.user_id, payload.goal_ids, ctx.thread_id)
        titles = ", ".join(entry["title"] for entry in result["archived"])
        summary = f"Archived {len(result['archived'])} goals" + (f": {titles}." if titles else ".")
        if result["skipped"]:
            summary += f" Skipped {len(result['skipped'])}: " + " ".join(entry["error"] for entry in result["skipped"])
        if result["removed_from_focus"]:
            summary += f" {result['removed_from_focus']} left the focus set."
        return {"kind": "write", "summary": summary, "data": result}

    if tool is CoachTool.SHOW_PROGRESS_SUMMARY:
        return await _progress_summary(ctx, payload)

    raise CoachToolArgumentError(f"Unhandled tool: {tool_name}")
