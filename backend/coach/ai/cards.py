"""Typed UI card payloads returned next to the coach's text reply."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CardModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PrioritizationItem(CardModel):
    goal_instance_id: str
    rank: int
    title: str
    description: str = ""
    target_date: str | None = None
    life_metric: str | None = None


class PrioritizationCard(CardModel):
    type: Literal["prioritization"] = "prioritization"
    items: list[PrioritizationItem]
    # What the confirmation endpoint should persist if the user accepts.
    snapshot_items: list[dict[str, Any]] = Field(default_factory=list)


class HabitReviewItem(CardModel):
    id: str
    title: str
    description: str = ""
    completed: bool = False
    streak: int = 0
    points: int = 1


class HabitReviewCard(CardModel):
    type: Literal["habit_review"] = "habit_review"
    date: str
    habits: list[HabitReviewItem]


class CompletedHabit(CardModel):
    id: str
    title: str
    completed_at: str
    streak: int
    related_goal: dict[str, Any] | None = None


class HabitCompletionCard(CardModel):
    type: Literal["habit_completion"] = "habit_completion"
    habit: CompletedHabit


class HabitCompletionErrorCard(CardModel):
    type: Literal["habit_completion_error"] = "habit_completion_error"
    reason: Literal["no_match", "no_habits", "already_completed", "period_target_reached"]
    message: str
    active_habits: list[str] = Field(default_factory=list)


class OptimizationRecommendation(CardModel):
    type: Literal["add", "remove", "keep"]
    title: str
    description: str = ""
    target_id: str | None = None


class OptimizationCard(CardModel):
    type: Literal["optimization"] = "optimization"
    summary: str
    recommendations: list[OptimizationRecommendation] = Field(default_factory=list)


class ProgressSummaryItem(CardModel):
    id: str
    title: str
    progress: int | None = None
    completion_rate: int | None = None
    streak: int | None = None


class ProgressSummaryCard(CardModel):
    type: Literal["progress_summary"] = "progress_summary"
    scope: Literal["goals", "habits", "life_metric"]
    summary: dict[str, Any]
    items: list[ProgressSummaryItem] = Field(default_factory=list)
    timeframe: str | None = None
    life_metric: str | None = None
