"""Map a free-text activity report onto exactly one of the user's active habits.

Each stage is a pure function over `HabitCandidate`s; `match_in_pool` tries
them in order and `match_habit` handles loading and scoping the pool.
Below the scoring threshold the answer is `HabitNoMatch`, never a guess.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID

from coach.config import settings
from coach.services.text_matching import contains_phrase, normalize_text, token_in_text, tokenize

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HabitCandidate:
    id: UUID
    name: str
    description: str = ""
    goal_ids: tuple[UUID, ...] = ()
    created_at: datetime | None = None


@dataclass
class HabitMatch:
    habit: HabitCandidate
    stage: str
    score: float = 0.0


@dataclass
class HabitNoMatch:
    description: str
    reason: Literal["no_match", "no_habits"]
    available_titles: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.reason == "no_habits":
            return "You don't have any active habits to log yet."
        return f"Couldn't find a habit matching '{self.description}'."


StageFn = Callable[[str, Sequence[HabitCandidate]], "HabitMatch | None"]


def match_exact_name(description: str, candidates: Sequence[HabitCandidate]) -> HabitMatch | None:
    needle = normalize_text(description)
    for candidate in candidates:
        if normalize_text(candidate.name) == needle:
            return HabitMatch(habit=candidate, stage="exact")
    return None


def match_name_substring(description: str, candidates: Sequence[HabitCandidate]) -> HabitMatch | None:
    """Habit name inside the report (longest name wins), then the report inside a habit name. Whole words only."""
    needle = normalize_text(description)
    if not needle:
        return None

    contained = [c for c in candidates if contains_phrase(needle, c.name)]
    if contained:
        best = max(contained, key=lambda c: len(normalize_text(c.name)))
        return HabitMatch(habit=best, stage="name_substring")

    for candidate in candidates:
        if contains_phrase(candidate.name, needle):
            return HabitMatch(habit=candidate, stage="name_substring")
    return None


def match_description_substring(description: str, candidates: Sequence[HabitCandidate]) -> HabitMatch | None:
    needle = normalize_text(description)
    if not needle:
        return None
    for candidate in candidates:
        if contains_phrase(candidate.description, needle) or contains_phrase(needle, candidate.description):
            return HabitMatch(habit=candidate, stage="description_substring")
    return None


def score_candidate(report_tokens: list[str], candidate: HabitCandidate) -> tuple[int, float]:
    """(score, coverage): 3 points per report token found in the name, 1 per token found only in the description."""
    if not report_tokens:
        return 0, 0.0
    name_words = normalize_text(candidate.name).split()
    description_words = normalize_text(candidate.description).split()

    in_name = 0
    in_description = 0
    for token in report_tokens:
        if token_in_text(token, name_words):
            in_name += 1
        elif token_in_text(token, description_words):
            in_description += 1

    return in_name * 3 + in_description, in_name / len(report_tokens)


def match_by_tokens(
    description: str,
    candidates: Sequence[HabitCandidate],
    *,
    min_coverage: float,
    min_score: int,
) -> HabitMatch | None:
    report_tokens = tokenize(description)
    best: tuple[int, float, HabitCandidate] | None = None

    for candidate in candidates:
        score, coverage = score_candidate(report_tokens, candidate)
        if score == 0 or (coverage < min_coverage and score < min_score):
            continue
        if best is None or (score, coverage) > (best[0], best[1]):
            best = (score, coverage, candidate)

    if best is None:
        return None
    return HabitMatch(habit=best[2], stage="token_score", score=best[0])


def match_in_pool(
    description: str,
    candidates: Sequence[HabitCandidate],
    *,
    min_coverage: float,
    min_score: int,
) -> HabitMatch | None:
    stages: list[StageFn] = [
        match_exact_name,
        match_name_substring,
        match_description_substring,
        lambda text, pool: match_by_tokens(text, pool, min_coverage=min_coverage, min_score=min_score),
    ]
    for stage in stages:
        result = stage(description, candidates)
        if result is not None:
            return result
    return None


def candidate_pools(
    candidates: list[HabitCandidate],
    *,
    goal_id: UUID | None,
    focus_goal_ids: Sequence[UUID],
    focus_scope_threshold: int,
) -> list[list[HabitCandidate]]:
    """Pools to try in order; the first one is the narrowest that still has habits."""
    if goal_id is not None:
        scoped = [c for c in candidates if goal_id in c.goal_ids]
        return [scoped] if scoped else [candidates]

    if focus_goal_ids and len(candidates) > focus_scope_threshold:
        focus = set(focus_goal_ids)
        scoped = [c for c in candidates if focus.intersection(c.goal_ids)]
        if scoped and len(scoped) < len(candidates):
            return [scoped, candidates]

    return [candidates]


async def load_habit_candidates(connection: AsyncConnection, user_id: UUID) -> list[HabitCandidate]:
    """Active habit definitions with the active goal instances they are linked to."""
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT hd.id, hd.name, hd.description, hd.created_at,
                   COALESCE(
                       array_agg(gi.id) FILTER (WHERE gi.id IS NOT NULL),
                       '{}'
                   ) AS goal_ids
            FROM habit_definitions hd
            LEFT JOIN habit_instances hi ON hi.habit_definition_id = hd.id
            LEFT JOIN goal_instances gi
              ON gi.id = hi.goal_instance_id
             AND gi.status = 'active'
             AND gi.archived = FALSE
            WHERE hd.user_id = %s
              AND hd.is_active = TRUE
            GROUP BY hd.id, hd.name, hd.description, hd.created_at
            ORDER BY hd.created_at ASC
            """,
            (user_id,),
        )
        rows = await cursor.fetchall()

    return [
        HabitCandidate(
            id=row["id"],
            name=row["name"],
            description=row.get("description") or "",
            goal_ids=tuple(row.get("goal_ids") or ()),
            created_at=row.get("created_at"),
        )
        for row in rows
    ]


async def match_habit(
    connection: AsyncConnection,
    user_id: UUID,
    description: str,
    goal_id: UUID | None = None,
    *,
    focus_goal_ids: Sequence[UUID] = (),
) -> HabitMatch | HabitNoMatch:
    candidates = await load_habit_candidates(connection, user_id)
    if not candidates:
        return HabitNoMatch(description=description, reason="no_habits")

    pools = candidate_pools(
        candidates,
        goal_id=goal_id,
        focus_goal_ids=focus_goal_ids,
        focus_scope_threshold=settings.habit_focus_scope_threshold,
    )
    for pool in pools:
        result = match_in_pool(
            description,
            pool,
            min_coverage=settings.habit_match_min_coverage,
            min_score=settings.habit_match_min_score,
        )
        if result is not None:
            logger.debug("Matched '%s' to habit %s via %s", description, result.habit.id, result.stage)
            return result

    logger.info("No habit matched '%s' among %s candidates", description, len(candidates))
    return HabitNoMatch(
        description=description,
        reason="no_match",
        available_titles=[candidate.name for candidate in candidates],
    )
