"""Turn free-text prioritization reasoning into an ordered list of the user's goal instances.

Stages run in order and stop once the required count is reached:

1. structural extraction (numbered list, ``Prioritize:`` marker, quoted titles)
2. exact, then containment, title matching
3. model-assisted extraction (injectable; failures fall through)
4. keyword scoring over title and description
5. oldest remaining goals

The resolver only proposes. Persisting a focus set is the caller's job.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from uuid import UUID

from coach.ai.gemini_client import GeminiError
from coach.services.text_matching import normalize_text, token_in_text, tokenize

logger = logging.getLogger(__name__)

TitleExtractor = Callable[[str, list[str], int], Awaitable[list[str]]]

_MARKER_RE = re.compile(r"prioriti[sz]e\s*:\s*(?P<rest>[^\n]+)", re.IGNORECASE)
_NUMBERED_RE = re.compile(r"(?<![^\s,;(])\d{1,2}[.)]\s+(?P<title>.+?)(?=[\s,;]+\d{1,2}[.)]\s|$)")
_QUOTED_RE = re.compile(r"\"([^\"\n]{2,})\"|“([^”\n]{2,})”")
_LIST_SPLIT_RE = re.compile(r"\s*[,;]\s*")
_TRAILING_REASON_RE = re.compile(r"\s+(?:-|–|—)\s+.*$|:\s+.*$|\s+\(.*\)\s*$")


@dataclass(frozen=True)
class GoalCandidate:
    id: UUID
    title: str
    description: str = ""
    created_at: datetime | None = None
    target_date: date | None = None
    life_metric: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> GoalCandidate:
        return cls(
            id=row["id"],
            title=row["title"],
            description=row.get("description") or "",
            created_at=row.get("created_at"),
            target_date=row.get("target_date"),
            life_metric=row.get("life_metric"),
        )


@dataclass
class ResolvedGoal:
    goal: GoalCandidate
    rank: int
    stage: str

    def card_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "goalInstanceId": str(self.goal.id),
            "rank": self.rank,
            "title": self.goal.title,
            "description": self.goal.description,
        }
        if self.goal.target_date is not None:
            item["targetDate"] = self.goal.target_date.isoformat()
        if self.goal.life_metric:
            item["lifeMetric"] = self.goal.life_metric
        return item

    def snapshot_item(self) -> dict[str, Any]:
        return {"goalInstanceId": str(self.goal.id), "rank": self.rank}


@dataclass
class Resolution:
    goals: list[ResolvedGoal] = field(default_factory=list)
    required: int = 0
    explicit_titles: list[str] = field(default_factory=list)

    @property
    def card_items(self) -> list[dict[str, Any]]:
        return [goal.card_item() for goal in self.goals]

    @property
    def snapshot_items(self) -> list[dict[str, Any]]:
        return [goal.snapshot_item() for goal in self.goals]


def _clean_title(raw: str) -> str:
    text = raw.replace("**", "").replace("__", "").strip()
    return text.strip(" \t\"'“”.,;:*")


def _strip_reason(title: str) -> str:
    """Drop a trailing " - why", ": why" or "(why)" from an extracted title."""
    return _clean_title(_TRAILING_REASON_RE.sub("", title))


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        key = normalize_text(value)
        if key and key not in seen:
            seen.add(key)
            result.append(value)
    return result


def extract_structured_titles(reasoning: str) -> list[str]:
    """Stage 1: titles the reasoning spells out explicitly, in the order given."""
    marker = _MARKER_RE.search(reasoning or "")
    if marker:
        parts = [_clean_title(part) for part in _LIST_SPLIT_RE.split(marker.group("rest"))]
        titles = _dedupe([part for part in parts if part])
        if titles:
            return titles

    numbered: list[str] = []
    for line in (reasoning or "").splitlines():
        for match in _NUMBERED_RE.finditer(line.strip()):
            title = _clean_title(match.group("title"))
            if title:
                numbered.append(title)
    if numbered:
        return _dedupe(numbered)

    quoted = [_clean_title(a or b) for a, b in _QUOTED_RE.findall(reasoning or "")]
    return _dedupe([title for title in quoted if title])


def _equal_title(needle: str, pool: Sequence[GoalCandidate]) -> GoalCandidate | None:
    return next((c for c in pool if normalize_text(c.title) == needle), None)


def _containing_title(needle: str, pool: Sequence[GoalCandidate]) -> GoalCandidate | None:
    for candidate in pool:
        title = normalize_text(candidate.title)
        if title and (needle in title or title in needle):
            return candidate
    return None


def match_titles(
    titles: Sequence[str],
    candidates: Sequence[GoalCandidate],
) -> list[GoalCandidate]:
    """Stage 2: each extracted title against the candidates.

    The item as written is tried before the item with its trailing reason cut off, so
    titles such as "Health: run 5k" or "Run 5k (spring)" match themselves. Equality
    beats containment either way.
    """
    remaining = list(candidates)
    matched: list[GoalCandidate] = []

    for title in titles:
        raw = normalize_text(title)
        stripped = normalize_text(_strip_reason(title))
        attempts = (
            (raw, _equal_title),
            (stripped, _equal_title),
            (raw, _containing_title),
            (stripped, _containing_title),
        )
        hit = None
        for needle, find in attempts:
            if needle:
                hit = find(needle, remaining)
                if hit is not None:
                    break
        if hit is not None:
            matched.append(hit)
            remaining.remove(hit)

    return matched


def match_mentioned_titles(reasoning: str, candidates: Sequence[GoalCandidate]) -> list[GoalCandidate]:
    """Stage 2 without extracted titles: goal titles that appear verbatim in the prose, by first mention."""
    text = normalize_text(reasoning)
    positions: list[tuple[int, GoalCandidate]] = []
    for candidate in candidates:
        title = normalize_text(candidate.title)
        if title and title in text:
            positions.append((text.index(title), candidate))
    return [candidate for _, candidate in sorted(positions, key=lambda pair: pair[0])]


def filter_extracted_lines(lines: Sequence[str], candidates: Sequence[GoalCandidate]) -> list[GoalCandidate]:
    """Stage 3 output check: keep only lines that are verbatim candidate titles."""
    by_title = {normalize_text(c.title): c for c in candidates}
    picked: list[GoalCandidate] = []
    for line in lines:
        title = _clean_title(re.sub(r"^\s*(?:\d+[.)]|[-*•])\s*", "", line))
        candidate = by_title.get(normalize_text(title)) or by_title.get(normalize_text(_strip_reason(title)))
        if candidate is not None and candidate not in picked:
            picked.append(candidate)
    return picked


def _created_key(candidate: GoalCandidate) -> tuple[bool, float]:
    if candidate.created_at is None:
        return True, 0.0
    return False, candidate.created_at.timestamp()


def score_by_keywords(reasoning: str, candidates: Sequence[GoalCandidate]) -> list[GoalCandidate]:
    """Stage 4: 3 points per title token overlap, 1 per description overlap; ties go to the older goal."""
    reasoning_tokens = tokenize(reasoning, min_length=2)
    scored: list[tuple[int, GoalCandidate]] = []
    for candidate in candidates:
        title_tokens = tokenize(candidate.title, min_length=2)
        description_tokens = tokenize(candidate.description, min_length=2)
        score = 3 * sum(1 for token in title_tokens if token_in_text(token, reasoning_tokens))
        score += sum(1 for token in description_tokens if token_in_text(token, reasoning_tokens))
        if score > 0:
            scored.append((score, candidate))

    scored.sort(key=lambda pair: (-pair[0], _created_key(pair[1])))
    return [candidate for _, candidate in scored]


def oldest_first(candidates: Sequence[GoalCandidate]) -> list[GoalCandidate]:
    """Stage 5."""
    return sorted(candidates, key=_created_key)


def required_count(explicit_titles: Sequence[str], candidates: Sequence[GoalCandidate], limit: int) -> int:
    if explicit_titles:
        return min(len(explicit_titles), limit, len(candidates))
    return min(limit, len(candidates))


async def resolve_goals(
    reasoning: str,
    candidates: Sequence[GoalCandidate],
    limit: int,
    extractor: TitleExtractor | None = None,
) -> Resolution:
    explicit = extract_structured_titles(reasoning)
    required = required_count(explicit, candidates, limit)
    resolution = Resolution(required=required, explicit_titles=explicit)
    if required == 0:
        return resolution

    picked: list[tuple[GoalCandidate, str]] = []

    def remaining() -> list[GoalCandidate]:
        taken = {goal.id for goal, _ in picked}
        return [c for c in candidates if c.id not in taken]

    def take(found: list[GoalCandidate], stage: str) -> None:
        for goal in found:
            if len(picked) >= required:
                return
            if all(goal.id != existing.id for existing, _ in picked):
                picked.append((goal, stage))

    if explicit:
        take(match_titles(explicit, candidates), "title_match")
    else:
        take(match_mentioned_titles(reasoning, candidates), "title_match")

    if len(picked) < required and extractor is not None:
        pool = remaining()
        try:
            lines = await extractor(reasoning, [c.title for c in pool], required - len(picked))
        except GeminiError:
            logger.warning("Title extraction failed, continuing with keyword scoring", exc_info=True)
        else:
            take(filter_extracted_lines(lines, pool), "model_extraction")

    if len(picked) < required:
        take(score_by_keywords(reasoning, remaining()), "keyword_score")

    if len(picked) < required:
        take(oldest_first(remaining()), "fallback")

    resolution.goals = [
        ResolvedGoal(goal=goal, rank=index, stage=stage) for index, (goal, stage) in enumerate(picked, start=1)
    ]
    logger.info(
        "Resolved %s/%s goals (%s)",
        len(resolution.goals),
        required,
        ", ".join(goal.stage for goal in resolution.goals),
    )
    return resolution
