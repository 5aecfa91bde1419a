"""Normalization and tokenization shared by goal-title and habit matching."""

from __future__ import annotations

import re

_NON_WORD_RE = re.compile(r"[^a-z0-9$%\s]")
_SPACE_RE = re.compile(r"\s+")

STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "if", "then", "for", "of", "to", "in", "on",
        "with", "by", "at", "from", "into", "about", "as", "is", "are", "was", "were", "be",
        "been", "being", "that", "this", "it", "its", "your", "you", "we", "our", "us",
        "i", "me", "my", "myself", "just", "did", "do", "done", "went", "go", "got", "had",
        "have", "has", "today", "tonight", "yesterday", "finally",
        "really", "some", "so", "very", "also", "now", "all", "should", "would", "could",
        "focus", "goal", "goals", "priority", "priorities", "prioritize", "top", "most",
        "important", "these", "those", "them",
    }
)


def normalize_text(value: str | None) -> str:
    """Lowercase, strip punctuation (keeping $ and %), and collapse whitespace."""
    lowered = (value or "").lower()
    return _SPACE_RE.sub(" ", _NON_WORD_RE.sub(" ", lowered)).strip()


def tokenize(value: str | None, *, min_length: int = 3) -> list[str]:
    """Distinct content tokens in order of appearance."""
    tokens: list[str] = []
    for token in normalize_text(value).split(" "):
        if not token or token in tokens:
            continue
        if token in STOP_WORDS:
            continue
        if len(token) < min_length and not any(char.isdigit() for char in token):
            continue
        tokens.append(token)
    return tokens


def token_in_text(token: str, text_tokens: list[str]) -> bool:
    """True when the token equals a word of the text or one is a prefix of the other ("run" ~ "running")."""
    for word in text_tokens:
        if word == token:
            return True
        if len(token) >= 3 and len(word) >= 3 and (word.startswith(token) or token.startswith(word)):
            return True
    return False


def contains_phrase(text: str | None, phrase: str | None) -> bool:
    """True when the normalized phrase appears in the normalized text on word boundaries ("run" is not in "brunch")."""
    needle = normalize_text(phrase)
    if not needle:
        return False
    return f" {needle} " in f" {normalize_text(text)} "
