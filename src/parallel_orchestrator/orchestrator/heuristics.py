"""Keyword heuristics estimating how safely a task can run next to others.

Tests and docs rarely collide with sibling work, refactors usually do. The
score is only a hint; a task source that knows better supplies its own
confidence and this module is never consulted.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

_TEST_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"\btest\b", r"\bspec\b", r"\btesting\b", r"\bunit test\b")
)
_REFACTOR_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"\brefactor\b", r"\brename\b", r"\bmove\b", r"\brestructure\b")
)
_DOCS_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"\bdocs?\b", r"\breadme\b", r"\bdocument\b", r"\bdocumentation\b")
)

UNKNOWN_CONFIDENCE = 0.3
EMPTY_GROUP_CONFIDENCE = 0.5


@dataclass(slots=True, frozen=True)
class ParallelismHint:
    kind: str
    confidence: float
    reason: str


def classify_text(text: str) -> ParallelismHint:
    tests = _count_matches(text, _TEST_PATTERNS)
    refactors = _count_matches(text, _REFACTOR_PATTERNS)
    docs = _count_matches(text, _DOCS_PATTERNS)

    if tests and tests >= refactors and tests >= docs:
        return ParallelismHint("test", _scaled(tests), "test task")
    if docs and docs >= refactors:
        return ParallelismHint("docs", _scaled(docs), "documentation task")
    if refactors:
        # Refactors touch shared code, so a strong match means low parallelism.
        return ParallelismHint("refactor", 1 - _scaled(refactors), "refactor task")
    return ParallelismHint("unknown", UNKNOWN_CONFIDENCE, "no clear pattern")


def parallelism_confidence(title: str, description: str = "") -> float:
    return classify_text(f"{title} {description}").confidence


def group_confidence(confidences: Iterable[float]) -> float:
    """Mean confidence of a group; an empty group is neutral."""

    values = list(confidences)
    if not values:
        return EMPTY_GROUP_CONFIDENCE
    return sum(values) / len(values)


def is_low_confidence(confidence: float, threshold: float = 0.5) -> bool:
    return confidence < threshold


def _count_matches(text: str, patterns: tuple[re.Pattern[str], ...]) -> int:
    return sum(1 for pattern in patterns if pattern.search(text))


def _scaled(matches: int) -> float:
    return min(0.9, 0.6 + matches * 0.1)
