"""Task classifier for per-turn backend routing.

File: src/codeturn/routing/classifier.py

Purpose
- Map the user text of the current turn to one ``TaskCategory``.
- Pure-function classifier: deterministic, same input = same output.

Rules are an ordered tuple. The first category whose trigger pattern matches
wins, so overlapping text ("fix ... and generate ...") resolves by rule
order, not by hit counts. Keywords match at word starts ("fixes" hits "fix").
"""

from __future__ import annotations

import enum
import re
from typing import TYPE_CHECKING

from codeturn.domain.items import MessageItem

if TYPE_CHECKING:
    from collections.abc import Iterable


class TaskCategory(enum.Enum):
    CODE_GENERATION = "code-generation"
    CODE_REVIEW = "code-review"
    BUG_FIX = "bug-fix"
    REFACTORING = "refactoring"
    DOCUMENTATION = "documentation"
    TESTING = "testing"
    GENERAL = "general"


def _keywords(*words: str) -> re.Pattern[str]:
    alternatives = "|".join(word.replace(" ", r"\s+") for word in words)
    return re.compile(rf"\b(?:{alternatives})", re.IGNORECASE)


# --- Ordered rules (priority = position) ---
_CLASSIFICATION_RULES: tuple[tuple[TaskCategory, re.Pattern[str]], ...] = (
    (
        TaskCategory.CODE_GENERATION,
        _keywords("generate", "create", "implement", "write", "build", "scaffold"),
    ),
    (
        TaskCategory.CODE_REVIEW,
        _keywords("review", "audit", "analyze", "analyse", "inspect", "critique"),
    ),
    (
        TaskCategory.BUG_FIX,
        _keywords("fix", "bug", "error", "debug", "crash", "broken", "exception", "issue"),
    ),
    (
        TaskCategory.REFACTORING,
        _keywords("refactor", "restructure", "clean up", "cleanup", "simplify", "reorganiz"),
    ),
    (
        TaskCategory.DOCUMENTATION,
        _keywords("document", "docs", "docstring", "readme", "comment"),
    ),
    (
        TaskCategory.TESTING,
        _keywords("test", "unittest", "pytest", "coverage"),
    ),
)


def classify_task(text: str) -> TaskCategory:
    """Return the first matching category for ``text`` or ``GENERAL``."""
    if not isinstance(text, str):
        raise TypeError("text must be a string")
    lowered = text.lower()
    for category, pattern in _CLASSIFICATION_RULES:
        if pattern.search(lowered):
            return category
    return TaskCategory.GENERAL


def user_text(items: Iterable[object]) -> str:
    """Concatenate the text of user-role message items, in order."""
    return "\n".join(
        item.text for item in items if isinstance(item, MessageItem) and item.role == "user"
    )


def classify_input(items: Iterable[object]) -> TaskCategory:
    """Classify a turn's new input items (never the full transcript)."""
    return classify_task(user_text(items))


def rule_order() -> tuple[TaskCategory, ...]:
    return tuple(category for category, _ in _CLASSIFICATION_RULES)


__all__ = [
    "TaskCategory",
    "classify_input",
    "classify_task",
    "rule_order",
    "user_text",
]
