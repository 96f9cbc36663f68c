"""Unit tests for the rule-ordered task classifier."""

from __future__ import annotations

import pytest

from codeturn.domain.items import FunctionCallOutputItem, MessageItem, user_message
from codeturn.routing.classifier import (
    TaskCategory,
    classify_input,
    classify_task,
    rule_order,
    user_text,
)

try:
    from hypothesis import given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("fix the null pointer error in parser.go", TaskCategory.BUG_FIX),
        ("Generate a REST client for the billing API", TaskCategory.CODE_GENERATION),
        ("please review this diff", TaskCategory.CODE_REVIEW),
        ("refactor the session module", TaskCategory.REFACTORING),
        ("update the README", TaskCategory.DOCUMENTATION),
        ("add pytest coverage for the loader", TaskCategory.TESTING),
        ("what time is it?", TaskCategory.GENERAL),
        ("", TaskCategory.GENERAL),
    ],
)
def test_classify_task_examples(text: str, expected: TaskCategory) -> None:
    assert classify_task(text) is expected


def test_first_matching_rule_wins() -> None:
    # Both generation and bug-fix keywords; generation precedes bug-fix.
    assert classify_task("fix the crash and generate a regression test") is (
        TaskCategory.CODE_GENERATION
    )
    assert rule_order()[0] is TaskCategory.CODE_GENERATION
    assert TaskCategory.GENERAL not in rule_order()


def test_keywords_match_at_word_start_only() -> None:
    assert classify_task("it fixes nothing") is TaskCategory.BUG_FIX
    assert classify_task("prefix suffix") is TaskCategory.GENERAL


def test_classify_task_rejects_non_strings() -> None:
    with pytest.raises(TypeError, match="text must be a string"):
        classify_task(None)  # type: ignore[arg-type]


def test_classify_input_reads_only_user_messages() -> None:
    items = [
        MessageItem(role="system", text="generate everything"),
        FunctionCallOutputItem(call_id="c1", output="error: crash"),
        user_message("document the public API"),
    ]
    assert user_text(items) == "document the public API"
    assert classify_input(items) is TaskCategory.DOCUMENTATION


if _HYPOTHESIS_AVAILABLE:

    @settings(max_examples=25, derandomize=True, deadline=None)
    @given(text=st.text(max_size=120))
    def test_property_classifier_is_pure_and_closed(text: str) -> None:
        first = classify_task(text)
        assert first is classify_task(text)
        assert first in set(TaskCategory)

else:

    def test_property_classifier_is_pure_and_closed() -> None:
        pytest.skip("hypothesis is not installed")
