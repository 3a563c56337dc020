"""Unit tests for generative stage response parsing."""

from __future__ import annotations

import json

import pytest

from generation.parser import (
    normalize_score,
    parse_enum,
    parse_generation_response,
    parse_stage_json,
)
from generation.schemas import SituationalAssessment
from recommendations import (
    ActionKind,
    RecommendationContext,
    RecommendationType,
    TargetKind,
)


def _item(**overrides) -> dict:
    item = {
        "type": "HabitModeSuggestion",
        "targetKind": "Habit",
        "targetEntityId": "habit-1",
        "targetEntityTitle": "Run",
        "actionKind": "Update",
        "title": "Switch running to minimum mode",
        "rationale": "Adherence dropped.",
        "score": 0.8,
        "actionPayload": {"habitId": "habit-1", "newMode": "Minimum"},
    }
    item.update(overrides)
    return item


def _response(*items) -> str:
    return json.dumps({"recommendations": list(items)})


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (0.7, 0.7),
        (85, 0.85),
        ("0.4", 0.4),
        (-1, 0.0),
        (250, 1.0),
        ("high", None),
        (True, None),
        (float("nan"), None),
        ("NaN", None),
    ],
)
def test_normalize_score(value, expected) -> None:
    """Ensure percentage scores are scaled and the result is clamped."""
    assert normalize_score(value) == expected


def test_parse_enum_is_case_insensitive() -> None:
    """Ensure enum values and member names match regardless of case."""
    assert parse_enum(ActionKind, "executetoday") == ActionKind.EXECUTE_TODAY
    assert parse_enum(ActionKind, "EXECUTE_TODAY") == ActionKind.EXECUTE_TODAY
    assert parse_enum(TargetKind, " habit ") == TargetKind.HABIT
    assert parse_enum(TargetKind, "Planet") is None
    assert parse_enum(TargetKind, None) is None


def test_generation_response_builds_candidates() -> None:
    """Ensure a valid item becomes a candidate with the run context."""
    candidates = parse_generation_response(
        _response(_item()), "Habit", RecommendationContext.EVENING_CHECK_IN
    )

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.type == RecommendationType.HABIT_MODE_SUGGESTION
    assert candidate.target.entity_id == "habit-1"
    assert candidate.context == RecommendationContext.EVENING_CHECK_IN
    assert json.loads(candidate.action_payload) == {"habitId": "habit-1", "newMode": "Minimum"}
    assert candidate.action_summary is None


def test_summary_is_extracted_from_payload() -> None:
    """Ensure the payload summary moves to the action summary."""
    item = _item(actionPayload=json.dumps({"habitId": "habit-1", "_summary": "Go minimal"}))

    candidate = parse_generation_response(_response(item), "Habit")[0]

    assert candidate.action_summary == "Go minimal"
    assert json.loads(candidate.action_payload) == {"habitId": "habit-1"}


def test_summary_only_payload_becomes_null() -> None:
    """Ensure a payload holding only a summary serializes as no payload."""
    candidate = parse_generation_response(
        _response(_item(actionPayload={"_summary": "Reflect"})), "Habit"
    )[0]

    assert candidate.action_payload is None
    assert candidate.action_summary == "Reflect"


def test_invalid_items_are_skipped(caplog) -> None:
    """Ensure bad items are logged and skipped while valid ones survive."""
    raw = _response(
        _item(type="NotAType"),
        _item(targetKind="Spaceship"),
        _item(actionKind="Teleport"),
        _item(title="  "),
        _item(score="lots"),
        "not-an-object",
        _item(title="Keep me", targetEntityId=""),
    )

    with caplog.at_level("WARNING", logger="generation.parser"):
        candidates = parse_generation_response(raw, "Habit")

    assert [candidate.title for candidate in candidates] == ["Keep me"]
    assert candidates[0].target.entity_id is None
    assert "NotAType" in caplog.text


def test_nan_score_skips_only_that_item(caplog) -> None:
    """Ensure a NaN score drops its item without failing the rest of the domain."""
    raw = _response(_item(title="Broken", score=float("nan")), _item(title="Keep me"))

    with caplog.at_level("WARNING", logger="generation.parser"):
        candidates = parse_generation_response(raw, "Habit")

    assert [candidate.title for candidate in candidates] == ["Keep me"]
    assert "invalid score" in caplog.text


@pytest.mark.parametrize("raw", ["not json", "[]", '{"recommendations": {}}'])
def test_unusable_document_raises(raw) -> None:
    """Ensure a response without a recommendations list fails the domain."""
    with pytest.raises(ValueError):
        parse_generation_response(raw, "Task")


def test_parse_stage_json_rejects_empty_and_malformed() -> None:
    """Ensure strict stage parsing raises ValueError for bad responses."""
    with pytest.raises(ValueError):
        parse_stage_json("", SituationalAssessment)
    with pytest.raises(ValueError):
        parse_stage_json('{"overallMomentum": 3}', SituationalAssessment)
