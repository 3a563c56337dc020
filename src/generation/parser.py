"""Parsing of generative stage responses.

Stage 1 and 2 responses are validated strictly against their pydantic models.
Stage 3 responses are parsed leniently: an invalid item is skipped with a log
line instead of failing the whole domain.
"""

from __future__ import annotations

import json
import logging
import math
from enum import Enum
from typing import Any, Mapping, TypeVar

from pydantic import BaseModel

from recommendations import (
    ActionKind,
    RecommendationCandidate,
    RecommendationContext,
    RecommendationTarget,
    RecommendationType,
    TargetKind,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
EnumT = TypeVar("EnumT", bound=Enum)

SUMMARY_KEY = "_summary"


def parse_stage_json(raw: str, model: type[ModelT]) -> ModelT:
    """Validate a stage response; raises ``ValueError`` on malformed JSON or schema."""
    if not raw or not raw.strip():
        raise ValueError("empty response")
    return model.model_validate_json(raw)


def parse_enum(enum_cls: type[EnumT], value: Any) -> EnumT | None:
    """Case-insensitive lookup by value or member name."""
    if not isinstance(value, str) or not value.strip():
        return None
    wanted = value.strip().lower()
    for member in enum_cls:
        if str(member.value).lower() == wanted or member.name.lower() == wanted:
            return member
    return None


def normalize_score(value: Any) -> float | None:
    """Convert a model score to [0, 1]; values above 1 are treated as percentages."""
    if isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(score):
        return None
    if score > 1.0:
        score = score / 100.0
    return min(max(score, 0.0), 1.0)


def _payload(value: Any) -> tuple[str | None, str | None]:
    """Return the serialized payload and its extracted summary."""
    if value is None:
        return None, None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return value, None
    if not isinstance(value, Mapping):
        return json.dumps(value), None
    payload = dict(value)
    summary = payload.pop(SUMMARY_KEY, None)
    if not isinstance(summary, str) or not summary.strip():
        summary = None
    return (json.dumps(payload) if payload else None), summary


def _build_candidate(
    item: Mapping[str, Any],
    domain: str,
    context: RecommendationContext,
) -> RecommendationCandidate | None:
    rec_type = parse_enum(RecommendationType, item.get("type"))
    if rec_type is None:
        logger.warning("Skipping item with invalid type %r in %s", item.get("type"), domain)
        return None
    target_kind = parse_enum(TargetKind, item.get("targetKind"))
    if target_kind is None:
        logger.warning(
            "Skipping item with invalid targetKind %r in %s", item.get("targetKind"), domain
        )
        return None
    action_kind = parse_enum(ActionKind, item.get("actionKind"))
    if action_kind is None:
        logger.warning(
            "Skipping item with invalid actionKind %r in %s", item.get("actionKind"), domain
        )
        return None
    title = item.get("title")
    if not isinstance(title, str) or not title.strip():
        logger.warning("Skipping item with empty title in %s", domain)
        return None
    score = normalize_score(item.get("score"))
    if score is None:
        logger.warning("Skipping %r with invalid score in %s", title, domain)
        return None
    entity_id = item.get("targetEntityId")
    entity_id = str(entity_id).strip() if entity_id not in (None, "") else None
    entity_title = item.get("targetEntityTitle")
    payload, summary = _payload(item.get("actionPayload"))
    rationale = item.get("rationale")
    return RecommendationCandidate(
        type=rec_type,
        target=RecommendationTarget(
            kind=target_kind,
            entity_id=entity_id or None,
            entity_title=entity_title if isinstance(entity_title, str) else None,
        ),
        action_kind=action_kind,
        title=title.strip(),
        rationale=rationale if isinstance(rationale, str) else "",
        score=score,
        context=context,
        action_payload=payload,
        action_summary=summary,
    )


def parse_generation_response(
    raw: str,
    domain: str,
    context: RecommendationContext = RecommendationContext.PROACTIVE_CHECK,
) -> list[RecommendationCandidate]:
    """Parse a ``{"recommendations": [...]}`` response into candidates.

    Raises ``ValueError`` when the document itself is unusable.
    """
    data = json.loads(raw)
    if not isinstance(data, Mapping) or not isinstance(data.get("recommendations"), list):
        raise ValueError(f"{domain} response has no recommendations list")
    candidates: list[RecommendationCandidate] = []
    for item in data["recommendations"]:
        if not isinstance(item, Mapping):
            logger.warning("Skipping non-object recommendation in %s", domain)
            continue
        candidate = _build_candidate(item, domain, context)
        if candidate is not None:
            candidates.append(candidate)
    logger.info("Parsed %s valid recommendation(s) from %s generation", len(candidates), domain)
    return candidates
