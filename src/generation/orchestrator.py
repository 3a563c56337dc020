"""Tier 2: three-stage generative recommendation pipeline.

Assessment -> Strategy -> parallel per-domain Generation. Every stage call
returns a :class:`StageSuccess` or :class:`StageFailure`; a failure ends the
run with an empty candidate list tagged ``Stage{n}-Failed``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Sequence, TypeVar, Union

from assessment.snapshot import UserStateSnapshot
from config import OrchestratorConfig, settings
from generation import prompts
from generation.parser import parse_enum, parse_generation_response, parse_stage_json
from generation.rag import RagContext, RagContextRetriever, RunCache
from generation.schemas import (
    InterventionPlanItem,
    RecommendationStrategy,
    SituationalAssessment,
)
from llm import GenerativeTextService, StageCallError
from recommendations import (
    TYPE_DOMAINS,
    GenerationDomain,
    RecommendationCandidate,
    RecommendationContext,
    RecommendationType,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SELECTION_DISABLED = "Disabled"
SELECTION_PIPELINE = "LLM-Pipeline"
STAGE_ASSESSMENT = "Stage1"
STAGE_STRATEGY = "Stage2"
STAGE_GENERATION = "Stage3"

_BEHAVIOR_NOISE = re.compile(r"experiment:|create|daily|habit|suggestion")


def failed_method(stage: str) -> str:
    return f"{stage}-Failed"


@dataclass(frozen=True)
class StageSuccess(Generic[T]):
    """A stage call that produced a parsed value."""

    stage: str
    value: T
    raw: str
    duration_ms: int


@dataclass(frozen=True)
class StageFailure:
    """A stage call that timed out, errored or returned an unusable response."""

    stage: str
    reason: str
    duration_ms: int = 0


StageOutcome = Union[StageSuccess[T], StageFailure]


@dataclass
class StageCallRecord:
    """Prompt sizes and raw output of one stage call."""

    stage: str
    system_prompt_chars: int
    user_prompt_chars: int
    raw_response: str | None = None
    duration_ms: int = 0


@dataclass
class GenerationTrace:
    """Explainability record of one orchestrated run."""

    calls: list[StageCallRecord] = field(default_factory=list)
    assessment: SituationalAssessment | None = None
    strategy: RecommendationStrategy | None = None
    domain_candidates: dict[str, list[RecommendationCandidate]] = field(default_factory=dict)
    rag_contexts: list[RagContext] = field(default_factory=list)
    failures: list[StageFailure] = field(default_factory=list)
    removed_conflicts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": [
                {
                    "stage": call.stage,
                    "system_prompt_chars": call.system_prompt_chars,
                    "user_prompt_chars": call.user_prompt_chars,
                    "raw_response": call.raw_response,
                    "duration_ms": call.duration_ms,
                }
                for call in self.calls
            ],
            "assessment": self.assessment.model_dump(mode="json") if self.assessment else None,
            "strategy": self.strategy.model_dump(mode="json") if self.strategy else None,
            "domain_candidates": {
                domain: [candidate.to_dict() for candidate in candidates]
                for domain, candidates in self.domain_candidates.items()
            },
            "rag_contexts": [
                {
                    "stage": rag.stage.value,
                    "domain": rag.domain,
                    "items": len(rag.items),
                    "latency_ms": rag.latency_ms,
                }
                for rag in self.rag_contexts
            ],
            "failures": [
                {"stage": failure.stage, "reason": failure.reason} for failure in self.failures
            ],
            "removed_conflicts": self.removed_conflicts,
        }


@dataclass(frozen=True)
class OrchestrationResult:
    """Candidates produced by Tier 2 and how they were selected."""

    candidates: tuple[RecommendationCandidate, ...]
    selection_method: str
    trace: GenerationTrace
    generative_calls: int = 0


def partition_plan(
    plan: Sequence[InterventionPlanItem],
) -> dict[GenerationDomain, list[InterventionPlanItem]]:
    """Group intervention items by the domain that generates their type."""
    by_domain: dict[GenerationDomain, list[InterventionPlanItem]] = {}
    for item in plan:
        rec_type = parse_enum(RecommendationType, item.target_type)
        if rec_type is None:
            logger.warning("Ignoring intervention with unknown target type %r", item.target_type)
            continue
        by_domain.setdefault(TYPE_DOMAINS[rec_type], []).append(item)
    return by_domain


def _behavior_keyword(title: str) -> str:
    normalized = _BEHAVIOR_NOISE.sub("", title.lower()).strip()
    for word in normalized.split():
        if len(word) > 3:
            return word
    return normalized


def _mentions_check_in(title: str) -> bool:
    lowered = title.lower()
    return "check-in" in lowered or "checkin" in lowered


def remove_conflicts(
    candidates: Sequence[RecommendationCandidate],
) -> list[RecommendationCandidate]:
    """Drop duplicates and mutually exclusive candidates, keeping the higher score."""
    kept: list[RecommendationCandidate] = []
    seen: set[tuple[RecommendationType, str | None]] = set()
    has_nudge = False
    has_check_in_experiment = False
    habit_behaviors: set[str] = set()
    experiment_behaviors: set[str] = set()
    for candidate in sorted(candidates, key=lambda item: item.score, reverse=True):
        key = (candidate.type, candidate.target.entity_id)
        if key in seen:
            logger.debug("Removed duplicate %s for %s", candidate.type.value, key[1])
            continue
        if candidate.type == RecommendationType.CHECK_IN_CONSISTENCY_NUDGE:
            if has_check_in_experiment:
                continue
            has_nudge = True
        if candidate.type == RecommendationType.EXPERIMENT_RECOMMENDATION:
            if _mentions_check_in(candidate.title):
                if has_nudge:
                    continue
                has_check_in_experiment = True
            behavior = _behavior_keyword(candidate.title)
            if behavior in habit_behaviors:
                continue
            experiment_behaviors.add(behavior)
        if candidate.type == RecommendationType.HABIT_FROM_LEAD_METRIC_SUGGESTION:
            behavior = _behavior_keyword(candidate.title)
            if behavior in experiment_behaviors:
                continue
            habit_behaviors.add(behavior)
        seen.add(key)
        kept.append(candidate)
    return kept


def issues_section(direct: Sequence[RecommendationCandidate], reason: str | None) -> str:
    """Summarize cheaper-tier findings for the assessment prompt."""
    if not direct and not reason:
        return ""
    lines = ["## Detected Issues"]
    if reason:
        lines.append(f"Escalation reason: {reason}")
    for candidate in direct:
        lines.append(f"- {candidate.type.value}: {candidate.title}")
    return "\n".join(lines) + "\n"


class GenerativeOrchestrator:
    """Runs the assessment, strategy and generation stages."""

    def __init__(
        self,
        llm: GenerativeTextService,
        retriever: RagContextRetriever | None = None,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._llm = llm
        self._retriever = retriever
        self._config = config or settings.orchestrator

    async def generate(
        self,
        snapshot: UserStateSnapshot,
        context: RecommendationContext,
        cache: RunCache,
        *,
        direct_recommendations: Sequence[RecommendationCandidate] = (),
        escalation_reason: str | None = None,
    ) -> OrchestrationResult:
        trace = GenerationTrace()
        if not self._config.enabled:
            return OrchestrationResult((), SELECTION_DISABLED, trace)
        calls = 0

        # Stage 1
        rag = None
        if self._retriever is not None:
            rag = self._traced(
                await self._retriever.for_assessment(snapshot, context, cache), trace
            )
        system, user = prompts.assessment_prompts(snapshot, context, rag)
        extra = issues_section(direct_recommendations, escalation_reason)
        if extra:
            user = f"{user}\n{extra}"
        assessment_outcome = await self._call_stage(
            STAGE_ASSESSMENT,
            system,
            user,
            prompts.ASSESSMENT_SCHEMA,
            self._config.assessment_max_tokens,
            lambda raw: parse_stage_json(raw, SituationalAssessment),
            trace,
        )
        calls += 1
        if isinstance(assessment_outcome, StageFailure):
            return self._failed(assessment_outcome, trace, calls)
        assessment = assessment_outcome.value
        trace.assessment = assessment

        # Stage 2
        rag = None
        if self._retriever is not None:
            rag = self._traced(
                await self._retriever.for_strategy(snapshot.user_id, assessment, context, cache),
                trace,
            )
        system, user = prompts.strategy_prompts(assessment, snapshot, context, rag)
        strategy_outcome = await self._call_stage(
            STAGE_STRATEGY,
            system,
            user,
            prompts.STRATEGY_SCHEMA,
            self._config.strategy_max_tokens,
            lambda raw: parse_stage_json(raw, RecommendationStrategy),
            trace,
        )
        calls += 1
        if isinstance(strategy_outcome, StageFailure):
            return self._failed(strategy_outcome, trace, calls)
        strategy = strategy_outcome.value
        trace.strategy = strategy

        # Stage 3
        plan = strategy.intervention_plan[: self._config.max_plan_items]
        by_domain = partition_plan(plan)
        if not by_domain:
            failure = StageFailure(STAGE_GENERATION, "intervention plan yielded no domain")
            return self._failed(failure, trace, calls)
        domains = list(by_domain)
        results = await asyncio.gather(
            *(
                self._generate_domain(
                    domain, by_domain[domain], assessment, snapshot, context, cache, trace
                )
                for domain in domains
            ),
            return_exceptions=True,
        )
        calls += len(domains)
        generated: list[RecommendationCandidate] = []
        succeeded = 0
        for domain, result in zip(domains, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Generation for %s raised: %s", domain.value, result)
                result = StageFailure(f"{STAGE_GENERATION}:{domain.value}", str(result))
            if isinstance(result, StageFailure):
                trace.failures.append(result)
                continue
            succeeded += 1
            trace.domain_candidates[domain.value] = list(result.value)
            generated.extend(result.value)
        if succeeded == 0:
            failure = StageFailure(STAGE_GENERATION, "all domain generation calls failed")
            return self._failed(failure, trace, calls)

        deduped = remove_conflicts(generated)
        trace.removed_conflicts = len(generated) - len(deduped)
        budget = min(strategy.max_recommendations, self._config.max_recommendations_cap)
        ranked = sorted(deduped, key=lambda candidate: candidate.score, reverse=True)[:budget]
        logger.info(
            "Generative pipeline for user %s produced %s recommendation(s) (%s generated, budget %s)",
            snapshot.user_id,
            len(ranked),
            len(generated),
            budget,
        )
        return OrchestrationResult(tuple(ranked), SELECTION_PIPELINE, trace, calls)

    def _failed(
        self,
        failure: StageFailure,
        trace: GenerationTrace,
        calls: int,
    ) -> OrchestrationResult:
        trace.failures.append(failure)
        stage = failure.stage.split(":", 1)[0]
        logger.warning("Generative pipeline failed at %s: %s", failure.stage, failure.reason)
        return OrchestrationResult((), failed_method(stage), trace, calls)

    @staticmethod
    def _traced(rag: RagContext | None, trace: GenerationTrace) -> RagContext | None:
        if rag is not None:
            trace.rag_contexts.append(rag)
        return rag

    async def _generate_domain(
        self,
        domain: GenerationDomain,
        items: Sequence[InterventionPlanItem],
        assessment: SituationalAssessment,
        snapshot: UserStateSnapshot,
        context: RecommendationContext,
        cache: RunCache,
        trace: GenerationTrace,
    ) -> StageOutcome[list[RecommendationCandidate]]:
        rag = None
        if self._retriever is not None:
            rag = self._traced(
                await self._retriever.for_generation(domain, assessment, items, snapshot, cache),
                trace,
            )
        system, user = prompts.generation_prompts(domain, items, assessment, snapshot, rag)
        return await self._call_stage(
            f"{STAGE_GENERATION}:{domain.value}",
            system,
            user,
            prompts.generation_schema(domain),
            self._config.generation_max_tokens,
            lambda raw: parse_generation_response(raw, domain.value, context),
            trace,
        )

    async def _call_stage(
        self,
        stage: str,
        system_prompt: str,
        user_prompt: str,
        schema: dict[str, Any],
        max_tokens: int,
        parse: Callable[[str], T],
        trace: GenerationTrace,
    ) -> StageOutcome[T]:
        record = StageCallRecord(stage, len(system_prompt), len(user_prompt))
        trace.calls.append(record)
        timeout = self._config.stage_timeout_seconds
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            raw = await asyncio.wait_for(
                self._llm.complete(system_prompt, user_prompt, schema, max_tokens, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            record.duration_ms = elapsed()
            logger.warning("%s timed out after %ss", stage, timeout)
            return StageFailure(stage, f"timed out after {timeout}s", record.duration_ms)
        except StageCallError as exc:
            record.duration_ms = elapsed()
            logger.warning("%s returned no usable response: %s", stage, exc)
            return StageFailure(stage, str(exc), record.duration_ms)
        except Exception as exc:
            record.duration_ms = elapsed()
            logger.warning("%s call failed: %s", stage, exc)
            return StageFailure(stage, f"call failed: {exc}", record.duration_ms)
        record.raw_response = raw
        record.duration_ms = elapsed()
        try:
            value = parse(raw)
        except ValueError as exc:
            logger.warning("%s returned an invalid response: %s", stage, exc)
            return StageFailure(stage, f"invalid response: {exc}", record.duration_ms)
        return StageSuccess(stage, value, raw, record.duration_ms)
