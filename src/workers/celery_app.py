"""Celery entry point for the signal and outbox workers."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict
from typing import Any, Callable

from celery import Celery

from assessment.quick import QuickAssessment
from assessment.delta import StateDeltaCalculator
from assessment.rules import RuleEngine, default_rules
from assessment.snapshot import SnapshotProvider, SnapshotUnavailable, UserStateSnapshot
from assessment.tiered import TieredAssessmentEngine
from config import settings
from generation.orchestrator import GenerativeOrchestrator
from generation.rag import RagContextRetriever
from llm import LLMClient
from services.database import get_sync_session
from services.embeddings import OllamaEmbeddingService
from services.vector_store import QdrantVectorStore
from signals.history import ProcessingHistoryStore
from workers.embedding import EmbeddingProcessor, EntityText, EntityTextResolver
from workers.outbox_worker import OutboxWorker
from workers.signal_worker import (
    LoggingRecommendationSink,
    RecommendationSink,
    SignalSweeper,
    SignalWorker,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

LOGGER = logging.getLogger(__name__)


def _env(var: str, default: str) -> str:
    return os.environ.get(var, default)


celery_app = Celery("coach.workers")
celery_app.conf.broker_url = _env("CELERY_BROKER_URL", "redis://redis:6379/1")
celery_app.conf.result_backend = _env("CELERY_RESULT_BACKEND", "redis://redis:6379/2")
celery_app.conf.task_default_queue = _env("CELERY_QUEUE_NAME", "coach")
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"


def build_beat_schedule() -> dict[str, dict[str, Any]]:
    """Return the beat schedule derived from queue and outbox settings."""
    queue = settings.signal_queue
    outbox = settings.outbox
    schedule: dict[str, dict[str, Any]] = {
        "signals.sweep": {
            "task": "signals.sweep",
            "schedule": float(queue.sweep_interval_seconds),
        },
    }
    if queue.urgent.enabled:
        schedule["signals.urgent_cycle"] = {
            "task": "signals.urgent_cycle",
            "schedule": float(queue.urgent.interval_seconds),
        }
    if queue.window.enabled:
        schedule["signals.window_cycle"] = {
            "task": "signals.window_cycle",
            "schedule": float(queue.window.interval_minutes * 60),
        }
    if queue.batch.enabled:
        schedule["signals.batch_cycle"] = {
            "task": "signals.batch_cycle",
            "schedule": float(queue.batch.interval_hours * 3600),
        }
    if outbox.enabled:
        schedule["outbox.poll"] = {
            "task": "outbox.poll",
            "schedule": float(outbox.polling_interval_seconds),
        }
        schedule["outbox.archive"] = {
            "task": "outbox.archive",
            "schedule": float(outbox.archive_interval_hours * 3600),
        }
    return schedule


celery_app.conf.beat_schedule = build_beat_schedule()


def _session_factory():
    """Return a new synchronous SQLAlchemy session for worker tasks."""
    return get_sync_session()


class _UnconfiguredSnapshotProvider:
    """Placeholder used until the host application registers a provider."""

    def build_snapshot(self, user_id: str) -> UserStateSnapshot:
        raise SnapshotUnavailable(user_id, "no snapshot provider configured")


class _UnconfiguredTextResolver:
    """Placeholder used until the host application registers a resolver."""

    def resolve(self, entity_type: str, entity_id: str) -> EntityText | None:
        raise RuntimeError(f"No entity text resolver configured for {entity_type}")


_snapshot_provider_factory: Callable[[], SnapshotProvider] = _UnconfiguredSnapshotProvider
_text_resolver_factory: Callable[[], EntityTextResolver] = _UnconfiguredTextResolver
_sink_factory: Callable[[], RecommendationSink] = LoggingRecommendationSink


def configure(
    *,
    snapshot_provider: Callable[[], SnapshotProvider] | None = None,
    text_resolver: Callable[[], EntityTextResolver] | None = None,
    sink: Callable[[], RecommendationSink] | None = None,
) -> None:
    """Register the host application's collaborators."""
    global _snapshot_provider_factory, _text_resolver_factory, _sink_factory
    if snapshot_provider is not None:
        _snapshot_provider_factory = snapshot_provider
    if text_resolver is not None:
        _text_resolver_factory = text_resolver
    if sink is not None:
        _sink_factory = sink


def build_signal_worker() -> SignalWorker:
    """Wire the tiered engine against the production providers."""
    retriever = RagContextRetriever(OllamaEmbeddingService(), QdrantVectorStore())
    engine = TieredAssessmentEngine(
        rule_engine=RuleEngine(default_rules()),
        quick_assessment=QuickAssessment(
            retriever, StateDeltaCalculator(ProcessingHistoryStore(_session_factory))
        ),
        orchestrator=GenerativeOrchestrator(LLMClient(), retriever),
    )
    return SignalWorker(
        _session_factory,
        _snapshot_provider_factory(),
        engine,
        _sink_factory(),
    )


def build_outbox_worker() -> OutboxWorker:
    processor = EmbeddingProcessor(
        _text_resolver_factory(), OllamaEmbeddingService(), QdrantVectorStore()
    )
    return OutboxWorker(_session_factory, processor)


_SWEEPER = SignalSweeper(_session_factory)


@celery_app.task(name="signals.urgent_cycle")
def urgent_cycle() -> dict[str, Any]:
    """Celery beat job for the urgent signal cycle."""
    return asdict(asyncio.run(build_signal_worker().run_urgent_cycle()))


@celery_app.task(name="signals.window_cycle")
def window_cycle() -> dict[str, Any]:
    """Celery beat job for the scheduled-window signal cycle."""
    return asdict(asyncio.run(build_signal_worker().run_window_cycle()))


@celery_app.task(name="signals.batch_cycle")
def batch_cycle() -> dict[str, Any]:
    """Celery beat job for the low-priority batch cycle."""
    return asdict(asyncio.run(build_signal_worker().run_batch_cycle()))


@celery_app.task(name="signals.sweep")
def sweep() -> dict[str, Any]:
    """Celery beat job that reclaims leases and expires stale signals."""
    stats = _SWEEPER.sweep()
    result = asdict(stats)
    result["last_sweep_at"] = stats.last_sweep_at.isoformat() if stats.last_sweep_at else None
    return result


@celery_app.task(name="outbox.poll")
def poll_outbox() -> dict[str, Any]:
    """Celery beat job that refreshes embeddings for captured changes."""
    return asdict(asyncio.run(build_outbox_worker().run_once()))


@celery_app.task(name="outbox.archive")
def archive_outbox() -> dict[str, int]:
    """Celery beat job that deletes old processed outbox entries."""
    archived = build_outbox_worker().archive()
    LOGGER.info("Outbox archive completed: archived=%s", archived)
    return {"archived": archived}
