"""Signal queue worker: urgent, window and batch cycles plus the lease sweeper."""

from __future__ import annotations

import asyncio
import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol, Sequence
from uuid import uuid4

from sqlalchemy.orm import Session

from assessment.snapshot import SnapshotProvider, SnapshotUnavailable
from assessment.tiered import TieredAssessmentEngine, TieredAssessmentOutcome
from config import SignalQueueConfig, settings
from models import SignalPriority, WindowType
from signals.history import ProcessingRecord, record_processing
from signals.queue import (
    AcquiredSignal,
    acquire_batch,
    expire_old,
    get_users_with_pending,
    mark_failed,
    mark_processed,
    mark_skipped,
    purge_retained,
    release_expired_leases,
    signal_ids,
)
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class RecommendationSink(Protocol):
    """Receives the validated output of a processed user batch."""

    def deliver(self, user_id: str, outcome: TieredAssessmentOutcome) -> None:
        ...


class LoggingRecommendationSink:
    """Sink that only logs what would be delivered."""

    def deliver(self, user_id: str, outcome: TieredAssessmentOutcome) -> None:
        logger.info(
            "User %s: %s recommendation(s) from tier %s (%s)",
            user_id,
            len(outcome.candidates),
            outcome.final_tier,
            outcome.statistics.selection_method,
        )


@dataclass(frozen=True)
class UserProcessingResult:
    """How one user's signal group ended."""

    user_id: str
    status: str
    signals: int
    final_tier: int | None = None
    recommendations: int = 0
    error: str | None = None


@dataclass(frozen=True)
class CycleResult:
    """Summary of one worker cycle."""

    cycle: str
    users: int
    signals: int
    processed: int
    skipped: int
    failed: int


def _summarize(cycle: str, results: Sequence[UserProcessingResult]) -> CycleResult:
    return CycleResult(
        cycle=cycle,
        users=len(results),
        signals=sum(result.signals for result in results),
        processed=sum(1 for result in results if result.status == "processed"),
        skipped=sum(1 for result in results if result.status == "skipped"),
        failed=sum(1 for result in results if result.status == "failed"),
    )


class SignalWorker:
    """Drains the signal queue through the tiered assessment engine."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        snapshot_provider: SnapshotProvider,
        engine: TieredAssessmentEngine,
        sink: RecommendationSink | None = None,
        *,
        worker_id: str | None = None,
        config: SignalQueueConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._snapshots = snapshot_provider
        self._engine = engine
        self._sink = sink or LoggingRecommendationSink()
        self._config = config or settings.signal_queue
        self.worker_id = worker_id or f"signal-worker-{uuid4().hex[:8]}"

    @property
    def _user_timeout(self) -> float:
        return self._config.timeout_minutes_per_user * 60

    @property
    def _lease(self) -> timedelta:
        """Lease for one user's group: the full per-user timeout plus settle time."""
        return timedelta(seconds=self._user_timeout + self._config.lease_duration_seconds)

    async def run_urgent_cycle(self, *, now: datetime | None = None) -> CycleResult:
        """Process urgent signals across all users, leasing one user at a time."""
        cycle = self._config.urgent
        if not (self._config.workers_enabled and cycle.enabled):
            return _summarize("urgent", [])
        results = await self._run_per_user(
            SignalPriority.URGENT,
            cycle.max_signals_per_cycle,
            cycle.max_signals_per_cycle,
            now,
            signal_limit=cycle.max_signals_per_cycle,
        )
        return self._log_cycle(_summarize("urgent", results))

    async def run_window_cycle(self, *, now: datetime | None = None) -> CycleResult:
        """Process window-aligned and urgent signals whose window has opened."""
        cycle = self._config.window
        if not (self._config.workers_enabled and cycle.enabled):
            return _summarize("window", [])
        results = await self._run_per_user(
            SignalPriority.WINDOW_ALIGNED,
            cycle.max_users_per_cycle,
            cycle.max_signals_per_user,
            now,
        )
        return self._log_cycle(_summarize("window", results))

    async def run_batch_cycle(self, *, now: datetime | None = None) -> CycleResult:
        """Process everything acquirable, including low-priority signals."""
        cycle = self._config.batch
        if not (self._config.workers_enabled and cycle.enabled):
            return _summarize("batch", [])
        results = await self._run_per_user(
            SignalPriority.LOW,
            cycle.max_users_per_cycle,
            cycle.max_signals_per_user,
            now,
        )
        return self._log_cycle(_summarize("batch", results))

    async def _run_per_user(
        self,
        max_priority: SignalPriority,
        max_users: int,
        max_signals: int,
        now: datetime | None,
        *,
        signal_limit: int | None = None,
    ) -> list[UserProcessingResult]:
        """Acquire and process each user's signals in turn.

        Leases are taken just before a user is processed so a long cycle never
        outlives the leases of users processed late in it.
        """
        with closing(self._session_factory()) as session:
            user_ids = get_users_with_pending(
                session, max_priority=max_priority, limit=max_users, now=now
            )
        results = []
        remaining = signal_limit
        for user_id in user_ids:
            if remaining is not None and remaining <= 0:
                break
            with closing(self._session_factory()) as session:
                signals = acquire_batch(
                    session,
                    self.worker_id,
                    max_priority=max_priority,
                    lease_duration=self._lease,
                    batch_size=max_signals if remaining is None else min(max_signals, remaining),
                    now=now,
                    user_id=user_id,
                )
            if not signals:
                continue
            if remaining is not None:
                remaining -= len(signals)
            results.append(await self.process_user(user_id, signals, signals[0].window_type))
        return results

    async def process_user(
        self,
        user_id: str,
        signals: Sequence[AcquiredSignal],
        window_type: WindowType | None = None,
    ) -> UserProcessingResult:
        """Run one user's signal group through the ladder and settle the leases."""
        started_at = utc_now()
        ids = signal_ids(signals)
        timeout = self._user_timeout
        try:
            outcome = await asyncio.wait_for(self._assess(user_id, signals), timeout=timeout)
            self._sink.deliver(user_id, outcome)
        except SnapshotUnavailable as exc:
            logger.warning("Skipping %s signal(s) for user %s: %s", len(ids), user_id, exc)
            with closing(self._session_factory()) as session:
                mark_skipped(
                    session,
                    ids,
                    f"snapshot unavailable: {exc.reason}",
                    worker_id=self.worker_id,
                )
                record_processing(
                    session,
                    ProcessingRecord(
                        user_id=user_id,
                        window_type=window_type,
                        signals_received=len(ids),
                        signals_processed=0,
                        signals_skipped=len(ids),
                        final_tier=None,
                        error=str(exc),
                    ),
                    started_at=started_at,
                )
            return UserProcessingResult(user_id, "skipped", len(ids), error=str(exc))
        except asyncio.TimeoutError:
            return self._fail(user_id, ids, window_type, started_at, f"timed out after {timeout}s")
        except Exception as exc:
            logger.exception("Signal processing failed for user %s", user_id)
            return self._fail(user_id, ids, window_type, started_at, str(exc) or type(exc).__name__)

        stats = outcome.statistics
        with closing(self._session_factory()) as session:
            processed = mark_processed(session, self.worker_id, ids, tier=outcome.final_tier)
            record_processing(
                session,
                ProcessingRecord(
                    user_id=user_id,
                    window_type=window_type,
                    signals_received=len(ids),
                    signals_processed=processed,
                    signals_skipped=0,
                    final_tier=outcome.final_tier,
                    rules_triggered=stats.rules_triggered,
                    direct_recommendations=stats.direct_recommendations,
                    combined_score=stats.combined_score,
                    generative_calls=stats.generative_calls,
                    selection_method=stats.selection_method,
                    recommendations_generated=len(outcome.candidates),
                    duration_ms=stats.duration_ms,
                ),
                started_at=started_at,
            )
        if processed < len(ids):
            logger.warning(
                "User %s: %s of %s signal(s) lost their lease before completion",
                user_id,
                len(ids) - processed,
                len(ids),
            )
        return UserProcessingResult(
            user_id,
            "processed",
            len(ids),
            final_tier=outcome.final_tier,
            recommendations=len(outcome.candidates),
        )

    async def _assess(
        self, user_id: str, signals: Sequence[AcquiredSignal]
    ) -> TieredAssessmentOutcome:
        snapshot = await asyncio.to_thread(self._snapshots.build_snapshot, user_id)
        return await self._engine.run(snapshot, signals)

    def _fail(
        self,
        user_id: str,
        ids: list[int],
        window_type: WindowType | None,
        started_at: datetime,
        error: str,
    ) -> UserProcessingResult:
        logger.warning("Marking %s signal(s) failed for user %s: %s", len(ids), user_id, error)
        with closing(self._session_factory()) as session:
            mark_failed(
                session, self.worker_id, ids, error, max_retries=self._config.max_retries
            )
            record_processing(
                session,
                ProcessingRecord(
                    user_id=user_id,
                    window_type=window_type,
                    signals_received=len(ids),
                    signals_processed=0,
                    signals_skipped=0,
                    final_tier=None,
                    error=error,
                ),
                started_at=started_at,
            )
        return UserProcessingResult(user_id, "failed", len(ids), error=error)

    def _log_cycle(self, result: CycleResult) -> CycleResult:
        if result.users:
            logger.info(
                "%s cycle: users=%s signals=%s processed=%s skipped=%s failed=%s",
                result.cycle,
                result.users,
                result.signals,
                result.processed,
                result.skipped,
                result.failed,
            )
        return result


@dataclass
class SweepStats:
    """Running totals across sweeps, exposed for dashboards."""

    sweeps: int = 0
    leases_released: int = 0
    leases_abandoned: int = 0
    expired: int = 0
    purged: int = 0
    last_sweep_at: datetime | None = None


class SignalSweeper:
    """Reclaims lapsed leases, expires stale signals and purges old rows."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: SignalQueueConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or settings.signal_queue
        self.stats = SweepStats()

    def sweep(self, *, now: datetime | None = None) -> SweepStats:
        now = ensure_utc(now or utc_now())
        with closing(self._session_factory()) as session:
            reclaimed = release_expired_leases(
                session, now=now, max_retries=self._config.max_retries
            )
            expired = expire_old(session, now=now)
            purged = purge_retained(
                session, retention=timedelta(days=self._config.retention_days), now=now
            )
        self.stats.sweeps += 1
        self.stats.leases_released += reclaimed.released
        self.stats.leases_abandoned += reclaimed.abandoned
        self.stats.expired += expired
        self.stats.purged += purged
        self.stats.last_sweep_at = now
        if reclaimed.released or reclaimed.abandoned or expired or purged:
            logger.info(
                "Sweep: released=%s abandoned=%s expired=%s purged=%s",
                reclaimed.released,
                reclaimed.abandoned,
                expired,
                purged,
            )
        return self.stats
