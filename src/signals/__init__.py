"""Signal queue, outbox, and event classification."""

from signals.queue import (
    AcquiredSignal,
    LeaseReclaimResult,
    QueueHealth,
    acquire_batch,
    enqueue_signal,
    expire_old,
    mark_failed,
    mark_processed,
    mark_skipped,
    release_expired_leases,
)
from signals.registry import Classification, EventRegistry, build_default_registry

__all__ = [
    "AcquiredSignal",
    "Classification",
    "EventRegistry",
    "LeaseReclaimResult",
    "QueueHealth",
    "acquire_batch",
    "build_default_registry",
    "enqueue_signal",
    "expire_old",
    "mark_failed",
    "mark_processed",
    "mark_skipped",
    "release_expired_leases",
]
