"""Unit tests for the worker Celery wiring."""

from __future__ import annotations

import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import workers.celery_app as celery_app
from assessment.snapshot import SnapshotUnavailable
from config import settings


def test_beat_schedule_covers_every_job() -> None:
    """Ensure every cycle and outbox job is scheduled by default."""
    schedule = celery_app.build_beat_schedule()

    assert set(schedule) == {
        "signals.sweep",
        "signals.urgent_cycle",
        "signals.window_cycle",
        "signals.batch_cycle",
        "outbox.poll",
        "outbox.archive",
    }
    assert schedule["signals.window_cycle"]["schedule"] == float(
        settings.signal_queue.window.interval_minutes * 60
    )
    assert schedule["signals.batch_cycle"]["schedule"] == float(
        settings.signal_queue.batch.interval_hours * 3600
    )


def test_beat_schedule_omits_disabled_jobs(monkeypatch) -> None:
    """Ensure disabled cycles and a disabled outbox are not scheduled."""
    monkeypatch.setattr(settings.signal_queue.urgent, "enabled", False)
    monkeypatch.setattr(settings.outbox, "enabled", False)

    schedule = celery_app.build_beat_schedule()

    assert "signals.urgent_cycle" not in schedule
    assert "outbox.poll" not in schedule
    assert "outbox.archive" not in schedule
    assert "signals.sweep" in schedule


def test_tasks_are_registered_by_name() -> None:
    """Ensure the beat schedule refers to registered task names."""
    for entry in celery_app.build_beat_schedule().values():
        assert entry["task"] in celery_app.celery_app.tasks


def test_unconfigured_snapshot_provider_skips_users() -> None:
    """Ensure the placeholder provider reports users as unavailable."""
    provider = celery_app._UnconfiguredSnapshotProvider()

    with pytest.raises(SnapshotUnavailable):
        provider.build_snapshot("user-1")


def test_configure_replaces_only_given_collaborators(monkeypatch) -> None:
    """Ensure configure leaves unspecified collaborators in place."""
    monkeypatch.setattr(celery_app, "_snapshot_provider_factory", celery_app._snapshot_provider_factory)
    monkeypatch.setattr(celery_app, "_text_resolver_factory", celery_app._text_resolver_factory)
    monkeypatch.setattr(celery_app, "_sink_factory", celery_app._sink_factory)
    original_resolver = celery_app._text_resolver_factory

    class _Sink:
        def deliver(self, user_id, outcome) -> None:
            return None

    celery_app.configure(sink=_Sink)

    assert celery_app._sink_factory is _Sink
    assert celery_app._text_resolver_factory is original_resolver
