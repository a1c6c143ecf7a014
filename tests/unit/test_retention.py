"""
Tests for retention enforcement and the retention scheduler
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from otlp_samples import log_payload, trace_payload

from oteltape.capture.manager import CaptureSessionManager
from oteltape.capture.retention import RetentionEnforcer, RetentionScheduler
from oteltape.codec.batch import BatchEncoder
from oteltape.core.exceptions import ObjectStoreError
from oteltape.core.types import CaptureConfig, RetentionPolicy, SignalType
from oteltape.storage.object_store import InMemoryObjectStore
from oteltape.storage.session_store import CaptureSessionStore

WEEK = timedelta(days=7)


class UndeletableStore(InMemoryObjectStore):
    async def delete(self, key: str) -> bool:
        if "/logs-" in key:
            raise ObjectStoreError("delete", key, reason="access denied")
        return await super().delete(key)


class VanishingStore(InMemoryObjectStore):
    """Log objects disappear between listing and deleting."""

    async def delete(self, key: str) -> bool:
        if "/logs-" in key:
            return False
        return await super().delete(key)


async def _capture(manager: CaptureSessionManager, clock, session_id: str, stop: bool = True) -> None:
    """One trace and one log batch now, one trace batch 8 days later."""
    await manager.start_capture(CaptureConfig(session_id=session_id))
    await manager.ingest_batch(session_id, SignalType.TRACES, trace_payload())
    await manager.ingest_batch(session_id, SignalType.LOGS, log_payload())
    clock.advance(timedelta(days=8).total_seconds())
    await manager.ingest_batch(session_id, SignalType.TRACES, trace_payload())
    if stop:
        await manager.stop_capture(session_id)


class TestApplyRetentionPolicy:
    @pytest.mark.asyncio
    async def test_deletes_only_expired_objects(self, capture_manager, retention, object_store, clock):
        await _capture(capture_manager, clock, "cap-1")

        result = await retention.apply_retention_policy(RetentionPolicy(traces=WEEK))

        assert result.scanned_objects == 3
        assert result.deleted_objects == 1
        assert "/traces-" in result.deleted_keys[0]
        remaining = await object_store.list("sessions/cap-1/raw/")
        assert len(remaining) == 2
        assert await object_store.exists("sessions/cap-1/metadata.json")

    @pytest.mark.asyncio
    async def test_uniform_policy(self, capture_manager, retention, clock):
        await _capture(capture_manager, clock, "cap-1")

        result = await retention.apply_retention_policy(RetentionPolicy.uniform(WEEK))

        assert result.deleted_objects == 2

    @pytest.mark.asyncio
    async def test_active_sessions_never_touched(self, capture_manager, retention, object_store, clock):
        await _capture(capture_manager, clock, "live", stop=False)

        result = await retention.apply_retention_policy(RetentionPolicy.uniform(timedelta(seconds=1)))

        assert result.deleted_objects == 0
        assert result.skipped_sessions == ["live"]
        assert len(await object_store.list("sessions/live/raw/")) == 3

    @pytest.mark.asyncio
    async def test_sessions_without_metadata_skipped(self, retention, object_store):
        await object_store.put("sessions/orphan/raw/2020-01-01/00/traces-1577836800000-a.otlp.gz", b"x")

        result = await retention.apply_retention_policy(RetentionPolicy.uniform(WEEK))

        assert result.deleted_objects == 0
        assert result.skipped_sessions == ["orphan"]

    @pytest.mark.asyncio
    async def test_idempotent(self, capture_manager, retention, clock):
        await _capture(capture_manager, clock, "cap-1")
        policy = RetentionPolicy.uniform(WEEK)

        first = await retention.apply_retention_policy(policy)
        second = await retention.apply_retention_policy(policy)

        assert first.deleted_objects == 2
        assert second.deleted_objects == 0
        assert second.scanned_objects == 1

    @pytest.mark.asyncio
    async def test_explicit_now(self, capture_manager, retention, clock):
        await _capture(capture_manager, clock, "cap-1")

        result = await retention.apply_retention_policy(
            RetentionPolicy.uniform(WEEK), now=clock.now() + timedelta(days=30)
        )

        assert result.deleted_objects == 3

    @pytest.mark.asyncio
    async def test_delete_failures_collected(self, clock):
        store = UndeletableStore()
        session_store = CaptureSessionStore(store)
        manager = CaptureSessionManager(session_store, BatchEncoder(store, clock=clock))
        await _capture(manager, clock, "cap-1")
        enforcer = RetentionEnforcer(store, session_store, clock=clock)

        result = await enforcer.apply_retention_policy(RetentionPolicy.uniform(WEEK))

        assert result.deleted_objects == 1
        assert len(result.errors) == 1
        assert "access denied" in result.errors[0]

    @pytest.mark.asyncio
    async def test_only_confirmed_deletes_counted(self, clock):
        store = VanishingStore()
        session_store = CaptureSessionStore(store)
        manager = CaptureSessionManager(session_store, BatchEncoder(store, clock=clock))
        await _capture(manager, clock, "cap-1")
        enforcer = RetentionEnforcer(store, session_store, clock=clock)

        result = await enforcer.apply_retention_policy(RetentionPolicy.uniform(WEEK))

        assert result.deleted_objects == 1
        assert all("/traces-" in key for key in result.deleted_keys)
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_freed_bytes(self, capture_manager, retention, object_store, clock):
        await _capture(capture_manager, clock, "cap-1")
        expired = (await object_store.list("sessions/cap-1/raw/"))[:2]
        sizes = [len(await object_store.get(key)) for key in expired]

        result = await retention.apply_retention_policy(RetentionPolicy.uniform(WEEK))

        assert sorted(result.deleted_keys) == sorted(expired)
        assert result.freed_bytes == sum(sizes)
        assert result.freed_bytes > 0


class TestStorageUsage:
    @pytest.mark.asyncio
    async def test_usage(self, capture_manager, retention, clock):
        await _capture(capture_manager, clock, "cap-1")
        await _capture(capture_manager, clock, "cap-2", stop=False)

        usage = await retention.get_storage_usage()

        assert usage.total_objects == 6
        assert usage.objects_by_signal == {"traces": 4, "metrics": 0, "logs": 2}
        assert usage.active_sessions == 1
        assert usage.stopped_sessions == 1


class TestRetentionScheduler:
    @pytest.mark.asyncio
    async def test_runs_periodically_until_stopped(self, capture_manager, retention, clock):
        await _capture(capture_manager, clock, "cap-1")
        scheduler = RetentionScheduler(retention, RetentionPolicy.uniform(WEEK), interval_seconds=3600, clock=clock)

        await scheduler.start()
        for _ in range(5):
            await asyncio.sleep(0)
        await scheduler.stop()

        assert scheduler.runs >= 1
        assert clock.sleeps[0] == 3600
        assert scheduler.last_result is not None
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_run_once(self, capture_manager, retention, clock):
        await _capture(capture_manager, clock, "cap-1")
        scheduler = RetentionScheduler(retention, RetentionPolicy.uniform(WEEK), clock=clock)

        result = await scheduler.run_once()

        assert result.deleted_objects == 2
        assert scheduler.runs == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, retention):
        scheduler = RetentionScheduler(retention, RetentionPolicy())
        await scheduler.stop()
        assert not scheduler.running

    def test_interval_must_be_positive(self, retention):
        with pytest.raises(ValueError):
            RetentionScheduler(retention, RetentionPolicy(), interval_seconds=0)
