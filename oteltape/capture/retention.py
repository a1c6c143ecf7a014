"""
Retention Enforcement
=====================

Deletes stored batch objects older than a per-signal window. Ages come
from the capture time embedded in each key, so no object body is read.

Active sessions are never touched. Retention takes no locks over capture
or replay state; a replay of a stopped session can lose objects mid-stream
and fails with an IngestionFailure for the missing object.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from datetime import datetime

from oteltape.codec.keys import StoredObjectKey
from oteltape.core.clock import Clock, SystemClock
from oteltape.core.exceptions import ObjectNotFoundError, ObjectStoreError, StorageFailureError
from oteltape.core.types import (
    CaptureStatus,
    CleanupResult,
    RetentionPolicy,
    SignalType,
    StorageUsage,
)
from oteltape.observability.tracing import SpanAttributes, get_tracer
from oteltape.storage.object_store import ObjectStore
from oteltape.storage.session_store import SESSIONS_PREFIX, CaptureSessionStore

logger = logging.getLogger("oteltape.capture.retention")


class RetentionEnforcer:
    """
    Applies a RetentionPolicy to everything under ``sessions/``.

    Usage:
        enforcer = RetentionEnforcer(object_store, session_store)
        result = await enforcer.apply_retention_policy(RetentionPolicy.uniform(timedelta(days=7)))
    """

    def __init__(
        self,
        object_store: ObjectStore,
        session_store: CaptureSessionStore,
        clock: Clock | None = None,
    ) -> None:
        self.object_store = object_store
        self.session_store = session_store
        self.clock = clock or SystemClock()
        self._tracer = get_tracer()

    async def _batch_keys_by_session(self) -> dict[str, list[StoredObjectKey]]:
        try:
            keys = await self.object_store.list(SESSIONS_PREFIX)
        except ObjectStoreError as e:
            raise StorageFailureError("Failed to list stored objects", cause=e) from e

        grouped: dict[str, list[StoredObjectKey]] = defaultdict(list)
        for key in keys:
            parsed = StoredObjectKey.parse(key)
            if parsed is not None:
                grouped[parsed.session_id].append(parsed)
        return grouped

    async def _is_deletable(self, session_id: str) -> bool:
        try:
            session = await self.session_store.find(session_id)
        except StorageFailureError as e:
            logger.warning(f"Skipping session {session_id}: metadata unreadable ({e.message})")
            return False

        if session is None:
            logger.warning(f"Skipping session {session_id}: no metadata")
            return False
        return not session.is_active

    async def apply_retention_policy(
        self, policy: RetentionPolicy, now: datetime | None = None
    ) -> CleanupResult:
        """
        Delete expired objects of non-active sessions.

        Re-running with the same policy and nothing newly expired deletes
        nothing. Failed deletes are logged and collected, never raised.
        """
        now = now or self.clock.now()
        started = self.clock.monotonic()
        result = CleanupResult()

        with self._tracer.span("oteltape.retention.apply") as span:
            grouped = await self._batch_keys_by_session()

            for session_id, objects in sorted(grouped.items()):
                result.scanned_objects += len(objects)
                if not await self._is_deletable(session_id):
                    result.skipped_sessions.append(session_id)
                    continue

                for obj in objects:
                    max_age = policy.max_age(obj.signal_type)
                    if max_age is None or now - obj.captured_at <= max_age:
                        continue
                    try:
                        size = await self.object_store.size(obj.key)
                        removed = await self.object_store.delete(obj.key)
                    except ObjectNotFoundError:
                        removed = False
                    except ObjectStoreError as e:
                        logger.error(f"Failed to delete expired object {obj.key}: {e.message}")
                        result.errors.append(f"{obj.key}: {e.message}")
                        continue
                    if not removed:
                        # listed but gone before the delete
                        logger.debug(f"Expired object {obj.key} already removed")
                        continue
                    result.deleted_objects += 1
                    result.deleted_keys.append(obj.key)
                    result.freed_bytes += size

            self._tracer.set_attribute(span, SpanAttributes.DELETED_OBJECTS, result.deleted_objects)

        result.duration_ms = (self.clock.monotonic() - started) * 1000
        logger.info(
            f"Retention pass: scanned={result.scanned_objects} deleted={result.deleted_objects} "
            f"freed_bytes={result.freed_bytes} skipped_sessions={len(result.skipped_sessions)} "
            f"errors={len(result.errors)}"
        )
        return result

    async def get_storage_usage(self) -> StorageUsage:
        grouped = await self._batch_keys_by_session()
        usage = StorageUsage(objects_by_signal={s.value: 0 for s in SignalType})
        for objects in grouped.values():
            for obj in objects:
                usage.objects_by_signal[obj.signal_type.value] += 1
                usage.total_objects += 1

        for session in await self.session_store.list():
            if session.status == CaptureStatus.ACTIVE:
                usage.active_sessions += 1
            elif session.status == CaptureStatus.STOPPED:
                usage.stopped_sessions += 1
            else:
                usage.failed_sessions += 1
        return usage


class RetentionScheduler:
    """
    Periodic retention task.

    Sleeps through the injected clock, so a VirtualClock drives it in tests.
    ``stop`` cancels the task and waits for it to finish.
    """

    def __init__(
        self,
        enforcer: RetentionEnforcer,
        policy: RetentionPolicy,
        interval_seconds: float = 3600.0,
        clock: Clock | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.enforcer = enforcer
        self.policy = policy
        self.interval_seconds = interval_seconds
        self.clock = clock or enforcer.clock
        self.runs = 0
        self.last_result: CleanupResult | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="oteltape-retention")
        logger.info(f"Retention scheduler started (interval={self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Retention scheduler stopped")

    async def run_once(self) -> CleanupResult:
        self.last_result = await self.enforcer.apply_retention_policy(self.policy)
        self.runs += 1
        return self.last_result

    async def _loop(self) -> None:
        while True:
            await self.clock.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except StorageFailureError as e:
                # next tick retries
                logger.error(f"Retention pass failed: {e.message}")
