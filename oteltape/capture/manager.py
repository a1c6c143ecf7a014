"""
Capture Session Manager
=======================

Owns the capture session lifecycle:

    start_capture -> ingest_batch* -> stop_capture
                                   \\-> abort_capture (failed)

Inbound batches are encoded and stored concurrently; only the counter
update (read-modify-write of the session record) is serialized, with one
asyncio.Lock per session.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from oteltape.codec.batch import BatchEncoder
from oteltape.codec.otlp import get_codec
from oteltape.core.exceptions import (
    CaptureError,
    InvalidSessionStateError,
    SessionAlreadyActiveError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
    SignalNotCapturedError,
    is_recoverable,
)
from oteltape.core.types import (
    CaptureConfig,
    CapturedBatch,
    CaptureSession,
    CaptureStatus,
    SignalType,
    generate_session_id,
)
from oteltape.logging_config import session_context
from oteltape.observability.tracing import SpanAttributes, get_tracer
from oteltape.storage.session_store import CaptureSessionStore

logger = logging.getLogger("oteltape.capture.manager")

_COUNTER_FIELDS = {
    SignalType.TRACES: "captured_traces",
    SignalType.METRICS: "captured_metrics",
    SignalType.LOGS: "captured_logs",
}


class CaptureSessionManager:
    """
    Records OTLP batches into partitioned object storage.

    Usage:
        manager = CaptureSessionManager(session_store, encoder)
        session = await manager.start_capture(CaptureConfig(session_id="cap-1"))
        await manager.ingest_batch("cap-1", SignalType.TRACES, payload)
        await manager.stop_capture("cap-1")
    """

    def __init__(self, session_store: CaptureSessionStore, encoder: BatchEncoder) -> None:
        self.session_store = session_store
        self.encoder = encoder
        self.clock = encoder.clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._tracer = get_tracer()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_capture(self, config: CaptureConfig) -> CaptureSession:
        session_id = config.session_id or generate_session_id()

        async with self._lock(session_id):
            existing = await self.session_store.find(session_id)
            if existing is not None:
                if existing.is_active:
                    raise SessionAlreadyActiveError(session_id)
                raise SessionAlreadyExistsError(session_id, existing.status.value)

            session = CaptureSession.from_config(session_id, config)
            session.started_at = self.clock.now()
            await self.session_store.put(session)

        with session_context(capture_session_id=session_id):
            logger.info(
                f"Started capture session {session_id} "
                f"(traces={session.capture_traces}, metrics={session.capture_metrics}, "
                f"logs={session.capture_logs}, compression={session.compression_enabled})"
            )
        return session

    async def stop_capture(self, session_id: str) -> CaptureSession:
        """Stop recording. Stopping an already stopped session returns it unchanged."""
        async with self._lock(session_id):
            session = await self.session_store.get(session_id)
            if session.status == CaptureStatus.STOPPED:
                return session
            if session.status == CaptureStatus.FAILED:
                raise InvalidSessionStateError(session_id, session.status.value, "stop")

            session = await self._finish(session, CaptureStatus.STOPPED, "stopped by request")

        self._locks.pop(session_id, None)
        return session

    async def abort_capture(self, session_id: str, reason: str) -> CaptureSession:
        """Mark an active session as failed; its stored batches stay replayable only if stopped."""
        async with self._lock(session_id):
            session = await self.session_store.get(session_id)
            if not session.is_active:
                raise InvalidSessionStateError(session_id, session.status.value, "abort")
            session.last_error = reason
            session = await self._finish(session, CaptureStatus.FAILED, reason)

        self._locks.pop(session_id, None)
        return session

    async def _finish(self, session: CaptureSession, status: CaptureStatus, reason: str) -> CaptureSession:
        session.status = status
        session.stopped_at = self.clock.now()
        session.stop_reason = reason
        await self.session_store.put(session)

        with session_context(capture_session_id=session.session_id):
            logger.info(
                f"Capture session {session.session_id} {status.value}: {reason} "
                f"(traces={session.captured_traces}, metrics={session.captured_metrics}, "
                f"logs={session.captured_logs}, bytes={session.total_size_bytes})"
            )
        return session

    # -------------------------------------------------------------------------
    # Ingest
    # -------------------------------------------------------------------------

    def _limit_reached(self, session: CaptureSession) -> str | None:
        if session.max_size_bytes is not None and session.total_size_bytes >= session.max_size_bytes:
            return f"size limit reached ({session.total_size_bytes} bytes)"
        if session.max_duration_minutes is not None:
            elapsed = self.clock.now() - session.started_at
            if elapsed >= timedelta(minutes=session.max_duration_minutes):
                return f"duration limit reached ({session.max_duration_minutes} minutes)"
        return None

    async def _active_session(self, session_id: str) -> CaptureSession:
        session = await self.session_store.get(session_id)
        if not session.is_active:
            raise SessionNotFoundError(session_id, f"session is {session.status.value}")

        limit = self._limit_reached(session)
        if limit is not None:
            async with self._lock(session_id):
                current = await self.session_store.get(session_id)
                if current.is_active:
                    await self._finish(current, CaptureStatus.STOPPED, limit)
            raise SessionNotFoundError(session_id, limit)

        return session

    async def ingest_batch(self, session_id: str, signal_type: SignalType | str, payload: Any) -> CapturedBatch:
        """
        Store one batch for an active session.

        Raises:
            SessionNotFoundError: unknown session, or not active
            SignalNotCapturedError: the session does not record this signal
            CompressionFailureError / StorageFailureError: the batch was not
                stored; the failure is recorded on the session, which stays active
        """
        signal_type = SignalType(signal_type)
        session = await self._active_session(session_id)
        if not session.captures(signal_type):
            raise SignalNotCapturedError(session_id, signal_type.value)

        attributes = {
            SpanAttributes.SESSION_ID: session_id,
            SpanAttributes.SIGNAL_TYPE: signal_type.value,
        }
        with session_context(capture_session_id=session_id), self._tracer.span(
            "oteltape.capture.ingest", attributes
        ) as span:
            codec = get_codec(session.payload_format)
            try:
                batch = await self.encoder.encode_and_store(session, signal_type, payload, codec)
            except CaptureError as e:
                logger.warning(
                    f"Failed to capture {signal_type.value} batch "
                    f"(recoverable={is_recoverable(e)}): {e.message}"
                )
                await self._record_failure(session_id, e)
                raise

            await self._record_success(session_id, batch)
            self._tracer.set_attribute(span, SpanAttributes.OBJECT_SIZE_BYTES, batch.size_bytes)

        return batch

    async def _record_success(self, session_id: str, batch: CapturedBatch) -> None:
        async with self._lock(session_id):
            session = await self.session_store.get(session_id)
            if not session.is_active:
                # stop won the race; the object stays, the finished record does not change
                logger.warning(f"Batch {batch.key} stored after session was {session.status.value}")
                return
            field = _COUNTER_FIELDS[batch.signal_type]
            setattr(session, field, getattr(session, field) + 1)
            session.total_size_bytes += batch.size_bytes
            await self.session_store.put(session)

    async def _record_failure(self, session_id: str, error: CaptureError) -> None:
        try:
            async with self._lock(session_id):
                session = await self.session_store.get(session_id)
                if not session.is_active:
                    return
                session.failed_batches += 1
                session.last_error = error.message
                await self.session_store.put(session)
        except CaptureError as e:
            logger.error(f"Could not record batch failure on session {session_id}: {e.message}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_capture_status(self, session_id: str) -> CaptureSession:
        return await self.session_store.get(session_id)

    async def list_capture_sessions(self) -> list[CaptureSession]:
        sessions = await self.session_store.list()
        return sorted(sessions, key=lambda s: s.started_at)
