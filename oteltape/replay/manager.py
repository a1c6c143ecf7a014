"""
Replay Session Manager
======================

State machine per replay session:

    pending -> running -> completed
    pending | running -> failed

``start_replay`` counts the stored objects up front (one record = one
stored batch object), persists the session and launches one pacer task.
Failures inside the task fail only that replay; the last error stays on
the session record for status queries.

A running replay can be paused and resumed between batches. Looping
replays start a new pass after each complete one and end only when
cancelled, when they fail, or when ``max_duration_seconds`` elapse
(failed with reason DurationLimitReached).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from oteltape.codec.batch import BatchReader
from oteltape.codec.keys import StoredObjectKey, raw_prefix, sorted_batch_keys
from oteltape.codec.otlp import OtlpCodec, get_codec
from oteltape.core.clock import Clock, SystemClock
from oteltape.core.config import ReplayDefaults
from oteltape.core.exceptions import (
    InvalidSessionStateError,
    ObjectStoreError,
    OtelTapeError,
    ReplayAlreadyRunningError,
    SessionNotFoundError,
    StorageFailureError,
    error_reason,
)
from oteltape.core.types import (
    CaptureSession,
    CaptureStatus,
    ReplayConfig,
    ReplayRecord,
    ReplaySession,
    ReplayStatus,
    SignalType,
)
from oteltape.logging_config import session_context
from oteltape.replay.pacer import ReplayPacer, ReplayStream
from oteltape.replay.selection import SessionSelector
from oteltape.replay.sink import CollectingSink, IngestionSink
from oteltape.storage.object_store import ObjectStore
from oteltape.storage.session_store import (
    CaptureSessionStore,
    InMemoryReplaySessionStore,
    ReplaySessionStore,
)

logger = logging.getLogger("oteltape.replay.manager")

SinkFactory = Callable[[ReplaySession], IngestionSink]

CANCELLED_REASON = "Cancelled"


def _open_gate() -> asyncio.Event:
    gate = asyncio.Event()
    gate.set()
    return gate


@dataclass
class ActiveReplay:
    """Task and live session record of a replay owned by this process"""

    session: ReplaySession
    task: asyncio.Task | None = None
    gate: asyncio.Event = field(default_factory=_open_gate)


class ReplaySessionManager:
    """
    Usage:
        manager = ReplaySessionManager(capture_store, object_store, sink_factory=lambda s: sink)
        await manager.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=2.0))
        session = await manager.wait_for_replay("cap-1")
    """

    def __init__(
        self,
        capture_store: CaptureSessionStore,
        object_store: ObjectStore,
        sink_factory: SinkFactory | None = None,
        replay_store: ReplaySessionStore | None = None,
        clock: Clock | None = None,
        defaults: ReplayDefaults | None = None,
        selector: SessionSelector | None = None,
    ) -> None:
        self.capture_store = capture_store
        self.object_store = object_store
        self.sink_factory = sink_factory or (lambda session: CollectingSink())
        self.replay_store = replay_store or InMemoryReplaySessionStore()
        self.clock = clock or SystemClock()
        self.defaults = defaults or ReplayDefaults()
        self.selector = selector or SessionSelector(capture_store)
        self.reader = BatchReader(object_store)
        self._active: dict[str, ActiveReplay] = {}
        self._start_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Enumeration
    # -------------------------------------------------------------------------

    async def _stored_keys(self, session_id: str) -> list[str]:
        try:
            return await self.object_store.list(raw_prefix(session_id))
        except ObjectStoreError as e:
            raise StorageFailureError("Failed to list stored batches", session_id, cause=e) from e

    async def _streams(self, capture: CaptureSession, signal_types: list[SignalType]) -> list[ReplayStream]:
        keys = await self._stored_keys(capture.session_id)
        streams = [ReplayStream(signal, sorted_batch_keys(keys, signal)) for signal in signal_types]
        for stream in streams:
            captured = capture.batch_count(stream.signal_type)
            if len(stream.keys) < captured:
                logger.warning(
                    f"Session {capture.session_id}: only {len(stream.keys)} of {captured} captured "
                    f"{stream.signal_type.value} batches are still stored"
                )
        return streams

    async def _replayable(self, session_id: str, operation: str) -> CaptureSession:
        capture = await self.capture_store.get(session_id)
        if capture.status != CaptureStatus.STOPPED:
            raise InvalidSessionStateError(session_id, capture.status.value, operation)
        return capture

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_replay(self, config: ReplayConfig) -> ReplaySession:
        """
        Validate, count and launch a replay.

        With ``session_id="auto"`` the capture session is chosen by the
        selector first and the returned record carries the chosen id.

        Raises:
            SessionNotFoundError: no capture session with this id, or none
                matches the selection criteria
            InvalidSessionStateError: the capture session is not stopped
            ReplayAlreadyRunningError: a replay of it is pending or running
        """
        async with self._start_lock:
            if config.is_auto:
                selected = await self.selector.select(config.selection_strategy, config.session_filter)
                config = config.model_copy(update={"session_id": selected.session_id})
            session_id = config.session_id

            capture = await self._replayable(session_id, "replay")

            existing = await self.replay_store.get(session_id)
            if existing is not None and not existing.status.is_terminal:
                raise ReplayAlreadyRunningError(session_id)

            streams = await self._streams(capture, config.signal_types)
            total = sum(len(s.keys) for s in streams)

            session = ReplaySession.from_config(config, total_records=total)
            session.started_at = self.clock.now()
            await self.replay_store.put(session)

            session.status = ReplayStatus.RUNNING
            await self.replay_store.put(session)
            snapshot = session.model_copy()

            active = ActiveReplay(session)
            codec = get_codec(capture.payload_format)
            with session_context(capture_session_id=session_id, replay_session_id=session_id):
                logger.info(
                    f"Starting replay of {session_id}: {total} objects, "
                    f"signals={[s.value for s in config.signal_types]}, "
                    f"speed={config.speed_multiplier}x, timestamps={config.timestamp_adjustment.value}, "
                    f"loop={config.loop_enabled}, max_duration={config.max_duration_seconds}"
                )
                task = asyncio.create_task(
                    self._run(active, streams, codec), name=f"oteltape-replay-{session_id}"
                )
            active.task = task
            self._active[session_id] = active
            task.add_done_callback(lambda t, sid=session_id: self._forget(sid, t))

        return snapshot

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        active = self._active.get(session_id)
        if active is not None and active.task is task:
            del self._active[session_id]

    def _pacer(
        self, session: ReplaySession, gate: asyncio.Event | None = None
    ) -> tuple[ReplayPacer, IngestionSink]:
        sink = self.sink_factory(session)
        pacer = ReplayPacer(
            self.reader,
            sink,
            clock=self.clock,
            batch_timeout_seconds=self.defaults.batch_timeout_seconds,
            max_retries=self.defaults.max_retries,
            retry_backoff_seconds=self.defaults.retry_backoff_seconds,
            max_gap_seconds=self.defaults.max_gap_seconds,
            gate=gate,
        )
        return pacer, sink

    async def _run(self, active: ActiveReplay, streams: list[ReplayStream], codec: OtlpCodec) -> None:
        session = active.session
        sink: IngestionSink | None = None
        deadline = None
        if session.max_duration_seconds is not None:
            deadline = self.clock.monotonic() + session.max_duration_seconds

        async def on_progress(key: StoredObjectKey) -> None:
            session.processed_records += 1
            session.current_object = key.key
            await self.replay_store.put(session)

        try:
            pacer, sink = self._pacer(session, active.gate)
            while True:
                await pacer.run(session, streams, codec, on_progress, deadline)
                if not session.loop_enabled or session.total_records == 0:
                    break
                await self._next_pass(session)
        except asyncio.CancelledError:
            await self._fail(session, CANCELLED_REASON, CANCELLED_REASON)
            raise
        except OtelTapeError as e:
            logger.error(f"Replay of {session.session_id} failed ({e.reason}): {e.message}")
            await self._fail(session, e.message, e.reason)
        except Exception as e:
            logger.exception(f"Unexpected error replaying {session.session_id}")
            await self._fail(session, str(e), error_reason(e))
        else:
            await self._complete(session)
        finally:
            if sink is not None:
                await sink.close()

    async def _next_pass(self, session: ReplaySession) -> None:
        session.iterations += 1
        session.processed_records = 0
        session.current_object = None
        await self.replay_store.put(session)
        logger.info(f"Replay of {session.session_id} looping (pass {session.iterations + 1})")
        # a pass without pacing sleeps never yields on its own
        await asyncio.sleep(0)

    async def _complete(self, session: ReplaySession) -> None:
        if session.processed_records != session.total_records:
            await self._fail(
                session,
                f"stream ended after {session.processed_records} of {session.total_records} objects",
                "IngestionFailure",
            )
            return
        session.iterations += 1
        session.status = ReplayStatus.COMPLETED
        session.completed_at = self.clock.now()
        await self._persist_final(session)
        logger.info(f"Replay of {session.session_id} completed ({session.processed_records} objects)")

    async def _fail(self, session: ReplaySession, error: str, reason: str) -> None:
        if session.status.is_terminal:
            return
        session.status = ReplayStatus.FAILED
        session.paused = False
        session.error = error
        session.error_reason = reason
        session.completed_at = self.clock.now()
        await self._persist_final(session)

    async def _persist_final(self, session: ReplaySession) -> None:
        try:
            await self.replay_store.put(session)
        except StorageFailureError as e:
            logger.error(f"Could not persist final state of replay {session.session_id}: {e.message}")

    async def _running(self, session_id: str, operation: str) -> ActiveReplay:
        active = self._active.get(session_id)
        if active is None or active.session.status != ReplayStatus.RUNNING:
            session = await self.get_replay_status(session_id)
            raise InvalidSessionStateError(session_id, session.status.value, operation)
        return active

    async def pause_replay(self, session_id: str) -> ReplaySession:
        """
        Hold a running replay before its next batch.

        Pacing continues from where it stopped on resume; the time spent
        paused still counts towards ``max_duration_seconds``.
        """
        active = await self._running(session_id, "pause")
        active.gate.clear()
        active.session.paused = True
        await self.replay_store.put(active.session)
        logger.info(f"Replay of {session_id} pause requested")
        return active.session.model_copy()

    async def resume_replay(self, session_id: str) -> ReplaySession:
        active = await self._running(session_id, "resume")
        active.session.paused = False
        await self.replay_store.put(active.session)
        active.gate.set()
        logger.info(f"Replay of {session_id} resume requested")
        return active.session.model_copy()

    async def cancel_replay(self, session_id: str) -> ReplaySession:
        """Stop emitting further batches; delivered batches stay counted."""
        active = self._active.get(session_id)
        task = active.task if active else None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.info(f"Replay of {session_id} cancelled")

        session = await self.get_replay_status(session_id)
        if not session.status.is_terminal:
            # cancelled before its first step, or not owned by this process
            await self._fail(session, CANCELLED_REASON, CANCELLED_REASON)
        return session

    async def wait_for_replay(self, session_id: str, timeout: float | None = None) -> ReplaySession:
        """
        Wait until the replay task finishes, then return its status.

        On timeout the current (still running) status is returned.
        """
        active = self._active.get(session_id)
        if active is not None and active.task is not None:
            await asyncio.wait({active.task}, timeout=timeout)
        return await self.get_replay_status(session_id)

    async def shutdown(self) -> None:
        """Cancel every replay task owned by this manager."""
        for session_id in list(self._active):
            await self.cancel_replay(session_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_replay_status(self, session_id: str) -> ReplaySession:
        session = await self.replay_store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id, "no replay started for this session")
        return session

    async def list_replays(self) -> list[ReplaySession]:
        return sorted(await self.replay_store.list(), key=lambda s: s.started_at)

    async def list_available_replays(self) -> list[CaptureSession]:
        sessions = await self.capture_store.list()
        return sorted(
            (s for s in sessions if s.status == CaptureStatus.STOPPED), key=lambda s: s.started_at
        )

    async def replay_data_stream(
        self, session_id: str, signal_type: SignalType | str
    ) -> AsyncIterator[ReplayRecord]:
        """
        Decoded batches of one signal in capture order, without pacing or
        timestamp rewriting. One object is fetched per step, so a slow
        consumer holds back the reads. Each call starts a fresh stream.
        """
        signal_type = SignalType(signal_type)
        capture = await self.capture_store.get(session_id)
        if capture.is_active:
            raise InvalidSessionStateError(session_id, capture.status.value, "stream")

        codec = get_codec(capture.payload_format)
        keys = sorted_batch_keys(await self._stored_keys(session_id), signal_type)
        for key in keys:
            payload = await self.reader.read(session_id, key, codec)
            yield ReplayRecord(
                key=key.key,
                signal_type=key.signal_type,
                captured_at=key.captured_at,
                payload=payload,
            )
