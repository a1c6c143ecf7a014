"""
Tests for the replay session manager
"""

from __future__ import annotations

import asyncio

import pytest
from otlp_samples import START_NS, log_payload, trace_payload

from oteltape.codec.keys import raw_prefix, sorted_batch_keys
from oteltape.codec.otlp import service_name
from oteltape.core.exceptions import (
    InvalidSessionStateError,
    PermanentIngestionError,
    ReplayAlreadyRunningError,
    SessionNotFoundError,
)
from oteltape.core.types import (
    AUTO_SESSION_ID,
    CaptureConfig,
    ReplayConfig,
    ReplayStatus,
    SelectionStrategy,
    SessionFilter,
    SessionKind,
    SignalType,
)
from oteltape.replay.manager import CANCELLED_REASON, ReplaySessionManager
from oteltape.storage.session_store import ObjectStoreReplaySessionStore

SECOND_NS = 1_000_000_000


async def _record(manager, clock, session_id: str = "cap-1", traces: int = 3, logs: int = 0, stop: bool = True):
    await manager.start_capture(CaptureConfig(session_id=session_id))
    for i in range(traces):
        await manager.ingest_batch(
            session_id, SignalType.TRACES, trace_payload(START_NS + i * 10 * SECOND_NS, name=f"t{i}")
        )
        clock.advance(10)
    for i in range(logs):
        await manager.ingest_batch(session_id, SignalType.LOGS, log_payload(body=f"log {i}"))
        clock.advance(1)
    if stop:
        await manager.stop_capture(session_id)


async def _trace_keys(object_store, session_id: str = "cap-1") -> list[str]:
    keys = await object_store.list(raw_prefix(session_id))
    return [k.key for k in sorted_batch_keys(keys, SignalType.TRACES)]


class TestStartReplay:
    @pytest.mark.asyncio
    async def test_replay_completes(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock)

        started = await replay_manager.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=2.0))
        assert started.status == ReplayStatus.RUNNING
        assert started.total_records == 3
        assert started.processed_records == 0

        session = await replay_manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.COMPLETED
        assert session.processed_records == 3
        assert session.progress == 1.0
        assert session.completed_at is not None
        assert session.error is None
        assert len(sink.batches) == 3
        assert sink.closed
        assert clock.sleeps == [5.0, 5.0]

    @pytest.mark.asyncio
    async def test_only_selected_signals_counted(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock, traces=2, logs=2)

        started = await replay_manager.start_replay(
            ReplayConfig(session_id="cap-1", replay_traces=False, replay_metrics=False)
        )
        session = await replay_manager.wait_for_replay("cap-1")

        assert started.total_records == 2
        assert session.status == ReplayStatus.COMPLETED
        assert [signal for signal, _ in sink.batches] == [SignalType.LOGS, SignalType.LOGS]

    @pytest.mark.asyncio
    async def test_empty_session_completes(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, traces=0)

        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))
        session = await replay_manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.COMPLETED
        assert session.total_records == 0

    @pytest.mark.asyncio
    async def test_unknown_session(self, replay_manager):
        with pytest.raises(SessionNotFoundError):
            await replay_manager.start_replay(ReplayConfig(session_id="missing"))

    @pytest.mark.asyncio
    async def test_active_capture_rejected(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, stop=False)

        with pytest.raises(InvalidSessionStateError) as exc_info:
            await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))

        assert exc_info.value.reason == "InvalidSessionState"
        assert exc_info.value.status == "active"

    @pytest.mark.asyncio
    async def test_failed_capture_rejected(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, stop=False)
        await capture_manager.abort_capture("cap-1", "collector crashed")

        with pytest.raises(InvalidSessionStateError):
            await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))

    @pytest.mark.asyncio
    async def test_concurrent_replay_rejected(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock)
        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))

        with pytest.raises(ReplayAlreadyRunningError):
            await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))

        await replay_manager.shutdown()

    @pytest.mark.asyncio
    async def test_replay_again_after_completion(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock)
        await replay_manager.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=10.0))
        await replay_manager.wait_for_replay("cap-1")

        again = await replay_manager.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=10.0))
        session = await replay_manager.wait_for_replay("cap-1")

        assert again.processed_records == 0
        assert session.status == ReplayStatus.COMPLETED
        assert len(sink.batches) == 6


class TestReplayFailures:
    @pytest.mark.asyncio
    async def test_corrupted_object(self, capture_manager, replay_manager, object_store, sink, clock):
        await _record(capture_manager, clock)
        first = (await _trace_keys(object_store))[0]
        blob = await object_store.get(first)
        await object_store.put(first, b"\x00\x00" + blob[2:])

        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))
        session = await replay_manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.FAILED
        assert session.error_reason == "DataCorrupted"
        assert session.processed_records == 0
        assert sink.batches == []
        assert sink.closed

    @pytest.mark.asyncio
    async def test_progress_frozen_at_failure(self, capture_manager, replay_manager, object_store, clock):
        await _record(capture_manager, clock)
        second = (await _trace_keys(object_store))[1]
        await object_store.put(second, b"not gzip at all")

        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))
        session = await replay_manager.wait_for_replay("cap-1")

        assert session.error_reason == "DataCorrupted"
        assert session.processed_records == 1
        assert session.current_object == (await _trace_keys(object_store))[0]

    @pytest.mark.asyncio
    async def test_object_deleted_mid_replay(self, capture_manager, replay_manager, object_store, clock):
        await _record(capture_manager, clock)
        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))
        await object_store.delete((await _trace_keys(object_store))[2])

        session = await replay_manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.FAILED
        assert session.error_reason == "IngestionFailure"
        assert session.processed_records == 2

    @pytest.mark.asyncio
    async def test_ingester_rejection(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock)
        sink.failures = [PermanentIngestionError("bad schema", status_code=400)]

        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))
        session = await replay_manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.FAILED
        assert session.error_reason == "IngestionFailure"
        assert "bad schema" in session.error

    @pytest.mark.asyncio
    async def test_unexpected_error(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock)
        sink.failures = [RuntimeError("sink exploded")]

        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))
        session = await replay_manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.FAILED
        assert session.error == "sink exploded"
        assert session.error_reason == "RuntimeError"
        assert sink.closed

    @pytest.mark.asyncio
    async def test_sink_factory_failure(self, capture_manager, session_store, object_store, sink, clock):
        await _record(capture_manager, clock)

        def broken_factory(session):
            raise ValueError("no ingest endpoint configured")

        manager = ReplaySessionManager(session_store, object_store, sink_factory=broken_factory, clock=clock)
        await manager.start_replay(ReplayConfig(session_id="cap-1"))
        session = await manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.FAILED
        assert session.error_reason == "ValueError"
        assert session.processed_records == 0

        # the failed replay does not block the next one
        manager.sink_factory = lambda s: sink
        await manager.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=10.0))
        session = await manager.wait_for_replay("cap-1")
        assert session.status == ReplayStatus.COMPLETED


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_running_replay(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock)
        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))

        session = await replay_manager.cancel_replay("cap-1")

        assert session.status == ReplayStatus.FAILED
        assert session.error_reason == CANCELLED_REASON
        assert session.processed_records < 3
        status = await replay_manager.get_replay_status("cap-1")
        assert status.status == ReplayStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_finished_replay_is_noop(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock)
        await replay_manager.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=10.0))
        await replay_manager.wait_for_replay("cap-1")

        session = await replay_manager.cancel_replay("cap-1")

        assert session.status == ReplayStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_unknown_replay(self, replay_manager):
        with pytest.raises(SessionNotFoundError):
            await replay_manager.cancel_replay("missing")

    @pytest.mark.asyncio
    async def test_shutdown_cancels_all(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, session_id="a")
        await _record(capture_manager, clock, session_id="b")
        await replay_manager.start_replay(ReplayConfig(session_id="a"))
        await replay_manager.start_replay(ReplayConfig(session_id="b"))

        await replay_manager.shutdown()

        for session_id in ("a", "b"):
            status = await replay_manager.get_replay_status(session_id)
            assert status.status == ReplayStatus.FAILED
            assert status.error_reason == CANCELLED_REASON


class TestQueries:
    @pytest.mark.asyncio
    async def test_status_of_unknown_replay(self, replay_manager):
        with pytest.raises(SessionNotFoundError):
            await replay_manager.get_replay_status("cap-1")

    @pytest.mark.asyncio
    async def test_list_available_replays(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, session_id="done")
        await _record(capture_manager, clock, session_id="live", stop=False)

        available = await replay_manager.list_available_replays()

        assert [s.session_id for s in available] == ["done"]

    @pytest.mark.asyncio
    async def test_list_replays(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, session_id="a")
        await _record(capture_manager, clock, session_id="b")
        await replay_manager.start_replay(ReplayConfig(session_id="a", speed_multiplier=10.0))
        await replay_manager.start_replay(ReplayConfig(session_id="b", speed_multiplier=10.0))
        await replay_manager.wait_for_replay("a")
        await replay_manager.wait_for_replay("b")

        replays = await replay_manager.list_replays()

        assert [r.session_id for r in replays] == ["a", "b"]
        assert all(r.status == ReplayStatus.COMPLETED for r in replays)

    @pytest.mark.asyncio
    async def test_persisted_replay_status(self, capture_manager, session_store, object_store, sink, clock):
        await _record(capture_manager, clock)
        manager = ReplaySessionManager(
            session_store,
            object_store,
            sink_factory=lambda session: sink,
            replay_store=ObjectStoreReplaySessionStore(object_store),
            clock=clock,
        )
        await manager.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=10.0))
        await manager.wait_for_replay("cap-1")

        assert await object_store.exists("replays/cap-1/status.json")
        reloaded = ReplaySessionManager(
            session_store, object_store, replay_store=ObjectStoreReplaySessionStore(object_store)
        )
        status = await reloaded.get_replay_status("cap-1")
        assert status.status == ReplayStatus.COMPLETED
        assert status.processed_records == 3


class TestReplayDataStream:
    @pytest.mark.asyncio
    async def test_yields_in_capture_order(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, logs=1)

        records = [r async for r in replay_manager.replay_data_stream("cap-1", SignalType.TRACES)]

        assert [r.signal_type for r in records] == [SignalType.TRACES] * 3
        names = [r.payload["resourceSpans"][0]["scopeSpans"][0]["spans"][0]["name"] for r in records]
        assert names == ["t0 #0", "t1 #0", "t2 #0"]
        assert records[0].captured_at < records[1].captured_at < records[2].captured_at

    @pytest.mark.asyncio
    async def test_payloads_not_rewritten(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, traces=1)

        records = [r async for r in replay_manager.replay_data_stream("cap-1", "traces")]

        assert records[0].payload == trace_payload(START_NS, name="t0")

    @pytest.mark.asyncio
    async def test_each_call_restarts(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock)

        stream = replay_manager.replay_data_stream("cap-1", SignalType.TRACES)
        first = await stream.__anext__()
        await stream.aclose()
        again = [r async for r in replay_manager.replay_data_stream("cap-1", SignalType.TRACES)]

        assert again[0].key == first.key
        assert len(again) == 3

    @pytest.mark.asyncio
    async def test_signal_without_batches(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock)

        records = [r async for r in replay_manager.replay_data_stream("cap-1", SignalType.METRICS)]

        assert records == []

    @pytest.mark.asyncio
    async def test_active_session_rejected(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, stop=False)

        with pytest.raises(InvalidSessionStateError):
            async for _ in replay_manager.replay_data_stream("cap-1", SignalType.TRACES):
                pass

    @pytest.mark.asyncio
    async def test_aborted_session_streamable(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, stop=False)
        await capture_manager.abort_capture("cap-1", "operator abort")

        records = [r async for r in replay_manager.replay_data_stream("cap-1", SignalType.TRACES)]

        assert len(records) == 3


class TestMaxDuration:
    @pytest.mark.asyncio
    async def test_stops_when_duration_elapses(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock)

        started = await replay_manager.start_replay(ReplayConfig(session_id="cap-1", max_duration_seconds=15))
        session = await replay_manager.wait_for_replay("cap-1")

        assert started.max_duration_seconds == 15
        assert session.status == ReplayStatus.FAILED
        assert session.error_reason == "DurationLimitReached"
        assert session.processed_records == 2
        assert len(sink.batches) == 2
        assert clock.sleeps == [10.0, 5.0]
        assert sink.closed

    @pytest.mark.asyncio
    async def test_finishes_within_duration(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock)

        await replay_manager.start_replay(ReplayConfig(session_id="cap-1", max_duration_seconds=60))
        session = await replay_manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.COMPLETED
        assert clock.sleeps == [10.0, 10.0]

    def test_duration_must_be_positive(self):
        with pytest.raises(ValueError):
            ReplayConfig(session_id="cap-1", max_duration_seconds=0)


class TestLooping:
    @pytest.mark.asyncio
    async def test_loops_until_duration_elapses(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock)

        await replay_manager.start_replay(
            ReplayConfig(session_id="cap-1", loop_enabled=True, max_duration_seconds=45)
        )
        session = await replay_manager.wait_for_replay("cap-1")

        # the third pass starts at 40s and stops before its batch due at 50s
        assert session.iterations == 2
        assert session.processed_records == 1
        assert len(sink.batches) == 7
        assert clock.sleeps == [10.0, 10.0, 10.0, 10.0, 5.0]
        assert session.error_reason == "DurationLimitReached"

    @pytest.mark.asyncio
    async def test_loop_runs_until_cancelled(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock, traces=1)
        await replay_manager.start_replay(ReplayConfig(session_id="cap-1", loop_enabled=True))

        while (await replay_manager.get_replay_status("cap-1")).iterations < 3:
            await asyncio.sleep(0)
        session = await replay_manager.cancel_replay("cap-1")

        assert session.status == ReplayStatus.FAILED
        assert session.error_reason == CANCELLED_REASON
        assert session.iterations >= 3
        assert len(sink.batches) >= 3

    @pytest.mark.asyncio
    async def test_empty_session_does_not_loop(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, traces=0)

        await replay_manager.start_replay(ReplayConfig(session_id="cap-1", loop_enabled=True))
        session = await replay_manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.COMPLETED
        assert session.iterations == 1


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_holds_delivery(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock)
        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))

        paused = await replay_manager.pause_replay("cap-1")
        for _ in range(3):
            await asyncio.sleep(0)

        assert paused.paused is True
        status = await replay_manager.get_replay_status("cap-1")
        assert status.status == ReplayStatus.RUNNING
        assert status.paused is True
        assert sink.batches == []

        clock.advance(120)
        resumed = await replay_manager.resume_replay("cap-1")
        session = await replay_manager.wait_for_replay("cap-1")

        assert resumed.paused is False
        assert session.status == ReplayStatus.COMPLETED
        assert session.paused is False
        assert len(sink.batches) == 3
        assert clock.sleeps == [10.0, 10.0]

    @pytest.mark.asyncio
    async def test_paused_replay_can_be_cancelled(self, capture_manager, replay_manager, sink, clock):
        await _record(capture_manager, clock)
        await replay_manager.start_replay(ReplayConfig(session_id="cap-1"))
        await replay_manager.pause_replay("cap-1")

        session = await replay_manager.cancel_replay("cap-1")

        assert session.status == ReplayStatus.FAILED
        assert session.error_reason == CANCELLED_REASON
        assert session.paused is False
        assert sink.batches == []

    @pytest.mark.asyncio
    async def test_pause_finished_replay_rejected(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock)
        await replay_manager.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=10.0))
        await replay_manager.wait_for_replay("cap-1")

        with pytest.raises(InvalidSessionStateError) as exc_info:
            await replay_manager.pause_replay("cap-1")
        assert exc_info.value.reason == "InvalidSessionState"

        with pytest.raises(InvalidSessionStateError):
            await replay_manager.resume_replay("cap-1")

    @pytest.mark.asyncio
    async def test_pause_unknown_replay(self, replay_manager):
        with pytest.raises(SessionNotFoundError):
            await replay_manager.pause_replay("missing")


class TestAutoSelection:
    @pytest.mark.asyncio
    async def test_latest_by_default(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, session_id="older")
        await _record(capture_manager, clock, session_id="newer", traces=1)

        started = await replay_manager.start_replay(ReplayConfig(session_id=AUTO_SESSION_ID))
        session = await replay_manager.wait_for_replay(started.session_id)

        assert started.session_id == "newer"
        assert started.total_records == 1
        assert session.status == ReplayStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_strategy_and_filter(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, session_id="seed-small", traces=1)
        await _record(capture_manager, clock, session_id="seed-large", traces=3)
        await _record(capture_manager, clock, session_id="capture-huge", traces=5)

        started = await replay_manager.start_replay(
            ReplayConfig(
                session_id="auto",
                selection_strategy=SelectionStrategy.LARGEST,
                session_filter=SessionFilter(kind=SessionKind.SEED),
            )
        )

        assert started.session_id == "seed-large"
        await replay_manager.shutdown()

    @pytest.mark.asyncio
    async def test_no_candidates(self, capture_manager, replay_manager, clock):
        await _record(capture_manager, clock, session_id="live", stop=False)

        with pytest.raises(SessionNotFoundError):
            await replay_manager.start_replay(ReplayConfig(session_id="auto"))


class TestServiceFilter:
    @pytest.mark.asyncio
    async def test_only_listed_services_replayed(self, capture_manager, replay_manager, sink, clock):
        await capture_manager.start_capture(CaptureConfig(session_id="cap-1"))
        mixed = trace_payload()
        mixed["resourceSpans"].append(
            {
                "resource": {"attributes": [{"key": "service.name", "value": {"stringValue": "payments"}}]},
                "scopeSpans": [],
            }
        )
        await capture_manager.ingest_batch("cap-1", SignalType.TRACES, mixed)
        await capture_manager.ingest_batch("cap-1", SignalType.TRACES, trace_payload())
        await capture_manager.stop_capture("cap-1")

        await replay_manager.start_replay(
            ReplayConfig(session_id="cap-1", filter_services=["payments"], speed_multiplier=10.0)
        )
        session = await replay_manager.wait_for_replay("cap-1")

        assert session.status == ReplayStatus.COMPLETED
        assert session.processed_records == 2
        assert len(sink.batches) == 1
        resources = sink.payloads(SignalType.TRACES)[0]["resourceSpans"]
        assert [service_name(r) for r in resources] == ["payments"]

    def test_empty_service_list_rejected(self):
        with pytest.raises(ValueError):
            ReplayConfig(session_id="cap-1", filter_services=[])
