"""
Replay Pacer
============

Streams the stored batches of one replay session to an ingestion sink,
spaced like the original capture and scaled by the speed multiplier.

Each signal type is an independent paced stream; streams run one after
another (traces, metrics, logs). Within a stream batch ``i`` is emitted at

    stream_start + (t_i - t_0) / speed + paused

where ``t`` is the capture time encoded in the object key and ``paused``
is the time spent waiting on the pause gate so far. Gaps can be clamped
with ``max_gap_seconds``. A deadline stops the run with
DurationLimitReachedError before the first batch scheduled at or after it.

Progress is reported only after the sink acknowledges a batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from oteltape.codec.batch import BatchReader
from oteltape.codec.keys import StoredObjectKey
from oteltape.codec.otlp import OtlpCodec, count_records, filter_services
from oteltape.codec.timestamps import TimestampRewriter
from oteltape.core.clock import Clock, SystemClock
from oteltape.core.exceptions import (
    DurationLimitReachedError,
    IngestionFailureError,
    IngestionSinkError,
    PermanentIngestionError,
    TransientIngestionError,
)
from oteltape.core.types import ReplaySession, SignalType
from oteltape.observability.tracing import SpanAttributes, SpanEvents, get_tracer
from oteltape.replay.sink import IngestionSink

logger = logging.getLogger("oteltape.replay.pacer")

ProgressCallback = Callable[[StoredObjectKey], Awaitable[None]]


@dataclass
class ReplayStream:
    """Ordered objects of one signal type"""

    signal_type: SignalType
    keys: list[StoredObjectKey]


class ReplayPacer:
    """
    Usage:
        pacer = ReplayPacer(BatchReader(store), sink, clock)
        await pacer.run(session, streams, codec, on_progress)
    """

    def __init__(
        self,
        reader: BatchReader,
        sink: IngestionSink,
        clock: Clock | None = None,
        batch_timeout_seconds: float = 10.0,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        max_gap_seconds: float | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.reader = reader
        self.sink = sink
        self.clock = clock or SystemClock()
        self.batch_timeout_seconds = batch_timeout_seconds
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_gap_seconds = max_gap_seconds
        # cleared while paused
        self.gate = gate
        self._tracer = get_tracer()

    async def run(
        self,
        session: ReplaySession,
        streams: list[ReplayStream],
        codec: OtlpCodec,
        on_progress: ProgressCallback,
        deadline: float | None = None,
    ) -> int:
        """
        Replay every stream in order. Returns the number of acknowledged batches.

        ``deadline`` is a ``clock.monotonic()`` value; reaching it raises
        DurationLimitReachedError.
        """
        delivered = 0
        for stream in streams:
            delivered += await self._run_stream(session, stream, codec, on_progress, deadline)
        return delivered

    def _gap(self, previous: StoredObjectKey, current: StoredObjectKey, speed: float) -> float:
        gap = max(0.0, (current.unix_millis - previous.unix_millis) / 1000.0) / speed
        if self.max_gap_seconds is not None:
            gap = min(gap, self.max_gap_seconds)
        return gap

    async def _run_stream(
        self,
        session: ReplaySession,
        stream: ReplayStream,
        codec: OtlpCodec,
        on_progress: ProgressCallback,
        deadline: float | None = None,
    ) -> int:
        if not stream.keys:
            return 0

        logger.info(
            f"Replaying {len(stream.keys)} {stream.signal_type.value} batches "
            f"at {session.speed_multiplier}x"
        )
        rewriter = TimestampRewriter(session.timestamp_adjustment, self.clock.time_ns())
        target = self.clock.monotonic()
        previous: StoredObjectKey | None = None
        delivered = 0

        for key in stream.keys:
            attributes = {
                SpanAttributes.SESSION_ID: session.session_id,
                SpanAttributes.SIGNAL_TYPE: stream.signal_type.value,
                SpanAttributes.OBJECT_KEY: key.key,
                SpanAttributes.SPEED_MULTIPLIER: session.speed_multiplier,
            }
            with self._tracer.span("oteltape.replay.batch", attributes) as span:
                payload = await self.reader.read(session.session_id, key, codec)
                if session.filter_services:
                    payload = filter_services(stream.signal_type, payload, session.filter_services)
                payload = rewriter.rewrite(payload)

                if previous is not None:
                    target += self._gap(previous, key, session.speed_multiplier)
                await self._wait_until(target, deadline, session)
                target += await self._hold(session.session_id)

                records = count_records(stream.signal_type, payload)
                if records or not session.filter_services:
                    await self._deliver(session.session_id, stream.signal_type, payload, span)
                    logger.debug(f"Delivered {key.key} ({records} records)")
                else:
                    logger.debug(f"Skipped {key.key}: no resources of {session.filter_services}")
                await on_progress(key)
                self._tracer.set_attribute(span, SpanAttributes.PROCESSED_RECORDS, session.processed_records)
                self._tracer.add_event(span, SpanEvents.BATCH_DELIVERED)

            previous = key
            delivered += 1

        return delivered

    async def _wait_until(self, target: float, deadline: float | None, session: ReplaySession) -> None:
        now = self.clock.monotonic()
        if deadline is not None and max(target, now) >= deadline:
            if deadline > now:
                await self.clock.sleep(deadline - now)
            raise DurationLimitReachedError(session.session_id, session.max_duration_seconds)
        if target > now:
            await self.clock.sleep(target - now)

    async def _hold(self, session_id: str) -> float:
        """Block while the gate is cleared; returns the seconds spent paused."""
        if self.gate is None or self.gate.is_set():
            return 0.0
        paused_at = self.clock.monotonic()
        logger.info(f"Replay of {session_id} paused")
        await self.gate.wait()
        paused_for = self.clock.monotonic() - paused_at
        logger.info(f"Replay of {session_id} resumed after {paused_for:.2f}s")
        return paused_for

    def _backoff(self, attempt: int) -> float:
        return self.retry_backoff_seconds * (2 ** (attempt - 1))

    async def _deliver(
        self, session_id: str, signal_type: SignalType, payload: dict[str, Any], span: Any = None
    ) -> None:
        """Send with a per-attempt timeout; transient failures are retried ``max_retries`` times."""
        attempt = 0
        while True:
            attempt += 1
            try:
                await asyncio.wait_for(
                    self.sink.send(signal_type, payload), timeout=self.batch_timeout_seconds
                )
                return
            except asyncio.TimeoutError as e:
                error: IngestionSinkError = TransientIngestionError(
                    f"no acknowledgement within {self.batch_timeout_seconds}s", cause=e
                )
            except PermanentIngestionError as e:
                raise IngestionFailureError(session_id, f"ingester rejected batch: {e.message}", cause=e) from e
            except TransientIngestionError as e:
                error = e

            if attempt > self.max_retries:
                raise IngestionFailureError(
                    session_id,
                    f"giving up after {attempt} attempts: {error.message}",
                    cause=error,
                ) from error

            delay = self._backoff(attempt)
            logger.warning(
                f"Transient ingestion failure for {signal_type.value} batch "
                f"(attempt {attempt}/{self.max_retries + 1}), retrying in {delay:.2f}s: {error.message}"
            )
            self._tracer.add_event(span, SpanEvents.DELIVERY_RETRY, {SpanAttributes.ATTEMPT: attempt})
            await self.clock.sleep(delay)
