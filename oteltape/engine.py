"""
oteltape engine
===============

Wires the object store, session stores, capture and replay managers and
the retention scheduler from one TapeConfig, and exposes the operations
callers (an HTTP or CLI layer) use.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from oteltape.capture.manager import CaptureSessionManager
from oteltape.capture.retention import RetentionEnforcer, RetentionScheduler
from oteltape.codec.batch import BatchEncoder
from oteltape.core.clock import Clock, SystemClock
from oteltape.core.config import TapeConfig, get_default_config, load_config
from oteltape.core.exceptions import ConfigurationError
from oteltape.core.types import (
    CaptureConfig,
    CapturedBatch,
    CaptureSession,
    CleanupResult,
    ReplayConfig,
    ReplayRecord,
    ReplaySession,
    RetentionPolicy,
    SignalType,
    StorageUsage,
)
from oteltape.logging_config import setup_logging
from oteltape.replay.manager import ReplaySessionManager, SinkFactory
from oteltape.replay.selection import SelectionStrategy, SessionFilter, SessionSelector
from oteltape.replay.sink import HttpIngestionSink, IngestionSink
from oteltape.storage.object_store import FileSystemObjectStore, InMemoryObjectStore, ObjectStore
from oteltape.storage.session_store import (
    CaptureSessionStore,
    InMemoryReplaySessionStore,
    ObjectStoreReplaySessionStore,
    ReplaySessionStore,
)

logger = logging.getLogger("oteltape.engine")


class TapeEngine:
    """
    Capture / replay engine.

    Usage:
        async with create_engine() as engine:
            await engine.start_capture(CaptureConfig(session_id="cap-1"))
            await engine.ingest_batch("cap-1", "traces", {"resourceSpans": [...]})
            await engine.stop_capture("cap-1")
            await engine.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=10))
    """

    def __init__(
        self,
        object_store: ObjectStore,
        config: TapeConfig | None = None,
        clock: Clock | None = None,
        sink_factory: SinkFactory | None = None,
        replay_store: ReplaySessionStore | None = None,
    ) -> None:
        self.config = config or get_default_config()
        self.clock = clock or SystemClock()
        self.object_store = object_store

        self.session_store = CaptureSessionStore(object_store)
        if replay_store is None:
            replay_store = (
                ObjectStoreReplaySessionStore(object_store)
                if self.config.replay.persist_replays
                else InMemoryReplaySessionStore()
            )

        self.encoder = BatchEncoder(
            object_store, clock=self.clock, compression_level=self.config.capture.compression_level
        )
        self.capture = CaptureSessionManager(self.session_store, self.encoder)
        self.selector = SessionSelector(self.session_store)
        self.replay = ReplaySessionManager(
            self.session_store,
            object_store,
            sink_factory=sink_factory or self._http_sink,
            replay_store=replay_store,
            clock=self.clock,
            defaults=self.config.replay,
            selector=self.selector,
        )
        self.retention = RetentionEnforcer(object_store, self.session_store, clock=self.clock)
        self.retention_policy = self.config.retention.to_policy()
        self.scheduler: RetentionScheduler | None = None
        if self.config.retention.enabled:
            self.scheduler = RetentionScheduler(
                self.retention,
                self.retention_policy,
                interval_seconds=self.config.retention.interval_seconds,
                clock=self.clock,
            )

    def _http_sink(self, session: ReplaySession) -> IngestionSink:
        return HttpIngestionSink(
            endpoint=session.target_endpoint or self.config.replay.ingest_endpoint,
            timeout=self.config.replay.batch_timeout_seconds,
            replay_session_id=session.session_id,
        )

    async def start(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.start()
        logger.info(f"oteltape engine started ({self.config.environment})")

    async def close(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.replay.shutdown()
        logger.info("oteltape engine closed")

    async def __aenter__(self) -> "TapeEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def capture_config(self, **overrides: Any) -> CaptureConfig:
        """CaptureConfig with the configured capture defaults applied"""
        values: dict[str, Any] = {
            "compression_enabled": self.config.capture.compression_enabled,
            "payload_format": self.config.capture.payload_format,
        }
        values.update(overrides)
        return CaptureConfig(**values)

    async def start_capture(self, config: CaptureConfig | None = None, **overrides: Any) -> CaptureSession:
        return await self.capture.start_capture(config or self.capture_config(**overrides))

    async def ingest_batch(
        self, session_id: str, signal_type: SignalType | str, payload: Any
    ) -> CapturedBatch:
        return await self.capture.ingest_batch(session_id, signal_type, payload)

    async def stop_capture(self, session_id: str) -> CaptureSession:
        return await self.capture.stop_capture(session_id)

    async def abort_capture(self, session_id: str, reason: str) -> CaptureSession:
        return await self.capture.abort_capture(session_id, reason)

    async def get_capture_status(self, session_id: str) -> CaptureSession:
        return await self.capture.get_capture_status(session_id)

    async def list_capture_sessions(self) -> list[CaptureSession]:
        return await self.capture.list_capture_sessions()

    # -------------------------------------------------------------------------
    # Replay
    # -------------------------------------------------------------------------

    async def start_replay(self, config: ReplayConfig) -> ReplaySession:
        return await self.replay.start_replay(config)

    async def get_replay_status(self, session_id: str) -> ReplaySession:
        return await self.replay.get_replay_status(session_id)

    async def list_replays(self) -> list[ReplaySession]:
        return await self.replay.list_replays()

    async def list_available_replays(self) -> list[CaptureSession]:
        return await self.replay.list_available_replays()

    def replay_data_stream(
        self, session_id: str, signal_type: SignalType | str
    ) -> AsyncIterator[ReplayRecord]:
        return self.replay.replay_data_stream(session_id, signal_type)

    async def cancel_replay(self, session_id: str) -> ReplaySession:
        return await self.replay.cancel_replay(session_id)

    async def pause_replay(self, session_id: str) -> ReplaySession:
        return await self.replay.pause_replay(session_id)

    async def resume_replay(self, session_id: str) -> ReplaySession:
        return await self.replay.resume_replay(session_id)

    async def wait_for_replay(self, session_id: str, timeout: float | None = None) -> ReplaySession:
        return await self.replay.wait_for_replay(session_id, timeout)

    async def select_session(
        self,
        strategy: SelectionStrategy | str = SelectionStrategy.LATEST,
        session_filter: SessionFilter | None = None,
    ) -> CaptureSession:
        return await self.selector.select(strategy, session_filter)

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def apply_retention_policy(self, policy: RetentionPolicy | None = None) -> CleanupResult:
        return await self.retention.apply_retention_policy(policy or self.retention_policy)

    async def get_storage_usage(self) -> StorageUsage:
        return await self.retention.get_storage_usage()


# =============================================================================
# Convenience Functions
# =============================================================================


def create_object_store(config: TapeConfig) -> ObjectStore:
    backend = config.storage.backend
    if backend == "memory":
        return InMemoryObjectStore()
    if backend == "filesystem":
        return FileSystemObjectStore(config.storage.root_dir, fsync=config.storage.fsync)
    raise ConfigurationError(
        f"Unknown storage backend: {backend}",
        suggestions=["Use 'memory' or 'filesystem'"],
    )


def create_engine(
    config: TapeConfig | None = None,
    config_path: str | None = None,
    object_store: ObjectStore | None = None,
    clock: Clock | None = None,
    sink_factory: SinkFactory | None = None,
    setup_logs: bool = False,
) -> TapeEngine:
    """
    Build an engine from a TapeConfig, a config file, or OTELTAPE_* variables.

    With ``setup_logs`` the root logger is configured from ``config.logging``.
    """
    if config is None:
        config = load_config(config_path)
    if setup_logs:
        setup_logging(
            level=config.logging.level,
            json_format=config.logging.json_format,
            log_dir=config.logging.log_dir,
        )
    return TapeEngine(
        object_store or create_object_store(config),
        config=config,
        clock=clock,
        sink_factory=sink_factory,
    )
