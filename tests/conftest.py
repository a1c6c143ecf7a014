"""
Shared pytest fixtures for oteltape tests

Includes:
    - Virtual clock and in-memory object store
    - Session stores, capture and replay managers wired together
    - Engine with a collecting sink

Payload builders live in otlp_samples.py.
"""

from __future__ import annotations

import pytest
from otlp_samples import START

from oteltape.capture.manager import CaptureSessionManager
from oteltape.capture.retention import RetentionEnforcer
from oteltape.codec.batch import BatchEncoder
from oteltape.core.clock import VirtualClock
from oteltape.core.config import ReplayDefaults, TapeConfig
from oteltape.engine import TapeEngine
from oteltape.replay.manager import ReplaySessionManager
from oteltape.replay.sink import CollectingSink
from oteltape.storage.object_store import InMemoryObjectStore
from oteltape.storage.session_store import CaptureSessionStore, InMemoryReplaySessionStore

# =============================================================================
# Engine components
# =============================================================================


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(start=START)


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def session_store(object_store: InMemoryObjectStore) -> CaptureSessionStore:
    return CaptureSessionStore(object_store)


@pytest.fixture
def encoder(object_store: InMemoryObjectStore, clock: VirtualClock) -> BatchEncoder:
    return BatchEncoder(object_store, clock=clock)


@pytest.fixture
def capture_manager(session_store: CaptureSessionStore, encoder: BatchEncoder) -> CaptureSessionManager:
    return CaptureSessionManager(session_store, encoder)


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def replay_defaults() -> ReplayDefaults:
    return ReplayDefaults(batch_timeout_seconds=1.0, max_retries=2, retry_backoff_seconds=0.5)


@pytest.fixture
def replay_manager(
    session_store: CaptureSessionStore,
    object_store: InMemoryObjectStore,
    sink: CollectingSink,
    clock: VirtualClock,
    replay_defaults: ReplayDefaults,
) -> ReplaySessionManager:
    return ReplaySessionManager(
        session_store,
        object_store,
        sink_factory=lambda session: sink,
        replay_store=InMemoryReplaySessionStore(),
        clock=clock,
        defaults=replay_defaults,
    )


@pytest.fixture
def retention(
    object_store: InMemoryObjectStore, session_store: CaptureSessionStore, clock: VirtualClock
) -> RetentionEnforcer:
    return RetentionEnforcer(object_store, session_store, clock=clock)


@pytest.fixture
def engine(object_store: InMemoryObjectStore, clock: VirtualClock, sink: CollectingSink) -> TapeEngine:
    config = TapeConfig(environment="test")
    config.replay.batch_timeout_seconds = 1.0
    return TapeEngine(object_store, config=config, clock=clock, sink_factory=lambda session: sink)
