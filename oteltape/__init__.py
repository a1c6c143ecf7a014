"""
oteltape
========

Capture OpenTelemetry signal streams (traces, metrics, logs) into
compressed, time-partitioned object storage and replay them later at any
speed, optionally shifting timestamps to the present.

Components:
    - Capture: session lifecycle, batch encoding, partition keys
    - Replay: chronological decoding, speed-controlled pacing, ingestion sinks
    - Retention: per-signal age limits, periodic cleanup

Usage:
    from oteltape import CaptureConfig, ReplayConfig, create_engine

    async with create_engine() as engine:
        await engine.start_capture(CaptureConfig(session_id="cap-1"))
        await engine.ingest_batch("cap-1", "traces", payload)
        await engine.stop_capture("cap-1")
        await engine.start_replay(ReplayConfig(session_id="cap-1", speed_multiplier=2.0))
"""

__version__ = "0.3.0"

from .core import (  # Config; Exceptions; Types; Clock
    CaptureConfig,
    CapturedBatch,
    CaptureError,
    CaptureSession,
    CaptureStatus,
    CleanupResult,
    Clock,
    OtelTapeError,
    PayloadFormat,
    ReplayConfig,
    ReplayError,
    ReplayRecord,
    ReplaySession,
    ReplayStatus,
    RetentionPolicy,
    SignalType,
    StorageUsage,
    SystemClock,
    TapeConfig,
    TimestampAdjustment,
    VirtualClock,
    load_config,
)
from .engine import TapeEngine, create_engine
from .replay import SelectionStrategy, SessionFilter

__all__ = [
    "__version__",
    # Engine
    "TapeEngine",
    "create_engine",
    # Config
    "TapeConfig",
    "load_config",
    # Types
    "SignalType",
    "PayloadFormat",
    "CaptureStatus",
    "ReplayStatus",
    "TimestampAdjustment",
    "CaptureConfig",
    "CaptureSession",
    "CapturedBatch",
    "ReplayConfig",
    "ReplaySession",
    "ReplayRecord",
    "RetentionPolicy",
    "CleanupResult",
    "StorageUsage",
    "SelectionStrategy",
    "SessionFilter",
    # Clock
    "Clock",
    "SystemClock",
    "VirtualClock",
    # Exceptions
    "OtelTapeError",
    "CaptureError",
    "ReplayError",
]
