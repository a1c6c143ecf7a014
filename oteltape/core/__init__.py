"""
oteltape core: data model, configuration, exceptions and clocks.
"""

from .clock import Clock, SystemClock, VirtualClock
from .config import (
    CaptureDefaults,
    ConfigLoader,
    ConfigValidator,
    LoggingConfig,
    ReplayDefaults,
    RetentionConfig,
    StorageConfig,
    TapeConfig,
    get_default_config,
    load_config,
)
from .exceptions import (
    CaptureError,
    CompressionFailureError,
    ConfigLoadError,
    ConfigurationError,
    CorruptPayloadError,
    DataCorruptedError,
    DecompressionFailureError,
    DurationLimitReachedError,
    IngestionFailureError,
    IngestionSinkError,
    InvalidSessionStateError,
    ObjectNotFoundError,
    ObjectStoreError,
    OtelTapeError,
    PermanentIngestionError,
    ReplayAlreadyRunningError,
    ReplayError,
    SessionAlreadyActiveError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
    SignalNotCapturedError,
    StorageFailureError,
    TransientIngestionError,
)
from .types import (
    CaptureConfig,
    CapturedBatch,
    CaptureSession,
    CaptureStatus,
    CleanupResult,
    PayloadFormat,
    ReplayConfig,
    ReplayRecord,
    ReplaySession,
    ReplayStatus,
    SelectionStrategy,
    SessionFilter,
    SessionKind,
    RetentionPolicy,
    SignalType,
    StorageUsage,
    TimestampAdjustment,
)

__all__ = [
    # Clock
    "Clock",
    "SystemClock",
    "VirtualClock",
    # Config
    "TapeConfig",
    "StorageConfig",
    "CaptureDefaults",
    "ReplayDefaults",
    "RetentionConfig",
    "LoggingConfig",
    "ConfigLoader",
    "ConfigValidator",
    "get_default_config",
    "load_config",
    # Exceptions
    "OtelTapeError",
    "ConfigurationError",
    "ConfigLoadError",
    "ObjectStoreError",
    "ObjectNotFoundError",
    "CorruptPayloadError",
    "IngestionSinkError",
    "TransientIngestionError",
    "PermanentIngestionError",
    "CaptureError",
    "ReplayError",
    "SessionNotFoundError",
    "SessionAlreadyActiveError",
    "SessionAlreadyExistsError",
    "SignalNotCapturedError",
    "StorageFailureError",
    "CompressionFailureError",
    "InvalidSessionStateError",
    "ReplayAlreadyRunningError",
    "DataCorruptedError",
    "DecompressionFailureError",
    "IngestionFailureError",
    "DurationLimitReachedError",
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
    "SessionKind",
]
