"""
Core data model for capture and replay sessions.

Session records are pydantic models so they can be persisted as JSON
metadata objects and validated when read back from storage.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class SignalType(str, Enum):
    """OpenTelemetry signal types"""

    TRACES = "traces"
    METRICS = "metrics"
    LOGS = "logs"


class PayloadFormat(str, Enum):
    """Serialization used for stored batches"""

    JSON = "json"
    PROTOBUF = "protobuf"


class CaptureStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"
    FAILED = "failed"


class ReplayStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ReplayStatus.COMPLETED, ReplayStatus.FAILED)


class TimestampAdjustment(str, Enum):
    """How replayed timestamps relate to the recorded ones"""

    ORIGINAL = "original"
    CURRENT = "current"


class SelectionStrategy(str, Enum):
    LATEST = "latest"
    RANDOM = "random"
    LARGEST = "largest"
    SMALLEST = "smallest"


class SessionKind(str, Enum):
    SEED = "seed"
    CAPTURE = "capture"
    TRAINING = "training"


# =============================================================================
# Capture
# =============================================================================


def generate_session_id(prefix: str = "capture") -> str:
    """Generate a unique, time-sortable session id."""
    timestamp = utcnow().strftime("%Y%m%d-%H%M%S")
    return f"{prefix}-{timestamp}-{uuid.uuid4().hex[:8]}"


class CaptureConfig(BaseModel):
    """Parameters for starting a capture session"""

    session_id: str | None = None
    description: str = ""
    enabled_flags: list[str] = Field(default_factory=list)
    diagnostic_session_id: str | None = None
    capture_traces: bool = True
    capture_metrics: bool = True
    capture_logs: bool = True
    compression_enabled: bool = True
    payload_format: PayloadFormat = PayloadFormat.JSON
    max_size_mb: float | None = Field(default=None, gt=0)
    max_duration_minutes: float | None = Field(default=None, gt=0)

    @field_validator("session_id")
    @classmethod
    def _valid_session_id(cls, value: str | None) -> str | None:
        if value is None:
            return value
        if not value or "/" in value or value.strip() != value:
            raise ValueError("session_id must be non-empty and must not contain '/' or spaces")
        return value

    @model_validator(mode="after")
    def _at_least_one_signal(self) -> "CaptureConfig":
        if not (self.capture_traces or self.capture_metrics or self.capture_logs):
            raise ValueError("at least one of capture_traces, capture_metrics, capture_logs must be true")
        return self


class CaptureSession(BaseModel):
    """Identity and accounting for one recording run"""

    session_id: str
    description: str = ""
    enabled_flags: list[str] = Field(default_factory=list)
    diagnostic_session_id: str | None = None
    capture_traces: bool = True
    capture_metrics: bool = True
    capture_logs: bool = True
    compression_enabled: bool = True
    payload_format: PayloadFormat = PayloadFormat.JSON
    status: CaptureStatus = CaptureStatus.ACTIVE
    captured_traces: int = 0
    captured_metrics: int = 0
    captured_logs: int = 0
    total_size_bytes: int = 0
    failed_batches: int = 0
    last_error: str | None = None
    max_size_bytes: int | None = None
    max_duration_minutes: float | None = None
    started_at: datetime = Field(default_factory=utcnow)
    stopped_at: datetime | None = None
    stop_reason: str | None = None
    created_by: str = "system:oteltape-capture"

    @property
    def storage_prefix(self) -> str:
        return f"sessions/{self.session_id}"

    @property
    def is_active(self) -> bool:
        return self.status == CaptureStatus.ACTIVE

    @property
    def total_batches(self) -> int:
        return self.captured_traces + self.captured_metrics + self.captured_logs

    def captures(self, signal_type: SignalType) -> bool:
        return {
            SignalType.TRACES: self.capture_traces,
            SignalType.METRICS: self.capture_metrics,
            SignalType.LOGS: self.capture_logs,
        }[signal_type]

    def batch_count(self, signal_type: SignalType) -> int:
        return {
            SignalType.TRACES: self.captured_traces,
            SignalType.METRICS: self.captured_metrics,
            SignalType.LOGS: self.captured_logs,
        }[signal_type]

    @classmethod
    def from_config(cls, session_id: str, config: CaptureConfig) -> "CaptureSession":
        return cls(
            session_id=session_id,
            description=config.description,
            enabled_flags=list(config.enabled_flags),
            diagnostic_session_id=config.diagnostic_session_id,
            capture_traces=config.capture_traces,
            capture_metrics=config.capture_metrics,
            capture_logs=config.capture_logs,
            compression_enabled=config.compression_enabled,
            payload_format=config.payload_format,
            max_size_bytes=int(config.max_size_mb * 1024 * 1024) if config.max_size_mb else None,
            max_duration_minutes=config.max_duration_minutes,
        )


class CapturedBatch(BaseModel):
    """Reference to one persisted batch object"""

    key: str
    session_id: str
    signal_type: SignalType
    captured_at: datetime
    size_bytes: int
    compressed: bool


# =============================================================================
# Replay
# =============================================================================


AUTO_SESSION_ID = "auto"


def session_kind(session: CaptureSession) -> SessionKind:
    if session.session_id.startswith("seed-"):
        return SessionKind.SEED
    if session.session_id.startswith("training-"):
        return SessionKind.TRAINING
    return SessionKind.CAPTURE


class SessionFilter(BaseModel):
    """Optional constraints; unset fields match everything"""

    kind: SessionKind | None = None
    min_batches: int | None = Field(default=None, ge=0)
    max_batches: int | None = Field(default=None, ge=0)
    started_after: datetime | None = None
    started_before: datetime | None = None

    def matches(self, session: CaptureSession) -> bool:
        if self.kind is not None and session_kind(session) != self.kind:
            return False
        size = session.total_batches
        if self.min_batches is not None and size < self.min_batches:
            return False
        if self.max_batches is not None and size > self.max_batches:
            return False
        if self.started_after is not None and session.started_at < self.started_after:
            return False
        if self.started_before is not None and session.started_at > self.started_before:
            return False
        return True


class ReplayConfig(BaseModel):
    """
    Parameters for starting a replay of a stopped capture session.

    ``session_id="auto"`` picks the session with ``selection_strategy``
    among those matching ``session_filter``. With ``loop_enabled`` the
    session is replayed again after each complete pass until cancelled or
    until ``max_duration_seconds`` elapse. ``filter_services`` keeps only
    resources whose ``service.name`` is listed.
    """

    session_id: str
    speed_multiplier: float = Field(default=1.0, gt=0)
    replay_traces: bool = True
    replay_metrics: bool = True
    replay_logs: bool = True
    timestamp_adjustment: TimestampAdjustment = TimestampAdjustment.CURRENT
    target_endpoint: str | None = None
    selection_strategy: SelectionStrategy = SelectionStrategy.LATEST
    session_filter: SessionFilter | None = None
    max_duration_seconds: float | None = Field(default=None, gt=0)
    loop_enabled: bool = False
    filter_services: list[str] | None = Field(default=None, min_length=1)

    @property
    def is_auto(self) -> bool:
        return self.session_id == AUTO_SESSION_ID

    @model_validator(mode="after")
    def _at_least_one_signal(self) -> "ReplayConfig":
        if not self.signal_types:
            raise ValueError("at least one of replay_traces, replay_metrics, replay_logs must be true")
        return self

    @property
    def signal_types(self) -> list[SignalType]:
        selected = []
        if self.replay_traces:
            selected.append(SignalType.TRACES)
        if self.replay_metrics:
            selected.append(SignalType.METRICS)
        if self.replay_logs:
            selected.append(SignalType.LOGS)
        return selected


class ReplaySession(BaseModel):
    """Identity and progress for one replay run"""

    session_id: str
    speed_multiplier: float = 1.0
    replay_traces: bool = True
    replay_metrics: bool = True
    replay_logs: bool = True
    timestamp_adjustment: TimestampAdjustment = TimestampAdjustment.CURRENT
    target_endpoint: str | None = None
    max_duration_seconds: float | None = None
    loop_enabled: bool = False
    filter_services: list[str] | None = None
    status: ReplayStatus = ReplayStatus.PENDING
    paused: bool = False
    # complete passes over the stored objects; above 1 only when looping
    iterations: int = 0
    total_records: int = 0
    processed_records: int = 0
    current_object: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    error: str | None = None
    error_reason: str | None = None

    @classmethod
    def from_config(cls, config: ReplayConfig, total_records: int) -> "ReplaySession":
        return cls(
            session_id=config.session_id,
            speed_multiplier=config.speed_multiplier,
            replay_traces=config.replay_traces,
            replay_metrics=config.replay_metrics,
            replay_logs=config.replay_logs,
            timestamp_adjustment=config.timestamp_adjustment,
            target_endpoint=config.target_endpoint,
            max_duration_seconds=config.max_duration_seconds,
            loop_enabled=config.loop_enabled,
            filter_services=config.filter_services,
            total_records=total_records,
        )

    @property
    def progress(self) -> float:
        if self.total_records == 0:
            return 1.0 if self.status == ReplayStatus.COMPLETED else 0.0
        return self.processed_records / self.total_records


@dataclass
class ReplayRecord:
    """One decoded batch yielded by the raw replay stream"""

    key: str
    signal_type: SignalType
    captured_at: datetime
    payload: Any


# =============================================================================
# Retention
# =============================================================================


class RetentionPolicy(BaseModel):
    """Maximum age per signal type; None keeps objects forever"""

    traces: timedelta | None = None
    metrics: timedelta | None = None
    logs: timedelta | None = None

    def max_age(self, signal_type: SignalType) -> timedelta | None:
        return getattr(self, signal_type.value)

    @classmethod
    def uniform(cls, max_age: timedelta) -> "RetentionPolicy":
        return cls(traces=max_age, metrics=max_age, logs=max_age)


class CleanupResult(BaseModel):
    """Outcome of one retention pass"""

    scanned_objects: int = 0
    deleted_objects: int = 0
    deleted_keys: list[str] = Field(default_factory=list)
    freed_bytes: int = 0
    skipped_sessions: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0


class StorageUsage(BaseModel):
    """Object and session counts under the sessions/ prefix"""

    total_objects: int = 0
    objects_by_signal: dict[str, int] = Field(default_factory=dict)
    active_sessions: int = 0
    stopped_sessions: int = 0
    failed_sessions: int = 0
