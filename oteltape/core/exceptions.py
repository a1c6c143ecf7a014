import traceback
from datetime import datetime
from typing import Any

# =============================================================================
# Base Exception
# =============================================================================


class OtelTapeError(Exception):
    """
    Base exception for all oteltape errors.

    Provides:
    - unique error code
    - taxonomy reason (SessionNotFound, DataCorrupted, ...)
    - detailed context
    - remediation suggestions
    """

    error_code: str = "TAPE_000"
    error_category: str = "general"
    severity: str = "error"  # debug, info, warning, error, critical
    reason: str = "Unknown"
    recoverable: bool = True

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        suggestions: list[str] | None = None,
        cause: BaseException | None = None,
        recoverable: bool | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.suggestions = suggestions or []
        self.cause = cause
        if recoverable is not None:
            self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.now()
        self.traceback = traceback.format_exc() if cause else None

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception into a dict for logging and API responses"""
        return {
            "error_code": self.error_code,
            "error_category": self.error_category,
            "reason": self.reason,
            "severity": self.severity,
            "message": self.message,
            "details": self.details,
            "suggestions": self.suggestions,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
            "traceback": self.traceback,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.details:
            parts.append(f"Details: {self.details}")
        if self.suggestions:
            parts.append(f"Suggestions: {', '.join(self.suggestions)}")
        return " | ".join(parts)


# =============================================================================
# Configuration Exceptions
# =============================================================================


class ConfigurationError(OtelTapeError):
    """Invalid engine configuration"""

    error_code = "TAPE_CFG_001"
    error_category = "configuration"
    reason = "InvalidConfiguration"
    recoverable = False


class ConfigLoadError(ConfigurationError):
    """Configuration file could not be loaded"""

    error_code = "TAPE_CFG_002"

    def __init__(self, config_path: str, reason: str, **kwargs: Any) -> None:
        super().__init__(
            message=f"Failed to load configuration from '{config_path}'",
            details={"path": config_path, "reason": reason},
            suggestions=[
                "Check if the file exists",
                "Verify the file format (YAML/JSON)",
            ],
            **kwargs,
        )


# =============================================================================
# Collaborator Exceptions (object store, codec, ingestion sink)
# =============================================================================


class ObjectStoreError(OtelTapeError):
    """Generic object store failure"""

    error_code = "TAPE_OBJ_001"
    error_category = "object_store"
    reason = "ObjectStoreFailure"

    def __init__(self, operation: str, key: str, reason: str = "", **kwargs: Any) -> None:
        super().__init__(
            message=f"Object store {operation} failed for '{key}'" + (f": {reason}" if reason else ""),
            details={"operation": operation, "key": key},
            **kwargs,
        )
        self.operation = operation
        self.key = key


class ObjectNotFoundError(ObjectStoreError):
    """Requested key does not exist"""

    error_code = "TAPE_OBJ_002"
    reason = "ObjectNotFound"

    def __init__(self, key: str, **kwargs: Any) -> None:
        super().__init__(operation="get", key=key, reason="no such key", **kwargs)


class CorruptPayloadError(OtelTapeError):
    """OTLP payload bytes could not be parsed"""

    error_code = "TAPE_CDC_001"
    error_category = "codec"
    reason = "CorruptPayload"

    def __init__(self, signal_type: str, description: str, **kwargs: Any) -> None:
        super().__init__(
            message=f"Corrupt {signal_type} payload: {description}",
            details={"signal_type": signal_type},
            **kwargs,
        )
        self.signal_type = signal_type
        self.description = description


class IngestionSinkError(OtelTapeError):
    """Downstream ingester rejected a batch"""

    error_code = "TAPE_SNK_001"
    error_category = "ingestion"
    reason = "IngestionRejected"

    def __init__(self, message: str, status_code: int | None = None, **kwargs: Any) -> None:
        super().__init__(message=message, details={"status_code": status_code}, **kwargs)
        self.status_code = status_code


class TransientIngestionError(IngestionSinkError):
    """Retryable ingestion failure (timeouts, throttling, 5xx)"""

    error_code = "TAPE_SNK_002"
    recoverable = True


class PermanentIngestionError(IngestionSinkError):
    """Non-retryable ingestion failure (4xx, schema rejection)"""

    error_code = "TAPE_SNK_003"
    recoverable = False


# =============================================================================
# Capture Exceptions
# =============================================================================


class CaptureError(OtelTapeError):
    """Error raised by capture session operations"""

    error_code = "TAPE_CAP_001"
    error_category = "capture"

    def __init__(self, message: str, session_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(message=message, **kwargs)
        self.session_id = session_id
        if session_id is not None:
            self.details.setdefault("session_id", session_id)


class ReplayError(OtelTapeError):
    """Error raised by replay session operations"""

    error_code = "TAPE_RPL_001"
    error_category = "replay"

    def __init__(self, message: str, session_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(message=message, **kwargs)
        self.session_id = session_id
        if session_id is not None:
            self.details.setdefault("session_id", session_id)


class SessionNotFoundError(CaptureError, ReplayError):
    """Unknown session, or a capture session that no longer accepts data"""

    error_code = "TAPE_SES_001"
    error_category = "session"
    reason = "SessionNotFound"

    def __init__(self, session_id: str, description: str = "", **kwargs: Any) -> None:
        message = f"Session not found: {session_id}"
        if description:
            message = f"{message} ({description})"
        super().__init__(message=message, session_id=session_id, **kwargs)


class SessionAlreadyActiveError(CaptureError):
    """A capture session with this id is already recording"""

    error_code = "TAPE_CAP_002"
    reason = "SessionAlreadyActive"

    def __init__(self, session_id: str, **kwargs: Any) -> None:
        super().__init__(
            message=f"Capture session already active: {session_id}",
            session_id=session_id,
            suggestions=["Stop the existing session or choose a new session id"],
            **kwargs,
        )


class SessionAlreadyExistsError(CaptureError):
    """Session ids are never reused, even after a session stopped"""

    error_code = "TAPE_CAP_003"
    reason = "SessionAlreadyExists"

    def __init__(self, session_id: str, status: str, **kwargs: Any) -> None:
        super().__init__(
            message=f"Capture session id already used: {session_id} (status={status})",
            session_id=session_id,
            suggestions=["Choose a new session id or let the engine assign one"],
            **kwargs,
        )


class SignalNotCapturedError(CaptureError):
    """The session was not configured to record this signal type"""

    error_code = "TAPE_CAP_004"
    reason = "SignalNotCaptured"

    def __init__(self, session_id: str, signal_type: str, **kwargs: Any) -> None:
        super().__init__(
            message=f"Session {session_id} does not capture {signal_type}",
            session_id=session_id,
            **kwargs,
        )
        self.details["signal_type"] = signal_type


class StorageFailureError(CaptureError, ReplayError):
    """Object store could not persist or return data"""

    error_code = "TAPE_STO_001"
    error_category = "storage"
    reason = "StorageFailure"

    def __init__(
        self, message: str, session_id: str | None = None, cause: BaseException | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message=f"Storage operation failed: {message}",
            session_id=session_id,
            cause=cause,
            **kwargs,
        )


class CompressionFailureError(CaptureError):
    """Batch could not be serialized or compressed"""

    error_code = "TAPE_CAP_005"
    reason = "CompressionFailure"

    def __init__(
        self, message: str, cause: BaseException | None = None, session_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message=f"Compression failed: {message}", session_id=session_id, cause=cause, **kwargs
        )


# =============================================================================
# Replay Exceptions
# =============================================================================


class InvalidSessionStateError(CaptureError, ReplayError):
    """Operation not allowed for the session's current status"""

    error_code = "TAPE_SES_002"
    error_category = "session"
    reason = "InvalidSessionState"

    def __init__(self, session_id: str, status: str, operation: str, **kwargs: Any) -> None:
        super().__init__(
            message=f"Cannot {operation} session {session_id} in status '{status}'",
            session_id=session_id,
            **kwargs,
        )
        self.details.update({"status": status, "operation": operation})
        self.status = status


class ReplayAlreadyRunningError(ReplayError):
    """A replay of this session is still pending or running"""

    error_code = "TAPE_RPL_002"
    reason = "ReplayAlreadyRunning"

    def __init__(self, session_id: str, **kwargs: Any) -> None:
        super().__init__(
            message=f"Replay already running for session {session_id}",
            session_id=session_id,
            suggestions=["Wait for the replay to finish or cancel it"],
            **kwargs,
        )


class DataCorruptedError(ReplayError):
    """Stored data is structurally unusable"""

    error_code = "TAPE_RPL_003"
    reason = "DataCorrupted"
    recoverable = False

    def __init__(self, session_id: str, description: str, **kwargs: Any) -> None:
        super().__init__(
            message=f"Data corrupted for session {session_id}: {description}",
            session_id=session_id,
            **kwargs,
        )
        self.description = description


class DecompressionFailureError(ReplayError):
    """Gzip stream could not be inflated"""

    error_code = "TAPE_RPL_004"
    reason = "DecompressionFailure"
    recoverable = False

    def __init__(self, session_id: str, cause: BaseException | None = None, **kwargs: Any) -> None:
        super().__init__(
            message=f"Failed to decompress data for session {session_id}",
            session_id=session_id,
            cause=cause,
            **kwargs,
        )


class IngestionFailureError(ReplayError):
    """Replayed batch could not be delivered downstream"""

    error_code = "TAPE_RPL_005"
    reason = "IngestionFailure"

    def __init__(
        self, session_id: str, description: str, cause: BaseException | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message=f"Failed to ingest replayed data for session {session_id}: {description}",
            session_id=session_id,
            cause=cause,
            **kwargs,
        )
        self.description = description


class DurationLimitReachedError(ReplayError):
    """Replay ran for its configured maximum duration"""

    error_code = "TAPE_RPL_006"
    reason = "DurationLimitReached"

    def __init__(self, session_id: str, max_duration_seconds: float | None, **kwargs: Any) -> None:
        super().__init__(
            message=f"Replay of session {session_id} stopped after {max_duration_seconds}s",
            session_id=session_id,
            details={"max_duration_seconds": max_duration_seconds},
            **kwargs,
        )
        self.max_duration_seconds = max_duration_seconds


# =============================================================================
# Utility Functions
# =============================================================================


def is_recoverable(error: BaseException) -> bool:
    """Whether the error may succeed on retry"""
    if isinstance(error, OtelTapeError):
        return error.recoverable
    return True


def error_reason(error: BaseException) -> str:
    """Taxonomy reason for an error, falling back to the class name"""
    if isinstance(error, OtelTapeError):
        return error.reason
    return type(error).__name__
