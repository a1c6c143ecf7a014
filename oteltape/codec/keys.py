"""
Partition keys for stored batch objects.

    sessions/{sessionId}/raw/{yyyy-MM-dd}/{HH}/{signalType}-{unixMillis}-{uuid}.otlp.gz

The date/hour partition comes from the capture wall-clock time (UTC), so a
session's partitions are append-only and sort chronologically. Uncompressed
batches use the ``.otlp`` suffix.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from oteltape.core.types import SignalType

COMPRESSED_SUFFIX = ".otlp.gz"
PLAIN_SUFFIX = ".otlp"

_KEY_RE = re.compile(
    r"^sessions/(?P<session_id>[^/]+)/raw/"
    r"(?P<date>\d{4}-\d{2}-\d{2})/(?P<hour>\d{2})/"
    r"(?P<signal>traces|metrics|logs)-(?P<millis>\d+)-(?P<suffix>[0-9a-fA-F-]+)"
    r"(?P<ext>\.otlp(?:\.gz)?)$"
)


def raw_prefix(session_id: str) -> str:
    return f"sessions/{session_id}/raw/"


@dataclass(frozen=True)
class StoredObjectKey:
    """Parsed form of a batch object key"""

    session_id: str
    signal_type: SignalType
    captured_at: datetime
    unix_millis: int
    suffix: str
    compressed: bool
    key: str

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.unix_millis, self.suffix)

    @classmethod
    def create(
        cls,
        session_id: str,
        signal_type: SignalType,
        captured_at: datetime,
        compressed: bool = True,
    ) -> "StoredObjectKey":
        """Build a fresh key; the uuid suffix keeps same-millisecond ingests apart."""
        if captured_at.tzinfo is None:
            captured_at = captured_at.replace(tzinfo=timezone.utc)
        captured_at = captured_at.astimezone(timezone.utc)
        unix_millis = int(captured_at.timestamp() * 1000)
        suffix = str(uuid.uuid4())
        ext = COMPRESSED_SUFFIX if compressed else PLAIN_SUFFIX
        key = (
            f"{raw_prefix(session_id)}"
            f"{captured_at:%Y-%m-%d}/{captured_at:%H}/"
            f"{signal_type.value}-{unix_millis}-{suffix}{ext}"
        )
        return cls(
            session_id=session_id,
            signal_type=signal_type,
            captured_at=captured_at,
            unix_millis=unix_millis,
            suffix=suffix,
            compressed=compressed,
            key=key,
        )

    @classmethod
    def parse(cls, key: str) -> "StoredObjectKey | None":
        """Parse a batch key; None for metadata or foreign keys."""
        match = _KEY_RE.match(key)
        if match is None:
            return None

        millis = int(match["millis"])
        try:
            captured_at = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            captured_at = partition_time(match["date"], match["hour"])
            if captured_at is None:
                return None

        return cls(
            session_id=match["session_id"],
            signal_type=SignalType(match["signal"]),
            captured_at=captured_at,
            unix_millis=millis,
            suffix=match["suffix"],
            compressed=match["ext"] == COMPRESSED_SUFFIX,
            key=key,
        )


def partition_time(date: str, hour: str) -> datetime | None:
    """Start of a yyyy-MM-dd/HH partition as an aware UTC datetime."""
    try:
        return datetime.strptime(f"{date} {hour}", "%Y-%m-%d %H").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def sorted_batch_keys(keys: list[str], signal_type: SignalType | None = None) -> list[StoredObjectKey]:
    """Parse, filter by signal and order keys by capture time."""
    parsed = [StoredObjectKey.parse(k) for k in keys]
    selected = [
        p for p in parsed if p is not None and (signal_type is None or p.signal_type == signal_type)
    ]
    return sorted(selected, key=lambda p: p.sort_key)
