"""
Timestamp rewriting for replayed OTLP batches.

Every OTLP/JSON time field ends in ``UnixNano`` (span start/end, event
time, data point start/time, log time/observed time). Rewriting returns a
shifted copy; a zero value means "unset" in OTLP and is left alone.
String values stay strings, integer values stay integers.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from oteltape.core.types import TimestampAdjustment

TIME_FIELD_SUFFIX = "UnixNano"


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def iter_timestamps(node: Any) -> Iterator[int]:
    """Yield every non-zero ``*UnixNano`` value in a decoded payload."""
    if isinstance(node, dict):
        for key, value in node.items():
            if key.endswith(TIME_FIELD_SUFFIX):
                ts = _as_int(value)
                if ts:
                    yield ts
            elif isinstance(value, (dict, list)):
                yield from iter_timestamps(value)
    elif isinstance(node, list):
        for item in node:
            yield from iter_timestamps(item)


def earliest_timestamp(payload: Any) -> int | None:
    return min(iter_timestamps(payload), default=None)


def shift_timestamps(node: Any, offset_ns: int) -> Any:
    """Return a copy of ``node`` with every time field moved by ``offset_ns``."""
    if isinstance(node, dict):
        shifted = {}
        for key, value in node.items():
            if key.endswith(TIME_FIELD_SUFFIX):
                ts = _as_int(value)
                if ts:
                    new_value = ts + offset_ns
                    shifted[key] = str(new_value) if isinstance(value, str) else new_value
                    continue
            shifted[key] = shift_timestamps(value, offset_ns)
        return shifted
    if isinstance(node, list):
        return [shift_timestamps(item, offset_ns) for item in node]
    return node


class TimestampRewriter:
    """
    Applies a timestamp policy to one replay stream.

    With ``current`` the offset is fixed on the first batch that carries a
    timestamp: ``replay_start_ns - earliest timestamp in that batch``. The
    same offset is then applied to every later batch so the recorded
    spacing is preserved.
    """

    def __init__(self, adjustment: TimestampAdjustment, replay_start_ns: int) -> None:
        self.adjustment = adjustment
        self.replay_start_ns = replay_start_ns
        self.offset_ns: int | None = None

    def rewrite(self, payload: Any) -> Any:
        if self.adjustment == TimestampAdjustment.ORIGINAL:
            return payload

        if self.offset_ns is None:
            earliest = earliest_timestamp(payload)
            if earliest is None:
                return payload
            self.offset_ns = self.replay_start_ns - earliest

        return shift_timestamps(payload, self.offset_ns)
