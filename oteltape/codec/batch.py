"""
Batch encoding and decoding.

Capture side: serialize -> gzip -> derive partition key -> put.
Replay side: get -> check gzip framing -> gunzip -> deserialize.

Serialization and compression problems surface as CompressionFailureError,
persistence problems as StorageFailureError. On the read side, damaged
blobs are reported as DataCorruptedError rather than an opaque zlib error.
"""

from __future__ import annotations

import gzip
import logging
import zlib
from typing import Any

from oteltape.codec.keys import StoredObjectKey
from oteltape.codec.otlp import OtlpCodec
from oteltape.core.clock import Clock, SystemClock
from oteltape.core.exceptions import (
    CompressionFailureError,
    CorruptPayloadError,
    DataCorruptedError,
    DecompressionFailureError,
    IngestionFailureError,
    ObjectNotFoundError,
    ObjectStoreError,
    StorageFailureError,
)
from oteltape.core.types import CapturedBatch, CaptureSession, SignalType
from oteltape.storage.object_store import ObjectStore

logger = logging.getLogger("oteltape.codec.batch")

GZIP_MAGIC = b"\x1f\x8b"
# 10-byte header + 8-byte CRC32/ISIZE trailer
GZIP_MIN_SIZE = 18


class BatchEncoder:
    """Turns one inbound batch into one stored object. Holds no session state."""

    def __init__(
        self,
        object_store: ObjectStore,
        clock: Clock | None = None,
        compression_level: int = 6,
    ) -> None:
        self.object_store = object_store
        self.clock = clock or SystemClock()
        self.compression_level = compression_level

    def serialize(
        self, session: CaptureSession, signal_type: SignalType, payload: Any, codec: OtlpCodec
    ) -> bytes:
        try:
            raw = codec.encode(signal_type, payload)
        except CorruptPayloadError as e:
            raise CompressionFailureError(
                f"Failed to serialize {signal_type.value} data", cause=e, session_id=session.session_id
            ) from e

        if not session.compression_enabled:
            return raw

        try:
            return gzip.compress(raw, compresslevel=self.compression_level, mtime=0)
        except (OSError, ValueError, zlib.error) as e:
            raise CompressionFailureError(
                f"Failed to compress {signal_type.value} data", cause=e, session_id=session.session_id
            ) from e

    async def encode_and_store(
        self, session: CaptureSession, signal_type: SignalType, payload: Any, codec: OtlpCodec
    ) -> CapturedBatch:
        data = self.serialize(session, signal_type, payload, codec)
        key = StoredObjectKey.create(
            session.session_id, signal_type, self.clock.now(), compressed=session.compression_enabled
        )

        try:
            await self.object_store.put(key.key, data)
        except ObjectStoreError as e:
            raise StorageFailureError(
                f"Failed to store {signal_type.value} data", session.session_id, cause=e
            ) from e

        logger.debug(f"Stored {signal_type.value} batch {key.key} ({len(data)} bytes)")
        return CapturedBatch(
            key=key.key,
            session_id=session.session_id,
            signal_type=signal_type,
            captured_at=key.captured_at,
            size_bytes=len(data),
            compressed=key.compressed,
        )


def decompress_blob(session_id: str, key: StoredObjectKey, blob: bytes) -> bytes:
    """Inflate a stored object, rejecting truncated or foreign blobs."""
    if not key.compressed:
        if not blob:
            raise DataCorruptedError(session_id, f"empty object {key.key}")
        return blob

    if len(blob) < GZIP_MIN_SIZE:
        raise DataCorruptedError(session_id, f"truncated object {key.key} ({len(blob)} bytes)")
    if blob[:2] != GZIP_MAGIC:
        raise DataCorruptedError(session_id, f"object {key.key} is not a gzip stream (bad magic bytes)")

    try:
        return gzip.decompress(blob)
    except EOFError as e:
        raise DataCorruptedError(session_id, f"truncated gzip stream in {key.key}", cause=e) from e
    except (OSError, zlib.error) as e:
        raise DecompressionFailureError(session_id, cause=e, details={"key": key.key}) from e


def decode_blob(session_id: str, key: StoredObjectKey, blob: bytes, codec: OtlpCodec) -> dict[str, Any]:
    """Inverse of BatchEncoder.serialize for one stored object."""
    raw = decompress_blob(session_id, key, blob)
    try:
        return codec.decode(key.signal_type, raw)
    except CorruptPayloadError as e:
        raise DataCorruptedError(
            session_id, f"failed to parse OTLP data from {key.key}: {e.description}", cause=e
        ) from e


class BatchReader:
    """Fetches and decodes stored batch objects for replay."""

    def __init__(self, object_store: ObjectStore) -> None:
        self.object_store = object_store

    async def read(self, session_id: str, key: StoredObjectKey, codec: OtlpCodec) -> dict[str, Any]:
        try:
            blob = await self.object_store.get(key.key)
        except ObjectNotFoundError as e:
            # retention runs without locks; a replay can lose objects mid-stream
            raise IngestionFailureError(
                session_id, f"stored object {key.key} no longer exists (expired by retention?)", cause=e
            ) from e
        except ObjectStoreError as e:
            raise StorageFailureError(f"Failed to read {key.key}", session_id, cause=e) from e

        return decode_blob(session_id, key, blob, codec)
