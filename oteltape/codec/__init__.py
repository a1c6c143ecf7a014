"""
oteltape codec: OTLP serialization, gzip framing, partition keys and
timestamp rewriting.
"""

from .batch import BatchEncoder, BatchReader, decode_blob, decompress_blob
from .keys import StoredObjectKey, raw_prefix, sorted_batch_keys
from .otlp import JsonOtlpCodec, OtlpCodec, ProtobufOtlpCodec, count_records, get_codec
from .timestamps import TimestampRewriter, earliest_timestamp, shift_timestamps

__all__ = [
    "BatchEncoder",
    "BatchReader",
    "decode_blob",
    "decompress_blob",
    "StoredObjectKey",
    "raw_prefix",
    "sorted_batch_keys",
    "OtlpCodec",
    "JsonOtlpCodec",
    "ProtobufOtlpCodec",
    "get_codec",
    "count_records",
    "TimestampRewriter",
    "earliest_timestamp",
    "shift_timestamps",
]
