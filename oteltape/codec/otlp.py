"""
OTLP payload codecs.

A codec turns one decoded telemetry batch (the OTLP/JSON mapping, e.g.
``{"resourceSpans": [...]}``) into bytes and back. Malformed input raises
``CorruptPayloadError`` so replay can tell corrupt history apart from
other failures.

Payloads that are already ``bytes`` are assumed to be serialized in the
codec's format and are stored verbatim.
"""

from __future__ import annotations

import base64
import copy
import json
from abc import ABC, abstractmethod
from collections.abc import Callable, Collection, Mapping
from typing import Any

from google.protobuf import json_format
from google.protobuf.message import DecodeError, Message
from opentelemetry.proto.collector.logs.v1.logs_service_pb2 import ExportLogsServiceRequest
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2 import (
    ExportMetricsServiceRequest,
)
from opentelemetry.proto.collector.trace.v1.trace_service_pb2 import ExportTraceServiceRequest

from oteltape.core.exceptions import CorruptPayloadError
from oteltape.core.types import PayloadFormat, SignalType

RESOURCE_FIELDS = {
    SignalType.TRACES: "resourceSpans",
    SignalType.METRICS: "resourceMetrics",
    SignalType.LOGS: "resourceLogs",
}


class OtlpCodec(ABC):
    """encode(signal, payload) -> bytes / decode(signal, bytes) -> payload"""

    payload_format: PayloadFormat
    content_type: str

    @abstractmethod
    def encode(self, signal_type: SignalType, payload: Any) -> bytes: ...

    @abstractmethod
    def decode(self, signal_type: SignalType, data: bytes) -> dict[str, Any]: ...


class JsonOtlpCodec(OtlpCodec):
    """OTLP/JSON encoding"""

    payload_format = PayloadFormat.JSON
    content_type = "application/json"

    def encode(self, signal_type: SignalType, payload: Any) -> bytes:
        if isinstance(payload, (bytes, bytearray, memoryview)):
            return bytes(payload)
        if not isinstance(payload, Mapping):
            raise CorruptPayloadError(
                signal_type.value, f"expected a mapping, got {type(payload).__name__}"
            )
        try:
            return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise CorruptPayloadError(signal_type.value, f"not JSON serializable: {e}", cause=e) from e

    def decode(self, signal_type: SignalType, data: bytes) -> dict[str, Any]:
        try:
            decoded = json.loads(data.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise CorruptPayloadError(signal_type.value, "payload is not valid UTF-8", cause=e) from e
        except json.JSONDecodeError as e:
            raise CorruptPayloadError(signal_type.value, f"invalid JSON: {e.msg}", cause=e) from e

        if not isinstance(decoded, dict):
            raise CorruptPayloadError(
                signal_type.value, f"top-level value is {type(decoded).__name__}, not an object"
            )
        return decoded


class ProtobufOtlpCodec(OtlpCodec):
    """
    OTLP/protobuf encoding using the opentelemetry-proto export requests.

    Decoded payloads follow the OTLP/JSON mapping: camelCase field names,
    64-bit integers as strings, trace and span ids as lowercase hex.
    """

    payload_format = PayloadFormat.PROTOBUF
    content_type = "application/x-protobuf"

    MESSAGE_TYPES: dict[SignalType, type[Message]] = {
        SignalType.TRACES: ExportTraceServiceRequest,
        SignalType.METRICS: ExportMetricsServiceRequest,
        SignalType.LOGS: ExportLogsServiceRequest,
    }

    def encode(self, signal_type: SignalType, payload: Any) -> bytes:
        if isinstance(payload, (bytes, bytearray, memoryview)):
            return bytes(payload)
        message_cls = self.MESSAGE_TYPES[signal_type]
        if isinstance(payload, message_cls):
            return payload.SerializeToString()
        if not isinstance(payload, Mapping):
            raise CorruptPayloadError(
                signal_type.value, f"expected a mapping or {message_cls.__name__}"
            )
        # ids are hex on the OTLP/JSON side; ParseDict expects base64
        prepared = copy.deepcopy(dict(payload))
        try:
            _convert_ids(prepared, _hex_to_base64)
        except ValueError as e:
            raise CorruptPayloadError(signal_type.value, f"invalid hex id: {e}", cause=e) from e
        try:
            message = json_format.ParseDict(prepared, message_cls())
        except json_format.ParseError as e:
            raise CorruptPayloadError(signal_type.value, f"not a valid OTLP message: {e}", cause=e) from e
        return message.SerializeToString()

    def decode(self, signal_type: SignalType, data: bytes) -> dict[str, Any]:
        message = self.MESSAGE_TYPES[signal_type]()
        try:
            message.ParseFromString(data)
        except DecodeError as e:
            raise CorruptPayloadError(signal_type.value, f"invalid protobuf: {e}", cause=e) from e
        decoded = json_format.MessageToDict(message)
        _convert_ids(decoded, _base64_to_hex)
        return decoded


# OTLP/JSON writes these bytes fields as hex where the generic protobuf
# JSON mapping uses base64: spans, span links, log records and exemplars.
ID_FIELDS = frozenset({"traceId", "spanId", "parentSpanId"})


def _hex_to_base64(value: str) -> str:
    return base64.b64encode(bytes.fromhex(value)).decode("ascii")


def _base64_to_hex(value: str) -> str:
    return base64.b64decode(value).hex()


def _convert_ids(node: Any, convert: Callable[[str], str]) -> None:
    """Rewrite every id field below ``node`` in place."""
    if isinstance(node, dict):
        for name, value in node.items():
            if name in ID_FIELDS and isinstance(value, str):
                node[name] = convert(value)
            else:
                _convert_ids(value, convert)
    elif isinstance(node, list):
        for item in node:
            _convert_ids(item, convert)


_CODECS: dict[PayloadFormat, type[OtlpCodec]] = {
    PayloadFormat.JSON: JsonOtlpCodec,
    PayloadFormat.PROTOBUF: ProtobufOtlpCodec,
}


def get_codec(payload_format: PayloadFormat | str) -> OtlpCodec:
    """Codec instance for a payload format"""
    return _CODECS[PayloadFormat(payload_format)]()


_DATA_POINT_FIELDS = ("gauge", "sum", "histogram", "exponentialHistogram", "summary")


def count_records(signal_type: SignalType, payload: Mapping[str, Any]) -> int:
    """Number of spans, metric data points or log records in a decoded batch."""
    total = 0
    for resource in payload.get(RESOURCE_FIELDS[signal_type]) or []:
        if signal_type == SignalType.TRACES:
            for scope in resource.get("scopeSpans") or []:
                total += len(scope.get("spans") or [])
        elif signal_type == SignalType.LOGS:
            for scope in resource.get("scopeLogs") or []:
                total += len(scope.get("logRecords") or [])
        else:
            for scope in resource.get("scopeMetrics") or []:
                for metric in scope.get("metrics") or []:
                    for name in _DATA_POINT_FIELDS:
                        if name in metric:
                            total += len((metric[name] or {}).get("dataPoints") or [])
    return total


def service_name(resource_entry: Mapping[str, Any]) -> str | None:
    """``service.name`` resource attribute of one resourceSpans/Metrics/Logs entry."""
    for attribute in (resource_entry.get("resource") or {}).get("attributes") or []:
        if attribute.get("key") == "service.name":
            return (attribute.get("value") or {}).get("stringValue")
    return None


def filter_services(
    signal_type: SignalType, payload: Mapping[str, Any], services: Collection[str]
) -> dict[str, Any]:
    """Shallow copy of ``payload`` keeping only resources of the given services."""
    field = RESOURCE_FIELDS[signal_type]
    kept = [r for r in payload.get(field) or [] if service_name(r) in services]
    return {**payload, field: kept}
