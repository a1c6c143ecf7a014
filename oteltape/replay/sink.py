"""
Ingestion sinks for replayed batches.

A sink accepts one decoded, timestamp-adjusted batch per call and either
returns (acknowledged) or raises TransientIngestionError /
PermanentIngestionError so the pacer can decide between retry and abort.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from oteltape.codec.otlp import JsonOtlpCodec
from oteltape.core.exceptions import PermanentIngestionError, TransientIngestionError
from oteltape.core.types import SignalType

logger = logging.getLogger("oteltape.replay.sink")

REPLAY_HEADER = "X-Replay-Session"
TRANSIENT_STATUS_CODES = frozenset({408, 429})


class IngestionSink(ABC):
    """Downstream receiver of replayed batches"""

    @abstractmethod
    async def send(self, signal_type: SignalType, payload: dict[str, Any]) -> None: ...

    async def close(self) -> None:
        return None


def signal_url(endpoint: str, signal_type: SignalType) -> str:
    """OTLP/HTTP path for a signal; endpoints that already name a /v1/ path are used as is."""
    if "/v1/" in endpoint:
        return endpoint
    return f"{endpoint.rstrip('/')}/v1/{signal_type.value}"


class HttpIngestionSink(IngestionSink):
    """
    POSTs OTLP/JSON to ``{endpoint}/v1/{signal}``.

    408, 429, 5xx and connection errors are transient; every other non-2xx
    status is permanent.
    """

    def __init__(
        self,
        endpoint: str = "http://localhost:4318",
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        replay_session_id: str | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.codec = JsonOtlpCodec()
        self.headers = {
            "Content-Type": self.codec.content_type,
            "User-Agent": "oteltape-replay",
            REPLAY_HEADER: replay_session_id or "true",
            **(headers or {}),
        }
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers)
        return self._session

    async def send(self, signal_type: SignalType, payload: dict[str, Any]) -> None:
        url = signal_url(self.endpoint, signal_type)
        session = await self._get_session()

        try:
            async with session.post(
                url,
                data=self.codec.encode(signal_type, payload),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if 200 <= response.status < 300:
                    return

                body = await response.text()
                message = f"{url} returned {response.status}: {body[:200]}"
                if response.status in TRANSIENT_STATUS_CODES or response.status >= 500:
                    raise TransientIngestionError(message, status_code=response.status)
                raise PermanentIngestionError(message, status_code=response.status)

        except asyncio.TimeoutError as e:
            raise TransientIngestionError(f"{url} timed out after {self.timeout}s", cause=e) from e
        except aiohttp.ClientError as e:
            raise TransientIngestionError(f"{url} unreachable: {e}", cause=e) from e

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class CollectingSink(IngestionSink):
    """
    In-process sink that keeps every acknowledged batch.

    ``failures`` is consumed one entry per send call: an exception instance
    is raised instead of acknowledging. ``delay`` makes each send sleep on
    the event loop first, to exercise ingestion timeouts.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.batches: list[tuple[SignalType, dict[str, Any]]] = []
        self.failures: list[BaseException] = []
        self.delay = delay
        self.calls = 0
        self.closed = False

    async def send(self, signal_type: SignalType, payload: dict[str, Any]) -> None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        self.batches.append((signal_type, payload))

    def payloads(self, signal_type: SignalType | None = None) -> list[dict[str, Any]]:
        return [p for s, p in self.batches if signal_type is None or s == signal_type]

    async def close(self) -> None:
        self.closed = True
