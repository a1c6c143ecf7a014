"""
Session stores.

Capture and replay session records live behind these small store classes
instead of process-global maps, so the session managers can be tested
without a live process and the records can move to a real database
without touching the managers.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from pydantic import ValidationError

from oteltape.core.exceptions import (
    ObjectNotFoundError,
    ObjectStoreError,
    SessionNotFoundError,
    StorageFailureError,
)
from oteltape.core.types import CaptureSession, ReplaySession
from oteltape.storage.object_store import ObjectStore

logger = logging.getLogger("oteltape.storage.session_store")

SESSIONS_PREFIX = "sessions/"
METADATA_NAME = "metadata.json"
REPLAYS_PREFIX = "replays/"


def metadata_key(session_id: str) -> str:
    return f"{SESSIONS_PREFIX}{session_id}/{METADATA_NAME}"


def session_id_from_metadata_key(key: str) -> str | None:
    """'sessions/{id}/metadata.json' -> id; None for any other key"""
    parts = key.split("/")
    if len(parts) == 3 and parts[0] == SESSIONS_PREFIX.rstrip("/") and parts[2] == METADATA_NAME:
        return parts[1]
    return None


class CaptureSessionStore:
    """
    Capture session records persisted as ``sessions/{id}/metadata.json``.

    Every read goes to the object store, so status queries always reflect
    the last persisted state.
    """

    def __init__(self, object_store: ObjectStore, list_concurrency: int = 10) -> None:
        self.object_store = object_store
        self.list_concurrency = list_concurrency

    async def get(self, session_id: str) -> CaptureSession:
        key = metadata_key(session_id)
        try:
            raw = await self.object_store.get(key)
        except ObjectNotFoundError:
            raise SessionNotFoundError(session_id) from None
        except ObjectStoreError as e:
            raise StorageFailureError("Failed to read session metadata", session_id, cause=e) from e

        try:
            return CaptureSession.model_validate_json(raw)
        except ValidationError as e:
            raise StorageFailureError(
                "Failed to parse session metadata", session_id, cause=e
            ) from e

    async def find(self, session_id: str) -> CaptureSession | None:
        try:
            return await self.get(session_id)
        except SessionNotFoundError:
            return None

    async def put(self, session: CaptureSession) -> None:
        key = metadata_key(session.session_id)
        try:
            await self.object_store.put(key, session.model_dump_json(indent=2).encode("utf-8"))
        except ObjectStoreError as e:
            raise StorageFailureError(
                "Failed to store session metadata", session.session_id, cause=e
            ) from e

    async def list_ids(self) -> list[str]:
        try:
            keys = await self.object_store.list(SESSIONS_PREFIX)
        except ObjectStoreError as e:
            raise StorageFailureError("Failed to list capture sessions", cause=e) from e
        return [sid for sid in map(session_id_from_metadata_key, keys) if sid]

    async def list(self) -> list[CaptureSession]:
        """All readable sessions; unreadable metadata is logged and skipped."""
        session_ids = await self.list_ids()
        semaphore = asyncio.Semaphore(self.list_concurrency)

        async def load(session_id: str) -> CaptureSession | None:
            async with semaphore:
                try:
                    return await self.get(session_id)
                except (SessionNotFoundError, StorageFailureError) as e:
                    logger.warning(f"Skipping unreadable session {session_id}: {e.message}")
                    return None

        loaded = await asyncio.gather(*(load(sid) for sid in session_ids))
        return [s for s in loaded if s is not None]


class ReplaySessionStore(ABC):
    """Storage for replay session progress records."""

    @abstractmethod
    async def get(self, session_id: str) -> ReplaySession | None: ...

    @abstractmethod
    async def put(self, session: ReplaySession) -> None: ...

    @abstractmethod
    async def list(self) -> list[ReplaySession]: ...


class InMemoryReplaySessionStore(ReplaySessionStore):
    def __init__(self) -> None:
        self._sessions: dict[str, ReplaySession] = {}

    async def get(self, session_id: str) -> ReplaySession | None:
        session = self._sessions.get(session_id)
        return session.model_copy() if session else None

    async def put(self, session: ReplaySession) -> None:
        self._sessions[session.session_id] = session.model_copy()

    async def list(self) -> list[ReplaySession]:
        return [s.model_copy() for s in self._sessions.values()]


class ObjectStoreReplaySessionStore(ReplaySessionStore):
    """Replay records persisted as ``replays/{id}/status.json``."""

    def __init__(self, object_store: ObjectStore) -> None:
        self.object_store = object_store

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{REPLAYS_PREFIX}{session_id}/status.json"

    async def get(self, session_id: str) -> ReplaySession | None:
        try:
            raw = await self.object_store.get(self._key(session_id))
        except ObjectNotFoundError:
            return None
        except ObjectStoreError as e:
            raise StorageFailureError("Failed to read replay status", session_id, cause=e) from e
        try:
            return ReplaySession.model_validate_json(raw)
        except ValidationError as e:
            raise StorageFailureError("Failed to parse replay status", session_id, cause=e) from e

    async def put(self, session: ReplaySession) -> None:
        try:
            await self.object_store.put(
                self._key(session.session_id), session.model_dump_json(indent=2).encode("utf-8")
            )
        except ObjectStoreError as e:
            raise StorageFailureError(
                "Failed to store replay status", session.session_id, cause=e
            ) from e

    async def list(self) -> list[ReplaySession]:
        try:
            keys = await self.object_store.list(REPLAYS_PREFIX)
        except ObjectStoreError as e:
            raise StorageFailureError("Failed to list replays", cause=e) from e
        sessions = []
        for key in keys:
            if not key.endswith("/status.json"):
                continue
            session = await self.get(key.split("/")[1])
            if session is not None:
                sessions.append(session)
        return sessions
