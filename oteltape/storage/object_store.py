"""
Object Store Gateway
====================

Async key/blob store used for captured batches and session metadata.
Keys are '/'-separated paths such as ``sessions/cap-1/metadata.json``.

Implementations:
- InMemoryObjectStore: dict-backed, for tests and ephemeral runs
- FileSystemObjectStore: one file per key under a root directory, atomic writes
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path

from oteltape.core.exceptions import ObjectNotFoundError, ObjectStoreError
from oteltape.storage.atomic import atomic_write, is_temp_file

logger = logging.getLogger("oteltape.storage.object_store")


class ObjectStore(ABC):
    """Generic blob store: put/get/list/delete keyed by string path."""

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``, replacing any previous value"""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the blob or raise ObjectNotFoundError"""

    @abstractmethod
    async def list(self, prefix: str) -> list[str]:
        """All keys starting with ``prefix``, sorted"""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``; returns False if it did not exist"""

    async def exists(self, key: str) -> bool:
        try:
            await self.get(key)
        except ObjectNotFoundError:
            return False
        return True

    async def size(self, key: str) -> int:
        """Size of the blob in bytes or raise ObjectNotFoundError"""
        return len(await self.get(key))


class InMemoryObjectStore(ObjectStore):
    """Dict-backed object store. Safe for concurrent asyncio tasks."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}

    async def put(self, key: str, data: bytes) -> None:
        self._objects[key] = bytes(data)

    async def get(self, key: str) -> bytes:
        try:
            return self._objects[key]
        except KeyError:
            raise ObjectNotFoundError(key) from None

    async def list(self, prefix: str) -> list[str]:
        return sorted(k for k in self._objects if k.startswith(prefix))

    async def delete(self, key: str) -> bool:
        return self._objects.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._objects)


class FileSystemObjectStore(ObjectStore):
    """
    Object store rooted at a local directory.

    Blocking file I/O runs in worker threads so the event loop keeps
    serving ingest and replay tasks.
    """

    def __init__(self, root_dir: Path | str, fsync: bool = True) -> None:
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.fsync = fsync

    def _path(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ObjectStoreError("resolve", key, reason="invalid key")
        return self.root_dir.joinpath(*parts)

    async def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        ok = await asyncio.to_thread(atomic_write, path, data, sync=self.fsync)
        if not ok:
            raise ObjectStoreError("put", key, reason="atomic write failed")

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise ObjectNotFoundError(key) from None
        except OSError as e:
            raise ObjectStoreError("get", key, reason=str(e), cause=e) from e

    async def size(self, key: str) -> int:
        path = self._path(key)
        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            raise ObjectNotFoundError(key) from None
        except OSError as e:
            raise ObjectStoreError("stat", key, reason=str(e), cause=e) from e
        return stat.st_size

    def _list_sync(self, prefix: str) -> list[str]:
        keys = []
        for dirpath, _dirnames, filenames in os.walk(self.root_dir):
            for filename in filenames:
                if is_temp_file(filename):
                    continue
                rel = Path(dirpath, filename).relative_to(self.root_dir)
                key = "/".join(rel.parts)
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    async def list(self, prefix: str) -> list[str]:
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except OSError as e:
            raise ObjectStoreError("list", prefix, reason=str(e), cause=e) from e

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ObjectStoreError("delete", key, reason=str(e), cause=e) from e
        return True
