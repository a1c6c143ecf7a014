"""
oteltape storage: object store gateway and session stores.
"""

from .atomic import atomic_write
from .object_store import FileSystemObjectStore, InMemoryObjectStore, ObjectStore
from .session_store import (
    CaptureSessionStore,
    InMemoryReplaySessionStore,
    ObjectStoreReplaySessionStore,
    ReplaySessionStore,
)

__all__ = [
    "atomic_write",
    "ObjectStore",
    "InMemoryObjectStore",
    "FileSystemObjectStore",
    "CaptureSessionStore",
    "ReplaySessionStore",
    "InMemoryReplaySessionStore",
    "ObjectStoreReplaySessionStore",
]
