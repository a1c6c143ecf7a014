"""
oteltape replay: session lifecycle, pacing, ingestion sinks and session
selection.
"""

from .manager import ReplaySessionManager
from .pacer import ReplayPacer, ReplayStream
from .selection import SelectionStrategy, SessionFilter, SessionKind, SessionSelector
from .sink import CollectingSink, HttpIngestionSink, IngestionSink

__all__ = [
    "ReplaySessionManager",
    "ReplayPacer",
    "ReplayStream",
    "IngestionSink",
    "HttpIngestionSink",
    "CollectingSink",
    "SelectionStrategy",
    "SessionFilter",
    "SessionKind",
    "SessionSelector",
]
