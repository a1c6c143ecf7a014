"""
Choosing a capture session to replay.

Only stopped sessions are candidates. A session's kind comes from its id
prefix (``seed-``, ``training-``, anything else is a plain capture) and its
size is the total number of captured batches.
"""

from __future__ import annotations

import logging
import random

from oteltape.core.exceptions import SessionNotFoundError
from oteltape.core.types import (
    CaptureSession,
    CaptureStatus,
    SelectionStrategy,
    SessionFilter,
    SessionKind,
    session_kind,
)
from oteltape.storage.session_store import CaptureSessionStore

logger = logging.getLogger("oteltape.replay.selection")


class SessionSelector:
    def __init__(self, session_store: CaptureSessionStore, rng: random.Random | None = None) -> None:
        self.session_store = session_store
        self.rng = rng or random.Random()

    async def list_sessions(self, session_filter: SessionFilter | None = None) -> list[CaptureSession]:
        sessions = [s for s in await self.session_store.list() if s.status == CaptureStatus.STOPPED]
        if session_filter is not None:
            sessions = [s for s in sessions if session_filter.matches(s)]
        return sessions

    async def select(
        self,
        strategy: SelectionStrategy | str = SelectionStrategy.LATEST,
        session_filter: SessionFilter | None = None,
    ) -> CaptureSession:
        """Pick one replayable session; SessionNotFoundError when nothing matches."""
        strategy = SelectionStrategy(strategy)
        sessions = await self.list_sessions(session_filter)
        if not sessions:
            raise SessionNotFoundError("*", "no stopped sessions match the selection criteria")

        if strategy == SelectionStrategy.LATEST:
            selected = max(sessions, key=lambda s: s.started_at)
        elif strategy == SelectionStrategy.LARGEST:
            selected = max(sessions, key=lambda s: s.total_batches)
        elif strategy == SelectionStrategy.SMALLEST:
            selected = min(sessions, key=lambda s: s.total_batches)
        else:
            selected = self.rng.choice(sessions)

        logger.info(f"Selected session {selected.session_id} ({strategy.value}, {len(sessions)} candidates)")
        return selected


__all__ = ["SelectionStrategy", "SessionFilter", "SessionKind", "SessionSelector", "session_kind"]
