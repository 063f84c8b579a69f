# app/core/engine/pause_registry.py
"""
In-memory table of subscribers waiting to answer a question node.

At most one pause per subscriber: ``pause()`` overwrites, ``consume()``
removes. State lives only as long as the engine instance.
"""
from __future__ import annotations

from typing import Optional

from app.core.engine.domain import PausedState


class PauseRegistry:

    def __init__(self) -> None:
        self._paused: dict[str, PausedState] = {}

    def pause(self, subscriber_id: str, state: PausedState) -> None:
        self._paused[subscriber_id] = state

    def get(self, subscriber_id: str) -> Optional[PausedState]:
        return self._paused.get(subscriber_id)

    def consume(self, subscriber_id: str) -> Optional[PausedState]:
        """Remove and return the pending pause, if any."""
        return self._paused.pop(subscriber_id, None)

    def __contains__(self, subscriber_id: str) -> bool:
        return subscriber_id in self._paused

    def __len__(self) -> int:
        return len(self._paused)
