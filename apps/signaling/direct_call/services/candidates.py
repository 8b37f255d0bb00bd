"""Per-connection buffer for ICE candidates that cannot be delivered yet."""
from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, List

logger = logging.getLogger(__name__)


class CandidateQueue:
    """Ordered pending candidates keyed by connection id, created lazily."""

    def __init__(self, max_length: int = 100) -> None:
        self._max_length = max_length
        self._pending: Dict[str, Deque[Any]] = {}

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self, connection_id: str) -> int:
        queue = self._pending.get(connection_id)
        return len(queue) if queue else 0

    def append(self, connection_id: str, candidate: Any) -> bool:
        """Buffer a candidate; returns False when the bound was hit and it was dropped."""

        queue = self._pending.setdefault(connection_id, deque())
        if len(queue) >= self._max_length:
            logger.warning(
                "Dropping ICE candidate for connection %s: %d already queued",
                connection_id,
                len(queue),
            )
            return False
        queue.append(candidate)
        return True

    def drain(self, connection_id: str) -> List[Any]:
        """Remove and return the queued candidates in arrival order."""

        queue = self._pending.pop(connection_id, None)
        return list(queue) if queue else []

    def clear(self, connection_id: str) -> None:
        self._pending.pop(connection_id, None)
