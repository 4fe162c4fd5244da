"""ICE candidates received before the remote description is set."""

import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List

logger = logging.getLogger(__name__)


class IceCandidateBuffer:
    """
    FIFO of early candidates for one call.

    ``flush`` applies everything buffered in arrival order, including
    candidates pushed while the flush is running, and empties the buffer.
    A candidate that fails to apply is logged and skipped.
    """

    def __init__(self):
        self._pending: Deque[Any] = deque()

    def push(self, candidate: Any) -> None:
        self._pending.append(candidate)

    async def flush(self, apply: Callable[[Any], Awaitable[None]]) -> int:
        """
        Returns:
            Number of candidates applied successfully
        """
        applied = 0
        while self._pending:
            candidate = self._pending.popleft()
            try:
                await apply(candidate)
                applied += 1
            except Exception as e:
                logger.warning("Failed to add buffered ICE candidate: %s", e)
        return applied

    def clear(self) -> None:
        self._pending.clear()

    def snapshot(self) -> List[Any]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)
