"""Presence tracking for HKChat.

Tracks which users are online across multiple devices (connection handles).
This is the process-wide authority for "is this user online".

Design:
- user -> conn_id -> handle; a user is online iff that map is non-empty.
- The whole entry is deleted when its last handle goes away; that deletion
  is the one and only trigger for the offline transition.
- Registries are plain objects injected into the relay, so tests can run
  several isolated instances side by side.
- Transitions are announced to listeners (broadcast, last-seen persistence).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class PresenceChange:
    """An online/offline transition of one user."""
    user_id: Any
    is_online: bool
    last_seen: Optional[str] = None
    connection: Optional[Any] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"userId": self.user_id, "isOnline": self.is_online}
        if not self.is_online:
            payload["lastSeen"] = self.last_seen
        return payload


PresenceListener = Callable[[PresenceChange], Awaitable[None]]


class PresenceRegistry:
    """In-memory mapping from user identity to its live connection handles."""

    def __init__(self, clock: Callable[[], str] = utc_timestamp):
        self._presence: Dict[Any, Dict[str, Any]] = {}
        self._last_seen: Dict[Any, str] = {}
        self._listeners: List[Tuple[int, PresenceListener]] = []
        self._clock = clock

    def add_listener(self, listener: PresenceListener, priority: int = 100) -> None:
        """Register a coroutine called on every transition. Lower priority runs first."""
        self._listeners.append((priority, listener))
        self._listeners.sort(key=lambda item: item[0])

    async def register(self, user_id: Any, connection: Any) -> bool:
        """
        Add a handle to the user's set.

        Returns:
            True if this was the user's first handle (offline -> online)
        """
        conns = self._presence.get(user_id)
        first = conns is None
        if first:
            conns = self._presence[user_id] = {}
        conns[connection.conn_id] = connection
        logger.debug("Registered handle %s for %s (%d open)", connection.conn_id, user_id, len(conns))

        if first:
            logger.info("User %s is online", user_id)
            await self._notify(PresenceChange(user_id, True, connection=connection))
        return first

    async def unregister(self, user_id: Any, conn_id: str) -> Optional[PresenceChange]:
        """
        Remove a handle.

        Returns:
            The offline transition if this was the user's last handle,
            otherwise None. Unknown handles are ignored.
        """
        conns = self._presence.get(user_id)
        if not conns or conns.pop(conn_id, None) is None:
            return None
        if conns:
            logger.debug("Unregistered handle %s for %s (%d still open)", conn_id, user_id, len(conns))
            return None

        del self._presence[user_id]
        last_seen = self._clock()
        self._last_seen[user_id] = last_seen
        change = PresenceChange(user_id, False, last_seen=last_seen)
        logger.info("User %s is offline (last seen %s)", user_id, last_seen)
        await self._notify(change)
        return change

    async def _notify(self, change: PresenceChange) -> None:
        for _, listener in list(self._listeners):
            try:
                await listener(change)
            except Exception as e:
                logger.exception("Presence listener failed for %s: %s", change.user_id, e)

    def is_online(self, user_id: Any) -> bool:
        return bool(self._presence.get(user_id))

    def handles_of(self, user_id: Any) -> Set[Any]:
        """Every handle currently registered for the user (all devices)."""
        return set((self._presence.get(user_id) or {}).values())

    def get_handle(self, user_id: Any, conn_id: str) -> Optional[Any]:
        return (self._presence.get(user_id) or {}).get(conn_id)

    def all_handles(self) -> List[Any]:
        return [conn for conns in self._presence.values() for conn in conns.values()]

    def online_users(self) -> List[Any]:
        return list(self._presence.keys())

    def last_seen(self, user_id: Any) -> Optional[str]:
        return self._last_seen.get(user_id)

    def snapshot(self) -> Dict[Any, List[str]]:
        """Return {user_id: [conn_id, ...]}."""
        return {user: list(conns.keys()) for user, conns in self._presence.items()}

    def __len__(self) -> int:
        return len(self._presence)

    def __contains__(self, user_id: Any) -> bool:
        return self.is_online(user_id)
