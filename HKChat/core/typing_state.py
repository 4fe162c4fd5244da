"""Ephemeral "who is typing" markers.

One marker per chat (last writer wins). A marker is cleared by an explicit
stop from its own user, or automatically a fixed delay after the start that
created it. The automatic clear only removes the marker created by the
start that scheduled it, so a newer start (same or different user) is never
wiped by an older timer.

Used by the relay (authoritative per-process view) and by the client state
(indicator shown to the user).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from HKChat.config import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypingMarker:
    chat_id: Any
    user_id: Any
    user_name: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class TypingMarkerTable:
    """chat -> current typing marker, with timestamp-guarded expiry."""

    def __init__(
        self,
        expiry_seconds: Optional[float] = None,
        on_expire: Optional[Callable[[TypingMarker], None]] = None,
    ):
        self._expiry = config.TYPING_EXPIRY_SECONDS if expiry_seconds is None else expiry_seconds
        self._on_expire = on_expire
        self._markers: Dict[str, TypingMarker] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    @property
    def expiry_seconds(self) -> float:
        return self._expiry

    @staticmethod
    def _key(chat_id: Any) -> str:
        return str(chat_id)

    def start(self, chat_id: Any, user_id: Any, user_name: Optional[str] = None) -> TypingMarker:
        """Record (or overwrite) the chat's marker and schedule its expiry."""
        key = self._key(chat_id)
        marker = TypingMarker(chat_id, user_id, user_name)
        self._markers[key] = marker

        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self._expiry, self._expire, key, marker)
        return marker

    def stop(self, chat_id: Any, user_id: Any) -> bool:
        """
        Clear the chat's marker if it belongs to this user.

        Returns:
            True if a marker was cleared
        """
        key = self._key(chat_id)
        current = self._markers.get(key)
        if current is None or current.user_id != user_id:
            return False
        self._remove(key)
        return True

    def _expire(self, key: str, marker: TypingMarker) -> None:
        current = self._markers.get(key)
        if current is not marker or current.timestamp != marker.timestamp:
            return
        self._remove(key)
        logger.debug("Typing marker of %s in chat %s expired", marker.user_id, marker.chat_id)
        if self._on_expire is not None:
            try:
                self._on_expire(marker)
            except Exception as e:
                logger.exception("Typing expiry callback failed: %s", e)

    def _remove(self, key: str) -> None:
        self._markers.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def get(self, chat_id: Any) -> Optional[TypingMarker]:
        return self._markers.get(self._key(chat_id))

    def markers(self) -> Dict[str, TypingMarker]:
        return dict(self._markers)

    def clear_user(self, user_id: Any) -> List[TypingMarker]:
        """Drop every marker held by a user, without callbacks."""
        dropped = [m for m in self._markers.values() if m.user_id == user_id]
        for marker in dropped:
            self._remove(self._key(marker.chat_id))
        return dropped

    def clear(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._markers.clear()

    def __len__(self) -> int:
        return len(self._markers)
