"""
Typing-state tracking on the relay.

Keeps the per-chat typing marker and relays typing:start / typing:stop
to the chat's room, excluding the typist's own connection. Purely in
memory; losing it on restart is acceptable.
"""

import logging
from typing import Any, Optional

from HKChat.core.message.protocol import EventName
from HKChat.core.server.interfaces import Broadcaster
from HKChat.core.typing_state import TypingMarker, TypingMarkerTable

logger = logging.getLogger(__name__)


class TypingTracker:
    """Who is currently typing, per chat."""

    def __init__(self, broadcaster: Broadcaster, expiry_seconds: Optional[float] = None):
        self._broadcaster = broadcaster
        self._table = TypingMarkerTable(expiry_seconds)

    @property
    def table(self) -> TypingMarkerTable:
        return self._table

    async def start(self, chat_id: Any, user_id: Any, user_name: Optional[str] = None,
                    sender: Optional[Any] = None) -> TypingMarker:
        marker = self._table.start(chat_id, user_id, user_name)
        await self._broadcaster.to_room(
            chat_id,
            EventName.TYPING_START,
            {"chatId": chat_id, "userId": user_id, "userName": user_name},
            sender=sender,
        )
        return marker

    async def stop(self, chat_id: Any, user_id: Any, sender: Optional[Any] = None) -> bool:
        cleared = self._table.stop(chat_id, user_id)
        await self._broadcaster.to_room(
            chat_id,
            EventName.TYPING_STOP,
            {"chatId": chat_id, "userId": user_id},
            sender=sender,
        )
        return cleared

    def current(self, chat_id: Any) -> Optional[TypingMarker]:
        return self._table.get(chat_id)

    def forget_user(self, user_id: Any) -> int:
        """Drop markers of a user who went offline."""
        return len(self._table.clear_user(user_id))

    def close(self) -> None:
        self._table.clear()
