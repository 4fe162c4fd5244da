"""
Room membership management.

A room is the broadcast group of one chat (``chat:<id>``). Every handle of
a chat member is joined to that chat's room, at connect time from the
durable memberships and later through the membership commands below.
No other component mutates room state directly.
"""

import logging
from typing import Any, Dict, Iterable, List, Set

from HKChat.core.server.presence import PresenceRegistry

logger = logging.getLogger(__name__)


def room_name(chat_id: Any) -> str:
    """Room name of a chat; ``7`` and ``"7"`` name the same room."""
    return f"chat:{chat_id}"


class RoomMembershipManager:
    """
    Assigns connection handles to rooms.

    Joins and leaves are idempotent. User-level commands act on every
    handle the presence registry holds for that user.
    """

    def __init__(self, presence: PresenceRegistry):
        self._presence = presence
        self._rooms: Dict[str, Set[Any]] = {}

    def join_room(self, connection: Any, chat_id: Any) -> bool:
        """
        Join a handle to a chat's room.

        Returns:
            True if the handle was not already a member
        """
        name = room_name(chat_id)
        members = self._rooms.setdefault(name, set())
        if connection in members:
            return False
        members.add(connection)
        connection.rooms.add(name)
        return True

    def leave_room(self, connection: Any, chat_id: Any) -> bool:
        """
        Remove a handle from a chat's room.

        Returns:
            True if the handle was a member
        """
        name = room_name(chat_id)
        members = self._rooms.get(name)
        connection.rooms.discard(name)
        if not members or connection not in members:
            return False
        members.discard(connection)
        if not members:
            del self._rooms[name]
        return True

    def join_memberships(self, connection: Any, chat_ids: Iterable[Any]) -> int:
        """
        Join a freshly authenticated handle to all of its user's chats.

        Returns:
            Number of rooms joined
        """
        joined = sum(1 for chat_id in chat_ids if self.join_room(connection, chat_id))
        logger.debug("Handle %s of %s joined %d rooms", connection.conn_id, connection.user_id, joined)
        return joined

    def add_user_to_room(self, user_id: Any, chat_id: Any) -> int:
        """
        Join every open handle of a user to a chat's room.

        Returns:
            Number of handles newly joined
        """
        added = sum(1 for conn in self._presence.handles_of(user_id) if self.join_room(conn, chat_id))
        logger.debug("Added %d handles of %s to %s", added, user_id, room_name(chat_id))
        return added

    def remove_user_from_room(self, user_id: Any, chat_id: Any) -> int:
        """
        Remove every open handle of a user from a chat's room.

        Returns:
            Number of handles removed
        """
        removed = sum(1 for conn in self._presence.handles_of(user_id) if self.leave_room(conn, chat_id))
        logger.debug("Removed %d handles of %s from %s", removed, user_id, room_name(chat_id))
        return removed

    def drop_connection(self, connection: Any) -> None:
        """Remove a closing handle from every room it joined."""
        for name in list(connection.rooms):
            members = self._rooms.get(name)
            if members is not None:
                members.discard(connection)
                if not members:
                    del self._rooms[name]
        connection.rooms.clear()

    def members_of(self, chat_id: Any) -> List[Any]:
        return list(self._rooms.get(room_name(chat_id), ()))

    def is_member(self, connection: Any, chat_id: Any) -> bool:
        return connection in self._rooms.get(room_name(chat_id), ())

    def room_names(self) -> List[str]:
        return list(self._rooms.keys())


__all__ = ['RoomMembershipManager', 'room_name']
