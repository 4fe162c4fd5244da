"""
Tests for room membership.
"""

import pytest

from HKChat.core.server.rooms import room_name
from HKChat.test.conftest import FakeConnection


class TestRoomMembershipManager:
    """Test joins, leaves and user-level membership commands."""

    def test_room_name_normalizes_ids(self):
        assert room_name(7) == room_name("7") == "chat:7"

    def test_join_is_idempotent(self, rooms):
        conn = FakeConnection(1)
        assert rooms.join_room(conn, 7) is True
        assert rooms.join_room(conn, "7") is False
        assert rooms.members_of(7) == [conn]
        assert conn.rooms == {"chat:7"}

    def test_leave_removes_empty_room(self, rooms):
        conn = FakeConnection(1)
        rooms.join_room(conn, 7)
        assert rooms.leave_room(conn, 7) is True
        assert rooms.leave_room(conn, 7) is False
        assert "chat:7" not in rooms.room_names()

    def test_join_memberships(self, rooms):
        conn = FakeConnection(1)
        assert rooms.join_memberships(conn, [1, 2, 3]) == 3
        assert conn.rooms == {"chat:1", "chat:2", "chat:3"}

    @pytest.mark.asyncio
    async def test_add_user_joins_every_device(self, presence, rooms):
        phone, laptop = FakeConnection(2), FakeConnection(2)
        await presence.register(2, phone)
        await presence.register(2, laptop)

        assert rooms.add_user_to_room(2, 9) == 2
        assert set(rooms.members_of(9)) == {phone, laptop}

        assert rooms.remove_user_from_room(2, 9) == 2
        assert rooms.members_of(9) == []

    def test_add_offline_user_is_a_noop(self, rooms):
        assert rooms.add_user_to_room(42, 9) == 0
        assert rooms.members_of(9) == []

    def test_drop_connection_leaves_all_rooms(self, rooms):
        conn, other = FakeConnection(1), FakeConnection(2)
        rooms.join_memberships(conn, [1, 2])
        rooms.join_room(other, 2)

        rooms.drop_connection(conn)
        assert conn.rooms == set()
        assert rooms.members_of(2) == [other]
        assert "chat:1" not in rooms.room_names()
