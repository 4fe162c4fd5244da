"""
Tests for the client chat state.
"""

import asyncio

import pytest

from HKChat.core.client import ClientChatState
from HKChat.test.conftest import FakeSignaling


@pytest.fixture
def chat_state():
    changes = []
    state = ClientChatState(1, typing_expiry=0.05, toast_seconds=0.05, on_change=changes.append)
    state.changes = changes
    yield state
    state.close()


class TestPresence:
    def test_online_and_offline_through_user_online(self, chat_state):
        chat_state.handle_user_online({"userId": 2, "isOnline": True})
        assert chat_state.is_online(2)

        chat_state.handle_user_online({"userId": 2, "isOnline": False, "lastSeen": "2026-01-01T00:00:00.000Z"})
        assert not chat_state.is_online(2)
        assert chat_state.last_seen(2) == "2026-01-01T00:00:00.000Z"
        assert chat_state.changes == ["presence", "presence"]

    def test_user_offline_event(self, chat_state):
        chat_state.handle_user_online({"userId": 2, "isOnline": True})
        chat_state.handle_user_offline({"userId": 2, "lastSeen": "t"})
        assert chat_state.online_users == set()
        assert chat_state.last_seen(2) == "t"


class TestTyping:
    @pytest.mark.asyncio
    async def test_indicator_expires(self, chat_state):
        chat_state.handle_typing_start({"chatId": 7, "userId": 2, "userName": "Bob"})
        assert chat_state.typing_in(7).user_name == "Bob"

        await asyncio.sleep(0.15)
        assert chat_state.typing_in(7) is None
        assert chat_state.changes.count("typing") == 2

    @pytest.mark.asyncio
    async def test_restart_extends_indicator(self, chat_state):
        chat_state.handle_typing_start({"chatId": 7, "userId": 2})
        await asyncio.sleep(0.03)
        chat_state.handle_typing_start({"chatId": 7, "userId": 2})
        await asyncio.sleep(0.03)
        assert chat_state.typing_in(7) is not None

    @pytest.mark.asyncio
    async def test_own_typing_is_ignored(self, chat_state):
        chat_state.handle_typing_start({"chatId": 7, "userId": 1})
        assert chat_state.typing_in(7) is None

    @pytest.mark.asyncio
    async def test_stop(self, chat_state):
        chat_state.handle_typing_start({"chatId": 7, "userId": 2})
        chat_state.handle_typing_stop({"chatId": 7, "userId": 3})
        assert chat_state.typing_in(7) is not None
        chat_state.handle_typing_stop({"chatId": 7, "userId": 2})
        assert chat_state.typing_in(7) is None


class TestChatsAndToasts:
    @pytest.mark.asyncio
    async def test_message_in_background_chat_counts_and_toasts(self, chat_state):
        chat_state.handle_message_receive({
            "chatId": 5, "message": {"id": 1, "content": "hi", "sender_name": "Bob"},
        })

        assert chat_state.chat(5).unread == 1
        assert [(t.title, t.body, t.chat_id) for t in chat_state.toasts] == [("Bob", "hi", 5)]

    @pytest.mark.asyncio
    async def test_message_in_active_chat_is_silent(self, chat_state):
        chat_state.open_chat(5)
        chat_state.handle_message_receive({"chatId": 5, "message": {"id": 1, "content": "hi"}})

        assert chat_state.chat(5).unread == 0
        assert chat_state.chat(5).last_message == {"id": 1, "content": "hi"}
        assert chat_state.toasts == []

    @pytest.mark.asyncio
    async def test_open_chat_resets_unread(self, chat_state):
        chat_state.handle_message_receive({"chatId": 5, "message": {"id": 1}})
        chat_state.handle_message_receive({"chatId": 5, "message": {"id": 2}})
        assert chat_state.chat(5).unread == 2
        assert chat_state.open_chat(5).unread == 0
        assert chat_state.active_chat == 5

    @pytest.mark.asyncio
    async def test_toast_auto_dismisses(self, chat_state):
        chat_state.notify("Hello")
        assert len(chat_state.toasts) == 1
        await asyncio.sleep(0.15)
        assert chat_state.toasts == []

    @pytest.mark.asyncio
    async def test_manual_dismiss(self, chat_state):
        toast = chat_state.notify("Hello")
        assert chat_state.dismiss(toast.toast_id) is True
        assert chat_state.dismiss(toast.toast_id) is False

    def test_chat_new(self, chat_state):
        chat_state.handle_chat_new({"chat": {"id": 9, "name": "Team"}})
        chat_state.handle_chat_new({"chat": {"id": 9, "name": "Other"}})
        assert chat_state.chat(9).chat == {"id": 9, "name": "Team"}

    @pytest.mark.asyncio
    async def test_bind_follows_relay_events(self, chat_state):
        signaling = FakeSignaling()
        chat_state.bind(signaling)
        await signaling.deliver("user:online", {"userId": 4, "isOnline": True})
        await signaling.deliver("typing:start", {"chatId": 1, "userId": 4})
        assert chat_state.is_online(4)
        assert chat_state.typing_in(1).user_id == 4
