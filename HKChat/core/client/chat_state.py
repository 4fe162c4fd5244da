"""
Client-side live chat state.
Tracks who is online, who is typing, per-chat unread counters and
short-lived toast notifications, driven by relay events.
"""
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from HKChat.config import config
from HKChat.core.message.protocol import EventName
from HKChat.core.typing_state import TypingMarker, TypingMarkerTable

logger = logging.getLogger(__name__)


@dataclass
class ChatSummary:
    chat_id: Any
    chat: Dict[str, Any] = field(default_factory=dict)
    unread: int = 0
    last_message: Optional[Dict[str, Any]] = None


@dataclass
class Toast:
    toast_id: int
    title: str
    body: str = ""
    chat_id: Any = None
    created_at: float = field(default_factory=time.time)


class ClientChatState:
    """Live state of one signed-in user."""

    def __init__(
        self,
        user_id: Any,
        typing_expiry: Optional[float] = None,
        toast_seconds: Optional[float] = None,
        on_change: Optional[Callable[[str], None]] = None
    ):
        self.user_id = user_id
        self._online: Set[Any] = set()
        self._last_seen: Dict[Any, str] = {}
        self._typing = TypingMarkerTable(typing_expiry, on_expire=self._typing_expired)
        self._chats: Dict[Any, ChatSummary] = {}
        self._active_chat: Any = None
        self._toasts: Dict[int, Toast] = {}
        self._toast_timers: Dict[int, asyncio.TimerHandle] = {}
        self._toast_seconds = config.TOAST_DISMISS_SECONDS if toast_seconds is None else toast_seconds
        self._toast_ids = itertools.count(1)
        self._on_change = on_change

    def bind(self, signaling) -> None:
        """Subscribe to the relay events this state follows."""
        signaling.on(EventName.USER_ONLINE, self.handle_user_online)
        signaling.on(EventName.USER_OFFLINE, self.handle_user_offline)
        signaling.on(EventName.TYPING_START, self.handle_typing_start)
        signaling.on(EventName.TYPING_STOP, self.handle_typing_stop)
        signaling.on(EventName.MESSAGE_RECEIVE, self.handle_message_receive)
        signaling.on(EventName.CHAT_NEW, self.handle_chat_new)

    def _changed(self, what: str) -> None:
        if self._on_change is not None:
            try:
                self._on_change(what)
            except Exception as e:
                logger.exception("State change callback failed: %s", e)

    # ---------------- presence ----------------
    def handle_user_online(self, data: Dict[str, Any]) -> None:
        user_id = data.get("userId")
        if data.get("isOnline"):
            self._online.add(user_id)
        else:
            self._online.discard(user_id)
            if data.get("lastSeen"):
                self._last_seen[user_id] = data["lastSeen"]
        self._changed("presence")

    def handle_user_offline(self, data: Dict[str, Any]) -> None:
        self._online.discard(data.get("userId"))
        if data.get("lastSeen"):
            self._last_seen[data.get("userId")] = data["lastSeen"]
        self._changed("presence")

    def is_online(self, user_id: Any) -> bool:
        return user_id in self._online

    @property
    def online_users(self) -> Set[Any]:
        return set(self._online)

    def last_seen(self, user_id: Any) -> Optional[str]:
        return self._last_seen.get(user_id)

    # ---------------- typing ----------------
    def handle_typing_start(self, data: Dict[str, Any]) -> None:
        if data.get("userId") == self.user_id:
            return
        self._typing.start(data.get("chatId"), data.get("userId"), data.get("userName"))
        self._changed("typing")

    def handle_typing_stop(self, data: Dict[str, Any]) -> None:
        if self._typing.stop(data.get("chatId"), data.get("userId")):
            self._changed("typing")

    def _typing_expired(self, marker: TypingMarker) -> None:
        self._changed("typing")

    def typing_in(self, chat_id: Any) -> Optional[TypingMarker]:
        return self._typing.get(chat_id)

    # ---------------- chats ----------------
    @property
    def active_chat(self) -> Any:
        return self._active_chat

    def open_chat(self, chat_id: Any) -> ChatSummary:
        """Make a chat active and reset its unread counter."""
        summary = self._chats.setdefault(chat_id, ChatSummary(chat_id))
        summary.unread = 0
        self._active_chat = chat_id
        return summary

    def chat(self, chat_id: Any) -> Optional[ChatSummary]:
        return self._chats.get(chat_id)

    def handle_chat_new(self, data: Dict[str, Any]) -> None:
        chat = data.get("chat") or {}
        chat_id = chat.get("id")
        if chat_id is None or chat_id in self._chats:
            return
        self._chats[chat_id] = ChatSummary(chat_id, chat)
        self._changed("chats")

    def handle_message_receive(self, data: Dict[str, Any]) -> None:
        chat_id = data.get("chatId")
        message = data.get("message") or {}
        summary = self._chats.setdefault(chat_id, ChatSummary(chat_id))
        summary.last_message = message
        if chat_id != self._active_chat:
            summary.unread += 1
            self.notify(
                str(message.get("sender_name") or "New message"),
                str(message.get("content") or ""),
                chat_id=chat_id,
            )
        self._changed("messages")

    # ---------------- toasts ----------------
    def notify(self, title: str, body: str = "", chat_id: Any = None) -> Toast:
        """Show a toast; it dismisses itself after the configured delay."""
        toast = Toast(next(self._toast_ids), title, body, chat_id)
        self._toasts[toast.toast_id] = toast
        loop = asyncio.get_running_loop()
        self._toast_timers[toast.toast_id] = loop.call_later(self._toast_seconds, self.dismiss, toast.toast_id)
        self._changed("toasts")
        return toast

    def dismiss(self, toast_id: int) -> bool:
        timer = self._toast_timers.pop(toast_id, None)
        if timer is not None:
            timer.cancel()
        if self._toasts.pop(toast_id, None) is None:
            return False
        self._changed("toasts")
        return True

    @property
    def toasts(self) -> List[Toast]:
        return list(self._toasts.values())

    def close(self) -> None:
        self._typing.clear()
        for timer in self._toast_timers.values():
            timer.cancel()
        self._toast_timers.clear()
        self._toasts.clear()
