"""
Default relay event handlers.

Each handler receives the connection context and the event payload,
performs its (optional) store side effect in a worker thread and relays
the event through the router's primitives. Room state is only changed
through the RoomMembershipManager commands.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from HKChat.core.message.protocol import EventName
from HKChat.core.server.calls import CallSignalingRelay
from HKChat.core.server.interfaces import ChatStore
from HKChat.core.server.rooms import RoomMembershipManager
from HKChat.core.server.routing import ConnectionContext, EventPayloadError, EventRouter, require
from HKChat.core.server.typing_tracker import TypingTracker

logger = logging.getLogger(__name__)


class RelayEventHandlers:
    """Message, typing, chat, group and status handlers."""

    def __init__(
        self,
        router: EventRouter,
        rooms: RoomMembershipManager,
        store: ChatStore,
        typing: TypingTracker
    ):
        self._router = router
        self._rooms = rooms
        self._store = store
        self._typing = typing

    async def _run_store(self, method, *args) -> Any:
        return await asyncio.to_thread(method, *args)

    async def profile_of(self, user_id: Any) -> Dict[str, Any]:
        """Public profile of a user; ``{"id": user_id}`` when the store has no row."""
        try:
            profile = await self._run_store(self._store.get_user_profile, user_id)
        except Exception as e:
            logger.exception("Profile lookup for %s failed: %s", user_id, e)
            profile = None
        return profile or {"id": user_id}

    # ---------------- messages ----------------
    async def message_send(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        chat_id, message = require(data, "chatId", "message")
        await self._router.to_room(
            chat_id, EventName.MESSAGE_RECEIVE, {"chatId": chat_id, "message": message},
            sender=ctx.connection,
        )

    async def message_delivered(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        message_id, chat_id = require(data, "messageId", "chatId")
        known = await self._run_store(self._store.mark_delivered, message_id, ctx.user_id)
        if not known:
            logger.debug("Delivery receipt for unknown message %s dropped", message_id)
            return
        await self._router.to_room(
            chat_id, EventName.MESSAGE_DELIVERED,
            {"messageId": message_id, "chatId": chat_id, "userId": ctx.user_id},
            sender=ctx.connection,
        )

    async def message_read(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (chat_id,) = require(data, "chatId")
        await self._run_store(self._store.mark_read, chat_id, ctx.user_id)
        await self._router.to_room(
            chat_id, EventName.MESSAGE_READ, {"chatId": chat_id, "userId": ctx.user_id},
            sender=ctx.connection,
        )

    async def message_delete(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        message_id, chat_id = require(data, "messageId", "chatId")
        await self._router.to_room(
            chat_id, EventName.MESSAGE_DELETED, {"messageId": message_id, "chatId": chat_id},
            sender=ctx.connection,
        )

    async def message_edit(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        message_id, chat_id = require(data, "messageId", "chatId")
        await self._router.to_room(
            chat_id, EventName.MESSAGE_EDITED,
            {"messageId": message_id, "chatId": chat_id, "content": data.get("content")},
            sender=ctx.connection,
        )

    # ---------------- typing ----------------
    async def typing_start(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (chat_id,) = require(data, "chatId")
        profile = await self.profile_of(ctx.user_id)
        await self._typing.start(chat_id, ctx.user_id, profile.get("display_name"), sender=ctx.connection)

    async def typing_stop(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (chat_id,) = require(data, "chatId")
        await self._typing.stop(chat_id, ctx.user_id, sender=ctx.connection)

    # ---------------- chats & groups ----------------
    async def chat_join(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (chat_id,) = require(data, "chatId")
        self._rooms.join_room(ctx.connection, chat_id)

    async def chat_created(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (chat,) = require(data, "chat")
        if not isinstance(chat, dict):
            raise EventPayloadError("chat must be an object")
        chat_id = chat.get("id")
        for member in chat.get("members") or []:
            member_id = member.get("id") if isinstance(member, dict) else member
            if member_id is None:
                continue
            if chat_id is not None:
                self._rooms.add_user_to_room(member_id, chat_id)
            await self._router.to_user(member_id, EventName.CHAT_NEW, {"chat": chat})

    async def group_member_added(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        chat_id, user_id = require(data, "chatId", "userId")
        self._rooms.add_user_to_room(user_id, chat_id)
        await self._router.to_room(chat_id, EventName.GROUP_MEMBER_ADDED, data, sender=ctx.connection)

    async def group_member_removed(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        chat_id, user_id = require(data, "chatId", "userId")
        self._rooms.remove_user_from_room(user_id, chat_id)
        await self._router.to_room(chat_id, EventName.GROUP_MEMBER_REMOVED, data, sender=ctx.connection)

    async def group_updated(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (chat_id,) = require(data, "chatId")
        await self._router.to_room(chat_id, EventName.GROUP_UPDATED, data, sender=ctx.connection)

    # ---------------- statuses ----------------
    async def status_new(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        await self._router.to_all_except(
            EventName.STATUS_NEW, {**data, "userId": ctx.user_id}, sender=ctx.connection
        )

    async def status_viewed(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        status_id, owner_id = require(data, "statusId", "ownerId")
        if not self._router.has_handles(owner_id):
            return
        viewer = await self.profile_of(ctx.user_id)
        await self._router.to_user(
            owner_id, EventName.STATUS_VIEWED, {"statusId": status_id, "viewer": viewer}
        )


def register_default_handlers(
    router: EventRouter,
    handlers: RelayEventHandlers,
    calls: Optional[CallSignalingRelay] = None
) -> EventRouter:
    """Bind every relay event to its handler."""
    table = {
        EventName.MESSAGE_SEND: handlers.message_send,
        EventName.MESSAGE_DELIVERED: handlers.message_delivered,
        EventName.MESSAGE_READ: handlers.message_read,
        EventName.MESSAGE_DELETE: handlers.message_delete,
        EventName.MESSAGE_EDIT: handlers.message_edit,
        EventName.TYPING_START: handlers.typing_start,
        EventName.TYPING_STOP: handlers.typing_stop,
        EventName.CHAT_JOIN: handlers.chat_join,
        EventName.CHAT_CREATED: handlers.chat_created,
        EventName.GROUP_MEMBER_ADDED: handlers.group_member_added,
        EventName.GROUP_MEMBER_REMOVED: handlers.group_member_removed,
        EventName.GROUP_UPDATED: handlers.group_updated,
        EventName.STATUS_NEW: handlers.status_new,
        EventName.STATUS_VIEWED: handlers.status_viewed,
    }
    if calls is not None:
        table.update({
            EventName.CALL_INITIATE: calls.initiate,
            EventName.CALL_ACCEPT: calls.accept,
            EventName.CALL_REJECT: calls.reject,
            EventName.CALL_END: calls.end,
            EventName.CALL_ICE_CANDIDATE: calls.ice_candidate,
        })

    for event_name, handler in table.items():
        router.register(event_name, handler)
    logger.debug("Registered %d relay handlers", len(table))
    return router


__all__ = ['RelayEventHandlers', 'register_default_handlers']
