"""
Event routing and relay primitives.

Dispatches named events arriving on a connection to their handlers and
relays events to a room, to every device of a user, or to everybody but
the sender.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from HKChat.core.message.protocol import Event
from HKChat.core.server.presence import PresenceRegistry
from HKChat.core.server.rooms import RoomMembershipManager

logger = logging.getLogger(__name__)


class DeliveryStatus(Enum):
    """Status of one delivery to one handle."""
    DELIVERED = auto()
    STALE = auto()


@dataclass
class DeliveryResult:
    """Result of a delivery attempt to one handle."""
    status: DeliveryStatus
    user_id: Any
    conn_id: str


class EventPayloadError(ValueError):
    """A received payload lacks a field its handler needs."""


def require(data: Dict[str, Any], *keys: str) -> tuple:
    """
    Fetch required payload fields.

    Raises:
        EventPayloadError: If any key is missing or null
    """
    missing = [key for key in keys if data.get(key) is None]
    if missing:
        raise EventPayloadError(f"Missing field(s): {', '.join(missing)}")
    return tuple(data[key] for key in keys)


class ConnectionContext:
    """
    Per-connection state handed to event handlers.
    """

    def __init__(self, user_id: Any, connection: Any, router: 'EventRouter'):
        self.user_id = user_id
        self.connection = connection
        self._router = router
        self._metadata: Dict[str, Any] = {}

    @property
    def router(self) -> 'EventRouter':
        return self._router

    @property
    def metadata(self) -> Dict[str, Any]:
        return self._metadata

    async def emit(self, event_name: str, payload: Dict[str, Any]) -> bool:
        """Send an event to this connection only."""
        return await self.connection.send(Event(event_name, payload).serialize())

    @property
    def is_active(self) -> bool:
        return self.connection.is_open()


EventHandler = Callable[[ConnectionContext, Dict[str, Any]], Awaitable[None]]


class EventRouter:
    """
    Thin dispatch table from event name to handler.

    Each handler runs in isolation: an exception is logged and the
    connection keeps processing its next events.
    """

    def __init__(self, presence: PresenceRegistry, rooms: RoomMembershipManager):
        self._presence = presence
        self._rooms = rooms
        self._handlers: Dict[str, EventHandler] = {}

    def register(self, event_name: str, handler: EventHandler) -> None:
        if event_name in self._handlers:
            logger.warning("Replacing handler for %s", event_name)
        self._handlers[event_name] = handler

    def on(self, event_name: str) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of register()."""
        def decorator(handler: EventHandler) -> EventHandler:
            self.register(event_name, handler)
            return handler
        return decorator

    def unregister(self, event_name: str) -> Optional[EventHandler]:
        return self._handlers.pop(event_name, None)

    def get_handler(self, event_name: str) -> Optional[EventHandler]:
        return self._handlers.get(event_name)

    @property
    def event_names(self) -> List[str]:
        return sorted(self._handlers)

    async def dispatch(self, context: ConnectionContext, event: Event) -> bool:
        """
        Run the handler registered for an event.

        Returns:
            True if a handler ran to completion
        """
        handler = self._handlers.get(event.name)
        if handler is None:
            logger.debug("No handler for %s from %s", event.name, context.user_id)
            return False

        try:
            await handler(context, event.data)
            return True
        except EventPayloadError as e:
            logger.warning("Malformed %s from %s: %s", event.name, context.user_id, e)
        except Exception as e:
            logger.exception("Handler for %s failed for %s: %s", event.name, context.user_id, e)
        return False

    async def to_room(
        self,
        chat_id: Any,
        event_name: str,
        payload: Dict[str, Any],
        sender: Optional[Any] = None
    ) -> List[DeliveryResult]:
        """Deliver to every handle joined to the chat's room except the sender's."""
        targets = [conn for conn in self._rooms.members_of(chat_id) if conn is not sender]
        return await self._deliver(targets, Event(event_name, payload))

    async def to_user(self, user_id: Any, event_name: str, payload: Dict[str, Any]) -> List[DeliveryResult]:
        """Deliver to every handle registered for the user, regardless of rooms."""
        return await self._deliver(self._presence.handles_of(user_id), Event(event_name, payload))

    async def to_all_except(
        self,
        event_name: str,
        payload: Dict[str, Any],
        sender: Optional[Any] = None
    ) -> List[DeliveryResult]:
        """Deliver to every registered handle except the sender's."""
        targets = [conn for conn in self._presence.all_handles() if conn is not sender]
        return await self._deliver(targets, Event(event_name, payload))

    def has_handles(self, user_id: Any) -> bool:
        return self._presence.is_online(user_id)

    async def to_connection(self, connection: Any, event_name: str, payload: Dict[str, Any]) -> DeliveryResult:
        results = await self._deliver([connection], Event(event_name, payload))
        return results[0]

    # noinspection PyMethodMayBeStatic
    async def _deliver(self, targets: Iterable[Any], event: Event) -> List[DeliveryResult]:
        frame = event.serialize()
        results: List[DeliveryResult] = []
        for conn in targets:
            if await conn.send(frame):
                status = DeliveryStatus.DELIVERED
            else:
                status = DeliveryStatus.STALE
                logger.debug("Dropped %s to stale handle %s of %s", event.name, conn.conn_id, conn.user_id)
            results.append(DeliveryResult(status, conn.user_id, conn.conn_id))
        return results


__all__ = [
    'EventRouter',
    'ConnectionContext',
    'EventHandler',
    'EventPayloadError',
    'DeliveryResult',
    'DeliveryStatus',
    'require',
]
