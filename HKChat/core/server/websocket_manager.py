"""
Realtime relay that composes all server components.

This is the main entry point that orchestrates authentication, presence,
room membership, event routing, typing state and call signaling for the
live connections of one process.

Architecture:
    ┌─────────────────────────────────────────────────────────────────┐
    │                         RealtimeRelay                           │
    │  ┌─────────────┐  ┌─────────────┐  ┌─────────────────────────┐  │
    │  │ Auth        │  │ Presence    │  │ Room Membership         │  │
    │  │ Middleware  │  │ Registry    │  │ Manager                 │  │
    │  └─────────────┘  └─────────────┘  └─────────────────────────┘  │
    │  ┌─────────────┐  ┌─────────────┐  ┌─────────────────────────┐  │
    │  │ Event       │  │ Typing      │  │ Call Signaling          │  │
    │  │ Router      │  │ Tracker     │  │ Relay                   │  │
    │  └─────────────┘  └─────────────┘  └─────────────────────────┘  │
    └─────────────────────────────────────────────────────────────────┘

Connection lifecycle:
    1. authenticate (refused connections create no state)
    2. load chat memberships and join every room
    3. register with presence (first handle broadcasts online)
    4. dispatch events until the transport closes
    5. leave rooms, unregister (last handle broadcasts offline and ends
       the user's call)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set

import websockets
from websockets.asyncio.server import ServerConnection

from HKChat.config import config
from HKChat.core.message.protocol import Event, EventName, ProtocolError
from HKChat.core.server.auth import AuthenticationMiddleware, JWTAuthenticator
from HKChat.core.server.calls import ActiveCallDirectory, CallSignalingRelay
from HKChat.core.server.handlers import RelayEventHandlers, register_default_handlers
from HKChat.core.server.interfaces import Authenticator, AuthResult, ChatStore
from HKChat.core.server.presence import PresenceChange, PresenceRegistry, utc_timestamp
from HKChat.core.server.rooms import RoomMembershipManager
from HKChat.core.server.routing import ConnectionContext, EventRouter
from HKChat.core.server.storage_sqlite import SQLiteStore
from HKChat.core.server.transport import ConnectionHealthMonitor, WebSocketConnection
from HKChat.core.server.typing_tracker import TypingTracker

logger = logging.getLogger(__name__)


class RealtimeRelay:
    """
    Live-connection relay of one server process.

    Example:
        relay = RealtimeRelay(store=SQLiteStore("hkchat.db"))

        async with relay.run("localhost", 8765):
            await asyncio.Future()
    """

    def __init__(
        self,
        store: Optional[ChatStore] = None,
        authenticator: Optional[Authenticator] = None,
        presence: Optional[PresenceRegistry] = None,
        typing_expiry: Optional[float] = None,
        health_check_interval: Optional[float] = None,
        on_user_connect: Optional[Callable[[Any], None]] = None,
        on_user_disconnect: Optional[Callable[[Any], None]] = None
    ):
        """
        Initialize the relay.

        Args:
            store: Durable chat store (opens config.SQLITE_DB_FILE if None)
            authenticator: Connect-time authenticator (JWT if None)
            presence: Presence registry (a fresh one if None)
            typing_expiry: Seconds before a typing marker auto-clears
            health_check_interval: Seconds between dead-handle sweeps
            on_user_connect: Callback when a user comes online (user_id)
            on_user_disconnect: Callback when a user goes offline (user_id)
        """
        self._store = store if store is not None else SQLiteStore(config.SQLITE_DB_FILE)
        self._authenticator = authenticator or JWTAuthenticator()
        self._auth_middleware = AuthenticationMiddleware(self._authenticator)

        self._presence = presence or PresenceRegistry()
        self._rooms = RoomMembershipManager(self._presence)
        self._router = EventRouter(self._presence, self._rooms)
        self._typing = TypingTracker(self._router, typing_expiry)
        self._handlers = RelayEventHandlers(self._router, self._rooms, self._store, self._typing)
        self._calls = CallSignalingRelay(self._router, self._handlers.profile_of, ActiveCallDirectory())
        register_default_handlers(self._router, self._handlers, self._calls)

        self._presence.add_listener(self._broadcast_presence, priority=10)
        self._presence.add_listener(self._persist_presence, priority=20)

        if health_check_interval is None:
            health_check_interval = config.HEALTH_CHECK_INTERVAL_SECONDS
        self._health_monitor = ConnectionHealthMonitor(
            self._presence.all_handles,
            self._cleanup_connection,
            check_interval=health_check_interval
        )

        self._on_user_connect = on_user_connect
        self._on_user_disconnect = on_user_disconnect

        self._pending_writes: Set[asyncio.Task] = set()
        self._presence_writes: Dict[Any, asyncio.Task] = {}
        self._host: Optional[str] = None
        self._port: Optional[int] = None
        self._server = None
        self._running = False

        logger.info("RealtimeRelay initialized")

    # ---------------- components ----------------
    @property
    def store(self) -> ChatStore:
        return self._store

    @property
    def presence(self) -> PresenceRegistry:
        return self._presence

    @property
    def rooms(self) -> RoomMembershipManager:
        return self._rooms

    @property
    def router(self) -> EventRouter:
        return self._router

    @property
    def typing(self) -> TypingTracker:
        return self._typing

    @property
    def calls(self) -> CallSignalingRelay:
        return self._calls

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> Optional[int]:
        """Bound port (resolves port 0 to the port actually picked)."""
        return self._port

    # ---------------- lifecycle ----------------
    @asynccontextmanager
    async def run(self, host: str = None, port: int = None):
        """
        Run the relay as an async context manager.

        Yields:
            The relay instance
        """
        await self.start(host, port)
        try:
            yield self
        finally:
            await self.stop()

    async def start(self, host: str = None, port: int = None) -> None:
        host = host or config.DEFAULT_HOST
        port = config.DEFAULT_SERVER_PORT if port is None else port

        self._server = await websockets.serve(self._handle_connection, host, port)
        sockets = list(self._server.sockets)
        self._host = host
        self._port = sockets[0].getsockname()[1] if sockets else port
        self._running = True

        await self._health_monitor.start()
        logger.info("Relay started on ws://%s:%s", host, self._port)

    async def stop(self) -> None:
        self._running = False
        await self._health_monitor.stop()

        for conn in self._presence.all_handles():
            try:
                await conn.close(1001, "Server shutting down")
            except Exception as e:
                logger.debug("Error closing %s: %s", conn, e)

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        self._typing.close()
        await self.flush_writes()
        logger.info("Relay stopped")

    # ---------------- connections ----------------
    async def _handle_connection(self, websocket: ServerConnection) -> None:
        connection: Optional[WebSocketConnection] = None

        try:
            auth_result = await self._auth_middleware.authenticate_connection(websocket)
            if not auth_result.success:
                logger.warning(
                    "Refused connection from %s: %s",
                    getattr(websocket, "remote_address", None), auth_result.error_code
                )
                await self._send_auth_error(websocket, auth_result)
                return

            user_id = auth_result.user_id
            connection = WebSocketConnection(websocket, user_id)

            chat_ids = await asyncio.to_thread(self._store.chat_ids_for_user, user_id)
            self._rooms.join_memberships(connection, chat_ids)

            first = await self._presence.register(user_id, connection)
            if first and self._on_user_connect:
                try:
                    self._on_user_connect(user_id)
                except Exception as e:
                    logger.exception("Error in user connect callback: %s", e)

            logger.info("User %s connected (handle %s, %d rooms)", user_id, connection.conn_id, len(connection.rooms))
            context = ConnectionContext(user_id, connection, self._router)
            await self._message_loop(context, websocket)

        except websockets.exceptions.ConnectionClosed:
            logger.debug("Connection closed for %s", connection.user_id if connection else "unknown")
        except Exception as e:
            logger.exception("Error handling connection: %s", e)
        finally:
            if connection is not None:
                await self._cleanup_connection(connection)

    async def _message_loop(self, context: ConnectionContext, websocket: ServerConnection) -> None:
        async for raw_frame in websocket:
            try:
                event = Event.deserialize(raw_frame)
            except ProtocolError as e:
                logger.warning("Skipping malformed frame from %s: %s", context.user_id, e)
                continue

            logger.debug("%s from %s", event.name, context.user_id)
            await self._router.dispatch(context, event)

    async def _cleanup_connection(self, connection: Any) -> None:
        """Release a closed handle. Safe to run twice for the same handle."""
        user_id = connection.user_id
        if self._presence.get_handle(user_id, connection.conn_id) is not connection:
            return

        self._rooms.drop_connection(connection)
        change = await self._presence.unregister(user_id, connection.conn_id)
        logger.info("User %s disconnected (handle %s)", user_id, connection.conn_id)

        if change is None:
            return

        self._typing.forget_user(user_id)
        await self._calls.user_offline(user_id)
        if self._on_user_disconnect:
            try:
                self._on_user_disconnect(user_id)
            except Exception as e:
                logger.exception("Error in user disconnect callback: %s", e)

    # ---------------- presence side effects ----------------
    async def _broadcast_presence(self, change: PresenceChange) -> None:
        await self._router.to_all_except(EventName.USER_ONLINE, change.to_payload(), sender=change.connection)

    async def _persist_presence(self, change: PresenceChange) -> None:
        last_seen = change.last_seen or utc_timestamp()
        # one user's presence writes commit in transition order
        previous = self._presence_writes.get(change.user_id)
        task = self._persist(
            self._store.set_presence, change.user_id, change.is_online, last_seen, after=previous
        )
        self._presence_writes[change.user_id] = task
        task.add_done_callback(partial(self._presence_write_done, change.user_id))

    def _presence_write_done(self, user_id: Any, task: asyncio.Task) -> None:
        if self._presence_writes.get(user_id) is task:
            del self._presence_writes[user_id]

    def _persist(self, method, *args, after: Optional[asyncio.Task] = None) -> asyncio.Task:
        """
        Run a store write in a worker thread without holding up the relay.

        Args:
            method: Store method to call
            after: Earlier write that has to finish first
        """
        task = asyncio.create_task(self._write(method, args, after))
        self._pending_writes.add(task)
        task.add_done_callback(self._write_done)
        return task

    @staticmethod
    async def _write(method, args, after: Optional[asyncio.Task]) -> None:
        if after is not None and not after.done():
            await asyncio.wait([after])
        await asyncio.to_thread(method, *args)

    def _write_done(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background store write failed: %s", error, exc_info=error)

    async def flush_writes(self) -> None:
        """Wait for every background store write issued so far."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    # noinspection PyMethodMayBeStatic
    async def _send_auth_error(self, websocket: ServerConnection, result: AuthResult) -> None:
        """Send authentication error and close connection."""
        frame = Event(EventName.AUTH_ERROR, {
            "message": result.error_message or "Authentication failed",
            "code": result.error_code or "UNAUTHORIZED",
        }).serialize()
        try:
            await websocket.send(frame)
            await websocket.close(code=1008, reason=result.error_message or "Unauthorized")
        except websockets.exceptions.ConnectionClosed:
            pass

    # ---------------- queries ----------------
    def get_active_users(self) -> List[Any]:
        return self._presence.online_users()

    def is_user_online(self, user_id: Any) -> bool:
        return self._presence.is_online(user_id)


def create_server(store: Optional[ChatStore] = None, db_path: Optional[str] = None, **kwargs) -> RealtimeRelay:
    """
    Factory function to create a configured relay.

    Args:
        store: Chat store to use
        db_path: SQLite file opened when no store is given
        **kwargs: Additional arguments passed to RealtimeRelay

    Returns:
        Configured RealtimeRelay instance
    """
    if store is None:
        store = SQLiteStore(db_path or config.SQLITE_DB_FILE)
    return RealtimeRelay(store=store, **kwargs)


__all__ = ['RealtimeRelay', 'create_server']
