"""
Transport layer for the relay.

Wraps websockets server connections as connection handles and reaps
handles whose transport went away without a clean close.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Iterable, Optional, Set

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """
    One live transport session of one device/tab of one user.

    Owned by the presence registry from successful authentication until
    transport close. Tracks the room names it is joined to.
    """

    def __init__(self, websocket: ServerConnection, user_id: Any, conn_id: Optional[str] = None):
        """
        Initialize WebSocket connection wrapper.

        Args:
            websocket: Underlying websockets server connection
            user_id: Authenticated owner of this handle
            conn_id: Handle identifier (generated when omitted)
        """
        self._websocket = websocket
        self._user_id = user_id
        self._closed = False
        self._rooms: Set[str] = set()
        self.conn_id: str = conn_id or uuid.uuid4().hex
        self.connected_at: float = time.time()

    @property
    def user_id(self) -> Any:
        return self._user_id

    @property
    def rooms(self) -> Set[str]:
        return self._rooms

    @property
    def raw_websocket(self) -> ServerConnection:
        return self._websocket

    async def send(self, message: str) -> bool:
        """
        Send a frame through the connection.

        Returns:
            False when the handle is stale; delivery is dropped
        """
        if not self.is_open():
            return False

        try:
            await self._websocket.send(message)
            return True
        except ConnectionClosed as e:
            logger.debug("Dropped frame to stale handle %s of %s: %s", self.conn_id, self._user_id, e)
            return False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._websocket.close(code=code, reason=reason)
        except ConnectionClosed:
            pass

    def is_open(self) -> bool:
        if self._closed:
            return False
        return self._websocket.state is State.OPEN

    def __repr__(self) -> str:
        return f"WebSocketConnection(user_id={self._user_id!r}, conn_id={self.conn_id!r})"


class ConnectionHealthMonitor:
    """
    Periodically reaps handles whose transport is no longer open.

    A reaped handle goes through the same cleanup as a transport close.
    """

    def __init__(
        self,
        connections: Callable[[], Iterable[Any]],
        on_dead: Callable[[Any], Awaitable[None]],
        check_interval: float = 30
    ):
        """
        Args:
            connections: Returns the handles currently registered
            on_dead: Coroutine run for each handle found closed
            check_interval: Seconds between health checks
        """
        self._connections = connections
        self._on_dead = on_dead
        self._check_interval = check_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Connection health monitor started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Connection health monitor stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.check_connections()
                await asyncio.sleep(self._check_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Error in health monitor: %s", e)
                await asyncio.sleep(self._check_interval)

    async def check_connections(self) -> int:
        """
        Reap every closed handle once.

        Returns:
            Number of handles reaped
        """
        dead = [conn for conn in list(self._connections()) if not conn.is_open()]

        for conn in dead:
            try:
                await self._on_dead(conn)
            except Exception as e:
                logger.exception("Error reaping connection %s: %s", conn, e)

        if dead:
            logger.info("Cleaned up %d dead connections", len(dead))
        return len(dead)


__all__ = [
    'WebSocketConnection',
    'ConnectionHealthMonitor',
]
