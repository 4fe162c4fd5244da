"""
Client side of the live connection.

Opens the websocket to the relay with the JWT as ``token`` query
parameter, sends ``{"event", "data"}`` frames and dispatches received
frames to the handlers registered for their event name.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed

from HKChat.config import config
from HKChat.core.message.protocol import Event, EventName, ProtocolError
from HKChat.core.client.utils.exceptions import AuthenticationError, WsConnectionError

logger = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], Any]


class SignalingClient:
    """
    One live connection to the relay.

    Handlers may be plain functions or coroutines; each runs in isolation
    and in frame arrival order.
    """

    def __init__(self, token: str, host: str = None, port: int = None, uri: str = None):
        self.host = host or config.DEFAULT_HOST
        self.port = config.DEFAULT_SERVER_PORT if port is None else port
        self._token = token
        self._uri = uri
        self._websocket = None
        self._receive_task: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[EventCallback]] = {}
        self._waiters: List[tuple] = []
        self._auth_error: Optional[AuthenticationError] = None
        self.on(EventName.AUTH_ERROR, self._on_auth_error)

    @property
    def uri(self) -> str:
        if self._uri:
            return self._uri
        return f"ws://{self.host}:{self.port}?token={quote(self._token or '', safe='')}"

    @property
    def connected(self) -> bool:
        return self._receive_task is not None and not self._receive_task.done()

    @property
    def auth_error(self) -> Optional[AuthenticationError]:
        return self._auth_error

    async def connect(self) -> 'SignalingClient':
        """
        Open the connection and start receiving.

        Raises:
            WsConnectionError: If the relay cannot be reached
        """
        try:
            self._websocket = await websockets.connect(self.uri)
        except (OSError, websockets.exceptions.InvalidHandshake) as e:
            raise WsConnectionError(f"Could not connect to {self.host}:{self.port}", {"error": str(e)}) from e
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Connected to relay at %s:%s", self.host, self.port)
        return self

    async def close(self) -> None:
        if self._websocket is not None:
            await self._websocket.close()
        if self._receive_task is not None:
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

    async def __aenter__(self) -> 'SignalingClient':
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def wait_closed(self) -> None:
        """
        Wait until the relay closes the connection.

        Raises:
            AuthenticationError: If the relay refused the credential
        """
        if self._receive_task is not None:
            await self._receive_task
        if self._auth_error is not None:
            raise self._auth_error

    def on(self, event_name: str, handler: EventCallback) -> None:
        self._handlers.setdefault(event_name, []).append(handler)

    def off(self, event_name: str, handler: EventCallback) -> bool:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(self, event_name: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Send an event to the relay.

        Raises:
            WsConnectionError: If the connection is not open
        """
        if self._websocket is None:
            raise WsConnectionError("Not connected")
        try:
            await self._websocket.send(Event(event_name, data or {}).serialize())
        except ConnectionClosed as e:
            raise WsConnectionError(f"Connection closed while sending {event_name}") from e

    async def wait_for(self, event_name: str, timeout: float = 5.0) -> Dict[str, Any]:
        """Payload of the next ``event_name`` frame."""
        future = asyncio.get_running_loop().create_future()
        waiter = (event_name, future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    async def _receive_loop(self) -> None:
        try:
            async for raw_frame in self._websocket:
                try:
                    event = Event.deserialize(raw_frame)
                except ProtocolError as e:
                    logger.warning("Skipping malformed frame from relay: %s", e)
                    continue
                await self._dispatch(event)
        except ConnectionClosed as e:
            logger.debug("Relay connection closed: %s", e)
        finally:
            logger.info("Disconnected from relay")

    async def _dispatch(self, event: Event) -> None:
        for name, future in list(self._waiters):
            if name == event.name and not future.done():
                future.set_result(event.data)

        for handler in list(self._handlers.get(event.name, [])):
            try:
                result = handler(event.data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("Handler for %s failed: %s", event.name, e)

    def _on_auth_error(self, data: Dict[str, Any]) -> None:
        self._auth_error = AuthenticationError(
            data.get("message") or "Authentication failed",
            {"code": data.get("code")},
        )
        logger.warning("Relay refused credential: %s", self._auth_error)


__all__ = ['SignalingClient']
