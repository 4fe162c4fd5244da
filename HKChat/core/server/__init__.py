"""
Server module for HKChat.

This module provides the real-time relay with a modular architecture:

Architecture Overview:
---------------------

1. **Authentication** (`auth/`)
   - JWTAuthenticator: Validates the connect-time JWT
   - AuthenticationMiddleware: Extraction + validation for a new connection
   - DefaultTokenExtractor: query ``token``, Bearer header, ``authToken`` cookie

2. **Transport Layer** (`transport/`)
   - WebSocketConnection: Connection handle wrapper
   - ConnectionHealthMonitor: Reaps handles whose transport went away

3. **Presence** (`presence.py`)
   - PresenceRegistry: user -> live handles, online/offline transitions

4. **Rooms** (`rooms/`)
   - RoomMembershipManager: one broadcast group per chat

5. **Routing** (`routing/`)
   - EventRouter: event dispatch and to_room / to_user / to_all_except

6. **Typing** (`typing_tracker.py`) and **Calls** (`calls/`)
   - TypingTracker: per-chat typing marker with auto-expiry
   - CallSignalingRelay: offer / answer / ICE relay with busy tracking

7. **Relay** (`websocket_manager.py`)
   - RealtimeRelay: composes everything above

Usage:

    from HKChat.core.server import create_server

    relay = create_server(db_path="hkchat.db")
    async with relay.run("localhost", 8765):
        await asyncio.Future()
"""

from HKChat.core.server.auth import (
    JWTAuthenticator,
    AuthenticationMiddleware,
    DefaultTokenExtractor,
)
from HKChat.core.server.calls import (
    ActiveCallDirectory,
    CallSignalingRelay,
)
from HKChat.core.server.handlers import (
    RelayEventHandlers,
    register_default_handlers,
)
from HKChat.core.server.interfaces import (
    Authenticator,
    AuthResult,
    Broadcaster,
    ChatStore,
    TransportConnection,
)
from HKChat.core.server.presence import (
    PresenceChange,
    PresenceRegistry,
)
from HKChat.core.server.rooms import (
    RoomMembershipManager,
    room_name,
)
from HKChat.core.server.routing import (
    ConnectionContext,
    DeliveryResult,
    DeliveryStatus,
    EventPayloadError,
    EventRouter,
)
from HKChat.core.server.storage_sqlite import SQLiteStore
from HKChat.core.server.transport import (
    WebSocketConnection,
    ConnectionHealthMonitor,
)
from HKChat.core.server.typing_tracker import TypingTracker
from HKChat.core.server.websocket_manager import (
    RealtimeRelay,
    create_server,
)

__all__ = [
    'Authenticator',
    'AuthResult',
    'Broadcaster',
    'ChatStore',
    'TransportConnection',

    'JWTAuthenticator',
    'AuthenticationMiddleware',
    'DefaultTokenExtractor',

    'WebSocketConnection',
    'ConnectionHealthMonitor',

    'PresenceChange',
    'PresenceRegistry',
    'RoomMembershipManager',
    'room_name',

    'EventRouter',
    'ConnectionContext',
    'DeliveryResult',
    'DeliveryStatus',
    'EventPayloadError',

    'TypingTracker',
    'ActiveCallDirectory',
    'CallSignalingRelay',
    'RelayEventHandlers',
    'register_default_handlers',

    'SQLiteStore',
    'RealtimeRelay',
    'create_server',
]
