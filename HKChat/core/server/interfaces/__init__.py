"""
Abstract interfaces for the relay.

Defines the contracts between the relay components and their external
collaborators (transport, authenticator, durable chat store) so each
component can be unit-tested against fakes.
"""

from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable


@dataclass
class AuthResult:
    """Result of an authentication attempt."""
    success: bool
    user_id: Optional[Any] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None


@runtime_checkable
class Authenticator(Protocol):
    """Protocol for connect-time authentication."""

    @abstractmethod
    async def authenticate(self, token: str) -> AuthResult:
        """
        Authenticate a user using the provided token.

        Args:
            token: Credential supplied at connect time

        Returns:
            AuthResult carrying the user identity on success
        """
        ...

    @abstractmethod
    def extract_token(self, transport_context: object) -> Optional[str]:
        """
        Extract the credential from the transport handshake.

        Args:
            transport_context: Transport-specific connection object

        Returns:
            Extracted token or None if not found
        """
        ...


@runtime_checkable
class TransportConnection(Protocol):
    """Protocol for one live transport session (a connection handle)."""

    conn_id: str

    @property
    @abstractmethod
    def user_id(self) -> Any:
        ...

    @property
    @abstractmethod
    def rooms(self) -> set:
        """Room names this handle is joined to."""
        ...

    @abstractmethod
    async def send(self, message: str) -> bool:
        """Send a frame. Returns False when the handle is stale."""
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...

    @abstractmethod
    def is_open(self) -> bool:
        ...


@runtime_checkable
class ChatStore(Protocol):
    """
    Durable record store consumed by the relay.

    Implementations are synchronous; the relay calls them from an
    executor thread.
    """

    @abstractmethod
    def chat_ids_for_user(self, user_id: Any) -> List[Any]:
        """Chat ids the user is a member of."""
        ...

    @abstractmethod
    def get_user_profile(self, user_id: Any) -> Optional[Dict[str, Any]]:
        """Public profile ``{id, display_name, profile_pic}`` or None."""
        ...

    @abstractmethod
    def set_presence(self, user_id: Any, is_online: bool, last_seen: str) -> None:
        """Persist the online flag and last-seen timestamp."""
        ...

    @abstractmethod
    def mark_delivered(self, message_id: Any, user_id: Any) -> bool:
        """Record delivery. Returns False if the message does not exist."""
        ...

    @abstractmethod
    def mark_read(self, chat_id: Any, user_id: Any) -> int:
        """Record reads for a chat. Returns number of messages updated."""
        ...


@runtime_checkable
class Broadcaster(Protocol):
    """Relay primitives exposed to components that need to emit events."""

    @abstractmethod
    async def to_room(self, chat_id: Any, event_name: str, payload: Dict[str, Any],
                      sender: Optional[TransportConnection] = None) -> Iterable:
        ...

    @abstractmethod
    async def to_user(self, user_id: Any, event_name: str, payload: Dict[str, Any]) -> Iterable:
        ...

    @abstractmethod
    async def to_all_except(self, event_name: str, payload: Dict[str, Any],
                            sender: Optional[TransportConnection] = None) -> Iterable:
        ...


__all__ = [
    'AuthResult',
    'Authenticator',
    'TransportConnection',
    'ChatStore',
    'Broadcaster',
]
