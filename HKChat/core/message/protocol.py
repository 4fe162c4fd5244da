"""
Event protocol module for HKChat application.
Defines event names and the JSON envelope used on the live connection.

Every frame is ``{"event": <name>, "data": <payload object>}``.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict


class EventName:
    """
    Names of the events exchanged with the relay.
    """
    # messages
    MESSAGE_SEND = "message:send"
    MESSAGE_RECEIVE = "message:receive"
    MESSAGE_DELIVERED = "message:delivered"
    MESSAGE_READ = "message:read"
    MESSAGE_DELETE = "message:delete"
    MESSAGE_DELETED = "message:deleted"
    MESSAGE_EDIT = "message:edit"
    MESSAGE_EDITED = "message:edited"

    # typing
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"

    # chats and groups
    CHAT_JOIN = "chat:join"
    CHAT_CREATED = "chat:created"
    CHAT_NEW = "chat:new"
    GROUP_MEMBER_ADDED = "group:memberAdded"
    GROUP_MEMBER_REMOVED = "group:memberRemoved"
    GROUP_UPDATED = "group:updated"

    # statuses
    STATUS_NEW = "status:new"
    STATUS_VIEWED = "status:viewed"

    # call signaling
    CALL_INITIATE = "call:initiate"
    CALL_INCOMING = "call:incoming"
    CALL_ACCEPT = "call:accept"
    CALL_ACCEPTED = "call:accepted"
    CALL_REJECT = "call:reject"
    CALL_REJECTED = "call:rejected"
    CALL_END = "call:end"
    CALL_ENDED = "call:ended"
    CALL_ICE_CANDIDATE = "call:ice-candidate"

    # presence
    USER_ONLINE = "user:online"
    USER_OFFLINE = "user:offline"

    # connection
    AUTH_ERROR = "auth:error"


class ProtocolError(ValueError):
    """Raised when a frame is not a valid event envelope."""


@dataclass
class Event:
    """
    A named event with its payload.

    Attributes:
        name (str): Event name, see EventName
        data (dict): Payload object
    """
    name: str
    data: Dict[str, Any] = field(default_factory=dict)

    def serialize(self) -> str:
        """
        Serialize the event to a JSON frame.

        Returns:
            str: JSON envelope
        """
        return json.dumps({"event": self.name, "data": self.data}, default=str)

    @classmethod
    def deserialize(cls, raw: str) -> 'Event':
        """
        Parse a JSON frame into an Event.

        Args:
            raw (str): JSON envelope

        Returns:
            Event: Parsed event

        Raises:
            ProtocolError: If the frame is not an object with a string
                ``event`` and an object (or missing) ``data``
        """
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid JSON frame: {e}") from e

        if not isinstance(obj, dict) or not isinstance(obj.get("event"), str):
            raise ProtocolError("Frame must be an object with a string 'event'")

        data = obj.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ProtocolError("Frame 'data' must be an object")
        return cls(name=obj["event"], data=data)
