"""Event envelope and event names."""

from .protocol import Event, EventName, ProtocolError

__all__ = ['Event', 'EventName', 'ProtocolError']
