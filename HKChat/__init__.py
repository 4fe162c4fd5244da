"""
    __ ____ __   ________          __
   / // / //_/  / ____/ /_  ____ _/ /_
  / _  / ,<    / /   / __ \/ __ `/ __/
 /_//_/_/|_|   \____/_/ /_/\__,_/\__/

HKChat Project - Real-time coordination layer for a chat application.

Presence, room fan-out, typing indicators and WebRTC call signaling over a
single bidirectional event channel per device.

License: Apache-2.0 License
"""

__version__ = "1.0.0"
from .core.message.protocol import Event, EventName

__all__ = ['Event', 'EventName']
