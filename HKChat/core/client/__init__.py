"""
Client runtime for HKChat.

Provides the live connection to the relay, the chat state it drives and
the voice / video call session.
"""

from .chat_state import ClientChatState, ChatSummary, Toast
from .signaling import SignalingClient

__all__ = [
    'ClientChatState',
    'ChatSummary',
    'SignalingClient',
    'Toast',
]
