"""
Voice / video call session for the client runtime.

- state: pure call state machine (states, events, effects)
- session: CallSessionManager performing the effects
- buffer: early ICE candidate buffer
- ringer: repeating ringtone / ringback callback
- webrtc: media / peer-connection protocols and aiortc adapters
"""

from .buffer import IceCandidateBuffer
from .ringer import Ringer
from .session import CallHookContext, CallHookPhase, CallSessionManager
from .state import CallEvent, CallState, Effect, Transition, can_transition, transition

__all__ = [
    'CallEvent',
    'CallHookContext',
    'CallHookPhase',
    'CallSessionManager',
    'CallState',
    'Effect',
    'IceCandidateBuffer',
    'Ringer',
    'Transition',
    'can_transition',
    'transition',
]
