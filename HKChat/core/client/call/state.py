"""
Call state machine.

States and events are plain enums; ``transition`` is a pure function from
(state, event) to the next state plus the side effects the session
manager has to perform, in order.

    caller:  IDLE -> CALLING -> CONNECTED -> ENDED -> IDLE
    callee:  IDLE -> INCOMING -> CONNECTED -> ENDED -> IDLE

An incoming call while not idle keeps the current state and answers the
new caller with a rejection.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, Tuple

from HKChat.core.client.utils.exceptions import InvalidTransitionError


class CallState(Enum):
    IDLE = "idle"
    CALLING = "calling"
    INCOMING = "incoming"
    CONNECTED = "connected"
    ENDED = "ended"


class CallEvent(Enum):
    INITIATE = auto()
    OFFER_SENT = auto()
    INCOMING = auto()
    ACCEPT = auto()
    ACCEPTED = auto()
    REJECT = auto()
    REJECTED = auto()
    HANGUP = auto()
    REMOTE_ENDED = auto()
    TIMEOUT = auto()
    MEDIA_FAILED = auto()
    CONNECTION_FAILED = auto()
    RESET = auto()


class Effect(Enum):
    START_RINGBACK = auto()
    START_RINGTONE = auto()
    STOP_SOUNDS = auto()
    START_TIMEOUT = auto()
    CANCEL_TIMEOUT = auto()
    SEND_END = auto()
    SEND_REJECT = auto()
    RELEASE_MEDIA = auto()
    START_DURATION = auto()
    SCHEDULE_RESET = auto()


@dataclass(frozen=True)
class Transition:
    state: CallState
    effects: Tuple[Effect, ...] = ()


_TEARDOWN = (Effect.STOP_SOUNDS, Effect.CANCEL_TIMEOUT, Effect.RELEASE_MEDIA)
_TO_ENDED = _TEARDOWN + (Effect.SCHEDULE_RESET,)
_HANGUP = (Effect.STOP_SOUNDS, Effect.CANCEL_TIMEOUT, Effect.SEND_END,
           Effect.RELEASE_MEDIA, Effect.SCHEDULE_RESET)
_DECLINE = (Effect.STOP_SOUNDS, Effect.SEND_REJECT, Effect.RELEASE_MEDIA)

S, E = CallState, CallEvent

TRANSITIONS: Dict[Tuple[CallState, CallEvent], Transition] = {
    # caller path
    (S.IDLE, E.INITIATE): Transition(S.CALLING),
    (S.CALLING, E.OFFER_SENT): Transition(S.CALLING, (Effect.START_RINGBACK, Effect.START_TIMEOUT)),
    (S.CALLING, E.ACCEPTED): Transition(
        S.CONNECTED, (Effect.STOP_SOUNDS, Effect.CANCEL_TIMEOUT, Effect.START_DURATION)
    ),
    (S.CALLING, E.REJECTED): Transition(S.ENDED, _TO_ENDED),
    (S.CALLING, E.TIMEOUT): Transition(S.ENDED, _HANGUP),
    (S.CALLING, E.MEDIA_FAILED): Transition(S.IDLE, _TEARDOWN),
    (S.CALLING, E.CONNECTION_FAILED): Transition(S.ENDED, _HANGUP),
    (S.CALLING, E.HANGUP): Transition(S.ENDED, _HANGUP),
    (S.CALLING, E.REMOTE_ENDED): Transition(S.ENDED, _TO_ENDED),

    # callee path
    (S.IDLE, E.INCOMING): Transition(S.INCOMING, (Effect.START_RINGTONE,)),
    (S.INCOMING, E.ACCEPT): Transition(S.CONNECTED, (Effect.STOP_SOUNDS, Effect.START_DURATION)),
    (S.INCOMING, E.REJECT): Transition(S.IDLE, _DECLINE),
    (S.INCOMING, E.MEDIA_FAILED): Transition(S.IDLE, _DECLINE),
    (S.INCOMING, E.CONNECTION_FAILED): Transition(S.IDLE, _DECLINE),
    (S.INCOMING, E.HANGUP): Transition(S.ENDED, _HANGUP),
    (S.INCOMING, E.REMOTE_ENDED): Transition(S.ENDED, _TO_ENDED),

    # in call
    (S.CONNECTED, E.HANGUP): Transition(S.ENDED, _HANGUP),
    (S.CONNECTED, E.REMOTE_ENDED): Transition(S.ENDED, _TO_ENDED),
    (S.CONNECTED, E.CONNECTION_FAILED): Transition(S.ENDED, _HANGUP),

    (S.ENDED, E.RESET): Transition(S.IDLE),
}

# busy: any non-idle state answers a second caller with a rejection
for _state in (S.CALLING, S.INCOMING, S.CONNECTED, S.ENDED):
    TRANSITIONS[(_state, E.INCOMING)] = Transition(_state, (Effect.SEND_REJECT,))

del S, E, _state


def transition(state: CallState, event: CallEvent) -> Transition:
    """
    Next state and effects for an event.

    Raises:
        InvalidTransitionError: If the event is not valid in ``state``
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state, event) from None


def can_transition(state: CallState, event: CallEvent) -> bool:
    return (state, event) in TRANSITIONS


__all__ = [
    'CallEvent',
    'CallState',
    'Effect',
    'Transition',
    'TRANSITIONS',
    'can_transition',
    'transition',
]
