"""
Tests for the pure call state machine.
"""

import pytest

from HKChat.core.client.call.state import (
    TRANSITIONS,
    CallEvent,
    CallState,
    Effect,
    can_transition,
    transition,
)
from HKChat.core.client.utils.exceptions import CallError, InvalidTransitionError


class TestCallTransitions:
    """Test the transition table."""

    def test_caller_path(self):
        assert transition(CallState.IDLE, CallEvent.INITIATE).state is CallState.CALLING

        sent = transition(CallState.CALLING, CallEvent.OFFER_SENT)
        assert sent.state is CallState.CALLING
        assert sent.effects == (Effect.START_RINGBACK, Effect.START_TIMEOUT)

        accepted = transition(CallState.CALLING, CallEvent.ACCEPTED)
        assert accepted.state is CallState.CONNECTED
        assert Effect.CANCEL_TIMEOUT in accepted.effects
        assert Effect.START_DURATION in accepted.effects

    def test_callee_path(self):
        incoming = transition(CallState.IDLE, CallEvent.INCOMING)
        assert incoming.state is CallState.INCOMING
        assert incoming.effects == (Effect.START_RINGTONE,)
        assert transition(CallState.INCOMING, CallEvent.ACCEPT).state is CallState.CONNECTED

    def test_reject_returns_to_idle_and_notifies_caller(self):
        result = transition(CallState.INCOMING, CallEvent.REJECT)
        assert result.state is CallState.IDLE
        assert Effect.SEND_REJECT in result.effects
        assert Effect.RELEASE_MEDIA in result.effects

    def test_timeout_ends_call_and_signals_end(self):
        result = transition(CallState.CALLING, CallEvent.TIMEOUT)
        assert result.state is CallState.ENDED
        assert Effect.SEND_END in result.effects

    def test_media_failure_fails_closed(self):
        caller = transition(CallState.CALLING, CallEvent.MEDIA_FAILED)
        assert caller.state is CallState.IDLE
        assert Effect.RELEASE_MEDIA in caller.effects

        callee = transition(CallState.INCOMING, CallEvent.MEDIA_FAILED)
        assert callee.state is CallState.IDLE
        assert Effect.SEND_REJECT in callee.effects

    @pytest.mark.parametrize("state", [CallState.CALLING, CallState.INCOMING, CallState.CONNECTED])
    def test_every_active_state_can_end(self, state):
        for event in (CallEvent.HANGUP, CallEvent.REMOTE_ENDED):
            result = transition(state, event)
            assert result.state is CallState.ENDED
            assert Effect.RELEASE_MEDIA in result.effects
            assert Effect.SCHEDULE_RESET in result.effects

    def test_remote_end_does_not_echo_end(self):
        assert Effect.SEND_END not in transition(CallState.CONNECTED, CallEvent.REMOTE_ENDED).effects

    @pytest.mark.parametrize("state", [CallState.CALLING, CallState.INCOMING, CallState.CONNECTED, CallState.ENDED])
    def test_busy_rejects_second_caller_without_leaving_state(self, state):
        result = transition(state, CallEvent.INCOMING)
        assert result.state is state
        assert result.effects == (Effect.SEND_REJECT,)

    def test_ended_resets_to_idle(self):
        assert transition(CallState.ENDED, CallEvent.RESET).state is CallState.IDLE

    def test_invalid_transitions_raise(self):
        with pytest.raises(InvalidTransitionError) as excinfo:
            transition(CallState.IDLE, CallEvent.ACCEPT)
        assert excinfo.value.state is CallState.IDLE
        assert excinfo.value.event is CallEvent.ACCEPT
        assert isinstance(excinfo.value, CallError)

        assert not can_transition(CallState.CONNECTED, CallEvent.INITIATE)
        assert not can_transition(CallState.IDLE, CallEvent.HANGUP)

    def test_only_ended_accepts_reset(self):
        resets = [state for (state, event) in TRANSITIONS if event is CallEvent.RESET]
        assert resets == [CallState.ENDED]
