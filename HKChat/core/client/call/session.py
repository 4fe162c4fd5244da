"""
Call session manager.

Owns the one call a client can be part of at a time. Drives the pure
state machine in ``state.py`` and performs the effects it returns:
signaling, media, timers and sounds.

Every call attempt gets a generation number. Leaving the attempt
(hangup, rejection, timeout, failure) bumps the generation, so an
``await`` that resumes for an older generation releases whatever it
acquired and stops instead of touching the new state.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from HKChat.config import config
from HKChat.core.message.protocol import EventName
from HKChat.core.client.call.buffer import IceCandidateBuffer
from HKChat.core.client.call.ringer import Ringer
from HKChat.core.client.call.state import CallEvent, CallState, Effect, Transition, can_transition, transition
from HKChat.core.client.call.webrtc import (
    AiortcMediaProvider,
    AiortcPeerConnection,
    LocalMedia,
    MediaProvider,
    PeerConnection,
    PeerConnectionFactory,
)
from HKChat.core.client.utils.exceptions import (
    ClientError,
    InvalidTransitionError,
    MediaAcquisitionError,
    NegotiationError,
)

logger = logging.getLogger(__name__)

ACTIVE_STATES = (CallState.CALLING, CallState.INCOMING, CallState.CONNECTED)


class CallHookPhase(Enum):
    """Points a presentation layer can attach to."""
    ENTER = auto()
    LEAVE = auto()
    RINGTONE = auto()
    RINGBACK = auto()


@dataclass
class CallHookContext:
    phase: CallHookPhase
    state: CallState
    previous: Optional[CallState] = None
    remote_user: Optional[Dict[str, Any]] = None
    call_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


CallHook = Callable[[CallHookContext], Any]


def _user_dict(user: Any) -> Dict[str, Any]:
    return dict(user) if isinstance(user, dict) else {"id": user}


class CallSessionManager:
    """
    Client-side voice / video call session.

    Example:
        calls = CallSessionManager(user_id=1)
        calls.bind(signaling)
        calls.register_hook(CallHookPhase.RINGTONE, lambda ctx: play_ring())

        await calls.initiate({"id": 2}, "video")
    """

    def __init__(
        self,
        user_id: Any,
        media_provider: Optional[MediaProvider] = None,
        peer_factory: Optional[PeerConnectionFactory] = None,
        accept_timeout: Optional[float] = None,
        ended_linger: Optional[float] = None,
        ringtone_interval: Optional[float] = None,
        ringback_interval: Optional[float] = None
    ):
        self.user_id = user_id
        self._media_provider = media_provider or AiortcMediaProvider()
        self._peer_factory = peer_factory or AiortcPeerConnection
        self._accept_timeout = config.CALL_ACCEPT_TIMEOUT_SECONDS if accept_timeout is None else accept_timeout
        self._ended_linger = config.CALL_ENDED_LINGER_SECONDS if ended_linger is None else ended_linger

        self._signaling = None
        self._state = CallState.IDLE
        self._generation = 0
        self._remote_user: Optional[Dict[str, Any]] = None
        self._call_type: Optional[str] = None
        self._pending_offer: Optional[Dict[str, Any]] = None
        self._accepting: Optional[int] = None

        self._media: Optional[LocalMedia] = None
        self._pc: Optional[PeerConnection] = None
        self._remote_ready = False
        self._buffer = IceCandidateBuffer()
        self._local_candidates: List[Dict[str, Any]] = []
        self._local_sent = False
        self.remote_tracks: List[Any] = []

        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        self._connected_at: Optional[float] = None
        self._tasks: Set[asyncio.Task] = set()
        self._hooks: Dict[CallHookPhase, List[Tuple[int, CallHook]]] = {}

        self._ringtone = Ringer(
            lambda: self._run_hooks(CallHookPhase.RINGTONE),
            config.RINGTONE_INTERVAL_SECONDS if ringtone_interval is None else ringtone_interval,
        )
        self._ringback = Ringer(
            lambda: self._run_hooks(CallHookPhase.RINGBACK),
            config.RINGBACK_INTERVAL_SECONDS if ringback_interval is None else ringback_interval,
        )

    # ---------------- wiring ----------------
    def bind(self, signaling) -> None:
        """Attach to a signaling client and follow its call events."""
        self._signaling = signaling
        signaling.on(EventName.CALL_INCOMING, self.handle_incoming)
        signaling.on(EventName.CALL_ACCEPTED, self.handle_accepted)
        signaling.on(EventName.CALL_REJECTED, self.handle_rejected)
        signaling.on(EventName.CALL_ENDED, self.handle_ended)
        signaling.on(EventName.CALL_ICE_CANDIDATE, self.handle_ice_candidate)

    def register_hook(self, phase: CallHookPhase, hook: CallHook, priority: int = 100) -> None:
        """
        Register a hook for a phase.

        Args:
            phase: Phase to hook into
            hook: Function or coroutine taking a CallHookContext
            priority: Lower numbers execute first
        """
        self._hooks.setdefault(phase, []).append((priority, hook))
        self._hooks[phase].sort(key=lambda x: x[0])

    def unregister_hook(self, phase: CallHookPhase, hook: CallHook) -> bool:
        for i, (_, h) in enumerate(self._hooks.get(phase, [])):
            if h == hook:
                self._hooks[phase].pop(i)
                return True
        return False

    async def _run_hooks(self, phase: CallHookPhase, previous: Optional[CallState] = None) -> None:
        ctx = CallHookContext(phase, self._state, previous, self._remote_user, self._call_type)
        for _, hook in list(self._hooks.get(phase, [])):
            try:
                result = hook(ctx)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("Call hook for %s failed: %s", phase.name, e)

    # ---------------- read side ----------------
    @property
    def state(self) -> CallState:
        return self._state

    @property
    def remote_user(self) -> Optional[Dict[str, Any]]:
        return self._remote_user

    @property
    def remote_id(self) -> Any:
        return self._remote_user.get("id") if self._remote_user else None

    @property
    def call_type(self) -> Optional[str]:
        return self._call_type

    @property
    def duration(self) -> int:
        """Whole seconds since the call connected."""
        if self._connected_at is None:
            return 0
        return int(time.monotonic() - self._connected_at)

    @property
    def is_muted(self) -> bool:
        return self._media is not None and self._media.has("audio") and not self._media.is_enabled("audio")

    @property
    def is_video_off(self) -> bool:
        return self._media is not None and self._media.has("video") and not self._media.is_enabled("video")

    @property
    def pending_candidates(self) -> int:
        return len(self._buffer)

    # ---------------- user actions ----------------
    async def initiate(self, target_user: Any, call_type: str = "voice") -> None:
        """
        Call a user.

        Raises:
            InvalidTransitionError: If a call is already in progress
            MediaAcquisitionError: If devices cannot be opened (state is idle again)
            NegotiationError: If the offer cannot be created (state is idle again)
        """
        await self._apply(CallEvent.INITIATE)
        generation = self._generation
        self._remote_user = _user_dict(target_user)
        self._call_type = call_type

        try:
            media = await self._media_provider.acquire(call_type)
        except MediaAcquisitionError:
            if self._is_current(generation):
                await self._apply(CallEvent.MEDIA_FAILED)
            raise
        if not self._is_current(generation):
            media.stop()
            return
        self._media = media

        pc = self._create_peer(generation)
        try:
            pc.add_local_media(media)
            offer = await pc.create_offer()
        except Exception as e:
            if self._is_current(generation):
                await self._apply(CallEvent.MEDIA_FAILED)
            raise NegotiationError("Could not create offer", {"error": str(e)}) from e
        if not self._is_current(generation):
            return

        try:
            await self._emit(EventName.CALL_INITIATE, {
                "targetUserId": self.remote_id,
                "callType": call_type,
                "offer": offer,
            })
        except ClientError:
            if self._is_current(generation):
                await self._apply(CallEvent.CONNECTION_FAILED)
            raise
        if not self._is_current(generation):
            return

        await self._send_local_candidates()
        if not self._is_current(generation) or self._state is not CallState.CALLING:
            return
        await self._apply(CallEvent.OFFER_SENT)
        logger.info("Calling %s (%s)", self.remote_id, call_type)

    async def accept(self) -> None:
        """
        Accept the ringing incoming call.

        Raises:
            InvalidTransitionError: If no call is ringing or it is already being accepted
            MediaAcquisitionError: If devices cannot be opened (call is rejected)
            NegotiationError: If the offer is missing or cannot be answered (call is rejected)
        """
        generation = self._generation
        if self._accepting == generation or not can_transition(self._state, CallEvent.ACCEPT):
            raise InvalidTransitionError(self._state, CallEvent.ACCEPT)
        offer, self._pending_offer = self._pending_offer, None
        if not offer:
            logger.error("Incoming call from %s carries no offer", self.remote_id)
            await self._apply(CallEvent.CONNECTION_FAILED)
            raise NegotiationError("Incoming call carries no offer")

        self._accepting = generation
        try:
            await self._answer(generation, offer)
        finally:
            if self._accepting == generation:
                self._accepting = None

    async def _answer(self, generation: int, offer: Dict[str, Any]) -> None:
        try:
            media = await self._media_provider.acquire(self._call_type)
        except MediaAcquisitionError:
            if self._is_current(generation):
                await self._apply(CallEvent.MEDIA_FAILED)
            raise
        if not self._is_current(generation):
            media.stop()
            return
        self._media = media

        pc = self._create_peer(generation)
        try:
            pc.add_local_media(media)
            await pc.set_remote_description(offer)
            if not self._is_current(generation):
                return
            await self._buffer.flush(pc.add_ice_candidate)
            self._remote_ready = True
            answer = await pc.create_answer()
        except Exception as e:
            if self._is_current(generation):
                await self._apply(CallEvent.CONNECTION_FAILED)
            raise NegotiationError("Could not answer the call", {"error": str(e)}) from e
        if not self._is_current(generation):
            return

        try:
            await self._emit(EventName.CALL_ACCEPT, {"callerId": self.remote_id, "answer": answer})
        except ClientError:
            if self._is_current(generation):
                await self._apply(CallEvent.CONNECTION_FAILED)
            raise
        if not self._is_current(generation):
            return

        await self._send_local_candidates()
        if not self._is_current(generation):
            return
        await self._apply(CallEvent.ACCEPT)
        logger.info("Accepted %s call from %s", self._call_type, self.remote_id)

    async def reject(self) -> None:
        """Decline the ringing incoming call."""
        await self._apply(CallEvent.REJECT)

    async def hangup(self) -> bool:
        """
        End the current call from this side.

        Returns:
            False if there was no call to end
        """
        if self._state not in ACTIVE_STATES:
            return False
        await self._apply(CallEvent.HANGUP)
        return True

    def toggle_mute(self) -> bool:
        """Returns the new muted flag."""
        if self._media is not None and self._media.has("audio"):
            self._media.set_enabled("audio", not self._media.is_enabled("audio"))
        return self.is_muted

    def toggle_video(self) -> bool:
        """Returns the new video-off flag."""
        if self._media is not None and self._media.has("video"):
            self._media.set_enabled("video", not self._media.is_enabled("video"))
        return self.is_video_off

    # ---------------- signaling events ----------------
    async def handle_incoming(self, data: Dict[str, Any]) -> None:
        caller = _user_dict(data.get("caller"))
        if self._state is not CallState.IDLE:
            logger.info("Busy: rejecting call from %s", caller.get("id"))
            await self._apply(CallEvent.INCOMING, peer_id=caller.get("id"))
            return

        self._remote_user = caller
        self._call_type = data.get("callType")
        self._pending_offer = data.get("offer")
        self._buffer.clear()
        await self._apply(CallEvent.INCOMING)
        logger.info("Incoming %s call from %s", self._call_type, caller.get("id"))

    async def handle_accepted(self, data: Dict[str, Any]) -> None:
        if self._state is not CallState.CALLING or data.get("userId") != self.remote_id:
            return
        generation = self._generation
        self._cancel_timeout()

        pc, answer = self._pc, data.get("answer")
        if pc is None or not answer:
            logger.error("Call accepted by %s without a usable answer", self.remote_id)
            await self._apply(CallEvent.CONNECTION_FAILED)
            return

        try:
            await pc.set_remote_description(answer)
            if not self._is_current(generation):
                return
            await self._buffer.flush(pc.add_ice_candidate)
            self._remote_ready = True
        except Exception as e:
            logger.error("Failed to apply answer from %s: %s", self.remote_id, e)
            if self._is_current(generation):
                await self._apply(CallEvent.CONNECTION_FAILED)
            return
        if self._is_current(generation):
            await self._apply(CallEvent.ACCEPTED)

    async def handle_rejected(self, data: Dict[str, Any]) -> None:
        if self._state is CallState.CALLING and data.get("userId") == self.remote_id:
            logger.info("Call rejected by %s", self.remote_id)
            await self._apply(CallEvent.REJECTED)

    async def handle_ended(self, data: Dict[str, Any]) -> None:
        if self._state in ACTIVE_STATES and data.get("userId") == self.remote_id:
            logger.info("Call ended by %s", self.remote_id)
            await self._apply(CallEvent.REMOTE_ENDED)

    async def handle_ice_candidate(self, data: Dict[str, Any]) -> None:
        candidate = data.get("candidate")
        if self._state not in ACTIVE_STATES or data.get("from") != self.remote_id or candidate is None:
            logger.debug("Dropping ICE candidate from %s", data.get("from"))
            return
        if self._pc is not None and self._remote_ready:
            try:
                await self._pc.add_ice_candidate(candidate)
            except Exception as e:
                logger.warning("Failed to add ICE candidate: %s", e)
        else:
            self._buffer.push(candidate)

    # ---------------- state machine ----------------
    async def _apply(self, event: CallEvent, peer_id: Any = None) -> Transition:
        result = transition(self._state, event)
        previous = self._state
        self._state = result.state
        if result.state in (CallState.IDLE, CallState.ENDED) and previous is not result.state:
            self._generation += 1
        logger.debug("Call %s: %s -> %s", event.name, previous.value, result.state.value)

        for effect in result.effects:
            if effect is not Effect.SCHEDULE_RESET:
                await self._perform(effect, peer_id)

        if previous is not result.state:
            if result.state is CallState.IDLE:
                self._remote_user = None
                self._call_type = None
                self._pending_offer = None
            await self._run_hooks(CallHookPhase.LEAVE, previous)
            await self._run_hooks(CallHookPhase.ENTER, previous)

        # the ENDED hooks have seen the call before it resets
        if Effect.SCHEDULE_RESET in result.effects:
            await self._schedule_reset()
        return result

    async def _perform(self, effect: Effect, peer_id: Any) -> None:
        if effect is Effect.START_RINGBACK:
            self._ringback.start()
        elif effect is Effect.START_RINGTONE:
            self._ringtone.start()
        elif effect is Effect.STOP_SOUNDS:
            self._ringtone.stop()
            self._ringback.stop()
        elif effect is Effect.START_TIMEOUT:
            self._cancel_timeout()
            generation = self._generation
            self._timeout_handle = asyncio.get_running_loop().call_later(
                self._accept_timeout, self._spawn_if_current, generation, CallEvent.TIMEOUT
            )
        elif effect is Effect.CANCEL_TIMEOUT:
            self._cancel_timeout()
        elif effect is Effect.SEND_END:
            await self._emit_quietly(EventName.CALL_END, {"targetUserId": self.remote_id})
        elif effect is Effect.SEND_REJECT:
            await self._emit_quietly(EventName.CALL_REJECT, {"callerId": peer_id if peer_id is not None else self.remote_id})
        elif effect is Effect.RELEASE_MEDIA:
            await self._release()
        elif effect is Effect.START_DURATION:
            self._connected_at = time.monotonic()

    async def _schedule_reset(self) -> None:
        if self._ended_linger <= 0:
            await self._apply(CallEvent.RESET)
        else:
            self._reset_handle = asyncio.get_running_loop().call_later(
                self._ended_linger, self._spawn_if_current, self._generation, CallEvent.RESET
            )

    def _spawn_if_current(self, generation: int, event: CallEvent) -> None:
        if event is CallEvent.TIMEOUT:
            self._timeout_handle = None
        else:
            self._reset_handle = None
        if not self._is_current(generation) or not can_transition(self._state, event):
            return
        task = asyncio.create_task(self._apply(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    # ---------------- resources ----------------
    def _create_peer(self, generation: int) -> PeerConnection:
        async def on_state_change(state: str) -> None:
            if state in ("failed", "disconnected") and self._is_current(generation) \
                    and can_transition(self._state, CallEvent.CONNECTION_FAILED):
                logger.warning("Peer connection %s", state)
                await self._apply(CallEvent.CONNECTION_FAILED)

        async def on_ice_candidate(candidate: Dict[str, Any]) -> None:
            if not self._is_current(generation):
                return
            if self._local_sent:
                await self._emit_quietly(EventName.CALL_ICE_CANDIDATE, {
                    "targetUserId": self.remote_id, "candidate": candidate,
                })
            else:
                self._local_candidates.append(candidate)

        self._pc = self._peer_factory(
            on_ice_candidate=on_ice_candidate,
            on_state_change=on_state_change,
            on_track=self.remote_tracks.append,
        )
        return self._pc

    async def _send_local_candidates(self) -> None:
        """Candidates found before our description went out follow it now."""
        self._local_sent = True
        pending, self._local_candidates = self._local_candidates, []
        for candidate in pending:
            await self._emit_quietly(EventName.CALL_ICE_CANDIDATE, {
                "targetUserId": self.remote_id, "candidate": candidate,
            })

    async def _release(self) -> None:
        media, self._media = self._media, None
        pc, self._pc = self._pc, None
        self._remote_ready = False
        self._local_sent = False
        self._local_candidates = []
        self._buffer.clear()
        self._connected_at = None
        self.remote_tracks = []
        if media is not None:
            media.stop()
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning("Error closing peer connection: %s", e)

    # ---------------- signaling ----------------
    async def _emit(self, event_name: str, data: Dict[str, Any]) -> None:
        if self._signaling is None:
            raise ClientError("Call session is not bound to a signaling client")
        await self._signaling.emit(event_name, data)

    async def _emit_quietly(self, event_name: str, data: Dict[str, Any]) -> None:
        try:
            await self._emit(event_name, data)
        except ClientError as e:
            logger.warning("Could not send %s: %s", event_name, e)

    async def close(self) -> None:
        """Hang up and stop all timers."""
        await self.hangup()
        self._cancel_timeout()
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None
        self._ringtone.stop()
        self._ringback.stop()
        for task in list(self._tasks):
            task.cancel()


__all__ = [
    'CallHookContext',
    'CallHookPhase',
    'CallSessionManager',
]
