"""
Call signaling relay.

Forwards offer/answer/ICE-candidate/end signals between the two parties
of a call, to every connection of the target user. The call state machine
itself lives on each client; the relay only keeps a small directory of
who is ringing or talking with whom, fed by the signals it forwards.
The directory gives relay-side busy rejection and lets a party's last
disconnect end the call for the peer.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, List, Optional

from HKChat.core.message.protocol import EventName
from HKChat.core.server.interfaces import Broadcaster
from HKChat.core.server.routing import ConnectionContext, DeliveryStatus, require

logger = logging.getLogger(__name__)


class CallPhase(Enum):
    RINGING = auto()
    ACTIVE = auto()


@dataclass
class CallPair:
    """One pending or accepted call between two users."""
    caller: Any
    callee: Any
    call_type: Optional[str] = None
    phase: CallPhase = CallPhase.RINGING
    started_at: float = field(default_factory=time.time)

    def peer_of(self, user_id: Any) -> Any:
        return self.callee if user_id == self.caller else self.caller

    def involves(self, a: Any, b: Any) -> bool:
        return {self.caller, self.callee} == {a, b}


class ActiveCallDirectory:
    """user -> the call they are part of. At most one call per user."""

    def __init__(self):
        self._by_user: Dict[Any, CallPair] = {}

    def is_busy(self, user_id: Any) -> bool:
        return user_id in self._by_user

    def get(self, user_id: Any) -> Optional[CallPair]:
        return self._by_user.get(user_id)

    def open(self, caller: Any, callee: Any, call_type: Optional[str] = None) -> CallPair:
        pair = CallPair(caller, callee, call_type)
        self._by_user[caller] = pair
        self._by_user[callee] = pair
        return pair

    def accept(self, callee: Any, caller: Any) -> Optional[CallPair]:
        pair = self._by_user.get(callee)
        if pair is None or pair.caller != caller or pair.callee != callee:
            return None
        pair.phase = CallPhase.ACTIVE
        return pair

    def close(self, user_id: Any, peer_id: Any = None) -> Optional[CallPair]:
        """
        Remove the user's call. With ``peer_id`` only a call between those
        two users is removed.
        """
        pair = self._by_user.get(user_id)
        if pair is None:
            return None
        if peer_id is not None and not pair.involves(user_id, peer_id):
            return None
        for party in (pair.caller, pair.callee):
            if self._by_user.get(party) is pair:
                del self._by_user[party]
        return pair

    def calls(self) -> List[CallPair]:
        seen: List[CallPair] = []
        for pair in self._by_user.values():
            if pair not in seen:
                seen.append(pair)
        return seen

    def __len__(self) -> int:
        return len(self.calls())


ProfileLookup = Callable[[Any], Awaitable[Dict[str, Any]]]


class CallSignalingRelay:
    """Handlers for the call:* events."""

    def __init__(
        self,
        broadcaster: Broadcaster,
        profile_lookup: ProfileLookup,
        directory: Optional[ActiveCallDirectory] = None
    ):
        self._broadcaster = broadcaster
        self._profile_lookup = profile_lookup
        self._directory = directory or ActiveCallDirectory()

    @property
    def directory(self) -> ActiveCallDirectory:
        return self._directory

    async def initiate(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (target,) = require(data, "targetUserId")
        caller_id = ctx.user_id

        if target == caller_id:
            logger.warning("User %s tried to call themselves", caller_id)
            return

        if self._directory.is_busy(target):
            logger.info("Call from %s to busy user %s rejected by relay", caller_id, target)
            await self._broadcaster.to_user(caller_id, EventName.CALL_REJECTED, {"userId": target})
            return

        stale = self._directory.close(caller_id)
        if stale is not None:
            await self._broadcaster.to_user(stale.peer_of(caller_id), EventName.CALL_ENDED, {"userId": caller_id})

        caller = await self._profile_lookup(caller_id)
        results = await self._broadcaster.to_user(
            target,
            EventName.CALL_INCOMING,
            {"caller": caller, "callType": data.get("callType"), "offer": data.get("offer")},
        )
        if any(r.status is DeliveryStatus.DELIVERED for r in results):
            self._directory.open(caller_id, target, data.get("callType"))
            logger.info("Call %s -> %s (%s) ringing", caller_id, target, data.get("callType"))
        else:
            logger.debug("Call target %s has no live connections", target)

    async def accept(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (caller_id,) = require(data, "callerId")
        self._directory.accept(ctx.user_id, caller_id)
        await self._broadcaster.to_user(
            caller_id,
            EventName.CALL_ACCEPTED,
            {"userId": ctx.user_id, "answer": data.get("answer")},
        )

    async def reject(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (caller_id,) = require(data, "callerId")
        # a busy auto-reject must not tear down the callee's current call
        self._directory.close(ctx.user_id, peer_id=caller_id)
        await self._broadcaster.to_user(caller_id, EventName.CALL_REJECTED, {"userId": ctx.user_id})

    async def end(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        (target,) = require(data, "targetUserId")
        self._directory.close(ctx.user_id, peer_id=target)
        await self._broadcaster.to_user(target, EventName.CALL_ENDED, {"userId": ctx.user_id})

    async def ice_candidate(self, ctx: ConnectionContext, data: Dict[str, Any]) -> None:
        target, candidate = require(data, "targetUserId", "candidate")
        await self._broadcaster.to_user(
            target,
            EventName.CALL_ICE_CANDIDATE,
            {"candidate": candidate, "from": ctx.user_id},
        )

    async def user_offline(self, user_id: Any) -> Optional[CallPair]:
        """End the call of a user whose last connection closed."""
        pair = self._directory.close(user_id)
        if pair is None:
            return None
        peer = pair.peer_of(user_id)
        logger.info("Ending call of %s with %s: %s went offline", user_id, peer, user_id)
        await self._broadcaster.to_user(peer, EventName.CALL_ENDED, {"userId": user_id})
        return pair


__all__ = [
    'ActiveCallDirectory',
    'CallPair',
    'CallPhase',
    'CallSignalingRelay',
]
