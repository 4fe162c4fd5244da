"""
Media and peer-connection collaborators of the call session.

The session only talks to the small protocols below. The aiortc
implementations are the default backend; tests plug in fakes.

Descriptions and candidates travel over the relay as plain dicts in the
browser shape: ``{"type", "sdp"}`` and ``{"candidate", "sdpMid",
"sdpMLineIndex"}``.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from HKChat.config import config
from HKChat.core.client.utils.exceptions import MediaAcquisitionError, NegotiationError

logger = logging.getLogger(__name__)


# ---------------- protocols ----------------
@runtime_checkable
class LocalMedia(Protocol):
    """Local microphone / camera tracks of one call."""

    def has(self, kind: str) -> bool:
        ...

    def set_enabled(self, kind: str, enabled: bool) -> bool:
        """Enable or disable the track of a kind; False if there is none."""
        ...

    def is_enabled(self, kind: str) -> bool:
        ...

    def stop(self) -> None:
        """Release the devices."""
        ...


@runtime_checkable
class MediaProvider(Protocol):
    async def acquire(self, call_type: str) -> LocalMedia:
        """
        Open the devices a call type needs (audio; plus video for "video").

        Raises:
            MediaAcquisitionError: On permission or device failure
        """
        ...


@runtime_checkable
class PeerConnection(Protocol):
    def add_local_media(self, media: LocalMedia) -> None:
        ...

    async def create_offer(self) -> Dict[str, Any]:
        """Create the offer and set it as local description."""
        ...

    async def create_answer(self) -> Dict[str, Any]:
        """Create the answer and set it as local description."""
        ...

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        ...

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


PeerConnectionFactory = Callable[..., PeerConnection]


# ---------------- wire helpers ----------------
def description_to_dict(description: RTCSessionDescription) -> Dict[str, Any]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data: Dict[str, Any]) -> RTCSessionDescription:
    if not isinstance(data, dict) or not data.get("sdp") or not data.get("type"):
        raise NegotiationError("Invalid session description", {"description": data})
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidate_to_dict(candidate) -> Dict[str, Any]:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Dict[str, Any]):
    line = data.get("candidate") or ""
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


# ---------------- aiortc media ----------------
class GatedTrack(MediaStreamTrack):
    """Forwards a source track; while disabled its frames are zeroed."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self._source = source
        self.enabled = True

    async def recv(self):
        frame = await self._source.recv()
        if not self.enabled:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class AiortcLocalMedia:
    def __init__(self, tracks: List[GatedTrack], players: Optional[List[MediaPlayer]] = None):
        self.tracks = tracks
        self._players = players or []

    def _track(self, kind: str) -> Optional[GatedTrack]:
        return next((t for t in self.tracks if t.kind == kind), None)

    def has(self, kind: str) -> bool:
        return self._track(kind) is not None

    def set_enabled(self, kind: str, enabled: bool) -> bool:
        track = self._track(kind)
        if track is None:
            return False
        track.enabled = enabled
        return True

    def is_enabled(self, kind: str) -> bool:
        track = self._track(kind)
        return track is not None and track.enabled

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()
        self.tracks = []
        self._players = []


class AiortcMediaProvider:
    """
    Opens capture devices through aiortc's MediaPlayer.

    Without a configured source the kind is served by a synthetic track
    (silence / black frames), which keeps headless clients usable.
    """

    def __init__(
        self,
        audio_source: Optional[str] = None,
        audio_format: Optional[str] = None,
        video_source: Optional[str] = None,
        video_format: Optional[str] = None,
        video_options: Optional[Dict[str, str]] = None
    ):
        self._audio = (audio_source, audio_format, None)
        self._video = (video_source, video_format, video_options)

    async def acquire(self, call_type: str) -> AiortcLocalMedia:
        kinds = ["audio", "video"] if call_type == "video" else ["audio"]
        tracks: List[GatedTrack] = []
        players: List[MediaPlayer] = []
        try:
            for kind in kinds:
                source, fmt, options = self._audio if kind == "audio" else self._video
                if source is None:
                    track = AudioStreamTrack() if kind == "audio" else VideoStreamTrack()
                else:
                    player = await asyncio.to_thread(MediaPlayer, source, format=fmt, options=options)
                    players.append(player)
                    track = player.audio if kind == "audio" else player.video
                    if track is None:
                        raise MediaAcquisitionError(f"No {kind} track in {source}")
                tracks.append(GatedTrack(track))
        except MediaAcquisitionError:
            AiortcLocalMedia(tracks, players).stop()
            raise
        except Exception as e:
            AiortcLocalMedia(tracks, players).stop()
            raise MediaAcquisitionError(f"Could not open {call_type} devices", {"error": str(e)}) from e
        return AiortcLocalMedia(tracks, players)


# ---------------- aiortc peer connection ----------------
class AiortcPeerConnection:
    """
    RTCPeerConnection behind the PeerConnection protocol.

    aiortc gathers candidates into the local description instead of
    trickling them, so ``on_ice_candidate`` is never called here; remote
    trickled candidates are still applied.
    """

    def __init__(
        self,
        on_ice_candidate: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_state_change: Optional[Callable[[str], Any]] = None,
        on_track: Optional[Callable[[Any], Any]] = None,
        ice_servers: Optional[List[str]] = None
    ):
        urls = config.ICE_SERVERS if ice_servers is None else ice_servers
        self._pc = RTCPeerConnection(RTCConfiguration(iceServers=[RTCIceServer(urls=list(urls))]))
        self._on_ice_candidate = on_ice_candidate

        @self._pc.on("connectionstatechange")
        async def _on_connection_state():
            logger.debug("Peer connection state: %s", self._pc.connectionState)
            if on_state_change is not None:
                result = on_state_change(self._pc.connectionState)
                if asyncio.iscoroutine(result):
                    await result

        @self._pc.on("track")
        def _on_track(track):
            if on_track is not None:
                on_track(track)

    @property
    def raw(self) -> RTCPeerConnection:
        return self._pc

    def add_local_media(self, media: AiortcLocalMedia) -> None:
        for track in media.tracks:
            self._pc.addTrack(track)

    async def create_offer(self) -> Dict[str, Any]:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return description_to_dict(self._pc.localDescription)

    async def create_answer(self) -> Dict[str, Any]:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return description_to_dict(self._pc.localDescription)

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        await self._pc.setRemoteDescription(description_from_dict(description))

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        await self._pc.addIceCandidate(candidate_from_dict(candidate))

    async def close(self) -> None:
        await self._pc.close()


__all__ = [
    'AiortcLocalMedia',
    'AiortcMediaProvider',
    'AiortcPeerConnection',
    'GatedTrack',
    'LocalMedia',
    'MediaProvider',
    'PeerConnection',
    'PeerConnectionFactory',
    'candidate_from_dict',
    'candidate_to_dict',
    'description_from_dict',
    'description_to_dict',
]
