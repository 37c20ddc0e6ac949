import logging
from typing import Any, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp
from av import AudioFrame, VideoFrame

from peercall.errors import MediaAccessError
from .base import LocalStream, MediaProvider, PeerConnection

logger = logging.getLogger(__name__)


def _blank_like(frame):
    """Silence or a blank picture with the timing of ``frame``."""
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height)
    for p in blank.planes:
        p.update(bytes(p.buffer_size))
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleableTrack(MediaStreamTrack):
    """Relays a capture track; while disabled it keeps timing but sends nothing visible or audible.

    Peer connections never get this track itself, only a subscription from
    subscribe(). Closing a connection stops its subscription; the capture
    ends only when this track is stopped.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        self._relay = MediaRelay()

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return _blank_like(frame)

    def subscribe(self) -> MediaStreamTrack:
        return self._relay.subscribe(self)

    def stop(self):
        super().stop()
        self.source.stop()


class AiortcStream(LocalStream):
    def __init__(self, tracks: List[ToggleableTrack]):
        self._tracks = tracks

    def tracks(self, kind: Optional[str] = None) -> List[ToggleableTrack]:
        return [t for t in self._tracks if kind is None or t.kind == kind]


class AiortcMediaProvider(MediaProvider):
    """Captures from devices or files through aiortc's MediaPlayer (FFmpeg)."""

    def __init__(self, video_device: Optional[str] = None, audio_device: Optional[str] = None,
                 video_format: Optional[str] = None, audio_format: Optional[str] = None):
        self.video_device = video_device
        self.audio_device = audio_device
        self.video_format = video_format
        self.audio_format = audio_format

    def _open(self, device: str, fmt: Optional[str], options: Optional[Dict[str, str]] = None) -> MediaPlayer:
        try:
            return MediaPlayer(device, format=fmt, options=options or {})
        except Exception as e:
            raise MediaAccessError(f"Cannot open capture device {device}: {e}") from e

    async def acquire_local_stream(self, constraints: Dict[str, Any]) -> LocalStream:
        stream = AiortcStream([])
        try:
            video_player = None
            if constraints.get("video"):
                if not self.video_device:
                    raise MediaAccessError("No video capture device configured")
                video_player = self._open(self.video_device, self.video_format, {"video_size": "640x480"})
                if video_player.video is None:
                    raise MediaAccessError(f"{self.video_device} has no video stream")
                stream._tracks.append(ToggleableTrack(video_player.video))

            if constraints.get("audio"):
                if not self.audio_device:
                    raise MediaAccessError("No audio capture device configured")
                if video_player is not None and self.audio_device == self.video_device:
                    audio_player = video_player
                else:
                    audio_player = self._open(self.audio_device, self.audio_format)
                if audio_player.audio is None:
                    raise MediaAccessError(f"{self.audio_device} has no audio stream")
                stream._tracks.append(ToggleableTrack(audio_player.audio))
        except MediaAccessError:
            stream.stop()
            raise

        logger.info(f"🎙️ Local media ready: {', '.join(t.kind for t in stream.tracks()) or 'none'}")
        return stream


class AiortcPeerConnection(PeerConnection):
    def __init__(self, ice_servers: Optional[List[dict]] = None):
        super().__init__()
        servers = [
            RTCIceServer(urls=s["urls"], username=s.get("username"), credential=s.get("credential"))
            for s in (ice_servers or [])
        ]
        self.pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"Connection state is {self.pc.connectionState}")

        @self.pc.on("track")
        async def on_track(track):
            logger.info(f"🎥 Remote {track.kind} track received")
            if self.on_remote_track:
                await self.on_remote_track(track)

        # aiortc does not trickle: its candidates always travel inside the
        # local description, so on_local_candidate never fires here

    @property
    def local_description(self) -> Optional[dict]:
        desc = self.pc.localDescription
        if desc is None:
            return None
        return {"type": desc.type, "sdp": desc.sdp}

    async def create_offer(self) -> dict:
        offer = await self.pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> dict:
        answer = await self.pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: dict) -> None:
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def set_remote_description(self, description: dict) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate: dict) -> None:
        if self.pc.remoteDescription is None:
            raise InvalidStateError("Remote description is not set")
        sdp = candidate.get("candidate") or ""
        if not sdp:
            # end-of-candidates marker
            return
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        rtc_candidate = candidate_from_sdp(sdp)
        rtc_candidate.sdpMid = candidate.get("sdpMid")
        rtc_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(rtc_candidate)

    def add_track(self, track: Any, stream: LocalStream) -> None:
        if isinstance(track, ToggleableTrack):
            track = track.subscribe()
        self.pc.addTrack(track)

    async def close(self) -> None:
        await self.pc.close()
