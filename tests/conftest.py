"""
Pytest configuration and fixtures
"""

import asyncio
from typing import Callable, List, Optional

import pytest

from peercall.errors import MediaAccessError
from peercall.services.channel import InMemoryChannel
from peercall.services.negotiation import NegotiationClient
from peercall.services.relay import RoomRelay
from peercall.services.rtc.base import LocalStream, MediaProvider, PeerConnection


class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.enabled = True
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeStream(LocalStream):
    def __init__(self):
        self._tracks = [FakeTrack("audio"), FakeTrack("video")]

    def tracks(self, kind=None):
        return [t for t in self._tracks if kind is None or t.kind == kind]


class FakeMediaProvider(MediaProvider):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.streams: List[FakeStream] = []

    async def acquire_local_stream(self, constraints):
        if self.error:
            raise self.error
        stream = FakeStream()
        self.streams.append(stream)
        return stream


class FakePeerConnection(PeerConnection):
    """Records every call; reports a remote stream once both descriptions are set."""

    def __init__(self, offer_sdp: str = "O1", answer_sdp: str = "A1"):
        super().__init__()
        self.offer_sdp = offer_sdp
        self.answer_sdp = answer_sdp
        self.local_desc = None
        self.remote_desc = None
        self.tracks = []
        self.candidates = []
        self.closed = False
        self.offer_gate: Optional[asyncio.Event] = None
        self._track_fired = False

    @property
    def local_description(self):
        return self.local_desc

    async def create_offer(self):
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        return {"type": "offer", "sdp": self.offer_sdp}

    async def create_answer(self):
        if self.remote_desc is None:
            raise RuntimeError("no remote offer")
        return {"type": "answer", "sdp": self.answer_sdp}

    async def set_local_description(self, description):
        self._check_open()
        self.local_desc = description
        await self._maybe_fire_track()

    async def set_remote_description(self, description):
        self._check_open()
        if description["sdp"] == "malformed":
            raise ValueError("could not parse sdp")
        self.remote_desc = description
        await self._maybe_fire_track()

    async def add_ice_candidate(self, candidate):
        if self.remote_desc is None:
            raise RuntimeError("remote description is not set")
        self.candidates.append(candidate)

    def add_track(self, track, stream):
        self.tracks.append(track)

    async def close(self):
        self.closed = True

    async def emit_candidate(self, candidate):
        if self.on_local_candidate:
            await self.on_local_candidate(candidate)

    def _check_open(self):
        if self.closed:
            raise RuntimeError("peer connection is closed")

    async def _maybe_fire_track(self):
        if self.local_desc and self.remote_desc and not self._track_fired:
            self._track_fired = True
            if self.on_remote_track:
                await self.on_remote_track("remote-track")


class RecordingChannel(InMemoryChannel):
    def __init__(self, relay):
        super().__init__(relay)
        self.sent = []

    async def send(self, message):
        self.sent.append(message)
        await super().send(message)

    def sent_types(self):
        return [m["type"] for m in self.sent]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0):
    """Yield to the loop until ``predicate`` holds."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def relay() -> RoomRelay:
    return RoomRelay()


@pytest.fixture
def make_client(relay):
    """Build NegotiationClients wired to the shared in-process relay."""
    def _make(room_id: str = "r", media: Optional[MediaProvider] = None, **kwargs) -> NegotiationClient:
        return NegotiationClient(
            room_id,
            RecordingChannel(relay),
            media or FakeMediaProvider(),
            FakePeerConnection,
            **kwargs,
        )
    return _make


@pytest.fixture
def broken_media():
    return FakeMediaProvider(error=MediaAccessError("permission denied"))
