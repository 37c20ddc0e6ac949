from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional


class LocalStream(ABC):
    @abstractmethod
    def tracks(self, kind: Optional[str] = None) -> List[Any]:
        """Return local tracks, optionally only those of ``kind`` ("audio"/"video")."""
        raise NotImplementedError

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()


class MediaProvider(ABC):
    @abstractmethod
    async def acquire_local_stream(self, constraints: Dict[str, Any]) -> LocalStream:
        """Start local capture. Raise MediaAccessError when it cannot be started."""
        raise NotImplementedError


class PeerConnection(ABC):
    """Peer-connection primitive driven by the negotiation client.

    Descriptions are ``{"type", "sdp"}`` dicts and candidates are
    ``{"candidate", "sdpMid", "sdpMLineIndex"}`` dicts, the same shapes a
    browser puts on the wire.
    """

    def __init__(self):
        self.on_remote_track: Optional[Callable[[Any], Awaitable[None]]] = None
        self.on_local_candidate: Optional[Callable[[dict], Awaitable[None]]] = None

    @property
    @abstractmethod
    def local_description(self) -> Optional[dict]:
        raise NotImplementedError

    @abstractmethod
    async def create_offer(self) -> dict:
        raise NotImplementedError

    @abstractmethod
    async def create_answer(self) -> dict:
        raise NotImplementedError

    @abstractmethod
    async def set_local_description(self, description: dict) -> None:
        raise NotImplementedError

    @abstractmethod
    async def set_remote_description(self, description: dict) -> None:
        raise NotImplementedError

    @abstractmethod
    async def add_ice_candidate(self, candidate: dict) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_track(self, track: Any, stream: LocalStream) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError


PeerConnectionFactory = Callable[[], PeerConnection]
