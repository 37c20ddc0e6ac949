class PeerCallError(Exception):
    """Base class for call setup and signaling failures."""


class MediaAccessError(PeerCallError):
    """Local capture could not be started (permission denied, no device)."""


class RoomFullError(PeerCallError):
    def __init__(self, room_id: str):
        super().__init__(f"Room {room_id!r} already has two members")
        self.room_id = room_id


class SignalingApplyError(PeerCallError):
    """A remote description or candidate was rejected by the peer connection."""


class InvalidTransitionError(PeerCallError):
    def __init__(self, current, target):
        super().__init__(f"Illegal transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class ChannelClosedError(PeerCallError):
    """The signaling channel was closed by either side."""
