import asyncio
import logging
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from peercall.errors import (
    ChannelClosedError,
    InvalidTransitionError,
    MediaAccessError,
    PeerCallError,
    RoomFullError,
    SignalingApplyError,
)
from peercall.models import (
    Answer,
    ChatEntry,
    ChatMessage,
    ErrorEvent,
    IceCandidate,
    IceCandidateMessage,
    Joined,
    JoinRoom,
    LeaveRoom,
    Offer,
    PeerLeft,
    Role,
    RoomFull,
    SessionDescription,
    UserJoined,
    signaling_adapter,
)
from peercall.services.channel import SignalingChannel
from peercall.services.rtc.base import LocalStream, MediaProvider, PeerConnection, PeerConnectionFactory

logger = logging.getLogger(__name__)

DEFAULT_CONSTRAINTS = {"audio": True, "video": True}


class NegotiationState(str, Enum):
    IDLE = "idle"
    AWAITING_LOCAL_MEDIA = "awaiting-local-media"
    JOINED = "joined"
    OFFER_SENT = "offer-sent"
    OFFER_RECEIVED = "offer-received"
    CONNECTED = "connected"
    CLOSED = "closed"


TRANSITIONS = {
    NegotiationState.IDLE: {NegotiationState.AWAITING_LOCAL_MEDIA},
    NegotiationState.AWAITING_LOCAL_MEDIA: {
        NegotiationState.JOINED, NegotiationState.IDLE, NegotiationState.CLOSED,
    },
    NegotiationState.JOINED: {
        NegotiationState.OFFER_SENT, NegotiationState.OFFER_RECEIVED,
        NegotiationState.CONNECTED, NegotiationState.CLOSED,
    },
    NegotiationState.OFFER_SENT: {
        NegotiationState.OFFER_RECEIVED, NegotiationState.CONNECTED,
        NegotiationState.JOINED, NegotiationState.CLOSED,
    },
    NegotiationState.OFFER_RECEIVED: {
        NegotiationState.CONNECTED, NegotiationState.JOINED, NegotiationState.CLOSED,
    },
    NegotiationState.CONNECTED: {
        NegotiationState.OFFER_RECEIVED, NegotiationState.JOINED, NegotiationState.CLOSED,
    },
    NegotiationState.CLOSED: set(),
}

# States in which the call is in a room and may negotiate or chat
IN_ROOM = frozenset({
    NegotiationState.JOINED,
    NegotiationState.OFFER_SENT,
    NegotiationState.OFFER_RECEIVED,
    NegotiationState.CONNECTED,
})


class NegotiationClient:
    """One participant's side of a two-party call.

    The client owns local capture and a single peer connection, joins a room
    through the injected signaling channel and drives offer/answer/ICE
    exchange from the messages it receives. Its role comes from the relay:
    the earlier joiner offers, the later joiner answers. Should both sides
    end up offering anyway, the initiator keeps its offer and the responder
    drops its own and answers.

    Every negotiation step re-checks after each await that the call is still
    open and still on the same peer connection, so results that resolve after
    leave() or after a reset are thrown away.
    """

    def __init__(
        self,
        room_id: str,
        channel: SignalingChannel,
        media: Optional[MediaProvider] = None,
        peer_factory: Optional[PeerConnectionFactory] = None,
        *,
        constraints: Optional[Dict[str, Any]] = None,
        on_remote_track: Optional[Callable[[Any], None]] = None,
        on_chat: Optional[Callable[[ChatEntry], None]] = None,
        on_state_change: Optional[Callable[[NegotiationState, NegotiationState], None]] = None,
    ):
        if media is None or peer_factory is None:
            from peercall.services.rtc.factory import get_media_provider, get_peer_connection_factory
            media = media or get_media_provider()
            peer_factory = peer_factory or get_peer_connection_factory()

        self.room_id = room_id
        self.channel = channel
        self.media = media
        self.peer_factory = peer_factory
        self.constraints = constraints or dict(DEFAULT_CONSTRAINTS)
        self.on_remote_track = on_remote_track
        self.on_chat = on_chat
        self.on_state_change = on_state_change

        self.state = NegotiationState.IDLE
        self.role: Optional[Role] = None
        self.member_id: Optional[str] = None
        self.local_stream: Optional[LocalStream] = None
        self.remote_tracks: List[Any] = []
        self.peer: Optional[PeerConnection] = None
        self.transcript: List[ChatEntry] = []
        self.offer_task: Optional[asyncio.Task] = None

        self._offer_generation = 0
        self._making_offer = False
        self._remote_applied = False

    @property
    def closed(self) -> bool:
        return self.state is NegotiationState.CLOSED

    def _transition(self, target: NegotiationState) -> None:
        if target is self.state:
            return
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        previous, self.state = self.state, target
        logger.debug(f"Room {self.room_id}: {previous.value} -> {target.value}")
        if self.on_state_change:
            self.on_state_change(previous, target)

    def _superseded(self, peer: PeerConnection, generation: Optional[int] = None) -> bool:
        if self.closed or peer is not self.peer:
            return True
        return generation is not None and generation != self._offer_generation

    # -- setup -------------------------------------------------------------

    async def start(self) -> None:
        """Acquire local media, build the peer connection and join the room.

        Raises MediaAccessError or RoomFullError; either leaves the client in
        IDLE so the attempt can be repeated.
        """
        self._transition(NegotiationState.AWAITING_LOCAL_MEDIA)
        try:
            stream = await self.media.acquire_local_stream(self.constraints)
        except MediaAccessError as e:
            logger.error(f"❌ Local media unavailable: {e}")
            if not self.closed:
                self._transition(NegotiationState.IDLE)
            raise
        if self.closed:
            stream.stop()
            return

        self.local_stream = stream
        self._build_peer()
        try:
            await self.channel.send(JoinRoom(room_id=self.room_id).to_wire())
        except ChannelClosedError:
            await self._release()
            if not self.closed:
                self._transition(NegotiationState.IDLE)
            raise
        try:
            reply = await self._await_join_reply()
        except ChannelClosedError:
            if self.closed:
                return
            raise
        if self.closed:
            return

        if isinstance(reply, RoomFull):
            logger.warning(f"🚫 Room {self.room_id} is full")
            await self._release()
            self._transition(NegotiationState.IDLE)
            raise RoomFullError(self.room_id)

        self.member_id = reply.member_id
        self.role = reply.role
        self._transition(NegotiationState.JOINED)
        logger.info(f"✅ Joined room {self.room_id} as {self.role.value} ({self.member_id})")

    async def _await_join_reply(self):
        while True:
            data = await self.channel.receive()
            try:
                message = signaling_adapter.validate_python(data)
            except ValidationError:
                logger.warning(f"⚠️ Ignoring malformed message while joining: {data!r}")
                continue
            if isinstance(message, (Joined, RoomFull)):
                return message
            if isinstance(message, ErrorEvent):
                raise PeerCallError(f"Relay refused join: {message.detail}")
            logger.debug(f"Ignoring {message.type} before join completed")

    def _build_peer(self) -> None:
        peer = self.peer_factory()
        for track in self.local_stream.tracks():
            peer.add_track(track, self.local_stream)
        peer.on_remote_track = partial(self._on_remote_track, peer)
        peer.on_local_candidate = partial(self._on_local_candidate, peer)
        self.peer = peer
        self.remote_tracks = []
        self._remote_applied = False

    async def _replace_peer(self) -> None:
        old = self.peer
        self._offer_generation += 1
        self._making_offer = False
        self._build_peer()
        if old is not None:
            await old.close()

    # -- inbound -----------------------------------------------------------

    async def run(self) -> None:
        """Process relay messages until the channel closes or the call is left.

        SignalingApplyError for the first remote description propagates.
        """
        while not self.closed:
            try:
                data = await self.channel.receive()
            except ChannelClosedError:
                if not self.closed:
                    logger.warning(f"Signaling channel for room {self.room_id} closed")
                break
            await self.handle(data)

    async def handle(self, data: dict) -> None:
        try:
            message = signaling_adapter.validate_python(data)
        except ValidationError as e:
            logger.warning(f"⚠️ Dropping malformed signaling message: {e.error_count()} error(s)")
            return
        if self.state not in IN_ROOM:
            logger.debug(f"Ignoring {message.type} in state {self.state.value}")
            return

        if isinstance(message, UserJoined):
            self._on_user_joined(message)
        elif isinstance(message, Offer):
            await self._on_offer(message)
        elif isinstance(message, Answer):
            await self._on_answer(message)
        elif isinstance(message, IceCandidateMessage):
            await self._on_ice_candidate(message)
        elif isinstance(message, ChatMessage):
            self._on_chat(message)
        elif isinstance(message, PeerLeft):
            await self._on_peer_left(message)
        elif isinstance(message, ErrorEvent):
            logger.warning(f"⚠️ Relay error: {message.detail}")
        else:
            logger.debug(f"Ignoring {message.type} after join")

    def _on_user_joined(self, message: UserJoined) -> None:
        self.role = message.role
        logger.info(f"👥 Peer joined room {self.room_id}")
        if self.role is not Role.INITIATOR:
            return
        if self.state is not NegotiationState.JOINED or self._making_offer:
            logger.info(f"Not offering in state {self.state.value}")
            return
        self._making_offer = True
        self.offer_task = asyncio.create_task(self._make_offer())

    async def _make_offer(self) -> None:
        self._making_offer = True
        self._offer_generation += 1
        generation = self._offer_generation
        peer = self.peer
        try:
            offer = await peer.create_offer()
            if self._superseded(peer, generation):
                logger.info("Discarding offer created for a stale negotiation")
                return
            await peer.set_local_description(offer)
            if self._superseded(peer, generation):
                logger.info("Discarding offer applied to a stale negotiation")
                return
            self._transition(NegotiationState.OFFER_SENT)
            await self._send(Offer(
                room_id=self.room_id,
                description=SessionDescription(**peer.local_description),
            ))
            logger.info(f"📤 Offer sent to room {self.room_id}")
        except Exception as e:
            logger.error(f"❌ Could not create offer: {e}")
        finally:
            if generation == self._offer_generation:
                self._making_offer = False

    async def _on_offer(self, message: Offer) -> None:
        collision = self._making_offer or self.state is NegotiationState.OFFER_SENT
        if collision:
            if self.role is Role.INITIATOR:
                logger.warning("⚔️ Offer collision, keeping our own offer")
                return
            logger.info("⚔️ Offer collision, dropping our own offer")
            await self._replace_peer()
            if self.closed:
                return

        peer = self.peer
        first = not self._remote_applied
        try:
            await peer.set_remote_description(message.description.model_dump())
            if self._superseded(peer):
                return
            self._remote_applied = True
            answer = await peer.create_answer()
            if self._superseded(peer):
                return
            await peer.set_local_description(answer)
        except Exception as e:
            self._apply_failed("offer", e, first)
            return
        if self._superseded(peer):
            return

        if self.remote_tracks:
            self._transition(NegotiationState.CONNECTED)
        else:
            self._transition(NegotiationState.OFFER_RECEIVED)
        await self._send(Answer(
            room_id=self.room_id,
            description=SessionDescription(**peer.local_description),
        ))
        logger.info(f"📤 Answer sent to room {self.room_id}")

    async def _on_answer(self, message: Answer) -> None:
        if self.state is not NegotiationState.OFFER_SENT:
            logger.warning(f"Unexpected answer in state {self.state.value}")
            return
        peer = self.peer
        first = not self._remote_applied
        try:
            await peer.set_remote_description(message.description.model_dump())
        except Exception as e:
            self._apply_failed("answer", e, first)
            return
        if self._superseded(peer):
            return
        self._remote_applied = True
        self._transition(NegotiationState.CONNECTED)

    def _apply_failed(self, kind: str, error: Exception, first: bool) -> None:
        if first:
            logger.error(f"❌ Remote {kind} rejected, call cannot proceed: {error}")
            raise SignalingApplyError(f"Could not apply remote {kind}: {error}") from error
        logger.warning(f"⚠️ Dropping remote {kind}: {error}")

    async def _on_ice_candidate(self, message: IceCandidateMessage) -> None:
        try:
            await self.peer.add_ice_candidate(message.candidate.model_dump())
        except Exception as e:
            # Candidates can arrive before the description they belong to
            logger.warning(f"⚠️ Dropping ICE candidate: {e}")

    def _on_chat(self, message: ChatMessage) -> None:
        entry = ChatEntry(sender_id=message.sender_id, text=message.text)
        self.transcript.append(entry)
        logger.info(f"📩 Chat from {message.sender_id}")
        if self.on_chat:
            self.on_chat(entry)

    async def _on_peer_left(self, message: PeerLeft) -> None:
        logger.info(f"👋 Peer left room {self.room_id}, waiting for a new one")
        self.role = message.role
        await self._replace_peer()
        if not self.closed:
            self._transition(NegotiationState.JOINED)

    # -- peer connection callbacks ----------------------------------------

    async def _on_remote_track(self, peer: PeerConnection, track: Any) -> None:
        if self._superseded(peer):
            return
        self.remote_tracks.append(track)
        if self.state in (NegotiationState.OFFER_SENT, NegotiationState.OFFER_RECEIVED):
            self._transition(NegotiationState.CONNECTED)
        if self.on_remote_track:
            self.on_remote_track(track)

    async def _on_local_candidate(self, peer: PeerConnection, candidate: dict) -> None:
        if self._superseded(peer):
            return
        await self._send(IceCandidateMessage(room_id=self.room_id, candidate=IceCandidate(**candidate)))

    # -- outbound ----------------------------------------------------------

    async def _send(self, message) -> None:
        try:
            await self.channel.send(message.to_wire())
        except ChannelClosedError as e:
            logger.warning(f"Could not send {message.type}: {e}")

    async def send_chat(self, text: str) -> Optional[ChatEntry]:
        """Send a chat line and append it to the local transcript right away."""
        text = text.strip()
        if not text:
            return None
        if self.state not in IN_ROOM:
            raise PeerCallError(f"Chat is not available in state {self.state.value}")
        entry = ChatEntry(sender_id=self.member_id, text=text, own=True)
        self.transcript.append(entry)
        await self._send(ChatMessage(room_id=self.room_id, text=text, sender_id=self.member_id))
        return entry

    def toggle_audio(self) -> bool:
        return self._toggle("audio")

    def toggle_video(self) -> bool:
        return self._toggle("video")

    def _toggle(self, kind: str) -> bool:
        tracks = self.local_stream.tracks(kind) if self.local_stream else []
        if not tracks:
            raise PeerCallError(f"No local {kind} track")
        track = tracks[0]
        track.enabled = not track.enabled
        return track.enabled

    # -- teardown ----------------------------------------------------------

    async def _release(self) -> None:
        if self.local_stream is not None:
            self.local_stream.stop()
            self.local_stream = None
        peer, self.peer = self.peer, None
        self.remote_tracks = []
        if peer is not None:
            await peer.close()

    async def leave(self) -> None:
        """Hang up. Safe in any state and safe to call more than once.

        On an IDLE client (never started, or start() failed) only the channel
        is closed and the state stays IDLE.
        """
        if self.state is NegotiationState.CLOSED:
            return
        if self.state is NegotiationState.IDLE:
            await self.channel.close()
            return
        self._transition(NegotiationState.CLOSED)
        self._offer_generation += 1
        self._making_offer = False
        await self._release()
        try:
            await self.channel.send(LeaveRoom().to_wire())
        except ChannelClosedError:
            logger.debug("Channel already closed on leave")
        await self.channel.close()
        logger.info(f"📞 Left room {self.room_id}")
