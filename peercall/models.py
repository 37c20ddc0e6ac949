from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing import Annotated, Literal, Optional, Union


class MessageType(str, Enum):
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    JOINED = "joined"
    ROOM_FULL = "room-full"
    USER_JOINED = "user-joined"
    PEER_LEFT = "peer-left"
    ERROR = "error"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    CHAT_MESSAGE = "chat-message"


# Kinds the relay forwards to the other member without looking inside
RELAYED_TYPES = frozenset({
    MessageType.OFFER,
    MessageType.ANSWER,
    MessageType.ICE_CANDIDATE,
    MessageType.CHAT_MESSAGE,
})


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class RelayEnvelope(BaseModel):
    """The only part of an inbound frame the relay reads."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: MessageType
    room_id: Optional[str] = Field(default=None, alias="roomId")


class SessionDescription(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class _RoomMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class JoinRoom(_RoomMessage):
    type: Literal["join-room"] = "join-room"


class LeaveRoom(BaseModel):
    type: Literal["leave-room"] = "leave-room"

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


class Joined(_RoomMessage):
    type: Literal["joined"] = "joined"
    member_id: str = Field(alias="memberId")
    role: Role
    peer_present: bool = Field(alias="peerPresent")


class RoomFull(_RoomMessage):
    type: Literal["room-full"] = "room-full"


class UserJoined(_RoomMessage):
    type: Literal["user-joined"] = "user-joined"
    role: Role = Role.INITIATOR


class PeerLeft(_RoomMessage):
    type: Literal["peer-left"] = "peer-left"
    role: Role = Role.INITIATOR


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    detail: str

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


class Offer(_RoomMessage):
    type: Literal["offer"] = "offer"
    description: SessionDescription


class Answer(_RoomMessage):
    type: Literal["answer"] = "answer"
    description: SessionDescription


class IceCandidateMessage(_RoomMessage):
    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: IceCandidate


class ChatMessage(_RoomMessage):
    type: Literal["chat-message"] = "chat-message"
    text: str
    sender_id: str = Field(alias="senderId")


SignalingMessage = Annotated[
    Union[
        Joined, RoomFull, UserJoined, PeerLeft, ErrorEvent,
        Offer, Answer, IceCandidateMessage, ChatMessage,
    ],
    Field(discriminator="type"),
]

signaling_adapter = TypeAdapter(SignalingMessage)


class ChatEntry(BaseModel):
    sender_id: str
    text: str
    own: bool = False
