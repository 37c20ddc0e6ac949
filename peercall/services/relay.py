import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from peercall.errors import RoomFullError
from peercall.models import (
    RELAYED_TYPES,
    ErrorEvent,
    Joined,
    MessageType,
    PeerLeft,
    RelayEnvelope,
    Role,
    RoomFull,
    UserJoined,
)

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]

MAX_MEMBERS = 2


@dataclass(eq=False)
class Member:
    """A connection handle as the relay sees it."""

    member_id: str
    send: SendCallable
    room_id: Optional[str] = None


def role_for(position: int) -> Role:
    return Role.INITIATOR if position == 0 else Role.RESPONDER


class RoomRelay:
    """Pairs connections into rooms of two and forwards signaling between them.

    Payloads are never interpreted: the relay reads the message kind and, for
    joins, the room id. Membership changes are serialized per room so two
    simultaneous joins cannot both take the last slot, while unrelated rooms
    never wait on each other.
    """

    def __init__(self, notify_peer_left: bool = True):
        self.notify_peer_left = notify_peer_left
        self.rooms: Dict[str, List[Member]] = {}
        self.members: Dict[str, Member] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _room_lock(self, room_id: str):
        lock = self._locks.setdefault(room_id, asyncio.Lock())
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[room_id] -= 1
            if not self._lock_users[room_id]:
                del self._lock_users[room_id]
                del self._locks[room_id]

    def get_room_members(self, room_id: str) -> list:
        return [m.member_id for m in self.rooms.get(room_id, [])]

    async def join(self, member: Member, room_id: str) -> Role:
        """Add ``member`` to ``room_id`` and return the role it was given.

        Raises RoomFullError when the room already holds two members.
        """
        if member.room_id == room_id:
            return role_for(self.rooms[room_id].index(member))
        if member.room_id is not None:
            await self.leave(member.member_id)

        async with self._room_lock(room_id):
            members = self.rooms.get(room_id, [])
            if len(members) >= MAX_MEMBERS:
                logger.warning(f"🚫 Client {member.member_id} rejected, room {room_id} is full")
                raise RoomFullError(room_id)
            members.append(member)
            self.rooms[room_id] = members
            member.room_id = room_id
            self.members[member.member_id] = member
            role = role_for(members.index(member))
            others = [(m, role_for(i)) for i, m in enumerate(members) if m is not member]

        logger.info(f"✅ Client {member.member_id} joined room {room_id} as {role.value}")
        await self._send(member, Joined(
            room_id=room_id,
            member_id=member.member_id,
            role=role,
            peer_present=bool(others),
        ).to_wire())
        for other, other_role in others:
            await self._send(other, UserJoined(room_id=room_id, role=other_role).to_wire())
        return role

    async def relay(self, sender_id: str, message: dict) -> int:
        """Forward ``message`` unchanged to the other member of the sender's room.

        Returns the number of recipients. A sender outside any room is dropped.
        """
        sender = self.members.get(sender_id)
        if sender is None or sender.room_id is None:
            logger.debug(f"Dropping {message.get('type')} from {sender_id}: not in a room")
            return 0
        recipients = [m for m in self.rooms.get(sender.room_id, []) if m.member_id != sender_id]
        for recipient in recipients:
            await self._send(recipient, message)
        return len(recipients)

    async def leave(self, member_id: str) -> None:
        member = self.members.pop(member_id, None)
        if member is None or member.room_id is None:
            return
        room_id = member.room_id

        async with self._room_lock(room_id):
            members = self.rooms.get(room_id, [])
            if member in members:
                members.remove(member)
            member.room_id = None
            if not members:
                self.rooms.pop(room_id, None)
                logger.info(f"🗑️  Room {room_id} is now empty")
            remaining = [(m, role_for(i)) for i, m in enumerate(members)]

        logger.info(f"❌ Client {member_id} left room {room_id}")
        if self.notify_peer_left:
            for other, other_role in remaining:
                await self._send(other, PeerLeft(room_id=room_id, role=other_role).to_wire())

    async def dispatch(self, member: Member, data) -> None:
        """Route one inbound frame from ``member``."""
        try:
            envelope = RelayEnvelope.model_validate(data)
        except ValidationError as e:
            logger.warning(f"⚠️ Invalid message from {member.member_id}: {e.error_count()} error(s)")
            await self._send(member, ErrorEvent(detail="Invalid message").to_wire())
            return

        if envelope.type is MessageType.JOIN_ROOM:
            if not envelope.room_id:
                await self._send(member, ErrorEvent(detail="roomId is required").to_wire())
                return
            try:
                await self.join(member, envelope.room_id)
            except RoomFullError:
                await self._send(member, RoomFull(room_id=envelope.room_id).to_wire())
        elif envelope.type is MessageType.LEAVE_ROOM:
            await self.leave(member.member_id)
        elif envelope.type in RELAYED_TYPES:
            await self.relay(member.member_id, data)
        else:
            await self._send(member, ErrorEvent(detail=f"Unsupported message type {envelope.type.value}").to_wire())

    async def _send(self, member: Member, message: dict) -> None:
        try:
            await member.send(message)
        except Exception as e:
            logger.error(f"❌ Error sending to client {member.member_id}: {e}")
