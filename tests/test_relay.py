"""
Room relay tests
"""

import asyncio

import pytest

from peercall.errors import RoomFullError
from peercall.models import Role
from peercall.services.relay import Member, RoomRelay


class Inbox:
    def __init__(self, member_id: str):
        self.messages = []
        self.member = Member(member_id=member_id, send=self.receive)

    async def receive(self, message: dict):
        await asyncio.sleep(0)
        self.messages.append(message)

    def types(self):
        return [m["type"] for m in self.messages]


@pytest.mark.asyncio
async def test_first_joiner_is_initiator_and_is_told_about_second():
    relay = RoomRelay()
    a, b = Inbox("a"), Inbox("b")

    assert await relay.join(a.member, "r") is Role.INITIATOR
    assert await relay.join(b.member, "r") is Role.RESPONDER

    assert a.messages[0] == {
        "type": "joined", "roomId": "r", "memberId": "a", "role": "initiator", "peerPresent": False,
    }
    assert a.messages[1] == {"type": "user-joined", "roomId": "r", "role": "initiator"}
    assert b.messages == [{
        "type": "joined", "roomId": "r", "memberId": "b", "role": "responder", "peerPresent": True,
    }]


@pytest.mark.asyncio
async def test_concurrent_joins_never_exceed_two_members():
    relay = RoomRelay()
    inboxes = [Inbox(f"m{i}") for i in range(6)]

    results = await asyncio.gather(
        *(relay.join(i.member, "r") for i in inboxes), return_exceptions=True
    )

    accepted = [r for r in results if isinstance(r, Role)]
    rejected = [r for r in results if isinstance(r, RoomFullError)]
    assert len(accepted) == 2
    assert len(rejected) == 4
    assert len(relay.rooms["r"]) == 2


@pytest.mark.asyncio
async def test_room_full_keeps_existing_members():
    relay = RoomRelay()
    one, two, three = Inbox("1"), Inbox("2"), Inbox("3")
    await relay.join(one.member, "r")
    await relay.join(two.member, "r")

    with pytest.raises(RoomFullError):
        await relay.join(three.member, "r")

    assert relay.get_room_members("r") == ["1", "2"]
    assert three.member.room_id is None


@pytest.mark.asyncio
async def test_relay_skips_sender_and_reaches_peer():
    relay = RoomRelay()
    a, b = Inbox("a"), Inbox("b")
    await relay.join(a.member, "r")
    await relay.join(b.member, "r")
    a.messages.clear()
    b.messages.clear()

    message = {"type": "offer", "roomId": "r", "description": {"type": "offer", "sdp": "O1"}}
    delivered = await relay.relay("a", message)

    assert delivered == 1
    assert b.messages == [message]
    assert a.messages == []


@pytest.mark.asyncio
async def test_relay_preserves_order_per_sender():
    relay = RoomRelay()
    a, b = Inbox("a"), Inbox("b")
    await relay.join(a.member, "r")
    await relay.join(b.member, "r")
    b.messages.clear()

    for n in range(20):
        await relay.relay("a", {"type": "chat-message", "roomId": "r", "text": str(n), "senderId": "a"})

    assert [m["text"] for m in b.messages] == [str(n) for n in range(20)]


@pytest.mark.asyncio
async def test_relay_from_member_without_room_is_dropped():
    relay = RoomRelay()
    assert await relay.relay("ghost", {"type": "offer"}) == 0


@pytest.mark.asyncio
async def test_leave_releases_room_and_promotes_remaining_member():
    relay = RoomRelay()
    a, b = Inbox("a"), Inbox("b")
    await relay.join(a.member, "r")
    await relay.join(b.member, "r")
    b.messages.clear()

    await relay.leave("a")

    assert relay.get_room_members("r") == ["b"]
    assert b.messages == [{"type": "peer-left", "roomId": "r", "role": "initiator"}]

    await relay.leave("b")
    assert "r" not in relay.rooms
    assert relay._locks == {}


@pytest.mark.asyncio
async def test_peer_left_notification_can_be_disabled():
    relay = RoomRelay(notify_peer_left=False)
    a, b = Inbox("a"), Inbox("b")
    await relay.join(a.member, "r")
    await relay.join(b.member, "r")
    b.messages.clear()

    await relay.leave("a")

    assert b.messages == []


@pytest.mark.asyncio
async def test_leave_is_safe_for_unknown_member():
    relay = RoomRelay()
    await relay.leave("nobody")
    assert relay.rooms == {}


@pytest.mark.asyncio
async def test_joining_another_room_leaves_the_first():
    relay = RoomRelay()
    a = Inbox("a")
    await relay.join(a.member, "r1")
    await relay.join(a.member, "r2")

    assert "r1" not in relay.rooms
    assert relay.get_room_members("r2") == ["a"]


@pytest.mark.asyncio
async def test_rejoining_same_room_is_idempotent():
    relay = RoomRelay()
    a = Inbox("a")
    await relay.join(a.member, "r")
    assert await relay.join(a.member, "r") is Role.INITIATOR
    assert relay.get_room_members("r") == ["a"]


@pytest.mark.asyncio
async def test_dispatch_reports_room_full_to_joiner():
    relay = RoomRelay()
    one, two, three = Inbox("1"), Inbox("2"), Inbox("3")
    for inbox in (one, two, three):
        await relay.dispatch(inbox.member, {"type": "join-room", "roomId": "r"})

    assert three.messages == [{"type": "room-full", "roomId": "r"}]


@pytest.mark.asyncio
async def test_dispatch_rejects_malformed_frames():
    relay = RoomRelay()
    a = Inbox("a")

    await relay.dispatch(a.member, {"type": "teleport"})
    await relay.dispatch(a.member, ["not", "an", "object"])
    await relay.dispatch(a.member, {"type": "join-room"})
    await relay.dispatch(a.member, {"type": "joined", "roomId": "r"})

    assert a.types() == ["error", "error", "error", "error"]
    assert relay.rooms == {}


@pytest.mark.asyncio
async def test_dispatch_forwards_payload_unchanged():
    relay = RoomRelay()
    a, b = Inbox("a"), Inbox("b")
    await relay.dispatch(a.member, {"type": "join-room", "roomId": "r"})
    await relay.dispatch(b.member, {"type": "join-room", "roomId": "r"})
    b.messages.clear()

    frame = {"type": "ice-candidate", "roomId": "r", "candidate": {"candidate": "c1"}, "extra": 1}
    await relay.dispatch(a.member, frame)

    assert b.messages == [frame]


@pytest.mark.asyncio
async def test_dispatch_leave_room():
    relay = RoomRelay()
    a = Inbox("a")
    await relay.dispatch(a.member, {"type": "join-room", "roomId": "r"})
    await relay.dispatch(a.member, {"type": "leave-room"})

    assert relay.rooms == {}


@pytest.mark.asyncio
async def test_failed_delivery_is_logged_not_raised():
    relay = RoomRelay()

    async def broken(message):
        raise ConnectionError("socket gone")

    a, b = Inbox("a"), Member(member_id="b", send=broken)
    await relay.join(a.member, "r")
    await relay.join(b, "r")

    assert await relay.relay("a", {"type": "offer"}) == 1
