"""
Signaling channel tests
"""

import pytest

from peercall.errors import ChannelClosedError
from peercall.services.channel import InMemoryChannel, WebSocketChannel
from peercall.services.relay import RoomRelay


@pytest.mark.asyncio
async def test_in_memory_channels_pair_through_relay():
    relay = RoomRelay()
    a, b = InMemoryChannel(relay), InMemoryChannel(relay)

    await a.send({"type": "join-room", "roomId": "r"})
    await b.send({"type": "join-room", "roomId": "r"})
    assert (await a.receive())["type"] == "joined"
    assert (await b.receive())["type"] == "joined"
    assert (await a.receive())["type"] == "user-joined"

    await b.send({"type": "chat-message", "roomId": "r", "text": "yo", "senderId": b.member.member_id})
    assert (await a.receive())["text"] == "yo"


@pytest.mark.asyncio
async def test_close_leaves_room_and_ends_receive():
    relay = RoomRelay()
    a = InMemoryChannel(relay)
    await a.send({"type": "join-room", "roomId": "r"})
    await a.receive()

    await a.close()
    await a.close()

    assert relay.rooms == {}
    with pytest.raises(ChannelClosedError):
        await a.receive()
    with pytest.raises(ChannelClosedError):
        await a.send({"type": "leave-room"})


@pytest.mark.asyncio
async def test_delivered_messages_are_copies():
    relay = RoomRelay()
    a, b = InMemoryChannel(relay), InMemoryChannel(relay)
    await a.send({"type": "join-room", "roomId": "r"})
    await b.send({"type": "join-room", "roomId": "r"})
    await a.receive(), await a.receive(), await b.receive()

    payload = {"type": "offer", "roomId": "r", "description": {"type": "offer", "sdp": "O1"}}
    await a.send(payload)
    received = await b.receive()

    assert received == payload
    assert received is not payload


@pytest.mark.asyncio
async def test_websocket_channel_requires_connect():
    channel = WebSocketChannel("ws://localhost:1/ws")
    with pytest.raises(ChannelClosedError):
        await channel.send({"type": "leave-room"})
    with pytest.raises(ChannelClosedError):
        await channel.receive()
    await channel.close()
