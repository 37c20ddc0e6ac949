import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional
from uuid import uuid4

import websockets
from websockets.exceptions import ConnectionClosed

from peercall.config import settings
from peercall.errors import ChannelClosedError
from peercall.services.relay import Member, RoomRelay

logger = logging.getLogger(__name__)


class SignalingChannel(ABC):
    """Bidirectional message pipe between one client and the relay."""

    @abstractmethod
    async def send(self, message: dict) -> None:
        raise NotImplementedError

    @abstractmethod
    async def receive(self) -> dict:
        """Return the next inbound message; raise ChannelClosedError once closed."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError


_CLOSED = object()


class InMemoryChannel(SignalingChannel):
    """Talks to a RoomRelay in the same process.

    Messages are passed through a JSON round trip so both ends see exactly
    what they would see on the wire.
    """

    def __init__(self, relay: RoomRelay, member_id: Optional[str] = None):
        self.relay = relay
        self.member = Member(member_id=member_id or uuid4().hex, send=self._deliver)
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def _deliver(self, message: dict) -> None:
        if self.closed:
            raise ChannelClosedError(f"Channel {self.member.member_id} is closed")
        await self._inbox.put(json.loads(json.dumps(message)))

    async def send(self, message: dict) -> None:
        if self.closed:
            raise ChannelClosedError(f"Channel {self.member.member_id} is closed")
        await self.relay.dispatch(self.member, json.loads(json.dumps(message)))

    async def receive(self) -> dict:
        if self.closed and self._inbox.empty():
            raise ChannelClosedError(f"Channel {self.member.member_id} is closed")
        message = await self._inbox.get()
        if message is _CLOSED:
            raise ChannelClosedError(f"Channel {self.member.member_id} is closed")
        return message

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.relay.leave(self.member.member_id)
        self._inbox.put_nowait(_CLOSED)


class WebSocketChannel(SignalingChannel):
    """Client side of the relay's ``/ws`` endpoint."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.SIGNALING_URL
        self._ws = None

    async def connect(self) -> "WebSocketChannel":
        self._ws = await websockets.connect(self.url)
        logger.info(f"🔌 Connected to signaling server {self.url}")
        return self

    async def __aenter__(self):
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def send(self, message: dict) -> None:
        if self._ws is None:
            raise ChannelClosedError("Not connected")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise ChannelClosedError(str(e)) from e

    async def receive(self) -> dict:
        if self._ws is None:
            raise ChannelClosedError("Not connected")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as e:
            raise ChannelClosedError(str(e)) from e
        return json.loads(raw)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
