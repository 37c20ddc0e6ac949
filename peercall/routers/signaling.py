from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from uuid import uuid4
import logging

from peercall.config import settings
from peercall.models import ErrorEvent
from peercall.services.relay import Member, RoomRelay

logger = logging.getLogger(__name__)

router = APIRouter()

relay = RoomRelay(notify_peer_left=settings.NOTIFY_PEER_LEFT)


def get_relay() -> RoomRelay:
    return relay


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, room_relay: RoomRelay = Depends(get_relay)):
    await websocket.accept()
    member = Member(member_id=uuid4().hex, send=websocket.send_json)
    logger.info(f"🔌 Client {member.member_id} connected")

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                await websocket.send_json(ErrorEvent(detail="Invalid JSON").to_wire())
                continue

            message_type = data.get("type") if isinstance(data, dict) else None
            logger.info(f"📨 Received {message_type} from {member.member_id}")
            await room_relay.dispatch(member, data)

    except WebSocketDisconnect:
        logger.info(f"🔌 Client {member.member_id} disconnected")
    except Exception as e:
        logger.error(f"❌ Error in websocket: {e}")
    finally:
        await room_relay.leave(member.member_id)
