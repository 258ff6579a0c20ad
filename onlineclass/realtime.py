import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from .auth import user_from_token
from .content import save_canvas, store_chat_message
from .db import SessionLocal
from .relay import RoomRelay
from .utils import isoformat, new_id

logger = logging.getLogger(__name__)

router = APIRouter()


# 把 WebSocket 包装成转发服务需要的连接对象
class WebSocketConnection:
    def __init__(self, websocket: WebSocket):
        self.id = new_id(12)
        self.websocket = websocket

    async def send(self, event: str, data: Any = None) -> None:
        await self.websocket.send_json(jsonable_encoder({"event": event, "data": data}))


def persist_message(session_id: str, user_id: str, message: str) -> Dict[str, Any]:
    db = SessionLocal()
    try:
        row = store_chat_message(db, session_id, user_id, message)
        return {"id": row.id, "timestamp": isoformat(row.created_at), "type": row.type.value}
    finally:
        db.close()


def persist_canvas(session_id: str, user_id: str, data: Any, page_number: int = 1,
                   whiteboard_id: Optional[str] = None) -> Dict[str, Any]:
    db = SessionLocal()
    try:
        snapshot = save_canvas(db, session_id, user_id, data, page_number, whiteboard_id)
        return {"id": snapshot.id}
    finally:
        db.close()


def build_relay() -> RoomRelay:
    return RoomRelay(persist_message=persist_message, persist_canvas=persist_canvas)


# FastAPI 依赖：应用上的转发服务
def get_relay(request: Request) -> RoomRelay:
    return request.app.state.relay


@router.websocket("/ws")
async def room_socket(websocket: WebSocket):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401, reason="Authentication required")
        return
    db = SessionLocal()
    try:
        user = user_from_token(db, token)
    except HTTPException as exc:
        await websocket.close(code=4401, reason=str(exc.detail))
        return
    finally:
        db.close()

    relay: RoomRelay = websocket.app.state.relay
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    logger.info("用户 %s 建立实时连接 %s", user.name, connection.id)
    try:
        while True:
            try:
                payload = await websocket.receive_json()
            except ValueError:
                await relay.reply(connection, "error", {"message": "Invalid JSON payload"})
                continue
            if not isinstance(payload, dict) or not payload.get("event"):
                await relay.reply(connection, "error", {"message": "event is required"})
                continue
            if payload["event"] == "ping":
                await relay.reply(connection, "pong")
                continue
            await relay.dispatch(connection, user.id, user.name, payload["event"], payload.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        await relay.disconnect(connection)
