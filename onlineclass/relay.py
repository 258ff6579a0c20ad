# 课程房间的实时事件转发
# 连接只需要有 id 和 async send(event, data)；落库函数由外部注入
# 同一课程内按调用顺序投递；屏幕帧例外，上一帧未发完的接收者直接丢弃新帧

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from starlette.concurrency import run_in_threadpool

from .utils import isoformat, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    connection: Any
    user_id: str
    user_name: str


class RelayNotRunning(RuntimeError):
    pass


class RoomRelay:
    def __init__(self, persist_message: Optional[Callable[..., Dict[str, Any]]] = None,
                 persist_canvas: Optional[Callable[..., Dict[str, Any]]] = None):
        self._persist_message = persist_message
        self._persist_canvas = persist_canvas
        self._rooms: Dict[str, Dict[str, Participant]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._frame_tasks: Dict[str, asyncio.Task] = {}
        self._running = False

    # --- 生命周期 ---
    async def start(self) -> None:
        self._running = True
        logger.info("房间转发服务已启动")

    async def stop(self) -> None:
        self._running = False
        tasks = [t for t in self._frame_tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._frame_tasks.clear()
        self._rooms.clear()
        self._locks.clear()
        logger.info("房间转发服务已停止")

    @property
    def running(self) -> bool:
        return self._running

    def members(self, session_id: str) -> List[Participant]:
        return list(self._rooms.get(session_id, {}).values())

    def rooms_of(self, connection) -> List[str]:
        return [sid for sid, room in self._rooms.items() if connection.id in room]

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _check_running(self) -> None:
        if not self._running:
            raise RelayNotRunning("relay is not running")

    # 连接失效后从所有房间移除
    def _drop(self, connection) -> None:
        for session_id in self.rooms_of(connection):
            room = self._rooms.get(session_id)
            if room is None:
                continue
            room.pop(connection.id, None)
            if not room:
                self._rooms.pop(session_id, None)
                self._locks.pop(session_id, None)
        task = self._frame_tasks.pop(connection.id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _deliver(self, participant: Participant, event: str, data: Any) -> None:
        try:
            await participant.connection.send(event, data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("向连接 %s 发送 %s 失败，移出房间: %s", participant.connection.id, event, e)
            self._drop(participant.connection)

    # 发给房间内所有成员，exclude 指定的连接除外
    async def publish(self, session_id: str, event: str, data: Any = None, exclude=None) -> int:
        self._check_running()
        async with self._lock(session_id):
            recipients = [p for p in self.members(session_id)
                          if exclude is None or p.connection.id != exclude.id]
            for participant in recipients:
                await self._deliver(participant, event, data)
        return len(recipients)

    async def reply(self, connection, event: str, data: Any = None) -> None:
        try:
            await connection.send(event, data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("回复连接 %s 失败: %s", connection.id, e)
            self._drop(connection)

    # --- 房间进出 ---
    async def join(self, session_id: str, connection, user_id: str, user_name: str) -> None:
        self._check_running()
        room = self._rooms.setdefault(session_id, {})
        room[connection.id] = Participant(connection=connection, user_id=user_id, user_name=user_name)
        logger.info("用户 %s (%s) 加入课程 %s，当前 %d 人", user_name, connection.id, session_id, len(room))
        await self.publish(session_id, "user-joined",
                           {"userId": user_id, "userName": user_name, "timestamp": isoformat(utcnow())},
                           exclude=connection)

    async def leave(self, session_id: str, connection, user_id: str, user_name: str) -> None:
        self._check_running()
        room = self._rooms.get(session_id, {})
        if room.pop(connection.id, None) is None:
            return
        if not room:
            self._rooms.pop(session_id, None)
            self._locks.pop(session_id, None)
            return
        await self.publish(session_id, "user-left",
                           {"userId": user_id, "userName": user_name, "timestamp": isoformat(utcnow())})

    # 断线：静默移除，不发 user-left
    async def disconnect(self, connection) -> None:
        rooms = self.rooms_of(connection)
        self._drop(connection)
        if rooms:
            logger.info("连接 %s 断开，离开 %d 个课程房间", connection.id, len(rooms))

    # --- 聊天 ---
    async def send_message(self, session_id: str, connection, user_id: str, user_name: str,
                           message: str) -> Optional[Dict[str, Any]]:
        self._check_running()
        if self._persist_message is None:
            raise RelayNotRunning("message persistence is not configured")
        try:
            # 落库是同步调用，放到线程池里跑
            stored = await run_in_threadpool(self._persist_message, session_id=session_id,
                                             user_id=user_id, message=message)
        except Exception:
            # 落库失败：只通知发送者，不广播
            logger.exception("保存聊天消息失败 session=%s user=%s", session_id, user_id)
            await self.reply(connection, "error", {"message": "Failed to send message"})
            return None
        payload = {
            "id": stored["id"],
            "userId": user_id,
            "userName": user_name,
            "message": message,
            "timestamp": stored["timestamp"],
            "type": stored.get("type", "text"),
        }
        await self.publish(session_id, "new-message", payload)
        return payload

    # --- 屏幕共享 ---
    async def broadcast_screen_frame(self, session_id: str, connection, image_data: Any) -> int:
        self._check_running()
        sent = 0
        for participant in self.members(session_id):
            conn_id = participant.connection.id
            if conn_id == connection.id:
                continue
            pending = self._frame_tasks.get(conn_id)
            if pending is not None and not pending.done():
                logger.debug("连接 %s 上一帧未发送完，丢弃本帧", conn_id)
                continue
            self._frame_tasks[conn_id] = asyncio.ensure_future(
                self._deliver(participant, "screen-frame", {"imageData": image_data}))
            sent += 1
        return sent

    async def screen_sharing(self, session_id: str, user_id: str, user_name: str, started: bool) -> None:
        event = "screen-sharing-started" if started else "screen-sharing-stopped"
        logger.info("%s 在课程 %s 中 %s", user_name, session_id, event)
        await self.publish(session_id, event, {"userId": user_id, "userName": user_name})

    # --- 画布与白板 ---
    async def canvas_draw(self, session_id: str, connection, user_id: str, draw_data: Any) -> None:
        await self.publish(session_id, "canvas-update",
                           {"userId": user_id, "drawData": draw_data, "timestamp": isoformat(utcnow())},
                           exclude=connection)

    async def canvas_save(self, session_id: str, connection, user_id: str, canvas_json: Any,
                          page_number: Optional[int] = None, whiteboard_id: Optional[str] = None) -> None:
        self._check_running()
        if self._persist_canvas is None:
            raise RelayNotRunning("canvas persistence is not configured")
        try:
            stored = await run_in_threadpool(self._persist_canvas, session_id=session_id, user_id=user_id,
                                             data=canvas_json, page_number=page_number or 1,
                                             whiteboard_id=whiteboard_id)
        except Exception:
            logger.exception("保存画布失败 session=%s user=%s", session_id, user_id)
            await self.reply(connection, "error", {"message": "Failed to save canvas"})
            return
        await self.reply(connection, "canvas-saved", {"success": True, "canvasId": stored["id"]})

    async def canvas_clear(self, session_id: str) -> None:
        await self.publish(session_id, "canvas-cleared", None)

    async def whiteboard_draw(self, session_id: str, connection, whiteboard_id: str, action: Any,
                              data: Any) -> None:
        # 只转发，不落库
        await self.publish(session_id, "whiteboard-update",
                           {"whiteboardId": whiteboard_id, "action": action, "data": data},
                           exclude=connection)

    async def whiteboard_started(self, session_id: str, whiteboard_id: str) -> None:
        await self.publish(session_id, "whiteboard-started", {"whiteboardId": whiteboard_id})

    async def whiteboard_closed(self, session_id: str, whiteboard_id: str) -> None:
        await self.publish(session_id, "whiteboard-closed", {"whiteboardId": whiteboard_id})

    # --- 一次性通知 ---
    async def raise_hand(self, session_id: str, user_id: str, user_name: str) -> None:
        await self.publish(session_id, "hand-raised",
                           {"userId": user_id, "userName": user_name, "timestamp": isoformat(utcnow())})

    async def quiz_published(self, session_id: str, quiz_data: Any) -> None:
        await self.publish(session_id, "new-message", quiz_data)

    # --- 客户端事件分发 ---
    # 身份只取已认证的调用者，不信任 payload
    async def dispatch(self, connection, user_id: str, user_name: str, event: str, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        session_id = data.get("sessionId")
        if not session_id:
            await self.reply(connection, "error", {"message": "sessionId is required", "event": event})
            return

        if event == "join-session":
            await self.join(session_id, connection, user_id, user_name)
        elif event == "leave-session":
            await self.leave(session_id, connection, user_id, user_name)
        elif event == "send-message":
            message = data.get("message")
            if not isinstance(message, str) or not message.strip():
                await self.reply(connection, "error", {"message": "Message is required", "event": event})
                return
            await self.send_message(session_id, connection, user_id, user_name, message)
        elif event == "canvas-draw":
            await self.canvas_draw(session_id, connection, user_id, data.get("drawData"))
        elif event == "canvas-save":
            await self.canvas_save(session_id, connection, user_id, data.get("canvasJson"),
                                   data.get("pageNumber"), data.get("whiteboardId"))
        elif event == "canvas-clear":
            await self.canvas_clear(session_id)
        elif event == "raise-hand":
            await self.raise_hand(session_id, user_id, user_name)
        elif event == "quiz-published":
            await self.quiz_published(session_id, data.get("quizData"))
        elif event == "whiteboard-started":
            await self.whiteboard_started(session_id, data.get("whiteboardId"))
        elif event == "whiteboard-closed":
            await self.whiteboard_closed(session_id, data.get("whiteboardId"))
        elif event == "whiteboard-draw":
            await self.whiteboard_draw(session_id, connection, data.get("whiteboardId"),
                                       data.get("action"), data.get("data"))
        elif event == "screen-sharing-started":
            await self.screen_sharing(session_id, user_id, user_name, started=True)
        elif event == "screen-sharing-stopped":
            await self.screen_sharing(session_id, user_id, user_name, started=False)
        elif event == "broadcast-screen-frame":
            await self.broadcast_screen_frame(session_id, connection, data.get("imageData"))
        else:
            await self.reply(connection, "error", {"message": f"Unknown event: {event}", "event": event})
