import pytest
from starlette.websockets import WebSocketDisconnect

from onlineclass.auth import create_access_token
from onlineclass.models import CanvasSnapshot, ChatMessage, Role
from onlineclass.utils import utcnow


@pytest.fixture
def live_session(client, make_user, headers):
    teacher = make_user(Role.TEACHER, name="Teacher")
    student = make_user(Role.STUDENT, name="Student")
    classroom_id = client.post("/api/classrooms", json={"name": "Music"}, headers=headers(teacher)).json()["classroom"]["id"]
    session = client.post(f"/api/classrooms/{classroom_id}/sessions",
                          json={"title": "Live", "scheduledAt": utcnow().isoformat()},
                          headers=headers(teacher)).json()["session"]
    return teacher, student, session["id"]


def test_socket_requires_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()


def test_chat_over_socket_is_persisted_and_broadcast(client, db, live_session):
    teacher, student, session_id = live_session
    with client.websocket_connect(f"/ws?token={create_access_token(teacher)}") as teacher_ws, \
            client.websocket_connect(f"/ws?token={create_access_token(student)}") as student_ws:
        teacher_ws.send_json({"event": "join-session", "data": {"sessionId": session_id}})
        teacher_ws.send_json({"event": "ping"})
        assert teacher_ws.receive_json()["event"] == "pong"
        student_ws.send_json({"event": "join-session", "data": {"sessionId": session_id}})
        joined = teacher_ws.receive_json()
        assert joined["event"] == "user-joined"
        assert joined["data"]["userName"] == "Student"

        student_ws.send_json({"event": "send-message", "data": {"sessionId": session_id, "message": "hello"}})
        for ws in (teacher_ws, student_ws):
            envelope = ws.receive_json()
            assert envelope["event"] == "new-message"
            assert envelope["data"]["message"] == "hello"
            assert envelope["data"]["userId"] == student.id

        student_ws.send_json({"event": "bogus", "data": {"sessionId": session_id}})
        assert student_ws.receive_json()["event"] == "error"

    db.expire_all()
    assert db.query(ChatMessage).filter(ChatMessage.session_id == session_id).count() == 1


def test_raise_hand_reaches_everyone(client, live_session):
    teacher, student, session_id = live_session
    with client.websocket_connect(f"/ws?token={create_access_token(teacher)}") as teacher_ws, \
            client.websocket_connect(f"/ws?token={create_access_token(student)}") as student_ws:
        student_ws.send_json({"event": "join-session", "data": {"sessionId": session_id}})
        student_ws.send_json({"event": "ping"})
        assert student_ws.receive_json()["event"] == "pong"
        teacher_ws.send_json({"event": "join-session", "data": {"sessionId": session_id}})
        assert student_ws.receive_json()["event"] == "user-joined"

        student_ws.send_json({"event": "raise-hand", "data": {"sessionId": session_id}})
        assert teacher_ws.receive_json()["event"] == "hand-raised"
        assert student_ws.receive_json()["data"]["userName"] == "Student"


def test_unknown_session_is_not_persisted(client, db, live_session):
    teacher, student, session_id = live_session
    with client.websocket_connect(f"/ws?token={create_access_token(student)}") as ws:
        ws.send_json({"event": "send-message", "data": {"sessionId": "no-such-session", "message": "hello"}})
        assert ws.receive_json() == {"event": "error", "data": {"message": "Failed to send message"}}
        ws.send_json({"event": "canvas-save", "data": {"sessionId": "no-such-session", "canvasJson": {"objects": []}}})
        assert ws.receive_json() == {"event": "error", "data": {"message": "Failed to save canvas"}}

    db.expire_all()
    assert db.query(ChatMessage).count() == 0
    assert db.query(CanvasSnapshot).count() == 0
