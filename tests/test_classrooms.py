from datetime import timedelta

import pytest

from onlineclass import database
from onlineclass.models import ClassroomMember, Invitation, InvitationStatus, Role
from onlineclass.utils import utcnow


@pytest.fixture
def classroom(client, make_user, headers):
    teacher = make_user(Role.TEACHER, name="teacher")
    res = client.post("/api/classrooms", json={"name": "Physics", "description": "Mechanics"},
                      headers=headers(teacher))
    assert res.status_code == 201
    return teacher, res.json()["classroom"]


def test_creator_becomes_teacher_member(client, headers, classroom):
    teacher, room = classroom
    mine = client.get("/api/classrooms", headers=headers(teacher)).json()["classrooms"]
    assert [(c["id"], c["role"]) for c in mine] == [(room["id"], "teacher")]


def test_students_cannot_create_classrooms(client, make_user, headers):
    student = make_user(Role.STUDENT)
    assert client.post("/api/classrooms", json={"name": "X"}, headers=headers(student)).status_code == 403


def test_join_and_public_directory(client, make_user, headers, classroom):
    teacher, room = classroom
    student = make_user(Role.STUDENT)
    observer = make_user(Role.OBSERVER)

    res = client.post(f"/api/classrooms/{room['id']}/join", json={}, headers=headers(student))
    assert res.status_code == 201
    assert res.json()["role"] == "student"
    res = client.post(f"/api/classrooms/{room['id']}/join", json={}, headers=headers(student))
    assert res.status_code == 409
    res = client.post(f"/api/classrooms/{room['id']}/join", json={"role": "observer"}, headers=headers(observer))
    assert res.status_code == 201

    listing = client.get("/api/classrooms/public", headers=headers(student)).json()["classrooms"]
    entry = listing[0]
    assert entry["isJoined"] is True
    assert (entry["memberCount"], entry["teacherCount"], entry["studentCount"]) == (3, 1, 1)

    members = client.get(f"/api/classrooms/{room['id']}/members", params={"role": "student"},
                         headers=headers(teacher)).json()["members"]
    assert [m["id"] for m in members] == [student.id]


def test_cannot_join_as_teacher(client, make_user, headers, classroom):
    teacher, room = classroom
    student = make_user(Role.STUDENT)
    res = client.post(f"/api/classrooms/{room['id']}/join", json={"role": "teacher"}, headers=headers(student))
    assert res.status_code == 403


def test_join_missing_classroom(client, make_user, headers):
    student = make_user(Role.STUDENT)
    assert client.post("/api/classrooms/nope/join", json={}, headers=headers(student)).status_code == 404


def test_invitation_accept_is_idempotent(client, db, make_user, headers, classroom):
    teacher, room = classroom
    student = make_user(Role.STUDENT, email="invitee@example.com")
    res = client.post("/api/invitations", json={"classroomId": room["id"], "inviteeEmail": "invitee@example.com"},
                      headers=headers(teacher))
    assert res.status_code == 201
    invitation_id = res.json()["invitation"]["id"]

    again = client.post("/api/invitations", json={"classroomId": room["id"], "inviteeEmail": "invitee@example.com"},
                        headers=headers(teacher))
    assert again.status_code == 409

    received = client.get("/api/invitations", params={"type": "received"}, headers=headers(student)).json()
    assert received["invitations"][0]["classroom"]["name"] == "Physics"

    res = client.patch(f"/api/invitations/{invitation_id}", json={"action": "accept"}, headers=headers(student))
    assert res.status_code == 200
    res = client.patch(f"/api/invitations/{invitation_id}", json={"action": "accept"}, headers=headers(student))
    assert res.status_code == 409

    db.expire_all()
    assert db.query(ClassroomMember).filter(ClassroomMember.user_id == student.id).count() == 1
    assert db.get(Invitation, invitation_id).status == InvitationStatus.ACCEPTED


def test_accept_when_already_member_keeps_single_row(db, make_user):
    teacher = make_user(Role.TEACHER)
    student = make_user(Role.STUDENT)
    room = database.create_classroom(db, teacher, "Chemistry")
    invitation = database.create_invitation(db, teacher, room.id, student.email)
    # 在接受邀请前已自行加入
    database.join_classroom(db, room.id, student)

    result = database.respond_invitation(db, invitation.id, student, "accept")
    assert result["message"] == "你已是该课堂成员"
    assert db.query(ClassroomMember).filter(ClassroomMember.user_id == student.id).count() == 1


def test_only_classroom_teachers_invite(client, make_user, headers, classroom):
    teacher, room = classroom
    outsider = make_user(Role.TEACHER)
    res = client.post("/api/invitations", json={"classroomId": room["id"], "inviteeEmail": "a@example.com"},
                      headers=headers(outsider))
    assert res.status_code == 403


def test_existing_member_cannot_be_invited(client, make_user, headers, classroom):
    teacher, room = classroom
    student = make_user(Role.STUDENT)
    client.post(f"/api/classrooms/{room['id']}/join", json={}, headers=headers(student))
    res = client.post("/api/invitations", json={"classroomId": room["id"], "inviteeEmail": student.email},
                      headers=headers(teacher))
    assert res.status_code == 409


def test_expired_invitation_is_persisted_on_read(db, make_user):
    teacher = make_user(Role.TEACHER)
    student = make_user(Role.STUDENT)
    room = database.create_classroom(db, teacher, "History")
    invitation = database.create_invitation(db, teacher, room.id, student.email, now=utcnow() - timedelta(days=31))

    listing = database.list_invitations(db, student)
    assert listing[0]["status"] == "expired"
    db.expire_all()
    assert db.get(Invitation, invitation.id).status == InvitationStatus.EXPIRED

    pending = database.list_invitations(db, student, status="pending")
    assert pending == []


def test_decline_and_revoke(client, make_user, headers, classroom):
    teacher, room = classroom
    student = make_user(Role.STUDENT)
    first = client.post("/api/invitations", json={"classroomId": room["id"], "inviteeEmail": student.email},
                        headers=headers(teacher)).json()["invitation"]
    res = client.delete(f"/api/invitations/{first['id']}", headers=headers(student))
    assert res.status_code == 403
    res = client.patch(f"/api/invitations/{first['id']}", json={"action": "decline"}, headers=headers(student))
    assert res.status_code == 200
    # 已处理的邀请不能撤回
    assert client.delete(f"/api/invitations/{first['id']}", headers=headers(teacher)).status_code == 409

    second = client.post("/api/invitations", json={"classroomId": room["id"], "inviteeEmail": student.email},
                         headers=headers(teacher)).json()["invitation"]
    assert client.delete(f"/api/invitations/{second['id']}", headers=headers(teacher)).status_code == 200
    sent = client.get("/api/invitations", params={"type": "sent"}, headers=headers(teacher)).json()["invitations"]
    assert [i["status"] for i in sent] == ["declined"]
