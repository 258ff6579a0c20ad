from datetime import timedelta

import pytest
from fastapi import HTTPException

from onlineclass import database
from onlineclass.models import Role, TeacherInviteCode, User
from onlineclass.utils import utcnow


def _register(client, **body):
    payload = {"email": "new@example.com", "password": "pw123456", "name": "New", "role": "student"}
    payload.update(body)
    return client.post("/api/auth/register", json=payload)


def test_register_and_login(client):
    res = _register(client)
    assert res.status_code == 201
    assert res.json()["user"]["role"] == "student"

    res = client.post("/api/auth/login", json={"email": "new@example.com", "password": "pw123456"})
    assert res.status_code == 200
    token = res.json()["token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["user"]["email"] == "new@example.com"

    bad = client.post("/api/auth/login", json={"email": "new@example.com", "password": "wrong"})
    assert bad.status_code == 401


def test_duplicate_email_conflicts(client):
    assert _register(client).status_code == 201
    assert _register(client).status_code == 409


def test_unknown_role_rejected(client):
    assert _register(client, role="principal").status_code == 400


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_teacher_registration_consumes_invite_code(client, db, make_user, headers):
    admin = make_user(Role.ADMINISTRATOR)
    res = client.post("/api/teacher-invite-codes", json={"expiresInDays": 7}, headers=headers(admin))
    assert res.status_code == 201
    code = res.json()["inviteCode"]["code"]
    assert len(code) == 16

    assert _register(client, role="teacher").status_code == 400
    assert client.post("/api/teacher-invite-codes/validate", json={"code": code}).json()["valid"] is True

    res = _register(client, role="teacher", inviteCode=code)
    assert res.status_code == 201
    teacher_id = res.json()["user"]["id"]
    res = _register(client, email="second@example.com", role="teacher", inviteCode=code)
    assert res.status_code == 409

    db.expire_all()
    invite = db.query(TeacherInviteCode).one()
    assert invite.is_used is True
    assert invite.used_by_id == teacher_id
    assert db.query(User).filter(User.email == "second@example.com").count() == 0


def test_expired_and_revoked_codes(db, make_user):
    admin = make_user(Role.ADMINISTRATOR)
    now = utcnow()
    expired = database.create_invite_code(db, admin, expires_in_days=1, now=now - timedelta(days=2))
    revoked = database.create_invite_code(db, admin)
    database.revoke_invite_code(db, revoked.id, "leaked")

    for code, status in ((expired.code, 400), (revoked.code, 409), ("missing", 404)):
        with pytest.raises(HTTPException) as exc:
            database.check_invite_code(db, code, now)
        assert exc.value.status_code == status


def test_invite_code_admin_operations(client, make_user, headers):
    admin = make_user(Role.ADMINISTRATOR)
    teacher = make_user(Role.TEACHER)
    assert client.get("/api/teacher-invite-codes", headers=headers(teacher)).status_code == 403

    code_id = client.post("/api/teacher-invite-codes", json={}, headers=headers(admin)).json()["inviteCode"]["id"]
    listing = client.get("/api/teacher-invite-codes", headers=headers(admin)).json()["inviteCodes"]
    assert listing[0]["createdBy"]["id"] == admin.id

    res = client.patch(f"/api/teacher-invite-codes/{code_id}", json={"reason": "unused"}, headers=headers(admin))
    assert res.status_code == 200
    res = client.patch(f"/api/teacher-invite-codes/{code_id}", json={}, headers=headers(admin))
    assert res.status_code == 409
    assert client.delete(f"/api/teacher-invite-codes/{code_id}", headers=headers(admin)).status_code == 200
    assert client.delete(f"/api/teacher-invite-codes/{code_id}", headers=headers(admin)).status_code == 404


def test_first_administrator_can_bootstrap(client):
    assert _register(client, email="root@example.com", role="administrator").status_code == 201
    assert _register(client, email="other@example.com", role="administrator").status_code == 403


def test_change_password(client, make_user, headers):
    user = make_user(Role.STUDENT, email="pw@example.com", password="old-password")
    res = client.post("/api/auth/change-password", json={"oldPassword": "nope", "newPassword": "x"},
                      headers=headers(user))
    assert res.status_code == 401
    res = client.post("/api/auth/change-password", json={"oldPassword": "old-password", "newPassword": "fresh"},
                      headers=headers(user))
    assert res.status_code == 200
    res = client.post("/api/auth/login", json={"email": "pw@example.com", "password": "fresh"})
    assert res.status_code == 200
