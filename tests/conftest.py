import os
import tempfile

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="onlineclass-uploads-")
os.environ["SECRET_KEY"] = "test-secret"

import pytest
from fastapi.testclient import TestClient

from onlineclass.auth import create_access_token, hash_password
from onlineclass.db import SessionLocal, engine
from onlineclass.main import create_app
from onlineclass.models import Base, Role, User
from onlineclass.utils import new_id


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db):
    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def make_user(db):
    def _make(role: Role = Role.STUDENT, name: str = None, email: str = None, password: str = "secret123"):
        name = name or f"{role.value}-{new_id(6)}"
        user = User(id=new_id(), email=email or f"{name}@example.com", password_hash=hash_password(password),
                    name=name, role=role)
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user)}"}
    return _headers
