# auth.py
import logging
from datetime import timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, Request
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import SECRET_KEY, TOKEN_ALGORITHM, TOKEN_EXPIRE_MINUTES
from .db import get_db
from .errors import AuthenticationRequired, PermissionDenied
from .models import STAFF_ROLES, Role, User
from .utils import utcnow

logger = logging.getLogger(__name__)


# 加密密码
def hash_password(password: str) -> str:
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def check_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def create_access_token(user: User, expires_minutes: int = TOKEN_EXPIRE_MINUTES) -> str:
    claims = {
        "sub": user.id,
        "role": Role(user.role).value,
        "name": user.name,
        "exp": utcnow() + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=TOKEN_ALGORITHM)


def user_from_token(db: Session, token: str) -> User:
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[TOKEN_ALGORITHM])
    except JWTError as e:
        logger.info("拒绝无效令牌: %s", e)
        raise AuthenticationRequired("令牌无效或已过期")
    user_id = claims.get("sub")
    user = db.get(User, user_id) if user_id else None
    if not user:
        raise AuthenticationRequired("令牌对应的用户不存在")
    return user


def _bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


# FastAPI 依赖：当前登录用户
def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    token = _bearer_token(request)
    if not token:
        raise AuthenticationRequired("缺少令牌")
    return user_from_token(db, token)


# 依赖工厂：只放行指定角色的用户
def require_roles(*roles: Role):
    allowed = frozenset(Role(r) for r in roles)

    def guard(user: User = Depends(get_current_user)) -> User:
        if Role(user.role) not in allowed:
            raise PermissionDenied()
        return user

    return guard


def is_staff(user: User) -> bool:
    return Role(user.role) in STAFF_ROLES
