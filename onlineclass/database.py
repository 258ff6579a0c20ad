import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import check_password, hash_password
from .config import INVITATION_TTL_DAYS
from .errors import AuthenticationRequired, Conflict, NotFound, PermissionDenied, ValidationFailed
from .models import (Classroom, ClassroomMember, Invitation, InvitationStatus, Role, TeacherInviteCode,
                     User)
from .utils import isoformat, new_id, utcnow

logger = logging.getLogger(__name__)


def user_to_dict(user: User) -> Dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": Role(user.role).value,
        "avatar": user.avatar,
        "createdAt": isoformat(user.created_at),
    }


def classroom_to_dict(classroom: Classroom) -> Dict:
    return {
        "id": classroom.id,
        "name": classroom.name,
        "description": classroom.description,
        "teacherId": classroom.teacher_id,
        "coverImage": classroom.cover_image,
        "isActive": classroom.is_active,
        "isPublic": classroom.is_public,
        "createdAt": isoformat(classroom.created_at),
    }


# --- 账号 ---
# 检查教师邀请码是否可用
def check_invite_code(db: Session, code: str, now: Optional[datetime] = None) -> TeacherInviteCode:
    now = now or utcnow()
    if not code:
        raise ValidationFailed("邀请码不能为空")
    invite = db.query(TeacherInviteCode).filter(TeacherInviteCode.code == code).first()
    if not invite:
        raise NotFound("邀请码无效")
    if invite.is_used:
        raise Conflict("邀请码已被使用")
    if invite.is_revoked:
        raise Conflict("邀请码已被撤销")
    if invite.expires_at and invite.expires_at < now:
        raise ValidationFailed("邀请码已过期")
    return invite


# 注册
def register_user(db: Session, email: str, password: str, name: str, role: str,
                  invite_code: Optional[str] = None, now: Optional[datetime] = None) -> User:
    now = now or utcnow()
    if not email or not password or not name or not role:
        raise ValidationFailed("缺少必填字段")
    try:
        role = Role(role)
    except ValueError:
        raise ValidationFailed(f"未知角色: {role}")

    if role == Role.TEACHER:
        if not invite_code:
            raise ValidationFailed("教师注册需要邀请码")
        check_invite_code(db, invite_code, now)
    elif role == Role.ADMINISTRATOR:
        # 仅允许创建第一个管理员
        if db.query(User.id).filter(User.role == Role.ADMINISTRATOR).first():
            raise PermissionDenied("管理员账号不能自行注册")

    if db.query(User.id).filter(User.email == email).first():
        raise Conflict("该邮箱已注册")

    user = User(id=new_id(), email=email, password_hash=hash_password(password), name=name, role=role)
    try:
        db.add(user)
        db.flush()
        if role == Role.TEACHER:
            # 条件更新：邀请码只能被消费一次
            result = db.execute(
                update(TeacherInviteCode)
                .where(TeacherInviteCode.code == invite_code,
                       TeacherInviteCode.is_used.is_(False),
                       TeacherInviteCode.is_revoked.is_(False))
                .values(is_used=True, used_by_id=user.id, used_at=now)
            )
            if result.rowcount != 1:
                db.rollback()
                raise Conflict("邀请码已被使用")
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("该邮箱已注册")
    logger.info("新用户注册: %s (%s)", email, role.value)
    return user


# 登录
def authenticate(db: Session, email: str, password: str) -> User:
    user = db.query(User).filter(User.email == email).first()
    if not user or not check_password(password, user.password_hash):
        raise AuthenticationRequired("邮箱或密码错误")
    return user


# 修改密码
def change_password(db: Session, user: User, old_password: str, new_password: str) -> None:
    if not new_password:
        raise ValidationFailed("新密码不能为空")
    if not check_password(old_password, user.password_hash):
        raise AuthenticationRequired("旧密码错误")
    user.password_hash = hash_password(new_password)
    db.commit()


# --- 教师邀请码（管理员） ---
def create_invite_code(db: Session, admin: User, expires_in_days: Optional[int] = None,
                       now: Optional[datetime] = None) -> TeacherInviteCode:
    now = now or utcnow()
    expires_at = None
    if expires_in_days and expires_in_days > 0:
        expires_at = now + timedelta(days=expires_in_days)
    invite = TeacherInviteCode(id=new_id(), code=new_id(16), created_by_id=admin.id, expires_at=expires_at)
    db.add(invite)
    db.commit()
    return invite


def invite_code_to_dict(invite: TeacherInviteCode, creator: Optional[User] = None) -> Dict:
    return {
        "id": invite.id,
        "code": invite.code,
        "isUsed": invite.is_used,
        "isRevoked": invite.is_revoked,
        "usedAt": isoformat(invite.used_at),
        "expiresAt": isoformat(invite.expires_at),
        "revokedAt": isoformat(invite.revoked_at),
        "revokedReason": invite.revoked_reason,
        "createdAt": isoformat(invite.created_at),
        "createdBy": {"id": creator.id, "name": creator.name, "email": creator.email} if creator else None,
    }


def list_invite_codes(db: Session) -> List[Dict]:
    rows = (
        db.query(TeacherInviteCode, User)
        .outerjoin(User, TeacherInviteCode.created_by_id == User.id)
        .order_by(TeacherInviteCode.created_at)
        .all()
    )
    return [invite_code_to_dict(invite, creator) for invite, creator in rows]


def revoke_invite_code(db: Session, code_id: str, reason: Optional[str] = None,
                       now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    invite = db.get(TeacherInviteCode, code_id)
    if not invite:
        raise NotFound("邀请码不存在")
    if invite.is_revoked:
        raise Conflict("邀请码已被撤销")
    if invite.is_used:
        raise Conflict("已使用的邀请码不能撤销")
    invite.is_revoked = True
    invite.revoked_at = now
    invite.revoked_reason = reason or "No reason provided"
    db.commit()


def delete_invite_code(db: Session, code_id: str) -> None:
    invite = db.get(TeacherInviteCode, code_id)
    if not invite:
        raise NotFound("邀请码不存在")
    if invite.is_used:
        raise Conflict("已使用的邀请码不能删除")
    db.delete(invite)
    db.commit()


# --- 课堂 ---
def get_classroom(db: Session, classroom_id: str) -> Classroom:
    classroom = db.get(Classroom, classroom_id)
    if not classroom:
        raise NotFound("课堂不存在")
    return classroom


# 课堂创建者或课堂内的教师
def is_classroom_teacher(db: Session, classroom: Classroom, user: User) -> bool:
    if classroom.teacher_id == user.id:
        return True
    membership = db.query(ClassroomMember.id).filter(
        ClassroomMember.classroom_id == classroom.id,
        ClassroomMember.user_id == user.id,
        ClassroomMember.role == Role.TEACHER,
    ).first()
    return membership is not None


def create_classroom(db: Session, teacher: User, name: str, description: Optional[str] = None,
                     cover_image: Optional[str] = None, is_public: Optional[bool] = None) -> Classroom:
    if not name or not name.strip():
        raise ValidationFailed("课堂名称不能为空")
    classroom = Classroom(id=new_id(), name=name.strip(), description=description, teacher_id=teacher.id,
                          cover_image=cover_image, is_public=True if is_public is None else is_public)
    db.add(classroom)
    db.add(ClassroomMember(id=new_id(), classroom_id=classroom.id, user_id=teacher.id, role=Role.TEACHER))
    db.commit()
    logger.info("教师 %s 创建课堂 %s", teacher.name, classroom.name)
    return classroom


# 我加入的课堂
def list_user_classrooms(db: Session, user: User) -> List[Dict]:
    rows = (
        db.query(Classroom, ClassroomMember.role)
        .join(ClassroomMember, ClassroomMember.classroom_id == Classroom.id)
        .filter(ClassroomMember.user_id == user.id)
        .order_by(Classroom.created_at)
        .all()
    )
    return [dict(classroom_to_dict(c), role=Role(role).value) for c, role in rows]


def list_public_classrooms(db: Session, user: User) -> List[Dict]:
    classrooms = (
        db.query(Classroom).filter(Classroom.is_public.is_(True))
        .order_by(Classroom.created_at.desc()).all()
    )
    ids = [c.id for c in classrooms]
    counts: Dict[str, Dict[str, int]] = {cid: {} for cid in ids}
    if ids:
        grouped = (
            db.query(ClassroomMember.classroom_id, ClassroomMember.role, func.count(ClassroomMember.id))
            .filter(ClassroomMember.classroom_id.in_(ids))
            .group_by(ClassroomMember.classroom_id, ClassroomMember.role)
            .all()
        )
        for cid, role, count in grouped:
            counts[cid][Role(role).value] = count
    joined = {
        cid for (cid,) in db.query(ClassroomMember.classroom_id).filter(ClassroomMember.user_id == user.id)
    }
    result = []
    for classroom in classrooms:
        by_role = counts[classroom.id]
        result.append(dict(
            classroom_to_dict(classroom),
            isJoined=classroom.id in joined,
            memberCount=sum(by_role.values()),
            teacherCount=by_role.get("teacher", 0),
            studentCount=by_role.get("student", 0),
        ))
    return result


# 学生/旁听者主动加入课堂
def join_classroom(db: Session, classroom_id: str, user: User, role: Optional[str] = None) -> ClassroomMember:
    get_classroom(db, classroom_id)
    try:
        role = Role(role or Role.STUDENT.value)
    except ValueError:
        raise ValidationFailed(f"未知角色: {role}")
    if role not in (Role.STUDENT, Role.OBSERVER):
        raise PermissionDenied("只能以学生或旁听者身份加入课堂")
    member = ClassroomMember(id=new_id(), classroom_id=classroom_id, user_id=user.id, role=role)
    try:
        db.add(member)
        db.commit()
    except IntegrityError:
        # 唯一约束即重复加入
        db.rollback()
        raise Conflict("已加入该课堂")
    return member


def list_members(db: Session, classroom_id: str, role: Optional[str] = None) -> List[Dict]:
    query = (
        db.query(User, ClassroomMember.role)
        .join(ClassroomMember, ClassroomMember.user_id == User.id)
        .filter(ClassroomMember.classroom_id == classroom_id)
    )
    if role:
        try:
            query = query.filter(ClassroomMember.role == Role(role))
        except ValueError:
            raise ValidationFailed(f"未知角色: {role}")
    return [
        {"id": u.id, "name": u.name, "email": u.email, "role": Role(r).value}
        for u, r in query.order_by(ClassroomMember.joined_at).all()
    ]


def is_member(db: Session, classroom_id: str, user_id: str) -> bool:
    return db.query(ClassroomMember.id).filter(
        ClassroomMember.classroom_id == classroom_id, ClassroomMember.user_id == user_id
    ).first() is not None


# --- 课堂邀请 ---
def invitation_to_dict(invitation: Invitation) -> Dict:
    return {
        "id": invitation.id,
        "classroomId": invitation.classroom_id,
        "inviterId": invitation.inviter_id,
        "inviteeEmail": invitation.invitee_email,
        "inviteeId": invitation.invitee_id,
        "role": Role(invitation.role).value,
        "status": InvitationStatus(invitation.status).value,
        "message": invitation.message,
        "expiresAt": isoformat(invitation.expires_at),
        "createdAt": isoformat(invitation.created_at),
        "respondedAt": isoformat(invitation.responded_at),
    }


def create_invitation(db: Session, inviter: User, classroom_id: str, invitee_email: str,
                      role: Optional[str] = None, message: Optional[str] = None,
                      now: Optional[datetime] = None) -> Invitation:
    now = now or utcnow()
    if not classroom_id or not invitee_email:
        raise ValidationFailed("缺少必填字段")
    try:
        role = Role(role or Role.STUDENT.value)
    except ValueError:
        raise ValidationFailed(f"未知角色: {role}")
    if role == Role.ADMINISTRATOR:
        raise ValidationFailed("不能邀请管理员角色")

    classroom = get_classroom(db, classroom_id)
    if not is_classroom_teacher(db, classroom, inviter):
        raise PermissionDenied("只有课堂教师可以发送邀请")

    invitee = db.query(User).filter(User.email == invitee_email).first()
    if invitee:
        if is_member(db, classroom_id, invitee.id):
            raise Conflict("该用户已是课堂成员")
        pending = db.query(Invitation.id).filter(
            Invitation.classroom_id == classroom_id,
            Invitation.invitee_id == invitee.id,
            Invitation.status == InvitationStatus.PENDING,
        ).first()
        if pending:
            raise Conflict("已存在待处理的邀请")

    invitation = Invitation(
        id=new_id(),
        classroom_id=classroom_id,
        inviter_id=inviter.id,
        invitee_email=invitee_email,
        invitee_id=invitee.id if invitee else None,
        role=role,
        status=InvitationStatus.PENDING,
        message=message,
        expires_at=now + timedelta(days=INVITATION_TTL_DAYS),
        created_at=now,
    )
    db.add(invitation)
    db.commit()
    return invitation


# 惰性过期：读到已过期的待处理邀请时写回 expired
def _expire_if_due(db: Session, invitation: Invitation, now: datetime) -> bool:
    if (InvitationStatus(invitation.status) == InvitationStatus.PENDING
            and invitation.expires_at and invitation.expires_at < now):
        db.execute(
            update(Invitation)
            .where(Invitation.id == invitation.id, Invitation.status == InvitationStatus.PENDING)
            .values(status=InvitationStatus.EXPIRED)
        )
        invitation.status = InvitationStatus.EXPIRED
        return True
    return False


def list_invitations(db: Session, user: User, kind: Optional[str] = None, status: Optional[str] = None,
                     now: Optional[datetime] = None) -> List[Dict]:
    now = now or utcnow()
    if kind == "sent":
        query = db.query(Invitation).filter(Invitation.inviter_id == user.id)
    else:
        query = db.query(Invitation).filter(
            or_(Invitation.invitee_id == user.id, Invitation.invitee_email == user.email)
        )
    if status:
        try:
            query = query.filter(Invitation.status == InvitationStatus(status))
        except ValueError:
            raise ValidationFailed(f"未知状态: {status}")
    invitations = query.order_by(Invitation.created_at.desc()).all()

    changed = False
    for invitation in invitations:
        changed = _expire_if_due(db, invitation, now) or changed
    if changed:
        db.commit()

    classrooms = {
        c.id: c for c in db.query(Classroom).filter(Classroom.id.in_(list({i.classroom_id for i in invitations})))
    } if invitations else {}
    result = []
    for invitation in invitations:
        item = invitation_to_dict(invitation)
        classroom = classrooms.get(invitation.classroom_id)
        item["classroom"] = classroom_to_dict(classroom) if classroom else None
        result.append(item)
    return result


def respond_invitation(db: Session, invitation_id: str, user: User, action: str,
                       now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    if action not in ("accept", "decline"):
        raise ValidationFailed("无效的操作")
    invitation = db.get(Invitation, invitation_id)
    if not invitation:
        raise NotFound("邀请不存在")
    if invitation.invitee_id != user.id and invitation.invitee_email != user.email:
        raise PermissionDenied("无权处理该邀请")
    if InvitationStatus(invitation.status) != InvitationStatus.PENDING:
        raise Conflict("邀请已被处理")
    if _expire_if_due(db, invitation, now):
        db.commit()
        raise ValidationFailed("邀请已过期")

    classroom = db.get(Classroom, invitation.classroom_id)
    if action == "decline":
        result = db.execute(
            update(Invitation)
            .where(Invitation.id == invitation_id, Invitation.status == InvitationStatus.PENDING)
            .values(status=InvitationStatus.DECLINED, responded_at=now)
        )
        if result.rowcount != 1:
            db.rollback()
            raise Conflict("邀请已被处理")
        db.commit()
        return {"message": "已拒绝邀请"}

    # 条件更新 pending -> accepted，并发时只有一个成功
    result = db.execute(
        update(Invitation)
        .where(and_(Invitation.id == invitation_id, Invitation.status == InvitationStatus.PENDING))
        .values(status=InvitationStatus.ACCEPTED, invitee_id=user.id, responded_at=now)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("邀请已被处理")
    db.commit()

    try:
        db.add(ClassroomMember(id=new_id(), classroom_id=invitation.classroom_id, user_id=user.id,
                               role=invitation.role, joined_at=now))
        db.commit()
        message = "已接受邀请"
    except IntegrityError:
        # 已是成员：视为成功
        db.rollback()
        message = "你已是该课堂成员"
    return {"message": message, "classroom": classroom_to_dict(classroom) if classroom else None}


def revoke_invitation(db: Session, invitation_id: str, user: User) -> None:
    invitation = db.get(Invitation, invitation_id)
    if not invitation:
        raise NotFound("邀请不存在")
    if invitation.inviter_id != user.id:
        raise PermissionDenied("只有邀请者可以撤回邀请")
    if InvitationStatus(invitation.status) != InvitationStatus.PENDING:
        raise Conflict("只能撤回待处理的邀请")
    db.delete(invitation)
    db.commit()
