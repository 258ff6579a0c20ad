import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.responses import FileResponse

from . import content, database, quizzes
from .auth import create_access_token, get_current_user, is_staff, require_roles
from .config import MAX_UPLOAD_SIZE
from .db import get_db
from .errors import NotFound, PermissionDenied, ValidationFailed
from .models import MessageType, Role, User, Whiteboard
from .realtime import get_relay
from .relay import RoomRelay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# 教师与管理员
staff_only = require_roles(Role.TEACHER, Role.ADMINISTRATOR)
admin_only = require_roles(Role.ADMINISTRATOR)


# --- 请求模型 ---
class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str
    role: str
    inviteCode: Optional[str] = None   # 教师注册需要


class LoginRequest(BaseModel):
    email: str
    password: str


class ChangePasswordRequest(BaseModel):
    oldPassword: str
    newPassword: str


class InviteCodeCreateRequest(BaseModel):
    expiresInDays: Optional[int] = None


class InviteCodeRevokeRequest(BaseModel):
    reason: Optional[str] = None


class InviteCodeValidateRequest(BaseModel):
    code: str


class ClassroomCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    coverImage: Optional[str] = None
    isPublic: Optional[bool] = None


class JoinRequest(BaseModel):
    role: Optional[str] = None


class InvitationCreateRequest(BaseModel):
    classroomId: str
    inviteeEmail: str
    role: Optional[str] = None
    message: Optional[str] = None


class InvitationRespondRequest(BaseModel):
    action: str   # accept / decline


class SessionCreateRequest(BaseModel):
    title: str
    scheduledAt: datetime
    duration: Optional[int] = None
    description: Optional[str] = None
    isPublic: Optional[bool] = None


class SessionEndRequest(BaseModel):
    recordingUrl: Optional[str] = None


class MessageCreateRequest(BaseModel):
    message: str
    type: str = MessageType.SYSTEM.value
    metadata: Optional[Dict[str, Any]] = None


class WhiteboardCreateRequest(BaseModel):
    sessionId: str
    title: Optional[str] = None


class CanvasSaveRequest(BaseModel):
    sessionId: str
    data: Any
    whiteboardId: Optional[str] = None
    pageNumber: Optional[int] = 1


class CategoryCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None


class MaterialLinkRequest(BaseModel):
    title: str
    fileUrl: str
    fileType: Optional[str] = None
    fileName: Optional[str] = None
    description: Optional[str] = None
    sessionId: Optional[str] = None
    categoryId: Optional[str] = None
    publishToChat: bool = False


class QuestionInput(BaseModel):
    question: str
    type: str
    points: int
    options: Optional[List[str]] = None
    correctAnswer: Optional[str] = None
    order: Optional[int] = None


class QuizCreateRequest(BaseModel):
    classroomId: str
    title: str
    duration: int
    questions: List[QuestionInput]
    description: Optional[str] = None
    sessionId: Optional[str] = None
    passingScore: Optional[int] = None
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    publishInChat: bool = False


class SubmitRequest(BaseModel):
    answers: Optional[Dict[str, Any]] = None


class GradeRequest(BaseModel):
    scores: Optional[Dict[str, float]] = None
    feedback: Optional[str] = None


def _require_classroom_staff(db: Session, classroom_id: str, user: User) -> None:
    classroom = database.get_classroom(db, classroom_id)
    if Role(user.role) == Role.ADMINISTRATOR:
        return
    if not database.is_classroom_teacher(db, classroom, user):
        raise PermissionDenied("只有课堂教师可以执行该操作")


# 转发服务未启动时只记日志，不影响 REST 结果
async def _broadcast(relay: RoomRelay, session_id: Optional[str], event: str, data: Any) -> None:
    if not session_id:
        return
    if not relay.running:
        logger.warning("转发服务未运行，跳过广播 %s", event)
        return
    await relay.publish(session_id, event, data)


# --- 账号 ---
@router.post("/auth/register", status_code=201)
async def register(request: RegisterRequest, db: Session = Depends(get_db)):
    user = database.register_user(db, request.email, request.password, request.name, request.role,
                                  request.inviteCode)
    return {"user": database.user_to_dict(user)}


@router.post("/auth/login")
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    user = database.authenticate(db, request.email, request.password)
    return {"token": create_access_token(user), "tokenType": "bearer", "user": database.user_to_dict(user)}


@router.get("/auth/me")
async def me(user: User = Depends(get_current_user)):
    return {"user": database.user_to_dict(user)}


@router.post("/auth/change-password")
async def change_password(request: ChangePasswordRequest, user: User = Depends(get_current_user),
                          db: Session = Depends(get_db)):
    database.change_password(db, user, request.oldPassword, request.newPassword)
    return {"message": "密码修改成功"}


# --- 教师邀请码 ---
@router.post("/teacher-invite-codes", status_code=201)
async def create_invite_code(request: InviteCodeCreateRequest, admin: User = Depends(admin_only),
                             db: Session = Depends(get_db)):
    invite = database.create_invite_code(db, admin, request.expiresInDays)
    return {"inviteCode": database.invite_code_to_dict(invite, admin)}


@router.get("/teacher-invite-codes")
async def list_invite_codes(admin: User = Depends(admin_only), db: Session = Depends(get_db)):
    return {"inviteCodes": database.list_invite_codes(db)}


@router.patch("/teacher-invite-codes/{code_id}")
async def revoke_invite_code(code_id: str, request: InviteCodeRevokeRequest, admin: User = Depends(admin_only),
                             db: Session = Depends(get_db)):
    database.revoke_invite_code(db, code_id, request.reason)
    return {"message": "邀请码已撤销"}


@router.delete("/teacher-invite-codes/{code_id}")
async def delete_invite_code(code_id: str, admin: User = Depends(admin_only), db: Session = Depends(get_db)):
    database.delete_invite_code(db, code_id)
    return {"message": "邀请码已删除"}


@router.post("/teacher-invite-codes/validate")
async def validate_invite_code(request: InviteCodeValidateRequest, db: Session = Depends(get_db)):
    invite = database.check_invite_code(db, request.code)
    return {"valid": True, "expiresAt": database.invite_code_to_dict(invite)["expiresAt"]}


# --- 课堂 ---
@router.get("/classrooms")
async def my_classrooms(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"classrooms": database.list_user_classrooms(db, user)}


@router.post("/classrooms", status_code=201)
async def create_classroom(request: ClassroomCreateRequest, user: User = Depends(staff_only),
                           db: Session = Depends(get_db)):
    classroom = database.create_classroom(db, user, request.name, request.description, request.coverImage,
                                          request.isPublic)
    return {"classroom": database.classroom_to_dict(classroom)}


@router.get("/classrooms/public")
async def public_classrooms(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"classrooms": database.list_public_classrooms(db, user)}


@router.post("/classrooms/{classroom_id}/join", status_code=201)
async def join_classroom(classroom_id: str, request: JoinRequest, user: User = Depends(get_current_user),
                         db: Session = Depends(get_db)):
    member = database.join_classroom(db, classroom_id, user, request.role)
    return {"message": "加入课堂成功", "role": Role(member.role).value}


@router.get("/classrooms/{classroom_id}/members")
async def classroom_members(classroom_id: str, role: Optional[str] = None,
                            user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    database.get_classroom(db, classroom_id)
    return {"members": database.list_members(db, classroom_id, role)}


# --- 课堂邀请 ---
@router.post("/invitations", status_code=201)
async def create_invitation(request: InvitationCreateRequest, user: User = Depends(get_current_user),
                            db: Session = Depends(get_db)):
    invitation = database.create_invitation(db, user, request.classroomId, request.inviteeEmail, request.role,
                                            request.message)
    return {"invitation": database.invitation_to_dict(invitation)}


@router.get("/invitations")
async def list_invitations(type: Optional[str] = None, status: Optional[str] = None,
                           user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"invitations": database.list_invitations(db, user, type, status)}


@router.patch("/invitations/{invitation_id}")
async def respond_invitation(invitation_id: str, request: InvitationRespondRequest,
                             user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return database.respond_invitation(db, invitation_id, user, request.action)


@router.delete("/invitations/{invitation_id}")
async def revoke_invitation(invitation_id: str, user: User = Depends(get_current_user),
                            db: Session = Depends(get_db)):
    database.revoke_invitation(db, invitation_id, user)
    return {"message": "邀请已撤回"}


# --- 课程 ---
@router.post("/classrooms/{classroom_id}/sessions", status_code=201)
async def create_session(classroom_id: str, request: SessionCreateRequest, user: User = Depends(staff_only),
                         db: Session = Depends(get_db)):
    _require_classroom_staff(db, classroom_id, user)
    session = content.create_session(db, classroom_id, request.title, request.scheduledAt, request.duration,
                                     request.description, request.isPublic)
    return {"session": content.session_to_dict(session)}


@router.get("/classrooms/{classroom_id}/sessions")
async def list_sessions(classroom_id: str, user: User = Depends(get_current_user),
                        db: Session = Depends(get_db)):
    database.get_classroom(db, classroom_id)
    return {"sessions": content.list_sessions(db, classroom_id, user)}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    session = content.get_session(db, session_id)
    if not session.is_public and not is_staff(user):
        raise NotFound("课程不存在")
    return {"session": content.session_to_dict(session)}


@router.post("/sessions/{session_id}/end")
async def end_session(session_id: str, request: SessionEndRequest, user: User = Depends(staff_only),
                      db: Session = Depends(get_db)):
    session = content.get_session(db, session_id)
    _require_classroom_staff(db, session.classroom_id, user)
    session = content.end_session(db, session_id, request.recordingUrl)
    return {"session": content.session_to_dict(session)}


# --- 聊天记录 ---
@router.get("/sessions/{session_id}/messages")
async def session_messages(session_id: str, user: User = Depends(get_current_user),
                           db: Session = Depends(get_db)):
    content.get_session(db, session_id)
    return {"messages": content.chat_history(db, session_id)}


@router.post("/sessions/{session_id}/messages", status_code=201)
async def post_message(session_id: str, request: MessageCreateRequest, user: User = Depends(get_current_user),
                       db: Session = Depends(get_db), relay: RoomRelay = Depends(get_relay)):
    content.get_session(db, session_id)
    if request.type in (MessageType.SYSTEM.value, MessageType.ANNOUNCEMENT.value) and not is_staff(user):
        raise PermissionDenied("只有教师可以发送系统消息")
    if not request.message.strip():
        raise ValidationFailed("消息内容不能为空")
    message = content.store_chat_message(db, session_id, user.id, request.message, request.type,
                                         request.metadata)
    payload = content.message_to_dict(message, user)
    await _broadcast(relay, session_id, "new-message", payload)
    return {"message": payload}


# --- 白板 ---
@router.post("/whiteboards", status_code=201)
async def create_whiteboard(request: WhiteboardCreateRequest, user: User = Depends(staff_only),
                            db: Session = Depends(get_db), relay: RoomRelay = Depends(get_relay)):
    _require_classroom_staff(db, content.get_session(db, request.sessionId).classroom_id, user)
    whiteboard, message = content.create_whiteboard(db, request.sessionId, user, request.title)
    await _broadcast(relay, whiteboard.session_id, "new-message", content.message_to_dict(message, user))
    await _broadcast(relay, whiteboard.session_id, "whiteboard-started", {"whiteboardId": whiteboard.id})
    return {"whiteboard": content.whiteboard_to_dict(whiteboard)}


@router.patch("/whiteboards/{whiteboard_id}")
async def close_whiteboard(whiteboard_id: str, user: User = Depends(staff_only), db: Session = Depends(get_db),
                           relay: RoomRelay = Depends(get_relay)):
    whiteboard = db.get(Whiteboard, whiteboard_id)
    if not whiteboard:
        raise NotFound("白板不存在")
    _require_classroom_staff(db, content.get_session(db, whiteboard.session_id).classroom_id, user)
    whiteboard = content.close_whiteboard(db, whiteboard_id)
    await _broadcast(relay, whiteboard.session_id, "whiteboard-closed", {"whiteboardId": whiteboard.id})
    return {"whiteboard": content.whiteboard_to_dict(whiteboard)}


@router.get("/whiteboards/{whiteboard_id}")
async def whiteboard_pages(whiteboard_id: str, user: User = Depends(get_current_user),
                           db: Session = Depends(get_db)):
    return {"pages": content.latest_canvas(db, whiteboard_id)}


@router.post("/whiteboards/save", status_code=201)
async def save_canvas(request: CanvasSaveRequest, user: User = Depends(get_current_user),
                      db: Session = Depends(get_db)):
    content.get_session(db, request.sessionId)
    snapshot = content.save_canvas(db, request.sessionId, user.id, request.data, request.pageNumber or 1,
                                   request.whiteboardId)
    return {"success": True, "canvasId": snapshot.id}


# --- 资料分类 ---
@router.get("/classrooms/{classroom_id}/categories")
async def list_categories(classroom_id: str, user: User = Depends(get_current_user),
                          db: Session = Depends(get_db)):
    return {"categories": content.list_categories(db, classroom_id)}


@router.post("/classrooms/{classroom_id}/categories", status_code=201)
async def create_category(classroom_id: str, request: CategoryCreateRequest, user: User = Depends(staff_only),
                          db: Session = Depends(get_db)):
    _require_classroom_staff(db, classroom_id, user)
    category = content.create_category(db, classroom_id, request.name, request.description)
    return {"category": content.category_to_dict(category)}


# --- 资料 ---
@router.get("/classrooms/{classroom_id}/materials")
async def list_materials(classroom_id: str, categoryId: Optional[str] = None, sessionId: Optional[str] = None,
                         user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"materials": content.list_materials(db, classroom_id, categoryId, sessionId)}


@router.post("/classrooms/{classroom_id}/materials", status_code=201)
async def add_link_material(classroom_id: str, request: MaterialLinkRequest, user: User = Depends(staff_only),
                            db: Session = Depends(get_db), relay: RoomRelay = Depends(get_relay)):
    _require_classroom_staff(db, classroom_id, user)
    material, message = content.add_material(db, user, classroom_id, request.title, request.fileUrl,
                                             request.fileType, request.fileName, 0, request.description,
                                             request.sessionId, request.categoryId, request.publishToChat)
    if message is not None:
        await _broadcast(relay, material.session_id, "new-message", content.message_to_dict(message, user))
    return {"material": content.material_to_dict(material, user)}


# 上传文件（multipart）
@router.post("/upload", status_code=201)
async def upload_material(file: UploadFile = File(...), classroomId: str = Form(...),
                          title: Optional[str] = Form(None), description: Optional[str] = Form(None),
                          sessionId: Optional[str] = Form(None), categoryId: Optional[str] = Form(None),
                          publishToChat: bool = Form(False), user: User = Depends(staff_only),
                          db: Session = Depends(get_db), relay: RoomRelay = Depends(get_relay)):
    _require_classroom_staff(db, classroomId, user)
    data = await file.read(MAX_UPLOAD_SIZE + 1)
    if len(data) > MAX_UPLOAD_SIZE:
        raise ValidationFailed(f"文件大小超过 {MAX_UPLOAD_SIZE // (1024 * 1024)}MB 限制")
    if not data:
        raise ValidationFailed("文件不能为空")
    material, message = content.upload_material(db, user, classroomId, title, file.filename or "file", data,
                                                description, sessionId, categoryId, publishToChat)
    if message is not None:
        await _broadcast(relay, material.session_id, "new-message", content.message_to_dict(message, user))
    return {"material": content.material_to_dict(material, user)}


@router.delete("/materials/{material_id}")
async def delete_material(material_id: str, user: User = Depends(staff_only), db: Session = Depends(get_db)):
    content.delete_material(db, material_id, user)
    return {"message": "资料已删除"}


# 记录下载次数
@router.post("/materials/{material_id}/download")
async def track_download(material_id: str, user: User = Depends(get_current_user),
                         db: Session = Depends(get_db)):
    material = content.track_download(db, material_id)
    return {"fileUrl": material.file_url, "downloadCount": material.download_count}


@router.get("/materials/{material_id}/download")
async def download_material(material_id: str, user: User = Depends(get_current_user),
                            db: Session = Depends(get_db)):
    material = content.get_material(db, material_id)
    path = content.local_path(material)
    if path is None or not path.exists():
        raise NotFound("文件不存在")
    content.track_download(db, material_id)
    return FileResponse(path, filename=material.file_name)


# --- 测验 ---
@router.post("/quizzes", status_code=201)
async def create_quiz(request: QuizCreateRequest, user: User = Depends(staff_only), db: Session = Depends(get_db),
                      relay: RoomRelay = Depends(get_relay)):
    _require_classroom_staff(db, request.classroomId, user)
    quiz, message = quizzes.create_quiz(
        db, user, request.classroomId, request.title, request.duration,
        [q.model_dump() for q in request.questions], request.description, request.sessionId,
        request.passingScore, request.startTime, request.endTime, request.publishInChat,
    )
    if message is not None:
        await _broadcast(relay, quiz.session_id, "new-message", quizzes.quiz_announcement(message, user))
    return {"quiz": quizzes.quiz_to_dict(quiz)}


@router.get("/quizzes")
async def list_quizzes(classroomId: str, sessionId: Optional[str] = None, user: User = Depends(get_current_user),
                       db: Session = Depends(get_db)):
    return {"quizzes": quizzes.list_quizzes(db, classroomId, sessionId)}


@router.get("/quizzes/{quiz_id}")
async def get_quiz(quiz_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"quiz": quizzes.quiz_detail(db, quiz_id, user, staff=is_staff(user))}


@router.post("/quizzes/{quiz_id}/submit", status_code=201)
async def submit_quiz(quiz_id: str, request: SubmitRequest, user: User = Depends(get_current_user),
                      db: Session = Depends(get_db)):
    return quizzes.submit_quiz(db, quiz_id, user, request.answers)


@router.get("/quizzes/{quiz_id}/submissions")
async def list_submissions(quiz_id: str, user: User = Depends(staff_only), db: Session = Depends(get_db)):
    _require_classroom_staff(db, quizzes.get_quiz(db, quiz_id).classroom_id, user)
    return {"submissions": quizzes.list_submissions(db, quiz_id)}


@router.post("/quizzes/{quiz_id}/submissions/{submission_id}/grade")
async def grade_submission(quiz_id: str, submission_id: str, request: GradeRequest,
                           user: User = Depends(staff_only), db: Session = Depends(get_db)):
    _require_classroom_staff(db, quizzes.get_quiz(db, quiz_id).classroom_id, user)
    return quizzes.grade_submission(db, quiz_id, submission_id, user, request.scores, request.feedback)


# --- 成绩 ---
@router.get("/grades")
async def grades(classroomId: str, studentId: Optional[str] = None, user: User = Depends(get_current_user),
                 db: Session = Depends(get_db)):
    # 学生只能查看自己的成绩
    if studentId and studentId != user.id and not is_staff(user):
        raise PermissionDenied("只能查看自己的成绩")
    return quizzes.grade_detail(db, classroomId, studentId or user.id)


@router.get("/grades/ranking")
async def ranking(classroomId: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    database.get_classroom(db, classroomId)
    return {"ranking": quizzes.classroom_ranking(db, classroomId)}
