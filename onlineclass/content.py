import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import CHAT_HISTORY_LIMIT, UPLOAD_DIR
from .database import get_classroom, is_classroom_teacher
from .errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from .lifecycle import DEFAULT_DURATION_MINUTES, session_status
from .models import (CanvasSnapshot, ChatMessage, ClassSession, FILE_TYPES, Material, MaterialCategory,
                     MessageType, Role, User, Whiteboard)
from .utils import FILE_ICONS, file_type_for, isoformat, mkdir, new_id, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

UPLOAD_URL_PREFIX = "/uploads/"


# --- 课程（直播课） ---
def session_to_dict(session: ClassSession, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    return {
        "id": session.id,
        "classroomId": session.classroom_id,
        "title": session.title,
        "description": session.description,
        "scheduledAt": isoformat(session.scheduled_at),
        "duration": session.duration,
        "endedAt": isoformat(session.ended_at),
        "isPublic": session.is_public,
        "recordingUrl": session.recording_url,
        "status": session_status(session, now).value,
        "createdAt": isoformat(session.created_at),
    }


def get_session(db: Session, session_id: str) -> ClassSession:
    session = db.get(ClassSession, session_id)
    if not session:
        raise NotFound("课程不存在")
    return session


def create_session(db: Session, classroom_id: str, title: str, scheduled_at: datetime,
                   duration: Optional[int] = None, description: Optional[str] = None,
                   is_public: Optional[bool] = None) -> ClassSession:
    if not classroom_id or not title or scheduled_at is None:
        raise ValidationFailed("缺少必填字段")
    if duration is not None and duration <= 0:
        raise ValidationFailed("课程时长必须大于 0")
    get_classroom(db, classroom_id)
    session = ClassSession(
        id=new_id(),
        classroom_id=classroom_id,
        title=title,
        description=description,
        scheduled_at=to_naive_utc(scheduled_at),
        duration=duration or DEFAULT_DURATION_MINUTES,
        is_public=True if is_public is None else is_public,
    )
    db.add(session)
    db.commit()
    return session


# 学生和旁听者只能看到公开课程
def list_sessions(db: Session, classroom_id: str, user: User, now: Optional[datetime] = None) -> List[Dict]:
    now = now or utcnow()
    query = db.query(ClassSession).filter(ClassSession.classroom_id == classroom_id)
    if Role(user.role) in (Role.STUDENT, Role.OBSERVER):
        query = query.filter(ClassSession.is_public.is_(True))
    return [session_to_dict(s, now) for s in query.order_by(ClassSession.scheduled_at).all()]


def end_session(db: Session, session_id: str, recording_url: Optional[str] = None,
                now: Optional[datetime] = None) -> ClassSession:
    now = now or utcnow()
    session = get_session(db, session_id)
    if session.ended_at is not None and session.ended_at <= now:
        raise Conflict("课程已结束")
    session.ended_at = now
    if recording_url:
        session.recording_url = recording_url
    db.commit()
    return session


# --- 聊天 ---
def message_to_dict(message: ChatMessage, user: Optional[User] = None) -> Dict:
    return {
        "id": message.id,
        "sessionId": message.session_id,
        "userId": message.user_id,
        "userName": user.name if user else None,
        "message": message.message,
        "type": MessageType(message.type).value,
        "metadata": message.metadata_,
        "timestamp": isoformat(message.created_at),
    }


def store_chat_message(db: Session, session_id: str, user_id: str, message: str,
                       type: str = MessageType.TEXT.value, metadata: Optional[Dict[str, Any]] = None,
                       commit: bool = True) -> ChatMessage:
    get_session(db, session_id)
    try:
        message_type = MessageType(type)
    except ValueError:
        raise ValidationFailed(f"未知消息类型: {type}")
    row = ChatMessage(id=new_id(), session_id=session_id, user_id=user_id, message=message,
                      type=message_type, metadata_=metadata, created_at=utcnow())
    db.add(row)
    if commit:
        db.commit()
    else:
        db.flush()
    return row


# 最近的 N 条，按时间正序返回
def chat_history(db: Session, session_id: str, limit: int = CHAT_HISTORY_LIMIT) -> List[Dict]:
    rows = (
        db.query(ChatMessage, User)
        .outerjoin(User, ChatMessage.user_id == User.id)
        .filter(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(limit)
        .all()
    )
    return [message_to_dict(m, u) for m, u in reversed(rows)]


# --- 白板 ---
def whiteboard_to_dict(whiteboard: Whiteboard) -> Dict:
    return {
        "id": whiteboard.id,
        "sessionId": whiteboard.session_id,
        "chatMessageId": whiteboard.chat_message_id,
        "createdById": whiteboard.created_by_id,
        "title": whiteboard.title,
        "isActive": whiteboard.is_active,
        "createdAt": isoformat(whiteboard.created_at),
        "closedAt": isoformat(whiteboard.closed_at),
    }


# 打开白板并发一条聊天公告，两行在同一次提交中写入，返回 (whiteboard, message)
def create_whiteboard(db: Session, session_id: str, user: User, title: Optional[str] = None):
    get_session(db, session_id)
    title = title or "Whiteboard"
    whiteboard = Whiteboard(id=new_id(), session_id=session_id, created_by_id=user.id, title=title)
    db.add(whiteboard)
    db.flush()
    message = store_chat_message(db, session_id, user.id, f"🎨 {user.name} 打开了白板: {title}",
                                 MessageType.WHITEBOARD.value, {"whiteboardId": whiteboard.id}, commit=False)
    whiteboard.chat_message_id = message.id
    db.commit()
    return whiteboard, message


def close_whiteboard(db: Session, whiteboard_id: str, now: Optional[datetime] = None) -> Whiteboard:
    whiteboard = db.get(Whiteboard, whiteboard_id)
    if not whiteboard:
        raise NotFound("白板不存在")
    if not whiteboard.is_active:
        raise Conflict("白板已关闭")
    whiteboard.is_active = False
    whiteboard.closed_at = now or utcnow()
    db.commit()
    return whiteboard


def save_canvas(db: Session, session_id: str, user_id: str, data: Any, page_number: int = 1,
                whiteboard_id: Optional[str] = None) -> CanvasSnapshot:
    if data is None:
        raise ValidationFailed("画布数据不能为空")
    get_session(db, session_id)
    if whiteboard_id and not db.get(Whiteboard, whiteboard_id):
        raise NotFound("白板不存在")
    snapshot = CanvasSnapshot(id=new_id(), whiteboard_id=whiteboard_id, session_id=session_id,
                              user_id=user_id, data=data, page_number=page_number or 1)
    db.add(snapshot)
    db.commit()
    return snapshot


def latest_canvas(db: Session, whiteboard_id: str) -> List[Dict]:
    rows = (
        db.query(CanvasSnapshot)
        .filter(CanvasSnapshot.whiteboard_id == whiteboard_id)
        .order_by(CanvasSnapshot.page_number, CanvasSnapshot.updated_at.desc())
        .all()
    )
    pages = {}
    for row in rows:
        # 每页只保留最新一份
        pages.setdefault(row.page_number, {"id": row.id, "pageNumber": row.page_number, "data": row.data,
                                           "updatedAt": isoformat(row.updated_at)})
    return list(pages.values())


# --- 资料分类 ---
def category_to_dict(category: MaterialCategory) -> Dict:
    return {
        "id": category.id,
        "classroomId": category.classroom_id,
        "name": category.name,
        "description": category.description,
        "order": category.order,
        "createdAt": isoformat(category.created_at),
    }


def create_category(db: Session, classroom_id: str, name: str, description: Optional[str] = None,
                    retries: int = 3) -> MaterialCategory:
    if not name:
        raise ValidationFailed("分类名称不能为空")
    get_classroom(db, classroom_id)
    for attempt in range(retries):
        category_id = new_id()
        # 单条 INSERT ... SELECT max+1，唯一约束兜底并发
        next_order = (
            select(func.coalesce(func.max(MaterialCategory.order), 0) + 1)
            .where(MaterialCategory.classroom_id == classroom_id)
            .scalar_subquery()
        )
        stmt = insert(MaterialCategory).from_select(
            ["id", "classroom_id", "name", "description", "order", "created_at"],
            select(literal(category_id), literal(classroom_id), literal(name), literal(description),
                   next_order, literal(utcnow())),
        )
        try:
            db.execute(stmt)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("分类排序冲突，重试 (%d/%d)", attempt + 1, retries)
            continue
        return db.get(MaterialCategory, category_id)
    raise Conflict("分类创建冲突，请重试")


def list_categories(db: Session, classroom_id: str) -> List[Dict]:
    rows = (
        db.query(MaterialCategory).filter(MaterialCategory.classroom_id == classroom_id)
        .order_by(MaterialCategory.order).all()
    )
    return [category_to_dict(c) for c in rows]


# --- 资料 ---
def material_to_dict(material: Material, uploader: Optional[User] = None) -> Dict:
    return {
        "id": material.id,
        "classroomId": material.classroom_id,
        "sessionId": material.session_id,
        "categoryId": material.category_id,
        "title": material.title,
        "description": material.description,
        "fileType": material.file_type,
        "fileName": material.file_name,
        "fileSize": material.file_size,
        "fileUrl": material.file_url,
        "downloadCount": material.download_count,
        "uploadedBy": {"id": uploader.id, "name": uploader.name} if uploader else material.uploaded_by_id,
        "createdAt": isoformat(material.created_at),
    }


def _check_category(db: Session, classroom_id: str, category_id: Optional[str]) -> None:
    if not category_id:
        return
    category = db.get(MaterialCategory, category_id)
    if not category or category.classroom_id != classroom_id:
        raise ValidationFailed("资料分类不存在")


def _publish_material_message(db: Session, material: Material, user: User) -> ChatMessage:
    icon = FILE_ICONS.get(material.file_type, "📎")
    text = f"{icon} {user.name} 分享了资料: {material.title}"
    message = store_chat_message(db, material.session_id, user.id, text, MessageType.FILE.value, {
        "materialId": material.id,
        "fileName": material.file_name,
        "fileType": material.file_type,
        "fileUrl": material.file_url,
        "fileSize": material.file_size,
    }, commit=False)
    material.chat_message_id = message.id
    return message


# 记录资料（上传文件或外链），返回 (material, message)；发布到课程聊天时 message 为公告消息
def add_material(db: Session, user: User, classroom_id: str, title: str, file_url: str,
                 file_type: Optional[str] = None, file_name: Optional[str] = None, file_size: int = 0,
                 description: Optional[str] = None, session_id: Optional[str] = None,
                 category_id: Optional[str] = None, publish_to_chat: bool = False, uploaded: bool = False):
    if not classroom_id or not title or not file_url:
        raise ValidationFailed("缺少必填字段")
    # 外链不能指向上传目录
    if not uploaded and file_url.startswith(UPLOAD_URL_PREFIX):
        raise ValidationFailed("外链资料不能使用上传目录地址")
    get_classroom(db, classroom_id)
    _check_category(db, classroom_id, category_id)
    if session_id:
        session = get_session(db, session_id)
        if session.classroom_id != classroom_id:
            raise ValidationFailed("课程不属于该课堂")
    file_type = file_type or file_type_for(file_name or file_url)
    if file_type not in FILE_TYPES:
        raise ValidationFailed(f"未知资料类型: {file_type}")

    material = Material(id=new_id(), classroom_id=classroom_id, session_id=session_id, category_id=category_id,
                        uploaded_by_id=user.id, title=title, description=description, file_type=file_type,
                        file_name=file_name or title, file_size=file_size or 0, file_url=file_url)
    db.add(material)
    db.flush()
    message = None
    if publish_to_chat and session_id:
        message = _publish_material_message(db, material, user)
    db.commit()
    return material, message


def _safe_filename(filename: str) -> str:
    name = Path(filename or "file").name
    return name.replace(" ", "_") or "file"


# 保存上传文件：<UPLOAD_DIR>/<classroom_id>/<随机前缀>_<文件名>
def store_upload(classroom_id: str, filename: str, content: bytes, upload_dir: str = UPLOAD_DIR):
    folder = mkdir(Path(upload_dir) / classroom_id)
    stored_name = f"{new_id()}_{_safe_filename(filename)}"
    (folder / stored_name).write_bytes(content)
    return stored_name, f"{UPLOAD_URL_PREFIX}{classroom_id}/{stored_name}"


def upload_material(db: Session, user: User, classroom_id: str, title: str, filename: str, content: bytes,
                    description: Optional[str] = None, session_id: Optional[str] = None,
                    category_id: Optional[str] = None, publish_to_chat: bool = False,
                    upload_dir: str = UPLOAD_DIR):
    get_classroom(db, classroom_id)
    stored_name, url = store_upload(classroom_id, filename, content, upload_dir)
    try:
        return add_material(db, user, classroom_id, title or filename, url, file_type_for(filename), filename,
                            len(content), description, session_id, category_id, publish_to_chat, uploaded=True)
    except Exception:
        # 记录没写成，删掉刚落盘的文件
        _unlink(Path(upload_dir) / classroom_id / stored_name)
        raise


def list_materials(db: Session, classroom_id: str, category_id: Optional[str] = None,
                   session_id: Optional[str] = None) -> List[Dict]:
    query = (
        db.query(Material, User)
        .outerjoin(User, Material.uploaded_by_id == User.id)
        .filter(Material.classroom_id == classroom_id)
    )
    if category_id:
        query = query.filter(Material.category_id == category_id)
    if session_id:
        query = query.filter(Material.session_id == session_id)
    return [material_to_dict(m, u) for m, u in query.order_by(Material.created_at.desc()).all()]


def get_material(db: Session, material_id: str) -> Material:
    material = db.get(Material, material_id)
    if not material:
        raise NotFound("资料不存在")
    return material


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        logger.info("文件 %s 已不存在", path)
    except OSError as e:
        logger.warning("删除文件 %s 失败: %s", path, e)


# 只认上传目录内的文件，越界路径一律视为外链
def local_path(material: Material, upload_dir: str = UPLOAD_DIR) -> Optional[Path]:
    if not material.file_url.startswith(UPLOAD_URL_PREFIX):
        return None
    root = Path(upload_dir).resolve()
    path = (root / material.file_url[len(UPLOAD_URL_PREFIX):]).resolve()
    if path == root or root not in path.parents:
        logger.warning("资料 %s 的文件路径越出上传目录: %s", material.id, material.file_url)
        return None
    return path


# 上传者或课堂教师可删除；文件删不掉也照样删记录
def delete_material(db: Session, material_id: str, user: User, upload_dir: str = UPLOAD_DIR) -> None:
    material = get_material(db, material_id)
    classroom = get_classroom(db, material.classroom_id)
    if (material.uploaded_by_id != user.id and Role(user.role) != Role.ADMINISTRATOR
            and not is_classroom_teacher(db, classroom, user)):
        raise PermissionDenied("无权删除该资料")
    path = local_path(material, upload_dir)
    if path is not None:
        _unlink(path)
    db.delete(material)
    db.commit()
    logger.info("资料 %s 已删除", material_id)


def track_download(db: Session, material_id: str) -> Material:
    result = db.execute(
        update(Material)
        .where(Material.id == material_id)
        .values(download_count=Material.download_count + 1)
    )
    if result.rowcount != 1:
        db.rollback()
        raise NotFound("资料不存在")
    db.commit()
    material = db.get(Material, material_id)
    db.refresh(material)
    return material
