import enum

from sqlalchemy import (Column, Integer, String, Text, DateTime, Float, Boolean, JSON, Enum,
                        ForeignKey, UniqueConstraint)
from sqlalchemy.orm import declarative_base

from .utils import new_id, utcnow

Base = declarative_base()


class Role(str, enum.Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    OBSERVER = "observer"
    ADMINISTRATOR = "administrator"


# 教师与管理员
STAFF_ROLES = (Role.TEACHER, Role.ADMINISTRATOR)


class MessageType(str, enum.Enum):
    TEXT = "text"
    SYSTEM = "system"
    ANNOUNCEMENT = "announcement"
    WHITEBOARD = "whiteboard"
    YOUTUBE = "youtube"
    FILE = "file"


class QuestionType(str, enum.Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    SHORT_ANSWER = "short_answer"
    ESSAY = "essay"


OBJECTIVE_TYPES = (QuestionType.MULTIPLE_CHOICE, QuestionType.TRUE_FALSE)
SUBJECTIVE_TYPES = (QuestionType.SHORT_ANSWER, QuestionType.ESSAY)


class InvitationStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


FILE_TYPES = ("pdf", "ppt", "pptx", "doc", "docx", "xls", "xlsx", "image", "video", "youtube", "other")


def _enum(cls):
    # 存值而不是成员名
    return Enum(cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32)


class User(Base):
    __tablename__ = "users"
    id = Column(String(64), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(60), nullable=False)
    name = Column(String(255), nullable=False)
    role = Column(_enum(Role), nullable=False)
    avatar = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Classroom(Base):
    __tablename__ = "classrooms"
    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    teacher_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    cover_image = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ClassroomMember(Base):
    __tablename__ = "classroom_members"
    __table_args__ = (UniqueConstraint("classroom_id", "user_id", name="uq_classroom_member"),)
    id = Column(String(64), primary_key=True, default=new_id)
    classroom_id = Column(String(64), ForeignKey("classrooms.id"), nullable=False)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    role = Column(_enum(Role), nullable=False)
    joined_at = Column(DateTime, nullable=False, default=utcnow)


class ClassSession(Base):
    __tablename__ = "sessions"
    id = Column(String(64), primary_key=True, default=new_id)
    classroom_id = Column(String(64), ForeignKey("classrooms.id"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    scheduled_at = Column(DateTime, nullable=False)
    duration = Column(Integer, nullable=False, default=90)
    ended_at = Column(DateTime, nullable=True)
    is_public = Column(Boolean, nullable=False, default=True)
    recording_url = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(String(64), primary_key=True, default=new_id)
    session_id = Column(String(64), ForeignKey("sessions.id"), nullable=False)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(_enum(MessageType), nullable=False, default=MessageType.TEXT)
    # 附件信息等
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Whiteboard(Base):
    __tablename__ = "whiteboards"
    id = Column(String(64), primary_key=True, default=new_id)
    session_id = Column(String(64), ForeignKey("sessions.id"), nullable=False)
    chat_message_id = Column(String(64), ForeignKey("chat_messages.id"), nullable=True)
    created_by_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    title = Column(String(255), nullable=False, default="Whiteboard")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    closed_at = Column(DateTime, nullable=True)


class CanvasSnapshot(Base):
    __tablename__ = "canvas_data"
    id = Column(String(64), primary_key=True, default=new_id)
    whiteboard_id = Column(String(64), ForeignKey("whiteboards.id"), nullable=True)
    session_id = Column(String(64), ForeignKey("sessions.id"), nullable=False)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    data = Column(JSON, nullable=False)
    page_number = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class MaterialCategory(Base):
    __tablename__ = "material_categories"
    __table_args__ = (UniqueConstraint("classroom_id", "order", name="uq_category_order"),)
    id = Column(String(64), primary_key=True, default=new_id)
    classroom_id = Column(String(64), ForeignKey("classrooms.id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Material(Base):
    __tablename__ = "materials"
    id = Column(String(64), primary_key=True, default=new_id)
    classroom_id = Column(String(64), ForeignKey("classrooms.id"), nullable=False)
    session_id = Column(String(64), ForeignKey("sessions.id"), nullable=True)
    category_id = Column(String(64), ForeignKey("material_categories.id"), nullable=True)
    chat_message_id = Column(String(64), ForeignKey("chat_messages.id"), nullable=True)
    uploaded_by_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    file_type = Column(String(16), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    file_url = Column(Text, nullable=False)
    download_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Quiz(Base):
    __tablename__ = "quizzes"
    id = Column(String(64), primary_key=True, default=new_id)
    classroom_id = Column(String(64), ForeignKey("classrooms.id"), nullable=False)
    session_id = Column(String(64), ForeignKey("sessions.id"), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    duration = Column(Integer, nullable=False)
    total_points = Column(Integer, nullable=False)
    passing_score = Column(Integer, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    is_published = Column(Boolean, nullable=False, default=True)
    published_in_chat = Column(Boolean, nullable=False, default=False)
    chat_message_id = Column(String(64), ForeignKey("chat_messages.id"), nullable=True)
    created_by_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Question(Base):
    __tablename__ = "questions"
    id = Column(String(64), primary_key=True, default=new_id)
    quiz_id = Column(String(64), ForeignKey("quizzes.id"), nullable=False)
    question = Column(Text, nullable=False)
    type = Column(_enum(QuestionType), nullable=False)
    options = Column(JSON, nullable=True)
    # 客观题为正确答案，主观题为参考答案
    correct_answer = Column(Text, nullable=True)
    points = Column(Integer, nullable=False)
    order = Column(Integer, nullable=False)


class Submission(Base):
    __tablename__ = "submissions"
    __table_args__ = (UniqueConstraint("quiz_id", "student_id", name="uq_submission_quiz_student"),)
    id = Column(String(64), primary_key=True, default=new_id)
    quiz_id = Column(String(64), ForeignKey("quizzes.id"), nullable=False)
    student_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    answers = Column(JSON, nullable=False)
    score = Column(Float, nullable=False, default=0)
    # question id -> 人工给分
    manual_scores = Column(JSON, nullable=True)
    feedback = Column(Text, nullable=True)
    submitted_at = Column(DateTime, nullable=False, default=utcnow)
    graded_at = Column(DateTime, nullable=True)
    graded_by = Column(String(64), ForeignKey("users.id"), nullable=True)


class GradeRecord(Base):
    __tablename__ = "grades"
    id = Column(String(64), primary_key=True, default=new_id)
    classroom_id = Column(String(64), ForeignKey("classrooms.id"), nullable=False)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    quiz_id = Column(String(64), ForeignKey("quizzes.id"), nullable=True)
    score = Column(Float, nullable=False)
    max_score = Column(Float, nullable=False)
    percentage = Column(Float, nullable=False)
    feedback = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Invitation(Base):
    __tablename__ = "invitations"
    id = Column(String(64), primary_key=True, default=new_id)
    classroom_id = Column(String(64), ForeignKey("classrooms.id"), nullable=False)
    inviter_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    invitee_email = Column(String(255), nullable=False)
    invitee_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    role = Column(_enum(Role), nullable=False, default=Role.STUDENT)
    status = Column(_enum(InvitationStatus), nullable=False, default=InvitationStatus.PENDING)
    message = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    responded_at = Column(DateTime, nullable=True)


class TeacherInviteCode(Base):
    __tablename__ = "teacher_invite_codes"
    id = Column(String(64), primary_key=True, default=new_id)
    code = Column(String(64), nullable=False, unique=True)
    created_by_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    is_used = Column(Boolean, nullable=False, default=False)
    used_by_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    used_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    is_revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime, nullable=True)
    revoked_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
