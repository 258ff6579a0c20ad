import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .content import get_session, store_chat_message
from .database import get_classroom
from .errors import Conflict, NotFound, ValidationFailed
from .grading import auto_grade, combine, max_points, merge_manual_scores, quiz_state
from .models import (ChatMessage, GradeRecord, MessageType, QuestionType, Question, Quiz, Submission,
                     User)
from .ranking import build_ranking
from .utils import isoformat, new_id, percentage, round2, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

QUIZ_DEFAULT_OPEN_DAYS = 7


def _questions(db: Session, quiz_id: str) -> List[Question]:
    return db.query(Question).filter(Question.quiz_id == quiz_id).order_by(Question.order).all()


def get_quiz(db: Session, quiz_id: str) -> Quiz:
    quiz = db.get(Quiz, quiz_id)
    if not quiz:
        raise NotFound("测验不存在")
    return quiz


def quiz_to_dict(quiz: Quiz) -> Dict:
    return {
        "id": quiz.id,
        "classroomId": quiz.classroom_id,
        "sessionId": quiz.session_id,
        "title": quiz.title,
        "description": quiz.description,
        "duration": quiz.duration,
        "totalPoints": quiz.total_points,
        "passingScore": quiz.passing_score,
        "startTime": isoformat(quiz.start_time),
        "endTime": isoformat(quiz.end_time),
        "isPublished": quiz.is_published,
        "publishedInChat": quiz.published_in_chat,
        "chatMessageId": quiz.chat_message_id,
        "createdById": quiz.created_by_id,
        "createdAt": isoformat(quiz.created_at),
    }


def question_to_dict(question: Question, with_answer: bool) -> Dict:
    item = {
        "id": question.id,
        "question": question.question,
        "type": QuestionType(question.type).value,
        "options": question.options,
        "points": question.points,
        "order": question.order,
    }
    if with_answer:
        item["correctAnswer"] = question.correct_answer
    return item


def submission_to_dict(submission: Submission, student: Optional[User] = None) -> Dict:
    return {
        "id": submission.id,
        "quizId": submission.quiz_id,
        "studentId": submission.student_id,
        "studentName": student.name if student else None,
        "answers": submission.answers,
        "score": submission.score,
        "manualScores": submission.manual_scores or {},
        "feedback": submission.feedback,
        "submittedAt": isoformat(submission.submitted_at),
        "gradedAt": isoformat(submission.graded_at),
        "gradedBy": submission.graded_by,
    }


def _validate_questions(questions: List[Mapping[str, Any]]) -> None:
    if not questions:
        raise ValidationFailed("至少需要一道题目")
    for index, q in enumerate(questions, start=1):
        if not q.get("question"):
            raise ValidationFailed(f"第 {index} 题缺少题干")
        try:
            QuestionType(q.get("type"))
        except ValueError:
            raise ValidationFailed(f"第 {index} 题类型无效: {q.get('type')}")
        points = q.get("points")
        if points is None or points < 0:
            raise ValidationFailed(f"第 {index} 题分值必须大于等于 0")


# 创建测验；可同时发布到课程聊天
def create_quiz(db: Session, user: User, classroom_id: str, title: str, duration: int,
                questions: List[Mapping[str, Any]], description: Optional[str] = None,
                session_id: Optional[str] = None, passing_score: Optional[int] = None,
                start_time: Optional[datetime] = None, end_time: Optional[datetime] = None,
                publish_in_chat: bool = False, now: Optional[datetime] = None):
    # 返回 (quiz, message)；发布到课程聊天时 message 为公告消息，否则为 None
    now = now or utcnow()
    if not classroom_id or not title or not duration:
        raise ValidationFailed("缺少必填字段")
    _validate_questions(questions)
    get_classroom(db, classroom_id)
    if session_id:
        session = get_session(db, session_id)
        if session.classroom_id != classroom_id:
            raise ValidationFailed("课程不属于该课堂")

    start_time = to_naive_utc(start_time) if start_time else now
    end_time = to_naive_utc(end_time) if end_time else now + timedelta(days=QUIZ_DEFAULT_OPEN_DAYS)
    if end_time <= start_time:
        raise ValidationFailed("结束时间必须晚于开始时间")
    total_points = sum(int(q["points"]) for q in questions)
    if passing_score is None:
        passing_score = math.floor(total_points * 0.6)

    quiz = Quiz(id=new_id(), classroom_id=classroom_id, session_id=session_id, title=title,
                description=description, duration=duration, total_points=total_points,
                passing_score=passing_score, start_time=start_time, end_time=end_time,
                is_published=True, published_in_chat=False, created_by_id=user.id, created_at=now)
    message = None
    try:
        db.add(quiz)
        db.flush()
        for index, q in enumerate(questions):
            db.add(Question(id=new_id(), quiz_id=quiz.id, question=q["question"], type=QuestionType(q["type"]),
                            options=q.get("options"), correct_answer=q.get("correctAnswer"),
                            points=int(q["points"]),
                            order=index if q.get("order") is None else q["order"]))
        db.flush()
        if publish_in_chat and session_id:
            text = f"📝 Quiz Published: **{title}**"
            if description:
                text += f"\n\n{description}"
            text += f"\n\nDuration: {duration} minutes | Total Points: {total_points}"
            message = store_chat_message(db, session_id, user.id, text,
                                         MessageType.ANNOUNCEMENT.value,
                                         {"quizId": quiz.id, "quizTitle": title}, commit=False)
            quiz.published_in_chat = True
            quiz.chat_message_id = message.id
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info("测验 %s 已创建，共 %d 题，总分 %d", quiz.id, len(questions), total_points)
    return quiz, message


def list_quizzes(db: Session, classroom_id: str, session_id: Optional[str] = None) -> List[Dict]:
    query = db.query(Quiz).filter(Quiz.classroom_id == classroom_id)
    if session_id:
        query = query.filter(Quiz.session_id == session_id)
    quizzes = query.order_by(Quiz.created_at.desc()).all()
    counts = dict(
        db.query(Question.quiz_id, func.count(Question.id))
        .filter(Question.quiz_id.in_([q.id for q in quizzes]))
        .group_by(Question.quiz_id)
        .all()
    ) if quizzes else {}
    return [dict(quiz_to_dict(q), questionCount=counts.get(q.id, 0)) for q in quizzes]


def quiz_detail(db: Session, quiz_id: str, user: User, staff: bool, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    quiz = get_quiz(db, quiz_id)
    questions = _questions(db, quiz_id)
    submission = db.query(Submission).filter(
        Submission.quiz_id == quiz_id, Submission.student_id == user.id
    ).first()
    return dict(
        quiz_to_dict(quiz),
        questions=[question_to_dict(q, with_answer=staff) for q in questions],
        submission=submission_to_dict(submission) if submission else None,
        state=quiz_state(quiz, questions, submission, now).value,
    )


def submit_quiz(db: Session, quiz_id: str, student: User, answers: Optional[Mapping[str, Any]],
                now: Optional[datetime] = None) -> Dict:
    # 提交与成绩在同一事务写入；并发重复提交由 (quiz, student) 唯一约束裁决
    now = now or utcnow()
    if not quiz_id or answers is None:
        raise ValidationFailed("缺少必填字段")
    quiz = get_quiz(db, quiz_id)
    if now < quiz.start_time:
        raise ValidationFailed("测验尚未开始")
    if now >= quiz.end_time:
        raise ValidationFailed("Quiz has ended")
    exists = db.query(Submission.id).filter(
        Submission.quiz_id == quiz_id, Submission.student_id == student.id
    ).first()
    if exists:
        raise Conflict("已提交过该测验")

    questions = _questions(db, quiz_id)
    result = auto_grade(questions, answers)
    max_score = float(quiz.total_points)
    submission = Submission(id=new_id(), quiz_id=quiz_id, student_id=student.id, answers=dict(answers),
                            score=result.score, submitted_at=now)
    grade = GradeRecord(id=new_id(), classroom_id=quiz.classroom_id, user_id=student.id, quiz_id=quiz_id,
                        score=result.score, max_score=max_score,
                        percentage=percentage(result.score, max_score), created_at=now, updated_at=now)
    try:
        db.add(submission)
        db.flush()
        db.add(grade)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("已提交过该测验")
    logger.info("学生 %s 提交测验 %s，自动评分 %s/%s", student.id, quiz_id, result.score, max_score)
    return {
        "submission": submission_to_dict(submission),
        "score": result.score,
        "maxScore": max_score,
        "percentage": grade.percentage,
        "state": quiz_state(quiz, questions, submission, now).value,
    }


def grade_submission(db: Session, quiz_id: str, submission_id: str, grader: User,
                     scores: Optional[Mapping[str, Any]], feedback: Optional[str] = None,
                     now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    if not submission_id or scores is None:
        raise ValidationFailed("缺少必填字段")
    quiz = get_quiz(db, quiz_id)
    submission = db.get(Submission, submission_id)
    if not submission or submission.quiz_id != quiz_id:
        raise NotFound("提交记录不存在")

    questions = _questions(db, quiz_id)
    manual = merge_manual_scores(questions, submission.manual_scores, scores)
    result = combine(questions, submission.answers or {}, manual)
    max_score = max_points(questions)

    try:
        submission.manual_scores = manual
        submission.score = result.score
        submission.graded_at = now
        submission.graded_by = grader.id
        if feedback is not None:
            submission.feedback = feedback
        grade = db.query(GradeRecord).filter(
            GradeRecord.quiz_id == quiz_id, GradeRecord.user_id == submission.student_id
        ).first()
        if grade is None:
            grade = GradeRecord(id=new_id(), classroom_id=quiz.classroom_id, user_id=submission.student_id,
                                quiz_id=quiz_id, created_at=now)
            db.add(grade)
        grade.score = result.score
        grade.max_score = max_score
        grade.percentage = result.percentage
        grade.updated_at = now
        if feedback is not None:
            grade.feedback = feedback
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info("提交 %s 人工评分完成: %s/%s", submission_id, result.score, max_score)
    return {
        "submission": submission_to_dict(submission),
        "score": result.score,
        "maxScore": max_score,
        "percentage": result.percentage,
        "state": quiz_state(quiz, questions, submission, now).value,
    }


def list_submissions(db: Session, quiz_id: str, now: Optional[datetime] = None) -> List[Dict]:
    now = now or utcnow()
    quiz = get_quiz(db, quiz_id)
    questions = _questions(db, quiz_id)
    rows = (
        db.query(Submission, User)
        .outerjoin(User, Submission.student_id == User.id)
        .filter(Submission.quiz_id == quiz_id)
        .order_by(Submission.submitted_at)
        .all()
    )
    return [dict(submission_to_dict(s, u), state=quiz_state(quiz, questions, s, now).value) for s, u in rows]


# 单个学生在课堂中的成绩明细
def grade_detail(db: Session, classroom_id: str, student_id: str) -> Dict:
    rows = (
        db.query(GradeRecord, Quiz.title)
        .outerjoin(Quiz, GradeRecord.quiz_id == Quiz.id)
        .filter(GradeRecord.classroom_id == classroom_id, GradeRecord.user_id == student_id)
        .order_by(GradeRecord.created_at)
        .all()
    )
    grades = [{
        "id": g.id,
        "quizId": g.quiz_id,
        "quizTitle": title,
        "score": g.score,
        "maxScore": g.max_score,
        "percentage": g.percentage,
        "feedback": g.feedback,
        "createdAt": isoformat(g.created_at),
    } for g, title in rows]
    total = sum(g["score"] for g in grades)
    total_max = sum(g["maxScore"] for g in grades)
    return {
        "studentId": student_id,
        "grades": grades,
        "totalScore": total,
        "totalMaxScore": total_max,
        "totalPercentage": percentage(total, total_max),
        "averagePercentage": round2(sum(g["percentage"] for g in grades) / len(grades)) if grades else 0.0,
    }


def classroom_ranking(db: Session, classroom_id: str) -> List[Dict]:
    groups = (
        db.query(
            GradeRecord.user_id.label("user_id"),
            User.name.label("user_name"),
            func.sum(GradeRecord.score).label("total_score"),
            func.sum(GradeRecord.max_score).label("total_max_score"),
            func.count(GradeRecord.id).label("quiz_count"),
            func.avg(GradeRecord.percentage).label("avg_percentage"),
        )
        .outerjoin(User, GradeRecord.user_id == User.id)
        .filter(GradeRecord.classroom_id == classroom_id)
        .group_by(GradeRecord.user_id, User.name)
        .all()
    )
    return [row.to_dict() for row in build_ranking(groups)]


def quiz_announcement(message: ChatMessage, author: User) -> Dict:
    return {
        "id": message.id,
        "userId": author.id,
        "userName": author.name,
        "message": message.message,
        "type": MessageType(message.type).value,
        "metadata": message.metadata_,
        "timestamp": isoformat(message.created_at),
    }
