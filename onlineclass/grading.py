# 测验评分与每个（测验, 学生）的提交状态
# 这里只有纯函数：传入 ORM 行和 now，返回分数或 QuizState；状态不落库，每次读取时重新推导

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

from .models import OBJECTIVE_TYPES, SUBJECTIVE_TYPES, QuestionType
from .utils import percentage


class QuizState(str, enum.Enum):
    NOT_STARTED = "not_started"
    OPEN = "open"
    AUTO_GRADED = "auto_graded"
    PENDING_MANUAL_GRADE = "pending_manual_grade"
    FULLY_GRADED = "fully_graded"
    CLOSED_UNSUBMITTED = "closed_unsubmitted"


@dataclass
class GradeResult:
    score: float
    max_score: float
    percentage: float
    # question id -> {"answer", "correct", "points"}
    details: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def is_objective(question) -> bool:
    return QuestionType(question.type) in OBJECTIVE_TYPES


def is_subjective(question) -> bool:
    return QuestionType(question.type) in SUBJECTIVE_TYPES


def max_points(questions: Iterable) -> float:
    return float(sum(q.points or 0 for q in questions))


def objective_points(question, answer) -> float:
    # 精确匹配（区分大小写，不做归一化）：要么满分要么零分
    if answer is not None and answer == question.correct_answer:
        return float(question.points or 0)
    return 0.0


def clamp_manual(question, awarded) -> float:
    return max(0.0, min(float(awarded), float(question.points or 0)))


# 自动批改客观题；主观题在人工评分前记 0 分
def auto_grade(questions: Iterable, answers: Mapping[str, Any]) -> GradeResult:
    questions = list(questions)
    score = 0.0
    details = {}
    for question in questions:
        answer = answers.get(question.id)
        points = objective_points(question, answer) if is_objective(question) else 0.0
        score += points
        details[question.id] = {"answer": answer, "correct": points > 0, "points": points}
    total = max_points(questions)
    return GradeResult(score=score, max_score=total, percentage=percentage(score, total), details=details)


# 把本次人工评分合并进已有分数：只保留主观题，每题限制在 [0, 分值]
def merge_manual_scores(questions: Iterable, previous: Optional[Mapping[str, Any]],
                        supplied: Mapping[str, Any]) -> Dict[str, float]:
    merged = {}
    by_id = {q.id: q for q in questions if is_subjective(q)}
    for qid, value in (previous or {}).items():
        if qid in by_id:
            merged[qid] = clamp_manual(by_id[qid], value)
    for qid, value in supplied.items():
        if qid in by_id and value is not None:
            merged[qid] = clamp_manual(by_id[qid], value)
    return merged


def combine(questions: Iterable, answers: Mapping[str, Any], manual_scores: Mapping[str, float]) -> GradeResult:
    questions = list(questions)
    result = auto_grade(questions, answers)
    score = result.score
    for question in questions:
        if is_subjective(question) and question.id in manual_scores:
            awarded = clamp_manual(question, manual_scores[question.id])
            score += awarded
            result.details[question.id]["points"] = awarded
    result.score = score
    result.percentage = percentage(score, result.max_score)
    return result


def needs_manual_grading(questions: Iterable) -> bool:
    return any(is_subjective(q) for q in questions)


def quiz_state(quiz, questions: Iterable, submission, now) -> QuizState:
    questions = list(questions)
    if submission is None:
        if now < quiz.start_time:
            return QuizState.NOT_STARTED
        if now >= quiz.end_time:
            return QuizState.CLOSED_UNSUBMITTED
        return QuizState.OPEN
    subjective = [q for q in questions if is_subjective(q)]
    if not subjective:
        return QuizState.AUTO_GRADED
    graded = submission.manual_scores or {}
    if all(q.id in graded for q in subjective):
        return QuizState.FULLY_GRADED
    return QuizState.PENDING_MANUAL_GRADE
