from datetime import timedelta

import pytest

from onlineclass.models import ChatMessage, GradeRecord, Role, Submission
from onlineclass.utils import utcnow

QUESTIONS = [
    {"question": "2 + 2 = ?", "type": "multiple_choice", "options": ["A", "B", "C"], "correctAnswer": "B",
     "points": 2},
    {"question": "Explain photosynthesis", "type": "essay", "correctAnswer": "Light to sugar", "points": 3},
]


@pytest.fixture
def setup(client, make_user, headers):
    teacher = make_user(Role.TEACHER, name="teacher")
    student = make_user(Role.STUDENT, name="student")
    res = client.post("/api/classrooms", json={"name": "Biology"}, headers=headers(teacher))
    assert res.status_code == 201
    classroom_id = res.json()["classroom"]["id"]
    client.post(f"/api/classrooms/{classroom_id}/join", json={}, headers=headers(student))
    return teacher, student, classroom_id


def _create_quiz(client, headers, teacher, classroom_id, **extra):
    body = {"classroomId": classroom_id, "title": "Quiz 1", "duration": 30, "questions": QUESTIONS}
    body.update(extra)
    res = client.post("/api/quizzes", json=body, headers=headers(teacher))
    assert res.status_code == 201, res.text
    return res.json()["quiz"]


def test_create_quiz_computes_totals(client, headers, setup):
    teacher, student, classroom_id = setup
    quiz = _create_quiz(client, headers, teacher, classroom_id)
    assert quiz["totalPoints"] == 5
    assert quiz["passingScore"] == 3


def test_student_cannot_create_quiz(client, headers, setup):
    teacher, student, classroom_id = setup
    body = {"classroomId": classroom_id, "title": "Quiz", "duration": 10, "questions": QUESTIONS}
    res = client.post("/api/quizzes", json=body, headers=headers(student))
    assert res.status_code == 403


def test_quiz_needs_questions(client, headers, setup):
    teacher, student, classroom_id = setup
    body = {"classroomId": classroom_id, "title": "Empty", "duration": 10, "questions": []}
    res = client.post("/api/quizzes", json=body, headers=headers(teacher))
    assert res.status_code == 400


def test_student_view_hides_answers(client, headers, setup):
    teacher, student, classroom_id = setup
    quiz = _create_quiz(client, headers, teacher, classroom_id)
    res = client.get(f"/api/quizzes/{quiz['id']}", headers=headers(student))
    detail = res.json()["quiz"]
    assert all("correctAnswer" not in q for q in detail["questions"])
    assert detail["state"] == "open"
    staff_view = client.get(f"/api/quizzes/{quiz['id']}", headers=headers(teacher)).json()["quiz"]
    assert staff_view["questions"][0]["correctAnswer"] == "B"


def test_submit_then_grade(client, db, headers, setup):
    teacher, student, classroom_id = setup
    quiz = _create_quiz(client, headers, teacher, classroom_id)
    q1, q2 = client.get(f"/api/quizzes/{quiz['id']}", headers=headers(teacher)).json()["quiz"]["questions"]

    res = client.post(f"/api/quizzes/{quiz['id']}/submit", json={"answers": {q1["id"]: "B", q2["id"]: "..."}},
                      headers=headers(student))
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["score"] == 2
    assert body["percentage"] == 40.0
    assert body["state"] == "pending_manual_grade"
    submission_id = body["submission"]["id"]

    res = client.post(f"/api/quizzes/{quiz['id']}/submissions/{submission_id}/grade",
                      json={"scores": {q2["id"]: 2}}, headers=headers(teacher))
    assert res.status_code == 200, res.text
    assert res.json()["score"] == 4
    assert res.json()["percentage"] == 80.0
    assert res.json()["state"] == "fully_graded"

    # 超出分值的人工分被截断
    res = client.post(f"/api/quizzes/{quiz['id']}/submissions/{submission_id}/grade",
                      json={"scores": {q2["id"]: 99}}, headers=headers(teacher))
    assert res.json()["score"] == 5

    db.expire_all()
    grade = db.query(GradeRecord).filter(GradeRecord.user_id == student.id).one()
    assert (grade.score, grade.max_score, grade.percentage) == (5, 5, 100.0)


def test_student_cannot_grade(client, headers, setup):
    teacher, student, classroom_id = setup
    quiz = _create_quiz(client, headers, teacher, classroom_id)
    sub = client.post(f"/api/quizzes/{quiz['id']}/submit", json={"answers": {}}, headers=headers(student)).json()
    res = client.post(f"/api/quizzes/{quiz['id']}/submissions/{sub['submission']['id']}/grade",
                      json={"scores": {}}, headers=headers(student))
    assert res.status_code == 403


def test_double_submit_conflicts_without_writes(client, db, headers, setup):
    teacher, student, classroom_id = setup
    quiz = _create_quiz(client, headers, teacher, classroom_id)
    first = client.post(f"/api/quizzes/{quiz['id']}/submit", json={"answers": {}}, headers=headers(student))
    assert first.status_code == 201
    second = client.post(f"/api/quizzes/{quiz['id']}/submit", json={"answers": {"x": "y"}},
                         headers=headers(student))
    assert second.status_code == 409

    db.expire_all()
    assert db.query(Submission).count() == 1
    assert db.query(GradeRecord).count() == 1


def test_submit_outside_window_rejected(client, db, headers, setup):
    teacher, student, classroom_id = setup
    now = utcnow()
    closed = _create_quiz(client, headers, teacher, classroom_id,
                          startTime=(now - timedelta(days=2)).isoformat(),
                          endTime=(now - timedelta(days=1)).isoformat())
    future = _create_quiz(client, headers, teacher, classroom_id,
                          startTime=(now + timedelta(days=1)).isoformat(),
                          endTime=(now + timedelta(days=2)).isoformat())

    res = client.post(f"/api/quizzes/{closed['id']}/submit", json={"answers": {}}, headers=headers(student))
    assert res.status_code == 400
    assert res.json()["detail"] == "Quiz has ended"
    res = client.post(f"/api/quizzes/{future['id']}/submit", json={"answers": {}}, headers=headers(student))
    assert res.status_code == 400

    db.expire_all()
    assert db.query(Submission).count() == 0


def test_submit_unknown_quiz(client, headers, setup):
    teacher, student, classroom_id = setup
    res = client.post("/api/quizzes/nope/submit", json={"answers": {}}, headers=headers(student))
    assert res.status_code == 404


def test_publish_in_chat_writes_announcement(client, db, headers, setup):
    teacher, student, classroom_id = setup
    session = client.post(f"/api/classrooms/{classroom_id}/sessions",
                          json={"title": "Week 1", "scheduledAt": utcnow().isoformat()},
                          headers=headers(teacher)).json()["session"]
    quiz = _create_quiz(client, headers, teacher, classroom_id, sessionId=session["id"], publishInChat=True)
    assert quiz["publishedInChat"] is True

    messages = client.get(f"/api/sessions/{session['id']}/messages", headers=headers(student)).json()["messages"]
    assert messages[-1]["type"] == "announcement"
    assert messages[-1]["message"].startswith("📝 Quiz Published: **Quiz 1**")
    db.expire_all()
    assert db.get(ChatMessage, quiz["chatMessageId"]) is not None


def test_grades_and_ranking(client, headers, make_user, setup):
    teacher, student, classroom_id = setup
    other = make_user(Role.STUDENT, name="other")
    client.post(f"/api/classrooms/{classroom_id}/join", json={}, headers=headers(other))
    quiz = _create_quiz(client, headers, teacher, classroom_id, questions=QUESTIONS[:1])
    qid = client.get(f"/api/quizzes/{quiz['id']}", headers=headers(teacher)).json()["quiz"]["questions"][0]["id"]

    client.post(f"/api/quizzes/{quiz['id']}/submit", json={"answers": {qid: "B"}}, headers=headers(student))
    client.post(f"/api/quizzes/{quiz['id']}/submit", json={"answers": {qid: "A"}}, headers=headers(other))

    ranking = client.get("/api/grades/ranking", params={"classroomId": classroom_id},
                         headers=headers(student)).json()["ranking"]
    assert [(r["rank"], r["userName"], r["totalScore"]) for r in ranking] == [(1, "student", 2), (2, "other", 0)]

    mine = client.get("/api/grades", params={"classroomId": classroom_id}, headers=headers(student)).json()
    assert mine["totalScore"] == 2
    assert mine["grades"][0]["quizTitle"] == "Quiz 1"

    res = client.get("/api/grades", params={"classroomId": classroom_id, "studentId": other.id},
                     headers=headers(student))
    assert res.status_code == 403
    res = client.get("/api/grades", params={"classroomId": classroom_id, "studentId": other.id},
                     headers=headers(teacher))
    assert res.json()["totalPercentage"] == 0.0


def test_other_teacher_cannot_see_or_grade_submissions(client, headers, make_user, setup):
    teacher, student, classroom_id = setup
    outsider = make_user(Role.TEACHER, name="outsider")
    quiz = _create_quiz(client, headers, teacher, classroom_id)
    sub = client.post(f"/api/quizzes/{quiz['id']}/submit", json={"answers": {}}, headers=headers(student)).json()

    assert client.get(f"/api/quizzes/{quiz['id']}/submissions", headers=headers(outsider)).status_code == 403
    res = client.post(f"/api/quizzes/{quiz['id']}/submissions/{sub['submission']['id']}/grade",
                      json={"scores": {}}, headers=headers(outsider))
    assert res.status_code == 403
    assert client.get(f"/api/quizzes/{quiz['id']}/submissions", headers=headers(teacher)).status_code == 200
