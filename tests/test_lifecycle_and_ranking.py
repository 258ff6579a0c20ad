from datetime import datetime, timedelta
from types import SimpleNamespace

from onlineclass.lifecycle import SessionStatus, derive_session_status
from onlineclass.ranking import build_ranking

START = datetime(2024, 3, 1, 9, 0, 0)


def test_session_status_follows_schedule():
    assert derive_session_status(START, 60, None, START - timedelta(minutes=1)) == SessionStatus.SCHEDULED
    assert derive_session_status(START, 60, None, START) == SessionStatus.LIVE
    assert derive_session_status(START, 60, None, START + timedelta(minutes=59)) == SessionStatus.LIVE
    assert derive_session_status(START, 60, None, START + timedelta(minutes=60)) == SessionStatus.ENDED


def test_explicit_end_wins():
    ended = START + timedelta(minutes=10)
    assert derive_session_status(START, 60, ended, START + timedelta(minutes=5)) == SessionStatus.LIVE
    assert derive_session_status(START, 60, ended, ended) == SessionStatus.ENDED


def test_missing_duration_defaults_to_ninety_minutes():
    assert derive_session_status(START, None, None, START + timedelta(minutes=89)) == SessionStatus.LIVE
    assert derive_session_status(START, None, None, START + timedelta(minutes=90)) == SessionStatus.ENDED


def _group(user_id, name, score, max_score, count=1, avg=None):
    return SimpleNamespace(user_id=user_id, user_name=name, total_score=score, total_max_score=max_score,
                           quiz_count=count, avg_percentage=avg if avg is not None else score / max_score * 100)


def test_ranking_orders_by_total_score():
    rows = build_ranking([_group("b", "Bob", 8, 10), _group("a", "Alice", 10, 10)])
    assert [(r.rank, r.userName, r.totalPercentage) for r in rows] == [(1, "Alice", 100.0), (2, "Bob", 80.0)]


def test_ranking_ties_fall_back_to_student_id():
    rows = build_ranking([_group("z", "Zed", 5, 10), _group("m", "Mia", 5, 10)])
    assert [r.userId for r in rows] == ["m", "z"]
    assert [r.rank for r in rows] == [1, 2]


def test_ranking_zero_max_score():
    (row,) = build_ranking([_group("a", None, 0, 0, avg=0)])
    assert row.totalPercentage == 0.0
    assert row.userName == "Unknown"
