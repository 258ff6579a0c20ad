import enum
from datetime import datetime, timedelta
from typing import Optional

DEFAULT_DURATION_MINUTES = 90


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    ENDED = "ended"


# 已到结束时间则为 ended；否则在 [开始, 开始 + 时长) 内为 live
def derive_session_status(scheduled_at: datetime, duration: Optional[int],
                          ended_at: Optional[datetime], now: datetime) -> SessionStatus:
    if ended_at is not None and now >= ended_at:
        return SessionStatus.ENDED
    if now < scheduled_at:
        return SessionStatus.SCHEDULED
    expected_end = scheduled_at + timedelta(minutes=duration or DEFAULT_DURATION_MINUTES)
    if now >= expected_end:
        return SessionStatus.ENDED
    return SessionStatus.LIVE


def session_status(session, now: datetime) -> SessionStatus:
    return derive_session_status(session.scheduled_at, session.duration, session.ended_at, now)
