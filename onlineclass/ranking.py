# 由成绩记录生成班级排行榜

from dataclasses import asdict, dataclass
from typing import Iterable, List

from .utils import percentage, round2


@dataclass
class RankingRow:
    rank: int
    userId: str
    userName: str
    totalScore: float
    totalMaxScore: float
    totalPercentage: float
    quizCount: int
    avgPercentage: float

    def to_dict(self):
        return asdict(self)


# 按总分降序排名（从 1 开始），总分相同按学生 id 升序
def build_ranking(groups: Iterable) -> List[RankingRow]:
    ordered = sorted(groups, key=lambda g: (-float(g.total_score or 0), str(g.user_id)))
    rows = []
    for index, group in enumerate(ordered):
        total = float(group.total_score or 0)
        total_max = float(group.total_max_score or 0)
        rows.append(RankingRow(
            rank=index + 1,
            userId=group.user_id,
            userName=group.user_name or "Unknown",
            totalScore=total,
            totalMaxScore=total_max,
            totalPercentage=percentage(total, total_max),
            quizCount=int(group.quiz_count or 0),
            avgPercentage=round2(float(group.avg_percentage or 0)),
        ))
    return rows
