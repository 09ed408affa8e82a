from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence

from .domain import LeaderboardEntry, Participant, Submission


def competition_rank_desc(totals: Sequence[int]) -> list[int]:
    """降順に並んだ合計点から競技順位を返す。

    同点は同順位、次の順位は並び順の位置になる（例: 1,1,3）。
    """

    ranks: list[int] = []
    last_total: int | None = None
    current_rank = 0

    for position, total in enumerate(totals, start=1):
        if last_total is None or total != last_total:
            current_rank = position
            last_total = total
        ranks.append(current_rank)

    return ranks


def _approved_points_by_submitter(submissions: Iterable[Submission]) -> dict[str, int]:
    points: dict[str, int] = defaultdict(int)
    for submission in submissions:
        if submission.status != "approved":
            continue
        points[submission.submitter_id] += int(submission.points_awarded or 0)
    return dict(points)


def compute_participant_score(
    participant_id: str,
    submissions: Iterable[Submission],
    manual_points_adjustment: int = 0,
) -> int:
    points = _approved_points_by_submitter(
        s for s in submissions if s.submitter_id == participant_id
    )
    return points.get(participant_id, 0) + int(manual_points_adjustment or 0)


def aggregate_leaderboard(
    participants: Sequence[Participant],
    submissions: Iterable[Submission],
) -> list[LeaderboardEntry]:
    """参加者ごとの合計点を集計し、順位付きで返す。

    承認済みの提出のみ加算し、手動調整を足す。参加者にいない提出者の点は捨てる。
    同点内の並びは入力順のまま（安定ソート）。
    """

    if not participants:
        return []

    points = _approved_points_by_submitter(submissions)
    totals = [
        (p, points.get(p.id, 0) + int(p.manual_points_adjustment or 0))
        for p in participants
    ]
    totals.sort(key=lambda x: -x[1])
    ranks = competition_rank_desc([total for _p, total in totals])

    return [
        LeaderboardEntry(
            user_id=p.id,
            pseudo=p.pseudo,
            avatar_url=p.avatar_url,
            total_points=total,
            rank=rank,
        )
        for (p, total), rank in zip(totals, ranks)
    ]
