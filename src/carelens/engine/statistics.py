"""Statistics and reporting over stored assessments and alerts.

All figures are computed from the same raw records the store returns, so
counts here always agree with a direct count of those records.
"""

from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from carelens.engine.ports import AbuseDetectionStore
from carelens.models import (
    AbuseRiskAssessment,
    AbuseRiskFactorType,
    AbuseRiskLevel,
    AlertResponseStats,
    AlertStatus,
    CaregiverAttentionSummary,
    RiskFactorFrequency,
    RiskTrendPoint,
    StatisticsSummary,
    to_naive_utc,
    utcnow,
)

HIGH_RISK_LEVELS = (AbuseRiskLevel.HIGH, AbuseRiskLevel.CRITICAL)
ADVOCATE_RECIPIENT = "elder_rights_advocate"


def average_score(assessments: List[AbuseRiskAssessment]) -> int:
    """Mean risk score, truncated toward zero; 0 for an empty window."""
    if not assessments:
        return 0
    return sum(a.risk_score for a in assessments) // len(assessments)


def rank_risk_factors(
    assessments: Iterable[AbuseRiskAssessment], limit: Optional[int] = None
) -> List[RiskFactorFrequency]:
    """Rank factor types by occurrence count.

    Ties are broken by summed factor score (descending), then by type name.
    """
    occurrences: Counter = Counter()
    totals: Dict[AbuseRiskFactorType, int] = defaultdict(int)
    for assessment in assessments:
        for factor in assessment.risk_factors:
            occurrences[factor.factor_type] += 1
            totals[factor.factor_type] += factor.score

    ranking = sorted(
        occurrences,
        key=lambda t: (-occurrences[t], -totals[t], t.value),
    )
    if limit is not None:
        ranking = ranking[:limit]
    return [
        RiskFactorFrequency(factor_type=t, occurrences=occurrences[t], total_score=totals[t])
        for t in ranking
    ]


class StatisticsService:
    """Read-only reporting over the abuse detection store."""

    def __init__(self, store: AbuseDetectionStore) -> None:
        self.store = store

    def get_statistics_summary(
        self, user_id: str, window: timedelta, now: Optional[datetime] = None
    ) -> StatisticsSummary:
        """Summarize a user's assessments and alerts over ``window``.

        Args:
            user_id: User whose caregivers are being assessed
            window: Lookback window ending at ``now``
            now: End of the window (defaults to current UTC time)
        """
        end = to_naive_utc(now) if now else utcnow()
        start = end - window
        assessments = self.store.get_user_assessments(user_id, since=start, until=end)
        alerts = self.store.get_user_alerts(user_id, since=start, until=end)

        by_level = Counter(a.risk_level for a in assessments)

        return StatisticsSummary(
            user_id=user_id,
            window_start=start,
            window_end=end,
            total_assessments=len(assessments),
            total_alerts=len(alerts),
            active_alerts=sum(1 for a in alerts if a.status == AlertStatus.ACTIVE),
            high_risk_assessments=sum(by_level[level] for level in HIGH_RISK_LEVELS),
            average_risk_score=average_score(assessments),
            assessments_by_level={level: by_level.get(level, 0) for level in AbuseRiskLevel},
            most_frequent_risk_factors=rank_risk_factors(assessments),
        )

    def get_risk_trend(
        self, caregiver_id: str, user_id: str, window: timedelta, now: Optional[datetime] = None
    ) -> List[RiskTrendPoint]:
        """Score history for the pair, oldest first."""
        return [
            a.trend_point()
            for a in self.store.get_escalating_pattern(caregiver_id, user_id, window, now=now)
        ]

    def get_most_frequent_risk_factors(
        self,
        caregiver_id: str,
        user_id: str,
        window: timedelta,
        limit: Optional[int] = 5,
        now: Optional[datetime] = None,
    ) -> List[RiskFactorFrequency]:
        assessments = self.store.get_recent_assessments(caregiver_id, user_id, window, now=now)
        return rank_risk_factors(assessments, limit=limit)

    def get_caregivers_requiring_attention(
        self, window: timedelta, now: Optional[datetime] = None
    ) -> List[CaregiverAttentionSummary]:
        """Pairs with HIGH or CRITICAL assessments in the window.

        Ordered by highest level, then by the latest such assessment, newest first.
        """
        end = to_naive_utc(now) if now else utcnow()
        by_pair: Dict[Tuple[str, str], List[AbuseRiskAssessment]] = defaultdict(list)
        for assessment in self.store.get_high_risk_assessments(since=end - window):
            if assessment.assessed_at <= end:
                by_pair[(assessment.caregiver_id, assessment.user_id)].append(assessment)

        active_by_user: Dict[str, Counter] = {}
        summaries = []
        for (caregiver_id, user_id), assessments in by_pair.items():
            if user_id not in active_by_user:
                active_by_user[user_id] = Counter(a.caregiver_id for a in self.store.get_active_alerts(user_id))
            summaries.append(
                CaregiverAttentionSummary(
                    caregiver_id=caregiver_id,
                    user_id=user_id,
                    risk_level=max((a.risk_level for a in assessments), key=lambda level: level.rank),
                    high_risk_assessments=len(assessments),
                    latest_assessed_at=max(a.assessed_at for a in assessments),
                    active_alerts=active_by_user[user_id][caregiver_id],
                )
            )

        summaries.sort(key=lambda s: s.latest_assessed_at, reverse=True)
        summaries.sort(key=lambda s: s.risk_level.rank, reverse=True)
        return summaries

    def get_alert_response_stats(
        self, window: timedelta, now: Optional[datetime] = None
    ) -> AlertResponseStats:
        """Counts and mean response time for alerts raised in the window."""
        end = to_naive_utc(now) if now else utcnow()
        start = end - window
        alerts = self.store.get_alerts_between(start, until=end)
        closed = [a for a in alerts if a.status != AlertStatus.ACTIVE]
        response_seconds = [(a.resolved_at - a.created_at).total_seconds() for a in closed]

        return AlertResponseStats(
            window_start=start,
            window_end=end,
            total_alerts=len(alerts),
            active_alerts=len(alerts) - len(closed),
            resolved_alerts=sum(1 for a in closed if a.status == AlertStatus.RESOLVED),
            dismissed_alerts=sum(1 for a in closed if a.status == AlertStatus.DISMISSED),
            average_response_seconds=(
                sum(response_seconds) / len(response_seconds) if response_seconds else None
            ),
            advocate_notifications=sum(
                1 for a in alerts if any(n.recipient == ADVOCATE_RECIPIENT for n in a.notifications_sent)
            ),
        )
