"""Tests for statistics and reporting."""

from datetime import timedelta
from typing import List

import pytest
from sqlalchemy.orm import sessionmaker

from carelens.db.repository import AbuseDetectionRepository
from carelens.db.session import create_db_engine, drop_db, init_db
from carelens.engine.scoring import classify_score
from carelens.engine.statistics import StatisticsService, average_score, rank_risk_factors
from carelens.models import (
    AbuseAlert,
    AbuseAlertType,
    AbuseRiskAssessment,
    AbuseRiskFactor,
    AbuseRiskFactorType,
    AbuseRiskLevel,
    AlertStatus,
    NotificationRecord,
    utcnow,
)


@pytest.fixture(scope="function")
def store() -> AbuseDetectionRepository:
    """Create a fresh in-memory store for each test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    try:
        yield AbuseDetectionRepository(sessionmaker(bind=engine))
    finally:
        drop_db(engine)
        engine.dispose()


def _factor(factor_type: AbuseRiskFactorType, score: int) -> AbuseRiskFactor:
    return AbuseRiskFactor(factor_type=factor_type, description=factor_type.value, score=score)


def _assessment(
    score: int, days_ago: float = 1, factors: List[AbuseRiskFactor] = (), caregiver_id: str = "caregiver-1"
) -> AbuseRiskAssessment:
    return AbuseRiskAssessment(
        caregiver_id=caregiver_id,
        user_id="user-1",
        risk_score=score,
        risk_level=classify_score(score),
        risk_factors=list(factors),
        assessed_at=utcnow() - timedelta(days=days_ago),
    )


def _alert() -> AbuseAlert:
    return AbuseAlert(
        caregiver_id="caregiver-1",
        user_id="user-1",
        risk_level=AbuseRiskLevel.HIGH,
        alert_type=AbuseAlertType.THRESHOLD_EXCEEDED,
        message="HIGH RISK: Concerning behavior patterns detected.",
    )


def test_average_score_floors() -> None:
    """Test the mean is truncated and empty windows average to zero."""
    assert average_score([]) == 0
    assert average_score([_assessment(10), _assessment(45), _assessment(75), _assessment(95)]) == 56


def test_rank_risk_factors_tie_breaks() -> None:
    """Test ranking by count, then summed score, then type name."""
    assessments = [
        _assessment(60, factors=[_factor(AbuseRiskFactorType.BURST_ACTIVITY, 30), _factor(AbuseRiskFactorType.CONTACT_MANIPULATION, 30)]),
        _assessment(65, factors=[_factor(AbuseRiskFactorType.BURST_ACTIVITY, 30), _factor(AbuseRiskFactorType.CONTACT_MANIPULATION, 35)]),
        _assessment(20, factors=[_factor(AbuseRiskFactorType.SENSITIVE_PERMISSION_REQUEST, 20)]),
        _assessment(20, factors=[_factor(AbuseRiskFactorType.PERMISSION_ESCALATION, 20)]),
    ]

    ranking = rank_risk_factors(assessments)

    assert [r.factor_type for r in ranking] == [
        AbuseRiskFactorType.CONTACT_MANIPULATION,
        AbuseRiskFactorType.BURST_ACTIVITY,
        AbuseRiskFactorType.PERMISSION_ESCALATION,
        AbuseRiskFactorType.SENSITIVE_PERMISSION_REQUEST,
    ]
    assert ranking[0].occurrences == 2
    assert ranking[0].total_score == 65
    assert len(rank_risk_factors(assessments, limit=2)) == 2


def test_statistics_summary(store: AbuseDetectionRepository) -> None:
    """Test summary counts over the window."""
    for score in (10, 45, 75, 95):
        store.insert_assessment(_assessment(score, factors=[_factor(AbuseRiskFactorType.CONTACT_MANIPULATION, min(score, 50))]))
    store.insert_assessment(_assessment(99, days_ago=60))
    store.insert_alert(_alert())
    closed = store.insert_alert(_alert())
    store.update_alert_resolution(closed.alert_id, "handled")

    summary = StatisticsService(store).get_statistics_summary("user-1", timedelta(days=30))

    assert summary.total_assessments == 4
    assert summary.total_alerts == 2
    assert summary.active_alerts == 1
    assert summary.high_risk_assessments == 2
    assert summary.average_risk_score == 56
    assert summary.assessments_by_level == {
        AbuseRiskLevel.LOW: 1,
        AbuseRiskLevel.MEDIUM: 1,
        AbuseRiskLevel.HIGH: 1,
        AbuseRiskLevel.CRITICAL: 1,
    }
    assert summary.most_frequent_risk_factors[0].factor_type == AbuseRiskFactorType.CONTACT_MANIPULATION
    assert summary.most_frequent_risk_factors[0].occurrences == 4


def test_statistics_match_raw_records(store: AbuseDetectionRepository) -> None:
    """Test summary counts agree with a direct count of stored records."""
    for i, score in enumerate((5, 42, 71, 88, 93, 30)):
        store.insert_assessment(_assessment(score, days_ago=i, caregiver_id=f"caregiver-{i % 2}"))
    now = utcnow()

    summary = StatisticsService(store).get_statistics_summary("user-1", timedelta(days=30), now=now)
    raw = store.get_user_assessments("user-1", since=now - timedelta(days=30))

    assert summary.total_assessments == len(raw)
    assert sum(summary.assessments_by_level.values()) == len(raw)
    assert summary.high_risk_assessments == sum(1 for a in raw if a.risk_level in (AbuseRiskLevel.HIGH, AbuseRiskLevel.CRITICAL))


def test_empty_summary(store: AbuseDetectionRepository) -> None:
    """Test a user with no history."""
    summary = StatisticsService(store).get_statistics_summary("nobody", timedelta(days=30))

    assert summary.total_assessments == 0
    assert summary.average_risk_score == 0
    assert set(summary.assessments_by_level.values()) == {0}
    assert summary.most_frequent_risk_factors == []


def test_risk_trend_oldest_first(store: AbuseDetectionRepository) -> None:
    """Test the trend is chronological."""
    store.insert_assessment(_assessment(50, days_ago=1))
    store.insert_assessment(_assessment(20, days_ago=3))
    store.insert_assessment(_assessment(35, days_ago=2))

    trend = StatisticsService(store).get_risk_trend("caregiver-1", "user-1", timedelta(days=7))

    assert [p.risk_score for p in trend] == [20, 35, 50]


def test_most_frequent_risk_factors_for_pair(store: AbuseDetectionRepository) -> None:
    """Test factor ranking is scoped to the pair."""
    store.insert_assessment(_assessment(30, factors=[_factor(AbuseRiskFactorType.BURST_ACTIVITY, 30)]))
    store.insert_assessment(
        _assessment(40, factors=[_factor(AbuseRiskFactorType.SAFETY_SYSTEM_TAMPERING, 40)], caregiver_id="caregiver-2")
    )

    ranking = StatisticsService(store).get_most_frequent_risk_factors("caregiver-1", "user-1", timedelta(days=7))

    assert [r.factor_type for r in ranking] == [AbuseRiskFactorType.BURST_ACTIVITY]


def test_summary_excludes_records_after_window_end(store: AbuseDetectionRepository) -> None:
    """Test a window ending in the past ignores newer records."""
    store.insert_assessment(_assessment(75, days_ago=10))
    store.insert_assessment(_assessment(20, days_ago=1))
    store.insert_alert(_alert())

    summary = StatisticsService(store).get_statistics_summary(
        "user-1", timedelta(days=30), now=utcnow() - timedelta(days=5)
    )

    assert summary.total_assessments == 1
    assert summary.average_risk_score == 75
    assert summary.total_alerts == 0


def test_caregivers_requiring_attention(store: AbuseDetectionRepository) -> None:
    """Test pairs with recent high-risk assessments, most severe first."""
    store.insert_assessment(_assessment(75, days_ago=1, caregiver_id="caregiver-1"))
    store.insert_assessment(_assessment(95, days_ago=2, caregiver_id="caregiver-1"))
    store.insert_assessment(_assessment(80, days_ago=0.5, caregiver_id="caregiver-2"))
    store.insert_assessment(_assessment(30, days_ago=0.5, caregiver_id="caregiver-3"))
    store.insert_assessment(_assessment(99, days_ago=20, caregiver_id="caregiver-4"))
    store.insert_alert(_alert())
    store.insert_alert(_alert())

    attention = StatisticsService(store).get_caregivers_requiring_attention(timedelta(days=7))

    assert [(s.caregiver_id, s.risk_level) for s in attention] == [
        ("caregiver-1", AbuseRiskLevel.CRITICAL),
        ("caregiver-2", AbuseRiskLevel.HIGH),
    ]
    assert attention[0].high_risk_assessments == 2
    assert attention[0].active_alerts == 2
    assert attention[1].active_alerts == 0


def test_alert_response_stats(store: AbuseDetectionRepository) -> None:
    """Test alert handling counts and mean response time."""
    created = utcnow() - timedelta(days=2)
    resolved = store.insert_alert(_alert().model_copy(update={"created_at": created}))
    dismissed = store.insert_alert(_alert().model_copy(update={"created_at": created}))
    store.insert_alert(
        _alert().model_copy(
            update={"notifications_sent": [NotificationRecord(recipient="elder_rights_advocate", channel="email")]}
        )
    )
    store.update_alert_resolution(resolved.alert_id, "handled", created + timedelta(hours=1))
    store.update_alert_status(dismissed.alert_id, AlertStatus.DISMISSED, timestamp=created + timedelta(hours=3))

    stats = StatisticsService(store).get_alert_response_stats(timedelta(days=30))

    assert stats.total_alerts == 3
    assert stats.active_alerts == 1
    assert stats.resolved_alerts == 1
    assert stats.dismissed_alerts == 1
    assert stats.average_response_seconds == 2 * 3600
    assert stats.advocate_notifications == 1


def test_alert_response_stats_empty_window(store: AbuseDetectionRepository) -> None:
    """Test an empty window has no mean response time."""
    stats = StatisticsService(store).get_alert_response_stats(timedelta(days=30))

    assert stats.total_alerts == 0
    assert stats.average_response_seconds is None
