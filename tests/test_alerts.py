"""Tests for alert generation, lifecycle transitions and the alert broker."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from carelens.db.repository import AbuseDetectionRepository
from carelens.db.session import create_db_engine, drop_db, init_db
from carelens.engine.alerts import AlertGenerator, AlertLifecycleManager, can_transition
from carelens.engine.events import AlertBroker
from carelens.engine.scoring import classify_score
from carelens.errors import InvalidStateError, NotFoundError, ValidationError
from carelens.models import (
    AbuseAlert,
    AbuseAlertType,
    AbuseRiskAssessment,
    AbuseRiskFactor,
    AbuseRiskFactorType,
    AbuseRiskLevel,
    AlertEventType,
    AlertStatus,
    EscalationSignal,
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


@pytest.fixture
def broker() -> AlertBroker:
    return AlertBroker()


@pytest.fixture
def lifecycle(store: AbuseDetectionRepository, broker: AlertBroker) -> AlertLifecycleManager:
    return AlertLifecycleManager(store, broker)


def _assessment(score: int, factors: Optional[List[AbuseRiskFactor]] = None) -> AbuseRiskAssessment:
    return AbuseRiskAssessment(
        caregiver_id="caregiver-1",
        user_id="user-1",
        risk_score=score,
        risk_level=classify_score(score),
        risk_factors=factors or [],
    )


def _escalation() -> EscalationSignal:
    now = utcnow()
    return EscalationSignal(
        caregiver_id="caregiver-1",
        user_id="user-1",
        points=[],
        net_increase=35,
        started_at=now - timedelta(days=2),
        ended_at=now,
    )


def _active_alert(store: AbuseDetectionRepository, **kwargs) -> AbuseAlert:
    alert = AbuseAlert(
        caregiver_id="caregiver-1",
        user_id="user-1",
        risk_level=kwargs.pop("risk_level", AbuseRiskLevel.HIGH),
        alert_type=AbuseAlertType.THRESHOLD_EXCEEDED,
        message="HIGH RISK: Concerning behavior patterns detected.",
        **kwargs,
    )
    return store.insert_alert(alert)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def test_no_alert_for_low_risk() -> None:
    """Test quiet assessments raise nothing."""
    generator = AlertGenerator()

    assert generator.generate(_assessment(10)) is None
    assert generator.generate(_assessment(55)) is None


def test_high_risk_threshold_alert() -> None:
    """Test HIGH assessments raise an immediate THRESHOLD_EXCEEDED alert."""
    factor = AbuseRiskFactor(
        factor_type=AbuseRiskFactorType.CONTACT_MANIPULATION,
        description="Multiple attempts to remove contacts (social isolation pattern)",
        score=45,
    )
    assessment = _assessment(75, [factor])

    alert = AlertGenerator().generate(assessment)

    assert alert is not None
    assert alert.alert_type == AbuseAlertType.THRESHOLD_EXCEEDED
    assert alert.risk_level == AbuseRiskLevel.HIGH
    assert alert.assessment_id == assessment.assessment_id
    assert alert.requires_immediate_action is True
    assert alert.status == AlertStatus.ACTIVE
    assert alert.message.startswith("HIGH RISK")
    assert "social isolation" in alert.message
    assert "Notify elder rights advocate" in alert.recommended_actions


def test_critical_alert_actions() -> None:
    """Test CRITICAL alerts recommend contacting an advocate immediately."""
    alert = AlertGenerator().generate(_assessment(95))

    assert alert.message.startswith("CRITICAL")
    assert alert.recommended_actions[0] == "Contact elder rights advocate immediately"


def test_escalation_alert_below_threshold() -> None:
    """Test an escalating MEDIUM assessment raises ESCALATION_DETECTED."""
    alert = AlertGenerator().generate(_assessment(45), _escalation())

    assert alert is not None
    assert alert.alert_type == AbuseAlertType.ESCALATION_DETECTED
    assert alert.requires_immediate_action is False
    assert "35 points" in alert.message


def test_threshold_wins_over_escalation() -> None:
    """Test HIGH level takes precedence when both apply."""
    alert = AlertGenerator().generate(_assessment(80), _escalation())

    assert alert.alert_type == AbuseAlertType.THRESHOLD_EXCEEDED


def test_immediate_action_factor_raises_pattern_alert() -> None:
    """Test a factor demanding action alerts regardless of level."""
    factor = AbuseRiskFactor(
        factor_type=AbuseRiskFactorType.SAFETY_SYSTEM_TAMPERING,
        description="Attempts to disable or modify emergency safety features",
        score=40,
        requires_immediate_action=True,
    )

    alert = AlertGenerator().generate(_assessment(40, [factor]))

    assert alert is not None
    assert alert.alert_type == AbuseAlertType.PATTERN_DETECTED
    assert alert.requires_immediate_action is True
    assert alert.recommended_actions[0].startswith("Verify the emergency button")


def test_transition_table() -> None:
    """Test only ACTIVE alerts can move."""
    assert can_transition(AlertStatus.ACTIVE, AlertStatus.RESOLVED)
    assert can_transition(AlertStatus.ACTIVE, AlertStatus.DISMISSED)
    assert not can_transition(AlertStatus.RESOLVED, AlertStatus.DISMISSED)
    assert not can_transition(AlertStatus.DISMISSED, AlertStatus.RESOLVED)
    assert not can_transition(AlertStatus.RESOLVED, AlertStatus.ACTIVE)


def test_active_alert_cannot_carry_resolution() -> None:
    """Test resolution fields are tied to status on the model."""
    with pytest.raises(ValueError):
        AbuseAlert(
            caregiver_id="caregiver-1",
            user_id="user-1",
            risk_level=AbuseRiskLevel.HIGH,
            alert_type=AbuseAlertType.THRESHOLD_EXCEEDED,
            message="m",
            resolution_details="handled",
        )
    with pytest.raises(ValueError):
        AbuseAlert(
            caregiver_id="caregiver-1",
            user_id="user-1",
            risk_level=AbuseRiskLevel.HIGH,
            alert_type=AbuseAlertType.THRESHOLD_EXCEEDED,
            message="m",
            status=AlertStatus.RESOLVED,
        )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_resolve_alert(store: AbuseDetectionRepository, lifecycle: AlertLifecycleManager) -> None:
    """Test resolving an ACTIVE alert."""
    alert = _active_alert(store, created_at=datetime(2026, 3, 5, 9, 0))
    resolved_at = datetime(2026, 3, 5, 14, 30)

    resolved = lifecycle.resolve(alert.alert_id, "Advocate visited, user safe", resolved_at)

    assert resolved.status == AlertStatus.RESOLVED
    assert resolved.resolution_details == "Advocate visited, user safe"
    assert resolved.resolved_at == resolved_at

    # Verify persisted
    stored = store.get_alert(alert.alert_id)
    assert stored.status == AlertStatus.RESOLVED
    assert store.get_active_alerts("user-1") == []


def test_dismiss_alert_defaults_details(store: AbuseDetectionRepository, lifecycle: AlertLifecycleManager) -> None:
    """Test dismissal fills in resolution fields."""
    alert = _active_alert(store)

    dismissed = lifecycle.dismiss(alert.alert_id)

    assert dismissed.status == AlertStatus.DISMISSED
    assert dismissed.resolution_details == "Dismissed without action"
    assert dismissed.resolved_at is not None


def test_terminal_states_are_final(store: AbuseDetectionRepository, lifecycle: AlertLifecycleManager) -> None:
    """Test resolved or dismissed alerts reject further transitions."""
    resolved = _active_alert(store)
    dismissed = _active_alert(store)
    lifecycle.resolve(resolved.alert_id, "handled")
    lifecycle.dismiss(dismissed.alert_id, "false positive")

    with pytest.raises(InvalidStateError):
        lifecycle.resolve(resolved.alert_id, "again")
    with pytest.raises(InvalidStateError):
        lifecycle.dismiss(resolved.alert_id)
    with pytest.raises(InvalidStateError):
        lifecycle.resolve(dismissed.alert_id, "late")

    # Verify first resolution untouched
    assert store.get_alert(resolved.alert_id).resolution_details == "handled"


def test_transition_unknown_alert(lifecycle: AlertLifecycleManager) -> None:
    """Test unknown alert ids raise NotFoundError."""
    with pytest.raises(NotFoundError):
        lifecycle.resolve("missing", "details")


def test_resolution_before_creation_rejected(store: AbuseDetectionRepository, lifecycle: AlertLifecycleManager) -> None:
    """Test an alert cannot be resolved at a time before it was raised."""
    alert = _active_alert(store, created_at=datetime(2026, 3, 5, 9, 0))

    with pytest.raises(ValidationError):
        lifecycle.resolve(alert.alert_id, "handled", datetime(2026, 3, 4, 9, 0))

    # Verify still ACTIVE
    assert store.get_alert(alert.alert_id).status == AlertStatus.ACTIVE


def test_transitions_published(
    store: AbuseDetectionRepository, lifecycle: AlertLifecycleManager, broker: AlertBroker
) -> None:
    """Test subscribers see status changes."""
    alert = _active_alert(store)

    with broker.subscribe() as subscription:
        lifecycle.resolve(alert.alert_id, "handled")
        events = subscription.drain()

    assert len(events) == 1
    assert events[0].event_type == AlertEventType.STATUS_CHANGED
    assert events[0].alert.status == AlertStatus.RESOLVED
    assert broker.subscriber_count == 0


def test_rejected_transition_not_published(
    store: AbuseDetectionRepository, lifecycle: AlertLifecycleManager, broker: AlertBroker
) -> None:
    """Test failed transitions emit nothing."""
    alert = _active_alert(store)
    lifecycle.dismiss(alert.alert_id)

    with broker.subscribe() as subscription:
        with pytest.raises(InvalidStateError):
            lifecycle.resolve(alert.alert_id, "late")
        assert subscription.drain() == []


def test_concurrent_resolution_single_winner(tmp_path) -> None:
    """Test racing resolutions: exactly one succeeds, the rest are rejected."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'race.db'}")
    init_db(engine)
    store = AbuseDetectionRepository(sessionmaker(bind=engine))
    lifecycle = AlertLifecycleManager(store)
    alert = _active_alert(store)
    start = threading.Barrier(8)

    def resolve(n: int) -> str:
        start.wait()
        try:
            lifecycle.resolve(alert.alert_id, f"resolved by reviewer {n}")
            return "ok"
        except InvalidStateError:
            return "rejected"

    try:
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(resolve, range(8)))
    finally:
        engine.dispose()

    assert results.count("ok") == 1
    assert results.count("rejected") == 7


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------


def test_broker_fans_out() -> None:
    """Test every subscriber receives each event."""
    broker = AlertBroker()
    first, second = broker.subscribe(), broker.subscribe()
    alert = AlertGenerator().generate(_assessment(75))

    broker.publish(AlertEventType.CREATED, alert)

    assert first.get(timeout=1).alert.alert_id == alert.alert_id
    assert second.get(timeout=1).alert.alert_id == alert.alert_id
    assert first.get(timeout=0.01) is None


def test_full_queue_drops_oldest() -> None:
    """Test a slow subscriber loses the oldest events, never blocks the publisher."""
    broker = AlertBroker(queue_size=2)
    subscription = broker.subscribe()
    alerts = [AlertGenerator().generate(_assessment(75)) for _ in range(3)]

    for alert in alerts:
        broker.publish(AlertEventType.CREATED, alert)

    received = [e.alert.alert_id for e in subscription.drain()]
    assert received == [alerts[1].alert_id, alerts[2].alert_id]


def test_closed_subscription_stops_receiving() -> None:
    """Test unsubscribed queues get nothing."""
    broker = AlertBroker()
    subscription = broker.subscribe()
    subscription.close()

    broker.publish(AlertEventType.CREATED, AlertGenerator().generate(_assessment(75)))

    assert subscription.drain() == []
    assert list(subscription.iter(timeout=0.01)) == []
