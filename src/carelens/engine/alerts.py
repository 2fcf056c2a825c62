"""Alert generation and lifecycle management.

STATE MACHINE:

    ACTIVE ──► RESOLVED   (resolution details + timestamp)
       │
       └─────► DISMISSED  (no action taken)

INVARIANTS:
- Terminal states are final
- Only ACTIVE alerts may transition; the store applies the change as a
  compare-and-swap on status
- Every creation and transition is published to subscribers
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from carelens.engine.events import AlertBroker
from carelens.engine.ports import AbuseDetectionStore
from carelens.errors import InvalidStateError
from carelens.models import (
    AbuseAlert,
    AbuseAlertType,
    AbuseRiskAssessment,
    AbuseRiskFactorType,
    AbuseRiskLevel,
    AlertEventType,
    AlertStatus,
    EscalationSignal,
)

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[AlertStatus, Set[AlertStatus]] = {
    AlertStatus.ACTIVE: {AlertStatus.RESOLVED, AlertStatus.DISMISSED},
    AlertStatus.RESOLVED: set(),
    AlertStatus.DISMISSED: set(),
}

URGENT_LEVELS = (AbuseRiskLevel.HIGH, AbuseRiskLevel.CRITICAL)

_MESSAGE_PREFIX = {
    AbuseRiskLevel.CRITICAL: "CRITICAL: Immediate intervention required.",
    AbuseRiskLevel.HIGH: "HIGH RISK: Concerning behavior patterns detected.",
    AbuseRiskLevel.MEDIUM: "MEDIUM RISK: Potentially problematic behavior.",
    AbuseRiskLevel.LOW: "LOW RISK: Minor concerning patterns.",
}

_RECOMMENDED_ACTIONS = {
    AbuseRiskLevel.CRITICAL: [
        "Contact elder rights advocate immediately",
        "Consider temporary restriction of caregiver permissions",
        "Document all evidence for potential legal action",
        "Ensure user safety and access to help",
    ],
    AbuseRiskLevel.HIGH: [
        "Notify elder rights advocate",
        "Increase monitoring frequency",
        "Review and potentially restrict caregiver permissions",
        "Schedule wellness check with user",
    ],
    AbuseRiskLevel.MEDIUM: [
        "Monitor caregiver behavior more closely",
        "Consider user education about warning signs",
        "Review caregiver permission levels",
        "Schedule routine check-in with user",
    ],
    AbuseRiskLevel.LOW: [
        "Continue routine monitoring",
        "Log patterns for trend analysis",
        "Consider caregiver education resources",
    ],
}


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return target in VALID_TRANSITIONS[current]


class AlertGenerator:
    """Decides whether an assessment warrants an alert and builds it."""

    def should_alert(
        self, assessment: AbuseRiskAssessment, escalation: Optional[EscalationSignal] = None
    ) -> bool:
        return (
            assessment.risk_level in URGENT_LEVELS
            or escalation is not None
            or any(f.requires_immediate_action for f in assessment.risk_factors)
        )

    def generate(
        self, assessment: AbuseRiskAssessment, escalation: Optional[EscalationSignal] = None
    ) -> Optional[AbuseAlert]:
        """Build an alert for the assessment, or None if none is warranted.

        Args:
            assessment: Newly produced assessment
            escalation: Escalation signal for the pair, if one was detected

        Returns:
            New ACTIVE alert, not yet persisted
        """
        if not self.should_alert(assessment, escalation):
            return None

        factor_demands_action = any(f.requires_immediate_action for f in assessment.risk_factors)
        alert = AbuseAlert(
            caregiver_id=assessment.caregiver_id,
            user_id=assessment.user_id,
            assessment_id=assessment.assessment_id,
            risk_level=assessment.risk_level,
            alert_type=self._alert_type(assessment, escalation),
            message=self._message(assessment, escalation),
            recommended_actions=self._recommended_actions(assessment, escalation),
            requires_immediate_action=assessment.risk_level in URGENT_LEVELS or factor_demands_action,
        )
        logger.info(
            "Generated %s alert %s for caregiver=%s user=%s (level=%s, score=%d)",
            alert.alert_type.value,
            alert.alert_id,
            alert.caregiver_id,
            alert.user_id,
            alert.risk_level.value,
            assessment.risk_score,
        )
        return alert

    @staticmethod
    def _alert_type(
        assessment: AbuseRiskAssessment, escalation: Optional[EscalationSignal]
    ) -> AbuseAlertType:
        if assessment.risk_level in URGENT_LEVELS:
            return AbuseAlertType.THRESHOLD_EXCEEDED
        if escalation is not None:
            return AbuseAlertType.ESCALATION_DETECTED
        return AbuseAlertType.PATTERN_DETECTED

    @staticmethod
    def _message(assessment: AbuseRiskAssessment, escalation: Optional[EscalationSignal]) -> str:
        parts = [_MESSAGE_PREFIX[assessment.risk_level]]
        if assessment.risk_factors:
            parts.append(assessment.risk_factors[0].description)
        if escalation is not None:
            parts.append(
                f"Risk has risen by {escalation.net_increase} points over "
                f"{len(escalation.points)} consecutive assessments."
            )
        return " ".join(parts)

    @staticmethod
    def _recommended_actions(
        assessment: AbuseRiskAssessment, escalation: Optional[EscalationSignal]
    ) -> List[str]:
        actions = list(_RECOMMENDED_ACTIONS[assessment.risk_level])
        factor_types = {f.factor_type for f in assessment.risk_factors}
        if AbuseRiskFactorType.SAFETY_SYSTEM_TAMPERING in factor_types:
            actions.insert(0, "Verify the emergency button and emergency contacts are intact")
        if escalation is not None:
            actions.append("Review the caregiver's assessment history for the escalation period")
        return actions


class AlertLifecycleManager:
    """Applies ACTIVE -> RESOLVED/DISMISSED transitions and publishes them."""

    def __init__(self, store: AbuseDetectionStore, broker: Optional[AlertBroker] = None) -> None:
        self.store = store
        self.broker = broker or AlertBroker()

    def publish_created(self, alert: AbuseAlert) -> None:
        self.broker.publish(AlertEventType.CREATED, alert)

    def resolve(
        self, alert_id: str, details: str, timestamp: Optional[datetime] = None
    ) -> AbuseAlert:
        """Resolve an ACTIVE alert.

        Raises:
            NotFoundError: unknown alert
            InvalidStateError: alert already resolved or dismissed
            ValidationError: timestamp precedes the alert's creation
            ConcurrencyConflict: a concurrent caller closed it first
        """
        self._check_transition(alert_id, AlertStatus.RESOLVED)
        alert = self.store.update_alert_resolution(alert_id, details, timestamp)
        logger.info("Alert %s resolved", alert_id)
        self.broker.publish(AlertEventType.STATUS_CHANGED, alert)
        return alert

    def dismiss(self, alert_id: str, reason: Optional[str] = None) -> AbuseAlert:
        """Dismiss an ACTIVE alert without action."""
        self._check_transition(alert_id, AlertStatus.DISMISSED)
        alert = self.store.update_alert_status(alert_id, AlertStatus.DISMISSED, details=reason)
        logger.info("Alert %s dismissed", alert_id)
        self.broker.publish(AlertEventType.STATUS_CHANGED, alert)
        return alert

    def _check_transition(self, alert_id: str, target: AlertStatus) -> None:
        current = self.store.get_alert(alert_id).status
        if not can_transition(current, target):
            logger.warning("Rejected %s -> %s for alert %s", current.value, target.value, alert_id)
            raise InvalidStateError(
                f"Alert {alert_id} cannot move from {current.value} to {target.value}",
                detail={"status": current.value},
            )
