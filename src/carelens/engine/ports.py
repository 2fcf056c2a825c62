"""Interfaces of the collaborators the engine depends on.

Stores and external services are injected into the engine as objects
satisfying these protocols. ``carelens.db.repository.AbuseDetectionRepository``
implements ``AbuseDetectionStore``; tests pass fakes for the rest.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from carelens.models import (
    AbuseAlert,
    AbuseDetectionRule,
    AbuseRiskAssessment,
    AbuseRiskFactorType,
    AbuseRiskLevel,
    AlertStatus,
    CaregiverBehaviorData,
    DetectionTrigger,
    NotificationRecord,
)


class BehaviorSnapshotProvider(Protocol):
    def get_snapshot(
        self,
        caregiver_id: str,
        user_id: str,
        window: timedelta,
        trigger: Optional[DetectionTrigger] = None,
    ) -> CaregiverBehaviorData:
        ...


class PermissionLookup(Protocol):
    def is_eligible(self, caregiver_id: str, user_id: str) -> bool:
        """Whether the caregiver holds permissions that make assessment meaningful."""
        ...


class NotificationSink(Protocol):
    def deliver(self, alert: AbuseAlert) -> List[NotificationRecord]:
        """Dispatch the alert and return one record per delivery attempt."""
        ...


class AbuseDetectionStore(Protocol):
    # Assessments
    def insert_assessment(self, assessment: AbuseRiskAssessment) -> AbuseRiskAssessment: ...
    def get_assessment(self, assessment_id: str) -> AbuseRiskAssessment: ...
    def get_recent_assessments(
        self, caregiver_id: str, user_id: str, window: timedelta, now: Optional[datetime] = None
    ) -> List[AbuseRiskAssessment]: ...
    def get_assessments_by_level(
        self, caregiver_id: str, user_id: str, level: AbuseRiskLevel
    ) -> List[AbuseRiskAssessment]: ...
    def get_escalating_pattern(
        self, caregiver_id: str, user_id: str, window: timedelta, now: Optional[datetime] = None
    ) -> List[AbuseRiskAssessment]: ...
    def get_user_assessments(
        self, user_id: str, since: datetime, caregiver_id: Optional[str] = None,
        until: Optional[datetime] = None,
    ) -> List[AbuseRiskAssessment]: ...
    def get_latest_assessment(self, caregiver_id: str, user_id: str) -> Optional[AbuseRiskAssessment]: ...
    def get_high_risk_assessments(self, since: datetime) -> List[AbuseRiskAssessment]: ...
    def has_recent_high_risk_assessments(
        self, caregiver_id: str, window: timedelta, now: Optional[datetime] = None
    ) -> bool: ...

    # Alerts
    def insert_alert(self, alert: AbuseAlert) -> AbuseAlert: ...
    def get_alert(self, alert_id: str) -> AbuseAlert: ...
    def get_active_alerts(self, user_id: str) -> List[AbuseAlert]: ...
    def get_alerts_requiring_immediate_action(self, user_id: str) -> List[AbuseAlert]: ...
    def get_user_alerts(
        self, user_id: str, since: datetime, until: Optional[datetime] = None
    ) -> List[AbuseAlert]: ...
    def get_caregiver_alerts(self, caregiver_id: str, limit: int = 10) -> List[AbuseAlert]: ...
    def get_alerts_between(self, since: datetime, until: Optional[datetime] = None) -> List[AbuseAlert]: ...
    def update_alert_status(
        self, alert_id: str, status: AlertStatus, details: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> AbuseAlert: ...
    def update_alert_resolution(
        self, alert_id: str, details: str, timestamp: Optional[datetime] = None
    ) -> AbuseAlert: ...
    def add_notification_records(
        self, alert_id: str, records: List[NotificationRecord]
    ) -> AbuseAlert: ...

    # Rules
    def insert_rule(self, rule: AbuseDetectionRule) -> AbuseDetectionRule: ...
    def get_rule(self, rule_id: str) -> AbuseDetectionRule: ...
    def get_enabled_rules(self) -> List[AbuseDetectionRule]: ...
    def get_rules_by_type(
        self, rule_type: AbuseRiskFactorType, include_disabled: bool = False
    ) -> List[AbuseDetectionRule]: ...
    def update_rule_configuration(self, rule_id: str, configuration: dict) -> AbuseDetectionRule: ...
    def set_rule_enabled(self, rule_id: str, enabled: bool) -> AbuseDetectionRule: ...

    # Pipeline and retention
    def record_evaluation(
        self, assessment: AbuseRiskAssessment, alert: Optional[AbuseAlert] = None
    ) -> None: ...
    def delete_assessments_before(self, cutoff: datetime) -> int: ...
    def delete_closed_alerts_before(self, cutoff: datetime) -> int: ...
    def archive_user_data(self, user_id: str) -> int: ...