"""Data models for CareLens."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, computed_field, model_validator


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored record uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an offset-aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


UtcDatetime = Annotated[datetime, AfterValidator(to_naive_utc)]


def _new_id() -> str:
    return str(uuid4())


class AbuseRiskLevel(str, Enum):
    """Ordinal classification of an aggregate risk score."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def at_least(self, other: "AbuseRiskLevel") -> bool:
        return self.rank >= other.rank


_LEVEL_RANK = {
    AbuseRiskLevel.LOW: 0,
    AbuseRiskLevel.MEDIUM: 1,
    AbuseRiskLevel.HIGH: 2,
    AbuseRiskLevel.CRITICAL: 3,
}


class AbuseSeverity(str, Enum):
    """Severity bucket of a single risk factor."""

    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AbuseRiskFactorType(str, Enum):
    """Kinds of caregiver behavior that contribute to risk."""

    CONTACT_MANIPULATION = "CONTACT_MANIPULATION"
    EMERGENCY_CONTACT_TAMPERING = "EMERGENCY_CONTACT_TAMPERING"
    PERMISSION_ESCALATION = "PERMISSION_ESCALATION"
    SENSITIVE_PERMISSION_REQUEST = "SENSITIVE_PERMISSION_REQUEST"
    BURST_ACTIVITY = "BURST_ACTIVITY"
    SUSPICIOUS_TIMING = "SUSPICIOUS_TIMING"
    SURVEILLANCE_PATTERN = "SURVEILLANCE_PATTERN"
    SAFETY_SYSTEM_TAMPERING = "SAFETY_SYSTEM_TAMPERING"
    ESCALATING_BEHAVIOR = "ESCALATING_BEHAVIOR"
    TRIGGER_EVENT = "TRIGGER_EVENT"


class AbuseAlertType(str, Enum):
    """Why an alert was raised."""

    PATTERN_DETECTED = "PATTERN_DETECTED"  # a rule demanded immediate action
    THRESHOLD_EXCEEDED = "THRESHOLD_EXCEEDED"  # level HIGH or CRITICAL
    ESCALATION_DETECTED = "ESCALATION_DETECTED"  # worsening trend across assessments


class AlertStatus(str, Enum):
    """Alert lifecycle states. RESOLVED and DISMISSED are terminal."""

    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


class ContactAction(str, Enum):
    ADD_CONTACT = "ADD_CONTACT"
    REMOVE_CONTACT = "REMOVE_CONTACT"
    BLOCK_CONTACT = "BLOCK_CONTACT"
    UNBLOCK_CONTACT = "UNBLOCK_CONTACT"
    MODIFY_CONTACT = "MODIFY_CONTACT"
    VIEW_CONTACT = "VIEW_CONTACT"


class ContactActionResult(str, Enum):
    SUCCESS = "SUCCESS"
    BLOCKED_BY_PROTECTION = "BLOCKED_BY_PROTECTION"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    PENDING_USER_APPROVAL = "PENDING_USER_APPROVAL"
    USER_APPROVED = "USER_APPROVED"
    USER_REJECTED = "USER_REJECTED"
    ERROR = "ERROR"


class PermissionActionType(str, Enum):
    REQUEST_PERMISSION = "REQUEST_PERMISSION"
    GRANT_PERMISSION = "GRANT_PERMISSION"
    REVOKE_PERMISSION = "REVOKE_PERMISSION"
    ESCALATE_PERMISSION = "ESCALATE_PERMISSION"
    QUERY_PERMISSION = "QUERY_PERMISSION"


class TriggerEventType(str, Enum):
    """Event that caused an evaluation run."""

    MULTIPLE_BLOCKED_ATTEMPTS = "MULTIPLE_BLOCKED_ATTEMPTS"
    EMERGENCY_CONTACT_TAMPERING = "EMERGENCY_CONTACT_TAMPERING"
    PANIC_MODE_ACTIVATION = "PANIC_MODE_ACTIVATION"
    PERMISSION_ESCALATION = "PERMISSION_ESCALATION"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    SCHEDULED_ANALYSIS = "SCHEDULED_ANALYSIS"
    USER_COMPLAINT = "USER_COMPLAINT"


# ---------------------------------------------------------------------------
# Behavior snapshot
# ---------------------------------------------------------------------------


class ContactModificationAttempt(BaseModel):
    """A caregiver's attempt to change the user's contact list."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str = Field(default_factory=_new_id)
    action: ContactAction
    result: ContactActionResult
    contact_relationship: Optional[str] = Field(
        None, description="Relationship of the targeted contact, e.g. 'emergency'"
    )
    timestamp: UtcDatetime = Field(default_factory=utcnow)


class PermissionHistoryEntry(BaseModel):
    """One permission request or change made by the caregiver."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=_new_id)
    action: PermissionActionType
    permission: str = Field(..., description="Permission name, e.g. 'access_location'")
    result: str = Field(..., description="GRANTED, DENIED or REVOKED")
    timestamp: UtcDatetime = Field(default_factory=utcnow)


class EmergencyInteraction(BaseModel):
    """A caregiver interaction with the emergency subsystem."""

    model_config = ConfigDict(frozen=True)

    interaction_id: str = Field(default_factory=_new_id)
    action_type: str = Field(..., description="e.g. QUERY_EMERGENCY_STATUS, DISABLE_EMERGENCY_BUTTON")
    result: str = "SUCCESS"
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: UtcDatetime = Field(default_factory=utcnow)


class DetectionTrigger(BaseModel):
    """Event that initiated an evaluation run."""

    model_config = ConfigDict(frozen=True)

    trigger_id: str = Field(default_factory=_new_id)
    event_type: TriggerEventType
    event_data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: UtcDatetime = Field(default_factory=utcnow)


class RiskTrendPoint(BaseModel):
    """Score of one past assessment, as used for trends and escalation."""

    model_config = ConfigDict(frozen=True)

    assessment_id: Optional[str] = None
    assessed_at: UtcDatetime
    risk_score: int = Field(..., ge=0, le=100)
    risk_level: AbuseRiskLevel


class CaregiverBehaviorData(BaseModel):
    """Immutable snapshot of caregiver behavior over an analysis window."""

    model_config = ConfigDict(frozen=True)

    snapshot_id: str = Field(default_factory=_new_id)
    caregiver_id: str
    user_id: str
    analysis_window: timedelta = Field(default=timedelta(days=7))
    collected_at: UtcDatetime = Field(default_factory=utcnow)
    contact_modification_attempts: List[ContactModificationAttempt] = Field(default_factory=list)
    permission_history: List[PermissionHistoryEntry] = Field(default_factory=list)
    emergency_interactions: List[EmergencyInteraction] = Field(default_factory=list)
    previous_assessments: List[RiskTrendPoint] = Field(default_factory=list)
    trigger: Optional[DetectionTrigger] = None


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------


class AbuseRiskFactor(BaseModel):
    """One scored contributor to an assessment."""

    model_config = ConfigDict(frozen=True)

    factor_id: str = Field(default_factory=_new_id)
    factor_type: AbuseRiskFactorType
    description: str
    score: int = Field(..., ge=0, le=100)
    evidence: Dict[str, Any] = Field(default_factory=dict)
    rule_id: Optional[str] = Field(None, description="Rule that produced this factor")
    requires_immediate_action: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def severity(self) -> AbuseSeverity:
        from carelens.engine.scoring import severity_for_score

        return severity_for_score(self.score)


class AbuseRiskAssessment(BaseModel):
    """Immutable result of one evaluation run."""

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "caregiver_id": "caregiver-17",
                "user_id": "user-3",
                "risk_score": 75,
                "risk_level": "HIGH",
                "risk_factors": [
                    {
                        "factor_type": "CONTACT_MANIPULATION",
                        "description": "Multiple attempts to remove contacts (social isolation pattern)",
                        "score": 45,
                        "evidence": {"blocked_removal_attempts": 3},
                    },
                    {
                        "factor_type": "BURST_ACTIVITY",
                        "description": "Rapid succession of contact changes",
                        "score": 30,
                        "evidence": {"attempts_in_window": 4},
                    },
                ],
            }
        },
    )

    assessment_id: str = Field(default_factory=_new_id)
    caregiver_id: str
    user_id: str
    risk_score: int = Field(..., ge=0, le=100)
    risk_level: AbuseRiskLevel
    risk_factors: List[AbuseRiskFactor] = Field(default_factory=list)
    assessed_at: UtcDatetime = Field(default_factory=utcnow)
    snapshot_id: Optional[str] = None
    rules_applied: List[str] = Field(default_factory=list)
    trigger_type: Optional[TriggerEventType] = None

    @model_validator(mode="after")
    def _level_matches_score(self) -> "AbuseRiskAssessment":
        from carelens.engine.scoring import classify_score

        expected = classify_score(self.risk_score)
        if self.risk_level != expected:
            raise ValueError(
                f"risk_level {self.risk_level.value} does not match score "
                f"{self.risk_score} (expected {expected.value})"
            )
        return self

    def trend_point(self) -> RiskTrendPoint:
        return RiskTrendPoint(
            assessment_id=self.assessment_id,
            assessed_at=self.assessed_at,
            risk_score=self.risk_score,
            risk_level=self.risk_level,
        )


class AbuseDetectionRule(BaseModel):
    """Configurable detection rule."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Contact removal attempts",
                "description": "Repeated blocked attempts to remove contacts",
                "rule_type": "CONTACT_MANIPULATION",
                "configuration": {"threshold": 3, "score_per_event": 15, "max_score": 50},
            }
        }
    )

    rule_id: str = Field(default_factory=_new_id)
    name: str = Field(..., description="Human-readable rule name")
    description: str = Field(default="", description="What this rule detects")
    rule_type: AbuseRiskFactorType
    enabled: bool = Field(default=True, description="Whether rule is active")
    configuration: Dict[str, Any] = Field(default_factory=dict)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class NotificationRecord(BaseModel):
    """Delivery record for one alert notification."""

    notification_id: str = Field(default_factory=_new_id)
    recipient: str = Field(..., description="elder_rights_advocate, user, caregiver, ui")
    channel: str = Field(..., description="email, sms, app_notification")
    status: str = Field(default="sent", description="sent, delivered, failed")
    sent_at: UtcDatetime = Field(default_factory=utcnow)


class AbuseAlert(BaseModel):
    """Alert raised for human review."""

    alert_id: str = Field(default_factory=_new_id)
    caregiver_id: str
    user_id: str
    assessment_id: Optional[str] = None
    risk_level: AbuseRiskLevel
    alert_type: AbuseAlertType
    message: str
    recommended_actions: List[str] = Field(default_factory=list)
    requires_immediate_action: bool = False
    status: AlertStatus = AlertStatus.ACTIVE
    created_at: UtcDatetime = Field(default_factory=utcnow)
    notifications_sent: List[NotificationRecord] = Field(default_factory=list)
    resolution_details: Optional[str] = None
    resolved_at: Optional[UtcDatetime] = None

    @model_validator(mode="after")
    def _resolution_matches_status(self) -> "AbuseAlert":
        resolved = self.resolution_details is not None and self.resolved_at is not None
        if self.status == AlertStatus.ACTIVE and (
            self.resolution_details is not None or self.resolved_at is not None
        ):
            raise ValueError("ACTIVE alert cannot carry resolution fields")
        if self.status != AlertStatus.ACTIVE and not resolved:
            raise ValueError(f"{self.status.value} alert requires resolution details and timestamp")
        return self


class AlertEventType(str, Enum):
    CREATED = "CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"


class AlertEvent(BaseModel):
    """Message published to alert subscribers."""

    event_type: AlertEventType
    alert: AbuseAlert
    emitted_at: UtcDatetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Analysis and reporting read models
# ---------------------------------------------------------------------------


class EscalationSignal(BaseModel):
    """Worsening trend found across a pair's assessment history."""

    caregiver_id: str
    user_id: str
    points: List[RiskTrendPoint]
    net_increase: int
    started_at: UtcDatetime
    ended_at: UtcDatetime


class RiskFactorFrequency(BaseModel):
    factor_type: AbuseRiskFactorType
    occurrences: int
    total_score: int


class StatisticsSummary(BaseModel):
    """Aggregate view of a user's assessments and alerts over a window."""

    user_id: str
    window_start: UtcDatetime
    window_end: UtcDatetime
    total_assessments: int
    total_alerts: int
    active_alerts: int
    high_risk_assessments: int = Field(..., description="HIGH and CRITICAL assessments")
    average_risk_score: int = Field(..., description="floor(sum of scores / count), 0 when empty")
    assessments_by_level: Dict[AbuseRiskLevel, int]
    most_frequent_risk_factors: List[RiskFactorFrequency]


class CaregiverAttentionSummary(BaseModel):
    """Caregiver/user pair with recent HIGH or CRITICAL assessments."""

    caregiver_id: str
    user_id: str
    risk_level: AbuseRiskLevel = Field(..., description="Highest level among the recent assessments")
    high_risk_assessments: int
    latest_assessed_at: UtcDatetime
    active_alerts: int


class AlertResponseStats(BaseModel):
    """How alerts raised in a window were handled."""

    window_start: UtcDatetime
    window_end: UtcDatetime
    total_alerts: int
    active_alerts: int
    resolved_alerts: int
    dismissed_alerts: int
    average_response_seconds: Optional[float] = Field(
        None, description="Mean time from creation to resolution or dismissal; None when nothing closed"
    )
    advocate_notifications: int = Field(..., description="Alerts delivered to an elder rights advocate")


class EvaluationStatus(str, Enum):
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"  # caregiver not eligible for assessment
    CANCELLED = "CANCELLED"  # superseded by a newer run for the same pair
    FAILED = "FAILED"


class EvaluationOutcome(BaseModel):
    """Result of one pipeline run. Failures are reported here, never raised."""

    status: EvaluationStatus
    caregiver_id: str
    user_id: str
    assessment: Optional[AbuseRiskAssessment] = None
    alert: Optional[AbuseAlert] = None
    escalation: Optional[EscalationSignal] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------


class RuleConfigurationUpdate(BaseModel):
    configuration: Dict[str, Any]


class RuleEnabledUpdate(BaseModel):
    enabled: bool


class AlertResolutionRequest(BaseModel):
    details: str = Field(..., min_length=1, description="What was done to resolve the alert")
    resolved_at: Optional[UtcDatetime] = None


class AlertDismissRequest(BaseModel):
    reason: Optional[str] = None


class CleanupRequest(BaseModel):
    cutoff: Optional[UtcDatetime] = Field(
        None, description="Delete eligible records older than this; defaults to the retention policy"
    )
