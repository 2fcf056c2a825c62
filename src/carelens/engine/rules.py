"""Rule evaluation engine for caregiver behavior snapshots.

Each rule type has an evaluator registered against it together with a
pydantic schema for its configuration. Adding a detection rule type means
writing one decorated function; nothing else dispatches on the type.

Design Philosophy:
- Pure: evaluation reads the snapshot and the rules, never writes
- Isolated: a rule with malformed configuration, or whose evaluator raises,
  is skipped and logged while the remaining rules still run
- Explainable: every factor carries the evidence behind its score
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from carelens.errors import ValidationError
from carelens.models import (
    AbuseDetectionRule,
    AbuseRiskFactor,
    AbuseRiskFactorType,
    CaregiverBehaviorData,
    ContactAction,
    ContactActionResult,
    PermissionActionType,
    TriggerEventType,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration schemas
# ---------------------------------------------------------------------------


class RuleConfig(BaseModel):
    """Keys shared by every rule type."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    threshold: int = Field(1, ge=0, description="Minimum event count before the rule fires")
    score_per_event: int = Field(10, ge=0, le=100)
    max_score: int = Field(100, ge=0, le=100)
    severity_multiplier: float = Field(1.0, gt=0)
    immediate_action: bool = False


class ContactManipulationConfig(RuleConfig):
    threshold: int = Field(3, ge=0)
    score_per_event: int = Field(15, ge=0, le=100)
    max_score: int = Field(50, ge=0, le=100)


class EmergencyContactTamperingConfig(RuleConfig):
    score_per_event: int = Field(25, ge=0, le=100)
    relationship_keyword: str = "emergency"


class BurstActivityConfig(RuleConfig):
    threshold: int = Field(3, ge=0)
    flat_score: int = Field(30, ge=0, le=100)
    window_minutes: int = Field(60, gt=0)


class PermissionEscalationConfig(RuleConfig):
    threshold: int = Field(2, ge=0)
    score_per_event: int = Field(10, ge=0, le=100)


class SensitivePermissionConfig(RuleConfig):
    score_per_event: int = Field(20, ge=0, le=100)
    sensitive_permissions: List[str] = Field(
        default_factory=lambda: [
            "access_location",
            "access_contacts",
            "modify_emergency_settings",
            "disable_panic_mode",
            "access_call_logs",
        ]
    )


class SuspiciousTimingConfig(RuleConfig):
    threshold: int = Field(5, ge=0)
    score_per_event: int = Field(8, ge=0, le=100)
    night_start_hour: int = Field(23, ge=0, le=23)
    night_end_hour: int = Field(6, ge=0, le=23)
    utc_offset_hours: int = Field(0, ge=-12, le=14)
    weekend_ratio: float = Field(0.6, ge=0, le=1)
    weekend_min_events: int = Field(5, ge=1)
    weekend_score: int = Field(20, ge=0, le=100)


class SafetySystemTamperingConfig(RuleConfig):
    score_per_event: int = Field(40, ge=0, le=100)
    immediate_action: bool = True
    action_types: List[str] = Field(
        default_factory=lambda: ["DISABLE_EMERGENCY_BUTTON", "MODIFY_EMERGENCY_CONTACTS"]
    )


class SurveillancePatternConfig(RuleConfig):
    threshold: int = Field(20, ge=0, description="Fires when queries exceed this count")
    flat_score: int = Field(15, ge=0, le=100)
    action_type: str = "QUERY_EMERGENCY_STATUS"


class EscalatingBehaviorConfig(RuleConfig):
    lookback_points: int = Field(3, ge=2)
    min_increase: int = Field(20, ge=0)
    flat_score: int = Field(25, ge=0, le=100)


class TriggerEventConfig(RuleConfig):
    trigger_scores: Dict[TriggerEventType, int] = Field(
        default_factory=lambda: {
            TriggerEventType.MULTIPLE_BLOCKED_ATTEMPTS: 20,
            TriggerEventType.EMERGENCY_CONTACT_TAMPERING: 40,
            TriggerEventType.PANIC_MODE_ACTIVATION: 30,
        }
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class Finding(NamedTuple):
    """Raw evaluator output, before multiplier and caps are applied."""

    description: str
    raw_score: float
    evidence: Dict[str, Any]


Evaluator = Callable[[CaregiverBehaviorData, Any], List[Finding]]


@dataclass(frozen=True)
class RuleHandler:
    config_model: Type[RuleConfig]
    evaluate: Evaluator


RULE_REGISTRY: Dict[AbuseRiskFactorType, RuleHandler] = {}


def register_rule(
    rule_type: AbuseRiskFactorType, config_model: Type[RuleConfig]
) -> Callable[[Evaluator], Evaluator]:
    """Register an evaluator and its configuration schema for a rule type."""

    def decorator(func):
        RULE_REGISTRY[rule_type] = RuleHandler(config_model=config_model, evaluate=func)
        return func

    return decorator


def validate_rule_configuration(
    rule_type: AbuseRiskFactorType, configuration: Dict[str, Any]
) -> RuleConfig:
    """Parse a rule configuration against its type's schema.

    Raises:
        ValidationError: unknown rule type or malformed configuration
    """
    handler = RULE_REGISTRY.get(rule_type)
    if handler is None:
        raise ValidationError(f"No evaluator registered for rule type {rule_type.value}")
    try:
        return handler.config_model.model_validate(configuration)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid configuration for {rule_type.value} rule",
            detail={"errors": exc.errors(include_url=False)},
        ) from exc


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


def _window_start(snapshot: CaregiverBehaviorData) -> datetime:
    return snapshot.collected_at - snapshot.analysis_window


def _in_window(snapshot: CaregiverBehaviorData, events: Iterable[Any]) -> List[Any]:
    start = _window_start(snapshot)
    return [e for e in events if start <= e.timestamp <= snapshot.collected_at]


@register_rule(AbuseRiskFactorType.CONTACT_MANIPULATION, ContactManipulationConfig)
def _contact_manipulation(
    snapshot: CaregiverBehaviorData, config: ContactManipulationConfig
) -> List[Finding]:
    blocked_removals = [
        a
        for a in _in_window(snapshot, snapshot.contact_modification_attempts)
        if a.action in (ContactAction.REMOVE_CONTACT, ContactAction.BLOCK_CONTACT)
        and a.result == ContactActionResult.BLOCKED_BY_PROTECTION
    ]
    count = len(blocked_removals)
    if count < max(config.threshold, 1):
        return []
    return [
        Finding(
            "Multiple attempts to remove contacts (social isolation pattern)",
            count * config.score_per_event,
            {"blocked_removal_attempts": count, "pattern": "social_isolation_attempt"},
        )
    ]


@register_rule(AbuseRiskFactorType.EMERGENCY_CONTACT_TAMPERING, EmergencyContactTamperingConfig)
def _emergency_contact_tampering(
    snapshot: CaregiverBehaviorData, config: EmergencyContactTamperingConfig
) -> List[Finding]:
    keyword = config.relationship_keyword.lower()
    tampering = [
        a
        for a in _in_window(snapshot, snapshot.contact_modification_attempts)
        if a.contact_relationship
        and keyword in a.contact_relationship.lower()
        and a.result == ContactActionResult.BLOCKED_BY_PROTECTION
    ]
    count = len(tampering)
    if count < max(config.threshold, 1):
        return []
    return [
        Finding(
            "Attempts to tamper with emergency contacts",
            count * config.score_per_event,
            {"emergency_tamper_attempts": count, "pattern": "safety_system_compromise"},
        )
    ]


@register_rule(AbuseRiskFactorType.BURST_ACTIVITY, BurstActivityConfig)
def _burst_activity(snapshot: CaregiverBehaviorData, config: BurstActivityConfig) -> List[Finding]:
    burst_start = snapshot.collected_at - timedelta(minutes=config.window_minutes)
    events: List[Any] = [
        *snapshot.contact_modification_attempts,
        *snapshot.permission_history,
        *snapshot.emergency_interactions,
    ]
    recent = [e for e in events if burst_start <= e.timestamp <= snapshot.collected_at]
    if len(recent) < max(config.threshold, 1):
        return []
    return [
        Finding(
            "Rapid succession of caregiver actions (aggressive behavior)",
            config.flat_score,
            {
                "actions_in_window": len(recent),
                "window_minutes": config.window_minutes,
                "pattern": "aggressive_burst",
            },
        )
    ]


@register_rule(AbuseRiskFactorType.PERMISSION_ESCALATION, PermissionEscalationConfig)
def _permission_escalation(
    snapshot: CaregiverBehaviorData, config: PermissionEscalationConfig
) -> List[Finding]:
    denied = [
        e
        for e in _in_window(snapshot, snapshot.permission_history)
        if e.action in (PermissionActionType.REQUEST_PERMISSION, PermissionActionType.ESCALATE_PERMISSION)
        and e.result.upper() == "DENIED"
    ]
    count = len(denied)
    if count < max(config.threshold, 1):
        return []
    return [
        Finding(
            "Repeated attempts to gain additional permissions",
            count * config.score_per_event,
            {"escalation_attempts": count, "pattern": "control_escalation"},
        )
    ]


@register_rule(AbuseRiskFactorType.SENSITIVE_PERMISSION_REQUEST, SensitivePermissionConfig)
def _sensitive_permission(
    snapshot: CaregiverBehaviorData, config: SensitivePermissionConfig
) -> List[Finding]:
    sensitive = set(config.sensitive_permissions)
    hits = [
        e
        for e in _in_window(snapshot, snapshot.permission_history)
        if e.permission in sensitive and e.action != PermissionActionType.REVOKE_PERMISSION
    ]
    count = len(hits)
    if count < max(config.threshold, 1):
        return []
    return [
        Finding(
            "Attempts to access sensitive user data or safety features",
            count * config.score_per_event,
            {
                "sensitive_attempts": count,
                "permissions": sorted({e.permission for e in hits}),
                "pattern": "privacy_invasion_attempt",
            },
        )
    ]


def _is_night(hour: int, start: int, end: int) -> bool:
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


@register_rule(AbuseRiskFactorType.SUSPICIOUS_TIMING, SuspiciousTimingConfig)
def _suspicious_timing(snapshot: CaregiverBehaviorData, config: SuspiciousTimingConfig) -> List[Finding]:
    offset = timedelta(hours=config.utc_offset_hours)
    local_times = [a.timestamp + offset for a in _in_window(snapshot, snapshot.contact_modification_attempts)]
    findings: List[Finding] = []

    night = [t for t in local_times if _is_night(t.hour, config.night_start_hour, config.night_end_hour)]
    if len(night) >= max(config.threshold, 1):
        findings.append(
            Finding(
                "Unusual activity during night hours when user likely asleep",
                len(night) * config.score_per_event,
                {"night_attempts": len(night), "pattern": "covert_manipulation"},
            )
        )

    total = len(local_times)
    if total >= config.weekend_min_events:
        weekend = sum(1 for t in local_times if t.weekday() >= 5)
        concentration = weekend / total
        if concentration > config.weekend_ratio:
            findings.append(
                Finding(
                    "High concentration of activity during weekends (when user may be isolated)",
                    config.weekend_score,
                    {"weekend_concentration": round(concentration, 2), "pattern": "isolation_exploitation"},
                )
            )
    return findings


@register_rule(AbuseRiskFactorType.SAFETY_SYSTEM_TAMPERING, SafetySystemTamperingConfig)
def _safety_system_tampering(
    snapshot: CaregiverBehaviorData, config: SafetySystemTamperingConfig
) -> List[Finding]:
    targeted = set(config.action_types)
    attempts = [i for i in _in_window(snapshot, snapshot.emergency_interactions) if i.action_type in targeted]
    count = len(attempts)
    if count < max(config.threshold, 1):
        return []
    return [
        Finding(
            "Attempts to disable or modify emergency safety features",
            count * config.score_per_event,
            {"disable_attempts": count, "pattern": "safety_compromise"},
        )
    ]


@register_rule(AbuseRiskFactorType.SURVEILLANCE_PATTERN, SurveillancePatternConfig)
def _surveillance_pattern(
    snapshot: CaregiverBehaviorData, config: SurveillancePatternConfig
) -> List[Finding]:
    queries = sum(
        1 for i in _in_window(snapshot, snapshot.emergency_interactions) if i.action_type == config.action_type
    )
    if queries <= config.threshold:
        return []
    return [
        Finding(
            "Excessive monitoring of emergency system status",
            config.flat_score,
            {"query_count": queries, "pattern": "excessive_surveillance"},
        )
    ]


@register_rule(AbuseRiskFactorType.ESCALATING_BEHAVIOR, EscalatingBehaviorConfig)
def _escalating_behavior(
    snapshot: CaregiverBehaviorData, config: EscalatingBehaviorConfig
) -> List[Finding]:
    history = sorted(snapshot.previous_assessments, key=lambda p: p.assessed_at)
    if len(history) < 2:
        return []
    scores = [p.risk_score for p in history[-config.lookback_points:]]
    rising = all(later > earlier for earlier, later in zip(scores, scores[1:]))
    if not rising or scores[-1] - scores[0] <= config.min_increase:
        return []
    return [
        Finding(
            "Behavior patterns show escalating risk over time",
            config.flat_score,
            {"score_trend": scores, "pattern": "escalating_abuse"},
        )
    ]


@register_rule(AbuseRiskFactorType.TRIGGER_EVENT, TriggerEventConfig)
def _trigger_event(snapshot: CaregiverBehaviorData, config: TriggerEventConfig) -> List[Finding]:
    trigger = snapshot.trigger
    if trigger is None or trigger.event_type not in config.trigger_scores:
        return []
    label = trigger.event_type.value.lower().replace("_", " ")
    return [
        Finding(
            f"Analysis triggered by {label}",
            config.trigger_scores[trigger.event_type],
            {"trigger_event": trigger.event_type.value, "event_data": dict(trigger.event_data)},
        )
    ]


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


@dataclass
class RuleEvaluationResult:
    factors: List[AbuseRiskFactor] = field(default_factory=list)
    rules_applied: List[str] = field(default_factory=list)
    rules_skipped: List[str] = field(default_factory=list)


class RuleEvaluator:
    """Applies enabled detection rules to a behavior snapshot.

    Example rule configuration for CONTACT_MANIPULATION:
        {"threshold": 3, "score_per_event": 15, "max_score": 50}

    Factor score = min(raw score * severity_multiplier, max_score, 100).
    """

    def __init__(self, rules: Sequence[AbuseDetectionRule]) -> None:
        """Initialize evaluator with rules.

        Args:
            rules: Rule definitions; disabled rules are ignored
        """
        self.rules = [r for r in rules if r.enabled]

    def evaluate(self, snapshot: CaregiverBehaviorData) -> RuleEvaluationResult:
        """Run every enabled rule against the snapshot.

        Args:
            snapshot: Behavior snapshot to evaluate

        Returns:
            Emitted factors plus the ids of rules applied and skipped
        """
        result = RuleEvaluationResult()

        for rule in self.rules:
            factors = self._evaluate_rule(rule, snapshot)
            if factors is None:
                result.rules_skipped.append(rule.rule_id)
                continue
            result.rules_applied.append(rule.rule_id)
            result.factors.extend(factors)

        return result

    def _evaluate_rule(
        self, rule: AbuseDetectionRule, snapshot: CaregiverBehaviorData
    ) -> Optional[List[AbuseRiskFactor]]:
        """Evaluate one rule; ``None`` means the rule was skipped."""
        try:
            config = validate_rule_configuration(rule.rule_type, rule.configuration)
        except ValidationError as exc:
            logger.warning(
                "Skipping rule %s (%s): %s %s", rule.rule_id, rule.name, exc.message, exc.detail
            )
            return None

        handler = RULE_REGISTRY[rule.rule_type]
        try:
            findings = handler.evaluate(snapshot, config)
        except Exception:
            logger.exception("Rule %s (%s) failed during evaluation, skipping", rule.rule_id, rule.name)
            return None

        return [self._to_factor(rule, config, finding) for finding in findings]

    @staticmethod
    def _to_factor(rule: AbuseDetectionRule, config: RuleConfig, finding: Finding) -> AbuseRiskFactor:
        score = int(round(finding.raw_score * config.severity_multiplier))
        score = max(0, min(score, config.max_score, 100))
        return AbuseRiskFactor(
            factor_type=rule.rule_type,
            description=finding.description,
            score=score,
            evidence=finding.evidence,
            rule_id=rule.rule_id,
            requires_immediate_action=config.immediate_action,
        )


def create_default_rules() -> List[AbuseDetectionRule]:
    """Create default rule set, one rule per registered type.

    Returns:
        List of default rules
    """
    return [
        AbuseDetectionRule(
            name="Contact removal attempts",
            description="Repeated blocked attempts to remove or block the user's contacts",
            rule_type=AbuseRiskFactorType.CONTACT_MANIPULATION,
            configuration={"threshold": 3, "score_per_event": 15, "max_score": 50},
        ),
        AbuseDetectionRule(
            name="Emergency contact tampering",
            description="Blocked changes to emergency contacts",
            rule_type=AbuseRiskFactorType.EMERGENCY_CONTACT_TAMPERING,
            configuration={"threshold": 1, "score_per_event": 25},
        ),
        AbuseDetectionRule(
            name="Burst activity",
            description="Many caregiver actions within a short window",
            rule_type=AbuseRiskFactorType.BURST_ACTIVITY,
            configuration={"threshold": 3, "flat_score": 30, "window_minutes": 60},
        ),
        AbuseDetectionRule(
            name="Permission escalation",
            description="Repeated denied requests for additional permissions",
            rule_type=AbuseRiskFactorType.PERMISSION_ESCALATION,
            configuration={"threshold": 2, "score_per_event": 10},
        ),
        AbuseDetectionRule(
            name="Sensitive permission requests",
            description="Requests touching location, contacts, call logs or safety settings",
            rule_type=AbuseRiskFactorType.SENSITIVE_PERMISSION_REQUEST,
            configuration={"threshold": 1, "score_per_event": 20},
        ),
        AbuseDetectionRule(
            name="Suspicious timing",
            description="Night-time or weekend-concentrated activity",
            rule_type=AbuseRiskFactorType.SUSPICIOUS_TIMING,
            configuration={"threshold": 5, "score_per_event": 8},
        ),
        AbuseDetectionRule(
            name="Safety system tampering",
            description="Attempts to disable the emergency button or change emergency contacts",
            rule_type=AbuseRiskFactorType.SAFETY_SYSTEM_TAMPERING,
            configuration={"threshold": 1, "score_per_event": 40, "immediate_action": True},
        ),
        AbuseDetectionRule(
            name="Emergency status surveillance",
            description="Excessive polling of emergency system status",
            rule_type=AbuseRiskFactorType.SURVEILLANCE_PATTERN,
            configuration={"threshold": 20, "flat_score": 15},
        ),
        AbuseDetectionRule(
            name="Escalating behavior",
            description="Prior assessment scores rising steadily",
            rule_type=AbuseRiskFactorType.ESCALATING_BEHAVIOR,
            configuration={"lookback_points": 3, "min_increase": 20, "flat_score": 25},
        ),
        AbuseDetectionRule(
            name="Trigger events",
            description="Score contributed by the event that started the analysis",
            rule_type=AbuseRiskFactorType.TRIGGER_EVENT,
            configuration={},
        ),
    ]
