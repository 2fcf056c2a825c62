"""Risk classification for caregiver behavior assessments.

Aggregates the factors emitted by the rule engine into a single 0-100 score
and maps it onto an ``AbuseRiskLevel``.

Scoring:
- Additive with a ceiling: the aggregate is the sum of factor scores, capped
  at 100. Independent concerns compound; a single extreme factor is never
  diluted by averaging.
- One threshold table (``RISK_LEVEL_THRESHOLDS``) is the only place level
  boundaries are defined. Assessment validation uses the same table, so a
  stored level is always ``classify_score(score)``.
"""

from typing import List, Optional, Sequence, Tuple

from carelens.errors import ValidationError
from carelens.models import (
    AbuseRiskAssessment,
    AbuseRiskFactor,
    AbuseRiskLevel,
    AbuseSeverity,
    CaregiverBehaviorData,
    utcnow,
)

MAX_SCORE = 100

# (lower bound inclusive, level), highest first
RISK_LEVEL_THRESHOLDS: Tuple[Tuple[int, AbuseRiskLevel], ...] = (
    (90, AbuseRiskLevel.CRITICAL),
    (70, AbuseRiskLevel.HIGH),
    (40, AbuseRiskLevel.MEDIUM),
    (0, AbuseRiskLevel.LOW),
)

FACTOR_SEVERITY_THRESHOLDS: Tuple[Tuple[int, AbuseSeverity], ...] = (
    (80, AbuseSeverity.CRITICAL),
    (60, AbuseSeverity.HIGH),
    (40, AbuseSeverity.MEDIUM),
    (20, AbuseSeverity.LOW),
    (0, AbuseSeverity.MINIMAL),
)


def _check_range(score: int) -> None:
    if not 0 <= score <= MAX_SCORE:
        raise ValidationError(f"Score must be within 0-{MAX_SCORE}, got {score}")


def classify_score(score: int) -> AbuseRiskLevel:
    """Map an aggregate risk score to its risk level.

    Args:
        score: Aggregate score (0-100)

    Returns:
        Risk level category

    Raises:
        ValidationError: if the score is out of range
    """
    _check_range(score)
    for lower_bound, level in RISK_LEVEL_THRESHOLDS:
        if score >= lower_bound:
            return level
    return AbuseRiskLevel.LOW


def severity_for_score(score: int) -> AbuseSeverity:
    """Map a single factor score to its severity bucket."""
    _check_range(score)
    for lower_bound, severity in FACTOR_SEVERITY_THRESHOLDS:
        if score >= lower_bound:
            return severity
    return AbuseSeverity.MINIMAL


class RiskClassifier:
    """Builds assessments from rule-engine output."""

    def aggregate(self, factors: Sequence[AbuseRiskFactor]) -> int:
        """Sum factor scores, capped at 100."""
        return min(MAX_SCORE, sum(factor.score for factor in factors))

    def build_assessment(
        self,
        snapshot: CaregiverBehaviorData,
        factors: Sequence[AbuseRiskFactor],
        rules_applied: Optional[List[str]] = None,
    ) -> AbuseRiskAssessment:
        """Score and level the factors and wrap them in a new assessment.

        Factors are kept in descending score order so the primary
        contributor comes first. The caller persists the result.
        """
        score = self.aggregate(factors)
        ordered = sorted(factors, key=lambda f: f.score, reverse=True)

        return AbuseRiskAssessment(
            caregiver_id=snapshot.caregiver_id,
            user_id=snapshot.user_id,
            risk_score=score,
            risk_level=classify_score(score),
            risk_factors=ordered,
            assessed_at=utcnow(),
            snapshot_id=snapshot.snapshot_id,
            rules_applied=list(rules_applied or []),
            trigger_type=snapshot.trigger.event_type if snapshot.trigger else None,
        )
