"""Escalation analysis over a caregiver/user pair's assessment history."""

from typing import Optional, Sequence

from carelens.models import AbuseRiskAssessment, EscalationSignal


class EscalationAnalyzer:
    """Detects worsening risk trends across assessments.

    A pair is escalating when its most recent assessments form a
    non-decreasing score run of at least ``min_points`` entries whose last
    score exceeds the first by at least ``min_increase`` points. The run is
    the longest one ending at the most recent assessment, so a single drop
    resets it.
    """

    def __init__(self, min_points: int = 3, min_increase: int = 20) -> None:
        if min_points < 2:
            raise ValueError(f"min_points must be at least 2, got {min_points}")
        self.min_points = min_points
        self.min_increase = min_increase

    def analyze(self, assessments: Sequence[AbuseRiskAssessment]) -> Optional[EscalationSignal]:
        """Return an escalation signal, or None if the history is not escalating.

        Args:
            assessments: Assessments for a single caregiver/user pair, any order
        """
        if len(assessments) < self.min_points:
            return None

        ordered = sorted(assessments, key=lambda a: a.assessed_at)

        run_start = len(ordered) - 1
        while run_start > 0 and ordered[run_start - 1].risk_score <= ordered[run_start].risk_score:
            run_start -= 1
        run = ordered[run_start:]

        if len(run) < self.min_points:
            return None
        net_increase = run[-1].risk_score - run[0].risk_score
        if net_increase < self.min_increase:
            return None

        return EscalationSignal(
            caregiver_id=run[-1].caregiver_id,
            user_id=run[-1].user_id,
            points=[a.trend_point() for a in run],
            net_increase=net_increase,
            started_at=run[0].assessed_at,
            ended_at=run[-1].assessed_at,
        )
