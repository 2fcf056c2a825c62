"""Tests for escalation analysis."""

from datetime import datetime, timedelta
from typing import List

import pytest

from carelens.engine.escalation import EscalationAnalyzer
from carelens.engine.scoring import classify_score
from carelens.models import AbuseRiskAssessment

START = datetime(2026, 3, 1, 9, 0)


def _history(*scores: int) -> List[AbuseRiskAssessment]:
    """One assessment per day, in score order."""
    return [
        AbuseRiskAssessment(
            caregiver_id="caregiver-1",
            user_id="user-1",
            risk_score=score,
            risk_level=classify_score(score),
            assessed_at=START + timedelta(days=i),
        )
        for i, score in enumerate(scores)
    ]


def test_rising_scores_escalate() -> None:
    """Test three rising assessments with a large enough increase."""
    history = _history(20, 35, 50)

    signal = EscalationAnalyzer().analyze(history)

    assert signal is not None
    assert signal.net_increase == 30
    assert [p.risk_score for p in signal.points] == [20, 35, 50]
    assert signal.started_at == history[0].assessed_at
    assert signal.ended_at == history[-1].assessed_at
    assert signal.caregiver_id == "caregiver-1"


def test_too_few_points() -> None:
    """Test two assessments never escalate."""
    assert EscalationAnalyzer().analyze(_history(10, 90)) is None


def test_increase_below_minimum() -> None:
    """Test a small rise is not escalation."""
    assert EscalationAnalyzer().analyze(_history(20, 25, 39)) is None


def test_increase_at_minimum_escalates() -> None:
    """Test the minimum increase is inclusive."""
    assert EscalationAnalyzer().analyze(_history(20, 30, 40)) is not None


def test_plateau_counts_as_non_decreasing() -> None:
    """Test equal consecutive scores keep the run going."""
    signal = EscalationAnalyzer().analyze(_history(30, 30, 50))

    assert signal is not None
    assert signal.net_increase == 20


def test_drop_resets_run() -> None:
    """Test only the run ending at the latest assessment counts."""
    signal = EscalationAnalyzer().analyze(_history(10, 60, 30, 40, 55))

    assert signal is not None
    assert [p.risk_score for p in signal.points] == [30, 40, 55]
    assert signal.net_increase == 25


def test_latest_drop_breaks_escalation() -> None:
    """Test a falling latest score ends the escalation."""
    assert EscalationAnalyzer().analyze(_history(20, 40, 60, 50)) is None


def test_input_order_irrelevant() -> None:
    """Test assessments are ordered by time before analysis."""
    history = _history(20, 35, 50)

    signal = EscalationAnalyzer().analyze(list(reversed(history)))

    assert signal is not None
    assert signal.net_increase == 30


def test_custom_thresholds() -> None:
    """Test min_points and min_increase are configurable."""
    analyzer = EscalationAnalyzer(min_points=4, min_increase=10)

    assert analyzer.analyze(_history(20, 30, 40)) is None
    assert analyzer.analyze(_history(20, 25, 28, 31)) is not None


def test_min_points_validated() -> None:
    """Test a single-point run is rejected as a configuration."""
    with pytest.raises(ValueError):
        EscalationAnalyzer(min_points=1)
