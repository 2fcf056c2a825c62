"""Database models for CareLens."""

from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from carelens.models import utcnow

Base = declarative_base()


class AssessmentRecord(Base):
    """Risk assessment record.

    Append-only audit history. Rows are never updated; retention cleanup is
    the only path that deletes them.
    """

    __tablename__ = "abuse_risk_assessments"

    assessment_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))

    caregiver_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)

    risk_score = Column(Integer, nullable=False)  # 0 - 100
    risk_level = Column(String(20), nullable=False, index=True)  # LOW/MEDIUM/HIGH/CRITICAL
    risk_factors = Column(JSON, nullable=False)  # ordered list of factor dicts

    snapshot_id = Column(String(36), nullable=True)
    rules_applied = Column(JSON, nullable=False)
    trigger_type = Column(String(40), nullable=True)

    assessed_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<AssessmentRecord("
            f"id={self.assessment_id}, "
            f"caregiver={self.caregiver_id}, "
            f"user={self.user_id}, "
            f"score={self.risk_score}"
            f")>"
        )


class AlertRecord(Base):
    """Abuse alert record.

    Only ``status``, the resolution columns and ``notifications_sent`` change
    after insert.
    """

    __tablename__ = "abuse_alerts"

    alert_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))

    caregiver_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    assessment_id = Column(String(36), nullable=True)

    risk_level = Column(String(20), nullable=False)
    alert_type = Column(String(40), nullable=False)
    message = Column(Text, nullable=False)
    recommended_actions = Column(JSON, nullable=False)
    requires_immediate_action = Column(Boolean, nullable=False, default=False)

    status = Column(String(20), nullable=False, default="ACTIVE", index=True)  # ACTIVE/RESOLVED/DISMISSED
    notifications_sent = Column(JSON, nullable=False)
    resolution_details = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<AlertRecord("
            f"id={self.alert_id}, "
            f"user={self.user_id}, "
            f"level={self.risk_level}, "
            f"status={self.status}"
            f")>"
        )


class RuleRecord(Base):
    """Detection rule definition."""

    __tablename__ = "abuse_detection_rules"

    rule_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    rule_type = Column(String(40), nullable=False, index=True)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    configuration = Column(JSON, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<RuleRecord(id={self.rule_id}, type={self.rule_type}, enabled={self.enabled})>"


# Composite indexes for common queries
Index("idx_assessment_pair_time", AssessmentRecord.caregiver_id, AssessmentRecord.user_id, AssessmentRecord.assessed_at)
Index("idx_assessment_user_time", AssessmentRecord.user_id, AssessmentRecord.assessed_at)
Index("idx_alert_user_status", AlertRecord.user_id, AlertRecord.status)
Index("idx_alert_status_created", AlertRecord.status, AlertRecord.created_at)
