"""SQLAlchemy-backed store for assessments, alerts and detection rules.

Write paths are append-only inserts or single-row compare-and-swap updates.
Every public method opens its own short-lived session, so reads never hold
locks across calls and never wait on the evaluation write path beyond the
engine's bounded lock timeout.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from carelens.db.models import AlertRecord, AssessmentRecord, RuleRecord
from carelens.engine.rules import validate_rule_configuration
from carelens.errors import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    TransientInfraError,
    ValidationError,
)
from carelens.models import (
    AbuseAlert,
    AbuseDetectionRule,
    AbuseRiskAssessment,
    AbuseRiskFactorType,
    AbuseRiskLevel,
    AlertStatus,
    NotificationRecord,
    to_naive_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

HIGH_RISK_LEVELS = (AbuseRiskLevel.HIGH.value, AbuseRiskLevel.CRITICAL.value)
CLOSED_STATUSES = (AlertStatus.RESOLVED.value, AlertStatus.DISMISSED.value)
DEFAULT_DISMISSAL_DETAILS = "Dismissed without action"
ARCHIVED_USER_PREFIX = "archived_"


def _assessment_to_record(assessment: AbuseRiskAssessment) -> AssessmentRecord:
    return AssessmentRecord(
        assessment_id=assessment.assessment_id,
        caregiver_id=assessment.caregiver_id,
        user_id=assessment.user_id,
        risk_score=assessment.risk_score,
        risk_level=assessment.risk_level.value,
        risk_factors=[f.model_dump(mode="json") for f in assessment.risk_factors],
        snapshot_id=assessment.snapshot_id,
        rules_applied=list(assessment.rules_applied),
        trigger_type=assessment.trigger_type.value if assessment.trigger_type else None,
        assessed_at=assessment.assessed_at,
    )


def _assessment_from_record(record: AssessmentRecord) -> AbuseRiskAssessment:
    return AbuseRiskAssessment(
        assessment_id=record.assessment_id,
        caregiver_id=record.caregiver_id,
        user_id=record.user_id,
        risk_score=record.risk_score,
        risk_level=record.risk_level,
        risk_factors=record.risk_factors,
        assessed_at=record.assessed_at,
        snapshot_id=record.snapshot_id,
        rules_applied=record.rules_applied,
        trigger_type=record.trigger_type,
    )


def _alert_to_record(alert: AbuseAlert) -> AlertRecord:
    return AlertRecord(
        alert_id=alert.alert_id,
        caregiver_id=alert.caregiver_id,
        user_id=alert.user_id,
        assessment_id=alert.assessment_id,
        risk_level=alert.risk_level.value,
        alert_type=alert.alert_type.value,
        message=alert.message,
        recommended_actions=list(alert.recommended_actions),
        requires_immediate_action=alert.requires_immediate_action,
        status=alert.status.value,
        notifications_sent=[n.model_dump(mode="json") for n in alert.notifications_sent],
        resolution_details=alert.resolution_details,
        resolved_at=alert.resolved_at,
        created_at=alert.created_at,
    )


def _alert_from_record(record: AlertRecord) -> AbuseAlert:
    return AbuseAlert(
        alert_id=record.alert_id,
        caregiver_id=record.caregiver_id,
        user_id=record.user_id,
        assessment_id=record.assessment_id,
        risk_level=record.risk_level,
        alert_type=record.alert_type,
        message=record.message,
        recommended_actions=record.recommended_actions,
        requires_immediate_action=record.requires_immediate_action,
        status=record.status,
        created_at=record.created_at,
        notifications_sent=record.notifications_sent,
        resolution_details=record.resolution_details,
        resolved_at=record.resolved_at,
    )


def _rule_from_record(record: RuleRecord) -> AbuseDetectionRule:
    return AbuseDetectionRule(
        rule_id=record.rule_id,
        name=record.name,
        description=record.description,
        rule_type=record.rule_type,
        enabled=record.enabled,
        configuration=record.configuration,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class AbuseDetectionRepository:
    """Assessment, alert and rule store over a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except (OperationalError, PoolTimeoutError) as exc:
            db.rollback()
            logger.error("Store operation failed: %s", exc)
            raise TransientInfraError("Abuse detection store unavailable") from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    def insert_assessment(self, assessment: AbuseRiskAssessment) -> AbuseRiskAssessment:
        with self._session() as db:
            db.add(_assessment_to_record(assessment))
            db.commit()
        return assessment

    def get_assessment(self, assessment_id: str) -> AbuseRiskAssessment:
        with self._session() as db:
            record = db.get(AssessmentRecord, assessment_id)
            if record is None:
                raise NotFoundError(f"Assessment {assessment_id} not found")
            return _assessment_from_record(record)

    def get_recent_assessments(
        self,
        caregiver_id: str,
        user_id: str,
        window: timedelta,
        now: Optional[datetime] = None,
    ) -> List[AbuseRiskAssessment]:
        """Assessments for the pair within ``window`` of ``now``, newest first."""
        since = (now or utcnow()) - window
        with self._session() as db:
            records = db.scalars(
                select(AssessmentRecord)
                .where(
                    AssessmentRecord.caregiver_id == caregiver_id,
                    AssessmentRecord.user_id == user_id,
                    AssessmentRecord.assessed_at >= since,
                )
                .order_by(AssessmentRecord.assessed_at.desc())
            ).all()
            return [_assessment_from_record(r) for r in records]

    def get_assessments_by_level(
        self, caregiver_id: str, user_id: str, level: AbuseRiskLevel
    ) -> List[AbuseRiskAssessment]:
        with self._session() as db:
            records = db.scalars(
                select(AssessmentRecord)
                .where(
                    AssessmentRecord.caregiver_id == caregiver_id,
                    AssessmentRecord.user_id == user_id,
                    AssessmentRecord.risk_level == AbuseRiskLevel(level).value,
                )
                .order_by(AssessmentRecord.assessed_at.desc())
            ).all()
            return [_assessment_from_record(r) for r in records]

    def get_escalating_pattern(
        self,
        caregiver_id: str,
        user_id: str,
        window: timedelta,
        now: Optional[datetime] = None,
    ) -> List[AbuseRiskAssessment]:
        """Assessments for the pair within ``window``, oldest first."""
        since = (now or utcnow()) - window
        with self._session() as db:
            records = db.scalars(
                select(AssessmentRecord)
                .where(
                    AssessmentRecord.caregiver_id == caregiver_id,
                    AssessmentRecord.user_id == user_id,
                    AssessmentRecord.assessed_at >= since,
                )
                .order_by(AssessmentRecord.assessed_at.asc(), AssessmentRecord.assessment_id.asc())
            ).all()
            return [_assessment_from_record(r) for r in records]

    def get_user_assessments(
        self,
        user_id: str,
        since: datetime,
        caregiver_id: Optional[str] = None,
        until: Optional[datetime] = None,
    ) -> List[AbuseRiskAssessment]:
        """Assessments for the user in ``[since, until]``, oldest first."""
        query = select(AssessmentRecord).where(
            AssessmentRecord.user_id == user_id,
            AssessmentRecord.assessed_at >= since,
        )
        if until is not None:
            query = query.where(AssessmentRecord.assessed_at <= until)
        if caregiver_id is not None:
            query = query.where(AssessmentRecord.caregiver_id == caregiver_id)
        with self._session() as db:
            records = db.scalars(query.order_by(AssessmentRecord.assessed_at.asc())).all()
            return [_assessment_from_record(r) for r in records]

    def get_latest_assessment(self, caregiver_id: str, user_id: str) -> Optional[AbuseRiskAssessment]:
        with self._session() as db:
            record = db.scalars(
                select(AssessmentRecord)
                .where(AssessmentRecord.caregiver_id == caregiver_id, AssessmentRecord.user_id == user_id)
                .order_by(AssessmentRecord.assessed_at.desc())
                .limit(1)
            ).first()
            return _assessment_from_record(record) if record is not None else None

    def get_high_risk_assessments(self, since: datetime) -> List[AbuseRiskAssessment]:
        """HIGH and CRITICAL assessments for every pair since ``since``, newest first."""
        with self._session() as db:
            records = db.scalars(
                select(AssessmentRecord)
                .where(
                    AssessmentRecord.risk_level.in_(HIGH_RISK_LEVELS),
                    AssessmentRecord.assessed_at >= since,
                )
                .order_by(AssessmentRecord.assessed_at.desc())
            ).all()
            return [_assessment_from_record(r) for r in records]

    def has_recent_high_risk_assessments(
        self, caregiver_id: str, window: timedelta, now: Optional[datetime] = None
    ) -> bool:
        since = (now or utcnow()) - window
        with self._session() as db:
            found = db.scalar(
                select(AssessmentRecord.assessment_id)
                .where(
                    AssessmentRecord.caregiver_id == caregiver_id,
                    AssessmentRecord.risk_level.in_(HIGH_RISK_LEVELS),
                    AssessmentRecord.assessed_at >= since,
                )
                .limit(1)
            )
            return found is not None

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def insert_alert(self, alert: AbuseAlert) -> AbuseAlert:
        with self._session() as db:
            db.add(_alert_to_record(alert))
            db.commit()
        return alert

    def get_alert(self, alert_id: str) -> AbuseAlert:
        with self._session() as db:
            record = db.get(AlertRecord, alert_id)
            if record is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            return _alert_from_record(record)

    def get_active_alerts(self, user_id: str) -> List[AbuseAlert]:
        with self._session() as db:
            records = db.scalars(
                select(AlertRecord)
                .where(AlertRecord.user_id == user_id, AlertRecord.status == AlertStatus.ACTIVE.value)
                .order_by(AlertRecord.created_at.desc())
            ).all()
            return [_alert_from_record(r) for r in records]

    def get_alerts_requiring_immediate_action(self, user_id: str) -> List[AbuseAlert]:
        """Every alert flagged for immediate action, whatever its status."""
        with self._session() as db:
            records = db.scalars(
                select(AlertRecord)
                .where(AlertRecord.user_id == user_id, AlertRecord.requires_immediate_action.is_(True))
                .order_by(AlertRecord.created_at.desc())
            ).all()
            return [_alert_from_record(r) for r in records]

    def get_user_alerts(
        self, user_id: str, since: datetime, until: Optional[datetime] = None
    ) -> List[AbuseAlert]:
        query = select(AlertRecord).where(AlertRecord.user_id == user_id, AlertRecord.created_at >= since)
        if until is not None:
            query = query.where(AlertRecord.created_at <= until)
        with self._session() as db:
            records = db.scalars(query.order_by(AlertRecord.created_at.desc())).all()
            return [_alert_from_record(r) for r in records]

    def get_caregiver_alerts(self, caregiver_id: str, limit: int = 10) -> List[AbuseAlert]:
        """Most recent alerts raised against the caregiver, across users."""
        with self._session() as db:
            records = db.scalars(
                select(AlertRecord)
                .where(AlertRecord.caregiver_id == caregiver_id)
                .order_by(AlertRecord.created_at.desc())
                .limit(limit)
            ).all()
            return [_alert_from_record(r) for r in records]

    def get_alerts_between(self, since: datetime, until: Optional[datetime] = None) -> List[AbuseAlert]:
        query = select(AlertRecord).where(AlertRecord.created_at >= since)
        if until is not None:
            query = query.where(AlertRecord.created_at <= until)
        with self._session() as db:
            records = db.scalars(query.order_by(AlertRecord.created_at.asc())).all()
            return [_alert_from_record(r) for r in records]

    def update_alert_status(
        self,
        alert_id: str,
        status: AlertStatus,
        details: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> AbuseAlert:
        """Move an ACTIVE alert to a terminal status.

        Raises:
            ValidationError: target status is ACTIVE, RESOLVED without details,
                or a timestamp earlier than the alert's creation
            NotFoundError: unknown alert id
            InvalidStateError: alert is already RESOLVED or DISMISSED
            ConcurrencyConflict: another writer closed the alert first
        """
        status = AlertStatus(status)
        if status == AlertStatus.ACTIVE:
            raise ValidationError("Alerts cannot be moved back to ACTIVE")
        if status == AlertStatus.RESOLVED and not details:
            raise ValidationError("Resolving an alert requires resolution details")
        if status == AlertStatus.DISMISSED and not details:
            details = DEFAULT_DISMISSAL_DETAILS
        timestamp = to_naive_utc(timestamp) if timestamp else utcnow()

        with self._session() as db:
            record = db.get(AlertRecord, alert_id)
            if record is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            if record.status != AlertStatus.ACTIVE.value:
                raise InvalidStateError(
                    f"Alert {alert_id} is already {record.status}",
                    detail={"status": record.status},
                )
            if timestamp < record.created_at:
                raise ValidationError(
                    f"Alert {alert_id} cannot be closed before it was created",
                    detail={"created_at": record.created_at.isoformat(), "resolved_at": timestamp.isoformat()},
                )

            result = db.execute(
                update(AlertRecord)
                .where(
                    AlertRecord.alert_id == alert_id,
                    AlertRecord.status == AlertStatus.ACTIVE.value,
                )
                .values(status=status.value, resolution_details=details, resolved_at=timestamp)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConcurrencyConflict(f"Alert {alert_id} was closed by a concurrent update")
            db.commit()

            record = db.get(AlertRecord, alert_id)
            return _alert_from_record(record)

    def update_alert_resolution(
        self, alert_id: str, details: str, timestamp: Optional[datetime] = None
    ) -> AbuseAlert:
        return self.update_alert_status(alert_id, AlertStatus.RESOLVED, details=details, timestamp=timestamp)

    def add_notification_records(
        self, alert_id: str, records: List[NotificationRecord]
    ) -> AbuseAlert:
        with self._session() as db:
            record = db.get(AlertRecord, alert_id)
            if record is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            record.notifications_sent = list(record.notifications_sent) + [
                n.model_dump(mode="json") for n in records
            ]
            db.commit()
            return _alert_from_record(record)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def insert_rule(self, rule: AbuseDetectionRule) -> AbuseDetectionRule:
        """Store a rule after validating its configuration.

        Raises:
            ValidationError: configuration does not match the rule type's schema
        """
        validate_rule_configuration(rule.rule_type, rule.configuration)
        with self._session() as db:
            db.add(
                RuleRecord(
                    rule_id=rule.rule_id,
                    name=rule.name,
                    description=rule.description,
                    rule_type=rule.rule_type.value,
                    enabled=rule.enabled,
                    configuration=dict(rule.configuration),
                    created_at=rule.created_at,
                    updated_at=rule.updated_at,
                )
            )
            db.commit()
        return rule

    def get_rule(self, rule_id: str) -> AbuseDetectionRule:
        with self._session() as db:
            record = db.get(RuleRecord, rule_id)
            if record is None:
                raise NotFoundError(f"Rule {rule_id} not found")
            return _rule_from_record(record)

    def get_enabled_rules(self) -> List[AbuseDetectionRule]:
        with self._session() as db:
            records = db.scalars(
                select(RuleRecord).where(RuleRecord.enabled.is_(True)).order_by(RuleRecord.name)
            ).all()
            return [_rule_from_record(r) for r in records]

    def get_rules_by_type(
        self, rule_type: AbuseRiskFactorType, include_disabled: bool = False
    ) -> List[AbuseDetectionRule]:
        query = select(RuleRecord).where(RuleRecord.rule_type == AbuseRiskFactorType(rule_type).value)
        if not include_disabled:
            query = query.where(RuleRecord.enabled.is_(True))
        with self._session() as db:
            records = db.scalars(query.order_by(RuleRecord.name)).all()
            return [_rule_from_record(r) for r in records]

    def update_rule_configuration(self, rule_id: str, configuration: dict) -> AbuseDetectionRule:
        with self._session() as db:
            record = db.get(RuleRecord, rule_id)
            if record is None:
                raise NotFoundError(f"Rule {rule_id} not found")
            validate_rule_configuration(AbuseRiskFactorType(record.rule_type), configuration)
            record.configuration = dict(configuration)
            record.updated_at = utcnow()
            db.commit()
            return _rule_from_record(record)

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> AbuseDetectionRule:
        with self._session() as db:
            record = db.get(RuleRecord, rule_id)
            if record is None:
                raise NotFoundError(f"Rule {rule_id} not found")
            record.enabled = enabled
            record.updated_at = utcnow()
            db.commit()
            logger.info("Rule %s %s", rule_id, "enabled" if enabled else "disabled")
            return _rule_from_record(record)

    # ------------------------------------------------------------------
    # Pipeline and retention
    # ------------------------------------------------------------------

    def record_evaluation(
        self, assessment: AbuseRiskAssessment, alert: Optional[AbuseAlert] = None
    ) -> None:
        """Commit an assessment and its alert in one transaction."""
        with self._session() as db:
            db.add(_assessment_to_record(assessment))
            if alert is not None:
                db.add(_alert_to_record(alert))
            db.commit()

    def delete_assessments_before(self, cutoff: datetime) -> int:
        with self._session() as db:
            result = db.execute(
                delete(AssessmentRecord).where(AssessmentRecord.assessed_at < cutoff)
            )
            db.commit()
            return result.rowcount

    def delete_closed_alerts_before(self, cutoff: datetime) -> int:
        """Delete RESOLVED and DISMISSED alerts created before ``cutoff``.

        ACTIVE alerts are never deleted, whatever their age.
        """
        with self._session() as db:
            result = db.execute(
                delete(AlertRecord).where(
                    AlertRecord.created_at < cutoff,
                    AlertRecord.status.in_(CLOSED_STATUSES),
                )
            )
            db.commit()
            return result.rowcount

    def archive_user_data(self, user_id: str) -> int:
        """Detach a user's assessments and alerts from the user id.

        Records are kept as evidence under ``archived_<user_id>`` rather than
        deleted; retention purges them on the usual schedule.

        Returns:
            Number of assessments plus alerts archived
        """
        archived_id = f"{ARCHIVED_USER_PREFIX}{user_id}"
        with self._session() as db:
            assessments = db.execute(
                update(AssessmentRecord)
                .where(AssessmentRecord.user_id == user_id)
                .values(user_id=archived_id)
                .execution_options(synchronize_session=False)
            )
            alerts = db.execute(
                update(AlertRecord)
                .where(AlertRecord.user_id == user_id)
                .values(user_id=archived_id)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            logger.info(
                "Archived user %s: %d assessments, %d alerts", user_id, assessments.rowcount, alerts.rowcount
            )
            return assessments.rowcount + alerts.rowcount
