"""Detection pipeline that turns behavior snapshots into assessments and alerts.

This is the main entry point for abuse risk evaluation. One run:
1. Acquire a behavior snapshot (bounded by a timeout)
2. Apply the enabled detection rules
3. Score and level the result
4. Check the pair's history for escalation
5. Decide on an alert
6. Commit assessment and alert in one transaction
7. Dispatch notifications and publish the alert to subscribers

Runs for the same caregiver/user pair are serialized; runs for different
pairs proceed concurrently. A run superseded by a newer request for the
same pair before it commits is cancelled and leaves nothing behind.
Failures are reported in the returned ``EvaluationOutcome``, never raised.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import timedelta
from typing import Dict, Optional, Tuple

from carelens.config import Settings, get_settings
from carelens.engine.alerts import AlertGenerator, AlertLifecycleManager
from carelens.engine.escalation import EscalationAnalyzer
from carelens.engine.events import AlertBroker
from carelens.engine.ports import (
    AbuseDetectionStore,
    BehaviorSnapshotProvider,
    NotificationSink,
    PermissionLookup,
)
from carelens.engine.rules import RuleEvaluator, create_default_rules
from carelens.engine.scoring import RiskClassifier
from carelens.errors import CareLensError, TransientInfraError
from carelens.models import (
    AbuseAlert,
    CaregiverBehaviorData,
    DetectionTrigger,
    EvaluationOutcome,
    EvaluationStatus,
    TriggerEventType,
)

logger = logging.getLogger(__name__)

Pair = Tuple[str, str]


class _PairState:
    """Lock and run bookkeeping for one caregiver/user pair.

    Dropped from the registry once no run for the pair is in flight.
    """

    __slots__ = ("lock", "generation", "in_flight")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.generation = 0
        self.in_flight = 0


class AbuseDetectionEngine:
    """Evaluates caregiver behavior and raises alerts.

    Collaborators are injected; only ``store`` is required. Without a
    snapshot provider the engine can still evaluate snapshots handed to
    ``evaluate_snapshot``.
    """

    def __init__(
        self,
        store: AbuseDetectionStore,
        snapshot_provider: Optional[BehaviorSnapshotProvider] = None,
        permission_lookup: Optional[PermissionLookup] = None,
        notification_sink: Optional[NotificationSink] = None,
        broker: Optional[AlertBroker] = None,
        classifier: Optional[RiskClassifier] = None,
        escalation_analyzer: Optional[EscalationAnalyzer] = None,
        alert_generator: Optional[AlertGenerator] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.snapshot_provider = snapshot_provider
        self.permission_lookup = permission_lookup
        self.notification_sink = notification_sink
        self.classifier = classifier or RiskClassifier()
        self.escalation_analyzer = escalation_analyzer or EscalationAnalyzer(
            min_points=self.settings.escalation_min_points,
            min_increase=self.settings.escalation_min_increase,
        )
        self.alert_generator = alert_generator or AlertGenerator()
        self.lifecycle = AlertLifecycleManager(store, broker)
        self.history_window = timedelta(days=self.settings.recent_window_days)

        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.evaluation_workers, thread_name_prefix="carelens-snapshot"
        )
        self._registry_lock = threading.Lock()
        self._pairs: Dict[Pair, _PairState] = {}

    @property
    def broker(self) -> AlertBroker:
        return self.lifecycle.broker

    @property
    def tracked_pairs(self) -> int:
        """Pairs with a run in flight."""
        with self._registry_lock:
            return len(self._pairs)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def analyze_caregiver(
        self,
        caregiver_id: str,
        user_id: str,
        trigger: Optional[DetectionTrigger] = None,
    ) -> EvaluationOutcome:
        """Fetch a snapshot for the pair and evaluate it.

        Args:
            caregiver_id: Caregiver under assessment
            user_id: User the caregiver has permissions over
            trigger: Event that prompted this run, if any

        Returns:
            Outcome of the run
        """
        if self.snapshot_provider is None:
            raise RuntimeError("analyze_caregiver requires a snapshot provider")

        pair = (caregiver_id, user_id)
        state, generation = self._enter(pair)
        try:
            if not self._is_eligible(caregiver_id, user_id):
                return self._skipped(caregiver_id, user_id)

            with state.lock:
                if self._superseded(state, generation):
                    return self._cancelled(caregiver_id, user_id)
                try:
                    snapshot = self._acquire_snapshot(caregiver_id, user_id, trigger)
                except TransientInfraError as exc:
                    return self._failed(caregiver_id, user_id, exc)
                return self._evaluate_locked(snapshot, state, generation)
        finally:
            self._leave(pair, state)

    def evaluate_snapshot(self, snapshot: CaregiverBehaviorData) -> EvaluationOutcome:
        """Evaluate a snapshot supplied by the caller."""
        pair = (snapshot.caregiver_id, snapshot.user_id)
        state, generation = self._enter(pair)
        try:
            if not self._is_eligible(*pair):
                return self._skipped(*pair)

            with state.lock:
                return self._evaluate_locked(snapshot, state, generation)
        finally:
            self._leave(pair, state)

    def trigger_manual_analysis(self, caregiver_id: str, user_id: str, reason: str) -> EvaluationOutcome:
        """Manual run, e.g. from the user's panic mode or a reviewer."""
        trigger = DetectionTrigger(event_type=TriggerEventType.MANUAL_TRIGGER, event_data={"reason": reason})
        return self.analyze_caregiver(caregiver_id, user_id, trigger)

    def cancel(self, caregiver_id: str, user_id: str) -> None:
        """Discard any in-flight run for the pair that has not committed yet."""
        with self._registry_lock:
            state = self._pairs.get((caregiver_id, user_id))
            if state is not None:
                state.generation += 1

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _evaluate_locked(
        self, snapshot: CaregiverBehaviorData, state: _PairState, generation: int
    ) -> EvaluationOutcome:
        caregiver_id, user_id = snapshot.caregiver_id, snapshot.user_id
        try:
            rules = self.store.get_enabled_rules()
            result = RuleEvaluator(rules).evaluate(snapshot)
            if result.rules_skipped:
                logger.warning(
                    "%d rule(s) skipped for caregiver=%s user=%s",
                    len(result.rules_skipped),
                    caregiver_id,
                    user_id,
                )

            assessment = self.classifier.build_assessment(snapshot, result.factors, result.rules_applied)
            history = self.store.get_escalating_pattern(caregiver_id, user_id, self.history_window)
            escalation = self.escalation_analyzer.analyze([*history, assessment])
            alert = self.alert_generator.generate(assessment, escalation)

            if self._superseded(state, generation):
                return self._cancelled(caregiver_id, user_id)

            self.store.record_evaluation(assessment, alert)
        except CareLensError as exc:
            return self._failed(caregiver_id, user_id, exc)
        except Exception as exc:
            logger.exception("Evaluation run crashed for caregiver=%s user=%s", caregiver_id, user_id)
            return EvaluationOutcome(
                status=EvaluationStatus.FAILED,
                caregiver_id=caregiver_id,
                user_id=user_id,
                error_kind="InternalError",
                message=str(exc),
            )

        logger.info(
            "Assessment %s for caregiver=%s user=%s: score=%d level=%s factors=%d",
            assessment.assessment_id,
            caregiver_id,
            user_id,
            assessment.risk_score,
            assessment.risk_level.value,
            len(assessment.risk_factors),
        )

        if alert is not None:
            alert = self._dispatch_notifications(alert)
            self.lifecycle.publish_created(alert)

        return EvaluationOutcome(
            status=EvaluationStatus.COMPLETED,
            caregiver_id=caregiver_id,
            user_id=user_id,
            assessment=assessment,
            alert=alert,
            escalation=escalation,
        )

    def _acquire_snapshot(
        self, caregiver_id: str, user_id: str, trigger: Optional[DetectionTrigger]
    ) -> CaregiverBehaviorData:
        timeout = self.settings.snapshot_timeout_seconds
        future = self._executor.submit(
            self.snapshot_provider.get_snapshot, caregiver_id, user_id, self.history_window, trigger
        )
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise TransientInfraError(
                f"Snapshot provider timed out after {timeout}s", detail={"caregiver_id": caregiver_id}
            ) from exc
        except CareLensError:
            raise
        except Exception as exc:
            logger.exception("Snapshot provider failed for caregiver=%s user=%s", caregiver_id, user_id)
            raise TransientInfraError("Snapshot provider failed") from exc

    def _dispatch_notifications(self, alert: AbuseAlert) -> AbuseAlert:
        if self.notification_sink is None:
            return alert
        try:
            records = self.notification_sink.deliver(alert)
            if records:
                return self.store.add_notification_records(alert.alert_id, records)
        except Exception:
            logger.exception("Notification dispatch failed for alert %s", alert.alert_id)
        return alert

    # ------------------------------------------------------------------
    # Per-pair serialization
    # ------------------------------------------------------------------

    def _enter(self, pair: Pair) -> Tuple[_PairState, int]:
        """Register a run for the pair; it supersedes any run already in flight."""
        with self._registry_lock:
            state = self._pairs.setdefault(pair, _PairState())
            state.in_flight += 1
            state.generation += 1
            return state, state.generation

    def _leave(self, pair: Pair, state: _PairState) -> None:
        with self._registry_lock:
            state.in_flight -= 1
            if state.in_flight == 0:
                del self._pairs[pair]

    def _superseded(self, state: _PairState, generation: int) -> bool:
        with self._registry_lock:
            return state.generation != generation

    def _is_eligible(self, caregiver_id: str, user_id: str) -> bool:
        if self.permission_lookup is None:
            return True
        return self.permission_lookup.is_eligible(caregiver_id, user_id)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    @staticmethod
    def _skipped(caregiver_id: str, user_id: str) -> EvaluationOutcome:
        logger.info("Caregiver %s not eligible for assessment of user %s", caregiver_id, user_id)
        return EvaluationOutcome(
            status=EvaluationStatus.SKIPPED,
            caregiver_id=caregiver_id,
            user_id=user_id,
            message="Caregiver holds no permissions eligible for assessment",
        )

    @staticmethod
    def _cancelled(caregiver_id: str, user_id: str) -> EvaluationOutcome:
        logger.info("Evaluation for caregiver=%s user=%s superseded, discarded", caregiver_id, user_id)
        return EvaluationOutcome(
            status=EvaluationStatus.CANCELLED,
            caregiver_id=caregiver_id,
            user_id=user_id,
            message="Superseded by a newer evaluation for the same pair",
        )

    @staticmethod
    def _failed(caregiver_id: str, user_id: str, exc: CareLensError) -> EvaluationOutcome:
        logger.error(
            "Evaluation for caregiver=%s user=%s abandoned (%s): %s",
            caregiver_id,
            user_id,
            exc.kind,
            exc.message,
        )
        return EvaluationOutcome(
            status=EvaluationStatus.FAILED,
            caregiver_id=caregiver_id,
            user_id=user_id,
            error_kind=exc.kind,
            message=exc.message,
        )


def seed_default_rules(store: AbuseDetectionStore) -> int:
    """Insert the default rule set into an empty rule store.

    Returns:
        Number of rules inserted
    """
    inserted = 0
    for rule in create_default_rules():
        if store.get_rules_by_type(rule.rule_type, include_disabled=True):
            continue
        store.insert_rule(rule)
        inserted += 1
    return inserted


def create_detection_engine(
    store: AbuseDetectionStore,
    snapshot_provider: Optional[BehaviorSnapshotProvider] = None,
    notification_sink: Optional[NotificationSink] = None,
    seed_rules: bool = True,
) -> AbuseDetectionEngine:
    """Factory function to create a detection engine.

    Args:
        store: Assessment/alert/rule store
        snapshot_provider: Source of behavior snapshots
        notification_sink: Alert delivery
        seed_rules: Insert the default rules when the store has none

    Returns:
        Configured AbuseDetectionEngine
    """
    if seed_rules:
        seed_default_rules(store)
    return AbuseDetectionEngine(
        store=store,
        snapshot_provider=snapshot_provider,
        notification_sink=notification_sink,
    )
