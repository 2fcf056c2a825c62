"""FastAPI application for CareLens.

REST surface over the abuse detection engine:
- Snapshot evaluation (POST /api/v1/evaluations)
- Assessment queries (GET /api/v1/assessments/...)
- Alert queries, resolution and dismissal (/api/v1/alerts/..., /api/v1/users/{id}/alerts/...)
- Per-caregiver alerts and high-risk check (/api/v1/caregivers/{id}/...)
- Rule administration (/api/v1/rules/...)
- Statistics and trends (/api/v1/users/{id}/statistics, /api/v1/trend, /api/v1/risk-factors,
  /api/v1/statistics/attention, /api/v1/statistics/alert-response)
- Retention cleanup and user archival (POST /api/v1/maintenance/cleanup, POST /api/v1/users/{id}/archive)
- Alert event stream (GET /api/v1/alerts/stream, server-sent events)
- Health check (GET /health)
"""

import threading
from contextlib import asynccontextmanager
from datetime import timedelta
from functools import lru_cache
from typing import Iterator, List

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from carelens.config import get_settings
from carelens.db.repository import AbuseDetectionRepository
from carelens.db.session import SessionLocal, engine as db_engine, init_db
from carelens.engine.detection import AbuseDetectionEngine, create_detection_engine
from carelens.engine.ports import AbuseDetectionStore
from carelens.engine.retention import RetentionManager
from carelens.engine.statistics import StatisticsService
from carelens.errors import (
    CareLensError,
    InvalidStateError,
    NotFoundError,
    TransientInfraError,
    ValidationError,
)
from carelens.log_config import configure_logging
from carelens.models import (
    AbuseAlert,
    AbuseDetectionRule,
    AbuseRiskAssessment,
    AbuseRiskFactorType,
    AbuseRiskLevel,
    AlertDismissRequest,
    AlertResolutionRequest,
    AlertResponseStats,
    CaregiverAttentionSummary,
    CaregiverBehaviorData,
    CleanupRequest,
    EvaluationOutcome,
    RiskFactorFrequency,
    RiskTrendPoint,
    RuleConfigurationUpdate,
    RuleEnabledUpdate,
    StatisticsSummary,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    init_db(db_engine)
    engine = get_engine()

    stop_retention = threading.Event()
    retention = RetentionManager(engine.store, retention_days=settings.retention_days)
    threading.Thread(
        target=retention.run_periodically,
        args=(stop_retention, settings.retention_interval_seconds),
        name="carelens-retention",
        daemon=True,
    ).start()

    yield

    stop_retention.set()
    engine.shutdown()


app = FastAPI(
    title="CareLens API",
    description="Caregiver abuse risk detection and alerting",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@lru_cache
def get_engine() -> AbuseDetectionEngine:
    """Detection engine singleton (holds the per-pair locks)."""
    return create_detection_engine(AbuseDetectionRepository(SessionLocal))


def get_store(engine: AbuseDetectionEngine = Depends(get_engine)) -> AbuseDetectionStore:
    return engine.store


def get_statistics(store: AbuseDetectionStore = Depends(get_store)) -> StatisticsService:
    return StatisticsService(store)


def get_retention(store: AbuseDetectionStore = Depends(get_store)) -> RetentionManager:
    return RetentionManager(store, retention_days=settings.retention_days)


def _days(window_days: int) -> timedelta:
    return timedelta(days=window_days)


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "carelens", "version": "0.1.0"}


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@app.post("/api/v1/evaluations", response_model=EvaluationOutcome, status_code=201)
def evaluate_snapshot(
    snapshot: CaregiverBehaviorData,
    engine: AbuseDetectionEngine = Depends(get_engine),
) -> EvaluationOutcome:
    """Evaluate a behavior snapshot, persisting the assessment and any alert."""
    return engine.evaluate_snapshot(snapshot)


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------


@app.get("/api/v1/assessments", response_model=List[AbuseRiskAssessment])
def list_recent_assessments(
    caregiver_id: str = Query(..., description="Caregiver under assessment"),
    user_id: str = Query(..., description="Assessed user"),
    window_days: int = Query(7, ge=1, le=3650, description="Lookback window in days"),
    store: AbuseDetectionStore = Depends(get_store),
) -> List[AbuseRiskAssessment]:
    """Assessments for the pair within the window, newest first."""
    return store.get_recent_assessments(caregiver_id, user_id, _days(window_days))


@app.get("/api/v1/assessments/by-level", response_model=List[AbuseRiskAssessment])
def list_assessments_by_level(
    caregiver_id: str = Query(...),
    user_id: str = Query(...),
    level: AbuseRiskLevel = Query(..., description="LOW/MEDIUM/HIGH/CRITICAL"),
    store: AbuseDetectionStore = Depends(get_store),
) -> List[AbuseRiskAssessment]:
    return store.get_assessments_by_level(caregiver_id, user_id, level)


@app.get("/api/v1/assessments/escalation", response_model=List[AbuseRiskAssessment])
def get_escalating_pattern(
    caregiver_id: str = Query(...),
    user_id: str = Query(...),
    window_days: int = Query(7, ge=1, le=3650),
    store: AbuseDetectionStore = Depends(get_store),
) -> List[AbuseRiskAssessment]:
    """Assessments for the pair within the window, oldest first."""
    return store.get_escalating_pattern(caregiver_id, user_id, _days(window_days))


@app.get("/api/v1/assessments/latest", response_model=AbuseRiskAssessment)
def get_latest_assessment(
    caregiver_id: str = Query(...),
    user_id: str = Query(...),
    store: AbuseDetectionStore = Depends(get_store),
) -> AbuseRiskAssessment:
    assessment = store.get_latest_assessment(caregiver_id, user_id)
    if assessment is None:
        raise NotFoundError(f"No assessment for caregiver {caregiver_id} and user {user_id}")
    return assessment


@app.get("/api/v1/assessments/{assessment_id}", response_model=AbuseRiskAssessment)
def get_assessment(
    assessment_id: str,
    store: AbuseDetectionStore = Depends(get_store),
) -> AbuseRiskAssessment:
    return store.get_assessment(assessment_id)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@app.get("/api/v1/alerts/stream")
def stream_alerts(engine: AbuseDetectionEngine = Depends(get_engine)) -> StreamingResponse:
    """Server-sent events for alert creation and status changes."""
    subscription = engine.broker.subscribe()

    def events() -> Iterator[str]:
        try:
            for event in subscription.iter(timeout=1.0):
                yield f"event: {event.event_type.value}\ndata: {event.model_dump_json()}\n\n"
        finally:
            subscription.close()

    return StreamingResponse(events(), media_type="text/event-stream")


@app.get("/api/v1/alerts/{alert_id}", response_model=AbuseAlert)
def get_alert(alert_id: str, store: AbuseDetectionStore = Depends(get_store)) -> AbuseAlert:
    return store.get_alert(alert_id)


@app.post("/api/v1/alerts/{alert_id}/resolve", response_model=AbuseAlert)
def resolve_alert(
    alert_id: str,
    body: AlertResolutionRequest,
    engine: AbuseDetectionEngine = Depends(get_engine),
) -> AbuseAlert:
    return engine.lifecycle.resolve(alert_id, body.details, body.resolved_at)


@app.post("/api/v1/alerts/{alert_id}/dismiss", response_model=AbuseAlert)
def dismiss_alert(
    alert_id: str,
    body: AlertDismissRequest,
    engine: AbuseDetectionEngine = Depends(get_engine),
) -> AbuseAlert:
    return engine.lifecycle.dismiss(alert_id, body.reason)


@app.get("/api/v1/users/{user_id}/alerts/active", response_model=List[AbuseAlert])
def list_active_alerts(user_id: str, store: AbuseDetectionStore = Depends(get_store)) -> List[AbuseAlert]:
    return store.get_active_alerts(user_id)


@app.get("/api/v1/users/{user_id}/alerts/immediate", response_model=List[AbuseAlert])
def list_immediate_alerts(user_id: str, store: AbuseDetectionStore = Depends(get_store)) -> List[AbuseAlert]:
    """Alerts flagged for immediate action, in any status."""
    return store.get_alerts_requiring_immediate_action(user_id)


@app.get("/api/v1/caregivers/{caregiver_id}/alerts", response_model=List[AbuseAlert])
def list_caregiver_alerts(
    caregiver_id: str,
    limit: int = Query(10, ge=1, le=100),
    store: AbuseDetectionStore = Depends(get_store),
) -> List[AbuseAlert]:
    """Most recent alerts raised against the caregiver, newest first."""
    return store.get_caregiver_alerts(caregiver_id, limit=limit)


@app.get("/api/v1/caregivers/{caregiver_id}/high-risk")
def has_recent_high_risk(
    caregiver_id: str,
    window_days: int = Query(7, ge=1, le=3650),
    store: AbuseDetectionStore = Depends(get_store),
) -> dict:
    return {
        "caregiver_id": caregiver_id,
        "has_recent_high_risk": store.has_recent_high_risk_assessments(caregiver_id, _days(window_days)),
    }


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@app.post("/api/v1/rules", response_model=AbuseDetectionRule, status_code=201)
def create_rule(rule: AbuseDetectionRule, store: AbuseDetectionStore = Depends(get_store)) -> AbuseDetectionRule:
    return store.insert_rule(rule)


@app.get("/api/v1/rules", response_model=List[AbuseDetectionRule])
def list_enabled_rules(store: AbuseDetectionStore = Depends(get_store)) -> List[AbuseDetectionRule]:
    return store.get_enabled_rules()


@app.get("/api/v1/rules/type/{rule_type}", response_model=List[AbuseDetectionRule])
def list_rules_by_type(
    rule_type: AbuseRiskFactorType,
    include_disabled: bool = Query(False),
    store: AbuseDetectionStore = Depends(get_store),
) -> List[AbuseDetectionRule]:
    return store.get_rules_by_type(rule_type, include_disabled=include_disabled)


@app.get("/api/v1/rules/{rule_id}", response_model=AbuseDetectionRule)
def get_rule(rule_id: str, store: AbuseDetectionStore = Depends(get_store)) -> AbuseDetectionRule:
    return store.get_rule(rule_id)


@app.put("/api/v1/rules/{rule_id}/configuration", response_model=AbuseDetectionRule)
def update_rule_configuration(
    rule_id: str,
    body: RuleConfigurationUpdate,
    store: AbuseDetectionStore = Depends(get_store),
) -> AbuseDetectionRule:
    return store.update_rule_configuration(rule_id, body.configuration)


@app.put("/api/v1/rules/{rule_id}/enabled", response_model=AbuseDetectionRule)
def set_rule_enabled(
    rule_id: str,
    body: RuleEnabledUpdate,
    store: AbuseDetectionStore = Depends(get_store),
) -> AbuseDetectionRule:
    return store.set_rule_enabled(rule_id, body.enabled)


# ---------------------------------------------------------------------------
# Statistics and reporting
# ---------------------------------------------------------------------------


@app.get("/api/v1/users/{user_id}/statistics", response_model=StatisticsSummary)
def get_statistics_summary(
    user_id: str,
    window_days: int = Query(30, ge=1, le=3650),
    statistics: StatisticsService = Depends(get_statistics),
) -> StatisticsSummary:
    return statistics.get_statistics_summary(user_id, _days(window_days))


@app.get("/api/v1/trend", response_model=List[RiskTrendPoint])
def get_risk_trend(
    caregiver_id: str = Query(...),
    user_id: str = Query(...),
    window_days: int = Query(30, ge=1, le=3650),
    statistics: StatisticsService = Depends(get_statistics),
) -> List[RiskTrendPoint]:
    return statistics.get_risk_trend(caregiver_id, user_id, _days(window_days))


@app.get("/api/v1/risk-factors", response_model=List[RiskFactorFrequency])
def get_most_frequent_risk_factors(
    caregiver_id: str = Query(...),
    user_id: str = Query(...),
    window_days: int = Query(30, ge=1, le=3650),
    limit: int = Query(5, ge=1, le=50),
    statistics: StatisticsService = Depends(get_statistics),
) -> List[RiskFactorFrequency]:
    return statistics.get_most_frequent_risk_factors(caregiver_id, user_id, _days(window_days), limit=limit)


@app.get("/api/v1/statistics/attention", response_model=List[CaregiverAttentionSummary])
def get_caregivers_requiring_attention(
    window_days: int = Query(7, ge=1, le=3650),
    statistics: StatisticsService = Depends(get_statistics),
) -> List[CaregiverAttentionSummary]:
    """Caregivers with recent HIGH or CRITICAL assessments, most severe first."""
    return statistics.get_caregivers_requiring_attention(_days(window_days))


@app.get("/api/v1/statistics/alert-response", response_model=AlertResponseStats)
def get_alert_response_stats(
    window_days: int = Query(30, ge=1, le=3650),
    statistics: StatisticsService = Depends(get_statistics),
) -> AlertResponseStats:
    return statistics.get_alert_response_stats(_days(window_days))


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


@app.post("/api/v1/maintenance/cleanup")
def cleanup_old_data(
    body: CleanupRequest,
    retention: RetentionManager = Depends(get_retention),
) -> dict:
    cutoff = body.cutoff or retention.cutoff_for()
    deleted = retention.cleanup_old_data(cutoff)
    return {"cutoff": cutoff.isoformat(), "deleted": deleted}


@app.post("/api/v1/users/{user_id}/archive")
def archive_user_data(user_id: str, store: AbuseDetectionStore = Depends(get_store)) -> dict:
    """Detach a user's records from the user id, keeping them as evidence."""
    return {"user_id": user_id, "archived": store.archive_user_data(user_id)}


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (TransientInfraError, 503),
)


@app.exception_handler(CareLensError)
async def carelens_error_handler(request: Request, exc: CareLensError) -> JSONResponse:
    """Map the engine's error kinds to HTTP status codes."""
    status_code = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "kind": exc.kind,
            "retryable": exc.retryable,
            "context": exc.detail,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
