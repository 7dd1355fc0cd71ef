"""
SavvyShield API

FastAPI application receiving risk signals from partner apps and
exposing the enforcement review surface.

Endpoints:
- POST /api/shield/ingest: Record a signal, score it and enforce
- /api/shield/...: Admin review, appeal and investigation routes
- POST /{app}/shield/enforce: Enforcement receiver for RECEIVER_APP_NAME
- GET /health: Health check
- GET /metrics: Prometheus metrics
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..config import settings
from ..detection import ProactiveInvestigationService
from ..errors import EnforcementNotFoundError, EnforcementStateError
from ..metrics import metrics
from ..policy import DecisionEngine
from ..schemas import (
    AppealRequest,
    AppealResolutionRequest,
    EnforcementAction,
    EnforcementStatus,
    EventType,
    IngestRequest,
    IngestResponse,
    OverrideRequest,
    RecordMetadata,
    ReviewRequest,
    ShieldEvent,
)
from ..storage import EnforcementQuery, EventQuery, ShieldStore, create_store
from ..utils.logger import get_logger
from ..webhooks import RestrictionRegistry, WebhookDispatcher, create_receiver_router
from .auth import require_admin_token, require_api_token, require_metrics_token

get_logger("savvyshield", level=settings.app_log_level)
logger = logging.getLogger("savvyshield.api")


# Global instances (initialized in lifespan)
store: Optional[ShieldStore] = None
dispatcher: Optional[WebhookDispatcher] = None
decision_engine: Optional[DecisionEngine] = None
investigation_service: Optional[ProactiveInvestigationService] = None

# Receiver state lives for the whole process
restriction_registry = RestrictionRegistry()

PROJECT_ROOT = Path(__file__).parent.parent.parent

INGEST_SOURCE = "shield_sdk"
TRACE_ID_HEADER = "X-Trace-Id"


def _decision_table_path() -> Optional[Path]:
    if not settings.decision_table_path:
        return None
    path = Path(settings.decision_table_path)
    return path if path.is_absolute() else PROJECT_ROOT / path


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Initializes and cleans up resources:
    - Shield store (PostgreSQL or in-memory)
    - Webhook dispatcher worker
    - Decision engine and proactive investigation service
    """
    global store, dispatcher, decision_engine, investigation_service

    store = create_store(settings)
    await store.initialize()

    dispatcher = WebhookDispatcher(
        store,
        base_url=settings.webhook_base_url,
        secret=settings.webhook_secret,
        timeout_seconds=settings.webhook_timeout_seconds,
        queue_size=settings.webhook_queue_size,
    )
    await dispatcher.start()

    decision_engine = DecisionEngine(
        store,
        dispatcher=dispatcher,
        table_path=_decision_table_path(),
        environment=settings.app_env,
    )

    investigation_service = ProactiveInvestigationService(
        store,
        decision_engine,
        interval_seconds=settings.proactive_interval_seconds,
        max_users_per_sweep=settings.proactive_max_users_per_sweep,
        game_apps=settings.game_apps_set,
        environment=settings.app_env,
    )
    if settings.proactive_enabled:
        investigation_service.start()

    logger.info("SavvyShield started (storage=%s, env=%s)", settings.storage_backend, settings.app_env)

    yield

    # Cleanup
    if investigation_service:
        investigation_service.stop()
        await investigation_service.wait_idle()
    if dispatcher:
        await dispatcher.stop()
    if store:
        await store.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="SavvyShield API",
        description="Cross-app fraud detection and enforcement",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(
        create_receiver_router(
            restriction_registry,
            settings.webhook_secret,
            replay_window_seconds=settings.webhook_replay_window_seconds,
            app_name=settings.receiver_app_name,
        )
    )

    return app


app = create_app()


def _utc_now() -> datetime:
    return datetime.now(UTC)


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns service health status and component availability.
    """
    health = {
        "status": "healthy",
        "timestamp": _utc_now().isoformat(),
        "components": {
            "storage": False,
            "decision_engine": False,
            "webhook_dispatcher": False,
        },
        "proactive_investigation": {
            "running": bool(investigation_service and investigation_service.is_running),
            "sweep_in_flight": bool(investigation_service and investigation_service.sweep_in_flight),
        },
    }

    if store:
        try:
            health["components"]["storage"] = await store.health_check()
        except Exception as e:
            logger.warning("Storage health check failed: %s", e)

    if decision_engine:
        health["components"]["decision_engine"] = True
        health["decision_table_version"] = decision_engine.version

    if dispatcher:
        health["components"]["webhook_dispatcher"] = dispatcher.is_running

    for component, ok in health["components"].items():
        metrics.component_health.labels(component=component).set(1 if ok else 0)

    if not all(health["components"].values()):
        health["status"] = "degraded"

    return health


@app.get("/metrics")
def metrics_endpoint(_: None = Depends(require_metrics_token)):
    """Expose Prometheus metrics with optional token auth."""
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# =============================================================================
# INGEST ENDPOINT
# =============================================================================

@app.post("/api/shield/ingest", response_model=IngestResponse)
async def ingest_event(
    payload: IngestRequest,
    request: Request,
    _: None = Depends(require_api_token),
):
    """
    Record a risk signal reported by a partner app.

    The event is persisted, scored and run through the decision table.
    Enforcement webhooks are queued, never awaited here. A high score
    also runs a proactive investigation of the user before responding.
    """
    start_time = time.perf_counter()

    event_type = EventType.from_ingest(payload.type)
    context = dict(payload.context)
    context.setdefault("ip_address", request.client.host if request.client else None)
    context.setdefault("user_agent", request.headers.get("user-agent"))
    context.setdefault("timestamp", payload.ts or _utc_now().isoformat())

    event = ShieldEvent(
        savvy_user_id=payload.savvy_user_id,
        app=payload.app,
        level=payload.level,
        event_type=event_type,
        context=context,
        metadata=RecordMetadata(
            source=INGEST_SOURCE,
            environment=settings.app_env,
            trace_id=request.headers.get(TRACE_ID_HEADER),
        ),
    )

    try:
        await store.save_event(event)
        result = await decision_engine.process_event(event)
    except Exception as e:
        logger.error("Ingest failed for user %s: %s", payload.savvy_user_id, e)
        metrics.errors_total.labels(error_type=type(e).__name__).inc()
        raise HTTPException(status_code=500, detail="Failed to process shield event")

    metrics.events_ingested.labels(app=event.app, event_type=event_type.value).inc()

    if (
        investigation_service is not None
        and event.risk_score > settings.proactive_trigger_threshold
    ):
        logger.info(
            "High-risk %s from %s (%.3f), investigating user",
            event_type.value, event.savvy_user_id, event.risk_score,
        )
        try:
            await investigation_service.investigate_user(event.savvy_user_id, event.app, level=event.level)
        except Exception as e:
            # The signal itself is already recorded and enforced
            logger.error("Investigation after ingest failed for user %s: %s", event.savvy_user_id, e)
            metrics.errors_total.labels(error_type=type(e).__name__).inc()

    metrics.ingest_latency.observe((time.perf_counter() - start_time) * 1000)

    return IngestResponse(
        event_id=event.id,
        risk_score=event.risk_score,
        action=result.decision.action.value,
        enforcement_id=result.enforcement.id if result.enforcement else None,
    )


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit if limit else 0,
    }


@app.get("/api/shield/events")
async def list_events(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    app_name: Optional[str] = Query(default=None, alias="app"),
    event_type: Optional[EventType] = None,
    savvy_user_id: Optional[str] = None,
    min_risk_score: Optional[float] = Query(default=None, ge=0.0, le=1.0),
    days: int = Query(default=7, ge=1),
    _: None = Depends(require_admin_token),
):
    """List recent shield events, newest first."""
    query = EventQuery(
        savvy_user_id=savvy_user_id,
        app=app_name,
        event_types=[event_type] if event_type else None,
        since=_utc_now() - timedelta(days=days),
        min_risk_score=min_risk_score,
        limit=limit,
        offset=(page - 1) * limit,
    )
    events = await store.query_events(query)
    total = await store.count_events(query)
    return {"events": events, "pagination": _pagination(page, limit, total)}


@app.get("/api/shield/enforcements")
async def list_enforcements(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    app_name: Optional[str] = Query(default=None, alias="app"),
    decision: Optional[EnforcementAction] = None,
    status: Optional[EnforcementStatus] = None,
    savvy_user_id: Optional[str] = None,
    days: int = Query(default=30, ge=1),
    _: None = Depends(require_admin_token),
):
    """List enforcements, newest first."""
    query = EnforcementQuery(
        savvy_user_id=savvy_user_id,
        app=app_name,
        decisions=[decision] if decision else None,
        statuses=[status] if status else None,
        since=_utc_now() - timedelta(days=days),
        limit=limit,
        offset=(page - 1) * limit,
    )
    enforcements = await store.query_enforcements(query)
    total = await store.count_enforcements(query)
    return {"enforcements": enforcements, "pagination": _pagination(page, limit, total)}


@app.get("/api/shield/enforcements/overdue")
async def list_overdue_reviews(_: None = Depends(require_admin_token)):
    """Required reviews past their SLA deadline."""
    overdue = await decision_engine.get_overdue_reviews()
    return {"enforcements": overdue, "count": len(overdue)}


@app.get("/api/shield/enforcements/{enforcement_id}")
async def get_enforcement(enforcement_id: str, _: None = Depends(require_admin_token)):
    try:
        enforcement = await decision_engine.get_enforcement(enforcement_id)
    except EnforcementNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"enforcement": enforcement, "sla_status": enforcement.sla_status().value}


@app.get("/api/shield/stats")
async def get_stats(
    days: int = Query(default=30, ge=1),
    _: None = Depends(require_admin_token),
):
    """Enforcement and event statistics."""
    stats = await decision_engine.get_stats(days=days)
    stats["proactive_investigation"] = {
        "running": investigation_service.is_running,
        "interval_seconds": investigation_service.interval_seconds,
    }
    return stats


async def _review_action(action, enforcement_id: str, *args):
    """Run an engine workflow call, mapping domain errors to HTTP."""
    try:
        return await action(enforcement_id, *args)
    except EnforcementNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except EnforcementStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.post("/api/shield/enforcements/{enforcement_id}/approve")
async def approve_enforcement(
    enforcement_id: str,
    review: ReviewRequest,
    _: None = Depends(require_admin_token),
):
    enforcement = await _review_action(
        decision_engine.approve, enforcement_id, review.reviewed_by, review.notes
    )
    logger.info("Enforcement %s approved by %s", enforcement_id, review.reviewed_by)
    return {"success": True, "enforcement": enforcement}


@app.post("/api/shield/enforcements/{enforcement_id}/reject")
async def reject_enforcement(
    enforcement_id: str,
    review: ReviewRequest,
    _: None = Depends(require_admin_token),
):
    enforcement = await _review_action(
        decision_engine.reject, enforcement_id, review.reviewed_by, review.notes
    )
    logger.info("Enforcement %s rejected by %s", enforcement_id, review.reviewed_by)
    return {"success": True, "enforcement": enforcement}


@app.post("/api/shield/enforcements/{enforcement_id}/override")
async def override_enforcement(
    enforcement_id: str,
    body: OverrideRequest,
    _: None = Depends(require_admin_token),
):
    """Lift an enforcement. A reason is mandatory."""
    if not body.reason or not body.reason.strip():
        raise HTTPException(status_code=400, detail="Override reason is required")

    enforcement = await _review_action(
        decision_engine.override, enforcement_id, body.overridden_by, body.reason
    )
    logger.info("Enforcement %s overridden by %s: %s", enforcement_id, body.overridden_by, body.reason)
    return {"success": True, "enforcement": enforcement}


@app.post("/api/shield/enforcements/{enforcement_id}/appeal")
async def appeal_enforcement(
    enforcement_id: str,
    appeal: AppealRequest,
    _: None = Depends(require_admin_token),
):
    """Record an appeal on behalf of the user."""
    enforcement = await _review_action(
        decision_engine.submit_appeal, enforcement_id, appeal.reason, appeal.evidence
    )
    return {
        "success": True,
        "appeal_index": len(enforcement.appeals) - 1,
        "enforcement": enforcement,
    }


@app.post("/api/shield/enforcements/{enforcement_id}/appeals/{index}/resolve")
async def resolve_appeal(
    enforcement_id: str,
    index: int,
    resolution: AppealResolutionRequest,
    _: None = Depends(require_admin_token),
):
    enforcement = await _review_action(
        decision_engine.resolve_appeal,
        enforcement_id,
        index,
        resolution.status,
        resolution.reviewed_by,
        resolution.notes,
    )
    return {"success": True, "enforcement": enforcement}


@app.get("/api/shield/user/{savvy_user_id}/profile")
async def get_user_profile(
    savvy_user_id: str,
    days: int = Query(default=90, ge=1),
    _: None = Depends(require_admin_token),
):
    """A user's risk profile and enforcement history."""
    return await decision_engine.get_user_risk_profile(savvy_user_id, days=days)


# =============================================================================
# INVESTIGATION ENDPOINTS
# =============================================================================

@app.post("/api/shield/investigate/{savvy_user_id}")
async def investigate_user(
    savvy_user_id: str,
    app_name: str = Query(default="final10", alias="app"),
    _: None = Depends(require_admin_token),
):
    """Run every detector against one user now."""
    outcome = await investigation_service.investigate_user(savvy_user_id, app_name)
    return {
        "success": True,
        "user_id": savvy_user_id,
        "app": app_name,
        "findings": [
            {
                "risk_factor": f.risk_factor,
                "risk_score": f.risk_score,
                "evidence": f.evidence,
                "confidence": f.confidence,
            }
            for f in outcome.findings
        ],
        "case_id": outcome.case_event.case_id if outcome.case_event else None,
        "action": outcome.result.decision.action.value if outcome.result else None,
        "enforcement_id": (
            outcome.result.enforcement.id
            if outcome.result and outcome.result.enforcement
            else None
        ),
    }


@app.post("/api/shield/start-proactive")
async def start_proactive(_: None = Depends(require_admin_token)):
    started = investigation_service.start()
    return {
        "success": True,
        "message": "Proactive investigation started" if started else "Proactive investigation already running",
        "running": investigation_service.is_running,
    }


@app.post("/api/shield/stop-proactive")
async def stop_proactive(_: None = Depends(require_admin_token)):
    stopped = investigation_service.stop()
    return {
        "success": True,
        "message": "Proactive investigation stopped" if stopped else "Proactive investigation was not running",
        "running": investigation_service.is_running,
    }


@app.get("/api/shield/policy")
async def get_policy(_: None = Depends(require_admin_token)):
    """The loaded decision table and its hash."""
    return decision_engine.describe_table()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "savvyshield.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.app_debug,
    )
