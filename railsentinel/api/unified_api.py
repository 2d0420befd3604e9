"""
Operator API
============

FastAPI surface over a RiskMonitor:

Endpoints:
- GET  /health                         - Health check
- GET  /api/assessment/latest          - Latest published risk assessment
- GET  /api/suggestions/latest         - Ranked suggestions of that assessment
- POST /api/cycle/trigger              - Request an out-of-band evaluation cycle
- GET  /api/alerts/active              - Open alerts (filters: kind, min_severity, entity_id, status)
- GET  /api/alerts/history             - Alerts created within [start, end]
- GET  /api/alerts/{alert_id}          - One alert
- POST /api/alerts/{alert_id}/acknowledge
- POST /api/alerts/{alert_id}/resolve
- GET  /api/rules                      - Active rule set
- GET  /api/statistics                 - Pipeline statistics

Unknown alerts answer 404, illegal lifecycle transitions 409.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..alerting.alert_manager import AlertFilter
from ..config import SentinelConfig
from ..detection.snapshot_builder import load_topology
from ..errors import AlertNotFound, ConfigurationError, InvalidTransition
from ..models import AlertKind, AlertStatus, Resolution, Severity
from ..orchestration.monitor import RiskMonitor

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# =============================================================================
# Request Models
# =============================================================================

class AcknowledgeRequest(BaseModel):
    operator_id: str = Field(..., min_length=1)


class ResolveRequest(BaseModel):
    actions: List[str] = Field(default_factory=list)
    notes: str = ""
    resolved_by: Optional[str] = None


class TriggerRequest(BaseModel):
    reason: str = "operator request"


# =============================================================================
# App Setup
# =============================================================================

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def build_monitor_from_env() -> RiskMonitor:
    """Monitor for the topology named by RAILSENTINEL_TOPOLOGY."""
    config = SentinelConfig.from_env()
    topology_path = os.environ.get("RAILSENTINEL_TOPOLOGY")
    if not topology_path:
        raise ConfigurationError("RAILSENTINEL_TOPOLOGY must point to a topology JSON file")
    return RiskMonitor(load_topology(topology_path), config=config)


def create_app(monitor: Optional[RiskMonitor] = None, start_monitor: bool = True) -> FastAPI:
    """
    Build the API around a monitor.

    Without a monitor one is built from the environment at startup. The
    cadence thread is started with the app unless start_monitor is False.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.monitor is None:
            app.state.monitor = build_monitor_from_env()
        if start_monitor:
            app.state.monitor.start()
        logger.info("Operator API ready")
        yield
        app.state.monitor.shutdown()

    app = FastAPI(
        title="Rail Sentinel Operator API",
        description="Risk assessments, corrective suggestions and alert lifecycle",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.monitor = monitor

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AlertNotFound)
    async def alert_not_found(request: Request, exc: AlertNotFound):
        return JSONResponse(status_code=404, content={"detail": exc.message, "kind": exc.kind})

    @app.exception_handler(InvalidTransition)
    async def invalid_transition(request: Request, exc: InvalidTransition):
        return JSONResponse(status_code=409, content={"detail": exc.message, "kind": exc.kind})

    def get_monitor() -> RiskMonitor:
        if app.state.monitor is None:
            raise HTTPException(status_code=503, detail="Monitor not initialized")
        return app.state.monitor

    # =========================================================================
    # Endpoints
    # =========================================================================

    @app.get("/health")
    def health():
        """Health check endpoint."""
        current = app.state.monitor
        latest = current.latest_assessment if current else None
        return {
            "status": "healthy" if current is not None else "starting",
            "monitor_running": bool(current and current.running),
            "latest_snapshot_id": latest.snapshot_id if latest else None,
            "degraded": latest.degraded if latest else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/assessment/latest")
    def latest_assessment():
        assessment = get_monitor().latest_assessment
        if assessment is None:
            raise HTTPException(status_code=404, detail="No assessment published yet")
        return assessment.to_dict()

    @app.get("/api/suggestions/latest")
    def latest_suggestions():
        return [s.to_dict() for s in get_monitor().latest_suggestions]

    @app.post("/api/cycle/trigger", status_code=202)
    def trigger_cycle(request: Optional[TriggerRequest] = None):
        outcome = get_monitor().trigger((request or TriggerRequest()).reason)
        if outcome is None:
            return {"status": "scheduled"}
        return {
            "status": "completed",
            "published": outcome.published,
            "assessment": outcome.assessment.to_dict(),
            "alerts": [a.to_dict() for a in outcome.alerts],
        }

    @app.get("/api/alerts/active")
    def active_alerts(
        kind: Optional[List[str]] = Query(None),
        min_severity: Optional[str] = None,
        entity_id: Optional[str] = None,
        status: Optional[List[str]] = Query(None),
    ):
        try:
            filters = AlertFilter(
                kinds=tuple(AlertKind(k) for k in kind or ()),
                min_severity=Severity(min_severity) if min_severity else None,
                entity_id=entity_id,
                statuses=tuple(AlertStatus(s) for s in status) if status else AlertFilter().statuses,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return [a.to_dict() for a in get_monitor().alert_manager.get_active_alerts(filters)]

    @app.get("/api/alerts/history")
    def alert_history(start: Optional[datetime] = None, end: Optional[datetime] = None):
        start, end = _as_utc(start), _as_utc(end)
        if start and end and start > end:
            raise HTTPException(status_code=422, detail="start must not be after end")
        return [a.to_dict() for a in get_monitor().alert_manager.get_alert_history(start, end)]

    @app.get("/api/alerts/{alert_id}")
    def get_alert(alert_id: str):
        return get_monitor().alert_manager.get_alert(alert_id).to_dict()

    @app.post("/api/alerts/{alert_id}/acknowledge")
    def acknowledge_alert(alert_id: str, request: AcknowledgeRequest):
        return get_monitor().alert_manager.acknowledge(alert_id, request.operator_id).to_dict()

    @app.post("/api/alerts/{alert_id}/resolve")
    def resolve_alert(alert_id: str, request: ResolveRequest):
        resolution = Resolution(
            actions=tuple(request.actions),
            notes=request.notes,
            resolved_by=request.resolved_by,
        )
        return get_monitor().alert_manager.resolve(alert_id, resolution).to_dict()

    @app.get("/api/rules")
    def list_rules():
        engine = get_monitor().orchestrator.rule_engine
        return {
            "ruleset_version": engine.ruleset_version,
            "ruleset_revision": engine.ruleset_revision,
            "rules": engine.list_rules(),
        }

    @app.get("/api/statistics")
    def statistics():
        return get_monitor().get_statistics()

    return app
