"""FastAPI application entry point for the agent operations service.

This module is a thin transport adapter over the core: it wires the
components from settings during lifespan startup, maps core errors to
HTTP status codes, and adapts Event Hub subscriptions to a WebSocket.
Request validation and routing stay here; all rules live in the core.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CollectorRegistry
from pydantic import BaseModel, Field

from agent_ops.assignment.models import AssignmentResult
from agent_ops.assignment.service import WorkAssignmentService
from agent_ops.config import AgentOpsSettings, get_settings
from agent_ops.errors import AgentOpsError
from agent_ops.events.hub import EventHub, TraceFilter
from agent_ops.events.metrics import AgentOpsMetrics, MetricsSubscriber, generate_metrics_output
from agent_ops.events.models import Alert, TraceEvent, TraceEventType
from agent_ops.events.subscribers import CallbackSubscriber, LoggingSubscriber
from agent_ops.logging_config import configure_logging
from agent_ops.store.memory import InMemoryRecordStore, InMemoryTraceStore
from agent_ops.templates.models import Template
from agent_ops.templates.registry import TemplateRegistry, resolve_role_templates
from agent_ops.workers.models import AgentRole, MetricsDelta, PoolSummary, Worker
from agent_ops.workers.pool import WorkerPool
from agent_ops.workflow.engine import WorkflowEngine
from agent_ops.workflow.models import Transition, WorkItem, WorkItemStatus

logger = structlog.get_logger()


@dataclass
class Services:
    """Core components wired for one application instance."""

    settings: AgentOpsSettings
    pool: WorkerPool
    workflow: WorkflowEngine
    assignment: WorkAssignmentService
    hub: EventHub
    templates: TemplateRegistry
    metrics: AgentOpsMetrics
    database: Optional[Any] = None


# Global instance, initialized during lifespan startup
services: Optional[Services] = None


def _log_configuration(settings: AgentOpsSettings) -> None:
    """Log configuration values on startup (database URL redacted)."""
    logger.info(
        "Agent operations configuration",
        max_workers=settings.max_workers,
        context_window_limit=settings.context_window_limit,
        trace_retention_limit=settings.trace_retention_limit,
        subscriber_queue_size=settings.subscriber_queue_size,
        approval_defaults=settings.approval_defaults,
        role_templates=settings.role_templates,
        storage="postgres" if settings.database_url else "memory",
        host=settings.host,
        port=settings.port,
    )


async def build_services(
    settings: AgentOpsSettings,
    registry: Optional[CollectorRegistry] = None,
) -> Services:
    """Wire stores, pool, workflow, assignment and hub from settings.

    Args:
        settings: Validated settings.
        registry: Prometheus registry; a private one is created if None.

    Raises:
        InvalidArgumentError: If a role has no template.
        DatabaseError: If the database is configured but unreachable.
    """
    database = None
    if settings.database_url:
        from agent_ops.store.postgres import (
            PostgresDatabase,
            PostgresRecordStore,
            PostgresTraceStore,
        )

        database = PostgresDatabase(settings.database_url)
        await database.connect()
        worker_store = PostgresRecordStore(database, Worker, "worker")
        work_item_store = PostgresRecordStore(database, WorkItem, "work_item")
        template_store = PostgresRecordStore(database, Template, "template")
        trace_store = PostgresTraceStore(database)
    else:
        worker_store = InMemoryRecordStore(Worker, "worker")
        work_item_store = InMemoryRecordStore(WorkItem, "work_item")
        template_store = InMemoryRecordStore(Template, "template")
        trace_store = InMemoryTraceStore()

    metrics = AgentOpsMetrics(registry=registry or CollectorRegistry())

    hub = EventHub(
        trace_store,
        retention_limit=settings.trace_retention_limit,
        max_pending=settings.subscriber_queue_size,
    )
    hub.subscribe(LoggingSubscriber())
    hub.subscribe(MetricsSubscriber(metrics=metrics))

    templates = TemplateRegistry(template_store)
    await templates.ensure_builtin()
    role_templates = await resolve_role_templates(templates, settings.role_templates)

    pool = WorkerPool(worker_store, settings.pool_config(), hub=hub)
    await pool.load()

    workflow = WorkflowEngine(
        work_item_store,
        settings.approval_policy(),
        hub=hub,
        max_conflict_retries=settings.max_conflict_retries,
    )
    assignment = WorkAssignmentService(pool, workflow, role_templates, metrics=metrics)

    return Services(
        settings=settings,
        pool=pool,
        workflow=workflow,
        assignment=assignment,
        hub=hub,
        templates=templates,
        metrics=metrics,
        database=database,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown."""
    global services

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger.info("Agent operations service starting up")
    _log_configuration(settings)

    services = await build_services(settings)
    logger.info("Agent operations service started")

    yield

    logger.info("Agent operations service shutting down")
    await services.assignment.close()
    await services.hub.close()
    if services.database is not None:
        await services.database.disconnect()
    services = None
    logger.info("Agent operations service shutdown complete")


app = FastAPI(
    title="Agent Operations",
    description="Worker pool, approval-gated workflow and trace hub for autonomous agents",
    version="1.0.0",
    lifespan=lifespan,
)


def _services() -> Services:
    if services is None:
        raise RuntimeError("Services not initialized")
    return services


@app.exception_handler(AgentOpsError)
async def agent_ops_error_handler(request: Request, exc: AgentOpsError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": type(exc).__name__, "message": exc.message},
    )


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class SpawnRequest(BaseModel):
    template_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    context_window_limit: Optional[int] = Field(default=None, ge=1)


class WorkerAssignRequest(BaseModel):
    work_item_id: str = Field(..., min_length=1)
    role: AgentRole


class ErrorReport(BaseModel):
    message: str = Field(..., min_length=1)


class MaxWorkersRequest(BaseModel):
    max_workers: int


class TransitionRequest(BaseModel):
    target: WorkItemStatus
    approved_by: Optional[str] = None


class AssignRequest(BaseModel):
    role: AgentRole
    approved_by: Optional[str] = None


class ApprovalOverrideRequest(BaseModel):
    transition: Transition
    required: Optional[bool] = None


# ---------------------------------------------------------------------------
# Probes and metrics
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint."""
    if services is None:
        return JSONResponse(status_code=503, content={"status": "not_ready"})

    database_status = "not_configured"
    if services.database is not None:
        database_status = "healthy" if await services.database.ping() else "unhealthy"

    status = "not_ready" if database_status == "unhealthy" else "ready"
    return JSONResponse(
        status_code=200 if status == "ready" else 503,
        content={"status": status, "dependencies": {"database": database_status}},
    )


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    svc = _services()
    svc.metrics.record_pool_summary(await svc.pool.get_pool())
    return PlainTextResponse(generate_metrics_output(svc.metrics.registry))


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


@app.get("/workers", response_model=PoolSummary)
async def get_pool():
    return await _services().pool.get_pool()


@app.post("/workers", response_model=Worker, status_code=201)
async def spawn_worker(body: SpawnRequest):
    return await _services().pool.spawn(
        body.template_id, body.session_id, body.context_window_limit
    )


@app.put("/workers/max")
async def set_max_workers(body: MaxWorkersRequest):
    pool = _services().pool
    pool.set_max_workers(body.max_workers)
    return {"max_workers": pool.max_workers}


@app.get("/workers/{worker_id}", response_model=Worker)
async def get_worker(worker_id: str):
    return await _services().pool.get_worker(worker_id)


@app.post("/workers/{worker_id}/pause", response_model=Worker)
async def pause_worker(worker_id: str):
    return await _services().pool.pause(worker_id)


@app.post("/workers/{worker_id}/resume", response_model=Worker)
async def resume_worker(worker_id: str):
    return await _services().pool.resume(worker_id)


@app.post("/workers/{worker_id}/terminate", response_model=Worker)
async def terminate_worker(worker_id: str):
    return await _services().pool.terminate(worker_id)


@app.post("/workers/{worker_id}/assign", response_model=Worker)
async def assign_worker(worker_id: str, body: WorkerAssignRequest):
    return await _services().pool.assign_work(worker_id, body.work_item_id, body.role)


@app.post("/workers/{worker_id}/complete", response_model=Worker)
async def complete_worker(worker_id: str):
    return await _services().pool.complete_work(worker_id)


@app.post("/workers/{worker_id}/error", response_model=Worker)
async def report_worker_error(worker_id: str, body: ErrorReport):
    return await _services().pool.report_error(worker_id, body.message)


@app.post("/workers/{worker_id}/metrics", response_model=Worker)
async def update_worker_metrics(worker_id: str, body: MetricsDelta):
    return await _services().pool.update_metrics(worker_id, body)


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


@app.post("/work-items", response_model=WorkItem, status_code=201)
async def create_work_item(body: WorkItem):
    return await _services().workflow.create_work_item(body)


@app.get("/work-items/{item_id}", response_model=WorkItem)
async def get_work_item(item_id: str):
    return await _services().workflow.get_work_item(item_id)


@app.get("/work-items/{item_id}/workflow")
async def get_workflow_state(item_id: str):
    svc = _services()
    item = await svc.workflow.get_work_item(item_id)
    return svc.workflow.get_workflow_state(item)


@app.post("/work-items/{item_id}/transition", response_model=WorkItem)
async def transition_work_item(item_id: str, body: TransitionRequest):
    svc = _services()
    item = await svc.workflow.get_work_item(item_id)
    return await svc.workflow.execute_transition(item, body.target, body.approved_by)


@app.put("/work-items/{item_id}/approvals", response_model=WorkItem)
async def set_approval_override(item_id: str, body: ApprovalOverrideRequest):
    return await _services().workflow.set_approval_requirement(
        item_id, body.transition, body.required
    )


@app.post("/work-items/{item_id}/assign", response_model=AssignmentResult)
async def assign_work_item(item_id: str, body: AssignRequest):
    svc = _services()
    item = await svc.workflow.get_work_item(item_id)
    return await svc.assignment.assign_work(item, body.role, body.approved_by)


@app.get("/assignments/queue")
async def get_assignment_queue():
    return _services().assignment.queue_snapshot()


# ---------------------------------------------------------------------------
# Traces
# ---------------------------------------------------------------------------


@app.get("/traces", response_model=List[TraceEvent])
async def get_traces(
    worker_id: Optional[str] = None,
    work_item_id: Optional[str] = None,
    event_type: Optional[TraceEventType] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
):
    return await _services().hub.get_traces(
        TraceFilter(
            worker_id=worker_id,
            work_item_id=work_item_id,
            event_type=event_type,
            limit=limit,
            offset=offset,
        )
    )


@app.post("/traces", response_model=TraceEvent, status_code=201)
async def ingest_trace(body: TraceEvent):
    return await _services().hub.ingest(body)


@app.get("/traces/stats")
async def get_trace_stats() -> Dict[str, Any]:
    hub = _services().hub
    return {
        "by_event_type": await hub.get_trace_stats_by_event_type(),
        "tool_calls": (await hub.get_tool_call_stats()).model_dump(),
    }


@app.websocket("/ws")
async def trace_stream(
    websocket: WebSocket,
    worker_id: Optional[str] = Query(None),
    work_item_id: Optional[str] = Query(None),
):
    """Stream trace events and alerts as JSON frames.

    Frames are ``{"type": "trace" | "alert", "data": {...}}``. The
    ``worker_id`` and ``work_item_id`` query parameters narrow the stream
    to one worker or work item. Frames are sent by the hub's delivery task
    for this connection, one at a time.
    """
    hub = _services().hub

    async def on_event(event: TraceEvent) -> None:
        await websocket.send_json({"type": "trace", "data": event.model_dump(mode="json")})

    async def on_alert(alert: Alert) -> None:
        await websocket.send_json({"type": "alert", "data": alert.model_dump(mode="json")})

    await websocket.accept()
    handle = hub.subscribe(
        CallbackSubscriber(on_event=on_event, on_alert=on_alert),
        worker_id=worker_id,
        work_item_id=work_item_id,
    )
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(handle)


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "agent_ops.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
    )
