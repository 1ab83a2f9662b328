"""
TaskGrid HTTP API

FastAPI application exposing the scheduler:
  GET  /health                               — Liveness plus container status
  POST /api/tasks                            — Create a task
  GET  /api/tasks                            — List tasks (optional ?status=)
  GET  /api/tasks/{id}                       — Get a task
  POST /api/tasks/{id}/complete              — Mark a task completed
  POST /api/tasks/{id}/fail                  — Mark a task failed
  POST /api/tasks/{id}/retry                 — Send a failed task back to ready
  POST /api/tasks/{id}/assign                — Manually assign to an agent
  POST /api/tasks/{id}/conflict              — Resolve a recorded conflict
  POST /api/tasks/{id}/dependencies          — Add a hard dependency
  DELETE /api/tasks/{id}/dependencies/{dep}  — Remove a hard dependency
  GET  /api/tasks/{id}/events                — SSE stream of the task's lifecycle
  DELETE /api/tasks                          — Clear completed (or ?all=true) tasks
  POST /api/agents                           — Register an agent
  GET  /api/agents                           — List agents
  POST /api/agents/{id}/status               — Change an agent's status
  GET  /api/queue                            — Queued tasks in dequeue order
  GET  /api/stats                            — Scheduler statistics
  POST /api/reconcile                        — Run a reconciliation pass
  POST /api/rebalance                        — Run a load-balancing pass
  GET  /api/errors                           — Recently handled scheduler errors
  GET  /api/notifications                    — Operator notifications
  POST /api/notifications/{id}/read          — Mark a notification read
  POST /api/notifications/read-all           — Mark every notification read
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from taskgrid.api.request_id import RequestIdFilter, RequestIDMiddleware
from taskgrid.config.settings import get_settings
from taskgrid.di_container import get_container, shutdown_container
from taskgrid.enhanced_logging import configure_logging
from taskgrid.exceptions_unified import (
    AgentNotFoundError,
    InvalidTransitionError,
    TaskGridException,
    TaskNotFoundError,
)
from taskgrid.interfaces.agent_pool import Agent, AgentStatus
from taskgrid.interfaces.event_bus import EventType, IEventBus
from taskgrid.notifications.notification_service import Severity
from taskgrid.scheduling.models import ConflictResolution, TaskConfig, TaskPriority, TaskStatus

logger = logging.getLogger(__name__)

# Events forwarded on a task's SSE stream
TASK_STREAM_EVENTS = (
    EventType.TASK_STATE_CHANGED,
    EventType.TASK_MATCH_SCORE,
    EventType.TASK_PRIORITY_UPDATED,
    EventType.TASK_REASSIGNED,
    EventType.TASK_CONFLICT_DETECTED,
    EventType.TASK_CONFLICT_RESOLVED,
    EventType.TASK_DEPENDENCY_RESOLVED,
)

TERMINAL_STATUSES = {TaskStatus.COMPLETED.value, TaskStatus.FAILED.value}


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------


class TaskCreateRequest(BaseModel):
    title: str
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    task_id: Optional[str] = None
    files: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    prefers: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    required_capabilities: List[str] = Field(default_factory=list)
    estimated_duration: Optional[float] = Field(default=None, ge=0)

    def to_config(self) -> TaskConfig:
        return TaskConfig(
            title=self.title,
            description=self.description,
            priority=self.priority,
            task_id=self.task_id,
            files=list(self.files),
            depends_on=list(self.depends_on),
            prefers=list(self.prefers),
            tags=set(self.tags),
            required_capabilities=set(self.required_capabilities),
            estimated_duration=self.estimated_duration,
        )


class AgentCreateRequest(BaseModel):
    id: str
    name: str = ""
    capabilities: List[str] = Field(default_factory=list)
    status: AgentStatus = AgentStatus.IDLE
    max_capacity: int = Field(default=1, ge=1)
    specialization: Optional[str] = None
    agent_type: Optional[str] = None


class AgentStatusRequest(BaseModel):
    status: AgentStatus


class ConflictResolveRequest(BaseModel):
    resolution: ConflictResolution


class DependencyRequest(BaseModel):
    depends_on: str


class FailRequest(BaseModel):
    reason: Optional[str] = None


class AssignRequest(BaseModel):
    agent_id: str


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format, filters=[RequestIdFilter()])
    logger.info("%s %s starting (%s)", settings.app_name, settings.app_version, settings.environment)
    container = get_container()
    await container.start()
    yield
    await container.stop()
    shutdown_container()
    logger.info("%s shutting down", settings.app_name)


app = FastAPI(
    title="TaskGrid",
    version="0.1.0",
    description="TaskGrid — task scheduling and assignment engine",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(TaskGridException)
async def taskgrid_exception_handler(request: Request, exc: TaskGridException):
    logger.warning(
        "%s: %s",
        exc.category.value,
        exc.message,
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_api_response())


def _require_task(task_id: str):
    task = get_container().scheduler.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def _rejected(action: str, task_id: str) -> InvalidTransitionError:
    task = get_container().scheduler.get_task(task_id)
    status = task.status.value if task else "unknown"
    return InvalidTransitionError(
        f"Cannot {action} task {task_id} in status {status}",
        details={"task_id": task_id, "status": status},
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Health check — reports scheduler state."""
    container = get_container()
    scheduler = container.scheduler
    return {
        "status": "healthy" if scheduler.is_running else "starting",
        "scheduler_running": scheduler.is_running,
        "services": container.status(),
    }


# --- Tasks ---


@app.post("/api/tasks", status_code=201)
async def create_task(req: TaskCreateRequest):
    """Create a task; it is routed, queued and reconciled immediately."""
    task = await get_container().scheduler.add_task(req.to_config())
    return task.to_dict()


@app.get("/api/tasks")
async def list_tasks(status: Optional[str] = None):
    scheduler = get_container().scheduler
    status_filter = None
    if status:
        try:
            status_filter = TaskStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    tasks = scheduler.get_tasks(status_filter)
    return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: str):
    task = _require_task(task_id)
    body = task.to_dict()
    body["dependents"] = [t.id for t in get_container().scheduler.get_dependent_tasks(task_id)]
    return body


@app.delete("/api/tasks")
async def clear_tasks(all: bool = False):
    """Drop completed tasks, or every task with ``?all=true``."""
    scheduler = get_container().scheduler
    if all:
        removed = await scheduler.clear_all_tasks()
    else:
        removed = await scheduler.clear_completed()
    return {"removed": removed}


@app.post("/api/tasks/{task_id}/complete")
async def complete_task(task_id: str):
    _require_task(task_id)
    if not await get_container().scheduler.complete_task(task_id):
        raise _rejected("complete", task_id)
    return _require_task(task_id).to_dict()


@app.post("/api/tasks/{task_id}/fail")
async def fail_task(task_id: str, req: FailRequest):
    _require_task(task_id)
    if not await get_container().scheduler.fail_task(task_id, req.reason):
        raise _rejected("fail", task_id)
    return _require_task(task_id).to_dict()


@app.post("/api/tasks/{task_id}/retry")
async def retry_task(task_id: str):
    _require_task(task_id)
    if not await get_container().scheduler.retry_task(task_id):
        raise _rejected("retry", task_id)
    return _require_task(task_id).to_dict()


@app.post("/api/tasks/{task_id}/assign")
async def assign_task(task_id: str, req: AssignRequest):
    """Manually assign a ready task to a specific agent."""
    _require_task(task_id)
    container = get_container()
    if container.agent_pool.get_agent(req.agent_id) is None:
        raise AgentNotFoundError(req.agent_id)
    if not await container.scheduler.assign_task(task_id, req.agent_id):
        raise _rejected("assign", task_id)
    return _require_task(task_id).to_dict()


@app.post("/api/tasks/{task_id}/conflict")
async def resolve_conflict(task_id: str, req: ConflictResolveRequest):
    _require_task(task_id)
    scheduler = get_container().scheduler
    if not await scheduler.resolve_conflict(task_id, req.resolution):
        raise HTTPException(status_code=404, detail=f"No conflict recorded for task {task_id}")
    return _require_task(task_id).to_dict()


@app.post("/api/tasks/{task_id}/dependencies")
async def add_dependency(task_id: str, req: DependencyRequest):
    _require_task(task_id)
    if not await get_container().scheduler.add_task_dependency(task_id, req.depends_on):
        raise HTTPException(
            status_code=409,
            detail=f"Dependency {task_id} -> {req.depends_on} rejected (duplicate or cycle)",
        )
    return _require_task(task_id).to_dict()


@app.delete("/api/tasks/{task_id}/dependencies/{depends_on}")
async def remove_dependency(task_id: str, depends_on: str):
    _require_task(task_id)
    if not await get_container().scheduler.remove_task_dependency(task_id, depends_on):
        raise HTTPException(status_code=404, detail=f"Task {task_id} does not depend on {depends_on}")
    return _require_task(task_id).to_dict()


async def task_event_stream(
    event_bus: IEventBus,
    task_id: str,
    keepalive: float = 30.0,
) -> AsyncIterator[Dict[str, Any]]:
    """Subscribe to *task_id*'s events and return an SSE payload iterator.

    Subscriptions are taken before this returns, so events published between
    the call and the first read are buffered.  The iterator ends once the task
    reaches a terminal state.
    """
    events: asyncio.Queue = asyncio.Queue()

    def forward(event_type: EventType):
        async def on_event(data: Dict[str, Any]) -> None:
            if data.get("task_id") == task_id:
                await events.put((event_type.value, data))
        return on_event

    subscriptions = [await event_bus.subscribe(et, forward(et)) for et in TASK_STREAM_EVENTS]

    async def payloads() -> AsyncIterator[Dict[str, Any]]:
        try:
            while True:
                try:
                    name, data = await asyncio.wait_for(events.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield {"event": "ping", "data": ""}
                    continue
                yield {"event": name, "data": json.dumps(data, default=str)}
                if data.get("new_state") in TERMINAL_STATUSES:
                    break
        finally:
            for sub in subscriptions:
                await sub.unsubscribe()

    return payloads()


@app.get("/api/tasks/{task_id}/events")
async def stream_task_events(task_id: str):
    """Stream a task's lifecycle events as Server-Sent Events."""
    task = _require_task(task_id)
    if task.status.value in TERMINAL_STATUSES:
        async def done_generator():
            yield {"event": "done", "data": json.dumps(task.to_dict())}

        return EventSourceResponse(done_generator())

    stream = await task_event_stream(get_container().event_bus, task_id)
    return EventSourceResponse(stream)


# --- Agents ---


@app.post("/api/agents", status_code=201)
async def register_agent(req: AgentCreateRequest):
    agent = Agent(
        id=req.id,
        name=req.name,
        capabilities=list(req.capabilities),
        status=req.status,
        max_capacity=req.max_capacity,
        specialization=req.specialization,
        agent_type=req.agent_type,
    )
    try:
        await get_container().agent_pool.register_agent(agent)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return agent.to_dict()


@app.get("/api/agents")
async def list_agents():
    agents = get_container().agent_pool.list_agents()
    return {"agents": [a.to_dict() for a in agents], "total": len(agents)}


@app.post("/api/agents/{agent_id}/status")
async def set_agent_status(agent_id: str, req: AgentStatusRequest):
    agent = await get_container().agent_pool.set_status(agent_id, req.status)
    return agent.to_dict()


# --- Scheduler ---


@app.get("/api/queue")
async def get_queue():
    scheduler = get_container().scheduler
    return {
        "tasks": [t.to_dict() for t in scheduler.get_queued_tasks()],
        "stats": scheduler.queue.stats,
    }


@app.get("/api/stats")
async def get_stats():
    container = get_container()
    return {
        "tasks": container.scheduler.get_task_stats(),
        "scheduler": container.scheduler.stats,
        "agents": container.agent_pool.stats,
        "events": container.event_bus.stats,
        "notifications": container.notification_service.stats,
    }


@app.post("/api/reconcile")
async def reconcile():
    """Run one reconciliation pass and report how many tasks were assigned."""
    assigned = await get_container().scheduler.try_assign_tasks()
    return {"assigned": assigned}


@app.post("/api/rebalance")
async def rebalance():
    moved = await get_container().scheduler.reassign_for_load_balancing()
    return {"reassigned": moved}


@app.get("/api/errors")
async def list_errors():
    """Errors the scheduler recovered from, oldest first."""
    handler = get_container().error_handler
    return {"errors": handler.recent, "total": handler.error_count}


# --- Notifications ---


@app.get("/api/notifications")
async def list_notifications(
    severity: Optional[str] = None,
    unread_only: bool = False,
    limit: int = 50,
):
    """List operator notifications, newest first."""
    svc = get_container().notification_service
    sev = None
    if severity:
        try:
            sev = Severity(severity)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid severity: {severity}")

    items = await svc.list(severity=sev, read=False if unread_only else None, limit=limit)
    return {
        "notifications": [n.to_dict() for n in items],
        "total": await svc.count(),
        "unread": await svc.count_unread(),
    }


@app.post("/api/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str):
    found = await get_container().notification_service.mark_read(notification_id)
    if not found:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"status": "read", "notification_id": notification_id}


@app.post("/api/notifications/read-all")
async def mark_all_notifications_read():
    changed = await get_container().notification_service.mark_all_read()
    return {"marked": changed}
