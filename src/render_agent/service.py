"""
Render Agent HTTP Service

FastAPI-based HTTP service exposing the render queue to the desktop UI:
- GET    /health                           - Health check
- GET    /status                           - Queue status summary
- GET    /engine                           - Resolved engine path and version
- GET    /jobs                             - List jobs (optional ?status=)
- POST   /jobs                             - Queue a job (command or parameters)
- GET    /jobs/{id}                        - Job details
- PATCH  /jobs/{id}                        - Edit a pending/scheduled job
- DELETE /jobs/{id}                        - Remove a non-running job
- POST   /jobs/{id}/priority               - Change priority
- POST   /jobs/{id}/dependencies/{dep}     - Add dependency
- DELETE /jobs/{id}/dependencies/{dep}     - Remove dependency
- POST   /jobs/{id}/schedule               - Set earliest start time
- DELETE /jobs/{id}/schedule               - Clear start time
- POST   /jobs/{id}/cancel                 - Stop a running job (back to pending, held)
- POST   /jobs/{id}/reset                  - Requeue a finished or held job
- POST   /jobs/{id}/release                - Clear the hold left by a cancel
- POST   /queue/start                      - Start processing
- POST   /queue/stop                       - Stop processing and running renders
- GET    /settings, PATCH /settings        - Queue settings
- GET    /history, DELETE /history         - Render history
- GET    /events?since=N                   - Buffered events after sequence N

Errors: unknown job -> 404, wrong job state -> 409, invalid value -> 400.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .command import assemble_command
from .config import AgentConfig
from .discovery import query_engine_version, resolve_engine_path
from .errors import DependencyError, JobNotFoundError, JobStateError, SpawnError
from .events import EventBus, EventLog
from .history import RenderHistory
from .models import JobStatus
from .process_supervisor import ProcessSupervisor
from .scheduler import QueueScheduler
from .store import JsonFileStore

logger = logging.getLogger(__name__)


# Pydantic models for API
class CreateJobRequest(BaseModel):
    """Request body for queueing a job. Either command or parameters is required."""
    command: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    name: str = ""
    priority: Optional[int] = None
    dependencies: List[str] = Field(default_factory=list)
    scheduled_time: Optional[datetime] = None
    output_path: Optional[str] = None


class UpdateJobRequest(BaseModel):
    """Request body for editing a job; only the fields sent are changed"""
    name: Optional[str] = None
    command: Optional[str] = None
    priority: Optional[int] = None
    dependencies: Optional[List[str]] = None
    scheduled_time: Optional[datetime] = None
    parameters: Optional[Dict[str, Any]] = None
    output_path: Optional[str] = None


class PriorityRequest(BaseModel):
    priority: int


class ScheduleRequest(BaseModel):
    scheduled_time: datetime


class SettingsUpdateRequest(BaseModel):
    auto_start: Optional[bool] = None
    max_concurrent: Optional[int] = None
    default_priority: Optional[int] = None
    default_output_path: Optional[str] = None


def build_scheduler(config: AgentConfig, bus: Optional[EventBus] = None) -> QueueScheduler:
    """Wire supervisor, store and history for one agent process."""
    Path(config.data_root).mkdir(parents=True, exist_ok=True)
    store = JsonFileStore(config.store_path)
    return QueueScheduler(
        supervisor=ProcessSupervisor(terminate_timeout=config.queue.terminate_timeout),
        store=store,
        bus=bus or EventBus(),
        history=RenderHistory(store, limit=config.queue.history_limit),
        poll_interval=config.queue.poll_interval,
        flush_delay=config.queue.flush_delay,
    )


def get_scheduler(request: Request) -> QueueScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise RuntimeError("Render queue not initialized")
    return scheduler


def get_event_log(request: Request) -> EventLog:
    return request.app.state.event_log


router = APIRouter()


# ============== Job APIs ==============

@router.get("/jobs")
async def list_jobs(request: Request, status: Optional[str] = None):
    """List jobs in queue order, optionally filtered by status."""
    scheduler = get_scheduler(request)

    filter_status = None
    if status:
        try:
            filter_status = JobStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    return [job.to_dict() for job in scheduler.list_jobs(filter_status)]


@router.post("/jobs", status_code=201)
async def create_job(request: Request, body: CreateJobRequest):
    """
    Queue a new render job.

    When no command is given, it is assembled from `parameters` using the
    configured (or discovered) engine executable.
    """
    scheduler = get_scheduler(request)
    config: AgentConfig = request.app.state.config

    command = body.command
    if not command:
        if not body.parameters:
            raise HTTPException(status_code=400, detail="Either command or parameters is required")
        engine_path = resolve_engine_path(config.engine.engine_path)
        if engine_path is None:
            raise HTTPException(status_code=400, detail="Blender executable not found")
        command = assemble_command(engine_path, body.parameters)

    job = scheduler.add_job(
        command=command,
        name=body.name,
        priority=body.priority,
        dependencies=body.dependencies,
        scheduled_time=body.scheduled_time,
        parameters=body.parameters,
        output_path=body.output_path,
    )
    return job.to_dict()


@router.get("/jobs/{job_id}")
async def get_job(request: Request, job_id: str):
    job = get_scheduler(request).get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job.to_dict()


@router.patch("/jobs/{job_id}")
async def update_job(request: Request, job_id: str, body: UpdateJobRequest):
    changes = body.model_dump(exclude_unset=True)
    return get_scheduler(request).update_job(job_id, **changes).to_dict()


@router.delete("/jobs/{job_id}")
async def remove_job(request: Request, job_id: str):
    get_scheduler(request).remove_job(job_id)
    return {"status": "removed", "job_id": job_id}


@router.post("/jobs/{job_id}/priority")
async def set_priority(request: Request, job_id: str, body: PriorityRequest):
    return get_scheduler(request).set_priority(job_id, body.priority).to_dict()


@router.post("/jobs/{job_id}/dependencies/{dependency_id}")
async def add_dependency(request: Request, job_id: str, dependency_id: str):
    return get_scheduler(request).add_dependency(job_id, dependency_id).to_dict()


@router.delete("/jobs/{job_id}/dependencies/{dependency_id}")
async def remove_dependency(request: Request, job_id: str, dependency_id: str):
    return get_scheduler(request).remove_dependency(job_id, dependency_id).to_dict()


@router.post("/jobs/{job_id}/schedule")
async def schedule_job(request: Request, job_id: str, body: ScheduleRequest):
    return get_scheduler(request).schedule_job(job_id, body.scheduled_time).to_dict()


@router.delete("/jobs/{job_id}/schedule")
async def cancel_schedule(request: Request, job_id: str):
    return get_scheduler(request).cancel_schedule(job_id).to_dict()


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(request: Request, job_id: str):
    """Stop a running job. It returns to pending and is held until released."""
    job = await get_scheduler(request).cancel(job_id)
    return job.to_dict()


@router.post("/jobs/{job_id}/reset")
async def reset_job(request: Request, job_id: str):
    return get_scheduler(request).reset_job(job_id).to_dict()


@router.post("/jobs/{job_id}/release")
async def release_job(request: Request, job_id: str):
    return get_scheduler(request).release_job(job_id).to_dict()


# ============== Queue APIs ==============

@router.post("/queue/start")
async def start_queue(request: Request):
    scheduler = get_scheduler(request)
    started = scheduler.start_processing()
    return {"status": "started" if started else "already_running", "queue": scheduler.queue_status()}


@router.post("/queue/stop")
async def stop_queue(request: Request):
    scheduler = get_scheduler(request)
    stopped = await scheduler.stop_processing()
    return {"status": "stopped", "stopped_sessions": stopped, "queue": scheduler.queue_status()}


@router.post("/queue/reset")
async def reset_queue(request: Request):
    """Requeue every finished or held job."""
    count = get_scheduler(request).reset_all()
    return {"status": "ok", "reset": count}


@router.get("/settings")
async def get_settings(request: Request):
    return get_scheduler(request).settings.to_dict()


@router.patch("/settings")
async def update_settings(request: Request, body: SettingsUpdateRequest):
    changes = body.model_dump(exclude_unset=True)
    return get_scheduler(request).update_settings(**changes).to_dict()


# ============== History / Events ==============

@router.get("/history")
async def list_history(request: Request, limit: Optional[int] = None):
    """Render history, most recent first."""
    records = get_scheduler(request).history.records(limit)
    return [r.to_dict() for r in records]


@router.delete("/history")
async def clear_history(request: Request):
    get_scheduler(request).history.clear()
    return {"status": "cleared"}


@router.get("/events")
async def list_events(request: Request, since: int = 0, limit: Optional[int] = None):
    """Buffered events with a sequence number greater than `since`."""
    return get_event_log(request).since(since, limit)


# ============== Admin APIs ==============

@router.get("/status")
async def get_status(request: Request):
    return get_scheduler(request).queue_status()


@router.get("/engine")
async def get_engine(request: Request):
    """Resolve the engine executable and query its version."""
    config: AgentConfig = request.app.state.config
    engine_path = resolve_engine_path(config.engine.engine_path)
    if engine_path is None:
        raise HTTPException(status_code=404, detail="Blender executable not found")

    try:
        version = await query_engine_version(engine_path, timeout=config.engine.version_timeout)
    except SpawnError as e:
        raise HTTPException(status_code=502, detail=e.message)

    return {"engine_path": engine_path, "version": version}


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# ============== Error mapping ==============

async def _not_found(request: Request, exc: JobNotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


async def _conflict(request: Request, exc: JobStateError):
    return JSONResponse(status_code=409, content={"detail": exc.message})


async def _bad_request(request: Request, exc: Exception):
    detail = getattr(exc, "message", None) or str(exc)
    return JSONResponse(status_code=400, content={"detail": detail})


def create_app(
    config: Optional[AgentConfig] = None,
    scheduler: Optional[QueueScheduler] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Without an explicit scheduler one is built from `config` at startup,
    restored from the store and started if `auto_start` is set.
    """
    config = config or AgentConfig.load()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown"""
        if app.state.scheduler is None:
            app.state.scheduler = build_scheduler(config)
            app.state.scheduler.load()

        queue = app.state.scheduler
        app.state.event_log.attach(queue.bus)

        logger.info("Starting Render Agent Service...")
        if queue.settings.auto_start:
            queue.start_processing()

        yield

        logger.info("Shutting down Render Agent Service...")
        await queue.shutdown()
        app.state.event_log.detach()

    app = FastAPI(
        title="Render Agent Service",
        description="HTTP API for the local render queue",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.scheduler = scheduler
    app.state.event_log = EventLog(max_entries=config.queue.event_buffer_size)

    app.add_exception_handler(JobNotFoundError, _not_found)
    app.add_exception_handler(JobStateError, _conflict)
    app.add_exception_handler(DependencyError, _bad_request)
    app.add_exception_handler(ValueError, _bad_request)
    app.include_router(router)
    return app


# ============== Entry point for standalone run ==============

def run_service(config: Optional[AgentConfig] = None, host: Optional[str] = None, port: Optional[int] = None):
    """Run the service with uvicorn"""
    import uvicorn

    config = config or AgentConfig.load()
    uvicorn.run(
        create_app(config),
        host=host or config.service.host,
        port=port or config.service.port,
    )
