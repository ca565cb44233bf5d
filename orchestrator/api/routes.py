"""
REST API routes for the Vibe executor.

Endpoints:
    POST   /api/projects             — Register a project
    GET    /api/projects             — List projects
    GET    /api/projects/{id}        — Get project details
    DELETE /api/projects/{id}        — Delete a project (its jobs are kept)
    GET    /api/projects/{id}/jobs   — Jobs run against a project
    POST   /api/jobs                 — Submit a new job
    GET    /api/jobs                 — List recent jobs
    GET    /api/jobs/queued          — Jobs waiting for a worker, FIFO
    GET    /api/jobs/{id}            — Get job details
    DELETE /api/jobs/{id}            — Request cancellation
    GET    /api/jobs/{id}/diff       — Last generated diff
    GET    /api/jobs/{id}/events     — Persisted events
    GET    /api/jobs/{id}/logs       — Server-Sent Events log stream
    GET    /api/health               — Health check
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse

from orchestrator.api.auth import require_api_key
from orchestrator.models.project import Project, ProjectCreate
from orchestrator.models.task import ExecutionState, Task, TaskCreate, TaskListResponse, TaskResponse
from orchestrator.services.config import get_settings
from orchestrator.services.log_hub import completion_payload

router = APIRouter()

# seconds between SSE keep-alive comments while a job is quiet
HEARTBEAT_SECONDS = 15.0

# These will be injected by the app factory
_store = None
_task_queue = None
_log_hub = None

_auth = [Depends(require_api_key)]


def set_dependencies(store, task_queue, log_hub):
    global _store, _task_queue, _log_hub
    _store = store
    _task_queue = task_queue
    _log_hub = log_hub


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    return x_tenant_id or get_settings().default_tenant_id


def _require_store():
    if _store is None:
        raise HTTPException(status_code=503, detail="Task store not initialized")
    return _store


def _require_queue():
    if _task_queue is None:
        raise HTTPException(status_code=503, detail="Task queue not initialized")
    return _task_queue


def _task_to_response(task: Task) -> TaskResponse:
    """Convert a Task model to a TaskResponse."""
    return TaskResponse.model_validate(task.model_dump())


async def _get_task_for_tenant(task_id: str, tenant_id: str) -> Task:
    task = await _require_store().get_task(task_id)
    # another tenant's job is indistinguishable from a missing one
    if task is None or task.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return task


# ── Project endpoints ─────────────────────────────────────────────


@router.post("/api/projects", response_model=Project, status_code=201, dependencies=_auth)
async def create_project(body: ProjectCreate):
    """Register a repository that jobs can target by project_id."""
    store = _require_store()
    project = Project(name=body.name, repository_url=body.repository_url)
    project.local_path = str(Path(get_settings().repos_base_dir) / project.id)
    return await store.create_project(project)


@router.get("/api/projects", response_model=list[Project], dependencies=_auth)
async def list_projects():
    return await _require_store().list_projects()


@router.get("/api/projects/{project_id}", response_model=Project, dependencies=_auth)
async def get_project(project_id: str):
    project = await _require_store().get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@router.delete("/api/projects/{project_id}", dependencies=_auth)
async def delete_project(project_id: str):
    """Delete a project. Jobs that ran against it are kept with project_id cleared."""
    if not await _require_store().delete_project(project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    return {"status": "deleted", "id": project_id}


@router.get("/api/projects/{project_id}/jobs", response_model=TaskListResponse, dependencies=_auth)
async def list_project_jobs(
    project_id: str,
    limit: int = Query(20, ge=1, le=100),
    tenant_id: str = Depends(get_tenant_id),
):
    store = _require_store()
    if not await store.get_project(project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    tasks = [t for t in await store.list_tasks_by_project(project_id, limit=limit) if t.tenant_id == tenant_id]
    return TaskListResponse(tasks=[_task_to_response(t) for t in tasks], total=len(tasks))


# ── Job endpoints ─────────────────────────────────────────────────


@router.post("/api/jobs", response_model=TaskResponse, status_code=201, dependencies=_auth)
async def create_job(body: TaskCreate, tenant_id: str = Depends(get_tenant_id)):
    """Submit a new job to the executor queue.

    The job targets either a registered project or a repository URL.
    Returns immediately with ``execution_state: queued``; follow progress
    through ``/api/jobs/{id}/logs``.
    """
    store = _require_store()
    queue = _require_queue()

    repository_url = body.repository_url
    if body.project_id:
        project = await store.get_project(body.project_id)
        if not project:
            raise HTTPException(status_code=404, detail="Project not found")
        repository_url = project.repository_url

    task = Task(
        user_prompt=body.prompt,
        project_id=body.project_id,
        repository_url=repository_url,
        source_branch=body.source_branch,
        destination_branch=body.destination_branch or "",
        tenant_id=tenant_id,
        llm_provider=body.llm_provider,
        llm_model=body.llm_model,
    )
    await queue.submit(task)
    return _task_to_response(task)


@router.get("/api/jobs", response_model=TaskListResponse, dependencies=_auth)
async def list_jobs(
    limit: int = Query(20, ge=1, le=100),
    tenant_id: str = Depends(get_tenant_id),
):
    """List the tenant's most recent jobs, newest first."""
    tasks = await _require_store().list_recent_tasks(limit=limit, tenant_id=tenant_id)
    return TaskListResponse(tasks=[_task_to_response(t) for t in tasks], total=len(tasks))


@router.get("/api/jobs/queued", response_model=TaskListResponse, dependencies=_auth)
async def list_queued_jobs(tenant_id: str = Depends(get_tenant_id)):
    """Jobs waiting for a worker, in dispatch order."""
    tasks = await _require_store().list_queued_tasks(tenant_id=tenant_id)
    return TaskListResponse(tasks=[_task_to_response(t) for t in tasks], total=len(tasks))


@router.get("/api/jobs/{task_id}", response_model=TaskResponse, dependencies=_auth)
async def get_job(task_id: str, tenant_id: str = Depends(get_tenant_id)):
    return _task_to_response(await _get_task_for_tenant(task_id, tenant_id))


@router.delete("/api/jobs/{task_id}", dependencies=_auth)
async def cancel_job(task_id: str, tenant_id: str = Depends(get_tenant_id)):
    """Request cancellation of a queued or running job.

    The worker honours the request at the next iteration boundary and the
    job ends ``failed`` with "Cancelled by user".
    """
    queue = _require_queue()
    task = await _get_task_for_tenant(task_id, tenant_id)

    if task.execution_state.is_terminal:
        raise HTTPException(status_code=409, detail=f"Job already {task.execution_state.value}")

    if not await queue.cancel_task(task_id):
        raise HTTPException(status_code=409, detail="Job can no longer be cancelled")
    return {"status": "cancellation_requested", "task_id": task_id}


@router.get("/api/jobs/{task_id}/diff", dependencies=_auth)
async def get_job_diff(task_id: str, tenant_id: str = Depends(get_tenant_id)):
    """The diff that passed preflight (or the last one attempted)."""
    task = await _get_task_for_tenant(task_id, tenant_id)
    return {"task_id": task_id, "diff": task.last_diff, "files_changed_count": task.files_changed_count}


@router.get("/api/jobs/{task_id}/events", dependencies=_auth)
async def get_job_events(task_id: str, tenant_id: str = Depends(get_tenant_id)):
    await _get_task_for_tenant(task_id, tenant_id)
    events = await _require_store().list_events(task_id)
    return {"task_id": task_id, "events": [e.model_dump(mode="json") for e in events]}


@router.get("/api/jobs/{task_id}/logs", dependencies=_auth)
async def stream_job_logs(
    task_id: str,
    tenant_id: str = Depends(get_tenant_id),
    last_event_id: Optional[int] = Header(default=None),
):
    """Stream the job's events as Server-Sent Events.

    Stored events are replayed first, then live ones follow until the job
    reaches a terminal state and a ``{"type": "complete"}`` message is sent.
    Reconnecting clients resume after ``Last-Event-ID``.
    """
    await _get_task_for_tenant(task_id, tenant_id)
    if _log_hub is None:
        raise HTTPException(status_code=503, detail="Log hub not initialized")

    return StreamingResponse(
        _event_stream(task_id, last_event_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _sse(payload: dict) -> str:
    event_id = payload.get("event_id")
    prefix = f"id: {event_id}\n" if event_id is not None else ""
    return f"{prefix}data: {json.dumps(payload)}\n\n"


async def _event_stream(task_id: str, after_id: Optional[int] = None) -> AsyncIterator[str]:
    store = _require_store()
    # subscribe before replaying so nothing published in between is lost
    async with _log_hub.subscribe(task_id) as queue:
        seen = after_id or 0
        for event in await store.list_events(task_id, after_id=after_id):
            yield _sse(event.to_stream_payload())
            seen = max(seen, event.event_id or 0)

        while True:
            task = await store.get_task(task_id)
            state = task.execution_state if task else ExecutionState.FAILED
            if state.is_terminal and queue.empty():
                completion = completion_payload(state)
                break

            try:
                payload = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue

            if payload.get("type") == "complete":
                completion = payload
                break
            if (payload.get("event_id") or 0) <= seen:
                continue
            seen = payload["event_id"]
            yield _sse(payload)

        # stored but never received live: written after the last read, or dropped by a full queue
        for event in await store.list_events(task_id, after_id=seen):
            yield _sse(event.to_stream_payload())
        yield _sse(completion)


# ── Health check ──────────────────────────────────────────────────


@router.get("/api/health")
async def health_check():
    """System health check."""
    return {
        "status": "healthy",
        "store_connected": _store is not None,
        "queue_connected": _task_queue is not None,
        "active_jobs": len(_task_queue.active_task_ids) if _task_queue is not None else 0,
    }
