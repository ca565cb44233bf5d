"""
Main FastAPI application — the entry point for the Vibe executor.

Wires together:
- REST API routes (projects, jobs, SSE logs, health)
- SQLite task store and event log
- Log hub (live event fan-out to SSE subscribers)
- Task pipeline and worker pool (prompt → diff → preflight → PR)
- Static preview hosting under /previews
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from git_integration.git_manager import GitManager
from orchestrator.api.routes import router, set_dependencies
from orchestrator.services.config import get_settings
from orchestrator.services.log_hub import EventLog, LogHub
from orchestrator.services.pipeline import TaskPipeline, TaskQueue
from orchestrator.services.store import TaskStore

logger = structlog.get_logger()


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog once for the whole process. Production logs are JSON lines."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.is_production)
    Path(settings.previews_dir).mkdir(parents=True, exist_ok=True)

    # Initialize components
    store = TaskStore(settings.database_path)
    log_hub = LogHub()
    events = EventLog(store, log_hub)
    git_manager = GitManager(settings=settings)

    pipeline = TaskPipeline(store=store, events=events, git_manager=git_manager, settings=settings)
    task_queue = TaskQueue(pipeline=pipeline, store=store, events=events, settings=settings)

    # Wire up dependencies
    set_dependencies(store, task_queue, log_hub)

    # Start services (recovers queued and interrupted jobs first)
    await task_queue.start()

    # ── Production safety checks ─────────────────────────────────
    for w in settings.validate_production_settings():
        await logger.awarning(w)

    # ── Required API key checks ───────────────────────────────────
    for w in settings.validate_required_keys():
        await logger.awarning("Configuration warning", message=w)

    await logger.ainfo(
        "Vibe executor started",
        env=settings.env,
        workers=settings.worker_pool_size,
        llm_provider=settings.llm_provider,
        max_iterations=settings.max_iterations,
        database=settings.database_path,
    )

    yield

    # Shutdown
    await task_queue.stop()
    await git_manager.close()
    set_dependencies(None, None, None)
    store.close()
    await logger.ainfo("Vibe executor shut down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Vibe Executor",
        description="Vibe — prompt-to-pull-request code change executor",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS: restrict origins, override with VIBE_CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Tenant-ID", "Last-Event-ID"],
    )

    # API routes
    app.include_router(router)

    # Built previews, one directory per job
    app.mount(
        "/previews",
        StaticFiles(directory=settings.previews_dir, html=True, check_dir=False),
        name="previews",
    )

    return app


# For running with uvicorn directly
app = create_app()


def main() -> None:
    """Run the API server with the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "orchestrator.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
