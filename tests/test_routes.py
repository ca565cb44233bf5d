"""Tests for the REST API routes.

Covers:
- Health endpoint
- Project and job endpoints (validation, 404 handling, tenant scoping)
- Cancellation conflicts
- Diff, events and the SSE log stream
- Authentication (dev mode and bearer key)

These tests use FastAPI's TestClient which runs synchronously.
The lifespan hook starts workers and opens the real database, so we
construct a minimal app and inject an in-memory store and an unstarted queue.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest

# Guard against missing test dependencies
fastapi = pytest.importorskip("fastapi")
httpx = pytest.importorskip("httpx")

from orchestrator.models.event import Severity  # noqa: E402
from orchestrator.models.task import ExecutionState, Task  # noqa: E402
from orchestrator.services.log_hub import EventLog, LogHub  # noqa: E402
from orchestrator.services.pipeline import TaskQueue  # noqa: E402

JOB = {"prompt": "Change the greeting to say Hi", "repository_url": "https://github.com/example-org/greeter"}


@pytest.fixture
def api(store, settings):
    """TestClient over the router with real store, log hub and (unstarted) queue."""
    from fastapi import FastAPI
    from fastapi.testclient import TestClient

    from orchestrator.api.routes import router, set_dependencies

    app = FastAPI()
    app.include_router(router)

    hub = LogHub()
    queue = TaskQueue(MagicMock(), store, EventLog(store, hub), worker_count=1, settings=settings)
    set_dependencies(store, queue, hub)

    with patch("orchestrator.api.routes.get_settings", return_value=settings), patch(
        "orchestrator.api.auth.get_settings", return_value=settings
    ):
        yield TestClient(app, raise_server_exceptions=False), queue

    set_dependencies(None, None, None)


@pytest.fixture
def client(api):
    return api[0]


def _fail(store, task_id: str) -> None:
    asyncio.run(store.update_task(task_id, execution_state=ExecutionState.FAILED, error_message="boom"))


class TestHealthEndpoint:
    def test_health_with_dependencies(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy", "store_connected": True, "queue_connected": True, "active_jobs": 0}

    def test_health_without_dependencies(self, client):
        from orchestrator.api.routes import set_dependencies

        set_dependencies(None, None, None)
        resp = client.get("/api/health")
        assert resp.json()["store_connected"] is False

    def test_endpoints_503_when_not_initialized(self, client):
        from orchestrator.api.routes import set_dependencies

        set_dependencies(None, None, None)
        assert client.get("/api/jobs").status_code == 503
        assert client.post("/api/jobs", json=JOB).status_code == 503


class TestJobEndpoints:
    def test_create_job(self, client, store):
        resp = client.post("/api/jobs", json=JOB)

        assert resp.status_code == 201
        data = resp.json()
        assert data["execution_state"] == "queued"
        assert data["user_prompt"] == JOB["prompt"]
        assert data["destination_branch"] == f"vibe/{data['task_id'][:8]}"
        assert asyncio.run(store.get_task(data["task_id"])) is not None

    def test_create_job_validation(self, client):
        assert client.post("/api/jobs", json={"prompt": "x", "repository_url": JOB["repository_url"]}).status_code == 422
        assert client.post("/api/jobs", json={"prompt": "Add a footer"}).status_code == 422
        assert (
            client.post("/api/jobs", json={**JOB, "repository_url": "https://gitlab.com/o/r"}).status_code == 422
        )

    def test_create_job_unknown_project(self, client):
        resp = client.post("/api/jobs", json={"prompt": "Add a footer", "project_id": "nope"})
        assert resp.status_code == 404

    def test_get_job_and_404(self, client):
        task_id = client.post("/api/jobs", json=JOB).json()["task_id"]

        assert client.get(f"/api/jobs/{task_id}").json()["task_id"] == task_id
        assert client.get("/api/jobs/does-not-exist").status_code == 404

    def test_list_and_queued(self, client):
        first = client.post("/api/jobs", json=JOB).json()["task_id"]
        second = client.post("/api/jobs", json=JOB).json()["task_id"]

        listed = client.get("/api/jobs").json()
        assert listed["total"] == 2
        assert [t["task_id"] for t in client.get("/api/jobs/queued").json()["tasks"]] == [first, second]
        assert client.get("/api/jobs?limit=0").status_code == 422

    def test_tenant_isolation(self, client):
        task_id = client.post("/api/jobs", json=JOB, headers={"X-Tenant-ID": "acme"}).json()["task_id"]

        assert client.get(f"/api/jobs/{task_id}", headers={"X-Tenant-ID": "acme"}).status_code == 200
        assert client.get(f"/api/jobs/{task_id}").status_code == 404
        assert client.get("/api/jobs").json()["total"] == 0
        assert client.delete(f"/api/jobs/{task_id}").status_code == 404

    def test_cancel(self, api, store):
        client, queue = api
        task_id = client.post("/api/jobs", json=JOB).json()["task_id"]

        resp = client.delete(f"/api/jobs/{task_id}")

        assert resp.status_code == 200
        assert resp.json() == {"status": "cancellation_requested", "task_id": task_id}
        assert queue.is_cancel_requested(task_id)

    def test_cancel_terminal_job_conflicts(self, client, store):
        task_id = client.post("/api/jobs", json=JOB).json()["task_id"]
        _fail(store, task_id)

        resp = client.delete(f"/api/jobs/{task_id}")
        assert resp.status_code == 409
        assert resp.json()["detail"] == "Job already failed"

    def test_diff_and_events(self, client, store):
        task_id = client.post("/api/jobs", json=JOB).json()["task_id"]
        asyncio.run(store.update_task(task_id, last_diff="diff --git a/x b/x\n", files_changed_count=1))

        diff = client.get(f"/api/jobs/{task_id}/diff").json()
        assert diff == {"task_id": task_id, "diff": "diff --git a/x b/x\n", "files_changed_count": 1}

        events = client.get(f"/api/jobs/{task_id}/events").json()["events"]
        assert [e["event_message"] for e in events] == ["Task queued"]
        assert events[0]["severity"] == "info"


class TestLogStream:
    def _frames(self, body: str) -> list[dict]:
        return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]

    def test_terminal_job_replays_then_completes(self, client, store):
        task_id = client.post("/api/jobs", json=JOB).json()["task_id"]
        asyncio.run(store.append_event(task_id, "Preparing checkout"))
        _fail(store, task_id)

        resp = client.get(f"/api/jobs/{task_id}/logs")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        frames = self._frames(resp.text)
        assert [f.get("event_message") for f in frames[:-1]] == ["Task queued", "Preparing checkout"]
        assert frames[-1] == {"type": "complete", "execution_state": "failed"}
        assert resp.text.startswith(f"id: {frames[0]['event_id']}\n")

    def test_resume_after_last_event_id(self, client, store):
        task_id = client.post("/api/jobs", json=JOB).json()["task_id"]
        second = asyncio.run(store.append_event(task_id, "Preparing checkout"))
        _fail(store, task_id)
        first_id = second.event_id - 1

        resp = client.get(f"/api/jobs/{task_id}/logs", headers={"Last-Event-ID": str(first_id)})

        frames = self._frames(resp.text)
        assert [f.get("event_message") for f in frames[:-1]] == ["Preparing checkout"]

    def test_unknown_job(self, client):
        assert client.get("/api/jobs/nope/logs").status_code == 404

    @pytest.mark.asyncio
    async def test_final_event_stored_after_replay_is_sent_before_complete(self, store):
        from orchestrator.api.routes import _event_stream, set_dependencies

        task = Task(user_prompt=JOB["prompt"], repository_url=JOB["repository_url"])
        await store.create_task(task)
        await store.append_event(task.task_id, "Iteration 1/3: requesting diff")
        set_dependencies(store, None, LogHub())
        try:
            stream = _event_stream(task.task_id)
            frames = [await stream.__anext__()]
            # terminal state and final event land in the store without reaching the live queue
            await store.update_task(task.task_id, execution_state=ExecutionState.FAILED, error_message="boom")
            await store.append_event(task.task_id, "anthropic returned HTTP 400", Severity.ERROR)
            frames += [frame async for frame in stream]
        finally:
            set_dependencies(None, None, None)

        payloads = self._frames("".join(frames))
        assert [p.get("event_message") for p in payloads[:-1]] == [
            "Iteration 1/3: requesting diff",
            "anthropic returned HTTP 400",
        ]
        assert payloads[1]["severity"] == "error"
        assert payloads[-1] == {"type": "complete", "execution_state": "failed"}


class TestProjectEndpoints:
    def test_project_lifecycle(self, client, settings):
        resp = client.post("/api/projects", json={"name": "greeter", "repository_url": JOB["repository_url"]})
        assert resp.status_code == 201
        project = resp.json()
        assert project["local_path"].startswith(settings.repos_base_dir)

        assert [p["id"] for p in client.get("/api/projects").json()] == [project["id"]]
        assert client.get(f"/api/projects/{project['id']}").json()["name"] == "greeter"

        job = client.post("/api/jobs", json={"prompt": "Add a footer", "project_id": project["id"]}).json()
        assert job["repository_url"] == JOB["repository_url"]
        jobs = client.get(f"/api/projects/{project['id']}/jobs").json()
        assert [t["task_id"] for t in jobs["tasks"]] == [job["task_id"]]

        assert client.delete(f"/api/projects/{project['id']}").json() == {"status": "deleted", "id": project["id"]}
        assert client.get(f"/api/projects/{project['id']}").status_code == 404
        assert client.get(f"/api/jobs/{job['task_id']}").json()["project_id"] is None

    def test_project_validation_and_404(self, client):
        assert client.post("/api/projects", json={"name": "x", "repository_url": "ftp://example"}).status_code == 422
        assert client.get("/api/projects/nope").status_code == 404
        assert client.delete("/api/projects/nope").status_code == 404
        assert client.get("/api/projects/nope/jobs").status_code == 404


class TestAuthentication:
    def test_dev_mode_needs_no_key(self, client):
        assert client.get("/api/jobs").status_code == 200

    def test_api_key_required(self, client, settings):
        settings.api_key = "s3cret"

        assert client.get("/api/jobs").status_code == 401
        assert client.get("/api/jobs", headers={"Authorization": "Bearer wrong"}).status_code == 401
        assert client.get("/api/jobs", headers={"Authorization": "Bearer s3cret"}).status_code == 200
        assert client.get("/api/health").status_code == 200


class TestAppLifespan:
    def test_startup_wires_dependencies_and_previews(self, settings, tmp_path):
        from fastapi.testclient import TestClient

        from orchestrator.app import create_app

        preview = tmp_path / "previews" / "job-1"
        with patch("orchestrator.app.get_settings", return_value=settings):
            app = create_app()
            with TestClient(app) as client:
                health = client.get("/api/health").json()
                assert health["store_connected"] is True
                assert health["queue_connected"] is True

                preview.mkdir(parents=True)
                (preview / "index.html").write_text("<h1>preview</h1>")
                assert client.get("/previews/job-1/index.html").text == "<h1>preview</h1>"

            assert client.get("/api/health").json()["store_connected"] is False

    def test_production_logs_are_json(self, settings):
        import structlog
        from fastapi.testclient import TestClient

        from orchestrator.app import create_app

        settings.env = "production"
        try:
            with patch("orchestrator.app.get_settings", return_value=settings):
                with TestClient(create_app()):
                    renderer = structlog.get_config()["processors"][-1]
            assert isinstance(renderer, structlog.processors.JSONRenderer)
        finally:
            structlog.reset_defaults()


class TestLoggingConfig:
    def test_console_renderer_by_default(self):
        import structlog

        from orchestrator.app import configure_logging

        try:
            configure_logging("DEBUG")
            assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)
            configure_logging("INFO", json_logs=True)
            assert isinstance(structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer)
        finally:
            structlog.reset_defaults()
