"""
Orchestrator Pipeline — the glue that connects task → repo → LLM → attempt → PR.

This is the main pipeline that processes tasks end-to-end:

    API / CLI
        │
        ▼
    ┌─────────┐     ┌───────────┐     ┌──────────┐     ┌─────────┐
    │  QUEUED  │────▶│  CLONING  │────▶│ BUILDING │────▶│ CREATE  │
    │  (task)  │     │  (base)   │     │ CONTEXT  │     │   PR    │
    └─────────┘     └───────────┘     └──────────┘     └─────────┘
                                           │                ▲
                                           ▼                │
                              calling_llm → applying_diff → running_preflight
                              (bounded by MAX_ITERATIONS, errors fed back)

Every state change is persisted and published as a task event for the SSE log stream.
"""

from __future__ import annotations

import asyncio
import re
import shutil
from pathlib import Path
from typing import Callable, Optional

import structlog

from executor.context_builder import ContextBuilder, ProjectContext
from executor.diff_generator import DiffGenerator, DiffResult
from executor.diff_validator import sanity_check_diff
from executor.preflight import PreflightResult, PreflightRunner
from executor.preview import PreviewBuilder, PreviewError
from executor.security_scan import SecurityScanner
from git_integration.git_manager import GitManager, redact_url
from git_integration.local_repo import LocalRepo
from llm.base import LLMProvider, create_provider
from orchestrator.models.task import ExecutionState, Task
from orchestrator.services.config import Settings, get_settings
from orchestrator.services.errors import (
    BudgetExceededError,
    ConfigurationError,
    ExternalServiceError,
    GitCommandError,
    MalformedOutputError,
    TaskCancelledError,
    TransientInfraError,
    ValidationFailure,
    VibeError,
)
from orchestrator.services.log_hub import EventLog
from workspace.attempt_manager import AttemptManager, check_isolation

logger = structlog.get_logger()

NO_CHANGES_REASON = "LLM reported NO_CHANGES: nothing to validate or submit"
RESTART_REASON = "interrupted by service restart"
SECURITY_STAGE = "security"

# consecutive `git apply` failures before asking for whole-file diffs
FALLBACK_AFTER_APPLY_FAILURES = 2


def _repo_slug(url: str) -> str:
    trimmed = url.rstrip("/")
    if trimmed.endswith(".git"):
        trimmed = trimmed[: -len(".git")]
    return re.sub(r"[^A-Za-z0-9._-]+", "_", trimmed)[-100:].strip("_.") or "repo"


class TaskPipeline:
    """
    End-to-end task execution pipeline.

    Responsible for:
    1. Fail-fast checks (LLM credentials, PR credentials, repository)
    2. Preparing the base checkout and building the repository context
    3. Running the bounded generate → apply → preflight loop
    4. Promoting the passing attempt to the destination branch
    5. Pushing and opening the pull request
    """

    def __init__(
        self,
        store,
        events: EventLog,
        git_manager: GitManager,
        settings: Optional[Settings] = None,
        provider_factory: Callable[..., LLMProvider] = create_provider,
        context_builder: Optional[ContextBuilder] = None,
        preflight: Optional[PreflightRunner] = None,
        preview: Optional[PreviewBuilder] = None,
        security: Optional[SecurityScanner] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.events = events
        self.git = git_manager
        self.provider_factory = provider_factory
        self.context_builder = context_builder or ContextBuilder(self.settings)
        self.preflight = preflight or PreflightRunner(self.settings)
        self.preview = preview or PreviewBuilder(self.settings)
        self.security = security or SecurityScanner(self.settings)

    async def execute(self, task: Task, is_cancelled: Optional[Callable[[str], bool]] = None) -> Task:
        """
        Execute a task end-to-end.

        Every outcome ends in a terminal state with at least one event
        explaining it. Returns the updated task.
        """
        is_cancelled = is_cancelled or (lambda _task_id: False)
        provider: Optional[LLMProvider] = None
        work_dir = Path(self.settings.work_base_dir) / task.task_id
        repo: Optional[LocalRepo] = None

        try:
            self._check_cancelled(task, is_cancelled)

            # ── Phase 1: Fail-fast configuration ──────────────────
            provider = self.provider_factory(task.llm_provider, task.llm_model, self.settings)
            task.llm_provider = provider.name
            task.llm_model = provider.model
            repo_url, base_path = await self._resolve_repository(task)
            self.git.check_credentials(repo_url)
            check_isolation(self.settings.attempt_isolation)

            # ── Phase 2: Base checkout ────────────────────────────
            await self._transition(task, ExecutionState.CLONING, f"Preparing checkout of {redact_url(repo_url)}")
            repo, fresh = await LocalRepo.ensure_checkout(
                repo_url,
                base_path,
                credentials=self.git.get_clone_credentials(repo_url),
                settings=self.settings,
            )
            if task.project_id:
                await self.store.mark_project_synced(task.project_id)
            base_sha = await repo.resolve_base(task.source_branch)
            if base_sha is None:
                raise ConfigurationError(f"Source branch '{task.source_branch}' not found in repository")
            await self.events.info(
                task.task_id,
                f"{'Cloned' if fresh else 'Fetched'} repository, {task.source_branch} at {base_sha[:10]}",
            )

            attempts = AttemptManager(repo, str(work_dir), settings=self.settings)

            # ── Phase 3: Context ──────────────────────────────────
            await self._transition(task, ExecutionState.BUILDING_CONTEXT, "Building repository context")
            context = await self._build_context(attempts, task, base_sha)

            # ── Phase 4: Iteration loop ───────────────────────────
            generator = DiffGenerator(provider, self.settings)
            passed = await self._iterate(task, generator, attempts, context, base_sha, is_cancelled)

            # ── Phase 5: Pull request ─────────────────────────────
            await self._create_pull_request(task, repo, repo_url, passed)

        except ExternalServiceError as e:
            # only a push or PR failure leaves a validated branch behind
            if task.execution_state == ExecutionState.CREATING_PR:
                await self.events.warning(
                    task.task_id,
                    f"Validated change kept on local branch {task.destination_branch}"
                    + (f" in {repo.path}" if repo else ""),
                )
            await self._fail(task, e.message)

        except VibeError as e:
            await self._fail(task, e.message)

        except asyncio.CancelledError:
            # worker shutdown: the next startup marks the task interrupted
            await logger.awarning("Task execution cancelled", task_id=task.task_id)
            raise

        except Exception as e:
            await logger.aexception("Pipeline error", task_id=task.task_id, error=str(e))
            await self._fail(task, f"Unexpected error: {e}")

        finally:
            if provider is not None:
                await provider.close()
            await asyncio.to_thread(self._remove_work_dir, work_dir)
            if task.execution_state.is_terminal:
                self.events.complete(task.task_id, task.execution_state)

        return task

    # ── Phases ────────────────────────────────────────────────────

    async def _resolve_repository(self, task: Task) -> tuple[str, str]:
        """(remote URL, base checkout path) captured once at dequeue."""
        if task.project_id:
            project = await self.store.get_project(task.project_id)
            if project is None:
                raise ConfigurationError(f"Project {task.project_id} not found")
            task.repository_url = project.repository_url
            local_path = project.local_path or str(Path(self.settings.repos_base_dir) / project.id)
            return project.repository_url, local_path

        if not task.repository_url:
            raise ConfigurationError("Task has neither a project nor a repository_url")
        return task.repository_url, str(Path(self.settings.repos_base_dir) / "adhoc" / _repo_slug(task.repository_url))

    async def _build_context(self, attempts: AttemptManager, task: Task, base_sha: str) -> ProjectContext:
        # read from a pristine tree at the base SHA, not the shared checkout's HEAD
        async with attempts.attempt(task.task_id, 0, base_sha) as snapshot:
            context = await asyncio.to_thread(
                self.context_builder.build_context, snapshot.path, task.user_prompt
            )

        detail = f"{len(context.files)} files, {context.total_size} bytes"
        if context.truncated:
            detail += ", truncated"
        if context.used_fallback:
            detail += ", no keyword matches so entry points were used"
        await self.events.info(task.task_id, f"Context ready ({detail})")
        return context

    async def _iterate(
        self,
        task: Task,
        generator: DiffGenerator,
        attempts: AttemptManager,
        context: ProjectContext,
        base_sha: str,
        is_cancelled: Callable[[str], bool],
    ) -> PreflightResult:
        """Run generate → apply → preflight until one attempt passes or the budget is spent."""
        max_iterations = self.settings.max_iterations
        previous_error: Optional[str] = None
        apply_failures = 0
        fallback_files: Optional[list[str]] = None

        for n in range(1, max_iterations + 1):
            self._check_cancelled(task, is_cancelled)
            task.iteration_count = n
            await self._transition(
                task,
                ExecutionState.CALLING_LLM,
                f"Iteration {n}/{max_iterations}: requesting diff from {task.llm_provider}",
            )

            try:
                result = await self._generate(generator, task, context, previous_error, fallback_files)
                self._record_usage(task, result)
                if result.no_changes:
                    raise VibeError(NO_CHANGES_REASON)

                await self._transition(task, ExecutionState.APPLYING_DIFF, f"Applying diff in attempt {n}")
                async with attempts.attempt(task.task_id, n, base_sha) as attempt:
                    sanity = sanity_check_diff(result.diff, attempt.path, task.user_prompt)
                    if not sanity.ok:
                        raise MalformedOutputError("Diff rejected: " + "; ".join(sanity.errors))

                    try:
                        files = await attempts.apply(attempt, result.diff)
                    except MalformedOutputError:
                        await self._persist_patch(task, n, result.diff)
                        raise

                    # the patch applied, so stop asking for whole-file rewrites
                    apply_failures = 0
                    fallback_files = None
                    task.files_changed_count = len(files)

                    await self._transition(
                        task,
                        ExecutionState.RUNNING_PREFLIGHT,
                        f"Diff applied ({len(files)} files), running preflight",
                    )
                    preflight = await self.preflight.run(attempt.path)
                    task.preflight_seconds += preflight.duration_seconds
                    if not preflight.success:
                        raise ValidationFailure(preflight.stage, preflight.output or preflight.error or "")
                    await self._security_scan(task, attempt.path, files)

                    task.last_diff = result.diff
                    await attempts.commit(attempt, f"vibe: {task.user_prompt[:50]} (iteration {n})")
                    await attempts.promote(attempt, task.destination_branch)
                    await self._build_preview(task, attempt.path)

                await self.store.save_task(task)
                await self.events.success(
                    task.task_id,
                    f"Iteration {n} passed preflight ({', '.join(preflight.stages_run) or 'no stages configured'})",
                )
                return preflight

            except MalformedOutputError as e:
                if e.usage is not None:
                    task.add_usage(e.usage.input_tokens, e.usage.output_tokens, e.usage.total_tokens)
                if e.apply_failure:
                    apply_failures += 1
                    if apply_failures >= FALLBACK_AFTER_APPLY_FAILURES:
                        fallback_files = sorted(set(fallback_files or []) | set(e.failed_files))
                else:
                    apply_failures = 0
                previous_error = e.message
                await self.store.save_task(task)
                await self.events.warning(task.task_id, f"Iteration {n} failed: {e.message}")

            except ValidationFailure as e:
                apply_failures = 0
                await self.store.save_task(task)
                if e.stage == SECURITY_STAGE:
                    previous_error = f"Security scan rejected the change:\n{e.output}"
                    await self.events.warning(task.task_id, f"Iteration {n} blocked by security scan")
                else:
                    previous_error = f"Preflight stage '{e.stage}' failed:\n{e.output}"
                    await self.events.warning(
                        task.task_id, f"Iteration {n} failed preflight at {e.stage}:\n{e.output[-1000:]}"
                    )

        raise BudgetExceededError(max_iterations, last_error=(previous_error or "")[:1000])

    async def _generate(
        self,
        generator: DiffGenerator,
        task: Task,
        context: ProjectContext,
        previous_error: Optional[str],
        fallback_files: Optional[list[str]],
    ) -> DiffResult:
        retries = self.settings.llm_transient_retries
        retry = 0
        while True:
            try:
                return await generator.generate_diff(task.user_prompt, context, previous_error, fallback_files)
            except TransientInfraError as e:
                retry += 1
                if retry > retries:
                    raise
                await self.events.warning(
                    task.task_id, f"Transient LLM error, retrying ({retry}/{retries}): {e.message}"
                )

    async def _security_scan(self, task: Task, workspace: str, files: list[str]) -> None:
        if not self.security.enabled:
            return
        report = await asyncio.to_thread(self.security.scan, workspace, files)
        if report.warnings:
            await self.events.warning(
                task.task_id, f"Security scan: {len(report.warnings)} warning(s) in changed files"
            )
        if report.blocked:
            await self.events.error(
                task.task_id, f"Security scan: {len(report.critical)} critical finding(s), change blocked"
            )
            raise ValidationFailure(SECURITY_STAGE, report.feedback())
        await self.events.info(task.task_id, f"Security scan passed ({report.files_scanned} files scanned)")

    async def _build_preview(self, task: Task, workspace: str) -> None:
        if not self.preview.enabled:
            return
        try:
            task.preview_url = await self.preview.build(workspace, task.task_id)
        except PreviewError as e:
            await self.events.warning(task.task_id, f"Preview build failed: {e}")
            return
        await self.events.info(task.task_id, f"Preview available at {task.preview_url}")

    async def _create_pull_request(
        self, task: Task, repo: LocalRepo, repo_url: str, passed: PreflightResult
    ) -> None:
        if task.project_id and await self.store.get_project(task.project_id) is None:
            await self.events.warning(
                task.task_id, "Project was deleted during execution; continuing with its original repository"
            )

        await self._transition(
            task, ExecutionState.CREATING_PR, f"Pushing {task.destination_branch} and opening pull request"
        )
        if not await repo.has_remote():
            raise ExternalServiceError("Base checkout has no 'origin' remote to push to")
        try:
            await repo.push_branch(task.destination_branch)
        except GitCommandError as e:
            raise ExternalServiceError(f"Push of {task.destination_branch} failed: {e.message}") from e

        pr = await self.git.create_pr(
            repo_url=repo_url,
            title=self._generate_pr_title(task),
            body=self.git.build_pr_body(
                prompt=task.user_prompt,
                task_id=task.task_id,
                branch=task.destination_branch,
                iterations=task.iteration_count,
                files_changed=task.files_changed_count,
                stages_passed=passed.stages_run,
                preview_url=task.preview_url,
            ),
            head_branch=task.destination_branch,
            base_branch=task.source_branch,
        )

        try:
            await repo.tag(f"vibe/job-{task.task_id}", f"refs/heads/{task.destination_branch}")
        except GitCommandError as e:
            await logger.awarning("Checkpoint tag failed", task_id=task.task_id, error=e.message)

        verb = "Reused open" if pr.already_existed else "Created"
        # the final event is stored before the terminal state so log streams always see it
        await self.events.success(task.task_id, f"{verb} pull request #{pr.pr_number}: {pr.pr_url}")
        task.mark_completed(pr.pr_url)
        await self.store.save_task(task)
        await logger.ainfo(
            "Task completed successfully",
            task_id=task.task_id,
            pr_url=pr.pr_url,
            iterations=task.iteration_count,
            duration_s=round(task.total_job_seconds or 0, 1),
        )

    # ── Helpers ───────────────────────────────────────────────────

    def _generate_pr_title(self, task: Task) -> str:
        """Generate a clean PR title from the prompt."""
        desc = " ".join(task.user_prompt.split())
        if len(desc) > 72:
            desc = desc[:69] + "..."
        return f"vibe: {desc}"

    def _check_cancelled(self, task: Task, is_cancelled: Callable[[str], bool]) -> None:
        if is_cancelled(task.task_id):
            raise TaskCancelledError()

    def _record_usage(self, task: Task, result: DiffResult) -> None:
        task.add_usage(result.usage.input_tokens, result.usage.output_tokens, result.usage.total_tokens)

    async def _persist_patch(self, task: Task, iteration: int, diff: str) -> None:
        path = Path(self.settings.patches_dir) / f"{task.task_id}-iter{iteration}.diff"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_text, diff)
        except OSError as e:
            await logger.awarning("Could not persist failed patch", path=str(path), error=str(e))
            return
        await logger.ainfo("Persisted failed patch", task_id=task.task_id, path=str(path))

    async def _transition(self, task: Task, state: ExecutionState, message: str) -> None:
        """Update task state, persist it and notify listeners."""
        task.transition_to(state)
        await self.store.save_task(task)
        await self.events.info(task.task_id, message)

    async def _fail(self, task: Task, error: str) -> None:
        if task.execution_state.is_terminal:
            return
        await self.events.error(task.task_id, error)
        task.mark_failed(error)
        await self.store.save_task(task)
        await logger.aerror(
            "Task failed", task_id=task.task_id, iterations=task.iteration_count, error=error[:300]
        )

    @staticmethod
    def _remove_work_dir(work_dir: Path) -> None:
        shutil.rmtree(work_dir, ignore_errors=True)


class TaskQueue:
    """
    FIFO work queue drained by a fixed pool of worker coroutines.

    Tasks live in the store; the in-memory queue only carries task ids in
    dispatch order, so a restart rebuilds it from ``list_queued_tasks``.
    """

    def __init__(
        self,
        pipeline: TaskPipeline,
        store,
        events: EventLog,
        worker_count: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.pipeline = pipeline
        self.store = store
        self.events = events
        self.worker_count = worker_count or settings.worker_pool_size
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._active: dict[str, int] = {}
        self._cancel_requested: set[str] = set()

    @property
    def active_task_ids(self) -> list[str]:
        return list(self._active)

    async def start(self) -> None:
        """Recover persisted work, then start the workers."""
        await self.recover()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"vibe-worker-{i}") for i in range(self.worker_count)
        ]
        await logger.ainfo("Task queue started", workers=self.worker_count, pending=self._queue.qsize())

    async def stop(self) -> None:
        """Stop the workers. In-flight subprocesses are killed and reaped by run_command."""
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        await logger.ainfo("Task queue stopped", active_cancelled=len(self._active))
        self._workers = []
        self._active.clear()

    async def recover(self) -> None:
        for task in await self.store.list_unfinished_tasks():
            await self.events.error(task.task_id, f"Task {RESTART_REASON}")
            task.mark_failed(RESTART_REASON)
            await self.store.save_task(task)
            self.events.complete(task.task_id, task.execution_state)
            await logger.awarning("Marked interrupted task failed", task_id=task.task_id)

        for task in await self.store.list_queued_tasks():
            self._queue.put_nowait(task.task_id)

    async def submit(self, task: Task) -> Task:
        """Persist a new task and queue it for a worker."""
        await self.store.create_task(task)
        await self.events.info(task.task_id, "Task queued")
        await self._queue.put(task.task_id)
        await logger.ainfo("Task queued", task_id=task.task_id, repository=redact_url(task.repository_url))
        return task

    async def cancel_task(self, task_id: str) -> bool:
        """Request cancellation. Returns False when the task is unknown or already terminal."""
        task = await self.store.get_task(task_id)
        if task is None or task.execution_state.is_terminal:
            return False
        self._cancel_requested.add(task_id)
        await self.events.warning(task_id, "Cancellation requested")
        return True

    def is_cancel_requested(self, task_id: str) -> bool:
        return task_id in self._cancel_requested

    async def join(self) -> None:
        """Wait until every queued task has been processed."""
        await self._queue.join()

    async def _worker(self, worker_id: int) -> None:
        while True:
            task_id = await self._queue.get()
            try:
                task = await self.store.get_task(task_id)
                if task is None or task.execution_state != ExecutionState.QUEUED:
                    continue
                self._active[task_id] = worker_id
                await logger.ainfo("Task dispatched", task_id=task_id, worker=worker_id)
                await self.pipeline.execute(task, is_cancelled=self.is_cancel_requested)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await logger.aexception("Unhandled task exception", task_id=task_id, error=str(e))
            finally:
                self._active.pop(task_id, None)
                self._cancel_requested.discard(task_id)
                self._queue.task_done()
