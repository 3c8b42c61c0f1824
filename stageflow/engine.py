"""
Orchestrator — project/task scheduler over the stage registry
=============================================================
Drives a project through every registered stage in order. For each stage:

  1. one budget-aware model selection (BudgetManager.select_model)
  2. N tasks created, one per agent the stage calls for
  3. tasks executed concurrently, bounded by an asyncio.Semaphore
  4. all tasks joined; any failure aborts the stage once the rest settle
  5. post-stage conflict query through the Arbitrator (never blocking)

Task lifecycle: pending → running → completed | failed. Cost is recorded
exactly once per completed task, never for a failed attempt.

Cancellation is cooperative: cancel_project() sets the active run's token, the
run stops before the next stage, and tasks that have not started yet are
marked failed ("cancelled") without reaching the executor.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from .collaborators import (
    Arbitrator, Conflict, DryRunExecutor, ExecutionResult, ModelExecutor,
    NoConflictArbitrator, call_maybe_async,
)
from .context_store import ContextStore
from .cost import BudgetManager
from .errors import (
    ProjectCancelledError, StageflowError, TaskExecutionError, ValidationError,
)
from .hooks import EventType, HookRegistry
from .models import Project, ProjectStatus, Task, TaskStatus
from .stages import Stage, all_stages, validate_registry
from .state import Clock, Database, ProjectRepository, TaskRepository, system_clock
from .tracing import traced_project, traced_stage, traced_task

logger = logging.getLogger("stageflow.engine")

CANCELLED_MESSAGE = "cancelled"


class CancellationToken:
    """Per-project cancellation flag, checked between stages and before each task."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, project_id: str) -> None:
        if self._event.is_set():
            raise ProjectCancelledError(project_id)


@dataclass
class StageRun:
    """Outcome of one orchestrated stage."""
    project_id: str
    stage_id: int
    name: str
    model: str
    tasks: list[Task] = field(default_factory=list)
    results: dict[str, ExecutionResult] = field(default_factory=dict)
    conflicts: list[Conflict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "stage_id": self.stage_id,
            "name": self.name,
            "model": self.model,
            "tasks": [t.task_id for t in self.tasks],
            "results": {tid: r.to_dict() for tid, r in self.results.items()},
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


def _new_project_id() -> str:
    return f"proj-{uuid.uuid4().hex[:8]}"


def _new_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:8]}"


def _error_message(exc: BaseException) -> str:
    return exc.message if isinstance(exc, StageflowError) else str(exc)


def _positive_budget(data: dict, key: str) -> Optional[float]:
    raw = data.get(key)
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValidationError(f"{key} must be positive, got {value}")
    return value


class Orchestrator:
    """
    Usage:
        orch = Orchestrator(db, budget, store, executor=MyExecutor())
        created = await orch.create_project({"name": "Todo app", "requirements": {...}})
        summary = await orch.execute_project(created["project_id"])
    """

    def __init__(
        self,
        db: Database,
        budget: BudgetManager,
        context_store: ContextStore,
        executor: Optional[ModelExecutor] = None,
        arbitrator: Optional[Arbitrator] = None,
        stages: Optional[tuple[Stage, ...]] = None,
        max_concurrency: int = 3,
        task_timeout: Optional[float] = 300.0,
        max_retries: int = 0,
        retry_backoff: float = 1.0,
        hooks: Optional[HookRegistry] = None,
        clock: Clock = system_clock,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValidationError("max_concurrency must be at least 1")
        if max_retries < 0:
            raise ValidationError("max_retries must be non-negative")
        self._db = db
        self._budget = budget
        self._context = context_store
        self._executor = executor or DryRunExecutor()
        self._arbitrator = arbitrator or NoConflictArbitrator()
        self._stages = tuple(stages) if stages is not None else all_stages()
        validate_registry(self._stages)
        self._by_id = {s.stage_id: s for s in self._stages}
        self._max_concurrency = max_concurrency
        self._task_timeout = task_timeout
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._hooks = hooks or HookRegistry()
        self._clock = clock
        self._log = log or logger
        self._projects = ProjectRepository(db, clock)
        self._tasks = TaskRepository(db, clock)
        self._tokens: dict[str, CancellationToken] = {}

    @property
    def hooks(self) -> HookRegistry:
        return self._hooks

    @property
    def budget(self) -> BudgetManager:
        return self._budget

    def _stage(self, stage_id: int) -> Stage:
        try:
            return self._by_id[stage_id]
        except (KeyError, TypeError):
            raise ValidationError(f"Invalid stage id: {stage_id!r}") from None

    # ─────────────────────────────────────────
    # Projects
    # ─────────────────────────────────────────

    async def create_project(self, data: dict) -> dict:
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Project name is required")
        story_points = data.get("story_points", 8)
        if not isinstance(story_points, int) or story_points < 0:
            raise ValidationError(f"story_points must be a non-negative integer, got {story_points!r}")

        project = Project(
            project_id=_new_project_id(),
            name=name.strip(),
            requirements=data.get("requirements"),
            story_points=story_points,
            budget_daily=_positive_budget(data, "budget_daily"),
            budget_monthly=_positive_budget(data, "budget_monthly"),
        )
        await self._projects.insert(project)
        await self._context.set_project_context(project.project_id, {
            "project_id": project.project_id,
            "name": project.name,
            "requirements": project.requirements,
            "story_points": project.story_points,
            "status": project.status.value,
            "current_stage": 0,
        })
        self._log.info("Project created: %s (%s)", project.project_id, project.name)
        return {
            "project_id": project.project_id,
            "name": project.name,
            "status": project.status.value,
        }

    async def get_project(self, project_id: str) -> dict:
        project = await self._projects.require(project_id)
        tasks = await self._tasks.list_for_project(project_id)
        result = project.to_dict()
        result["tasks"] = [t.to_dict() for t in tasks]
        result["context"] = await self._context.get_project_context(project_id)
        return result

    async def list_projects(self, limit: int = 50) -> list[dict]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        return [p.to_dict() for p in await self._projects.list(limit)]

    async def get_project_tasks(self, project_id: str) -> list[dict]:
        await self._projects.require(project_id)
        return [t.to_dict() for t in await self._tasks.list_for_project(project_id)]

    async def _set_status(self, project_id: str, status: ProjectStatus,
                          error_message: Optional[str] = None) -> None:
        await self._projects.update_status(project_id, status, error_message)
        await self._context.update_project_context(
            project_id, status=status.value, error_message=error_message,
        )
        self._hooks.fire(EventType.PROJECT_STATUS, project_id=project_id,
                         status=status.value, error=error_message)

    async def execute_project(self, project_id: str) -> dict:
        """Run every stage in order; the project ends completed or failed."""
        await self._projects.require(project_id)
        if project_id in self._tokens:
            raise ValidationError(f"Project {project_id} is already running")
        token = self._tokens[project_id] = CancellationToken()
        runs: list[StageRun] = []

        self._log.info("Starting project execution: %s", project_id)
        await self._set_status(project_id, ProjectStatus.RUNNING)
        try:
            with traced_project(project_id) as span:
                try:
                    for stage in self._stages:
                        token.raise_if_cancelled(project_id)
                        runs.append(await self.execute_stage(project_id, stage.stage_id))
                except Exception as exc:
                    span.record_exception(exc)
                    message = _error_message(exc)
                    await self._set_status(project_id, ProjectStatus.FAILED, message)
                    self._log.error("Project %s failed: %s", project_id, message)
                    raise
        finally:
            self._tokens.pop(project_id, None)

        await self._set_status(project_id, ProjectStatus.COMPLETED)
        self._log.info("Project completed: %s", project_id)
        return {
            "project_id": project_id,
            "status": ProjectStatus.COMPLETED.value,
            "stages": [r.to_dict() for r in runs],
        }

    def cancel_project(self, project_id: str) -> bool:
        """
        Cancel an active run; honoured at the next stage or task boundary.
        Returns False (and keeps no state) when the project is not running.
        """
        token = self._tokens.get(project_id)
        if token is None:
            self._log.warning("Cancel ignored: project %s has no active run", project_id)
            return False
        token.cancel()
        self._log.warning("Cancellation requested for project %s", project_id)
        return True

    # ─────────────────────────────────────────
    # Stages
    # ─────────────────────────────────────────

    async def execute_stage(self, project_id: str, stage_id: int) -> StageRun:
        stage = self._stage(stage_id)
        await self._projects.require(project_id)
        token = self._tokens.get(project_id)

        self._log.info("Executing stage %d: %s (%d agents)", stage_id, stage.name, stage.agents)
        self._hooks.fire(EventType.STAGE_STARTED, project_id=project_id,
                         stage_id=stage_id, name=stage.name)
        await self._context.update_project_context(project_id, current_stage=stage_id)

        with traced_stage(project_id, stage_id, stage.name) as span:
            model = await self._budget.select_model(stage.complexity, project_id)
            span.set_attribute("llm.model", model)
            run = StageRun(project_id=project_id, stage_id=stage_id,
                           name=stage.name, model=model)
            for i in range(1, stage.agents + 1):
                run.tasks.append(
                    await self.create_task(project_id, stage_id, f"agent-{stage_id}-{i}", model)
                )

            semaphore = asyncio.Semaphore(self._max_concurrency)

            async def _run_one(task: Task) -> ExecutionResult:
                async with semaphore:
                    if token is not None and token.cancelled:
                        await self._tasks.mark_failed(task.task_id, CANCELLED_MESSAGE)
                        raise ProjectCancelledError(project_id)
                    return await self.execute_task(task.task_id, model)

            outcomes = await asyncio.gather(
                *(_run_one(t) for t in run.tasks), return_exceptions=True,
            )
            failures = [o for o in outcomes if isinstance(o, BaseException)]
            if failures:
                cancelled = [f for f in failures if isinstance(f, ProjectCancelledError)]
                error = cancelled[0] if cancelled else failures[0]
                span.record_exception(error)
                self._log.error("Stage %d aborted: %d/%d tasks failed",
                                stage_id, len(failures), len(run.tasks))
                self._hooks.fire(EventType.STAGE_FAILED, project_id=project_id,
                                 stage_id=stage_id, error=_error_message(error))
                raise error

            for task, result in zip(run.tasks, outcomes):
                run.results[task.task_id] = result

        run.conflicts = await self.check_for_conflicts(project_id, stage_id)
        if run.conflicts:
            self._log.warning("Stage %d reported %d conflict(s)", stage_id, len(run.conflicts))
            self._hooks.fire(EventType.CONFLICTS_FOUND, project_id=project_id,
                             stage_id=stage_id, conflicts=run.conflicts)

        self._hooks.fire(EventType.STAGE_COMPLETED, project_id=project_id,
                         stage_id=stage_id, name=stage.name)
        return run

    async def check_for_conflicts(self, project_id: str, stage_id: int) -> list[Conflict]:
        conflicts = await call_maybe_async(
            self._arbitrator.check_conflicts, project_id, stage_id,
        )
        return list(conflicts or [])

    # ─────────────────────────────────────────
    # Tasks
    # ─────────────────────────────────────────

    async def create_task(self, project_id: str, stage: int,
                          agent_name: str, model: Optional[str] = None) -> Task:
        self._stage(stage)
        task = Task(
            task_id=_new_task_id(),
            project_id=project_id,
            stage=stage,
            agent_name=agent_name,
            model=model,
            input_data={"stage": stage, "agent_name": agent_name},
        )
        await self._tasks.insert(task)
        await self._context.set_agent_state(task.task_id, agent_name, {
            "project_id": project_id,
            "stage": stage,
            "model": model,
            "status": task.status.value,
        })
        return task

    async def execute_task(self, task_id: str, model: str) -> ExecutionResult:
        task = await self._tasks.require(task_id)
        if task.status is not TaskStatus.PENDING:
            raise ValidationError(f"Task {task_id} is already {task.status.value}")
        stage = self._stage(task.stage)

        if not await self._tasks.mark_running(task_id, model):
            raise ValidationError(f"Task {task_id} was started by another caller")
        self._hooks.fire(EventType.TASK_STARTED, project_id=task.project_id,
                         task_id=task_id, agent_name=task.agent_name, model=model)
        stage_context = {
            "project_id": task.project_id,
            "stage": task.stage,
            "stage_name": stage.name,
            "complexity": stage.complexity.value,
            "agent_name": task.agent_name,
            "input": task.input_data,
            "project_context": await self._context.get_project_context(task.project_id),
        }

        with traced_task(task_id, task.agent_name, model) as span:
            try:
                result = await self._run_with_retries(task, model, stage_context)
            except TaskExecutionError as exc:
                span.record_exception(exc)
                await self._fail_task(task, model, exc.message, timed_out=exc.timed_out)
                raise

            try:
                cost = await self._budget.record_cost(
                    task.project_id, task_id, task.agent_name, model,
                    result.tokens_input, result.tokens_output,
                )
                span.set_attribute("llm.cost_usd", cost)
                output = result.to_dict()
                output["cost_usd"] = cost
                await self._tasks.mark_completed(task_id, output)
            except Exception as exc:
                # the task must not stay running when bookkeeping fails
                span.record_exception(exc)
                message = f"Task {task_id} failed after execution: {_error_message(exc)}"
                await self._fail_task(task, model, message)
                raise

        await self._context.set_agent_state(task_id, task.agent_name, {
            "project_id": task.project_id, "stage": task.stage, "model": model,
            "status": "completed", "cost_usd": cost,
        })
        self._hooks.fire(EventType.TASK_COMPLETED, project_id=task.project_id,
                         task_id=task_id, model=model, cost_usd=cost)
        self._log.debug("Task %s completed via %s ($%.6f)", task_id, model, cost)
        return result

    async def _fail_task(self, task: Task, model: str, message: str,
                         timed_out: bool = False) -> None:
        await self._tasks.mark_failed(task.task_id, message)
        await self._context.set_agent_state(task.task_id, task.agent_name, {
            "project_id": task.project_id, "stage": task.stage, "model": model,
            "status": "failed", "error": message,
        })
        self._hooks.fire(EventType.TASK_FAILED, project_id=task.project_id,
                         task_id=task.task_id, error=message, timed_out=timed_out)
        self._log.error("Task %s failed: %s", task.task_id, message)

    async def _run_with_retries(self, task: Task, model: str,
                                stage_context: dict) -> ExecutionResult:
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._attempt(task, model, stage_context)
            except TaskExecutionError as exc:
                if attempt >= attempts:
                    raise
                delay = self._retry_backoff * (2 ** (attempt - 1))
                self._log.warning(
                    "Task %s attempt %d/%d failed (%s); retrying in %.1fs",
                    task.task_id, attempt, attempts, exc.message, delay,
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    async def _attempt(self, task: Task, model: str, stage_context: dict) -> ExecutionResult:
        try:
            call = self._executor.execute(task.task_id, model, stage_context)
            if self._task_timeout is None:
                result: Any = await call
            else:
                result = await asyncio.wait_for(call, timeout=self._task_timeout)
        except asyncio.TimeoutError:
            raise TaskExecutionError(
                task.task_id,
                f"Task {task.task_id} timed out after {self._task_timeout}s",
                timed_out=True,
            ) from None
        except TaskExecutionError:
            raise
        except Exception as exc:
            raise TaskExecutionError(task.task_id, f"Task {task.task_id} failed: {exc}") from exc

        if not isinstance(result, ExecutionResult):
            raise TaskExecutionError(
                task.task_id, f"Executor returned {type(result).__name__}, expected ExecutionResult",
            )
        if result.tokens_input < 0 or result.tokens_output < 0:
            raise TaskExecutionError(task.task_id, "Executor reported negative token counts")
        return result

    # ─────────────────────────────────────────
    # Metrics & lifecycle
    # ─────────────────────────────────────────

    async def get_metrics(self) -> dict:
        status = await self._budget.get_budget_status()
        return {
            "projects": await self._projects.count(),
            "tasks": await self._tasks.count_by_status(),
            "budget": status.to_dict(),
            "context": await self._context.get_metrics(),
        }

    async def shutdown(self) -> None:
        for token in self._tokens.values():
            token.cancel()
        await self._context.close()
        await self._db.close()
        self._log.info("Orchestrator shut down")
