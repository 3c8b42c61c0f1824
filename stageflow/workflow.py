"""
Workflow Engine — stage / sub-stage state machine for one project
=================================================================
Drives a project's WorkflowInstance through the canonical stage registry.

States: initialized → in_progress → completed
                    ↘ failed (any required sub-stage or stage-level error)

Invariants maintained:
1. Stages run strictly in ascending order (stage_id must equal current_stage).
2. Sub-stages run in declared order.
3. A stage lands in completed_stages only if every required sub-stage
   completed without error; optional sub-stage errors are logged and recorded
   but never propagated.
4. The instance is snapshotted to the context store after every transition
   (key ``workflow:<project_id>``); the store is the only registry, so any
   engine sharing the store can resume a workflow.

A failed workflow may re-run its current stage, which puts it back into
``in_progress``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from .collaborators import AgentAssist, AgentOptimizer, HumanGate, call_maybe_async
from .context_store import ContextStore, workflow_key
from .errors import NotFoundError, StageflowError, ValidationError, WorkflowStageError
from .hooks import EventType, HookRegistry
from .stages import (
    Stage, SubStage, all_stages, is_human_assist_point, is_optimize_stage, validate_registry,
)
from .state import Clock, from_db_time, system_clock, to_db_time
from .tracing import traced_stage

logger = logging.getLogger("stageflow.workflow")

SubStageHandler = Callable[[str, Stage, SubStage], Any]


class WorkflowStatus(str, Enum):
    INITIALIZED = "initialized"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SubStageStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


# ─────────────────────────────────────────────
# Records
# ─────────────────────────────────────────────

@dataclass
class SubStageResult:
    key: str
    name: str
    required: bool
    status: SubStageStatus
    completed_at: datetime
    output: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "required": self.required,
            "status": self.status.value,
            "completed_at": to_db_time(self.completed_at),
            "output": self.output,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SubStageResult":
        return cls(
            key=d["key"],
            name=d["name"],
            required=d["required"],
            status=SubStageStatus(d["status"]),
            completed_at=from_db_time(d["completed_at"]),
            output=d.get("output"),
            error=d.get("error"),
        )


@dataclass
class StageOutput:
    stage: int
    name: str
    sub_stage_results: dict[str, SubStageResult]
    outputs: list[str]
    completed_at: datetime

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "name": self.name,
            "sub_stage_results": {k: r.to_dict() for k, r in self.sub_stage_results.items()},
            "outputs": list(self.outputs),
            "completed_at": to_db_time(self.completed_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "StageOutput":
        return cls(
            stage=d["stage"],
            name=d["name"],
            sub_stage_results={
                k: SubStageResult.from_dict(r) for k, r in d["sub_stage_results"].items()
            },
            outputs=list(d.get("outputs", [])),
            completed_at=from_db_time(d["completed_at"]),
        )


@dataclass
class WorkflowInstance:
    """Full serialisable per-project workflow state."""
    project_id: str
    config: dict = field(default_factory=dict)
    current_stage: int = 1
    current_sub_stage: Optional[str] = None
    completed_stages: list[int] = field(default_factory=list)
    completed_sub_stages: dict[int, list[str]] = field(default_factory=dict)
    stage_outputs: dict[int, StageOutput] = field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.INITIALIZED
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    def to_dict(self) -> dict:
        # JSON object keys are strings; stage ordinals are restored in from_dict
        return {
            "project_id": self.project_id,
            "config": self.config,
            "current_stage": self.current_stage,
            "current_sub_stage": self.current_sub_stage,
            "completed_stages": list(self.completed_stages),
            "completed_sub_stages": {str(k): list(v) for k, v in self.completed_sub_stages.items()},
            "stage_outputs": {str(k): o.to_dict() for k, o in self.stage_outputs.items()},
            "status": self.status.value,
            "error": self.error,
            "started_at": to_db_time(self.started_at),
            "updated_at": to_db_time(self.updated_at),
            "ended_at": to_db_time(self.ended_at),
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "WorkflowInstance":
        return cls(
            project_id=d["project_id"],
            config=d.get("config") or {},
            current_stage=d["current_stage"],
            current_sub_stage=d.get("current_sub_stage"),
            completed_stages=list(d.get("completed_stages", [])),
            completed_sub_stages={
                int(k): list(v) for k, v in d.get("completed_sub_stages", {}).items()
            },
            stage_outputs={
                int(k): StageOutput.from_dict(o) for k, o in d.get("stage_outputs", {}).items()
            },
            status=WorkflowStatus(d["status"]),
            error=d.get("error"),
            started_at=from_db_time(d.get("started_at")),
            updated_at=from_db_time(d.get("updated_at")),
            ended_at=from_db_time(d.get("ended_at")),
            duration_seconds=d.get("duration_seconds"),
        )


# ─────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────

class WorkflowEngine:
    """
    Usage:
        engine = WorkflowEngine(store, agent_assist=assistant, human_gate=reviewer)
        engine.register_handler(3, "consolidation", consolidate_context)
        await engine.initialize_workflow("proj-1234abcd", {"priority": "high"})
        instance = await engine.execute_workflow("proj-1234abcd")
    """

    def __init__(
        self,
        store: ContextStore,
        stages: Optional[tuple[Stage, ...]] = None,
        agent_assist: Optional[AgentAssist] = None,
        agent_optimizer: Optional[AgentOptimizer] = None,
        human_gate: Optional[HumanGate] = None,
        hooks: Optional[HookRegistry] = None,
        clock: Clock = system_clock,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._stages = tuple(stages) if stages is not None else all_stages()
        validate_registry(self._stages)
        self._by_id = {s.stage_id: s for s in self._stages}
        self._assist = agent_assist
        self._optimizer = agent_optimizer
        self._gate = human_gate
        self._hooks = hooks or HookRegistry()
        self._clock = clock
        self._log = log or logger
        self._handlers: dict[tuple[int, str], SubStageHandler] = {}

    # ── Collaborator wiring ─────────────────────────────────────────────────

    def set_agent_assist(self, assist: Optional[AgentAssist]) -> None:
        self._assist = assist
        self._log.info("Agent-assist collaborator %s", "attached" if assist else "detached")

    def set_agent_optimizer(self, optimizer: Optional[AgentOptimizer]) -> None:
        self._optimizer = optimizer
        self._log.info("Agent-optimize collaborator %s", "attached" if optimizer else "detached")

    def set_human_gate(self, gate: Optional[HumanGate]) -> None:
        self._gate = gate

    def register_handler(self, stage_id: int, sub_stage_key: str,
                         handler: SubStageHandler) -> None:
        """Attach the work for one sub-stage; handler(project_id, stage, sub_stage)."""
        self.get_stage_definition(stage_id).sub_stage(sub_stage_key)
        self._handlers[(stage_id, sub_stage_key)] = handler

    # ── Registry lookups ────────────────────────────────────────────────────

    def get_stage_definition(self, stage_id: int) -> Stage:
        try:
            return self._by_id[stage_id]
        except (KeyError, TypeError):
            raise ValidationError(f"Invalid stage id: {stage_id!r}") from None

    def get_all_stage_definitions(self) -> tuple[Stage, ...]:
        return self._stages

    @property
    def last_stage_id(self) -> int:
        return self._stages[-1].stage_id

    # ── Snapshots ───────────────────────────────────────────────────────────

    async def _load(self, project_id: str) -> WorkflowInstance:
        raw = await self._store.get(workflow_key(project_id))
        if raw is None:
            raise NotFoundError("workflow", project_id)
        return WorkflowInstance.from_dict(raw)

    async def _save(self, instance: WorkflowInstance) -> None:
        instance.updated_at = self._clock()
        await self._store.set(workflow_key(instance.project_id), instance.to_dict())

    async def get_workflow_status(self, project_id: str) -> WorkflowInstance:
        return await self._load(project_id)

    async def get_active_workflows(self) -> list[WorkflowInstance]:
        active = []
        for key in await self._store.keys("workflow:"):
            raw = await self._store.get(key)
            if raw and raw.get("status") == WorkflowStatus.IN_PROGRESS.value:
                active.append(WorkflowInstance.from_dict(raw))
        return active

    # ── Transitions ─────────────────────────────────────────────────────────

    async def initialize_workflow(self, project_id: str,
                                  config: Optional[dict] = None) -> WorkflowInstance:
        if not project_id:
            raise ValidationError("project_id is required")
        first = self._stages[0]
        now = self._clock()
        instance = WorkflowInstance(
            project_id=project_id,
            config=dict(config or {}),
            current_stage=first.stage_id,
            current_sub_stage=first.first_sub_stage_key,
            started_at=now,
        )
        await self._save(instance)
        self._log.info("Workflow initialised for project %s", project_id)
        return instance

    async def execute_stage(self, project_id: str, stage_id: int) -> StageOutput:
        instance = await self._load(project_id)
        return await self._run_stage(instance, stage_id)

    async def _run_stage(self, instance: WorkflowInstance, stage_id: int) -> StageOutput:
        stage = self.get_stage_definition(stage_id)
        project_id = instance.project_id

        if instance.status is WorkflowStatus.COMPLETED:
            raise ValidationError(f"Workflow for {project_id} is already completed")
        if stage_id != instance.current_stage:
            raise ValidationError(
                f"Stage {stage_id} is out of order for {project_id}: "
                f"current stage is {instance.current_stage}"
            )

        self._log.info("Executing stage %d: %s (project %s)", stage_id, stage.name, project_id)
        self._hooks.fire(EventType.STAGE_STARTED, project_id=project_id,
                         stage_id=stage_id, name=stage.name)
        instance.status = WorkflowStatus.IN_PROGRESS
        instance.error = None
        instance.completed_sub_stages[stage_id] = []

        results: dict[str, SubStageResult] = {}
        with traced_stage(project_id, stage_id, stage.name) as span:
            for sub in stage.sub_stages:
                instance.current_sub_stage = sub.key
                try:
                    results[sub.key] = await self._run_sub_stage(instance, stage, sub)
                except Exception as exc:
                    if sub.required:
                        span.record_exception(exc)
                        await self._fail(instance, stage, sub, exc)
                    self._log.warning(
                        "Optional sub-stage %s of stage %d failed: %s", sub.key, stage_id, exc,
                    )
                    self._hooks.fire(EventType.SUB_STAGE_FAILED, project_id=project_id,
                                     stage_id=stage_id, sub_stage=sub.key,
                                     required=False, error=str(exc))
                    results[sub.key] = SubStageResult(
                        key=sub.key, name=sub.name, required=False,
                        status=SubStageStatus.FAILED, completed_at=self._clock(),
                        error=str(exc),
                    )

        output = StageOutput(
            stage=stage_id,
            name=stage.name,
            sub_stage_results=results,
            outputs=list(stage.outputs),
            completed_at=self._clock(),
        )
        instance.completed_stages.append(stage_id)
        instance.stage_outputs[stage_id] = output
        instance.current_stage = stage_id + 1
        next_stage = self._by_id.get(stage_id + 1)
        instance.current_sub_stage = next_stage.first_sub_stage_key if next_stage else None
        instance.status = (
            WorkflowStatus.COMPLETED if stage_id == self.last_stage_id
            else WorkflowStatus.IN_PROGRESS
        )
        await self._save(instance)

        self._hooks.fire(EventType.STAGE_COMPLETED, project_id=project_id,
                         stage_id=stage_id, name=stage.name)
        self._log.info("Stage %d completed (project %s)", stage_id, project_id)
        return output

    async def _fail(self, instance: WorkflowInstance, stage: Stage,
                    sub: SubStage, exc: Exception) -> None:
        """Mark the workflow failed, persist it, and raise WorkflowStageError."""
        error = WorkflowStageError(
            stage.stage_id,
            f"Required sub-stage {sub.key!r} ({sub.name}) of stage "
            f"{stage.stage_id} failed: {exc}",
            sub_stage=sub.key,
        )
        instance.status = WorkflowStatus.FAILED
        instance.error = error.message
        self._log.error("Stage %d failed for %s: %s", stage.stage_id, instance.project_id, error)
        self._hooks.fire(EventType.SUB_STAGE_FAILED, project_id=instance.project_id,
                         stage_id=stage.stage_id, sub_stage=sub.key,
                         required=True, error=str(exc))
        self._hooks.fire(EventType.STAGE_FAILED, project_id=instance.project_id,
                         stage_id=stage.stage_id, error=error.message)
        await self._save(instance)
        raise error from exc

    async def execute_sub_stage(self, project_id: str, stage_id: int,
                                sub_stage_key: str,
                                sub_stage: Optional[SubStage] = None) -> SubStageResult:
        instance = await self._load(project_id)
        stage = self.get_stage_definition(stage_id)
        sub = sub_stage or stage.sub_stage(sub_stage_key)
        instance.completed_sub_stages.setdefault(stage_id, [])
        result = await self._run_sub_stage(instance, stage, sub)
        await self._save(instance)
        return result

    async def _run_sub_stage(self, instance: WorkflowInstance, stage: Stage,
                             sub: SubStage) -> SubStageResult:
        project_id = instance.project_id
        self._log.debug("  Sub-stage %s: %s", sub.key, sub.name)

        if self._assist is not None and is_human_assist_point(stage.stage_id, sub.key):
            await call_maybe_async(self._assist.assist, project_id, stage.stage_id, sub)

        if self._optimizer is not None and is_optimize_stage(stage.stage_id):
            await call_maybe_async(self._optimizer.optimize, project_id, stage.stage_id, sub.key)

        output = None
        handler = self._handlers.get((stage.stage_id, sub.key))
        if handler is not None:
            output = await call_maybe_async(handler, project_id, stage, sub)

        done = instance.completed_sub_stages.setdefault(stage.stage_id, [])
        if sub.key not in done:
            done.append(sub.key)

        return SubStageResult(
            key=sub.key,
            name=sub.name,
            required=sub.required,
            status=SubStageStatus.COMPLETED,
            completed_at=self._clock(),
            output=output,
        )

    async def execute_workflow(self, project_id: str) -> WorkflowInstance:
        """Run every remaining stage in order, with the human gate after each one."""
        instance = await self._load(project_id)
        self._log.info("Starting workflow execution for %s", project_id)
        started = instance.started_at or self._clock()

        try:
            for stage in self._stages:
                if stage.stage_id < instance.current_stage:
                    continue
                await self._run_stage(instance, stage.stage_id)
                if self._gate is not None:
                    await call_maybe_async(self._gate.approve, project_id, stage.stage_id)
        except Exception as exc:
            instance.status = WorkflowStatus.FAILED
            instance.error = exc.message if isinstance(exc, StageflowError) else str(exc)
            await self._save(instance)
            self._log.error("Workflow failed for %s: %s", project_id, instance.error)
            raise

        instance.status = WorkflowStatus.COMPLETED
        instance.ended_at = self._clock()
        instance.duration_seconds = (instance.ended_at - started).total_seconds()
        await self._save(instance)
        self._log.info("Workflow completed for %s in %.1fs", project_id, instance.duration_seconds)
        return instance
