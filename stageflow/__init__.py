"""
stageflow
=========
Core of a multi-stage, multi-agent project workflow: budget-aware model
selection, a stage / sub-stage workflow state machine, and a task scheduler
that fans each stage out to concurrent agent tasks.

Basic usage:
    from stageflow import Settings, create_runtime

    runtime = create_runtime(Settings.from_env())
    created = await runtime.orchestrator.create_project({"name": "Todo app"})
    summary = await runtime.orchestrator.execute_project(created["project_id"])
    await runtime.close()

Workflow usage:
    engine = runtime.workflow
    await engine.initialize_workflow(project_id)
    instance = await engine.execute_workflow(project_id)
"""

from .config import Settings, configure_logging
from .collaborators import (
    Conflict, DryRunExecutor, ExecutionResult, NoConflictArbitrator,
)
from .context_store import ContextStore, MemoryContextStore, SQLiteContextStore
from .cost import BudgetManager
from .engine import CancellationToken, Orchestrator, StageRun
from .errors import (
    NotFoundError, PersistenceError, ProjectCancelledError, StageflowError,
    TaskExecutionError, ValidationError, WorkflowStageError,
)
from .hooks import EventType, HookRegistry
from .models import (
    BudgetStatus, BudgetWindow, Complexity, CostRecord, Model, MonthlyForecast,
    Project, ProjectStatus, Task, TaskStatus,
)
from .runtime import Runtime, create_runtime
from .stages import Stage, SubStage, all_stages, get_stage, stage_count
from .state import CostLedger, Database, ProjectRepository, TaskRepository
from .workflow import StageOutput, SubStageResult, WorkflowEngine, WorkflowInstance, WorkflowStatus

__all__ = [
    # ── Components ───────────────────────────────────────────────────────────
    "BudgetManager", "WorkflowEngine", "Orchestrator", "Runtime", "create_runtime",
    "Settings", "configure_logging",
    # ── Records ──────────────────────────────────────────────────────────────
    "Project", "Task", "CostRecord", "BudgetStatus", "BudgetWindow", "MonthlyForecast",
    "WorkflowInstance", "WorkflowStatus", "StageOutput", "SubStageResult", "StageRun",
    "Model", "Complexity", "ProjectStatus", "TaskStatus",
    "Stage", "SubStage", "all_stages", "get_stage", "stage_count",
    # ── Persistence & context ────────────────────────────────────────────────
    "Database", "ProjectRepository", "TaskRepository", "CostLedger",
    "ContextStore", "SQLiteContextStore", "MemoryContextStore",
    # ── Collaborators & hooks ────────────────────────────────────────────────
    "ExecutionResult", "Conflict", "DryRunExecutor", "NoConflictArbitrator",
    "CancellationToken", "EventType", "HookRegistry",
    # ── Errors ───────────────────────────────────────────────────────────────
    "StageflowError", "ValidationError", "NotFoundError", "PersistenceError",
    "TaskExecutionError", "WorkflowStageError", "ProjectCancelledError",
]

__version__ = "0.1.0"
