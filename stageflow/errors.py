"""
Error taxonomy
==============
Every failure the core raises is a StageflowError subclass carrying a stable
machine-readable ``code``. Callers branch on the class (or the code when the
error has crossed a serialisation boundary), never on message text.

Propagation:
  ValidationError, NotFoundError, PersistenceError → straight to the caller
  TaskExecutionError, WorkflowStageError            → abort the enclosing stage
  ProjectCancelledError                             → abort the project run
"""
from __future__ import annotations

from typing import Optional


class StageflowError(Exception):
    """Base class for all errors raised by stageflow."""

    code: str = "stageflow_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(StageflowError):
    """Malformed project, stage, or configuration input."""

    code = "validation_error"


class NotFoundError(StageflowError):
    """Unknown project, task, or workflow id."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(kind=self.kind, id=self.identifier)
        return d


class PersistenceError(StageflowError):
    """A storage read or write failed."""

    code = "persistence_error"


class TaskExecutionError(StageflowError):
    """
    The model-execution collaborator failed or timed out for one task.

    Attributes
    ----------
    task_id   : the failed task
    timed_out : True when the per-task timeout elapsed
    """

    code = "task_execution_failed"

    def __init__(self, task_id: str, message: str, timed_out: bool = False):
        self.task_id = task_id
        self.timed_out = timed_out
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(task_id=self.task_id, timed_out=self.timed_out)
        return d


class WorkflowStageError(StageflowError):
    """A required sub-stage (or a stage-level hook) failed."""

    code = "workflow_stage_failed"

    def __init__(self, stage_id: int, message: str,
                 sub_stage: Optional[str] = None):
        self.stage_id = stage_id
        self.sub_stage = sub_stage
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(stage_id=self.stage_id, sub_stage=self.sub_stage)
        return d


class ProjectCancelledError(StageflowError):
    """Cancellation was requested for a project while it was running."""

    code = "project_cancelled"

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project {project_id} was cancelled")
