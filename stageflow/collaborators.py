"""
Collaborator interfaces — the seams to everything outside the core
==================================================================
The core never performs inference, conflict detection or human review itself.
It talks to these collaborators through small Protocols:

  ModelExecutor   — runs one task on a model, reports token usage
  Arbitrator      — post-stage conflict query (detection lives elsewhere)
  AgentAssist     — human-assist hook at designated sub-stages
  AgentOptimizer  — optimisation hook at designated stages
  HumanGate       — checkpoint between workflow stages

Hook implementations may be plain functions/methods or coroutines;
``call_maybe_async`` awaits whichever it is given.

Shipped defaults:
  NoConflictArbitrator — always reports no conflicts
  DryRunExecutor       — deterministic token estimates, no model is called
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from .models import Complexity
from .stages import SubStage


@dataclass
class ExecutionResult:
    tokens_input: int
    tokens_output: int
    result: Any = None

    def to_dict(self) -> dict:
        return {
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "result": self.result,
        }


@dataclass(frozen=True)
class Conflict:
    """A reported incompatibility between concurrent changes within a stage."""
    description: str
    task_ids: tuple[str, ...] = ()
    resource: Optional[str] = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "task_ids": list(self.task_ids),
            "resource": self.resource,
            "details": dict(self.details),
        }


@runtime_checkable
class ModelExecutor(Protocol):
    async def execute(self, task_id: str, model: str, stage_context: dict) -> ExecutionResult:
        ...


@runtime_checkable
class Arbitrator(Protocol):
    async def check_conflicts(self, project_id: str, stage_id: int) -> list[Conflict]:
        ...


class AgentAssist(Protocol):
    def assist(self, project_id: str, stage_id: int, sub_stage: SubStage) -> Any:
        ...


class AgentOptimizer(Protocol):
    def optimize(self, project_id: str, stage_id: int, sub_stage_key: str) -> Any:
        ...


class HumanGate(Protocol):
    def approve(self, project_id: str, stage_id: int) -> Any:
        ...


async def call_maybe_async(fn, *args, **kwargs) -> Any:
    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


# ─────────────────────────────────────────────────────────────────────────────
# Defaults
# ─────────────────────────────────────────────────────────────────────────────

class NoConflictArbitrator:
    async def check_conflicts(self, project_id: str, stage_id: int) -> list[Conflict]:
        return []


# (input, output) token estimates per stage complexity
_TOKEN_ESTIMATES: dict[str, tuple[int, int]] = {
    Complexity.HIGH.value:   (1_500, 3_000),
    Complexity.MEDIUM.value: (1_000, 2_000),
    Complexity.LOW.value:    (500, 1_000),
    Complexity.CODE.value:   (1_200, 2_400),
}
_DEFAULT_TOKENS = (750, 1_500)


class DryRunExecutor:
    """
    Stand-in executor that performs no inference. Token counts come from a
    static per-complexity table so the budget path can be exercised end to end.
    """

    async def execute(self, task_id: str, model: str, stage_context: dict) -> ExecutionResult:
        tokens_in, tokens_out = _TOKEN_ESTIMATES.get(
            str(stage_context.get("complexity", "")), _DEFAULT_TOKENS
        )
        return ExecutionResult(
            tokens_input=tokens_in,
            tokens_output=tokens_out,
            result=(
                f"[dry-run] stage {stage_context.get('stage')} "
                f"task {task_id} via {model}"
            ),
        )
