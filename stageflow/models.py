"""
stageflow — Core Models & Types
===============================
Enums, model tiers, the static cost table, and the dataclasses shared by the
budget manager, the workflow engine and the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Model(str, Enum):
    CLAUDE_OPUS = "claude-opus"
    CLAUDE_SONNET = "claude-sonnet-4"
    CLAUDE_HAIKU = "claude-haiku"
    GPT_4_TURBO = "gpt-4-turbo"
    GPT_4 = "gpt-4"
    GPT_35_TURBO = "gpt-3.5-turbo"
    LLAMA_31_8B = "llama3.1:8b"
    MISTRAL = "mistral"
    CODELLAMA = "codellama"


class Complexity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    CODE = "code"


class ProjectStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


# ─────────────────────────────────────────────
# Model tiers
# ─────────────────────────────────────────────

PREMIUM_MODEL = Model.CLAUDE_SONNET
MID_TIER_MODEL = Model.CLAUDE_HAIKU
DEFAULT_RATE_MODEL = Model.GPT_35_TURBO

# Local (self-hosted) models, keyed by the complexity they serve
LOCAL_MODELS: dict[Complexity, Model] = {
    Complexity.HIGH:   Model.LLAMA_31_8B,
    Complexity.MEDIUM: Model.LLAMA_31_8B,
    Complexity.CODE:   Model.CODELLAMA,
    Complexity.LOW:    Model.MISTRAL,
}
LOCAL_FALLBACK_MODEL = Model.MISTRAL


def is_local(model: Union[Model, str]) -> bool:
    value = model.value if isinstance(model, Model) else model
    return value in {m.value for m in LOCAL_MODELS.values()}


# ─────────────────────────────────────────────
# Cost table (per 1K tokens, USD)
# ─────────────────────────────────────────────

COST_TABLE: dict[Model, dict[str, float]] = {
    Model.CLAUDE_OPUS:   {"input": 0.015,   "output": 0.075},
    Model.CLAUDE_SONNET: {"input": 0.003,   "output": 0.015},
    Model.CLAUDE_HAIKU:  {"input": 0.00025, "output": 0.00125},
    Model.GPT_4_TURBO:   {"input": 0.01,    "output": 0.03},
    Model.GPT_4:         {"input": 0.03,    "output": 0.06},
    Model.GPT_35_TURBO:  {"input": 0.0005,  "output": 0.0015},
    Model.LLAMA_31_8B:   {"input": 0.0001,  "output": 0.0001},
    Model.MISTRAL:       {"input": 0.0001,  "output": 0.0001},
    Model.CODELLAMA:     {"input": 0.0001,  "output": 0.0001},
}


def rate_for(model: Union[Model, str]) -> dict[str, float]:
    """Per-1K-token rates for a model id; unknown ids get the default-tier rate."""
    try:
        key = model if isinstance(model, Model) else Model(model)
    except ValueError:
        return COST_TABLE[DEFAULT_RATE_MODEL]
    return COST_TABLE.get(key, COST_TABLE[DEFAULT_RATE_MODEL])


def estimate_cost(model: Union[Model, str], input_tokens: int, output_tokens: int) -> float:
    rates = rate_for(model)
    return (input_tokens / 1000) * rates["input"] + (output_tokens / 1000) * rates["output"]


def model_id(model: Union[Model, str]) -> str:
    return model.value if isinstance(model, Model) else str(model)


# ─────────────────────────────────────────────
# Data classes
# ─────────────────────────────────────────────

@dataclass
class Project:
    project_id: str
    name: str
    requirements: Any = None
    story_points: int = 8
    budget_daily: Optional[float] = None
    budget_monthly: Optional[float] = None
    status: ProjectStatus = ProjectStatus.CREATED
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "name": self.name,
            "requirements": self.requirements,
            "story_points": self.story_points,
            "budget_daily": self.budget_daily,
            "budget_monthly": self.budget_monthly,
            "status": self.status.value,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Task:
    task_id: str
    project_id: str
    stage: int
    agent_name: str
    model: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    input_data: dict = field(default_factory=dict)
    output_data: Optional[dict] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "project_id": self.project_id,
            "stage": self.stage,
            "agent_name": self.agent_name,
            "model": self.model,
            "status": self.status.value,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass(frozen=True)
class CostRecord:
    project_id: str
    task_id: Optional[str]
    agent_name: Optional[str]
    model: str
    tokens_input: int
    tokens_output: int
    cost_usd: float
    timestamp: datetime


@dataclass(frozen=True)
class BudgetWindow:
    spent: float
    budget: float
    remaining: float
    percent: float

    @classmethod
    def compute(cls, spent: float, budget: float) -> "BudgetWindow":
        if budget > 0:
            percent = (spent / budget) * 100
        else:
            percent = 100.0 if spent > 0 else 0.0
        return cls(spent=spent, budget=budget, remaining=budget - spent, percent=percent)

    def to_dict(self) -> dict:
        return {
            "spent": round(self.spent, 6),
            "budget": self.budget,
            "remaining": round(self.remaining, 6),
            "percent": round(self.percent, 2),
        }


@dataclass(frozen=True)
class BudgetStatus:
    """Derived view; recomputed from the cost ledger on every query."""
    daily: BudgetWindow
    monthly: BudgetWindow

    def to_dict(self) -> dict:
        return {"daily": self.daily.to_dict(), "monthly": self.monthly.to_dict()}


@dataclass(frozen=True)
class MonthlyForecast:
    forecast: float
    daily_average: float
    days_remaining: int
    projected_overrun: float

    def to_dict(self) -> dict:
        return {
            "forecast": round(self.forecast, 4),
            "daily_average": round(self.daily_average, 4),
            "days_remaining": self.days_remaining,
            "projected_overrun": round(self.projected_overrun, 4),
        }


# ─────────────────────────────────────────────
# Utilities
# ─────────────────────────────────────────────

def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None
