"""
Cost Layer — cost ledger, budget status, budget-aware model selection, forecast
===============================================================================
BudgetManager
    Prices token usage from the static COST_TABLE, appends CostRecords to the
    ledger, derives daily / monthly BudgetStatus on demand, and picks a model
    tier per unit of work from task complexity and current budget pressure.

Model selection precedence (first match wins):
    daily   > 95 %  → local tier, whatever the complexity
    daily   > 80 %  → mid tier for "high", local tier otherwise
    monthly > 90 %  → mid tier for "high", local tier otherwise
    otherwise       → high → premium, medium → mid, low → local,
                      anything else → mid

Budget windows are half-open calendar intervals taken from an injectable clock:
today [00:00, next 00:00) and this month [1st 00:00, next 1st 00:00). Nothing is
cached; every status query re-reads the ledger.

Usage:
    manager = BudgetManager(CostLedger(db), context_store=store, projects=ProjectRepository(db))
    model = await manager.select_model("high", project_id)
    await manager.record_cost(project_id, task_id, "agent-3-1", model, 1200, 2400)
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from .context_store import ContextStore, SQLiteContextStore
from .errors import ValidationError
from .hooks import EventType, HookRegistry
from .models import (
    LOCAL_FALLBACK_MODEL, LOCAL_MODELS, MID_TIER_MODEL, PREMIUM_MODEL,
    BudgetStatus, BudgetWindow, Complexity, CostRecord, Model, MonthlyForecast,
    estimate_cost, model_id,
)
from .state import Clock, CostLedger, ProjectRepository, system_clock
from .tracing import traced_model_selection

logger = logging.getLogger("stageflow.cost")

DEFAULT_DAILY_BUDGET = 50.0
DEFAULT_MONTHLY_BUDGET = 1000.0

# Budget-pressure thresholds (percent of ceiling)
DAILY_HARD_LIMIT = 95.0
DAILY_SOFT_LIMIT = 80.0
MONTHLY_SOFT_LIMIT = 90.0

# Share of spend assumed recoverable by moving work to local models
_LOCAL_SAVINGS_RATIO = 0.8
_SAVINGS_REPORT_FLOOR = 5.0


@dataclass(frozen=True)
class Recommendation:
    severity: str   # "critical" | "warning" | "info"
    message: str
    action: str

    def to_dict(self) -> dict:
        return {"severity": self.severity, "message": self.message, "action": self.action}


def coerce_complexity(value: Union[Complexity, str]) -> Complexity:
    if isinstance(value, Complexity):
        return value
    try:
        return Complexity(str(value).lower())
    except ValueError:
        allowed = ", ".join(c.value for c in Complexity)
        raise ValidationError(f"Unknown complexity {value!r}; expected one of: {allowed}") from None


def day_window(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def month_window(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    days = calendar.monthrange(now.year, now.month)[1]
    return start, start + timedelta(days=days)


class BudgetManager:

    def __init__(
        self,
        ledger: CostLedger,
        context_store: Optional[ContextStore] = None,
        projects: Optional[ProjectRepository] = None,
        daily_budget: float = DEFAULT_DAILY_BUDGET,
        monthly_budget: float = DEFAULT_MONTHLY_BUDGET,
        clock: Clock = system_clock,
        hooks: Optional[HookRegistry] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if daily_budget < 0 or monthly_budget < 0:
            raise ValidationError("Budgets must be non-negative")
        self._ledger = ledger
        self._context = context_store
        self._projects = projects
        self._daily_budget = daily_budget
        self._monthly_budget = monthly_budget
        self._clock = clock
        self._hooks = hooks or HookRegistry()
        self._log = log or logger

    @property
    def daily_budget(self) -> float:
        return self._daily_budget

    @property
    def monthly_budget(self) -> float:
        return self._monthly_budget

    # ── Cost calculation ────────────────────────────────────────────────────

    @staticmethod
    def calculate_cost(model: Union[Model, str], tokens_in: int, tokens_out: int) -> float:
        """USD cost of one call; unknown models are priced at the default-tier rate."""
        if tokens_in < 0 or tokens_out < 0:
            raise ValidationError(
                f"Token counts must be non-negative (got in={tokens_in}, out={tokens_out})"
            )
        return estimate_cost(model, tokens_in, tokens_out)

    async def record_cost(
        self,
        project_id: str,
        task_id: Optional[str],
        agent_name: Optional[str],
        model: Union[Model, str],
        tokens_in: int,
        tokens_out: int,
    ) -> float:
        """Append one CostRecord and bump the aggregate counters; returns the cost."""
        cost = self.calculate_cost(model, tokens_in, tokens_out)
        record = CostRecord(
            project_id=project_id,
            task_id=task_id,
            agent_name=agent_name,
            model=model_id(model),
            tokens_input=tokens_in,
            tokens_output=tokens_out,
            cost_usd=cost,
            timestamp=self._clock(),
        )
        counters = {"cost:total": cost, f"cost:{project_id}": cost}
        if (isinstance(self._context, SQLiteContextStore)
                and self._context.database is self._ledger.database):
            # ledger row and counters commit or roll back together
            await self._ledger.append(record, counters)
        else:
            await self._ledger.append(record)
            if self._context is not None:
                for name, amount in counters.items():
                    await self._context.increment(name, amount)
        self._log.debug(
            "Cost recorded: project=%s task=%s model=%s in=%d out=%d cost=$%.6f",
            project_id, task_id, record.model, tokens_in, tokens_out, cost,
        )
        return cost

    # ── Aggregates ──────────────────────────────────────────────────────────

    async def get_daily_cost(self, project_id: Optional[str] = None) -> float:
        start, end = day_window(self._clock())
        return await self._ledger.total_between(start, end, project_id)

    async def get_monthly_cost(self, project_id: Optional[str] = None) -> float:
        start, end = month_window(self._clock())
        return await self._ledger.total_between(start, end, project_id)

    async def _ceilings(self, project_id: Optional[str]) -> tuple[float, float]:
        daily, monthly = self._daily_budget, self._monthly_budget
        if project_id is not None and self._projects is not None:
            p_daily, p_monthly = await self._projects.budgets(project_id)
            if p_daily is not None:
                daily = p_daily
            if p_monthly is not None:
                monthly = p_monthly
        return daily, monthly

    async def get_budget_status(self, project_id: Optional[str] = None) -> BudgetStatus:
        daily_spent = await self.get_daily_cost(project_id)
        monthly_spent = await self.get_monthly_cost(project_id)
        daily_budget, monthly_budget = await self._ceilings(project_id)
        return BudgetStatus(
            daily=BudgetWindow.compute(daily_spent, daily_budget),
            monthly=BudgetWindow.compute(monthly_spent, monthly_budget),
        )

    # ── Model selection ─────────────────────────────────────────────────────

    @staticmethod
    def select_local_model(complexity: Union[Complexity, str]) -> str:
        """Local-tier model for a complexity: general, code-specialised, or fast."""
        try:
            key = coerce_complexity(complexity)
        except ValidationError:
            return LOCAL_FALLBACK_MODEL.value
        return LOCAL_MODELS.get(key, LOCAL_FALLBACK_MODEL).value

    async def select_model(self, complexity: Union[Complexity, str],
                           project_id: Optional[str] = None) -> str:
        level = coerce_complexity(complexity)
        with traced_model_selection(level.value) as span:
            status = await self.get_budget_status(project_id)
            model, reason = self._choose(level, status, project_id)
            span.set_attribute("llm.model", model)
            span.set_attribute("selection.reason", reason)
        self._hooks.fire(
            EventType.MODEL_SELECTED,
            project_id=project_id, complexity=level.value, model=model, reason=reason,
        )
        return model

    def _choose(self, level: Complexity, status: BudgetStatus,
                project_id: Optional[str]) -> tuple[str, str]:
        daily, monthly = status.daily.percent, status.monthly.percent

        if daily > DAILY_HARD_LIMIT:
            self._warn("daily", daily, project_id, "forcing local models")
            return self.select_local_model(level), "daily_hard_limit"

        if daily > DAILY_SOFT_LIMIT:
            self._warn("daily", daily, project_id, "using economic models")
            return self._economic(level), "daily_soft_limit"

        if monthly > MONTHLY_SOFT_LIMIT:
            self._warn("monthly", monthly, project_id, "using economic models")
            return self._economic(level), "monthly_soft_limit"

        if level is Complexity.HIGH:
            return PREMIUM_MODEL.value, "complexity"
        if level is Complexity.MEDIUM:
            return MID_TIER_MODEL.value, "complexity"
        if level is Complexity.LOW:
            return self.select_local_model(Complexity.LOW), "complexity"
        return MID_TIER_MODEL.value, "default"

    def _economic(self, level: Complexity) -> str:
        if level is Complexity.HIGH:
            return MID_TIER_MODEL.value
        return self.select_local_model(level)

    def _warn(self, window: str, percent: float, project_id: Optional[str], action: str) -> None:
        self._log.warning("%s budget at %.1f%% - %s", window.capitalize(), percent, action)
        self._hooks.fire(
            EventType.BUDGET_WARNING, project_id=project_id, window=window, percent=percent,
        )

    # ── Forecasting & reporting ─────────────────────────────────────────────

    async def forecast_monthly_cost(self) -> MonthlyForecast:
        """Linear month-end extrapolation of month-to-date spend."""
        now = self._clock()
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        daily_average = await self.get_monthly_cost() / now.day
        forecast = daily_average * days_in_month
        return MonthlyForecast(
            forecast=forecast,
            daily_average=daily_average,
            days_remaining=days_in_month - now.day,
            projected_overrun=max(0.0, forecast - self._monthly_budget),
        )

    async def get_cost_summary(self, project_id: Optional[str] = None) -> dict:
        """Budget status plus today's spend broken down by model and by agent."""
        status = await self.get_budget_status(project_id)
        start, end = day_window(self._clock())
        by_model = await self._ledger.breakdown_between("model_used", start, end, project_id)
        by_agent = await self._ledger.breakdown_between("agent_name", start, end, project_id)
        return {
            "budget": status.to_dict(),
            "breakdown": {"by_model": by_model, "by_agent": by_agent},
            "recommendations": [r.to_dict() for r in self.recommendations(status)],
        }

    @staticmethod
    def recommendations(status: BudgetStatus) -> list[Recommendation]:
        recs: list[Recommendation] = []
        if status.daily.percent > 90:
            recs.append(Recommendation(
                "critical",
                "Daily budget nearly exhausted. Consider local models for remaining tasks.",
                "switch_to_local",
            ))
        elif status.daily.percent > DAILY_SOFT_LIMIT:
            recs.append(Recommendation(
                "warning",
                "Daily budget above 80%. Switching to economic models.",
                "use_cheaper_models",
            ))

        if status.monthly.percent > MONTHLY_SOFT_LIMIT:
            recs.append(Recommendation(
                "critical",
                "Monthly budget nearly exhausted. Review spending patterns.",
                "review_budget",
            ))

        savings = status.daily.spent * _LOCAL_SAVINGS_RATIO
        if savings > _SAVINGS_REPORT_FLOOR:
            recs.append(Recommendation(
                "info",
                f"Could save ~${savings:.2f}/day by routing more tasks to local models",
                "optimize_model_selection",
            ))
        return recs
