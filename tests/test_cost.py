"""
Tests for BudgetManager — cost calculation, ledger aggregates, budget status,
budget-aware model selection, forecasting and recommendations.
"""
from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from stageflow.context_store import MemoryContextStore, SQLiteContextStore
from stageflow.cost import BudgetManager, day_window, month_window
from stageflow.errors import PersistenceError, ValidationError
from stageflow.hooks import EventType, HookRegistry
from stageflow.models import BudgetStatus, BudgetWindow, Project
from stageflow.state import CostLedger, Database, ProjectRepository


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# gpt-4 input is $0.03 per 1K tokens
def _tokens_for(usd: float) -> int:
    return int(round(usd * 1000 / 0.03))


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 20, 12, 0, 0))


@pytest.fixture()
def db(tmp_path):
    return Database(tmp_path / "cost.db")


def _manager(db, clock, **kwargs) -> BudgetManager:
    return BudgetManager(
        CostLedger(db),
        projects=ProjectRepository(db, clock),
        clock=clock,
        **kwargs,
    )


async def _spend(manager: BudgetManager, usd: float, project_id: str = "proj-aaaa0001") -> float:
    return await manager.record_cost(project_id, None, "agent-1-1", "gpt-4", _tokens_for(usd), 0)


# ─────────────────────────────────────────────────────────────────────────────
# calculate_cost
# ─────────────────────────────────────────────────────────────────────────────

class TestCalculateCost:
    def test_known_model_rates(self):
        cost = BudgetManager.calculate_cost("claude-sonnet-4", 1000, 2000)
        assert cost == pytest.approx(0.033)

    def test_unknown_model_uses_default_rate(self):
        cost = BudgetManager.calculate_cost("some-new-model", 1000, 1000)
        assert cost == pytest.approx(0.0005 + 0.0015)

    def test_zero_tokens_is_free(self):
        assert BudgetManager.calculate_cost("gpt-4", 0, 0) == 0.0

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValidationError):
            BudgetManager.calculate_cost("gpt-4", -1, 10)


# ─────────────────────────────────────────────────────────────────────────────
# Windows
# ─────────────────────────────────────────────────────────────────────────────

class TestWindows:
    def test_day_window_is_midnight_to_midnight(self):
        start, end = day_window(datetime(2026, 3, 20, 15, 30))
        assert start == datetime(2026, 3, 20)
        assert end == datetime(2026, 3, 21)

    def test_month_window_handles_february(self):
        start, end = month_window(datetime(2028, 2, 29, 8, 0))
        assert start == datetime(2028, 2, 1)
        assert end == datetime(2028, 3, 1)

    def test_month_window_rolls_year(self):
        _, end = month_window(datetime(2026, 12, 31, 23, 59))
        assert end == datetime(2027, 1, 1)


# ─────────────────────────────────────────────────────────────────────────────
# record_cost & aggregates
# ─────────────────────────────────────────────────────────────────────────────

class TestRecordCost:
    @pytest.mark.asyncio
    async def test_record_cost_returns_cost_and_updates_daily(self, db, clock):
        manager = _manager(db, clock)
        try:
            cost = await manager.record_cost("proj-1", "task-1", "agent-3-1",
                                             "claude-sonnet-4", 1000, 2000)
            assert cost == pytest.approx(0.033)
            assert await manager.get_daily_cost() == pytest.approx(0.033)
            assert await manager.get_monthly_cost("proj-1") == pytest.approx(0.033)
            assert await manager.get_daily_cost("proj-other") == 0.0
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_counters_incremented_in_context_store(self, db, clock):
        store = MemoryContextStore()
        manager = _manager(db, clock, context_store=store)
        try:
            await manager.record_cost("proj-1", "t1", "a", "claude-sonnet-4", 1000, 2000)
            await manager.record_cost("proj-2", "t2", "a", "claude-sonnet-4", 1000, 2000)
            assert await store.get_counter("cost:total") == pytest.approx(0.066)
            assert await store.get_counter("cost:proj-1") == pytest.approx(0.033)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_sqlite_counters_share_the_ledger_transaction(self, db, clock):
        store = SQLiteContextStore(db)
        manager = _manager(db, clock, context_store=store)
        try:
            await manager.record_cost("proj-1", "t1", "a", "claude-sonnet-4", 1000, 2000)
            assert await store.get_counter("cost:total") == pytest.approx(0.033)
            assert await store.get_counter("cost:proj-1") == pytest.approx(0.033)

            await db.execute("DROP TABLE counters")
            with pytest.raises(PersistenceError):
                await manager.record_cost("proj-1", "t2", "a", "claude-sonnet-4", 1000, 2000)
            assert await manager.get_daily_cost("proj-1") == pytest.approx(0.033)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_concurrent_records_are_not_lost(self, db, clock):
        manager = _manager(db, clock, context_store=MemoryContextStore())
        try:
            await asyncio.gather(
                manager.record_cost("proj-1", "t1", "a", "claude-sonnet-4", 1000, 2000),
                manager.record_cost("proj-1", "t2", "b", "claude-sonnet-4", 1000, 2000),
            )
            assert await manager.get_daily_cost("proj-1") == pytest.approx(0.066)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_daily_total_resets_at_midnight(self, db, clock):
        manager = _manager(db, clock)
        try:
            clock.now = datetime(2026, 3, 20, 23, 59, 59, 999999)
            await _spend(manager, 10)
            clock.now = datetime(2026, 3, 21, 0, 0, 0)
            assert await manager.get_daily_cost() == 0.0
            assert await manager.get_monthly_cost() == pytest.approx(10)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_record_at_midnight_belongs_to_new_day(self, db, clock):
        manager = _manager(db, clock)
        try:
            clock.now = datetime(2026, 3, 21, 0, 0, 0)
            await _spend(manager, 5)
            assert await manager.get_daily_cost() == pytest.approx(5)
            clock.now = datetime(2026, 3, 20, 23, 0, 0)
            assert await manager.get_daily_cost() == 0.0
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_previous_month_excluded(self, db, clock):
        manager = _manager(db, clock)
        try:
            clock.now = datetime(2026, 2, 28, 18, 0)
            await _spend(manager, 7)
            clock.now = datetime(2026, 3, 1, 9, 0)
            assert await manager.get_monthly_cost() == 0.0
        finally:
            await db.close()


# ─────────────────────────────────────────────────────────────────────────────
# Budget status
# ─────────────────────────────────────────────────────────────────────────────

class TestBudgetStatus:
    def test_zero_budget_window(self):
        assert BudgetWindow.compute(0.0, 0.0).percent == 0.0
        assert BudgetWindow.compute(0.5, 0.0).percent == 100.0

    @pytest.mark.asyncio
    async def test_status_fields(self, db, clock):
        manager = _manager(db, clock, daily_budget=50, monthly_budget=1000)
        try:
            await _spend(manager, 10)
            status = await manager.get_budget_status()
            assert status.daily.spent == pytest.approx(10)
            assert status.daily.remaining == pytest.approx(40)
            assert status.daily.percent == pytest.approx(20)
            assert status.monthly.percent == pytest.approx(1)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_project_overrides_replace_global_ceilings(self, db, clock):
        manager = _manager(db, clock)
        try:
            await ProjectRepository(db, clock).insert(
                Project(project_id="proj-small", name="Small", budget_daily=10.0)
            )
            await _spend(manager, 5, project_id="proj-small")
            status = await manager.get_budget_status("proj-small")
            assert status.daily.budget == 10.0
            assert status.daily.percent == pytest.approx(50)
            assert status.monthly.budget == 1000.0
        finally:
            await db.close()

    def test_negative_budget_rejected(self, db):
        with pytest.raises(ValidationError):
            BudgetManager(CostLedger(db), daily_budget=-1)


# ─────────────────────────────────────────────────────────────────────────────
# select_model
# ─────────────────────────────────────────────────────────────────────────────

class TestSelectModel:
    @pytest.mark.asyncio
    async def test_complexity_only_when_no_pressure(self, db, clock):
        manager = _manager(db, clock)
        try:
            assert await manager.select_model("high") == "claude-sonnet-4"
            assert await manager.select_model("medium") == "claude-haiku"
            assert await manager.select_model("low") == "mistral"
            assert await manager.select_model("code") == "claude-haiku"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_daily_above_95_forces_local(self, db, clock):
        manager = _manager(db, clock, daily_budget=50)
        try:
            await _spend(manager, 48)   # 96 %
            assert await manager.select_model("high", "proj-aaaa0001") == "llama3.1:8b"
            assert await manager.select_model("medium") == "llama3.1:8b"
            assert await manager.select_model("code") == "codellama"
            assert await manager.select_model("low") == "mistral"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_daily_above_80_uses_economic_tier(self, db, clock):
        manager = _manager(db, clock, daily_budget=50)
        try:
            await _spend(manager, 42)   # 84 %
            assert await manager.select_model("high") == "claude-haiku"
            assert await manager.select_model("medium") == "llama3.1:8b"
            assert await manager.select_model("low") == "mistral"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_monthly_above_90_uses_economic_tier(self, db, clock):
        manager = _manager(db, clock, daily_budget=50, monthly_budget=1000)
        try:
            clock.now = datetime(2026, 3, 5, 10, 0)
            await _spend(manager, 910)
            clock.now = datetime(2026, 3, 20, 12, 0)
            status = await manager.get_budget_status()
            assert status.daily.percent == 0.0
            assert await manager.select_model("high") == "claude-haiku"
            assert await manager.select_model("medium") == "llama3.1:8b"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_never_premium_above_hard_limit(self, db, clock):
        manager = _manager(db, clock, daily_budget=20)
        try:
            await _spend(manager, 19.5)
            for complexity in ("high", "medium", "low", "code"):
                assert await manager.select_model(complexity) not in (
                    "claude-sonnet-4", "claude-haiku",
                )
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_zero_daily_budget(self, db, clock):
        manager = _manager(db, clock, daily_budget=0)
        try:
            assert await manager.select_model("high") == "claude-sonnet-4"
            await manager.record_cost("p", None, None, "mistral", 10, 10)
            assert await manager.select_model("high") == "llama3.1:8b"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_project_budget_pressure(self, db, clock):
        manager = _manager(db, clock)
        try:
            await ProjectRepository(db, clock).insert(
                Project(project_id="proj-tight", name="Tight", budget_daily=10.0)
            )
            await _spend(manager, 9.7, project_id="proj-tight")
            assert await manager.select_model("high", "proj-tight") == "llama3.1:8b"
            assert await manager.select_model("high") == "claude-sonnet-4"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_unknown_complexity_rejected(self, db, clock):
        manager = _manager(db, clock)
        try:
            with pytest.raises(ValidationError):
                await manager.select_model("extreme")
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_hooks_fired(self, db, clock):
        hooks = HookRegistry()
        selected, warnings = [], []
        hooks.add(EventType.MODEL_SELECTED, lambda **kw: selected.append(kw))
        hooks.add(EventType.BUDGET_WARNING, lambda **kw: warnings.append(kw))
        manager = _manager(db, clock, daily_budget=50, hooks=hooks)
        try:
            await manager.select_model("high", "proj-1")
            assert selected[-1]["model"] == "claude-sonnet-4"
            assert selected[-1]["reason"] == "complexity"
            assert warnings == []

            await _spend(manager, 48, project_id="proj-1")
            await manager.select_model("high")
            assert selected[-1]["reason"] == "daily_hard_limit"
            assert warnings[-1]["window"] == "daily"
            assert warnings[-1]["percent"] == pytest.approx(96)
        finally:
            await db.close()

    def test_select_local_model(self):
        assert BudgetManager.select_local_model("high") == "llama3.1:8b"
        assert BudgetManager.select_local_model("medium") == "llama3.1:8b"
        assert BudgetManager.select_local_model("code") == "codellama"
        assert BudgetManager.select_local_model("low") == "mistral"
        assert BudgetManager.select_local_model("whatever") == "mistral"


# ─────────────────────────────────────────────────────────────────────────────
# Forecast, summary, recommendations
# ─────────────────────────────────────────────────────────────────────────────

class TestForecast:
    @pytest.mark.asyncio
    async def test_linear_extrapolation(self, db, clock):
        manager = _manager(db, clock, monthly_budget=1000)
        try:
            clock.now = datetime(2026, 3, 2, 9, 0)
            await _spend(manager, 100)
            clock.now = datetime(2026, 3, 10, 9, 0)
            forecast = await manager.forecast_monthly_cost()
            assert forecast.daily_average == pytest.approx(10)
            assert forecast.forecast == pytest.approx(310)
            assert forecast.days_remaining == 21
            assert forecast.projected_overrun == 0.0
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_projected_overrun(self, db, clock):
        manager = _manager(db, clock, monthly_budget=200)
        try:
            clock.now = datetime(2026, 3, 10, 9, 0)
            await _spend(manager, 100)
            forecast = await manager.forecast_monthly_cost()
            assert forecast.projected_overrun == pytest.approx(110)
        finally:
            await db.close()


class TestSummary:
    @pytest.mark.asyncio
    async def test_breakdowns(self, db, clock):
        manager = _manager(db, clock)
        try:
            await manager.record_cost("p", "t1", "agent-3-1", "claude-sonnet-4", 1000, 2000)
            await manager.record_cost("p", "t2", "agent-3-2", "claude-sonnet-4", 1000, 2000)
            await manager.record_cost("p", "t3", "agent-1-1", "mistral", 1000, 1000)
            summary = await manager.get_cost_summary()
            by_model = {row["model_used"]: row for row in summary["breakdown"]["by_model"]}
            assert by_model["claude-sonnet-4"]["calls"] == 2
            assert by_model["claude-sonnet-4"]["cost"] == pytest.approx(0.066)
            assert len(summary["breakdown"]["by_agent"]) == 3
            assert summary["budget"]["daily"]["budget"] == 50.0
        finally:
            await db.close()

    def test_recommendations_critical(self):
        status = BudgetStatus(
            daily=BudgetWindow.compute(47, 50),
            monthly=BudgetWindow.compute(950, 1000),
        )
        actions = [r.action for r in BudgetManager.recommendations(status)]
        assert actions == ["switch_to_local", "review_budget", "optimize_model_selection"]

    def test_recommendations_quiet_when_under_budget(self):
        status = BudgetStatus(
            daily=BudgetWindow.compute(1, 50),
            monthly=BudgetWindow.compute(10, 1000),
        )
        assert BudgetManager.recommendations(status) == []
