"""
Tests for the SQLite persistence layer — Database lifecycle, ProjectRepository,
TaskRepository and CostLedger.
"""
from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from stageflow.errors import NotFoundError, PersistenceError
from stageflow.models import CostRecord, Project, ProjectStatus, Task, TaskStatus
from stageflow.state import (
    CostLedger, Database, ProjectRepository, TaskRepository, from_db_time, to_db_time,
)

NOW = datetime(2026, 5, 14, 9, 30, 0, 123456)


def _clock():
    return NOW


def _record(project_id="p1", cost=1.0, model="mistral", agent="agent-1-1", ts=NOW, task_id=None):
    return CostRecord(
        project_id=project_id, task_id=task_id, agent_name=agent, model=model,
        tokens_input=10, tokens_output=20, cost_usd=cost, timestamp=ts,
    )


def test_db_time_round_trip_keeps_microseconds():
    assert to_db_time(NOW) == "2026-05-14T09:30:00.123456"
    assert from_db_time(to_db_time(NOW)) == NOW
    assert to_db_time(datetime(2026, 5, 14)) == "2026-05-14T00:00:00.000000"
    assert to_db_time(None) is None and from_db_time(None) is None


class TestDatabase:
    @pytest.mark.asyncio
    async def test_lazy_connect_and_idempotent_close(self, tmp_path):
        db = Database(tmp_path / "nested" / "state.db")
        await db.close()
        assert await db.fetchone("SELECT 1") is not None
        await db.close()
        await db.close()

    @pytest.mark.asyncio
    async def test_sql_error_becomes_persistence_error(self, tmp_path):
        db = Database(tmp_path / "state.db")
        try:
            with pytest.raises(PersistenceError):
                await db.fetchall("SELECT * FROM no_such_table")
            with pytest.raises(PersistenceError):
                await db.execute("INSERT INTO no_such_table VALUES (1)")
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_failed_transaction_rolls_back(self, tmp_path):
        db = Database(tmp_path / "state.db")
        try:
            with pytest.raises(RuntimeError):
                async with db.transaction() as conn:
                    await conn.execute("INSERT INTO counters (name, value) VALUES ('x', 1)")
                    raise RuntimeError("abort")
            assert await db.fetchone("SELECT value FROM counters WHERE name = 'x'") is None
        finally:
            await db.close()


class TestProjectRepository:
    @pytest.mark.asyncio
    async def test_insert_get_update(self, tmp_path):
        db = Database(tmp_path / "state.db")
        repo = ProjectRepository(db, _clock)
        try:
            await repo.insert(Project("proj-1", "Demo", requirements={"pages": 2},
                                      budget_daily=5.0))
            project = await repo.require("proj-1")
            assert project.requirements == {"pages": 2}
            assert project.status is ProjectStatus.CREATED
            assert project.created_at == NOW
            assert await repo.budgets("proj-1") == (5.0, None)
            assert await repo.budgets("proj-x") == (None, None)

            await repo.update_status("proj-1", ProjectStatus.FAILED, "boom")
            project = await repo.get("proj-1")
            assert project.status is ProjectStatus.FAILED
            assert project.error_message == "boom"
            assert await repo.count() == 1
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_missing_project(self, tmp_path):
        db = Database(tmp_path / "state.db")
        repo = ProjectRepository(db, _clock)
        try:
            assert await repo.get("nope") is None
            with pytest.raises(NotFoundError):
                await repo.require("nope")
            with pytest.raises(NotFoundError):
                await repo.update_status("nope", ProjectStatus.RUNNING)
        finally:
            await db.close()


class TestTaskRepository:
    @pytest.mark.asyncio
    async def test_lifecycle(self, tmp_path):
        db = Database(tmp_path / "state.db")
        repo = TaskRepository(db, _clock)
        try:
            await repo.insert(Task("task-1", "proj-1", 3, "agent-3-1", input_data={"k": 1}))
            await repo.insert(Task("task-2", "proj-1", 3, "agent-3-2"))

            assert await repo.mark_running("task-1", "claude-sonnet-4") is True
            assert await repo.mark_running("task-1", "mistral") is False
            task = await repo.require("task-1")
            assert task.status is TaskStatus.RUNNING
            assert task.model == "claude-sonnet-4"
            assert task.started_at == NOW

            await repo.mark_completed("task-1", {"result": "ok"})
            await repo.mark_failed("task-2", "cancelled")

            tasks = await repo.list_for_project("proj-1")
            assert [t.status for t in tasks] == [TaskStatus.COMPLETED, TaskStatus.FAILED]
            assert tasks[0].output_data == {"result": "ok"}
            assert tasks[0].input_data == {"k": 1}
            assert tasks[1].error_message == "cancelled"
            assert all(t.is_terminal for t in tasks)

            counts = await repo.count_by_status()
            assert counts == {"pending": 0, "running": 0, "completed": 1, "failed": 1}
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_missing_task(self, tmp_path):
        db = Database(tmp_path / "state.db")
        try:
            with pytest.raises(NotFoundError):
                await TaskRepository(db).require("task-missing")
        finally:
            await db.close()


class TestCostLedger:
    @pytest.mark.asyncio
    async def test_half_open_window(self, tmp_path):
        db = Database(tmp_path / "state.db")
        ledger = CostLedger(db)
        start, end = datetime(2026, 5, 14), datetime(2026, 5, 15)
        try:
            await ledger.append(_record(cost=1.0, ts=start))
            await ledger.append(_record(cost=2.0, ts=datetime(2026, 5, 14, 23, 59, 59, 999999)))
            await ledger.append(_record(cost=4.0, ts=end))
            assert await ledger.total_between(start, end) == pytest.approx(3.0)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_project_filter_and_breakdown(self, tmp_path):
        db = Database(tmp_path / "state.db")
        ledger = CostLedger(db)
        start, end = datetime(2026, 5, 14), datetime(2026, 5, 15)
        try:
            await ledger.append(_record("p1", 1.0, "mistral", "agent-1-1", task_id="t1"))
            await ledger.append(_record("p1", 3.0, "claude-haiku", "agent-4-1"))
            await ledger.append(_record("p2", 5.0, "claude-haiku", "agent-4-1"))

            assert await ledger.total_between(start, end, "p1") == pytest.approx(4.0)
            by_model = await ledger.breakdown_between("model_used", start, end)
            assert by_model[0] == {"model_used": "claude-haiku", "cost": 8.0, "calls": 2}
            by_agent = await ledger.breakdown_between("agent_name", start, end, "p1")
            assert {row["agent_name"] for row in by_agent} == {"agent-1-1", "agent-4-1"}
            assert await ledger.records_for_task("t1") == 1
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_breakdown_rejects_unknown_column(self, tmp_path):
        db = Database(tmp_path / "state.db")
        try:
            with pytest.raises(ValueError):
                await CostLedger(db).breakdown_between("cost_usd; DROP", NOW, NOW)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_concurrent_appends(self, tmp_path):
        db = Database(tmp_path / "state.db")
        ledger = CostLedger(db)
        try:
            await asyncio.gather(*(ledger.append(_record(cost=0.5)) for _ in range(20)))
            total = await ledger.total_between(datetime(2026, 5, 14), datetime(2026, 5, 15))
            assert total == pytest.approx(10.0)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_append_with_counters_commits_together(self, tmp_path):
        db = Database(tmp_path / "state.db")
        ledger = CostLedger(db)
        try:
            await ledger.append(_record(cost=1.5), {"cost:total": 1.5, "cost:p1": 1.5})
            await ledger.append(_record(cost=0.5), {"cost:total": 0.5, "cost:p1": 0.5})
            rows = await db.fetchall("SELECT name, value FROM counters ORDER BY name")
            assert [(r[0], r[1]) for r in rows] == [("cost:p1", 2.0), ("cost:total", 2.0)]
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_counter_failure_rolls_back_record(self, tmp_path):
        db = Database(tmp_path / "state.db")
        ledger = CostLedger(db)
        try:
            await db.execute("DROP TABLE counters")
            with pytest.raises(PersistenceError):
                await ledger.append(_record(cost=1.0), {"cost:total": 1.0})
            total = await ledger.total_between(datetime(2026, 5, 14), datetime(2026, 5, 15))
            assert total == 0.0
        finally:
            await db.close()
