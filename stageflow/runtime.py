"""
Runtime wiring
==============
create_runtime() builds the shared Database once and hands it to every
component, so there is exactly one aiosqlite connection per process.

Usage:
    runtime = create_runtime(Settings.from_env(), executor=MyExecutor())
    try:
        created = await runtime.orchestrator.create_project({"name": "Todo app"})
        await runtime.orchestrator.execute_project(created["project_id"])
    finally:
        await runtime.close()
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .collaborators import AgentAssist, AgentOptimizer, Arbitrator, HumanGate, ModelExecutor
from .config import Settings
from .context_store import ContextStore, SQLiteContextStore
from .cost import BudgetManager
from .engine import Orchestrator
from .hooks import HookRegistry
from .state import Clock, CostLedger, Database, ProjectRepository, system_clock
from .tracing import configure_tracing
from .workflow import WorkflowEngine

logger = logging.getLogger("stageflow.runtime")


@dataclass
class Runtime:
    settings: Settings
    db: Database
    context_store: ContextStore
    hooks: HookRegistry
    budget: BudgetManager
    workflow: WorkflowEngine
    orchestrator: Orchestrator

    async def close(self) -> None:
        await self.orchestrator.shutdown()


def create_runtime(
    settings: Optional[Settings] = None,
    executor: Optional[ModelExecutor] = None,
    arbitrator: Optional[Arbitrator] = None,
    agent_assist: Optional[AgentAssist] = None,
    agent_optimizer: Optional[AgentOptimizer] = None,
    human_gate: Optional[HumanGate] = None,
    context_store: Optional[ContextStore] = None,
    hooks: Optional[HookRegistry] = None,
    clock: Clock = system_clock,
) -> Runtime:
    settings = settings or Settings()
    configure_tracing(settings.tracing)

    db = Database(settings.db_path)
    store = context_store or SQLiteContextStore(db, clock)
    hooks = hooks or HookRegistry()

    budget = BudgetManager(
        CostLedger(db),
        context_store=store,
        projects=ProjectRepository(db, clock),
        daily_budget=settings.daily_budget,
        monthly_budget=settings.monthly_budget,
        clock=clock,
        hooks=hooks,
    )
    workflow = WorkflowEngine(
        store,
        agent_assist=agent_assist,
        agent_optimizer=agent_optimizer,
        human_gate=human_gate,
        hooks=hooks,
        clock=clock,
    )
    orchestrator = Orchestrator(
        db,
        budget,
        store,
        executor=executor,
        arbitrator=arbitrator,
        max_concurrency=settings.max_concurrency,
        task_timeout=settings.task_timeout_seconds,
        max_retries=settings.task_max_retries,
        retry_backoff=settings.retry_backoff_seconds,
        hooks=hooks,
        clock=clock,
    )
    logger.info("Runtime ready (db=%s, daily=$%.2f, monthly=$%.2f)",
                db.path, settings.daily_budget, settings.monthly_budget)
    return Runtime(
        settings=settings,
        db=db,
        context_store=store,
        hooks=hooks,
        budget=budget,
        workflow=workflow,
        orchestrator=orchestrator,
    )
