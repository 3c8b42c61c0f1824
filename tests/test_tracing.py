"""Tests for stageflow/tracing.py: OTEL span instrumentation."""
from __future__ import annotations

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

import stageflow.tracing as t
from stageflow.context_store import MemoryContextStore
from stageflow.cost import BudgetManager
from stageflow.state import CostLedger, Database
from stageflow.tracing import (
    TracingConfig,
    configure_tracing,
    get_tracer,
    traced_model_selection,
    traced_project,
    traced_stage,
    traced_task,
)
from stageflow.workflow import WorkflowEngine


@pytest.fixture(autouse=True)
def reset_tracing():
    """Reset global tracer state between tests."""
    t._tracer = None
    t._provider = None
    yield
    t._tracer = None
    t._provider = None


@pytest.fixture
def exporter():
    """InMemorySpanExporter wired into the module-level tracer."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    t._provider = provider
    t._tracer = provider.get_tracer("test")
    return exporter


def test_tracing_config_defaults():
    cfg = TracingConfig()
    assert cfg.enabled is False
    assert cfg.service_name == "stageflow"
    assert cfg.otlp_endpoint is None
    assert cfg.sample_rate == 1.0


def test_disabled_tracing_produces_no_exception():
    configure_tracing(TracingConfig(enabled=False))
    with traced_project("proj-1"):
        with traced_stage("proj-1", 1, "Trigger Authentication"):
            with traced_task("task-1", "agent-1-1", "mistral"):
                pass
    assert get_tracer() is not None


def test_task_span_attributes(exporter):
    with traced_task("task-1", "agent-3-1", "claude-sonnet-4") as span:
        span.set_attribute("llm.cost_usd", 0.033)

    spans = exporter.get_finished_spans()
    assert len(spans) == 1
    assert spans[0].name == "task:task-1"
    assert spans[0].attributes["task.agent"] == "agent-3-1"
    assert spans[0].attributes["llm.model"] == "claude-sonnet-4"
    assert spans[0].attributes["llm.cost_usd"] == 0.033


def test_stage_spans_nest_under_project(exporter):
    with traced_project("proj-1"):
        with traced_stage("proj-1", 2, "Prompt Engineering"):
            pass

    stage_span, project_span = exporter.get_finished_spans()
    assert stage_span.name == "stage:2"
    assert stage_span.attributes["stage.name"] == "Prompt Engineering"
    assert stage_span.parent.span_id == project_span.context.span_id


def test_model_selection_span(exporter):
    with traced_model_selection("high") as span:
        span.set_attribute("llm.model", "claude-sonnet-4")
    (span,) = exporter.get_finished_spans()
    assert span.name == "select_model"
    assert span.attributes["task.complexity"] == "high"


@pytest.mark.asyncio
async def test_budget_manager_emits_selection_span(exporter, tmp_path):
    db = Database(tmp_path / "trace.db")
    try:
        await BudgetManager(CostLedger(db)).select_model("medium")
    finally:
        await db.close()
    (span,) = exporter.get_finished_spans()
    assert span.attributes["llm.model"] == "claude-haiku"
    assert span.attributes["selection.reason"] == "complexity"


@pytest.mark.asyncio
async def test_failed_stage_span_records_exception(exporter):
    def _boom(project_id, stage, sub_stage):
        raise RuntimeError("nope")

    engine = WorkflowEngine(MemoryContextStore())
    engine.register_handler(1, "phone_auth", _boom)
    await engine.initialize_workflow("proj-1")
    with pytest.raises(Exception):
        await engine.execute_stage("proj-1", 1)

    (span,) = exporter.get_finished_spans()
    assert span.name == "stage:1"
    assert any(e.name == "exception" for e in span.events)
