"""
OpenTelemetry Tracing — tracing.py
==================================
TracingConfig, configure_tracing(), get_tracer(), and context-manager helpers
for the main instrumentation points: a project run, a stage, a task, and a
model-selection decision.

Without configure_tracing() the OpenTelemetry API's default (non-recording)
tracer is used, so the helpers cost next to nothing.

Usage:
    from stageflow.tracing import configure_tracing, TracingConfig
    configure_tracing(TracingConfig(enabled=True, otlp_endpoint="http://localhost:4317"))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger("stageflow.tracing")

# ── Module-level singletons (reset between tests) ──────────────────────────────
_tracer = None
_provider = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "stageflow"
    otlp_endpoint: Optional[str] = None   # None → ConsoleSpanExporter (dev)
    sample_rate: float = 1.0


def configure_tracing(cfg: TracingConfig) -> None:
    """Initialise the global TracerProvider. Safe to call multiple times."""
    global _tracer, _provider

    if not cfg.enabled:
        _tracer = trace.get_tracer("stageflow")
        return

    resource = Resource.create({"service.name": cfg.service_name})
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(cfg.sample_rate))

    if cfg.otlp_endpoint:
        # Optional extra: pip install -e '.[otlp]'
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True))
        )
        logger.info("OTEL tracing → %s", cfg.otlp_endpoint)
    else:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTEL tracing → console (dev mode)")

    trace.set_tracer_provider(provider)
    _provider = provider
    _tracer = provider.get_tracer(cfg.service_name)


def get_tracer():
    """Return the configured tracer, or the API default when none was configured."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("stageflow")
    return _tracer


# ── Context managers ───────────────────────────────────────────────────────────

@contextmanager
def traced_project(project_id: str) -> Iterator:
    with get_tracer().start_as_current_span(f"project:{project_id}") as span:
        span.set_attribute("project.id", project_id)
        yield span


@contextmanager
def traced_stage(project_id: str, stage_id: int, name: str) -> Iterator:
    """Span for one stage of a project (orchestrator or workflow path)."""
    with get_tracer().start_as_current_span(f"stage:{stage_id}") as span:
        span.set_attribute("project.id", project_id)
        span.set_attribute("stage.id", stage_id)
        span.set_attribute("stage.name", name)
        yield span


@contextmanager
def traced_task(task_id: str, agent_name: str, model: str) -> Iterator:
    """Span for a single task execution, retries included."""
    with get_tracer().start_as_current_span(f"task:{task_id}") as span:
        span.set_attribute("task.id", task_id)
        span.set_attribute("task.agent", agent_name)
        span.set_attribute("llm.model", model)
        yield span


@contextmanager
def traced_model_selection(complexity: str) -> Iterator:
    with get_tracer().start_as_current_span("select_model") as span:
        span.set_attribute("task.complexity", complexity)
        yield span
