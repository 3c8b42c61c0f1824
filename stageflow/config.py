"""
Configuration
=============
Settings are a plain dataclass. ``Settings.from_env()`` loads a ``.env`` file
(python-dotenv) and then reads STAGEFLOW_* variables; anything unset keeps its
default. Malformed values raise ValidationError naming the variable.

Variables:
  STAGEFLOW_DB_PATH          SQLite file (default ~/.stageflow/stageflow.db)
  STAGEFLOW_DAILY_BUDGET     USD per calendar day (default 50)
  STAGEFLOW_MONTHLY_BUDGET   USD per calendar month (default 1000)
  STAGEFLOW_MAX_CONCURRENCY  concurrent agent tasks per stage (default 3)
  STAGEFLOW_TASK_TIMEOUT     seconds per task attempt, 0 disables (default 300)
  STAGEFLOW_TASK_RETRIES     extra attempts after a failed task (default 0)
  STAGEFLOW_RETRY_BACKOFF    base backoff seconds, doubled per retry (default 1)
  STAGEFLOW_LOG_LEVEL        logging level name (default INFO)
  STAGEFLOW_TRACING          1/true to enable OpenTelemetry export
  STAGEFLOW_OTLP_ENDPOINT    OTLP gRPC endpoint; console exporter when unset
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, TypeVar

from dotenv import load_dotenv

from .errors import ValidationError
from .state import DEFAULT_DB_PATH
from .tracing import TracingConfig

T = TypeVar("T")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _read(env: Mapping[str, str], name: str, parse: Callable[[str], T], default: T) -> T:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return parse(raw.strip())
    except ValueError as exc:
        raise ValidationError(f"{name}={raw!r} is invalid: {exc}") from exc


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError("expected a boolean")


@dataclass
class Settings:
    db_path: Path = DEFAULT_DB_PATH
    daily_budget: float = 50.0
    monthly_budget: float = 1000.0
    max_concurrency: int = 3
    task_timeout_seconds: Optional[float] = 300.0
    task_max_retries: int = 0
    retry_backoff_seconds: float = 1.0
    log_level: str = "INFO"
    tracing: TracingConfig = field(default_factory=TracingConfig)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.daily_budget < 0 or self.monthly_budget < 0:
            raise ValidationError("Budgets must be non-negative")
        if self.max_concurrency < 1:
            raise ValidationError("max_concurrency must be at least 1")
        if self.task_timeout_seconds is not None and self.task_timeout_seconds <= 0:
            raise ValidationError("task_timeout_seconds must be positive (or None)")
        if self.task_max_retries < 0:
            raise ValidationError("task_max_retries must be non-negative")
        if self.retry_backoff_seconds < 0:
            raise ValidationError("retry_backoff_seconds must be non-negative")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValidationError(f"Unknown log level {self.log_level!r}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None,
                 dotenv: bool = True) -> "Settings":
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ
        timeout = _read(env, "STAGEFLOW_TASK_TIMEOUT", float, 300.0)
        return cls(
            db_path=_read(env, "STAGEFLOW_DB_PATH", lambda v: Path(v).expanduser(), DEFAULT_DB_PATH),
            daily_budget=_read(env, "STAGEFLOW_DAILY_BUDGET", float, 50.0),
            monthly_budget=_read(env, "STAGEFLOW_MONTHLY_BUDGET", float, 1000.0),
            max_concurrency=_read(env, "STAGEFLOW_MAX_CONCURRENCY", int, 3),
            task_timeout_seconds=timeout if timeout > 0 else None,
            task_max_retries=_read(env, "STAGEFLOW_TASK_RETRIES", int, 0),
            retry_backoff_seconds=_read(env, "STAGEFLOW_RETRY_BACKOFF", float, 1.0),
            log_level=env.get("STAGEFLOW_LOG_LEVEL", "INFO"),
            tracing=TracingConfig(
                enabled=_read(env, "STAGEFLOW_TRACING", _parse_bool, False),
                otlp_endpoint=env.get("STAGEFLOW_OTLP_ENDPOINT") or None,
            ),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
