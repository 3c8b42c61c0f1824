"""
HookRegistry — lifecycle event hooks for projects, stages and tasks.
====================================================================
Observers subscribe to engine events without touching the control flow.
Callbacks run synchronously in the firing coroutine; a callback that raises
is logged and skipped so observers can never fail a stage.

Events (all callbacks receive keyword arguments):
  PROJECT_STATUS    — project_id, status, error
  STAGE_STARTED     — project_id, stage_id, name
  STAGE_COMPLETED   — project_id, stage_id, name
  STAGE_FAILED      — project_id, stage_id, error
  SUB_STAGE_FAILED  — project_id, stage_id, sub_stage, required, error
  TASK_STARTED      — project_id, task_id, agent_name, model
  TASK_COMPLETED    — project_id, task_id, cost_usd
  TASK_FAILED       — project_id, task_id, error, timed_out
  MODEL_SELECTED    — project_id, complexity, model, reason
  BUDGET_WARNING    — project_id, window, percent
  CONFLICTS_FOUND   — project_id, stage_id, conflicts
"""
from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, Optional, Union

logger = logging.getLogger("stageflow.hooks")


class EventType(str, Enum):
    PROJECT_STATUS   = "project_status"
    STAGE_STARTED    = "stage_started"
    STAGE_COMPLETED  = "stage_completed"
    STAGE_FAILED     = "stage_failed"
    SUB_STAGE_FAILED = "sub_stage_failed"
    TASK_STARTED     = "task_started"
    TASK_COMPLETED   = "task_completed"
    TASK_FAILED      = "task_failed"
    MODEL_SELECTED   = "model_selected"
    BUDGET_WARNING   = "budget_warning"
    CONFLICTS_FOUND  = "conflicts_found"


def _key(event: Union[str, EventType]) -> str:
    return event.value if isinstance(event, EventType) else str(event)


class HookRegistry:
    """
    Maps event names to callbacks.

    Usage:
        hooks = HookRegistry()
        hooks.add(EventType.TASK_FAILED, lambda task_id, error, **_: alert(task_id, error))
    """

    def __init__(self) -> None:
        self._hooks: dict[str, list[Callable]] = defaultdict(list)

    def add(self, event: Union[str, EventType], callback: Callable) -> None:
        self._hooks[_key(event)].append(callback)

    def remove(self, event: Union[str, EventType], callback: Callable) -> None:
        callbacks = self._hooks.get(_key(event), [])
        if callback in callbacks:
            callbacks.remove(callback)

    def fire(self, event: Union[str, EventType], **kwargs) -> int:
        """Invoke every callback for event; return how many ran without raising."""
        key = _key(event)
        ok = 0
        for cb in list(self._hooks.get(key, [])):
            try:
                cb(**kwargs)
                ok += 1
            except Exception as exc:  # noqa: BLE001
                logger.warning("Hook %r failed for event %r: %s", cb, key, exc)
        return ok

    def clear(self, event: Optional[Union[str, EventType]] = None) -> None:
        if event is None:
            self._hooks.clear()
        else:
            self._hooks.pop(_key(event), None)

    def registered_events(self) -> list[str]:
        return [k for k, v in self._hooks.items() if v]

    def __len__(self) -> int:
        return sum(len(v) for v in self._hooks.values())
