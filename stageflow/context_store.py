"""
Context Store — key-value context snapshots plus atomic metric counters
=======================================================================
Follows the same ABC + concrete-class pattern as the rest of the package.

Two built-in stores:
  SQLiteContextStore — rows in the shared Database (context_entries, counters)
  MemoryContextStore — process-local dicts, for single-process runs and tests

Key layout:
  project:<project_id>:context   project context document
  workflow:<project_id>          WorkflowInstance snapshot
  agent:<task_id>:<agent_name>   per-task agent state
  cost:total / cost:<project_id> cost counters (counter namespace)

Values are JSON documents. ``increment`` is atomic in both implementations.
"""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from .state import COUNTER_UPSERT_SQL, Clock, Database, system_clock, to_db_time

logger = logging.getLogger("stageflow.context_store")


def project_context_key(project_id: str) -> str:
    return f"project:{project_id}:context"


def workflow_key(project_id: str) -> str:
    return f"workflow:{project_id}"


def agent_state_key(task_id: str, agent_name: str) -> str:
    return f"agent:{task_id}:{agent_name}"


# ─────────────────────────────────────────────────────────────────────────────
# ContextStore ABC
# ─────────────────────────────────────────────────────────────────────────────

class ContextStore(ABC):
    """Abstract key-value snapshot store with numeric counters."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-serialisable document under key, replacing any previous one."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the document stored under key, or None."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key if present."""

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with prefix, sorted."""

    @abstractmethod
    async def increment(self, name: str, amount: float = 1) -> float:
        """Atomically add amount to a counter and return the new value."""

    @abstractmethod
    async def get_counter(self, name: str) -> float:
        """Current counter value (0 when the counter was never incremented)."""

    @abstractmethod
    async def get_metrics(self) -> dict[str, float]:
        """All counters as a name → value dict."""

    # ── Convenience helpers ─────────────────────────────────────────────────

    async def set_project_context(self, project_id: str, context: dict) -> None:
        await self.set(project_context_key(project_id), context)

    async def get_project_context(self, project_id: str) -> Optional[dict]:
        return await self.get(project_context_key(project_id))

    async def update_project_context(self, project_id: str, **updates) -> dict:
        context = await self.get_project_context(project_id) or {}
        context.update(updates)
        await self.set_project_context(project_id, context)
        return context

    async def set_agent_state(self, task_id: str, agent_name: str, state: dict) -> None:
        await self.set(agent_state_key(task_id, agent_name), state)

    async def get_agent_state(self, task_id: str, agent_name: str) -> Optional[dict]:
        return await self.get(agent_state_key(task_id, agent_name))

    async def close(self) -> None:
        """Release resources; the default store owns none."""


# ─────────────────────────────────────────────────────────────────────────────
# SQLiteContextStore
# ─────────────────────────────────────────────────────────────────────────────

class SQLiteContextStore(ContextStore):
    """Context documents and counters stored in the shared Database."""

    def __init__(self, db: Database, clock: Clock = system_clock) -> None:
        self._db = db
        self._clock = clock

    @property
    def database(self) -> Database:
        return self._db

    async def set(self, key: str, value: Any) -> None:
        await self._db.execute(
            "INSERT INTO context_entries (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
            "updated_at = excluded.updated_at",
            (key, json.dumps(value), to_db_time(self._clock())),
        )

    async def get(self, key: str) -> Optional[Any]:
        row = await self._db.fetchone(
            "SELECT value FROM context_entries WHERE key = ?", (key,)
        )
        return json.loads(row[0]) if row else None

    async def delete(self, key: str) -> None:
        await self._db.execute("DELETE FROM context_entries WHERE key = ?", (key,))

    async def keys(self, prefix: str = "") -> list[str]:
        # substr() rather than LIKE so '_' and '%' in keys stay literal
        rows = await self._db.fetchall(
            "SELECT key FROM context_entries WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        )
        return [r[0] for r in rows]

    async def increment(self, name: str, amount: float = 1) -> float:
        async with self._db.transaction() as conn:
            await conn.execute(COUNTER_UPSERT_SQL, (name, amount))
            async with conn.execute(
                "SELECT value FROM counters WHERE name = ?", (name,)
            ) as cursor:
                row = await cursor.fetchone()
        return float(row[0])

    async def get_counter(self, name: str) -> float:
        row = await self._db.fetchone("SELECT value FROM counters WHERE name = ?", (name,))
        return float(row[0]) if row else 0.0

    async def get_metrics(self) -> dict[str, float]:
        rows = await self._db.fetchall("SELECT name, value FROM counters ORDER BY name")
        return {name: float(value) for name, value in rows}


# ─────────────────────────────────────────────────────────────────────────────
# MemoryContextStore
# ─────────────────────────────────────────────────────────────────────────────

class MemoryContextStore(ContextStore):
    """
    Process-local store. Documents are round-tripped through JSON on write so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._counters: dict[str, float] = {}
        self._lock: Optional[asyncio.Lock] = None   # lazy: created inside event loop

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    async def increment(self, name: str, amount: float = 1) -> float:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            value = self._counters.get(name, 0.0) + amount
            self._counters[name] = value
        return value

    async def get_counter(self, name: str) -> float:
        return self._counters.get(name, 0.0)

    async def get_metrics(self) -> dict[str, float]:
        return dict(sorted(self._counters.items()))
