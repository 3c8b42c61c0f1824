"""
State Persistence — shared async SQLite store for projects, tasks and costs
===========================================================================
One Database (a single aiosqlite connection in WAL mode) is constructed at
process start and handed by reference to every repository. Writes go through
``Database.transaction()``, which serialises them behind one asyncio lock and
commits or rolls back as a unit, so concurrent cost appends never lose an
update. ``close()`` waits for the in-flight write to finish before closing.

Serialization: JSON (not pickle) for payload columns; timestamps are ISO-8601
text with microsecond precision so that lexical order equals time order.

Every sqlite failure surfaces as PersistenceError.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional, Union

import aiosqlite

from .errors import NotFoundError, PersistenceError
from .models import CostRecord, Project, ProjectStatus, Task, TaskStatus

logger = logging.getLogger("stageflow.state")

DEFAULT_DB_PATH = Path.home() / ".stageflow" / "stageflow.db"

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now()


def to_db_time(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat(timespec="microseconds") if ts is not None else None


def from_db_time(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    project_id     TEXT PRIMARY KEY,
    name           TEXT NOT NULL,
    requirements   TEXT,
    story_points   INTEGER,
    budget_daily   REAL,
    budget_monthly REAL,
    status         TEXT NOT NULL,
    error_message  TEXT,
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    task_id       TEXT PRIMARY KEY,
    project_id    TEXT NOT NULL REFERENCES projects(project_id),
    stage         INTEGER NOT NULL,
    agent_name    TEXT NOT NULL,
    model         TEXT,
    status        TEXT NOT NULL,
    input_data    TEXT,
    output_data   TEXT,
    error_message TEXT,
    created_at    TEXT NOT NULL,
    started_at    TEXT,
    completed_at  TEXT
);

CREATE TABLE IF NOT EXISTS cost_tracking (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id    TEXT NOT NULL,
    task_id       TEXT,
    agent_name    TEXT,
    model_used    TEXT NOT NULL,
    tokens_input  INTEGER NOT NULL,
    tokens_output INTEGER NOT NULL,
    cost_usd      REAL NOT NULL,
    timestamp     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS context_entries (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS counters (
    name  TEXT PRIMARY KEY,
    value REAL NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks (project_id, stage);
CREATE INDEX IF NOT EXISTS idx_cost_timestamp ON cost_tracking (timestamp);
CREATE INDEX IF NOT EXISTS idx_cost_project ON cost_tracking (project_id, timestamp);
"""

COUNTER_UPSERT_SQL = (
    "INSERT INTO counters (name, value) VALUES (?, ?) "
    "ON CONFLICT(name) DO UPDATE SET value = value + excluded.value"
)


# ─────────────────────────────────────────────
# Database (shared connection)
# ─────────────────────────────────────────────

class Database:
    """Lazily-opened shared aiosqlite connection with a serialised write path."""

    def __init__(self, db_path: Union[Path, str] = DEFAULT_DB_PATH):
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = str(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._open_lock: Optional[asyncio.Lock] = None   # lazy: created inside event loop
        self._write_lock: Optional[asyncio.Lock] = None

    @property
    def path(self) -> str:
        return self._db_path

    async def connect(self) -> aiosqlite.Connection:
        if self._open_lock is None:
            self._open_lock = asyncio.Lock()
            self._write_lock = asyncio.Lock()
        if self._conn is None:
            async with self._open_lock:
                if self._conn is None:
                    try:
                        conn = await aiosqlite.connect(self._db_path)
                        await conn.execute("PRAGMA journal_mode=WAL")
                        await conn.executescript(_SCHEMA)
                        await conn.commit()
                    except aiosqlite.Error as exc:
                        raise PersistenceError(f"Cannot open database {self._db_path}: {exc}") from exc
                    self._conn = conn
                    logger.debug("Database opened: %s", self._db_path)
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialised write transaction: commit on success, roll back on any error."""
        conn = await self.connect()
        async with self._write_lock:
            try:
                yield conn
                await conn.commit()
            except aiosqlite.Error as exc:
                await conn.rollback()
                raise PersistenceError(f"Database write failed: {exc}") from exc
            except BaseException:
                await conn.rollback()
                raise

    async def execute(self, sql: str, params: tuple = ()) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(sql, params)
            return cursor.rowcount

    async def fetchone(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        conn = await self.connect()
        try:
            async with conn.execute(sql, params) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Database read failed: {exc}") from exc

    async def fetchall(self, sql: str, params: tuple = ()) -> list:
        conn = await self.connect()
        try:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Database read failed: {exc}") from exc

    async def close(self) -> None:
        """Drain the in-flight write, then close the connection."""
        if self._conn is None:
            return
        async with self._write_lock:
            conn, self._conn = self._conn, None
            try:
                await conn.close()
            except aiosqlite.Error as exc:
                raise PersistenceError(f"Database close failed: {exc}") from exc
        # Yield so the aiosqlite worker thread can finish its final callbacks.
        await asyncio.sleep(0)
        logger.debug("Database closed: %s", self._db_path)


# ─────────────────────────────────────────────
# JSON helpers
# ─────────────────────────────────────────────

def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _loads(raw: Optional[str]) -> Any:
    return json.loads(raw) if raw else None


# ─────────────────────────────────────────────
# Repositories
# ─────────────────────────────────────────────

_PROJECT_COLUMNS = (
    "project_id, name, requirements, story_points, budget_daily, budget_monthly, "
    "status, error_message, created_at, updated_at"
)


def _project_from_row(row) -> Project:
    return Project(
        project_id=row[0],
        name=row[1],
        requirements=_loads(row[2]),
        story_points=row[3],
        budget_daily=row[4],
        budget_monthly=row[5],
        status=ProjectStatus(row[6]),
        error_message=row[7],
        created_at=from_db_time(row[8]),
        updated_at=from_db_time(row[9]),
    )


class ProjectRepository:

    def __init__(self, db: Database, clock: Clock = system_clock):
        self._db = db
        self._clock = clock

    async def insert(self, project: Project) -> Project:
        now = self._clock()
        project.created_at = project.created_at or now
        project.updated_at = now
        await self._db.execute(
            f"INSERT INTO projects ({_PROJECT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (project.project_id, project.name, _dumps(project.requirements),
             project.story_points, project.budget_daily, project.budget_monthly,
             project.status.value, project.error_message,
             to_db_time(project.created_at), to_db_time(project.updated_at)),
        )
        return project

    async def get(self, project_id: str) -> Optional[Project]:
        row = await self._db.fetchone(
            f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE project_id = ?", (project_id,)
        )
        return _project_from_row(row) if row else None

    async def require(self, project_id: str) -> Project:
        project = await self.get(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    async def list(self, limit: int = 50) -> list[Project]:
        rows = await self._db.fetchall(
            f"SELECT {_PROJECT_COLUMNS} FROM projects ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        return [_project_from_row(r) for r in rows]

    async def update_status(self, project_id: str, status: ProjectStatus,
                            error_message: Optional[str] = None) -> None:
        updated = await self._db.execute(
            "UPDATE projects SET status = ?, error_message = ?, updated_at = ? "
            "WHERE project_id = ?",
            (status.value, error_message, to_db_time(self._clock()), project_id),
        )
        if updated == 0:
            raise NotFoundError("project", project_id)

    async def budgets(self, project_id: str) -> tuple[Optional[float], Optional[float]]:
        """(daily, monthly) overrides for a project; (None, None) when absent."""
        row = await self._db.fetchone(
            "SELECT budget_daily, budget_monthly FROM projects WHERE project_id = ?",
            (project_id,),
        )
        return (row[0], row[1]) if row else (None, None)

    async def count(self) -> int:
        row = await self._db.fetchone("SELECT COUNT(*) FROM projects")
        return int(row[0])


_TASK_COLUMNS = (
    "task_id, project_id, stage, agent_name, model, status, input_data, output_data, "
    "error_message, created_at, started_at, completed_at"
)


def _task_from_row(row) -> Task:
    return Task(
        task_id=row[0],
        project_id=row[1],
        stage=row[2],
        agent_name=row[3],
        model=row[4],
        status=TaskStatus(row[5]),
        input_data=_loads(row[6]) or {},
        output_data=_loads(row[7]),
        error_message=row[8],
        created_at=from_db_time(row[9]),
        started_at=from_db_time(row[10]),
        completed_at=from_db_time(row[11]),
    )


class TaskRepository:

    def __init__(self, db: Database, clock: Clock = system_clock):
        self._db = db
        self._clock = clock

    async def insert(self, task: Task) -> Task:
        task.created_at = task.created_at or self._clock()
        await self._db.execute(
            f"INSERT INTO tasks ({_TASK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (task.task_id, task.project_id, task.stage, task.agent_name, task.model,
             task.status.value, _dumps(task.input_data), _dumps(task.output_data),
             task.error_message, to_db_time(task.created_at),
             to_db_time(task.started_at), to_db_time(task.completed_at)),
        )
        return task

    async def get(self, task_id: str) -> Optional[Task]:
        row = await self._db.fetchone(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE task_id = ?", (task_id,)
        )
        return _task_from_row(row) if row else None

    async def require(self, task_id: str) -> Task:
        task = await self.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    async def list_for_project(self, project_id: str) -> list[Task]:
        rows = await self._db.fetchall(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE project_id = ? "
            "ORDER BY stage, created_at, task_id",
            (project_id,),
        )
        return [_task_from_row(r) for r in rows]

    async def mark_running(self, task_id: str, model: str) -> bool:
        """Claim a pending task; False when it is no longer pending."""
        updated = await self._db.execute(
            "UPDATE tasks SET status = ?, model = ?, started_at = ?, error_message = NULL "
            "WHERE task_id = ? AND status = ?",
            (TaskStatus.RUNNING.value, model, to_db_time(self._clock()), task_id,
             TaskStatus.PENDING.value),
        )
        return updated == 1

    async def mark_completed(self, task_id: str, output: dict) -> None:
        await self._db.execute(
            "UPDATE tasks SET status = ?, output_data = ?, completed_at = ? WHERE task_id = ?",
            (TaskStatus.COMPLETED.value, _dumps(output), to_db_time(self._clock()), task_id),
        )

    async def mark_failed(self, task_id: str, error_message: str) -> None:
        await self._db.execute(
            "UPDATE tasks SET status = ?, error_message = ?, completed_at = ? WHERE task_id = ?",
            (TaskStatus.FAILED.value, error_message, to_db_time(self._clock()), task_id),
        )

    async def count_by_status(self) -> dict[str, int]:
        rows = await self._db.fetchall("SELECT status, COUNT(*) FROM tasks GROUP BY status")
        counts = {s.value: 0 for s in TaskStatus}
        for status, n in rows:
            counts[status] = int(n)
        return counts


class CostLedger:
    """Append-only CostRecord store; the sole input to every budget aggregate."""

    def __init__(self, db: Database):
        self._db = db

    @property
    def database(self) -> Database:
        return self._db

    async def append(self, record: CostRecord,
                     counters: Optional[dict[str, float]] = None) -> None:
        """Insert the record and upsert the given counters in one transaction."""
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT INTO cost_tracking (project_id, task_id, agent_name, model_used, "
                "tokens_input, tokens_output, cost_usd, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (record.project_id, record.task_id, record.agent_name, record.model,
                 record.tokens_input, record.tokens_output, record.cost_usd,
                 to_db_time(record.timestamp)),
            )
            for name, amount in (counters or {}).items():
                await conn.execute(COUNTER_UPSERT_SQL, (name, amount))

    async def total_between(self, start: datetime, end: datetime,
                            project_id: Optional[str] = None) -> float:
        """Sum of cost_usd with start <= timestamp < end."""
        sql = ("SELECT COALESCE(SUM(cost_usd), 0) FROM cost_tracking "
               "WHERE timestamp >= ? AND timestamp < ?")
        params: tuple = (to_db_time(start), to_db_time(end))
        if project_id is not None:
            sql += " AND project_id = ?"
            params += (project_id,)
        row = await self._db.fetchone(sql, params)
        return float(row[0])

    async def breakdown_between(self, column: str, start: datetime, end: datetime,
                                project_id: Optional[str] = None) -> list[dict]:
        """Per-model or per-agent spend and call count within [start, end)."""
        if column not in ("model_used", "agent_name"):
            raise ValueError(f"Unsupported breakdown column {column!r}")
        sql = (f"SELECT {column}, SUM(cost_usd), COUNT(*) FROM cost_tracking "
               "WHERE timestamp >= ? AND timestamp < ?")
        params: tuple = (to_db_time(start), to_db_time(end))
        if project_id is not None:
            sql += " AND project_id = ?"
            params += (project_id,)
        sql += f" GROUP BY {column} ORDER BY SUM(cost_usd) DESC"
        rows = await self._db.fetchall(sql, params)
        return [{column: r[0], "cost": float(r[1]), "calls": int(r[2])} for r in rows]

    async def records_for_task(self, task_id: str) -> int:
        row = await self._db.fetchone(
            "SELECT COUNT(*) FROM cost_tracking WHERE task_id = ?", (task_id,)
        )
        return int(row[0])
