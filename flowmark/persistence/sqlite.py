"""SQLite implementation of the workflow stores."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..exceptions import WorkflowNotFoundError
from ..model.definition import (
    DefinitionStatus,
    ProcessDefinition,
    ProcessVersion,
    TriggerType,
    WorkflowDefinition,
)
from ..model.validation import ensure_valid
from ..utils.durations import utcnow
from .models import (
    ExecutionRecord,
    InstanceQuery,
    InstanceQueryResult,
    Job,
    JobStatus,
    TimerStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTimer,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS definitions (
        id TEXT PRIMARY KEY,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS definition_versions (
        definition_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (definition_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS instances (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        correlation_id TEXT,
        tenant_id TEXT,
        created_at REAL NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_records (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        instance_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS join_arrivals (
        instance_id TEXT NOT NULL,
        join_id TEXT NOT NULL,
        branch_id TEXT NOT NULL,
        PRIMARY KEY (instance_id, join_id, branch_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS locks (
        resource_id TEXT PRIMARY KEY,
        holder TEXT NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS timers (
        id TEXT PRIMARY KEY,
        instance_id TEXT NOT NULL,
        bookmark_name TEXT NOT NULL,
        status TEXT NOT NULL,
        fire_at REAL NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        instance_id TEXT NOT NULL,
        status TEXT NOT NULL,
        priority INTEGER NOT NULL,
        next_run_at REAL NOT NULL,
        created_at REAL NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_instances_status ON instances (status)",
    "CREATE INDEX IF NOT EXISTS ix_timers_due ON timers (status, fire_at)",
    "CREATE INDEX IF NOT EXISTS ix_jobs_due ON jobs (status, next_run_at)",
)


class SQLiteDatabase:
    """Shared connection and helpers used by every SQLite store.

    Statements run in worker threads via ``asyncio.to_thread``; a thread lock
    serializes use of the single connection.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._mutex:
            cur = self._conn.cursor()
            for statement in _SCHEMA:
                cur.execute(statement)
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def execute(self, query: str, *params: Any) -> int:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def add_join_arrival(self, instance_id: str, join_id: str, branch_id: str) -> int:
        with self._mutex:
            cur = self._conn.cursor()
            try:
                cur.execute(
                    "INSERT OR IGNORE INTO join_arrivals (instance_id, join_id, branch_id) VALUES (?, ?, ?)",
                    (instance_id, join_id, branch_id),
                )
                cur.execute(
                    "SELECT COUNT(*) FROM join_arrivals WHERE instance_id = ? AND join_id = ?",
                    (instance_id, join_id),
                )
                count = cur.fetchone()[0]
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return count

    def acquire_lock(self, resource_id: str, holder: str, ttl: float) -> bool:
        now = time.time()
        changed = self.execute(
            """
            INSERT INTO locks (resource_id, holder, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(resource_id) DO UPDATE
            SET holder = excluded.holder, expires_at = excluded.expires_at
            WHERE locks.expires_at < ? OR locks.holder = excluded.holder
            """,
            resource_id,
            holder,
            now + ttl,
            now,
        )
        return changed > 0

    def release_lock(self, resource_id: str, holder: str) -> None:
        self.execute(
            "DELETE FROM locks WHERE resource_id = ? AND holder = ?", resource_id, holder
        )

    def close(self) -> None:
        with self._mutex:
            self._conn.close()


class _SQLiteLocking:
    _db: SQLiteDatabase
    _scope: str

    async def try_acquire_lock(self, resource_id: str, holder: str, ttl: float) -> bool:
        return await asyncio.to_thread(
            self._db.acquire_lock, f"{self._scope}:{resource_id}", holder, ttl
        )

    async def release_lock(self, resource_id: str, holder: str) -> None:
        await asyncio.to_thread(
            self._db.release_lock, f"{self._scope}:{resource_id}", holder
        )


class SQLiteDefinitionStore:
    """Persist definitions and immutable versions using SQLite."""

    def __init__(self, db: SQLiteDatabase):
        self._db = db
        self._lock = asyncio.Lock()

    async def _get_entry(self, definition_id: str) -> Optional[WorkflowDefinition]:
        row = await asyncio.to_thread(
            self._db.fetchone, "SELECT data FROM definitions WHERE id = ?", definition_id
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def _put_entry(self, entry: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._db.execute,
            "INSERT OR REPLACE INTO definitions (id, data) VALUES (?, ?)",
            entry.id,
            entry.model_dump_json(),
        )

    async def _get_version(self, definition_id: str, version: int) -> Optional[ProcessVersion]:
        row = await asyncio.to_thread(
            self._db.fetchone,
            "SELECT data FROM definition_versions WHERE definition_id = ? AND version = ?",
            definition_id,
            version,
        )
        return ProcessVersion.model_validate_json(row["data"]) if row else None

    async def save(
        self,
        process: ProcessDefinition,
        key: Optional[str] = None,
        change_description: Optional[str] = None,
    ) -> ProcessVersion:
        async with self._lock:
            entry = await self._get_entry(process.id)
            if entry is None:
                entry = WorkflowDefinition(
                    id=process.id,
                    key=key or process.id,
                    name=process.name,
                    description=process.description,
                    category=process.category,
                )
            entry.latest_version += 1
            entry.name = process.name
            entry.description = process.description
            entry.updated_at = utcnow()
            snapshot = ProcessDefinition.model_validate(process.model_dump())
            snapshot.version = entry.latest_version
            version = ProcessVersion(
                definition_id=process.id,
                version=entry.latest_version,
                process=snapshot,
                change_description=change_description,
            )
            await asyncio.to_thread(
                self._db.execute,
                "INSERT INTO definition_versions (definition_id, version, data) VALUES (?, ?, ?)",
                process.id,
                version.version,
                version.model_dump_json(),
            )
            await self._put_entry(entry)
            return version

    async def get(
        self, definition_id: str, version: Optional[int] = None
    ) -> Optional[ProcessDefinition]:
        if version is None:
            entry = await self._get_entry(definition_id)
            if entry is None or entry.published_version is None:
                return None
            version = entry.published_version
        stored = await self._get_version(definition_id, version)
        return stored.process if stored else None

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return await self._get_entry(definition_id)

    async def list_versions(self, definition_id: str) -> list[ProcessVersion]:
        rows = await asyncio.to_thread(
            self._db.fetchall,
            "SELECT data FROM definition_versions WHERE definition_id = ? ORDER BY version",
            definition_id,
        )
        return [ProcessVersion.model_validate_json(r["data"]) for r in rows]

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._db.fetchall, "SELECT data FROM definitions ORDER BY id"
        )
        return [WorkflowDefinition.model_validate_json(r["data"]) for r in rows]

    async def publish(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition:
        async with self._lock:
            entry = await self._get_entry(definition_id)
            if entry is None:
                raise WorkflowNotFoundError(f"Definition {definition_id} not found")
            number = version if version is not None else entry.latest_version
            stored = await self._get_version(definition_id, number)
            if stored is None:
                raise WorkflowNotFoundError(
                    f"Definition {definition_id} has no version {number}"
                )
            ensure_valid(stored.process)
            entry.status = DefinitionStatus.PUBLISHED
            entry.published_version = number
            entry.updated_at = utcnow()
            await self._put_entry(entry)
            return entry

    async def unpublish(self, definition_id: str) -> WorkflowDefinition:
        async with self._lock:
            entry = await self._get_entry(definition_id)
            if entry is None:
                raise WorkflowNotFoundError(f"Definition {definition_id} not found")
            entry.status = DefinitionStatus.DRAFT
            entry.published_version = None
            entry.updated_at = utcnow()
            await self._put_entry(entry)
            return entry

    async def get_by_trigger(
        self, trigger_type: TriggerType, name: Optional[str]
    ) -> list[ProcessDefinition]:
        matches = []
        for entry in await self.list_definitions():
            if entry.published_version is None:
                continue
            process = await self.get(entry.id, entry.published_version)
            if process is not None and process.has_trigger(trigger_type, name):
                matches.append(process)
        return matches


class SQLiteInstanceStore(_SQLiteLocking):
    """Persist instances, history and join counters using SQLite."""

    _scope = "instance"

    def __init__(self, db: SQLiteDatabase):
        self._db = db

    async def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        row = await asyncio.to_thread(
            self._db.fetchone, "SELECT data FROM instances WHERE id = ?", instance_id
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def save(self, instance: WorkflowInstance) -> None:
        instance.updated_at = utcnow()
        await asyncio.to_thread(
            self._db.execute,
            """
            INSERT OR REPLACE INTO instances
                (id, workflow_id, status, correlation_id, tenant_id, created_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            instance.id,
            instance.workflow_id,
            instance.status.value,
            instance.correlation_id,
            instance.tenant_id,
            instance.created_at.timestamp(),
            instance.model_dump_json(),
        )

    async def delete(self, instance_id: str) -> None:
        for query in (
            "DELETE FROM instances WHERE id = ?",
            "DELETE FROM execution_records WHERE instance_id = ?",
            "DELETE FROM join_arrivals WHERE instance_id = ?",
        ):
            await asyncio.to_thread(self._db.execute, query, instance_id)

    async def query(self, query: InstanceQuery) -> InstanceQueryResult:
        clauses: list[str] = []
        params: list[Any] = []
        if query.workflow_id:
            clauses.append("workflow_id = ?")
            params.append(query.workflow_id)
        if query.statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in query.statuses)})")
            params.extend(s.value for s in query.statuses)
        if query.correlation_id:
            clauses.append("correlation_id = ?")
            params.append(query.correlation_id)
        if query.tenant_id:
            clauses.append("tenant_id = ?")
            params.append(query.tenant_id)
        if query.created_after:
            clauses.append("created_at >= ?")
            params.append(query.created_after.timestamp())
        if query.created_before:
            clauses.append("created_at <= ?")
            params.append(query.created_before.timestamp())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "DESC" if query.descending else "ASC"

        total_row = await asyncio.to_thread(
            self._db.fetchone, f"SELECT COUNT(*) AS total FROM instances {where}", *params
        )
        rows = await asyncio.to_thread(
            self._db.fetchall,
            f"SELECT data FROM instances {where} ORDER BY created_at {order} LIMIT ? OFFSET ?",
            *params,
            query.page_size,
            (query.page - 1) * query.page_size,
        )
        return InstanceQueryResult(
            items=[WorkflowInstance.model_validate_json(r["data"]) for r in rows],
            total=total_row["total"],
            page=query.page,
            page_size=query.page_size,
        )

    async def find_by_bookmark(
        self, bookmark_name: Optional[str] = None, signal: Optional[str] = None
    ) -> list[WorkflowInstance]:
        rows = await asyncio.to_thread(
            self._db.fetchall,
            "SELECT data FROM instances WHERE status = ?",
            WorkflowStatus.SUSPENDED.value,
        )
        found = []
        for row in rows:
            instance = WorkflowInstance.model_validate_json(row["data"])
            if any(
                (bookmark_name is not None and b.name == bookmark_name)
                or (signal is not None and b.signal == signal)
                for b in instance.bookmarks
            ):
                found.append(instance)
        return found

    async def add_history(self, record: ExecutionRecord) -> None:
        await asyncio.to_thread(
            self._db.execute,
            "INSERT INTO execution_records (instance_id, data) VALUES (?, ?)",
            record.instance_id,
            record.model_dump_json(),
        )

    async def get_history(self, instance_id: str) -> list[ExecutionRecord]:
        rows = await asyncio.to_thread(
            self._db.fetchall,
            "SELECT data FROM execution_records WHERE instance_id = ? ORDER BY seq",
            instance_id,
        )
        return [ExecutionRecord.model_validate_json(r["data"]) for r in rows]

    async def increment_join_arrival(
        self, instance_id: str, join_id: str, branch_id: str
    ) -> int:
        return await asyncio.to_thread(
            self._db.add_join_arrival, instance_id, join_id, branch_id
        )

    async def reset_join(self, instance_id: str, join_id: str) -> None:
        await asyncio.to_thread(
            self._db.execute,
            "DELETE FROM join_arrivals WHERE instance_id = ? AND join_id = ?",
            instance_id,
            join_id,
        )


class SQLiteTimerStore(_SQLiteLocking):
    _scope = "timer"

    def __init__(self, db: SQLiteDatabase):
        self._db = db

    async def _put(self, timer: WorkflowTimer) -> None:
        await asyncio.to_thread(
            self._db.execute,
            """
            INSERT OR REPLACE INTO timers (id, instance_id, bookmark_name, status, fire_at, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            timer.id,
            timer.instance_id,
            timer.bookmark_name,
            timer.status.value,
            timer.fire_at.timestamp(),
            timer.model_dump_json(),
        )

    async def schedule(self, timer: WorkflowTimer) -> WorkflowTimer:
        await self._put(timer)
        return timer

    async def get(self, timer_id: str) -> Optional[WorkflowTimer]:
        row = await asyncio.to_thread(
            self._db.fetchone, "SELECT data FROM timers WHERE id = ?", timer_id
        )
        return WorkflowTimer.model_validate_json(row["data"]) if row else None

    async def get_due_timers(self, until: datetime, limit: int = 100) -> list[WorkflowTimer]:
        rows = await asyncio.to_thread(
            self._db.fetchall,
            "SELECT data FROM timers WHERE status = ? AND fire_at <= ? ORDER BY fire_at LIMIT ?",
            TimerStatus.PENDING.value,
            until.timestamp(),
            limit,
        )
        return [WorkflowTimer.model_validate_json(r["data"]) for r in rows]

    async def mark_triggered(self, timer_id: str) -> None:
        timer = await self.get(timer_id)
        if timer is not None:
            timer.status = TimerStatus.TRIGGERED
            timer.fire_count += 1
            await self._put(timer)

    async def reschedule(self, timer_id: str, fire_at: datetime) -> None:
        timer = await self.get(timer_id)
        if timer is not None:
            timer.status = TimerStatus.PENDING
            timer.fire_at = fire_at
            await self._put(timer)

    async def cancel(self, instance_id: str, bookmark_name: Optional[str] = None) -> int:
        query = "SELECT data FROM timers WHERE instance_id = ? AND status = ?"
        params: list[Any] = [instance_id, TimerStatus.PENDING.value]
        if bookmark_name is not None:
            query += " AND bookmark_name = ?"
            params.append(bookmark_name)
        rows = await asyncio.to_thread(self._db.fetchall, query, *params)
        for row in rows:
            timer = WorkflowTimer.model_validate_json(row["data"])
            timer.status = TimerStatus.CANCELLED
            await self._put(timer)
        return len(rows)


class SQLiteJobStore(_SQLiteLocking):
    _scope = "job"

    def __init__(self, db: SQLiteDatabase):
        self._db = db

    async def _put(self, job: Job) -> None:
        await asyncio.to_thread(
            self._db.execute,
            """
            INSERT OR REPLACE INTO jobs (id, instance_id, status, priority, next_run_at, created_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            job.id,
            job.instance_id,
            job.status.value,
            job.priority,
            job.next_run_at.timestamp(),
            job.created_at.timestamp(),
            job.model_dump_json(),
        )

    async def enqueue(self, job: Job) -> Job:
        await self._put(job)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        row = await asyncio.to_thread(
            self._db.fetchone, "SELECT data FROM jobs WHERE id = ?", job_id
        )
        return Job.model_validate_json(row["data"]) if row else None

    async def get_pending(self, now: datetime, limit: int = 100) -> list[Job]:
        rows = await asyncio.to_thread(
            self._db.fetchall,
            """
            SELECT data FROM jobs WHERE status = ? AND next_run_at <= ?
            ORDER BY priority DESC, created_at LIMIT ?
            """,
            JobStatus.PENDING.value,
            now.timestamp(),
            limit,
        )
        return [Job.model_validate_json(r["data"]) for r in rows]

    async def mark_completed(self, job_id: str, output: Optional[dict] = None) -> None:
        job = await self.get(job_id)
        if job is not None:
            job.status = JobStatus.COMPLETED
            job.attempts += 1
            job.output = output
            await self._put(job)

    async def mark_failed(self, job_id: str, error: str) -> None:
        job = await self.get(job_id)
        if job is not None:
            job.status = JobStatus.FAILED
            job.attempts += 1
            job.last_error = error
            await self._put(job)

    async def schedule_retry(self, job_id: str, error: str, next_run_at: datetime) -> None:
        job = await self.get(job_id)
        if job is not None:
            job.attempts += 1
            job.last_error = error
            job.next_run_at = next_run_at
            await self._put(job)

    async def postpone(self, job_id: str, next_run_at: datetime) -> None:
        job = await self.get(job_id)
        if job is not None:
            job.next_run_at = next_run_at
            await self._put(job)

    async def cancel_for_instance(self, instance_id: str) -> int:
        rows = await asyncio.to_thread(
            self._db.fetchall,
            "SELECT data FROM jobs WHERE instance_id = ? AND status = ?",
            instance_id,
            JobStatus.PENDING.value,
        )
        for row in rows:
            job = Job.model_validate_json(row["data"])
            job.status = JobStatus.CANCELLED
            await self._put(job)
        return len(rows)
