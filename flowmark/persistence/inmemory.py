"""In-memory implementations of the workflow stores."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Dict, Optional

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


def _copy_process(process: ProcessDefinition) -> ProcessDefinition:
    return ProcessDefinition.model_validate(process.model_dump())


class _LockTable:
    """Expiring lock records keyed by resource id."""

    def __init__(self) -> None:
        self._locks: Dict[str, tuple[str, float]] = {}

    def acquire(self, resource_id: str, holder: str, ttl: float) -> bool:
        now = time.time()
        current = self._locks.get(resource_id)
        if current and current[0] != holder and current[1] > now:
            return False
        self._locks[resource_id] = (holder, now + ttl)
        return True

    def release(self, resource_id: str, holder: str) -> None:
        current = self._locks.get(resource_id)
        if current and current[0] == holder:
            del self._locks[resource_id]


class InMemoryDefinitionStore:
    """Keep definitions and their versions in local memory."""

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._versions: Dict[str, Dict[int, ProcessVersion]] = {}
        self._lock = asyncio.Lock()

    async def save(
        self,
        process: ProcessDefinition,
        key: Optional[str] = None,
        change_description: Optional[str] = None,
    ) -> ProcessVersion:
        async with self._lock:
            entry = self._definitions.get(process.id)
            if entry is None:
                entry = WorkflowDefinition(
                    id=process.id,
                    key=key or process.id,
                    name=process.name,
                    description=process.description,
                    category=process.category,
                )
                self._definitions[process.id] = entry
            entry.latest_version += 1
            entry.name = process.name
            entry.description = process.description
            entry.updated_at = utcnow()
            snapshot = _copy_process(process)
            snapshot.version = entry.latest_version
            version = ProcessVersion(
                definition_id=process.id,
                version=entry.latest_version,
                process=snapshot,
                change_description=change_description,
            )
            self._versions.setdefault(process.id, {})[version.version] = version
            return version.model_copy(deep=True)

    async def get(
        self, definition_id: str, version: Optional[int] = None
    ) -> Optional[ProcessDefinition]:
        entry = self._definitions.get(definition_id)
        if entry is None:
            return None
        number = version if version is not None else entry.published_version
        stored = self._versions.get(definition_id, {}).get(number) if number else None
        return _copy_process(stored.process) if stored else None

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        entry = self._definitions.get(definition_id)
        return entry.model_copy() if entry else None

    async def list_versions(self, definition_id: str) -> list[ProcessVersion]:
        versions = self._versions.get(definition_id, {})
        return [versions[n].model_copy(deep=True) for n in sorted(versions)]

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return [entry.model_copy() for entry in self._definitions.values()]

    async def publish(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition:
        async with self._lock:
            entry = self._definitions.get(definition_id)
            if entry is None:
                raise WorkflowNotFoundError(f"Definition {definition_id} not found")
            number = version if version is not None else entry.latest_version
            stored = self._versions.get(definition_id, {}).get(number)
            if stored is None:
                raise WorkflowNotFoundError(
                    f"Definition {definition_id} has no version {number}"
                )
            ensure_valid(stored.process)
            entry.status = DefinitionStatus.PUBLISHED
            entry.published_version = number
            entry.updated_at = utcnow()
            return entry.model_copy()

    async def unpublish(self, definition_id: str) -> WorkflowDefinition:
        async with self._lock:
            entry = self._definitions.get(definition_id)
            if entry is None:
                raise WorkflowNotFoundError(f"Definition {definition_id} not found")
            entry.status = DefinitionStatus.DRAFT
            entry.published_version = None
            entry.updated_at = utcnow()
            return entry.model_copy()

    async def get_by_trigger(
        self, trigger_type: TriggerType, name: Optional[str]
    ) -> list[ProcessDefinition]:
        matches = []
        for entry in self._definitions.values():
            if entry.published_version is None:
                continue
            process = self._versions[entry.id][entry.published_version].process
            if process.has_trigger(trigger_type, name):
                matches.append(_copy_process(process))
        return matches


class InMemoryInstanceStore:
    """Store instances in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}
        self._history: Dict[str, list[ExecutionRecord]] = {}
        self._joins: Dict[tuple[str, str], set[str]] = {}
        self._locks = _LockTable()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def save(self, instance: WorkflowInstance) -> None:
        instance.updated_at = utcnow()
        async with self._lock:
            self._instances[instance.id] = instance.model_copy(deep=True)

    async def delete(self, instance_id: str) -> None:
        async with self._lock:
            self._instances.pop(instance_id, None)
            self._history.pop(instance_id, None)
            for key in [k for k in self._joins if k[0] == instance_id]:
                del self._joins[key]

    async def query(self, query: InstanceQuery) -> InstanceQueryResult:
        matches = [i for i in self._instances.values() if query.matches(i)]
        matches.sort(key=lambda i: i.created_at, reverse=query.descending)
        start = (query.page - 1) * query.page_size
        page = matches[start : start + query.page_size]
        return InstanceQueryResult(
            items=[i.model_copy(deep=True) for i in page],
            total=len(matches),
            page=query.page,
            page_size=query.page_size,
        )

    async def find_by_bookmark(
        self, bookmark_name: Optional[str] = None, signal: Optional[str] = None
    ) -> list[WorkflowInstance]:
        found = []
        for instance in self._instances.values():
            if instance.status != WorkflowStatus.SUSPENDED:
                continue
            if any(
                (bookmark_name is not None and b.name == bookmark_name)
                or (signal is not None and b.signal == signal)
                for b in instance.bookmarks
            ):
                found.append(instance.model_copy(deep=True))
        return found

    # ------------------------------------------------------------------
    async def add_history(self, record: ExecutionRecord) -> None:
        async with self._lock:
            self._history.setdefault(record.instance_id, []).append(record.model_copy())

    async def get_history(self, instance_id: str) -> list[ExecutionRecord]:
        return [r.model_copy() for r in self._history.get(instance_id, [])]

    # ------------------------------------------------------------------
    async def increment_join_arrival(
        self, instance_id: str, join_id: str, branch_id: str
    ) -> int:
        async with self._lock:
            arrivals = self._joins.setdefault((instance_id, join_id), set())
            arrivals.add(branch_id)
            return len(arrivals)

    async def reset_join(self, instance_id: str, join_id: str) -> None:
        async with self._lock:
            self._joins.pop((instance_id, join_id), None)

    # ------------------------------------------------------------------
    async def try_acquire_lock(self, resource_id: str, holder: str, ttl: float) -> bool:
        async with self._lock:
            return self._locks.acquire(resource_id, holder, ttl)

    async def release_lock(self, resource_id: str, holder: str) -> None:
        async with self._lock:
            self._locks.release(resource_id, holder)


class InMemoryTimerStore:
    def __init__(self) -> None:
        self._timers: Dict[str, WorkflowTimer] = {}
        self._locks = _LockTable()
        self._lock = asyncio.Lock()

    async def schedule(self, timer: WorkflowTimer) -> WorkflowTimer:
        async with self._lock:
            self._timers[timer.id] = timer.model_copy()
        return timer

    async def get(self, timer_id: str) -> Optional[WorkflowTimer]:
        timer = self._timers.get(timer_id)
        return timer.model_copy() if timer else None

    async def get_due_timers(self, until: datetime, limit: int = 100) -> list[WorkflowTimer]:
        due = [
            t
            for t in self._timers.values()
            if t.status == TimerStatus.PENDING and t.fire_at <= until
        ]
        due.sort(key=lambda t: t.fire_at)
        return [t.model_copy() for t in due[:limit]]

    async def mark_triggered(self, timer_id: str) -> None:
        async with self._lock:
            timer = self._timers.get(timer_id)
            if timer:
                timer.status = TimerStatus.TRIGGERED
                timer.fire_count += 1

    async def reschedule(self, timer_id: str, fire_at: datetime) -> None:
        async with self._lock:
            timer = self._timers.get(timer_id)
            if timer:
                timer.status = TimerStatus.PENDING
                timer.fire_at = fire_at

    async def cancel(self, instance_id: str, bookmark_name: Optional[str] = None) -> int:
        cancelled = 0
        async with self._lock:
            for timer in self._timers.values():
                if (
                    timer.instance_id == instance_id
                    and timer.status == TimerStatus.PENDING
                    and (bookmark_name is None or timer.bookmark_name == bookmark_name)
                ):
                    timer.status = TimerStatus.CANCELLED
                    cancelled += 1
        return cancelled

    async def try_acquire_lock(self, resource_id: str, holder: str, ttl: float) -> bool:
        async with self._lock:
            return self._locks.acquire(resource_id, holder, ttl)

    async def release_lock(self, resource_id: str, holder: str) -> None:
        async with self._lock:
            self._locks.release(resource_id, holder)


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._locks = _LockTable()
        self._lock = asyncio.Lock()

    async def enqueue(self, job: Job) -> Job:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def get_pending(self, now: datetime, limit: int = 100) -> list[Job]:
        pending = [
            j
            for j in self._jobs.values()
            if j.status == JobStatus.PENDING and j.next_run_at <= now
        ]
        pending.sort(key=lambda j: (-j.priority, j.created_at))
        return [j.model_copy(deep=True) for j in pending[:limit]]

    async def mark_completed(self, job_id: str, output: Optional[dict] = None) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job:
                job.status = JobStatus.COMPLETED
                job.attempts += 1
                job.output = output

    async def mark_failed(self, job_id: str, error: str) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job:
                job.status = JobStatus.FAILED
                job.attempts += 1
                job.last_error = error

    async def schedule_retry(self, job_id: str, error: str, next_run_at: datetime) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job:
                job.attempts += 1
                job.last_error = error
                job.next_run_at = next_run_at

    async def postpone(self, job_id: str, next_run_at: datetime) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job:
                job.next_run_at = next_run_at

    async def cancel_for_instance(self, instance_id: str) -> int:
        cancelled = 0
        async with self._lock:
            for job in self._jobs.values():
                if job.instance_id == instance_id and job.status == JobStatus.PENDING:
                    job.status = JobStatus.CANCELLED
                    cancelled += 1
        return cancelled

    async def try_acquire_lock(self, resource_id: str, holder: str, ttl: float) -> bool:
        async with self._lock:
            return self._locks.acquire(resource_id, holder, ttl)

    async def release_lock(self, resource_id: str, holder: str) -> None:
        async with self._lock:
            self._locks.release(resource_id, holder)
