"""Store abstractions for definitions, instances, timers and jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..model.definition import (
    ProcessDefinition,
    ProcessVersion,
    TriggerType,
    WorkflowDefinition,
)
from .models import (
    ExecutionRecord,
    InstanceQuery,
    InstanceQueryResult,
    Job,
    WorkflowInstance,
    WorkflowTimer,
)


class LockStore(Protocol):
    """Persisted, expiring locks keyed by resource id.

    Acquisition succeeds when no lock exists, the existing lock expired, or
    ``holder`` already owns it (re-entrant renewal).
    """

    async def try_acquire_lock(self, resource_id: str, holder: str, ttl: float) -> bool:
        """Atomically take or renew the lock."""

    async def release_lock(self, resource_id: str, holder: str) -> None:
        """Release the lock if ``holder`` owns it."""


class WorkflowDefinitionStore(Protocol):
    async def save(
        self,
        process: ProcessDefinition,
        key: Optional[str] = None,
        change_description: Optional[str] = None,
    ) -> ProcessVersion:
        """Store ``process`` as the next immutable version of its definition."""

    async def get(
        self, definition_id: str, version: Optional[int] = None
    ) -> Optional[ProcessDefinition]:
        """Return the requested version, or the published one when omitted."""

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Return the catalog entry."""

    async def list_versions(self, definition_id: str) -> list[ProcessVersion]:
        """Return every stored version, oldest first."""

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return all catalog entries."""

    async def publish(self, definition_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        """Validate and publish a version (latest when omitted)."""

    async def unpublish(self, definition_id: str) -> WorkflowDefinition:
        """Return the definition to draft status."""

    async def get_by_trigger(
        self, trigger_type: TriggerType, name: Optional[str]
    ) -> list[ProcessDefinition]:
        """Published definitions declaring a matching trigger."""


class WorkflowInstanceStore(LockStore, Protocol):
    async def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Retrieve the instance by id."""

    async def save(self, instance: WorkflowInstance) -> None:
        """Insert or replace the instance."""

    async def delete(self, instance_id: str) -> None:
        """Remove the instance, its history and join counters."""

    async def query(self, query: InstanceQuery) -> InstanceQueryResult:
        """Return one page of instances matching the filters."""

    async def find_by_bookmark(
        self, bookmark_name: Optional[str] = None, signal: Optional[str] = None
    ) -> list[WorkflowInstance]:
        """Suspended instances holding a matching bookmark."""

    async def add_history(self, record: ExecutionRecord) -> None:
        """Append an execution record."""

    async def get_history(self, instance_id: str) -> list[ExecutionRecord]:
        """Return execution records in insertion order."""

    async def increment_join_arrival(
        self, instance_id: str, join_id: str, branch_id: str
    ) -> int:
        """Record an arrival at a join and return the arrival count.

        Repeated arrivals of the same branch are counted once.
        """

    async def reset_join(self, instance_id: str, join_id: str) -> None:
        """Clear the arrivals recorded for a join."""


class WorkflowTimerStore(LockStore, Protocol):
    async def schedule(self, timer: WorkflowTimer) -> WorkflowTimer:
        """Persist a new pending timer."""

    async def get(self, timer_id: str) -> Optional[WorkflowTimer]:
        """Retrieve the timer by id."""

    async def get_due_timers(self, until: datetime, limit: int = 100) -> list[WorkflowTimer]:
        """Pending timers with ``fire_at <= until`` ordered by fire time."""

    async def mark_triggered(self, timer_id: str) -> None:
        """Mark a timer fired and bump its fire count."""

    async def reschedule(self, timer_id: str, fire_at: datetime) -> None:
        """Return a recurring timer to pending with a new fire time."""

    async def cancel(self, instance_id: str, bookmark_name: Optional[str] = None) -> int:
        """Cancel pending timers of an instance, optionally for one bookmark."""


class JobStore(LockStore, Protocol):
    async def enqueue(self, job: Job) -> Job:
        """Persist a new pending job."""

    async def get(self, job_id: str) -> Optional[Job]:
        """Retrieve the job by id."""

    async def get_pending(self, now: datetime, limit: int = 100) -> list[Job]:
        """Pending jobs due at ``now``, highest priority first."""

    async def mark_completed(self, job_id: str, output: Optional[dict] = None) -> None:
        """Record a successful run."""

    async def mark_failed(self, job_id: str, error: str) -> None:
        """Record a permanent failure."""

    async def schedule_retry(self, job_id: str, error: str, next_run_at: datetime) -> None:
        """Record a failed attempt and schedule the next one."""

    async def postpone(self, job_id: str, next_run_at: datetime) -> None:
        """Move the next run without counting an attempt."""

    async def cancel_for_instance(self, instance_id: str) -> int:
        """Cancel pending jobs of an instance."""
