"""Data models for persisted workflow runtime state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..utils.durations import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAULTED = "faulted"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAULTED,
        WorkflowStatus.CANCELLED,
        WorkflowStatus.TERMINATED,
    }
)


class BranchStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    FAULTED = "faulted"


class ForkFrame(BaseModel):
    """Record of the split that spawned a branch."""

    fork_id: str = Field(default_factory=new_id)
    gateway_id: str
    join_id: Optional[str] = None
    expected: int


class Branch(BaseModel):
    """A live execution token positioned on one activity."""

    id: str = Field(default_factory=new_id)
    activity_id: str
    status: BranchStatus = BranchStatus.ACTIVE
    forks: list[ForkFrame] = Field(default_factory=list)


class Bookmark(BaseModel):
    """Named resumption point; consumed exactly once."""

    name: str
    activity_id: str
    branch_id: str
    signal: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowFault(BaseModel):
    code: str
    message: str
    activity_id: Optional[str] = None
    branch_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


class AuditEntry(BaseModel):
    action: str
    status: WorkflowStatus
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowInstance(BaseModel):
    """Persisted workflow instance data."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    version: int
    name: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.CREATED
    branches: list[Branch] = Field(default_factory=list)
    completed_activity_ids: list[str] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    bookmarks: list[Bookmark] = Field(default_factory=list)
    fault: Optional[WorkflowFault] = None
    fault_count: int = 0
    retry_count: int = 0
    audit_trail: list[AuditEntry] = Field(default_factory=list)
    correlation_id: Optional[str] = None
    tenant_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def active_activity_ids(self) -> list[str]:
        return [b.activity_id for b in self.branches]

    @property
    def current_activity_id(self) -> Optional[str]:
        return self.branches[0].activity_id if self.branches else None

    def find_bookmark(self, name: str) -> Optional[Bookmark]:
        return next((b for b in self.bookmarks if b.name == name), None)

    def find_branch(self, branch_id: str) -> Optional[Branch]:
        return next((b for b in self.branches if b.id == branch_id), None)


class ExecutionKind(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAULTED = "faulted"
    SUSPENDED = "suspended"
    RESUMED = "resumed"
    JOINED = "joined"


class ExecutionRecord(BaseModel):
    """Append-only history entry for one activity event."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    activity_id: str
    activity_name: Optional[str] = None
    activity_type: Optional[str] = None
    branch_id: Optional[str] = None
    kind: ExecutionKind
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: Optional[float] = None
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class TimerStatus(str, Enum):
    PENDING = "pending"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"


class WorkflowTimer(BaseModel):
    id: str = Field(default_factory=new_id)
    instance_id: str
    bookmark_name: str
    activity_id: Optional[str] = None
    fire_at: datetime
    recurrence: Optional[str] = None
    fire_count: int = 0
    status: TimerStatus = TimerStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class JobStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Job(BaseModel):
    """Asynchronous service task execution picked up by the job worker."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    activity_id: str
    bookmark_name: str
    handler: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    next_run_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None
    output: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class InstanceQuery(BaseModel):
    workflow_id: Optional[str] = None
    statuses: list[WorkflowStatus] = Field(default_factory=list)
    correlation_id: Optional[str] = None
    tenant_id: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=1000)
    descending: bool = True

    def matches(self, instance: WorkflowInstance) -> bool:
        if self.workflow_id and instance.workflow_id != self.workflow_id:
            return False
        if self.statuses and instance.status not in self.statuses:
            return False
        if self.correlation_id and instance.correlation_id != self.correlation_id:
            return False
        if self.tenant_id and instance.tenant_id != self.tenant_id:
            return False
        if self.created_after and instance.created_at < self.created_after:
            return False
        if self.created_before and instance.created_at > self.created_before:
            return False
        return True


class InstanceQueryResult(BaseModel):
    items: list[WorkflowInstance] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50
