"""Persistence layer for flowmark workflows."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from ..config import FlowmarkConfig, load_config
from .inmemory import (
    InMemoryDefinitionStore,
    InMemoryInstanceStore,
    InMemoryJobStore,
    InMemoryTimerStore,
)
from .models import (
    Bookmark,
    Branch,
    BranchStatus,
    ExecutionKind,
    ExecutionRecord,
    ForkFrame,
    InstanceQuery,
    InstanceQueryResult,
    Job,
    JobStatus,
    TimerStatus,
    WorkflowFault,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTimer,
)
from .repository import (
    JobStore,
    LockStore,
    WorkflowDefinitionStore,
    WorkflowInstanceStore,
    WorkflowTimerStore,
)
from .sqlite import (
    SQLiteDatabase,
    SQLiteDefinitionStore,
    SQLiteInstanceStore,
    SQLiteJobStore,
    SQLiteTimerStore,
)


@dataclass
class WorkflowStores:
    """The four stores the engine and workers operate on."""

    definitions: WorkflowDefinitionStore
    instances: WorkflowInstanceStore
    timers: WorkflowTimerStore
    jobs: JobStore

    @classmethod
    def in_memory(cls) -> "WorkflowStores":
        return cls(
            definitions=InMemoryDefinitionStore(),
            instances=InMemoryInstanceStore(),
            timers=InMemoryTimerStore(),
            jobs=InMemoryJobStore(),
        )

    @classmethod
    def sqlite(cls, path: str) -> "WorkflowStores":
        db = SQLiteDatabase(path)
        return cls(
            definitions=SQLiteDefinitionStore(db),
            instances=SQLiteInstanceStore(db),
            timers=SQLiteTimerStore(db),
            jobs=SQLiteJobStore(db),
        )


_stores_instance: WorkflowStores | None = None


def get_stores(
    database_url: Optional[str] = None, config: Optional[FlowmarkConfig] = None
) -> WorkflowStores:
    """Factory function to obtain the workflow stores.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWMARK_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, in-memory stores are returned.
    """

    global _stores_instance
    if _stores_instance is not None and database_url is None and config is None:
        return _stores_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWMARK_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _stores_instance = WorkflowStores.in_memory()
    elif database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _stores_instance = WorkflowStores.sqlite(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _stores_instance


__all__ = [
    "Bookmark",
    "Branch",
    "BranchStatus",
    "ExecutionKind",
    "ExecutionRecord",
    "ForkFrame",
    "InMemoryDefinitionStore",
    "InMemoryInstanceStore",
    "InMemoryJobStore",
    "InMemoryTimerStore",
    "InstanceQuery",
    "InstanceQueryResult",
    "Job",
    "JobStatus",
    "JobStore",
    "LockStore",
    "SQLiteDatabase",
    "SQLiteDefinitionStore",
    "SQLiteInstanceStore",
    "SQLiteJobStore",
    "SQLiteTimerStore",
    "TimerStatus",
    "WorkflowDefinitionStore",
    "WorkflowFault",
    "WorkflowInstance",
    "WorkflowInstanceStore",
    "WorkflowStatus",
    "WorkflowStores",
    "WorkflowTimer",
    "WorkflowTimerStore",
    "get_stores",
]
