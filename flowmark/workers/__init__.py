"""Background timer and job processing loops."""

from __future__ import annotations

import asyncio
from typing import Optional

from ..config import WorkerSettings
from ..engine import WorkflowEngine
from .base import PollingWorker
from .jobs import JobWorker
from .timers import TimerWorker


def build_workers(
    engine: WorkflowEngine, settings: Optional[WorkerSettings] = None
) -> list[PollingWorker]:
    settings = settings or WorkerSettings()
    return [
        TimerWorker(
            engine,
            interval=settings.timer_interval,
            batch_size=settings.batch_size,
            lock_ttl=settings.lock_ttl_seconds,
        ),
        JobWorker(
            engine,
            interval=settings.job_interval,
            batch_size=settings.batch_size,
            lock_ttl=settings.lock_ttl_seconds,
            retry_delay=settings.job_retry_delay,
        ),
    ]


async def run_workers(
    engine: WorkflowEngine,
    settings: Optional[WorkerSettings] = None,
    stop_event: Optional[asyncio.Event] = None,
    lifespan: Optional[float] = None,
) -> None:
    """Run the timer and job loops side by side until stopped."""
    stop_event = stop_event or asyncio.Event()
    await asyncio.gather(
        *(w.run(stop_event, lifespan) for w in build_workers(engine, settings))
    )


__all__ = ["JobWorker", "PollingWorker", "TimerWorker", "build_workers", "run_workers"]
