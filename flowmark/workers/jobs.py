"""Runs asynchronous service-task jobs and resumes their instances."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from ..engine import ActivityContext, WorkflowEngine
from ..exceptions import (
    InstanceLockedError,
    WorkflowBookmarkNotFoundError,
    WorkflowInvalidStateError,
    WorkflowNotFoundError,
)
from ..persistence.models import Job, JobStatus, WorkflowStatus
from ..utils.durations import utcnow
from ..utils.retry import compute_backoff
from .base import PollingWorker

logger = logging.getLogger(__name__)

JOB_FAILED = "JOB_FAILED"

_FINISHED = (WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED, WorkflowStatus.TERMINATED)

_STALE_ERRORS = (
    WorkflowBookmarkNotFoundError,
    WorkflowInvalidStateError,
    WorkflowNotFoundError,
)


class JobWorker(PollingWorker):
    """Execute pending jobs with retry and backoff.

    Delivery is at-least-once: if the handler succeeds but the instance is
    locked, the job stays pending and the handler runs again next poll.
    Jobs of an instance that cannot take them yet, such as a faulted one,
    are postponed by ``retry_delay`` without using an attempt.
    """

    name = "job-worker"

    def __init__(
        self,
        engine: WorkflowEngine,
        interval: float,
        batch_size: int = 50,
        lock_ttl: float = 60.0,
        retry_delay: float = 2.0,
    ) -> None:
        super().__init__(engine, interval, batch_size=batch_size, lock_ttl=lock_ttl)
        self.retry_delay = retry_delay

    async def poll_once(self) -> int:
        jobs = await self.engine.stores.jobs.get_pending(utcnow(), self.batch_size)
        completed = 0
        for job in jobs:
            try:
                if await self.process(job):
                    completed += 1
            except Exception:
                logger.exception(f"[{self.name}] job {job.id} failed")
        return completed

    async def process(self, job: Job) -> bool:
        store = self.engine.stores.jobs
        holder = f"{self.holder}:{uuid.uuid4().hex}"
        if not await store.try_acquire_lock(job.id, holder, self.lock_ttl):
            logger.debug(f"[{self.name}] job {job.id} is locked elsewhere")
            return False
        try:
            current = await store.get(job.id)
            if current is None or current.status != JobStatus.PENDING:
                return False
            return await self._run(current)
        finally:
            await store.release_lock(job.id, holder)

    async def _run(self, job: Job) -> bool:
        store = self.engine.stores.jobs
        instance = await self.engine.get_instance(job.instance_id)
        if instance is None or instance.status in _FINISHED:
            status = instance.status.value if instance else "missing"
            await store.mark_failed(job.id, f"instance is {status}")
            logger.warning(f"[{self.name}] dropping job {job.id}: instance is {status}")
            return False
        if instance.status != WorkflowStatus.SUSPENDED:
            delay = compute_backoff(0, base=self.retry_delay, jitter=self.retry_delay / 2)
            await store.postpone(job.id, utcnow() + timedelta(seconds=delay))
            logger.debug(
                f"[{self.name}] instance {instance.id} is {instance.status.value}; "
                f"job {job.id} postponed {delay:.1f}s"
            )
            return False

        handlers = self.engine.handlers
        if job.handler not in handlers:
            await self._handle_failure(job, f"handler '{job.handler}' is not registered")
            return False

        context = ActivityContext(
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            activity_id=job.activity_id,
            variables=dict(instance.variables),
            correlation_id=instance.correlation_id,
            attempt=job.attempts + 1,
        )
        try:
            output = await handlers.invoke(job.handler, dict(job.payload), context)
        except Exception as exc:
            logger.warning(
                f"[{self.name}] job {job.id} attempt {job.attempts + 1} failed: {exc}",
                exc_info=True,
            )
            await self._handle_failure(job, str(exc))
            return False

        data = output if isinstance(output, dict) else ({} if output is None else {"result": output})
        try:
            await self.engine.resume(job.instance_id, job.bookmark_name, data)
        except InstanceLockedError:
            logger.info(f"[{self.name}] instance {job.instance_id} busy; job {job.id} retried next poll")
            return False
        except _STALE_ERRORS as exc:
            await store.mark_failed(job.id, f"stale: {exc}")
            logger.warning(f"[{self.name}] job {job.id} completed but instance moved on: {exc}")
            return False

        await store.mark_completed(job.id, data)
        logger.info(f"[{self.name}] completed job {job.id} for instance {job.instance_id}")
        return True

    async def _handle_failure(self, job: Job, error: str) -> None:
        store = self.engine.stores.jobs
        attempts = job.attempts + 1
        if attempts < job.max_attempts:
            delay = compute_backoff(attempts - 1, base=self.retry_delay, jitter=self.retry_delay / 2)
            await store.schedule_retry(job.id, error, utcnow() + timedelta(seconds=delay))
            logger.info(
                f"[{self.name}] job {job.id} retry {attempts}/{job.max_attempts} in {delay:.1f}s"
            )
            return

        try:
            await self.engine.fail_bookmark(
                job.instance_id,
                job.bookmark_name,
                JOB_FAILED,
                f"Job {job.id} failed after {attempts} attempts: {error}",
            )
        except InstanceLockedError:
            logger.info(f"[{self.name}] instance {job.instance_id} busy; job {job.id} retried next poll")
            return
        except _STALE_ERRORS as exc:
            logger.warning(f"[{self.name}] could not fault instance for job {job.id}: {exc}")
        await store.mark_failed(job.id, error)
        logger.error(f"[{self.name}] job {job.id} failed permanently: {error}")
