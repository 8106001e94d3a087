"""Fires due timers by resuming the bookmark they guard."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from ..exceptions import (
    InstanceLockedError,
    WorkflowBookmarkNotFoundError,
    WorkflowInvalidStateError,
    WorkflowNotFoundError,
)
from ..persistence.models import TimerStatus, WorkflowStatus, WorkflowTimer
from ..utils.durations import parse_cycle, utcnow
from .base import PollingWorker

logger = logging.getLogger(__name__)

_FINISHED = (WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED, WorkflowStatus.TERMINATED)


class TimerWorker(PollingWorker):
    """Resume instances whose timers are due.

    A timer whose instance is locked stays pending and is retried on the
    next poll, and one whose instance is faulted is postponed until a
    retry can resume it. A timer whose bookmark or instance is gone is
    marked triggered and dropped.
    """

    name = "timer-worker"
    postpone_seconds = 5.0

    async def poll_once(self) -> int:
        store = self.engine.stores.timers
        due = await store.get_due_timers(utcnow(), self.batch_size)
        fired = 0
        for timer in due:
            try:
                if await self.fire(timer):
                    fired += 1
            except Exception:
                logger.exception(f"[{self.name}] timer {timer.id} failed")
        return fired

    async def fire(self, timer: WorkflowTimer) -> bool:
        store = self.engine.stores.timers
        holder = f"{self.holder}:{uuid.uuid4().hex}"
        if not await store.try_acquire_lock(timer.id, holder, self.lock_ttl):
            logger.debug(f"[{self.name}] timer {timer.id} is locked elsewhere")
            return False
        try:
            current = await store.get(timer.id)
            if current is None or current.status != TimerStatus.PENDING:
                return False

            data = {} if current.bookmark_name.startswith("timer:") else {"timedOut": True}
            try:
                await self.engine.resume(current.instance_id, current.bookmark_name, data)
            except InstanceLockedError:
                logger.info(
                    f"[{self.name}] instance {current.instance_id} busy; "
                    f"timer {current.id} retried next poll"
                )
                return False
            except WorkflowInvalidStateError as exc:
                if exc.status is None or exc.status in _FINISHED:
                    logger.warning(f"[{self.name}] dropping stale timer {current.id}: {exc}")
                    await store.mark_triggered(current.id)
                    return False
                # A faulted instance keeps its bookmarks until it is retried.
                await store.reschedule(
                    current.id, utcnow() + timedelta(seconds=self.postpone_seconds)
                )
                logger.info(
                    f"[{self.name}] instance {current.instance_id} is "
                    f"{exc.status.value}; timer {current.id} postponed"
                )
                return False
            except (WorkflowBookmarkNotFoundError, WorkflowNotFoundError) as exc:
                logger.warning(f"[{self.name}] dropping stale timer {current.id}: {exc}")
                await store.mark_triggered(current.id)
                return False

            await store.mark_triggered(current.id)
            if current.recurrence:
                repeats, interval = parse_cycle(current.recurrence)
                if repeats is None or current.fire_count + 1 < repeats:
                    await store.reschedule(current.id, current.fire_at + interval)
            logger.info(
                f"[{self.name}] fired timer {current.id} for instance "
                f"{current.instance_id} ({current.bookmark_name})"
            )
            return True
        finally:
            await store.release_lock(timer.id, holder)
