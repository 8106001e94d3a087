import asyncio

import pytest
from helpers import (
    approval_definition,
    publish,
    service_definition,
    timer_beside_task_definition,
    timer_definition,
)

from flowmark.config import WorkerSettings
from flowmark.persistence import JobStatus, TimerStatus, WorkflowStatus
from flowmark.utils.durations import utcnow
from flowmark.workers import JobWorker, TimerWorker, build_workers, run_workers
from flowmark.workers.jobs import JOB_FAILED


@pytest.fixture
def timer_worker(engine):
    return TimerWorker(engine, interval=0.01)


@pytest.fixture
def job_worker(engine):
    return JobWorker(engine, interval=0.01, retry_delay=0)


async def pending_timers(stores):
    return await stores.timers.get_due_timers(utcnow().replace(year=2100))


# ----------------------------------------------------------------------
# Timers
@pytest.mark.asyncio
async def test_due_timer_resumes_instance(engine, memory_stores, timer_worker):
    await publish(memory_stores, timer_definition(dateTime="2020-01-01T00:00:00Z"))
    started = await engine.start_new("timer")
    assert started.status == WorkflowStatus.SUSPENDED

    fired = await timer_worker.poll_once()

    assert fired == 1
    instance = await engine.get_instance(started.instance_id)
    assert instance.status == WorkflowStatus.COMPLETED
    assert await pending_timers(memory_stores) == []


@pytest.mark.asyncio
async def test_future_timer_is_left_alone(engine, memory_stores, timer_worker):
    await publish(memory_stores, timer_definition(duration="PT1H"))
    started = await engine.start_new("timer")

    assert await timer_worker.poll_once() == 0
    assert (await engine.get_instance(started.instance_id)).status == WorkflowStatus.SUSPENDED


@pytest.mark.asyncio
async def test_user_task_timeout_resumes_with_timed_out_flag(engine, memory_stores, timer_worker):
    await publish(memory_stores, approval_definition(timeout="PT0S"))
    started = await engine.start_new("approval", {"amount": 1})

    assert await timer_worker.poll_once() == 1

    instance = await engine.get_instance(started.instance_id)
    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.variables["timedOut"] is True
    assert instance.output == {"result": "rejected"}


@pytest.mark.asyncio
async def test_resuming_first_cancels_the_timeout(engine, memory_stores, timer_worker):
    await publish(memory_stores, approval_definition(timeout="PT0S"))
    started = await engine.start_new("approval", {"amount": 1})

    await engine.resume(started.instance_id, "review", {"approved": True})

    assert await timer_worker.poll_once() == 0
    instance = await engine.get_instance(started.instance_id)
    assert instance.output == {"result": "approved"}
    assert "timedOut" not in instance.variables


@pytest.mark.asyncio
async def test_recurring_timer_reschedules_then_drops_when_stale(engine, memory_stores, timer_worker):
    await publish(memory_stores, timer_definition(cycle="R2/PT0S"))
    started = await engine.start_new("timer")
    [timer] = await pending_timers(memory_stores)
    assert timer.recurrence == "R2/PT0S"

    assert await timer_worker.poll_once() == 1
    rescheduled = await memory_stores.timers.get(timer.id)
    assert (rescheduled.status, rescheduled.fire_count) == (TimerStatus.PENDING, 1)
    assert (await engine.get_instance(started.instance_id)).status == WorkflowStatus.COMPLETED

    assert await timer_worker.poll_once() == 0
    dropped = await memory_stores.timers.get(timer.id)
    assert (dropped.status, dropped.fire_count) == (TimerStatus.TRIGGERED, 2)


@pytest.mark.asyncio
async def test_timer_for_locked_instance_stays_pending(engine, memory_stores, timer_worker):
    await publish(memory_stores, timer_definition(duration="PT0S"))
    started = await engine.start_new("timer")
    await memory_stores.instances.try_acquire_lock(started.instance_id, "someone-else", 30)

    assert await timer_worker.poll_once() == 0
    assert len(await pending_timers(memory_stores)) == 1

    await memory_stores.instances.release_lock(started.instance_id, "someone-else")
    assert await timer_worker.poll_once() == 1


@pytest.mark.asyncio
async def test_timer_of_faulted_instance_survives_until_retry(
    engine, memory_stores, registry, timer_worker
):
    calls = []

    def work(inputs, ctx):
        calls.append(ctx.activity_id)
        if len(calls) == 1:
            raise ConnectionError("ledger unavailable")
        return {"worked": True}

    registry.add("work", work)
    await publish(memory_stores, timer_beside_task_definition("work"))
    started = await engine.start_new("deadline")
    faulted = await engine.resume(started.instance_id, "human")
    assert faulted.status == WorkflowStatus.FAULTED

    assert await timer_worker.poll_once() == 0
    [timer] = await pending_timers(memory_stores)
    assert timer.status == TimerStatus.PENDING
    assert timer.fire_at > utcnow()

    retried = await engine.retry(started.instance_id)
    assert retried.status == WorkflowStatus.SUSPENDED
    assert retried.bookmarks == ["timer:wait"]

    assert await timer_worker.fire(timer) is True
    instance = await engine.get_instance(started.instance_id)
    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.variables["worked"] is True


@pytest.mark.asyncio
async def test_timer_of_completed_instance_is_dropped(engine, memory_stores, timer_worker):
    await publish(memory_stores, timer_definition(duration="PT1H"))
    started = await engine.start_new("timer")
    [timer] = await pending_timers(memory_stores)
    await engine.terminate(started.instance_id, "done elsewhere")
    await memory_stores.timers.schedule(timer)

    assert await timer_worker.fire(timer) is False
    assert (await memory_stores.timers.get(timer.id)).status == TimerStatus.TRIGGERED


# ----------------------------------------------------------------------
# Jobs
@pytest.mark.asyncio
async def test_async_service_task_runs_as_job(engine, memory_stores, registry, job_worker):
    seen = []

    async def charge(inputs, ctx):
        seen.append((inputs, ctx.activity_id, ctx.attempt))
        return {"receipt": "r-1"}

    registry.add("charge", charge)
    await publish(
        memory_stores,
        service_definition(handler="charge", parameters={"currency": "EUR"}, **{"async": True}),
    )
    started = await engine.start_new("payment", {})
    assert started.bookmarks == ["job:charge"]
    assert seen == []

    assert await job_worker.poll_once() == 1

    assert seen == [({"currency": "EUR"}, "charge", 1)]
    instance = await engine.get_instance(started.instance_id)
    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.variables["receipt"] == "r-1"
    assert await memory_stores.jobs.get_pending(utcnow()) == []


@pytest.mark.asyncio
async def test_job_retries_then_faults_instance(engine, memory_stores, registry, job_worker):
    attempts = []

    def charge(inputs, ctx):
        attempts.append(ctx.attempt)
        raise ConnectionError("gateway down")

    registry.add("charge", charge)
    await publish(
        memory_stores, service_definition(handler="charge", maxAttempts=2, **{"async": True})
    )
    started = await engine.start_new("payment", {})

    assert await job_worker.poll_once() == 0
    [job] = await memory_stores.jobs.get_pending(utcnow())
    assert (job.attempts, job.last_error) == (1, "gateway down")
    assert (await engine.get_instance(started.instance_id)).status == WorkflowStatus.SUSPENDED

    assert await job_worker.poll_once() == 0

    assert attempts == [1, 2]
    assert (await memory_stores.jobs.get(job.id)).status == JobStatus.FAILED
    instance = await engine.get_instance(started.instance_id)
    assert instance.status == WorkflowStatus.FAULTED
    assert instance.fault.code == JOB_FAILED
    assert instance.fault.activity_id == "charge"


@pytest.mark.asyncio
async def test_job_for_locked_instance_is_redelivered(engine, memory_stores, registry, job_worker):
    calls = []
    registry.add("charge", lambda inputs, ctx: calls.append(ctx.attempt))
    await publish(memory_stores, service_definition(handler="charge", **{"async": True}))
    started = await engine.start_new("payment", {})
    await memory_stores.instances.try_acquire_lock(started.instance_id, "someone-else", 30)

    assert await job_worker.poll_once() == 0
    [job] = await memory_stores.jobs.get_pending(utcnow())
    assert job.status == JobStatus.PENDING

    await memory_stores.instances.release_lock(started.instance_id, "someone-else")
    assert await job_worker.poll_once() == 1
    assert len(calls) == 2
    assert (await engine.get_instance(started.instance_id)).status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_job_for_cancelled_instance_is_not_run(engine, memory_stores, registry, job_worker):
    calls = []
    registry.add("charge", lambda inputs, ctx: calls.append(ctx.attempt))
    await publish(memory_stores, service_definition(handler="charge", **{"async": True}))
    started = await engine.start_new("payment", {})

    await engine.cancel(started.instance_id)

    assert await job_worker.poll_once() == 0
    assert calls == []


@pytest.mark.asyncio
async def test_blocked_job_does_not_starve_lower_priority_jobs(engine, memory_stores, registry):
    registry.add("charge", lambda inputs, ctx: {"receipt": ctx.instance_id})
    urgent = service_definition(handler="charge", priority=9, **{"async": True})
    routine = service_definition(handler="charge", priority=1, **{"async": True})
    await publish(memory_stores, urgent)
    await publish(memory_stores, routine.model_copy(update={"id": "payment-routine"}))
    blocked = await engine.start_new("payment", {})
    runnable = await engine.start_new("payment-routine", {})
    instance = await memory_stores.instances.get(blocked.instance_id)
    instance.status = WorkflowStatus.FAULTED
    await memory_stores.instances.save(instance)
    worker = JobWorker(engine, interval=0.01, batch_size=1, retry_delay=30)

    assert await worker.poll_once() == 0
    assert await worker.poll_once() == 1

    assert (await engine.get_instance(runnable.instance_id)).status == WorkflowStatus.COMPLETED
    [waiting] = await memory_stores.jobs.get_pending(utcnow().replace(year=2100))
    assert waiting.instance_id == blocked.instance_id
    assert waiting.attempts == 0
    assert waiting.next_run_at > utcnow()


# ----------------------------------------------------------------------
# Loops
@pytest.mark.asyncio
async def test_worker_run_stops_after_lifespan(timer_worker):
    await asyncio.wait_for(timer_worker.run(lifespan=0.05), timeout=2)


@pytest.mark.asyncio
async def test_worker_run_stops_on_event(timer_worker):
    stop = asyncio.Event()
    task = asyncio.create_task(timer_worker.run(stop))
    await asyncio.sleep(0.02)

    stop.set()

    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_run_workers_processes_due_work(engine, memory_stores):
    await publish(memory_stores, timer_definition(duration="PT0S"))
    started = await engine.start_new("timer")
    settings = WorkerSettings(timer_interval=0.01, job_interval=0.01)

    await asyncio.wait_for(run_workers(engine, settings, lifespan=0.1), timeout=2)

    assert (await engine.get_instance(started.instance_id)).status == WorkflowStatus.COMPLETED


def test_build_workers_uses_settings(engine):
    settings = WorkerSettings(timer_interval=3, job_interval=4, batch_size=7, job_retry_delay=0.5)

    timers, jobs = build_workers(engine, settings)

    assert (timers.interval, timers.batch_size) == (3, 7)
    assert (jobs.interval, jobs.retry_delay) == (4, 0.5)
