import pytest
from helpers import (
    approval_definition,
    chain,
    linear_definition,
    loop_definition,
    publish,
    service_definition,
    signal_definition,
    timer_definition,
)

from flowmark.config import EngineSettings
from flowmark.engine import WorkflowEngine
from flowmark.engine.lifecycle import InstanceTrigger, build_lifecycle_machine
from flowmark.exceptions import (
    InstanceLockedError,
    WorkflowBookmarkNotFoundError,
    WorkflowInvalidStateError,
    WorkflowNotFoundError,
)
from flowmark.model import (
    EndActivity,
    ProcessDefinition,
    StartActivity,
    TaskActivity,
    TriggerType,
    WorkflowTrigger,
)
from flowmark.persistence import InstanceQuery, TimerStatus, WorkflowStatus
from flowmark.statemachine import StateMachineExecutor


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,trigger,allowed",
    [
        (WorkflowStatus.CREATED, InstanceTrigger.START, True),
        (WorkflowStatus.SUSPENDED, InstanceTrigger.RESUME, True),
        (WorkflowStatus.COMPLETED, InstanceTrigger.RESUME, False),
        (WorkflowStatus.FAULTED, InstanceTrigger.CANCEL, False),
        (WorkflowStatus.FAULTED, InstanceTrigger.RETRY, True),
        (WorkflowStatus.COMPLETED, InstanceTrigger.TERMINATE, True),
        (WorkflowStatus.CANCELLED, InstanceTrigger.START, False),
    ],
)
async def test_lifecycle_transitions(status, trigger, allowed):
    executor = StateMachineExecutor(build_lifecycle_machine())

    result = await executor.fire(status, trigger)

    assert result.is_success is allowed


@pytest.mark.asyncio
async def test_resume_validates_instance_and_bookmark(engine, memory_stores):
    await publish(memory_stores, approval_definition())
    started = await engine.start_new("approval", {"amount": 1})

    with pytest.raises(WorkflowNotFoundError):
        await engine.resume("missing", "review")
    with pytest.raises(WorkflowBookmarkNotFoundError):
        await engine.resume(started.instance_id, "nope")

    await engine.resume(started.instance_id, "review", {"approved": True})

    with pytest.raises(WorkflowInvalidStateError):
        await engine.resume(started.instance_id, "review")


@pytest.mark.asyncio
async def test_cancel_clears_waits_and_blocks_resume(engine, memory_stores):
    await publish(memory_stores, approval_definition(timeout="PT1H"))
    started = await engine.start_new("approval", {"amount": 1})

    result = await engine.cancel(started.instance_id, "withdrawn")

    assert result.status == WorkflowStatus.CANCELLED
    assert result.bookmarks == []
    instance = await engine.get_instance(started.instance_id)
    assert instance.audit_trail[-1].reason == "withdrawn"
    assert instance.completed_at is not None
    due = await memory_stores.timers.get_due_timers(instance.created_at.replace(year=2100))
    assert due == []
    with pytest.raises(WorkflowInvalidStateError):
        await engine.resume(started.instance_id, "review")


@pytest.mark.asyncio
async def test_cancel_refuses_finished_instances(engine, memory_stores):
    await publish(memory_stores, linear_definition())
    result = await engine.start_new("linear")

    with pytest.raises(WorkflowInvalidStateError):
        await engine.cancel(result.instance_id)


@pytest.mark.asyncio
async def test_terminate_works_from_any_status(engine, memory_stores, registry):
    registry.add("charge", lambda inputs, ctx: 1 / 0)
    await publish(memory_stores, service_definition(handler="charge"))
    faulted = await engine.start_new("payment", {})
    assert faulted.status == WorkflowStatus.FAULTED

    result = await engine.terminate(faulted.instance_id, "operator stop")

    assert result.status == WorkflowStatus.TERMINATED
    assert result.fault.code == "TERMINATED"
    assert result.fault.message == "operator stop"


@pytest.mark.asyncio
async def test_retry_reruns_faulted_activity(engine, memory_stores, registry):
    attempts = []

    def flaky(inputs, ctx):
        attempts.append(ctx.activity_id)
        if len(attempts) == 1:
            raise ConnectionError("gateway timeout")
        return {"charged": True}

    registry.add("charge", flaky)
    await publish(memory_stores, service_definition(handler="charge"))
    faulted = await engine.start_new("payment", {})
    assert faulted.fault.code == "HANDLER_FAILED"

    result = await engine.retry(faulted.instance_id)

    assert result.status == WorkflowStatus.COMPLETED
    assert result.fault is None
    instance = await engine.get_instance(faulted.instance_id)
    assert instance.retry_count == 1
    assert instance.fault_count == 2
    assert instance.variables["charged"] is True
    assert attempts == ["charge", "charge"]


@pytest.mark.asyncio
async def test_retry_requires_faulted_status(engine, memory_stores):
    await publish(memory_stores, approval_definition())
    started = await engine.start_new("approval", {"amount": 1})

    with pytest.raises(WorkflowInvalidStateError):
        await engine.retry(started.instance_id)


@pytest.mark.asyncio
async def test_execution_limit_faults_without_error_handlers(memory_stores, registry):
    engine = WorkflowEngine(
        memory_stores,
        handlers=registry,
        settings=EngineSettings(max_activities_per_execution=10),
    )
    await publish(memory_stores, loop_definition())

    result = await engine.start_new("loop")

    assert result.status == WorkflowStatus.FAULTED
    assert result.fault.code == "EXECUTION_LIMIT"
    assert result.activities_executed == 10


@pytest.mark.asyncio
async def test_locked_instance_raises(engine, memory_stores):
    await publish(memory_stores, approval_definition())
    started = await engine.start_new("approval", {"amount": 1})
    assert await memory_stores.instances.try_acquire_lock(started.instance_id, "someone-else", 30)

    with pytest.raises(InstanceLockedError):
        await engine.resume(started.instance_id, "review")

    await memory_stores.instances.release_lock(started.instance_id, "someone-else")
    result = await engine.resume(started.instance_id, "review")
    assert result.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_external_cancel_stops_running_execution(engine, memory_stores, registry):
    calls = []

    async def cancel_from_outside(inputs, ctx):
        stored = await memory_stores.instances.get(ctx.instance_id)
        stored.status = WorkflowStatus.CANCELLED
        await memory_stores.instances.save(stored)

    registry.add("cancel", cancel_from_outside)
    registry.add("after", lambda inputs, ctx: calls.append("after"))
    definition = ProcessDefinition(
        id="stoppable",
        name="Stoppable",
        activities=[
            StartActivity(id="start"),
            TaskActivity(id="first", config={"handler": "cancel"}),
            TaskActivity(id="second", config={"handler": "after"}),
            EndActivity(id="end"),
        ],
        transitions=chain("start", "first", "second", "end"),
    )
    await publish(memory_stores, definition)

    result = await engine.start_new("stoppable")

    assert result.status == WorkflowStatus.CANCELLED
    assert calls == []
    stored = await engine.get_instance(result.instance_id)
    assert stored.status == WorkflowStatus.CANCELLED


@pytest.mark.asyncio
async def test_signal_resumes_waiting_instance(engine, memory_stores):
    await publish(memory_stores, signal_definition())
    started = await engine.start_new("signal")
    assert started.bookmarks == ["signal:payment:wait"]

    with pytest.raises(WorkflowBookmarkNotFoundError):
        await engine.signal(started.instance_id, "refund")

    result = await engine.signal(started.instance_id, "payment", {"paid": 12})

    assert result.status == WorkflowStatus.COMPLETED
    instance = await engine.get_instance(started.instance_id)
    assert instance.variables["paid"] == 12


@pytest.mark.asyncio
async def test_broadcast_signal_resumes_every_waiting_instance(engine, memory_stores):
    await publish(memory_stores, signal_definition())
    first = await engine.start_new("signal")
    second = await engine.start_new("signal")
    await engine.signal(second.instance_id, "payment")

    results = await engine.broadcast_signal("payment", {"paid": True})

    assert [r.instance_id for r in results] == [first.instance_id]
    assert results[0].status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_trigger_event_starts_subscribed_definitions(engine, memory_stores):
    definition = linear_definition()
    definition.triggers.append(WorkflowTrigger(type=TriggerType.EVENT, name="order.created"))
    await publish(memory_stores, definition)

    results = await engine.trigger_event("order.created", {"order": 7})

    assert len(results) == 1
    instance = await engine.get_instance(results[0].instance_id)
    assert instance.input == {"order": 7, "eventName": "order.created", "eventData": {"order": 7}}
    assert await engine.trigger_event("order.deleted") == []


@pytest.mark.asyncio
async def test_timer_activity_schedules_timer_after_save(engine, memory_stores):
    await publish(memory_stores, timer_definition(duration="PT10M"))

    result = await engine.start_new("timer")

    assert result.bookmarks == ["timer:wait"]
    instance = await engine.get_instance(result.instance_id)
    timers = await memory_stores.timers.get_due_timers(instance.created_at.replace(year=2100))
    assert len(timers) == 1
    assert timers[0].bookmark_name == "timer:wait"
    assert timers[0].status == TimerStatus.PENDING


@pytest.mark.asyncio
async def test_invalid_timer_configuration_faults(engine, memory_stores):
    await publish(memory_stores, timer_definition(duration="soon"))

    result = await engine.start_new("timer")

    assert result.fault.code == "INVALID_TIMER"


@pytest.mark.asyncio
async def test_query_and_history(engine, memory_stores):
    await publish(memory_stores, approval_definition())
    await publish(memory_stores, linear_definition())
    waiting = await engine.start_new("approval", {"amount": 1})
    await engine.start_new("linear")

    suspended = await engine.query_instances(InstanceQuery(statuses=[WorkflowStatus.SUSPENDED]))
    everything = await engine.query_instances()

    assert [i.id for i in suspended.items] == [waiting.instance_id]
    assert everything.total == 2
    with pytest.raises(WorkflowNotFoundError):
        await engine.get_history("missing")
