import pytest
from helpers import (
    approval_definition,
    inclusive_definition,
    linear_definition,
    publish,
    routing_definition,
    service_definition,
)

from flowmark.engine import StartOptions
from flowmark.exceptions import WorkflowNotFoundError, WorkflowValidationError
from flowmark.persistence import ExecutionKind, WorkflowStatus


@pytest.mark.asyncio
async def test_linear_workflow_completes_and_records_history(engine, memory_stores, registry):
    calls = []

    @registry.register("greet")
    def greet(inputs, ctx):
        calls.append((inputs, ctx.activity_id))
        return {"greeting": f"hello {ctx.variables['who']}"}

    await publish(memory_stores, linear_definition(handler="greet", parameters={"loud": True}))

    result = await engine.start_new("linear", {"who": "ada"})

    assert result.status == WorkflowStatus.COMPLETED
    assert calls == [({"loud": True}, "work")]
    instance = await engine.get_instance(result.instance_id)
    assert instance.variables["greeting"] == "hello ada"
    assert instance.completed_activity_ids == ["start", "work", "end"]
    assert instance.completed_at is not None
    assert [a.action for a in instance.audit_trail] == ["start", "complete"]

    history = await engine.get_history(result.instance_id)
    assert [(r.activity_id, r.kind) for r in history] == [
        ("start", ExecutionKind.STARTED),
        ("start", ExecutionKind.COMPLETED),
        ("work", ExecutionKind.STARTED),
        ("work", ExecutionKind.COMPLETED),
        ("end", ExecutionKind.STARTED),
        ("end", ExecutionKind.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_start_requires_published_definition(engine, memory_stores):
    await memory_stores.definitions.save(linear_definition())

    with pytest.raises(WorkflowNotFoundError):
        await engine.start_new("linear")

    result = await engine.start_new("linear", options=StartOptions(version=1))
    assert result.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_required_input_is_rejected(engine, memory_stores):
    await publish(memory_stores, approval_definition())

    with pytest.raises(WorkflowValidationError) as exc:
        await engine.start_new("approval", {})

    assert [i.code for i in exc.value.issues] == ["MISSING_INPUT"]


@pytest.mark.asyncio
@pytest.mark.parametrize("amount,size", [(5000, "large"), (500, "medium"), (5, "small")])
async def test_exclusive_gateway_takes_first_match_by_priority(engine, memory_stores, amount, size):
    await publish(memory_stores, routing_definition())

    result = await engine.start_new("routing", {"amount": amount})

    assert result.status == WorkflowStatus.COMPLETED
    assert result.output == {"size": size}


@pytest.mark.asyncio
async def test_condition_error_faults_instance(engine, memory_stores):
    await publish(memory_stores, routing_definition())

    result = await engine.start_new("routing", {})

    assert result.status == WorkflowStatus.FAULTED
    assert result.fault.code == "CONDITION_ERROR"
    assert result.fault.activity_id == "route"


@pytest.mark.asyncio
async def test_user_task_suspends_and_resume_routes_on_data(engine, memory_stores):
    await publish(memory_stores, approval_definition())

    started = await engine.start_new("approval", {"amount": 10}, StartOptions(correlation_id="exp-1"))

    assert started.status == WorkflowStatus.SUSPENDED
    assert started.bookmarks == ["review"]
    assert started.active_activity_ids == ["review"]

    resumed = await engine.resume(started.instance_id, "review", {"approved": True})

    assert resumed.status == WorkflowStatus.COMPLETED
    assert resumed.output == {"result": "approved"}
    instance = await engine.get_instance(started.instance_id)
    assert instance.correlation_id == "exp-1"
    assert instance.bookmarks == []


@pytest.mark.asyncio
async def test_default_path_used_when_no_condition_matches(engine, memory_stores):
    await publish(memory_stores, approval_definition())
    started = await engine.start_new("approval", {"amount": 10})

    resumed = await engine.resume(started.instance_id, "review", {"comment": "no"})

    assert resumed.output == {"result": "rejected"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data,expected",
    [
        ({"physical": True, "amount": 20}, ["ship", "invoice"]),
        ({"physical": False, "amount": 20}, ["invoice"]),
        ({"physical": False, "amount": 0}, ["notify"]),
    ],
)
async def test_inclusive_gateway_runs_every_matching_path(engine, memory_stores, registry, data, expected):
    steps = []
    registry.add("mark", lambda inputs, ctx: steps.append(inputs["step"]))
    await publish(memory_stores, inclusive_definition())

    result = await engine.start_new("inclusive", data)

    assert result.status == WorkflowStatus.COMPLETED
    assert steps == expected
    instance = await engine.get_instance(result.instance_id)
    assert instance.completed_activity_ids.count("join") == 1
    assert instance.branches == []


@pytest.mark.asyncio
async def test_handler_failure_is_redirected_to_error_handler(engine, memory_stores, registry):
    def decline(inputs, ctx):
        raise RuntimeError("card declined")

    registry.add("charge", decline)
    await publish(
        memory_stores, service_definition(handler="charge", errorCode="PAYMENT_DECLINED")
    )

    result = await engine.start_new("payment", {})

    assert result.status == WorkflowStatus.COMPLETED
    instance = await engine.get_instance(result.instance_id)
    assert instance.variables["error"] == {
        "code": "PAYMENT_DECLINED",
        "message": "card declined",
        "activityId": "charge",
    }
    assert "compensated" in instance.completed_activity_ids
    assert instance.fault is None


@pytest.mark.asyncio
async def test_unhandled_handler_failure_faults(engine, memory_stores, registry):
    registry.add("charge", lambda inputs, ctx: 1 / 0)
    await publish(memory_stores, service_definition(handler="charge"))

    result = await engine.start_new("payment", {})

    assert result.status == WorkflowStatus.FAULTED
    assert result.fault.code == "HANDLER_FAILED"
    instance = await engine.get_instance(result.instance_id)
    assert instance.fault_count == 1


@pytest.mark.asyncio
async def test_unregistered_service_handler_faults(engine, memory_stores):
    await publish(memory_stores, service_definition(handler="nobody"))

    result = await engine.start_new("payment", {})

    assert result.fault.code == "HANDLER_NOT_REGISTERED"


@pytest.mark.asyncio
async def test_service_task_mappings(engine, memory_stores, registry):
    seen = {}

    async def charge(inputs, ctx):
        seen.update(inputs)
        return {"id": "tx-1", "fee": 2}

    registry.add("charge", charge)
    await publish(
        memory_stores,
        service_definition(
            handler="charge",
            parameters={"currency": "EUR"},
            inputMappings={"total": "amount * 2"},
            outputMappings={"transaction": "id", "cost": "fee + 1"},
        ),
    )

    result = await engine.start_new("payment", {"amount": 21})

    instance = await engine.get_instance(result.instance_id)
    assert seen == {"currency": "EUR", "total": 42}
    assert instance.variables["transaction"] == "tx-1"
    assert instance.variables["cost"] == 3
    assert "id" not in instance.variables


@pytest.mark.asyncio
async def test_non_dict_result_stored_under_result_variable(engine, memory_stores, registry):
    registry.add("score", lambda inputs, ctx: 7)
    await publish(memory_stores, linear_definition(handler="score", resultVariable="points"))

    result = await engine.start_new("linear")

    instance = await engine.get_instance(result.instance_id)
    assert instance.variables["points"] == 7
