"""Process definitions shared by the test suite."""

from __future__ import annotations

from typing import Any, Optional

from flowmark.model import (
    EndActivity,
    ErrorHandler,
    ExclusiveGateway,
    InclusiveGateway,
    ParallelGateway,
    ParameterDefinition,
    ProcessDefinition,
    ServiceTaskActivity,
    SignalReceiveActivity,
    StartActivity,
    TaskActivity,
    TimerActivity,
    Transition,
    UserTaskActivity,
)
from flowmark.persistence import WorkflowStores


def edge(source: str, target: str, **kwargs: Any) -> Transition:
    return Transition(
        id=f"{source}->{target}",
        source_activity_id=source,
        target_activity_id=target,
        **kwargs,
    )


def chain(*ids: str) -> list[Transition]:
    return [edge(a, b) for a, b in zip(ids, ids[1:])]


async def publish(stores: WorkflowStores, definition: ProcessDefinition) -> None:
    await stores.definitions.save(definition)
    await stores.definitions.publish(definition.id)


def linear_definition(handler: Optional[str] = None, **config: Any) -> ProcessDefinition:
    """start -> work -> end, where ``work`` optionally calls ``handler``."""
    task_config = dict(config)
    if handler:
        task_config["handler"] = handler
    return ProcessDefinition(
        id="linear",
        name="Linear",
        activities=[
            StartActivity(id="start"),
            TaskActivity(id="work", config=task_config),
            EndActivity(id="end"),
        ],
        transitions=chain("start", "work", "end"),
    )


def approval_definition(timeout: Optional[str] = None) -> ProcessDefinition:
    """A user task followed by an exclusive decision."""
    review_config: dict[str, Any] = {}
    if timeout:
        review_config["timeout"] = timeout
    return ProcessDefinition(
        id="approval",
        name="Approval",
        activities=[
            StartActivity(id="start"),
            UserTaskActivity(id="review", name="Review request", config=review_config),
            ExclusiveGateway(id="decide"),
            EndActivity(id="approved", config={"outputMappings": {"result": "'approved'"}}),
            EndActivity(id="rejected", config={"outputMappings": {"result": "'rejected'"}}),
        ],
        transitions=[
            edge("start", "review"),
            edge("review", "decide"),
            edge("decide", "approved", condition="approved == true"),
            edge("decide", "rejected", is_default=True),
        ],
        inputs=[ParameterDefinition(name="amount", type="number", required=True)],
        variables={"approved": False},
    )


def routing_definition() -> ProcessDefinition:
    """Exclusive routing on the ``amount`` input with a default path."""
    return ProcessDefinition(
        id="routing",
        name="Routing",
        activities=[
            StartActivity(id="start"),
            ExclusiveGateway(id="route"),
            EndActivity(id="large", config={"outputMappings": {"size": "'large'"}}),
            EndActivity(id="medium", config={"outputMappings": {"size": "'medium'"}}),
            EndActivity(id="small", config={"outputMappings": {"size": "'small'"}}),
        ],
        transitions=[
            edge("start", "route"),
            edge("route", "small", is_default=True),
            edge("route", "large", condition="amount > 1000", priority=1),
            edge("route", "medium", condition="amount > 100", priority=2),
        ],
    )


def parallel_definition() -> ProcessDefinition:
    """Two user tasks in parallel closed by a parallel join."""
    return ProcessDefinition(
        id="parallel",
        name="Parallel review",
        activities=[
            StartActivity(id="start"),
            ParallelGateway(id="split"),
            UserTaskActivity(id="legal"),
            UserTaskActivity(id="finance"),
            ParallelGateway(id="join", direction="join"),
            EndActivity(id="end"),
        ],
        transitions=[
            edge("start", "split"),
            edge("split", "legal"),
            edge("split", "finance"),
            edge("legal", "join"),
            edge("finance", "join"),
            edge("join", "end"),
        ],
    )


def nested_parallel_definition() -> ProcessDefinition:
    """outer split -> (a, inner split -> (b, c) -> inner join) -> outer join."""
    return ProcessDefinition(
        id="nested",
        name="Nested parallel",
        activities=[
            StartActivity(id="start"),
            ParallelGateway(id="outer"),
            UserTaskActivity(id="a"),
            ParallelGateway(id="inner"),
            UserTaskActivity(id="b"),
            UserTaskActivity(id="c"),
            ParallelGateway(id="inner_join", direction="join"),
            ParallelGateway(id="outer_join", direction="join"),
            EndActivity(id="end"),
        ],
        transitions=[
            edge("start", "outer"),
            edge("outer", "a"),
            edge("outer", "inner"),
            edge("inner", "b"),
            edge("inner", "c"),
            edge("b", "inner_join"),
            edge("c", "inner_join"),
            edge("a", "outer_join"),
            edge("inner_join", "outer_join"),
            edge("outer_join", "end"),
        ],
    )


def inclusive_definition() -> ProcessDefinition:
    """Inclusive split where every matching path runs, joined afterwards."""
    return ProcessDefinition(
        id="inclusive",
        name="Inclusive",
        activities=[
            StartActivity(id="start"),
            InclusiveGateway(id="split"),
            TaskActivity(id="ship", config={"handler": "mark", "parameters": {"step": "ship"}}),
            TaskActivity(id="invoice", config={"handler": "mark", "parameters": {"step": "invoice"}}),
            TaskActivity(id="notify", config={"handler": "mark", "parameters": {"step": "notify"}}),
            InclusiveGateway(id="join", direction="join"),
            EndActivity(id="end"),
        ],
        transitions=[
            edge("start", "split"),
            edge("split", "ship", condition="physical"),
            edge("split", "invoice", condition="amount > 0"),
            edge("split", "notify", is_default=True),
            edge("ship", "join"),
            edge("invoice", "join"),
            edge("notify", "join"),
            edge("join", "end"),
        ],
    )


def signal_definition(signal: str = "payment") -> ProcessDefinition:
    return ProcessDefinition(
        id="signal",
        name="Wait for signal",
        activities=[
            StartActivity(id="start"),
            SignalReceiveActivity(id="wait", config={"signal": signal}),
            EndActivity(id="end"),
        ],
        transitions=chain("start", "wait", "end"),
    )


def timer_definition(**timer_config: Any) -> ProcessDefinition:
    return ProcessDefinition(
        id="timer",
        name="Wait for timer",
        activities=[
            StartActivity(id="start"),
            TimerActivity(id="wait", config=timer_config),
            EndActivity(id="end"),
        ],
        transitions=chain("start", "wait", "end"),
    )


def service_definition(**service_config: Any) -> ProcessDefinition:
    """start -> charge (service task) -> end, with a compensation handler."""
    return ProcessDefinition(
        id="payment",
        name="Payment",
        activities=[
            StartActivity(id="start"),
            ServiceTaskActivity(id="charge", config=service_config),
            EndActivity(id="end"),
            TaskActivity(id="compensate"),
            EndActivity(id="compensated"),
        ],
        transitions=[
            edge("start", "charge"),
            edge("charge", "end"),
            edge("compensate", "compensated"),
        ],
        error_handlers=[
            ErrorHandler(error_codes=["PAYMENT_DECLINED"], handler_activity_id="compensate")
        ],
    )


def loop_definition() -> ProcessDefinition:
    """A task that routes back to itself forever."""
    return ProcessDefinition(
        id="loop",
        name="Endless loop",
        activities=[
            StartActivity(id="start"),
            TaskActivity(id="spin"),
            EndActivity(id="recover"),
        ],
        transitions=[edge("start", "spin"), edge("spin", "spin")],
        error_handlers=[ErrorHandler(handler_activity_id="recover")],
    )


def passthrough_in_branch_definition() -> ProcessDefinition:
    """split -> (x -> single-exit inclusive gateway, y) -> join."""
    return ProcessDefinition(
        id="passthrough",
        name="Pass-through inside a branch",
        activities=[
            StartActivity(id="start"),
            ParallelGateway(id="split"),
            TaskActivity(id="x"),
            InclusiveGateway(id="inc"),
            UserTaskActivity(id="y"),
            ParallelGateway(id="join", direction="join"),
            EndActivity(id="end"),
        ],
        transitions=[
            edge("start", "split"),
            edge("split", "x"),
            edge("split", "y"),
            edge("x", "inc"),
            edge("inc", "join"),
            edge("y", "join"),
            edge("join", "end"),
        ],
    )


def timer_beside_task_definition(handler: str, duration: str = "PT0S") -> ProcessDefinition:
    """A timer branch next to a user task followed by a handler task."""
    return ProcessDefinition(
        id="deadline",
        name="Timer beside work",
        activities=[
            StartActivity(id="start"),
            ParallelGateway(id="split"),
            TimerActivity(id="wait", config={"duration": duration}),
            UserTaskActivity(id="human"),
            TaskActivity(id="work", config={"handler": handler}),
            ParallelGateway(id="join", direction="join"),
            EndActivity(id="end"),
        ],
        transitions=[
            edge("start", "split"),
            edge("split", "wait"),
            edge("split", "human"),
            edge("human", "work"),
            edge("wait", "join"),
            edge("work", "join"),
            edge("join", "end"),
        ],
    )
