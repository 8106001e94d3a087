"""Activity types that make up an executable process graph."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class ActivityType:
    START = "start"
    END = "end"
    TASK = "task"
    USER_TASK = "userTask"
    SERVICE_TASK = "serviceTask"
    TIMER = "timer"
    SIGNAL_RECEIVE = "signalReceive"
    EXCLUSIVE_GATEWAY = "exclusiveGateway"
    PARALLEL_GATEWAY = "parallelGateway"
    INCLUSIVE_GATEWAY = "inclusiveGateway"

    GATEWAYS = frozenset({EXCLUSIVE_GATEWAY, PARALLEL_GATEWAY, INCLUSIVE_GATEWAY})


class ActivityBase(BaseModel):
    """Fields shared by every activity.

    ``config`` is a free-form map interpreted by the activity type, e.g.
    ``handler``/``inputMappings`` for service tasks or ``duration`` for timers.
    """

    id: str
    name: str = ""
    description: Optional[str] = None
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class StartActivity(ActivityBase):
    type: Literal["start"] = ActivityType.START


class EndActivity(ActivityBase):
    type: Literal["end"] = ActivityType.END


class TaskActivity(ActivityBase):
    type: Literal["task"] = ActivityType.TASK


class UserTaskActivity(ActivityBase):
    type: Literal["userTask"] = ActivityType.USER_TASK


class ServiceTaskActivity(ActivityBase):
    type: Literal["serviceTask"] = ActivityType.SERVICE_TASK


class TimerActivity(ActivityBase):
    type: Literal["timer"] = ActivityType.TIMER


class SignalReceiveActivity(ActivityBase):
    type: Literal["signalReceive"] = ActivityType.SIGNAL_RECEIVE


class GatewayActivity(ActivityBase):
    """Routing node. ``conditions`` maps target activity id to condition."""

    conditions: dict[str, str] = Field(default_factory=dict)
    default_path: Optional[str] = None
    direction: Literal["split", "join"] = "split"
    expected_arrivals: Optional[int] = None


class ExclusiveGateway(GatewayActivity):
    type: Literal["exclusiveGateway"] = ActivityType.EXCLUSIVE_GATEWAY


class InclusiveGateway(GatewayActivity):
    type: Literal["inclusiveGateway"] = ActivityType.INCLUSIVE_GATEWAY


class ParallelGateway(GatewayActivity):
    type: Literal["parallelGateway"] = ActivityType.PARALLEL_GATEWAY
    outgoing_paths: list[str] = Field(default_factory=list)


Activity = Annotated[
    Union[
        StartActivity,
        EndActivity,
        TaskActivity,
        UserTaskActivity,
        ServiceTaskActivity,
        TimerActivity,
        SignalReceiveActivity,
        ExclusiveGateway,
        InclusiveGateway,
        ParallelGateway,
    ],
    Field(discriminator="type"),
]

ACTIVITY_CLASSES: dict[str, type[ActivityBase]] = {
    ActivityType.START: StartActivity,
    ActivityType.END: EndActivity,
    ActivityType.TASK: TaskActivity,
    ActivityType.USER_TASK: UserTaskActivity,
    ActivityType.SERVICE_TASK: ServiceTaskActivity,
    ActivityType.TIMER: TimerActivity,
    ActivityType.SIGNAL_RECEIVE: SignalReceiveActivity,
    ActivityType.EXCLUSIVE_GATEWAY: ExclusiveGateway,
    ActivityType.INCLUSIVE_GATEWAY: InclusiveGateway,
    ActivityType.PARALLEL_GATEWAY: ParallelGateway,
}


def is_join(activity: ActivityBase) -> bool:
    """Parallel gateways and inclusive gateways flagged as joins synchronize branches."""
    return (
        isinstance(activity, (ParallelGateway, InclusiveGateway))
        and activity.direction == "join"
    )
