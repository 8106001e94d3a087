"""Instance lifecycle expressed as a state machine over ``WorkflowStatus``."""

from __future__ import annotations

from enum import Enum

from ..persistence.models import WorkflowStatus
from ..statemachine import StateMachine, StateMachineBuilder


class InstanceTrigger(str, Enum):
    START = "start"
    SUSPEND = "suspend"
    RESUME = "resume"
    COMPLETE = "complete"
    FAULT = "fault"
    RETRY = "retry"
    CANCEL = "cancel"
    TERMINATE = "terminate"


def build_lifecycle_machine() -> StateMachine[WorkflowStatus, InstanceTrigger]:
    S = WorkflowStatus
    T = InstanceTrigger
    builder: StateMachineBuilder[WorkflowStatus, InstanceTrigger] = StateMachineBuilder(
        "workflow-instance"
    )
    builder.initial(S.CREATED)
    for status in S:
        builder.state(status, terminal=status.is_terminal)

    builder.transition(S.CREATED, T.START, S.RUNNING)
    builder.transition(S.RUNNING, T.SUSPEND, S.SUSPENDED)
    builder.transition(S.SUSPENDED, T.RESUME, S.RUNNING)
    builder.transition(S.RUNNING, T.COMPLETE, S.COMPLETED)
    builder.transition(S.RUNNING, T.FAULT, S.FAULTED)
    builder.transition(S.FAULTED, T.RETRY, S.RUNNING)
    for status in (S.CREATED, S.RUNNING, S.SUSPENDED):
        builder.transition(status, T.CANCEL, S.CANCELLED)
    for status in S:
        builder.transition(status, T.TERMINATE, S.TERMINATED)
    return builder.build()
