"""Workflow definition model and validation."""

from .activities import (
    ACTIVITY_CLASSES,
    Activity,
    ActivityBase,
    ActivityType,
    EndActivity,
    ExclusiveGateway,
    GatewayActivity,
    InclusiveGateway,
    ParallelGateway,
    ServiceTaskActivity,
    SignalReceiveActivity,
    StartActivity,
    TaskActivity,
    TimerActivity,
    UserTaskActivity,
    is_join,
)
from .definition import (
    DefinitionStatus,
    ErrorHandler,
    ParameterDefinition,
    ProcessDefinition,
    ProcessVersion,
    Transition,
    TriggerType,
    WorkflowDefinition,
    WorkflowTrigger,
)
from .validation import (
    IssueSeverity,
    ValidationIssue,
    ValidationResult,
    ensure_valid,
    find_matching_join,
    validate_definition,
)

__all__ = [
    "ACTIVITY_CLASSES",
    "Activity",
    "ActivityBase",
    "ActivityType",
    "DefinitionStatus",
    "EndActivity",
    "ErrorHandler",
    "ExclusiveGateway",
    "GatewayActivity",
    "InclusiveGateway",
    "IssueSeverity",
    "ParallelGateway",
    "ParameterDefinition",
    "ProcessDefinition",
    "ProcessVersion",
    "ServiceTaskActivity",
    "SignalReceiveActivity",
    "StartActivity",
    "TaskActivity",
    "TimerActivity",
    "Transition",
    "TriggerType",
    "UserTaskActivity",
    "ValidationIssue",
    "ValidationResult",
    "WorkflowDefinition",
    "WorkflowTrigger",
    "ensure_valid",
    "find_matching_join",
    "is_join",
    "validate_definition",
]
