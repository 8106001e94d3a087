"""Workflow execution engine."""

from .activities import (
    ActivityResult,
    ActivityRunner,
    Outcome,
    compute_fire_at,
    job_bookmark,
    signal_bookmark,
    timer_bookmark,
)
from .engine import ExecutionResult, StartOptions, WorkflowEngine
from .expressions import ExpressionEvaluator, SafeExpressionEvaluator, build_scope
from .handlers import (
    HANDLERS,
    ActivityContext,
    Handler,
    HandlerRegistry,
    register_handler,
)
from .lifecycle import InstanceTrigger, build_lifecycle_machine

__all__ = [
    "HANDLERS",
    "ActivityContext",
    "ActivityResult",
    "ActivityRunner",
    "ExecutionResult",
    "ExpressionEvaluator",
    "Handler",
    "HandlerRegistry",
    "InstanceTrigger",
    "Outcome",
    "SafeExpressionEvaluator",
    "StartOptions",
    "WorkflowEngine",
    "build_lifecycle_machine",
    "build_scope",
    "compute_fire_at",
    "job_bookmark",
    "register_handler",
    "signal_bookmark",
    "timer_bookmark",
]
