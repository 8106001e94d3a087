"""Generic state machine core."""

from .machine import (
    GUARD_REJECTED,
    NO_TRANSITION,
    StateDefinition,
    StateMachine,
    StateMachineBuilder,
    StateMachineExecutor,
    Transition,
    TransitionResult,
)

__all__ = [
    "GUARD_REJECTED",
    "NO_TRANSITION",
    "StateDefinition",
    "StateMachine",
    "StateMachineBuilder",
    "StateMachineExecutor",
    "Transition",
    "TransitionResult",
]
