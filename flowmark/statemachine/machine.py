"""Generic finite state machine: definitions, builder DSL and executor."""

from __future__ import annotations

import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Hashable,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from ..exceptions import StateMachineDefinitionError

logger = logging.getLogger(__name__)

StateT = TypeVar("StateT", bound=Hashable)
TriggerT = TypeVar("TriggerT", bound=Hashable)

Guard = Callable[[Any], Union[bool, Awaitable[bool]]]
Action = Callable[[Any], Union[None, Awaitable[None]]]

NO_TRANSITION = "NO_TRANSITION"
GUARD_REJECTED = "GUARD_REJECTED"


async def _call(func: Callable[[Any], Any], context: Any) -> Any:
    result = func(context)
    if inspect.isawaitable(result):
        result = await result
    return result


def _label(func: Callable[..., Any]) -> str:
    return getattr(func, "__name__", repr(func))


@dataclass(frozen=True)
class StateDefinition(Generic[StateT]):
    state: StateT
    terminal: bool = False
    on_entry: Tuple[Action, ...] = ()
    on_exit: Tuple[Action, ...] = ()


@dataclass(frozen=True)
class Transition(Generic[StateT, TriggerT]):
    source: StateT
    trigger: TriggerT
    target: StateT
    guard: Optional[Guard] = None
    action: Optional[Action] = None
    name: Optional[str] = None


@dataclass
class TransitionResult(Generic[StateT, TriggerT]):
    """Outcome of firing a trigger.

    On failure ``new_state`` equals ``previous_state`` and ``error_code`` is
    one of ``NO_TRANSITION`` or ``GUARD_REJECTED``.
    """

    is_success: bool
    previous_state: StateT
    new_state: StateT
    trigger: TriggerT
    transition: Optional[Transition[StateT, TriggerT]] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    executed_actions: list[str] = field(default_factory=list)


class StateMachine(Generic[StateT, TriggerT]):
    """Immutable, validated state machine produced by ``StateMachineBuilder``.

    Transitions are compiled into a ``(state, trigger)`` lookup table. When
    several transitions share a key they are kept in declaration order and
    the first one whose guard passes wins.
    """

    def __init__(
        self,
        name: str,
        initial_state: StateT,
        states: Dict[StateT, StateDefinition[StateT]],
        transitions: Tuple[Transition[StateT, TriggerT], ...],
        warnings: Tuple[str, ...] = (),
    ) -> None:
        self.name = name
        self.initial_state = initial_state
        self.states = dict(states)
        self.transitions = transitions
        self.warnings = warnings
        table: Dict[Tuple[StateT, TriggerT], list[Transition[StateT, TriggerT]]] = {}
        for transition in transitions:
            table.setdefault((transition.source, transition.trigger), []).append(transition)
        self._table = {key: tuple(value) for key, value in table.items()}

    def candidates(
        self, state: StateT, trigger: TriggerT
    ) -> Tuple[Transition[StateT, TriggerT], ...]:
        return self._table.get((state, trigger), ())

    def get_available_transitions(
        self, state: StateT
    ) -> list[Transition[StateT, TriggerT]]:
        """Return every transition leaving ``state`` without evaluating guards."""
        return [t for t in self.transitions if t.source == state]

    def is_terminal(self, state: StateT) -> bool:
        definition = self.states.get(state)
        return bool(definition and definition.terminal)

    def reachable_states(self) -> set[StateT]:
        seen = {self.initial_state}
        queue = deque([self.initial_state])
        while queue:
            current = queue.popleft()
            for transition in self.get_available_transitions(current):
                if transition.target not in seen:
                    seen.add(transition.target)
                    queue.append(transition.target)
        return seen


class StateMachineBuilder(Generic[StateT, TriggerT]):
    """Fluent DSL for declaring a state machine.

    Example::

        machine = (
            StateMachineBuilder("order")
            .initial("new")
            .state("new")
            .state("paid")
            .state("shipped", terminal=True)
            .transition("new", "pay", "paid")
            .transition("paid", "ship", "shipped", guard=lambda ctx: ctx["stock"] > 0)
            .build()
        )
    """

    def __init__(self, name: str = "state-machine") -> None:
        self._name = name
        self._initial: Optional[StateT] = None
        self._states: Dict[StateT, StateDefinition[StateT]] = {}
        self._transitions: list[Transition[StateT, TriggerT]] = []

    def initial(self, state: StateT) -> "StateMachineBuilder[StateT, TriggerT]":
        self._initial = state
        return self

    def state(
        self,
        state: StateT,
        terminal: bool = False,
        on_entry: Optional[Action] = None,
        on_exit: Optional[Action] = None,
    ) -> "StateMachineBuilder[StateT, TriggerT]":
        existing = self._states.get(state)
        entry = existing.on_entry if existing else ()
        exit_ = existing.on_exit if existing else ()
        self._states[state] = StateDefinition(
            state=state,
            terminal=terminal or bool(existing and existing.terminal),
            on_entry=entry + ((on_entry,) if on_entry else ()),
            on_exit=exit_ + ((on_exit,) if on_exit else ()),
        )
        return self

    def transition(
        self,
        source: StateT,
        trigger: TriggerT,
        target: StateT,
        guard: Optional[Guard] = None,
        action: Optional[Action] = None,
        name: Optional[str] = None,
    ) -> "StateMachineBuilder[StateT, TriggerT]":
        self._transitions.append(
            Transition(
                source=source,
                trigger=trigger,
                target=target,
                guard=guard,
                action=action,
                name=name,
            )
        )
        return self

    def build(self) -> StateMachine[StateT, TriggerT]:
        errors: list[str] = []
        if self._initial is None:
            errors.append("initial state is not set")
        elif self._initial not in self._states:
            errors.append(f"initial state {self._initial!r} is not declared")
        for transition in self._transitions:
            label = transition.name or f"{transition.source!r} --{transition.trigger!r}-->"
            if transition.source not in self._states:
                errors.append(f"transition {label} has undeclared source {transition.source!r}")
            if transition.target not in self._states:
                errors.append(f"transition {label} has undeclared target {transition.target!r}")
        if errors:
            raise StateMachineDefinitionError(errors)

        warnings: list[str] = []
        if not any(s.terminal for s in self._states.values()):
            warnings.append("no terminal state declared")
        machine: StateMachine[StateT, TriggerT] = StateMachine(
            self._name, self._initial, self._states, tuple(self._transitions)
        )
        unreachable = [s for s in self._states if s not in machine.reachable_states()]
        for state in unreachable:
            warnings.append(f"state {state!r} is unreachable from {self._initial!r}")
        for warning in warnings:
            logger.warning(f"State machine '{self._name}': {warning}")
        machine.warnings = tuple(warnings)
        return machine


class StateMachineExecutor(Generic[StateT, TriggerT]):
    """Fires triggers against a ``StateMachine``."""

    def __init__(self, machine: StateMachine[StateT, TriggerT]) -> None:
        self.machine = machine

    def can_fire(self, state: StateT, trigger: TriggerT) -> bool:
        """Return True when a transition exists for the pair, ignoring guards."""
        return bool(self.machine.candidates(state, trigger))

    async def fire(
        self, current_state: StateT, trigger: TriggerT, context: Any = None
    ) -> TransitionResult[StateT, TriggerT]:
        candidates = self.machine.candidates(current_state, trigger)
        if not candidates:
            return TransitionResult(
                is_success=False,
                previous_state=current_state,
                new_state=current_state,
                trigger=trigger,
                error_code=NO_TRANSITION,
                message=f"No transition from {current_state!r} on {trigger!r}",
            )

        selected: Optional[Transition[StateT, TriggerT]] = None
        for candidate in candidates:
            if candidate.guard is None or await _call(candidate.guard, context):
                selected = candidate
                break

        if selected is None:
            return TransitionResult(
                is_success=False,
                previous_state=current_state,
                new_state=current_state,
                trigger=trigger,
                error_code=GUARD_REJECTED,
                message=f"All guards rejected {trigger!r} in {current_state!r}",
            )

        executed: list[str] = []
        source = self.machine.states.get(current_state)
        target = self.machine.states.get(selected.target)
        for action in source.on_exit if source else ():
            await _call(action, context)
            executed.append(f"exit:{_label(action)}")
        if selected.action is not None:
            await _call(selected.action, context)
            executed.append(f"transition:{_label(selected.action)}")
        for action in target.on_entry if target else ():
            await _call(action, context)
            executed.append(f"entry:{_label(action)}")

        return TransitionResult(
            is_success=True,
            previous_state=current_state,
            new_state=selected.target,
            trigger=trigger,
            transition=selected,
            executed_actions=executed,
        )
