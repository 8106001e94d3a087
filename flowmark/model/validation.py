"""Structural validation of executable process definitions.

Validation runs when a definition is compiled or published, never while an
instance executes.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..exceptions import WorkflowValidationError
from .activities import (
    ActivityBase,
    ActivityType,
    GatewayActivity,
    ParallelGateway,
    is_join,
)
from .definition import ProcessDefinition

logger = logging.getLogger(__name__)


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    code: str
    message: str
    severity: IssueSeverity = IssueSeverity.ERROR
    activity_id: Optional[str] = None
    transition_id: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationResult(BaseModel):
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error(self, code: str, message: str, **kwargs) -> None:
        self.errors.append(ValidationIssue(code=code, message=message, **kwargs))

    def warn(self, code: str, message: str, **kwargs) -> None:
        self.warnings.append(
            ValidationIssue(
                code=code, message=message, severity=IssueSeverity.WARNING, **kwargs
            )
        )


def is_fork(definition: ProcessDefinition, activity: ActivityBase) -> bool:
    """Gateways that may spawn more than one concurrent branch."""
    if activity.type not in (
        ActivityType.PARALLEL_GATEWAY,
        ActivityType.INCLUSIVE_GATEWAY,
    ) or is_join(activity):
        return False
    return len(definition.outgoing(activity.id)) > 1


def find_matching_join(
    definition: ProcessDefinition, split_id: str
) -> tuple[Optional[str], set[str]]:
    """Walk forward from a split and return the join that closes it.

    Nested splits increase the depth and their joins decrease it, so only a
    join reached at depth zero matches. Returns ``(join_id, candidates)``
    where ``join_id`` is None when no join or more than one join qualifies.
    """
    limit = len(definition.activities)
    candidates: set[str] = set()
    visited: set[tuple[str, int]] = set()
    stack = [(t.target_activity_id, 0) for t in definition.outgoing(split_id)]
    while stack:
        activity_id, depth = stack.pop()
        if (activity_id, depth) in visited or depth > limit:
            continue
        visited.add((activity_id, depth))
        activity = definition.find_activity(activity_id)
        if activity is None:
            continue
        if is_join(activity):
            if depth == 0:
                candidates.add(activity_id)
                continue
            depth -= 1
        elif is_fork(definition, activity):
            depth += 1
        for transition in definition.outgoing(activity_id):
            stack.append((transition.target_activity_id, depth))
    join_id = next(iter(candidates)) if len(candidates) == 1 else None
    return join_id, candidates


def _check_gateway_paths(
    definition: ProcessDefinition, gateway: GatewayActivity, result: ValidationResult
) -> None:
    outgoing = definition.outgoing(gateway.id)
    if len(outgoing) <= 1:
        return
    defaults = [
        t for t in outgoing if t.is_default or gateway.default_path == t.target_activity_id
    ]
    if len(defaults) > 1:
        result.error(
            "MULTIPLE_DEFAULT_PATHS",
            f"Gateway '{gateway.id}' declares {len(defaults)} default paths",
            activity_id=gateway.id,
        )
    for transition in outgoing:
        condition = transition.condition or gateway.conditions.get(
            transition.target_activity_id
        )
        if not condition and transition not in defaults:
            result.error(
                "MISSING_CONDITION",
                f"Transition '{transition.id}' leaving gateway '{gateway.id}' has "
                "neither a condition nor the default flag",
                activity_id=gateway.id,
                transition_id=transition.id,
            )


def _check_parallel_split(
    definition: ProcessDefinition, gateway: ParallelGateway, result: ValidationResult
) -> None:
    outgoing = definition.outgoing(gateway.id)
    if len(outgoing) <= 1:
        return
    join_id, candidates = find_matching_join(definition, gateway.id)
    if join_id is None:
        if candidates:
            result.error(
                "AMBIGUOUS_JOIN",
                f"Parallel split '{gateway.id}' reaches several joins: "
                f"{', '.join(sorted(candidates))}",
                activity_id=gateway.id,
            )
        else:
            result.error(
                "MISSING_JOIN",
                f"Parallel split '{gateway.id}' has no matching join",
                activity_id=gateway.id,
            )
        return
    arrivals = len(definition.incoming(join_id))
    if arrivals != len(outgoing):
        result.error(
            "JOIN_ARITY_MISMATCH",
            f"Join '{join_id}' has {arrivals} incoming transitions but split "
            f"'{gateway.id}' forks {len(outgoing)} branches",
            activity_id=join_id,
        )


def validate_definition(definition: ProcessDefinition) -> ValidationResult:
    result = ValidationResult()

    counts = Counter(a.id for a in definition.activities)
    for activity_id, count in counts.items():
        if count > 1:
            result.error(
                "DUPLICATE_ACTIVITY",
                f"Activity id '{activity_id}' is used {count} times",
                activity_id=activity_id,
            )

    starts = [a for a in definition.activities if a.type == ActivityType.START]
    if not starts:
        result.error("NO_START_ACTIVITY", "Definition has no start activity")
    elif len(starts) > 1:
        result.error(
            "MULTIPLE_START_ACTIVITIES",
            f"Definition has {len(starts)} start activities: "
            f"{', '.join(a.id for a in starts)}",
        )
    elif definition.start_activity_id != starts[0].id:
        result.error(
            "INVALID_START_ACTIVITY",
            f"start_activity_id '{definition.start_activity_id}' does not reference "
            f"the start activity '{starts[0].id}'",
        )

    for transition in definition.transitions:
        if definition.find_activity(transition.source_activity_id) is None:
            result.error(
                "INVALID_TRANSITION_SOURCE",
                f"Transition '{transition.id}' references unknown source "
                f"'{transition.source_activity_id}'",
                transition_id=transition.id,
            )
        if definition.find_activity(transition.target_activity_id) is None:
            result.error(
                "INVALID_TRANSITION_TARGET",
                f"Transition '{transition.id}' references unknown target "
                f"'{transition.target_activity_id}'",
                transition_id=transition.id,
            )

    for handler in definition.error_handlers:
        if definition.find_activity(handler.handler_activity_id) is None:
            result.error(
                "INVALID_ERROR_HANDLER",
                f"Error handler targets unknown activity '{handler.handler_activity_id}'",
            )

    # Gateway checks only make sense once every edge resolves.
    if result.is_valid:
        for activity in definition.activities:
            if isinstance(activity, GatewayActivity) and not is_join(activity):
                if activity.type in (
                    ActivityType.EXCLUSIVE_GATEWAY,
                    ActivityType.INCLUSIVE_GATEWAY,
                ):
                    _check_gateway_paths(definition, activity, result)
                elif isinstance(activity, ParallelGateway):
                    _check_parallel_split(definition, activity, result)

    if len(starts) == 1:
        roots = [starts[0].id] + [h.handler_activity_id for h in definition.error_handlers]
        reachable = set(roots)
        queue = deque(roots)
        while queue:
            current = queue.popleft()
            for transition in definition.outgoing(current):
                target = transition.target_activity_id
                if target not in reachable:
                    reachable.add(target)
                    queue.append(target)
        for activity in definition.activities:
            if activity.id not in reachable:
                result.warn(
                    "UNREACHABLE_ACTIVITY",
                    f"Activity '{activity.id}' is not reachable from the start activity",
                    activity_id=activity.id,
                )

    if not any(a.type == ActivityType.END for a in definition.activities):
        result.warn("NO_END_ACTIVITY", "Definition has no end activity")

    return result


def ensure_valid(definition: ProcessDefinition) -> ValidationResult:
    """Validate and raise ``WorkflowValidationError`` if any error was found."""
    result = validate_definition(definition)
    for warning in result.warnings:
        logger.warning(f"Definition {definition.id}: {warning}")
    if not result.is_valid:
        raise WorkflowValidationError(
            f"Definition {definition.id} is invalid", result.errors
        )
    return result
