"""Exception hierarchy raised by the flowmark engine and stores."""

from __future__ import annotations

from typing import Any, Iterable, Optional


class FlowmarkError(Exception):
    """Base class for all flowmark errors."""

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, *, instance_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.instance_id = instance_id


class WorkflowValidationError(FlowmarkError):
    """A definition or design model failed structural validation."""

    code = "VALIDATION_FAILED"

    def __init__(self, message: str, issues: Iterable[Any] = ()) -> None:
        super().__init__(message)
        self.issues = list(issues)

    def __str__(self) -> str:
        if not self.issues:
            return self.message
        details = "; ".join(str(issue) for issue in self.issues)
        return f"{self.message}: {details}"


class StateMachineDefinitionError(FlowmarkError):
    """A state machine builder produced an inconsistent machine."""

    code = "INVALID_STATE_MACHINE"

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid state machine: " + "; ".join(self.errors))


class WorkflowNotFoundError(FlowmarkError):
    code = "WORKFLOW_NOT_FOUND"


class WorkflowBookmarkNotFoundError(FlowmarkError):
    code = "BOOKMARK_NOT_FOUND"

    def __init__(self, instance_id: str, bookmark_name: str) -> None:
        super().__init__(
            f"Bookmark '{bookmark_name}' not found on instance {instance_id}",
            instance_id=instance_id,
        )
        self.bookmark_name = bookmark_name


class WorkflowInvalidStateError(FlowmarkError):
    """The requested operation is not allowed in the instance's current status."""

    code = "INVALID_STATE"

    def __init__(
        self, message: str, *, instance_id: Optional[str] = None, status: Any = None
    ) -> None:
        super().__init__(message, instance_id=instance_id)
        self.status = status


class ActivityNotFoundError(FlowmarkError):
    code = "ACTIVITY_NOT_FOUND"


class InstanceLockedError(FlowmarkError):
    """Another holder owns the lock; the instance is already being handled."""

    code = "INSTANCE_LOCKED"

    def __init__(self, instance_id: str) -> None:
        super().__init__(
            f"Instance {instance_id} is locked by another holder",
            instance_id=instance_id,
        )


class ExpressionError(FlowmarkError):
    """A transition condition or mapping expression could not be evaluated."""

    code = "CONDITION_ERROR"

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"Cannot evaluate '{expression}': {reason}")
        self.expression = expression
        self.reason = reason


class WorkflowExecutionError(FlowmarkError):
    """Persisting execution state failed after all retries."""

    code = "EXECUTION_FAILED"
