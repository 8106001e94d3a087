"""Registry of callables backing task and service-task activities."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union


@dataclass
class ActivityContext:
    """Read-only view of the instance handed to handlers."""

    instance_id: str
    workflow_id: str
    activity_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    attempt: int = 1


Handler = Callable[[dict[str, Any], ActivityContext], Union[Any, Awaitable[Any]]]


class HandlerRegistry:
    """Maps handler names (``config.handler``) to callables.

    Handlers receive the evaluated inputs and an ``ActivityContext``. They
    may be plain functions or coroutines and return a dict of outputs (or
    None).
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}

    def add(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    def register(self, name: Optional[str] = None) -> Callable[[Handler], Handler]:
        def decorator(func: Handler) -> Handler:
            self.add(name or func.__name__, func)
            return func

        return decorator

    def get(self, name: str) -> Optional[Handler]:
        return self._handlers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def invoke(
        self, name: str, inputs: dict[str, Any], context: ActivityContext
    ) -> Any:
        handler = self._handlers[name]
        result = handler(inputs, context)
        if inspect.isawaitable(result):
            result = await result
        return result


# Process-wide registry used when an engine is created without one.
HANDLERS = HandlerRegistry()


def register_handler(name: Optional[str] = None) -> Callable[[Handler], Handler]:
    """Register a handler on the default registry."""
    return HANDLERS.register(name)
