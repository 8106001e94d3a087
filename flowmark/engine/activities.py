"""Per-activity behaviour: what each activity type does when a branch reaches it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..exceptions import ExpressionError
from ..model.activities import (
    ActivityBase,
    ActivityType,
    GatewayActivity,
    ParallelGateway,
)
from ..model.definition import ProcessDefinition
from ..persistence.models import Branch, Job, WorkflowInstance, WorkflowTimer
from ..utils.durations import parse_cycle, parse_datetime, parse_duration, utcnow
from .expressions import ExpressionEvaluator, build_scope
from .handlers import ActivityContext, HandlerRegistry

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    PROCEED = "proceed"
    ROUTE = "route"
    WAIT = "wait"
    END = "end"
    FAIL = "fail"


@dataclass
class ActivityResult:
    outcome: Outcome
    targets: list[str] = field(default_factory=list)
    fork: bool = False
    variables: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] = field(default_factory=dict)
    bookmark: Optional[str] = None
    signal: Optional[str] = None
    timer: Optional[WorkflowTimer] = None
    job: Optional[Job] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def proceed(cls, variables: Optional[dict[str, Any]] = None) -> "ActivityResult":
        return cls(Outcome.PROCEED, variables=variables or {})

    @classmethod
    def route(cls, targets: list[str], fork: bool = False) -> "ActivityResult":
        return cls(Outcome.ROUTE, targets=targets, fork=fork)

    @classmethod
    def wait(
        cls,
        bookmark: str,
        signal: Optional[str] = None,
        timer: Optional[WorkflowTimer] = None,
        job: Optional[Job] = None,
    ) -> "ActivityResult":
        return cls(Outcome.WAIT, bookmark=bookmark, signal=signal, timer=timer, job=job)

    @classmethod
    def end(cls, output: Optional[dict[str, Any]] = None) -> "ActivityResult":
        return cls(Outcome.END, output=output or {})

    @classmethod
    def failure(cls, code: str, message: str) -> "ActivityResult":
        return cls(Outcome.FAIL, error_code=code, error_message=message)


def timer_bookmark(activity_id: str) -> str:
    return f"timer:{activity_id}"


def job_bookmark(activity_id: str) -> str:
    return f"job:{activity_id}"


def signal_bookmark(signal: str, activity_id: str) -> str:
    return f"signal:{signal}:{activity_id}"


def compute_fire_at(
    config: dict[str, Any], now: Optional[datetime] = None
) -> tuple[datetime, Optional[str]]:
    """Return ``(fire_at, recurrence)`` from ``duration``, ``dateTime`` or ``cycle``.

    Raises:
        ValueError: none of the keys is present or the value cannot be parsed.
    """
    now = now or utcnow()
    if config.get("duration"):
        return now + parse_duration(str(config["duration"])), None
    if config.get("dateTime"):
        return parse_datetime(str(config["dateTime"])), None
    if config.get("cycle"):
        cycle = str(config["cycle"])
        _, interval = parse_cycle(cycle)
        return now + interval, cycle
    raise ValueError("timer needs one of 'duration', 'dateTime' or 'cycle'")


class ActivityRunner:
    """Executes a single activity for a branch and reports the outcome.

    Joins are not handled here; the engine synchronizes them against the
    instance store.
    """

    def __init__(
        self,
        handlers: HandlerRegistry,
        evaluator: ExpressionEvaluator,
        job_max_attempts: int = 3,
    ) -> None:
        self._handlers = handlers
        self._evaluator = evaluator
        self._job_max_attempts = job_max_attempts
        self._dispatch: Dict[str, Callable[..., Awaitable[ActivityResult]]] = {
            ActivityType.START: self._run_passthrough,
            ActivityType.END: self._run_end,
            ActivityType.TASK: self._run_task,
            ActivityType.SERVICE_TASK: self._run_service_task,
            ActivityType.USER_TASK: self._run_user_task,
            ActivityType.TIMER: self._run_timer,
            ActivityType.SIGNAL_RECEIVE: self._run_signal_receive,
            ActivityType.EXCLUSIVE_GATEWAY: self._run_exclusive_gateway,
            ActivityType.INCLUSIVE_GATEWAY: self._run_inclusive_gateway,
            ActivityType.PARALLEL_GATEWAY: self._run_parallel_gateway,
        }

    async def execute(
        self,
        activity: ActivityBase,
        definition: ProcessDefinition,
        instance: WorkflowInstance,
        branch: Branch,
    ) -> ActivityResult:
        runner = self._dispatch.get(activity.type)
        if runner is None:
            return ActivityResult.failure(
                "UNSUPPORTED_ACTIVITY", f"Activity type '{activity.type}' is not supported"
            )
        try:
            return await runner(activity, definition, instance, branch)
        except ExpressionError as exc:
            return ActivityResult.failure(exc.code, exc.message)

    # ------------------------------------------------------------------
    # Routing
    def next_targets(
        self, definition: ProcessDefinition, activity: ActivityBase, instance: WorkflowInstance
    ) -> list[str]:
        """Successor of a non-gateway activity: the first matching transition."""
        scope = build_scope(instance.variables, instance.input)
        target = self._select_first(definition, activity.id, {}, None, scope)
        return [target] if target else []

    def join_targets(self, definition: ProcessDefinition, join: ActivityBase) -> list[str]:
        return [t.target_activity_id for t in definition.outgoing(join.id)]

    def _select_first(
        self,
        definition: ProcessDefinition,
        activity_id: str,
        conditions: dict[str, str],
        default_path: Optional[str],
        scope: dict[str, Any],
    ) -> Optional[str]:
        default = None
        for transition in definition.outgoing(activity_id):
            target = transition.target_activity_id
            condition = transition.condition or conditions.get(target)
            is_default = transition.is_default or default_path == target
            if is_default and default is None:
                default = target
            if not condition:
                if is_default:
                    continue
                return target
            if self._evaluator.evaluate_condition(condition, scope):
                return target
        return default

    # ------------------------------------------------------------------
    # Mappings
    def _inputs(self, activity: ActivityBase, instance: WorkflowInstance) -> dict[str, Any]:
        inputs = dict(activity.config.get("parameters") or {})
        mappings = activity.config.get("inputMappings") or {}
        if mappings:
            scope = build_scope(instance.variables, instance.input)
            for name, expression in mappings.items():
                inputs[name] = self._evaluator.evaluate(str(expression), scope)
        return inputs

    def map_outputs(self, activity: ActivityBase, result: Any) -> dict[str, Any]:
        """Translate handler output into variable updates.

        With ``outputMappings`` each entry is an expression over the result;
        otherwise dict results are merged and other values are stored under
        ``resultVariable`` (default: the activity id).
        """
        if result is None:
            return {}
        mappings = activity.config.get("outputMappings") or {}
        if mappings:
            scope = dict(result) if isinstance(result, dict) else {}
            scope["result"] = result
            return {
                name: self._evaluator.evaluate(str(expression), scope)
                for name, expression in mappings.items()
            }
        if isinstance(result, dict):
            return dict(result)
        return {activity.config.get("resultVariable", activity.id): result}

    def _context(self, activity: ActivityBase, instance: WorkflowInstance) -> ActivityContext:
        return ActivityContext(
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            activity_id=activity.id,
            variables=dict(instance.variables),
            correlation_id=instance.correlation_id,
        )

    # ------------------------------------------------------------------
    # Activity types
    async def _run_passthrough(self, activity, definition, instance, branch) -> ActivityResult:
        return ActivityResult.proceed()

    async def _run_end(self, activity, definition, instance, branch) -> ActivityResult:
        output: dict[str, Any] = {}
        mappings = activity.config.get("outputMappings") or {}
        scope = build_scope(instance.variables, instance.input)
        for name, expression in mappings.items():
            output[name] = self._evaluator.evaluate(str(expression), scope)
        for parameter in definition.outputs:
            if parameter.name not in output and parameter.name in instance.variables:
                output[parameter.name] = instance.variables[parameter.name]
        return ActivityResult.end(output)

    async def _invoke(self, activity, instance, handler: str) -> ActivityResult:
        try:
            inputs = self._inputs(activity, instance)
        except ExpressionError as exc:
            return ActivityResult.failure("MAPPING_ERROR", exc.message)
        try:
            result = await self._handlers.invoke(handler, inputs, self._context(activity, instance))
        except Exception as exc:
            logger.warning(
                f"Handler '{handler}' failed for activity {activity.id} "
                f"of instance {instance.id}: {exc}",
                exc_info=True,
            )
            code = activity.config.get("errorCode") or "HANDLER_FAILED"
            return ActivityResult.failure(code, str(exc))
        try:
            return ActivityResult.proceed(self.map_outputs(activity, result))
        except ExpressionError as exc:
            return ActivityResult.failure("MAPPING_ERROR", exc.message)

    async def _run_task(self, activity, definition, instance, branch) -> ActivityResult:
        handler = activity.config.get("handler")
        if not handler:
            return ActivityResult.proceed()
        if handler not in self._handlers:
            return ActivityResult.failure(
                "HANDLER_NOT_REGISTERED", f"Handler '{handler}' is not registered"
            )
        return await self._invoke(activity, instance, handler)

    async def _run_service_task(self, activity, definition, instance, branch) -> ActivityResult:
        handler = activity.config.get("handler")
        if not handler or handler not in self._handlers:
            return ActivityResult.failure(
                "HANDLER_NOT_REGISTERED",
                f"Service task {activity.id} has no registered handler '{handler}'",
            )
        if not activity.config.get("async"):
            return await self._invoke(activity, instance, handler)

        try:
            payload = self._inputs(activity, instance)
        except ExpressionError as exc:
            return ActivityResult.failure("MAPPING_ERROR", exc.message)
        bookmark = job_bookmark(activity.id)
        job = Job(
            instance_id=instance.id,
            activity_id=activity.id,
            bookmark_name=bookmark,
            handler=handler,
            payload=payload,
            priority=int(activity.config.get("priority", 0)),
            max_attempts=int(activity.config.get("maxAttempts", self._job_max_attempts)),
        )
        return ActivityResult.wait(bookmark, job=job)

    async def _run_user_task(self, activity, definition, instance, branch) -> ActivityResult:
        bookmark = activity.config.get("bookmarkName") or activity.id
        timer = None
        timeout = activity.config.get("timeout")
        if timeout:
            try:
                fire_at = utcnow() + parse_duration(str(timeout))
            except ValueError as exc:
                return ActivityResult.failure("INVALID_TIMER", str(exc))
            timer = WorkflowTimer(
                instance_id=instance.id,
                bookmark_name=bookmark,
                activity_id=activity.id,
                fire_at=fire_at,
            )
        return ActivityResult.wait(bookmark, timer=timer)

    async def _run_timer(self, activity, definition, instance, branch) -> ActivityResult:
        try:
            fire_at, recurrence = compute_fire_at(activity.config)
        except ValueError as exc:
            return ActivityResult.failure("INVALID_TIMER", str(exc))
        bookmark = timer_bookmark(activity.id)
        timer = WorkflowTimer(
            instance_id=instance.id,
            bookmark_name=bookmark,
            activity_id=activity.id,
            fire_at=fire_at,
            recurrence=recurrence,
        )
        return ActivityResult.wait(bookmark, timer=timer)

    async def _run_signal_receive(self, activity, definition, instance, branch) -> ActivityResult:
        signal = activity.config.get("signal") or activity.config.get("signalName")
        if not signal:
            return ActivityResult.failure(
                "INVALID_CONFIGURATION", f"Signal receive {activity.id} has no 'signal'"
            )
        return ActivityResult.wait(signal_bookmark(signal, activity.id), signal=signal)

    async def _run_exclusive_gateway(
        self, activity: GatewayActivity, definition, instance, branch
    ) -> ActivityResult:
        scope = build_scope(instance.variables, instance.input)
        target = self._select_first(
            definition, activity.id, activity.conditions, activity.default_path, scope
        )
        if target is None:
            return ActivityResult.failure(
                "NO_PATH", f"No condition matched at exclusive gateway {activity.id}"
            )
        return ActivityResult.route([target])

    async def _run_inclusive_gateway(
        self, activity: GatewayActivity, definition, instance, branch
    ) -> ActivityResult:
        scope = build_scope(instance.variables, instance.input)
        matches: list[str] = []
        default = None
        for transition in definition.outgoing(activity.id):
            target = transition.target_activity_id
            condition = transition.condition or activity.conditions.get(target)
            is_default = transition.is_default or activity.default_path == target
            if is_default and default is None:
                default = target
            if not condition:
                if not is_default and target not in matches:
                    matches.append(target)
            elif self._evaluator.evaluate_condition(condition, scope) and target not in matches:
                matches.append(target)
        if not matches and default is not None:
            matches = [default]
        if not matches:
            return ActivityResult.failure(
                "NO_PATH", f"No condition matched at inclusive gateway {activity.id}"
            )
        return ActivityResult.route(matches, fork=True)

    async def _run_parallel_gateway(
        self, activity: ParallelGateway, definition, instance, branch
    ) -> ActivityResult:
        targets = list(activity.outgoing_paths) or [
            t.target_activity_id for t in definition.outgoing(activity.id)
        ]
        return ActivityResult.route(targets, fork=True)
