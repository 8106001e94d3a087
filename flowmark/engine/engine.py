"""Workflow execution engine."""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from ..config import EngineSettings
from ..exceptions import (
    ExpressionError,
    InstanceLockedError,
    WorkflowBookmarkNotFoundError,
    WorkflowExecutionError,
    WorkflowInvalidStateError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from ..model.activities import ActivityBase, is_join
from ..model.definition import ProcessDefinition, TriggerType
from ..model.validation import ValidationIssue, find_matching_join, is_fork
from ..persistence import WorkflowStores
from ..persistence.models import (
    AuditEntry,
    Bookmark,
    Branch,
    BranchStatus,
    ExecutionKind,
    ExecutionRecord,
    ForkFrame,
    InstanceQuery,
    InstanceQueryResult,
    Job,
    WorkflowFault,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTimer,
)
from ..statemachine import StateMachineExecutor
from ..utils.durations import utcnow
from ..utils.retry import schedule_retry
from .activities import ActivityRunner, Outcome
from .expressions import ExpressionEvaluator, SafeExpressionEvaluator
from .handlers import HANDLERS, HandlerRegistry
from .lifecycle import InstanceTrigger, build_lifecycle_machine

logger = logging.getLogger(__name__)

EXECUTION_LIMIT = "EXECUTION_LIMIT"
TERMINATED = "TERMINATED"


class StartOptions(BaseModel):
    version: Optional[int] = None
    name: Optional[str] = None
    correlation_id: Optional[str] = None
    tenant_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Snapshot returned by every engine operation that runs an instance."""

    instance_id: str
    status: WorkflowStatus
    output: dict[str, Any] = Field(default_factory=dict)
    fault: Optional[WorkflowFault] = None
    bookmarks: list[str] = Field(default_factory=list)
    active_activity_ids: list[str] = Field(default_factory=list)
    activities_executed: int = 0
    duration_ms: float = 0.0


class _RunState:
    """Side effects collected during a run and persisted after the save."""

    def __init__(self) -> None:
        self.timers: list[WorkflowTimer] = []
        self.jobs: list[Job] = []
        self.executed = 0


def _frame_index(branch: Branch, join_id: str) -> Optional[int]:
    """Position of the fork frame that ``join_id`` closes.

    Frames whose split has no single matching join fall back to the
    innermost frame.
    """
    for index in range(len(branch.forks) - 1, -1, -1):
        if branch.forks[index].join_id == join_id:
            return index
    if branch.forks and branch.forks[-1].join_id is None:
        return len(branch.forks) - 1
    return None


class WorkflowEngine:
    """Runs workflow instances against a set of stores.

    Every mutating operation holds the persisted instance lock for its whole
    duration, so two engines sharing the same stores never apply
    transitions to one instance concurrently. A caller that cannot obtain
    the lock gets ``InstanceLockedError``.
    """

    def __init__(
        self,
        stores: WorkflowStores,
        handlers: Optional[HandlerRegistry] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        settings: Optional[EngineSettings] = None,
        job_max_attempts: int = 3,
        holder_prefix: Optional[str] = None,
    ) -> None:
        self._stores = stores
        self._handlers = handlers if handlers is not None else HANDLERS
        self._evaluator = evaluator or SafeExpressionEvaluator()
        self._settings = settings or EngineSettings()
        self._runner = ActivityRunner(self._handlers, self._evaluator, job_max_attempts)
        self._lifecycle = StateMachineExecutor(build_lifecycle_machine())
        self._holder_prefix = holder_prefix or f"{socket.gethostname()}:{os.getpid()}"

    @property
    def stores(self) -> WorkflowStores:
        return self._stores

    @property
    def handlers(self) -> HandlerRegistry:
        return self._handlers

    # ------------------------------------------------------------------
    # Public API
    async def start_new(
        self,
        workflow_id: str,
        input: Optional[dict[str, Any]] = None,
        options: Optional[StartOptions] = None,
    ) -> ExecutionResult:
        """Create an instance of the published (or requested) version and run it."""
        options = options or StartOptions()
        definition = await self._stores.definitions.get(workflow_id, options.version)
        if definition is None:
            raise WorkflowNotFoundError(
                f"No published definition '{workflow_id}'"
                + (f" version {options.version}" if options.version else "")
            )
        input = dict(input or {})
        variables = self._initial_variables(definition, input)

        instance = WorkflowInstance(
            workflow_id=definition.id,
            version=definition.version,
            name=options.name or definition.name,
            variables=variables,
            input=input,
            correlation_id=options.correlation_id,
            tenant_id=options.tenant_id,
            metadata=dict(options.metadata),
            branches=[Branch(activity_id=definition.start_activity_id)],
        )
        async with self._locked(instance.id):
            await self._transition(instance, InstanceTrigger.START)
            await self._save(instance)
            logger.info(
                f"Started instance {instance.id} of {definition.id} v{definition.version}"
            )
            return await self._execute(instance, definition)

    async def resume(
        self,
        instance_id: str,
        bookmark_name: str,
        input: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Consume ``bookmark_name`` and continue the suspended instance."""
        async with self._locked(instance_id):
            instance = await self._load(instance_id)
            self._require_suspended(instance, "resume")
            bookmark = instance.find_bookmark(bookmark_name)
            if bookmark is None:
                raise WorkflowBookmarkNotFoundError(instance_id, bookmark_name)
            definition = await self._load_definition(instance)
            return await self._resume_bookmark(instance, definition, bookmark, input)

    async def signal(
        self,
        instance_id: str,
        signal_name: str,
        data: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Resume the instance's bookmark waiting for ``signal_name``."""
        async with self._locked(instance_id):
            instance = await self._load(instance_id)
            self._require_suspended(instance, "signal")
            bookmark = next(
                (
                    b
                    for b in instance.bookmarks
                    if b.signal == signal_name or b.name == signal_name
                ),
                None,
            )
            if bookmark is None:
                raise WorkflowBookmarkNotFoundError(instance_id, signal_name)
            definition = await self._load_definition(instance)
            return await self._resume_bookmark(instance, definition, bookmark, data)

    async def broadcast_signal(
        self,
        signal_name: str,
        data: Optional[dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> list[ExecutionResult]:
        """Deliver a signal to every suspended instance waiting for it."""
        candidates = await self._stores.instances.find_by_bookmark(
            bookmark_name=signal_name, signal=signal_name
        )
        results: list[ExecutionResult] = []
        for candidate in candidates:
            if workflow_id and candidate.workflow_id != workflow_id:
                continue
            try:
                results.append(await self.signal(candidate.id, signal_name, data))
            except (
                InstanceLockedError,
                WorkflowInvalidStateError,
                WorkflowBookmarkNotFoundError,
            ) as exc:
                logger.warning(f"Skipping instance {candidate.id} for signal '{signal_name}': {exc}")
            except Exception:
                logger.exception(
                    f"Failed to deliver signal '{signal_name}' to instance {candidate.id}"
                )
        logger.info(f"Broadcast signal '{signal_name}' resumed {len(results)} instance(s)")
        return results

    async def cancel(self, instance_id: str, reason: Optional[str] = None) -> ExecutionResult:
        async with self._locked(instance_id):
            instance = await self._load(instance_id)
            await self._transition(instance, InstanceTrigger.CANCEL, reason)
            await self._clear_waits(instance)
            await self._save(instance)
            logger.info(f"Cancelled instance {instance_id}: {reason or 'no reason given'}")
            return self._result(instance)

    async def terminate(self, instance_id: str, reason: Optional[str] = None) -> ExecutionResult:
        """Force the instance into ``TERMINATED`` whatever its status."""
        async with self._locked(instance_id):
            instance = await self._load(instance_id)
            await self._transition(instance, InstanceTrigger.TERMINATE, reason)
            instance.fault = WorkflowFault(
                code=TERMINATED, message=reason or "Workflow terminated"
            )
            await self._clear_waits(instance)
            await self._save(instance)
            logger.warning(
                f"Terminated instance {instance_id}: {reason or 'no reason given'}"
            )
            return self._result(instance)

    async def retry(self, instance_id: str) -> ExecutionResult:
        """Re-run the faulted branch from the activity that faulted."""
        async with self._locked(instance_id):
            instance = await self._load(instance_id)
            if instance.status != WorkflowStatus.FAULTED:
                raise WorkflowInvalidStateError(
                    f"Instance {instance_id} is {instance.status.value}, only faulted "
                    "instances can be retried",
                    instance_id=instance_id,
                    status=instance.status,
                )
            definition = await self._load_definition(instance)
            await self._transition(instance, InstanceTrigger.RETRY)
            instance.retry_count += 1
            # Retries count toward the fault total as well.
            instance.fault_count += 1
            if instance.retry_count > self._settings.max_retry_attempts:
                logger.warning(
                    f"Instance {instance_id} retried {instance.retry_count} times "
                    f"(limit {self._settings.max_retry_attempts})"
                )
            for branch in instance.branches:
                if branch.status == BranchStatus.FAULTED:
                    branch.status = BranchStatus.ACTIVE
            instance.fault = None
            logger.info(f"Retrying instance {instance_id}")
            return await self._execute(instance, definition)

    async def fail_bookmark(
        self, instance_id: str, bookmark_name: str, code: str, message: str
    ) -> ExecutionResult:
        """Fault the activity waiting on ``bookmark_name`` (e.g. an exhausted job)."""
        async with self._locked(instance_id):
            instance = await self._load(instance_id)
            self._require_suspended(instance, "fail")
            bookmark = instance.find_bookmark(bookmark_name)
            if bookmark is None:
                raise WorkflowBookmarkNotFoundError(instance_id, bookmark_name)
            definition = await self._load_definition(instance)
            branch = self._take_bookmark(instance, bookmark)
            await self._transition(instance, InstanceTrigger.RESUME)
            branch.status = BranchStatus.ACTIVE
            activity = definition.find_activity(bookmark.activity_id)
            await self._fault(instance, definition, branch, activity, code, message)
            return await self._execute(instance, definition)

    async def trigger_event(
        self, event_name: str, data: Optional[dict[str, Any]] = None
    ) -> list[ExecutionResult]:
        """Start definitions triggered by ``event_name`` and resume instances waiting on it."""
        data = dict(data or {})
        results: list[ExecutionResult] = []
        for definition in await self._stores.definitions.get_by_trigger(
            TriggerType.EVENT, event_name
        ):
            try:
                results.append(
                    await self.start_new(
                        definition.id,
                        {**data, "eventName": event_name, "eventData": data},
                        StartOptions(version=definition.version),
                    )
                )
            except Exception:
                logger.exception(
                    f"Failed to start {definition.id} for event '{event_name}'"
                )
        results.extend(await self.broadcast_signal(event_name, data))
        return results

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return await self._stores.instances.get(instance_id)

    async def query_instances(self, query: Optional[InstanceQuery] = None) -> InstanceQueryResult:
        return await self._stores.instances.query(query or InstanceQuery())

    async def get_history(self, instance_id: str) -> list[ExecutionRecord]:
        if await self._stores.instances.get(instance_id) is None:
            raise WorkflowNotFoundError(f"Instance {instance_id} not found", instance_id=instance_id)
        return await self._stores.instances.get_history(instance_id)

    # ------------------------------------------------------------------
    # Locking and persistence
    @asynccontextmanager
    async def _locked(self, instance_id: str) -> AsyncIterator[str]:
        holder = f"{self._holder_prefix}:{uuid.uuid4().hex}"
        ttl = self._settings.lock_ttl_seconds
        attempts = self._settings.lock_retry_attempts
        delay = self._settings.lock_retry_delay
        acquired = False
        for attempt in range(attempts + 1):
            if await self._stores.instances.try_acquire_lock(instance_id, holder, ttl):
                acquired = True
                break
            if attempt < attempts:
                await schedule_retry(attempt, base=delay, jitter=delay / 2)
        if not acquired:
            logger.debug(f"Lock contention on instance {instance_id}")
            raise InstanceLockedError(instance_id)
        try:
            yield holder
        finally:
            await self._stores.instances.release_lock(instance_id, holder)

    async def _load(self, instance_id: str) -> WorkflowInstance:
        instance = await self._stores.instances.get(instance_id)
        if instance is None:
            raise WorkflowNotFoundError(f"Instance {instance_id} not found", instance_id=instance_id)
        return instance

    async def _load_definition(self, instance: WorkflowInstance) -> ProcessDefinition:
        definition = await self._stores.definitions.get(instance.workflow_id, instance.version)
        if definition is None:
            raise WorkflowNotFoundError(
                f"Definition {instance.workflow_id} v{instance.version} not found",
                instance_id=instance.id,
            )
        return definition

    async def _save(self, instance: WorkflowInstance) -> None:
        attempts = self._settings.save_retry_attempts
        for attempt in range(attempts):
            try:
                await self._stores.instances.save(instance)
                return
            except Exception as exc:
                if attempt + 1 >= attempts:
                    raise WorkflowExecutionError(
                        f"Could not save instance {instance.id}: {exc}",
                        instance_id=instance.id,
                    ) from exc
                logger.warning(
                    f"Saving instance {instance.id} failed (attempt {attempt + 1}): {exc}"
                )
                await schedule_retry(attempt)

    async def _record(
        self,
        instance: WorkflowInstance,
        activity_id: str,
        kind: ExecutionKind,
        activity: Optional[ActivityBase] = None,
        branch: Optional[Branch] = None,
        **fields: Any,
    ) -> None:
        await self._stores.instances.add_history(
            ExecutionRecord(
                instance_id=instance.id,
                activity_id=activity_id,
                activity_name=activity.display_name if activity else None,
                activity_type=activity.type if activity else None,
                branch_id=branch.id if branch else None,
                kind=kind,
                **fields,
            )
        )

    # ------------------------------------------------------------------
    # Lifecycle helpers
    async def _transition(
        self, instance: WorkflowInstance, trigger: InstanceTrigger, reason: Optional[str] = None
    ) -> None:
        result = await self._lifecycle.fire(instance.status, trigger, instance)
        if not result.is_success:
            raise WorkflowInvalidStateError(
                f"Cannot {trigger.value} instance {instance.id} in status "
                f"{instance.status.value}",
                instance_id=instance.id,
                status=instance.status,
            )
        instance.status = result.new_state
        instance.audit_trail.append(
            AuditEntry(action=trigger.value, status=instance.status, reason=reason)
        )
        if instance.status.is_terminal:
            instance.completed_at = utcnow()

    def _require_suspended(self, instance: WorkflowInstance, action: str) -> None:
        if instance.status != WorkflowStatus.SUSPENDED:
            raise WorkflowInvalidStateError(
                f"Cannot {action} instance {instance.id} in status {instance.status.value}",
                instance_id=instance.id,
                status=instance.status,
            )

    def _initial_variables(
        self, definition: ProcessDefinition, input: dict[str, Any]
    ) -> dict[str, Any]:
        missing = [p.name for p in definition.inputs if p.required and p.name not in input]
        if missing:
            raise WorkflowValidationError(
                f"Missing required input for {definition.id}",
                [
                    ValidationIssue(code="MISSING_INPUT", message=f"'{name}' is required")
                    for name in missing
                ],
            )
        variables = dict(definition.variables)
        for parameter in definition.inputs:
            if parameter.default is not None:
                variables.setdefault(parameter.name, parameter.default)
        variables.update(input)
        return variables

    async def _clear_waits(self, instance: WorkflowInstance) -> None:
        instance.bookmarks = []
        instance.branches = []
        await self._stores.timers.cancel(instance.id)
        await self._stores.jobs.cancel_for_instance(instance.id)

    def _take_bookmark(self, instance: WorkflowInstance, bookmark: Bookmark) -> Branch:
        instance.bookmarks = [b for b in instance.bookmarks if b.name != bookmark.name]
        branch = instance.find_branch(bookmark.branch_id)
        if branch is None:
            raise WorkflowExecutionError(
                f"Bookmark '{bookmark.name}' references a missing branch",
                instance_id=instance.id,
            )
        return branch

    async def _resume_bookmark(
        self,
        instance: WorkflowInstance,
        definition: ProcessDefinition,
        bookmark: Bookmark,
        data: Optional[dict[str, Any]],
    ) -> ExecutionResult:
        branch = self._take_bookmark(instance, bookmark)
        await self._stores.timers.cancel(instance.id, bookmark.name)
        await self._transition(instance, InstanceTrigger.RESUME)
        activity = definition.get_activity(bookmark.activity_id)
        data = dict(data or {})
        branch.status = BranchStatus.ACTIVE
        logger.info(f"Resuming instance {instance.id} at bookmark '{bookmark.name}'")

        try:
            updates = self._runner.map_outputs(activity, data)
            instance.variables.update(updates)
            await self._record(
                instance, activity.id, ExecutionKind.RESUMED, activity, branch, output=data
            )
            await self._record(
                instance, activity.id, ExecutionKind.COMPLETED, activity, branch, output=updates
            )
            instance.completed_activity_ids.append(activity.id)
            targets = self._runner.next_targets(definition, activity, instance)
        except ExpressionError as exc:
            await self._fault(instance, definition, branch, activity, exc.code, exc.message)
        else:
            self._route(instance, definition, branch, activity, targets, fork=False)
        return await self._execute(instance, definition)

    # ------------------------------------------------------------------
    # Execution loop
    async def _execute(
        self, instance: WorkflowInstance, definition: ProcessDefinition
    ) -> ExecutionResult:
        started = time.perf_counter()
        run = _RunState()
        limit = self._settings.max_activities_per_execution

        while instance.status == WorkflowStatus.RUNNING:
            branch = next(
                (b for b in instance.branches if b.status == BranchStatus.ACTIVE), None
            )
            if branch is None:
                break
            if run.executed >= limit:
                await self._fault(
                    instance,
                    definition,
                    branch,
                    None,
                    EXECUTION_LIMIT,
                    f"Exceeded {limit} activities in a single execution",
                    use_handlers=False,
                )
                break
            stopped = await self._stopped_externally(instance)
            if stopped is not None:
                return self._result(stopped, run, started)
            run.executed += 1
            await self._step(instance, definition, branch, run)

        if instance.status == WorkflowStatus.RUNNING:
            if not instance.branches:
                await self._transition(instance, InstanceTrigger.COMPLETE)
                logger.info(f"Instance {instance.id} completed")
            else:
                await self._transition(instance, InstanceTrigger.SUSPEND)
                logger.info(
                    f"Instance {instance.id} suspended on "
                    f"{', '.join(b.name for b in instance.bookmarks)}"
                )

        await self._save(instance)
        for timer in run.timers:
            await self._stores.timers.cancel(instance.id, timer.bookmark_name)
            await self._stores.timers.schedule(timer)
        for job in run.jobs:
            await self._stores.jobs.enqueue(job)
        return self._result(instance, run, started)

    async def _stopped_externally(
        self, instance: WorkflowInstance
    ) -> Optional[WorkflowInstance]:
        """Return the stored instance if another caller cancelled or terminated it."""
        stored = await self._stores.instances.get(instance.id)
        if stored is not None and stored.status in (
            WorkflowStatus.CANCELLED,
            WorkflowStatus.TERMINATED,
        ):
            logger.warning(
                f"Instance {instance.id} was {stored.status.value} during execution; stopping"
            )
            return stored
        return None

    async def _step(
        self,
        instance: WorkflowInstance,
        definition: ProcessDefinition,
        branch: Branch,
        run: _RunState,
    ) -> None:
        activity = definition.find_activity(branch.activity_id)
        if activity is None:
            await self._fault(
                instance,
                definition,
                branch,
                None,
                "ACTIVITY_NOT_FOUND",
                f"Activity '{branch.activity_id}' does not exist",
            )
            return
        if is_join(activity):
            await self._arrive_at_join(instance, definition, branch, activity)
            return

        await self._record(instance, activity.id, ExecutionKind.STARTED, activity, branch)
        step_started = time.perf_counter()
        result = await self._runner.execute(activity, definition, instance, branch)
        duration_ms = (time.perf_counter() - step_started) * 1000

        if result.outcome == Outcome.FAIL:
            await self._fault(
                instance, definition, branch, activity, result.error_code, result.error_message
            )
            return

        instance.variables.update(result.variables)
        if result.outcome == Outcome.WAIT:
            branch.status = BranchStatus.WAITING
            instance.bookmarks.append(
                Bookmark(
                    name=result.bookmark,
                    activity_id=activity.id,
                    branch_id=branch.id,
                    signal=result.signal,
                )
            )
            if result.timer is not None:
                run.timers.append(result.timer)
            if result.job is not None:
                run.jobs.append(result.job)
            await self._record(
                instance,
                activity.id,
                ExecutionKind.SUSPENDED,
                activity,
                branch,
                output={"bookmark": result.bookmark},
            )
            return

        await self._record(
            instance,
            activity.id,
            ExecutionKind.COMPLETED,
            activity,
            branch,
            duration_ms=duration_ms,
            output=result.output or result.variables or None,
        )
        instance.completed_activity_ids.append(activity.id)

        if result.outcome == Outcome.END:
            instance.output.update(result.output)
            instance.branches.remove(branch)
            return
        if result.outcome == Outcome.ROUTE:
            self._route(instance, definition, branch, activity, result.targets, fork=result.fork)
            return
        try:
            targets = self._runner.next_targets(definition, activity, instance)
        except ExpressionError as exc:
            await self._fault(instance, definition, branch, activity, exc.code, exc.message)
            return
        self._route(instance, definition, branch, activity, targets, fork=False)

    def _route(
        self,
        instance: WorkflowInstance,
        definition: ProcessDefinition,
        branch: Branch,
        activity: ActivityBase,
        targets: list[str],
        fork: bool,
    ) -> None:
        """Move ``branch`` to its targets; a fork replaces it with one child per target."""
        if not targets:
            # No outgoing path: the branch is done.
            instance.branches.remove(branch)
            return
        if not fork or (len(targets) == 1 and not is_fork(definition, activity)):
            branch.activity_id = targets[0]
            return
        join_id, _ = find_matching_join(definition, activity.id)
        frame = ForkFrame(gateway_id=activity.id, join_id=join_id, expected=len(targets))
        index = instance.branches.index(branch)
        children = [
            Branch(activity_id=target, forks=[*branch.forks, frame.model_copy()])
            for target in targets
        ]
        instance.branches[index : index + 1] = children
        logger.debug(
            f"Instance {instance.id} forked {len(children)} branches at {activity.id}"
        )

    async def _arrive_at_join(
        self,
        instance: WorkflowInstance,
        definition: ProcessDefinition,
        branch: Branch,
        join: ActivityBase,
    ) -> None:
        index = _frame_index(branch, join.id)
        frame = branch.forks[index] if index is not None else None
        if frame is not None:
            expected = frame.expected
        else:
            expected = getattr(join, "expected_arrivals", None) or len(
                definition.incoming(join.id)
            )
        arrived = await self._stores.instances.increment_join_arrival(
            instance.id, join.id, branch.id
        )
        if arrived < expected:
            await self._record(
                instance,
                join.id,
                ExecutionKind.JOINED,
                join,
                branch,
                output={"arrived": arrived, "expected": expected},
            )
            instance.branches.remove(branch)
            return

        await self._stores.instances.reset_join(instance.id, join.id)
        if index is not None:
            branch.forks = branch.forks[:index]
        await self._record(
            instance,
            join.id,
            ExecutionKind.COMPLETED,
            join,
            branch,
            output={"arrived": arrived, "expected": expected},
        )
        instance.completed_activity_ids.append(join.id)
        targets = self._runner.join_targets(definition, join)
        self._route(instance, definition, branch, join, targets, fork=len(targets) > 1)

    async def _fault(
        self,
        instance: WorkflowInstance,
        definition: ProcessDefinition,
        branch: Branch,
        activity: Optional[ActivityBase],
        code: str,
        message: str,
        use_handlers: bool = True,
    ) -> None:
        activity_id = activity.id if activity else branch.activity_id
        await self._record(
            instance, activity_id, ExecutionKind.FAULTED, activity, branch, error=f"{code}: {message}"
        )
        if use_handlers:
            handler = next(
                (
                    h
                    for h in definition.error_handlers
                    if h.handles(code) and h.handler_activity_id != activity_id
                ),
                None,
            )
            if handler is not None and definition.find_activity(handler.handler_activity_id):
                instance.variables["error"] = {
                    "code": code,
                    "message": message,
                    "activityId": activity_id,
                }
                branch.activity_id = handler.handler_activity_id
                branch.status = BranchStatus.ACTIVE
                logger.info(
                    f"Instance {instance.id}: fault {code} at {activity_id} handled by "
                    f"{handler.handler_activity_id}"
                )
                return

        branch.status = BranchStatus.FAULTED
        instance.fault = WorkflowFault(
            code=code, message=message, activity_id=activity_id, branch_id=branch.id
        )
        instance.fault_count += 1
        await self._transition(instance, InstanceTrigger.FAULT, f"{code}: {message}")
        logger.error(f"Instance {instance.id} faulted at {activity_id}: {code} {message}")

    def _result(
        self,
        instance: WorkflowInstance,
        run: Optional[_RunState] = None,
        started: Optional[float] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            instance_id=instance.id,
            status=instance.status,
            output=dict(instance.output),
            fault=instance.fault,
            bookmarks=[b.name for b in instance.bookmarks],
            active_activity_ids=instance.active_activity_ids,
            activities_executed=run.executed if run else 0,
            duration_ms=(time.perf_counter() - started) * 1000 if started else 0.0,
        )
