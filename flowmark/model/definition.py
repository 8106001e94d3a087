"""Workflow definition catalog and executable process graph models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, PrivateAttr

from ..exceptions import ActivityNotFoundError
from ..utils.durations import utcnow
from .activities import Activity, ActivityBase, ActivityType


class Transition(BaseModel):
    """Directed edge between two activities.

    Lower ``priority`` values are evaluated first; ties keep declaration order.
    """

    id: str
    source_activity_id: str
    target_activity_id: str
    condition: Optional[str] = None
    priority: int = 0
    is_default: bool = False
    name: Optional[str] = None


class TriggerType(str, Enum):
    MANUAL = "manual"
    EVENT = "event"
    SIGNAL = "signal"
    TIMER = "timer"


class WorkflowTrigger(BaseModel):
    type: TriggerType = TriggerType.MANUAL
    name: Optional[str] = None
    config: dict[str, Any] = Field(default_factory=dict)


class ErrorHandler(BaseModel):
    """Redirects a faulting branch to ``handler_activity_id``.

    An empty ``error_codes`` list catches every fault.
    """

    name: Optional[str] = None
    error_codes: list[str] = Field(default_factory=list)
    handler_activity_id: str

    def handles(self, code: str) -> bool:
        return not self.error_codes or code in self.error_codes


class ParameterDefinition(BaseModel):
    name: str
    type: str = "any"
    required: bool = False
    default: Any = None
    description: Optional[str] = None


class ProcessDefinition(BaseModel):
    """Executable process graph compiled from a design model."""

    id: str
    name: str
    description: Optional[str] = None
    version: int = 1
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    start_activity_id: Optional[str] = None
    activities: list[Activity] = Field(default_factory=list)
    transitions: list[Transition] = Field(default_factory=list)
    inputs: list[ParameterDefinition] = Field(default_factory=list)
    outputs: list[ParameterDefinition] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    triggers: list[WorkflowTrigger] = Field(default_factory=list)
    error_handlers: list[ErrorHandler] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    _index: dict[str, ActivityBase] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._index = {activity.id: activity for activity in self.activities}
        if self.start_activity_id is None:
            starts = [a.id for a in self.activities if a.type == ActivityType.START]
            if len(starts) == 1:
                self.start_activity_id = starts[0]

    def find_activity(self, activity_id: str) -> Optional[ActivityBase]:
        return self._index.get(activity_id)

    def get_activity(self, activity_id: str) -> ActivityBase:
        activity = self._index.get(activity_id)
        if activity is None:
            raise ActivityNotFoundError(
                f"Activity '{activity_id}' not found in definition {self.id}"
            )
        return activity

    def outgoing(self, activity_id: str) -> list[Transition]:
        """Outgoing transitions ordered by ascending priority (stable)."""
        edges = [t for t in self.transitions if t.source_activity_id == activity_id]
        return sorted(edges, key=lambda t: t.priority)

    def incoming(self, activity_id: str) -> list[Transition]:
        return [t for t in self.transitions if t.target_activity_id == activity_id]

    def has_trigger(self, trigger_type: TriggerType, name: Optional[str]) -> bool:
        return any(t.type == trigger_type and t.name == name for t in self.triggers)


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    DEPRECATED = "deprecated"


class WorkflowDefinition(BaseModel):
    """Catalog entry; each save produces a new immutable ``ProcessVersion``."""

    id: str
    key: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    status: DefinitionStatus = DefinitionStatus.DRAFT
    latest_version: int = 0
    published_version: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ProcessVersion(BaseModel):
    definition_id: str
    version: int
    process: ProcessDefinition
    change_description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
