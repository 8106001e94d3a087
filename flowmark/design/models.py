"""Designer graph models exchanged with visual editors (camelCase JSON)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..model.definition import TriggerType
from ..utils.durations import utcnow

EXPORT_FORMAT_VERSION = "1.0"


class DesignModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodePosition(DesignModel):
    x: float = 0.0
    y: float = 0.0


class DesignerNode(DesignModel):
    id: str
    type: str
    name: str = ""
    description: Optional[str] = None
    is_start: bool = False
    config: dict[str, Any] = Field(default_factory=dict)
    position: Optional[NodePosition] = None


class DesignerEdge(DesignModel):
    id: str
    source: str
    target: str
    label: Optional[str] = None
    condition: Optional[str] = None
    is_default: bool = False
    priority: int = 0


class DesignParameter(DesignModel):
    name: str
    type: str = "any"
    required: bool = False
    default_value: Any = None
    description: Optional[str] = None


class DesignVariable(DesignModel):
    name: str
    type: str = "any"
    default_value: Any = None


class DesignTrigger(DesignModel):
    type: TriggerType = TriggerType.MANUAL
    name: Optional[str] = None
    config: dict[str, Any] = Field(default_factory=dict)


class DesignErrorHandler(DesignModel):
    name: Optional[str] = None
    error_codes: list[str] = Field(default_factory=list)
    handler_activity_id: str


class WorkflowDesignModel(DesignModel):
    id: str
    name: str
    description: Optional[str] = None
    version: int = 1
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    nodes: list[DesignerNode] = Field(default_factory=list)
    edges: list[DesignerEdge] = Field(default_factory=list)
    input_parameters: list[DesignParameter] = Field(default_factory=list)
    output_parameters: list[DesignParameter] = Field(default_factory=list)
    variables: list[DesignVariable] = Field(default_factory=list)
    triggers: list[DesignTrigger] = Field(default_factory=list)
    error_handlers: list[DesignErrorHandler] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExportPackage(DesignModel):
    export_version: str = EXPORT_FORMAT_VERSION
    exported_at: datetime = Field(default_factory=utcnow)
    key: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    model: WorkflowDesignModel
