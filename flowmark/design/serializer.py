"""Compile designer graphs into executable definitions and back."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Optional

from pydantic import ValidationError

from ..exceptions import WorkflowValidationError
from ..model.activities import (
    ACTIVITY_CLASSES,
    ActivityBase,
    ActivityType,
    GatewayActivity,
    ParallelGateway,
    is_join,
)
from ..model.definition import (
    ErrorHandler,
    ParameterDefinition,
    ProcessDefinition,
    Transition,
    WorkflowTrigger,
)
from ..model.validation import ValidationIssue, ensure_valid
from .models import (
    EXPORT_FORMAT_VERSION,
    DesignErrorHandler,
    DesignerEdge,
    DesignerNode,
    DesignParameter,
    DesignTrigger,
    DesignVariable,
    ExportPackage,
    WorkflowDesignModel,
)

logger = logging.getLogger(__name__)

# Designer node types are matched case-insensitively.
NODE_TYPES: dict[str, str] = {
    "start": ActivityType.START,
    "end": ActivityType.END,
    "task": ActivityType.TASK,
    "script": ActivityType.TASK,
    "servicetask": ActivityType.SERVICE_TASK,
    "usertask": ActivityType.USER_TASK,
    "timer": ActivityType.TIMER,
    "signalreceive": ActivityType.SIGNAL_RECEIVE,
    "exclusivegateway": ActivityType.EXCLUSIVE_GATEWAY,
    "parallelgateway": ActivityType.PARALLEL_GATEWAY,
    "inclusivegateway": ActivityType.INCLUSIVE_GATEWAY,
}

_CONDITIONAL_GATEWAYS = (ActivityType.EXCLUSIVE_GATEWAY, ActivityType.INCLUSIVE_GATEWAY)


def _issue(code: str, message: str, **kwargs) -> ValidationIssue:
    return ValidationIssue(code=code, message=message, **kwargs)


def _is_start(node: DesignerNode) -> bool:
    return node.is_start or node.type.lower() == "start"


def _build_activity(
    node: DesignerNode,
    outgoing: list[DesignerEdge],
    incoming_count: int,
    issues: list[ValidationIssue],
) -> Optional[ActivityBase]:
    activity_type = ActivityType.START if _is_start(node) else NODE_TYPES.get(node.type.lower())
    if activity_type is None:
        issues.append(
            _issue(
                "UNKNOWN_NODE_TYPE",
                f"Node '{node.id}' has unsupported type '{node.type}'",
                activity_id=node.id,
            )
        )
        return None

    fields = {
        "id": node.id,
        "name": node.name,
        "description": node.description,
        "config": dict(node.config),
    }
    if activity_type not in ActivityType.GATEWAYS:
        return ACTIVITY_CLASSES[activity_type](**fields)

    direction = str(node.config.get("direction", "split")).lower()
    if direction not in ("split", "join"):
        issues.append(
            _issue(
                "INVALID_GATEWAY_DIRECTION",
                f"Gateway '{node.id}' has direction '{direction}'",
                activity_id=node.id,
            )
        )
        direction = "split"
    gateway = ACTIVITY_CLASSES[activity_type](**fields, direction=direction)

    if activity_type in _CONDITIONAL_GATEWAYS and direction == "split":
        defaults = [e for e in outgoing if e.is_default]
        if len(defaults) > 1:
            issues.append(
                _issue(
                    "MULTIPLE_DEFAULT_PATHS",
                    f"Gateway '{node.id}' declares {len(defaults)} default paths",
                    activity_id=node.id,
                )
            )
        elif defaults:
            gateway.default_path = defaults[0].target
        for edge in outgoing:
            if edge.condition:
                gateway.conditions[edge.target] = edge.condition
            elif not edge.is_default:
                if len(outgoing) == 1:
                    # A single unconditioned exit is an unconditional pass-through.
                    gateway.default_path = edge.target
                else:
                    issues.append(
                        _issue(
                            "MISSING_CONDITION",
                            f"Edge '{edge.id}' leaving gateway '{node.id}' has "
                            "neither a condition nor the default flag",
                            activity_id=node.id,
                            transition_id=edge.id,
                        )
                    )
    elif isinstance(gateway, ParallelGateway) and direction == "split":
        gateway.outgoing_paths = [e.target for e in outgoing]

    if is_join(gateway):
        gateway.expected_arrivals = incoming_count
    return gateway


def to_executable_definition(design: WorkflowDesignModel) -> ProcessDefinition:
    """Compile a designer graph into a validated ``ProcessDefinition``.

    Raises:
        WorkflowValidationError: the graph has no single start node, a
            conditional gateway has an uncovered exit, a parallel split is not
            closed by a join of equal arity, or validation fails.
    """
    starts = [n for n in design.nodes if _is_start(n)]
    if len(starts) != 1:
        raise WorkflowValidationError(
            f"Design '{design.id}' must have exactly one start node, found {len(starts)}",
            [_issue("START_NODE_COUNT", f"{len(starts)} start nodes")],
        )

    outgoing: dict[str, list[DesignerEdge]] = {}
    incoming = Counter(e.target for e in design.edges)
    for edge in sorted(design.edges, key=lambda e: e.priority):
        outgoing.setdefault(edge.source, []).append(edge)

    issues: list[ValidationIssue] = []
    activities = []
    for node in design.nodes:
        activity = _build_activity(
            node, outgoing.get(node.id, []), incoming.get(node.id, 0), issues
        )
        if activity is not None:
            activities.append(activity)
    if issues:
        raise WorkflowValidationError(f"Design '{design.id}' cannot be compiled", issues)

    definition = ProcessDefinition(
        id=design.id,
        name=design.name,
        description=design.description,
        version=design.version,
        category=design.category,
        tags=list(design.tags),
        start_activity_id=starts[0].id,
        activities=activities,
        transitions=[
            Transition(
                id=edge.id,
                source_activity_id=edge.source,
                target_activity_id=edge.target,
                condition=edge.condition,
                priority=edge.priority,
                is_default=edge.is_default,
                name=edge.label,
            )
            for edge in design.edges
        ],
        inputs=[
            ParameterDefinition(
                name=p.name,
                type=p.type,
                required=p.required,
                default=p.default_value,
                description=p.description,
            )
            for p in design.input_parameters
        ],
        outputs=[
            ParameterDefinition(name=p.name, type=p.type, description=p.description)
            for p in design.output_parameters
        ],
        variables={v.name: v.default_value for v in design.variables},
        triggers=[
            WorkflowTrigger(type=t.type, name=t.name, config=dict(t.config))
            for t in design.triggers
        ],
        error_handlers=[
            ErrorHandler(
                name=h.name,
                error_codes=list(h.error_codes),
                handler_activity_id=h.handler_activity_id,
            )
            for h in design.error_handlers
        ],
        metadata=dict(design.metadata),
    )
    ensure_valid(definition)
    logger.debug(
        f"Compiled design {design.id}: {len(definition.activities)} activities, "
        f"{len(definition.transitions)} transitions"
    )
    return definition


def to_design_model(definition: ProcessDefinition) -> WorkflowDesignModel:
    """Reverse of ``to_executable_definition``; layout positions are not kept."""
    nodes = []
    for activity in definition.activities:
        config = dict(activity.config)
        if isinstance(activity, GatewayActivity) and activity.direction == "join":
            config["direction"] = "join"
        nodes.append(
            DesignerNode(
                id=activity.id,
                type=activity.type,
                name=activity.name,
                description=activity.description,
                is_start=activity.id == definition.start_activity_id,
                config=config,
            )
        )

    edges = []
    for transition in definition.transitions:
        source = definition.find_activity(transition.source_activity_id)
        condition = transition.condition
        is_default = transition.is_default
        if isinstance(source, GatewayActivity):
            target = transition.target_activity_id
            condition = condition or source.conditions.get(target)
            is_default = is_default or (
                source.default_path == target
                and len(definition.outgoing(source.id)) > 1
            )
        edges.append(
            DesignerEdge(
                id=transition.id,
                source=transition.source_activity_id,
                target=transition.target_activity_id,
                label=transition.name,
                condition=condition,
                is_default=is_default,
                priority=transition.priority,
            )
        )

    return WorkflowDesignModel(
        id=definition.id,
        name=definition.name,
        description=definition.description,
        version=definition.version,
        category=definition.category,
        tags=list(definition.tags),
        nodes=nodes,
        edges=edges,
        input_parameters=[
            DesignParameter(
                name=p.name,
                type=p.type,
                required=p.required,
                default_value=p.default,
                description=p.description,
            )
            for p in definition.inputs
        ],
        output_parameters=[
            DesignParameter(name=p.name, type=p.type, description=p.description)
            for p in definition.outputs
        ],
        variables=[
            DesignVariable(name=name, default_value=value)
            for name, value in definition.variables.items()
        ],
        triggers=[
            DesignTrigger(type=t.type, name=t.name, config=dict(t.config))
            for t in definition.triggers
        ],
        error_handlers=[
            DesignErrorHandler(
                name=h.name,
                error_codes=list(h.error_codes),
                handler_activity_id=h.handler_activity_id,
            )
            for h in definition.error_handlers
        ],
        metadata=dict(definition.metadata),
    )


def serialize_design(model: WorkflowDesignModel) -> str:
    return model.model_dump_json(by_alias=True, indent=2)


def deserialize_design(text: Optional[str]) -> Optional[WorkflowDesignModel]:
    """Parse designer JSON. Blank input yields None."""
    if text is None or not text.strip():
        return None
    try:
        return WorkflowDesignModel.model_validate_json(text)
    except ValidationError as exc:
        raise WorkflowValidationError(
            "Malformed workflow design JSON",
            [_issue("MALFORMED_DESIGN", str(err["msg"])) for err in exc.errors()],
        ) from exc


def export_design(
    model: WorkflowDesignModel,
    key: Optional[str] = None,
    description: Optional[str] = None,
) -> str:
    """Wrap a design model in the portable export envelope."""
    package = ExportPackage(
        key=key or model.id,
        name=model.name,
        description=description if description is not None else model.description,
        category=model.category,
        tags=list(model.tags),
        model=model,
    )
    return package.model_dump_json(by_alias=True, indent=2)


def import_design(text: str) -> ExportPackage:
    if not text or not text.strip():
        raise WorkflowValidationError(
            "Export package is empty", [_issue("EMPTY_PACKAGE", "no content")]
        )
    try:
        package = ExportPackage.model_validate_json(text)
    except ValidationError as exc:
        raise WorkflowValidationError(
            "Malformed export package",
            [_issue("MALFORMED_PACKAGE", str(err["msg"])) for err in exc.errors()],
        ) from exc
    if package.export_version.split(".")[0] != EXPORT_FORMAT_VERSION.split(".")[0]:
        raise WorkflowValidationError(
            f"Unsupported export version {package.export_version}",
            [_issue("UNSUPPORTED_EXPORT_VERSION", package.export_version)],
        )
    return package
