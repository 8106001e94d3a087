"""Designer graph models, compiler and export format."""

from .models import (
    EXPORT_FORMAT_VERSION,
    DesignerEdge,
    DesignerNode,
    DesignErrorHandler,
    DesignParameter,
    DesignTrigger,
    DesignVariable,
    ExportPackage,
    NodePosition,
    WorkflowDesignModel,
)
from .serializer import (
    deserialize_design,
    export_design,
    import_design,
    serialize_design,
    to_design_model,
    to_executable_definition,
)

__all__ = [
    "EXPORT_FORMAT_VERSION",
    "DesignErrorHandler",
    "DesignParameter",
    "DesignTrigger",
    "DesignVariable",
    "DesignerEdge",
    "DesignerNode",
    "ExportPackage",
    "NodePosition",
    "WorkflowDesignModel",
    "deserialize_design",
    "export_design",
    "import_design",
    "serialize_design",
    "to_design_model",
    "to_executable_definition",
]
