"""Flowmark: durable workflow orchestration with gateways, bookmarks and background workers."""

from .design import export_design, import_design, to_design_model, to_executable_definition
from .engine import HANDLERS, StartOptions, WorkflowEngine, register_handler
from .model import ProcessDefinition, validate_definition
from .persistence import WorkflowStores, get_stores
from .statemachine import StateMachineBuilder, StateMachineExecutor

__version__ = "0.1.0"
__all__ = [
    "HANDLERS",
    "ProcessDefinition",
    "StartOptions",
    "StateMachineBuilder",
    "StateMachineExecutor",
    "WorkflowEngine",
    "WorkflowStores",
    "export_design",
    "get_stores",
    "import_design",
    "register_handler",
    "to_design_model",
    "to_executable_definition",
    "validate_definition",
]
