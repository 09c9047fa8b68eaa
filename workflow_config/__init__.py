"""
Declarative workflow definitions.

Pipeline: YAML file -> ``loader`` -> ``WorkflowDefinition`` ->
``validator`` -> ``compiler`` -> ``Workflow`` subclass.
"""

from workflow_config.compiler import (
    CallableKind,
    CallableRegistry,
    build_workflow,
    compile_workflow_class,
)
from workflow_config.loader import (
    compute_checksum,
    load_workflow_definition,
    load_yaml_file,
    parse_workflow_definition,
)
from workflow_config.schema import StateDefinition, TransitionDefinition, WorkflowDefinition
from workflow_config.validator import DefinitionValidationResult, validate_definition

__all__ = [
    "CallableKind",
    "CallableRegistry",
    "DefinitionValidationResult",
    "StateDefinition",
    "TransitionDefinition",
    "WorkflowDefinition",
    "build_workflow",
    "compile_workflow_class",
    "compute_checksum",
    "load_workflow_definition",
    "load_yaml_file",
    "parse_workflow_definition",
    "validate_definition",
]
