"""
Workflow definition compiler (``workflow_config.compiler``).

Turns a validated ``WorkflowDefinition`` into a concrete ``Workflow``
subclass.  Callables referenced by name (guards, entry/exit hooks,
validators, custom permission conditions) are resolved through a
``CallableRegistry`` at compile time, so a missing name fails the build
instead of a transition.

State nodes hold no per-instance data and are built once per compiled
class; every instance registers the same nodes.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from workflow_config.loader import compute_checksum, parse_workflow_definition
from workflow_config.schema import StateDefinition, WorkflowDefinition
from workflow_config.validator import validate_definition
from workflow_kernel.domain.state_node import PermissionKind, StateNode, Transition
from workflow_kernel.exceptions import WorkflowDefinitionError
from workflow_kernel.logging_config import get_logger
from workflow_kernel.services.workflow import Workflow

logger = get_logger("config.compiler")


class CallableKind(str, Enum):
    GUARD = "guard"
    HOOK = "hook"
    VALIDATOR = "validator"
    CONDITION = "condition"


class CallableRegistry:
    """Named callables a definition may reference.

    Guards take ``(context)``; hooks ``(context, user, organization_context)``;
    validators ``(context)``; conditions ``(user, organization_context,
    workflow_context)``.  Hooks and validators may be coroutine functions.
    """

    def __init__(self) -> None:
        self._callables: dict[CallableKind, dict[str, Callable[..., Any]]] = {
            kind: {} for kind in CallableKind
        }

    def register(self, kind: CallableKind, name: str, fn: Callable[..., Any]) -> None:
        self._callables[CallableKind(kind)][name] = fn

    def register_guard(self, name: str, fn: Callable[..., Any]) -> None:
        self.register(CallableKind.GUARD, name, fn)

    def register_hook(self, name: str, fn: Callable[..., Any]) -> None:
        self.register(CallableKind.HOOK, name, fn)

    def register_validator(self, name: str, fn: Callable[..., Any]) -> None:
        self.register(CallableKind.VALIDATOR, name, fn)

    def register_condition(self, name: str, fn: Callable[..., Any]) -> None:
        self.register(CallableKind.CONDITION, name, fn)

    def get(self, kind: CallableKind, name: str) -> Callable[..., Any] | None:
        return self._callables[CallableKind(kind)].get(name)

    def names(self, kind: CallableKind) -> tuple[str, ...]:
        return tuple(self._callables[CallableKind(kind)])


class _Resolver:
    """Resolves names for one compilation, collecting every miss."""

    def __init__(self, registry: CallableRegistry) -> None:
        self._registry = registry
        self.errors: list[str] = []

    def __call__(self, kind: CallableKind, name: str, where: str) -> Callable[..., Any] | None:
        fn = self._registry.get(kind, name)
        if fn is None:
            self.errors.append(f"{where}: no {kind.value} registered as '{name}'")
        return fn


def _build_state(state: StateDefinition, resolve: _Resolver) -> StateNode | None:
    transitions = []
    for t in state.transitions:
        guards = []
        for guard in t.guards:
            if isinstance(guard, str):
                where = f"State '{state.name}' -> '{t.target}'"
                guards.append(resolve(CallableKind.GUARD, guard, where))
            else:
                guards.append(guard)
        transitions.append(
            Transition(
                target=t.target,
                action=t.action,
                label=t.label,
                guards=tuple(guards),
                requires_confirmation=t.requires_confirmation,
                metadata=t.metadata,
            )
        )

    conditions: dict[str, Any] = {}
    for kind, requirement in state.permission_conditions.items():
        if PermissionKind.parse(kind) is PermissionKind.CUSTOM_CONDITION:
            requirement = resolve(
                CallableKind.CONDITION, str(requirement), f"State '{state.name}' custom_condition"
            )
        conditions[kind] = requirement

    on_enter = on_exit = None
    if state.on_enter:
        on_enter = resolve(CallableKind.HOOK, state.on_enter, f"State '{state.name}' on_enter")
    if state.on_exit:
        on_exit = resolve(CallableKind.HOOK, state.on_exit, f"State '{state.name}' on_exit")
    validations = [
        resolve(CallableKind.VALIDATOR, v, f"State '{state.name}' validation")
        for v in state.validations
    ]
    if resolve.errors:
        # the caller reports every unresolved name at once
        return None

    return StateNode(
        state.name,
        transitions=transitions,
        required_actors=state.required_actors,
        permission_conditions=conditions,
        on_enter=on_enter,
        on_exit=on_exit,
        validations=validations,
        description=state.description,
    )


def _class_name(definition_name: str) -> str:
    parts = re.split(r"[^0-9A-Za-z]+", definition_name)
    name = "".join(p[:1].upper() + p[1:] for p in parts if p)
    return f"{name or 'Compiled'}Workflow"


def compile_workflow_class(
    definition: WorkflowDefinition,
    registry: CallableRegistry | None = None,
) -> type[Workflow]:
    """
    Compile ``definition`` into a ``Workflow`` subclass.

    Raises:
        WorkflowDefinitionError: when validation reports errors or a
            referenced callable is not registered.
    """
    validation = validate_definition(definition)
    if not validation.is_valid:
        raise WorkflowDefinitionError(definition.name, validation.errors)
    for warning in validation.warnings:
        logger.warning(
            "workflow_definition_warning",
            extra={"definition": definition.name, "warning": warning},
        )

    resolve = _Resolver(registry or CallableRegistry())
    nodes = {state.name: _build_state(state, resolve) for state in definition.states}
    if resolve.errors:
        raise WorkflowDefinitionError(definition.name, resolve.errors)

    checksum = compute_checksum(definition)
    definition_name = definition.name
    initial_state = definition.initial_state

    class CompiledWorkflow(Workflow):
        def __init__(self, workflow_id: str, **options: Any) -> None:
            options.setdefault("workflow_type", definition_name)
            super().__init__(workflow_id, **options)

        def get_initial_state(self) -> str:
            return initial_state

        def define_states(self) -> None:
            for name, node in nodes.items():
                self.add_state(name, node)

    CompiledWorkflow.__name__ = CompiledWorkflow.__qualname__ = _class_name(definition_name)
    CompiledWorkflow.definition = definition  # type: ignore[attr-defined]
    CompiledWorkflow.checksum = checksum  # type: ignore[attr-defined]

    logger.info(
        "workflow_definition_compiled",
        extra={
            "definition": definition_name,
            "version": definition.version,
            "states": len(nodes),
            "checksum": checksum,
        },
    )
    return CompiledWorkflow


def build_workflow(
    definition: WorkflowDefinition | Mapping[str, Any],
    workflow_id: str,
    registry: CallableRegistry | None = None,
    **options: Any,
) -> Workflow:
    """Compile (if needed) and return an initialised workflow instance."""
    if not isinstance(definition, WorkflowDefinition):
        definition = parse_workflow_definition(definition)
    return compile_workflow_class(definition, registry).create(workflow_id, **options)
