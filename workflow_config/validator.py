"""
Workflow definition validator (``workflow_config.validator``).

Responsibility
--------------
Checks a ``WorkflowDefinition`` for structural integrity before it is
compiled into a workflow class.

Architecture position
---------------------
**Config layer** -- build-time validation, called by the compiler and
usable on its own in CI.

Invariants enforced
-------------------
* The initial state is declared and exists.
* State names are unique.
* Every transition targets a declared state.
* Every permission condition kind is known.

Failure modes
-------------
* Errors (``DefinitionValidationResult.errors``) -> the definition MUST
  NOT be compiled.
* Warnings -> compiles, but should be reviewed: unreachable states, no
  terminal state, unknown actor names, unknown guard operators.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from workflow_config.schema import WorkflowDefinition
from workflow_kernel.domain.actors import Actor
from workflow_kernel.domain.conditions import Comparison
from workflow_kernel.domain.state_node import PermissionKind

_KNOWN_ACTORS = frozenset(a.value for a in Actor)
_KNOWN_OPERATORS = frozenset(c.value for c in Comparison) | {"and", "or"}


@dataclass
class DefinitionValidationResult:
    """
    Result of definition validation.

    ``is_valid`` is ``True`` only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_definition(definition: WorkflowDefinition) -> DefinitionValidationResult:
    result = DefinitionValidationResult()

    _validate_initial_state(definition, result)
    _validate_state_uniqueness(definition, result)
    _validate_transition_targets(definition, result)
    _validate_permission_kinds(definition, result)
    _validate_reachability(definition, result)
    _validate_terminal_states(definition, result)
    _validate_actor_names(definition, result)
    _validate_guard_operators(definition, result)

    return result


def _validate_initial_state(
    definition: WorkflowDefinition, result: DefinitionValidationResult
) -> None:
    if not definition.initial_state:
        result.add_error("No initial state declared")
    elif definition.initial_state not in definition.state_names:
        result.add_error(f"Initial state '{definition.initial_state}' is not defined")


def _validate_state_uniqueness(
    definition: WorkflowDefinition, result: DefinitionValidationResult
) -> None:
    seen: set[str] = set()
    for name in definition.state_names:
        if name in seen:
            result.add_error(f"Duplicate state: '{name}' appears more than once")
        seen.add(name)


def _validate_transition_targets(
    definition: WorkflowDefinition, result: DefinitionValidationResult
) -> None:
    names = set(definition.state_names)
    for state in definition.states:
        for transition in state.transitions:
            if transition.target not in names:
                result.add_error(
                    f"State '{state.name}' transitions to unknown state '{transition.target}'"
                )


def _validate_permission_kinds(
    definition: WorkflowDefinition, result: DefinitionValidationResult
) -> None:
    for state in definition.states:
        for kind in state.permission_conditions:
            try:
                PermissionKind.parse(kind)
            except ValueError:
                result.add_error(
                    f"State '{state.name}' has unknown permission condition '{kind}'"
                )


def _validate_reachability(
    definition: WorkflowDefinition, result: DefinitionValidationResult
) -> None:
    if definition.initial_state not in definition.state_names:
        return
    edges = {s.name: [t.target for t in s.transitions] for s in definition.states}
    reached = {definition.initial_state}
    queue = deque([definition.initial_state])
    while queue:
        for target in edges.get(queue.popleft(), ()):
            if target not in reached:
                reached.add(target)
                queue.append(target)
    for name in definition.state_names:
        if name not in reached:
            result.add_warning(f"State '{name}' is unreachable from '{definition.initial_state}'")


def _validate_terminal_states(
    definition: WorkflowDefinition, result: DefinitionValidationResult
) -> None:
    if definition.states and not any(s.is_terminal for s in definition.states):
        result.add_warning("No terminal state: every state has outgoing transitions")


def _validate_actor_names(
    definition: WorkflowDefinition, result: DefinitionValidationResult
) -> None:
    for state in definition.states:
        for actor in state.required_actors:
            if actor not in _KNOWN_ACTORS:
                result.add_warning(f"State '{state.name}' requires unknown actor '{actor}'")


def _validate_guard_operators(
    definition: WorkflowDefinition, result: DefinitionValidationResult
) -> None:
    for state in definition.states:
        for transition in state.transitions:
            for guard in transition.guards:
                for operator in _guard_operators(guard):
                    if operator not in _KNOWN_OPERATORS:
                        result.add_warning(
                            f"State '{state.name}' -> '{transition.target}' guard uses "
                            f"unknown operator '{operator}' (treated as equals)"
                        )


def _guard_operators(guard: Any) -> list[str]:
    if not isinstance(guard, Mapping):
        return []
    found: list[str] = []
    operator = guard.get("operator")
    if operator is not None:
        found.append(str(operator))
    children = guard.get("conditions")
    if isinstance(children, Sequence) and not isinstance(children, str):
        for child in children:
            found.extend(_guard_operators(child))
    return found
