"""
Workflow definition schema.

The human-authored, reviewable form of a workflow: YAML documents are
parsed into these types by the loader, checked by the validator and
compiled into a ``Workflow`` subclass by the compiler.

Key distinction:
  WorkflowDefinition = source artifact (declarative, no callables)
  compiled class     = runtime artifact (named callables resolved)

Callables (guards, hooks, validators, custom permission conditions) are
referenced by registry name, never embedded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class TransitionDefinition:
    """An outgoing edge.  ``guards`` holds condition mappings or guard names."""

    target: str
    action: str | None = None
    label: str | None = None
    guards: tuple[Any, ...] = ()
    requires_confirmation: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "action": self.action,
            "label": self.label,
            "guards": list(self.guards),
            "requires_confirmation": self.requires_confirmation,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class StateDefinition:
    name: str
    transitions: tuple[TransitionDefinition, ...] = ()
    required_actors: tuple[str, ...] = ()
    # kind -> requirement; custom_condition names a registered callable
    permission_conditions: dict[str, Any] = field(default_factory=dict)
    on_enter: str | None = None
    on_exit: str | None = None
    validations: tuple[str, ...] = ()
    description: str = ""

    @property
    def is_terminal(self) -> bool:
        return not self.transitions

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "transitions": [t.to_dict() for t in self.transitions],
            "required_actors": list(self.required_actors),
            "permission_conditions": dict(self.permission_conditions),
            "on_enter": self.on_enter,
            "on_exit": self.on_exit,
            "validations": list(self.validations),
        }


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    initial_state: str
    states: tuple[StateDefinition, ...] = ()
    description: str = ""
    version: int = 1

    def state(self, name: str) -> StateDefinition | None:
        for state in self.states:
            if state.name == name:
                return state
        return None

    @property
    def state_names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self.states)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "initial_state": self.initial_state,
            "states": [s.to_dict() for s in self.states],
        }
