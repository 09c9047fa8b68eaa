"""
State nodes (``workflow_kernel.domain.state_node``).

Responsibility
--------------
One ``StateNode`` per workflow state.  It decides (a) whether a
transition out of the state is currently legal and (b) whether a user
may act while the workflow is in the state, and it carries the state's
entry/exit hooks and validators.

Architecture position
---------------------
**Kernel domain layer**.  Holds no reference to its owning workflow;
the workflow passes context, user and organization data in on every
call.  Hooks and validators are the only suspension points (async).

Invariants enforced
-------------------
* Transitions, required actors and permission conditions are frozen at
  construction; the node is safe to share without synchronization.
* Transition targets are NOT checked here -- the owning workflow
  validates them lazily when a transition is attempted.
* Permission conditions are conjunctive; required actors are
  disjunctive (any one suffices).
* Unknown permission kinds are rejected at construction.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from workflow_kernel.domain.actors import DEFAULT_ACTOR_RESOLVER, ActorResolver
from workflow_kernel.domain.conditions import (
    AllOf,
    AnyOf,
    FieldCondition,
    Unconditional,
    condition_from_dict,
    condition_to_dict,
    evaluate_guards,
)
from workflow_kernel.domain.organization import OrganizationContext, User
from workflow_kernel.exceptions import WorkflowConfigurationError
from workflow_kernel.logging_config import get_logger

logger = get_logger("domain.state_node")

Hook = Callable[[dict[str, Any], User, OrganizationContext], Any]
Validator = Callable[[Mapping[str, Any]], Any]
CustomCondition = Callable[[User, OrganizationContext, Mapping[str, Any]], Any]

_CONDITION_TYPES = (FieldCondition, AllOf, AnyOf, Unconditional)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Transition:
    """An outgoing edge of a state.

    Declarative guard mappings are parsed to conditions on construction;
    predicates are kept as-is.
    """

    target: str
    action: str | None = None
    label: str | None = None
    guards: tuple[Any, ...] = ()
    requires_confirmation: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        parsed = tuple(
            condition_from_dict(g) if isinstance(g, Mapping) else g
            for g in (self.guards or ())
        )
        object.__setattr__(self, "guards", parsed)
        object.__setattr__(self, "metadata", dict(self.metadata or {}))

    @property
    def action_name(self) -> str:
        return self.action or f"transition_to_{self.target}"

    @property
    def display_label(self) -> str:
        return self.label or f"Move to {self.target}"

    def passes_guards(self, context: Any) -> bool:
        return evaluate_guards(self.guards, context)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Transition:
        guards = data.get("guards") or ()
        if isinstance(guards, Mapping) or callable(guards):
            guards = (guards,)
        return cls(
            target=data["target"],
            action=data.get("action"),
            label=data.get("label"),
            guards=tuple(guards),
            requires_confirmation=bool(
                data.get("requires_confirmation", data.get("requiresConfirmation", False))
            ),
            metadata=data.get("metadata") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "action": self.action_name,
            "label": self.display_label,
            "guards": [_describe_guard(g) for g in self.guards],
            "requires_confirmation": self.requires_confirmation,
            "metadata": dict(self.metadata),
        }


def _describe_guard(guard: Any) -> Any:
    if isinstance(guard, _CONDITION_TYPES):
        return condition_to_dict(guard)
    return getattr(guard, "__name__", type(guard).__name__)


# ---------------------------------------------------------------------------
# Permission conditions
# ---------------------------------------------------------------------------


class PermissionKind(str, Enum):
    """Kinds of attribute-based permission rule."""

    DEPARTMENT = "department"
    TEAM = "team"
    DESIGNATION = "designation"
    CUSTOM_CONDITION = "custom_condition"

    @classmethod
    def parse(cls, tag: Any) -> PermissionKind:
        if isinstance(tag, cls):
            return tag
        if tag == "customCondition":
            return cls.CUSTOM_CONDITION
        return cls(tag)


def _normalize_requirement(kind: PermissionKind, requirement: Any) -> Any:
    if kind is PermissionKind.CUSTOM_CONDITION:
        if not callable(requirement):
            raise WorkflowConfigurationError(
                "StateNode", "custom_condition requirement must be callable"
            )
        return requirement
    if isinstance(requirement, str):
        return requirement
    if isinstance(requirement, Iterable):
        return frozenset(str(r) for r in requirement)
    raise WorkflowConfigurationError(
        "StateNode",
        f"{kind.value} requirement must be a string or a collection of strings",
    )


def _matches(requirement: Any, value: str | None) -> bool:
    if value is None:
        return False
    if isinstance(requirement, frozenset):
        return value in requirement
    return value == requirement


# ---------------------------------------------------------------------------
# StateNode
# ---------------------------------------------------------------------------


class StateNode:
    """One state of a workflow: edges, permissions, hooks, validators."""

    def __init__(
        self,
        name: str,
        *,
        transitions: Iterable[Transition | Mapping[str, Any]] = (),
        required_actors: Iterable[str] = (),
        permission_conditions: Mapping[Any, Any] | None = None,
        on_enter: Hook | None = None,
        on_exit: Hook | None = None,
        validations: Iterable[Validator] = (),
        actor_resolver: ActorResolver | None = None,
        description: str = "",
    ) -> None:
        self._name = name
        self._transitions: tuple[Transition, ...] = tuple(
            t if isinstance(t, Transition) else Transition.from_dict(t)
            for t in transitions
        )
        self._required_actors: frozenset[str] = frozenset(
            a.value if isinstance(a, Enum) else str(a) for a in required_actors
        )
        conditions: list[tuple[PermissionKind, Any]] = []
        for tag, requirement in (permission_conditions or {}).items():
            try:
                kind = PermissionKind.parse(tag)
            except ValueError as e:
                raise WorkflowConfigurationError(
                    "StateNode", f"state '{name}': unknown permission condition '{tag}'"
                ) from e
            conditions.append((kind, _normalize_requirement(kind, requirement)))
        self._permission_conditions: tuple[tuple[PermissionKind, Any], ...] = tuple(conditions)
        self._on_enter = on_enter
        self._on_exit = on_exit
        self._validations: tuple[Validator, ...] = tuple(validations)
        self._actor_resolver = actor_resolver or DEFAULT_ACTOR_RESOLVER
        self.description = description

    def __repr__(self) -> str:
        return f"StateNode({self._name!r}, transitions={[t.target for t in self._transitions]})"

    # -- read-only views ------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def transitions(self) -> tuple[Transition, ...]:
        return self._transitions

    @property
    def required_actors(self) -> frozenset[str]:
        return self._required_actors

    @property
    def permission_conditions(self) -> dict[PermissionKind, Any]:
        return dict(self._permission_conditions)

    @property
    def is_terminal(self) -> bool:
        """A state is terminal iff it has no outgoing transitions."""
        return not self._transitions

    def target_names(self) -> tuple[str, ...]:
        return tuple(t.target for t in self._transitions)

    # -- transitions ----------------------------------------------------

    def can_transition_to(self, target: str, context: Any = None) -> bool:
        """True iff some transition targets ``target`` and all its guards pass."""
        ctx = context if context is not None else {}
        return any(
            t.target == target and t.passes_guards(ctx) for t in self._transitions
        )

    def get_available_transitions(self, context: Any = None) -> list[Transition]:
        """All transitions whose guards currently pass."""
        ctx = context if context is not None else {}
        return [t for t in self._transitions if t.passes_guards(ctx)]

    # -- permissions ----------------------------------------------------

    def get_user_actors(self, organization_context: OrganizationContext | None) -> frozenset[str]:
        return self._actor_resolver.resolve(organization_context)

    def has_permission(
        self,
        user: User,
        organization_context: OrganizationContext | None,
        workflow_context: Mapping[str, Any] | None = None,
    ) -> bool:
        """Required actors first (any one), then every permission condition."""
        if self._required_actors:
            actors = self.get_user_actors(organization_context)
            if not (self._required_actors & actors):
                return False
        return self._evaluate_permission_conditions(
            user, organization_context, workflow_context or {}
        )

    def _evaluate_permission_conditions(
        self,
        user: User,
        organization_context: OrganizationContext | None,
        workflow_context: Mapping[str, Any],
    ) -> bool:
        positions = organization_context.active_positions if organization_context else ()
        for kind, requirement in self._permission_conditions:
            match kind:
                case PermissionKind.DEPARTMENT:
                    ok = any(_matches(requirement, p.department_name) for p in positions)
                case PermissionKind.TEAM:
                    ok = any(_matches(requirement, p.team_name) for p in positions)
                case PermissionKind.DESIGNATION:
                    ok = any(_matches(requirement, p.designation.name) for p in positions)
                case PermissionKind.CUSTOM_CONDITION:
                    ok = self._run_custom_condition(
                        requirement, user, organization_context, workflow_context
                    )
            if not ok:
                return False
        return True

    def _run_custom_condition(
        self,
        condition: CustomCondition,
        user: User,
        organization_context: OrganizationContext | None,
        workflow_context: Mapping[str, Any],
    ) -> bool:
        try:
            return bool(condition(user, organization_context, workflow_context))
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "permission_condition_error",
                extra={"state": self._name, "error": str(e)},
            )
            return False

    # -- hooks and validators ------------------------------------------

    async def execute_on_enter(
        self,
        context: dict[str, Any],
        user: User,
        organization_context: OrganizationContext | None,
    ) -> None:
        if self._on_enter is not None:
            await _maybe_await(self._on_enter(context, user, organization_context))

    async def execute_on_exit(
        self,
        context: dict[str, Any],
        user: User,
        organization_context: OrganizationContext | None,
    ) -> None:
        if self._on_exit is not None:
            await _maybe_await(self._on_exit(context, user, organization_context))

    async def validate(self, context: Mapping[str, Any]) -> list[str]:
        """Run every validator; return failure messages (empty means valid)."""
        results: list[str] = []
        for validation in self._validations:
            try:
                result = await _maybe_await(validation(context))
            except Exception as e:  # noqa: BLE001
                results.append(str(e) or "Validation error")
                continue
            if result is not True:
                results.append(
                    result if isinstance(result, str) and result else "Validation failed"
                )
        return results

    def to_dict(self) -> dict[str, Any]:
        """Plain-data description of the node (hooks are named, not serialized)."""
        return {
            "name": self._name,
            "description": self.description,
            "transitions": [t.to_dict() for t in self._transitions],
            "required_actors": sorted(self._required_actors),
            "permission_conditions": {
                kind.value: (
                    getattr(req, "__name__", "custom")
                    if kind is PermissionKind.CUSTOM_CONDITION
                    else sorted(req) if isinstance(req, frozenset) else req
                )
                for kind, req in self._permission_conditions
            },
            "has_on_enter": self._on_enter is not None,
            "has_on_exit": self._on_exit is not None,
            "validation_count": len(self._validations),
            "is_terminal": self.is_terminal,
        }


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result
