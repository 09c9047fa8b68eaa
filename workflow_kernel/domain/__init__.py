"""
Pure domain layer.

Value objects and pure evaluation logic for workflow state machines:
guard conditions, actor derivation, organization facts, state nodes,
history records and lock leases.  No I/O; time only through ``Clock``.
"""

from workflow_kernel.domain.actors import Actor, ActorResolver, resolve_actors
from workflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from workflow_kernel.domain.conditions import (
    MISSING,
    AllOf,
    AnyOf,
    Comparison,
    FieldCondition,
    Unconditional,
    condition_from_dict,
    evaluate_condition,
    evaluate_guard,
    evaluate_guards,
    get_nested_value,
)
from workflow_kernel.domain.lease import DEFAULT_LOCK_TIMEOUT_MS, WorkflowLease
from workflow_kernel.domain.organization import (
    Department,
    Designation,
    OrganizationContext,
    OrganizationGroup,
    Position,
    Team,
    User,
)
from workflow_kernel.domain.records import (
    ActionDescriptor,
    ContextUpdatedEvent,
    CurrentStateInfo,
    HistoryRecord,
    ResetRecord,
    StateAddedEvent,
    StateChangedEvent,
    UserRef,
    WorkflowEvent,
    WorkflowResetEvent,
)
from workflow_kernel.domain.state_node import PermissionKind, StateNode, Transition

__all__ = [
    "MISSING",
    "ActionDescriptor",
    "Actor",
    "ActorResolver",
    "AllOf",
    "AnyOf",
    "Clock",
    "Comparison",
    "ContextUpdatedEvent",
    "CurrentStateInfo",
    "DEFAULT_LOCK_TIMEOUT_MS",
    "Department",
    "Designation",
    "DeterministicClock",
    "FieldCondition",
    "HistoryRecord",
    "OrganizationContext",
    "OrganizationGroup",
    "PermissionKind",
    "Position",
    "ResetRecord",
    "StateAddedEvent",
    "StateChangedEvent",
    "StateNode",
    "SystemClock",
    "Team",
    "Transition",
    "Unconditional",
    "User",
    "UserRef",
    "WorkflowEvent",
    "WorkflowLease",
    "WorkflowResetEvent",
    "condition_from_dict",
    "evaluate_condition",
    "evaluate_guard",
    "evaluate_guards",
    "get_nested_value",
    "resolve_actors",
]
