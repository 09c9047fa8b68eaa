"""
Workflow records (``workflow_kernel.domain.records``).

Responsibility
--------------
Immutable value objects the workflow produces: audit history records,
reset markers, per-user action descriptors, current-state snapshots and
the typed payloads of workflow events.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ``to_dict`` renders
plain data (ISO-8601 timestamps, enum values) for serialization.

Invariants enforced
-------------------
* History records and reset markers are frozen once appended.
* A reset marker embeds the complete prior history; nothing is dropped.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from workflow_kernel.domain.organization import OrganizationContext, User

if TYPE_CHECKING:
    from workflow_kernel.domain.state_node import StateNode


def to_plain(value: Any) -> Any:
    """Recursively convert a value into JSON-compatible plain data."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "to_dict") and callable(value.to_dict):
        return value.to_dict()
    if isinstance(value, Mapping):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((to_plain(v) for v in value), key=str)
    return copy.deepcopy(value)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserRef:
    """The user as recorded in history: id, username and display name."""

    id: str
    username: str
    name: str

    @classmethod
    def from_user(cls, user: User) -> UserRef:
        return cls(id=user.id, username=user.username, name=user.display_name)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "username": self.username, "name": self.name}


@dataclass(frozen=True)
class HistoryRecord:
    """One realized state transition."""

    from_state: str | None
    to_state: str
    timestamp: datetime
    user: UserRef
    context: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    type = "transition"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "timestamp": self.timestamp.isoformat(),
            "user": self.user.to_dict(),
            "context": to_plain(self.context),
            "metadata": to_plain(self.metadata),
        }


@dataclass(frozen=True)
class ResetRecord:
    """Marker inserted by ``Workflow.reset``; archives the prior history."""

    timestamp: datetime
    user: UserRef
    context: Mapping[str, Any] = field(default_factory=dict)
    previous_history: tuple[HistoryEntry, ...] = ()

    type = "reset"

    @property
    def to_state(self) -> None:
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "user": self.user.to_dict(),
            "context": to_plain(self.context),
            "previous_history": [r.to_dict() for r in self.previous_history],
        }


HistoryEntry = Union[HistoryRecord, ResetRecord]


# ---------------------------------------------------------------------------
# Actions and state snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionDescriptor:
    """A user-visible action: what a UI renders as a button."""

    action: str
    target: str
    label: str
    requires_confirmation: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "target": self.target,
            "label": self.label,
            "requires_confirmation": self.requires_confirmation,
            "metadata": to_plain(self.metadata),
        }


@dataclass(frozen=True)
class CurrentStateInfo:
    name: str
    node: StateNode
    entered_at: datetime
    time_in_state: timedelta


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class WorkflowEvent(str, Enum):
    """Events a workflow emits to its subscribers."""

    STATE_ADDED = "stateAdded"
    STATE_CHANGED = "stateChanged"
    CONTEXT_UPDATED = "contextUpdated"
    WORKFLOW_RESET = "workflowReset"


@dataclass(frozen=True)
class StateAddedEvent:
    workflow: Any
    state_name: str
    state_node: StateNode


@dataclass(frozen=True)
class StateChangedEvent:
    workflow: Any
    from_state: str | None
    to_state: str
    user: User
    organization_context: OrganizationContext | None
    context: Mapping[str, Any]


@dataclass(frozen=True)
class ContextUpdatedEvent:
    workflow: Any
    old_context: Mapping[str, Any]
    new_context: Mapping[str, Any]
    user: User | None


@dataclass(frozen=True)
class WorkflowResetEvent:
    workflow: Any
    user: User
    organization_context: OrganizationContext | None
    reset_context: Mapping[str, Any]
