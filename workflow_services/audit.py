"""
workflow_services.audit -- In-memory audit trail of workflow activity.

Responsibility:
    Record who created, transitioned, edited and was checked against
    which workflow, with sensitive context keys redacted.  Answer
    filtered queries and aggregate statistics over the recorded entries.

Architecture position:
    Services -- consumed by ``WorkflowEngine``.  Holds entries in process
    memory only; durable storage is out of scope.

Invariants enforced:
    - Entries are immutable once recorded; recorded context is a deep copy,
      detached from the live workflow context.
    - Top-level context keys named in ``SENSITIVE_KEYS`` never reach an
      entry unredacted.
    - A disabled trail records nothing.
"""

from __future__ import annotations

import copy
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.organization import OrganizationContext, User
from workflow_kernel.domain.records import to_plain
from workflow_kernel.logging_config import get_logger

if TYPE_CHECKING:
    from workflow_kernel.services.workflow import Workflow

logger = get_logger("services.audit")

DEFAULT_RETENTION_DAYS = 365
SENSITIVE_KEYS: frozenset[str] = frozenset(
    {"password", "token", "secret", "key", "ssn", "credit_card"}
)
REDACTED = "[REDACTED]"


class AuditAction(str, Enum):
    WORKFLOW_CREATED = "WORKFLOW_CREATED"
    WORKFLOW_TRANSITION = "WORKFLOW_TRANSITION"
    WORKFLOW_CONTEXT_UPDATED = "WORKFLOW_CONTEXT_UPDATED"
    PERMISSION_CHECK = "PERMISSION_CHECK"


@dataclass(frozen=True)
class AuditEntry:
    audit_id: str
    action: AuditAction
    timestamp: datetime
    workflow_id: str
    workflow_type: str
    user_id: str
    username: str
    organization_id: str | None
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            "action": self.action.value,
            "timestamp": self.timestamp.isoformat(),
            "workflow_id": self.workflow_id,
            "workflow_type": self.workflow_type,
            "user_id": self.user_id,
            "username": self.username,
            "organization_id": self.organization_id,
            "details": to_plain(self.details),
        }


@dataclass(frozen=True)
class AuditStatistics:
    total_entries: int
    by_action: dict[str, int]
    by_user: dict[str, int]
    by_workflow: dict[str, int]
    earliest: datetime | None
    latest: datetime | None


def sanitize_context(context: Mapping[str, Any] | None) -> dict[str, Any]:
    """Deep copy of ``context`` with sensitive top-level values replaced.

    Values that cannot be deep-copied (locks, handles) are kept by reference.
    """
    if not context:
        return {}
    return {
        k: (REDACTED if str(k).lower() in SENSITIVE_KEYS else _detached(v))
        for k, v in context.items()
    }


def _detached(value: Any) -> Any:
    try:
        return copy.deepcopy(value)
    except (TypeError, copy.Error):
        return value


class AuditTrail:
    """Append-only, in-memory audit log.

    Contract:
        Each ``log_*`` call appends at most one entry and returns it
        (``None`` when the trail is disabled).
    Non-goals:
        Persistence, export, cross-process sharing.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        enabled: bool = True,
    ) -> None:
        self._clock = clock or SystemClock()
        self.retention_days = retention_days
        self.enabled = enabled
        self._entries: list[AuditEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[AuditEntry, ...]:
        return tuple(self._entries)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def log_workflow_creation(
        self,
        workflow: Workflow,
        user: User,
        organization_context: OrganizationContext | None = None,
    ) -> AuditEntry | None:
        return self._record(
            AuditAction.WORKFLOW_CREATED,
            workflow,
            user,
            organization_context,
            {
                "initial_state": workflow.current_state,
                "context": sanitize_context(workflow.context),
            },
        )

    def log_workflow_transition(
        self,
        workflow: Workflow,
        from_state: str | None,
        to_state: str,
        user: User,
        organization_context: OrganizationContext | None = None,
        transition_context: Mapping[str, Any] | None = None,
    ) -> AuditEntry | None:
        return self._record(
            AuditAction.WORKFLOW_TRANSITION,
            workflow,
            user,
            organization_context,
            {
                "from_state": from_state,
                "to_state": to_state,
                "transition_context": sanitize_context(transition_context),
            },
        )

    def log_context_update(
        self,
        workflow: Workflow,
        updates: Mapping[str, Any],
        user: User,
        organization_context: OrganizationContext | None = None,
    ) -> AuditEntry | None:
        return self._record(
            AuditAction.WORKFLOW_CONTEXT_UPDATED,
            workflow,
            user,
            organization_context,
            {
                "updated_keys": sorted(str(k) for k in updates),
                "updates": sanitize_context(updates),
            },
        )

    def log_permission_check(
        self,
        workflow: Workflow,
        state_name: str,
        user: User,
        granted: bool,
        organization_context: OrganizationContext | None = None,
    ) -> AuditEntry | None:
        return self._record(
            AuditAction.PERMISSION_CHECK,
            workflow,
            user,
            organization_context,
            {"state": state_name, "granted": granted},
        )

    def _record(
        self,
        action: AuditAction,
        workflow: Workflow,
        user: User,
        organization_context: OrganizationContext | None,
        details: dict[str, Any],
    ) -> AuditEntry | None:
        if not self.enabled:
            return None
        organization_id = (
            organization_context.organization_id
            if organization_context is not None and organization_context.organization_id
            else workflow.organization_id
        )
        entry = AuditEntry(
            audit_id=uuid4().hex,
            action=action,
            timestamp=self._clock.now_utc(),
            workflow_id=workflow.id,
            workflow_type=workflow.type,
            user_id=user.id,
            username=user.username,
            organization_id=organization_id,
            details=details,
        )
        self._entries.append(entry)
        logger.debug(
            "audit_entry_recorded",
            extra={"action": action.value, "workflow_id": workflow.id, "user_id": user.id},
        )
        return entry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search(
        self,
        *,
        workflow_id: str | None = None,
        user_id: str | None = None,
        action: AuditAction | str | None = None,
        organization_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AuditEntry]:
        """Entries matching every given filter, newest first."""
        wanted_action = AuditAction(action) if action is not None else None
        matches = [
            e
            for e in self._entries
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (user_id is None or e.user_id == user_id)
            and (wanted_action is None or e.action is wanted_action)
            and (organization_id is None or e.organization_id == organization_id)
            and (start is None or e.timestamp >= start)
            and (end is None or e.timestamp <= end)
        ]
        # Ties keep reverse insertion order
        return sorted(reversed(matches), key=lambda e: e.timestamp, reverse=True)

    def statistics(self, organization_id: str | None = None) -> AuditStatistics:
        entries = [
            e
            for e in self._entries
            if organization_id is None or e.organization_id == organization_id
        ]
        timestamps = [e.timestamp for e in entries]
        return AuditStatistics(
            total_entries=len(entries),
            by_action=dict(Counter(e.action.value for e in entries)),
            by_user=dict(Counter(e.user_id for e in entries)),
            by_workflow=dict(Counter(e.workflow_id for e in entries)),
            earliest=min(timestamps) if timestamps else None,
            latest=max(timestamps) if timestamps else None,
        )

    def cleanup_old_entries(self) -> int:
        """Drop entries older than the retention window; return how many."""
        cutoff = self._clock.now_utc() - timedelta(days=self.retention_days)
        kept = [e for e in self._entries if e.timestamp >= cutoff]
        removed = len(self._entries) - len(kept)
        self._entries = kept
        if removed:
            logger.info(
                "audit_entries_purged",
                extra={"removed": removed, "retention_days": self.retention_days},
            )
        return removed
