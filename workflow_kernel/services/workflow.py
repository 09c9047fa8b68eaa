"""
workflow_kernel.services.workflow -- The workflow state machine base.

Responsibility:
    Owns the state registry, current-state pointer, context, history,
    lock lease and event bus of one workflow instance, and sequences
    permission-checked transitions.  It is the sole mutator of
    ``current_state``, ``context`` (apart from hooks it invokes) and
    ``history``.

Architecture position:
    Kernel services layer.  Imports the pure domain (state nodes,
    records, lease, clock); knows nothing of the engine or the audit
    trail, which subscribe through events.

Invariants enforced:
    - History is append-only; ``reset`` archives it inside a reset marker.
    - A rejected transition (unknown state, failing guard, missing
      permission, held lock) leaves the workflow untouched.
    - Hooks run exit -> entry, sequentially.  If either raises, pointer,
      history, context and ``updated_at`` are restored before the error
      propagates as ``HookExecutionError``.
      The context is restored from a deep copy, or from a top-level copy
      when it holds values that cannot be deep-copied (locks, handles,
      clients); nested mutations of those are not undone.
    - ``state_changed`` is emitted only after the entry hook succeeded.
    - ``transition_with_permission_check`` releases only the lease it
      acquired.

Failure modes:
    - UnknownStateError / InvalidTransitionError / PermissionDeniedError
    - WorkflowLockedError with ``retry_after_seconds``
    - HookExecutionError (rolled back)
"""

from __future__ import annotations

import copy
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any

from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.lease import DEFAULT_LOCK_TIMEOUT_MS, WorkflowLease
from workflow_kernel.domain.organization import OrganizationContext, User
from workflow_kernel.domain.records import (
    ActionDescriptor,
    ContextUpdatedEvent,
    CurrentStateInfo,
    HistoryEntry,
    HistoryRecord,
    ResetRecord,
    StateAddedEvent,
    StateChangedEvent,
    UserRef,
    WorkflowEvent,
    WorkflowResetEvent,
    to_plain,
)
from workflow_kernel.domain.state_node import StateNode
from workflow_kernel.exceptions import (
    HookExecutionError,
    InvalidStateNodeError,
    InvalidTransitionError,
    PermissionDeniedError,
    UnknownStateError,
    WorkflowConfigurationError,
    WorkflowLockedError,
)
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.services.events import EventBus

logger = get_logger("services.workflow")

# Outcome codes for structured transition traces
OUTCOME_SUCCESS = "success"
OUTCOME_UNKNOWN_STATE = "unknown_state"
OUTCOME_GUARD_FAILED = "guard_failed"
OUTCOME_PERMISSION_DENIED = "permission_denied"
OUTCOME_HOOK_FAILED = "hook_failed"


def _snapshot_context(context: dict[str, Any]) -> dict[str, Any]:
    """Rollback copy of ``context``: deep where possible, else top-level."""
    try:
        return copy.deepcopy(context)
    except (TypeError, copy.Error) as e:
        logger.debug("workflow_context_shallow_snapshot", extra={"reason": str(e)})
        return dict(context)


class Workflow(ABC):
    """Abstract workflow.  Subclasses declare the initial state and the states.

    Build instances with ``create`` (or call ``initialize`` yourself)
    before attempting any transition.
    """

    def __init__(
        self,
        workflow_id: str,
        *,
        workflow_type: str | None = None,
        context: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        created_by: str | None = None,
        organization_id: str | None = None,
        clock: Clock | None = None,
        lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
    ) -> None:
        self.id = workflow_id
        self.type = workflow_type or type(self).__name__
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.created_by = created_by
        self.organization_id = organization_id
        self.lock_timeout_ms = lock_timeout_ms
        self._clock = clock or SystemClock()
        self._states: dict[str, StateNode] = {}
        self._current_state: str | None = None
        self._context: dict[str, Any] = dict(context or {})
        self._history: list[HistoryEntry] = []
        self._lease: WorkflowLease | None = None
        self._events = EventBus(owner=f"{self.type}:{workflow_id}")
        self.created_at: datetime = self._clock.now_utc()
        self.updated_at: datetime = self.created_at

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, current_state={self._current_state!r})"

    # ------------------------------------------------------------------
    # Construction contract
    # ------------------------------------------------------------------

    @abstractmethod
    def get_initial_state(self) -> str:
        """Name of the state a new (or reset) workflow enters first."""

    @abstractmethod
    def define_states(self) -> None:
        """Register every reachable state through ``add_state``."""

    def initialize(self) -> Workflow:
        self.define_states()
        initial = self.get_initial_state()
        if not initial or initial not in self._states:
            raise WorkflowConfigurationError(
                self.type, f"initial state '{initial}' is not defined"
            )
        return self

    @classmethod
    def create(cls, workflow_id: str, **options: Any) -> Workflow:
        """Construct and initialize; the only instances callers should see."""
        return cls(workflow_id, **options).initialize()

    def add_state(self, name: str, node: StateNode) -> None:
        if not name:
            raise WorkflowConfigurationError(self.type, "state name must be non-empty")
        if not isinstance(node, StateNode):
            raise InvalidStateNodeError(str(name), type(node).__name__)
        self._states[name] = node
        self.emit(
            WorkflowEvent.STATE_ADDED,
            StateAddedEvent(workflow=self, state_name=name, state_node=node),
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def states(self) -> Mapping[str, StateNode]:
        return MappingProxyType(self._states)

    @property
    def current_state(self) -> str | None:
        return self._current_state

    @property
    def context(self) -> dict[str, Any]:
        """The live context.  Hooks mutate it; use ``update_context`` otherwise."""
        return self._context

    @property
    def history(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._history)

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def is_terminal(self) -> bool:
        node = self._states.get(self._current_state) if self._current_state else None
        return node is not None and node.is_terminal

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def set_state(
        self,
        target: str,
        user: User,
        organization_context: OrganizationContext | None = None,
        transition_context: Mapping[str, Any] | None = None,
    ) -> Workflow:
        """Move to ``target`` after guard and permission checks.

        The very first transition (no current state) skips the guard
        check.  Guards see the workflow context overlaid with
        ``transition_context``.
        """
        transition_context = dict(transition_context or {})
        t0 = time.monotonic()
        old_state = self._current_state

        with LogContext.bind(workflow_id=str(self.id), actor_id=str(user.id)):
            new_node = self._states.get(target)
            if new_node is None:
                self._trace(old_state, target, OUTCOME_UNKNOWN_STATE, t0)
                raise UnknownStateError(self.id, old_state, target)

            if old_state is not None:
                guard_context = {**self._context, **transition_context}
                if not self._states[old_state].can_transition_to(target, guard_context):
                    self._trace(old_state, target, OUTCOME_GUARD_FAILED, t0)
                    raise InvalidTransitionError(self.id, old_state, target)

            if not new_node.has_permission(user, organization_context, self._context):
                self._trace(old_state, target, OUTCOME_PERMISSION_DENIED, t0)
                raise PermissionDeniedError(self.id, target, user.id)

            snapshot = (
                old_state,
                list(self._history),
                _snapshot_context(self._context),
                self.updated_at,
            )
            stage, stage_state = "on_exit", old_state
            try:
                if old_state is not None:
                    await self._states[old_state].execute_on_exit(
                        self._context, user, organization_context
                    )

                now = self._clock.now_utc()
                self._history.append(
                    HistoryRecord(
                        from_state=old_state,
                        to_state=target,
                        timestamp=now,
                        user=UserRef.from_user(user),
                        context=dict(transition_context),
                        metadata=dict(self.metadata),
                    )
                )
                self._current_state = target
                self.updated_at = now

                stage, stage_state = "on_enter", target
                await new_node.execute_on_enter(self._context, user, organization_context)
            except Exception as e:
                (
                    self._current_state,
                    self._history,
                    self._context,
                    self.updated_at,
                ) = snapshot
                self._trace(old_state, target, OUTCOME_HOOK_FAILED, t0, hook=stage)
                logger.warning(
                    "workflow_hook_failed",
                    extra={"hook": stage, "state": stage_state, "error": str(e)},
                )
                raise HookExecutionError(self.id, str(stage_state), stage, str(e)) from e

            self._trace(old_state, target, OUTCOME_SUCCESS, t0)

        self.emit(
            WorkflowEvent.STATE_CHANGED,
            StateChangedEvent(
                workflow=self,
                from_state=old_state,
                to_state=target,
                user=user,
                organization_context=organization_context,
                context=transition_context,
            ),
        )
        return self

    async def transition_with_permission_check(
        self,
        target: str,
        user: User,
        organization_context: OrganizationContext | None = None,
        transition_context: Mapping[str, Any] | None = None,
    ) -> Workflow:
        """``set_state`` under the workflow lock.  The recommended entry point."""
        lease = self.acquire_lock(user)
        try:
            return await self.set_state(target, user, organization_context, transition_context)
        finally:
            self.release_lease(lease)

    def get_available_actions_for_user(
        self,
        user: User,
        organization_context: OrganizationContext | None = None,
    ) -> list[ActionDescriptor]:
        """Guard-passing transitions whose target the user may enter.

        Transitions the user lacks permission for are omitted, not
        disabled.
        """
        node = self._states.get(self._current_state) if self._current_state else None
        if node is None:
            return []
        actions: list[ActionDescriptor] = []
        for transition in node.get_available_transitions(self._context):
            target = self._states.get(transition.target)
            if target is None or not target.has_permission(
                user, organization_context, self._context
            ):
                continue
            actions.append(
                ActionDescriptor(
                    action=transition.action_name,
                    target=transition.target,
                    label=transition.display_label,
                    requires_confirmation=transition.requires_confirmation,
                    metadata=dict(transition.metadata),
                )
            )
        return actions

    async def reset(
        self,
        user: User,
        organization_context: OrganizationContext | None = None,
        reset_context: Mapping[str, Any] | None = None,
    ) -> Workflow:
        """Archive history into a reset marker and re-enter the initial state."""
        initial = self.get_initial_state()
        if not initial:
            raise WorkflowConfigurationError(self.type, "no initial state defined")
        reset_context = dict(reset_context or {})

        snapshot = (self._current_state, list(self._history), self._context, self.updated_at)
        marker = ResetRecord(
            timestamp=self._clock.now_utc(),
            user=UserRef.from_user(user),
            context=dict(reset_context),
            previous_history=tuple(self._history),
        )
        self._history = [marker]
        self._current_state = None
        self._context = {**self._context, **reset_context}
        try:
            await self.set_state(initial, user, organization_context)
        except Exception:
            (
                self._current_state,
                self._history,
                self._context,
                self.updated_at,
            ) = snapshot
            raise

        logger.info(
            "workflow_reset",
            extra={
                "workflow_id": self.id,
                "archived_records": len(marker.previous_history),
            },
        )
        self.emit(
            WorkflowEvent.WORKFLOW_RESET,
            WorkflowResetEvent(
                workflow=self,
                user=user,
                organization_context=organization_context,
                reset_context=reset_context,
            ),
        )
        return self

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def update_context(self, partial: Mapping[str, Any], user: User | None = None) -> None:
        """Shallow-merge ``partial`` into the context.

        Trusted access: takes no lock and checks no permission.  Untrusted
        callers go through ``WorkflowEngine.update_workflow_context``.
        """
        old_context = dict(self._context)
        self._context.update(partial)
        self.updated_at = self._clock.now_utc()
        self.emit(
            WorkflowEvent.CONTEXT_UPDATED,
            ContextUpdatedEvent(
                workflow=self,
                old_context=old_context,
                new_context=dict(self._context),
                user=user,
            ),
        )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @property
    def lease(self) -> WorkflowLease | None:
        return self._lease

    @property
    def is_locked(self) -> bool:
        return self._lease is not None

    @property
    def lock_owner(self) -> str | None:
        return self._lease.owner_id if self._lease else None

    @property
    def lock_acquired_at(self) -> datetime | None:
        return self._lease.acquired_at if self._lease else None

    def acquire_lock(self, user: User, timeout_ms: int | None = None) -> WorkflowLease:
        """Single-attempt, non-blocking lease acquisition.

        The same user re-acquiring refreshes the lease.  A lease held by
        someone else is reclaimed once its age reaches ``timeout_ms``.
        """
        timeout = self.lock_timeout_ms if timeout_ms is None else timeout_ms
        now = self._clock.now_utc()
        held = self._lease
        if held is not None and held.owner_id != user.id:
            if not held.is_expired(now, timeout):
                retry_after = held.remaining_seconds(now, timeout)
                logger.info(
                    "workflow_lock_contended",
                    extra={
                        "workflow_id": self.id,
                        "lock_owner": held.owner_id,
                        "requested_by": user.id,
                        "retry_after_seconds": retry_after,
                    },
                )
                raise WorkflowLockedError(self.id, held.owner_id, retry_after)
            logger.warning(
                "workflow_lock_reclaimed",
                extra={
                    "workflow_id": self.id,
                    "previous_owner": held.owner_id,
                    "lock_age_ms": round(held.age_ms(now), 3),
                    "new_owner": user.id,
                },
            )
            self.release_lock()

        self._lease = WorkflowLease(owner_id=user.id, acquired_at=now, timeout_ms=timeout)
        logger.debug(
            "workflow_lock_acquired",
            extra={"workflow_id": self.id, "lock_owner": user.id},
        )
        return self._lease

    def release_lock(self) -> None:
        """Clear the lease unconditionally."""
        self._lease = None

    def release_lease(self, lease: WorkflowLease) -> None:
        """Release only if ``lease`` is still the current one."""
        if self._lease is not None and self._lease.token == lease.token:
            self.release_lock()
        else:
            logger.warning(
                "workflow_lock_lost",
                extra={"workflow_id": self.id, "lock_owner": lease.owner_id},
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event_name: str | WorkflowEvent, callback: Callable[[Any], Any]) -> None:
        self._events.on(event_name, callback)

    def off(self, event_name: str | WorkflowEvent, callback: Callable[[Any], Any]) -> None:
        self._events.off(event_name, callback)

    def emit(self, event_name: str | WorkflowEvent, payload: Any) -> None:
        self._events.emit(event_name, payload)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_current_state(self) -> CurrentStateInfo | None:
        if self._current_state is None:
            return None
        return CurrentStateInfo(
            name=self._current_state,
            node=self._states[self._current_state],
            entered_at=self.get_state_entry_time(self._current_state),
            time_in_state=self.get_time_in_current_state(),
        )

    def get_state_entry_time(self, state_name: str | None) -> datetime:
        for record in reversed(self._history):
            if record.to_state == state_name:
                return record.timestamp
        return self.created_at

    def get_time_in_current_state(self) -> timedelta:
        return self._clock.elapsed_since(self.get_state_entry_time(self._current_state))

    async def validate(self) -> list[str]:
        if self._current_state is None:
            return ["Workflow has no current state"]
        return await self._states[self._current_state].validate(self._context)

    def get_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "current_state": self._current_state,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "created_by": self.created_by,
            "organization_id": self.organization_id,
            "state_count": len(self._states),
            "history_count": len(self._history),
            "time_in_current_state": self.get_time_in_current_state().total_seconds(),
            "is_locked": self.is_locked,
            "lock_owner": self.lock_owner,
        }

    def serialize(self) -> dict[str, Any]:
        """Plain-data snapshot.  Listeners and lock state are not included."""
        return {
            "id": self.id,
            "type": self.type,
            "current_state": self._current_state,
            "context": to_plain(self._context),
            "history": [record.to_dict() for record in self._history],
            "metadata": to_plain(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "created_by": self.created_by,
            "organization_id": self.organization_id,
        }

    def describe(self) -> dict[str, Any]:
        """Adjacency view of the state graph."""
        return {name: list(node.target_names()) for name, node in self._states.items()}

    # ------------------------------------------------------------------
    # Tracing
    # ------------------------------------------------------------------

    def _trace(
        self,
        from_state: str | None,
        to_state: str,
        outcome: str,
        t0: float,
        **extra: Any,
    ) -> None:
        record = {
            "workflow_type": self.type,
            "from_state": from_state,
            "to_state": to_state,
            "outcome": outcome,
            "duration_ms": round((time.monotonic() - t0) * 1000, 3),
            **extra,
        }
        if outcome == OUTCOME_SUCCESS:
            logger.info("workflow_transition", extra=record)
        else:
            logger.info("workflow_transition_rejected", extra=record)
