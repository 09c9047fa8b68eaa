"""
workflow_services.engine -- Registry and driver for workflow instances.

Responsibility:
    Register workflow types, create instances into their initial state,
    drive permission-checked transitions and gated context updates, and
    answer per-user and aggregate queries over the live instances.

Architecture position:
    Services -- stateful orchestration over the kernel.  Owns an
    ``AuditTrail`` and re-emits workflow events on its own ``EventBus``.

Invariants enforced:
    - Operations that mutate require a started engine.
    - A workflow id is unique within the engine, including while an
      earlier creation with that id is still entering its initial state.
    - A failed creation stores nothing.
    - A transition runs only when the current state validates clean;
      validation and the transition happen under one workflow lease.
    - Gated context updates hold the workflow lease and require permission
      in the current state.

Failure modes:
    - EngineNotRunningError, UnknownWorkflowTypeError, DuplicateWorkflowError
    - WorkflowNotFoundError, WorkflowValidationError
    - Every kernel transition error propagates unchanged.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.organization import OrganizationContext, User
from workflow_kernel.domain.records import ActionDescriptor, WorkflowEvent
from workflow_kernel.exceptions import (
    DuplicateWorkflowError,
    EngineNotRunningError,
    PermissionDeniedError,
    UnknownWorkflowTypeError,
    WorkflowConfigurationError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.services.events import EventBus
from workflow_kernel.services.workflow import Workflow
from workflow_services.audit import AuditTrail

logger = get_logger("services.engine")


class EngineEvent(str, Enum):
    WORKFLOW_TYPE_REGISTERED = "workflowTypeRegistered"
    WORKFLOW_CREATED = "workflowCreated"
    WORKFLOW_STATE_CHANGED = "workflowStateChanged"
    WORKFLOW_CONTEXT_UPDATED = "workflowContextUpdated"
    WORKFLOW_RESET = "workflowReset"


# Workflow event -> engine event it is re-emitted as
_FORWARDED: dict[WorkflowEvent, EngineEvent] = {
    WorkflowEvent.STATE_CHANGED: EngineEvent.WORKFLOW_STATE_CHANGED,
    WorkflowEvent.CONTEXT_UPDATED: EngineEvent.WORKFLOW_CONTEXT_UPDATED,
    WorkflowEvent.WORKFLOW_RESET: EngineEvent.WORKFLOW_RESET,
}


@dataclass(frozen=True)
class UserWorkflowView:
    """A workflow as one user sees it."""

    summary: dict[str, Any]
    available_actions: tuple[ActionDescriptor, ...]
    can_edit: bool
    is_owner: bool


@dataclass(frozen=True)
class EngineStatistics:
    total_workflows: int
    workflow_types: int
    active_workflows: int
    completed_workflows: int
    by_type: dict[str, int]
    by_state: dict[str, int]
    is_running: bool
    locked_workflows: int


class WorkflowEngine:
    """
    In-memory registry of workflow types and instances.

    Contract:
        Receives its Clock and AuditTrail via constructor injection; the
        clock is handed to every workflow it creates unless the caller
        overrides it.
    Non-goals:
        Persistence, notifications, metrics, auto-save.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        audit_trail: AuditTrail | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self.audit_trail = audit_trail or AuditTrail(clock=self._clock)
        self._types: dict[str, type[Workflow]] = {}
        self._workflows: dict[str, Workflow] = {}
        self._pending: set[str] = set()
        self._events = EventBus(owner="engine")
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info(
            "workflow_engine_started",
            extra={"workflow_types": sorted(self._types)},
        )

    def stop(self) -> None:
        """Stop accepting work and release every workflow lease."""
        if not self._running:
            return
        released = 0
        for workflow in self._workflows.values():
            if workflow.is_locked:
                workflow.release_lock()
                released += 1
        self._running = False
        logger.info(
            "workflow_engine_stopped",
            extra={"workflows": len(self._workflows), "leases_released": released},
        )

    def _require_running(self) -> None:
        if not self._running:
            raise EngineNotRunningError()

    # ------------------------------------------------------------------
    # Types and instances
    # ------------------------------------------------------------------

    def register_workflow_type(self, name: str, workflow_class: type[Workflow]) -> None:
        if not (isinstance(workflow_class, type) and issubclass(workflow_class, Workflow)):
            raise WorkflowConfigurationError(
                name, f"{workflow_class!r} is not a Workflow subclass"
            )
        self._types[name] = workflow_class
        logger.info(
            "workflow_type_registered",
            extra={"workflow_type": name, "workflow_class": workflow_class.__name__},
        )
        self._events.emit(
            EngineEvent.WORKFLOW_TYPE_REGISTERED,
            {"type": name, "workflow_class": workflow_class},
        )

    @property
    def workflow_types(self) -> tuple[str, ...]:
        return tuple(self._types)

    async def create_workflow(
        self,
        type_name: str,
        workflow_id: str,
        user: User,
        organization_context: OrganizationContext | None = None,
        **options: Any,
    ) -> Workflow:
        """Build a workflow, enter its initial state, then store it."""
        self._require_running()
        workflow_class = self._types.get(type_name)
        if workflow_class is None:
            raise UnknownWorkflowTypeError(type_name)
        if workflow_id in self._workflows or workflow_id in self._pending:
            raise DuplicateWorkflowError(workflow_id)
        self._pending.add(workflow_id)
        try:
            workflow = await self._create(
                type_name, workflow_class, workflow_id, user, organization_context, options
            )
        finally:
            self._pending.discard(workflow_id)
        self._events.emit(
            EngineEvent.WORKFLOW_CREATED,
            {"workflow": workflow, "user": user, "organization_context": organization_context},
        )
        return workflow

    async def _create(
        self,
        type_name: str,
        workflow_class: type[Workflow],
        workflow_id: str,
        user: User,
        organization_context: OrganizationContext | None,
        options: dict[str, Any],
    ) -> Workflow:
        options.setdefault("workflow_type", type_name)
        options.setdefault("clock", self._clock)
        options.setdefault("created_by", user.id)
        if organization_context is not None:
            options.setdefault("organization_id", organization_context.organization_id)

        with LogContext.bind(workflow_id=str(workflow_id), actor_id=str(user.id)):
            workflow = workflow_class.create(workflow_id, **options)
            await workflow.set_state(
                workflow.get_initial_state(), user, organization_context
            )

            self._attach(workflow)
            self._workflows[workflow_id] = workflow
            self.audit_trail.log_workflow_creation(workflow, user, organization_context)
            logger.info(
                "workflow_created",
                extra={
                    "workflow_type": type_name,
                    "initial_state": workflow.current_state,
                },
            )
        return workflow

    def _attach(self, workflow: Workflow) -> None:
        for source, forwarded in _FORWARDED.items():
            workflow.on(source, self._forwarder(forwarded))

    def _forwarder(self, event: EngineEvent) -> Callable[[Any], None]:
        def forward(payload: Any) -> None:
            self._events.emit(event, payload)

        return forward

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        return self._workflows.get(workflow_id)

    def require_workflow(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def get_workflows(
        self,
        *,
        type: str | None = None,
        organization_id: str | None = None,
        created_by: str | None = None,
        current_state: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
    ) -> list[Workflow]:
        return [
            w
            for w in self._workflows.values()
            if (type is None or w.type == type)
            and (organization_id is None or w.organization_id == organization_id)
            and (created_by is None or w.created_by == created_by)
            and (current_state is None or w.current_state == current_state)
            and (created_after is None or w.created_at >= created_after)
            and (created_before is None or w.created_at <= created_before)
        ]

    # ------------------------------------------------------------------
    # Driving workflows
    # ------------------------------------------------------------------

    async def execute_transition(
        self,
        workflow_id: str,
        target: str,
        user: User,
        organization_context: OrganizationContext | None = None,
        transition_context: Mapping[str, Any] | None = None,
    ) -> Workflow:
        self._require_running()
        workflow = self.require_workflow(workflow_id)

        lease = workflow.acquire_lock(user)
        try:
            errors = await workflow.validate()
            if errors:
                logger.info(
                    "workflow_validation_failed",
                    extra={"workflow_id": workflow_id, "errors": errors},
                )
                raise WorkflowValidationError(workflow_id, errors)

            from_state = workflow.current_state
            try:
                await workflow.set_state(
                    target, user, organization_context, transition_context
                )
            except PermissionDeniedError:
                self.audit_trail.log_permission_check(
                    workflow, target, user, False, organization_context
                )
                raise
        finally:
            workflow.release_lease(lease)

        self.audit_trail.log_workflow_transition(
            workflow,
            from_state,
            target,
            user,
            organization_context,
            transition_context,
        )
        return workflow

    def update_workflow_context(
        self,
        workflow_id: str,
        updates: Mapping[str, Any],
        user: User,
        organization_context: OrganizationContext | None = None,
    ) -> Workflow:
        """Context update gated by the lease and current-state permission."""
        self._require_running()
        workflow = self.require_workflow(workflow_id)

        lease = workflow.acquire_lock(user)
        try:
            state_name = workflow.current_state
            node = workflow.states.get(state_name) if state_name else None
            granted = node is not None and node.has_permission(
                user, organization_context, workflow.context
            )
            self.audit_trail.log_permission_check(
                workflow, str(state_name), user, granted, organization_context
            )
            if not granted:
                raise PermissionDeniedError(workflow_id, str(state_name), user.id)

            workflow.update_context(updates, user)
            self.audit_trail.log_context_update(
                workflow, updates, user, organization_context
            )
        finally:
            workflow.release_lease(lease)
        return workflow

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_user_workflows(
        self,
        user: User,
        organization_context: OrganizationContext | None = None,
        **criteria: Any,
    ) -> list[UserWorkflowView]:
        """Workflows the user created or can act on right now."""
        views: list[UserWorkflowView] = []
        for workflow in self.get_workflows(**criteria):
            actions = tuple(
                workflow.get_available_actions_for_user(user, organization_context)
            )
            is_owner = workflow.created_by == user.id
            if not (is_owner or actions):
                continue
            node = (
                workflow.states.get(workflow.current_state)
                if workflow.current_state
                else None
            )
            can_edit = node is not None and node.has_permission(
                user, organization_context, workflow.context
            )
            views.append(
                UserWorkflowView(
                    summary=workflow.get_summary(),
                    available_actions=actions,
                    can_edit=can_edit,
                    is_owner=is_owner,
                )
            )
        return views

    def get_statistics(self) -> EngineStatistics:
        workflows = list(self._workflows.values())
        completed = sum(1 for w in workflows if w.is_terminal)
        return EngineStatistics(
            total_workflows=len(workflows),
            workflow_types=len(self._types),
            active_workflows=len(workflows) - completed,
            completed_workflows=completed,
            by_type=dict(Counter(w.type for w in workflows)),
            by_state=dict(Counter(str(w.current_state) for w in workflows)),
            is_running=self._running,
            locked_workflows=sum(1 for w in workflows if w.is_locked),
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event_name: str | EngineEvent, callback: Callable[[Any], Any]) -> None:
        self._events.on(event_name, callback)

    def off(self, event_name: str | EngineEvent, callback: Callable[[Any], Any]) -> None:
        self._events.off(event_name, callback)
