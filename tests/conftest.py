"""
Pytest fixtures for the workflow kernel test suite.

Provides:
- A deterministic clock shared by workflows, engine and audit trail
- Users and organization contexts (manager, analyst, no positions)
- A three-state document approval workflow (draft -> review -> done)

Everything is in-memory; no external services are needed.
"""

from __future__ import annotations

import logging

import pytest

from workflow_kernel.domain.clock import DeterministicClock
from workflow_kernel.domain.organization import (
    Department,
    Designation,
    OrganizationContext,
    OrganizationGroup,
    Position,
    Team,
    User,
)
from workflow_kernel.domain.state_node import StateNode, Transition
from workflow_kernel.logging_config import LogContext, reset_logging
from workflow_kernel.services.workflow import Workflow
from workflow_services.audit import AuditTrail
from workflow_services.engine import WorkflowEngine


class DocumentApprovalWorkflow(Workflow):
    """draft --submit--> review --approve--> done; review --reject--> draft."""

    def get_initial_state(self) -> str:
        return "draft"

    def define_states(self) -> None:
        self.add_state(
            "draft",
            StateNode(
                "draft",
                transitions=[
                    Transition(target="review", action="submit", label="Submit for review")
                ],
                required_actors=["Requestor"],
            ),
        )
        self.add_state(
            "review",
            StateNode(
                "review",
                transitions=[
                    Transition(
                        target="done",
                        action="approve",
                        label="Approve",
                        guards=({"field": "approval_comments", "operator": "equals"},),
                        requires_confirmation=True,
                    ),
                    Transition(target="draft", action="reject", label="Request changes"),
                ],
                required_actors=["Requestor"],
                on_enter=_mark_submitted,
            ),
        )
        self.add_state("done", StateNode("done", required_actors=["Approver"]))


def _mark_submitted(context, user, organization_context):
    context["submitted_by"] = user.id


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock()


@pytest.fixture
def requester() -> User:
    return User(id="u-req", username="asmith", first_name="Alice", last_name="Smith")


@pytest.fixture
def manager() -> User:
    return User(id="u-mgr", username="bjones", first_name="Bob", last_name="Jones")


@pytest.fixture
def analyst() -> User:
    return User(id="u-ana", username="cdoe")


@pytest.fixture
def manager_org() -> OrganizationContext:
    return OrganizationContext(
        organization_id="org-1",
        positions=(
            Position(
                designation=Designation("Engineering Manager", level=3),
                group=OrganizationGroup(
                    department=Department("Engineering"), team=Team("Platform")
                ),
            ),
        ),
    )


@pytest.fixture
def analyst_org() -> OrganizationContext:
    return OrganizationContext(
        organization_id="org-1",
        positions=(
            Position(
                designation=Designation("Business Analyst", level=1),
                department=Department("Finance"),
                team=Team("Reporting"),
            ),
        ),
    )


@pytest.fixture
def empty_org() -> OrganizationContext:
    return OrganizationContext(organization_id="org-1")


@pytest.fixture
def document_workflow_cls() -> type[Workflow]:
    return DocumentApprovalWorkflow


@pytest.fixture
def workflow(clock) -> Workflow:
    """An initialized document workflow with no current state yet."""
    return DocumentApprovalWorkflow.create(
        "doc-1",
        clock=clock,
        created_by="u-req",
        organization_id="org-1",
    )


@pytest.fixture
def audit_trail(clock) -> AuditTrail:
    return AuditTrail(clock=clock)


@pytest.fixture
def engine(clock, audit_trail, document_workflow_cls) -> WorkflowEngine:
    eng = WorkflowEngine(clock=clock, audit_trail=audit_trail)
    eng.register_workflow_type("document_approval", document_workflow_cls)
    eng.start()
    yield eng
    eng.stop()


@pytest.fixture
def capture_logs():
    """Collect workflow_kernel log records (message + extras) in a list."""
    records: list[logging.LogRecord] = []

    class _ListHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    handler = _ListHandler(level=logging.DEBUG)
    root = logging.getLogger("workflow_kernel")
    previous_level = root.level
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)
    yield records
    root.removeHandler(handler)
    root.setLevel(previous_level)
