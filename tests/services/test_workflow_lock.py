"""
Advisory lock tests.

Verifies:
- Mutual exclusion within the timeout, with retry-after reporting
- Same-owner refresh
- Reclamation at and after expiry (the race window is explicit)
- transition_with_permission_check releases only its own lease
"""

import pytest

from workflow_kernel.domain.lease import WorkflowLease
from workflow_kernel.domain.state_node import StateNode, Transition
from workflow_kernel.exceptions import PermissionDeniedError, WorkflowLockedError
from workflow_kernel.services.workflow import Workflow


class TestMutualExclusion:
    def test_second_user_blocked(self, workflow, requester, manager, clock):
        workflow.acquire_lock(requester)
        clock.advance(12)
        with pytest.raises(WorkflowLockedError) as exc_info:
            workflow.acquire_lock(manager)
        err = exc_info.value
        assert err.lock_owner == "u-req"
        assert err.retry_after_seconds == 18
        assert str(err) == "Workflow is locked by another user. Try again in 18 seconds."
        assert workflow.lock_owner == "u-req"

    def test_retry_after_rounds_up(self, workflow, requester, manager, clock):
        workflow.acquire_lock(requester)
        clock.advance_ms(29_001)
        with pytest.raises(WorkflowLockedError) as exc_info:
            workflow.acquire_lock(manager)
        assert exc_info.value.retry_after_seconds == 1

    def test_lock_properties(self, workflow, requester, clock):
        assert not workflow.is_locked
        assert workflow.lock_owner is None
        assert workflow.lock_acquired_at is None
        lease = workflow.acquire_lock(requester)
        assert isinstance(lease, WorkflowLease)
        assert workflow.is_locked
        assert workflow.lock_acquired_at == clock.now_utc()

    def test_release_is_unconditional(self, workflow, requester):
        workflow.acquire_lock(requester)
        workflow.release_lock()
        assert not workflow.is_locked
        workflow.release_lock()


class TestRefreshAndExpiry:
    def test_same_owner_refreshes(self, workflow, requester, manager, clock):
        first = workflow.acquire_lock(requester)
        clock.advance(20)
        second = workflow.acquire_lock(requester)
        assert second.token != first.token
        assert workflow.lock_acquired_at == clock.now_utc()

        clock.advance(20)
        with pytest.raises(WorkflowLockedError):
            workflow.acquire_lock(manager)

    def test_reclaimed_exactly_at_timeout(self, workflow, requester, manager, clock, capture_logs):
        workflow.acquire_lock(requester)
        clock.advance_ms(30_000)
        workflow.acquire_lock(manager)
        assert workflow.lock_owner == "u-mgr"
        record = next(r for r in capture_logs if r.getMessage() == "workflow_lock_reclaimed")
        assert record.previous_owner == "u-req"
        assert record.new_owner == "u-mgr"

    def test_one_ms_before_timeout_still_held(self, workflow, requester, manager, clock):
        workflow.acquire_lock(requester)
        clock.advance_ms(29_999)
        with pytest.raises(WorkflowLockedError):
            workflow.acquire_lock(manager)

    def test_caller_timeout_governs_reclamation(self, workflow, requester, manager, clock):
        workflow.acquire_lock(requester)
        clock.advance(5)
        with pytest.raises(WorkflowLockedError) as exc_info:
            workflow.acquire_lock(manager, timeout_ms=10_000)
        assert exc_info.value.retry_after_seconds == 5
        clock.advance(5)
        workflow.acquire_lock(manager, timeout_ms=10_000)
        assert workflow.lock_owner == "u-mgr"

    def test_configured_default_timeout(self, clock, requester, manager, document_workflow_cls):
        wf = document_workflow_cls.create("doc-9", clock=clock, lock_timeout_ms=1_000)
        wf.acquire_lock(requester)
        clock.advance(1)
        wf.acquire_lock(manager)
        assert wf.lock_owner == "u-mgr"


class TestTransitionLocking:
    @pytest.mark.asyncio
    async def test_lock_released_after_success(self, workflow, requester):
        await workflow.transition_with_permission_check("draft", requester)
        assert not workflow.is_locked

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, workflow, requester, analyst, analyst_org):
        await workflow.set_state("review", requester)
        with pytest.raises(PermissionDeniedError):
            await workflow.transition_with_permission_check(
                "done", analyst, analyst_org, {"approval_comments": "ok"}
            )
        assert not workflow.is_locked

    @pytest.mark.asyncio
    async def test_blocked_by_other_holder(self, workflow, requester, manager, manager_org):
        workflow.acquire_lock(requester)
        with pytest.raises(WorkflowLockedError):
            await workflow.transition_with_permission_check("draft", manager, manager_org)
        assert workflow.current_state is None
        assert workflow.lock_owner == "u-req"

    @pytest.mark.asyncio
    async def test_reentrant_for_same_owner(self, workflow, requester):
        workflow.acquire_lock(requester)
        await workflow.transition_with_permission_check("draft", requester)
        assert workflow.current_state == "draft"

    @pytest.mark.asyncio
    async def test_reclaimed_lease_not_released_by_stale_holder(
        self, clock, requester, manager
    ):
        """A holder whose lease expired mid-hook must not free the new owner's lease."""

        class Slow(Workflow):
            def get_initial_state(self):
                return "a"

            def define_states(self):
                self.add_state("a", StateNode("a", transitions=[Transition("b")]))
                self.add_state("b", StateNode("b", on_enter=self._stall))

            async def _stall(self, ctx, user, org):
                # Time passes while the hook waits on something external
                clock.advance(31)
                self.acquire_lock(manager)

        wf = Slow.create("s-1", clock=clock)
        await wf.set_state("a", requester)
        await wf.transition_with_permission_check("b", requester)

        assert wf.current_state == "b"
        assert wf.lock_owner == "u-mgr"
