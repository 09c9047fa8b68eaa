"""Tests for the Workflow state machine (workflow_kernel/services/workflow.py)."""

import threading
from datetime import timedelta

import pytest

from workflow_kernel.domain.records import (
    HistoryRecord,
    ResetRecord,
    StateChangedEvent,
    WorkflowEvent,
)
from workflow_kernel.domain.state_node import StateNode, Transition
from workflow_kernel.exceptions import (
    HookExecutionError,
    InvalidStateNodeError,
    InvalidTransitionError,
    PermissionDeniedError,
    UnknownStateError,
    WorkflowConfigurationError,
)
from workflow_kernel.services.workflow import Workflow

# ---------------------------------------------------------------------------
# Construction contract
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_abstract_base_not_instantiable(self):
        with pytest.raises(TypeError):
            Workflow("w-1")

    def test_subclass_missing_define_states(self):
        class Incomplete(Workflow):
            def get_initial_state(self):
                return "start"

        with pytest.raises(TypeError):
            Incomplete.create("w-1")

    def test_create_requires_registered_initial_state(self):
        class NoStates(Workflow):
            def get_initial_state(self):
                return "start"

            def define_states(self):
                pass

        with pytest.raises(WorkflowConfigurationError) as exc_info:
            NoStates.create("w-1")
        assert exc_info.value.workflow_type == "NoStates"

    def test_create_registers_states(self, workflow):
        assert set(workflow.states) == {"draft", "review", "done"}
        assert workflow.current_state is None
        assert workflow.type == "DocumentApprovalWorkflow"

    def test_add_state_rejects_non_node(self, workflow):
        with pytest.raises(InvalidStateNodeError) as exc_info:
            workflow.add_state("archived", {"transitions": []})
        assert exc_info.value.received_type == "dict"

    def test_add_state_rejects_empty_name(self, workflow):
        with pytest.raises(WorkflowConfigurationError):
            workflow.add_state("", StateNode("x"))

    def test_add_state_emits_state_added(self, workflow):
        seen = []
        workflow.on(WorkflowEvent.STATE_ADDED, seen.append)
        node = StateNode("archived")
        workflow.add_state("archived", node)
        assert seen[0].state_name == "archived"
        assert seen[0].state_node is node

    def test_states_view_is_read_only(self, workflow):
        with pytest.raises(TypeError):
            workflow.states["x"] = StateNode("x")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


class TestSetState:
    @pytest.mark.asyncio
    async def test_first_transition_skips_guard_check(self, workflow, requester):
        await workflow.set_state("review", requester)
        assert workflow.current_state == "review"

    @pytest.mark.asyncio
    async def test_unknown_target(self, workflow, requester):
        with pytest.raises(UnknownStateError) as exc_info:
            await workflow.set_state("archived", requester)
        assert str(exc_info.value) == "State 'archived' not found"
        assert workflow.current_state is None

    @pytest.mark.asyncio
    async def test_no_edge_rejected(self, workflow, requester, manager, manager_org):
        await workflow.set_state("draft", requester)
        with pytest.raises(InvalidTransitionError):
            await workflow.set_state("done", manager, manager_org)
        assert workflow.current_state == "draft"
        assert len(workflow.history) == 1

    @pytest.mark.asyncio
    async def test_permission_denied_leaves_state(self, workflow, requester, analyst, analyst_org):
        await workflow.set_state("review", requester)
        before = workflow.serialize()
        with pytest.raises(PermissionDeniedError) as exc_info:
            await workflow.set_state(
                "done", analyst, analyst_org, {"approval_comments": "fine"}
            )
        assert str(exc_info.value) == "User does not have permission to access state 'done'"
        assert workflow.serialize() == before

    @pytest.mark.asyncio
    async def test_returns_self(self, workflow, requester):
        assert await workflow.set_state("draft", requester) is workflow

    @pytest.mark.asyncio
    async def test_hooks_run_exit_then_entry(self, clock, requester):
        calls = []

        class Ordered(Workflow):
            def get_initial_state(self):
                return "a"

            def define_states(self):
                self.add_state(
                    "a",
                    StateNode(
                        "a",
                        transitions=[Transition("b")],
                        on_exit=lambda ctx, u, o: calls.append("exit a"),
                    ),
                )
                self.add_state(
                    "b",
                    StateNode("b", on_enter=lambda ctx, u, o: calls.append("enter b")),
                )

        wf = Ordered.create("o-1", clock=clock)
        await wf.set_state("a", requester)
        await wf.set_state("b", requester)
        assert calls == ["exit a", "enter b"]

    @pytest.mark.asyncio
    async def test_entry_hook_mutates_context(self, workflow, requester):
        await workflow.set_state("draft", requester)
        await workflow.set_state("review", requester)
        assert workflow.context["submitted_by"] == "u-req"


class TestGuardEvaluation:
    @pytest.mark.asyncio
    async def test_unset_field_blocks_until_set(self, workflow, requester):
        await workflow.set_state("review", requester)
        review = workflow.states["review"]
        assert not review.can_transition_to("done", workflow.context)

        workflow.update_context({"approval_comments": "Looks good"})
        assert review.can_transition_to("done", workflow.context)

    @pytest.mark.asyncio
    async def test_transition_context_feeds_guards(self, workflow, requester, manager, manager_org):
        await workflow.set_state("review", requester)
        with pytest.raises(InvalidTransitionError):
            await workflow.set_state("done", manager, manager_org)
        await workflow.set_state(
            "done", manager, manager_org, {"approval_comments": "Approved"}
        )
        assert workflow.current_state == "done"
        assert "approval_comments" not in workflow.context


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_draft_review_done(
        self, workflow, requester, analyst, analyst_org, manager, manager_org
    ):
        await workflow.set_state("draft", requester)

        # Requestor-only user can submit
        await workflow.transition_with_permission_check("review", analyst, analyst_org)
        assert workflow.current_state == "review"

        with pytest.raises(PermissionDeniedError):
            await workflow.transition_with_permission_check(
                "done", analyst, analyst_org, {"approval_comments": "ok"}
            )
        assert workflow.current_state == "review"
        assert not workflow.is_locked

        await workflow.transition_with_permission_check(
            "done", manager, manager_org, {"approval_comments": "ok"}
        )
        assert workflow.current_state == "done"
        assert workflow.is_terminal

        transitions = workflow.history[1:]
        assert [r.to_state for r in transitions] == ["review", "done"]
        assert workflow.history[0].from_state is None

    @pytest.mark.asyncio
    async def test_cycle_back_to_draft(self, workflow, requester):
        await workflow.set_state("draft", requester)
        await workflow.set_state("review", requester)
        await workflow.set_state("draft", requester)
        await workflow.set_state("review", requester)
        assert [r.to_state for r in workflow.history] == ["draft", "review", "draft", "review"]


class TestAvailableActions:
    @pytest.mark.asyncio
    async def test_no_current_state(self, workflow, requester):
        assert workflow.get_available_actions_for_user(requester, None) == []

    @pytest.mark.asyncio
    async def test_guard_and_permission_filtering(self, workflow, requester, manager, manager_org):
        await workflow.set_state("review", requester)
        assert [a.action for a in workflow.get_available_actions_for_user(manager, manager_org)] == [
            "reject"
        ]

        workflow.update_context({"approval_comments": "ok"})
        actions = workflow.get_available_actions_for_user(manager, manager_org)
        assert [a.action for a in actions] == ["approve", "reject"]
        assert actions[0].requires_confirmation is True
        assert actions[0].label == "Approve"

        # Requestor cannot enter "done": the action is omitted
        assert [a.target for a in workflow.get_available_actions_for_user(requester, None)] == [
            "draft"
        ]


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestHistory:
    @pytest.mark.asyncio
    async def test_one_record_per_transition(self, workflow, requester, clock):
        for i, target in enumerate(["draft", "review", "draft"], start=1):
            clock.advance(5)
            await workflow.set_state(target, requester, None, {"step": i})
            assert len(workflow.history) == i

    @pytest.mark.asyncio
    async def test_record_contents(self, clock, requester, document_workflow_cls):
        wf = document_workflow_cls.create("doc-2", clock=clock, metadata={"priority": "high"})
        ctx = {"note": "first"}
        await wf.set_state("draft", requester, None, ctx)
        ctx["note"] = "mutated later"

        record = wf.history[0]
        assert isinstance(record, HistoryRecord)
        assert record.from_state is None
        assert record.to_state == "draft"
        assert record.timestamp == clock.now_utc()
        assert record.user.name == "Alice Smith"
        assert record.user.username == "asmith"
        assert record.context == {"note": "first"}
        assert record.metadata == {"priority": "high"}

    @pytest.mark.asyncio
    async def test_history_view_is_a_copy(self, workflow, requester):
        await workflow.set_state("draft", requester)
        assert isinstance(workflow.history, tuple)

    @pytest.mark.asyncio
    async def test_updated_at_moves_with_clock(self, workflow, requester, clock):
        clock.advance(60)
        await workflow.set_state("draft", requester)
        assert workflow.updated_at == workflow.created_at + timedelta(seconds=60)


class TestReset:
    @pytest.mark.asyncio
    async def test_archives_prior_history(self, workflow, requester, manager, manager_org):
        await workflow.set_state("draft", requester)
        await workflow.set_state("review", requester)
        await workflow.set_state("done", manager, manager_org, {"approval_comments": "ok"})
        original = workflow.history

        await workflow.reset(manager, manager_org, {"reason": "reopened"})

        assert len(workflow.history) == 2
        marker, entry = workflow.history
        assert isinstance(marker, ResetRecord)
        assert marker.type == "reset"
        assert marker.previous_history == original
        assert marker.context == {"reason": "reopened"}
        assert entry.to_state == "draft"
        assert workflow.current_state == "draft"
        assert workflow.context["reason"] == "reopened"

    @pytest.mark.asyncio
    async def test_emits_workflow_reset(self, workflow, requester):
        seen = []
        workflow.on("workflowReset", seen.append)
        await workflow.set_state("review", requester)
        await workflow.reset(requester, None, {"reason": "restart"})
        assert seen[0].reset_context == {"reason": "restart"}
        assert seen[0].user is requester

    @pytest.mark.asyncio
    async def test_failed_reset_restores_everything(self, clock, requester):
        class Fragile(Workflow):
            def get_initial_state(self):
                return "start"

            def define_states(self):
                self.add_state(
                    "start",
                    StateNode(
                        "start",
                        transitions=[Transition("end")],
                        on_enter=self._enter_start,
                    ),
                )
                self.add_state("end", StateNode("end"))

            def _enter_start(self, ctx, user, org):
                if ctx.get("explode"):
                    raise RuntimeError("cannot re-enter")

        wf = Fragile.create("f-1", clock=clock)
        await wf.set_state("start", requester)
        await wf.set_state("end", requester)
        before = wf.serialize()

        with pytest.raises(HookExecutionError):
            await wf.reset(requester, None, {"explode": True})
        assert wf.serialize() == before


# ---------------------------------------------------------------------------
# Hook failure rollback
# ---------------------------------------------------------------------------


class TestHookRollback:
    def _workflow(self, clock, *, on_exit=None, on_enter=None):
        class Hooked(Workflow):
            def get_initial_state(self):
                return "a"

            def define_states(self):
                self.add_state("a", StateNode("a", transitions=[Transition("b")], on_exit=on_exit))
                self.add_state("b", StateNode("b", on_enter=on_enter))

        return Hooked.create("h-1", clock=clock)

    @pytest.mark.asyncio
    async def test_entry_hook_failure_rolls_back(self, clock, requester, capture_logs):
        def enter_b(ctx, user, org):
            ctx["half_written"] = True
            raise ConnectionError("ticketing system down")

        wf = self._workflow(clock, on_enter=enter_b)
        await wf.set_state("a", requester)
        changed = []
        wf.on(WorkflowEvent.STATE_CHANGED, changed.append)
        clock.advance(10)
        before = wf.serialize()

        with pytest.raises(HookExecutionError) as exc_info:
            await wf.set_state("b", requester)

        err = exc_info.value
        assert err.hook == "on_enter"
        assert err.state_name == "b"
        assert isinstance(err.__cause__, ConnectionError)
        assert wf.serialize() == before
        assert "half_written" not in wf.context
        assert changed == []
        assert any(r.getMessage() == "workflow_hook_failed" for r in capture_logs)

    @pytest.mark.asyncio
    async def test_exit_hook_failure_rolls_back(self, clock, requester):
        async def exit_a(ctx, user, org):
            raise ValueError("cannot leave")

        wf = self._workflow(clock, on_exit=exit_a)
        await wf.set_state("a", requester)
        with pytest.raises(HookExecutionError) as exc_info:
            await wf.set_state("b", requester)
        assert exc_info.value.hook == "on_exit"
        assert wf.current_state == "a"
        assert len(wf.history) == 1

    @pytest.mark.asyncio
    async def test_uncopyable_context_value_does_not_block_transition(self, clock, requester):
        class Simple(Workflow):
            def get_initial_state(self):
                return "a"

            def define_states(self):
                self.add_state("a", StateNode("a", transitions=[Transition("b")]))
                self.add_state("b", StateNode("b"))

        guard_lock = threading.Lock()
        wf = Simple.create("w", clock=clock, context={"guard_lock": guard_lock})
        await wf.set_state("a", requester)
        await wf.set_state("b", requester)
        assert wf.current_state == "b"
        assert wf.context["guard_lock"] is guard_lock

    @pytest.mark.asyncio
    async def test_uncopyable_context_still_restores_top_level(self, clock, requester):
        def enter_b(ctx, user, org):
            ctx["half_written"] = True
            ctx["client"] = "replaced"
            raise ConnectionError("ticketing system down")

        wf = self._workflow(clock, on_enter=enter_b)
        client = threading.Lock()
        wf.update_context({"client": client})
        await wf.set_state("a", requester)

        with pytest.raises(HookExecutionError):
            await wf.set_state("b", requester)
        assert wf.current_state == "a"
        assert "half_written" not in wf.context
        assert wf.context["client"] is client

    @pytest.mark.asyncio
    async def test_lock_released_after_hook_failure(self, clock, requester):
        def enter_b(ctx, user, org):
            raise RuntimeError("boom")

        wf = self._workflow(clock, on_enter=enter_b)
        await wf.set_state("a", requester)
        with pytest.raises(HookExecutionError):
            await wf.transition_with_permission_check("b", requester)
        assert not wf.is_locked


# ---------------------------------------------------------------------------
# Context, events, introspection
# ---------------------------------------------------------------------------


class TestContext:
    def test_update_context_merges_and_emits(self, workflow, requester, clock):
        seen = []
        workflow.on(WorkflowEvent.CONTEXT_UPDATED, seen.append)
        workflow.update_context({"a": 1})
        clock.advance(1)
        workflow.update_context({"b": 2}, requester)

        assert workflow.context == {"a": 1, "b": 2}
        assert seen[1].old_context == {"a": 1}
        assert seen[1].new_context == {"a": 1, "b": 2}
        assert seen[1].user is requester
        assert workflow.updated_at == clock.now_utc()

    def test_update_context_ignores_lock(self, workflow, manager, requester):
        workflow.acquire_lock(manager)
        workflow.update_context({"a": 1}, requester)
        assert workflow.context["a"] == 1


class TestEvents:
    @pytest.mark.asyncio
    async def test_state_changed_payload(self, workflow, requester):
        seen = []
        workflow.on(WorkflowEvent.STATE_CHANGED, seen.append)
        await workflow.set_state("draft", requester, None, {"x": 1})
        event = seen[0]
        assert isinstance(event, StateChangedEvent)
        assert event.workflow is workflow
        assert event.from_state is None
        assert event.to_state == "draft"
        assert event.context == {"x": 1}

    @pytest.mark.asyncio
    async def test_listener_error_isolated(self, workflow, requester, capture_logs):
        seen = []

        def bad(event):
            raise RuntimeError("subscriber bug")

        workflow.on("stateChanged", bad)
        workflow.on("stateChanged", seen.append)
        await workflow.set_state("draft", requester)

        assert workflow.current_state == "draft"
        assert len(seen) == 1
        assert any(r.getMessage() == "workflow_listener_error" for r in capture_logs)

    @pytest.mark.asyncio
    async def test_off_unsubscribes(self, workflow, requester):
        seen = []
        workflow.on("stateChanged", seen.append)
        workflow.off("stateChanged", seen.append)
        await workflow.set_state("draft", requester)
        assert seen == []

    def test_off_unknown_listener_is_noop(self, workflow):
        workflow.off("stateChanged", print)


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_current_state_info(self, workflow, requester, clock):
        assert workflow.get_current_state() is None
        await workflow.set_state("draft", requester)
        entered = clock.now_utc()
        clock.advance(90)

        info = workflow.get_current_state()
        assert info.name == "draft"
        assert info.node is workflow.states["draft"]
        assert info.entered_at == entered
        assert info.time_in_state == timedelta(seconds=90)
        assert workflow.get_time_in_current_state() == timedelta(seconds=90)

    @pytest.mark.asyncio
    async def test_validate(self, clock, requester):
        class Validated(Workflow):
            def get_initial_state(self):
                return "s"

            def define_states(self):
                self.add_state(
                    "s",
                    StateNode("s", validations=[lambda ctx: bool(ctx.get("title")) or "Title required"]),
                )

        wf = Validated.create("v-1", clock=clock)
        assert await wf.validate() == ["Workflow has no current state"]
        await wf.set_state("s", requester)
        assert await wf.validate() == ["Title required"]
        wf.update_context({"title": "Budget"})
        assert await wf.validate() == []

    @pytest.mark.asyncio
    async def test_summary(self, workflow, requester, clock):
        await workflow.set_state("draft", requester)
        clock.advance(30)
        summary = workflow.get_summary()
        assert summary["id"] == "doc-1"
        assert summary["current_state"] == "draft"
        assert summary["state_count"] == 3
        assert summary["history_count"] == 1
        assert summary["time_in_current_state"] == 30.0
        assert summary["created_by"] == "u-req"
        assert summary["is_locked"] is False

    def test_describe(self, workflow):
        assert workflow.describe() == {
            "draft": ["review"],
            "review": ["done", "draft"],
            "done": [],
        }


class TestSerialization:
    @pytest.mark.asyncio
    async def test_idempotent(self, workflow, requester):
        workflow.on("stateChanged", lambda e: None)
        await workflow.set_state("draft", requester, None, {"nested": {"a": [1, 2]}})
        first = workflow.serialize()
        second = workflow.serialize()
        assert first == second
        assert first is not second
        assert "listeners" not in first

    @pytest.mark.asyncio
    async def test_snapshot_is_detached(self, workflow, requester):
        workflow.update_context({"items": [1]})
        snapshot = workflow.serialize()
        workflow.context["items"].append(2)
        assert snapshot["context"] == {"items": [1]}

    @pytest.mark.asyncio
    async def test_plain_data(self, workflow, requester):
        await workflow.set_state("draft", requester)
        data = workflow.serialize()
        assert data["history"][0]["type"] == "transition"
        assert data["history"][0]["user"] == {
            "id": "u-req",
            "username": "asmith",
            "name": "Alice Smith",
        }
        assert isinstance(data["created_at"], str)
