"""Unit tests for the WorkflowEngine.

Verifies the five legal transitions, blocker handling, approval gates with
per-item overrides, timestamp bookkeeping and trace emission.
"""

import asyncio
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from agent_ops.errors import (
    ApprovalRequiredError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
)
from agent_ops.events.models import TraceEventType
from agent_ops.store.memory import InMemoryRecordStore
from agent_ops.workers.models import AgentRole
from agent_ops.workflow.engine import WorkflowEngine
from agent_ops.workflow.models import (
    ApprovalPolicy,
    Transition,
    WorkItem,
    WorkItemStatus,
)


def run_async(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _make_item(
    item_id: str = "wi-1",
    status: WorkItemStatus = WorkItemStatus.BACKLOG,
    blocked_by: Optional[List[str]] = None,
    requires_approval: Optional[Dict[Transition, bool]] = None,
) -> WorkItem:
    return WorkItem(
        id=item_id,
        title="Add retry to webhook handler",
        status=status,
        blocked_by=blocked_by or [],
        requires_approval=requires_approval or {},
    )


def _make_engine(
    policy: Optional[ApprovalPolicy] = None,
    hub: Optional[AsyncMock] = None,
) -> WorkflowEngine:
    return WorkflowEngine(InMemoryRecordStore(WorkItem, "work_item"), policy, hub=hub)


def _open_policy() -> ApprovalPolicy:
    return ApprovalPolicy(defaults={t: False for t in Transition})


# ---------------------------------------------------------------------------
# can_transition
# ---------------------------------------------------------------------------


class TestCanTransition:
    @pytest.mark.parametrize(
        "current,target",
        [
            (WorkItemStatus.BACKLOG, WorkItemStatus.READY),
            (WorkItemStatus.READY, WorkItemStatus.IN_PROGRESS),
            (WorkItemStatus.IN_PROGRESS, WorkItemStatus.REVIEW),
            (WorkItemStatus.REVIEW, WorkItemStatus.DONE),
            (WorkItemStatus.REVIEW, WorkItemStatus.IN_PROGRESS),
        ],
    )
    def test_legal_transitions_are_allowed(self, current, target):
        check = _make_engine().can_transition(_make_item(status=current), target)
        assert check.allowed
        assert check.transition is not None

    @pytest.mark.parametrize(
        "current,target",
        [
            (WorkItemStatus.BACKLOG, WorkItemStatus.DONE),
            (WorkItemStatus.BACKLOG, WorkItemStatus.IN_PROGRESS),
            (WorkItemStatus.READY, WorkItemStatus.BACKLOG),
            (WorkItemStatus.DONE, WorkItemStatus.REVIEW),
            (WorkItemStatus.IN_PROGRESS, WorkItemStatus.DONE),
            (WorkItemStatus.REVIEW, WorkItemStatus.REVIEW),
        ],
    )
    def test_other_pairs_are_rejected(self, current, target):
        check = _make_engine().can_transition(_make_item(status=current), target)
        assert not check.allowed
        assert check.transition is None

    def test_blocked_item_cannot_enter_ready(self):
        item = _make_item(blocked_by=["wi-0"])
        check = _make_engine().can_transition(item, WorkItemStatus.READY)
        assert not check.allowed
        assert "wi-0" in check.reason

    def test_default_policy_flags(self):
        engine = _make_engine()
        expected = {
            (WorkItemStatus.BACKLOG, WorkItemStatus.READY): True,
            (WorkItemStatus.READY, WorkItemStatus.IN_PROGRESS): False,
            (WorkItemStatus.IN_PROGRESS, WorkItemStatus.REVIEW): False,
            (WorkItemStatus.REVIEW, WorkItemStatus.DONE): True,
            (WorkItemStatus.REVIEW, WorkItemStatus.IN_PROGRESS): True,
        }
        for (current, target), flag in expected.items():
            check = engine.can_transition(_make_item(status=current), target)
            assert check.requires_approval is flag

    def test_item_override_wins_over_policy(self):
        item = _make_item(
            status=WorkItemStatus.READY,
            requires_approval={Transition.READY_TO_IN_PROGRESS: True},
        )
        assert _make_engine().can_transition(item, WorkItemStatus.IN_PROGRESS).requires_approval

    def test_engines_hold_independent_policies(self):
        strict = _make_engine()
        relaxed = _make_engine(_open_policy())
        item = _make_item(status=WorkItemStatus.REVIEW)

        assert strict.can_transition(item, WorkItemStatus.DONE).requires_approval
        assert not relaxed.can_transition(item, WorkItemStatus.DONE).requires_approval

    def test_valid_transitions_from_review(self):
        engine = _make_engine()
        valid = engine.get_valid_transitions(_make_item(status=WorkItemStatus.REVIEW))
        assert set(valid) == {WorkItemStatus.DONE, WorkItemStatus.IN_PROGRESS}

    def test_workflow_state_reports_blockers(self):
        engine = _make_engine()
        state = engine.get_workflow_state(_make_item(blocked_by=["wi-0"]))
        assert state.is_blocked
        assert state.blockers == ["wi-0"]
        assert state.valid_transitions == []


# ---------------------------------------------------------------------------
# execute_transition
# ---------------------------------------------------------------------------


class TestExecuteTransition:
    def test_gated_transition_without_approver_fails(self):
        engine = _make_engine()

        async def scenario():
            item = await engine.create_work_item(_make_item(status=WorkItemStatus.REVIEW))
            await engine.execute_transition(item, WorkItemStatus.DONE)

        with pytest.raises(ApprovalRequiredError) as exc_info:
            run_async(scenario())
        assert exc_info.value.transition == "review_to_done"

    def test_gated_transition_with_approver_sets_completed_at(self):
        engine = _make_engine()

        async def scenario():
            item = await engine.create_work_item(_make_item(status=WorkItemStatus.REVIEW))
            return await engine.execute_transition(item, WorkItemStatus.DONE, approved_by="user-1")

        item = run_async(scenario())
        assert item.status == WorkItemStatus.DONE
        assert item.completed_at is not None

    def test_empty_approver_rejected(self):
        engine = _make_engine()

        async def scenario():
            item = await engine.create_work_item(_make_item(status=WorkItemStatus.REVIEW))
            await engine.execute_transition(item, WorkItemStatus.DONE, approved_by="  ")

        with pytest.raises(InvalidArgumentError):
            run_async(scenario())

    def test_illegal_transition_raises(self):
        engine = _make_engine()

        async def scenario():
            item = await engine.create_work_item(_make_item())
            await engine.execute_transition(item, WorkItemStatus.DONE, approved_by="user-1")

        with pytest.raises(InvalidTransitionError):
            run_async(scenario())

    def test_blocked_transition_raises(self):
        engine = _make_engine()

        async def scenario():
            item = await engine.create_work_item(_make_item(blocked_by=["wi-0"]))
            await engine.execute_transition(item, WorkItemStatus.READY, approved_by="user-1")

        with pytest.raises(InvalidTransitionError):
            run_async(scenario())

    def test_missing_item_raises_not_found(self):
        with pytest.raises(NotFoundError):
            run_async(_make_engine().execute_transition(_make_item(), WorkItemStatus.READY))

    def test_stale_item_is_revalidated(self):
        engine = _make_engine(_open_policy())

        async def scenario():
            stale = await engine.create_work_item(_make_item(status=WorkItemStatus.READY))
            await engine.execute_transition(stale, WorkItemStatus.IN_PROGRESS)
            await engine.execute_transition(stale, WorkItemStatus.IN_PROGRESS)

        with pytest.raises(InvalidTransitionError):
            run_async(scenario())

    def test_started_at_is_kept_across_rework(self):
        engine = _make_engine(_open_policy())

        async def scenario():
            item = await engine.create_work_item(_make_item(status=WorkItemStatus.READY))
            started = await engine.execute_transition(item, WorkItemStatus.IN_PROGRESS)
            await engine.execute_transition(item, WorkItemStatus.REVIEW)
            reworked = await engine.execute_transition(item, WorkItemStatus.IN_PROGRESS)
            return started, reworked

        started, reworked = run_async(scenario())
        assert started.started_at is not None
        assert reworked.started_at == started.started_at
        assert reworked.completed_at is None

    def test_full_pipeline_with_approvals(self):
        engine = _make_engine()

        async def scenario():
            item = await engine.create_work_item(_make_item())
            item = await engine.execute_transition(item, WorkItemStatus.READY, approved_by="lead")
            item = await engine.execute_transition(item, WorkItemStatus.IN_PROGRESS)
            item = await engine.execute_transition(item, WorkItemStatus.REVIEW)
            return await engine.execute_transition(item, WorkItemStatus.DONE, approved_by="lead")

        item = run_async(scenario())
        assert item.status == WorkItemStatus.DONE
        assert item.version == 5

    def test_transitions_do_not_cascade_to_parent(self):
        engine = _make_engine(_open_policy())

        async def scenario():
            await engine.create_work_item(
                WorkItem(id="parent", title="Epic", status=WorkItemStatus.IN_PROGRESS, child_ids=["child"])
            )
            child = await engine.create_work_item(
                WorkItem(id="child", title="Story", status=WorkItemStatus.REVIEW, parent_id="parent")
            )
            await engine.execute_transition(child, WorkItemStatus.DONE)
            return await engine.get_work_item("parent")

        assert run_async(scenario()).status == WorkItemStatus.IN_PROGRESS


# ---------------------------------------------------------------------------
# Overrides, assignments, queries
# ---------------------------------------------------------------------------


class TestItemUpdates:
    def test_set_and_clear_approval_override(self):
        engine = _make_engine()

        async def scenario():
            await engine.create_work_item(_make_item(status=WorkItemStatus.REVIEW))
            relaxed = await engine.set_approval_requirement("wi-1", Transition.REVIEW_TO_DONE, False)
            cleared = await engine.set_approval_requirement("wi-1", Transition.REVIEW_TO_DONE, None)
            return relaxed, cleared

        relaxed, cleared = run_async(scenario())
        assert not engine.can_transition(relaxed, WorkItemStatus.DONE).requires_approval
        assert cleared.requires_approval == {}
        assert engine.can_transition(cleared, WorkItemStatus.DONE).requires_approval

    def test_assign_agent_records_role(self):
        engine = _make_engine()

        async def scenario():
            await engine.create_work_item(_make_item())
            await engine.assign_agent("wi-1", AgentRole.IMPLEMENTER, "worker-1")
            return await engine.assign_agent("wi-1", AgentRole.REVIEWER, "worker-2")

        item = run_async(scenario())
        assert item.assigned_agents == {
            AgentRole.IMPLEMENTER: "worker-1",
            AgentRole.REVIEWER: "worker-2",
        }

    def test_find_work_for_role_skips_blocked_items(self):
        engine = _make_engine()

        async def scenario():
            await engine.create_work_item(_make_item("wi-1", WorkItemStatus.READY))
            await engine.create_work_item(_make_item("wi-2", WorkItemStatus.READY, blocked_by=["wi-9"]))
            await engine.create_work_item(_make_item("wi-3", WorkItemStatus.REVIEW))
            return (
                await engine.find_work_for_role(AgentRole.IMPLEMENTER),
                await engine.find_work_for_role(AgentRole.REVIEWER),
            )

        implementer, reviewer = run_async(scenario())
        assert [i.id for i in implementer] == ["wi-1"]
        assert [i.id for i in reviewer] == ["wi-3"]

    def test_duplicate_create_rejected(self):
        engine = _make_engine()

        async def scenario():
            await engine.create_work_item(_make_item())
            await engine.create_work_item(_make_item())

        with pytest.raises(InvalidArgumentError):
            run_async(scenario())

    def test_constructor_rejects_zero_retries(self):
        with pytest.raises(InvalidArgumentError):
            WorkflowEngine(InMemoryRecordStore(WorkItem, "work_item"), max_conflict_retries=0)


# ---------------------------------------------------------------------------
# Trace emission
# ---------------------------------------------------------------------------


class TestTraceEmission:
    def test_transition_emits_work_item_update(self):
        hub = AsyncMock()
        engine = _make_engine(hub=hub)

        async def scenario():
            item = await engine.create_work_item(_make_item(status=WorkItemStatus.REVIEW))
            hub.ingest.reset_mock()
            await engine.execute_transition(item, WorkItemStatus.DONE, approved_by="user-1")

        run_async(scenario())
        event = hub.ingest.await_args.args[0]
        assert event.event_type == TraceEventType.WORK_ITEM_UPDATE
        assert event.payload["transition"] == "review_to_done"
        assert event.payload["approved_by"] == "user-1"

    def test_refused_gate_emits_approval_required(self):
        hub = AsyncMock()
        engine = _make_engine(hub=hub)

        async def scenario():
            item = await engine.create_work_item(_make_item(status=WorkItemStatus.REVIEW))
            hub.ingest.reset_mock()
            try:
                await engine.execute_transition(item, WorkItemStatus.DONE)
            except ApprovalRequiredError:
                pass

        run_async(scenario())
        event = hub.ingest.await_args.args[0]
        assert event.event_type == TraceEventType.APPROVAL_REQUIRED
        assert event.work_item_id == "wi-1"
        assert event.payload["transition"] == "review_to_done"
