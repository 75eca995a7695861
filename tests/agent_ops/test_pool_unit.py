"""Unit tests for the WorkerPool.

Covers spawning under the ceiling, the worker status machine, metric
updates, slot listeners and trace emission. All tests run against the
in-memory store.
"""

import asyncio
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest

from agent_ops.errors import (
    CapacityExceededError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
)
from agent_ops.events.models import TraceEventType
from agent_ops.store.memory import InMemoryRecordStore
from agent_ops.workers.models import AgentRole, MetricsDelta, Worker, WorkerStatus
from agent_ops.workers.pool import PoolConfig, WorkerPool


def run_async(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _make_pool(
    max_workers: int = 10,
    hub: Optional[AsyncMock] = None,
    store: Optional[InMemoryRecordStore] = None,
) -> WorkerPool:
    return WorkerPool(
        store or InMemoryRecordStore(Worker, "worker"),
        PoolConfig(max_workers=max_workers),
        hub=hub,
    )


async def _spawn_working(pool: WorkerPool, work_item_id: str = "wi-1") -> Worker:
    worker = await pool.spawn("implementer-template", "session-1")
    return await pool.assign_work(worker.id, work_item_id, AgentRole.IMPLEMENTER)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestPoolConfig:
    def test_defaults(self):
        config = PoolConfig()
        assert config.max_workers == 10
        assert config.context_window_limit == 200000

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_workers": 0}, {"context_window_limit": 0}, {"max_conflict_retries": 0}],
    )
    def test_rejects_non_positive_values(self, kwargs):
        with pytest.raises(InvalidArgumentError):
            PoolConfig(**kwargs)

    def test_pools_do_not_share_config(self):
        config = PoolConfig(max_workers=3)
        first = WorkerPool(InMemoryRecordStore(Worker, "worker"), config)
        second = WorkerPool(InMemoryRecordStore(Worker, "worker"), config)

        first.set_max_workers(7)

        assert first.max_workers == 7
        assert second.max_workers == 3
        assert config.max_workers == 3


# ---------------------------------------------------------------------------
# Spawn
# ---------------------------------------------------------------------------


class TestSpawn:
    def test_spawn_creates_idle_worker_with_zeroed_metrics(self):
        pool = _make_pool()

        worker = run_async(pool.spawn("implementer-template", "session-1"))

        assert worker.status == WorkerStatus.IDLE
        assert worker.template_id == "implementer-template"
        assert worker.session_id == "session-1"
        assert worker.current_work_item_id is None
        assert worker.metrics.tokens_used == 0
        assert worker.metrics.cost_usd == 0.0
        assert worker.metrics.tool_calls == 0
        assert worker.metrics.errors == 0
        assert worker.metrics.context_window_limit == 200000

    def test_spawn_uses_explicit_context_window_limit(self):
        pool = _make_pool()
        worker = run_async(pool.spawn("implementer-template", "session-1", 1000))
        assert worker.metrics.context_window_limit == 1000

    @pytest.mark.parametrize(
        "template_id,session_id",
        [("", "session-1"), ("implementer-template", ""), ("   ", "session-1")],
    )
    def test_spawn_requires_ids(self, template_id, session_id):
        pool = _make_pool()
        with pytest.raises(InvalidArgumentError, match="Template ID and session ID are required"):
            run_async(pool.spawn(template_id, session_id))

    def test_spawn_rejects_non_positive_limit(self):
        pool = _make_pool()
        with pytest.raises(InvalidArgumentError):
            run_async(pool.spawn("implementer-template", "session-1", 0))

    def test_spawn_at_ceiling_raises_capacity_exceeded(self):
        pool = _make_pool(max_workers=2)

        async def scenario():
            await pool.spawn("implementer-template", "s-1")
            await pool.spawn("implementer-template", "s-2")
            await pool.spawn("implementer-template", "s-3")

        with pytest.raises(CapacityExceededError, match=r"maximum worker limit reached \(2/2\)"):
            run_async(scenario())

    def test_concurrent_spawns_never_exceed_ceiling(self):
        pool = _make_pool(max_workers=3)

        async def scenario():
            return await asyncio.gather(
                *(pool.spawn("implementer-template", f"s-{i}") for i in range(10)),
                return_exceptions=True,
            )

        results = run_async(scenario())
        spawned = [r for r in results if isinstance(r, Worker)]
        rejected = [r for r in results if isinstance(r, CapacityExceededError)]

        assert len(spawned) == 3
        assert len(rejected) == 7
        assert pool.active_count == 3

    def test_paused_and_errored_workers_do_not_count_against_ceiling(self):
        pool = _make_pool(max_workers=2)

        async def scenario():
            first = await _spawn_working(pool, "wi-1")
            second = await _spawn_working(pool, "wi-2")
            await pool.pause(first.id)
            await pool.report_error(second.id, "boom")
            return await pool.spawn("implementer-template", "s-3")

        worker = run_async(scenario())
        assert worker.status == WorkerStatus.IDLE


# ---------------------------------------------------------------------------
# Status machine
# ---------------------------------------------------------------------------


class TestStatusMachine:
    def test_assign_work_moves_idle_to_working(self):
        pool = _make_pool()
        worker = run_async(_spawn_working(pool))

        assert worker.status == WorkerStatus.WORKING
        assert worker.current_work_item_id == "wi-1"
        assert worker.current_role == AgentRole.IMPLEMENTER

    def test_assign_work_requires_idle(self):
        pool = _make_pool()

        async def scenario():
            worker = await _spawn_working(pool)
            await pool.assign_work(worker.id, "wi-2", AgentRole.TESTER)

        with pytest.raises(InvalidStateError):
            run_async(scenario())

    def test_assign_work_rejects_unknown_role(self):
        pool = _make_pool()

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            await pool.assign_work(worker.id, "wi-1", "juggler")

        with pytest.raises(InvalidArgumentError):
            run_async(scenario())

    def test_assign_work_rejects_empty_work_item(self):
        pool = _make_pool()

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            await pool.assign_work(worker.id, "", AgentRole.TESTER)

        with pytest.raises(InvalidArgumentError):
            run_async(scenario())

    def test_complete_work_returns_to_idle(self):
        pool = _make_pool()

        async def scenario():
            worker = await _spawn_working(pool)
            return await pool.complete_work(worker.id)

        worker = run_async(scenario())
        assert worker.status == WorkerStatus.IDLE
        assert worker.current_work_item_id is None
        assert worker.current_role is None

    def test_pause_requires_working(self):
        pool = _make_pool()

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            await pool.pause(worker.id)

        with pytest.raises(InvalidStateError):
            run_async(scenario())

    def test_resume_with_work_item_returns_to_working(self):
        pool = _make_pool()

        async def scenario():
            worker = await _spawn_working(pool)
            paused = await pool.pause(worker.id)
            resumed = await pool.resume(worker.id)
            return paused, resumed

        paused, resumed = run_async(scenario())
        assert paused.status == WorkerStatus.PAUSED
        assert resumed.status == WorkerStatus.WORKING
        assert resumed.current_work_item_id == "wi-1"

    def test_resume_requires_paused(self):
        pool = _make_pool()

        async def scenario():
            worker = await _spawn_working(pool)
            await pool.resume(worker.id)

        with pytest.raises(InvalidStateError):
            run_async(scenario())

    def test_report_error_keeps_assignment_and_counts_error(self):
        pool = _make_pool()

        async def scenario():
            worker = await _spawn_working(pool)
            return await pool.report_error(worker.id, "tool crashed")

        worker = run_async(scenario())
        assert worker.status == WorkerStatus.ERROR
        assert worker.metrics.errors == 1
        assert worker.current_work_item_id == "wi-1"

    def test_terminate_clears_assignment(self):
        pool = _make_pool()

        async def scenario():
            worker = await _spawn_working(pool)
            return await pool.terminate(worker.id)

        worker = run_async(scenario())
        assert worker.status == WorkerStatus.TERMINATED
        assert worker.current_work_item_id is None
        assert worker.current_role is None

    def test_terminate_twice_is_noop(self):
        pool = _make_pool()

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            first = await pool.terminate(worker.id)
            second = await pool.terminate(worker.id)
            return first, second

        first, second = run_async(scenario())
        assert second.status == WorkerStatus.TERMINATED
        assert second.version == first.version

    @pytest.mark.parametrize("operation", ["pause", "resume", "complete_work"])
    def test_terminated_worker_cannot_leave_terminal_status(self, operation):
        pool = _make_pool()

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            await pool.terminate(worker.id)
            await getattr(pool, operation)(worker.id)

        with pytest.raises(InvalidStateError):
            run_async(scenario())

    def test_report_error_on_terminated_worker_raises(self):
        pool = _make_pool()

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            await pool.terminate(worker.id)
            await pool.report_error(worker.id, "late failure")

        with pytest.raises(InvalidStateError):
            run_async(scenario())

    @pytest.mark.parametrize("operation", ["terminate", "pause", "resume", "complete_work"])
    def test_unknown_worker_raises_not_found(self, operation):
        pool = _make_pool()
        with pytest.raises(NotFoundError):
            run_async(getattr(pool, operation)("missing"))


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestUpdateMetrics:
    def test_counters_are_added_and_context_is_replaced(self):
        pool = _make_pool()

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            await pool.update_metrics(
                worker.id,
                MetricsDelta(tokens_used=100, cost_usd=0.5, tool_calls=2, context_window_used=900),
            )
            return await pool.update_metrics(
                worker.id,
                {"tokens_used": 50, "cost_usd": 0.25, "tool_calls": 1, "context_window_used": 300},
            )

        worker = run_async(scenario())
        assert worker.metrics.tokens_used == 150
        assert worker.metrics.cost_usd == pytest.approx(0.75)
        assert worker.metrics.tool_calls == 3
        assert worker.metrics.context_window_used == 300

    def test_omitted_context_window_is_left_alone(self):
        pool = _make_pool()

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            await pool.update_metrics(worker.id, MetricsDelta(context_window_used=500))
            return await pool.update_metrics(worker.id, MetricsDelta(tokens_used=10))

        worker = run_async(scenario())
        assert worker.metrics.context_window_used == 500
        assert worker.metrics.tokens_used == 10

    def test_unknown_worker_raises_not_found(self):
        pool = _make_pool()
        with pytest.raises(NotFoundError):
            run_async(pool.update_metrics("missing", MetricsDelta(tokens_used=1)))

    def test_concurrent_updates_lose_nothing(self):
        pool = _make_pool()

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            await asyncio.gather(
                *(
                    pool.update_metrics(worker.id, MetricsDelta(tokens_used=7, tool_calls=1))
                    for _ in range(50)
                )
            )
            return await pool.get_worker(worker.id)

        worker = run_async(scenario())
        assert worker.metrics.tokens_used == 350
        assert worker.metrics.tool_calls == 50


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_get_pool_aggregates(self):
        pool = _make_pool(max_workers=5)

        async def scenario():
            first = await _spawn_working(pool)
            await pool.spawn("tester-template", "s-2")
            third = await pool.spawn("tester-template", "s-3")
            await pool.terminate(third.id)
            await pool.update_metrics(first.id, MetricsDelta(tokens_used=10, cost_usd=1.5, tool_calls=4))
            return await pool.get_pool()

        summary = run_async(scenario())
        assert summary.total == 3
        assert summary.active == 2
        assert summary.idle == 1
        assert summary.max_workers == 5
        assert summary.total_tokens_used == 10
        assert summary.total_cost_usd == pytest.approx(1.5)
        assert summary.total_tool_calls == 4

    def test_available_workers_are_idle_only(self):
        pool = _make_pool()

        async def scenario():
            await _spawn_working(pool)
            idle = await pool.spawn("implementer-template", "s-2")
            return idle, await pool.get_available_workers()

        idle, available = run_async(scenario())
        assert [w.id for w in available] == [idle.id]

    def test_workers_by_template(self):
        pool = _make_pool()

        async def scenario():
            await pool.spawn("implementer-template", "s-1")
            tester = await pool.spawn("tester-template", "s-2")
            return tester, await pool.get_workers_by_template("tester-template")

        tester, found = run_async(scenario())
        assert [w.id for w in found] == [tester.id]

    def test_get_worker_not_found(self):
        with pytest.raises(NotFoundError):
            run_async(_make_pool().get_worker("missing"))

    def test_load_hydrates_active_slots(self):
        store = InMemoryRecordStore(Worker, "worker")

        async def scenario():
            first = _make_pool(max_workers=2, store=store)
            await first.spawn("implementer-template", "s-1")
            await first.spawn("implementer-template", "s-2")

            restarted = _make_pool(max_workers=2, store=store)
            loaded = await restarted.load()
            return restarted, loaded

        restarted, loaded = run_async(scenario())
        assert loaded == 2
        assert not restarted.can_spawn_more()

    def test_set_max_workers_rejects_non_positive(self):
        with pytest.raises(InvalidArgumentError):
            _make_pool().set_max_workers(0)

    def test_lowering_ceiling_does_not_evict(self):
        pool = _make_pool(max_workers=3)

        async def scenario():
            for i in range(3):
                await pool.spawn("implementer-template", f"s-{i}")
            pool.set_max_workers(1)
            return await pool.get_pool()

        summary = run_async(scenario())
        assert summary.active == 3
        assert not pool.can_spawn_more()


# ---------------------------------------------------------------------------
# Slot listeners and trace events
# ---------------------------------------------------------------------------


class TestNotifications:
    def test_slot_listeners_fire_on_complete_and_terminate(self):
        pool = _make_pool()
        freed: List[str] = []
        pool.add_slot_listener(lambda worker: freed.append(worker.status.value))

        async def scenario():
            worker = await _spawn_working(pool)
            await pool.complete_work(worker.id)
            await pool.terminate(worker.id)

        run_async(scenario())
        assert freed == ["idle", "terminated"]

    def test_failing_listener_does_not_break_operation(self):
        pool = _make_pool()

        def broken(worker):
            raise RuntimeError("listener bug")

        pool.add_slot_listener(broken)

        async def scenario():
            worker = await pool.spawn("implementer-template", "s-1")
            return await pool.terminate(worker.id)

        assert run_async(scenario()).status == WorkerStatus.TERMINATED
        assert pool.remove_slot_listener(broken)
        assert not pool.remove_slot_listener(broken)

    def test_status_changes_emit_agent_state_events(self):
        hub = AsyncMock()
        pool = _make_pool(hub=hub)

        run_async(_spawn_working(pool))

        events = [call.args[0] for call in hub.ingest.await_args_list]
        assert [e.event_type for e in events] == [TraceEventType.AGENT_STATE] * 2
        assert events[0].payload["operation"] == "spawn"
        assert events[1].payload["operation"] == "assign_work"
        assert events[1].payload["previous_status"] == "idle"
        assert events[1].work_item_id == "wi-1"

    def test_report_error_emits_error_event(self):
        hub = AsyncMock()
        pool = _make_pool(hub=hub)

        async def scenario():
            worker = await _spawn_working(pool)
            hub.ingest.reset_mock()
            await pool.report_error(worker.id, "tool crashed")

        run_async(scenario())
        event = hub.ingest.await_args.args[0]
        assert event.event_type == TraceEventType.ERROR
        assert event.payload["message"] == "tool crashed"
        assert event.work_item_id == "wi-1"

    def test_hub_failure_does_not_fail_operation(self):
        hub = AsyncMock()
        hub.ingest.side_effect = RuntimeError("hub down")
        pool = _make_pool(hub=hub)

        worker = run_async(pool.spawn("implementer-template", "s-1"))
        assert worker.status == WorkerStatus.IDLE
