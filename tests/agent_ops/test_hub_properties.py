"""Property-based tests for Event Hub retention and fan-out.

- Property 7: After any number of ingests, exactly min(n, limit) events
  are retained, they are the newest ones, and each is strictly newer than
  every trimmed event even when producers reuse timestamps
- Property 8: Every live subscriber receives every event exactly once, in
  ingestion order, regardless of other subscribers failing

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List

from hypothesis import given, settings, strategies as st

from agent_ops.events.hub import EventHub, TraceFilter
from agent_ops.events.models import TraceEvent, TraceEventType
from agent_ops.events.subscribers import TraceSubscriber
from agent_ops.store.memory import InMemoryTraceStore


def run_async(coro):
    return asyncio.run(coro)


class CollectingSubscriber(TraceSubscriber):
    def __init__(self) -> None:
        self.ids: List[str] = []

    async def push(self, event: TraceEvent) -> None:
        self.ids.append(event.id)


class BrokenSubscriber(TraceSubscriber):
    async def push(self, event: TraceEvent) -> None:
        raise RuntimeError("receiver gone")


event_types = st.sampled_from(list(TraceEventType))


class TestRetentionProperty:
    """Property 7: retention keeps exactly the newest events."""

    @given(
        limit=st.integers(min_value=1, max_value=20),
        types=st.lists(event_types, min_size=0, max_size=50),
    )
    @settings(max_examples=100)
    def test_retains_newest_min_n_limit(self, limit, types):
        async def scenario():
            store = InMemoryTraceStore()
            hub = EventHub(store, retention_limit=limit)
            ingested = []
            for event_type in types:
                ingested.append(await hub.ingest(TraceEvent(event_type=event_type, worker_id="w")))
            retained = await hub.get_traces(TraceFilter(limit=1000))
            return ingested, retained, await store.count()

        ingested, retained, count = run_async(scenario())
        expected = min(len(types), limit)
        assert count == expected
        assert [e.id for e in retained] == [e.id for e in reversed(ingested)][:expected]

    @given(
        limit=st.integers(min_value=1, max_value=10),
        offsets=st.lists(st.integers(min_value=0, max_value=3), min_size=1, max_size=30),
    )
    @settings(max_examples=100)
    def test_retained_strictly_newer_with_shared_timestamps(self, limit, offsets):
        """Producers reusing a timestamp never blur the retention boundary."""
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)

        async def scenario():
            hub = EventHub(InMemoryTraceStore(), retention_limit=limit)
            ingested = []
            for offset in offsets:
                ingested.append(
                    await hub.ingest(
                        TraceEvent(
                            event_type=TraceEventType.TOOL_CALL,
                            timestamp=base + timedelta(seconds=offset),
                        )
                    )
                )
            return ingested, await hub.get_traces(TraceFilter(limit=1000))

        ingested, retained = run_async(scenario())
        retained_ids = {e.id for e in retained}
        trimmed = [e for e in ingested if e.id not in retained_ids]

        assert len(retained) == min(len(offsets), limit)
        assert len({e.timestamp for e in retained}) == len(retained)
        if trimmed:
            assert min(e.timestamp for e in retained) > max(e.timestamp for e in trimmed)


class TestFanOutProperty:
    """Property 8: exactly-once, in-order delivery to each live subscriber."""

    @given(
        types=st.lists(event_types, min_size=1, max_size=30),
        receivers=st.integers(min_value=1, max_value=4),
        broken=st.integers(min_value=0, max_value=3),
    )
    @settings(max_examples=100)
    def test_each_subscriber_sees_each_event_once(self, types, receivers, broken):
        async def scenario():
            hub = EventHub(InMemoryTraceStore(), retention_limit=1000)
            collectors = [CollectingSubscriber() for _ in range(receivers)]
            for collector in collectors:
                hub.subscribe(collector)
            for _ in range(broken):
                hub.subscribe(BrokenSubscriber())
            ingested = [await hub.ingest(TraceEvent(event_type=t)) for t in types]
            await hub.flush()
            return collectors, ingested

        collectors, ingested = run_async(scenario())
        expected = [e.id for e in ingested]
        for collector in collectors:
            assert collector.ids == expected
