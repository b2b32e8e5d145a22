"""Tests for lifecycle event sinks."""

import asyncio

import pytest

from taskwright.contracts import LifecycleEvent
from taskwright.events import InMemoryEventSink, get_event_sink


def _event(name="step.completed", entity_id="s1"):
    return LifecycleEvent(
        name=name, entity_type="step", entity_id=entity_id, task_id="t1",
        from_state="in_progress", to_state="complete",
    )


@pytest.mark.asyncio
async def test_inmemory_sink_records_and_filters():
    sink = InMemoryEventSink()
    await sink.publish(_event())
    await sink.publish(_event("step.failed", "s2"))

    assert len(sink.events) == 2
    assert [e.entity_id for e in sink.named("step.failed")] == ["s2"]
    assert [e.name for e in sink.for_entity("s1")] == ["step.completed"]


@pytest.mark.asyncio
async def test_listeners_receive_matching_events():
    sink = InMemoryEventSink()
    completed, everything = [], []
    sink.add_listener("step.completed", completed.append)
    sink.add_listener("*", everything.append)

    await sink.publish(_event())
    await sink.publish(_event("step.failed"))

    assert len(completed) == 1
    assert len(everything) == 2


@pytest.mark.asyncio
async def test_subscribe_yields_published_events():
    sink = InMemoryEventSink()
    received = []

    async def consume():
        async for event in sink.subscribe(lifespan=1):
            received.append(event)
            break

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await sink.publish(_event())
    await consumer

    assert [e.name for e in received] == ["step.completed"]


def test_event_json_round_trip():
    event = _event()
    assert LifecycleEvent.from_json(event.to_json()) == event


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError):
        get_event_sink("kafka")


@pytest.mark.asyncio
async def test_redis_sink_import():
    """Redis sink can be constructed when the redis package is available."""
    try:
        from taskwright.events.redis import RedisEventSink

        sink = RedisEventSink(channel_prefix="tw-test")
    except ImportError:
        pytest.skip("Redis not available")

    assert sink.host == "localhost"
    assert sink.channel_prefix == "tw-test"
    try:
        await sink.connect()
    except Exception:
        pytest.skip("Redis server not available")
    try:
        await sink.publish(_event())
    finally:
        await sink.disconnect()
