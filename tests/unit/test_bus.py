"""MessageBus behaviour on the in-memory transport."""

import asyncio

import pytest

from agentcoord.bus import MessageBus
from agentcoord.contracts import Heartbeat
from agentcoord.errors import MessagingError, ServiceTimeoutError


@pytest.mark.asyncio
async def test_event_fan_out_to_matching_subscribers(bus, eventually):
    exact, wildcard, other = [], [], []

    def collect(into):
        async def handler(data, message):
            into.append((message.routing_key, data))

        return handler

    await bus.subscribe_to_event("agent.heartbeat", collect(exact))
    await bus.subscribe_to_event("agent.*", collect(wildcard))
    await bus.subscribe_to_event("workflow.*", collect(other))

    await bus.publish_event("agent.heartbeat", Heartbeat(worker_id="w1", status="online"))

    await eventually(lambda: exact and wildcard)
    assert exact[0][0] == "agent.heartbeat"
    assert exact[0][1]["workerId"] == "w1"
    assert wildcard == exact
    assert other == []
    await bus.close()


@pytest.mark.asyncio
async def test_commands_compete_and_survive_until_consumed(bus, eventually):
    await bus.publish_command("writer.execute-task", {"taskId": "t1"})
    received = []

    async def first(data, message):
        received.append(("first", data["taskId"]))

    async def second(data, message):
        received.append(("second", data["taskId"]))

    await bus.subscribe_to_command("writer.execute-task", first)
    await bus.subscribe_to_command("writer.execute-task", second)
    await bus.publish_command("writer.execute-task", {"taskId": "t2"})

    await eventually(lambda: len(received) == 2)
    await asyncio.sleep(0.05)
    assert sorted(task for _, task in received) == ["t1", "t2"]
    await bus.close()


@pytest.mark.asyncio
async def test_failing_handler_is_redelivered_then_dropped(transport, eventually):
    bus = MessageBus(transport, max_redeliveries=2)
    calls = []

    async def handler(data, message):
        calls.append(message.message_id)
        raise RuntimeError("boom")

    await bus.subscribe_to_command("job", handler)
    await bus.publish_command("job", {})

    await eventually(lambda: len(calls) == 3)
    await asyncio.sleep(0.05)
    assert len(calls) == 3
    assert len(set(calls)) == 1
    assert transport.pending() == 0
    await bus.close()


@pytest.mark.asyncio
async def test_handler_success_acks(bus, transport, eventually):
    done = []

    async def handler(data, message):
        done.append(data)

    await bus.subscribe_to_command("job", handler)
    await bus.publish_command("job", {"n": 1})
    await eventually(lambda: done)
    await eventually(lambda: transport.pending() == 0)
    await bus.close()


@pytest.mark.asyncio
async def test_prefetch_bounds_concurrent_handlers(transport, eventually):
    bus = MessageBus(transport, prefetch=2)
    running = 0
    peak = 0
    release = asyncio.Event()
    finished = []

    async def handler(data, message):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await release.wait()
        running -= 1
        finished.append(data["n"])

    await bus.subscribe_to_command("job", handler)
    for n in range(5):
        await bus.publish_command("job", {"n": n})

    await eventually(lambda: running == 2)
    await asyncio.sleep(0.05)
    assert peak == 2
    release.set()
    await eventually(lambda: len(finished) == 5)
    assert peak == 2
    await bus.close()


@pytest.mark.asyncio
async def test_request_reply(bus):
    async def answer(data, message):
        return {"echo": data["value"]}

    await bus.subscribe_to_query("echo", answer)
    reply = await bus.request("echo", {"value": 42}, timeout=1)
    assert reply == {"echo": 42}
    await bus.close()


@pytest.mark.asyncio
async def test_request_without_responder_times_out(bus):
    with pytest.raises(ServiceTimeoutError):
        await bus.request("nobody.home", {}, timeout=0.05)
    await bus.close()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(bus, eventually):
    received = []

    async def handler(data, message):
        received.append(data)

    subscription = await bus.subscribe_to_event("agent.heartbeat", handler)
    assert subscription.active
    await subscription.unsubscribe()
    await subscription.unsubscribe()
    assert not subscription.active

    await bus.publish_event("agent.heartbeat", {"workerId": "w1"})
    await asyncio.sleep(0.05)
    assert received == []
    assert bus.status()["subscriptions"] == []
    await bus.close()


@pytest.mark.asyncio
async def test_publish_on_disconnected_transport_raises(bus, transport):
    await bus.close()
    assert not bus.is_connected
    with pytest.raises(MessagingError):
        await bus.publish_event("agent.heartbeat", {})
    await bus.connect()
    assert await bus.publish_event("agent.heartbeat", {})
    await bus.close()
