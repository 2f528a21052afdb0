"""End-to-end scenarios on a fully wired coordinator runtime."""

import asyncio

import pytest
import pytest_asyncio

from agentcoord.config import AgentCoordConfig
from agentcoord.errors import CircuitOpenError, ExternalServiceError, ServiceTimeoutError
from agentcoord.persistence import InMemoryStateStore, WorkerStatus
from agentcoord.runtime import CoordinatorRuntime
from agentcoord.utils.retry import RetryPolicy
from agentcoord.worker import TaskExecutor

SIMPLE_FLOW = {
    "name": "Two step",
    "initialState": "A",
    "states": {
        "A": {"worker": "w1", "transitions": {"success": "B", "failure": "failed"}},
        "B": {"worker": "w2", "transitions": {"success": "completed"}},
        "completed": {"final": True},
        "failed": {"final": True},
    },
}


def commands(transport, key=None):
    return [
        m
        for m in transport.published
        if m.channel == "commands" and (key is None or m.routing_key == key)
    ]


def events(transport, key):
    return [m.data for m in transport.published if m.channel == "events" and m.routing_key == key]


@pytest_asyncio.fixture
async def runtime(transport, clock, fake_sleep):
    config = AgentCoordConfig(
        monitoring={"heartbeatTimeout": 1000, "checkInterval": 500},
        circuitBreakers={"svcX": {"threshold": 3, "resetTimeout": 1000}},
    )
    runtime = CoordinatorRuntime(
        config,
        transport=transport,
        store=InMemoryStateStore(clock=clock),
        clock=clock,
        sleep=fake_sleep,
    )
    await runtime.start(monitor=False, housekeeping=False)
    runtime.registry.register_workflow("T", SIMPLE_FLOW)
    yield runtime
    await runtime.stop()


@pytest.mark.asyncio
async def test_happy_path(runtime, transport, clock, eventually):
    workflow_id = (await runtime.coordination.start_workflow("T", {"x": 1}))["workflowId"]

    first = commands(transport, "w1.execute-task")[0].data
    assert (first["workflowId"], first["taskType"], first["payload"]) == (workflow_id, "A", {"x": 1})

    clock.advance(seconds=1)
    await runtime.bus.publish_event(
        "agent.task-completed",
        {"workflowId": workflow_id, "taskId": first["taskId"], "taskType": "A",
         "transitionType": "success", "result": {"y": 2}},
    )
    await eventually(lambda: commands(transport, "w2.execute-task"))
    second = commands(transport, "w2.execute-task")[0].data
    assert second["taskType"] == "B"
    assert second["payload"] == {"x": 1, "y": 2}

    clock.advance(seconds=1)
    await runtime.bus.publish_event(
        "agent.task-completed",
        {"workflowId": workflow_id, "taskId": second["taskId"], "taskType": "B",
         "transitionType": "success", "result": {"z": 3}},
    )
    await eventually(lambda: events(transport, "workflow.completed"))

    record = await runtime.store.get(workflow_id)
    assert record.status == "completed"
    assert len(record.history) == 3
    assert record.history[-1].to_state == "completed"
    assert record.payload == {"x": 1, "y": 2, "z": 3}
    assert events(transport, "workflow.completed")[0]["duration"] > 0


@pytest.mark.asyncio
async def test_transient_retry(runtime, transport, eventually):
    runtime.registry.register_workflow(
        "single",
        {
            "initialState": "A",
            "states": {
                "A": {"worker": "w1", "transitions": {"success": "completed", "failure": "failed"}},
                "completed": {"final": True},
                "failed": {"final": True},
            },
        },
    )
    failures = iter([ServiceTimeoutError("slow"), ServiceTimeoutError("slow")])

    async def handler(task):
        error = next(failures, None)
        if error is not None:
            raise error
        return {"done": True}

    executor = TaskExecutor(runtime.bus, "w1", handler, errors=runtime.errors)
    await executor.start()
    workflow_id = (await runtime.coordination.start_workflow("single", {}))["workflowId"]

    await eventually(lambda: events(transport, "workflow.completed"))
    assert executor.invocations == 3
    assert (await runtime.store.get(workflow_id)).status == "completed"
    assert runtime.recovery.list_dead_letters() == []
    await executor.stop()


@pytest.mark.asyncio
async def test_unresponsive_detection(runtime, transport, clock, eventually):
    await runtime.health.handle_heartbeat({"workerId": "w1", "status": "online"})
    clock.advance(milliseconds=1500)

    assert await runtime.health.check_workers_health() == ["w1"]
    changed = events(transport, "agent.status-changed")
    assert (changed[-1]["workerId"], changed[-1]["status"]) == ("w1", "unresponsive")

    await eventually(lambda: commands(transport, "w1.recover"))
    await eventually(lambda: runtime.health.get_worker("w1").recovery_attempts == 1)
    assert runtime.health.get_worker("w1").status == WorkerStatus.UNRESPONSIVE


@pytest.mark.asyncio
async def test_chronic_failure_isolation(runtime, transport, eventually):
    await runtime.health.register_worker("w2", {"type": "w2"})
    failure = {"workerId": "w2", "error": "restart failed", "category": "agent"}

    for attempt in range(1, 4):
        await runtime.bus.publish_event("agent.failed", failure)
        await eventually(lambda: len(runtime.recovery.recovery_history("w2")) == attempt)

    await runtime.bus.publish_event("agent.failed", failure)
    await eventually(lambda: runtime.health.get_worker("w2").status == WorkerStatus.ISOLATED)

    await runtime.bus.publish_event("agent.failed", failure)
    await asyncio.sleep(0.05)

    assert len(commands(transport, "w2.restart")) == 3
    failed = events(transport, "agent.recovery-failed")
    assert [f["reason"] for f in failed] == ["MAX_ATTEMPTS_EXCEEDED"]
    entries = runtime.recovery.list_dead_letters()
    assert len(entries) == 1
    assert entries[0].worker_id == "w2"


@pytest.mark.asyncio
async def test_circuit_breaker_cycle(runtime, clock):
    runtime.errors.set_retry_policy("single-shot", RetryPolicy(max_retries=0))
    calls = 0

    async def failing():
        nonlocal calls
        calls += 1
        raise ExternalServiceError("svcX down")

    for _ in range(3):
        with pytest.raises(ExternalServiceError):
            await runtime.errors.execute_with_retry(failing, "single-shot", service="svcX")
    breaker = runtime.errors.get_circuit_breaker("svcX")
    assert breaker.state == "open"

    with pytest.raises(CircuitOpenError) as excinfo:
        await runtime.errors.execute_with_retry(failing, "single-shot", service="svcX")
    assert excinfo.value.code == "SERVICE_UNAVAILABLE"
    assert calls == 3

    clock.advance(milliseconds=1001)
    states = []

    async def probe():
        states.append(breaker.state)
        return "ok"

    assert await runtime.errors.execute_with_retry(probe, "single-shot", service="svcX") == "ok"
    assert states == ["half-open"]
    assert breaker.state == "closed"
    assert breaker.failures == 0


@pytest.mark.asyncio
async def test_unknown_transition_label(runtime, transport, eventually):
    async def handler(task):
        return {"transitionType": "weird"}

    executor = TaskExecutor(runtime.bus, "w1", handler, errors=runtime.errors)
    await executor.start()
    workflow_id = (await runtime.coordination.start_workflow("T", {}))["workflowId"]

    await eventually(lambda: events(transport, "workflow.failed"))
    record = await runtime.store.get(workflow_id)
    assert record.state == "failed"
    assert record.status == "failed"
    assert record.history[-1].label == "failure"
    assert commands(transport, "w2.execute-task") == []
    await executor.stop()
