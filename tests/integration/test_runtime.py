"""Coordinator runtime wiring, queries and housekeeping."""

from datetime import timedelta

import pytest

from agentcoord.config import AgentCoordConfig
from agentcoord.constants import (
    QUERY_DEAD_LETTERS,
    QUERY_HEALTH_SUMMARY,
    QUERY_START_WORKFLOW,
    QUERY_WORKFLOW_STATUS,
)
from agentcoord.errors import DatabaseError
from agentcoord.persistence import InMemoryStateStore
from agentcoord.runtime import CoordinatorRuntime


class OutageStore(InMemoryStateStore):
    def __init__(self, clock):
        super().__init__(clock=clock)
        self.down = False

    async def purge_terminal(self, older_than):
        if self.down:
            raise DatabaseError("connection refused")
        return await super().purge_terminal(older_than)


def make_runtime(transport, clock, fake_sleep, store=None, **config):
    return CoordinatorRuntime(
        AgentCoordConfig(**config),
        transport=transport,
        store=store or InMemoryStateStore(clock=clock),
        clock=clock,
        sleep=fake_sleep,
    )


@pytest.mark.asyncio
async def test_start_registers_defaults_and_yaml_workflows(tmp_path, transport, clock, fake_sleep):
    path = tmp_path / "workflows.yaml"
    path.write_text(
        """
translation:
  initialState: translate
  states:
    translate: {worker: translator, transitions: {success: completed, failure: failed}}
    completed: {kind: terminal}
    failed: {kind: terminal}
"""
    )
    runtime = make_runtime(transport, clock, fake_sleep, workflowsPath=str(path))
    async with runtime:
        assert runtime.started
        assert "content-creation" in runtime.registry
        assert "translation" in runtime.registry
        assert runtime.health.recovery_handler == runtime.recovery.recover_worker
        assert runtime.coordination.task_failure_policy == runtime.recovery.handle_task_failure
    assert not runtime.started
    assert not transport.is_connected


@pytest.mark.asyncio
async def test_start_redispatches_persisted_workflows(transport, clock, fake_sleep):
    store = InMemoryStateStore(clock=clock)
    await store.save("wf-1", "content-review", {"topic": "x"}, workflow_type="content-creation")
    runtime = make_runtime(transport, clock, fake_sleep, store=store)
    await runtime.start(monitor=False, housekeeping=False)
    try:
        keys = [m.routing_key for m in transport.published if m.channel == "commands"]
        assert keys == ["content-management.execute-task"]
    finally:
        await runtime.stop()


@pytest.mark.asyncio
async def test_queries_over_the_bus(transport, clock, fake_sleep):
    runtime = make_runtime(transport, clock, fake_sleep)
    await runtime.start(monitor=False, housekeeping=False)
    try:
        started = await runtime.bus.request(
            QUERY_START_WORKFLOW, {"workflowType": "content-update", "data": {"id": 7}}
        )
        assert started["success"] is True
        assert started["initialState"] == "content-update"

        status = await runtime.bus.request(
            QUERY_WORKFLOW_STATUS, {"workflowId": started["workflowId"]}
        )
        assert status["currentState"] == "content-update"
        assert status["exists"] is True

        missing = await runtime.bus.request(QUERY_START_WORKFLOW, {})
        assert missing["success"] is False
        assert missing["error"]["code"] == "MISSING_WORKFLOW_TYPE"

        unknown = await runtime.bus.request(QUERY_START_WORKFLOW, {"workflowType": "nope"})
        assert unknown["error"]["code"] == "UNKNOWN_WORKFLOW_TYPE"

        await runtime.health.register_worker("writer-1", {"type": "content-creation"})
        health = await runtime.bus.request(QUERY_HEALTH_SUMMARY, {"includeWorkers": True})
        assert health["totalWorkers"] == 1
        assert health["workers"][0]["workerId"] == "writer-1"

        runtime.recovery.dlq.add(kind="worker", worker_id="writer-1", error="x", category="agent")
        dead = await runtime.bus.request(QUERY_DEAD_LETTERS, {"kind": "worker"})
        assert [e["workerId"] for e in dead["entries"]] == ["writer-1"]
        assert dead["statistics"]["deadLetterCount"] == 1
    finally:
        await runtime.stop()


@pytest.mark.asyncio
async def test_housekeep_purges_and_reconnects(transport, clock, fake_sleep):
    runtime = make_runtime(transport, clock, fake_sleep)
    await runtime.start(monitor=False, housekeeping=False)
    try:
        await runtime.store.save("old", "done", workflow_type="content-creation")
        await runtime.store.update("old", status="completed")
        clock.advance(seconds=timedelta(days=31).total_seconds())

        await transport.disconnect()
        report = await runtime.housekeep()
        assert report["purged"] == 1
        assert transport.is_connected
        assert not await runtime.store.exists("old")
    finally:
        await runtime.stop()


@pytest.mark.asyncio
async def test_repeated_store_outage_halts_coordination(transport, clock, fake_sleep):
    store = OutageStore(clock)
    runtime = make_runtime(transport, clock, fake_sleep, store=store)
    await runtime.start(monitor=False, housekeeping=False)
    try:
        store.down = True
        for _ in range(2):
            await runtime.housekeep()
        assert runtime.coordination.halted is None

        await runtime.housekeep()
        assert runtime.coordination.halted is not None
        assert runtime.health.get_system_health_summary()["status"] == "unhealthy"

        store.down = False
        await runtime.housekeep()
        assert runtime.coordination.halted is None
        assert runtime.health.get_system_health_summary()["status"] == "healthy"
    finally:
        await runtime.stop()
