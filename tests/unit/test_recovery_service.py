"""Recovery strategies, health-triggered recovery and the dead-letter queue."""

from datetime import timedelta

import pytest

from agentcoord.config import MonitoringConfig
from agentcoord.contracts import TaskFailed, WorkerFailed
from agentcoord.errors import AgentError
from agentcoord.error_handling import ErrorHandlingService
from agentcoord.health import HealthMonitor
from agentcoord.persistence import InMemoryWorkerHealthStore, WorkerStatus
from agentcoord.recovery import RecoveryService, under_resource_pressure
from agentcoord.workers import EXECUTE, WorkerDirectory


def commands(transport):
    return [(m.routing_key, m.data) for m in transport.published if m.channel == "commands"]


def events(transport, key):
    return [m.data for m in transport.published if m.channel == "events" and m.routing_key == key]


@pytest.fixture
def health(bus, clock):
    return HealthMonitor(bus, InMemoryWorkerHealthStore(), MonitoringConfig(), clock=clock)


@pytest.fixture
def recovery(bus, health, clock, fake_sleep):
    return RecoveryService(bus, health, clock=clock, sleep=fake_sleep)


# ----------------------------------------------------------------------
# Strategy selection


def test_most_specific_strategy_wins(recovery):
    recovery.register_recovery_strategy(None, None, "agent", "manual")
    recovery.register_recovery_strategy("writer", None, "agent", "skip")
    key = recovery.register_recovery_strategy("writer-1", "render", "agent", "delegate")
    assert key == "writer-1:render:agent"

    assert recovery.select_strategy("writer-1", "agent", "render", "writer").strategy == "delegate"
    assert recovery.select_strategy("writer-1", "agent", None, "writer").strategy == "skip"
    assert recovery.select_strategy("other", "agent").strategy == "manual"
    assert recovery.select_strategy("other", "unheard-of").strategy == "restart"


def test_default_strategy_table(recovery):
    rate_limit = recovery.select_strategy("w", "rate-limit")
    assert (rate_limit.strategy, rate_limit.max_retries, rate_limit.base_delay) == ("retry", 5, 5.0)
    fallback = recovery.select_strategy("w", "external-service")
    assert fallback.fallback_method == "alternateProvider"


def test_module_strategy_requires_worker(recovery):
    with pytest.raises(AgentError):
        recovery.register_recovery_strategy(None, "render", "agent", "restart")


def test_resource_pressure_detection():
    assert under_resource_pressure({"cpu": 95})
    assert under_resource_pressure({"memory": {"percent": 91}})
    assert under_resource_pressure({"memory": {"heapUsed": 2_000_000_000}})
    assert under_resource_pressure({}, "out of memory")
    assert not under_resource_pressure({"cpu": 10, "memory": {"percent": 20}}, "timeout")


# ----------------------------------------------------------------------
# Worker failures


@pytest.mark.asyncio
async def test_restart_until_limit_then_isolate(recovery, health, transport):
    await health.register_worker("writer-1", {"type": "writer"})
    failure = WorkerFailed(worker_id="writer-1", error="crashed", category="agent")

    for _ in range(3):
        result = await recovery.handle_worker_failure(failure)
        assert result == {"success": True, "strategy": "restart"}
    assert [k for k, _ in commands(transport)] == ["writer-1.restart"] * 3

    result = await recovery.handle_worker_failure(failure)
    assert result["action"] == "isolate"
    assert health.get_worker("writer-1").status == WorkerStatus.ISOLATED

    assert (await recovery.handle_worker_failure(failure))["action"] == "ignored"
    assert len(commands(transport)) == 3

    entries = recovery.list_dead_letters(worker_id="writer-1")
    assert len(entries) == 1
    assert entries[0].kind == "worker"
    failed = events(transport, "agent.recovery-failed")
    assert failed[0]["reason"] == "MAX_ATTEMPTS_EXCEEDED"
    assert failed[0]["deadLetterKey"] == entries[0].key
    notification = events(transport, "system.notification")[-1]
    assert notification["type"] == "agent_isolated"
    assert notification["level"] == "critical"


@pytest.mark.asyncio
async def test_attempts_outside_window_are_forgotten(recovery, clock):
    failure = WorkerFailed(worker_id="w", category="agent")
    for _ in range(3):
        await recovery.handle_worker_failure(failure)
    clock.advance(seconds=3601)
    assert (await recovery.handle_worker_failure(failure))["success"]
    assert recovery.prune_history() == 0
    assert len(recovery.recovery_history("w")) == 1


@pytest.mark.asyncio
async def test_module_failure_restarts_module(recovery, transport):
    await recovery.handle_worker_failure(
        WorkerFailed(worker_id="w", module_id="render", category="agent")
    )
    key, data = commands(transport)[0]
    assert key == "w.restart-module"
    assert data["moduleId"] == "render"


@pytest.mark.asyncio
async def test_retry_strategy_republishes_after_backoff(recovery, transport, fake_sleep):
    recovery.register_recovery_strategy("w", None, "timeout", "retry", {"baseDelay": 2})
    await recovery.handle_worker_failure(
        WorkerFailed(
            worker_id="w",
            category="timeout",
            data={"command": "execute-task", "taskId": "t1"},
        )
    )
    await recovery.drain()
    assert fake_sleep.delays == [2]
    key, data = commands(transport)[0]
    assert key == "w.execute-task"
    assert data["isRetry"] is True
    assert data["taskId"] == "t1"


@pytest.mark.asyncio
async def test_retry_without_command_restarts(recovery, transport):
    await recovery.handle_worker_failure(WorkerFailed(worker_id="w", category="timeout"))
    assert commands(transport)[0][0] == "w.restart"


@pytest.mark.asyncio
async def test_delegate_skips_isolated_candidates(recovery, health, transport):
    recovery.register_recovery_strategy(
        "w", None, "agent", "delegate", {"delegates": ["backup-a", "backup-b"]}
    )
    await health.register_worker("backup-a", {})
    await health.isolate_worker("backup-a", impact="low", reason="test")

    result = await recovery.handle_worker_failure(
        WorkerFailed(worker_id="w", category="agent", data={"workflowId": "wf"})
    )
    assert result["success"]
    key, data = commands(transport)[0]
    assert key == "backup-b.handle-delegation"
    assert data["originalWorkerId"] == "w"
    assert data["data"] == {"workflowId": "wf"}


@pytest.mark.asyncio
async def test_delegate_without_candidates_reports_failure(bus, health, clock, transport):
    workers = WorkerDirectory()
    workers.register("backup", [EXECUTE])
    recovery = RecoveryService(bus, health, workers=workers, clock=clock)
    recovery.register_recovery_strategy("w", None, "agent", "delegate", {"delegates": ["backup"]})

    result = await recovery.handle_worker_failure(WorkerFailed(worker_id="w", category="agent"))
    assert result["success"] is False
    assert events(transport, "agent.recovery-failed")[0]["reason"] == "RECOVERY_ERROR"
    assert recovery.recovery_history("w") == []


@pytest.mark.asyncio
async def test_fallback_and_manual_strategies(recovery, transport):
    await recovery.handle_worker_failure(
        WorkerFailed(worker_id="w", category="external-service", data={"x": 1})
    )
    key, data = commands(transport)[0]
    assert key == "w.use-fallback"
    assert data["fallbackMethod"] == "alternateProvider"

    recovery.register_recovery_strategy("w", None, "validation", "manual")
    await recovery.handle_worker_failure(WorkerFailed(worker_id="w", category="validation"))
    assert len(recovery.list_dead_letters(category="validation")) == 1
    assert events(transport, "system.notification")[0]["type"] == "agent_failure"


# ----------------------------------------------------------------------
# Health-triggered recovery


@pytest.mark.asyncio
async def test_recover_worker_sends_recover_and_backs_off(recovery, health, transport, clock):
    await health.register_worker("w", {"type": "writer"})
    result = await recovery.recover_worker("w", "silent")
    assert result["strategy"] == "recover"
    assert result["attempt"] == 1
    assert result["nextAttempt"] == (clock.now + timedelta(seconds=30)).isoformat()
    key, data = commands(transport)[0]
    assert key == "w.recover"
    assert data["reason"] == "silent"

    assert (await recovery.recover_worker("w"))["action"] == "backoff"
    clock.advance(seconds=31)
    second = await recovery.recover_worker("w")
    assert second["attempt"] == 2
    assert second["nextAttempt"] == (clock.now + timedelta(seconds=60)).isoformat()


@pytest.mark.asyncio
async def test_recover_worker_under_pressure_restarts_with_limits(recovery, health, transport):
    await health.handle_heartbeat({"workerId": "w", "status": "online", "metrics": {"cpu": 97}})
    result = await recovery.recover_worker("w", "unresponsive")
    assert result["strategy"] == "resource_optimization"
    key, data = commands(transport)[0]
    assert key == "w.restart"
    assert data["optimizeResources"] is True
    assert data["resourceConfig"] == {"memoryLimit": 1_073_741_824}


@pytest.mark.asyncio
async def test_recover_worker_quarantines_after_max_attempts(recovery, health):
    await health.register_worker("w", {})
    for _ in range(3):
        await health.record_recovery_attempt("w")
    result = await recovery.recover_worker("w", "silent")
    assert result["action"] == "isolate"
    assert health.get_worker("w").status == WorkerStatus.ISOLATED
    assert (await recovery.recover_worker("w"))["action"] == "isolated"
    assert (await recovery.recover_worker("ghost"))["success"] is False


# ----------------------------------------------------------------------
# Task failures and the dead-letter queue


@pytest.mark.asyncio
async def test_task_retries_then_dead_letters(recovery, transport, fake_sleep):
    failure = TaskFailed(workflow_id="wf", task_id="t1", category="timeout", worker_id="w1")
    original = {"workflowId": "wf", "taskId": "t1", "taskType": "writer"}

    for _ in range(3):
        assert await recovery.handle_task_failure(failure, original)
    await recovery.drain()
    assert fake_sleep.delays == [1, 2, 4]
    retries = commands(transport)
    assert [k for k, _ in retries] == ["w1.retry-task"] * 3
    assert retries[0][1]["originalData"] == original

    assert not await recovery.handle_task_failure(failure, original)
    entry = recovery.list_dead_letters(kind="task")[0]
    assert (entry.task_id, entry.workflow_id, entry.category) == ("t1", "wf", "timeout")
    assert recovery.recovery_statistics()["byStrategy"] == {"retry": 3}


@pytest.mark.asyncio
async def test_non_retryable_task_failure_is_dead_lettered(recovery, transport):
    failure = TaskFailed(workflow_id="wf", task_id="t1", category="validation", worker_id="w1")
    assert not await recovery.handle_task_failure(failure, {})
    assert commands(transport) == []
    assert len(recovery.dlq) == 1


@pytest.mark.asyncio
async def test_retry_and_delete_dead_letters(recovery, health, transport):
    task_entry = recovery.dlq.add(
        kind="task",
        worker_id="w1",
        error="boom",
        category="timeout",
        original_message={"taskId": "t1"},
        task_id="t1",
    )
    await health.register_worker("w2", {})
    await health.isolate_worker("w2", impact="x", reason="y")
    worker_entry = recovery.dlq.add(kind="worker", worker_id="w2", error="dead", category="agent")
    spare = recovery.dlq.add(kind="worker", worker_id="w3", error="dead", category="agent")

    assert await recovery.retry_dead_letter(task_entry.key)
    assert await recovery.retry_dead_letter(worker_entry.key)
    assert not await recovery.retry_dead_letter("missing")
    assert [k for k, _ in commands(transport)] == ["w1.retry-task", "w2.restart"]
    assert health.get_worker("w2").status == WorkerStatus.RECOVERING

    assert recovery.delete_dead_letter(spare.key)
    assert not recovery.delete_dead_letter(spare.key)
    assert len(recovery.dlq) == 0
    assert recovery.dlq.get(task_entry.key) is None


@pytest.mark.asyncio
async def test_dead_letter_wire_format(recovery):
    entry = recovery.dlq.add(kind="task", worker_id="w", error="e", category="timeout", task_id="t")
    wire = entry.to_wire()
    assert wire["workerId"] == "w"
    assert wire["taskId"] == "t"
    assert wire["kind"] == "task"
    assert "enqueuedAt" in wire


def test_reset_circuit_breaker_delegates(bus, health):
    errors = ErrorHandlingService()
    recovery = RecoveryService(bus, health, errors=errors)
    errors.get_circuit_breaker("llm").record_failure()
    assert recovery.reset_circuit_breaker("llm")
    assert errors.get_circuit_breaker("llm").failures == 0
    assert not RecoveryService(bus, health).reset_circuit_breaker("llm")


@pytest.mark.asyncio
async def test_start_wires_handlers_and_consumes_events(recovery, health, bus, eventually):
    await recovery.start()
    assert health.recovery_handler == recovery.recover_worker

    await bus.publish_event("agent.failed", {"workerId": "w", "category": "agent"})
    await bus.publish_event("agent.recovery-completed", {"workerId": "w"})
    await eventually(lambda: recovery.recovery_statistics()["completed"] == 1)
    await eventually(lambda: recovery.recovery_history("w"))

    stats = recovery.recovery_statistics()
    assert stats["totalRecoveryAttempts"] == 1
    assert stats["byStrategy"] == {"restart": 1}
    await recovery.stop()
    assert health.recovery_handler is None
    await bus.close()


@pytest.mark.asyncio
async def test_silent_worker_is_retried_then_isolated(bus, health, recovery, transport, clock, eventually):
    await health.start(monitor=False)
    await recovery.start()
    await health.handle_heartbeat({"workerId": "w", "status": "online", "metrics": {}})

    clock.advance(seconds=3600)
    assert await health.check_workers_health() == ["w"]
    await eventually(lambda: health.get_worker("w").recovery_attempts == 1)

    for _ in range(20):
        clock.advance(seconds=3600)
        await health.check_workers_health()

    record = health.get_worker("w")
    assert record.status == WorkerStatus.ISOLATED
    assert [k for k, _ in commands(transport)] == ["w.recover"] * 3
    entry = recovery.list_dead_letters(kind="worker")[0]
    assert entry.worker_id == "w"
    failed = events(transport, "agent.recovery-failed")
    assert [e["reason"] for e in failed] == ["MAX_ATTEMPTS_EXCEEDED"]
    assert failed[0]["deadLetterKey"] == entry.key

    await recovery.stop()
    await health.stop()
