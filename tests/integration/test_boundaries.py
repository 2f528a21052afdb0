"""Boundary behaviour and idempotence laws."""

import pytest

from agentcoord.circuit import CLOSED, OPEN, CircuitBreaker
from agentcoord.config import MonitoringConfig
from agentcoord.contracts import Heartbeat
from agentcoord.error_handling import ErrorHandlingService
from agentcoord.errors import ServiceTimeoutError
from agentcoord.health import HealthMonitor
from agentcoord.persistence import InMemoryStateStore, InMemoryWorkerHealthStore
from agentcoord.utils.retry import RetryPolicy


@pytest.fixture
def monitor(bus, clock):
    return HealthMonitor(
        bus, InMemoryWorkerHealthStore(), MonitoringConfig(heartbeatTimeout=1000), clock=clock
    )


@pytest.mark.asyncio
async def test_heartbeat_one_ms_before_timeout(monitor, clock):
    await monitor.handle_heartbeat(Heartbeat(worker_id="w1", status="online"))
    clock.advance(milliseconds=999)
    assert await monitor.check_workers_health() == []


@pytest.mark.asyncio
async def test_heartbeat_one_ms_after_timeout(monitor, clock):
    await monitor.handle_heartbeat(Heartbeat(worker_id="w1", status="online"))
    clock.advance(milliseconds=1001)
    assert await monitor.check_workers_health() == ["w1"]


@pytest.mark.asyncio
async def test_duplicate_heartbeat_is_idempotent(monitor, clock):
    beat = Heartbeat(worker_id="w1", status="online", metrics={"cpu": 3}, timestamp=clock.now)
    once = (await monitor.handle_heartbeat(beat)).model_dump(exclude={"last_updated"})
    twice = (await monitor.handle_heartbeat(beat)).model_dump(exclude={"last_updated"})
    assert once == twice
    assert len(monitor.metrics_history("w1")) == 1


@pytest.mark.asyncio
async def test_zero_retries_propagates_first_failure(fake_sleep):
    service = ErrorHandlingService(
        policies={"default": RetryPolicy(max_retries=0)}, sleep=fake_sleep
    )
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        raise ServiceTimeoutError("late")

    with pytest.raises(ServiceTimeoutError):
        await service.execute_with_retry(op)
    assert calls == 1
    assert fake_sleep.delays == []


@pytest.mark.parametrize("failures, expected", [(2, CLOSED), (3, OPEN)])
def test_breaker_threshold(failures, expected, clock):
    breaker = CircuitBreaker("svc", threshold=3, reset_timeout=1, clock=clock)
    for _ in range(failures):
        breaker.record_failure()
    assert breaker.state == expected


@pytest.mark.asyncio
async def test_save_then_get_law(clock):
    store = InMemoryStateStore(clock=clock)
    await store.save("wf", "draft", {"p": 1})
    record = await store.get("wf")
    assert (record.state, record.payload, len(record.history)) == ("draft", {"p": 1}, 1)
