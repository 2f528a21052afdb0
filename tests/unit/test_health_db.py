import pytest

from agentcoord.db import WorkerHealthDB
from agentcoord.persistence import InMemoryWorkerHealthStore, WorkerRecord, WorkerStatus


@pytest.fixture(params=["memory", "sql"])
def health_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorkerHealthStore()
    return WorkerHealthDB(f"sqlite+aiosqlite:///{tmp_path / 'health.db'}")


@pytest.mark.asyncio
async def test_upsert_get_and_list(health_store, clock):
    record = WorkerRecord(
        worker_id="writer-1",
        metadata={"type": "writer", "critical": True},
        status=WorkerStatus.ONLINE,
        last_heartbeat=clock.now,
        metrics={"cpuUsage": 12.5},
        registered=clock.now,
        last_updated=clock.now,
    )
    await health_store.upsert(record)

    loaded = await health_store.get("writer-1")
    assert loaded.status == WorkerStatus.ONLINE
    assert loaded.worker_type == "writer"
    assert loaded.critical
    assert loaded.metrics == {"cpuUsage": 12.5}
    assert loaded.last_heartbeat == clock.now
    assert await health_store.get("ghost") is None

    updated = loaded.model_copy(
        update={"status": WorkerStatus.ISOLATED, "recovery_attempts": 3}
    )
    await health_store.upsert(updated)
    assert (await health_store.get("writer-1")).recovery_attempts == 3
    assert [r.worker_id for r in await health_store.list_all()] == ["writer-1"]
    assert [r.worker_id for r in await health_store.find_by_status("isolated")] == ["writer-1"]
    assert await health_store.find_by_status("online") == []

    await health_store.delete("writer-1")
    assert await health_store.get("writer-1") is None
    await health_store.close()


@pytest.mark.asyncio
async def test_sql_store_survives_reopen(tmp_path, clock):
    url = f"sqlite+aiosqlite:///{tmp_path / 'health.db'}"
    first = WorkerHealthDB(url)
    await first.upsert(
        WorkerRecord(worker_id="w", registered=clock.now, last_updated=clock.now)
    )
    await first.close()

    second = WorkerHealthDB(url)
    assert (await second.get("w")).status == WorkerStatus.STARTING
    await second.close()
