"""Behaviour shared by every workflow state store backend."""

import asyncio
import os
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio

from agentcoord.errors import ConcurrencyError, NotFoundError, WorkflowError
from agentcoord.persistence import InMemoryStateStore, PostgresStateStore, SQLiteStateStore


@pytest_asyncio.fixture(params=["memory", "sqlite", "postgres"])
async def store(request, tmp_path, clock):
    if request.param == "memory":
        backend = InMemoryStateStore(clock=clock)
    elif request.param == "sqlite":
        backend = SQLiteStateStore(tmp_path / "state.db", clock=clock)
    else:
        dsn = os.getenv("TEST_PG_DSN")
        if not dsn:
            pytest.skip("TEST_PG_DSN not set")
        backend = PostgresStateStore(dsn, clock=clock)
        try:
            await backend._connect()
        except Exception:
            pytest.skip("PostgreSQL server not available")
    yield backend
    await backend.close()


def new_id() -> str:
    return str(uuid.uuid4())


@pytest.mark.asyncio
async def test_save_and_get(store, clock):
    wid = new_id()
    created = await store.save(wid, "draft", {"topic": "launch"}, "simple")

    assert created.state == "draft"
    assert created.status == "active"
    assert created.version == 1
    assert created.history[0].to_state == "draft"
    assert created.history[0].from_state is None

    record = await store.get(wid)
    assert record.workflow_type == "simple"
    assert record.payload == {"topic": "launch"}
    assert record.created_at == clock.now
    assert await store.exists(wid)


@pytest.mark.asyncio
async def test_duplicate_save_is_rejected(store):
    wid = new_id()
    await store.save(wid, "draft")
    with pytest.raises(WorkflowError):
        await store.save(wid, "draft")


@pytest.mark.asyncio
async def test_missing_workflow(store):
    wid = new_id()
    assert not await store.exists(wid)
    with pytest.raises(NotFoundError):
        await store.get(wid)
    with pytest.raises(NotFoundError):
        await store.update(wid, {"x": 1})


@pytest.mark.asyncio
async def test_update_merges_payload_and_appends_history(store, clock):
    wid = new_id()
    await store.save(wid, "draft", {"a": 1, "b": 1})
    clock.advance(seconds=5)

    updated = await store.update(
        wid, {"b": 2, "c": 3}, "review", label="success", reference="task-1"
    )
    assert updated.payload == {"a": 1, "b": 2, "c": 3}
    assert updated.state == "review"
    assert updated.version == 2
    assert updated.last_updated == clock.now

    history = await store.history(wid)
    assert [(h.from_state, h.to_state, h.label) for h in history] == [
        (None, "draft", "start"),
        ("draft", "review", "success"),
    ]
    assert history[-1].reference == "task-1"

    patched = await store.update(wid, {"d": 4})
    assert patched.state == "review"
    assert len(patched.history) == 2


@pytest.mark.asyncio
async def test_version_check(store):
    wid = new_id()
    await store.save(wid, "draft")
    await store.update(wid, {"x": 1}, expected_version=1)
    with pytest.raises(ConcurrencyError):
        await store.update(wid, {"x": 2}, expected_version=1)


@pytest.mark.asyncio
async def test_concurrent_updates_are_serialised(store):
    wid = new_id()
    await store.save(wid, "draft", {})
    await asyncio.gather(*(store.update(wid, {f"k{i}": i}) for i in range(10)))
    record = await store.get(wid)
    assert record.version == 11
    assert len(record.payload) == 10


@pytest.mark.asyncio
async def test_find_by_state_and_status(store, clock):
    state = f"drafting-{new_id()}"
    first, second = new_id(), new_id()
    await store.save(first, state)
    clock.advance(seconds=1)
    await store.save(second, state)

    found = await store.find_by_state(state)
    assert [r.workflow_id for r in found] == [second, first]
    assert [r.workflow_id for r in await store.find_by_state(state, limit=1, offset=1)] == [first]

    await store.update(first, None, "done", label="success", status="completed")
    completed = [r.workflow_id for r in await store.find_by_status("completed")]
    assert first in completed
    assert second not in completed


@pytest.mark.asyncio
async def test_purge_terminal(store, clock):
    old, fresh, active = new_id(), new_id(), new_id()
    for wid in (old, fresh, active):
        await store.save(wid, "draft")
    await store.update(old, status="completed")
    clock.advance(seconds=3600)
    await store.update(fresh, status="failed")

    purged = await store.purge_terminal(clock.now - timedelta(seconds=60))
    assert purged >= 1
    assert not await store.exists(old)
    assert await store.exists(fresh)
    assert await store.exists(active)


@pytest.mark.asyncio
async def test_sqlite_persists_across_instances(tmp_path, clock):
    path = tmp_path / "state.db"
    first = SQLiteStateStore(path, clock=clock)
    await first.save("wf-1", "draft", {"topic": "x"})
    await first.close()

    second = SQLiteStateStore(path, clock=clock)
    try:
        record = await second.get("wf-1")
        assert record.payload == {"topic": "x"}
        assert record.created_at == clock.now
    finally:
        await second.close()
