"""PostgreSQL implementation of the workflow state store."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Optional

import asyncpg

from ..errors import ConcurrencyError, DatabaseError, NotFoundError, WorkflowError
from ..utils import utcnow
from .models import TERMINAL_STATUSES, HistoryEntry, WorkflowStateRecord
from .repository import StateStore, apply_update

_COLUMNS = (
    "workflow_id, workflow_type, state, status, payload, history, "
    "created_at, last_updated, version"
)


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresStateStore(StateStore):
    """Persist workflow state using PostgreSQL.

    Updates lock the row with ``SELECT ... FOR UPDATE`` inside a transaction.
    """

    def __init__(
        self,
        dsn: str,
        clock: Callable[[], datetime] = utcnow,
        min_size: int = 1,
        max_size: int = 10,
    ):
        self._dsn = dsn
        self._clock = clock
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _connect(self) -> asyncpg.Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self._dsn, min_size=self._min_size, max_size=self._max_size
                )
                async with self._pool.acquire() as conn:
                    await self._ensure_schema(conn)
            except (asyncpg.PostgresError, OSError) as e:
                self._pool = None
                raise DatabaseError(f"Cannot connect to PostgreSQL: {e}") from e
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_states (
                workflow_id TEXT PRIMARY KEY,
                workflow_type TEXT,
                state TEXT NOT NULL,
                status TEXT NOT NULL,
                payload JSONB NOT NULL,
                history JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                last_updated TIMESTAMPTZ NOT NULL,
                version INTEGER NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_states_state ON workflow_states (state)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_states_status ON workflow_states (status)"
        )

    @staticmethod
    def _to_record(row: asyncpg.Record) -> WorkflowStateRecord:
        return WorkflowStateRecord(
            workflow_id=row["workflow_id"],
            workflow_type=row["workflow_type"],
            state=row["state"],
            status=row["status"],
            payload=_json(row["payload"]),
            history=_json(row["history"]),
            created_at=row["created_at"],
            last_updated=row["last_updated"],
            version=row["version"],
        )

    # ------------------------------------------------------------------
    async def save(
        self,
        workflow_id: str,
        initial_state: str,
        payload: dict | None = None,
        workflow_type: str | None = None,
    ) -> WorkflowStateRecord:
        now = self._clock()
        record = WorkflowStateRecord(
            workflow_id=workflow_id,
            workflow_type=workflow_type,
            state=initial_state,
            payload=dict(payload or {}),
            history=[HistoryEntry(to_state=initial_state, label="start", at=now)],
            created_at=now,
            last_updated=now,
        )
        pool = await self._connect()
        try:
            await pool.execute(
                f"INSERT INTO workflow_states ({_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8, $9)",
                record.workflow_id,
                record.workflow_type,
                record.state,
                record.status,
                json.dumps(record.payload),
                json.dumps([h.model_dump(mode="json") for h in record.history]),
                record.created_at,
                record.last_updated,
                record.version,
            )
        except asyncpg.UniqueViolationError as e:
            raise WorkflowError(
                f"Workflow {workflow_id} already exists", code="WORKFLOW_EXISTS"
            ) from e
        except (asyncpg.PostgresError, OSError) as e:
            raise DatabaseError(f"Failed to save workflow {workflow_id}: {e}") from e
        return record

    async def update(
        self,
        workflow_id: str,
        patch: dict | None = None,
        new_state: str | None = None,
        *,
        label: str | None = None,
        status: str | None = None,
        reference: str | None = None,
        expected_version: int | None = None,
    ) -> WorkflowStateRecord:
        pool = await self._connect()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"SELECT {_COLUMNS} FROM workflow_states WHERE workflow_id = $1 FOR UPDATE",
                        workflow_id,
                    )
                    if row is None:
                        raise NotFoundError(
                            f"Workflow {workflow_id} not found", code="WORKFLOW_NOT_FOUND"
                        )
                    current = self._to_record(row)
                    if expected_version is not None and current.version != expected_version:
                        raise ConcurrencyError(
                            f"Workflow {workflow_id} is at version {current.version}, "
                            f"expected {expected_version}"
                        )
                    updated = apply_update(
                        current,
                        patch,
                        new_state,
                        label=label,
                        status=status,
                        reference=reference,
                        now=self._clock(),
                    )
                    await conn.execute(
                        """
                        UPDATE workflow_states
                        SET state = $1, status = $2, payload = $3::jsonb, history = $4::jsonb,
                            last_updated = $5, version = $6
                        WHERE workflow_id = $7
                        """,
                        updated.state,
                        updated.status,
                        json.dumps(updated.payload),
                        json.dumps([h.model_dump(mode="json") for h in updated.history]),
                        updated.last_updated,
                        updated.version,
                        workflow_id,
                    )
        except (asyncpg.PostgresError, OSError) as e:
            raise DatabaseError(f"Failed to update workflow {workflow_id}: {e}") from e
        return updated

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        pool = await self._connect()
        try:
            return await pool.fetch(query, *params)
        except (asyncpg.PostgresError, OSError) as e:
            raise DatabaseError(f"PostgreSQL query failed: {e}") from e

    async def get(self, workflow_id: str) -> WorkflowStateRecord:
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM workflow_states WHERE workflow_id = $1", workflow_id
        )
        if not rows:
            raise NotFoundError(f"Workflow {workflow_id} not found", code="WORKFLOW_NOT_FOUND")
        return self._to_record(rows[0])

    async def history(self, workflow_id: str) -> list[HistoryEntry]:
        return (await self.get(workflow_id)).history

    async def exists(self, workflow_id: str) -> bool:
        rows = await self._fetch(
            "SELECT 1 FROM workflow_states WHERE workflow_id = $1", workflow_id
        )
        return bool(rows)

    async def find_by_state(
        self, state: str, limit: int = 100, offset: int = 0
    ) -> list[WorkflowStateRecord]:
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM workflow_states WHERE state = $1 "
            "ORDER BY last_updated DESC LIMIT $2 OFFSET $3",
            state,
            limit,
            offset,
        )
        return [self._to_record(r) for r in rows]

    async def find_by_status(
        self, status: str, limit: int = 100, offset: int = 0
    ) -> list[WorkflowStateRecord]:
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM workflow_states WHERE status = $1 "
            "ORDER BY last_updated DESC LIMIT $2 OFFSET $3",
            status,
            limit,
            offset,
        )
        return [self._to_record(r) for r in rows]

    async def purge_terminal(self, older_than: datetime) -> int:
        rows = await self._fetch(
            "DELETE FROM workflow_states WHERE status = ANY($1::text[]) AND last_updated < $2 "
            "RETURNING workflow_id",
            list(TERMINAL_STATUSES),
            older_than,
        )
        return len(rows)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
