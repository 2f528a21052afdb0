"""SQLite implementation of the workflow state store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ..errors import ConcurrencyError, DatabaseError, NotFoundError, WorkflowError
from ..utils import utcnow
from .models import TERMINAL_STATUSES, HistoryEntry, WorkflowStateRecord
from .repository import StateStore, apply_update

_COLUMNS = (
    "workflow_id, workflow_type, state, status, payload, history, "
    "created_at, last_updated, version"
)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


class SQLiteStateStore(StateStore):
    """Persist workflow state using SQLite.

    All statements run on one connection guarded by a thread lock; updates
    run inside ``BEGIN IMMEDIATE`` so a read-modify-write is one atomic unit.
    """

    def __init__(self, db_path: str | Path, clock: Callable[[], datetime] = utcnow):
        self.db_path = str(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_states (
                    workflow_id TEXT PRIMARY KEY,
                    workflow_type TEXT,
                    state TEXT NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    history TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_updated TEXT NOT NULL,
                    version INTEGER NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_workflow_states_state ON workflow_states (state)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_workflow_states_status ON workflow_states (status)"
            )

    # ------------------------------------------------------------------
    # Helper methods
    @staticmethod
    def _to_record(row: sqlite3.Row) -> WorkflowStateRecord:
        return WorkflowStateRecord(
            workflow_id=row["workflow_id"],
            workflow_type=row["workflow_type"],
            state=row["state"],
            status=row["status"],
            payload=json.loads(row["payload"]),
            history=json.loads(row["history"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            last_updated=datetime.fromisoformat(row["last_updated"]),
            version=row["version"],
        )

    @staticmethod
    def _to_params(record: WorkflowStateRecord) -> tuple[Any, ...]:
        return (
            record.workflow_id,
            record.workflow_type,
            record.state,
            record.status,
            json.dumps(record.payload),
            json.dumps([h.model_dump(mode="json") for h in record.history]),
            _iso(record.created_at),
            _iso(record.last_updated),
            record.version,
        )

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.rowcount

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise DatabaseError(f"SQLite operation failed: {e}") from e

    def _insert(self, record: WorkflowStateRecord) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    f"INSERT INTO workflow_states ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._to_params(record),
                )
            except sqlite3.IntegrityError as e:
                raise WorkflowError(
                    f"Workflow {record.workflow_id} already exists", code="WORKFLOW_EXISTS"
                ) from e

    def _update_tx(
        self,
        workflow_id: str,
        expected_version: int | None,
        mutate: Callable[[WorkflowStateRecord], WorkflowStateRecord],
    ) -> WorkflowStateRecord:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM workflow_states WHERE workflow_id = ?",
                    (workflow_id,),
                )
                row = cur.fetchone()
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
                updated = mutate(current)
                cur.execute(
                    """
                    UPDATE workflow_states
                    SET state = ?, status = ?, payload = ?, history = ?, last_updated = ?, version = ?
                    WHERE workflow_id = ? AND version = ?
                    """,
                    (
                        updated.state,
                        updated.status,
                        json.dumps(updated.payload),
                        json.dumps([h.model_dump(mode="json") for h in updated.history]),
                        _iso(updated.last_updated),
                        updated.version,
                        workflow_id,
                        current.version,
                    ),
                )
                cur.execute("COMMIT")
                return updated
            except BaseException:
                cur.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Store API
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
        await self._run(self._insert, record)
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
        now = self._clock()
        return await self._run(
            self._update_tx,
            workflow_id,
            expected_version,
            lambda record: apply_update(
                record,
                patch,
                new_state,
                label=label,
                status=status,
                reference=reference,
                now=now,
            ),
        )

    async def get(self, workflow_id: str) -> WorkflowStateRecord:
        row = await self._run(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM workflow_states WHERE workflow_id = ?",
            workflow_id,
        )
        if not row:
            raise NotFoundError(f"Workflow {workflow_id} not found", code="WORKFLOW_NOT_FOUND")
        return self._to_record(row)

    async def history(self, workflow_id: str) -> list[HistoryEntry]:
        return (await self.get(workflow_id)).history

    async def exists(self, workflow_id: str) -> bool:
        row = await self._run(
            self._fetchone,
            "SELECT 1 FROM workflow_states WHERE workflow_id = ?",
            workflow_id,
        )
        return row is not None

    async def find_by_state(
        self, state: str, limit: int = 100, offset: int = 0
    ) -> list[WorkflowStateRecord]:
        rows = await self._run(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM workflow_states WHERE state = ? "
            "ORDER BY last_updated DESC LIMIT ? OFFSET ?",
            state,
            limit,
            offset,
        )
        return [self._to_record(r) for r in rows]

    async def find_by_status(
        self, status: str, limit: int = 100, offset: int = 0
    ) -> list[WorkflowStateRecord]:
        rows = await self._run(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM workflow_states WHERE status = ? "
            "ORDER BY last_updated DESC LIMIT ? OFFSET ?",
            status,
            limit,
            offset,
        )
        return [self._to_record(r) for r in rows]

    async def purge_terminal(self, older_than: datetime) -> int:
        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        return await self._run(
            self._execute,
            f"DELETE FROM workflow_states WHERE status IN ({placeholders}) AND last_updated < ?",
            *TERMINAL_STATUSES,
            _iso(older_than),
        )

    async def close(self) -> None:
        with self._lock:
            self._conn.close()
