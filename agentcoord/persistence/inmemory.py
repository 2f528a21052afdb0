"""In-memory implementations of the state and worker health stores."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Dict, Optional

from ..errors import ConcurrencyError, NotFoundError, WorkflowError
from ..utils import utcnow
from .models import HistoryEntry, WorkerRecord, WorkflowStateRecord
from .repository import StateStore, WorkerHealthStore, apply_update


class InMemoryStateStore(StateStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._records: Dict[str, WorkflowStateRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    # ------------------------------------------------------------------
    async def save(
        self,
        workflow_id: str,
        initial_state: str,
        payload: dict | None = None,
        workflow_type: str | None = None,
    ) -> WorkflowStateRecord:
        async with self._lock:
            if workflow_id in self._records:
                raise WorkflowError(
                    f"Workflow {workflow_id} already exists", code="WORKFLOW_EXISTS"
                )
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
            self._records[workflow_id] = record
            return record.model_copy(deep=True)

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
        async with self._lock:
            record = self._records.get(workflow_id)
            if record is None:
                raise NotFoundError(
                    f"Workflow {workflow_id} not found", code="WORKFLOW_NOT_FOUND"
                )
            if expected_version is not None and record.version != expected_version:
                raise ConcurrencyError(
                    f"Workflow {workflow_id} is at version {record.version}, "
                    f"expected {expected_version}"
                )
            updated = apply_update(
                record,
                patch,
                new_state,
                label=label,
                status=status,
                reference=reference,
                now=self._clock(),
            )
            self._records[workflow_id] = updated
            return updated.model_copy(deep=True)

    async def get(self, workflow_id: str) -> WorkflowStateRecord:
        record = self._records.get(workflow_id)
        if record is None:
            raise NotFoundError(f"Workflow {workflow_id} not found", code="WORKFLOW_NOT_FOUND")
        return record.model_copy(deep=True)

    async def history(self, workflow_id: str) -> list[HistoryEntry]:
        return (await self.get(workflow_id)).history

    async def exists(self, workflow_id: str) -> bool:
        return workflow_id in self._records

    async def find_by_state(
        self, state: str, limit: int = 100, offset: int = 0
    ) -> list[WorkflowStateRecord]:
        matches = [r for r in self._records.values() if r.state == state]
        matches.sort(key=lambda r: r.last_updated, reverse=True)
        return [r.model_copy(deep=True) for r in matches[offset : offset + limit]]

    async def find_by_status(
        self, status: str, limit: int = 100, offset: int = 0
    ) -> list[WorkflowStateRecord]:
        matches = [r for r in self._records.values() if r.status == status]
        matches.sort(key=lambda r: r.last_updated, reverse=True)
        return [r.model_copy(deep=True) for r in matches[offset : offset + limit]]

    async def purge_terminal(self, older_than: datetime) -> int:
        async with self._lock:
            doomed = [
                wid
                for wid, r in self._records.items()
                if r.is_terminal and r.last_updated < older_than
            ]
            for wid in doomed:
                del self._records[wid]
            return len(doomed)

    async def close(self) -> None:
        pass


class InMemoryWorkerHealthStore(WorkerHealthStore):
    """Worker health records kept in a dict."""

    def __init__(self) -> None:
        self._records: Dict[str, WorkerRecord] = {}

    async def upsert(self, record: WorkerRecord) -> None:
        self._records[record.worker_id] = record.model_copy(deep=True)

    async def get(self, worker_id: str) -> Optional[WorkerRecord]:
        record = self._records.get(worker_id)
        return record.model_copy(deep=True) if record else None

    async def list_all(self) -> list[WorkerRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    async def find_by_status(self, status: str) -> list[WorkerRecord]:
        return [r.model_copy(deep=True) for r in self._records.values() if r.status == status]

    async def delete(self, worker_id: str) -> None:
        self._records.pop(worker_id, None)

    async def close(self) -> None:
        pass
