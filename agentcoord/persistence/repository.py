"""Store abstractions for workflow state and worker health persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from .models import HistoryEntry, WorkerRecord, WorkflowStateRecord


class StateStore(Protocol):
    """Protocol for workflow state persistence backends.

    Every mutation is atomic, and concurrent updates to one workflow id are
    serialised by the backend.
    """

    async def save(
        self,
        workflow_id: str,
        initial_state: str,
        payload: dict | None = None,
        workflow_type: str | None = None,
    ) -> WorkflowStateRecord:
        """Create the record; raises ``WorkflowError`` if it already exists."""

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
        """Merge ``patch`` into the payload and optionally move to ``new_state``.

        Raises:
            NotFoundError: If the workflow is absent.
            ConcurrencyError: If ``expected_version`` does not match.
        """

    async def get(self, workflow_id: str) -> WorkflowStateRecord:
        """Return the full record; raises ``NotFoundError``."""

    async def history(self, workflow_id: str) -> list[HistoryEntry]:
        """Return the transition history only."""

    async def exists(self, workflow_id: str) -> bool:
        """Return whether the workflow has a record."""

    async def find_by_state(
        self, state: str, limit: int = 100, offset: int = 0
    ) -> list[WorkflowStateRecord]:
        """Records currently in ``state``, most recently updated first."""

    async def find_by_status(
        self, status: str, limit: int = 100, offset: int = 0
    ) -> list[WorkflowStateRecord]:
        """Records with lifecycle ``status``, most recently updated first."""

    async def purge_terminal(self, older_than: datetime) -> int:
        """Delete terminal records last updated before ``older_than``."""

    async def close(self) -> None:
        """Release connections."""


class WorkerHealthStore(Protocol):
    """Protocol for worker health persistence backends."""

    async def upsert(self, record: WorkerRecord) -> None:
        """Insert or replace the record for ``record.worker_id``."""

    async def get(self, worker_id: str) -> Optional[WorkerRecord]:
        """Return the record or ``None``."""

    async def list_all(self) -> list[WorkerRecord]:
        """Return every record."""

    async def find_by_status(self, status: str) -> list[WorkerRecord]:
        """Return records with ``status``."""

    async def delete(self, worker_id: str) -> None:
        """Remove the record if present."""

    async def close(self) -> None:
        """Release connections."""


def merge_payload(payload: dict[str, Any], patch: dict[str, Any] | None) -> dict[str, Any]:
    """Shallow merge used by every backend."""
    merged = dict(payload)
    if patch:
        merged.update(patch)
    return merged


def apply_update(
    record: WorkflowStateRecord,
    patch: dict[str, Any] | None,
    new_state: str | None,
    *,
    label: str | None,
    status: str | None,
    reference: str | None,
    now: datetime,
) -> WorkflowStateRecord:
    """Return ``record`` with an update applied and its version bumped."""
    history = list(record.history)
    if new_state is not None:
        history.append(
            HistoryEntry(
                from_state=record.state,
                to_state=new_state,
                label=label,
                at=now,
                reference=reference,
            )
        )
    return record.model_copy(
        update={
            "payload": merge_payload(record.payload, patch),
            "state": new_state if new_state is not None else record.state,
            "status": status or record.status,
            "history": history,
            "last_updated": now,
            "version": record.version + 1,
        }
    )
