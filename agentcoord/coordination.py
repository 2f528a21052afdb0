"""Coordination service: drives workflow instances from state to state."""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from .bus import MessageBus, Subscription
from .constants import (
    AGENT_STATUS_CHANGED,
    AGENT_TASK_COMPLETED,
    AGENT_TASK_FAILED,
    DEFAULT_MAX_IN_FLIGHT,
    WORKFLOW_COMPLETED,
    WORKFLOW_FAILED,
    WORKFLOW_STARTED,
    WORKFLOW_STATE_CHANGED,
)
from .contracts import BusMessage, ExecuteTask, StatusChanged, TaskCompleted, TaskFailed, error_text
from .errors import (
    CoordinationError,
    CriticalError,
    DatabaseError,
    MessagingError,
    NotFoundError,
    WorkflowError,
    new_reference,
)
from .persistence import HistoryEntry, StateStore, WorkflowStateRecord
from .registry import COMPLETED, FAILED, WorkflowDefinition, WorkflowRegistry
from .utils import utcnow
from .utils.locks import KeyedLock
from .workers import EXECUTE, WorkerDirectory

logger = logging.getLogger(__name__)

ACTIVE = "active"
ARCHIVED = "archived"

WorkerGate = Callable[[str], bool]
TaskFailurePolicy = Callable[[TaskFailed, Dict[str, Any]], Awaitable[bool]]


class WorkflowInstance(BaseModel):
    """Hot-map view of a live workflow. The payload lives in the state store."""

    id: str
    type: str
    status: str = ACTIVE
    current_state: str
    started_at: datetime
    updated_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    current_task_id: Optional[str] = None
    dispatched_to: Optional[str] = None
    last_command: Optional[Dict[str, Any]] = None

    @classmethod
    def from_record(cls, record: WorkflowStateRecord) -> "WorkflowInstance":
        return cls(
            id=record.workflow_id,
            type=record.workflow_type or "",
            status=record.status,
            current_state=record.state,
            started_at=record.created_at,
            updated_at=record.last_updated,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "workflowId": self.id,
            "workflowType": self.type,
            "status": self.status,
            "currentState": self.current_state,
            "startedAt": self.started_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "metadata": self.metadata,
        }


def history_to_wire(history: List[HistoryEntry]) -> List[Dict[str, Any]]:
    return [
        {
            "fromState": h.from_state,
            "toState": h.to_state,
            "label": h.label,
            "at": h.at.isoformat(),
            "reference": h.reference,
        }
        for h in history
    ]


class CoordinationService:
    """Start workflows, dispatch their states to workers and apply results.

    Mutations of one workflow are serialised by a per-workflow lock that is
    held only around the state-store update. At most ``max_in_flight``
    ``execute-task`` commands are outstanding per process, one per workflow.
    """

    def __init__(
        self,
        bus: MessageBus,
        store: StateStore,
        registry: WorkflowRegistry,
        *,
        workers: Optional[WorkerDirectory] = None,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.bus = bus
        self.store = store
        self.registry = registry
        self.workers = workers or WorkerDirectory()
        self.max_in_flight = max_in_flight
        self._clock = clock
        self._active: Dict[str, WorkflowInstance] = {}
        self._locks = KeyedLock()
        self._slots = asyncio.Semaphore(max_in_flight)
        self._in_flight: Set[str] = set()
        self._parked: Dict[str, Set[str]] = defaultdict(set)
        self._subscriptions: List[Subscription] = []
        self._halted: Optional[str] = None
        self.worker_gate: WorkerGate = lambda worker: True
        self.task_failure_policy: Optional[TaskFailurePolicy] = None

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        self._subscriptions = [
            await self.bus.subscribe_to_event(AGENT_TASK_COMPLETED, self._on_task_completed),
            await self.bus.subscribe_to_event(AGENT_TASK_FAILED, self._on_task_failed),
            await self.bus.subscribe_to_event(AGENT_STATUS_CHANGED, self._on_status_changed),
        ]
        logger.info("Coordination service started")

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            await subscription.unsubscribe()
        self._subscriptions = []
        logger.info("Coordination service stopped")

    @property
    def halted(self) -> Optional[str]:
        return self._halted

    def halt(self, reason: str) -> None:
        """Stop dispatching; parked work resumes on ``resume``."""
        if self._halted is None:
            logger.critical(f"Coordination halted: {reason}")
        self._halted = reason

    async def resume(self) -> None:
        if self._halted is not None:
            logger.info(f"Coordination resumed after: {self._halted}")
        self._halted = None
        await self.resume_parked()

    def _new_workflow_id(self) -> str:
        millis = int(self._clock().timestamp() * 1000)
        return f"{millis:x}-{secrets.token_hex(4)}"

    def _definition(self, workflow_type: str) -> WorkflowDefinition:
        definition = self.registry.get_workflow(workflow_type)
        if definition is None:
            raise WorkflowError(
                f"Unknown workflow type: {workflow_type}",
                code="UNKNOWN_WORKFLOW_TYPE",
                details={"workflowType": workflow_type},
            )
        return definition

    # ------------------------------------------------------------------
    # Public operations
    async def start_workflow(
        self,
        workflow_type: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        if self._halted is not None:
            raise CriticalError(
                f"Coordination is halted: {self._halted}", code="COORDINATION_HALTED"
            )
        definition = self._definition(workflow_type)
        workflow_id = self._new_workflow_id()
        record = await self.store.save(
            workflow_id, definition.initial_state, data, workflow_type=workflow_type
        )
        instance = WorkflowInstance(
            id=workflow_id,
            type=workflow_type,
            current_state=definition.initial_state,
            started_at=record.created_at,
            updated_at=record.last_updated,
            metadata=dict(metadata or {}),
        )
        self._active[workflow_id] = instance
        logger.info(f"Started workflow {workflow_id} ({workflow_type})")
        await self.bus.publish_event(WORKFLOW_STARTED, instance.summary())
        await self._enter_state(instance, definition, definition.initial_state)
        return {"workflowId": workflow_id, "initialState": definition.initial_state}

    async def transition_workflow(
        self,
        workflow_id: str,
        label: str,
        patch: Optional[Dict[str, Any]] = None,
        *,
        expected_state: Optional[str] = None,
        task_id: Optional[str] = None,
        lenient: bool = False,
        reference: Optional[str] = None,
    ) -> Optional[Dict[str, str]]:
        """Apply ``label`` to the current state of ``workflow_id``.

        ``expected_state`` and ``task_id`` identify the task result being
        applied; results that no longer match are discarded and ``None`` is
        returned. With ``lenient`` an undeclared label is treated as
        ``failure`` instead of raising.

        Raises:
            NotFoundError: If the workflow does not exist.
            WorkflowError: For an unknown label or an already terminal workflow.
            DatabaseError: If the state store rejects the update.
        """
        event_driven = expected_state is not None or task_id is not None
        undeclared: Optional[str] = None
        healed_error: Optional[DatabaseError] = None

        async with self._locks(workflow_id):
            instance = await self._load_instance(workflow_id)
            if instance.status != ACTIVE:
                if event_driven:
                    logger.debug(
                        f"Ignoring result for {workflow_id}: workflow is {instance.status}"
                    )
                    return None
                raise WorkflowError(
                    f"Workflow {workflow_id} is already {instance.status}",
                    code="WORKFLOW_TERMINAL",
                )
            if expected_state is not None and instance.current_state != expected_state:
                logger.debug(
                    f"Discarding stale result for {workflow_id}: "
                    f"expected {expected_state}, at {instance.current_state}"
                )
                return None
            if (
                task_id is not None
                and instance.current_task_id is not None
                and task_id != instance.current_task_id
            ):
                logger.debug(f"Discarding result of superseded task {task_id}")
                return None

            definition = self._definition(instance.type)
            from_state = instance.current_state
            target = definition.next_state(from_state, label)
            if target is None:
                if not lenient:
                    raise WorkflowError(
                        f"State {from_state} of {workflow_id} has no transition {label!r}",
                        code="UNKNOWN_TRANSITION",
                        details={"state": from_state, "label": label},
                    )
                logger.warning(
                    f"Undeclared transition {label!r} from {from_state} in {workflow_id}; "
                    "treating as failure"
                )
                undeclared = f"Undeclared transition {label!r} from {from_state}"
                label = "failure"
                target = definition.next_state(from_state, label) or definition.failed_state
                reference = reference or new_reference()

            outcome = definition.outcome_of(target)
            try:
                record = await self.store.update(
                    workflow_id,
                    patch,
                    target,
                    label=label,
                    status=outcome,
                    reference=reference,
                )
            except DatabaseError as e:
                if not await self._self_heal(instance, definition, e):
                    raise
                healed_error = e
                target = instance.current_state
                outcome = FAILED
            else:
                instance.current_state = target
                instance.updated_at = record.last_updated
                if outcome is not None:
                    instance.status = outcome
            instance.current_task_id = None
            self._release_slot(workflow_id)

        if healed_error is not None:
            await self._finalize(
                instance,
                definition,
                target,
                from_state=from_state,
                error=str(healed_error),
                reference=healed_error.reference,
            )
            raise healed_error

        await self.bus.publish_event(
            WORKFLOW_STATE_CHANGED,
            {**instance.summary(), "fromState": from_state, "toState": target, "label": label},
        )
        await self._enter_state(
            instance,
            definition,
            target,
            from_state=from_state,
            error=(patch or {}).get("error") or undeclared,
            reference=reference,
        )
        return {"from": from_state, "to": target}

    async def fail_task(
        self,
        workflow_id: str,
        error: str,
        *,
        expected_state: Optional[str] = None,
        task_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Optional[Dict[str, str]]:
        """Move the workflow along its ``failure`` edge, or to the failed state."""
        return await self.transition_workflow(
            workflow_id,
            "failure",
            {"error": error},
            expected_state=expected_state,
            task_id=task_id,
            lenient=True,
            reference=reference or new_reference(),
        )

    async def skip_task(self, workflow_id: str, reason: str = "skipped") -> Optional[Dict[str, str]]:
        """Follow the ``skip`` edge when the current state declares one."""
        instance = await self._load_instance(workflow_id)
        definition = self._definition(instance.type)
        if definition.next_state(instance.current_state, "skip") is not None:
            return await self.transition_workflow(
                workflow_id, "skip", {"skipReason": reason}, expected_state=instance.current_state
            )
        return await self.fail_task(
            workflow_id, reason, expected_state=instance.current_state
        )

    async def get_workflow_status(self, workflow_id: str) -> Dict[str, Any]:
        instance = self._active.get(workflow_id)
        try:
            record = await self.store.get(workflow_id)
        except NotFoundError:
            if instance is None:
                return {"exists": False, "status": "unknown", "workflowId": workflow_id}
            raise
        if instance is not None:
            return {
                **instance.summary(),
                "exists": True,
                "archived": False,
                "history": history_to_wire(record.history),
            }
        status = record.status if record.status in (COMPLETED, FAILED) else ARCHIVED
        return {
            "exists": True,
            "archived": True,
            "workflowId": workflow_id,
            "workflowType": record.workflow_type,
            "status": status,
            "currentState": record.state,
            "startedAt": record.created_at.isoformat(),
            "updatedAt": record.last_updated.isoformat(),
            "history": history_to_wire(record.history),
        }

    def list_active_workflows(self) -> List[Dict[str, Any]]:
        return [instance.summary() for instance in self._active.values()]

    async def archive_workflow(self, workflow_id: str) -> Dict[str, Any]:
        """Evict the workflow from the hot map; the record stays in the store."""
        async with self._locks(workflow_id):
            record = await self.store.get(workflow_id)
            if record.status == ACTIVE:
                record = await self.store.update(workflow_id, status=ARCHIVED)
            self._active.pop(workflow_id, None)
            self._release_slot(workflow_id)
            for parked in self._parked.values():
                parked.discard(workflow_id)
        logger.info(f"Archived workflow {workflow_id} ({record.status})")
        return {"workflowId": workflow_id, "status": record.status}

    async def recover_in_flight(self, batch_size: int = 100) -> int:
        """Rehydrate active workflows from the store and re-dispatch them."""
        recovered = 0
        offset = 0
        while True:
            records = await self.store.find_by_status(ACTIVE, limit=batch_size, offset=offset)
            if not records:
                break
            offset += len(records)
            for record in records:
                if record.workflow_id in self._active:
                    continue
                definition = self.registry.get_workflow(record.workflow_type or "")
                if definition is None:
                    logger.warning(
                        f"Cannot recover {record.workflow_id}: "
                        f"unknown type {record.workflow_type}"
                    )
                    continue
                instance = WorkflowInstance.from_record(record)
                self._active[record.workflow_id] = instance
                await self._enter_state(instance, definition, record.state)
                recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} in-flight workflows")
        return recovered

    async def resume_parked(self) -> int:
        """Dispatch parked workflows whose worker is accepting work again."""
        resumed = 0
        for worker in list(self._parked):
            if self._halted is not None or not self.worker_gate(worker):
                continue
            for workflow_id in self._parked.pop(worker, set()):
                instance = self._active.get(workflow_id)
                if instance is None or instance.status != ACTIVE:
                    continue
                definition = self._definition(instance.type)
                spec = definition.state(instance.current_state)
                if spec.final or spec.worker != worker:
                    continue
                await self._dispatch(instance, worker, instance.current_state)
                resumed += 1
        return resumed

    def parked_workflows(self) -> Dict[str, List[str]]:
        return {worker: sorted(ids) for worker, ids in self._parked.items() if ids}

    def in_flight(self) -> int:
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Internal helpers
    async def _load_instance(self, workflow_id: str) -> WorkflowInstance:
        instance = self._active.get(workflow_id)
        if instance is not None:
            return instance
        record = await self.store.get(workflow_id)
        instance = WorkflowInstance.from_record(record)
        if record.status == ACTIVE:
            self._active[workflow_id] = instance
            logger.info(f"Rehydrated workflow {workflow_id} from the state store")
        return instance

    async def _self_heal(
        self, instance: WorkflowInstance, definition: WorkflowDefinition, error: DatabaseError
    ) -> bool:
        failed_state = definition.failed_state
        logger.error(
            f"State update for {instance.id} failed ({error}); "
            f"attempting transition to {failed_state}"
        )
        if failed_state is None or instance.current_state == failed_state:
            return False
        try:
            record = await self.store.update(
                instance.id,
                {"error": str(error)},
                failed_state,
                label="failure",
                status=FAILED,
                reference=error.reference,
            )
        except CoordinationError as heal_error:
            logger.error(
                f"Self-heal of {instance.id} failed ({heal_error}); "
                f"left in {instance.current_state}"
            )
            return False
        instance.current_state = failed_state
        instance.updated_at = record.last_updated
        instance.status = FAILED
        return True

    async def _enter_state(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        state: str,
        *,
        from_state: Optional[str] = None,
        error: Any = None,
        reference: Optional[str] = None,
    ) -> None:
        spec = definition.state(state)
        if spec.final:
            await self._finalize(
                instance,
                definition,
                state,
                from_state=from_state,
                error=error,
                reference=reference,
            )
            return
        await self._dispatch(instance, spec.worker, state)

    def _park(self, worker: str, workflow_id: str) -> None:
        self._parked[worker].add(workflow_id)

    async def _dispatch(self, instance: WorkflowInstance, worker: str, state: str) -> None:
        if self._halted is not None:
            logger.warning(f"Coordination halted; parking {instance.id} for {worker}")
            self._park(worker, instance.id)
            return
        if not self.worker_gate(worker):
            logger.warning(f"Worker {worker} is isolated; parking {instance.id}")
            self._park(worker, instance.id)
            return

        record = await self.store.get(instance.id)
        command = ExecuteTask(
            workflow_id=instance.id,
            task_id=uuid.uuid4().hex,
            task_type=state,
            workflow_type=instance.type,
            payload=record.payload,
        )
        key = self.workers.command_key(worker, EXECUTE)
        await self._acquire_slot(instance.id)
        instance.current_task_id = command.task_id
        instance.dispatched_to = worker
        instance.last_command = command.to_wire()
        try:
            await self.bus.publish_command(key, command)
        except MessagingError:
            instance.current_task_id = None
            self._release_slot(instance.id)
            raise
        logger.debug(f"Dispatched {instance.id}:{state} to {key}")

    async def _finalize(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        state: str,
        *,
        from_state: Optional[str] = None,
        error: Any = None,
        reference: Optional[str] = None,
    ) -> None:
        outcome = definition.outcome_of(state) or FAILED
        self._release_slot(instance.id)
        if instance.status != outcome:
            # A workflow whose initial state is already final.
            await self.store.update(instance.id, status=outcome)
            instance.status = outcome

        if outcome == COMPLETED:
            duration = (self._clock() - instance.started_at).total_seconds()
            await self.bus.publish_event(
                WORKFLOW_COMPLETED, {**instance.summary(), "duration": duration}
            )
            self._active.pop(instance.id, None)
            logger.info(f"Workflow {instance.id} completed in {duration:.3f}s")
            return

        failure = {
            **instance.summary(),
            "error": error_text(error) if error is not None else None,
            "reference": reference or new_reference(),
            "failedState": from_state,
        }
        await self.bus.publish_event(WORKFLOW_FAILED, failure)
        logger.warning(
            f"Workflow {instance.id} failed in {from_state} [{failure['reference']}]: "
            f"{failure['error']}"
        )

    async def _acquire_slot(self, workflow_id: str) -> None:
        if workflow_id in self._in_flight:
            return
        await self._slots.acquire()
        self._in_flight.add(workflow_id)

    def _release_slot(self, workflow_id: str) -> None:
        if workflow_id in self._in_flight:
            self._in_flight.discard(workflow_id)
            self._slots.release()

    # ------------------------------------------------------------------
    # Bus handlers
    async def _on_task_completed(self, data: Dict[str, Any], message: BusMessage) -> None:
        event = TaskCompleted.model_validate(data)
        try:
            await self.transition_workflow(
                event.workflow_id,
                event.transition_type or "success",
                event.result,
                expected_state=event.task_type,
                task_id=event.task_id,
                lenient=True,
            )
        except NotFoundError:
            logger.warning(f"Task result for unknown workflow {event.workflow_id}")

    async def _on_task_failed(self, data: Dict[str, Any], message: BusMessage) -> None:
        event = TaskFailed.model_validate(data)
        if not event.workflow_id:
            return
        async with self._locks(event.workflow_id):
            try:
                instance = await self._load_instance(event.workflow_id)
            except NotFoundError:
                logger.warning(f"Task failure for unknown workflow {event.workflow_id}")
                return
            if instance.status != ACTIVE or (
                event.task_type is not None and event.task_type != instance.current_state
            ):
                return
            if (
                event.task_id is not None
                and instance.current_task_id is not None
                and event.task_id != instance.current_task_id
            ):
                return

            if self.task_failure_policy is not None:
                original = instance.last_command or {
                    "workflowId": instance.id,
                    "taskId": event.task_id,
                    "taskType": instance.current_state,
                    "workflowType": instance.type,
                }
                if event.worker_id is None and instance.dispatched_to:
                    event = event.model_copy(update={"worker_id": instance.dispatched_to})
                if await self.task_failure_policy(event, original):
                    return

        await self.fail_task(
            event.workflow_id,
            error_text(event.error),
            expected_state=event.task_type,
            task_id=event.task_id,
        )

    def is_current_task(self, workflow_id: str, task_id: Optional[str]) -> bool:
        """True while ``task_id`` is still the outstanding task of an active workflow."""
        instance = self._active.get(workflow_id)
        if instance is None or instance.status != ACTIVE:
            return False
        return task_id is None or instance.current_task_id == task_id

    async def _on_status_changed(self, data: Dict[str, Any], message: BusMessage) -> None:
        event = StatusChanged.model_validate(data)
        if event.status != "isolated" and self._parked:
            await self.resume_parked()
