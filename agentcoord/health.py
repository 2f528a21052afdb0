"""Health monitor: worker registrations, heartbeats and liveness checks."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple, Union

from .bus import MessageBus, Subscription
from .config import MonitoringConfig
from .constants import AGENT_HEARTBEAT, AGENT_REGISTER, AGENT_STATUS_CHANGED
from .contracts import BusMessage, Heartbeat, StatusChanged, WorkerRegistration
from .errors import DatabaseError, MessagingError, NotFoundError
from .persistence import WorkerHealthStore, WorkerRecord, WorkerStatus
from .utils import utcnow
from .utils.locks import KeyedLock

logger = logging.getLogger(__name__)

# Workers in these states are not checked for missed heartbeats.
UNCHECKED_STATUSES = {
    WorkerStatus.FAILED,
    WorkerStatus.UNRESPONSIVE,
    WorkerStatus.ISOLATED,
    WorkerStatus.OFFLINE,
}
DOWN_STATUSES = {WorkerStatus.FAILED, WorkerStatus.UNRESPONSIVE}

RecoveryHandler = Callable[[str, str], Awaitable[Any]]


def worker_to_wire(record: WorkerRecord) -> Dict[str, Any]:
    def iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "workerId": record.worker_id,
        "type": record.worker_type,
        "status": record.status.value,
        "statusReason": record.status_reason,
        "metadata": record.metadata,
        "metrics": record.metrics,
        "critical": record.critical,
        "lastHeartbeat": iso(record.last_heartbeat),
        "lastStatusChange": iso(record.last_status_change),
        "registered": iso(record.registered),
        "lastUpdated": iso(record.last_updated),
        "recoveryAttempts": record.recovery_attempts,
        "lastRecoveryAttempt": iso(record.last_recovery_attempt),
        "nextRecoveryAttempt": iso(record.next_recovery_attempt),
        "impact": record.impact,
    }


class HealthMonitor:
    """Live view of worker liveness.

    Every mutation of one worker record runs under that worker's lock.
    Records are written through to ``store``; failed writes are kept
    pending and retried on the next heartbeat or health check.
    """

    def __init__(
        self,
        bus: MessageBus,
        store: WorkerHealthStore,
        config: Optional[MonitoringConfig] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.bus = bus
        self.store = store
        self.config = config or MonitoringConfig()
        self._clock = clock
        self._workers: Dict[str, WorkerRecord] = {}
        self._locks = KeyedLock()
        self._pending: Set[str] = set()
        self._metrics_history: Dict[str, Deque[Tuple[datetime, Dict[str, Any]]]] = defaultdict(
            deque
        )
        self._last_sent: Dict[str, datetime] = {}
        self._unhealthy: Dict[str, str] = {}
        self._subscriptions: List[Subscription] = []
        self._monitor_task: Optional[asyncio.Task] = None
        self.recovery_handler: Optional[RecoveryHandler] = None

    @property
    def heartbeat_timeout(self) -> timedelta:
        return timedelta(milliseconds=self.config.heartbeat_timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self, monitor: bool = True) -> None:
        try:
            for record in await self.store.list_all():
                self._workers[record.worker_id] = record
        except DatabaseError as e:
            logger.error(f"Could not load worker records: {e}")
        self._subscriptions = [
            await self.bus.subscribe_to_event(AGENT_HEARTBEAT, self._on_heartbeat),
            await self.bus.subscribe_to_event(AGENT_STATUS_CHANGED, self._on_status_changed),
            await self.bus.subscribe_to_event(AGENT_REGISTER, self._on_register),
        ]
        if monitor:
            self.start_monitoring()
        logger.info(f"Health monitor started with {len(self._workers)} known workers")

    async def stop(self) -> None:
        await self.stop_monitoring()
        for subscription in self._subscriptions:
            await subscription.unsubscribe()
        self._subscriptions = []

    def start_monitoring(self) -> None:
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self._monitor_loop(), name="health-check")

    async def stop_monitoring(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

    async def _monitor_loop(self) -> None:
        interval = self.config.check_interval / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_workers_health()
            except Exception as e:
                logger.error(f"Health check failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _persist(self, record: WorkerRecord) -> None:
        try:
            await self.store.upsert(record)
        except DatabaseError as e:
            self._pending.add(record.worker_id)
            logger.error(f"Failed to persist worker {record.worker_id}, will retry: {e}")
        else:
            self._pending.discard(record.worker_id)

    async def flush_pending(self) -> int:
        flushed = 0
        for worker_id in list(self._pending):
            record = self._workers.get(worker_id)
            if record is None:
                self._pending.discard(worker_id)
                continue
            await self._persist(record)
            if worker_id not in self._pending:
                flushed += 1
        return flushed

    def _require(self, worker_id: str) -> WorkerRecord:
        record = self._workers.get(worker_id)
        if record is None:
            raise NotFoundError(f"Worker {worker_id} is not registered", code="WORKER_NOT_FOUND")
        return record

    # ------------------------------------------------------------------
    # Worker events
    async def register_worker(
        self,
        worker_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        status: Optional[str] = None,
    ) -> WorkerRecord:
        async with self._locks(worker_id):
            now = self._clock()
            record = self._workers.get(worker_id)
            if record is None:
                record = WorkerRecord(
                    worker_id=worker_id,
                    metadata=dict(metadata or {}),
                    status=WorkerStatus(status or WorkerStatus.STARTING),
                    registered=now,
                    last_status_change=now,
                    last_updated=now,
                )
                self._workers[worker_id] = record
                logger.info(f"Registered worker {worker_id}")
            else:
                record.metadata = {**record.metadata, **(metadata or {})}
                if record.status != WorkerStatus.ISOLATED:
                    record.status = WorkerStatus(status or WorkerStatus.STARTING)
                    record.last_status_change = now
                record.last_updated = now
                logger.info(f"Re-registered worker {worker_id} ({record.status.value})")
            await self._persist(record)
            return record

    async def handle_heartbeat(self, heartbeat: Union[Heartbeat, Dict[str, Any]]) -> WorkerRecord:
        if not isinstance(heartbeat, Heartbeat):
            heartbeat = Heartbeat.model_validate(heartbeat)
        if heartbeat.worker_id not in self._workers:
            await self.register_worker(heartbeat.worker_id, {}, heartbeat.status)

        async with self._locks(heartbeat.worker_id):
            record = self._workers[heartbeat.worker_id]
            now = self._clock()
            sent = heartbeat.timestamp
            last_sent = self._last_sent.get(record.worker_id)
            if sent is not None and last_sent is not None and sent < last_sent:
                logger.debug(f"Ignoring out-of-order heartbeat from {record.worker_id}")
                return record

            # Liveness runs on the monitor's clock; the worker's timestamp only orders beats
            if sent is None or sent != last_sent:
                self._metrics_history[record.worker_id].append((now, dict(heartbeat.metrics)))
            if sent is not None:
                self._last_sent[record.worker_id] = sent
            record.last_heartbeat = now
            record.metrics = dict(heartbeat.metrics)
            if record.status != WorkerStatus.ISOLATED:
                status = WorkerStatus(heartbeat.status)
                if status != record.status:
                    record.status = status
                    record.last_status_change = now
                if status == WorkerStatus.ONLINE:
                    record.status_reason = None
                    record.recovery_attempts = 0
                    record.next_recovery_attempt = None
            record.last_updated = now
            await self._persist(record)
        if self._pending:
            await self.flush_pending()
        return record

    async def handle_status_change(
        self, change: Union[StatusChanged, Dict[str, Any]]
    ) -> Optional[WorkerRecord]:
        if not isinstance(change, StatusChanged):
            change = StatusChanged.model_validate(change)
        if change.worker_id not in self._workers:
            await self.register_worker(change.worker_id, {})

        status = WorkerStatus(change.status)
        async with self._locks(change.worker_id):
            record = self._workers[change.worker_id]
            now = self._clock()
            at = change.timestamp or now
            if record.last_status_change is not None and at < record.last_status_change:
                logger.debug(f"Ignoring stale status change for {record.worker_id}")
                return None
            if record.status == WorkerStatus.ISOLATED and status != WorkerStatus.ISOLATED:
                logger.info(
                    f"Worker {record.worker_id} is isolated; ignoring status {status.value}"
                )
                return None
            previous = record.status
            record.status = status
            record.status_reason = change.reason
            record.last_status_change = at
            record.last_updated = now
            await self._persist(record)

        logger.info(
            f"Worker {record.worker_id} status {previous.value} -> {status.value}"
            + (f" ({change.reason})" if change.reason else "")
        )
        if (
            status in DOWN_STATUSES
            and self.config.auto_recovery
            and self.recovery_handler is not None
        ):
            await self.recovery_handler(record.worker_id, change.reason or status.value)
        return record

    # ------------------------------------------------------------------
    # Liveness checks
    async def check_workers_health(self) -> List[str]:
        """Publish ``unresponsive`` for every worker past its heartbeat deadline."""
        now = self._clock()
        timeout = self.heartbeat_timeout
        flagged: List[str] = []
        for record in list(self._workers.values()):
            if record.status in UNCHECKED_STATUSES:
                continue
            last_seen = record.last_heartbeat or record.registered
            silence = now - last_seen
            if silence <= timeout:
                continue
            change = StatusChanged(
                worker_id=record.worker_id,
                status=WorkerStatus.UNRESPONSIVE.value,
                reason=f"No heartbeat for {silence.total_seconds():.1f}s",
                previous_status=record.status.value,
                timestamp=now,
            )
            try:
                await self.bus.publish_event(AGENT_STATUS_CHANGED, change)
            except MessagingError as e:
                logger.error(f"Could not report {record.worker_id} unresponsive: {e}")
                continue
            logger.warning(f"Worker {record.worker_id} is unresponsive")
            flagged.append(record.worker_id)
        await self._retry_recoveries(now)
        if self._pending:
            await self.flush_pending()
        return flagged

    async def _retry_recoveries(self, now: datetime) -> None:
        """Re-drive recovery for down workers whose backoff has elapsed."""
        if not self.config.auto_recovery or self.recovery_handler is None:
            return
        for record in list(self._workers.values()):
            if record.status not in DOWN_STATUSES:
                continue
            due = record.next_recovery_attempt
            if due is None or due > now:
                continue
            logger.info(
                f"Worker {record.worker_id} still {record.status.value}; "
                f"recovery attempt {record.recovery_attempts + 1}"
            )
            try:
                await self.recovery_handler(
                    record.worker_id, record.status_reason or record.status.value
                )
            except Exception as e:
                logger.error(f"Recovery of {record.worker_id} failed: {e}", exc_info=True)

    def is_dispatchable(self, worker: str) -> bool:
        """False when ``worker`` (an id or a type) is quarantined."""
        record = self._workers.get(worker)
        if record is not None:
            return record.status != WorkerStatus.ISOLATED
        of_type = [r for r in self._workers.values() if r.worker_type == worker]
        if not of_type:
            return True
        return any(r.status != WorkerStatus.ISOLATED for r in of_type)

    # ------------------------------------------------------------------
    # Recovery hooks
    async def record_recovery_attempt(
        self, worker_id: str, next_attempt: Optional[datetime] = None
    ) -> int:
        async with self._locks(worker_id):
            record = self._require(worker_id)
            now = self._clock()
            record.recovery_attempts += 1
            record.last_recovery_attempt = now
            record.next_recovery_attempt = next_attempt
            record.last_updated = now
            await self._persist(record)
            return record.recovery_attempts

    async def isolate_worker(self, worker_id: str, impact: str, reason: str) -> WorkerRecord:
        if worker_id not in self._workers:
            await self.register_worker(worker_id, {})
        async with self._locks(worker_id):
            record = self._workers[worker_id]
            now = self._clock()
            previous = record.status
            record.status = WorkerStatus.ISOLATED
            record.status_reason = reason
            record.impact = impact
            record.last_status_change = now
            record.last_updated = now
            await self._persist(record)
        logger.warning(f"Worker {worker_id} isolated: {reason}")
        await self._announce(worker_id, WorkerStatus.ISOLATED, reason, previous)
        return record

    async def reset_worker(self, worker_id: str, reason: str = "operator reset") -> WorkerRecord:
        """Take a worker out of quarantine and clear its recovery backoff."""
        async with self._locks(worker_id):
            record = self._require(worker_id)
            now = self._clock()
            previous = record.status
            record.status = WorkerStatus.RECOVERING
            record.status_reason = reason
            record.impact = None
            record.recovery_attempts = 0
            record.next_recovery_attempt = None
            record.last_status_change = now
            record.last_updated = now
            await self._persist(record)
        logger.info(f"Worker {worker_id} reset from {previous.value}")
        await self._announce(worker_id, WorkerStatus.RECOVERING, reason, previous)
        return record

    async def _announce(
        self, worker_id: str, status: WorkerStatus, reason: str, previous: WorkerStatus
    ) -> None:
        change = StatusChanged(
            worker_id=worker_id,
            status=status.value,
            reason=reason,
            previous_status=previous.value,
            timestamp=self._clock(),
        )
        try:
            await self.bus.publish_event(AGENT_STATUS_CHANGED, change)
        except MessagingError as e:
            logger.error(f"Could not announce {worker_id} {status.value}: {e}")

    def mark_unhealthy(self, reason: str, key: str = "fatal") -> None:
        if key not in self._unhealthy:
            logger.critical(f"System marked unhealthy: {reason}")
        self._unhealthy[key] = reason

    def clear_unhealthy(self, key: str = "fatal") -> None:
        if self._unhealthy.pop(key, None) is not None:
            logger.info(f"Unhealthy flag {key} cleared")

    # ------------------------------------------------------------------
    # Queries
    def get_worker(self, worker_id: str) -> Optional[WorkerRecord]:
        return self._workers.get(worker_id)

    def get_worker_status(self, worker_id: str) -> Optional[Dict[str, Any]]:
        record = self._workers.get(worker_id)
        return worker_to_wire(record) if record else None

    def get_all_workers(self) -> List[Dict[str, Any]]:
        return [worker_to_wire(r) for r in self._workers.values()]

    def metrics_history(self, worker_id: str) -> List[Dict[str, Any]]:
        return [
            {"at": at.isoformat(), "metrics": metrics}
            for at, metrics in self._metrics_history.get(worker_id, ())
        ]

    def prune_metrics(self) -> int:
        cutoff = self._clock() - timedelta(days=self.config.metrics_retention_days)
        pruned = 0
        for history in self._metrics_history.values():
            while history and history[0][0] < cutoff:
                history.popleft()
                pruned += 1
        return pruned

    def get_system_health_summary(self) -> Dict[str, Any]:
        workers = list(self._workers.values())
        online = [w for w in workers if w.status == WorkerStatus.ONLINE]
        down = [w for w in workers if w.status != WorkerStatus.ONLINE]
        critical_down = [w.worker_id for w in down if w.critical]
        score = len(online) / len(workers) if workers else 1.0

        if self._unhealthy:
            status = "unhealthy"
        elif critical_down:
            status = "degraded"
        else:
            status = "healthy"

        issues: List[Dict[str, Any]] = [
            {
                "workerId": w.worker_id,
                "status": w.status.value,
                "reason": w.status_reason,
                "critical": w.critical,
            }
            for w in down
        ]
        issues.extend({"system": key, "reason": reason} for key, reason in self._unhealthy.items())
        return {
            "status": status,
            "score": round(score, 4),
            "totalWorkers": len(workers),
            "onlineWorkers": len(online),
            "criticalWorkersDown": critical_down,
            "issues": issues,
            "timestamp": self._clock().isoformat(),
        }

    # ------------------------------------------------------------------
    # Bus handlers
    async def _on_heartbeat(self, data: Dict[str, Any], message: BusMessage) -> None:
        await self.handle_heartbeat(data)

    async def _on_status_changed(self, data: Dict[str, Any], message: BusMessage) -> None:
        await self.handle_status_change(data)

    async def _on_register(self, data: Dict[str, Any], message: BusMessage) -> None:
        event = WorkerRegistration.model_validate(data)
        await self.register_worker(event.worker_id, event.metadata, event.status)
