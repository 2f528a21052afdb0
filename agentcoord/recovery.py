"""Recovery service: strategies for failing workers and tasks, and the dead-letter queue."""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections import Counter, OrderedDict, defaultdict, deque
from datetime import datetime, timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Set,
    Tuple,
)

from pydantic import BaseModel, ConfigDict, Field

from .bus import MessageBus, Subscription
from .config import MonitoringConfig
from .constants import (
    AGENT_FAILED,
    AGENT_RECOVERY_COMPLETED,
    AGENT_RECOVERY_FAILED,
    DEFAULT_MAX_TASK_RETRIES,
    SYSTEM_NOTIFICATION,
)
from .contracts import (
    BusMessage,
    DelegationCommand,
    FallbackCommand,
    Notification,
    RecoverCommand,
    RestartCommand,
    RetryTask,
    TaskFailed,
    WorkerFailed,
    error_text,
)
from .errors import AgentError, CoordinationError, ErrorCategory
from .health import HealthMonitor
from .persistence import WorkerStatus
from .utils import utcnow
from .utils.retry import compute_backoff
from .workers import (
    HANDLE_DELEGATION,
    RECOVER,
    RESTART,
    RESTART_MODULE,
    RETRY,
    USE_FALLBACK,
    WorkerDirectory,
)

if TYPE_CHECKING:
    from .coordination import CoordinationService
    from .error_handling import ErrorHandlingService

logger = logging.getLogger(__name__)

StrategyName = Literal["restart", "retry", "delegate", "skip", "fallback", "manual"]

FAILURE_WINDOW = timedelta(hours=1)
TASK_RETRY_MAX_DELAY = 30.0
RETRYABLE_TASK_CATEGORIES = {
    ErrorCategory.TIMEOUT.value,
    ErrorCategory.RATE_LIMIT.value,
    ErrorCategory.EXTERNAL_SERVICE.value,
    ErrorCategory.DATABASE.value,
}

# Resource pressure thresholds for resource-aware restarts.
CPU_PRESSURE_PERCENT = 90
MEMORY_PRESSURE_PERCENT = 90
HEAP_PRESSURE_BYTES = 1_000_000_000
DEFAULT_MEMORY_LIMIT_BYTES = 1_073_741_824

# Health-triggered recovery backoff, in seconds.
RECOVERY_BACKOFF_MAX = 600.0

DEFAULT_DELEGATIONS: Dict[str, List[str]] = {
    "content-creation": ["content-strategy", "brand-consistency"],
    "content-strategy": ["content-creation"],
    "optimisation": ["content-management"],
    "brand-consistency": ["content-creation"],
    "content-management": ["content-creation"],
}


class RecoveryStrategy(BaseModel):
    """Strategy plus its tuning; delays are seconds."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    strategy: StrategyName = "restart"
    max_retries: int = Field(default=3, alias="maxRetries")
    base_delay: float = Field(default=1.0, alias="baseDelay")
    factor: float = Field(default=2.0, alias="backoffFactor")
    max_delay: float = Field(default=30.0, alias="maxDelay")
    fallback_method: Optional[str] = Field(default=None, alias="fallbackMethod")
    delegates: List[str] = Field(default_factory=list)


DEFAULT_STRATEGIES: Dict[str, RecoveryStrategy] = {
    ErrorCategory.AGENT.value: RecoveryStrategy(strategy="restart"),
    ErrorCategory.TIMEOUT.value: RecoveryStrategy(strategy="retry", max_retries=3, factor=2),
    ErrorCategory.RATE_LIMIT.value: RecoveryStrategy(
        strategy="retry", max_retries=5, factor=3, base_delay=5.0
    ),
    ErrorCategory.EXTERNAL_SERVICE.value: RecoveryStrategy(
        strategy="fallback", fallback_method="alternateProvider"
    ),
}


class DeadLetterEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    worker_id: str
    module_id: Optional[str] = None
    error: str
    category: str
    original_message: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime
    kind: Literal["task", "worker"]
    task_id: Optional[str] = None
    workflow_id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "workerId": self.worker_id,
            "moduleId": self.module_id,
            "error": self.error,
            "category": self.category,
            "originalMessage": self.original_message,
            "enqueuedAt": self.enqueued_at.isoformat(),
            "kind": self.kind,
            "taskId": self.task_id,
            "workflowId": self.workflow_id,
        }


class DeadLetterQueue:
    """Insertion-ordered store of entries awaiting operator action."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._entries: "OrderedDict[str, DeadLetterEntry]" = OrderedDict()
        self._clock = clock

    def add(self, **fields: Any) -> DeadLetterEntry:
        now = self._clock()
        key = f"{int(now.timestamp() * 1000):x}-{secrets.token_hex(3)}"
        entry = DeadLetterEntry(key=key, enqueued_at=now, **fields)
        self._entries[key] = entry
        logger.info(f"Dead-lettered {entry.kind} for {entry.worker_id}: {key}")
        return entry

    def get(self, key: str) -> Optional[DeadLetterEntry]:
        return self._entries.get(key)

    def list(
        self,
        worker_id: Optional[str] = None,
        kind: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[DeadLetterEntry]:
        return [
            e
            for e in self._entries.values()
            if (worker_id is None or e.worker_id == worker_id)
            and (kind is None or e.kind == kind)
            and (category is None or e.category == category)
        ]

    def remove(self, key: str) -> Optional[DeadLetterEntry]:
        return self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


def under_resource_pressure(metrics: Mapping[str, Any], reason: Optional[str] = None) -> bool:
    cpu = metrics.get("cpu")
    if isinstance(cpu, (int, float)) and cpu >= CPU_PRESSURE_PERCENT:
        return True
    memory = metrics.get("memory")
    if isinstance(memory, Mapping):
        if memory.get("pressure"):
            return True
        percent = memory.get("percent")
        if isinstance(percent, (int, float)) and percent >= MEMORY_PRESSURE_PERCENT:
            return True
        heap = memory.get("heapUsed")
        if isinstance(heap, (int, float)) and heap >= HEAP_PRESSURE_BYTES:
            return True
    return bool(reason and "memory" in reason.lower())


def _memory_limit(metrics: Mapping[str, Any]) -> int:
    memory = metrics.get("memory")
    heap = memory.get("heapUsed") if isinstance(memory, Mapping) else None
    if isinstance(heap, (int, float)) and heap > 0:
        return max(DEFAULT_MEMORY_LIMIT_BYTES, int(heap * 1.5))
    return DEFAULT_MEMORY_LIMIT_BYTES


class RecoveryService:
    """Chooses and applies recovery actions for failing workers and tasks.

    Worker failures are counted per category over a trailing hour; once
    ``max_recovery_attempts`` recoveries have been tried the worker is
    dead-lettered and isolated in the health monitor.
    """

    def __init__(
        self,
        bus: MessageBus,
        health: HealthMonitor,
        coordination: Optional["CoordinationService"] = None,
        errors: Optional["ErrorHandlingService"] = None,
        *,
        workers: Optional[WorkerDirectory] = None,
        config: Optional[MonitoringConfig] = None,
        delegations: Optional[Mapping[str, List[str]]] = None,
        max_task_retries: int = DEFAULT_MAX_TASK_RETRIES,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.bus = bus
        self.health = health
        self.coordination = coordination
        self.errors = errors
        self.workers = workers or WorkerDirectory()
        self.config = config or health.config
        self.max_task_retries = max_task_retries
        self._clock = clock
        self._sleep = sleep
        self.delegations: Dict[str, List[str]] = {
            **DEFAULT_DELEGATIONS,
            **{k: list(v) for k, v in (delegations or {}).items()},
        }
        self._strategies: Dict[str, RecoveryStrategy] = dict(DEFAULT_STRATEGIES)
        self._history: Dict[str, Deque[Tuple[datetime, str, str]]] = defaultdict(deque)
        self._task_retries: Dict[str, Tuple[int, datetime]] = {}
        self._by_type: Counter = Counter()
        self._by_strategy: Counter = Counter()
        self._outcomes: Counter = Counter()
        self._background: Set[asyncio.Task] = set()
        self._subscriptions: List[Subscription] = []
        self.dlq = DeadLetterQueue(clock)

    @property
    def max_recovery_attempts(self) -> int:
        return self.config.max_recovery_attempts

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        self.health.recovery_handler = self.recover_worker
        if self.coordination is not None:
            self.coordination.task_failure_policy = self.handle_task_failure
        self._subscriptions = [
            await self.bus.subscribe_to_event(AGENT_FAILED, self._on_worker_failed),
            await self.bus.subscribe_to_event(
                AGENT_RECOVERY_COMPLETED, self._on_recovery_completed
            ),
            await self.bus.subscribe_to_event(AGENT_RECOVERY_FAILED, self._on_recovery_failed),
        ]
        logger.info("Recovery service started")

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            await subscription.unsubscribe()
        self._subscriptions = []
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        self.health.recovery_handler = None
        if self.coordination is not None:
            self.coordination.task_failure_policy = None

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled retries to be published."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Strategy table
    def register_recovery_strategy(
        self,
        worker_id: Optional[str],
        module_id: Optional[str],
        category: str,
        strategy: StrategyName,
        config: Optional[Mapping[str, Any]] = None,
    ) -> str:
        if module_id and not worker_id:
            raise AgentError("A module strategy needs a worker id", code="INVALID_STRATEGY")
        key = ":".join(part for part in (worker_id, module_id, category) if part)
        self._strategies[key] = RecoveryStrategy(strategy=strategy, **dict(config or {}))
        logger.info(f"Registered recovery strategy {strategy} for {key}")
        return key

    def select_strategy(
        self,
        worker_id: str,
        category: str,
        module_id: Optional[str] = None,
        worker_type: Optional[str] = None,
    ) -> RecoveryStrategy:
        """Most specific match of worker:module:category, worker:category, category."""
        candidates: List[str] = []
        for worker in dict.fromkeys(w for w in (worker_id, worker_type) if w):
            if module_id:
                candidates.append(f"{worker}:{module_id}:{category}")
            candidates.append(f"{worker}:{category}")
        candidates.append(category)
        for key in candidates:
            strategy = self._strategies.get(key)
            if strategy is not None:
                return strategy
        return RecoveryStrategy(strategy="restart")

    # ------------------------------------------------------------------
    # Worker failures
    def _recent_attempts(self, worker_id: str, category: str) -> int:
        cutoff = self._clock() - FAILURE_WINDOW
        history = self._history[worker_id]
        while history and history[0][0] < cutoff:
            history.popleft()
        return sum(1 for _, cat, _ in history if cat == category)

    def _record(self, worker_id: str, worker_type: str, category: str, strategy: str) -> None:
        self._history[worker_id].append((self._clock(), category, strategy))
        self._by_type[worker_type] += 1
        self._by_strategy[strategy] += 1

    def _worker_type(self, worker_id: str) -> str:
        record = self.health.get_worker(worker_id)
        return record.worker_type if record else worker_id

    def _is_isolated(self, worker_id: str) -> bool:
        record = self.health.get_worker(worker_id)
        return record is not None and record.status == WorkerStatus.ISOLATED

    async def handle_worker_failure(self, failure: WorkerFailed) -> Dict[str, Any]:
        worker_id = failure.worker_id
        category = failure.category
        error = error_text(failure.error)
        if self._is_isolated(worker_id):
            logger.info(f"Worker {worker_id} is isolated; ignoring failure")
            return {"success": False, "action": "ignored"}

        attempts = self._recent_attempts(worker_id, category)
        if attempts >= self.max_recovery_attempts:
            await self._quarantine(
                worker_id,
                error,
                category,
                failure.to_wire(),
                module_id=failure.module_id,
                attempts=attempts,
            )
            return {"success": False, "action": "isolate", "attempts": attempts}

        worker_type = self._worker_type(worker_id)
        strategy = self.select_strategy(worker_id, category, failure.module_id, worker_type)
        try:
            await self._apply_strategy(
                worker_id, worker_type, strategy, error, category, failure, attempts + 1
            )
        except CoordinationError as e:
            logger.error(f"Recovery of {worker_id} failed: {e}")
            await self._publish_recovery_failed(
                worker_id, failure.module_id, str(e), "internal", "RECOVERY_ERROR"
            )
            return {"success": False, "action": strategy.strategy, "error": str(e)}

        self._record(worker_id, worker_type, category, strategy.strategy)
        if self.health.get_worker(worker_id) is not None:
            await self.health.record_recovery_attempt(worker_id)
        return {"success": True, "strategy": strategy.strategy}

    async def _apply_strategy(
        self,
        worker_id: str,
        worker_type: str,
        strategy: RecoveryStrategy,
        error: str,
        category: str,
        failure: WorkerFailed,
        attempt: int,
    ) -> None:
        name = strategy.strategy
        logger.info(f"Applying recovery strategy {name} to {worker_id}")
        data = failure.data

        if name == "restart":
            await self._restart(worker_id, worker_type, failure.module_id)
        elif name == "retry":
            command = data.get("command")
            if not command:
                await self._restart(worker_id, worker_type, failure.module_id)
                return
            delay = compute_backoff(
                attempt, strategy.base_delay, strategy.factor, strategy.max_delay
            )
            payload = {**data, "isRetry": True, "retryTimestamp": self._clock().isoformat()}
            self._spawn(self._publish_later(f"{worker_id}.{command}", payload, delay))
        elif name == "delegate":
            delegate = self._pick_delegate(worker_type, strategy.delegates)
            key = self.workers.command_key(delegate, HANDLE_DELEGATION)
            await self.bus.publish_command(
                key,
                DelegationCommand(
                    original_worker_id=worker_id, data=data, delegation_reason=category
                ),
            )
        elif name == "skip":
            workflow_id = data.get("workflowId")
            if workflow_id and self.coordination is not None:
                await self.coordination.skip_task(workflow_id, error)
            await self.bus.publish_event(
                AGENT_RECOVERY_COMPLETED, {"workerId": worker_id, "strategy": "skip"}
            )
        elif name == "fallback":
            key = self.workers.command_key(worker_id, USE_FALLBACK, worker_type)
            await self.bus.publish_command(
                key,
                FallbackCommand(fallback_method=strategy.fallback_method or "default", data=data),
            )
        elif name == "manual":
            entry = self.dlq.add(
                kind="worker",
                worker_id=worker_id,
                module_id=failure.module_id,
                error=error,
                category=category,
                original_message=failure.to_wire(),
            )
            await self._notify(
                "agent_failure",
                "critical",
                f"Worker {worker_id} requires manual intervention",
                {"workerId": worker_id, "category": category, "deadLetterKey": entry.key},
            )

    async def _restart(
        self,
        worker_id: str,
        worker_type: str,
        module_id: Optional[str] = None,
        command: Optional[RestartCommand] = None,
    ) -> None:
        capability = RESTART_MODULE if module_id else RESTART
        key = self.workers.command_key(worker_id, capability, worker_type)
        await self.bus.publish_command(key, command or RestartCommand(module_id=module_id))

    def _pick_delegate(self, worker_type: str, configured: List[str]) -> str:
        for delegate in configured or self.delegations.get(worker_type, []):
            if self.health.is_dispatchable(delegate) and self.workers.supports(
                delegate, HANDLE_DELEGATION
            ):
                return delegate
        raise AgentError(
            f"No delegate available for {worker_type}", code="NO_DELEGATE_AVAILABLE"
        )

    async def _quarantine(
        self,
        worker_id: str,
        error: str,
        category: str,
        original: Dict[str, Any],
        *,
        module_id: Optional[str] = None,
        attempts: int = 0,
    ) -> None:
        entry = self.dlq.add(
            kind="worker",
            worker_id=worker_id,
            module_id=module_id,
            error=error,
            category=category,
            original_message=original,
        )
        await self._publish_recovery_failed(
            worker_id, module_id, error, category, "MAX_ATTEMPTS_EXCEEDED", entry.key
        )
        record = self.health.get_worker(worker_id)
        impact = f"{worker_id} quarantined after {attempts} recovery attempts"
        if record is not None and record.critical:
            impact += "; critical worker, system degraded"
        await self.health.isolate_worker(worker_id, impact=impact, reason="MAX_ATTEMPTS_EXCEEDED")
        await self._notify(
            "agent_isolated",
            "critical",
            f"Worker {worker_id} isolated after repeated recovery failures",
            {"workerId": worker_id, "deadLetterKey": entry.key, "impact": impact},
        )

    # ------------------------------------------------------------------
    # Health-triggered recovery
    async def recover_worker(self, worker_id: str, reason: str = "") -> Dict[str, Any]:
        record = self.health.get_worker(worker_id)
        if record is None:
            return {"success": False, "action": "none", "reason": "unknown worker"}
        if record.status == WorkerStatus.ISOLATED:
            return {"success": False, "action": "isolated"}

        now = self._clock()
        if record.next_recovery_attempt is not None and now < record.next_recovery_attempt:
            logger.debug(f"Recovery of {worker_id} backing off until {record.next_recovery_attempt}")
            return {
                "success": False,
                "action": "backoff",
                "nextAttempt": record.next_recovery_attempt.isoformat(),
            }

        if record.recovery_attempts >= self.max_recovery_attempts:
            await self._quarantine(
                worker_id,
                reason or record.status_reason or "unresponsive",
                ErrorCategory.AGENT.value,
                {"workerId": worker_id, "status": record.status.value, "metrics": record.metrics},
                attempts=record.recovery_attempts,
            )
            return {"success": False, "action": "isolate", "attempts": record.recovery_attempts}

        worker_type = record.worker_type
        try:
            if under_resource_pressure(record.metrics, reason or record.status_reason):
                strategy = "resource_optimization"
                await self._restart(
                    worker_id,
                    worker_type,
                    command=RestartCommand(
                        optimize_resources=True,
                        resource_config={"memoryLimit": _memory_limit(record.metrics)},
                    ),
                )
            else:
                strategy = "recover"
                key = self.workers.command_key(worker_id, RECOVER, worker_type)
                await self.bus.publish_command(
                    key, RecoverCommand(worker_id=worker_id, reason=reason or None)
                )
        except CoordinationError as e:
            logger.error(f"Could not send recovery command to {worker_id}: {e}")
            await self._publish_recovery_failed(
                worker_id, None, str(e), "internal", "RECOVERY_ERROR"
            )
            return {"success": False, "action": "error", "error": str(e)}

        delay = compute_backoff(
            record.recovery_attempts + 1,
            base=self.config.check_interval / 1000,
            factor=2,
            maximum=RECOVERY_BACKOFF_MAX,
        )
        next_attempt = now + timedelta(seconds=delay)
        attempts = await self.health.record_recovery_attempt(worker_id, next_attempt)
        self._record(worker_id, worker_type, ErrorCategory.AGENT.value, strategy)
        logger.info(f"Recovery {attempts} of {worker_id} via {strategy}")
        return {
            "success": True,
            "strategy": strategy,
            "attempt": attempts,
            "nextAttempt": next_attempt.isoformat(),
        }

    # ------------------------------------------------------------------
    # Task failures
    async def handle_task_failure(self, failure: TaskFailed, original: Dict[str, Any]) -> bool:
        """Schedule a retry of the failed task; ``False`` means give up."""
        worker = failure.worker_id or "unknown"
        retry_key = f"{worker}:{failure.task_id or failure.workflow_id}"
        retries = self._task_retries.get(retry_key, (0, self._clock()))[0]

        if failure.category in RETRYABLE_TASK_CATEGORIES and retries < self.max_task_retries:
            attempt = retries + 1
            self._task_retries[retry_key] = (attempt, self._clock())
            delay = compute_backoff(attempt, 1.0, 2.0, TASK_RETRY_MAX_DELAY)
            logger.info(
                f"Scheduling retry {attempt} of task {failure.task_id} on {worker} in {delay:.1f}s"
            )
            self._by_type[self._worker_type(worker)] += 1
            self._by_strategy["retry"] += 1
            self._spawn(
                self._publish_later(
                    self.workers.command_key(worker, RETRY, self._worker_type(worker)),
                    RetryTask(task_id=failure.task_id, original_data=original),
                    delay,
                    guard=(failure.workflow_id, failure.task_id),
                )
            )
            return True

        self._task_retries.pop(retry_key, None)
        self.dlq.add(
            kind="task",
            worker_id=worker,
            module_id=failure.module_id,
            error=error_text(failure.error),
            category=failure.category,
            original_message=original,
            task_id=failure.task_id,
            workflow_id=failure.workflow_id,
        )
        logger.warning(
            f"Task {failure.task_id} of {failure.workflow_id} dead-lettered "
            f"after {retries} retries ({failure.category})"
        )
        return False

    async def _publish_later(
        self,
        key: str,
        payload: Any,
        delay: float,
        guard: Optional[Tuple[Optional[str], Optional[str]]] = None,
    ) -> None:
        await self._sleep(delay)
        if guard is not None and guard[0] and self.coordination is not None:
            if not self.coordination.is_current_task(*guard):
                logger.info(f"Task {guard[1]} of {guard[0]} already settled; dropping {key}")
                return
        try:
            await self.bus.publish_command(key, payload)
        except CoordinationError as e:
            logger.error(f"Delayed publish of {key} failed: {e}")

    # ------------------------------------------------------------------
    # Dead-letter operations
    def list_dead_letters(
        self,
        worker_id: Optional[str] = None,
        kind: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[DeadLetterEntry]:
        return self.dlq.list(worker_id=worker_id, kind=kind, category=category)

    async def retry_dead_letter(self, key: str) -> bool:
        entry = self.dlq.get(key)
        if entry is None:
            logger.warning(f"Dead-letter entry {key} not found")
            return False
        worker_type = self._worker_type(entry.worker_id)
        if entry.kind == "task":
            await self.bus.publish_command(
                self.workers.command_key(entry.worker_id, RETRY, worker_type),
                RetryTask(task_id=entry.task_id, original_data=entry.original_message),
            )
        else:
            if self.health.get_worker(entry.worker_id) is not None:
                await self.health.reset_worker(entry.worker_id, f"dead-letter {key} retried")
            self._history.pop(entry.worker_id, None)
            await self._restart(entry.worker_id, worker_type, entry.module_id)
        self.dlq.remove(key)
        logger.info(f"Retried dead-letter entry {key}")
        return True

    def delete_dead_letter(self, key: str) -> bool:
        if self.dlq.remove(key) is None:
            logger.warning(f"Dead-letter entry {key} not found")
            return False
        logger.info(f"Deleted dead-letter entry {key}")
        return True

    def reset_circuit_breaker(self, service: str) -> bool:
        if self.errors is None:
            return False
        return self.errors.reset_circuit_breaker(service)

    # ------------------------------------------------------------------
    def recovery_history(self, worker_id: str) -> List[Dict[str, str]]:
        return [
            {"at": at.isoformat(), "category": category, "strategy": strategy}
            for at, category, strategy in self._history.get(worker_id, ())
        ]

    def prune_history(self) -> int:
        cutoff = self._clock() - FAILURE_WINDOW
        pruned = 0
        for worker_id in list(self._history):
            history = self._history[worker_id]
            while history and history[0][0] < cutoff:
                history.popleft()
                pruned += 1
            if not history:
                del self._history[worker_id]
        for key, (_, at) in list(self._task_retries.items()):
            if at < cutoff:
                del self._task_retries[key]
                pruned += 1
        return pruned

    def recovery_statistics(self) -> Dict[str, Any]:
        return {
            "totalRecoveryAttempts": sum(self._by_strategy.values()),
            "byWorkerType": dict(self._by_type),
            "byStrategy": dict(self._by_strategy),
            "completed": self._outcomes["completed"],
            "failed": self._outcomes["failed"],
            "deadLetterCount": len(self.dlq),
        }

    # ------------------------------------------------------------------
    async def _publish_recovery_failed(
        self,
        worker_id: str,
        module_id: Optional[str],
        error: str,
        category: str,
        reason: str,
        dead_letter_key: Optional[str] = None,
    ) -> None:
        payload = {
            "workerId": worker_id,
            "moduleId": module_id,
            "error": error,
            "category": category,
            "reason": reason,
            "deadLetterKey": dead_letter_key,
            "timestamp": self._clock().isoformat(),
        }
        try:
            await self.bus.publish_event(AGENT_RECOVERY_FAILED, payload)
        except CoordinationError as e:
            logger.error(f"Could not publish recovery failure for {worker_id}: {e}")

    async def _notify(self, kind: str, level: str, message: str, details: Dict[str, Any]) -> None:
        try:
            await self.bus.publish_event(
                SYSTEM_NOTIFICATION,
                Notification(type=kind, level=level, message=message, details=details),
            )
        except CoordinationError as e:
            logger.error(f"Could not publish notification: {e}")

    async def _on_worker_failed(self, data: Dict[str, Any], message: BusMessage) -> None:
        await self.handle_worker_failure(WorkerFailed.model_validate(data))

    async def _on_recovery_completed(self, data: Dict[str, Any], message: BusMessage) -> None:
        self._outcomes["completed"] += 1
        logger.info(f"Recovery completed for {data.get('workerId')}")

    async def _on_recovery_failed(self, data: Dict[str, Any], message: BusMessage) -> None:
        self._outcomes["failed"] += 1
        logger.error(f"Recovery failed for {data.get('workerId')}: {data.get('reason')}")
