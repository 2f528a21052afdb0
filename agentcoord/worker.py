"""Worker-side harness: task execution and health reporting."""

from __future__ import annotations

import asyncio
import logging
import resource
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from .bus import MessageBus, Subscription
from .constants import (
    AGENT_HEARTBEAT,
    AGENT_RECOVERY_COMPLETED,
    AGENT_REGISTER,
    AGENT_STATUS_CHANGED,
    AGENT_TASK_COMPLETED,
    AGENT_TASK_FAILED,
    DEFAULT_HEARTBEAT_INTERVAL_MS,
)
from .contracts import (
    BusMessage,
    ExecuteTask,
    Heartbeat,
    RetryTask,
    StatusChanged,
    TaskCompleted,
    TaskFailed,
    WorkerRegistration,
)
from .error_handling import ErrorHandlingService
from .errors import CoordinationError, MessagingError, classify
from .utils import utcnow
from .workers import EXECUTE, RECOVER, RESTART, RESTART_MODULE, RETRY, COMMAND_ACTIONS

logger = logging.getLogger(__name__)

TaskHandler = Callable[[ExecuteTask], Awaitable[Optional[Mapping[str, Any]]]]
MetricsProvider = Callable[[], Mapping[str, Any]]


def process_metrics(started: float) -> Dict[str, Any]:
    """Uptime, cpu time and max RSS of the current process."""
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {
        "uptime": round(time.monotonic() - started, 3),
        "cpuTime": round(usage.ru_utime + usage.ru_stime, 3),
        "maxRss": usage.ru_maxrss,
    }


class WorkerHealthClient:
    """Registers a worker and keeps its heartbeat going."""

    def __init__(
        self,
        bus: MessageBus,
        worker_id: str,
        *,
        worker_type: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS,
        metrics_provider: Optional[MetricsProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.bus = bus
        self.worker_id = worker_id
        self.worker_type = worker_type or worker_id
        self.metadata = {"type": self.worker_type, **dict(metadata or {})}
        self.interval_ms = interval_ms
        self.metrics_provider = metrics_provider
        self.status = "starting"
        self._clock = clock
        self._started = time.monotonic()
        self._task: Optional[asyncio.Task] = None

    def collect_metrics(self) -> Dict[str, Any]:
        metrics = process_metrics(self._started)
        if self.metrics_provider is not None:
            metrics.update(self.metrics_provider())
        return metrics

    async def start(self, heartbeat_loop: bool = True) -> None:
        await self.bus.publish_event(
            AGENT_REGISTER,
            WorkerRegistration(worker_id=self.worker_id, metadata=self.metadata, status="online"),
        )
        self.status = "online"
        await self.heartbeat()
        if heartbeat_loop and self._task is None:
            self._task = asyncio.create_task(
                self._heartbeat_loop(), name=f"heartbeat:{self.worker_id}"
            )
        logger.info(f"Worker {self.worker_id} registered")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        try:
            await self.set_status("offline", "shutdown")
        except MessagingError as e:
            logger.warning(f"Could not announce shutdown of {self.worker_id}: {e}")

    async def heartbeat(self, status: Optional[str] = None) -> Heartbeat:
        beat = Heartbeat(
            worker_id=self.worker_id,
            status=status or self.status,
            metrics=self.collect_metrics(),
            timestamp=self._clock(),
        )
        await self.bus.publish_event(AGENT_HEARTBEAT, beat)
        return beat

    async def set_status(self, status: str, reason: Optional[str] = None) -> None:
        previous, self.status = self.status, status
        await self.bus.publish_event(
            AGENT_STATUS_CHANGED,
            StatusChanged(
                worker_id=self.worker_id,
                status=status,
                reason=reason,
                previous_status=previous,
                timestamp=self._clock(),
            ),
        )

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            try:
                await self.heartbeat()
            except Exception as e:
                logger.error(f"Heartbeat of {self.worker_id} failed: {e}")


class TaskExecutor:
    """Runs ``execute-task`` commands for one worker.

    The handler receives the :class:`ExecuteTask` command and returns the
    task result. A ``transitionType`` key in the result picks the outgoing
    transition label; it defaults to ``success``. Handler failures are
    retried under ``policy`` before ``agent.task-failed`` is published.
    """

    def __init__(
        self,
        bus: MessageBus,
        worker_id: str,
        handler: TaskHandler,
        *,
        worker_type: Optional[str] = None,
        errors: Optional[ErrorHandlingService] = None,
        policy: str = "default",
        service: Optional[str] = None,
        health: Optional[WorkerHealthClient] = None,
    ) -> None:
        self.bus = bus
        self.worker_id = worker_id
        self.worker_type = worker_type or worker_id
        self.handler = handler
        self.errors = errors or ErrorHandlingService()
        self.policy = policy
        self.service = service
        self.health = health
        self.invocations = 0
        self._subscriptions: List[Subscription] = []

    def _key(self, address: str, capability: str) -> str:
        return f"{address}.{COMMAND_ACTIONS[capability]}"

    async def start(self) -> None:
        subscribe = self.bus.subscribe_to_command
        self._subscriptions = [
            await subscribe(self._key(self.worker_type, EXECUTE), self._on_execute),
            await subscribe(self._key(self.worker_id, RETRY), self._on_retry),
            await subscribe(self._key(self.worker_id, RECOVER), self._on_recover),
            await subscribe(self._key(self.worker_id, RESTART), self._on_recover),
            await subscribe(self._key(self.worker_id, RESTART_MODULE), self._on_recover),
        ]
        if self.worker_type != self.worker_id:
            self._subscriptions.append(
                await subscribe(self._key(self.worker_type, RETRY), self._on_retry)
            )
        logger.info(f"Task executor {self.worker_id} ({self.worker_type}) listening")

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            await subscription.unsubscribe()
        self._subscriptions = []

    async def run_task(self, task: ExecuteTask) -> Union[TaskCompleted, TaskFailed]:
        async def invoke() -> Optional[Mapping[str, Any]]:
            self.invocations += 1
            return await self.handler(task)

        try:
            result = await self.errors.execute_with_retry(
                invoke, self.policy, service=self.service
            )
        except Exception as e:
            logger.warning(f"Task {task.task_id} of {task.workflow_id} failed: {e}")
            failed = TaskFailed(
                workflow_id=task.workflow_id,
                task_id=task.task_id,
                task_type=task.task_type,
                error=e.message if isinstance(e, CoordinationError) else str(e),
                category=classify(e).value,
                worker_id=self.worker_id,
            )
            await self.bus.publish_event(AGENT_TASK_FAILED, failed)
            return failed

        output = dict(result or {})
        transition = output.pop("transitionType", None) or "success"
        completed = TaskCompleted(
            workflow_id=task.workflow_id,
            task_id=task.task_id,
            task_type=task.task_type,
            result=output,
            transition_type=transition,
            worker_id=self.worker_id,
        )
        await self.bus.publish_event(AGENT_TASK_COMPLETED, completed)
        return completed

    async def _on_execute(self, data: Dict[str, Any], message: BusMessage) -> None:
        await self.run_task(ExecuteTask.model_validate(data))

    async def _on_retry(self, data: Dict[str, Any], message: BusMessage) -> None:
        retry = RetryTask.model_validate(data)
        task = ExecuteTask.model_validate(retry.original_data)
        logger.info(f"Retrying task {task.task_id} of {task.workflow_id}")
        await self.run_task(task)

    async def _on_recover(self, data: Dict[str, Any], message: BusMessage) -> None:
        action = message.routing_key.rsplit(".", 1)[-1]
        logger.info(f"Worker {self.worker_id} handling {action}")
        await self.bus.publish_event(
            AGENT_RECOVERY_COMPLETED,
            {"workerId": self.worker_id, "action": action, "moduleId": data.get("moduleId")},
        )
        if self.health is not None:
            self.health.status = "online"
            await self.health.heartbeat("online")
        else:
            await self.bus.publish_event(
                AGENT_HEARTBEAT,
                Heartbeat(worker_id=self.worker_id, status="online", timestamp=utcnow()),
            )
