"""Coordinator runtime: builds, wires and supervises every service."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .bus import MessageBus, Subscription
from .config import AgentCoordConfig, load_config
from .constants import (
    QUERY_DEAD_LETTERS,
    QUERY_HEALTH_SUMMARY,
    QUERY_START_WORKFLOW,
    QUERY_WORKFLOW_STATUS,
)
from .contracts import BusMessage
from .coordination import CoordinationService
from .error_handling import ErrorHandlingService
from .errors import CoordinationError, ValidationError
from .health import HealthMonitor
from .persistence import StateStore, WorkerHealthStore, get_health_store, get_state_store
from .recovery import RecoveryService
from .registry import WorkflowRegistry, register_default_workflows
from .transports import BaseTransport, get_transport
from .utils import utcnow
from .workers import WorkerDirectory

logger = logging.getLogger(__name__)

# Consecutive housekeeping failures of the bus or the store before coordination halts.
FATAL_FAILURE_THRESHOLD = 3


class CoordinatorRuntime:
    """Owns one instance of each coordinator service.

    Services are constructed and started in the order bus, state store,
    registry, coordination, health, recovery and stopped in reverse.
    """

    def __init__(
        self,
        config: Optional[AgentCoordConfig] = None,
        *,
        transport: Optional[BaseTransport] = None,
        store: Optional[StateStore] = None,
        health_store: Optional[WorkerHealthStore] = None,
        workers: Optional[WorkerDirectory] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or load_config()
        self._clock = clock
        self.workers = workers or WorkerDirectory()

        self.bus = MessageBus(
            transport or get_transport(config=self.config),
            prefetch=self.config.transport.prefetch,
        )
        self.store = store or get_state_store(config=self.config)
        self.registry = WorkflowRegistry(clock=clock)
        self.errors = ErrorHandlingService(
            self.bus,
            policies=self.config.retry_policies,
            breakers=self.config.circuit_breakers,
            production=self.config.is_production,
            clock=clock,
            sleep=sleep,
        )
        self.coordination = CoordinationService(
            self.bus,
            self.store,
            self.registry,
            workers=self.workers,
            max_in_flight=self.config.coordination.max_in_flight_dispatches,
            clock=clock,
        )
        self.health = HealthMonitor(
            self.bus,
            health_store or get_health_store(config=self.config),
            self.config.monitoring,
            clock=clock,
        )
        self.recovery = RecoveryService(
            self.bus,
            self.health,
            self.coordination,
            self.errors,
            workers=self.workers,
            config=self.config.monitoring,
            delegations=self.config.delegations,
            max_task_retries=self.config.coordination.max_task_retries,
            clock=clock,
            sleep=sleep,
        )
        self.coordination.worker_gate = self.health.is_dispatchable

        self._queries: List[Subscription] = []
        self._housekeeper: Optional[asyncio.Task] = None
        self._failures: Dict[str, int] = {"bus": 0, "store": 0}
        self._fatal: Dict[str, str] = {}
        self.started = False

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self, monitor: bool = True, housekeeping: bool = True) -> None:
        await self.bus.connect()
        logger.info(f"Bus connected ({self.bus.transport.backend})")

        register_default_workflows(self.registry)
        if self.config.workflows_path:
            self.registry.load_workflows_from_yaml(self.config.workflows_path)
        logger.info(f"Registry holds {len(self.registry)} workflow types")

        await self.coordination.start()
        await self.health.start(monitor=monitor)
        await self.recovery.start()
        await self._serve_queries()

        recovered = await self.coordination.recover_in_flight()
        if recovered:
            logger.info(f"Re-dispatched {recovered} in-flight workflows")
        if housekeeping:
            self._housekeeper = asyncio.create_task(
                self._housekeeping_loop(), name="housekeeper"
            )
        self.started = True
        logger.info("Coordinator runtime started")

    async def stop(self) -> None:
        if self._housekeeper is not None:
            self._housekeeper.cancel()
            try:
                await self._housekeeper
            except asyncio.CancelledError:
                pass
            self._housekeeper = None
        for subscription in self._queries:
            await subscription.unsubscribe()
        self._queries = []

        await self.recovery.stop()
        await self.health.stop()
        await self.health.store.close()
        await self.coordination.stop()
        await self.store.close()
        await self.bus.close()
        self.started = False
        logger.info("Coordinator runtime stopped")

    async def __aenter__(self) -> "CoordinatorRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Housekeeping
    def _fail(self, resource: str, error: Exception) -> None:
        self._failures[resource] += 1
        count = self._failures[resource]
        logger.error(f"Housekeeping: {resource} unavailable ({count}): {error}")
        if count >= FATAL_FAILURE_THRESHOLD:
            reason = f"{resource} unavailable: {error}"
            self._fatal[resource] = reason
            self.coordination.halt(reason)
            self.health.mark_unhealthy(reason, key=resource)

    async def _recover(self, resource: str) -> None:
        self._failures[resource] = 0
        if self._fatal.pop(resource, None) is not None:
            self.health.clear_unhealthy(resource)
            if not self._fatal:
                await self.coordination.resume()

    async def housekeep(self) -> Dict[str, int]:
        """One housekeeping pass. Returns counts of what was cleaned up."""
        report = {"purged": 0, "flushed": 0, "metricsPruned": 0, "historyPruned": 0}

        if not self.bus.is_connected:
            try:
                await self.bus.connect()
            except CoordinationError as e:
                self._fail("bus", e)
            else:
                logger.info("Bus reconnected")
                await self._recover("bus")
        else:
            await self._recover("bus")

        cutoff = self._clock() - timedelta(days=self.config.coordination.terminal_retention_days)
        try:
            report["purged"] = await self.store.purge_terminal(cutoff)
        except CoordinationError as e:
            self._fail("store", e)
        else:
            await self._recover("store")

        report["flushed"] = await self.health.flush_pending()
        report["metricsPruned"] = self.health.prune_metrics()
        report["historyPruned"] = self.recovery.prune_history()
        if report["purged"]:
            logger.info(f"Purged {report['purged']} terminal workflows older than {cutoff}")
        return report

    async def _housekeeping_loop(self) -> None:
        interval = self.config.coordination.housekeeping_interval / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.housekeep()
            except Exception as e:
                logger.error(f"Housekeeping failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Queries
    async def _serve_queries(self) -> None:
        handlers = {
            QUERY_START_WORKFLOW: self._query_start_workflow,
            QUERY_WORKFLOW_STATUS: self._query_workflow_status,
            QUERY_HEALTH_SUMMARY: self._query_health_summary,
            QUERY_DEAD_LETTERS: self._query_dead_letters,
        }
        for key, handler in handlers.items():
            self._queries.append(await self.bus.subscribe_to_query(key, self._guarded(handler)))

    def _guarded(
        self, handler: Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]
    ) -> Callable[[Dict[str, Any], BusMessage], Awaitable[Dict[str, Any]]]:
        async def answer(data: Dict[str, Any], message: BusMessage) -> Dict[str, Any]:
            try:
                return {"success": True, **await handler(data)}
            except Exception as e:
                return await self.errors.handle_error(e, {"query": message.routing_key})

        return answer

    async def _query_start_workflow(self, data: Dict[str, Any]) -> Dict[str, Any]:
        workflow_type = data.get("workflowType")
        if not workflow_type:
            raise ValidationError("workflowType is required", code="MISSING_WORKFLOW_TYPE")
        return await self.coordination.start_workflow(
            workflow_type, data.get("data"), data.get("metadata")
        )

    async def _query_workflow_status(self, data: Dict[str, Any]) -> Dict[str, Any]:
        workflow_id = data.get("workflowId")
        if not workflow_id:
            raise ValidationError("workflowId is required", code="MISSING_WORKFLOW_ID")
        return await self.coordination.get_workflow_status(workflow_id)

    async def _query_health_summary(self, data: Dict[str, Any]) -> Dict[str, Any]:
        summary = self.health.get_system_health_summary()
        if data.get("includeWorkers"):
            summary["workers"] = self.health.get_all_workers()
        return summary

    async def _query_dead_letters(self, data: Dict[str, Any]) -> Dict[str, Any]:
        entries = self.recovery.list_dead_letters(
            worker_id=data.get("workerId"), kind=data.get("kind"), category=data.get("category")
        )
        return {
            "entries": [e.to_wire() for e in entries],
            "statistics": self.recovery.recovery_statistics(),
        }
