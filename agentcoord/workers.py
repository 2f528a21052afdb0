"""Worker directory: maps a worker type to the commands it accepts."""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, Optional

from .errors import AgentError

logger = logging.getLogger(__name__)

EXECUTE = "execute"
RESTART = "restart"
RESTART_MODULE = "restart-module"
RETRY = "retry"
RECOVER = "recover"
HANDLE_DELEGATION = "handle-delegation"
USE_FALLBACK = "use-fallback"

# Capability -> command action appended to the worker address.
COMMAND_ACTIONS: Dict[str, str] = {
    EXECUTE: "execute-task",
    RESTART: "restart",
    RESTART_MODULE: "restart-module",
    RETRY: "retry-task",
    RECOVER: "recover",
    HANDLE_DELEGATION: "handle-delegation",
    USE_FALLBACK: "use-fallback",
}

ALL_CAPABILITIES: FrozenSet[str] = frozenset(COMMAND_ACTIONS)


class WorkerDirectory:
    """Capability sets per worker type.

    Types that were never registered are assumed to accept every command so
    a deployment only has to describe the workers that are restricted.
    """

    def __init__(self, strict: bool = False) -> None:
        self._capabilities: Dict[str, FrozenSet[str]] = {}
        self._strict = strict

    def register(
        self, worker_type: str, capabilities: Optional[Iterable[str]] = None
    ) -> FrozenSet[str]:
        caps = frozenset(capabilities) if capabilities is not None else ALL_CAPABILITIES
        unknown = caps - ALL_CAPABILITIES
        if unknown:
            raise AgentError(
                f"Unknown capabilities for {worker_type}: {sorted(unknown)}",
                code="UNKNOWN_CAPABILITY",
            )
        self._capabilities[worker_type] = caps
        return caps

    def capabilities(self, worker_type: str) -> FrozenSet[str]:
        if worker_type in self._capabilities:
            return self._capabilities[worker_type]
        return frozenset() if self._strict else ALL_CAPABILITIES

    def supports(self, worker_type: str, capability: str) -> bool:
        return capability in self.capabilities(worker_type)

    def command_key(
        self, address: str, capability: str, worker_type: Optional[str] = None
    ) -> str:
        """Routing key for sending ``capability`` to ``address``.

        ``address`` is a worker type for task execution and a worker id for
        lifecycle commands; ``worker_type`` defaults to ``address``.
        """
        worker_type = worker_type or address
        if not self.supports(worker_type, capability):
            raise AgentError(
                f"Worker type {worker_type} does not support {capability}",
                code="CAPABILITY_UNSUPPORTED",
            )
        return f"{address}.{COMMAND_ACTIONS[capability]}"

    def known_types(self) -> list[str]:
        return sorted(self._capabilities)
