"""agentcoord: coordination, health monitoring and recovery for agent workers."""

from .bus import MessageBus, Subscription
from .config import AgentCoordConfig, load_config
from .coordination import CoordinationService
from .error_handling import ErrorHandlingService
from .health import HealthMonitor
from .persistence import get_health_store, get_state_store
from .recovery import RecoveryService
from .registry import WorkflowDefinition, WorkflowRegistry
from .runtime import CoordinatorRuntime
from .transports import get_transport
from .worker import TaskExecutor, WorkerHealthClient
from .workers import WorkerDirectory

__version__ = "0.1.0"
__all__ = [
    "AgentCoordConfig",
    "CoordinationService",
    "CoordinatorRuntime",
    "ErrorHandlingService",
    "HealthMonitor",
    "MessageBus",
    "RecoveryService",
    "Subscription",
    "TaskExecutor",
    "WorkerDirectory",
    "WorkerHealthClient",
    "WorkflowDefinition",
    "WorkflowRegistry",
    "get_health_store",
    "get_state_store",
    "get_transport",
    "load_config",
]
