"""Channel names, wire keys and default tunables."""

COMMANDS = "commands"
EVENTS = "events"
QUERIES = "queries"

# Exchange routing type per logical channel.
CHANNEL_KINDS = {COMMANDS: "direct", EVENTS: "topic", QUERIES: "direct"}

EXCHANGE_PREFIX = "agentcoord"

# Worker -> coordinator events
AGENT_HEARTBEAT = "agent.heartbeat"
AGENT_STATUS_CHANGED = "agent.status-changed"
AGENT_REGISTER = "agent.register"
AGENT_TASK_COMPLETED = "agent.task-completed"
AGENT_TASK_FAILED = "agent.task-failed"
AGENT_FAILED = "agent.failed"
AGENT_RECOVERY_COMPLETED = "agent.recovery-completed"
AGENT_RECOVERY_FAILED = "agent.recovery-failed"

# Coordinator lifecycle events
WORKFLOW_STARTED = "workflow.started"
WORKFLOW_STATE_CHANGED = "workflow.state-changed"
WORKFLOW_COMPLETED = "workflow.completed"
WORKFLOW_FAILED = "workflow.failed"
SYSTEM_NOTIFICATION = "system.notification"
ERROR_EVENT_PREFIX = "error"

# Query keys served by the runtime
QUERY_START_WORKFLOW = "coordination.start-workflow"
QUERY_WORKFLOW_STATUS = "coordination.workflow-status"
QUERY_HEALTH_SUMMARY = "health.summary"
QUERY_DEAD_LETTERS = "recovery.dead-letters"

DEFAULT_PREFETCH = 10
MAX_REDELIVERIES = 3

DEFAULT_CHECK_INTERVAL_MS = 30_000
DEFAULT_HEARTBEAT_TIMEOUT_MS = 90_000
DEFAULT_HEARTBEAT_INTERVAL_MS = 30_000
DEFAULT_MAX_RECOVERY_ATTEMPTS = 3
DEFAULT_METRICS_RETENTION_DAYS = 7

DEFAULT_MAX_IN_FLIGHT = 100
DEFAULT_TERMINAL_RETENTION_DAYS = 30
DEFAULT_HOUSEKEEPING_INTERVAL_MS = 60_000
DEFAULT_MAX_TASK_RETRIES = 3

DEFAULT_BREAKER_THRESHOLD = 5
DEFAULT_BREAKER_RESET_MS = 30_000
