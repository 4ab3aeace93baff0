"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class Queue(StrEnum):
    """
    Static task priority, chosen at enqueue time.

    A queue is an ordering hint only: critical is drained ahead of default,
    default ahead of low.
    """

    CRITICAL = "critical"
    DEFAULT = "default"
    LOW = "low"


class TaskState(StrEnum):
    """
    Task lifecycle states as tracked by the broker.

    State transitions:
    - PENDING -> ACTIVE (delivery leased to a worker slot)
    - ACTIVE -> COMPLETED (handler succeeded)
    - ACTIVE -> RETRY (transient failure, retries left)
    - RETRY -> ACTIVE (redelivered after backoff)
    - ACTIVE -> ARCHIVED (non-retryable failure or retries exhausted)
    - ACTIVE -> PENDING (requeued on shutdown or lease expiry)
    """

    PENDING = "pending"
    ACTIVE = "active"
    RETRY = "retry"
    ARCHIVED = "archived"
    COMPLETED = "completed"


class IdempotencyState(StrEnum):
    """Values stored under an idempotency key."""

    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class FailMode(StrEnum):
    """Behaviour when an idempotency guard cannot be cleanly evaluated."""

    FAIL_OPEN = "fail-open"
    FAIL_CLOSED = "fail-closed"


# Strict draining order, highest priority first
QUEUE_PRIORITY_ORDER: tuple[Queue, ...] = (Queue.CRITICAL, Queue.DEFAULT, Queue.LOW)

# Priority weights for SQL ordering (higher = processed first)
QUEUE_WEIGHTS: dict[Queue, int] = {
    Queue.CRITICAL: 100,
    Queue.DEFAULT: 5,
    Queue.LOW: 1,
}

# Default values
DEFAULT_QUEUE = Queue.DEFAULT
DEFAULT_MAX_RETRY = 3
DEFAULT_LEASE_DURATION_SECONDS = 360
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 10.0
DEFAULT_COMPLETED_RETENTION_SECONDS = 3600
# Extra lifetime given to an idempotency lock beyond the task deadline
IDEMPOTENCY_LOCK_MARGIN_SECONDS = 60
FIRE_AND_FORGET_TIMEOUT_SECONDS = 5.0
DEFAULT_IDEMPOTENCY_KEY_PREFIX = "idempotency:"
PAYLOAD_PREVIEW_LENGTH = 100

# Task type conventions
TASK_TYPE_PATTERN = r"^[A-Za-z0-9_.\-]+(:[A-Za-z0-9_.\-]+)+$"
FANOUT_TASK_PREFIX = "fanout:"

# Inspector pagination
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Metrics names
METRIC_JOBS_PROCESSED = "jobs_processed"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_TASKS_ENQUEUED = "tasks_enqueued"
METRIC_IDEMPOTENCY_CHECKS = "idempotency_checks"
METRIC_QUEUE_DEPTH = "task_queue_depth"
METRIC_LEASE_EXPIRED = "leases_expired"

# Task processing outcomes (metric/log status label)
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

# Trace span names
SPAN_ENQUEUE_TASK = "enqueue_task"
SPAN_PROCESS_TASK_PREFIX = "task:"
