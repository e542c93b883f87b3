"""Shared default constants for the tasklane library."""

DEFAULT_QUEUE_PROVIDER: str = 'postgres'

# Task options
DEFAULT_MAX_ATTEMPTS: int = 3
DEFAULT_BACKOFF_MS: int = 1000
# Queue-level retry delay, used when a job carries no backoff of its own.
DEFAULT_QUEUE_BACKOFF_MS: int = 5000
DEFAULT_TIMEOUT_MS: int = 300_000  # 5 minutes

# Finished jobs kept in the broker table per queue.
DEFAULT_REMOVE_ON_COMPLETE: int = 100
DEFAULT_REMOVE_ON_FAIL: int = 500

# Worker
DEFAULT_CONCURRENCY: int = 5
# Lease on a claimed job; an expired lease makes the job reclaimable (stalled).
DEFAULT_LOCK_DURATION_MS: int = 30_000
DEFAULT_POLL_INTERVAL_MS: int = 1000
DEFAULT_MAX_UPDATE_BATCH_SIZE: int = 100

# Repo queries
DEFAULT_QUERY_LIMIT: int = 100
