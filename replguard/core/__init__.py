"""ReplGuard — engine infrastructure: errors, backoff, worker pool."""

from replguard.core.backoff import (
    AttemptEvent,
    BackoffExecutor,
    ErrorClass,
    backoff_delays,
    classify_remote_error,
)
from replguard.core.pool import NOT_RUN, WorkerPool

__all__ = [
    "NOT_RUN",
    "AttemptEvent",
    "BackoffExecutor",
    "ErrorClass",
    "WorkerPool",
    "backoff_delays",
    "classify_remote_error",
]
