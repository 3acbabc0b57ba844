"""
ReplGuard — Error Hierarchy

Every exception raised by the engine derives from ReplGuardError.

Node-scoped failures (remote errors, rollback failures) never abort a
run. Run-scoped failures (topology resolution, cache store unavailable)
end the run with the internal-error outcome.
"""

from __future__ import annotations

from typing import Any


class ReplGuardError(Exception):
    """Base exception for all ReplGuard errors."""

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


# ─── Remote ──────────────────────────────────────────────────────


class RemoteError(ReplGuardError):
    """A collaborator call against a node failed. Carries the raw error code."""

    def __init__(self, message: str = "", code: int = 0, **context: Any) -> None:
        super().__init__(message, **context)
        self.code = code


class TransientRemoteError(RemoteError):
    """Timeout, busy, throttled or temporarily unreachable. Retryable."""


class PermanentRemoteError(RemoteError):
    """Auth failure, not found or malformed request. Never retried."""


# ─── Backoff ─────────────────────────────────────────────────────


class BackoffError(ReplGuardError):
    """Terminal failure of an operation run under the backoff executor."""

    def __init__(self, message: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(message, attempts=attempts)
        self.attempts = attempts
        self.last_error = last_error

    @property
    def code(self) -> int:
        return getattr(self.last_error, "code", 0) or 0


class RetriesExhaustedError(BackoffError):
    """Every attempt failed transiently. The executor gave up."""


class OperationRejectedError(BackoffError):
    """The operation failed permanently on its single attempt."""


# ─── Cache ───────────────────────────────────────────────────────


class CacheCorruptionError(ReplGuardError):
    """Persisted cache state is unreadable. Callers degrade to a full scan."""


class CacheStoreError(ReplGuardError):
    """The cache store could not be written. Fatal for the run."""


# ─── Topology ────────────────────────────────────────────────────


class TopologyResolutionError(ReplGuardError):
    """No nodes could be resolved for the requested scope. Fatal for the run."""


# ─── Healing ─────────────────────────────────────────────────────


class InvalidTransitionError(ReplGuardError):
    """A healing action was driven through a transition the machine forbids."""


class RollbackError(ReplGuardError):
    """Restoring a node's captured pre-action state failed."""
