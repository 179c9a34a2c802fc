"""
PoolForge error taxonomy.

ValidationError never reaches the network, ProvisionError names the task
that failed, SyncError is always downgraded to a warning and SessionError
tears down every in-flight pipeline and poller.
"""

from __future__ import annotations


class PoolForgeError(Exception):
    """Base class for all PoolForge errors."""


class BackendError(PoolForgeError):
    """A backend request failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class FetchError(BackendError):
    """Device listing could not be fetched."""


class ValidationError(PoolForgeError):
    """A selection constraint was violated."""


class TransitionError(ValidationError):
    """The wizard cannot move in the requested direction from its current step."""


class ProvisionError(PoolForgeError):
    """A provisioning task failed."""

    def __init__(self, task: str, message: str, device_id: str | None = None) -> None:
        super().__init__(f"{task}: {message}")
        self.task = task
        self.message = message
        self.device_id = device_id


class SyncError(PoolForgeError):
    """Parity synchronization failed or timed out."""


class SessionError(PoolForgeError):
    """Authentication or CSRF failure; the session is no longer valid."""

    def __init__(self, reason: str = "Session expired") -> None:
        super().__init__(reason)
        self.reason = reason
