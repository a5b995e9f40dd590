"""Exception hierarchy for the reconciliation core.

Three families of failure are distinguished:

1. API errors: the remote call itself failed (HTTP status or transport).
2. Timeout errors: a bounded poll used up its attempts.
3. Invariant violations: a requested change would break a rule the core
   enforces (zero networks attached, deleting a volume that is not
   allocated). These are raised before any remote mutation is issued.

Callers decide per step whether an error is fatal or downgraded to a
warning; the classes here carry enough context to make that decision.
"""

from __future__ import annotations


class ProvisionerError(Exception):
    """Base class for all reconciliation core errors."""

    pass


class ApiError(ProvisionerError):
    """Raised when a control-plane API call fails.

    A status code of 0 means the request never produced an HTTP response
    (connection refused, timeout, TLS failure).
    """

    def __init__(self, message: str, status_code: int = 0, operation: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.operation = operation

    def __str__(self) -> str:
        prefix = f"{self.operation}: " if self.operation else ""
        if self.status_code:
            return f"{prefix}HTTP {self.status_code}: {self.message}"
        return f"{prefix}{self.message}"

    def _mentions(self, *needles: str) -> bool:
        text = self.message.lower()
        return any(needle in text for needle in needles)

    @property
    def is_not_found(self) -> bool:
        """Whether the target resource no longer exists."""
        return self.status_code == 404 or self._mentions("not found", "does not exist")

    @property
    def is_forbidden(self) -> bool:
        """Whether the caller lacks permission for the operation."""
        return self.status_code in (401, 403) or self._mentions("unauthorized", "forbidden")

    @property
    def is_conflict(self) -> bool:
        """Whether the resource is busy (attached, in use, connected)."""
        return self.status_code == 409 or self._mentions("attached", "in use")

    @property
    def is_network_connected(self) -> bool:
        """Whether a network delete was refused because NICs remain."""
        return self._mentions("network is connected")


class PollTimeoutError(ProvisionerError):
    """Raised when a bounded poll exhausts its attempts."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class InstanceNotReadyError(PollTimeoutError):
    """Raised when an instance does not reach its target status in time.

    Recoverable: the instance exists, it just has not settled yet.
    """

    def __init__(self, message: str, instance_id: str, last_status: str, attempts: int = 0) -> None:
        super().__init__(message, attempts)
        self.instance_id = instance_id
        self.last_status = last_status


class DiscoveryError(PollTimeoutError):
    """Raised when a newly created resource never shows up in its list."""

    pass


class InvariantViolation(ProvisionerError):
    """Raised when a change would violate a reconciliation invariant."""

    pass


class VolumeNotAllocatedError(InvariantViolation):
    """Raised when deletion is requested for a volume not in ALLOCATED state."""

    def __init__(self, message: str, volume_id: str, status: str) -> None:
        super().__init__(message)
        self.volume_id = volume_id
        self.status = status
