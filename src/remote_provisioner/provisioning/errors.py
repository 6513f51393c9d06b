"""Error taxonomy for provisioning runs."""

from __future__ import annotations

from typing import Optional


class ProvisioningError(RuntimeError):
    """Base class; `retryable` decides whether the queue may try again."""

    retryable = True


class ValidationError(ProvisioningError, ValueError):
    """Malformed operation input. Raised before any remote step runs."""

    retryable = False


class ServerMissingError(ProvisioningError):
    """The target server record no longer exists."""

    retryable = False

    def __init__(self, server_id: str) -> None:
        self.server_id = server_id
        super().__init__(f"Server {server_id} no longer exists")


class UnknownOperationError(ProvisioningError):
    retryable = False

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Unknown operation: {operation}")


class InvalidTransition(ProvisioningError):
    retryable = False

    def __init__(self, from_status: object, to_status: object, status_field: str = "status") -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.status_field = status_field
        super().__init__(f"Invalid {status_field} transition: {from_status!r} -> {to_status!r}")


class ConcurrentOperationError(ProvisioningError):
    """Another operation already owns this resource's in-progress status."""

    retryable = False


class OperationLocked(ProvisioningError):
    """The mutual-exclusion lease is held by another worker."""

    def __init__(self, lock_key: str) -> None:
        self.lock_key = lock_key
        super().__init__(f"Lock {lock_key} is held by another operation")


class RemoteCommandError(ProvisioningError):
    """A remote step exited non-zero, or a local step raised."""

    def __init__(self, message: str, exit_status: Optional[int] = None) -> None:
        self.exit_status = exit_status
        super().__init__(message)


class ExecutionTimeout(ProvisioningError):
    """The session-wide deadline expired."""

    def __init__(self, timeout: float, message: Optional[str] = None) -> None:
        self.timeout = timeout
        super().__init__(message or f"SSH session exceeded {timeout} seconds")


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ProvisioningError):
        return exc.retryable
    # Connection problems and unexpected crashes count against the budget
    return True
