"""
Error types for the AgentFleet worker.

Errors fall into two groups: recoverable errors, which the component that
raises them is expected to absorb locally (log and continue), and everything
else, which is surfaced through actual-state rows, conversation replies or the
desired-state ``enabled`` flag.
"""

from __future__ import annotations


class WorkerError(Exception):
    """Base exception for worker errors."""


class RecoverableError(WorkerError):
    """Error that callers handle locally instead of propagating."""


class DecryptionError(RecoverableError):
    """Raised when a ciphertext cannot be decrypted."""


class ContainerRuntimeError(WorkerError):
    """Non-2xx response (or transport failure) from the container engine."""

    def __init__(self, status: int | None, body: str, operation: str = "") -> None:
        self.status = status
        self.body = body
        self.operation = operation
        prefix = f"{operation}: " if operation else ""
        super().__init__(f"{prefix}Docker API Error ({status}): {body}")

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class ContainerNotFoundError(ContainerRuntimeError, RecoverableError):
    """The requested container, image or exec session does not exist."""

    def __init__(self, body: str, operation: str = "") -> None:
        super().__init__(404, body, operation)


class ContainerRuntimeTimeoutError(ContainerRuntimeError):
    """Engine call exceeded its time bound and was abandoned."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(None, f"Request Timeout after {timeout:g}s", operation)
        self.timeout = timeout


class UnknownFrameworkError(WorkerError):
    """No lifecycle handler is registered for the agent framework."""


class InvalidLeaseError(WorkerError):
    """Managed-key lease is not usable; the start attempt must not be retried."""

    def __init__(self, lease_id: str, reason: str) -> None:
        self.lease_id = lease_id
        self.reason = reason
        super().__init__(f"Managed key: {reason}")


class BootFailedError(WorkerError):
    """Container did not reach the running state after start."""


class InvalidTransitionError(WorkerError):
    """Attempted lifecycle transition is not allowed."""


class ChatRequestError(WorkerError):
    """Agent chat endpoint answered with a non-2xx status."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body}")
