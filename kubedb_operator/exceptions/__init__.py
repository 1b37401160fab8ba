"""
Custom exceptions for the KubeDB lifecycle operator.

This module defines all custom exceptions used throughout the operator
for consistent error handling and reporting.
"""
from typing import Optional, Dict, Any


class OperatorError(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    #: Whether the work queue should requeue an item that failed with this error.
    retriable: bool = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(OperatorError):
    """
    Raised when a resource spec fails validation rules.

    Never retried automatically: the user has to change the spec.
    """

    retriable = False


class ConflictError(OperatorError):
    """
    Raised when an optimistic-concurrency write is rejected.

    The stored object changed since it was read; re-read and try again.
    """


class NotFoundError(OperatorError):
    """Raised when a requested Kubernetes object does not exist."""

    def __init__(self, resource: str, name: str, namespace: str = "", details: Optional[Dict[str, Any]] = None):
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(
            message=f"{resource} '{where}' not found",
            details=details or {"resource": resource, "name": name, "namespace": namespace},
        )
        self.resource = resource
        self.name = name
        self.namespace = namespace


class AlreadyExistsError(OperatorError):
    """Raised when creating an object whose name is already taken."""

    def __init__(self, resource: str, name: str, namespace: str = "", details: Optional[Dict[str, Any]] = None):
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(
            message=f"{resource} '{where}' already exists",
            details=details or {"resource": resource, "name": name, "namespace": namespace},
        )
        self.resource = resource
        self.name = name
        self.namespace = namespace


class InfrastructureError(OperatorError):
    """
    Raised when creating, reading or deleting a sub-resource fails.

    Fatal to the current reconciliation pass, not to the operator process.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=f"Kubernetes error: {message}", details=details)


class OperationTimeoutError(OperatorError):
    """
    Raised when a bounded wait expires.

    Kept distinct from InfrastructureError so "still provisioning" can be told
    apart from "broken".
    """

    def __init__(self, operation: str, timeout_seconds: float, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"{operation} did not finish within {timeout_seconds:g} seconds",
            details=details or {"operation": operation, "timeout_seconds": timeout_seconds},
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class OperationCancelledError(OperatorError):
    """Raised when a bounded wait is abandoned because the operator is shutting down."""

    def __init__(self, operation: str):
        super().__init__(message=f"{operation} cancelled by operator shutdown", details={"operation": operation})
        self.operation = operation


class InvalidTransitionError(OperatorError):
    """Raised when a phase change is not allowed by the lifecycle state machine."""

    retriable = False


class ResumeError(OperatorError):
    """Raised when a dormant database cannot be resumed."""


class RestoreError(OperatorError):
    """Raised when a database cannot be initialized from a snapshot."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=f"Restore error: {message}", details=details)


# Export all exceptions
__all__ = [
    "OperatorError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "AlreadyExistsError",
    "InfrastructureError",
    "OperationTimeoutError",
    "OperationCancelledError",
    "InvalidTransitionError",
    "ResumeError",
    "RestoreError",
]
