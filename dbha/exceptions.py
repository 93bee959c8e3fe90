"""
Custom exceptions for the database HA controller.

The hierarchy mirrors how failures are handled inside a reconciliation tick:
conflicts are routine signals, transient I/O is retried on the next tick,
and configuration errors stop the process.
"""
from typing import Optional, Dict, Any
from fastapi import status


class HAException(Exception):
    """
    Base exception for all HA controller errors.

    All custom exceptions should inherit from this base class.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class LeaseConflictError(HAException):
    """
    Raised when a compare-and-swap write on the lease record lost a race.

    Expected and routine: the caller must reload and re-decide, never
    retry the same write with the same token.
    """

    def __init__(self, message: str = "Lease record changed concurrently", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class LeaseNotFoundError(HAException):
    """Raised when the lease record does not exist yet (fresh replica group)."""

    def __init__(self, name: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Lease record '{name}' not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details=details or {"name": name},
        )


class NotLeaderError(HAException):
    """Raised when a member renews a lease it does not hold."""

    def __init__(self, member: str, leader: Optional[str], details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Member '{member}' is not the recorded leader (leader: {leader or 'none'})",
            status_code=status.HTTP_409_CONFLICT,
            details=details or {"member": member, "leader": leader},
        )


class LeaseStoreUnavailableError(HAException):
    """Raised when the backing store cannot be reached or timed out."""

    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class AdapterUnavailableError(HAException):
    """Raised when the local database engine is unreachable or a call timed out."""

    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class AdapterStateError(HAException):
    """Raised when the engine reports a state the adapter cannot act on."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


class UnsupportedOperationError(HAException):
    """Raised when an adapter does not implement a capability."""

    def __init__(self, engine: str, operation: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Engine '{engine}' does not support '{operation}'",
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            details=details or {"engine": engine, "operation": operation},
        )


class ConfigurationError(HAException):
    """
    Raised for unrecoverable startup problems.

    Used for unknown engine types, missing identity, etc. Terminates the process.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


class SysIDMismatchError(HAException):
    """Raised when a local engine's system identifier differs from the lease record."""

    def __init__(self, expected: str, actual: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Engine sysID '{actual}' does not match lease record sysID '{expected}'",
            status_code=status.HTTP_409_CONFLICT,
            details=details or {"expected": expected, "actual": actual},
        )


class InvalidSwitchoverError(HAException):
    """Raised when a switchover request names an unknown or illegal target."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )
