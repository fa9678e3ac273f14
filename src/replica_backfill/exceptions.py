# src/replica_backfill/exceptions.py
"""Custom exceptions for the replica-backfill application."""

from typing import Optional


class ReplicaBackfillError(Exception):
    """Base exception for all application-specific errors."""

    pass


class ConfigError(ReplicaBackfillError):
    """Raised for configuration-related issues."""

    pass


class InputError(ReplicaBackfillError):
    """Raised when the difference list cannot be read or parsed."""

    pass


class ResultLogError(ReplicaBackfillError):
    """Raised when an outcome cannot be written to its result log."""

    pass


class CopyError(ReplicaBackfillError):
    """Raised when a single object cannot be replicated."""

    pass


class StoreError(Exception):
    """
    An object-scoped failure reported by a store operation.

    Attributes:
        code (str): The provider error code, e.g. ``NoSuchKey`` or ``405``.
        status (int, optional): The HTTP status code, if known.
        message (str): The human readable error message.
    """

    def __init__(self, code: str, message: str = "", status: Optional[int] = None):
        super().__init__(f"{code}: {message}" if message else code)
        self.code: str = code
        self.status: Optional[int] = status
        self.message: str = message

    @property
    def not_allowed(self) -> bool:
        """
        Whether the store refused the method on this object.

        MinIO answers a HEAD on a delete-marker version with 405.
        """
        return (
            self.status == 405
            or self.code in ("405", "MethodNotAllowed")
            or "method is not allowed" in self.message.lower()
        )
