"""
Stack Manager Exceptions - error taxonomy for backup, restore and startup.

Fatal errors abort the whole run; the operation runner catches the
per-unit ones (SnapshotError and its subclasses) and keeps going.
"""
from __future__ import annotations


class StackError(Exception):
    """Base exception for all stack manager errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(StackError):
    """Raised when the service registry or settings are inconsistent."""


class ProjectRootNotFoundError(StackError):
    """Raised when the stack's project root cannot be located."""


class UnknownServiceError(StackError):
    """Raised when a service name is not in the registry."""


class NotFoundError(StackError):
    """Raised when no usable backup source exists."""


class LockError(StackError):
    """Raised when another run already holds the backup root lock."""


class EngineError(StackError):
    """Raised when a container engine command fails."""


class VolumeInUseError(EngineError):
    """Raised when a named volume cannot be removed because a container uses it."""


class SnapshotError(StackError):
    """Raised when capturing or restoring a persistence unit fails."""


class SourceMissingError(SnapshotError, FileNotFoundError):
    """Raised when the source of a capture or restore does not exist."""
