"""Audit service exceptions.

All of them derive from RepositoryError so callers can catch storage
failures from either backend in one place.
"""
from auditvault.shared.database import DuplicateError, NotFoundError, RepositoryError


class StorageConfigurationError(RepositoryError):
    """Storage options are missing or inconsistent. Never retried."""
    pass


class VersionConflictError(DuplicateError):
    """A concurrent writer took the same (subject, version) slot.

    The caller is expected to retry the whole write.
    """
    pass


class AuditPayloadError(RepositoryError):
    """A stored blob could not be parsed."""
    pass


class InvalidActionError(RepositoryError):
    """Undo was asked for an action label it does not understand."""
    pass


__all__ = [
    "RepositoryError",
    "NotFoundError",
    "DuplicateError",
    "StorageConfigurationError",
    "VersionConflictError",
    "AuditPayloadError",
    "InvalidActionError",
]
