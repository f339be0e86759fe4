"""Shared domain models for auditvault."""
from .record import (
    TIMESTAMP_FORMAT,
    AuditAction,
    AuditRecord,
    EntityRef,
    as_utc,
    format_timestamp,
    utc_now,
)

__all__ = [
    "TIMESTAMP_FORMAT",
    "AuditAction",
    "AuditRecord",
    "EntityRef",
    "as_utc",
    "format_timestamp",
    "utc_now",
]
