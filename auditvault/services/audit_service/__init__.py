"""Audit Service: versioned audit trail over a relational or object store.

Every create/update/destroy of a tracked entity becomes an AuditRecord
with a per-subject version. Records are written to PostgreSQL or to S3
(one blob per subject, optionally partitioned by id range) and read back
through the same AuditQuery surface either way.

This service provides:
- AuditTrail: record, query, revision/time travel, undo
- AuditQuery: deferred filtering/ordering over a subject's audits
- RelationalAuditStore / ObjectAuditStore behind the AuditStore interface
- Process-wide storage selection via configure()/get_audit_store()
"""

from .audit_store import AuditStore
from .audit_trail import AuditTrail
from .config import (
    AuditConfig,
    StorageMechanism,
    StorageOptions,
    build_audit_store,
    configure,
    get_audit_store,
    get_config,
)
from .context import AuditContext, ContextAccessors
from .errors import (
    AuditPayloadError,
    InvalidActionError,
    StorageConfigurationError,
    VersionConflictError,
)
from .query import AuditQuery, QuerySource
from .revision import RevisionEngine, SubjectAdapter, SubjectRegistry

__all__ = [
    "AuditStore",
    "AuditTrail",
    "AuditConfig",
    "StorageMechanism",
    "StorageOptions",
    "build_audit_store",
    "configure",
    "get_audit_store",
    "get_config",
    "AuditContext",
    "ContextAccessors",
    "AuditPayloadError",
    "InvalidActionError",
    "StorageConfigurationError",
    "VersionConflictError",
    "AuditQuery",
    "QuerySource",
    "RevisionEngine",
    "SubjectAdapter",
    "SubjectRegistry",
]
