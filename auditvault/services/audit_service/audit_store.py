"""AuditStore abstract interface.

One interface, two implementations (relational and object storage). The
implementation is chosen once at startup by the storage selector and
injected; nothing branches on the backend per call.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from auditvault.shared.models import AuditRecord, EntityRef, as_utc

from .context import AuditContext


def record_matches(record: AuditRecord, criteria: Mapping[str, Any]) -> bool:
    """True iff every criterion equals the record's value exactly.

    Keys are record attributes, including the ``subject``, ``associated``,
    ``user`` and ``actor`` references.

    Raises:
        ValueError: On a key that is not a record attribute
    """
    for attribute, expected in criteria.items():
        if not hasattr(record, attribute):
            raise ValueError(f"Unknown audit attribute: {attribute}")
        if isinstance(expected, Enum):
            expected = expected.value
        elif isinstance(expected, datetime):
            expected = as_utc(expected)
        if getattr(record, attribute) != expected:
            return False
    return True


class AuditStore(ABC):
    """Abstract interface for audit storage."""

    @abstractmethod
    def create(self, record: AuditRecord, context: Optional[AuditContext] = None) -> AuditRecord:
        """Persist a new record, assigning its version and created_at."""
        pass

    @abstractmethod
    def update(self, record: AuditRecord, attrs: Mapping[str, Any]) -> AuditRecord:
        """Correct an already written record. Rare maintenance path."""
        pass

    @abstractmethod
    def delete(self, record: AuditRecord) -> None:
        """Remove one record."""
        pass

    @abstractmethod
    def subject_audits(
        self,
        subject: EntityRef,
        associated_with: Optional[EntityRef] = None,
    ) -> List[AuditRecord]:
        """All records about one subject.

        Args:
            subject: The audited entity
            associated_with: The entity the subject's type files its
                audits under, if it declares one
        """
        pass

    @abstractmethod
    def associated_audits(self, entity: EntityRef) -> List[AuditRecord]:
        """Records of other subjects filed under ``entity`` as associated."""
        pass

    @abstractmethod
    def destroy_all(self) -> int:
        """Remove every record. Test reset only."""
        pass

    @abstractmethod
    def count(self, criteria: Optional[Mapping[str, Any]] = None) -> int:
        """Count records matching equality criteria."""
        pass

    def health_check(self) -> Dict[str, Any]:
        """Backend reachability, reported by the service health endpoint."""
        return {"status": "ok", "healthy": True}

    @staticmethod
    def up_until(records: Iterable[AuditRecord], time: datetime) -> List[AuditRecord]:
        """Records created at or before ``time``."""
        time = as_utc(time)
        return [r for r in records if r.created_at is not None and r.created_at <= time]
