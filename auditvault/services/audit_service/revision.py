"""Reconstruction engine: time travel and undo over audit records.

Live subjects are reached through SubjectAdapters registered by type name,
so the engine never depends on a particular ORM.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from auditvault.shared.database import NotFoundError
from auditvault.shared.models import AuditAction, AuditRecord, EntityRef

from .audit_store import AuditStore
from .errors import InvalidActionError
from .query import AuditQuery

logger = logging.getLogger(__name__)


class SubjectAdapter(ABC):
    """Bridge between audit records and one audited entity type."""

    type_name: str = ""

    @abstractmethod
    def find(self, subject_id: Any) -> Optional[Any]:
        """The live subject, or None if it no longer exists."""
        pass

    @abstractmethod
    def build(self, subject_id: Any = None) -> Any:
        """A fresh, unsaved instance carrying only its defaults (and id)."""
        pass

    @abstractmethod
    def create(self, attrs: Mapping[str, Any]) -> Any:
        """Persist a new subject."""
        pass

    @abstractmethod
    def update(self, subject: Any, attrs: Mapping[str, Any]) -> Any:
        """Persist attribute changes on a live subject."""
        pass

    @abstractmethod
    def destroy(self, subject: Any) -> None:
        pass

    def assign(self, subject: Any, attrs: Mapping[str, Any]) -> Any:
        """Set the attributes the subject has; others are skipped."""
        for name, value in attrs.items():
            if hasattr(subject, name):
                setattr(subject, name, value)
        return subject

    def associated_ref(self, subject: Any) -> Optional[EntityRef]:
        """Entity this subject files its audits under, if its type declares one."""
        return None


class SubjectRegistry:
    """SubjectAdapters by type name."""

    def __init__(self, adapters: Iterable[SubjectAdapter] = ()):
        self._adapters: Dict[str, SubjectAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: SubjectAdapter) -> None:
        if not adapter.type_name:
            raise ValueError("SubjectAdapter.type_name must be set")
        self._adapters[adapter.type_name] = adapter

    def find(self, type_name: str) -> Optional[SubjectAdapter]:
        return self._adapters.get(type_name)

    def get(self, type_name: str) -> SubjectAdapter:
        adapter = self.find(type_name)
        if adapter is None:
            raise ValueError(f"No subject adapter registered for {type_name}")
        return adapter

    def __contains__(self, type_name: str) -> bool:
        return type_name in self._adapters


def reconstruct_attributes(records: Iterable[AuditRecord]) -> Dict[str, Any]:
    """Fold new values of ascending records into one attribute map.

    The version of the last record folded is stored under ``version``.
    """
    attributes: Dict[str, Any] = {}
    for record in records:
        attributes.update(record.new_attributes())
        attributes["version"] = record.version
    return attributes


class RevisionEngine:
    """Rebuilds past subject states and reverts recorded changes."""

    def __init__(self, store: AuditStore, registry: SubjectRegistry):
        self.store = store
        self.registry = registry

    def associated_with(self, subject: EntityRef) -> Optional[EntityRef]:
        """The live subject's associated entity, when its type declares one."""
        adapter = self.registry.find(subject.type)
        if adapter is None:
            return None
        live = adapter.find(subject.id)
        return adapter.associated_ref(live) if live is not None else None

    def query(self, subject: EntityRef, associated_with: Optional[EntityRef] = None) -> AuditQuery:
        if associated_with is None:
            associated_with = self.associated_with(subject)
        return AuditQuery(self.store, subject, associated_with=associated_with)

    def ancestors(self, record: AuditRecord) -> List[AuditRecord]:
        """Records of the same subject up to this record's version, ascending."""
        associated_with = self.associated_with(record.subject) or record.associated
        query = self.query(record.subject, associated_with)
        return query.to_version(record.version or 0).ascending()

    def _materialize(self, adapter: SubjectAdapter, subject_id: Any, attributes: Mapping[str, Any]) -> Any:
        live = adapter.find(subject_id)
        instance = adapter.build(subject_id if live is not None else None)
        return adapter.assign(instance, attributes)

    def revision(self, record: AuditRecord) -> Any:
        """The subject as it was right after ``record`` was written.

        A detached instance when the subject still exists, a fresh unsaved
        one when it was destroyed. Attributes no change-set mentions keep
        the instance defaults.
        """
        adapter = self.registry.get(record.subject_type)
        attributes = reconstruct_attributes(self.ancestors(record))
        attributes["version"] = record.version
        return self._materialize(adapter, record.subject_id, attributes)

    def revision_at(self, subject: EntityRef, time: datetime) -> Any:
        """The subject as of ``time``; its live state if nothing was recorded by then."""
        adapter = self.registry.get(subject.type)
        candidates = self.query(subject).up_until(time)

        if not candidates:
            return adapter.find(subject.id)

        latest = max(candidates, key=lambda r: (r.created_at, r.version or 0))
        return self.revision(latest)

    def revisions(self, subject: EntityRef, from_version: int = 1) -> List[Any]:
        """Every revision of the subject from ``from_version`` on, ascending."""
        adapter = self.registry.get(subject.type)
        results = []
        attributes: Dict[str, Any] = {}

        for record in self.query(subject).ascending():
            attributes.update(record.new_attributes())
            attributes["version"] = record.version
            if (record.version or 0) >= from_version:
                results.append(self._materialize(adapter, subject.id, dict(attributes)))

        return results

    def undo(self, record: AuditRecord) -> Any:
        """Revert the change a record describes on the live subject.

        create -> destroy the subject; destroy -> recreate it from the
        recorded values; update -> restore every old value.

        Raises:
            InvalidActionError: For any other action label
            NotFoundError: If the live subject to revert is gone
        """
        adapter = self.registry.get(record.subject_type)

        if record.action == AuditAction.CREATE.value:
            live = self._require_live(adapter, record)
            adapter.destroy(live)
            result = None
        elif record.action == AuditAction.DESTROY.value:
            # destroy records carry the last values (bare, or as [old, None])
            result = adapter.create(record.old_attributes())
        elif record.action == AuditAction.UPDATE.value:
            live = self._require_live(adapter, record)
            result = adapter.update(live, record.old_attributes())
        else:
            logger.error(
                "AUDIT_UNDO_INVALID_ACTION",
                extra={"action": record.action, "subject": str(record.subject)}
            )
            raise InvalidActionError(f"invalid action given {record.action}")

        logger.info(
            "AUDIT_UNDONE",
            extra={"action": record.action, "subject": str(record.subject), "version": record.version}
        )
        return result

    def _require_live(self, adapter: SubjectAdapter, record: AuditRecord) -> Any:
        live = adapter.find(record.subject_id)
        if live is None:
            raise NotFoundError(f"{record.subject} no longer exists")
        return live
