"""AuditTrail: the entry point the change-tracking hook and callers use.

Ties the selected store, the subject registry and an audit context
together. A trail bound with ``with_context``/``as_user`` stamps every
record it writes with that context, which is how one logical operation
(one request, one job) shares its actor and correlation id.
"""
from datetime import datetime
from typing import Any, FrozenSet, List, Mapping, Optional

from auditvault.shared.models import AuditAction, AuditRecord, EntityRef
from auditvault.shared.models.record import Actor

from .audit_store import AuditStore
from .config import DEFAULT_IGNORED_ATTRIBUTES, AuditConfig, build_audit_store, get_audit_store, get_config
from .context import AuditContext, ContextAccessors
from .query import AuditQuery
from .revision import RevisionEngine, SubjectRegistry


class AuditTrail:
    """Records, queries and replays audit records through one AuditStore."""

    def __init__(
        self,
        store: AuditStore,
        registry: Optional[SubjectRegistry] = None,
        ignored_attributes: FrozenSet[str] = DEFAULT_IGNORED_ATTRIBUTES,
        context: Optional[AuditContext] = None,
    ):
        self.store = store
        self.registry = registry or SubjectRegistry()
        self.ignored_attributes = frozenset(ignored_attributes)
        self.context = context
        self.engine = RevisionEngine(store, self.registry)

    @classmethod
    def from_config(
        cls,
        config: Optional[AuditConfig] = None,
        registry: Optional[SubjectRegistry] = None,
        accessors: Optional[ContextAccessors] = None,
    ) -> "AuditTrail":
        """Build a trail on an explicit config, or on the process-wide store."""
        if config is None:
            config = get_config()
            store = get_audit_store()
        else:
            store = build_audit_store(config, accessors=accessors)

        return cls(store, registry=registry, ignored_attributes=config.ignored_attributes)

    # Context ----------------------------------------------------------

    def with_context(self, context: AuditContext) -> "AuditTrail":
        """A trail sharing this store whose writes carry ``context``."""
        return AuditTrail(
            self.store,
            registry=self.registry,
            ignored_attributes=self.ignored_attributes,
            context=context,
        )

    def as_user(self, actor: Actor) -> "AuditTrail":
        """A trail whose writes are attributed to ``actor``."""
        return self.with_context((self.context or AuditContext()).as_user(actor))

    # Writes -----------------------------------------------------------

    def filter_changes(self, changes: Mapping[str, Any]) -> dict:
        """Drop attributes that are never recorded."""
        return {
            name: values for name, values in changes.items()
            if name not in self.ignored_attributes
        }

    def record(
        self,
        subject: EntityRef,
        action: AuditAction,
        changes: Mapping[str, Any],
        associated: Optional[EntityRef] = None,
        comment: Optional[str] = None,
    ) -> AuditRecord:
        """Write the audit for one tracked create/update/destroy.

        Args:
            subject: The changed entity
            action: What happened to it
            changes: attribute -> [old, new] as produced by the change tracker
            associated: Entity to file the record under, if any
            comment: Free-text annotation
        """
        record = AuditRecord(
            subject_type=subject.type,
            subject_id=subject.id,
            action=action,
            changes=self.filter_changes(changes),
            comment=comment,
        )
        if associated is not None:
            record.apply({"associated": associated})

        return self.store.create(record, self.context)

    def create_audit(
        self,
        subject: EntityRef,
        action: Optional[str] = None,
        changes: Any = None,
        associated: Optional[EntityRef] = None,
        comment: Optional[str] = None,
        actor: Optional[Actor] = None,
        created_at: Optional[datetime] = None,
    ) -> AuditRecord:
        """Write a manual record. Any action label is accepted."""
        record = AuditRecord(
            subject_type=subject.type,
            subject_id=subject.id,
            action=action,
            changes=changes if changes is not None else {},
            comment=comment,
            created_at=created_at,
        )
        if associated is not None:
            record.apply({"associated": associated})
        if actor is not None:
            record.set_actor(actor)

        return self.store.create(record, self.context)

    def update_audit(self, record: AuditRecord, attrs: Mapping[str, Any]) -> AuditRecord:
        """Correct a written record. Avoid outside of data repair."""
        return self.store.update(record, attrs)

    def delete_audit(self, record: AuditRecord) -> None:
        self.store.delete(record)

    # Reads ------------------------------------------------------------

    def audits(self, subject: EntityRef, associated_with: Optional[EntityRef] = None) -> AuditQuery:
        """Deferred query over the subject's audits."""
        return self.engine.query(subject, associated_with)

    def ancestors(self, record: AuditRecord) -> List[AuditRecord]:
        return self.engine.ancestors(record)

    def revision(self, record: AuditRecord) -> Any:
        return self.engine.revision(record)

    def revision_at(self, subject: EntityRef, time: datetime) -> Any:
        return self.engine.revision_at(subject, time)

    def revisions(self, subject: EntityRef, from_version: int = 1) -> List[Any]:
        return self.engine.revisions(subject, from_version)

    def undo(self, record: AuditRecord) -> Any:
        return self.engine.undo(record)

    def count(self, criteria: Optional[Mapping[str, Any]] = None) -> int:
        return self.store.count(criteria)

    def destroy_all(self) -> int:
        return self.store.destroy_all()
