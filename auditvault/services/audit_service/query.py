"""Backend-agnostic query over a subject's audit records.

An AuditQuery is a deferred description: which subject, which source
(the subject's own records or the records filed under it as associated
entity) and which version/time bounds. Every terminal operation re-reads
the store; nothing is cached between calls.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, List, Mapping, Optional

from auditvault.shared.models import AuditRecord, EntityRef, as_utc

from .audit_store import AuditStore, record_matches


class QuerySource(Enum):
    """Which records an AuditQuery reads."""
    OWN_SUBJECT = "own_subject"
    ASSOCIATED = "associated"


class AuditQuery:
    """Chainable, lazily evaluated view of a subject's audits.

    Usage:
        query = AuditQuery(store, EntityRef("Company", 1))
        query.ascending()
        query.where({"action": "update"})
        query.associated_audits().exists({"subject_type": "Employee"})
    """

    def __init__(
        self,
        store: AuditStore,
        subject: EntityRef,
        associated_with: Optional[EntityRef] = None,
        source: QuerySource = QuerySource.OWN_SUBJECT,
        from_version: Optional[int] = None,
        to_version: Optional[int] = None,
    ):
        self.store = store
        self.subject = subject
        self.associated_with = associated_with
        self.source = source
        self._from_version = from_version
        self._to_version = to_version

    def _derive(self, **overrides: Any) -> "AuditQuery":
        params = {
            "store": self.store,
            "subject": self.subject,
            "associated_with": self.associated_with,
            "source": self.source,
            "from_version": self._from_version,
            "to_version": self._to_version,
        }
        params.update(overrides)
        return AuditQuery(**params)

    # Source selection -------------------------------------------------

    def audits(self) -> "AuditQuery":
        return self._derive(source=QuerySource.OWN_SUBJECT)

    def associated_audits(self) -> "AuditQuery":
        return self._derive(source=QuerySource.ASSOCIATED)

    def from_version(self, version: int) -> "AuditQuery":
        return self._derive(from_version=version)

    def to_version(self, version: int) -> "AuditQuery":
        return self._derive(to_version=version)

    # Evaluation -------------------------------------------------------

    def _own_records(self) -> List[AuditRecord]:
        return self.store.subject_audits(self.subject, self.associated_with)

    def _associated_records(self) -> List[AuditRecord]:
        return self.store.associated_audits(self.subject)

    def _fetch(self) -> List[AuditRecord]:
        """One fresh read of the selected source, in source order."""
        if self.source is QuerySource.ASSOCIATED:
            records = self._associated_records()
        else:
            records = self._own_records()

        if self._from_version is not None:
            records = [r for r in records if (r.version or 0) >= self._from_version]
        if self._to_version is not None:
            records = [r for r in records if (r.version or 0) <= self._to_version]
        return records

    def to_list(self) -> List[AuditRecord]:
        return self._fetch()

    def __iter__(self) -> Iterator[AuditRecord]:
        return iter(self._fetch())

    def __len__(self) -> int:
        return len(self._fetch())

    def count(self) -> int:
        return len(self)

    def ascending(self) -> List[AuditRecord]:
        """Records sorted by version, oldest first."""
        return sorted(self._fetch(), key=lambda r: r.version or 0)

    def descending(self) -> List[AuditRecord]:
        return list(reversed(self.ascending()))

    def first(self) -> Optional[AuditRecord]:
        """Lowest version, or None."""
        records = self.ascending()
        return records[0] if records else None

    def last(self) -> Optional[AuditRecord]:
        """Highest version, or None."""
        records = self.ascending()
        return records[-1] if records else None

    def exists(self, criteria: Optional[Mapping[str, Any]] = None) -> bool:
        return any(record_matches(r, criteria or {}) for r in self._fetch())

    def find_by(self, criteria: Mapping[str, Any]) -> Optional[AuditRecord]:
        """First record (in source order) matching every criterion."""
        for record in self._fetch():
            if record_matches(record, criteria):
                return record
        return None

    def where(self, criteria: Mapping[str, Any]) -> List[AuditRecord]:
        """All records matching every criterion, in source order."""
        return [r for r in self._fetch() if record_matches(r, criteria)]

    def up_until(self, time: datetime) -> List[AuditRecord]:
        """The subject's own records created at or before ``time``."""
        return self.store.up_until(self._own_records(), as_utc(time))

    def own_and_associated_audits(self) -> List[AuditRecord]:
        """Own records plus those filed under this subject, newest first."""
        records = self._own_records() + self._associated_records()
        return sorted(records, key=lambda r: (r.created_at, r.version or 0), reverse=True)

    def __repr__(self) -> str:
        return f"<AuditQuery subject={self.subject} source={self.source.value}>"
