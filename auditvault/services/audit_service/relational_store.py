"""PostgreSQL implementation of AuditStore.

Expected table (created by the application's own migrations):

    audits(
        id              bigserial primary key,
        subject_type    text not null,
        subject_id      bigint,
        associated_type text,
        associated_id   bigint,
        user_type       text,
        user_id         bigint,
        username        text,
        action          text,
        audited_changes jsonb,
        version         integer not null,
        comment         text,
        origin_address  text,
        correlation_id  text,
        created_at      timestamp not null,
        unique (subject_type, subject_id, version)
    )

Version assignment reads the subject's max version inside the insert
transaction; the unique index turns a racing writer into
VersionConflictError.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import psycopg2
from psycopg2.errors import UniqueViolation
from psycopg2.extras import Json

from auditvault.shared.database import (
    BaseRepository,
    ConnectionManager,
    NotFoundError,
    RepositoryError,
)
from auditvault.shared.models import AuditRecord, EntityRef, as_utc, utc_now

from .audit_store import AuditStore
from .context import AuditContext, ContextAccessors, resolve_context
from .errors import VersionConflictError

logger = logging.getLogger(__name__)

_REFERENCE_COLUMNS = {
    "subject": ("subject_type", "subject_id"),
    "associated": ("associated_type", "associated_id"),
    "user": ("user_type", "user_id"),
}


class RelationalAuditStore(BaseRepository[AuditRecord], AuditStore):
    """Audit records as rows of the ``audits`` table."""

    columns = (
        "id",
        "subject_type",
        "subject_id",
        "associated_type",
        "associated_id",
        "user_type",
        "user_id",
        "username",
        "action",
        "audited_changes",
        "version",
        "comment",
        "origin_address",
        "correlation_id",
        "created_at",
    )

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str = "audits",
        accessors: Optional[ContextAccessors] = None,
    ):
        super().__init__(connection_manager, table_name)
        self.accessors = accessors or ContextAccessors()

    # Row conversion ---------------------------------------------------

    def _row_to_entity(self, row: tuple) -> AuditRecord:
        values = dict(zip(self.columns, row))
        # psycopg2 decodes jsonb; a str here was stored as a string payload
        changes = values.pop("audited_changes")
        return AuditRecord(changes=changes if changes is not None else {}, **values)

    def _entity_to_params(self, entity: AuditRecord) -> Dict[str, Any]:
        return {
            "subject_type": entity.subject_type,
            "subject_id": entity.subject_id,
            "associated_type": entity.associated_type,
            "associated_id": entity.associated_id,
            "user_type": entity.user_type,
            "user_id": entity.user_id,
            "username": entity.username,
            "action": entity.action,
            "audited_changes": Json(entity.changes),
            "version": entity.version,
            "comment": entity.comment,
            "origin_address": entity.origin_address,
            "correlation_id": entity.correlation_id,
            "created_at": entity.created_at,
        }

    def _criteria_to_columns(self, criteria: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Translate record-attribute criteria into column criteria."""
        columns: Dict[str, Any] = {}
        for attribute, value in (criteria or {}).items():
            if attribute == "actor":
                attribute = "user" if isinstance(value, EntityRef) else "username"

            if attribute in _REFERENCE_COLUMNS:
                type_column, id_column = _REFERENCE_COLUMNS[attribute]
                columns[type_column] = value.type if value is not None else None
                columns[id_column] = value.id if value is not None else None
            elif attribute == "changes":
                columns["audited_changes"] = Json(value)
            elif attribute == "created_at" and value is not None:
                columns["created_at"] = as_utc(value)
            elif attribute == "action" and hasattr(value, "value"):
                columns["action"] = value.value
            else:
                columns[self._check_column(attribute)] = value
        return columns

    # Writes -----------------------------------------------------------

    def create(self, record: AuditRecord, context: Optional[AuditContext] = None) -> AuditRecord:
        """Insert a record as ``max(version) + 1`` for its subject.

        Raises:
            VersionConflictError: If a concurrent writer took the version
            RepositoryError: On any other database failure
        """
        if record.created_at is None:
            record.created_at = utc_now()
        resolve_context(record, context, self.accessors)

        try:
            with self.connection_manager.transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT COALESCE(MAX(version), 0) FROM {self.table_name} "
                        "WHERE subject_type = %s AND subject_id IS NOT DISTINCT FROM %s",
                        (record.subject_type, record.subject_id),
                    )
                    row = cur.fetchone()
                    record.version = (row[0] if row else 0) + 1
                    record.id = self._insert(cur, record)

        except UniqueViolation as e:
            logger.warning(
                "AUDIT_VERSION_CONFLICT",
                extra={"subject": str(record.subject), "version": record.version}
            )
            raise VersionConflictError(
                f"Version {record.version} of {record.subject} was taken concurrently"
            ) from e

        except psycopg2.Error as e:
            logger.error(
                "POSTGRES_AUDIT_INSERT_FAILED",
                extra={"subject": str(record.subject), "error": str(e)}
            )
            raise RepositoryError(f"Failed to insert audit: {e}") from e

        logger.info(
            "AUDIT_RECORD_WRITTEN",
            extra={
                "table_name": self.table_name,
                "audit_id": record.id,
                "subject": str(record.subject),
                "action": record.action,
                "version": record.version,
                "correlation_id": record.correlation_id,
            }
        )
        return record

    def update(self, record: AuditRecord, attrs: Mapping[str, Any]) -> AuditRecord:
        """Apply attrs to a persisted record and save every column."""
        if record.id is None:
            raise NotFoundError("Cannot update an audit that was never persisted")

        record.apply(attrs)
        try:
            updated = self.update_by_id(record.id, self._entity_to_params(record))
        except psycopg2.Error as e:
            logger.error(
                "POSTGRES_AUDIT_UPDATE_FAILED",
                extra={"audit_id": record.id, "error": str(e)}
            )
            raise RepositoryError(f"Failed to update audit {record.id}: {e}") from e

        if not updated:
            raise NotFoundError(f"Audit {record.id} not found")

        logger.warning(
            "AUDIT_RECORD_MODIFIED",
            extra={"audit_id": record.id, "attributes": sorted(attrs)}
        )
        return record

    def delete(self, record: AuditRecord) -> None:
        if record.id is None or not self.delete_by_id(record.id):
            raise NotFoundError(f"Audit {record.id} not found")

    def destroy_all(self) -> int:
        removed = self.delete_all()
        logger.warning(
            "AUDIT_TABLE_CLEARED",
            extra={"table_name": self.table_name, "removed": removed}
        )
        return removed

    # Reads ------------------------------------------------------------

    def scope(
        self,
        subject: EntityRef,
        descending: bool = False,
        from_version: Optional[int] = None,
        to_version: Optional[int] = None,
        up_until: Optional[datetime] = None,
    ) -> List[AuditRecord]:
        """A subject's records ordered by version, with optional bounds."""
        conditions = []
        if from_version is not None:
            conditions.append(("version", ">=", from_version))
        if to_version is not None:
            conditions.append(("version", "<=", to_version))
        if up_until is not None:
            conditions.append(("created_at", "<=", as_utc(up_until)))

        return self.find_where(
            criteria={"subject_type": subject.type, "subject_id": subject.id},
            conditions=conditions,
            order_by=[("version", "DESC" if descending else "ASC")],
        )

    def subject_audits(
        self,
        subject: EntityRef,
        associated_with: Optional[EntityRef] = None,
    ) -> List[AuditRecord]:
        # rows are keyed by subject whatever they are associated with
        return self.scope(subject)

    def associated_audits(self, entity: EntityRef) -> List[AuditRecord]:
        return self.find_where(
            criteria={"associated_type": entity.type, "associated_id": entity.id},
            order_by=[("id", "ASC")],
        )

    def count(self, criteria: Optional[Mapping[str, Any]] = None) -> int:
        return super().count(self._criteria_to_columns(criteria))

    def health_check(self) -> Dict[str, Any]:
        """Database connectivity, opening the pool if nothing has yet."""
        try:
            self.connection_manager.initialize()
        except psycopg2.Error as e:
            return {"status": "error", "healthy": False, "error": str(e)}
        return self.connection_manager.health_check()
