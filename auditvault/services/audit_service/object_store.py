"""Object-storage audit store: one S3 blob per subject (or associated entity).

Layout:
    {prefix}/{auditable|associated}_type_audits/{type}[/{start}_{end}]/{id}.audits

A record lives under its associated entity's key when it has one and under
its own subject's key otherwise. Each blob holds JSON documents joined by
",\\n" so that Athena-style readers can ingest it line by line; readers here
wrap the body in brackets and parse it as an array.

Consistency:
    S3 has no append, so every write is read-modify-write of the whole blob
    (cost grows with the subject's history). There is no conditional put:
    two writers on the same key race and the last put wins, silently
    dropping the other's record. Deployments must serialize writes per key
    upstream if they need every record kept.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from auditvault.shared.database import NotFoundError, RepositoryError
from auditvault.shared.models import AuditRecord, EntityRef, utc_now

from .audit_store import AuditStore, record_matches
from .config import StorageOptions
from .context import AuditContext, ContextAccessors, resolve_context
from .errors import AuditPayloadError, StorageConfigurationError
from .stub_client import InMemoryS3Client

logger = logging.getLogger(__name__)

PARTITION_SIZE = 10000
RECORD_SEPARATOR = ",\n"
KEY_SUFFIX = ".audits"

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


def normalize_type(type_name: str) -> str:
    """Path form of a type name: ``Models::HTTPCompany`` -> ``models/http_company``."""
    path = type_name.replace("::", "/").replace(".", "/")
    path = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", path)
    path = re.sub(r"([a-z\d])([A-Z])", r"\1_\2", path)
    return path.replace("-", "_").lower()


def partition_key(entity_id: Optional[int]) -> str:
    """Id-range segment, e.g. 42 -> ``0_9999``; ``?`` when the id is absent."""
    if entity_id is None:
        return "?"

    range_start = int(entity_id) // PARTITION_SIZE * PARTITION_SIZE
    range_end = range_start + PARTITION_SIZE - 1
    return f"{range_start}_{range_end}"


def _is_not_found(error: Exception) -> bool:
    if not isinstance(error, ClientError):
        return False
    return error.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES


def stored_changes(changes: Any) -> Any:
    """``changes`` as it reads back from a blob (datetimes become strings)."""
    return json.loads(json.dumps(changes, default=str))


@dataclass(frozen=True)
class WriteResult:
    """Where a blob was written and what the backend answered."""
    key: str
    response: Dict[str, Any]


class ObjectAuditStore(AuditStore):
    """AuditStore backed by S3 (or the in-memory stub).

    Records carry no row id here; a record is located inside its blob by
    structural equality.
    """

    # Shared by every stub-mode store in the process; inspect or clear in tests
    stub_cache: Dict[str, str] = {}

    def __init__(
        self,
        options: StorageOptions,
        accessors: Optional[ContextAccessors] = None,
        client: Any = None,
    ):
        """Initialize the store.

        Args:
            options: Bucket, credentials and key layout options
            accessors: Pull-based context accessors of the host application
            client: Pre-built S3 client (defaults to boto3 or the stub)

        Raises:
            StorageConfigurationError: If bucket or credentials are missing
        """
        options.validate()
        self.options = options
        self.accessors = accessors or ContextAccessors()
        self._client = client

        logger.info(
            "OBJECT_AUDIT_STORE_INITIALIZED",
            extra={
                "bucket": options.bucket,
                "region": options.region,
                "key_prefix": options.key_prefix,
                "partition": options.partition,
                "stub_responses": options.stub_responses,
            }
        )

    @property
    def s3_client(self):
        """Lazy initialization of the S3 client."""
        if self._client is None:
            if self.options.stub_responses:
                self._client = InMemoryS3Client(ObjectAuditStore.stub_cache)
            else:
                self._client = boto3.client(
                    "s3",
                    region_name=self.options.region,
                    aws_access_key_id=self.options.access_key,
                    aws_secret_access_key=self.options.secret_key,
                )
        return self._client

    # Keys -------------------------------------------------------------

    def _should_partition(self, type_name: str) -> bool:
        if not self.options.partition:
            return False
        excluded = set(self.options.unpartitioned_types)
        return type_name not in excluded and normalize_type(type_name) not in excluded

    def resolve_key(self, record: AuditRecord) -> str:
        """Key of the blob the record belongs in, given its current fields."""
        if record.associated_type:
            base, type_name, entity_id = "associated", record.associated_type, record.associated_id
        else:
            base, type_name, entity_id = "auditable", record.subject_type, record.subject_id

        segments = [f"{base}_type_audits", normalize_type(type_name)]
        if self._should_partition(type_name):
            segments.append(partition_key(entity_id))
        segments.append(f"{entity_id}{KEY_SUFFIX}")

        if self.options.key_prefix:
            segments.insert(0, self.options.key_prefix.rstrip("/"))
        return "/".join(segments)

    # Blob codec -------------------------------------------------------

    @staticmethod
    def format_blob(records: List[AuditRecord]) -> str:
        return RECORD_SEPARATOR.join(
            json.dumps(record.to_json_dict(), default=str) for record in records
        )

    @staticmethod
    def parse_blob(body: str, key: str = "") -> List[AuditRecord]:
        """Parse a blob body into records.

        Raises:
            AuditPayloadError: If the body is not a sequence of JSON objects
        """
        if not body.strip():
            return []

        try:
            documents = json.loads("[" + body + "]")
            return [AuditRecord.from_json_dict(document) for document in documents]
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(
                "AUDIT_BLOB_MALFORMED",
                extra={"key": key, "error": str(e)}
            )
            raise AuditPayloadError(f"Malformed audit blob at {key}: {e}") from e

    # Backend calls ----------------------------------------------------

    def exists(self, key: str) -> bool:
        """Whether ``key`` exists, without fetching the body."""
        try:
            self.s3_client.head_object(Bucket=self.options.bucket, Key=key)
            return True
        except (ClientError, BotoCoreError) as e:
            if _is_not_found(e):
                return False
            logger.error("OBJECT_STORE_HEAD_FAILED", extra={"key": key, "error": str(e)})
            raise RepositoryError(f"Failed to check {key}: {e}") from e

    def read(self, key: str, subject: Optional[EntityRef] = None) -> List[AuditRecord]:
        """Records stored at ``key``, optionally only those about ``subject``.

        A missing key reads as an empty list.
        """
        try:
            response = self.s3_client.get_object(Bucket=self.options.bucket, Key=key)
            raw = response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            if _is_not_found(e):
                return []
            logger.error("OBJECT_STORE_GET_FAILED", extra={"key": key, "error": str(e)})
            raise RepositoryError(f"Failed to read {key}: {e}") from e

        try:
            body = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.error("AUDIT_BLOB_MALFORMED", extra={"key": key, "error": str(e)})
            raise AuditPayloadError(f"Audit blob at {key} is not UTF-8: {e}") from e

        records = self.parse_blob(body, key)

        logger.debug(
            "AUDIT_BLOB_READ",
            extra={"key": key, "record_count": len(records)}
        )

        if subject is not None:
            return [r for r in records if r.subject == subject]
        return records

    def _put(self, key: str, records: List[AuditRecord]) -> WriteResult:
        try:
            response = self.s3_client.put_object(
                Bucket=self.options.bucket,
                Key=key,
                Body=self.format_blob(records),
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "OBJECT_STORE_PUT_FAILED",
                extra={"key": key, "record_count": len(records), "error": str(e)}
            )
            raise RepositoryError(f"Failed to write {key}: {e}") from e

        return WriteResult(key=key, response=response)

    def _delete_object(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.options.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            logger.error("OBJECT_STORE_DELETE_FAILED", extra={"key": key, "error": str(e)})
            raise RepositoryError(f"Failed to delete {key}: {e}") from e

    def _rewrite(self, key: str, records: List[AuditRecord]) -> None:
        if records:
            self._put(key, records)
        else:
            self._delete_object(key)

    def _iter_keys(self) -> Iterator[str]:
        prefix = self.options.key_prefix
        kwargs: Dict[str, Any] = {"Bucket": self.options.bucket, "Prefix": prefix}
        while True:
            try:
                page = self.s3_client.list_objects_v2(**kwargs)
            except (ClientError, BotoCoreError) as e:
                logger.error("OBJECT_STORE_LIST_FAILED", extra={"prefix": prefix, "error": str(e)})
                raise RepositoryError(f"Failed to list {prefix}: {e}") from e

            for item in page.get("Contents", []):
                if item["Key"].endswith(KEY_SUFFIX):
                    yield item["Key"]

            if not page.get("IsTruncated"):
                return
            kwargs["ContinuationToken"] = page["NextContinuationToken"]

    # Record operations ------------------------------------------------

    def write(self, record: AuditRecord, context: Optional[AuditContext] = None) -> WriteResult:
        """Append a new record to its blob, assigning version and created_at.

        The version continues the subject's whole history, which spans its
        own key and, once associated, the associated entity's key.
        """
        if record.created_at is None:
            record.created_at = utc_now()

        resolve_context(record, context, self.accessors)
        record.changes = stored_changes(record.changes)
        key = self.resolve_key(record)

        records = self.read(key) if self.exists(key) else []
        history = [r for r in records if r.subject == record.subject]
        if record.associated is not None:
            history.extend(self.subject_audits(record.subject))

        record.version = max((r.version or 0 for r in history), default=0) + 1
        records.append(record)

        result = self._put(key, records)

        logger.info(
            "AUDIT_RECORD_WRITTEN",
            extra={
                "key": key,
                "subject": str(record.subject),
                "action": record.action,
                "version": record.version,
                "correlation_id": record.correlation_id,
            }
        )
        return result

    def _locate(self, records: List[AuditRecord], record: AuditRecord, key: str) -> int:
        for index, candidate in enumerate(records):
            if candidate == record:
                return index
        logger.error(
            "AUDIT_RECORD_NOT_FOUND",
            extra={"key": key, "subject": str(record.subject), "version": record.version}
        )
        raise NotFoundError(f"Audit {record.subject} v{record.version} not found at {key}")

    def modify(self, record: AuditRecord, attrs: Mapping[str, Any]) -> AuditRecord:
        """Correct a stored record in place.

        Meant only for fixing records written incorrectly or backfilling
        missing data. Versions are never renumbered. Changing the
        associated reference moves the record to its new key.

        Raises:
            NotFoundError: If no stored record equals ``record``
        """
        if record.changes_associated(attrs):
            return self.move(record, attrs)

        key = self.resolve_key(record)
        records = self.read(key)
        index = self._locate(records, record, key)

        stored = records[index]
        stored.apply(attrs)
        stored.changes = stored_changes(stored.changes)
        self._put(key, records)

        record.apply(attrs)
        record.changes = stored.changes

        logger.warning(
            "AUDIT_RECORD_MODIFIED",
            extra={"key": key, "subject": str(record.subject), "attributes": sorted(attrs)}
        )
        return record

    def move(self, record: AuditRecord, attrs: Mapping[str, Any]) -> AuditRecord:
        """Append the corrected record under its new key, then drop it from the old one.

        The old blob is only touched after the new one has been written, so
        a failure part way leaves the record readable in at least one place.
        """
        old_key = self.resolve_key(record)
        old_records = self.read(old_key)
        index = self._locate(old_records, record, old_key)

        moved = old_records[index].copy()
        moved.apply(attrs)
        moved.changes = stored_changes(moved.changes)
        new_key = self.resolve_key(moved)

        records = self.read(new_key)
        records.append(moved)
        self._put(new_key, records)

        del old_records[index]
        self._rewrite(old_key, old_records)

        record.apply(attrs)
        record.changes = moved.changes

        logger.warning(
            "AUDIT_RECORD_MOVED",
            extra={"from_key": old_key, "to_key": new_key, "subject": str(record.subject)}
        )
        return record

    def delete(self, record: AuditRecord) -> None:
        """Remove one record; the blob is deleted once it holds nothing.

        Raises:
            NotFoundError: If no stored record equals ``record``
        """
        key = self.resolve_key(record)
        records = self.read(key)
        del records[self._locate(records, record, key)]
        self._rewrite(key, records)

        logger.info(
            "AUDIT_RECORD_DELETED",
            extra={"key": key, "remaining": len(records)}
        )

    # AuditStore -------------------------------------------------------

    def create(self, record: AuditRecord, context: Optional[AuditContext] = None) -> AuditRecord:
        self.write(record, context)
        return record

    def update(self, record: AuditRecord, attrs: Mapping[str, Any]) -> AuditRecord:
        return self.modify(record, attrs)

    def subject_audits(
        self,
        subject: EntityRef,
        associated_with: Optional[EntityRef] = None,
    ) -> List[AuditRecord]:
        """Own-key records followed by those filed under the associated entity.

        A subject that became associated during its lifetime has records
        in both places.
        """
        locator = AuditRecord(subject_type=subject.type, subject_id=subject.id)
        records = self.read(self.resolve_key(locator), subject)

        if associated_with is not None:
            locator.apply({"associated": associated_with})
            records.extend(self.read(self.resolve_key(locator), subject))

        return records

    def associated_audits(self, entity: EntityRef) -> List[AuditRecord]:
        locator = AuditRecord(
            subject_type=entity.type,
            associated_type=entity.type,
            associated_id=entity.id,
        )
        return self.read(self.resolve_key(locator))

    def iter_records(self) -> Iterator[AuditRecord]:
        """Every record under the key prefix, blob by blob."""
        for key in self._iter_keys():
            yield from self.read(key)

    def count(self, criteria: Optional[Mapping[str, Any]] = None) -> int:
        """Count records under the key prefix matching equality criteria."""
        return sum(1 for r in self.iter_records() if record_matches(r, criteria or {}))

    def destroy_all(self) -> int:
        """Clear the stub cache. Refuses to touch real storage.

        Raises:
            StorageConfigurationError: When stub responses are disabled
        """
        if not self.options.stub_responses:
            raise StorageConfigurationError(
                "destroy_all is only available with stub_responses enabled"
            )

        removed = sum(1 for _ in self.iter_records())
        ObjectAuditStore.stub_cache.clear()

        logger.warning("STUB_AUDIT_CACHE_CLEARED", extra={"removed": removed})
        return removed
