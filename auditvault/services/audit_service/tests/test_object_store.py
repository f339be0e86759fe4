"""Tests for the S3-backed audit store (stub responses)."""
import io
import json
from dataclasses import replace
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from botocore.response import StreamingBody

from auditvault.shared.database import NotFoundError, RepositoryError
from auditvault.shared.models import AuditRecord, EntityRef
from auditvault.services.audit_service.config import StorageOptions
from auditvault.services.audit_service.context import AuditContext, ContextAccessors
from auditvault.services.audit_service.errors import AuditPayloadError, StorageConfigurationError
from auditvault.services.audit_service.object_store import (
    ObjectAuditStore,
    normalize_type,
    partition_key,
)


def company_audit(company_id=1, **kwargs):
    values = {
        "subject_type": "Company",
        "subject_id": company_id,
        "action": "create",
        "changes": {"name": [None, "Willy Wonka Factory"]},
    }
    values.update(kwargs)
    return AuditRecord(**values)


def client_error(code, operation="GetObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestStorageOptionsValidation:
    """Construction refuses missing bucket or credentials."""

    @pytest.mark.parametrize("missing", ["bucket", "access_key", "secret_key"])
    def test_missing_required_option(self, missing):
        values = {"bucket": "b", "access_key": "a", "secret_key": "s"}
        values[missing] = None

        with pytest.raises(StorageConfigurationError, match=missing):
            ObjectAuditStore(StorageOptions(**values))

    def test_region_defaults_to_us_east_1(self, storage_options):
        assert storage_options.region == "us-east-1"


class TestKeyResolution:
    """Tests for resolve_key."""

    def test_auditable_key(self, object_store):
        key = object_store.resolve_key(company_audit(42))

        assert key == "test-prefix/auditable_type_audits/company/42.audits"

    def test_associated_key(self, object_store):
        record = AuditRecord(
            subject_type="Employee",
            subject_id=5,
            associated_type="Company",
            associated_id=3,
        )

        assert object_store.resolve_key(record) == "test-prefix/associated_type_audits/company/3.audits"

    def test_namespaced_type_is_underscored(self, object_store):
        record = AuditRecord(subject_type="Models::ActiveRecord::CompanyOwner", subject_id=1)

        key = object_store.resolve_key(record)

        assert key == "test-prefix/auditable_type_audits/models/active_record/company_owner/1.audits"

    def test_without_prefix(self):
        store = ObjectAuditStore(StorageOptions(bucket="b", access_key="a", secret_key="s"))

        assert store.resolve_key(company_audit(1)) == "auditable_type_audits/company/1.audits"

    def test_partition_segments(self, storage_options):
        options = replace(storage_options, partition=True)
        store = ObjectAuditStore(options)

        assert "/0_9999/" in store.resolve_key(company_audit(42))
        assert "/10000_19999/" in store.resolve_key(company_audit(10005))
        assert store.resolve_key(company_audit(None)).endswith("/company/?/None.audits")

    def test_unpartitioned_type_has_no_segment(self, storage_options):
        options = replace(storage_options, partition=True, unpartitioned_types=("Company",))
        store = ObjectAuditStore(options)

        key = store.resolve_key(company_audit(10005))

        assert key == "test-prefix/auditable_type_audits/company/10005.audits"

    def test_helpers(self):
        assert normalize_type("HTTPRequest") == "http_request"
        assert normalize_type("billing.Invoice") == "billing/invoice"
        assert partition_key(9999) == "0_9999"
        assert partition_key(20000) == "20000_29999"
        assert partition_key(None) == "?"


class TestWrite:
    """Tests for write (append with versioning)."""

    def test_first_write_creates_blob_with_version_1(self, object_store):
        record = company_audit()

        result = object_store.write(record)

        assert record.version == 1
        assert result.key in ObjectAuditStore.stub_cache
        assert record.created_at is not None
        assert record.correlation_id

    def test_versions_increase_per_subject(self, object_store):
        for _ in range(3):
            object_store.write(company_audit(action="update"))

        versions = [r.version for r in object_store.read(object_store.resolve_key(company_audit()))]

        assert versions == [1, 2, 3]

    def test_versions_are_per_subject_within_a_shared_blob(self, object_store):
        parent = EntityRef("Company", 9)
        for employee_id in (1, 2, 1):
            record = AuditRecord(subject_type="Employee", subject_id=employee_id, action="update")
            record.apply({"associated": parent})
            object_store.write(record)

        records = object_store.associated_audits(parent)

        assert [(r.subject_id, r.version) for r in records] == [(1, 1), (2, 1), (1, 2)]

    def test_versions_continue_after_association(self, object_store):
        employee = EntityRef("Employee", 5)
        object_store.write(AuditRecord(subject_type="Employee", subject_id=5, action="create"))
        object_store.write(AuditRecord(subject_type="Employee", subject_id=5, action="update"))

        associated = AuditRecord(subject_type="Employee", subject_id=5, action="update")
        associated.apply({"associated": EntityRef("Company", 3)})
        object_store.write(associated)

        history = object_store.subject_audits(employee, EntityRef("Company", 3))
        assert [r.version for r in history] == [1, 2, 3]

    def test_datetime_changes_stored_as_strings(self, object_store):
        record = company_audit(changes={"founded": [None, datetime(2020, 1, 1)]})

        object_store.write(record)

        assert record.changes == {"founded": [None, "2020-01-01 00:00:00"]}
        object_store.modify(record, {"comment": "backfilled"})
        stored = object_store.read(object_store.resolve_key(record))[0]
        assert stored.comment == "backfilled"
        assert stored.changes == {"founded": [None, "2020-01-01 00:00:00"]}

    def test_blob_format(self, object_store):
        object_store.write(company_audit(created_at=datetime(2018, 6, 20, 5, 34)))
        object_store.write(company_audit(action="update", created_at=datetime(2018, 6, 21, 8, 0)))

        body = ObjectAuditStore.stub_cache[object_store.resolve_key(company_audit())]
        documents = body.split(",\n")

        assert len(documents) == 2
        first = json.loads(documents[0])
        assert first["created_at"] == "2018-06-20 05:34:00"
        assert first["version"] == 1
        assert "id" not in first

    def test_created_at_kept_when_given(self, object_store):
        record = company_audit(created_at=datetime(2018, 6, 17, 5, 34))

        object_store.write(record)

        stored = object_store.read(object_store.resolve_key(record))[0]
        assert stored.created_at == datetime(2018, 6, 17, 5, 34)

    def test_string_changes_pass_through(self, object_store):
        payload = "---\nname: Willy\n"
        object_store.write(company_audit(changes=payload))

        stored = object_store.read(object_store.resolve_key(company_audit()))[0]

        assert stored.changes == payload

    def test_context_resolution_order(self, storage_options):
        accessors = ContextAccessors(
            current_actor=lambda: "accessor-user",
            current_correlation_id=lambda: "accessor-request",
            current_origin_address=lambda: "10.0.0.1",
        )
        store = ObjectAuditStore(storage_options, accessors=accessors)

        with_context = company_audit()
        store.write(with_context, AuditContext(actor=EntityRef("User", 7), correlation_id="ctx-request"))
        from_accessors = company_audit()
        store.write(from_accessors)

        assert with_context.user == EntityRef("User", 7)
        assert with_context.username is None
        assert with_context.correlation_id == "ctx-request"
        assert with_context.origin_address == "10.0.0.1"
        assert from_accessors.username == "accessor-user"
        assert from_accessors.correlation_id == "accessor-request"

    def test_put_failure_is_wrapped(self, storage_options):
        client = MagicMock()
        client.head_object.side_effect = client_error("404", "HeadObject")
        client.put_object.side_effect = client_error("AccessDenied", "PutObject")
        store = ObjectAuditStore(storage_options, client=client)

        with pytest.raises(RepositoryError, match="Failed to write"):
            store.write(company_audit())


class TestRead:
    """Tests for read and exists."""

    def test_missing_key_reads_empty(self, object_store):
        assert object_store.read("test-prefix/auditable_type_audits/company/404.audits") == []
        assert object_store.exists("test-prefix/auditable_type_audits/company/404.audits") is False

    def test_subject_filter(self, object_store):
        parent = EntityRef("Company", 1)
        for employee_id in (1, 2):
            record = AuditRecord(subject_type="Employee", subject_id=employee_id, action="create")
            record.apply({"associated": parent})
            object_store.write(record)
        key = object_store.resolve_key(record)

        only_two = object_store.read(key, EntityRef("Employee", 2))

        assert [r.subject_id for r in only_two] == [2]

    def test_reads_are_idempotent(self, object_store):
        object_store.write(company_audit())
        key = object_store.resolve_key(company_audit())

        assert object_store.read(key) == object_store.read(key)

    def test_malformed_blob_raises(self, object_store):
        key = object_store.resolve_key(company_audit())
        ObjectAuditStore.stub_cache[key] = '{"subject_type": "Company",'

        with pytest.raises(AuditPayloadError):
            object_store.read(key)

    def test_other_backend_errors_propagate(self, storage_options):
        client = MagicMock()
        client.get_object.side_effect = client_error("InternalError")
        store = ObjectAuditStore(storage_options, client=client)

        with pytest.raises(RepositoryError):
            store.read("any-key")

    def test_connection_errors_are_wrapped(self, storage_options):
        client = MagicMock()
        client.head_object.side_effect = EndpointConnectionError(endpoint_url="http://s3.local")
        client.get_object.side_effect = EndpointConnectionError(endpoint_url="http://s3.local")
        store = ObjectAuditStore(storage_options, client=client)

        with pytest.raises(RepositoryError, match="Failed to check"):
            store.exists("any-key")
        with pytest.raises(RepositoryError, match="Failed to read"):
            store.read("any-key")

    def test_non_utf8_blob_raises(self, storage_options):
        client = MagicMock()
        client.get_object.return_value = {"Body": StreamingBody(io.BytesIO(b"\xff\xfe"), 2)}
        store = ObjectAuditStore(storage_options, client=client)

        with pytest.raises(AuditPayloadError, match="not UTF-8"):
            store.read("any-key")

    def test_up_until(self, object_store):
        early = company_audit(created_at=datetime(2020, 1, 1, 12, 0))
        late = company_audit(created_at=datetime(2020, 1, 3, 12, 0))

        result = object_store.up_until([early, late], datetime(2020, 1, 2))

        assert result == [early]


class TestModify:
    """Tests for modify, move and delete."""

    def test_modify_in_place(self, object_store):
        object_store.write(company_audit())
        key = object_store.resolve_key(company_audit())
        stored = object_store.read(key)[0]

        object_store.modify(stored, {"action": "update", "comment": "corrected"})

        refreshed = object_store.read(key)[0]
        assert refreshed.action == "update"
        assert refreshed.comment == "corrected"
        assert refreshed.version == 1

    def test_modify_unknown_record(self, object_store):
        object_store.write(company_audit())

        with pytest.raises(NotFoundError):
            object_store.modify(company_audit(action="destroy", version=9), {"comment": "x"})

    def test_modify_refuses_created_at(self, object_store):
        object_store.write(company_audit())
        stored = object_store.read(object_store.resolve_key(company_audit()))[0]

        with pytest.raises(ValueError):
            object_store.modify(stored, {"created_at": datetime(1999, 1, 1)})

    def test_move_to_associated_location(self, object_store):
        record = AuditRecord(subject_type="Employee", subject_id=1, action="create")
        object_store.write(record)
        old_key = object_store.resolve_key(record)
        stored = object_store.read(old_key)[0]

        object_store.modify(stored, {"associated": EntityRef("Company", 4)})
        new_key = object_store.resolve_key(stored)

        assert old_key not in ObjectAuditStore.stub_cache
        assert object_store.read(old_key) == []
        assert new_key == "test-prefix/associated_type_audits/company/4.audits"
        assert object_store.read(new_key) == [stored]
        assert stored.version == 1

    def test_move_keeps_other_records_in_old_blob(self, object_store):
        object_store.write(AuditRecord(subject_type="Employee", subject_id=1, action="create"))
        object_store.write(AuditRecord(subject_type="Employee", subject_id=1, action="update"))
        old_key = "test-prefix/auditable_type_audits/employee/1.audits"
        first = object_store.read(old_key)[0]

        object_store.modify(first, {"associated": EntityRef("Company", 4)})

        remaining = object_store.read(old_key)
        assert [r.action for r in remaining] == ["update"]

    def test_rejected_move_leaves_record_in_place(self, object_store):
        object_store.write(AuditRecord(subject_type="Employee", subject_id=1, action="create"))
        old_key = "test-prefix/auditable_type_audits/employee/1.audits"
        stored = object_store.read(old_key)[0]

        with pytest.raises(ValueError):
            object_store.modify(stored, {
                "associated": EntityRef("Company", 4),
                "created_at": datetime(1999, 1, 1),
            })

        assert object_store.count() == 1
        assert object_store.read(old_key) == [stored]
        assert stored.associated is None

    def test_failed_move_write_keeps_old_blob(self, object_store):
        object_store.write(AuditRecord(subject_type="Employee", subject_id=1, action="create"))
        old_key = "test-prefix/auditable_type_audits/employee/1.audits"
        stored = object_store.read(old_key)[0]

        with patch.object(object_store, "_put", side_effect=RepositoryError("put failed")):
            with pytest.raises(RepositoryError):
                object_store.modify(stored, {"associated": EntityRef("Company", 4)})

        assert object_store.read(old_key) == [stored]
        assert object_store.associated_audits(EntityRef("Company", 4)) == []

    def test_delete_last_record_removes_blob(self, object_store):
        object_store.write(company_audit())
        key = object_store.resolve_key(company_audit())
        stored = object_store.read(key)[0]

        object_store.delete(stored)

        assert object_store.exists(key) is False

    def test_delete_one_of_many_rewrites_blob(self, object_store):
        object_store.write(company_audit())
        object_store.write(company_audit(action="update"))
        key = object_store.resolve_key(company_audit())
        first = object_store.read(key)[0]

        object_store.delete(first)

        assert [r.version for r in object_store.read(key)] == [2]


class TestCountAndReset:
    """Tests for count and destroy_all in stub mode."""

    def test_count_with_criteria(self, object_store):
        object_store.write(company_audit(1))
        object_store.write(company_audit(1, action="update"))
        object_store.write(company_audit(2))

        assert object_store.count() == 3
        assert object_store.count({"action": "create"}) == 2
        assert object_store.count({"subject": EntityRef("Company", 1)}) == 2

    def test_destroy_all_clears_stub_cache(self, object_store):
        object_store.write(company_audit(1))
        object_store.write(company_audit(2))

        removed = object_store.destroy_all()

        assert removed == 2
        assert ObjectAuditStore.stub_cache == {}
        assert object_store.count() == 0

    def test_destroy_all_refused_on_real_storage(self, storage_options):
        options = replace(storage_options, stub_responses=False)
        store = ObjectAuditStore(options, client=MagicMock())

        with pytest.raises(StorageConfigurationError):
            store.destroy_all()
