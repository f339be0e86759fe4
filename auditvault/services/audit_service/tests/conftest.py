"""Shared fixtures for audit service tests.

Subjects live in plain dicts behind SubjectAdapters; the object store runs
with stub responses so no network is touched.
"""
from dataclasses import dataclass
from datetime import datetime
from itertools import count
from typing import Any, Dict, Mapping, Optional
from unittest.mock import patch

import pytest

from auditvault.shared.models import AuditAction, EntityRef
from auditvault.services.audit_service.audit_trail import AuditTrail
from auditvault.services.audit_service.config import StorageOptions
from auditvault.services.audit_service.object_store import ObjectAuditStore
from auditvault.services.audit_service.revision import SubjectAdapter, SubjectRegistry


@dataclass
class Company:
    id: Optional[int] = None
    name: Optional[str] = None
    owner_id: Optional[int] = None
    version: Optional[int] = None


@dataclass
class Employee:
    id: Optional[int] = None
    name: Optional[str] = None
    company_id: Optional[int] = None
    version: Optional[int] = None


class InMemoryAdapter(SubjectAdapter):
    """Subjects kept in a dict keyed by id."""

    def __init__(self, type_name: str, model: type):
        self.type_name = type_name
        self.model = model
        self.rows: Dict[int, Any] = {}
        self._ids = count(1)

    def find(self, subject_id):
        return self.rows.get(subject_id)

    def build(self, subject_id=None):
        return self.model(id=subject_id)

    def create(self, attrs: Mapping[str, Any]):
        subject = self.assign(self.model(id=next(self._ids)), attrs)
        self.rows[subject.id] = subject
        return subject

    def update(self, subject, attrs: Mapping[str, Any]):
        return self.assign(subject, attrs)

    def destroy(self, subject) -> None:
        self.rows.pop(subject.id, None)


class EmployeeAdapter(InMemoryAdapter):
    """Employees file their audits under their company."""

    def __init__(self):
        super().__init__("Employee", Employee)

    def associated_ref(self, subject):
        if subject.company_id is None:
            return None
        return EntityRef("Company", subject.company_id)


class Tracker:
    """Stands in for the ORM change-tracking hook: mutates and records."""

    def __init__(self, trail: AuditTrail, companies: InMemoryAdapter, employees: EmployeeAdapter):
        self.trail = trail
        self.companies = companies
        self.employees = employees

    def create_company(self, name: str, owner_id: Optional[int] = None) -> Company:
        company = self.companies.create({"name": name, "owner_id": owner_id})
        self.trail.record(
            EntityRef("Company", company.id),
            AuditAction.CREATE,
            {"name": [None, name], "owner_id": [None, owner_id]},
        )
        return company

    def rename_company(self, company: Company, name: str) -> Company:
        old = company.name
        company.name = name
        self.trail.record(
            EntityRef("Company", company.id),
            AuditAction.UPDATE,
            {"name": [old, name], "updated_at": ["t0", "t1"]},
        )
        return company

    def destroy_company(self, company: Company) -> None:
        self.companies.destroy(company)
        self.trail.record(
            EntityRef("Company", company.id),
            AuditAction.DESTROY,
            {"name": [company.name, None], "owner_id": [company.owner_id, None]},
        )

    def create_employee(self, name: str, company: Optional[Company] = None) -> Employee:
        employee = self.employees.create({
            "name": name,
            "company_id": company.id if company else None,
        })
        self.trail.record(
            EntityRef("Employee", employee.id),
            AuditAction.CREATE,
            {"name": [None, name], "company_id": [None, employee.company_id]},
            associated=EntityRef("Company", company.id) if company else None,
        )
        return employee

    def assign_employee(self, employee: Employee, company: Company) -> Employee:
        old = employee.company_id
        employee.company_id = company.id
        self.trail.record(
            EntityRef("Employee", employee.id),
            AuditAction.UPDATE,
            {"company_id": [old, company.id]},
            associated=EntityRef("Company", company.id),
        )
        return employee


@pytest.fixture
def storage_options():
    return StorageOptions(
        bucket="audit-bucket",
        access_key="test-access-key",
        secret_key="test-secret-key",
        key_prefix="test-prefix",
        stub_responses=True,
    )


@pytest.fixture(autouse=True)
def clear_stub_cache():
    ObjectAuditStore.stub_cache.clear()
    yield
    ObjectAuditStore.stub_cache.clear()


@pytest.fixture
def object_store(storage_options):
    return ObjectAuditStore(storage_options)


@pytest.fixture
def companies():
    return InMemoryAdapter("Company", Company)


@pytest.fixture
def employees():
    return EmployeeAdapter()


@pytest.fixture
def registry(companies, employees):
    return SubjectRegistry([companies, employees])


@pytest.fixture
def trail(object_store, registry):
    return AuditTrail(object_store, registry=registry)


@pytest.fixture
def tracker(trail, companies, employees):
    return Tracker(trail, companies, employees)


@pytest.fixture
def clock():
    """Stamp successive writes one day apart, starting 2020-01-01 12:00."""
    times = (datetime(2020, 1, day, 12, 0) for day in range(1, 29))
    with patch(
        "auditvault.services.audit_service.object_store.utc_now",
        side_effect=lambda: next(times),
    ):
        yield
