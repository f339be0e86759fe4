"""Audit record domain model.

An AuditRecord is one immutable-after-write entry in an audit trail: the
changes made to one subject entity by one action, stamped with a
per-subject version number.
"""
from copy import deepcopy
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

# Athena/Hive friendly, always UTC, no zone suffix
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class AuditAction(str, Enum):
    """Actions recorded by the change-tracking hook.

    Manually created records may carry any other label.
    """
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"


@dataclass(frozen=True)
class EntityRef:
    """Polymorphic reference to an entity: its type name and id."""
    type: str
    id: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.type}#{self.id}"


Actor = Union[EntityRef, str]


def utc_now() -> datetime:
    """Current UTC time, naive, truncated to the stored precision."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def as_utc(value: Union[datetime, str]) -> datetime:
    """Normalize a datetime or stored timestamp string to naive UTC."""
    if isinstance(value, str):
        return datetime.strptime(value, TIMESTAMP_FORMAT)
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def format_timestamp(value: datetime) -> str:
    return as_utc(value).strftime(TIMESTAMP_FORMAT)


def _normalize_changes(changes: Any) -> Any:
    if not isinstance(changes, Mapping):
        return changes
    return {
        name: list(values) if isinstance(values, tuple) else values
        for name, values in changes.items()
    }


@dataclass(eq=False)
class AuditRecord:
    """One audit entry.

    ``changes`` maps attribute name to ``[old, new]``. A create may store
    the bare new value and a destroy the bare old value. A ``changes``
    value that is already a string payload is carried verbatim.

    The actor is either ``user_type``/``user_id`` (an actor entity) or
    ``username`` (a string label), never both; use ``set_actor``.

    Equality is structural over every field except ``id`` (the relational
    row id), with ``created_at`` compared at second precision. The object
    store relies on this to find a record inside a blob.
    """
    subject_type: str
    subject_id: Optional[int] = None
    action: Optional[str] = None
    changes: Any = field(default_factory=dict)
    version: Optional[int] = None
    associated_type: Optional[str] = None
    associated_id: Optional[int] = None
    user_type: Optional[str] = None
    user_id: Optional[int] = None
    username: Optional[str] = None
    comment: Optional[str] = None
    correlation_id: Optional[str] = None
    origin_address: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        if isinstance(self.action, AuditAction):
            self.action = self.action.value
        self.changes = _normalize_changes(self.changes)
        if self.created_at is not None:
            self.created_at = as_utc(self.created_at)

    # Identity ---------------------------------------------------------

    def _identity(self) -> Tuple[Any, ...]:
        created_at = format_timestamp(self.created_at) if self.created_at else None
        return tuple(
            created_at if name == "created_at" else getattr(self, name)
            for name in STRUCTURAL_FIELDS
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AuditRecord):
            return NotImplemented
        return self._identity() == other._identity()

    __hash__ = None

    @property
    def subject(self) -> EntityRef:
        return EntityRef(self.subject_type, self.subject_id)

    @property
    def associated(self) -> Optional[EntityRef]:
        if self.associated_type is None:
            return None
        return EntityRef(self.associated_type, self.associated_id)

    @property
    def user(self) -> Optional[EntityRef]:
        if self.user_type is None:
            return None
        return EntityRef(self.user_type, self.user_id)

    @property
    def actor(self) -> Optional[Actor]:
        """The actor entity reference, or else the string label."""
        return self.user or self.username

    def set_actor(self, actor: Optional[Actor]) -> None:
        self.user_type = self.user_id = self.username = None
        if isinstance(actor, EntityRef):
            self.user_type, self.user_id = actor.type, actor.id
        elif actor is not None:
            self.username = str(actor)

    # Changes ----------------------------------------------------------

    def new_attributes(self) -> Dict[str, Any]:
        """Changed attributes with their new values."""
        if not isinstance(self.changes, Mapping):
            return {}
        return {
            name: values[-1] if isinstance(values, list) else values
            for name, values in self.changes.items()
        }

    def old_attributes(self) -> Dict[str, Any]:
        """Changed attributes with their old values."""
        if not isinstance(self.changes, Mapping):
            return {}
        return {
            name: (values[0] if values else None) if isinstance(values, list) else values
            for name, values in self.changes.items()
        }

    # Mutation ---------------------------------------------------------

    def apply(self, attrs: Mapping[str, Any]) -> None:
        """Assign attributes in place.

        ``subject``, ``associated`` and ``user``/``actor`` accept an
        EntityRef (or None). ``created_at`` can only be set while unset.

        Raises:
            ValueError: On unknown attributes or an attempt to overwrite
                created_at
        """
        for name, value in attrs.items():
            if name == "subject":
                self.subject_type, self.subject_id = value.type, value.id
            elif name == "associated":
                self.associated_type = value.type if value is not None else None
                self.associated_id = value.id if value is not None else None
            elif name in ("user", "actor"):
                self.set_actor(value)
            elif name == "created_at":
                if self.created_at is not None and (value is None or as_utc(value) != self.created_at):
                    raise ValueError("created_at is immutable once set")
                self.created_at = as_utc(value) if value is not None else None
            elif name == "changes":
                self.changes = _normalize_changes(value)
            elif name in FIELD_NAMES:
                setattr(self, name, value.value if isinstance(value, AuditAction) else value)
            else:
                raise ValueError(f"Unknown audit attribute: {name}")

    def changes_associated(self, attrs: Mapping[str, Any]) -> bool:
        """Whether applying attrs would change the associated reference."""
        if "associated" in attrs:
            return attrs["associated"] != self.associated
        return (
            attrs.get("associated_type", self.associated_type) != self.associated_type
            or attrs.get("associated_id", self.associated_id) != self.associated_id
        )

    # Serialization ----------------------------------------------------

    def to_json_dict(self) -> Dict[str, Any]:
        """Document stored in object-storage blobs (no row id)."""
        document = {name: getattr(self, name) for name in STRUCTURAL_FIELDS}
        if self.created_at is not None:
            document["created_at"] = format_timestamp(self.created_at)
        return document

    @classmethod
    def from_json_dict(cls, document: Mapping[str, Any]) -> "AuditRecord":
        values = {name: document[name] for name in STRUCTURAL_FIELDS if name in document}
        if values.get("created_at"):
            values["created_at"] = as_utc(values["created_at"])
        return cls(**values)

    def copy(self) -> "AuditRecord":
        return deepcopy(self)


FIELD_NAMES = tuple(f.name for f in fields(AuditRecord))
STRUCTURAL_FIELDS = tuple(name for name in FIELD_NAMES if name != "id")
