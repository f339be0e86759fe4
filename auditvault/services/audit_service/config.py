"""Audit storage configuration and the process-wide storage selector.

The storage mechanism is chosen once (``configure`` or the environment)
and every operation goes through the store built from it.
"""
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from auditvault.shared.database import ConnectionManager, DatabaseConfig, get_connection_manager

from .audit_store import AuditStore
from .context import ContextAccessors
from .errors import StorageConfigurationError

logger = logging.getLogger(__name__)


# Bookkeeping columns that never appear in recorded changes
DEFAULT_IGNORED_ATTRIBUTES: FrozenSet[str] = frozenset({
    "lock_version",
    "created_at",
    "updated_at",
    "created_on",
    "updated_on",
})


class StorageMechanism(Enum):
    """Backends an audit trail can be written to."""
    RELATIONAL = "relational"
    OBJECT_STORE = "object_store"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class StorageOptions:
    """Object-storage backend options.

    ``partition`` buckets subject ids into ranges of 10,000 per key;
    types listed in ``unpartitioned_types`` opt out. ``stub_responses``
    serves every call from an in-memory map instead of S3.
    """
    bucket: Optional[str] = None
    region: str = "us-east-1"
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    key_prefix: str = ""
    unpartitioned_types: Tuple[str, ...] = ()
    partition: bool = False
    stub_responses: bool = False

    def validate(self) -> None:
        """Raise StorageConfigurationError unless bucket and credentials are set."""
        missing = [
            name for name in ("bucket", "access_key", "secret_key")
            if not getattr(self, name)
        ]
        if missing:
            logger.error(
                "STORAGE_OPTIONS_INVALID",
                extra={"missing": missing}
            )
            raise StorageConfigurationError(
                f"Object storage requires {', '.join(missing)} to be present"
            )

    @classmethod
    def from_env(cls) -> "StorageOptions":
        """Create options from environment variables.

        Environment variables:
            AUDIT_S3_BUCKET: Bucket holding the audit blobs
            AUDIT_S3_REGION: Region (defaults to AWS_REGION, then us-east-1)
            AUDIT_S3_ACCESS_KEY / AUDIT_S3_SECRET_KEY: Credentials
            AUDIT_S3_KEY_PREFIX: Prefix for every key
            AUDIT_S3_UNPARTITIONED_TYPES: Comma separated type names
            AUDIT_S3_PARTITION: Enable id-range partitioning
            AUDIT_S3_STUB_RESPONSES: Serve from memory (tests)
        """
        unpartitioned = os.getenv("AUDIT_S3_UNPARTITIONED_TYPES", "")
        return cls(
            bucket=os.getenv("AUDIT_S3_BUCKET"),
            region=os.getenv("AUDIT_S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            access_key=os.getenv("AUDIT_S3_ACCESS_KEY"),
            secret_key=os.getenv("AUDIT_S3_SECRET_KEY"),
            key_prefix=os.getenv("AUDIT_S3_KEY_PREFIX", ""),
            unpartitioned_types=tuple(t.strip() for t in unpartitioned.split(",") if t.strip()),
            partition=_env_flag("AUDIT_S3_PARTITION"),
            stub_responses=_env_flag("AUDIT_S3_STUB_RESPONSES"),
        )


@dataclass(frozen=True)
class AuditConfig:
    """Process-wide audit configuration."""
    storage_mechanism: StorageMechanism = StorageMechanism.RELATIONAL
    storage_options: StorageOptions = field(default_factory=StorageOptions)
    database: Optional[DatabaseConfig] = None
    ignored_attributes: FrozenSet[str] = DEFAULT_IGNORED_ATTRIBUTES

    @classmethod
    def from_env(cls) -> "AuditConfig":
        """Create config from environment variables.

        Environment variables:
            AUDIT_STORAGE_MECHANISM: relational (default) or object_store
            plus those read by StorageOptions.from_env and
            DatabaseConfig.from_env
        """
        raw = os.getenv("AUDIT_STORAGE_MECHANISM", StorageMechanism.RELATIONAL.value)
        try:
            mechanism = StorageMechanism(raw.strip().lower())
        except ValueError:
            raise StorageConfigurationError(f"Unknown storage mechanism: {raw}")

        return cls(
            storage_mechanism=mechanism,
            storage_options=StorageOptions.from_env(),
            database=DatabaseConfig.from_env(),
        )


def build_audit_store(
    config: AuditConfig,
    accessors: Optional[ContextAccessors] = None,
    connection_manager: Optional[ConnectionManager] = None,
) -> AuditStore:
    """Build the store selected by ``config``.

    Without an explicit ``connection_manager`` the relational store uses
    the process-wide one, so repeated builds share one connection pool.

    Raises:
        StorageConfigurationError: If the selected backend is misconfigured
    """
    if config.storage_mechanism is StorageMechanism.OBJECT_STORE:
        from .object_store import ObjectAuditStore
        store: AuditStore = ObjectAuditStore(config.storage_options, accessors=accessors)
    else:
        from .relational_store import RelationalAuditStore
        manager = connection_manager or get_connection_manager(config.database)
        store = RelationalAuditStore(manager, accessors=accessors)

    logger.info(
        "AUDIT_STORE_SELECTED",
        extra={
            "storage_mechanism": config.storage_mechanism.value,
            "store": type(store).__name__,
        }
    )
    return store


_config: Optional[AuditConfig] = None
_accessors: Optional[ContextAccessors] = None
_store: Optional[AuditStore] = None


def configure(
    config: AuditConfig,
    accessors: Optional[ContextAccessors] = None,
) -> None:
    """Set the process-wide configuration; the store is rebuilt on next use."""
    global _config, _accessors, _store

    _config = config
    _accessors = accessors
    _store = None


def get_config() -> AuditConfig:
    """Get the process-wide configuration, reading the environment if unset."""
    global _config

    if _config is None:
        _config = AuditConfig.from_env()

    return _config


def get_audit_store() -> AuditStore:
    """Get or build the process-wide audit store."""
    global _store

    if _store is None:
        _store = build_audit_store(get_config(), accessors=_accessors)

    return _store


def reset() -> None:
    """Forget the process-wide configuration and store."""
    global _config, _accessors, _store

    _config = None
    _accessors = None
    _store = None
