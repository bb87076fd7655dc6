"""
Core types and collaborator interfaces for the backup/restore engine.
"""

from .models import (
    Collection, FieldKind, FieldSpec, Reference, EntitySpec, FieldDiff,
    ENTITY_SPECS, APPLY_ORDER, get_spec,
)
from .exceptions import (
    BackupError, FormatError, VersionError, ReferentialWarning, AssetIOError,
    ConcurrencyError, RollbackSnapshotError, DataStoreError, RateLimitError,
    ConfigError,
)
from .data_store import DataStore
from .asset_store import AssetStore
from .audit import AuditSink, NullAuditSink, StoreAuditSink, AuditAction
from .snapshot_store import SnapshotStore, SnapshotInfo

__all__ = [
    "Collection",
    "FieldKind",
    "FieldSpec",
    "Reference",
    "EntitySpec",
    "FieldDiff",
    "ENTITY_SPECS",
    "APPLY_ORDER",
    "get_spec",
    "BackupError",
    "FormatError",
    "VersionError",
    "ReferentialWarning",
    "AssetIOError",
    "ConcurrencyError",
    "RollbackSnapshotError",
    "DataStoreError",
    "RateLimitError",
    "ConfigError",
    "DataStore",
    "AssetStore",
    "AuditSink",
    "NullAuditSink",
    "StoreAuditSink",
    "AuditAction",
    "SnapshotStore",
    "SnapshotInfo",
]
