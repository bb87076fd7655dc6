"""
Application of archives to live state.

This module provides:
- Importer: Applies a decoded archive collection by collection
- ImportStrategy: skip / replace / merge treatment of existing records
- MutationLockRegistry: Single-flight lock per target store
"""

from .strategies import ImportStrategy, merge_fields, replace_fields, resolve_update
from .lock import MutationLockRegistry, default_registry
from .importer import (
    CollectionResult,
    ImportOptions,
    ImportReport,
    ImportState,
    Importer,
)

__all__ = [
    "ImportStrategy",
    "merge_fields",
    "replace_fields",
    "resolve_update",
    "MutationLockRegistry",
    "default_registry",
    "CollectionResult",
    "ImportOptions",
    "ImportReport",
    "ImportState",
    "Importer",
]
