"""
Read-only preview of an archive against live state.
"""

from .validator import (
    DUPLICATE_RULES,
    CollectionPreview,
    ConflictSeverity,
    DuplicateConflict,
    DuplicateIndex,
    DuplicateRule,
    PreviewReport,
    RecordConflict,
    RecordStatus,
    ReferenceResolver,
    Validator,
    live_counterparts,
    reference_values,
)

__all__ = [
    "DUPLICATE_RULES",
    "CollectionPreview",
    "ConflictSeverity",
    "DuplicateConflict",
    "DuplicateIndex",
    "DuplicateRule",
    "PreviewReport",
    "RecordConflict",
    "RecordStatus",
    "ReferenceResolver",
    "Validator",
    "live_counterparts",
    "reference_values",
]
