"""
Family Archive backup/restore engine.

Produces portable, streaming archives of a family tree's relational data
and photos, previews untrusted archives against live state, and applies
them back under a chosen conflict-resolution strategy with an optional
rollback snapshot.
"""

__version__ = "0.1.0"

from .archive import ArchiveManifest, decode
from .core.exceptions import (
    BackupError,
    ConcurrencyError,
    FormatError,
    ReferentialWarning,
    RollbackSnapshotError,
    VersionError,
)
from .export import ExportOptions, ExportSerializer
from .importer import ImportOptions, ImportStrategy, Importer
from .service import BackupService
from .validate import PreviewReport, Validator

__all__ = [
    "ArchiveManifest",
    "decode",
    "BackupError",
    "ConcurrencyError",
    "FormatError",
    "ReferentialWarning",
    "RollbackSnapshotError",
    "VersionError",
    "ExportOptions",
    "ExportSerializer",
    "ImportOptions",
    "ImportStrategy",
    "Importer",
    "BackupService",
    "PreviewReport",
    "Validator",
]
