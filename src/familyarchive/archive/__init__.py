"""
Archive codec for the portable backup container.

This module provides:
- ArchiveManifest: Immutable archive metadata header
- ArchiveEncoder: Streaming zip writer yielding byte chunks
- decode: Guarded decoding of untrusted archives into a ParsedArchive
- Redactor: Credential scrubbing applied before records are archived
"""

from .manifest import ArchiveManifest, MANIFEST_NAME, SCHEMA_VERSION, SUPPORTED_VERSIONS
from .codec import (
    ArchiveEncoder,
    ParsedArchive,
    AssetEntry,
    decode,
    iter_source,
    check_entry_name,
    photo_entry_name,
    resolve_under,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MAX_ARCHIVE_BYTES,
)
from .redaction import Redactor

__all__ = [
    "ArchiveManifest",
    "MANIFEST_NAME",
    "SCHEMA_VERSION",
    "SUPPORTED_VERSIONS",
    "ArchiveEncoder",
    "ParsedArchive",
    "AssetEntry",
    "decode",
    "iter_source",
    "check_entry_name",
    "photo_entry_name",
    "resolve_under",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_MAX_ARCHIVE_BYTES",
    "Redactor",
]
