"""
Archive manifest handling.

The manifest is the archive's metadata header: schema version, export
timestamp, per-collection counts, the producing instance, and checksums of
every other entry. It is written as the last zip entry so that counts and
checksums describe what was actually streamed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.models import parse_datetime

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
SCHEMA_VERSION = "1.0.0"
SUPPORTED_VERSIONS = ["1.0.0"]


@dataclass(frozen=True)
class ArchiveManifest:
    """
    Immutable archive metadata.

    Attributes:
        schema_version: Archive format version
        exported_at: When the export was produced (UTC)
        counts: Record count per collection, plus "photos"
        source_instance: Identifier of the producing installation
        exported_by: Actor id that requested the export, if known
        audit_log_days: Audit log window used, None when not included
        skipped_assets: Number of photos that could not be read during export
        data_files: Data file entries present in the archive
        photo_directories: photos/<personId> directories present
        checksums: SHA256 per entry name (manifest itself excluded)
    """
    schema_version: str
    exported_at: datetime
    counts: Dict[str, int]
    source_instance: str
    exported_by: Optional[str] = None
    audit_log_days: Optional[int] = None
    skipped_assets: int = 0
    data_files: List[str] = field(default_factory=list)
    photo_directories: List[str] = field(default_factory=list)
    checksums: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the on-disk (camelCase) representation."""
        return {
            "schemaVersion": self.schema_version,
            "exportedAt": self.exported_at.isoformat() if self.exported_at else None,
            "counts": dict(self.counts),
            "sourceInstance": self.source_instance,
            "exportedBy": self.exported_by,
            "auditLogDays": self.audit_log_days,
            "skippedAssets": self.skipped_assets,
            "dataFiles": list(self.data_files),
            "photoDirectories": list(self.photo_directories),
            "checksums": dict(self.checksums),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchiveManifest":
        """
        Create from the on-disk representation.

        Raises:
            ValueError: If required keys are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError("manifest must be a JSON object")

        version = data.get("schemaVersion")
        if not isinstance(version, str) or not version:
            raise ValueError("Missing schemaVersion in manifest")

        exported_at = parse_datetime(data.get("exportedAt"))
        if exported_at is None:
            raise ValueError("Missing exportedAt in manifest")

        counts = data.get("counts")
        if not isinstance(counts, dict):
            raise ValueError("Missing counts in manifest")

        checksums = data.get("checksums") or {}
        if not isinstance(checksums, dict):
            raise ValueError("checksums must be an object")

        return cls(
            schema_version=version,
            exported_at=exported_at,
            counts={str(k): int(v) for k, v in counts.items()},
            source_instance=str(data.get("sourceInstance") or ""),
            exported_by=data.get("exportedBy"),
            audit_log_days=data.get("auditLogDays"),
            skipped_assets=int(data.get("skippedAssets") or 0),
            data_files=list(data.get("dataFiles") or []),
            photo_directories=list(data.get("photoDirectories") or []),
            checksums={str(k): str(v) for k, v in checksums.items()},
        )

    @classmethod
    def create(
        cls,
        counts: Dict[str, int],
        source_instance: str,
        **kwargs
    ) -> "ArchiveManifest":
        """Create a manifest for the current schema version, stamped now."""
        return cls(
            schema_version=SCHEMA_VERSION,
            exported_at=datetime.now(timezone.utc),
            counts=counts,
            source_instance=source_instance,
            **kwargs,
        )

    def is_supported(self) -> bool:
        return self.schema_version in SUPPORTED_VERSIONS
