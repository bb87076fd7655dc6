"""
Custom exceptions for the backup/restore engine.
"""

from typing import List, Optional


class BackupError(Exception):
    """Base exception for all backup/restore errors."""
    pass


class FormatError(BackupError):
    """
    Archive is corrupt, unreadable or unsafe.

    Raised when:
    - The container is not a valid zip archive
    - manifest.json is missing or cannot be parsed
    - A data file has the wrong JSON shape
    - An entry name would escape the extraction root
    - The observed or declared size exceeds the configured ceiling
    - A checksum listed in the manifest does not match the entry
    """

    def __init__(self, message: str, entry: Optional[str] = None):
        super().__init__(message)
        self.entry = entry


class VersionError(BackupError):
    """Archive declares a schema version this engine cannot read."""

    def __init__(self, version: str, supported: List[str]):
        super().__init__(
            f"Unsupported backup version: {version}. "
            f"Supported versions: {', '.join(supported)}"
        )
        self.version = version
        self.supported = list(supported)


class ReferentialWarning(UserWarning):
    """
    A record references an id found in neither the archive nor live state.

    Recorded on reports, never raised.
    """

    def __init__(self, collection: str, record_id: str, field: str, missing_id: str):
        super().__init__(
            f"{collection} {record_id}: {field} references missing id {missing_id}"
        )
        self.collection = collection
        self.record_id = record_id
        self.field = field
        self.missing_id = missing_id

    def to_dict(self) -> dict:
        return {
            "collection": self.collection,
            "record_id": self.record_id,
            "field": self.field,
            "missing_id": self.missing_id,
        }


class AssetIOError(OSError):
    """A single binary asset could not be read or written."""

    def __init__(self, message: str, person_id: str = None, filename: str = None):
        super().__init__(message)
        self.person_id = person_id
        self.filename = filename


class ConcurrencyError(BackupError):
    """An import is already running against the target store."""
    pass


class RollbackSnapshotError(BackupError):
    """The safety snapshot requested before an import could not be created."""
    pass


class DataStoreError(BackupError):
    """A read or write against the live data store failed."""
    pass


class RateLimitError(BackupError):
    """An actor repeated an export/import before its cooldown elapsed."""

    def __init__(self, message: str, retry_after_seconds: float = 0.0):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ConfigError(BackupError):
    """Configuration file is missing, invalid, or out of range."""
    pass
