"""
Snapshot store interface for persisted rollback snapshots.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional


@dataclass
class SnapshotInfo:
    """Metadata of a persisted rollback snapshot."""
    snapshot_id: str
    created_at: datetime
    size_bytes: int
    encrypted: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "size_bytes": self.size_bytes,
            "encrypted": self.encrypted,
            "reason": self.reason,
        }


class SnapshotStore(ABC):
    """Persists archives produced immediately before an import."""

    @abstractmethod
    def save(self, chunks: Iterable[bytes], reason: Optional[str] = None) -> SnapshotInfo:
        """
        Persist an archive stream.

        Returns:
            Info of the stored snapshot

        Raises:
            OSError: If the snapshot cannot be written
        """
        pass

    @abstractmethod
    def open(self, snapshot_id: str, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        """
        Stream a stored snapshot's archive bytes.

        Raises:
            KeyError: If no snapshot with this id exists
        """
        pass

    @abstractmethod
    def list(self) -> List[SnapshotInfo]:
        """List stored snapshots, newest first."""
        pass
