"""
Data store interface for the live relational dataset.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .models import Collection


class DataStore(ABC):
    """
    Abstract base class for live data stores.

    Records are plain dicts keyed by the field names of the collection's
    EntitySpec. Implementations must be safe to share between threads.
    """

    def __init__(self):
        self._lock = threading.RLock()

    @property
    @abstractmethod
    def store_id(self) -> str:
        """Stable identifier of the underlying store (used as the import lock key)."""
        pass

    @abstractmethod
    def fetch_all(
        self,
        collection: Collection,
        since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every record of a collection in the collection's export order.

        Args:
            collection: Collection to read
            since: Only return records whose since-field is at or after this
                instant (collections without a since-field ignore it)

        Returns:
            List of records
        """
        pass

    @abstractmethod
    def get_many(self, collection: Collection, ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """
        Fetch records by id.

        Returns:
            Mapping of id to record for the ids that exist
        """
        pass

    def get(self, collection: Collection, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single record by id."""
        return self.get_many(collection, [record_id]).get(record_id)

    def exists(self, collection: Collection, record_id: str) -> bool:
        """Check whether a record with the given id exists."""
        return self.get(collection, record_id) is not None

    def find_by(self, collection: Collection, field_name: str, values: Iterable[Any]) -> List[Dict[str, Any]]:
        """
        Fetch records whose field equals one of the given values.

        The default implementation filters fetch_all().
        """
        wanted = set(values)
        return [r for r in self.fetch_all(collection) if r.get(field_name) in wanted]

    @abstractmethod
    def insert(self, collection: Collection, record: Dict[str, Any]) -> None:
        """
        Insert a new record.

        Raises:
            DataStoreError: If the write fails
        """
        pass

    @abstractmethod
    def update(self, collection: Collection, record_id: str, fields: Dict[str, Any]) -> None:
        """
        Overwrite the given fields of an existing record.

        Raises:
            DataStoreError: If the write fails
        """
        pass

    @abstractmethod
    def count(self, collection: Collection) -> int:
        """Number of records in a collection."""
        pass

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Group writes atomically.

        Commits when the block exits normally and rolls back when it raises.
        """
        pass

    @contextmanager
    def read_view(self) -> Iterator[None]:
        """
        Hold a consistent view of the store across several reads.

        The default implementation excludes concurrent writers of this
        instance for the duration of the block.
        """
        with self._lock:
            yield

    def close(self) -> None:
        """Close any open resources. Optional."""
        pass
