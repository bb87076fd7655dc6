"""
Single-flight mutation lock.

One lock per target store, keyed by the store's store_id. Acquisition never
waits: a second import against the same store fails immediately.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from ..core.exceptions import ConcurrencyError

logger = logging.getLogger(__name__)


class MutationLockRegistry:
    """Process-wide registry of per-store mutation locks."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def is_locked(self, key: str) -> bool:
        return self._lock_for(key).locked()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """
        Hold the mutation lock of a store for the duration of the block.

        Raises:
            ConcurrencyError: If another import holds the lock
        """
        lock = self._lock_for(key)
        if not lock.acquire(blocking=False):
            raise ConcurrencyError(f"An import is already in progress for store {key}")
        logger.debug(f"Acquired mutation lock for {key}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Released mutation lock for {key}")


# Shared by every Importer in the process
default_registry = MutationLockRegistry()
