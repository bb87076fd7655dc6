"""
Audit collaborator used to record that an export or import happened.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .data_store import DataStore
from .models import Collection, format_datetime


logger = logging.getLogger(__name__)


class AuditAction:
    """Audit entity types written by the engine."""
    EXPORT = "BACKUP_EXPORT"
    IMPORT = "BACKUP_IMPORT"
    IMPORT_FAILED = "BACKUP_IMPORT_FAILED"


class AuditSink(ABC):
    """Appends audit entries. Content beyond 'an entry exists' is not interpreted."""

    @abstractmethod
    def append(
        self,
        entity_type: str,
        details: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> None:
        pass


class NullAuditSink(AuditSink):
    """Drops audit entries (used when no actor context is available)."""

    def append(self, entity_type, details, actor_id=None) -> None:
        logger.debug(f"Audit entry dropped: {entity_type}")


class StoreAuditSink(AuditSink):
    """
    Writes audit entries into the store's audit_logs collection.

    Entries without an actor are only logged, since the collection
    requires a user id.
    """

    def __init__(self, store: DataStore):
        self.store = store

    def append(
        self,
        entity_type: str,
        details: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> None:
        if not actor_id:
            logger.info(f"Audit: {entity_type} {details}")
            return

        self.store.insert(Collection.AUDIT_LOGS, {
            "id": str(uuid.uuid4()),
            "user_id": actor_id,
            "action": "CREATE",
            "entity_type": entity_type,
            "entity_id": None,
            "previous_data": None,
            "new_data": details,
            "ip_address": None,
            "user_agent": None,
            "created_at": format_datetime(datetime.now(timezone.utc)),
        })
        logger.debug(f"Appended audit entry {entity_type} for {actor_id}")
