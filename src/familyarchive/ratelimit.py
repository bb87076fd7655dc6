"""
Per-actor cooldowns for export and import requests.

The last time each actor performed each action is kept in a persisted
ledger, so cooldowns survive restarts and are shared by every process
pointing at the same ledger. Only the service facade consults it; the
engine itself keeps no rate-limit state.
"""

import logging
import math
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .core.exceptions import RateLimitError
from .core.models import format_datetime, parse_datetime

logger = logging.getLogger(__name__)

# Seconds between two requests of the same action by the same actor
DEFAULT_COOLDOWNS: Dict[str, float] = {
    "export": 300.0,
    "import": 300.0,
}


class RateLimitLedger(ABC):
    """Persisted last-action timestamps keyed by (actor, action)."""

    @abstractmethod
    def get_last(self, actor_id: str, action: str) -> Optional[datetime]:
        pass

    @abstractmethod
    def record(self, actor_id: str, action: str, at: datetime) -> None:
        pass

    def close(self) -> None:
        pass


class SqliteRateLimitLedger(RateLimitLedger):
    """Ledger stored in a SQLite table."""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS rate_limits (
                actor_id TEXT NOT NULL,
                action TEXT NOT NULL,
                last_at TEXT NOT NULL,
                PRIMARY KEY (actor_id, action)
            )
        """)
        self.conn.commit()

    def get_last(self, actor_id: str, action: str) -> Optional[datetime]:
        with self._lock:
            row = self.conn.execute(
                "SELECT last_at FROM rate_limits WHERE actor_id = ? AND action = ?",
                (actor_id, action),
            ).fetchone()
        return parse_datetime(row[0]) if row else None

    def record(self, actor_id: str, action: str, at: datetime) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO rate_limits (actor_id, action, last_at) VALUES (?, ?, ?)
                ON CONFLICT (actor_id, action) DO UPDATE SET last_at = excluded.last_at
                """,
                (actor_id, action, format_datetime(at)),
            )
            self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()


class RateLimiter:
    """
    Enforces per-actor cooldowns against a ledger.

    Actions without a configured cooldown (or with a cooldown of 0) are
    never limited.
    """

    def __init__(
        self,
        ledger: RateLimitLedger,
        cooldowns: Optional[Dict[str, float]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.cooldowns = dict(DEFAULT_COOLDOWNS if cooldowns is None else cooldowns)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def check(self, actor_id: Optional[str], action: str) -> None:
        """
        Raise if the actor's cooldown for this action has not elapsed.

        Raises:
            RateLimitError: With the remaining seconds in retry_after_seconds
        """
        cooldown = self.cooldowns.get(action, 0)
        if not actor_id or cooldown <= 0:
            return
        last = self.ledger.get_last(actor_id, action)
        if last is None:
            return
        elapsed = (self.clock() - last).total_seconds()
        if elapsed < cooldown:
            remaining = cooldown - elapsed
            logger.info(f"Rate limited {action} for {actor_id}: {remaining:.0f}s remaining")
            raise RateLimitError(
                f"Please wait {math.ceil(remaining)} seconds before another {action}",
                retry_after_seconds=remaining,
            )

    def record(self, actor_id: Optional[str], action: str) -> None:
        if actor_id and self.cooldowns.get(action, 0) > 0:
            self.ledger.record(actor_id, action, self.clock())
