"""
Backup service facade.

Wires the export serializer, validator and importer to one set of
collaborators and applies per-actor cooldowns. Callers (CLI, web handlers)
talk to this class; authentication and transport stay with them.
"""

import logging
import threading
from pathlib import Path
from typing import Iterator, List, Optional

from .archive.codec import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_ARCHIVE_BYTES, ArchiveSource
from .archive.redaction import Redactor
from .config.config_loader import BackupConfig
from .core.asset_store import AssetStore
from .core.audit import AuditSink, StoreAuditSink
from .core.data_store import DataStore
from .core.exceptions import ConfigError
from .core.snapshot_store import SnapshotInfo, SnapshotStore
from .export.serializer import ExportOptions, ExportSerializer, ExportStream
from .importer.importer import ImportOptions, ImportReport, Importer
from .ratelimit import RateLimiter, SqliteRateLimitLedger
from .storage import FileSnapshotStore, LocalAssetStore, create_data_store, get_encryption_key
from .validate.validator import PreviewReport, Validator

logger = logging.getLogger(__name__)


class BackupService:
    """
    Export, validate and import entry point.

    Example:
        >>> service = BackupService.from_config(BackupConfig(Path("config/backup.yaml")))
        >>> stream = service.export(actor_id=admin_id)
        >>> with open("backup.zip", "wb") as f:
        ...     stream.write_to(f)
        >>> preview = service.validate(open("backup.zip", "rb"))
    """

    def __init__(
        self,
        store: DataStore,
        assets: Optional[AssetStore] = None,
        snapshots: Optional[SnapshotStore] = None,
        audit: Optional[AuditSink] = None,
        rate_limiter: Optional[RateLimiter] = None,
        source_instance: str = "familyarchive",
        max_size: int = DEFAULT_MAX_ARCHIVE_BYTES,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compresslevel: int = 6,
        redactor: Optional[Redactor] = None,
    ):
        self.store = store
        self.assets = assets
        self.snapshots = snapshots
        self.rate_limiter = rate_limiter
        self.serializer = ExportSerializer(
            store,
            assets,
            audit=audit,
            source_instance=source_instance,
            chunk_size=chunk_size,
            compresslevel=compresslevel,
            redactor=redactor,
        )
        self.validator = Validator(store, assets, max_size=max_size)
        self.importer = Importer(
            store,
            assets,
            snapshots=snapshots,
            serializer=self.serializer,
            audit=audit,
            max_size=max_size,
        )

    @classmethod
    def from_config(cls, config: BackupConfig) -> "BackupService":
        """
        Build a service and its collaborators from configuration.

        Raises:
            ConfigError: If snapshot encryption is enabled without a key
        """
        db = config.get_database_config()
        backend = str(db.get("backend", "sqlite")).lower()
        if backend == "sqlserver":
            sqlserver = db.get("sqlserver", {})
            store = create_data_store(
                backend="sqlserver",
                connection_string=sqlserver.get("connection_string"),
                host=sqlserver.get("host", "localhost"),
                port=int(sqlserver.get("port", 1433)),
                database=sqlserver.get("database", "FamilyArchive"),
                username=sqlserver.get("user", "sa"),
                password=sqlserver.get("password"),
                driver=sqlserver.get("driver", "ODBC Driver 18 for SQL Server"),
                schema=sqlserver.get("schema", "family"),
            )
        else:
            store = create_data_store(backend="sqlite", db_path=config.get("database.sqlite.path"))

        snap = config.get_snapshot_config()
        key = None
        if snap.get("encrypt"):
            key = get_encryption_key(
                key_source=snap.get("key_source", "env"),
                key_env_var=snap.get("key_env_var", "FAMILYARCHIVE_SNAPSHOT_KEY"),
                key_file_path=snap.get("key_file"),
            )
            if not key:
                raise ConfigError("Snapshot encryption is enabled but no encryption key was found")

        limits = config.get_rate_limit_config()
        rate_limiter = RateLimiter(
            SqliteRateLimitLedger(limits.get("ledger_path", "local/data/rate_limits.db")),
            cooldowns={
                "export": float(limits.get("export_cooldown_seconds", 300)),
                "import": float(limits.get("import_cooldown_seconds", 300)),
            },
        )

        return cls(
            store=store,
            assets=LocalAssetStore(Path(config.get("assets.base_dir", "local/photos"))),
            snapshots=FileSnapshotStore(Path(snap.get("base_dir", "local/snapshots")), encryption_key=key),
            audit=StoreAuditSink(store),
            rate_limiter=rate_limiter,
            source_instance=config.get("instance.name", "familyarchive"),
            max_size=config.get("archive.max_size_bytes", DEFAULT_MAX_ARCHIVE_BYTES),
            chunk_size=config.get("archive.chunk_size", DEFAULT_CHUNK_SIZE),
            compresslevel=config.get("archive.compresslevel", 6),
        )

    def export(self, options: Optional[ExportOptions] = None, actor_id: Optional[str] = None) -> ExportStream:
        """
        Start an export for an actor.

        Raises:
            RateLimitError: If the actor exported too recently
        """
        self._check_rate("export", actor_id)
        stream = self.serializer.export(options, actor_id=actor_id)
        self._record_rate("export", actor_id)
        return stream

    def validate(self, source: ArchiveSource, actor_id: Optional[str] = None) -> PreviewReport:
        """
        Preview an archive against live state.

        Raises:
            FormatError: If the archive is corrupt, unsafe or too large
            VersionError: If the schema version is unsupported
        """
        logger.info(f"Validating archive for {actor_id or 'anonymous'}")
        return self.validator.validate(source)

    def import_archive(
        self,
        source: ArchiveSource,
        options: Optional[ImportOptions] = None,
        actor_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImportReport:
        """
        Apply an archive for an actor.

        Raises:
            RateLimitError: If the actor imported too recently
            FormatError, VersionError, ConcurrencyError, RollbackSnapshotError:
                As raised by Importer.import_archive
        """
        self._check_rate("import", actor_id)
        self._record_rate("import", actor_id)
        return self.importer.import_archive(
            source, options, actor_id=actor_id, cancel_event=cancel_event
        )

    def list_rollback_snapshots(self) -> List[SnapshotInfo]:
        if self.snapshots is None:
            return []
        return self.snapshots.list()

    def open_rollback_snapshot(self, snapshot_id: str) -> Iterator[bytes]:
        """
        Stream a rollback snapshot's archive bytes.

        Raises:
            KeyError: If the snapshot does not exist
        """
        if self.snapshots is None:
            raise KeyError(snapshot_id)
        return self.snapshots.open(snapshot_id)

    def close(self) -> None:
        self.store.close()
        if self.rate_limiter is not None:
            self.rate_limiter.ledger.close()

    def _check_rate(self, action: str, actor_id: Optional[str]) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.check(actor_id, action)

    def _record_rate(self, action: str, actor_id: Optional[str]) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.record(actor_id, action)
