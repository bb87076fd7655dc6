"""
Importer: apply an archive to live state.

An import runs through these states:

    idle -> rollback_snapshotting (optional) -> applying -> completed | partial | failed

The whole import holds the target store's mutation lock. Collections are
applied in dependency order, each inside one store transaction, so the
store only ever changes a whole collection at a time. A store failure rolls
back the collection in flight and stops the import; the report lists which
collections were applied and which are still pending so the caller can
resume them or restore the rollback snapshot.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..archive.codec import DEFAULT_MAX_ARCHIVE_BYTES, ArchiveSource, ParsedArchive, decode
from ..core.asset_store import AssetStore
from ..core.audit import AuditAction, AuditSink, NullAuditSink
from ..core.canonical import sha256_hex
from ..core.data_store import DataStore
from ..core.exceptions import ReferentialWarning, RollbackSnapshotError
from ..core.models import (
    APPLY_ORDER, Collection, EntitySpec, diff_records, get_spec, unresolved_references,
)
from ..core.snapshot_store import SnapshotInfo, SnapshotStore
from ..export.serializer import MAX_AUDIT_LOG_DAYS, ExportOptions, ExportSerializer
from ..validate.validator import (
    DuplicateIndex, ReferenceResolver, live_counterparts, reference_values,
)
from .lock import MutationLockRegistry, default_registry
from .strategies import ImportStrategy, resolve_update

logger = logging.getLogger(__name__)


class ImportState(str, Enum):
    IDLE = "idle"
    ROLLBACK_SNAPSHOTTING = "rollback_snapshotting"
    APPLYING = "applying"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class ImportOptions:
    """
    How an archive is applied.

    Attributes:
        strategy: Treatment of records whose id already exists live
        create_backup_before_import: Persist a rollback snapshot first
        import_photos: Apply photos from the archive
        import_audit_logs: Apply audit log entries from the archive
        collections: Restrict the import to these collections (used to
            resume from a previous report's pending_collections)
    """
    strategy: ImportStrategy = ImportStrategy.SKIP
    create_backup_before_import: bool = True
    import_photos: bool = True
    import_audit_logs: bool = False
    collections: Optional[Tuple[Collection, ...]] = None

    def __post_init__(self):
        self.strategy = ImportStrategy(self.strategy)
        if self.collections is not None:
            self.collections = tuple(Collection(c) for c in self.collections)

    def planned_collections(self) -> List[Collection]:
        """Collections this import will apply, in apply order."""
        planned = []
        for collection in APPLY_ORDER:
            if collection == Collection.AUDIT_LOGS and not self.import_audit_logs:
                continue
            if self.collections is not None and collection not in self.collections:
                continue
            planned.append(collection)
        return planned


@dataclass
class CollectionResult:
    """Per-collection outcome."""
    collection: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class ImportReport:
    """Outcome of an import."""
    strategy: str
    status: ImportState = ImportState.IDLE
    collections: Dict[str, CollectionResult] = field(default_factory=dict)
    photos_created: int = 0
    photos_updated: int = 0
    photos_skipped: int = 0
    photos_failed: int = 0
    applied_collections: List[str] = field(default_factory=list)
    pending_collections: List[str] = field(default_factory=list)
    rollback_snapshot_id: Optional[str] = None
    reference_warnings: List[ReferentialWarning] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ImportState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "strategy": self.strategy,
            "collections": {name: r.to_dict() for name, r in self.collections.items()},
            "photos": {
                "created": self.photos_created,
                "updated": self.photos_updated,
                "skipped": self.photos_skipped,
                "failed": self.photos_failed,
            },
            "applied_collections": list(self.applied_collections),
            "pending_collections": list(self.pending_collections),
            "rollback_snapshot_id": self.rollback_snapshot_id,
            "reference_warnings": [w.to_dict() for w in self.reference_warnings],
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class Importer:
    """
    Applies archives to a data store under a conflict-resolution strategy.

    Example:
        >>> importer = Importer(store, assets, snapshots=FileSnapshotStore(path))
        >>> report = importer.import_archive(
        ...     open("backup.zip", "rb"),
        ...     ImportOptions(strategy=ImportStrategy.MERGE),
        ...     actor_id=admin_id,
        ... )
        >>> report.status
        <ImportState.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        store: DataStore,
        assets: Optional[AssetStore] = None,
        snapshots: Optional[SnapshotStore] = None,
        serializer: Optional[ExportSerializer] = None,
        audit: Optional[AuditSink] = None,
        locks: Optional[MutationLockRegistry] = None,
        max_size: int = DEFAULT_MAX_ARCHIVE_BYTES,
    ):
        self.store = store
        self.assets = assets
        self.snapshots = snapshots
        self.serializer = serializer or ExportSerializer(store, assets)
        self.audit = audit or NullAuditSink()
        self.locks = locks or default_registry
        self.max_size = max_size
        self._state = ImportState.IDLE

    @property
    def state(self) -> ImportState:
        return self._state

    def import_archive(
        self,
        source: ArchiveSource,
        options: Optional[ImportOptions] = None,
        actor_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImportReport:
        """
        Decode an archive and apply it.

        Args:
            source: Archive bytes, path, binary file object, or chunk iterable
            options: Strategy and flags
            actor_id: Actor performing the import (audit and snapshot metadata)
            cancel_event: Checked before each collection; when set, the import
                stops and reports the remaining collections as pending

        Returns:
            ImportReport (status completed, partial, or failed)

        Raises:
            FormatError: If the archive is corrupt, unsafe or too large
            VersionError: If the schema version is unsupported
            ConcurrencyError: If another import holds the store's lock
            RollbackSnapshotError: If the requested rollback snapshot fails
        """
        options = options or ImportOptions()
        with decode(source, max_size=self.max_size) as parsed:
            return self.apply(parsed, options, actor_id=actor_id, cancel_event=cancel_event)

    def apply(
        self,
        parsed: ParsedArchive,
        options: Optional[ImportOptions] = None,
        actor_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImportReport:
        """Apply an already decoded archive. See import_archive."""
        options = options or ImportOptions()
        with self.locks.hold(self.store.store_id):
            return self._run(parsed, options, actor_id, cancel_event)

    def _run(
        self,
        parsed: ParsedArchive,
        options: ImportOptions,
        actor_id: Optional[str],
        cancel_event: Optional[threading.Event],
    ) -> ImportReport:
        report = ImportReport(
            strategy=options.strategy.value,
            started_at=datetime.now(timezone.utc),
        )
        report.warnings.extend(parsed.warnings)
        planned = options.planned_collections()
        report.pending_collections = [c.value for c in planned]

        logger.info(
            f"Starting import: strategy={options.strategy.value}, "
            f"collections={report.pending_collections}"
        )

        if options.create_backup_before_import:
            self._state = ImportState.ROLLBACK_SNAPSHOTTING
            try:
                info = self._create_rollback_snapshot(actor_id, options)
            except RollbackSnapshotError as e:
                logger.error(f"Import aborted before any change: {e}")
                self._finish(report, ImportState.FAILED)
                report.errors.append(str(e))
                self._record_audit(report, actor_id)
                raise
            report.rollback_snapshot_id = info.snapshot_id

        self._state = ImportState.APPLYING
        failed = False
        for collection in planned:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Import cancelled before {collection.value}")
                report.cancelled = True
                break

            spec = get_spec(collection)
            records = parsed.get_records(collection)
            try:
                self._apply_collection(parsed, spec, records, options, report)
            except Exception as e:
                logger.exception(f"Failed to apply {collection.value}; collection rolled back")
                report.collections[collection.value] = CollectionResult(
                    collection.value, failed=len(records)
                )
                report.errors.append(f"{collection.value}: {e}")
                failed = True
                break

            report.applied_collections.append(collection.value)
            report.pending_collections.remove(collection.value)

            if collection == Collection.PEOPLE and options.import_photos:
                self._apply_photos(parsed, options, report)

        if failed or report.cancelled:
            status = ImportState.PARTIAL if report.applied_collections else ImportState.FAILED
        else:
            status = ImportState.COMPLETED
        self._finish(report, status)
        self._record_audit(report, actor_id)

        logger.info(
            f"Import {status.value}: applied={report.applied_collections}, "
            f"pending={report.pending_collections}"
        )
        return report

    def _finish(self, report: ImportReport, status: ImportState) -> None:
        self._state = status
        report.status = status
        report.finished_at = datetime.now(timezone.utc)

    def _create_rollback_snapshot(self, actor_id: Optional[str], options: ImportOptions) -> SnapshotInfo:
        if self.snapshots is None:
            raise RollbackSnapshotError("No snapshot store configured for rollback snapshots")

        export_options = ExportOptions(
            include_photos=True,
            include_audit_logs=True,
            audit_log_days=MAX_AUDIT_LOG_DAYS,
            redact_secrets=False,
        )
        try:
            stream = self.serializer.export(export_options, actor_id=actor_id, record_audit=False)
            info = self.snapshots.save(
                stream, reason=f"before {options.strategy.value} import"
            )
        except Exception as e:
            raise RollbackSnapshotError(f"Failed to create rollback snapshot: {e}") from e

        if not stream.report.completed:
            raise RollbackSnapshotError("Rollback snapshot stream did not complete")

        logger.info(f"Created rollback snapshot {info.snapshot_id} ({info.size_bytes} bytes)")
        return info

    def _apply_collection(
        self,
        parsed: ParsedArchive,
        spec: EntitySpec,
        records: List[Dict[str, Any]],
        options: ImportOptions,
        report: ImportReport,
    ) -> None:
        name = spec.collection.value
        result = CollectionResult(name)
        if not records:
            report.collections[name] = result
            return

        # Required references must exist live; earlier collections are committed
        live_only = ReferenceResolver(self.store, {})
        anywhere = ReferenceResolver(self.store, {c: parsed.record_ids(c) for c in APPLY_ORDER})
        for ref in spec.references:
            live_only.prefetch(ref.target, reference_values(records, ref.field))

        live = live_counterparts(self.store, spec, records)
        duplicates = DuplicateIndex(
            self.store, spec, [r for r in records if r["id"] not in live]
        )
        warnings: List[str] = []
        reference_warnings: List[ReferentialWarning] = []

        with self.store.transaction():
            for record in records:
                record_id = record["id"]
                missing = unresolved_references(spec, record, live_only)
                dropped = False
                for ref, missing_id in missing:
                    if ref.required:
                        dropped = True
                        reference_warnings.append(
                            ReferentialWarning(name, record_id, ref.field, missing_id)
                        )
                    elif not anywhere(ref.target, missing_id):
                        reference_warnings.append(
                            ReferentialWarning(name, record_id, ref.field, missing_id)
                        )
                if dropped:
                    warnings.append(f"Dropped {name} {record_id}: required reference not found")
                    result.skipped += 1
                    continue

                current = live.get(record_id)
                if current is None:
                    taken = [d for d in duplicates.matches(record) if d.blocks_import]
                    if taken:
                        warnings.append(
                            f"Skipped {name} {record_id}: {taken[0].description} ({taken[0].existing_id})"
                        )
                        result.skipped += 1
                        continue
                    self.store.insert(spec.collection, record)
                    duplicates.claim(record)
                    result.created += 1
                    continue

                if not diff_records(spec, current, record):
                    result.skipped += 1
                    continue

                fields = resolve_update(options.strategy, spec, current, record)
                if fields is None:
                    result.skipped += 1
                else:
                    self.store.update(spec.collection, current["id"], fields)
                    result.updated += 1

        # Only published once the transaction has committed
        report.collections[name] = result
        report.warnings.extend(warnings)
        report.reference_warnings.extend(reference_warnings)
        logger.info(
            f"Applied {name}: created={result.created}, updated={result.updated}, "
            f"skipped={result.skipped}"
        )

    def _apply_photos(self, parsed: ParsedArchive, options: ImportOptions, report: ImportReport) -> None:
        if self.assets is None:
            if parsed.assets:
                report.warnings.append("No asset store configured; photos not imported")
            return

        present = self.store.get_many(
            Collection.PEOPLE, sorted({a.person_id for a in parsed.assets})
        )
        for entry in parsed.assets:
            if entry.person_id not in present:
                report.photos_skipped += 1
                report.warnings.append(f"Skipped photo {entry.entry_name}: person not found")
                continue
            try:
                self._apply_photo(parsed, entry, options.strategy, report)
            except OSError as e:
                logger.warning(f"Failed to import photo {entry.entry_name}: {e}")
                report.photos_failed += 1
                report.warnings.append(f"Failed to import photo {entry.entry_name}: {e}")

        logger.info(
            f"Photos: created={report.photos_created}, updated={report.photos_updated}, "
            f"skipped={report.photos_skipped}, failed={report.photos_failed}"
        )

    def _apply_photo(self, parsed: ParsedArchive, entry, strategy: ImportStrategy, report: ImportReport) -> None:
        exists = self.assets.exists(entry.person_id, entry.filename)
        if exists and strategy != ImportStrategy.REPLACE:
            report.photos_skipped += 1
            return

        data = parsed.read_asset(entry)
        if exists:
            if sha256_hex(self.assets.read(entry.person_id, entry.filename)) == sha256_hex(data):
                report.photos_skipped += 1
                return
            self.assets.write(entry.person_id, entry.filename, data)
            report.photos_updated += 1
        else:
            self.assets.write(entry.person_id, entry.filename, data)
            report.photos_created += 1

    def _record_audit(self, report: ImportReport, actor_id: Optional[str]) -> None:
        action = AuditAction.IMPORT if report.succeeded else AuditAction.IMPORT_FAILED
        try:
            self.audit.append(action, {
                "status": report.status.value,
                "strategy": report.strategy,
                "collections": {n: r.to_dict() for n, r in report.collections.items()},
                "applied_collections": report.applied_collections,
                "pending_collections": report.pending_collections,
                "rollback_snapshot_id": report.rollback_snapshot_id,
                "errors": report.errors,
            }, actor_id=actor_id)
        except Exception as e:
            logger.exception("Failed to record import audit entry")
            report.warnings.append(f"Audit entry not recorded: {e}")
