"""
Export serializer: live state to a streaming archive.

Reads every requested collection inside one consistent read view of the
data store, then emits the archive lazily through the archive encoder.
Photos are read one at a time while the stream is being consumed; a photo
that cannot be read is counted and skipped, never fatal.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import unquote, urlsplit

from ..archive.codec import DEFAULT_CHUNK_SIZE, ArchiveEncoder, photo_entry_name
from ..archive.manifest import ArchiveManifest
from ..archive.redaction import Redactor
from ..core.asset_store import AssetStore
from ..core.audit import AuditAction, AuditSink, NullAuditSink
from ..core.data_store import DataStore
from ..core.exceptions import FormatError
from ..core.models import Collection, get_spec

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_LOG_DAYS = 90
MIN_AUDIT_LOG_DAYS = 1
MAX_AUDIT_LOG_DAYS = 365

# Order of data files inside the archive
EXPORT_ORDER = (
    Collection.PEOPLE,
    Collection.RELATIONSHIPS,
    Collection.USERS,
    Collection.SUGGESTIONS,
    Collection.SETTINGS,
    Collection.AUDIT_LOGS,
)


def photo_filename(photo_url: Optional[str]) -> Optional[str]:
    """Original filename of a photo: the last path segment of its URL."""
    if not photo_url:
        return None
    path = unquote(urlsplit(photo_url).path)
    name = path.rstrip("/").rsplit("/", 1)[-1]
    return name or None


@dataclass
class ExportOptions:
    """
    What an export includes.

    redact_secrets scrubs secret-looking values inside JSON fields. Such an
    archive no longer restores those values, so backups leave it off.

    Raises:
        ValueError: If audit_log_days is outside 1..365
    """
    include_photos: bool = True
    include_audit_logs: bool = True
    audit_log_days: int = DEFAULT_AUDIT_LOG_DAYS
    redact_secrets: bool = False

    def __post_init__(self):
        if not MIN_AUDIT_LOG_DAYS <= int(self.audit_log_days) <= MAX_AUDIT_LOG_DAYS:
            raise ValueError(
                f"audit_log_days must be between {MIN_AUDIT_LOG_DAYS} and "
                f"{MAX_AUDIT_LOG_DAYS}, got {self.audit_log_days}"
            )
        self.audit_log_days = int(self.audit_log_days)


@dataclass
class ExportSnapshot:
    """Records of every exported collection, read from one view of the store."""
    records: Dict[Collection, List[Dict[str, Any]]]
    gathered_at: datetime
    audit_since: Optional[datetime] = None

    def count(self, collection: Collection) -> int:
        return len(self.records.get(collection, []))


@dataclass
class ExportReport:
    """Outcome of an export; complete once the stream has been drained."""
    counts: Dict[str, int] = field(default_factory=dict)
    photos_exported: int = 0
    photos_skipped: int = 0
    bytes_written: int = 0
    completed: bool = False
    skipped_photos: List[str] = field(default_factory=list)
    manifest: Optional[ArchiveManifest] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": dict(self.counts),
            "photos_exported": self.photos_exported,
            "photos_skipped": self.photos_skipped,
            "bytes_written": self.bytes_written,
            "completed": self.completed,
            "skipped_photos": list(self.skipped_photos),
        }


class ExportStream:
    """
    Single-use iterable of archive byte chunks.

    The producer only runs while the consumer pulls; `report` fills in as
    the stream advances and is final once iteration is exhausted.
    """

    def __init__(self, chunks: Iterator[bytes], report: ExportReport):
        self._chunks = chunks
        self.report = report

    def __iter__(self) -> Iterator[bytes]:
        return self._chunks

    def write_to(self, fileobj) -> int:
        """Drain the stream into a binary file object; returns bytes written."""
        total = 0
        for chunk in self._chunks:
            fileobj.write(chunk)
            total += len(chunk)
        return total

    def read_all(self) -> bytes:
        """Drain the stream into memory (small archives and tests only)."""
        return b"".join(self._chunks)

    def close(self) -> None:
        """Stop producing; an unfinished archive is discarded."""
        close = getattr(self._chunks, "close", None)
        if close is not None:
            close()


class ExportSerializer:
    """
    Produces archives from the live data store and asset store.

    Example:
        >>> serializer = ExportSerializer(store, assets, source_instance="prod")
        >>> stream = serializer.export(ExportOptions(include_photos=False))
        >>> with open("backup.zip", "wb") as f:
        ...     stream.write_to(f)
        >>> stream.report.completed
        True
    """

    def __init__(
        self,
        store: DataStore,
        assets: Optional[AssetStore] = None,
        audit: Optional[AuditSink] = None,
        source_instance: str = "familyarchive",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compresslevel: int = 6,
        redactor: Optional[Redactor] = None,
    ):
        self.store = store
        self.assets = assets
        self.audit = audit or NullAuditSink()
        self.source_instance = source_instance
        self.chunk_size = chunk_size
        self.compresslevel = compresslevel
        self.redactor = redactor or Redactor()

    def gather(self, options: Optional[ExportOptions] = None) -> ExportSnapshot:
        """Read every requested collection inside one read view."""
        options = options or ExportOptions()
        now = datetime.now(timezone.utc)
        audit_since = None
        records: Dict[Collection, List[Dict[str, Any]]] = {}

        with self.store.read_view():
            for collection in EXPORT_ORDER:
                if collection == Collection.AUDIT_LOGS:
                    if not options.include_audit_logs:
                        continue
                    audit_since = now - timedelta(days=options.audit_log_days)
                    records[collection] = self.store.fetch_all(collection, since=audit_since)
                else:
                    records[collection] = self.store.fetch_all(collection)

        logger.debug(
            "Gathered export snapshot: "
            + ", ".join(f"{c.value}={len(r)}" for c, r in records.items())
        )
        return ExportSnapshot(records=records, gathered_at=now, audit_since=audit_since)

    def export(
        self,
        options: Optional[ExportOptions] = None,
        actor_id: Optional[str] = None,
        record_audit: bool = True,
    ) -> ExportStream:
        """
        Start an export.

        Records are read immediately; archive bytes are produced as the
        returned stream is iterated.

        Args:
            options: What to include
            actor_id: Actor requesting the export (stamped in the manifest)
            record_audit: Append the export audit entry on completion

        Returns:
            ExportStream whose report is final once drained
        """
        options = options or ExportOptions()
        snapshot = self.gather(options)
        report = ExportReport(counts={
            collection.value: snapshot.count(collection) for collection in snapshot.records
        })
        chunks = self._generate(snapshot, options, report, actor_id, record_audit)
        return ExportStream(chunks, report)

    def _generate(
        self,
        snapshot: ExportSnapshot,
        options: ExportOptions,
        report: ExportReport,
        actor_id: Optional[str],
        record_audit: bool,
    ) -> Iterator[bytes]:
        encoder = ArchiveEncoder(chunk_size=self.chunk_size, compresslevel=self.compresslevel)
        data_files: List[str] = []
        photo_dirs = set()

        try:
            for collection in EXPORT_ORDER:
                if collection not in snapshot.records:
                    continue
                spec = get_spec(collection)
                records = [
                    self.redactor.redact_record(spec, r, scrub_secrets=options.redact_secrets)
                    for r in snapshot.records[collection]
                ]
                if spec.singleton:
                    payload: Any = records[0] if records else {}
                else:
                    payload = records
                yield from encoder.add_json(spec.data_file, payload)
                data_files.append(spec.data_file)

            if options.include_photos:
                for person in snapshot.records.get(Collection.PEOPLE, []):
                    entry = yield from self._export_photo(encoder, person, report)
                    if entry:
                        photo_dirs.add(f"photos/{person['id']}")

            counts = dict(report.counts)
            counts["photos"] = report.photos_exported
            manifest = ArchiveManifest.create(
                counts=counts,
                source_instance=self.source_instance,
                exported_by=actor_id,
                audit_log_days=options.audit_log_days if options.include_audit_logs else None,
                skipped_assets=report.photos_skipped,
                data_files=data_files,
                photo_directories=sorted(photo_dirs),
                checksums=dict(encoder.checksums),
            )
            yield from encoder.finish(manifest)
        except BaseException:
            encoder.abort()
            raise

        report.bytes_written = encoder.bytes_written
        report.manifest = manifest
        report.completed = True
        logger.info(
            f"Export complete: {report.bytes_written} bytes, "
            f"{report.photos_exported} photos, {report.photos_skipped} skipped"
        )

        if record_audit:
            self.audit.append(AuditAction.EXPORT, {
                "counts": counts,
                "photos_skipped": report.photos_skipped,
                "bytes": report.bytes_written,
                "include_photos": options.include_photos,
                "include_audit_logs": options.include_audit_logs,
                "audit_log_days": options.audit_log_days,
                "redact_secrets": options.redact_secrets,
            }, actor_id=actor_id)

    def _export_photo(self, encoder: ArchiveEncoder, person: Dict[str, Any], report: ExportReport):
        """Archive one person's photo; returns the entry name or None."""
        filename = photo_filename(person.get("photo_url"))
        if not filename or self.assets is None:
            return None

        person_id = person["id"]
        try:
            name = photo_entry_name(person_id, filename)
        except FormatError as e:
            logger.warning(f"Skipping photo with unsafe name for person {person_id}: {e}")
            report.photos_skipped += 1
            report.skipped_photos.append(f"{person_id}/{filename}")
            return None

        try:
            data = self.assets.read(person_id, filename)
        except OSError as e:
            logger.warning(f"Skipping unreadable photo {name}: {e}")
            report.photos_skipped += 1
            report.skipped_photos.append(f"{person_id}/{filename}")
            return None

        yield from encoder.add_bytes(name, data)
        report.photos_exported += 1
        return name
