"""
Archive codec: streaming zip encoding and guarded decoding.

Encoding writes into a non-seekable sink and hands the produced bytes out
as a lazy sequence of chunks, so the whole archive is never held in
memory. Decoding treats its input as untrusted: the stream is spooled to
a temporary file with a running size check, every entry name is checked
against path traversal, and every entry is verified against the checksum
recorded in the manifest.
"""

import hashlib
import json
import logging
import tempfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Dict, Iterable, Iterator, List, Optional, Set, Union

from ..core.canonical import sha256_hex
from ..core.exceptions import AssetIOError, FormatError, VersionError
from ..core.models import (
    APPLY_ORDER, ENTITY_SPECS, Collection, EntitySpec, normalize_record,
)
from .manifest import MANIFEST_NAME, SUPPORTED_VERSIONS, ArchiveManifest

logger = logging.getLogger(__name__)

PHOTOS_DIR = "photos"
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_ARCHIVE_BYTES = 100 * 1024 * 1024
# Spool in memory up to this size before rolling over to disk
SPOOL_MEMORY_LIMIT = 8 * 1024 * 1024
# Raised by zipfile while inflating a damaged, encrypted or unsupported entry
ENTRY_READ_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    OSError,
    EOFError,
    RuntimeError,
    NotImplementedError,
)
# Required data files; audit-logs.json is optional
REQUIRED_COLLECTIONS = (
    Collection.PEOPLE,
    Collection.RELATIONSHIPS,
    Collection.USERS,
    Collection.SUGGESTIONS,
    Collection.SETTINGS,
)

ArchiveSource = Union[bytes, bytearray, str, Path, BinaryIO, Iterable[bytes]]


# ============================================================================
# Entry name guards
# ============================================================================

def check_entry_name(name: str) -> PurePosixPath:
    """
    Validate a zip entry name and return it as a relative POSIX path.

    Raises:
        FormatError: If the name is empty, absolute, contains backslashes,
            NUL bytes, drive letters, or '.'/'..' components
    """
    if not name or "\x00" in name:
        raise FormatError(f"Invalid entry name: {name!r}", entry=name)
    if "\\" in name:
        raise FormatError(f"Entry name contains a backslash: {name!r}", entry=name)
    if name.startswith("/"):
        raise FormatError(f"Entry name is absolute: {name!r}", entry=name)

    for part in name.rstrip("/").split("/"):
        if part in ("", "..", "."):
            raise FormatError(f"Entry name escapes the archive root: {name!r}", entry=name)
        if len(part) >= 2 and part[1] == ":":
            raise FormatError(f"Entry name contains a drive letter: {name!r}", entry=name)
    return PurePosixPath(name)


def photo_entry_name(person_id: str, filename: str) -> str:
    """Build and validate the archive path of a person's photo."""
    name = f"{PHOTOS_DIR}/{person_id}/{filename}"
    path = check_entry_name(name)
    if len(path.parts) != 3:
        raise FormatError(f"Photo path must be photos/<personId>/<filename>: {name!r}", entry=name)
    return name


def resolve_under(root: Path, *parts: str) -> Path:
    """
    Join parts below root and refuse results that escape it.

    Raises:
        FormatError: If the resolved path is outside root
    """
    root = Path(root).resolve()
    target = root.joinpath(*parts).resolve()
    if target != root and root not in target.parents:
        raise FormatError(f"Path escapes extraction root: {'/'.join(parts)}")
    return target


# ============================================================================
# Encoding
# ============================================================================

class _ChunkSink:
    """
    Write-only, non-seekable file object for zipfile.

    Providing tell() but no seek() makes zipfile stream entries with data
    descriptors instead of seeking back to patch local headers.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._offset = 0

    def write(self, data) -> int:
        self._buffer.extend(data)
        self._offset += len(data)
        return len(data)

    def tell(self) -> int:
        return self._offset

    def flush(self) -> None:
        pass

    def pending(self) -> int:
        return len(self._buffer)

    def take(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    def keep(self, data: bytes) -> None:
        # Return unsent bytes to the buffer without advancing the offset
        self._buffer.extend(data)


class ArchiveEncoder:
    """
    Incremental zip writer producing byte chunks.

    Every add_* method and finish() is a generator: nothing is written
    until the caller pulls from it, and the caller is suspended between
    chunks. Output is buffered one chunk at a time, but add_json serializes
    its whole object and add_bytes holds its whole payload before
    compressing, so peak memory follows the largest single entry (usually
    the biggest collection or photo) rather than the total archive size.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, compresslevel: int = 6):
        self.chunk_size = chunk_size
        self._sink = _ChunkSink()
        self._zip = zipfile.ZipFile(
            self._sink,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=compresslevel,
        )
        self._names: Set[str] = set()
        self.checksums: Dict[str, str] = {}
        self.closed = False

    @property
    def bytes_written(self) -> int:
        return self._sink.tell()

    def add_json(self, name: str, obj: Any) -> Iterator[bytes]:
        data = json.dumps(obj, indent=2, ensure_ascii=False).encode("utf-8")
        yield from self.add_bytes(name, data)

    def add_bytes(self, name: str, data: bytes, record_checksum: bool = True) -> Iterator[bytes]:
        """
        Write one entry.

        Yields:
            Output chunks as they become available
        """
        check_entry_name(name)
        if name in self._names:
            raise FormatError(f"Duplicate archive entry: {name}", entry=name)
        self._names.add(name)

        if record_checksum:
            self.checksums[name] = sha256_hex(data)

        with self._zip.open(name, "w") as dest:
            for offset in range(0, len(data), self.chunk_size):
                dest.write(data[offset:offset + self.chunk_size])
                yield from self._drain(partial=True)
        yield from self._drain(partial=True)

    def finish(self, manifest: ArchiveManifest) -> Iterator[bytes]:
        """Write the manifest, the central directory, and flush everything."""
        yield from self.add_bytes(
            MANIFEST_NAME,
            json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False).encode("utf-8"),
            record_checksum=False,
        )
        self._zip.close()
        self.closed = True
        yield from self._drain(partial=False)

    def abort(self) -> None:
        """Drop the writer without producing a valid archive."""
        if not self.closed:
            self.closed = True
            self._sink.take()

    def _drain(self, partial: bool) -> Iterator[bytes]:
        # Emit whole chunks; a short tail waits for more output unless finishing
        if partial and self._sink.pending() < self.chunk_size:
            return
        data = self._sink.take()
        end = len(data)
        if partial:
            end -= len(data) % self.chunk_size
            self._sink.keep(data[end:])
        for offset in range(0, end, self.chunk_size):
            yield data[offset:offset + self.chunk_size]


# ============================================================================
# Decoding
# ============================================================================

@dataclass(frozen=True)
class AssetEntry:
    """A photo found in an archive."""
    person_id: str
    filename: str
    entry_name: str
    size: int


def iter_source(source: ArchiveSource, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Turn bytes, a path, a binary file object, or a chunk iterable into chunks."""
    if isinstance(source, (bytes, bytearray)):
        yield bytes(source)
        return

    if isinstance(source, (str, Path)):
        with open(source, "rb") as f:
            yield from iter(lambda: f.read(chunk_size), b"")
        return

    if hasattr(source, "read"):
        yield from iter(lambda: source.read(chunk_size), b"")
        return

    for chunk in source:
        yield bytes(chunk)


def _spool(source: ArchiveSource, max_size: int) -> "tempfile.SpooledTemporaryFile":
    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MEMORY_LIMIT)
    total = 0
    try:
        for chunk in iter_source(source):
            total += len(chunk)
            if total > max_size:
                raise FormatError(
                    f"Backup file exceeds the maximum size of {max_size} bytes"
                )
            spool.write(chunk)
    except BaseException:
        spool.close()
        raise

    if total == 0:
        spool.close()
        raise FormatError("Backup file is empty")

    spool.seek(0)
    return spool


class ParsedArchive:
    """
    Decoded archive: manifest, normalized records, and lazily readable photos.

    Use as a context manager, or call close(), to release the spooled data.
    """

    def __init__(
        self,
        spool,
        zip_file: zipfile.ZipFile,
        manifest: ArchiveManifest,
        records: Dict[Collection, List[Dict[str, Any]]],
        assets: List[AssetEntry],
        warnings: List[str],
        size_bytes: int,
    ):
        self._spool = spool
        self._zip = zip_file
        self.manifest = manifest
        self.records = records
        self.assets = assets
        self.warnings = warnings
        self.size_bytes = size_bytes

    def __enter__(self) -> "ParsedArchive":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None
        if self._spool is not None:
            self._spool.close()
            self._spool = None

    def get_records(self, collection: Collection) -> List[Dict[str, Any]]:
        return self.records.get(Collection(collection), [])

    def record_ids(self, collection: Collection) -> Set[str]:
        return {r["id"] for r in self.get_records(collection)}

    def read_asset(self, entry: AssetEntry) -> bytes:
        """
        Read a photo's bytes.

        Raises:
            AssetIOError: If the entry cannot be read back
        """
        if self._zip is None:
            raise AssetIOError("Archive is closed", entry.person_id, entry.filename)
        try:
            return self._zip.read(entry.entry_name)
        except (KeyError,) + ENTRY_READ_ERRORS as e:
            raise AssetIOError(
                f"Failed to read {entry.entry_name}: {e}", entry.person_id, entry.filename
            )


def decode(
    source: ArchiveSource,
    max_size: int = DEFAULT_MAX_ARCHIVE_BYTES,
    max_expanded_size: Optional[int] = None,
) -> ParsedArchive:
    """
    Decode an untrusted archive.

    Args:
        source: Archive bytes, path, binary file object, or chunk iterable
        max_size: Ceiling on the archive's observed size in bytes
        max_expanded_size: Ceiling on the declared uncompressed size of all
            entries (defaults to four times max_size)

    Returns:
        ParsedArchive (caller must close it)

    Raises:
        FormatError: If the archive is corrupt, unsafe, or too large
        VersionError: If the schema version is unsupported
    """
    if max_expanded_size is None:
        max_expanded_size = max_size * 4

    spool = _spool(source, max_size)
    size_bytes = _spool_size(spool)

    try:
        try:
            zf = zipfile.ZipFile(spool, "r")
        except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
            raise FormatError(f"Backup file is not a valid zip archive: {e}")

        try:
            archive = _decode_zip(zf, spool, size_bytes, max_expanded_size)
        except BaseException:
            zf.close()
            raise
    except BaseException:
        spool.close()
        raise

    logger.info(
        f"Decoded archive v{archive.manifest.schema_version} "
        f"({size_bytes} bytes, {len(archive.assets)} photos)"
    )
    return archive


def _spool_size(spool) -> int:
    spool.seek(0, 2)
    size = spool.tell()
    spool.seek(0)
    return size


def _decode_zip(
    zf: zipfile.ZipFile,
    spool,
    size_bytes: int,
    max_expanded_size: int,
) -> ParsedArchive:
    warnings: List[str] = []
    infos = zf.infolist()

    names: Set[str] = set()
    declared_total = 0
    for info in infos:
        check_entry_name(info.filename)
        if info.filename in names:
            raise FormatError(f"Duplicate archive entry: {info.filename}", entry=info.filename)
        names.add(info.filename)
        declared_total += info.file_size

    if declared_total > max_expanded_size:
        raise FormatError(
            f"Archive expands to {declared_total} bytes, above the limit of {max_expanded_size}"
        )

    manifest = _read_manifest(zf, names)
    _verify_checksums(zf, manifest, names, warnings)

    records: Dict[Collection, List[Dict[str, Any]]] = {}
    for collection in APPLY_ORDER:
        spec = ENTITY_SPECS[collection]
        records[collection] = _read_collection(zf, spec, names, manifest, warnings)

    assets = _collect_assets(infos, warnings)

    known = {MANIFEST_NAME} | {spec.data_file for spec in ENTITY_SPECS.values()}
    for name in sorted(names):
        if name not in known and not name.startswith(f"{PHOTOS_DIR}/"):
            warnings.append(f"Ignoring unexpected archive entry: {name}")

    _check_counts(manifest, records, assets, warnings)

    return ParsedArchive(
        spool=spool,
        zip_file=zf,
        manifest=manifest,
        records=records,
        assets=assets,
        warnings=warnings,
        size_bytes=size_bytes,
    )


def _read_manifest(zf: zipfile.ZipFile, names: Set[str]) -> ArchiveManifest:
    if MANIFEST_NAME not in names:
        raise FormatError("Missing manifest.json file", entry=MANIFEST_NAME)

    try:
        data = json.loads(zf.read(MANIFEST_NAME).decode("utf-8"))
        manifest = ArchiveManifest.from_dict(data)
    except (ValueError, TypeError) + ENTRY_READ_ERRORS as e:
        raise FormatError(f"Invalid metadata format in manifest.json: {e}", entry=MANIFEST_NAME)

    if not manifest.is_supported():
        raise VersionError(manifest.schema_version, SUPPORTED_VERSIONS)

    for data_file in manifest.data_files:
        if data_file not in names:
            raise FormatError(f"Missing required data file: {data_file}", entry=data_file)

    return manifest


def _verify_checksums(
    zf: zipfile.ZipFile,
    manifest: ArchiveManifest,
    names: Set[str],
    warnings: List[str],
) -> None:
    if not manifest.checksums:
        warnings.append("Manifest carries no checksums; entry integrity not verified")
        return

    for name in sorted(names):
        if name == MANIFEST_NAME or name.endswith("/"):
            continue
        expected = manifest.checksums.get(name)
        if expected is None:
            raise FormatError(f"Entry not listed in manifest checksums: {name}", entry=name)
        if _hash_entry(zf, name) != expected:
            raise FormatError(f"Checksum mismatch for {name}", entry=name)

    for name in manifest.checksums:
        if name not in names:
            raise FormatError(f"Entry listed in manifest is missing: {name}", entry=name)


def _hash_entry(zf: zipfile.ZipFile, name: str) -> str:
    digest = hashlib.sha256()
    try:
        with zf.open(name, "r") as f:
            for block in iter(lambda: f.read(DEFAULT_CHUNK_SIZE), b""):
                digest.update(block)
    except ENTRY_READ_ERRORS as e:
        raise FormatError(f"Corrupt archive entry {name}: {e}", entry=name)
    return digest.hexdigest()


def _read_collection(
    zf: zipfile.ZipFile,
    spec: EntitySpec,
    names: Set[str],
    manifest: ArchiveManifest,
    warnings: List[str],
) -> List[Dict[str, Any]]:
    if spec.data_file not in names:
        if spec.collection in REQUIRED_COLLECTIONS:
            warnings.append(f"Archive has no {spec.data_file}; treating as empty")
        return []

    try:
        data = json.loads(zf.read(spec.data_file).decode("utf-8"))
    except ValueError as e:
        raise FormatError(f"Invalid JSON in {spec.data_file}: {e}", entry=spec.data_file)
    except ENTRY_READ_ERRORS as e:
        raise FormatError(f"Corrupt archive entry {spec.data_file}: {e}", entry=spec.data_file)

    if spec.singleton:
        if not isinstance(data, dict):
            raise FormatError("Settings data must be an object", entry=spec.data_file)
        raw_records = [data] if data else []
    else:
        if not isinstance(data, list):
            raise FormatError(f"{spec.data_file} must be an array", entry=spec.data_file)
        raw_records = data

    records = []
    seen: Set[str] = set()
    unknown_fields: Set[str] = set()
    for raw in raw_records:
        try:
            record, unknown = normalize_record(spec, raw)
        except ValueError as e:
            raise FormatError(f"Invalid record in {spec.data_file}: {e}", entry=spec.data_file)
        if record["id"] in seen:
            raise FormatError(
                f"Duplicate id {record['id']} in {spec.data_file}", entry=spec.data_file
            )
        seen.add(record["id"])
        unknown_fields.update(unknown)
        records.append(record)

    if unknown_fields:
        warnings.append(
            f"Ignoring unknown fields in {spec.data_file}: {', '.join(sorted(unknown_fields))}"
        )
    return records


def _collect_assets(infos: List[zipfile.ZipInfo], warnings: List[str]) -> List[AssetEntry]:
    assets = []
    for info in infos:
        name = info.filename
        if not name.startswith(f"{PHOTOS_DIR}/") or name.endswith("/"):
            continue
        parts = PurePosixPath(name).parts
        if len(parts) != 3:
            raise FormatError(
                f"Photo path must be photos/<personId>/<filename>: {name!r}", entry=name
            )
        assets.append(AssetEntry(
            person_id=parts[1],
            filename=parts[2],
            entry_name=name,
            size=info.file_size,
        ))
    assets.sort(key=lambda a: a.entry_name)
    return assets


def _check_counts(
    manifest: ArchiveManifest,
    records: Dict[Collection, List[Dict[str, Any]]],
    assets: List[AssetEntry],
    warnings: List[str],
) -> None:
    for collection, items in records.items():
        declared = manifest.counts.get(collection.value)
        if declared is not None and declared != len(items):
            warnings.append(
                f"Manifest declares {declared} {collection.value} but archive holds {len(items)}"
            )

    declared_photos = manifest.counts.get("photos", 0)
    if declared_photos and declared_photos != len(assets):
        warnings.append(
            f"Expected {declared_photos} photos but found {len(assets)} photo files"
        )
