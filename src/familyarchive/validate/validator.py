"""
Preview engine: classify an untrusted archive against live state.

Validation never mutates the data store or the asset store. Every record
in the archive is classified as new, identical or conflicting by comparing
it with the live record of the same id through the collection's field
table. New records are also matched against live records on natural keys
such as email, and matches are reported as severity-tagged duplicates.
The resulting PreviewReport serializes deterministically, so two
validations of the same archive against unchanged state are byte-identical.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..archive.codec import DEFAULT_MAX_ARCHIVE_BYTES, ArchiveSource, ParsedArchive, decode
from ..core.asset_store import AssetStore
from ..core.canonical import canonicalize, sha256_hex
from ..core.data_store import DataStore
from ..core.exceptions import ReferentialWarning
from ..core.models import (
    APPLY_ORDER, Collection, EntitySpec, FieldDiff, diff_records, get_spec,
    normalize_record, unresolved_references,
)

logger = logging.getLogger(__name__)


class RecordStatus(str, Enum):
    NEW = "new"
    IDENTICAL = "identical"
    CONFLICTING = "conflicting"


@dataclass
class CollectionPreview:
    """Classification counts for one collection (or for photos)."""
    collection: str
    new: int = 0
    identical: int = 0
    conflicting: int = 0

    @property
    def total(self) -> int:
        return self.new + self.identical + self.conflicting

    def add(self, status: RecordStatus) -> None:
        if status == RecordStatus.NEW:
            self.new += 1
        elif status == RecordStatus.IDENTICAL:
            self.identical += 1
        else:
            self.conflicting += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new": self.new,
            "identical": self.identical,
            "conflicting": self.conflicting,
            "total": self.total,
        }


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Severity of a same-id conflict; collections not listed are medium
ID_CONFLICT_SEVERITY = {
    Collection.USERS: ConflictSeverity.HIGH,
}


@dataclass
class RecordConflict:
    """A record present on both sides with differing fields."""
    collection: str
    record_id: str
    diffs: List[FieldDiff] = field(default_factory=list)
    severity: ConflictSeverity = ConflictSeverity.MEDIUM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "record_id": self.record_id,
            "severity": self.severity.value,
            "diffs": [d.to_dict() for d in self.diffs],
        }


@dataclass(frozen=True)
class DuplicateRule:
    """
    A non-id key under which a new record may already exist live.

    Attributes:
        collection: Collection the rule applies to
        fields: Key fields; a record with any of them empty has no key
        severity: Severity reported for a match
        unique: Live state may hold only one record per key, so the
            importer skips a new record whose key is taken
        description: Message template filled from the archived record
    """
    collection: Collection
    fields: Tuple[str, ...]
    severity: ConflictSeverity
    unique: bool
    description: str

    def key(self, record: Dict[str, Any]) -> Optional[Tuple[Any, ...]]:
        values = tuple(record.get(f) for f in self.fields)
        if any(v in (None, "") for v in values):
            return None
        return values


DUPLICATE_RULES: Dict[Collection, Tuple[DuplicateRule, ...]] = {
    Collection.USERS: (
        DuplicateRule(
            Collection.USERS, ("email",), ConflictSeverity.HIGH, True,
            "User with email {email} already exists",
        ),
    ),
    Collection.PEOPLE: (
        DuplicateRule(
            Collection.PEOPLE, ("email",), ConflictSeverity.HIGH, False,
            "Person with email {email} already exists",
        ),
        DuplicateRule(
            Collection.PEOPLE, ("first_name", "last_name", "date_of_birth"), ConflictSeverity.LOW, False,
            "Potential duplicate person: {first_name} {last_name}",
        ),
    ),
    Collection.RELATIONSHIPS: (
        DuplicateRule(
            Collection.RELATIONSHIPS, ("person_id", "related_person_id", "type"), ConflictSeverity.MEDIUM, True,
            "Duplicate relationship between {person_id} and {related_person_id}",
        ),
    ),
}


@dataclass
class DuplicateConflict:
    """A new record whose non-id key matches a different live record."""
    collection: str
    record_id: str
    existing_id: str
    fields: Tuple[str, ...]
    severity: ConflictSeverity
    description: str
    blocks_import: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "record_id": self.record_id,
            "existing_id": self.existing_id,
            "fields": list(self.fields),
            "severity": self.severity.value,
            "description": self.description,
            "blocks_import": self.blocks_import,
        }


class DuplicateIndex:
    """
    Live records of one collection indexed by its duplicate-detection keys.

    Only keys carried by the given archived records are looked up. claim()
    registers a record applied during the same pass, so two archived
    records sharing a unique key are caught as well.
    """

    def __init__(self, store: DataStore, spec: EntitySpec, records: List[Dict[str, Any]]):
        self.spec = spec
        self.rules = DUPLICATE_RULES.get(spec.collection, ())
        self._taken: Dict[DuplicateRule, Dict[Tuple[Any, ...], str]] = {}

        for rule in self.rules:
            keys = {rule.key(r) for r in records} - {None}
            index: Dict[Tuple[Any, ...], str] = {}
            if keys:
                candidates = store.find_by(spec.collection, rule.fields[0], {k[0] for k in keys})
                for raw in sorted(candidates, key=lambda r: str(r["id"])):
                    live, _ = normalize_record(spec, raw)
                    key = rule.key(live)
                    if key in keys:
                        index.setdefault(key, live["id"])
            self._taken[rule] = index

    def matches(self, record: Dict[str, Any]) -> List[DuplicateConflict]:
        found = []
        for rule in self.rules:
            key = rule.key(record)
            existing_id = self._taken[rule].get(key) if key else None
            if existing_id is None or existing_id == record["id"]:
                continue
            found.append(DuplicateConflict(
                collection=self.spec.collection.value,
                record_id=record["id"],
                existing_id=existing_id,
                fields=rule.fields,
                severity=rule.severity,
                description=rule.description.format(**{f: record.get(f) for f in rule.fields}),
                blocks_import=rule.unique,
            ))
        return found

    def claim(self, record: Dict[str, Any]) -> None:
        for rule in self.rules:
            key = rule.key(record)
            if rule.unique and key:
                self._taken[rule].setdefault(key, record["id"])


@dataclass
class PreviewReport:
    """
    Read-only classification of an archive against live state.

    Attributes:
        schema_version: Archive schema version
        exported_at: Archive export timestamp (ISO-8601)
        source_instance: Installation that produced the archive
        collections: Per-collection classification counts
        photos: Photo classification counts
        conflicts: Field-level diffs of conflicting records
        duplicates: New records whose email or natural key matches a
            different live record
        reference_warnings: Dangling references, attached to their record
        warnings: Archive-level warnings (count mismatches, ignored entries)
        errors: Reasons the archive cannot be used; empty for a decodable archive
        statuses: Classification of every record, keyed by collection then id
    """
    schema_version: Optional[str] = None
    exported_at: Optional[str] = None
    source_instance: Optional[str] = None
    collections: Dict[str, CollectionPreview] = field(default_factory=dict)
    photos: CollectionPreview = field(default_factory=lambda: CollectionPreview("photos"))
    conflicts: List[RecordConflict] = field(default_factory=list)
    duplicates: List[DuplicateConflict] = field(default_factory=list)
    reference_warnings: List[ReferentialWarning] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    statuses: Dict[str, Dict[str, RecordStatus]] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts or self.duplicates) or self.photos.conflicting > 0

    def conflict_summary(self) -> Dict[str, Any]:
        """Record and duplicate conflicts counted per collection and per severity."""
        by_type: Dict[str, int] = defaultdict(int)
        by_severity: Dict[str, int] = defaultdict(int)
        for conflict in list(self.conflicts) + list(self.duplicates):
            by_type[conflict.collection] += 1
            by_severity[conflict.severity.value] += 1
        return {
            "total": len(self.conflicts) + len(self.duplicates),
            "by_type": dict(by_type),
            "by_severity": dict(by_severity),
        }

    @classmethod
    def invalid(cls, *errors: str) -> "PreviewReport":
        """Report for an archive that could not be decoded."""
        return cls(errors=list(errors))

    def status_of(self, collection: Collection, record_id: str) -> Optional[RecordStatus]:
        return self.statuses.get(Collection(collection).value, {}).get(record_id)

    def warnings_for(self, collection: Collection, record_id: str) -> List[ReferentialWarning]:
        collection = Collection(collection).value
        return [
            w for w in self.reference_warnings
            if w.collection == collection and w.record_id == record_id
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.is_valid,
            "schema_version": self.schema_version,
            "exported_at": self.exported_at,
            "source_instance": self.source_instance,
            "collections": {name: c.to_dict() for name, c in self.collections.items()},
            "photos": self.photos.to_dict(),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "duplicates": [d.to_dict() for d in self.duplicates],
            "conflict_summary": self.conflict_summary(),
            "reference_warnings": [w.to_dict() for w in self.reference_warnings],
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }

    def to_json(self) -> str:
        """Canonical JSON; identical inputs always give identical text."""
        return canonicalize(self.to_dict())


def live_counterparts(
    store: DataStore,
    spec: EntitySpec,
    records: List[Dict[str, Any]],
) -> Dict[str, Dict[str, Any]]:
    """
    Find the live record matching each archived record.

    Records match by id. The singleton settings record also matches the
    live settings row when its id differs.

    Returns:
        Mapping of archived id to the live record, normalized to the field table
    """
    if not records:
        return {}

    ids = [r["id"] for r in records]
    live = store.get_many(spec.collection, ids)

    if spec.singleton and not live:
        existing = store.fetch_all(spec.collection)
        if existing:
            live = {records[0]["id"]: existing[0]}

    result = {}
    for record_id, raw in live.items():
        normalized, _ = normalize_record(spec, raw)
        result[record_id] = normalized
    return result


class ReferenceResolver:
    """
    Answers "does this id exist" from the archive first, then live state.

    Live lookups are batched per target collection and cached.
    """

    def __init__(self, store: DataStore, archive_ids: Dict[Collection, Set[str]]):
        self.store = store
        self.archive_ids = archive_ids
        self._live: Dict[Collection, Set[str]] = defaultdict(set)
        self._checked: Dict[Collection, Set[str]] = defaultdict(set)

    def prefetch(self, target: Collection, ids: Iterable[str]) -> None:
        pending = {
            i for i in ids
            if i not in self.archive_ids.get(target, set()) and i not in self._checked[target]
        }
        if not pending:
            return
        found = self.store.get_many(target, sorted(pending))
        self._live[target].update(found.keys())
        self._checked[target].update(pending)

    def __call__(self, target: Collection, record_id: str) -> bool:
        if record_id in self.archive_ids.get(target, set()):
            return True
        if record_id not in self._checked[target]:
            self.prefetch(target, [record_id])
        return record_id in self._live[target]


class Validator:
    """
    Classifies archives against live state without mutating anything.

    Example:
        >>> validator = Validator(store, assets)
        >>> report = validator.validate(open("backup.zip", "rb"))
        >>> report.collections["people"].conflicting
        1
    """

    def __init__(
        self,
        store: DataStore,
        assets: Optional[AssetStore] = None,
        max_size: int = DEFAULT_MAX_ARCHIVE_BYTES,
    ):
        self.store = store
        self.assets = assets
        self.max_size = max_size

    def validate(self, source: ArchiveSource) -> PreviewReport:
        """
        Decode and classify an archive.

        Raises:
            FormatError: If the archive is corrupt, unsafe or too large
            VersionError: If the schema version is unsupported
        """
        with decode(source, max_size=self.max_size) as parsed:
            return self.classify(parsed)

    def classify(self, parsed: ParsedArchive) -> PreviewReport:
        """Classify an already decoded archive."""
        manifest = parsed.manifest
        report = PreviewReport(
            schema_version=manifest.schema_version,
            exported_at=manifest.exported_at.isoformat(),
            source_instance=manifest.source_instance,
            warnings=list(parsed.warnings),
        )

        archive_ids = {c: parsed.record_ids(c) for c in APPLY_ORDER}
        resolver = ReferenceResolver(self.store, archive_ids)

        with self.store.read_view():
            for collection in APPLY_ORDER:
                spec = get_spec(collection)
                self._classify_collection(spec, parsed.get_records(collection), resolver, report)

        self._classify_photos(parsed, report)

        report.reference_warnings.sort(
            key=lambda w: (w.collection, w.record_id, w.field, w.missing_id)
        )
        report.duplicates.sort(key=lambda d: (d.collection, d.record_id, d.fields))
        logger.info(
            "Preview: "
            + ", ".join(
                f"{name} {c.new}/{c.identical}/{c.conflicting}"
                for name, c in report.collections.items()
            )
            + f", {len(report.duplicates)} duplicates"
            + f", {len(report.reference_warnings)} reference warnings"
        )
        return report

    def _classify_collection(
        self,
        spec: EntitySpec,
        records: List[Dict[str, Any]],
        resolver: ReferenceResolver,
        report: PreviewReport,
    ) -> None:
        name = spec.collection.value
        summary = CollectionPreview(name)
        statuses: Dict[str, RecordStatus] = {}
        live = live_counterparts(self.store, spec, records)
        duplicates = DuplicateIndex(
            self.store, spec, [r for r in records if r["id"] not in live]
        )

        for ref in spec.references:
            resolver.prefetch(ref.target, reference_values(records, ref.field))

        for record in sorted(records, key=lambda r: r["id"]):
            record_id = record["id"]
            current = live.get(record_id)
            if current is None:
                status = RecordStatus.NEW
                report.duplicates.extend(duplicates.matches(record))
                duplicates.claim(record)
            else:
                diffs = diff_records(spec, current, record)
                if diffs:
                    status = RecordStatus.CONFLICTING
                    severity = ID_CONFLICT_SEVERITY.get(spec.collection, ConflictSeverity.MEDIUM)
                    report.conflicts.append(RecordConflict(name, record_id, diffs, severity))
                else:
                    status = RecordStatus.IDENTICAL
            summary.add(status)
            statuses[record_id] = status

            for ref, missing_id in unresolved_references(spec, record, resolver):
                report.reference_warnings.append(
                    ReferentialWarning(name, record_id, ref.field, missing_id)
                )

        report.collections[name] = summary
        report.statuses[name] = statuses

    def _classify_photos(self, parsed: ParsedArchive, report: PreviewReport) -> None:
        statuses: Dict[str, RecordStatus] = {}
        for entry in parsed.assets:
            status = RecordStatus.NEW
            if self.assets is not None and self.assets.exists(entry.person_id, entry.filename):
                status = self._compare_photo(parsed, entry, report)
            report.photos.add(status)
            statuses[entry.entry_name] = status
        report.statuses["photos"] = statuses

    def _compare_photo(self, parsed: ParsedArchive, entry, report: PreviewReport) -> RecordStatus:
        try:
            live_hash = sha256_hex(self.assets.read(entry.person_id, entry.filename))
            archive_hash = sha256_hex(parsed.read_asset(entry))
        except OSError as e:
            report.warnings.append(f"Could not compare photo {entry.entry_name}: {e}")
            return RecordStatus.CONFLICTING
        if live_hash == archive_hash:
            return RecordStatus.IDENTICAL
        return RecordStatus.CONFLICTING


def reference_values(records: Iterable[Dict[str, Any]], field_name: str) -> List[str]:
    """Non-empty values of a reference field, as strings."""
    return [str(r[field_name]) for r in records if r.get(field_name) not in (None, "")]
