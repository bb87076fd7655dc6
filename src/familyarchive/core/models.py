"""
Entity field tables for the backup/restore engine.

Every collection carried by an archive is described by an explicit
EntitySpec: the fields it exports, the kind of each field, and the
comparator used to decide whether a live record and an archived record
are identical. A field missing from the table is never exported,
compared or imported.
"""

import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .canonical import canonicalize


class Collection(str, Enum):
    """Entity collections carried by an archive."""
    PEOPLE = "people"
    RELATIONSHIPS = "relationships"
    USERS = "users"
    SUGGESTIONS = "suggestions"
    SETTINGS = "settings"
    AUDIT_LOGS = "audit_logs"


class FieldKind(str, Enum):
    """Storage/comparison kind of a record field."""
    TEXT = "text"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    JSON = "json"


# ============================================================================
# Value normalization
# ============================================================================

def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a datetime: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime in the archive's canonical ISO-8601 UTC form."""
    if value is None:
        return None
    return parse_datetime(value).isoformat()


def normalize_value(kind: FieldKind, value: Any) -> Any:
    """
    Normalize a raw field value to its archive representation.

    Raises:
        ValueError: If the value cannot be represented as the given kind
    """
    if value is None:
        return None

    if kind == FieldKind.TEXT:
        if isinstance(value, (dict, list)):
            raise ValueError(f"Expected text, got {type(value).__name__}")
        return str(value)

    if kind == FieldKind.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str) and value.lower() in ("true", "false", "1", "0"):
            return value.lower() in ("true", "1")
        raise ValueError(f"Expected boolean, got {value!r}")

    if kind == FieldKind.DATETIME:
        return format_datetime(parse_datetime(value))

    if kind == FieldKind.JSON:
        return value

    raise ValueError(f"Unknown field kind: {kind}")


def is_empty(value: Any) -> bool:
    """True for values that merge treats as 'not entered'."""
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, (list, dict)) and len(value) == 0:
        return True
    return False


# ============================================================================
# Comparators
# ============================================================================

def text_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return unicodedata.normalize("NFC", str(a)) == unicodedata.normalize("NFC", str(b))


def bool_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return bool(a) == bool(b)


def datetime_equal(a: Any, b: Any) -> bool:
    # Compare instants, not spellings ("Z" vs "+00:00")
    return parse_datetime(a) == parse_datetime(b)


def json_equal(a: Any, b: Any) -> bool:
    return canonicalize(a) == canonicalize(b)


Comparator = Callable[[Any, Any], bool]

_DEFAULT_COMPARATORS: Dict[FieldKind, Comparator] = {
    FieldKind.TEXT: text_equal,
    FieldKind.BOOLEAN: bool_equal,
    FieldKind.DATETIME: datetime_equal,
    FieldKind.JSON: json_equal,
}


# ============================================================================
# Field tables
# ============================================================================

@dataclass(frozen=True)
class FieldSpec:
    """
    A single exported field.

    Attributes:
        name: Field name in archive records and store columns
        kind: Value kind used for normalization and storage
        comparator: Equality test used by conflict classification
    """
    name: str
    kind: FieldKind = FieldKind.TEXT
    comparator: Optional[Comparator] = None

    def equal(self, a: Any, b: Any) -> bool:
        comparator = self.comparator or _DEFAULT_COMPARATORS[self.kind]
        return comparator(a, b)


@dataclass(frozen=True)
class Reference:
    """
    A field holding the id of a record in another collection.

    When `required` is set, a non-null value that cannot be resolved makes
    the record unimportable; otherwise it only produces a warning.
    """
    field: str
    target: Collection
    required: bool = False


@dataclass(frozen=True)
class EntitySpec:
    """Explicit description of one collection."""
    collection: Collection
    table: str
    data_file: str
    fields: Tuple[FieldSpec, ...]
    order_by: Tuple[str, ...] = ("id",)
    references: Tuple[Reference, ...] = ()
    store_only: Tuple[FieldSpec, ...] = ()
    since_field: Optional[str] = None
    singleton: bool = False

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def data_fields(self) -> Tuple[FieldSpec, ...]:
        """Fields other than the id."""
        return tuple(f for f in self.fields if f.name != "id")

    def get_field(self, name: str) -> Optional[FieldSpec]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


def _f(name: str, kind: FieldKind = FieldKind.TEXT) -> FieldSpec:
    return FieldSpec(name=name, kind=kind)


_TEXT = FieldKind.TEXT
_BOOL = FieldKind.BOOLEAN
_DT = FieldKind.DATETIME
_JSON = FieldKind.JSON


PEOPLE_SPEC = EntitySpec(
    collection=Collection.PEOPLE,
    table="people",
    data_file="data/people.json",
    fields=(
        _f("id"),
        _f("first_name"),
        _f("last_name"),
        _f("maiden_name"),
        _f("date_of_birth", _DT),
        _f("date_of_passing", _DT),
        _f("birth_place"),
        _f("native_place"),
        _f("gender"),
        _f("photo_url"),
        _f("bio"),
        _f("email"),
        _f("phone"),
        _f("current_address", _JSON),
        _f("work_address", _JSON),
        _f("profession"),
        _f("employer"),
        _f("social_links", _JSON),
        _f("is_living", _BOOL),
        _f("created_at", _DT),
        _f("updated_at", _DT),
        _f("created_by_id"),
    ),
    order_by=("last_name", "first_name", "id"),
    references=(Reference("created_by_id", Collection.USERS),),
)

RELATIONSHIPS_SPEC = EntitySpec(
    collection=Collection.RELATIONSHIPS,
    table="relationships",
    data_file="data/relationships.json",
    fields=(
        _f("id"),
        _f("person_id"),
        _f("related_person_id"),
        _f("type"),
        _f("marriage_date", _DT),
        _f("divorce_date", _DT),
        _f("is_active", _BOOL),
        _f("created_at", _DT),
        _f("updated_at", _DT),
    ),
    order_by=("created_at", "id"),
    references=(
        Reference("person_id", Collection.PEOPLE, required=True),
        Reference("related_person_id", Collection.PEOPLE, required=True),
    ),
)

USERS_SPEC = EntitySpec(
    collection=Collection.USERS,
    table="users",
    data_file="data/users.json",
    fields=(
        _f("id"),
        _f("email"),
        _f("name"),
        _f("person_id"),
        _f("role"),
        _f("is_active", _BOOL),
        _f("must_change_password", _BOOL),
        _f("invited_by_id"),
        _f("preferred_language"),
        _f("created_at", _DT),
        _f("updated_at", _DT),
        _f("last_login_at", _DT),
    ),
    order_by=("created_at", "id"),
    references=(
        Reference("person_id", Collection.PEOPLE),
        Reference("invited_by_id", Collection.USERS),
    ),
    # Credentials never leave the store
    store_only=(_f("password_hash"),),
)

SUGGESTIONS_SPEC = EntitySpec(
    collection=Collection.SUGGESTIONS,
    table="suggestions",
    data_file="data/suggestions.json",
    fields=(
        _f("id"),
        _f("type"),
        _f("target_person_id"),
        _f("suggested_data", _JSON),
        _f("reason"),
        _f("status"),
        _f("submitted_by_id"),
        _f("reviewed_by_id"),
        _f("review_note"),
        _f("submitted_at", _DT),
        _f("reviewed_at", _DT),
    ),
    order_by=("submitted_at", "id"),
    references=(
        Reference("target_person_id", Collection.PEOPLE, required=True),
        Reference("submitted_by_id", Collection.USERS, required=True),
        Reference("reviewed_by_id", Collection.USERS),
    ),
)

SETTINGS_SPEC = EntitySpec(
    collection=Collection.SETTINGS,
    table="family_settings",
    data_file="data/settings.json",
    fields=(
        _f("id"),
        _f("family_name"),
        _f("description"),
        _f("locale"),
        _f("custom_labels", _JSON),
        _f("default_privacy"),
        _f("allow_self_registration", _BOOL),
        _f("require_approval_for_edits", _BOOL),
        _f("created_at", _DT),
        _f("updated_at", _DT),
    ),
    singleton=True,
)

AUDIT_LOGS_SPEC = EntitySpec(
    collection=Collection.AUDIT_LOGS,
    table="audit_logs",
    data_file="data/audit-logs.json",
    fields=(
        _f("id"),
        _f("user_id"),
        _f("action"),
        _f("entity_type"),
        _f("entity_id"),
        _f("previous_data", _JSON),
        _f("new_data", _JSON),
        _f("ip_address"),
        _f("user_agent"),
        _f("created_at", _DT),
    ),
    order_by=("created_at", "id"),
    references=(Reference("user_id", Collection.USERS, required=True),),
    since_field="created_at",
)


ENTITY_SPECS: Dict[Collection, EntitySpec] = {
    spec.collection: spec
    for spec in (
        PEOPLE_SPEC,
        RELATIONSHIPS_SPEC,
        USERS_SPEC,
        SUGGESTIONS_SPEC,
        SETTINGS_SPEC,
        AUDIT_LOGS_SPEC,
    )
}

# Referenced collections come before the collections that reference them
APPLY_ORDER: Tuple[Collection, ...] = (
    Collection.SETTINGS,
    Collection.PEOPLE,
    Collection.USERS,
    Collection.RELATIONSHIPS,
    Collection.SUGGESTIONS,
    Collection.AUDIT_LOGS,
)


def get_spec(collection: Collection) -> EntitySpec:
    return ENTITY_SPECS[Collection(collection)]


# ============================================================================
# Record helpers
# ============================================================================

@dataclass
class FieldDiff:
    """A single differing field between live and archived versions."""
    field: str
    live: Any
    archive: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "live": self.live, "archive": self.archive}


def normalize_record(spec: EntitySpec, raw: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """
    Project a raw record onto the entity's field table.

    Args:
        spec: Entity spec of the record's collection
        raw: Record as found in an archive or store

    Returns:
        Tuple of (normalized record, names of unknown fields that were dropped)

    Raises:
        ValueError: If the id is missing or a value has the wrong kind
    """
    if not isinstance(raw, dict):
        raise ValueError(f"{spec.collection.value} record must be an object")

    record_id = raw.get("id")
    if record_id is None or str(record_id).strip() == "":
        raise ValueError(f"{spec.collection.value} record is missing an id")

    record: Dict[str, Any] = {}
    for field_spec in spec.fields:
        try:
            record[field_spec.name] = normalize_value(field_spec.kind, raw.get(field_spec.name))
        except ValueError as e:
            raise ValueError(
                f"{spec.collection.value} {record_id}: invalid {field_spec.name}: {e}"
            )
    record["id"] = str(record_id)

    known = set(spec.field_names)
    unknown = sorted(k for k in raw.keys() if k not in known)
    return record, unknown


def diff_records(spec: EntitySpec, live: Dict[str, Any], incoming: Dict[str, Any]) -> List[FieldDiff]:
    """Compare two records field by field using the entity's comparators."""
    diffs = []
    for field_spec in spec.data_fields:
        live_value = live.get(field_spec.name)
        incoming_value = incoming.get(field_spec.name)
        if not field_spec.equal(live_value, incoming_value):
            diffs.append(FieldDiff(field_spec.name, live_value, incoming_value))
    return diffs


def unresolved_references(
    spec: EntitySpec,
    record: Dict[str, Any],
    resolver: Callable[[Collection, str], bool],
) -> List[Tuple[Reference, str]]:
    """
    List references of a record that the resolver cannot find.

    Null references are never reported.
    """
    missing = []
    for ref in spec.references:
        value = record.get(ref.field)
        if value is None or value == "":
            continue
        if not resolver(ref.target, str(value)):
            missing.append((ref, str(value)))
    return missing
