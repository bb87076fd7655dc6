"""
Conflict-resolution strategies.

A strategy decides, for an archived record whose id already exists live,
which fields (if any) are written. Records with unseen ids are always
inserted, and identical records are always skipped, whatever the strategy.

Merge rule: for each field, an archived non-empty value fills a live empty
value (None, blank string, empty list or object). When both sides hold a
non-empty value, the live value wins.
"""

from enum import Enum
from typing import Any, Dict, Optional

from ..core.models import EntitySpec, is_empty


class ImportStrategy(str, Enum):
    """How existing records are treated."""
    SKIP = "skip"
    REPLACE = "replace"
    MERGE = "merge"


def replace_fields(spec: EntitySpec, live: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """Every data field that differs, taken from the archive."""
    return {
        f.name: incoming.get(f.name)
        for f in spec.data_fields
        if not f.equal(live.get(f.name), incoming.get(f.name))
    }


def merge_fields(spec: EntitySpec, live: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """Fields where the live value is empty and the archive has one."""
    return {
        f.name: incoming.get(f.name)
        for f in spec.data_fields
        if is_empty(live.get(f.name)) and not is_empty(incoming.get(f.name))
    }


def resolve_update(
    strategy: ImportStrategy,
    spec: EntitySpec,
    live: Dict[str, Any],
    incoming: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    """
    Fields to write for an existing record.

    Returns:
        Mapping of field to new value, or None when nothing is written
    """
    strategy = ImportStrategy(strategy)
    if strategy == ImportStrategy.SKIP:
        return None
    if strategy == ImportStrategy.REPLACE:
        fields = replace_fields(spec, live, incoming)
    else:
        fields = merge_fields(spec, live, incoming)
    return fields or None
