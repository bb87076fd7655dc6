"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from familyarchive.core.models import APPLY_ORDER, Collection, format_datetime
from familyarchive.export.serializer import ExportOptions, ExportSerializer
from familyarchive.storage.file_assets import LocalAssetStore
from familyarchive.storage.snapshot_store import FileSnapshotStore
from familyarchive.storage.sqlite_store import SqliteDataStore


logger = logging.getLogger(__name__)


# ============================================================================
# Environment detection
# ============================================================================

def sqlserver_settings() -> Dict[str, Any]:
    return {
        "host": os.environ.get("FAMILYARCHIVE_SQLSERVER_HOST", "localhost"),
        "port": int(os.environ.get("FAMILYARCHIVE_SQLSERVER_PORT", "1433")),
        "database": os.environ.get("FAMILYARCHIVE_SQLSERVER_DATABASE",
                                   os.environ.get("MSSQL_DATABASE", "FamilyArchive")),
        "username": os.environ.get("FAMILYARCHIVE_SQLSERVER_USER", "sa"),
        "password": os.environ.get("FAMILYARCHIVE_SQLSERVER_PASSWORD",
                                   os.environ.get("MSSQL_SA_PASSWORD")),
        "driver": os.environ.get("FAMILYARCHIVE_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server"),
    }


def is_sqlserver_available() -> bool:
    """Check if SQL Server is available for testing."""
    settings = sqlserver_settings()
    if not settings["password"]:
        return False

    try:
        import pyodbc

        conn_str = (
            f"Driver={{{settings['driver']}}};"
            f"Server={settings['host']},{settings['port']};"
            f"Database={settings['database']};"
            f"UID={settings['username']};"
            f"PWD={settings['password']};"
            f"TrustServerCertificate=yes"
        )
        conn = pyodbc.connect(conn_str, timeout=5)
        conn.close()
        return True

    except Exception as e:
        logger.debug(f"SQL Server not available: {e}")
        return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (requires SQL Server)")


def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if SQL Server is not available."""
    if not any("integration" in item.keywords for item in items):
        return
    if is_sqlserver_available():
        return

    skip_sqlserver = pytest.mark.skip(
        reason="SQL Server not available (set MSSQL_SA_PASSWORD and ensure SQL Server is running)"
    )

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_sqlserver)


# ============================================================================
# Sample data
# ============================================================================

PHOTO_BYTES = {
    ("p1", "jane.jpg"): b"\xff\xd8\xff\xe0jane-photo",
    ("p2", "john.png"): b"\x89PNG\r\n\x1a\njohn-photo",
    ("p3", "baby.jpg"): b"\xff\xd8\xff\xe0baby-photo",
}


def ts(days_ago: float = 0) -> str:
    return format_datetime(datetime.now(timezone.utc) - timedelta(days=days_ago))


def build_sample_data() -> Dict[Collection, List[Dict[str, Any]]]:
    """A small family: three people, two users, and everything that references them."""
    created = "2024-01-15T10:00:00+00:00"
    return {
        Collection.SETTINGS: [{
            "id": "settings-1",
            "family_name": "Doe Family",
            "description": "The Doe family tree",
            "locale": "en",
            "custom_labels": {"spouse": "Partner"},
            "default_privacy": "MEMBERS_ONLY",
            "allow_self_registration": False,
            "require_approval_for_edits": True,
            "created_at": created,
            "updated_at": created,
        }],
        Collection.PEOPLE: [
            {
                "id": "p1",
                "first_name": "Jane",
                "last_name": "Doe",
                "maiden_name": "Smith",
                "date_of_birth": "1980-04-02T00:00:00+00:00",
                "gender": "FEMALE",
                "photo_url": "/uploads/photos/p1/jane.jpg",
                "bio": None,
                "email": "jane@example.com",
                "current_address": {"city": "Springfield", "country": "US"},
                "social_links": {},
                "is_living": True,
                "created_at": created,
                "updated_at": created,
                "created_by_id": "u-admin",
            },
            {
                "id": "p2",
                "first_name": "John",
                "last_name": "Doe",
                "date_of_birth": "1978-09-12T00:00:00+00:00",
                "gender": "MALE",
                "photo_url": "/uploads/photos/p2/john.png",
                "profession": "Carpenter",
                "is_living": True,
                "created_at": created,
                "updated_at": created,
                "created_by_id": "u-admin",
            },
            {
                "id": "p3",
                "first_name": "Baby",
                "last_name": "Doe",
                "date_of_birth": "2020-06-30T00:00:00+00:00",
                "photo_url": "https://cdn.example.com/uploads/p3/baby.jpg?v=2",
                "is_living": True,
                "created_at": created,
                "updated_at": created,
                "created_by_id": "u-admin",
            },
        ],
        Collection.USERS: [
            {
                "id": "u-admin",
                "email": "admin@example.com",
                "name": "Admin",
                "person_id": "p1",
                "role": "ADMIN",
                "is_active": True,
                "must_change_password": False,
                "preferred_language": "en",
                "created_at": created,
                "updated_at": created,
                "password_hash": "$2b$12$abcdefghijklmnopqrstuuJ0Lx7yUOlrDgZ5mC7sV2Dk5cE6Q4WnK",
            },
            {
                "id": "u-member",
                "email": "member@example.com",
                "name": "Member",
                "person_id": "p2",
                "role": "MEMBER",
                "is_active": True,
                "must_change_password": True,
                "invited_by_id": "u-admin",
                "created_at": "2024-02-01T09:30:00+00:00",
                "updated_at": "2024-02-01T09:30:00+00:00",
                "password_hash": "$2b$12$zyxwvutsrqponmlkjihgfeuJ0Lx7yUOlrDgZ5mC7sV2Dk5cE6Q4WnK",
            },
        ],
        Collection.RELATIONSHIPS: [
            {
                "id": "r1",
                "person_id": "p1",
                "related_person_id": "p2",
                "type": "SPOUSE",
                "marriage_date": "2005-05-20T00:00:00+00:00",
                "is_active": True,
                "created_at": created,
                "updated_at": created,
            },
            {
                "id": "r2",
                "person_id": "p1",
                "related_person_id": "p3",
                "type": "PARENT",
                "is_active": True,
                "created_at": "2024-01-16T10:00:00+00:00",
                "updated_at": "2024-01-16T10:00:00+00:00",
            },
        ],
        Collection.SUGGESTIONS: [{
            "id": "s1",
            "type": "UPDATE",
            "target_person_id": "p3",
            "suggested_data": {"bio": "Loves dinosaurs"},
            "reason": "Family knowledge",
            "status": "PENDING",
            "submitted_by_id": "u-member",
            "submitted_at": "2024-03-01T12:00:00+00:00",
        }],
        Collection.AUDIT_LOGS: [
            {
                "id": "a1",
                "user_id": "u-admin",
                "action": "UPDATE",
                "entity_type": "PERSON",
                "entity_id": "p1",
                "previous_data": {"bio": None},
                "new_data": {"bio": "Hello"},
                "created_at": ts(days_ago=1),
            },
            {
                "id": "a2",
                "user_id": "u-admin",
                "action": "CREATE",
                "entity_type": "PERSON",
                "entity_id": "p2",
                "created_at": ts(days_ago=200),
            },
        ],
    }


def seed_store(store, data: Dict[Collection, List[Dict[str, Any]]]) -> None:
    for collection in APPLY_ORDER:
        for record in data.get(collection, []):
            store.insert(collection, record)


def seed_assets(assets) -> None:
    for (person_id, filename), data in PHOTO_BYTES.items():
        assets.write(person_id, filename, data)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def sample_data() -> Dict[Collection, List[Dict[str, Any]]]:
    return build_sample_data()


@pytest.fixture
def store():
    """Empty in-memory SQLite data store."""
    s = SqliteDataStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def seeded_store(store, sample_data):
    """In-memory store holding the sample family."""
    seed_store(store, sample_data)
    return store


@pytest.fixture
def asset_store(tmp_path) -> LocalAssetStore:
    return LocalAssetStore(tmp_path / "photos")


@pytest.fixture
def seeded_assets(asset_store) -> LocalAssetStore:
    seed_assets(asset_store)
    return asset_store


@pytest.fixture
def snapshot_store(tmp_path) -> FileSnapshotStore:
    return FileSnapshotStore(tmp_path / "snapshots")


@pytest.fixture
def export_archive():
    """Function that exports a store (and optional assets) to archive bytes."""
    def _export(store, assets=None, **options) -> bytes:
        serializer = ExportSerializer(store, assets, source_instance="test")
        return serializer.export(ExportOptions(**options)).read_all()
    return _export


@pytest.fixture
def seed():
    return seed_store


@pytest.fixture(scope="session")
def sqlserver_config() -> Dict[str, Any]:
    """Session-scoped fixture providing SQL Server connection configuration."""
    return sqlserver_settings()
