"""
Unit tests for the SQLite data store and the local asset store.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from familyarchive.core.exceptions import AssetIOError, DataStoreError
from familyarchive.core.models import Collection
from familyarchive.storage import create_data_store
from familyarchive.storage import sql_store
from familyarchive.storage.file_assets import LocalAssetStore
from familyarchive.storage.sqlite_store import SqliteDataStore


class TestSqliteDataStore:
    """Tests for SqliteDataStore CRUD."""

    def test_insert_and_get(self, store):
        """Test inserting and reading back a record."""
        store.insert(Collection.PEOPLE, {
            "id": "p1",
            "first_name": "Jane",
            "is_living": True,
            "current_address": {"city": "Springfield"},
            "date_of_birth": "1980-04-02T00:00:00Z",
        })

        person = store.get(Collection.PEOPLE, "p1")

        assert person["first_name"] == "Jane"
        assert person["is_living"] is True
        assert person["current_address"] == {"city": "Springfield"}
        assert person["date_of_birth"] == "1980-04-02T00:00:00+00:00"
        assert person["bio"] is None

    def test_get_missing(self, store):
        """Test that a missing id returns None."""
        assert store.get(Collection.PEOPLE, "nope") is None
        assert not store.exists(Collection.PEOPLE, "nope")

    def test_store_only_columns_are_not_read(self, seeded_store):
        """Test that credential columns never appear in records."""
        user = seeded_store.get(Collection.USERS, "u-admin")

        assert "password_hash" not in user
        assert seeded_store._query("SELECT COUNT(*) FROM [users] WHERE [password_hash] IS NOT NULL")[0][0] == 2

    def test_fetch_all_order(self, seeded_store):
        """Test that people come back ordered by last then first name."""
        people = seeded_store.fetch_all(Collection.PEOPLE)

        assert [p["first_name"] for p in people] == ["Baby", "Jane", "John"]

    def test_fetch_all_since(self, seeded_store):
        """Test the since filter on audit logs."""
        since = datetime.now(timezone.utc) - timedelta(days=30)

        logs = seeded_store.fetch_all(Collection.AUDIT_LOGS, since=since)

        assert [log["id"] for log in logs] == ["a1"]

    def test_since_ignored_without_since_field(self, seeded_store):
        """Test that collections without a since field return everything."""
        since = datetime.now(timezone.utc)

        assert len(seeded_store.fetch_all(Collection.PEOPLE, since=since)) == 3

    def test_update(self, seeded_store):
        """Test updating selected fields."""
        seeded_store.update(Collection.PEOPLE, "p1", {"bio": "Hello", "first_name": "Janet"})

        person = seeded_store.get(Collection.PEOPLE, "p1")
        assert person["bio"] == "Hello"
        assert person["first_name"] == "Janet"
        assert person["last_name"] == "Doe"

    def test_update_missing_record(self, store):
        """Test that updating a missing id fails."""
        with pytest.raises(DataStoreError, match="No people record"):
            store.update(Collection.PEOPLE, "ghost", {"bio": "x"})

    def test_duplicate_insert(self, seeded_store):
        """Test that a primary key violation becomes DataStoreError."""
        with pytest.raises(DataStoreError):
            seeded_store.insert(Collection.PEOPLE, {"id": "p1", "first_name": "Again"})

    def test_get_many_batches(self, store, monkeypatch):
        """Test that id lookups are split into batches."""
        monkeypatch.setattr(sql_store, "LOOKUP_BATCH_SIZE", 2)
        for i in range(5):
            store.insert(Collection.PEOPLE, {"id": f"p{i}", "first_name": f"P{i}"})

        found = store.get_many(Collection.PEOPLE, [f"p{i}" for i in range(5)] + ["ghost"])

        assert sorted(found) == ["p0", "p1", "p2", "p3", "p4"]

    def test_count(self, seeded_store):
        """Test counting records."""
        assert seeded_store.count(Collection.RELATIONSHIPS) == 2
        assert seeded_store.count(Collection.SETTINGS) == 1

    def test_find_by(self, seeded_store):
        """Test fetching records by a non-id field."""
        found = seeded_store.find_by(
            Collection.USERS, "email", ["member@example.com", "admin@example.com", "nobody@example.com"]
        )

        assert sorted(u["id"] for u in found) == ["u-admin", "u-member"]
        assert seeded_store.find_by(Collection.USERS, "email", []) == []


class TestTransactions:
    """Tests for SqliteDataStore.transaction."""

    def test_commit(self, store):
        """Test that writes inside a transaction are committed together."""
        with store.transaction():
            store.insert(Collection.PEOPLE, {"id": "p1"})
            store.insert(Collection.PEOPLE, {"id": "p2"})

        assert store.count(Collection.PEOPLE) == 2

    def test_rollback(self, store):
        """Test that an exception rolls back every write in the block."""
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert(Collection.PEOPLE, {"id": "p1"})
                raise RuntimeError("boom")

        assert store.count(Collection.PEOPLE) == 0

    def test_nested_rolls_back_outer(self, store):
        """Test that the outermost block decides commit or rollback."""
        with pytest.raises(RuntimeError):
            with store.transaction():
                with store.transaction():
                    store.insert(Collection.PEOPLE, {"id": "p1"})
                raise RuntimeError("boom")

        assert store.count(Collection.PEOPLE) == 0

    def test_failed_write_rolls_back_block(self, store):
        """Test that a driver error inside a block rolls back earlier writes."""
        with pytest.raises(DataStoreError):
            with store.transaction():
                store.insert(Collection.PEOPLE, {"id": "p1"})
                store.insert(Collection.PEOPLE, {"id": "p1"})

        assert store.count(Collection.PEOPLE) == 0

    def test_open_transaction_does_not_block_readers(self, store):
        """Test that another thread reads committed state while a transaction is open."""
        written = threading.Event()
        release = threading.Event()

        def writer():
            with store.transaction():
                store.insert(Collection.PEOPLE, {"id": "p1"})
                written.set()
                release.wait(timeout=10)

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            assert written.wait(timeout=5)

            assert store.count(Collection.PEOPLE) == 0
            with store.read_view():
                assert store.fetch_all(Collection.PEOPLE) == []
            assert not release.is_set()
        finally:
            release.set()
            thread.join(timeout=10)

        assert store.count(Collection.PEOPLE) == 1

    def test_read_view_inside_transaction(self, store):
        """Test that a read view in a transaction sees the transaction's own writes."""
        with store.transaction():
            store.insert(Collection.PEOPLE, {"id": "p1"})
            with store.read_view():
                assert store.count(Collection.PEOPLE) == 1

        assert store.count(Collection.PEOPLE) == 1


class TestStoreIdentity:
    """Tests for store_id and the backend factory."""

    def test_file_store_id_is_path_based(self, tmp_path):
        """Test that two instances on one file share a store id."""
        path = tmp_path / "family.db"
        first = SqliteDataStore(path)
        second = SqliteDataStore(path)
        try:
            assert first.store_id == second.store_id
        finally:
            first.close()
            second.close()

    def test_memory_store_ids_differ(self):
        """Test that separate in-memory stores never share a lock key."""
        first = SqliteDataStore(":memory:")
        second = SqliteDataStore(":memory:")
        try:
            assert first.store_id != second.store_id
        finally:
            first.close()
            second.close()

    def test_file_store_persists(self, tmp_path):
        """Test that data written to a file store survives reopening."""
        path = tmp_path / "nested" / "family.db"
        s = SqliteDataStore(path)
        s.insert(Collection.PEOPLE, {"id": "p1", "first_name": "Jane"})
        s.close()

        reopened = SqliteDataStore(path)
        try:
            assert reopened.get(Collection.PEOPLE, "p1")["first_name"] == "Jane"
        finally:
            reopened.close()

    def test_create_sqlite(self, tmp_path):
        """Test the factory's sqlite backend."""
        s = create_data_store(backend="sqlite", db_path=tmp_path / "f.db")
        try:
            assert isinstance(s, SqliteDataStore)
        finally:
            s.close()

    def test_create_unknown_backend(self):
        """Test that unknown backends are rejected."""
        with pytest.raises(ValueError, match="Unknown backend"):
            create_data_store(backend="mongodb")

    def test_backend_from_environment(self, tmp_path, monkeypatch):
        """Test that FAMILYARCHIVE_DB_BACKEND selects the backend."""
        monkeypatch.setenv("FAMILYARCHIVE_DB_BACKEND", "SQLITE")

        s = create_data_store(db_path=tmp_path / "env.db")
        try:
            assert isinstance(s, SqliteDataStore)
        finally:
            s.close()


class TestLocalAssetStore:
    """Tests for LocalAssetStore."""

    def test_write_and_read(self, asset_store):
        """Test storing a photo."""
        asset_store.write("p1", "jane.jpg", b"bytes")

        assert asset_store.read("p1", "jane.jpg") == b"bytes"
        assert asset_store.exists("p1", "jane.jpg")
        assert (asset_store.base_dir / "p1" / "jane.jpg").is_file()

    def test_overwrite_leaves_no_temp_files(self, asset_store):
        """Test that atomic writes clean up after themselves."""
        asset_store.write("p1", "jane.jpg", b"one")
        asset_store.write("p1", "jane.jpg", b"two")

        assert asset_store.read("p1", "jane.jpg") == b"two"
        assert [p.name for p in (asset_store.base_dir / "p1").iterdir()] == ["jane.jpg"]

    def test_read_missing(self, asset_store):
        """Test that reading a missing photo raises AssetIOError."""
        with pytest.raises(AssetIOError) as exc_info:
            asset_store.read("p1", "missing.jpg")

        assert exc_info.value.person_id == "p1"
        assert exc_info.value.filename == "missing.jpg"

    def test_asset_errors_are_os_errors(self):
        """Test that asset failures can be handled as OSError."""
        assert issubclass(AssetIOError, OSError)

    @pytest.mark.parametrize("person_id,filename", [
        ("..", "passwd"),
        ("p1", "../escape.jpg"),
        ("p1", "sub/dir.jpg"),
    ])
    def test_rejects_escaping_paths(self, asset_store, person_id, filename):
        """Test that names escaping the base directory are refused."""
        with pytest.raises(AssetIOError):
            asset_store.write(person_id, filename, b"x")
        assert not asset_store.exists(person_id, filename)

    def test_list_assets(self, seeded_assets):
        """Test listing stored photos."""
        assert seeded_assets.list_assets() == [
            ("p1", "jane.jpg"),
            ("p2", "john.png"),
            ("p3", "baby.jpg"),
        ]

    def test_list_assets_missing_dir(self, tmp_path):
        """Test listing an asset store whose directory does not exist."""
        assets = LocalAssetStore(tmp_path / "nowhere", create_dirs=False)

        assert assets.list_assets() == []

    def test_get_name(self, asset_store):
        """Test the asset store name."""
        assert asset_store.get_name() == "local_assets"
