"""
Unit tests for the export serializer.
"""

import io
import json
import zipfile

import pytest

from familyarchive.archive.codec import decode
from familyarchive.core.audit import AuditAction, AuditSink
from familyarchive.core.models import Collection
from familyarchive.export.serializer import (
    ExportOptions,
    ExportSerializer,
    photo_filename,
)


class RecordingAuditSink(AuditSink):
    """Audit sink that keeps entries in memory."""

    def __init__(self):
        self.entries = []

    def append(self, entity_type, details, actor_id=None):
        self.entries.append((entity_type, details, actor_id))


def read_entry(data: bytes, name: str):
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return json.loads(zf.read(name))


def entry_names(data: bytes):
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return zf.namelist()


class TestExportOptions:
    """Tests for ExportOptions validation."""

    def test_defaults(self):
        """Test default export options."""
        options = ExportOptions()

        assert options.include_photos is True
        assert options.include_audit_logs is True
        assert options.audit_log_days == 90

    @pytest.mark.parametrize("days", [1, 365])
    def test_accepts_bounds(self, days):
        """Test that the window bounds are accepted."""
        assert ExportOptions(audit_log_days=days).audit_log_days == days

    @pytest.mark.parametrize("days", [0, -5, 366])
    def test_rejects_out_of_range(self, days):
        """Test that windows outside 1..365 are rejected."""
        with pytest.raises(ValueError, match="between 1 and 365"):
            ExportOptions(audit_log_days=days)


class TestPhotoFilename:
    """Tests for photo_filename."""

    def test_relative_path(self):
        """Test a stored upload path."""
        assert photo_filename("/uploads/photos/p1/jane.jpg") == "jane.jpg"

    def test_url_with_query(self):
        """Test that query strings are ignored."""
        assert photo_filename("https://cdn.example.com/u/p3/baby.jpg?v=2") == "baby.jpg"

    def test_percent_encoded(self):
        """Test that the filename is unquoted."""
        assert photo_filename("/uploads/p1/my%20photo.png") == "my photo.png"

    def test_empty(self):
        """Test that missing URLs give no filename."""
        assert photo_filename(None) is None
        assert photo_filename("") is None


class TestExportContent:
    """Tests for what an export contains."""

    def test_collection_counts(self, seeded_store, seeded_assets, export_archive):
        """Test that every collection is exported."""
        data = export_archive(seeded_store, seeded_assets)

        with decode(data) as parsed:
            assert len(parsed.get_records(Collection.PEOPLE)) == 3
            assert len(parsed.get_records(Collection.RELATIONSHIPS)) == 2
            assert len(parsed.get_records(Collection.USERS)) == 2
            assert len(parsed.get_records(Collection.SUGGESTIONS)) == 1
            assert len(parsed.get_records(Collection.SETTINGS)) == 1
            manifest = parsed.manifest

        assert manifest.counts["people"] == 3
        assert manifest.counts["photos"] == 3
        assert manifest.source_instance == "test"

    def test_data_file_layout(self, seeded_store, seeded_assets, export_archive):
        """Test the archive's entry names."""
        names = entry_names(export_archive(seeded_store, seeded_assets))

        assert names[:6] == [
            "data/people.json",
            "data/relationships.json",
            "data/users.json",
            "data/suggestions.json",
            "data/settings.json",
            "data/audit-logs.json",
        ]
        assert "photos/p1/jane.jpg" in names
        assert "photos/p2/john.png" in names
        assert "photos/p3/baby.jpg" in names
        assert names[-1] == "manifest.json"

    def test_people_export_order(self, seeded_store, export_archive):
        """Test that people are ordered by last name, then first name."""
        people = read_entry(export_archive(seeded_store), "data/people.json")

        assert [p["first_name"] for p in people] == ["Baby", "Jane", "John"]

    def test_settings_is_an_object(self, seeded_store, export_archive):
        """Test that settings are exported as a single object."""
        settings = read_entry(export_archive(seeded_store), "data/settings.json")

        assert settings["family_name"] == "Doe Family"
        assert settings["custom_labels"] == {"spouse": "Partner"}

    def test_empty_store(self, store, export_archive):
        """Test exporting an empty store."""
        data = export_archive(store)

        assert read_entry(data, "data/settings.json") == {}
        assert read_entry(data, "data/people.json") == []

    def test_password_hash_never_exported(self, seeded_store, export_archive, sample_data):
        """Test that credentials never appear in an archive."""
        data = export_archive(seeded_store)

        users = read_entry(data, "data/users.json")
        assert all("password_hash" not in u for u in users)
        for user in sample_data[Collection.USERS]:
            assert user["password_hash"].encode("utf-8") not in data

    def test_audit_log_window(self, seeded_store, export_archive):
        """Test that only audit entries inside the window are exported."""
        recent = read_entry(export_archive(seeded_store, audit_log_days=90), "data/audit-logs.json")
        year = read_entry(export_archive(seeded_store, audit_log_days=365), "data/audit-logs.json")

        assert [a["id"] for a in recent] == ["a1"]
        assert sorted(a["id"] for a in year) == ["a1", "a2"]

    def test_without_audit_logs(self, seeded_store, export_archive):
        """Test excluding audit logs."""
        data = export_archive(seeded_store, include_audit_logs=False)
        manifest = read_entry(data, "manifest.json")

        assert "data/audit-logs.json" not in entry_names(data)
        assert manifest["auditLogDays"] is None
        assert "audit_logs" not in manifest["counts"]

    def test_without_photos(self, seeded_store, seeded_assets, export_archive):
        """Test excluding photos."""
        data = export_archive(seeded_store, seeded_assets, include_photos=False)

        assert not any(n.startswith("photos/") for n in entry_names(data))
        assert read_entry(data, "manifest.json")["counts"]["photos"] == 0

    def test_keeps_json_values_by_default(self, seeded_store, export_archive):
        """Test that JSON fields are exported as stored unless scrubbing is asked for."""
        seeded_store.update(Collection.PEOPLE, "p1", {"social_links": {"token": "abc"}})

        people = read_entry(export_archive(seeded_store), "data/people.json")

        jane = next(p for p in people if p["id"] == "p1")
        assert jane["social_links"] == {"token": "abc"}

    def test_redacts_secrets_when_requested(self, seeded_store, export_archive):
        """Test that secret keys inside JSON fields are scrubbed on request."""
        seeded_store.update(Collection.AUDIT_LOGS, "a1", {
            "new_data": {"bio": "Hello", "password": "hunter2", "nested": {"api_key": "k-123"}},
        })

        logs = read_entry(
            export_archive(seeded_store, redact_secrets=True), "data/audit-logs.json"
        )

        assert logs[0]["new_data"]["password"] == "[REDACTED]"
        assert logs[0]["new_data"]["nested"]["api_key"] == "[REDACTED]"
        assert logs[0]["new_data"]["bio"] == "Hello"

    def test_manifest_checksums_cover_entries(self, seeded_store, seeded_assets, export_archive):
        """Test that every non-manifest entry has a checksum."""
        data = export_archive(seeded_store, seeded_assets)
        manifest = read_entry(data, "manifest.json")

        names = [n for n in entry_names(data) if n != "manifest.json"]
        assert sorted(manifest["checksums"]) == sorted(names)


class TestExportPhotos:
    """Tests for photo handling during export."""

    def test_unreadable_photo_is_skipped(self, seeded_store, seeded_assets):
        """Test that one missing photo does not fail the export."""
        (seeded_assets.base_dir / "p2" / "john.png").unlink()
        serializer = ExportSerializer(seeded_store, seeded_assets)

        stream = serializer.export()
        data = stream.read_all()

        assert stream.report.completed is True
        assert stream.report.photos_exported == 2
        assert stream.report.photos_skipped == 1
        assert stream.report.skipped_photos == ["p2/john.png"]

        manifest = read_entry(data, "manifest.json")
        assert manifest["skippedAssets"] == 1
        assert manifest["counts"]["photos"] == 2
        assert manifest["photoDirectories"] == ["photos/p1", "photos/p3"]

        with decode(data) as parsed:
            assert [a.entry_name for a in parsed.assets] == [
                "photos/p1/jane.jpg",
                "photos/p3/baby.jpg",
            ]

    def test_no_asset_store(self, seeded_store):
        """Test that photos are silently absent without an asset store."""
        stream = ExportSerializer(seeded_store).export()
        stream.read_all()

        assert stream.report.photos_exported == 0
        assert stream.report.photos_skipped == 0

    def test_photo_bytes_round_trip(self, seeded_store, seeded_assets, export_archive):
        """Test that exported photo bytes are unchanged."""
        data = export_archive(seeded_store, seeded_assets)

        with decode(data) as parsed:
            entry = next(a for a in parsed.assets if a.person_id == "p1")
            assert parsed.read_asset(entry) == seeded_assets.read("p1", "jane.jpg")


class TestExportStream:
    """Tests for streaming behaviour and the audit entry."""

    def test_chunks_respect_chunk_size(self, seeded_store, seeded_assets):
        """Test that the stream yields bounded chunks."""
        serializer = ExportSerializer(seeded_store, seeded_assets, chunk_size=512)

        chunks = list(serializer.export())

        assert all(len(c) <= 512 for c in chunks)
        with decode(b"".join(chunks)) as parsed:
            assert parsed.manifest.counts["people"] == 3

    def test_write_to(self, seeded_store, tmp_path):
        """Test draining into a file."""
        stream = ExportSerializer(seeded_store).export()
        path = tmp_path / "backup.zip"

        with open(path, "wb") as f:
            written = stream.write_to(f)

        assert written == path.stat().st_size
        assert stream.report.bytes_written == written

    def test_audit_entry_on_completion(self, seeded_store):
        """Test that exactly one export audit entry is appended after draining."""
        audit = RecordingAuditSink()
        stream = ExportSerializer(seeded_store, audit=audit).export(actor_id="u-admin")

        assert audit.entries == []
        stream.read_all()

        assert len(audit.entries) == 1
        entity_type, details, actor = audit.entries[0]
        assert entity_type == AuditAction.EXPORT
        assert actor == "u-admin"
        assert details["counts"]["people"] == 3

    def test_no_audit_entry_when_disabled(self, seeded_store):
        """Test record_audit=False."""
        audit = RecordingAuditSink()
        ExportSerializer(seeded_store, audit=audit).export(record_audit=False).read_all()

        assert audit.entries == []

    def test_abandoned_stream(self, seeded_store):
        """Test that closing a stream early leaves it incomplete and unaudited."""
        audit = RecordingAuditSink()
        stream = ExportSerializer(seeded_store, audit=audit, chunk_size=256).export()

        next(iter(stream))
        stream.close()

        assert stream.report.completed is False
        assert audit.entries == []

    def test_manifest_records_actor(self, seeded_store):
        """Test that the exporting actor is stamped in the manifest."""
        data = ExportSerializer(seeded_store).export(actor_id="u-admin").read_all()

        assert read_entry(data, "manifest.json")["exportedBy"] == "u-admin"
