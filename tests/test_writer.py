"""Tests for change detection and upsert."""

from unittest.mock import patch

import pytest

from graphsync.errors import WriteError
from graphsync.pipeline.schema import ColumnKind
from graphsync.pipeline.values import content_hash
from graphsync.pipeline.writer import PreparedRecord, RecordWriter, WriteOutcome


@pytest.fixture
def writer(sqlite_backend, schema_manager, fake_clock):
    return RecordWriter(sqlite_backend, schema_manager, clock=fake_clock.utcnow)


def synthesized(key, digest, **fields):
    return PreparedRecord(key=key, content_hash=digest, synthesized=True, fields=fields)


class TestPrepare:
    """Test key and column derivation."""

    def test_id_fills_key_column(self, writer):
        """Test an 'id' identifier is not stored twice."""
        prepared = writer.prepare({"id": "device-1", "deviceName": "PC"})

        assert prepared.key == "device-1"
        assert not prepared.synthesized
        assert prepared.fields == {"deviceName": "PC"}
        assert prepared.content_hash == content_hash({"id": "device-1", "deviceName": "PC"})

    def test_custom_id_field(self, sqlite_backend, schema_manager):
        """Test another identifier field keeps a colliding 'id' as src_id."""
        writer = RecordWriter(sqlite_backend, schema_manager, id_field="deviceId")

        prepared = writer.prepare({"deviceId": 42, "id": "other"})

        assert prepared.key == "42"
        assert prepared.fields == {"deviceId": 42, "src_id": "other"}

    def test_missing_id_synthesizes_key(self, writer):
        """Test records without an identifier get a content-derived key."""
        record = {"displayName": "orphan"}

        first = writer.prepare(record)
        second = writer.prepare(dict(record))

        assert first.synthesized
        assert first.key == "syn-" + first.content_hash
        assert first.key == second.key

    def test_empty_id_synthesizes_key(self, writer):
        assert writer.prepare({"id": "", "x": 1}).synthesized

    def test_distinct_content_gets_distinct_synthesized_keys(self, writer, sqlite_backend):
        """Test changed content without an id is a new row, never a collision."""
        assert writer.upsert("devices", {"displayName": "orphan", "n": 1}) is WriteOutcome.INSERTED
        assert writer.upsert("devices", {"displayName": "orphan", "n": 2}) is WriteOutcome.INSERTED

        assert sqlite_backend.count_rows("devices") == 2


class TestRecordWriter:
    """Test insert, update and skip decisions."""

    def test_insert_then_skip(self, writer, sqlite_backend, fake_clock):
        """Test an unchanged record is skipped and only last_seen_at moves."""
        record = {"id": "device-1", "deviceName": "PC", "operatingSystem": "Windows"}

        assert writer.upsert("devices", record) is WriteOutcome.INSERTED
        fake_clock.advance(3600)
        assert writer.upsert("devices", dict(record)) is WriteOutcome.SKIPPED

        row = sqlite_backend.fetch_row("devices", "device-1")
        assert row["first_seen_at"] == "2024-01-01T00:00:00+00:00"
        assert row["last_seen_at"] == "2024-01-01T01:00:00+00:00"
        assert sqlite_backend.count_rows("devices") == 1

    def test_skip_without_touch(self, sqlite_backend, schema_manager, fake_clock):
        """Test touch_on_skip=False leaves the row untouched."""
        writer = RecordWriter(sqlite_backend, schema_manager, touch_on_skip=False, clock=fake_clock.utcnow)
        writer.upsert("devices", {"id": "1", "a": "x"})
        fake_clock.advance(60)

        writer.upsert("devices", {"id": "1", "a": "x"})

        assert sqlite_backend.fetch_row("devices", "1")["last_seen_at"] == "2024-01-01T00:00:00+00:00"

    def test_changed_record_is_updated(self, writer, sqlite_backend, fake_clock):
        """Test a different hash overwrites the row but keeps first_seen_at."""
        writer.upsert("devices", {"id": "1", "operatingSystem": "Windows"})
        fake_clock.advance(60)

        outcome = writer.upsert("devices", {"id": "1", "operatingSystem": "Windows 11"})

        row = sqlite_backend.fetch_row("devices", "1")
        assert outcome is WriteOutcome.UPDATED
        assert row["operatingSystem"] == "Windows 11"
        assert row["content_hash"] == content_hash({"id": "1", "operatingSystem": "Windows 11"})
        assert row["first_seen_at"] == "2024-01-01T00:00:00+00:00"
        assert row["last_seen_at"] == "2024-01-01T00:01:00+00:00"

    def test_field_order_does_not_cause_update(self, writer):
        """Test reordered fields hash identically."""
        writer.upsert("devices", {"id": "1", "a": 1, "b": {"x": 1, "y": 2}})

        assert writer.upsert("devices", {"b": {"y": 2, "x": 1}, "a": 1, "id": "1"}) is WriteOutcome.SKIPPED

    def test_absent_fields_are_nulled(self, writer, sqlite_backend):
        """Test an update replaces the whole row."""
        writer.upsert("devices", {"id": "1", "a": "x", "b": "y"})

        writer.upsert("devices", {"id": "1", "a": "x"})

        assert sqlite_backend.fetch_row("devices", "1")["b"] is None

    def test_new_fields_evolve_schema(self, writer, schema_manager):
        """Test unseen fields add columns before the write."""
        writer.upsert("devices", {"id": "1", "a": "x"})
        writer.upsert("devices", {"id": "2", "a": "y", "complianceState": "compliant"})

        assert "compliancestate" in schema_manager.columns("devices")

    def test_conflicting_values_are_kept_as_text(self, writer, sqlite_backend):
        """Test values not fitting an existing column keep their text form."""
        writer.upsert("devices", {"id": "1", "storage": 10, "seen": "2024-01-01T12:00:00.1234567Z"})
        writer.upsert("devices", {"id": "2", "storage": "lots", "seen": "never"})

        first = sqlite_backend.fetch_row("devices", "1")
        second = sqlite_backend.fetch_row("devices", "2")
        assert first["storage"] == 10
        assert first["seen"] == "2024-01-01T12:00:00.123456+00:00"
        assert second["storage"] == "lots"
        assert second["seen"] == "never"

    def test_conflicting_values_use_companion_column(self, writer, sqlite_backend, schema_manager):
        """Test backends with strictly typed columns get a TEXT <column>_raw companion."""
        writer.upsert("devices", {"id": "1", "storage": 10})

        with patch.object(sqlite_backend, "typed_columns_accept_text", False):
            writer.upsert("devices", {"id": "2", "storage": {"total": "lots"}})
            writer.upsert("devices", {"id": "3", "storage": 30})

        second = sqlite_backend.fetch_row("devices", "2")
        third = sqlite_backend.fetch_row("devices", "3")
        assert second["storage"] is None
        assert second["storage_raw"] == '{"total":"lots"}'
        assert third["storage"] == 30
        assert third["storage_raw"] is None
        assert schema_manager.columns("devices")["storage_raw"].kind is ColumnKind.TEXT

    def test_out_of_range_integer_is_stored_as_text(self, writer, sqlite_backend, schema_manager):
        """Test integers beyond 64 bits get a TEXT column instead of failing."""
        assert writer.upsert("devices", {"id": "1", "bytes": 2 ** 64}) is WriteOutcome.INSERTED

        assert schema_manager.columns("devices")["bytes"].kind is ColumnKind.TEXT
        assert sqlite_backend.fetch_row("devices", "1")["bytes"] == "18446744073709551616"

    def test_structured_values_stored_as_json(self, writer, sqlite_backend):
        writer.upsert("devices", {"id": "1", "hardware": {"model": "X1", "cores": 8}})

        assert sqlite_backend.fetch_row("devices", "1")["hardware"] == '{"cores":8,"model":"X1"}'

    def test_synthesized_key_roundtrip(self, writer, sqlite_backend):
        """Test a record without an id is skipped when seen again."""
        assert writer.upsert("devices", {"displayName": "orphan"}) is WriteOutcome.INSERTED
        writer.begin_cycle()

        assert writer.upsert("devices", {"displayName": "orphan"}) is WriteOutcome.SKIPPED
        assert sqlite_backend.count_rows("devices") == 1

    def test_synthesized_collision_within_cycle(self, writer):
        """Test one synthesized key carrying two hashes in a cycle fails."""
        writer.write("devices", synthesized("syn-x", "a", name="first"))

        with pytest.raises(WriteError, match="collision"):
            writer.write("devices", synthesized("syn-x", "b", name="second"))

    def test_synthesized_collision_across_cycles(self, writer):
        """Test a stored row with a different hash under a synthesized key fails."""
        writer.write("devices", synthesized("syn-x", "a", name="first"))
        writer.begin_cycle()

        with pytest.raises(WriteError) as excinfo:
            writer.write("devices", synthesized("syn-x", "b", name="second"))

        assert excinfo.value.key == "syn-x"


class TestWriteBatch:
    """Test batch writes."""

    def test_counts(self, writer):
        """Test outcomes are tallied."""
        writer.upsert("devices", {"id": "1", "a": "x"})
        records = [writer.prepare(r) for r in ({"id": "1", "a": "x"}, {"id": "2", "a": "y"})]

        result = writer.write_batch("devices", records)

        assert (result.inserted, result.updated, result.skipped) == (1, 0, 1)
        assert result.written == 2
        assert result.error is None

    def test_stops_at_first_error(self, writer, sqlite_backend):
        """Test records after a failed write are not attempted."""
        batch = [
            synthesized("syn-x", "a", name="first"),
            synthesized("syn-x", "b", name="second"),
            writer.prepare({"id": "3", "name": "third"}),
        ]

        result = writer.write_batch("devices", batch)

        assert result.inserted == 1
        assert isinstance(result.error, WriteError)
        assert sqlite_backend.fetch_row("devices", "3") is None
