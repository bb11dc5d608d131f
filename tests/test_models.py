"""Tests for issue_bridge.models."""

from issue_bridge.models import ArtifactContent, Connection, LedgerIndex, SourceRecord, TrackedArtifact


def _tracked(**overrides) -> TrackedArtifact:
    defaults = {
        "source_record_id": "page-1",
        "sink_artifact_id": "2001",
        "connection_id": 1,
        "title": "Crash on start",
        "status": "Open",
        "external_key": "BUG-1",
    }
    defaults.update(overrides)
    return TrackedArtifact(**defaults)


class TestMatchingKey:
    def test_external_key_preferred(self):
        assert SourceRecord(id="page-1", external_key="BUG-1").matching_key == "BUG-1"
        assert _tracked().matching_key == "BUG-1"

    def test_falls_back_to_id(self):
        assert SourceRecord(id="page-1").matching_key == "page-1"
        assert _tracked(external_key=None).matching_key == "page-1"


class TestDiffersFrom:
    def test_same_values(self):
        record = SourceRecord(id="page-1", external_key="BUG-1", title="Crash on start", status="Open")
        assert not _tracked().differs_from(record)

    def test_each_mirrored_field(self):
        base = {"id": "page-1", "external_key": "BUG-1", "title": "Crash on start", "status": "Open"}
        assert _tracked().differs_from(SourceRecord(**{**base, "status": "Fixed"}))
        assert _tracked().differs_from(SourceRecord(**{**base, "title": "Crash on startup"}))
        assert _tracked(external_key=None, source_record_id="BUG-1").differs_from(SourceRecord(**base))

    def test_status_is_compared_verbatim(self):
        record = SourceRecord(id="page-1", external_key="BUG-1", title="Crash on start", status="open")
        assert _tracked().differs_from(record)

    def test_description_is_not_mirrored(self):
        record = SourceRecord(
            id="page-1", external_key="BUG-1", title="Crash on start", status="Open", description="new"
        )
        assert not _tracked().differs_from(record)


class TestArtifactContent:
    def test_from_record(self):
        record = SourceRecord(id="page-1", title="Crash", status="Fixed", url="https://www.notion.so/x")
        content = ArtifactContent.from_record(record, is_update=True)
        assert content.record_id == "page-1"
        assert content.status == "Fixed"
        assert content.is_update
        assert not content.removed

    def test_removed_marker(self):
        content = ArtifactContent.removed_marker(_tracked())
        assert content.removed
        assert content.record_id == "page-1"


class TestLedgerIndex:
    def test_empty(self):
        index = LedgerIndex()
        assert index.connections == {}
        assert index.tracked == []
        assert index.next_connection_id == 1

    def test_serialization_roundtrip(self):
        index = LedgerIndex(
            connections={"1": Connection(id=1, source_database_id="a" * 32, sink_channel_id="1", name="Bugs")},
            tracked=[_tracked()],
            next_connection_id=2,
        )
        restored = LedgerIndex.model_validate_json(index.model_dump_json())
        assert restored.connections["1"].name == "Bugs"
        assert restored.tracked[0].external_key == "BUG-1"
        assert restored.next_connection_id == 2
