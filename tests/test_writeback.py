"""Tests for issue_bridge.writeback."""

from __future__ import annotations

import pytest

from conftest import FakeSource, make_record
from issue_bridge.models import TrackedArtifact
from issue_bridge.notion import SourceUnavailable
from issue_bridge.sink import SinkPermissionDenied
from issue_bridge.writeback import ArtifactNotFound, apply_status_change


@pytest.fixture
def tracked_message(connection, storage, source):
    source.records = [make_record("page-1", key="BUG-1")]
    storage.add_tracked(
        TrackedArtifact(
            source_record_id="page-1",
            sink_artifact_id="2001",
            connection_id=connection.id,
            title="Crash on start",
            status="Open",
            external_key="BUG-1",
        )
    )
    return "2001"


class TestApplyStatusChange:
    @pytest.mark.asyncio
    async def test_unknown_message_raises_without_source_write(self, storage, sink, source):
        with pytest.raises(ArtifactNotFound):
            await apply_status_change("999", "Fixed", storage=storage, source=source, sink=sink)
        assert source.writes == []
        assert sink.calls == 0

    @pytest.mark.asyncio
    async def test_writes_source_then_row_then_message(self, storage, sink, source, tracked_message):
        row = await apply_status_change(tracked_message, "Fixed", storage=storage, source=source, sink=sink)

        assert source.writes == [("page-1", "Fixed")]
        assert row.status == "Fixed"
        assert storage.get_tracked_by_artifact_id(tracked_message).status == "Fixed"
        edited_id, content = sink.edited[-1]
        assert edited_id == tracked_message
        assert content.status == "Fixed"
        assert content.is_update

    @pytest.mark.asyncio
    async def test_source_failure_changes_nothing(self, storage, sink, source, tracked_message):
        source.fail_write = SourceUnavailable("Notion is down", 503)

        with pytest.raises(SourceUnavailable):
            await apply_status_change(tracked_message, "Fixed", storage=storage, source=source, sink=sink)

        assert storage.get_tracked_by_artifact_id(tracked_message).status == "Open"
        assert sink.edited == []

    @pytest.mark.asyncio
    async def test_failed_edit_still_commits_row(self, storage, sink, source, tracked_message):
        sink.fail_edit[tracked_message] = SinkPermissionDenied("cannot edit")

        row = await apply_status_change(tracked_message, "Fixed", storage=storage, source=source, sink=sink)

        assert row.status == "Fixed"
        assert storage.get_tracked_by_artifact_id(tracked_message).status == "Fixed"

    @pytest.mark.asyncio
    async def test_row_retired_during_source_write(self, storage, sink, tracked_message):
        class RetiringSource(FakeSource):
            async def write_status(self, record_id, status):
                storage.remove_tracked(tracked_message)
                return await super().write_status(record_id, status)

        source = RetiringSource([make_record("page-1", key="BUG-1")])

        with pytest.raises(ArtifactNotFound):
            await apply_status_change(tracked_message, "Fixed", storage=storage, source=source, sink=sink)

        assert source.writes == [("page-1", "Fixed")]
        assert sink.edited == []
