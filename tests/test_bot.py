"""Tests for the Discord bot's interaction handling."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from conftest import FakeSink, make_record
from issue_bridge.bot import IssueBridgeBot, summarize_reports
from issue_bridge.models import TrackedArtifact
from issue_bridge.notion import SourceUnavailable
from issue_bridge.reconcile import SyncReport
from issue_bridge.storage import RecordStoreError


def _interaction(custom_id: str | None = None) -> MagicMock:
    interaction = MagicMock()
    interaction.type = discord.InteractionType.component
    interaction.data = {"custom_id": custom_id}
    interaction.message.id = 2001
    interaction.response.defer = AsyncMock()
    interaction.followup.send = AsyncMock()
    return interaction


@pytest.fixture
def bot(config, storage, source):
    bot = IssueBridgeBot(config, storage, source)
    bot.bridge.context.sink = FakeSink()
    return bot


@pytest.fixture
def tracked(connection, storage, source):
    source.records = [make_record("page-1", key="BUG-1")]
    return storage.add_tracked(
        TrackedArtifact(
            source_record_id="page-1",
            sink_artifact_id="2001",
            connection_id=connection.id,
            title="Crash on start",
            status="Open",
            external_key="BUG-1",
        )
    )


class TestSummarizeReports:
    def test_empty(self):
        assert summarize_reports([]) == "No active connections."

    def test_lines(self):
        done = SyncReport(connection_id=1, created=2, updated=1, retired=0, failed=1)
        skipped = SyncReport(connection_id=2, skipped=True, skip_reason="sync_already_in_progress")
        text = summarize_reports([done, skipped])
        assert "Connection 1: 2 new, 1 updated, 0 removed, 1 failed" in text
        assert "Connection 2: skipped (sync_already_in_progress)" in text


class TestStatusButtons:
    @pytest.mark.asyncio
    async def test_click_writes_status(self, bot, tracked, source):
        interaction = _interaction("issue:status:Fixed")

        await bot.on_interaction(interaction)

        assert source.writes == [("page-1", "Fixed")]
        interaction.response.defer.assert_awaited_once()
        message = interaction.followup.send.await_args.args[0]
        assert "marked as Fixed" in message

    @pytest.mark.asyncio
    async def test_click_on_untracked_message(self, bot, source):
        interaction = _interaction("issue:status:Fixed")

        await bot.on_interaction(interaction)

        assert source.writes == []
        assert "no longer tracked" in interaction.followup.send.await_args.args[0]

    @pytest.mark.asyncio
    async def test_notion_failure_is_reported(self, bot, tracked, source, storage):
        source.fail_write = SourceUnavailable("Notion is down", 503)
        interaction = _interaction("issue:status:Fixed")

        await bot.on_interaction(interaction)

        assert "Failed to update" in interaction.followup.send.await_args.args[0]
        assert storage.get_tracked_by_artifact_id("2001").status == "Open"

    @pytest.mark.asyncio
    async def test_other_components_ignored(self, bot):
        interaction = _interaction("something:else")

        await bot.on_interaction(interaction)

        interaction.response.defer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_failure_is_answered(self, bot, tracked, source, storage, monkeypatch):
        def broken_update(artifact_id, **fields):
            raise RecordStoreError("disk full")

        monkeypatch.setattr(storage, "update_tracked", broken_update)
        interaction = _interaction("issue:status:Fixed")

        await bot.on_interaction(interaction)

        assert source.writes == [("page-1", "Fixed")]
        assert "could not save it locally" in interaction.followup.send.await_args.args[0]
