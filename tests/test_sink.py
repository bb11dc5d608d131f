"""Tests for issue_bridge.sink rendering and discord.py error mapping."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from issue_bridge.models import ArtifactContent
from issue_bridge.sink import (
    DiscordSink,
    SinkError,
    SinkNotFound,
    SinkPermissionDenied,
    build_embed,
    build_view,
    parse_status_button_id,
    status_button_id,
)


def _content(**overrides) -> ArtifactContent:
    defaults = {
        "record_id": "0123456789abcdef0123456789abcdef",
        "title": "Crash on start",
        "status": "Open",
        "external_key": "BUG-12",
        "description": "Steps to reproduce",
        "url": "https://www.notion.so/page",
    }
    defaults.update(overrides)
    return ArtifactContent(**defaults)


def _http_error(cls, status: int, text: str):
    response = MagicMock(status=status, reason=text)
    return cls(response, text)


async def _aiter(items):
    for item in items:
        yield item


def _sink_with_channel():
    channel = MagicMock(spec=discord.TextChannel)
    client = MagicMock()
    client.get_channel.return_value = channel
    return DiscordSink(client), channel


class TestButtonIds:
    def test_round_trip(self):
        assert parse_status_button_id(status_button_id("Fixed")) == "Fixed"

    def test_foreign_ids(self):
        assert parse_status_button_id("something:else") is None
        assert parse_status_button_id(None) is None
        assert parse_status_button_id("issue:status:") is None


class TestBuildEmbed:
    def test_new_issue(self):
        embed = build_embed(_content())
        assert embed.title == "\N{SQUARED NEW} Crash on start"
        assert embed.colour.value == 0xFF9900
        assert [(f.name, f.value) for f in embed.fields] == [("Status", "Open"), ("Issue ID", "BUG-12")]
        assert embed.url == "https://www.notion.so/page"

    def test_updated_fixed_issue(self):
        embed = build_embed(_content(status="Fixed", is_update=True))
        assert embed.title.startswith("\N{ANTICLOCKWISE DOWNWARDS AND UPWARDS OPEN CIRCLE ARROWS}")
        assert embed.colour.value == 0x00FF00

    def test_other_status_colour(self):
        assert build_embed(_content(status="In Progress")).colour.value == 0x0099FF

    def test_issue_id_falls_back_to_page_id_suffix(self):
        embed = build_embed(_content(external_key=None))
        assert embed.fields[1].value == "89abcdef"

    def test_long_description_truncated(self):
        embed = build_embed(_content(description="x" * 250))
        assert embed.description == "x" * 200 + "..."

    def test_removed_marker(self):
        embed = build_embed(_content(removed=True))
        assert "[DELETED]" in embed.title
        assert embed.colour.value == 0x808080
        assert embed.fields == []


class TestBuildView:
    @pytest.mark.asyncio
    async def test_current_status_button_disabled(self):
        view = build_view(_content(status="Open"))
        buttons = {b.custom_id: b for b in view.children}
        assert buttons["issue:status:Open"].disabled
        assert not buttons["issue:status:Fixed"].disabled
        assert view.timeout is None

    @pytest.mark.asyncio
    async def test_removed_has_no_buttons(self):
        assert build_view(_content(removed=True)) is None


class TestDiscordSink:
    @pytest.mark.asyncio
    async def test_create_returns_message_id(self):
        sink, channel = _sink_with_channel()
        channel.send = AsyncMock(return_value=MagicMock(id=987654321))

        message_id = await sink.create_artifact("111", _content())

        assert message_id == "987654321"
        kwargs = channel.send.await_args.kwargs
        assert isinstance(kwargs["embed"], discord.Embed)
        assert isinstance(kwargs["view"], discord.ui.View)

    @pytest.mark.asyncio
    async def test_delete_not_found(self):
        sink, channel = _sink_with_channel()
        message = MagicMock()
        message.delete = AsyncMock(side_effect=_http_error(discord.NotFound, 404, "Unknown Message"))
        channel.get_partial_message.return_value = message

        with pytest.raises(SinkNotFound):
            await sink.delete_artifact("111", "222")
        channel.get_partial_message.assert_called_once_with(222)

    @pytest.mark.asyncio
    async def test_delete_forbidden(self):
        sink, channel = _sink_with_channel()
        message = MagicMock()
        message.delete = AsyncMock(side_effect=_http_error(discord.Forbidden, 403, "Missing Permissions"))
        channel.get_partial_message.return_value = message

        with pytest.raises(SinkPermissionDenied):
            await sink.delete_artifact("111", "222")

    @pytest.mark.asyncio
    async def test_edit_other_http_error(self):
        sink, channel = _sink_with_channel()
        message = MagicMock()
        message.edit = AsyncMock(side_effect=_http_error(discord.HTTPException, 500, "Server Error"))
        channel.get_partial_message.return_value = message

        with pytest.raises(SinkError) as exc_info:
            await sink.edit_artifact("111", "222", _content())
        assert not isinstance(exc_info.value, (SinkNotFound, SinkPermissionDenied))

    @pytest.mark.asyncio
    async def test_list_artifacts_pages_with_cursor(self):
        sink, channel = _sink_with_channel()
        created = datetime(2025, 1, 1, tzinfo=timezone.utc)
        messages = [MagicMock(id=300, created_at=created), MagicMock(id=200, created_at=created)]
        channel.history = MagicMock(return_value=_aiter(messages))

        page = await sink.list_artifacts("111", cursor="400", limit=2)

        assert [item.id for item in page.items] == ["300", "200"]
        assert page.has_more
        assert page.next_cursor == "200"
        kwargs = channel.history.call_args.kwargs
        assert kwargs["limit"] == 2
        assert kwargs["before"].id == 400

    @pytest.mark.asyncio
    async def test_missing_bulk_permissions(self):
        sink, channel = _sink_with_channel()
        channel.guild = MagicMock()
        channel.permissions_for.return_value = discord.Permissions(
            view_channel=True, read_message_history=True
        )

        assert await sink.missing_bulk_permissions("111") == ["Manage Messages"]

    @pytest.mark.asyncio
    async def test_unknown_channel(self):
        client = MagicMock()
        client.get_channel.return_value = None
        client.fetch_channel = AsyncMock(side_effect=_http_error(discord.NotFound, 404, "Unknown Channel"))

        with pytest.raises(SinkNotFound):
            await DiscordSink(client).create_artifact("111", _content())
