"""Discord sink adapter: renders issues as messages with status buttons."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

import discord

from issue_bridge.models import ArtifactContent

logger = logging.getLogger(__name__)

STATUS_BUTTON_PREFIX = "issue:status:"
DESCRIPTION_LIMIT = 200

# (status written back, label, emoji, style)
STATUS_ACTIONS = (
    ("Open", "Mark as Open", "\N{OPEN LOCK}", discord.ButtonStyle.secondary),
    ("Fixed", "Mark as Fixed", "\N{WHITE HEAVY CHECK MARK}", discord.ButtonStyle.success),
)

BULK_PERMISSIONS = (
    ("view_channel", "View Channel"),
    ("read_message_history", "Read Message History"),
    ("manage_messages", "Manage Messages"),
)


class SinkError(RuntimeError):
    """Raised when a Discord operation fails."""


class SinkPermissionDenied(SinkError):
    """The bot lacks the permission needed for the operation."""


class SinkNotFound(SinkError):
    """The channel or message no longer exists."""


@dataclass
class ArtifactSummary:
    id: str
    created_at: datetime


@dataclass
class ArtifactPage:
    items: list[ArtifactSummary] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


def status_button_id(status: str) -> str:
    return f"{STATUS_BUTTON_PREFIX}{status}"


def parse_status_button_id(custom_id: str | None) -> str | None:
    """Return the status a button sets, or None if it is not a status button."""
    if not custom_id or not custom_id.startswith(STATUS_BUTTON_PREFIX):
        return None
    return custom_id[len(STATUS_BUTTON_PREFIX):] or None


def status_colour(status: str) -> discord.Colour:
    if status == "Fixed":
        return discord.Colour(0x00FF00)
    if status == "Open":
        return discord.Colour(0xFF9900)
    return discord.Colour(0x0099FF)


def build_embed(content: ArtifactContent) -> discord.Embed:
    if content.removed:
        return discord.Embed(
            title="\N{WASTEBASKET} [DELETED] Issue Removed",
            description="This issue has been removed from the tracker.",
            colour=discord.Colour(0x808080),
        )

    marker = "\N{ANTICLOCKWISE DOWNWARDS AND UPWARDS OPEN CIRCLE ARROWS}" if content.is_update else "\N{SQUARED NEW}"
    embed = discord.Embed(
        title=f"{marker} {content.title}"[:256],
        colour=status_colour(content.status),
        url=content.url or None,
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(name="Status", value=content.status or "-", inline=True)
    embed.add_field(
        name="Issue ID",
        value=content.external_key or content.record_id[-8:],
        inline=True,
    )
    if content.description:
        text = content.description[:DESCRIPTION_LIMIT]
        if len(content.description) > DESCRIPTION_LIMIT:
            text += "..."
        embed.description = text
    return embed


def build_view(content: ArtifactContent) -> discord.ui.View | None:
    """Status buttons for an issue message; the button for the current status is disabled."""
    if content.removed:
        return None
    view = discord.ui.View(timeout=None)
    for status, label, emoji, style in STATUS_ACTIONS:
        view.add_item(
            discord.ui.Button(
                custom_id=status_button_id(status),
                label=label,
                emoji=emoji,
                style=style,
                disabled=content.status == status,
            )
        )
    return view


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except discord.Forbidden as exc:
        raise SinkPermissionDenied(f"Missing permissions to {action}: {exc}") from exc
    except discord.NotFound as exc:
        raise SinkNotFound(f"Not found while trying to {action}: {exc}") from exc
    except (discord.HTTPException, discord.ClientException) as exc:
        raise SinkError(f"Failed to {action}: {exc}") from exc


class DiscordSink:
    """Sink operations backed by a logged-in discord.py client."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def _channel(self, channel_id: str) -> discord.TextChannel:
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            with _translate_errors(f"fetch channel {channel_id}"):
                channel = await self.client.fetch_channel(int(channel_id))
        if not isinstance(channel, discord.abc.Messageable):
            raise SinkError(f"Channel {channel_id} cannot hold messages")
        return channel  # type: ignore[return-value]

    async def channel_name(self, channel_id: str) -> str:
        channel = await self._channel(channel_id)
        return getattr(channel, "name", None) or channel_id

    async def create_artifact(self, channel_id: str, content: ArtifactContent) -> str:
        channel = await self._channel(channel_id)
        view = build_view(content)
        with _translate_errors(f"send message to {channel_id}"):
            if view is None:
                message = await channel.send(embed=build_embed(content))
            else:
                message = await channel.send(embed=build_embed(content), view=view)
        logger.info("Sent message %s for %s", message.id, content.title)
        return str(message.id)

    async def edit_artifact(self, channel_id: str, artifact_id: str, content: ArtifactContent) -> None:
        channel = await self._channel(channel_id)
        message = channel.get_partial_message(int(artifact_id))
        with _translate_errors(f"edit message {artifact_id}"):
            await message.edit(embed=build_embed(content), view=build_view(content))

    async def delete_artifact(self, channel_id: str, artifact_id: str) -> None:
        channel = await self._channel(channel_id)
        message = channel.get_partial_message(int(artifact_id))
        with _translate_errors(f"delete message {artifact_id}"):
            await message.delete()

    async def list_artifacts(
        self,
        channel_id: str,
        cursor: str | None = None,
        limit: int = 100,
    ) -> ArtifactPage:
        """One page of channel messages, newest first, older than ``cursor``."""
        channel = await self._channel(channel_id)
        before = discord.Object(id=int(cursor)) if cursor else None
        with _translate_errors(f"read history of {channel_id}"):
            messages = [m async for m in channel.history(limit=limit, before=before)]
        items = [ArtifactSummary(id=str(m.id), created_at=m.created_at) for m in messages]
        return ArtifactPage(
            items=items,
            has_more=len(items) == limit,
            next_cursor=items[-1].id if items else None,
        )

    async def bulk_delete_artifacts(self, channel_id: str, artifact_ids: list[str]) -> None:
        channel = await self._channel(channel_id)
        with _translate_errors(f"bulk delete {len(artifact_ids)} messages"):
            await channel.delete_messages([discord.Object(id=int(i)) for i in artifact_ids])

    async def missing_bulk_permissions(self, channel_id: str) -> list[str]:
        """Names of the permissions bulk deletion needs that the bot lacks."""
        channel = await self._channel(channel_id)
        guild = getattr(channel, "guild", None)
        if guild is None or guild.me is None:
            return [label for _, label in BULK_PERMISSIONS]
        permissions = channel.permissions_for(guild.me)
        return [label for attr, label in BULK_PERMISSIONS if not getattr(permissions, attr)]
