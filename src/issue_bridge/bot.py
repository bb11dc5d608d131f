"""Discord bot runtime: slash commands, status buttons and the poll loop."""

from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import tasks

from issue_bridge.bridge import Bridge, BridgeContext
from issue_bridge.config import Config
from issue_bridge.confirmation import ConfirmationError, ConfirmationRegistry, ConfirmationState
from issue_bridge.notion import NotionClient, SourceError
from issue_bridge.reconcile import SyncReport
from issue_bridge.sink import DiscordSink, parse_status_button_id
from issue_bridge.storage import RecordStoreError, StorageManager
from issue_bridge.writeback import ArtifactNotFound

logger = logging.getLogger(__name__)


def summarize_reports(reports: list[SyncReport]) -> str:
    if not reports:
        return "No active connections."
    lines = []
    for report in reports:
        if report.skipped:
            lines.append(f"Connection {report.connection_id}: skipped ({report.skip_reason})")
            continue
        line = (
            f"Connection {report.connection_id}: {report.created} new, "
            f"{report.updated} updated, {report.retired} removed"
        )
        if report.failed or report.errors:
            line += f", {report.failed or len(report.errors)} failed"
        lines.append(line)
    return "\n".join(lines)


class ClearConfirmView(discord.ui.View):
    """Yes/No buttons for /clear-channel, answered only by the requester."""

    def __init__(self, registry: ConfirmationRegistry, request_id: str, timeout: float) -> None:
        super().__init__(timeout=timeout)
        self.registry = registry
        self.request_id = request_id

    async def _answer(self, interaction: discord.Interaction, confirmed: bool) -> None:
        try:
            state = self.registry.resolve(self.request_id, str(interaction.user.id), confirmed)
        except ConfirmationError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        for item in self.children:
            item.disabled = True  # type: ignore[attr-defined]
        labels = {
            ConfirmationState.CONFIRMED: "Clearing channels...",
            ConfirmationState.CANCELLED: "Channel clear cancelled.",
            ConfirmationState.TIMED_OUT: "Confirmation timed out.",
        }
        await interaction.response.edit_message(content=labels.get(state, state.value), view=self)
        self.stop()

    @discord.ui.button(label="Yes, delete everything", style=discord.ButtonStyle.danger)
    async def confirm(self, interaction: discord.Interaction, button: discord.ui.Button) -> None:
        await self._answer(interaction, True)

    @discord.ui.button(label="Cancel", style=discord.ButtonStyle.secondary)
    async def cancel(self, interaction: discord.Interaction, button: discord.ui.Button) -> None:
        await self._answer(interaction, False)


class IssueBridgeBot(discord.Client):
    def __init__(self, config: Config, storage: StorageManager, source: NotionClient) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        super().__init__(intents=intents)
        self.config = config
        self.tree = app_commands.CommandTree(self)
        self.bridge = Bridge(
            BridgeContext(config=config, storage=storage, source=source, sink=DiscordSink(self))
        )
        self.confirmations = ConfirmationRegistry(timeout=config.confirm_timeout_seconds)
        self._register_commands()

    async def setup_hook(self) -> None:
        self.poll_loop.change_interval(minutes=self.config.poll_interval_minutes)
        await self.tree.sync()
        self.poll_loop.start()

    async def on_ready(self) -> None:
        logger.info("Logged in as %s", self.user)

    async def close(self) -> None:
        if self.poll_loop.is_running():
            self.poll_loop.cancel()
        await super().close()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    @tasks.loop(minutes=2)
    async def poll_loop(self) -> None:
        try:
            await self.bridge.sync_all()
        except Exception:
            logger.exception("Scheduled sync failed")

    @poll_loop.before_loop
    async def before_poll_loop(self) -> None:
        await self.wait_until_ready()

    # ------------------------------------------------------------------
    # Status buttons
    # ------------------------------------------------------------------

    async def on_interaction(self, interaction: discord.Interaction) -> None:
        if interaction.type is not discord.InteractionType.component:
            return
        status = parse_status_button_id((interaction.data or {}).get("custom_id"))
        if status is None or interaction.message is None:
            return
        await self.handle_status_click(interaction, str(interaction.message.id), status)

    async def handle_status_click(
        self,
        interaction: discord.Interaction,
        artifact_id: str,
        status: str,
    ) -> None:
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            artifact = await self.bridge.set_status(artifact_id, status)
        except ArtifactNotFound:
            await interaction.followup.send("This issue is no longer tracked.", ephemeral=True)
            return
        except SourceError as exc:
            logger.warning("Status write for message %s failed: %s", artifact_id, exc)
            await interaction.followup.send(
                "Failed to update the issue in Notion. Please try again later.", ephemeral=True
            )
            return
        except RecordStoreError as exc:
            logger.error("Status for message %s saved in Notion but not locally: %s", artifact_id, exc)
            await interaction.followup.send(
                "The issue was updated in Notion, but the bot could not save it locally.",
                ephemeral=True,
            )
            return
        logger.info("%s set %s to %s", interaction.user, artifact.matching_key, status)
        await interaction.followup.send(f"Issue **{artifact.title}** marked as {status}.", ephemeral=True)

    # ------------------------------------------------------------------
    # Slash commands
    # ------------------------------------------------------------------

    def _register_commands(self) -> None:
        bridge = self.bridge

        @self.tree.command(name="sync-now", description="Check Notion for issue changes right away")
        async def sync_now(interaction: discord.Interaction) -> None:
            await interaction.response.defer(thinking=True)
            reports = await bridge.sync_all()
            await interaction.followup.send(summarize_reports(reports))

        @self.tree.command(name="list-connections", description="Show the Notion databases being mirrored")
        async def list_connections(interaction: discord.Interaction) -> None:
            connections = bridge.storage.list_connections()
            if not connections:
                await interaction.response.send_message("No active connections.", ephemeral=True)
                return
            lines = [
                f"**{c.id}. {c.name}** -> <#{c.sink_channel_id}> "
                f"(last checked {c.last_checked_at:%Y-%m-%d %H:%M} UTC)"
                if c.last_checked_at
                else f"**{c.id}. {c.name}** -> <#{c.sink_channel_id}> (never checked)"
                for c in connections
            ]
            await interaction.response.send_message("\n".join(lines), ephemeral=True)

        @self.tree.command(name="bot-status", description="Show bridge status")
        async def bot_status(interaction: discord.Interaction) -> None:
            connections = bridge.storage.list_connections()
            tracked = bridge.storage.list_tracked_for_active()
            last_sync = f"{bridge.last_sync_at:%Y-%m-%d %H:%M:%S} UTC" if bridge.last_sync_at else "never"
            embed = discord.Embed(title="Issue Bridge status", colour=discord.Colour.blurple())
            embed.add_field(name="Connections", value=str(len(connections)))
            embed.add_field(name="Tracked issues", value=str(len(tracked)))
            embed.add_field(name="Last sync", value=last_sync, inline=False)
            embed.add_field(
                name="Polling",
                value=f"every {self.config.poll_interval_minutes:g} min"
                if self.poll_loop.is_running()
                else "stopped",
                inline=False,
            )
            await interaction.response.send_message(embed=embed, ephemeral=True)

        @self.tree.command(name="clear-channel", description="Delete all messages in mirrored channels and resync")
        @app_commands.default_permissions(manage_messages=True)
        @app_commands.checks.has_permissions(manage_messages=True)
        async def clear_channel(interaction: discord.Interaction) -> None:
            await self.run_clear(interaction)

        @clear_channel.error
        async def clear_channel_error(
            interaction: discord.Interaction, error: app_commands.AppCommandError
        ) -> None:
            if isinstance(error, app_commands.MissingPermissions):
                await interaction.response.send_message(
                    "You need the Manage Messages permission to clear channels.", ephemeral=True
                )
                return
            logger.error("clear-channel failed: %s", error)

    async def run_clear(self, interaction: discord.Interaction) -> None:
        connections = self.bridge.storage.list_connections()
        if not connections:
            await interaction.response.send_message("No active connections to clear.", ephemeral=True)
            return

        request = self.confirmations.open(str(interaction.user.id))
        view = ClearConfirmView(self.confirmations, request.request_id, self.confirmations.timeout)
        channels = ", ".join(f"<#{c.sink_channel_id}>" for c in connections)
        await interaction.response.send_message(
            f"This deletes **every** message in {channels} and reposts open issues. Continue?",
            view=view,
            ephemeral=True,
        )

        state = await self.confirmations.wait(request.request_id)
        if state is not ConfirmationState.CONFIRMED:
            if state is ConfirmationState.TIMED_OUT:
                view.stop()
                await interaction.edit_original_response(content="Confirmation timed out.", view=None)
            return

        report = await self.bridge.clear_channels(connections)
        lines = [f"Removed {report.total_removed} messages."]
        for channel in report.channels:
            if channel.error:
                lines.append(f"#{channel.name}: {channel.error}")
            else:
                lines.append(f"#{channel.name}: {channel.deleted_count} deleted")
        await interaction.followup.send("\n".join(lines), ephemeral=True)
