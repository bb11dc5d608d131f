"""CLI entry point for Issue Bridge."""

from __future__ import annotations

import asyncio
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )
    # discord.py and httpx are chatty at INFO
    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    envvar="ISSUE_BRIDGE_DATA_DIR",
    default=None,
    help="Override the default data directory (~/.issue-bridge).",
)
@click.option("--log-level", default=None, help="Logging level (default INFO).")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, log_level: str | None) -> None:
    """Issue Bridge - mirror Notion issue databases into Discord channels."""
    ctx.ensure_object(dict)
    if data_dir:
        ctx.obj["data_dir"] = data_dir
    if log_level:
        ctx.obj["log_level"] = log_level

    from issue_bridge.config import load_config

    _setup_logging(load_config(**ctx.obj).log_level)


def _make_source(config):
    from issue_bridge.notion import NotionClient

    return NotionClient(
        config.require_notion_token(),
        api_base=config.notion_api_base,
        notion_version=config.notion_version,
    )


@main.command()
@click.option("--host", default=None, help="Dashboard host (default from config).")
@click.option("--port", default=None, type=int, help="Dashboard port (default from config).")
@click.option("--no-dashboard", is_flag=True, help="Run the bot without the dashboard API.")
@click.pass_context
def run(ctx: click.Context, host: str | None, port: int | None, no_dashboard: bool) -> None:
    """Run the Discord bot, periodic sync and dashboard API."""
    from issue_bridge.config import load_config

    config = load_config(**ctx.obj)
    try:
        config.require_discord_token()
        config.require_notion_token()
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    try:
        asyncio.run(_run(config, host or config.web_host, port or config.web_port, no_dashboard))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


async def _run(config, host: str, port: int, no_dashboard: bool) -> None:
    import uvicorn

    from issue_bridge.bot import IssueBridgeBot
    from issue_bridge.storage import StorageManager
    from issue_bridge.web.app import create_app

    config.ensure_dirs()
    bot = IssueBridgeBot(config, StorageManager(config), _make_source(config))

    async with bot:
        tasks = [bot.start(config.require_discord_token())]
        if not no_dashboard:
            app = create_app(config, bridge=bot.bridge)
            server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
            console.print(f"Dashboard at [bold]http://{host}:{port}[/bold]")
            tasks.append(server.serve())
        console.print(f"Polling every {config.poll_interval_minutes:g} minutes. Press Ctrl+C to stop.\n")
        await asyncio.gather(*tasks)


@main.command()
@click.option("--host", default=None, help="Host to bind to.")
@click.option("--port", default=None, type=int, help="Port to listen on.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the dashboard API only (sync and clear are unavailable)."""
    import uvicorn

    from issue_bridge.config import load_config
    from issue_bridge.web.app import create_app

    config = load_config(**ctx.obj)
    config.ensure_dirs()
    app = create_app(config)
    host = host or config.web_host
    port = port or config.web_port

    console.print(f"Starting Issue Bridge dashboard at [bold]http://{host}:{port}[/bold]")
    console.print("Press Ctrl+C to stop.\n")

    uvicorn.run(app, host=host, port=port, log_level="info")


@main.command()
@click.option("--connection", "connection_id", type=int, help="Sync only one connection.")
@click.pass_context
def sync(ctx: click.Context, connection_id: int | None) -> None:
    """Run one reconciliation pass now, without starting the bot."""
    asyncio.run(_sync(ctx.obj, connection_id))


async def _sync(obj: dict, connection_id: int | None) -> None:
    import discord

    from issue_bridge.bridge import Bridge, BridgeContext
    from issue_bridge.config import load_config
    from issue_bridge.sink import DiscordSink
    from issue_bridge.storage import StorageManager

    config = load_config(**obj)
    try:
        token = config.require_discord_token()
        source = _make_source(config)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        return

    storage = StorageManager(config)
    connections = storage.list_connections()
    if connection_id is not None:
        connections = [c for c in connections if c.id == connection_id]
    if not connections:
        console.print("[dim]No active connections to sync.[/dim]")
        return

    # REST only; no gateway connection is needed to post and edit messages.
    client = discord.Client(intents=discord.Intents.none())
    await client.login(token)
    try:
        bridge = Bridge(BridgeContext(config=config, storage=storage, source=source, sink=DiscordSink(client)))
        reports = [await bridge.sync_connection(c) for c in connections]
    finally:
        await client.close()

    table = Table(title="Sync results")
    for column in ("Connection", "Created", "Updated", "Retired", "Unchanged", "Failed"):
        table.add_column(column, justify="right" if column != "Connection" else "left")
    for report in reports:
        if report.skipped:
            table.add_row(str(report.connection_id), f"[yellow]skipped: {report.skip_reason}[/yellow]", "", "", "", "")
            continue
        table.add_row(
            str(report.connection_id),
            str(report.created),
            str(report.updated),
            str(report.retired),
            str(report.unchanged),
            str(report.failed),
        )
    console.print(table)

    for report in reports:
        for warning in report.warnings:
            console.print(f"[yellow]- {warning}[/yellow]")
        for error in report.errors:
            console.print(f"[red]- {error}[/red]")


@main.group()
def connections() -> None:
    """Manage Notion database -> Discord channel connections."""


@connections.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include deactivated connections.")
@click.pass_context
def list_connections(ctx: click.Context, show_all: bool) -> None:
    """List connections."""
    from issue_bridge.config import load_config
    from issue_bridge.storage import StorageManager

    config = load_config(**ctx.obj)
    storage = StorageManager(config)
    rows = storage.list_connections(active_only=not show_all)

    if not rows:
        console.print("[dim]No connections found.[/dim]")
        return

    table = Table(title="Connections", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", max_width=40)
    table.add_column("Notion database", no_wrap=True)
    table.add_column("Discord channel", no_wrap=True)
    table.add_column("Last checked", no_wrap=True)
    table.add_column("Active", justify="center")

    for c in rows:
        table.add_row(
            str(c.id),
            c.name,
            c.source_database_id,
            c.sink_channel_id,
            c.last_checked_at.strftime("%Y-%m-%d %H:%M") if c.last_checked_at else "-",
            "Y" if c.active else "-",
        )

    console.print(table)


@connections.command("add")
@click.argument("database")
@click.argument("channel_id")
@click.option("--name", help="Display name (default: the database title).")
@click.pass_context
def add_connection(ctx: click.Context, database: str, channel_id: str, name: str | None) -> None:
    """Connect a Notion DATABASE (id or URL) to a Discord CHANNEL_ID."""
    asyncio.run(_add_connection(ctx.obj, database, channel_id, name))


async def _add_connection(obj: dict, database: str, channel_id: str, name: str | None) -> None:
    from issue_bridge.bridge import describe_source_error
    from issue_bridge.config import load_config
    from issue_bridge.notion import SourceError, clean_database_id
    from issue_bridge.storage import DuplicateRecord, StorageManager

    config = load_config(**obj)
    database_id = clean_database_id(database)
    if database_id is None:
        console.print(f"[red]Invalid Notion database ID:[/red] {database}")
        return

    try:
        source = _make_source(config)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        return

    try:
        info = await source.describe_database(database_id)
    except SourceError as e:
        console.print(f"[red]Cannot access database:[/red] {describe_source_error(e)}")
        return

    storage = StorageManager(config)
    try:
        connection = storage.add_connection(database_id, channel_id.strip(), name or info.title)
    except DuplicateRecord as e:
        console.print(f"[yellow]{e}[/yellow]")
        return

    console.print(f"[green]Connection {connection.id} added:[/green] {connection.name} -> {connection.sink_channel_id}")


@connections.command("remove")
@click.argument("connection_id", type=int)
@click.option("--hard", is_flag=True, help="Delete the connection and its tracked issues instead of deactivating it.")
@click.confirmation_option(prompt="Are you sure you want to remove this connection?")
@click.pass_context
def remove_connection(ctx: click.Context, connection_id: int, hard: bool) -> None:
    """Remove a connection."""
    from issue_bridge.config import load_config
    from issue_bridge.storage import StorageManager

    config = load_config(**ctx.obj)
    storage = StorageManager(config)

    if storage.delete_connection(connection_id, hard=hard):
        console.print(f"[green]Connection {connection_id} removed.[/green]")
    else:
        console.print(f"[red]Connection {connection_id} not found.[/red]")


@main.command()
@click.option("--connection", "connection_id", type=int, help="Only one connection.")
@click.pass_context
def tracked(ctx: click.Context, connection_id: int | None) -> None:
    """List tracked issues of active connections."""
    from issue_bridge.config import load_config
    from issue_bridge.storage import StorageManager

    config = load_config(**ctx.obj)
    storage = StorageManager(config)
    rows = storage.list_tracked_for_active()
    if connection_id is not None:
        rows = [r for r in rows if r.connection_id == connection_id]

    if not rows:
        console.print("[dim]No tracked issues.[/dim]")
        return

    table = Table(title="Tracked issues")
    table.add_column("Conn", style="cyan", justify="right")
    table.add_column("Issue", no_wrap=True)
    table.add_column("Title", max_width=50)
    table.add_column("Status", style="green")
    table.add_column("Message", no_wrap=True)

    for r in rows:
        table.add_row(
            str(r.connection_id),
            r.external_key or r.source_record_id[-8:],
            r.title[:50] + ("..." if len(r.title) > 50 else ""),
            r.status,
            r.sink_artifact_id,
        )

    console.print(table)
    console.print(f"\n[dim]Total: {len(rows)} issues[/dim]")
