"""JSON routes for the Issue Bridge dashboard."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from issue_bridge.config import Config
from issue_bridge.notion import NotionClient, SourceError, clean_database_id
from issue_bridge.storage import DuplicateRecord, StorageManager

if TYPE_CHECKING:
    from issue_bridge.bridge import Bridge

logger = logging.getLogger(__name__)

_CHANNEL_ID_RE = re.compile(r"^\d{15,25}$")


class ConnectionRequest(BaseModel):
    notion_database_id: str
    discord_channel_id: str
    name: str | None = None


class NotionCheckRequest(BaseModel):
    database_id: str


class ClearRequest(BaseModel):
    connection_ids: list[int] | None = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _source_error(exc: SourceError) -> JSONResponse:
    if exc.status_code == 401:
        return _error(401, "Invalid Notion API key.")
    if exc.status_code == 404:
        return _error(404, "Database not found. Make sure it is shared with your integration.")
    return _error(502, f"Notion request failed: {exc}")


def create_router(config: Config, bridge: Bridge | None = None, source: Any = None) -> APIRouter:
    """Create the router with all dashboard endpoints."""
    router = APIRouter()
    storage = bridge.storage if bridge is not None else StorageManager(config)

    if source is None and bridge is not None:
        source = bridge.context.source
    if source is None and config.notion_token:
        source = NotionClient(
            config.notion_token,
            api_base=config.notion_api_base,
            notion_version=config.notion_version,
        )

    @router.get("/health")
    async def health():
        return {"status": "ok"}

    @router.get("/api/connections")
    async def api_list_connections():
        """Active connections, ordered by id."""
        return [c.model_dump(mode="json") for c in storage.list_connections()]

    @router.post("/api/connections")
    async def api_add_connection(req: ConnectionRequest):
        """Validate access to the database, then store the connection."""
        database_id = clean_database_id(req.notion_database_id)
        if database_id is None:
            return _error(400, "Invalid Notion database ID. Expected 32 hex characters or a notion.so URL.")
        channel_id = req.discord_channel_id.strip()
        if not _CHANNEL_ID_RE.match(channel_id):
            return _error(400, "Invalid Discord channel ID.")
        if source is None:
            return _error(503, "NOTION_API_KEY is not configured.")

        try:
            info = await source.describe_database(database_id)
        except SourceError as exc:
            return _source_error(exc)

        try:
            connection = storage.add_connection(database_id, channel_id, req.name or info.title)
        except DuplicateRecord as exc:
            return _error(409, str(exc))

        logger.info("Added connection %s (%s -> %s)", connection.id, database_id, channel_id)
        return {"status": "ok", "connection": connection.model_dump(mode="json")}

    @router.delete("/api/connections/{connection_id}")
    async def api_delete_connection(connection_id: int, hard: bool = False):
        if not storage.delete_connection(connection_id, hard=hard):
            return _error(404, f"Connection {connection_id} not found")
        return {"status": "ok", "connection_id": connection_id, "hard": hard}

    @router.post("/api/test-notion")
    async def api_test_notion(req: NotionCheckRequest):
        """Check that a database is reachable and report its properties."""
        database_id = clean_database_id(req.database_id)
        if database_id is None:
            return _error(400, "Invalid Notion database ID. Expected 32 hex characters or a notion.so URL.")
        if source is None:
            return _error(503, "NOTION_API_KEY is not configured.")

        try:
            info = await source.describe_database(database_id)
        except SourceError as exc:
            return _source_error(exc)

        return {
            "status": "ok",
            "database": {
                "id": database_id,
                "title": info.title,
                "properties": sorted(info.fields),
            },
        }

    @router.get("/api/status")
    async def api_status():
        connections = storage.list_connections()
        tracked = storage.list_tracked_for_active()
        last_sync = bridge.last_sync_at if bridge is not None else None
        return {
            "status": "ok",
            "bot_attached": bridge is not None,
            "connections": len(connections),
            "tracked_issues": len(tracked),
            "poll_interval_minutes": config.poll_interval_minutes,
            "last_sync_at": last_sync.isoformat() if last_sync else None,
        }

    @router.get("/api/tracked-issues")
    async def api_tracked_issues(connection_id: int | None = None):
        """Tracked issues of active connections, optionally for one connection."""
        rows = storage.list_tracked_for_active()
        if connection_id is not None:
            rows = [r for r in rows if r.connection_id == connection_id]
        return [r.model_dump(mode="json") for r in rows]

    @router.post("/api/sync")
    async def api_sync():
        if bridge is None:
            return _error(503, "Discord bot is not running; sync is unavailable.")
        reports = await bridge.sync_all()
        return {"status": "ok", "reports": [r.to_dict() for r in reports]}

    @router.post("/api/clear")
    async def api_clear(req: ClearRequest | None = None):
        """Delete all messages in the selected channels and resync."""
        if bridge is None:
            return _error(503, "Discord bot is not running; clearing is unavailable.")

        connections = storage.list_connections()
        if req is not None and req.connection_ids is not None:
            wanted = set(req.connection_ids)
            connections = [c for c in connections if c.id in wanted]
        if not connections:
            return _error(404, "No matching active connections.")

        report = await bridge.clear_channels(connections)
        return {"status": "ok", "report": report.to_dict()}

    return router
