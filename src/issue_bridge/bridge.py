"""Application context and the sync scheduler."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from issue_bridge.bulk import BulkRetireReport, bulk_retire
from issue_bridge.config import Config
from issue_bridge.models import Connection, TrackedArtifact
from issue_bridge.notion import SourceError, SourceUnavailable
from issue_bridge.reconcile import SyncReport, reconcile
from issue_bridge.storage import StorageManager
from issue_bridge.writeback import apply_status_change

logger = logging.getLogger(__name__)

SKIP_IN_PROGRESS = "sync_already_in_progress"


@dataclass
class BridgeContext:
    """Everything a sync needs, passed explicitly instead of held in globals."""

    config: Config
    storage: StorageManager
    source: Any
    sink: Any


class Bridge:
    """Runs syncs with at most one in flight per connection."""

    def __init__(self, context: BridgeContext) -> None:
        self.context = context
        self._locks: dict[int, asyncio.Lock] = {}
        self.last_sync_at: datetime | None = None
        self.last_reports: list[SyncReport] = []

    @property
    def storage(self) -> StorageManager:
        return self.context.storage

    def _lock(self, connection_id: int) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = self._locks[connection_id] = asyncio.Lock()
        return lock

    def is_syncing(self, connection_id: int) -> bool:
        return self._lock(connection_id).locked()

    async def sync_connection(self, connection: Connection) -> SyncReport:
        lock = self._lock(connection.id)
        if lock.locked():
            logger.info("Sync of connection %s already running, skipping", connection.id)
            report = SyncReport(connection_id=connection.id, skipped=True, skip_reason=SKIP_IN_PROGRESS)
            report.finalize()
            return report

        async with lock:
            return await self._sync_locked(connection)

    async def _sync_locked(self, connection: Connection) -> SyncReport:
        ctx = self.context
        try:
            records = await ctx.source.list_open_records(connection.source_database_id)
        except SourceUnavailable as exc:
            logger.warning("Notion unavailable for connection %s: %s", connection.id, exc)
            report = SyncReport(connection_id=connection.id, skipped=True, skip_reason="source_unavailable")
            report.errors.append(str(exc))
            report.finalize()
            return report

        tracked = ctx.storage.list_tracked(connection.id)
        return await reconcile(connection, records, tracked, sink=ctx.sink, storage=ctx.storage)

    async def sync_all(self) -> list[SyncReport]:
        """Sync every active connection in turn. Per-connection errors are logged, not raised."""
        try:
            connections = self.storage.list_connections()
        except Exception:
            logger.exception("Could not load connections")
            return []

        reports: list[SyncReport] = []
        for connection in connections:
            try:
                reports.append(await self.sync_connection(connection))
            except Exception as exc:
                logger.exception("Sync failed for connection %s", connection.id)
                report = SyncReport(connection_id=connection.id)
                report.errors.append(str(exc))
                report.finalize()
                reports.append(report)

        self.last_sync_at = reports[-1].finished_at if reports else None
        self.last_reports = reports
        return reports

    async def clear_channels(self, connections: list[Connection]) -> BulkRetireReport:
        """Clear the channels of ``connections``, then resync everything."""
        ordered = sorted(connections, key=lambda c: c.id)
        locks = [self._lock(c.id) for c in ordered]
        for lock in locks:
            await lock.acquire()
        try:
            report = await bulk_retire(
                ordered,
                sink=self.context.sink,
                storage=self.storage,
                page_size=self.context.config.bulk_page_size,
                age_ceiling=timedelta(days=self.context.config.bulk_age_ceiling_days),
                recent_delay=self.context.config.recent_delete_delay_seconds,
                old_delay=self.context.config.old_delete_delay_seconds,
            )
        finally:
            for lock in reversed(locks):
                lock.release()

        await self.sync_all()
        return report

    async def set_status(self, artifact_id: str, new_status: str) -> TrackedArtifact:
        ctx = self.context
        return await apply_status_change(
            artifact_id,
            new_status,
            storage=ctx.storage,
            source=ctx.source,
            sink=ctx.sink,
        )

    async def run_periodic(self, interval_minutes: float | None = None) -> None:
        """Sync forever, every ``interval_minutes`` (config default)."""
        interval = interval_minutes or self.context.config.poll_interval_minutes
        logger.info("Polling every %s minutes", interval)
        while True:
            await self.sync_all()
            await asyncio.sleep(interval * 60)


def describe_source_error(exc: SourceError) -> str:
    """Short, user-facing text for a Notion failure."""
    if exc.status_code == 401:
        return "Invalid Notion API key."
    if exc.status_code == 404:
        return "Database not found or not shared with the integration."
    return str(exc)
