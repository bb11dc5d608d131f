"""Channel clearing: delete every message of the given channels.

Discord only bulk-deletes messages younger than 14 days, so each page is split
by age. Young messages go through one bulk call with a one-by-one fallback,
old ones are always deleted one at a time and throttled.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from issue_bridge.models import Connection, utc_now
from issue_bridge.sink import ArtifactSummary, SinkError, SinkNotFound
from issue_bridge.storage import RecordStoreError, StorageManager

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
AGE_CEILING = timedelta(days=14)
RECENT_DELETE_DELAY = 0.1
OLD_DELETE_DELAY = 0.2


@dataclass
class ChannelResult:
    connection_id: int
    channel_id: str
    name: str
    deleted_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "channel_id": self.channel_id,
            "name": self.name,
            "deleted_count": self.deleted_count,
            "error": self.error,
        }


@dataclass
class BulkRetireReport:
    channels: list[ChannelResult] = field(default_factory=list)

    @property
    def total_removed(self) -> int:
        return sum(c.deleted_count for c in self.channels)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_removed": self.total_removed,
            "channels": [c.to_dict() for c in self.channels],
        }


class BulkRetirer:
    """Deletes all messages in channels and drops the rows that tracked them."""

    def __init__(
        self,
        *,
        sink: Any,
        storage: StorageManager,
        page_size: int = PAGE_SIZE,
        age_ceiling: timedelta = AGE_CEILING,
        recent_delay: float = RECENT_DELETE_DELAY,
        old_delay: float = OLD_DELETE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.sink = sink
        self.storage = storage
        self.page_size = page_size
        self.age_ceiling = age_ceiling
        self.recent_delay = recent_delay
        self.old_delay = old_delay
        self.sleep = sleep

    async def run(self, targets: Iterable[Connection]) -> BulkRetireReport:
        report = BulkRetireReport()
        for connection in targets:
            report.channels.append(await self.clear_channel(connection))
        logger.info(
            "Cleared %d messages across %d channels", report.total_removed, len(report.channels)
        )
        return report

    async def clear_channel(self, connection: Connection) -> ChannelResult:
        channel_id = connection.sink_channel_id
        result = ChannelResult(
            connection_id=connection.id,
            channel_id=channel_id,
            name=connection.name,
        )

        try:
            result.name = await self.sink.channel_name(channel_id)
            missing = await self.sink.missing_bulk_permissions(channel_id)
        except SinkError as exc:
            logger.warning("Cannot access channel %s: %s", channel_id, exc)
            result.error = f"Cannot access channel: {exc}"
            return result
        if missing:
            result.error = f"Missing permissions: {', '.join(missing)}"
            logger.warning("Skipping channel %s: %s", channel_id, result.error)
            return result

        cursor: str | None = None
        while True:
            try:
                page = await self.sink.list_artifacts(channel_id, cursor=cursor, limit=self.page_size)
            except SinkError as exc:
                logger.warning("Stopped reading channel %s: %s", channel_id, exc)
                result.error = f"Failed to read messages: {exc}"
                break
            if not page.items:
                break

            deleted = await self._delete_page(channel_id, page.items)
            result.deleted_count += len(deleted)
            try:
                for artifact_id in deleted:
                    self.storage.remove_tracked(artifact_id)
            except RecordStoreError as exc:
                logger.error("Failed to drop tracked rows for channel %s: %s", channel_id, exc)
                result.error = f"Failed to update tracked issues: {exc}"
                break

            if not page.has_more:
                break
            cursor = page.next_cursor

        logger.info("Deleted %d messages from channel %s", result.deleted_count, channel_id)
        return result

    async def _delete_page(self, channel_id: str, items: list[ArtifactSummary]) -> list[str]:
        """Delete one page of messages. Returns the ids confirmed deleted."""
        cutoff: datetime = utc_now() - self.age_ceiling
        recent = [item.id for item in items if item.created_at > cutoff]
        old = [item.id for item in items if item.created_at <= cutoff]

        deleted: list[str] = []
        if len(recent) == 1:
            deleted.extend(await self._delete_each(channel_id, recent, delay=0))
        elif recent:
            try:
                await self.sink.bulk_delete_artifacts(channel_id, recent)
                deleted.extend(recent)
            except SinkError as exc:
                logger.warning(
                    "Bulk delete of %d messages in %s failed (%s), deleting one by one",
                    len(recent),
                    channel_id,
                    exc,
                )
                deleted.extend(await self._delete_each(channel_id, recent, delay=self.recent_delay))

        if old:
            deleted.extend(await self._delete_each(channel_id, old, delay=self.old_delay))
        return deleted

    async def _delete_each(self, channel_id: str, artifact_ids: list[str], *, delay: float) -> list[str]:
        deleted: list[str] = []
        for artifact_id in artifact_ids:
            try:
                await self.sink.delete_artifact(channel_id, artifact_id)
                deleted.append(artifact_id)
            except SinkNotFound:
                logger.debug("Message %s was already deleted", artifact_id)
                deleted.append(artifact_id)
            except SinkError as exc:
                logger.warning("Failed to delete message %s: %s", artifact_id, exc)
            if delay:
                await self.sleep(delay)
        return deleted


async def bulk_retire(
    targets: Iterable[Connection],
    *,
    sink: Any,
    storage: StorageManager,
    **options: Any,
) -> BulkRetireReport:
    """Clear every target channel. The caller runs a full sync afterwards."""
    return await BulkRetirer(sink=sink, storage=storage, **options).run(targets)
