"""Three-way reconciliation of Notion issues against tracked Discord messages.

Given the current open records of a connection and the rows tracked for it,
one pass:

1. retires messages whose record is gone from the snapshot,
2. edits messages whose record changed (status, title or issue key),
3. creates messages for records that are not tracked yet.

Every sink call is caught on its own so a single failure never aborts the
pass. Nothing is retried inside a pass; rows left behind by a failure are
picked up again on the next scheduled pass, so the two stores converge
eventually rather than transactionally.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from issue_bridge.models import ArtifactContent, Connection, SourceRecord, TrackedArtifact, utc_now
from issue_bridge.sink import SinkError, SinkNotFound, SinkPermissionDenied
from issue_bridge.storage import StorageManager

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    connection_id: int | None = None
    created: int = 0
    updated: int = 0
    retired: int = 0
    marked_removed: int = 0
    replaced: int = 0
    skipped_duplicates: int = 0
    unchanged: int = 0
    failed: int = 0
    sink_operations: int = 0
    skipped: bool = False
    skip_reason: str | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None

    def finalize(self) -> None:
        self.finished_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "created": self.created,
            "updated": self.updated,
            "retired": self.retired,
            "marked_removed": self.marked_removed,
            "replaced": self.replaced,
            "skipped_duplicates": self.skipped_duplicates,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "sink_operations": self.sink_operations,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "warnings": self.warnings,
            "errors": self.errors,
            "actions": self.actions,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def index_source_records(
    records: Iterable[SourceRecord],
    report: SyncReport | None = None,
) -> dict[str, SourceRecord]:
    """Map matching key -> record. On a key collision the later record wins."""
    index: dict[str, SourceRecord] = {}
    for record in records:
        key = record.matching_key
        previous = index.get(key)
        if previous is not None:
            message = (
                f"Issue key {key!r} is used by pages {previous.id} and {record.id}; "
                f"keeping {record.id}"
            )
            logger.warning(message)
            if report is not None:
                report.warnings.append(message)
        index[key] = record
    return index


def index_tracked_artifacts(
    artifacts: Iterable[TrackedArtifact],
) -> tuple[dict[str, TrackedArtifact], list[TrackedArtifact]]:
    """Map matching key -> tracked row.

    When several rows share a key the last one is live; the earlier ones are
    returned separately as stale duplicates.
    """
    index: dict[str, TrackedArtifact] = {}
    stale: list[TrackedArtifact] = []
    for artifact in artifacts:
        key = artifact.matching_key
        if key in index:
            stale.append(index[key])
        index[key] = artifact
    return index, stale


class Reconciler:
    """Applies one reconciliation pass for a single connection."""

    def __init__(self, *, connection: Connection, sink: Any, storage: StorageManager) -> None:
        self.connection = connection
        self.sink = sink
        self.storage = storage
        self.channel_id = connection.sink_channel_id
        self.report = SyncReport(connection_id=connection.id)

    async def run(
        self,
        source_records: list[SourceRecord],
        tracked_artifacts: list[TrackedArtifact],
    ) -> SyncReport:
        report = self.report
        source_index = index_source_records(source_records, report)
        tracked_index, stale = index_tracked_artifacts(tracked_artifacts)

        for artifact in stale:
            await self._retire(artifact, reason="duplicate message")

        for key, artifact in tracked_index.items():
            if key not in source_index:
                await self._retire(artifact, reason="no longer open")

        for key, artifact in tracked_index.items():
            record = source_index.get(key)
            if record is None:
                continue
            if artifact.differs_from(record):
                await self._update(artifact, record)
            else:
                report.unchanged += 1

        for key, record in source_index.items():
            if key not in tracked_index:
                await self._create(record)

        try:
            self.storage.set_connection_last_checked(self.connection.id, utc_now())
        except Exception as exc:
            logger.exception("Could not record sync time for connection %s", self.connection.id)
            report.errors.append(f"Failed to update last checked time: {exc}")

        report.finalize()
        logger.info(
            "Connection %s synced: created=%d updated=%d retired=%d failed=%d",
            self.connection.id,
            report.created,
            report.updated,
            report.retired,
            report.failed,
        )
        return report

    # ------------------------------------------------------------------
    # RETIRE
    # ------------------------------------------------------------------

    async def _retire(self, artifact: TrackedArtifact, *, reason: str) -> None:
        report = self.report
        message_id = artifact.sink_artifact_id
        report.actions.append(f"retire {artifact.matching_key} ({reason})")

        try:
            report.sink_operations += 1
            await self.sink.delete_artifact(self.channel_id, message_id)
        except SinkNotFound:
            logger.info("Message %s already gone, dropping its row", message_id)
        except SinkPermissionDenied as exc:
            # The row stays so deletion is retried once permissions are fixed.
            logger.warning("Cannot delete message %s (%s), marking it removed", message_id, exc)
            await self._mark_removed(artifact)
            return
        except Exception as exc:
            logger.warning("Could not delete message %s: %s", message_id, exc)
            report.failed += 1
            report.errors.append(f"Delete failed for {artifact.matching_key}: {exc}")
            return

        try:
            self.storage.remove_tracked(message_id)
        except Exception as exc:
            logger.exception("Could not drop row for message %s", message_id)
            report.failed += 1
            report.errors.append(f"Row removal failed for {artifact.matching_key}: {exc}")
            return
        report.retired += 1

    async def _mark_removed(self, artifact: TrackedArtifact) -> None:
        report = self.report
        try:
            report.sink_operations += 1
            await self.sink.edit_artifact(
                self.channel_id,
                artifact.sink_artifact_id,
                ArtifactContent.removed_marker(artifact),
            )
        except Exception as exc:
            logger.warning(
                "Could not mark message %s as removed: %s", artifact.sink_artifact_id, exc
            )
            report.failed += 1
            report.errors.append(f"Removal marker failed for {artifact.matching_key}: {exc}")
            return
        report.marked_removed += 1

    # ------------------------------------------------------------------
    # UPDATE
    # ------------------------------------------------------------------

    async def _update(self, artifact: TrackedArtifact, record: SourceRecord) -> None:
        report = self.report
        message_id = artifact.sink_artifact_id
        report.actions.append(f"update {record.matching_key}")

        try:
            report.sink_operations += 1
            await self.sink.edit_artifact(
                self.channel_id,
                message_id,
                ArtifactContent.from_record(record, is_update=True),
            )
        except Exception as exc:
            logger.warning(
                "Could not edit message %s for %s (%s), replacing it", message_id, record.title, exc
            )
            await self._replace(artifact, record, edit_error=exc)
            return

        try:
            self.storage.update_tracked(
                message_id,
                status=record.status,
                title=record.title,
                external_key=record.external_key,
            )
        except Exception as exc:
            logger.exception("Could not commit update for message %s", message_id)
            report.failed += 1
            report.errors.append(f"Row update failed for {record.matching_key}: {exc}")
            return
        report.updated += 1

    async def _replace(
        self,
        artifact: TrackedArtifact,
        record: SourceRecord,
        *,
        edit_error: Exception,
    ) -> None:
        """Retire-then-create for a message that could not be edited."""
        report = self.report
        message_id = artifact.sink_artifact_id
        report.actions.append(f"replace {record.matching_key}")

        if not isinstance(edit_error, SinkNotFound):
            try:
                report.sink_operations += 1
                await self.sink.delete_artifact(self.channel_id, message_id)
            except SinkError as exc:
                logger.info("Old message %s left in place: %s", message_id, exc)

        try:
            self.storage.remove_tracked(message_id)
        except Exception as exc:
            logger.exception("Could not drop row for message %s", message_id)
            report.failed += 1
            report.errors.append(f"Row removal failed for {record.matching_key}: {exc}")
            return

        if await self._create(record):
            report.replaced += 1

    # ------------------------------------------------------------------
    # CREATE
    # ------------------------------------------------------------------

    def _already_tracked(self, record: SourceRecord) -> TrackedArtifact | None:
        if record.external_key:
            return self.storage.find_tracked(self.connection.id, external_key=record.external_key)
        return self.storage.find_tracked(self.connection.id, source_record_id=record.id)

    async def _create(self, record: SourceRecord) -> bool:
        report = self.report

        try:
            existing = self._already_tracked(record)
        except Exception as exc:
            logger.exception("Duplicate check failed for %s", record.matching_key)
            report.failed += 1
            report.errors.append(f"Duplicate check failed for {record.matching_key}: {exc}")
            return False
        if existing is not None:
            logger.info(
                "Skipping duplicate issue %s (already message %s)",
                record.matching_key,
                existing.sink_artifact_id,
            )
            report.skipped_duplicates += 1
            return False

        report.actions.append(f"create {record.matching_key}")
        try:
            report.sink_operations += 1
            message_id = await self.sink.create_artifact(
                self.channel_id,
                ArtifactContent.from_record(record),
            )
        except Exception as exc:
            logger.warning("Could not announce %s: %s", record.title, exc)
            report.failed += 1
            report.errors.append(f"Create failed for {record.matching_key}: {exc}")
            return False

        try:
            self.storage.add_tracked(
                TrackedArtifact(
                    source_record_id=record.id,
                    sink_artifact_id=message_id,
                    connection_id=self.connection.id,
                    title=record.title,
                    status=record.status,
                    external_key=record.external_key,
                )
            )
        except Exception as exc:
            # The message exists but is untracked; the next pass will post it again.
            logger.exception("Could not track message %s for %s", message_id, record.matching_key)
            report.failed += 1
            report.errors.append(f"Tracking failed for {record.matching_key}: {exc}")
            return False

        report.created += 1
        return True


async def reconcile(
    connection: Connection,
    source_records: list[SourceRecord],
    tracked_artifacts: list[TrackedArtifact],
    *,
    sink: Any,
    storage: StorageManager,
) -> SyncReport:
    """Run one reconciliation pass for ``connection`` and return its report."""
    reconciler = Reconciler(connection=connection, sink=sink, storage=storage)
    return await reconciler.run(source_records, tracked_artifacts)
