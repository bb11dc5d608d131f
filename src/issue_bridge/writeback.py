"""Discord button clicks written back to Notion."""

from __future__ import annotations

import logging
from typing import Any

from issue_bridge.models import ArtifactContent, SourceRecord, TrackedArtifact
from issue_bridge.storage import StorageManager

logger = logging.getLogger(__name__)


class ArtifactNotFound(LookupError):
    """The clicked message is not tracked by any connection."""


async def apply_status_change(
    artifact_id: str,
    new_status: str,
    *,
    storage: StorageManager,
    source: Any,
    sink: Any,
) -> TrackedArtifact:
    """Set the status of the issue behind a message.

    Notion is written first; the local row is updated only if that succeeds.
    The message is then re-rendered, and a failed edit there is only logged
    since the next sync pass repairs it.
    """
    artifact = storage.get_tracked_by_artifact_id(artifact_id)
    if artifact is None:
        raise ArtifactNotFound(f"Message {artifact_id} is not a tracked issue")

    record: SourceRecord = await source.write_status(artifact.source_record_id, new_status)
    logger.info("Set %s to %s in Notion", artifact.matching_key, new_status)

    try:
        updated = storage.update_tracked(artifact_id, status=new_status)
    except KeyError as exc:
        # A sync pass retired the message while Notion was being written.
        logger.warning("Message %s stopped being tracked during the status write", artifact_id)
        raise ArtifactNotFound(f"Message {artifact_id} is no longer tracked") from exc

    connection = storage.get_connection(artifact.connection_id)
    if connection is None:
        logger.warning("Connection %s for message %s is gone", artifact.connection_id, artifact_id)
        return updated

    content = ArtifactContent.from_record(
        record.model_copy(update={"status": new_status}),
        is_update=True,
    )
    try:
        await sink.edit_artifact(connection.sink_channel_id, artifact_id, content)
    except Exception as exc:
        logger.warning("Status saved but message %s was not refreshed: %s", artifact_id, exc)
    return updated
