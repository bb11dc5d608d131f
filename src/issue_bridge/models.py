"""Data models for Issue Bridge."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Connection(BaseModel):
    """A Notion database mirrored into a Discord channel."""

    id: int
    source_database_id: str
    sink_channel_id: str
    name: str
    last_checked_at: datetime | None = None
    active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SourceRecord(BaseModel):
    """An issue page as read from Notion on a single poll.

    ``status`` is whatever the database uses; it is never checked against a
    fixed set of values.
    """

    id: str
    external_key: str | None = None  # e.g. "BUG-12" from a unique_id property
    title: str = "Untitled"
    status: str = "Open"
    description: str | None = None
    url: str | None = None

    @property
    def matching_key(self) -> str:
        return self.external_key or self.id


class TrackedArtifact(BaseModel):
    """Link between a Notion page and the Discord message that mirrors it."""

    source_record_id: str
    sink_artifact_id: str
    connection_id: int
    title: str
    status: str
    external_key: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def matching_key(self) -> str:
        return self.external_key or self.source_record_id

    def differs_from(self, record: SourceRecord) -> bool:
        """True when the mirrored fields no longer match the source record."""
        return (
            self.status != record.status
            or self.title != record.title
            or self.external_key != record.external_key
        )


class ArtifactContent(BaseModel):
    """Sink-neutral description of what a message should show."""

    record_id: str
    title: str
    status: str
    external_key: str | None = None
    description: str | None = None
    url: str | None = None
    is_update: bool = False
    removed: bool = False

    @classmethod
    def from_record(cls, record: SourceRecord, *, is_update: bool = False) -> ArtifactContent:
        return cls(
            record_id=record.id,
            title=record.title,
            status=record.status,
            external_key=record.external_key,
            description=record.description,
            url=record.url,
            is_update=is_update,
        )

    @classmethod
    def removed_marker(cls, artifact: TrackedArtifact) -> ArtifactContent:
        return cls(
            record_id=artifact.source_record_id,
            title=artifact.title,
            status=artifact.status,
            external_key=artifact.external_key,
            removed=True,
        )


class DatabaseInfo(BaseModel):
    """Summary of a Notion database schema."""

    id: str
    title: str
    fields: dict[str, Any] = Field(default_factory=dict)


class LedgerIndex(BaseModel):
    """Top-level document stored in ledger.json."""

    connections: dict[str, Connection] = Field(default_factory=dict)  # keyed by str(id)
    tracked: list[TrackedArtifact] = Field(default_factory=list)
    next_connection_id: int = 1
    last_updated: datetime = Field(default_factory=utc_now)
