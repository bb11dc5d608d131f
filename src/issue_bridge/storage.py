"""Ledger persistence for connections and tracked artifacts."""

from __future__ import annotations

import json
from datetime import datetime, timezone

from pydantic import ValidationError

from issue_bridge.config import Config
from issue_bridge.models import Connection, LedgerIndex, TrackedArtifact, utc_now


class RecordStoreError(Exception):
    """Raised when the ledger cannot be read or written."""


class DuplicateRecord(RecordStoreError):
    """Raised when a write would break a uniqueness rule of the ledger."""


class StorageManager:
    """Manages the connection/tracked-artifact ledger on disk.

    Every statement commits on its own; there are no transactions spanning
    several calls.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self._index: LedgerIndex | None = None

    def load_index(self) -> LedgerIndex:
        """Load index from disk, always re-reading to pick up external changes."""
        path = self.config.ledger_path
        try:
            if path.exists():
                data = json.loads(path.read_text(encoding="utf-8"))
                self._index = LedgerIndex.model_validate(data)
            elif self._index is None:
                self._index = LedgerIndex()
        except (OSError, ValueError, ValidationError) as exc:
            raise RecordStoreError(f"Failed to read ledger {path}: {exc}") from exc

        return self._index

    def save_index(self) -> None:
        """Persist the current index to disk."""
        if self._index is None:
            return

        self._index.last_updated = datetime.now(timezone.utc)
        path = self.config.ledger_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self._index.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            raise RecordStoreError(f"Failed to write ledger {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def add_connection(
        self,
        source_database_id: str,
        sink_channel_id: str,
        name: str,
    ) -> Connection:
        """Create an active connection.

        Raises DuplicateRecord if an active connection already pairs the same
        database and channel.
        """
        index = self.load_index()
        for existing in index.connections.values():
            if (
                existing.active
                and existing.source_database_id == source_database_id
                and existing.sink_channel_id == sink_channel_id
            ):
                raise DuplicateRecord(
                    f"Database {source_database_id} is already connected to channel "
                    f"{sink_channel_id} (connection {existing.id})."
                )

        connection = Connection(
            id=index.next_connection_id,
            source_database_id=source_database_id,
            sink_channel_id=sink_channel_id,
            name=name,
        )
        index.connections[str(connection.id)] = connection
        index.next_connection_id += 1
        self.save_index()
        return connection

    def get_connection(self, connection_id: int) -> Connection | None:
        index = self.load_index()
        return index.connections.get(str(connection_id))

    def list_connections(self, active_only: bool = True) -> list[Connection]:
        """List connections ordered by id."""
        index = self.load_index()
        connections = sorted(index.connections.values(), key=lambda c: c.id)
        if active_only:
            connections = [c for c in connections if c.active]
        return connections

    def delete_connection(self, connection_id: int, hard: bool = False) -> bool:
        """Deactivate a connection, or remove it and its tracked rows when ``hard``.

        Returns True if the connection was found.
        """
        index = self.load_index()
        key = str(connection_id)
        connection = index.connections.get(key)
        if connection is None:
            return False

        if hard:
            del index.connections[key]
            index.tracked = [t for t in index.tracked if t.connection_id != connection_id]
        else:
            connection.active = False
            connection.updated_at = utc_now()
        self.save_index()
        return True

    def set_connection_last_checked(self, connection_id: int, checked_at: datetime) -> None:
        index = self.load_index()
        connection = index.connections.get(str(connection_id))
        if connection is None:
            raise KeyError(f"Connection {connection_id} not in ledger")
        connection.last_checked_at = checked_at
        connection.updated_at = utc_now()
        self.save_index()

    # ------------------------------------------------------------------
    # Tracked artifacts
    # ------------------------------------------------------------------

    def list_tracked(self, connection_id: int | None = None) -> list[TrackedArtifact]:
        """List tracked artifacts, optionally for one connection, in insertion order."""
        index = self.load_index()
        if connection_id is None:
            return list(index.tracked)
        return [t for t in index.tracked if t.connection_id == connection_id]

    def list_tracked_for_active(self) -> list[TrackedArtifact]:
        """Tracked artifacts whose connection is still active."""
        index = self.load_index()
        active_ids = {c.id for c in index.connections.values() if c.active}
        return [t for t in index.tracked if t.connection_id in active_ids]

    def get_tracked_by_artifact_id(self, sink_artifact_id: str) -> TrackedArtifact | None:
        index = self.load_index()
        for tracked in index.tracked:
            if tracked.sink_artifact_id == sink_artifact_id:
                return tracked
        return None

    def find_tracked(
        self,
        connection_id: int,
        *,
        external_key: str | None = None,
        source_record_id: str | None = None,
    ) -> TrackedArtifact | None:
        """Find a row of a connection holding the given external key or record id."""
        for tracked in self.list_tracked(connection_id):
            if external_key is not None and tracked.external_key == external_key:
                return tracked
            if source_record_id is not None and tracked.source_record_id == source_record_id:
                return tracked
        return None

    def add_tracked(self, artifact: TrackedArtifact) -> TrackedArtifact:
        index = self.load_index()
        for existing in index.tracked:
            if (
                existing.source_record_id == artifact.source_record_id
                and existing.sink_artifact_id == artifact.sink_artifact_id
            ):
                raise DuplicateRecord(
                    f"Record {artifact.source_record_id} is already tracked by "
                    f"message {artifact.sink_artifact_id}."
                )
        index.tracked.append(artifact)
        self.save_index()
        return artifact

    _UPDATABLE_FIELDS = {"status", "title", "external_key"}

    def update_tracked(self, sink_artifact_id: str, **fields: str | None) -> TrackedArtifact:
        """Commit new mirrored values for a tracked artifact.

        Only the keyword arguments passed are written, so ``external_key=None``
        clears the key while omitting it leaves the key alone.
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update tracked fields: {', '.join(sorted(unknown))}")

        index = self.load_index()
        for tracked in index.tracked:
            if tracked.sink_artifact_id == sink_artifact_id:
                for name, value in fields.items():
                    setattr(tracked, name, value)
                tracked.updated_at = utc_now()
                self.save_index()
                return tracked
        raise KeyError(f"Message {sink_artifact_id} is not tracked")

    def remove_tracked(self, sink_artifact_id: str) -> bool:
        """Remove the row for a message. Returns True if a row was removed."""
        index = self.load_index()
        remaining = [t for t in index.tracked if t.sink_artifact_id != sink_artifact_id]
        if len(remaining) == len(index.tracked):
            return False
        index.tracked = remaining
        self.save_index()
        return True
