"""Shared test configuration and in-memory fakes for Notion and Discord."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from issue_bridge.config import Config
from issue_bridge.models import ArtifactContent, DatabaseInfo, SourceRecord
from issue_bridge.sink import ArtifactPage, ArtifactSummary
from issue_bridge.storage import StorageManager

CHANNEL_ID = "123456789012345678"
DATABASE_ID = "a" * 32


class FakeSink:
    """In-memory Discord channel store.

    Message ids are increasing integers, so like Discord snowflakes a larger
    id is a newer message.
    """

    def __init__(self) -> None:
        self.calls = 0
        self.messages: dict[str, ArtifactContent | None] = {}
        self.created_at: dict[str, datetime] = {}
        self.created: list[str] = []
        self.edited: list[tuple[str, ArtifactContent]] = []
        self.deleted: list[str] = []
        self.bulk_calls: list[list[str]] = []
        self.fail_create: dict[str, Exception] = {}  # keyed by record id
        self.fail_edit: dict[str, Exception] = {}
        self.fail_delete: dict[str, Exception] = {}
        self.fail_bulk: Exception | None = None
        self.missing: list[str] = []
        self._next_id = 1000

    def seed(self, count: int, *, age: timedelta = timedelta(minutes=5)) -> list[str]:
        """Add ``count`` plain messages of the given age to the channel."""
        ids = []
        for _ in range(count):
            self._next_id += 1
            message_id = str(self._next_id)
            self.messages[message_id] = None
            self.created_at[message_id] = datetime.now(timezone.utc) - age
            ids.append(message_id)
        return ids

    async def channel_name(self, channel_id: str) -> str:
        return f"issues-{channel_id[-4:]}"

    async def create_artifact(self, channel_id: str, content: ArtifactContent) -> str:
        self.calls += 1
        if content.record_id in self.fail_create:
            raise self.fail_create[content.record_id]
        self._next_id += 1
        message_id = str(self._next_id)
        self.messages[message_id] = content
        self.created_at[message_id] = datetime.now(timezone.utc)
        self.created.append(message_id)
        return message_id

    async def edit_artifact(self, channel_id: str, artifact_id: str, content: ArtifactContent) -> None:
        self.calls += 1
        if artifact_id in self.fail_edit:
            raise self.fail_edit[artifact_id]
        self.messages[artifact_id] = content
        self.edited.append((artifact_id, content))

    async def delete_artifact(self, channel_id: str, artifact_id: str) -> None:
        self.calls += 1
        if artifact_id in self.fail_delete:
            raise self.fail_delete[artifact_id]
        self.messages.pop(artifact_id, None)
        self.deleted.append(artifact_id)

    async def list_artifacts(self, channel_id: str, cursor: str | None = None, limit: int = 100) -> ArtifactPage:
        ids = sorted(self.messages, key=int, reverse=True)
        if cursor is not None:
            ids = [i for i in ids if int(i) < int(cursor)]
        page = ids[:limit]
        return ArtifactPage(
            items=[ArtifactSummary(id=i, created_at=self.created_at[i]) for i in page],
            has_more=len(page) == limit,
            next_cursor=page[-1] if page else None,
        )

    async def bulk_delete_artifacts(self, channel_id: str, artifact_ids: list[str]) -> None:
        self.calls += 1
        if self.fail_bulk is not None:
            raise self.fail_bulk
        self.bulk_calls.append(list(artifact_ids))
        for artifact_id in artifact_ids:
            self.messages.pop(artifact_id, None)

    async def missing_bulk_permissions(self, channel_id: str) -> list[str]:
        return list(self.missing)


class FakeSource:
    def __init__(self, records: list[SourceRecord] | None = None) -> None:
        self.records = list(records or [])
        self.writes: list[tuple[str, str]] = []
        self.list_calls = 0
        self.fail_list: Exception | None = None
        self.fail_write: Exception | None = None
        self.fail_describe: Exception | None = None

    async def list_open_records(self, database_id: str) -> list[SourceRecord]:
        self.list_calls += 1
        if self.fail_list is not None:
            raise self.fail_list
        return list(self.records)

    async def write_status(self, record_id: str, status: str) -> SourceRecord:
        if self.fail_write is not None:
            raise self.fail_write
        self.writes.append((record_id, status))
        for record in self.records:
            if record.id == record_id:
                return record.model_copy(update={"status": status})
        return SourceRecord(id=record_id, status=status)

    async def describe_database(self, database_id: str) -> DatabaseInfo:
        if self.fail_describe is not None:
            raise self.fail_describe
        return DatabaseInfo(id=database_id, title="Bug Tracker", fields={"Name": {}, "Status": {}})


def make_record(page_id: str, title: str = "Crash on start", status: str = "Open", key: str | None = None) -> SourceRecord:
    return SourceRecord(
        id=page_id,
        external_key=key,
        title=title,
        status=status,
        url=f"https://www.notion.so/{page_id}",
    )


@pytest.fixture
def config(tmp_path):
    cfg = Config(data_dir=tmp_path, notion_token="secret_test", discord_token="discord_test")
    cfg.ensure_dirs()
    return cfg


@pytest.fixture
def storage(config):
    return StorageManager(config)


@pytest.fixture
def connection(storage):
    return storage.add_connection(DATABASE_ID, CHANNEL_ID, "Bug Tracker")


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def source():
    return FakeSource()
