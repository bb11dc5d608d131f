"""Notion source adapter: reads issue pages and writes their status back."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from typing import Any

import httpx

from issue_bridge.models import DatabaseInfo, SourceRecord

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
OPEN_STATUS = "Open"
# Seconds a database's status filter is reused before the schema is read again.
STATUS_FILTER_TTL = 600.0

logger = logging.getLogger(__name__)

_DATABASE_ID_RE = re.compile(r"^[a-f0-9]{32}$", re.IGNORECASE)
_DATABASE_ID_IN_URL_RE = re.compile(r"([a-f0-9]{32})", re.IGNORECASE)

# Property names (lowercased, separators stripped) that hold a human-facing issue key.
_EXTERNAL_KEY_NAMES = {"issueid", "id", "issuenum", "issuenumber", "ticketid", "taskid"}


class SourceError(RuntimeError):
    """Raised when a Notion API call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SourceUnavailable(SourceError):
    """Network, auth, rate-limit or server failure talking to Notion."""


class SourceNotFound(SourceError):
    """The database or page does not exist or is not shared with the integration."""


def clean_database_id(value: str | None) -> str | None:
    """Normalise a database id or notion.so URL to 32 hex characters.

    Returns None when no valid id can be extracted.
    """
    if not value:
        return None
    value = value.strip()

    if "notion.so" in value:
        # Strip the query string so a "?v=<view id>" is not picked up.
        path = value.split("?", 1)[0]
        matches = _DATABASE_ID_IN_URL_RE.findall(path)
        return matches[-1].lower() if matches else None

    cleaned = re.sub(r"[-\s]", "", value)
    if not _DATABASE_ID_RE.match(cleaned):
        return None
    return cleaned.lower()


def _read_plain_text(items: list[dict[str, Any]]) -> str:
    parts: list[str] = []
    for item in items or []:
        pt = item.get("plain_text", "")
        if not pt:
            pt = item.get("text", {}).get("content", "")
        parts.append(pt)
    return "".join(parts)


def _normalise_key(name: str) -> str:
    return re.sub(r"[\s_-]", "", name.lower())


def _is_status_name(name: str) -> bool:
    lowered = name.lower()
    return "status" in lowered or "state" in lowered


def _format_number(value: float | int) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _extract_external_key(properties: dict[str, Any]) -> str | None:
    for name, prop in properties.items():
        if _normalise_key(name) not in _EXTERNAL_KEY_NAMES:
            continue

        prop_type = prop.get("type")
        key: str | None = None
        if prop_type == "unique_id":
            unique = prop.get("unique_id") or {}
            number = unique.get("number")
            if number is not None:
                prefix = unique.get("prefix")
                key = f"{prefix}-{number}" if prefix else str(number)
        elif prop_type in ("rich_text", "title"):
            key = _read_plain_text(prop.get(prop_type, [])).strip() or None
        elif prop_type == "number" and prop.get("number") is not None:
            key = _format_number(prop["number"])
        elif prop_type == "formula":
            formula = prop.get("formula") or {}
            if isinstance(formula.get("string"), str):
                key = formula["string"].strip() or None

        if key:
            return key
        logger.debug("Issue key property %r present but empty", name)
        return None
    return None


def parse_page(page: dict[str, Any]) -> SourceRecord:
    """Normalise a Notion page object into a SourceRecord."""
    properties: dict[str, Any] = page.get("properties", {}) or {}

    title = "Untitled"
    for prop in properties.values():
        if prop.get("type") == "title":
            text = _read_plain_text(prop.get("title", []))
            if text:
                title = text
            break

    status = OPEN_STATUS
    for name, prop in properties.items():
        prop_type = prop.get("type")
        if prop_type in ("status", "select") and _is_status_name(name):
            selected = prop.get(prop_type)
            if selected and selected.get("name"):
                status = selected["name"]
            break

    description = None
    for name, prop in properties.items():
        lowered = name.lower()
        if prop.get("type") == "rich_text" and ("description" in lowered or "content" in lowered):
            description = _read_plain_text(prop.get("rich_text", [])) or None
            break

    return SourceRecord(
        id=page["id"],
        external_key=_extract_external_key(properties),
        title=title,
        status=status,
        description=description,
        url=page.get("url"),
    )


def build_status_filter(properties: dict[str, Any], open_status: str = OPEN_STATUS) -> dict[str, Any] | None:
    """Build a query filter selecting open issues, based on the database schema."""
    for name, prop in properties.items():
        if name.lower() not in ("status", "state"):
            continue
        prop_type = prop.get("type")
        if prop_type in ("select", "status", "rich_text", "title"):
            return {"property": name, prop_type: {"equals": open_status}}
        if prop_type == "multi_select":
            return {"property": name, "multi_select": {"contains": open_status}}
        logger.warning("Unsupported status property type %r on %r", prop_type, name)
        return None
    return None


def _find_status_property(properties: dict[str, Any]) -> tuple[str, str] | None:
    """Pick the property a status write should target, as (name, type)."""
    exact = ("status", "state")
    for wanted_type in ("status", "select"):
        for name, prop in properties.items():
            if prop.get("type") == wanted_type and name.lower() in exact:
                return name, wanted_type
    for name, prop in properties.items():
        if prop.get("type") in ("status", "select") and _is_status_name(name):
            return name, prop["type"]
    for name, prop in properties.items():
        if prop.get("type") == "select":
            logger.info("No status property found, using select property %r", name)
            return name, "select"
    return None


class NotionClient:
    """Thin async Notion API client for issue databases."""

    def __init__(
        self,
        token: str,
        *,
        api_base: str = NOTION_API_BASE,
        notion_version: str = NOTION_VERSION,
        transport: httpx.AsyncBaseTransport | None = None,
        status_filter_ttl: float = STATUS_FILTER_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.notion_version = notion_version
        self._transport = transport
        self.status_filter_ttl = status_filter_ttl
        self._clock = clock
        # database id -> (time cached, filter)
        self._status_filters: dict[str, tuple[float, dict[str, Any] | None]] = {}

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Notion-Version": self.notion_version,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float = 60.0,
    ) -> dict[str, Any]:
        url = f"{self.api_base}{path}"
        req = f"{method} {path}"
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    url,
                    headers=self._headers,
                    json=json_payload,
                    params=params,
                )
        except httpx.RequestError as exc:
            raise SourceUnavailable(f"Notion request failed on {req}: {exc}") from exc

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = exc.response.text.strip()
            if len(detail) > 1000:
                detail = detail[:1000] + "...(truncated)"
            request_id = exc.response.headers.get("x-request-id")
            suffix = f" (request_id={request_id})" if request_id else ""
            message = f"Notion API error {status} on {req}{suffix}: {detail}"
            if status == 404:
                raise SourceNotFound(message, status) from exc
            if status in (401, 403, 429) or status >= 500:
                raise SourceUnavailable(message, status) from exc
            raise SourceError(message, status) from exc

        if response.content:
            return response.json()
        return {}

    async def describe_database(self, database_id: str) -> DatabaseInfo:
        data = await self._request("GET", f"/databases/{database_id}")
        return DatabaseInfo(
            id=data.get("id", database_id),
            title=_read_plain_text(data.get("title", [])) or "Untitled Database",
            fields=data.get("properties", {}) or {},
        )

    async def check_database_access(self, database_id: str) -> bool:
        try:
            await self.describe_database(database_id)
        except SourceError as exc:
            logger.warning("Database access check failed for %s: %s", database_id, exc)
            return False
        return True

    async def _status_filter(self, database_id: str) -> dict[str, Any] | None:
        now = self._clock()
        cached = self._status_filters.get(database_id)
        if cached is not None and now - cached[0] < self.status_filter_ttl:
            return cached[1]
        info = await self.describe_database(database_id)
        status_filter = build_status_filter(info.fields)
        self._status_filters[database_id] = (now, status_filter)
        return status_filter

    async def list_open_records(self, database_id: str) -> list[SourceRecord]:
        """Fetch every open issue of a database, newest first.

        Databases without a status property return all pages. A 400 on a
        filtered query usually means the status property was renamed or
        retyped, so the schema is read again and the query retried once.
        """
        status_filter = await self._status_filter(database_id)
        if status_filter is None:
            logger.warning("No status filter for database %s, returning all issues", database_id)

        try:
            pages = await self._query_pages(database_id, status_filter)
        except SourceError as exc:
            if status_filter is None or exc.status_code != 400:
                raise
            logger.info("Status filter for database %s rejected, reading schema again", database_id)
            self._status_filters.pop(database_id, None)
            status_filter = await self._status_filter(database_id)
            pages = await self._query_pages(database_id, status_filter)

        return [parse_page(p) for p in pages if p.get("object", "page") == "page"]

    async def _query_pages(
        self, database_id: str, status_filter: dict[str, Any] | None
    ) -> list[dict[str, Any]]:
        pages: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            payload: dict[str, Any] = {
                "page_size": 100,
                "sorts": [{"timestamp": "created_time", "direction": "descending"}],
            }
            if status_filter:
                payload["filter"] = status_filter
            if cursor:
                payload["start_cursor"] = cursor
            data = await self._request(
                "POST",
                f"/databases/{database_id}/query",
                json_payload=payload,
            )
            pages.extend(data.get("results", []))
            if not data.get("has_more"):
                break
            cursor = data.get("next_cursor")
        return pages

    async def get_record(self, record_id: str) -> SourceRecord:
        page = await self._request("GET", f"/pages/{record_id}")
        return parse_page(page)

    async def write_status(self, record_id: str, status: str) -> SourceRecord:
        """Set the status of a page and return the page as Notion now reports it."""
        page = await self._request("GET", f"/pages/{record_id}")
        target = _find_status_property(page.get("properties", {}) or {})
        if target is None:
            raise SourceError(
                f"Page {record_id} has no status or select property; cannot update status."
            )

        name, prop_type = target
        updated = await self._request(
            "PATCH",
            f"/pages/{record_id}",
            json_payload={"properties": {name: {prop_type: {"name": status}}}},
        )
        return parse_page(updated)
