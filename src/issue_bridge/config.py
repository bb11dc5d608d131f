"""Configuration management for Issue Bridge."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel


DEFAULT_DATA_DIR = Path.home() / ".issue-bridge"


class Config(BaseModel):
    """Application configuration."""

    notion_token: str | None = None
    discord_token: str | None = None
    data_dir: Path = DEFAULT_DATA_DIR
    notion_api_base: str = "https://api.notion.com/v1"
    notion_version: str = "2022-06-28"
    poll_interval_minutes: float = 2.0
    web_host: str = "127.0.0.1"
    web_port: int = 3000
    confirm_timeout_seconds: float = 30.0
    bulk_page_size: int = 100
    bulk_age_ceiling_days: int = 14
    recent_delete_delay_seconds: float = 0.1
    old_delete_delay_seconds: float = 0.2
    log_level: str = "INFO"

    @property
    def ledger_path(self) -> Path:
        return self.data_dir / "ledger.json"

    def ensure_dirs(self) -> None:
        """Create the data directory."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def require_notion_token(self) -> str:
        if not self.notion_token:
            raise ValueError(
                "NOTION_API_KEY is required. Set it in .env or as an environment variable."
            )
        return self.notion_token

    def require_discord_token(self) -> str:
        if not self.discord_token:
            raise ValueError(
                "DISCORD_BOT_TOKEN is required. Set it in .env or as an environment variable."
            )
        return self.discord_token


def load_config(**overrides: object) -> Config:
    """Load config from environment variables, .env file, and overrides.

    Resolution order (highest priority first):
    1. Explicit overrides (CLI flags)
    2. Environment variables
    3. .env file
    4. Defaults

    Tokens are not validated here; commands that talk to Notion or Discord
    call ``require_notion_token`` / ``require_discord_token``.
    """
    load_dotenv()
    load_dotenv(DEFAULT_DATA_DIR / ".env")

    kwargs: dict[str, object] = {}

    notion_token = overrides.get("notion_token") or os.getenv("NOTION_API_KEY")
    if notion_token:
        kwargs["notion_token"] = notion_token

    discord_token = overrides.get("discord_token") or os.getenv("DISCORD_BOT_TOKEN")
    if discord_token:
        kwargs["discord_token"] = discord_token

    data_dir = overrides.get("data_dir") or os.getenv("ISSUE_BRIDGE_DATA_DIR")
    if data_dir:
        kwargs["data_dir"] = Path(str(data_dir))

    notion_version = os.getenv("NOTION_API_VERSION")
    if notion_version:
        kwargs["notion_version"] = notion_version

    poll_interval = overrides.get("poll_interval_minutes") or os.getenv(
        "ISSUE_BRIDGE_POLL_INTERVAL"
    )
    if poll_interval is not None:
        kwargs["poll_interval_minutes"] = float(str(poll_interval))

    web_host = overrides.get("web_host") or os.getenv("ISSUE_BRIDGE_WEB_HOST")
    if web_host:
        kwargs["web_host"] = web_host

    web_port = overrides.get("web_port") or os.getenv("ISSUE_BRIDGE_WEB_PORT")
    if web_port is not None:
        kwargs["web_port"] = int(str(web_port))

    confirm_timeout = os.getenv("ISSUE_BRIDGE_CONFIRM_TIMEOUT")
    if confirm_timeout is not None:
        kwargs["confirm_timeout_seconds"] = float(confirm_timeout)

    log_level = overrides.get("log_level") or os.getenv("ISSUE_BRIDGE_LOG_LEVEL")
    if log_level:
        kwargs["log_level"] = str(log_level).upper()

    return Config(**kwargs)
