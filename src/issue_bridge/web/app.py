"""FastAPI application factory for the Issue Bridge dashboard API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import FastAPI

from issue_bridge.config import Config

if TYPE_CHECKING:
    from issue_bridge.bridge import Bridge


def create_app(config: Config, bridge: Bridge | None = None, source: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Without a ``bridge`` (dashboard-only mode) sync and clear return 503.
    """
    app = FastAPI(title="Issue Bridge")

    app.state.config = config
    app.state.bridge = bridge

    config.ensure_dirs()

    from issue_bridge.web.routes import create_router

    app.include_router(create_router(config, bridge=bridge, source=source))

    return app
