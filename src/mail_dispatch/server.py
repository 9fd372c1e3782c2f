# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    uvicorn mail_dispatch.server:app --host 127.0.0.1 --port 8025

Environment variables:
    MD_CONFIG: Path to the INI file (default: mail-dispatch.ini)
    MD_API_TOKEN: Token required in ``X-API-Token``
    MD_LOG_LEVEL: Logging level (default: INFO)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from .api import create_app
from .config_loader import load_server_options, load_settings
from .dispatcher import MessageDispatcher
from .logger import configure_logging
from .persistence import Persistence


def build_app(config_path: str | Path | None = None, api_token: str | None = None) -> FastAPI:
    """Create the configured application; the dispatcher starts in the lifespan."""
    configure_logging()
    settings = load_settings(config_path)
    options = load_server_options(config_path)
    dispatcher = MessageDispatcher(settings, Persistence(settings.database_path))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await dispatcher.start()
        yield
        await dispatcher.aclose()

    return create_app(dispatcher, api_token=api_token or options["api_token"], lifespan=lifespan)


app = build_app()
