# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that loads the
settings (``config.ini`` and ``TRICKLE_*`` environment variables) and
starts the TrickleCore service with the application.

Usage:
    uvicorn trickle_mail.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import build_core, load_settings

_settings = load_settings()

logging.basicConfig(
    level=getattr(logging, _settings.log_level, logging.INFO),
    format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

_core = build_core(_settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler - starts and stops the core service."""
    await _core.start()
    yield
    await _core.stop()


app = create_app(_core, api_token=_settings.api_token, lifespan=lifespan)
