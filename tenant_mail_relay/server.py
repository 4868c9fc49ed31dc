"""Process entry point: build the relay core and serve the API with uvicorn.

Usage:
    tenant-mail-relay serve
    python main.py
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI

from .api import create_app
from .config_loader import core_kwargs, load_settings
from .core import RelayCore
from .logger import configure_logging, get_logger


def build_app(settings: Dict[str, Any]) -> FastAPI:
    """Create the core service and an application that starts and stops it."""
    core = RelayCore(**core_kwargs(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=settings.get("api_token"), lifespan=lifespan)


def run(settings: Dict[str, Any]) -> None:
    """Serve the relay until the process is stopped."""
    configure_logging(str(settings.get("log_level") or "INFO"))
    get_logger().info(
        "Starting relay (smtp=%s:%s, server=%s:%s)",
        settings["smtp_host"],
        settings["smtp_port"],
        settings["http_host"],
        settings["http_port"],
    )
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))


def main() -> None:
    run(load_settings())
