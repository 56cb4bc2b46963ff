from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from hybrid_llm.bridge.handler import BridgeHandler
from hybrid_llm.config import Settings, get_settings
from hybrid_llm.core.client import HybridClient
from hybrid_llm.dependencies import (
    build_bridge_handler,
    build_client,
    register_exception_handlers,
)
from hybrid_llm.internal import admin
from hybrid_llm.routers import bridge, invoke

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    client: HybridClient | None = None,
    bridge_handler: BridgeHandler | None = None,
) -> FastAPI:
    resolved = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.client.aclose()
        logger.info("Hybrid client closed")

    app = FastAPI(
        title="hybrid-llm",
        version="0.1.0",
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.client = client or build_client(resolved)
    app.state.bridge_handler = bridge_handler or build_bridge_handler(resolved)

    register_exception_handlers(app)

    app.include_router(invoke.router)
    app.include_router(bridge.router)
    app.include_router(admin.router)

    return app
