"""
Application factory and entry point for the MCP Web URL Reader.

This module wires configuration, logging, the fetch backend, the session
store, and the session gateway into a FastAPI application, and runs it with
uvicorn.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mcp_web_reader import __version__
from mcp_web_reader.config import AppConfig, load_config
from mcp_web_reader.fetcher import Fetcher, create_fetcher
from mcp_web_reader.gateway import SESSION_HEADER, SessionGateway, build_router
from mcp_web_reader.handler import SERVER_NAME
from mcp_web_reader.logging import get_logger, setup_logging
from mcp_web_reader.sessions import SessionStore
from mcp_web_reader.tools import create_capability_registry

logger = get_logger(__name__)


def create_app(
    config: AppConfig | None = None,
    *,
    store: SessionStore | None = None,
    fetcher: Fetcher | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Application configuration. Defaults to built-in defaults.
        store: Optional session store (a fresh one is created otherwise).
        fetcher: Optional fetch backend (built from config otherwise).

    Returns:
        Configured FastAPI instance. The store and config are available on
        `app.state`.

    Example:
        >>> app = create_app(load_config(cli_args=[]))
        >>> uvicorn.run(app, port=8080)
    """
    config = config if config is not None else AppConfig()
    store = store if store is not None else SessionStore()
    fetcher = fetcher if fetcher is not None else create_fetcher(config.fetch)

    gateway = SessionGateway(
        store,
        lambda: create_capability_registry(config.fetch, fetcher),
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "MCP Web URL Reader starting",
            extra={
                "host": config.server.host,
                "port": config.server.port,
                "endpoint": config.server.endpoint_path,
                "prefix_configured": config.fetch.prefix_configured,
                "backend": config.fetch.backend,
            },
        )
        yield
        closed = store.close_all()
        logger.info("MCP Web URL Reader stopped", extra={"closed_sessions": closed})

    app = FastAPI(
        title="MCP Web URL Reader",
        description="Single-tool MCP gateway fetching URLs behind a server-side prefix",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", SESSION_HEADER],
        expose_headers=[SESSION_HEADER],
    )

    app.state.config = config
    app.state.store = store
    app.state.gateway = gateway

    app.include_router(build_router(gateway, config.server.endpoint_path))

    @app.get("/")
    async def liveness() -> dict[str, Any]:
        """Liveness check; carries no session semantics."""
        return {
            "status": "ok",
            "name": SERVER_NAME,
            "prefixConfigured": config.fetch.prefix_configured,
            "port": config.server.port,
            "activeSessions": len(store),
        }

    return app


def main(argv: list[str] | None = None) -> None:
    """
    Load configuration, set up logging, and serve until interrupted.

    A failure to bind the listening port makes uvicorn exit non-zero.
    """
    config = load_config(cli_args=argv)
    setup_logging(config.logging)
    app = create_app(config)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )


if __name__ == "__main__":
    main()
