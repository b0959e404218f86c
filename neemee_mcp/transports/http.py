"""Streamable HTTP and SSE served by uvicorn.

FastMCP builds the Starlette app. It adds bearer-token middleware when
``server.auth`` is set and mounts any ``custom_route`` such as the metrics
endpoint, so this module only picks the transport flavour and runs uvicorn.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Mapping

import uvicorn
from fastmcp import FastMCP
from starlette.applications import Starlette

from ..logging import get_logger

logger = get_logger(__name__)

# Config names to FastMCP's transport identifiers.
_FLAVOURS = {"http": "streamable-http", "sse": "sse"}


@dataclass(slots=True)
class HttpTransportConfig:
    host: str
    port: int
    path: str
    transport: str = "http"
    metrics_path: str | None = None


def normalise_path(path: str) -> str:
    """``mcp`` and ``/mcp/`` both become ``/mcp``; ``/`` is left alone."""

    return "/" + path.strip("/")


def describe_routes(config: HttpTransportConfig) -> Mapping[str, str]:
    routes = {config.transport: normalise_path(config.path)}
    if config.metrics_path:
        routes["metrics"] = normalise_path(config.metrics_path)
    return routes


def build_http_app(server: FastMCP, config: HttpTransportConfig) -> Starlette:
    try:
        flavour = _FLAVOURS[config.transport]
    except KeyError:
        raise ValueError(f"{config.transport!r} is not an HTTP transport") from None
    return server.http_app(path=normalise_path(config.path), transport=flavour)


def run_http(server: FastMCP, config: HttpTransportConfig) -> None:
    """Listen on ``config.host:config.port`` until interrupted."""

    app = build_http_app(server, config)
    listener = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            lifespan="on",
            timeout_graceful_shutdown=0,
            log_config=None,
        )
    )
    logger.info(
        "transport.http.start",
        extra={
            "context": {
                "address": f"{config.host}:{config.port}",
                "routes": dict(describe_routes(config)),
                "auth": server.auth is not None,
            }
        },
    )
    try:
        asyncio.run(listener.serve())
    except KeyboardInterrupt:
        logger.info("transport.http.interrupted")
        raise
    except Exception:
        logger.exception("transport.http.failed")
        raise
    logger.info("transport.http.stop")
