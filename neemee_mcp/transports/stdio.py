"""Serve the MCP server over stdin/stdout."""

from __future__ import annotations

from fastmcp import FastMCP

from ..logging import get_logger

logger = get_logger(__name__)


def run_stdio(server: FastMCP, *, show_banner: bool = False) -> None:
    # Blocks until the client closes stdin.
    logger.info("transport.stdio.start", extra={"context": {"server": server.name}})
    try:
        server.run(transport="stdio", show_banner=show_banner)
    except KeyboardInterrupt:
        logger.info("transport.stdio.interrupted")
        raise
    except Exception:
        logger.exception("transport.stdio.failed")
        raise
    logger.info("transport.stdio.stop")
