"""Package loggers.

Everything under the ``neemee_mcp`` logger is handed to FastMCP's rich handler,
which writes to stderr and leaves stdout to the stdio JSON-RPC stream. Events
are dotted names with structured fields under ``extra={"context": {...}}``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastmcp.utilities.logging import configure_logging as _configure_fastmcp_logging

ROOT_LOGGER = "neemee_mcp"

_ready = False


def configure_logging(level: str | int = "INFO", **handler_options: Any) -> logging.Logger:
    global _ready
    root = logging.getLogger(ROOT_LOGGER)
    _configure_fastmcp_logging(level=level, logger=root, **handler_options)
    _ready = True
    return root


def get_logger(name: str | None = None) -> logging.Logger:
    """Return ``neemee_mcp.<name>``, configuring the defaults on first use."""

    if not _ready:
        configure_logging()
    if not name or name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name or ROOT_LOGGER)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
