"""MCP server giving assistants tenant-scoped access to Neemee notes and notebooks."""

from .config import Config, load_config
from .logging import configure_logging
from .server import SERVER, SERVER_VERSION as __version__, main

__all__ = ["SERVER", "Config", "__version__", "configure_logging", "load_config", "main"]
