"""Startup configuration.

Values are layered, later layers winning: built-in defaults, an optional JSON
file, ``NEEMEE_MCP_*`` environment variables, then command line flags.
"""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, Sequence

ENV_PREFIX = "NEEMEE_MCP_"

BACKENDS = ("local", "api")
TRANSPORTS = ("stdio", "http", "sse")

DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8765
DEFAULT_HTTP_PATH = "/mcp"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_TENANT = "default"
DEFAULT_STORAGE_DIR = (Path.cwd() / "neemee-data").resolve()

_SECONDS_PER_UNIT = {"s": 1, "m": 60, "h": 3600}
_TRUTHY = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY = frozenset({"0", "false", "f", "no", "n", "off"})

DEFAULT_VALUES: dict[str, Any] = {
    "config_file": None,
    "storage_dir": str(DEFAULT_STORAGE_DIR),
    "backend": "local",
    "api_base_url": None,
    "api_key": None,
    "api_timeout": "30s",
    "transport": "stdio",
    "http_host": DEFAULT_HTTP_HOST,
    "http_port": DEFAULT_HTTP_PORT,
    "http_path": DEFAULT_HTTP_PATH,
    "enable_auth": False,
    "enable_metrics": False,
    "metrics_path": DEFAULT_METRICS_PATH,
    "auth_cache_ttl": "5m",
    "default_tenant": DEFAULT_TENANT,
    "shutdown_timeout": "5s",
}

ENV_FIELD_MAP = {name: f"{ENV_PREFIX}{name.upper()}" for name in DEFAULT_VALUES}

# Persisted alongside the other settings, except secrets.
_NOT_PERSISTED = frozenset({"api_key"})


class ConfigError(ValueError):
    """A configuration value is missing, malformed or inconsistent."""


@dataclass(slots=True)
class Config:
    storage_dir: Path
    backend: str
    api_base_url: str | None
    api_key: str | None
    api_timeout: timedelta
    transport: str
    http_host: str
    http_port: int
    http_path: str
    enable_auth: bool
    enable_metrics: bool
    metrics_path: str
    auth_cache_ttl: timedelta
    default_tenant: str
    shutdown_timeout: timedelta
    config_file: Path | None = None


# (flag, metavar, help)
_FLAGS: tuple[tuple[str, str, str], ...] = (
    ("--config-file", "PATH", "JSON file holding any of these settings; written with the effective values if absent."),
    ("--storage-dir", "PATH", f"LanceDB directory for the local backend (default: {DEFAULT_STORAGE_DIR})."),
    ("--backend", "MODE", "'local' stores notes in LanceDB, 'api' forwards to a remote endpoint (default: local)."),
    ("--api-base-url", "URL", "JSON-RPC endpoint of the remote backend; required with --backend api."),
    ("--api-key", "KEY", "API key for stdio sessions, also sent to the remote backend."),
    ("--api-timeout", "DURATION", "Remote request timeout, e.g. 30s or 2m (default: 30s)."),
    ("--transport", "NAME", "stdio, http or sse (default: stdio)."),
    ("--http-host", "HOST", f"Listener address for http/sse (default: {DEFAULT_HTTP_HOST})."),
    ("--http-port", "PORT", f"Listener port for http/sse (default: {DEFAULT_HTTP_PORT})."),
    ("--http-path", "PATH", f"MCP endpoint path (default: {DEFAULT_HTTP_PATH})."),
    ("--enable-auth", "BOOL", "Require an API key on every call (default: false)."),
    ("--enable-metrics", "BOOL", "Serve Prometheus metrics; http/sse only (default: false)."),
    ("--metrics-path", "PATH", f"Metrics endpoint path (default: {DEFAULT_METRICS_PATH})."),
    ("--auth-cache-ttl", "DURATION", "How long a verified key skips re-hashing (default: 5m)."),
    ("--default-tenant", "NAME", f"Tenant used while auth is disabled (default: {DEFAULT_TENANT})."),
    ("--shutdown-timeout", "DURATION", "How long shutdown waits for running calls (default: 5s)."),
)


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="neemee-mcp", description="Neemee notes MCP server.")
    for flag, metavar, help_text in _FLAGS:
        parser.add_argument(flag, dest=flag[2:].replace("-", "_"), metavar=metavar, help=help_text)
    return parser


def load_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Resolve the effective configuration. Raises :class:`ConfigError` on bad input."""

    cli = {key: value for key, value in vars(_build_arg_parser().parse_args(argv)).items() if value is not None}
    env_source = os.environ if environ is None else environ
    env = {name: env_source[var] for name, var in ENV_FIELD_MAP.items() if var in env_source}

    config_file = cli.get("config_file") or env.get("config_file")
    from_file = _read_config_file(config_file) if config_file else {}

    merged = dict(DEFAULT_VALUES)
    for layer in (from_file, env, cli):
        merged.update({key: value for key, value in layer.items() if value is not None})
    merged["config_file"] = config_file

    config = _build_config(merged)
    if config.config_file is not None and not config.config_file.exists():
        _write_config_file(config)
    return config


def hot_reload_config(*_args: Any, **_kwargs: Any) -> None:
    """Settings are fixed once the server starts."""

    raise ConfigError("Configuration is read once at startup; restart the server to change it.")


def _read_config_file(raw_path: str | Path) -> dict[str, Any]:
    path = _to_path(raw_path, "config_file")
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path} is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must hold a JSON object")
    return {key: value for key, value in data.items() if key in DEFAULT_VALUES and key != "config_file"}


def _build_config(values: Mapping[str, Any]) -> Config:
    backend = _to_choice(values["backend"], "backend", BACKENDS)
    transport = _to_choice(values["transport"], "transport", TRANSPORTS)
    api_base_url = _to_optional_str(values["api_base_url"])
    api_key = _to_optional_str(values["api_key"])
    if backend == "api" and not (api_base_url and api_key):
        raise ConfigError("the api backend needs both api_base_url and api_key")

    enable_auth = _to_bool(values["enable_auth"], "enable_auth")
    if backend == "api" and enable_auth and transport != "stdio":
        # No local key store to verify network callers against.
        raise ConfigError("enable_auth over http/sse requires the local backend")

    enable_metrics = _to_bool(values["enable_metrics"], "enable_metrics")
    http_path = str(values["http_path"])
    metrics_path = str(values["metrics_path"])
    if enable_metrics:
        if transport == "stdio":
            raise ConfigError("metrics are served over HTTP; use the http or sse transport")
        if http_path == metrics_path:
            raise ConfigError("http_path and metrics_path must differ")

    default_tenant = str(values["default_tenant"] or "").strip()
    if not default_tenant:
        raise ConfigError("default_tenant must not be blank")

    return Config(
        storage_dir=_to_path(values["storage_dir"], "storage_dir"),
        backend=backend,
        api_base_url=api_base_url,
        api_key=api_key,
        api_timeout=_to_duration(values["api_timeout"], "api_timeout"),
        transport=transport,
        http_host=str(values["http_host"]),
        http_port=_to_port(values["http_port"]),
        http_path=http_path,
        enable_auth=enable_auth,
        enable_metrics=enable_metrics,
        metrics_path=metrics_path,
        auth_cache_ttl=_to_duration(values["auth_cache_ttl"], "auth_cache_ttl"),
        default_tenant=default_tenant,
        shutdown_timeout=_to_duration(values["shutdown_timeout"], "shutdown_timeout"),
        config_file=_to_path(values["config_file"], "config_file") if values.get("config_file") else None,
    )


def _write_config_file(config: Config) -> None:
    assert config.config_file is not None
    payload: dict[str, Any] = {}
    for entry in fields(config):
        if entry.name in _NOT_PERSISTED:
            continue
        value = getattr(config, entry.name)
        if isinstance(value, timedelta):
            value = _format_duration(value, "m" if entry.name == "auth_cache_ttl" else "s")
        elif isinstance(value, Path):
            value = str(value)
        payload[entry.name] = value
    config.config_file.parent.mkdir(parents=True, exist_ok=True)
    config.config_file.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def _format_duration(duration: timedelta, unit: str) -> str:
    seconds = int(duration.total_seconds())
    per_unit = _SECONDS_PER_UNIT[unit]
    if seconds % per_unit:
        return f"{seconds}s"
    return f"{seconds // per_unit}{unit}"


def _to_choice(value: Any, name: str, choices: Sequence[str]) -> str:
    normalized = str(value or "").strip().lower()
    if normalized not in choices:
        raise ConfigError(f"{name} must be one of {', '.join(choices)} (got {value!r})")
    return normalized


def _to_optional_str(value: Any) -> str | None:
    text = "" if value is None else str(value).strip()
    return text or None


def _to_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in _TRUTHY:
        return True
    if token in _FALSY:
        return False
    raise ConfigError(f"{name} expects a boolean, got {value!r}")


def _to_port(value: Any) -> int:
    try:
        port = int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"http_port expects an integer, got {value!r}") from exc
    if not 0 <= port <= 65535:
        raise ConfigError(f"http_port {port} is outside 0-65535")
    return port


def _to_duration(value: Any, name: str) -> timedelta:
    """Accept ``timedelta``, bare seconds, or ``<n>s`` / ``<n>m`` / ``<n>h``."""

    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0:
            raise ConfigError(f"{name} must not be negative")
        return timedelta(seconds=value)
    text = str(value).strip().lower()
    unit = text[-1:] if text[-1:] in _SECONDS_PER_UNIT else "s"
    digits = text[:-1] if text[-1:] in _SECONDS_PER_UNIT else text
    if not digits.isdigit():
        raise ConfigError(f"{name} expects a duration like 30s, 5m or 1h, got {value!r}")
    return timedelta(seconds=int(digits) * _SECONDS_PER_UNIT[unit])


def _to_path(value: Any, name: str) -> Path:
    text = str(value).strip() if isinstance(value, (str, Path)) else ""
    if not text:
        raise ConfigError(f"{name} must be a non-empty path")
    return Path(text).expanduser().resolve()
