from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from neemee_mcp.config import load_config
from neemee_mcp.server import SERVER, main as run_main
from neemee_mcp.transports.stdio import run_stdio


class _RecordingServer:
    name = "recording"

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def run(self, *, transport: str, show_banner: bool) -> None:
        self.calls.append({"transport": transport, "show_banner": show_banner})


def _patch_main(monkeypatch: pytest.MonkeyPatch, argv: list[str], tmp_path: Path) -> list[tuple[str, Any]]:
    config = load_config(argv=argv, environ={"NEEMEE_MCP_STORAGE_DIR": str(tmp_path)})
    calls: list[tuple[str, Any]] = []
    monkeypatch.setattr("neemee_mcp.server.configure_logging", lambda: None)
    monkeypatch.setattr("neemee_mcp.server.load_config", lambda argv: config)
    monkeypatch.setattr("neemee_mcp.server.initialize_app", lambda cfg: calls.append(("init", cfg.transport)))
    monkeypatch.setattr("neemee_mcp.server.shutdown_app", lambda: calls.append(("shutdown", None)))
    monkeypatch.setattr("neemee_mcp.server.run_stdio", lambda server: calls.append(("stdio", server)))
    monkeypatch.setattr("neemee_mcp.server.run_http", lambda server, cfg: calls.append(("http", cfg)))
    return calls


def test_run_stdio_uses_fastmcp_stdio_transport() -> None:
    server = _RecordingServer()
    run_stdio(server)
    assert server.calls == [{"transport": "stdio", "show_banner": False}]


def test_run_stdio_propagates_keyboard_interrupt() -> None:
    class _Interrupted(_RecordingServer):
        def run(self, *, transport: str, show_banner: bool) -> None:
            raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        run_stdio(_Interrupted())


def test_main_serves_stdio_by_default(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls = _patch_main(monkeypatch, [], tmp_path)

    run_main([])

    assert calls == [("init", "stdio"), ("stdio", SERVER), ("shutdown", None)]


def test_main_passes_metrics_path_to_http(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls = _patch_main(monkeypatch, ["--transport", "sse", "--enable-metrics", "true", "--http-port", "9100"], tmp_path)

    run_main([])

    http_calls = [cfg for kind, cfg in calls if kind == "http"]
    assert len(http_calls) == 1
    http_config = http_calls[0]
    assert http_config.transport == "sse"
    assert http_config.port == 9100
    assert http_config.metrics_path == "/metrics"
    assert calls[-1] == ("shutdown", None)


def test_main_exits_with_status_two_on_bad_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("neemee_mcp.server.configure_logging", lambda: None)

    with pytest.raises(SystemExit) as excinfo:
        run_main(["--backend", "cloud"])

    assert excinfo.value.code == 2
