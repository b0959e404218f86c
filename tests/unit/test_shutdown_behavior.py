from __future__ import annotations

import asyncio
import dataclasses
import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest

from neemee_mcp import load_config
from neemee_mcp.errors import CONFIG_ERROR, NeemeeError
from neemee_mcp.server import (
    _PENDING_CLOSES,
    _SHUTDOWN_MANAGER,
    _close_backend,
    _search_notebooks_impl,
    initialize_app,
    shutdown_app,
)


def _config(tmp_path: Path, *extra: str):
    return load_config(argv=["--storage-dir", str(tmp_path / "storage"), *extra], environ={})


@pytest.mark.asyncio
async def test_requests_rejected_once_shutdown_starts(tmp_path: Path) -> None:
    initialize_app(_config(tmp_path))
    assert _SHUTDOWN_MANAGER.close_and_drain(timedelta(0)) is True
    try:
        response = await _search_notebooks_impl()
        assert response["ok"] is False
        assert response["error"]["code"] == CONFIG_ERROR
    finally:
        shutdown_app()


def test_shutdown_waits_for_inflight_requests(tmp_path: Path) -> None:
    initialize_app(_config(tmp_path, "--shutdown-timeout", "2s"))
    release = _SHUTDOWN_MANAGER.try_enter()
    assert release is not None
    released = False

    thread = threading.Thread(target=shutdown_app)
    thread.start()
    try:
        time.sleep(0.05)
        assert thread.is_alive()
        release()
        released = True
        thread.join(timeout=1)
        assert not thread.is_alive()
    finally:
        if not released:
            release()
        thread.join(timeout=1)


def test_drain_reports_timeout(tmp_path: Path) -> None:
    initialize_app(_config(tmp_path))
    release = _SHUTDOWN_MANAGER.try_enter()
    assert release is not None
    try:
        assert _SHUTDOWN_MANAGER.close_and_drain(timedelta(milliseconds=20)) is False
        assert _SHUTDOWN_MANAGER.active_requests == 1
        assert _SHUTDOWN_MANAGER.try_enter() is None
    finally:
        release()
        shutdown_app()


def test_initialize_reopens_after_shutdown(tmp_path: Path) -> None:
    initialize_app(_config(tmp_path))
    shutdown_app()
    initialize_app(_config(tmp_path))
    try:
        release = _SHUTDOWN_MANAGER.try_enter()
        assert release is not None
        release()
    finally:
        shutdown_app()


class _ClosingBackend:
    def __init__(self, error: Exception | None = None) -> None:
        self.closed = False
        self._error = error

    async def close(self) -> None:
        self.closed = True
        if self._error is not None:
            raise self._error


def test_close_backend_without_loop_runs_to_completion() -> None:
    backend = _ClosingBackend()
    assert _close_backend(backend) is None
    assert backend.closed is True


@pytest.mark.asyncio
async def test_close_backend_inside_loop_keeps_task_until_done() -> None:
    backend = _ClosingBackend(RuntimeError("socket already closed"))
    task = _close_backend(backend)
    assert task is not None
    assert task in _PENDING_CLOSES

    with pytest.raises(RuntimeError):
        await task
    await asyncio.sleep(0)

    assert backend.closed is True
    assert task not in _PENDING_CLOSES


def test_initialize_rejects_api_backend_without_credentials(tmp_path: Path) -> None:
    config = dataclasses.replace(_config(tmp_path), backend="api")
    with pytest.raises(NeemeeError) as excinfo:
        initialize_app(config)
    assert excinfo.value.code == CONFIG_ERROR
