"""Tests for service lifecycle management."""

from __future__ import annotations

import sys
import time
from typing import TYPE_CHECKING
from unittest.mock import patch

import httpx
import pytest

from qaplaybook.pipeline.errors import ServiceStartFailure
from qaplaybook.pipeline.services import (
    ServiceLifecycleManager,
    ServiceSpec,
    ServiceStatus,
    http_probe,
)

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")

SLEEPER = (sys.executable, "-c", "import time; print('listening', flush=True); time.sleep(60)")


def _spec(tmp_path: Path, command: tuple[str, ...] = SLEEPER, **kwargs: object) -> ServiceSpec:
    defaults: dict[str, object] = {
        "name": "mock-api",
        "host": "127.0.0.1",
        "port": 4010,
        "log_path": tmp_path / "logs" / "prism.log",
        "max_attempts": 3,
        "poll_interval": 0.1,
        "url_env": "BASE_URL",
    }
    defaults.update(kwargs)
    return ServiceSpec(command=command, **defaults)  # type: ignore[arg-type]


class ProbeStub:
    """Health probe answering False until ``healthy_after`` attempts."""

    def __init__(self, healthy_after: int | None = None) -> None:
        self.healthy_after = healthy_after
        self.calls: list[str] = []

    def __call__(self, url: str, timeout: float) -> bool:
        self.calls.append(url)
        return self.healthy_after is not None and len(self.calls) >= self.healthy_after


def _manager(tmp_path: Path, probe: ProbeStub, **kwargs: object) -> ServiceLifecycleManager:
    options: dict[str, object] = {
        "probe": probe,
        "sleep": lambda _s: None,
        "port_check": lambda _h, _p: False,
        "stop_grace": 2.0,
    }
    options.update(kwargs)
    return ServiceLifecycleManager(tmp_path, **options)  # type: ignore[arg-type]


def test_start_healthy(tmp_path: Path) -> None:
    """A service that answers becomes HEALTHY and is tracked."""
    probe = ProbeStub(healthy_after=2)
    manager = _manager(tmp_path, probe)

    handle = manager.start(_spec(tmp_path))
    try:
        assert handle.status is ServiceStatus.HEALTHY
        assert handle.usable is True
        assert handle.base_url == "http://127.0.0.1:4010"
        assert handle.env_var == "BASE_URL"
        assert handle.process is not None
        assert handle.process.poll() is None
        assert probe.calls == ["http://127.0.0.1:4010/", "http://127.0.0.1:4010/"]
        assert manager.handles == [handle]
    finally:
        manager.stop_all()


def test_start_degraded_after_budget(tmp_path: Path) -> None:
    """A running service that never answers is DEGRADED, not failed."""
    probe = ProbeStub()
    sleeps: list[float] = []
    manager = _manager(tmp_path, probe, sleep=sleeps.append)

    handle = manager.start(_spec(tmp_path, health_check_url="http://127.0.0.1:4010/health"))
    try:
        assert handle.status is ServiceStatus.DEGRADED
        assert handle.usable is True
        assert len(probe.calls) == 3
        assert probe.calls[0] == "http://127.0.0.1:4010/health"
        # No sleep after the final attempt
        assert sleeps == [0.1, 0.1]
    finally:
        manager.stop_all()


def test_port_in_use_fails_fast(tmp_path: Path) -> None:
    """A bound port is reported before anything is spawned."""
    probe = ProbeStub(healthy_after=1)
    manager = _manager(tmp_path, probe, port_check=lambda _h, _p: True)

    with pytest.raises(ServiceStartFailure, match="port 4010 on 127.0.0.1 is already in use"):
        manager.start(_spec(tmp_path))

    assert manager.handles == []
    assert probe.calls == []


def test_missing_binary(tmp_path: Path) -> None:
    """A binary that cannot be executed is a start failure."""
    manager = _manager(tmp_path, ProbeStub(healthy_after=1))

    with pytest.raises(ServiceStartFailure) as exc_info:
        manager.start(_spec(tmp_path, command=("no-such-prism-binary-qa",)))

    assert exc_info.value.service == "mock-api"
    assert manager.handles == []


def test_early_exit_is_start_failure(tmp_path: Path) -> None:
    """A process that dies before answering fails the start and is stopped."""
    manager = _manager(tmp_path, ProbeStub(), sleep=lambda _s: time.sleep(0.3))
    command = (sys.executable, "-c", "print('invalid openapi document'); raise SystemExit(2)")

    with pytest.raises(ServiceStartFailure, match="exited with code 2"):
        manager.start(_spec(tmp_path, command=command, max_attempts=20))

    (handle,) = manager.handles
    assert handle.status is ServiceStatus.STOPPED
    assert "invalid openapi document" in (tmp_path / "logs" / "prism.log").read_text()


def test_stop_is_idempotent(tmp_path: Path) -> None:
    """Stopping twice is harmless and the process is gone."""
    manager = _manager(tmp_path, ProbeStub(healthy_after=1))
    handle = manager.start(_spec(tmp_path))

    manager.stop(handle)
    manager.stop(handle)

    assert handle.status is ServiceStatus.STOPPED
    assert handle.usable is False
    assert handle.process is not None
    assert handle.process.poll() is not None
    assert handle.log_file is None


def test_stop_all_stops_every_handle(tmp_path: Path) -> None:
    """stop_all releases every service started by the manager."""
    manager = _manager(tmp_path, ProbeStub(healthy_after=1))
    first = manager.start(_spec(tmp_path))
    second = manager.start(
        _spec(tmp_path, name="web", port=8080, log_path=tmp_path / "logs" / "web.log")
    )

    manager.stop_all()

    for handle in (first, second):
        assert handle.status is ServiceStatus.STOPPED
        assert handle.process is not None
        assert handle.process.poll() is not None


def test_service_output_goes_to_its_log(tmp_path: Path) -> None:
    """Service stdout is written to the service log file."""
    manager = _manager(tmp_path, ProbeStub(healthy_after=1))
    handle = manager.start(_spec(tmp_path))
    deadline = time.monotonic() + 5
    while "listening" not in handle.log_path.read_text() and time.monotonic() < deadline:
        time.sleep(0.05)
    manager.stop_all()

    assert "listening" in handle.log_path.read_text()


# --- http_probe ---


def test_http_probe_any_status_counts() -> None:
    """Mock servers answer unknown routes with 404; that still means up."""
    with patch("qaplaybook.pipeline.services.httpx.get") as mock_get:
        mock_get.return_value = httpx.Response(404)

        assert http_probe("http://127.0.0.1:4010/", 0.5) is True
        mock_get.assert_called_once_with("http://127.0.0.1:4010/", timeout=0.5)


def test_http_probe_connection_refused() -> None:
    """Transport errors mean not ready."""
    with patch("qaplaybook.pipeline.services.httpx.get") as mock_get:
        mock_get.side_effect = httpx.ConnectError("refused")

        assert http_probe("http://127.0.0.1:4010/", 0.5) is False
