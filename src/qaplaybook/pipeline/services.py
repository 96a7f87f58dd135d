"""Lifecycle management for auxiliary background services.

Services (the mock API, the static web server) run as owned child processes
for the duration of a playbook run. Readiness is established by bounded
health-check polling; shutdown is tracked by process identity only.
"""

from __future__ import annotations

import os
import socket
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import IO, Literal

import httpx

from qaplaybook.observability.logging import get_logger
from qaplaybook.pipeline.errors import ServiceStartFailure
from qaplaybook.pipeline.process import terminate_process_group

log = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_MAX_ATTEMPTS = 6
DEFAULT_STOP_GRACE = 5.0

# (url, timeout_seconds) -> reachable
ProbeFn = Callable[[str, float], bool]
SleepFn = Callable[[float], None]


class ServiceStatus(Enum):
    """Lifecycle state of a service handle."""

    STARTING = "starting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # health check budget exhausted, process still running
    STOPPED = "stopped"


@dataclass(frozen=True)
class ServiceSpec:
    """How to launch and probe one auxiliary service.

    Attributes:
        name: Service identifier.
        command: Argument vector to execute.
        host: Interface the service binds.
        port: Port the service binds.
        log_path: File receiving the service's stdout/stderr.
        health_check_url: URL polled for readiness; defaults to the service root.
        mandatory: A mandatory service that fails to start aborts the run.
        on_degraded: Whether a mandatory service that never answers aborts the run.
        poll_interval: Seconds between health-check attempts.
        max_attempts: Health-check attempts before the service is degraded.
        env: Extra environment variables for the service process.
        url_env: Environment variable used to advertise the URL to stages.
        cwd: Working directory; defaults to the project root.
    """

    name: str
    command: tuple[str, ...]
    host: str
    port: int
    log_path: Path
    health_check_url: str | None = None
    mandatory: bool = True
    on_degraded: Literal["abort", "continue"] = "abort"
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    env: dict[str, str] = field(default_factory=dict)
    url_env: str | None = None
    cwd: Path | None = None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def health_check_target(self) -> str:
        return self.health_check_url or f"{self.base_url}/"


@dataclass
class ServiceHandle:
    """A started service owned by the current run."""

    name: str
    process_id: int
    host: str
    port: int
    health_check_target: str
    log_path: Path
    status: ServiceStatus = ServiceStatus.STARTING
    env_var: str | None = None
    process: subprocess.Popen[bytes] | None = field(default=None, repr=False)
    log_file: IO[str] | None = field(default=None, repr=False)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def usable(self) -> bool:
        """Whether stages may rely on this service."""
        return self.status in (ServiceStatus.HEALTHY, ServiceStatus.DEGRADED)


def http_probe(url: str, timeout: float) -> bool:
    """Return True if anything answers HTTP at ``url``.

    Any status code counts: mock servers answer unknown routes with 404.
    """
    try:
        httpx.get(url, timeout=timeout)
    except httpx.HTTPError:
        return False
    return True


def port_in_use(host: str, port: int, timeout: float = 0.5) -> bool:
    """Return True if something already accepts connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class ServiceLifecycleManager:
    """Start, health-check and stop auxiliary services.

    The manager remembers every handle it created so that ``stop_all`` can
    release them on any exit path. ``stop`` is idempotent.
    """

    def __init__(
        self,
        cwd: Path,
        *,
        probe: ProbeFn = http_probe,
        sleep: SleepFn = time.sleep,
        port_check: Callable[[str, int], bool] = port_in_use,
        stop_grace: float = DEFAULT_STOP_GRACE,
    ) -> None:
        self._cwd = cwd
        self._probe = probe
        self._sleep = sleep
        self._port_check = port_check
        self._stop_grace = stop_grace
        self._handles: list[ServiceHandle] = []

    @property
    def handles(self) -> list[ServiceHandle]:
        """Handles started by this manager, in start order."""
        return list(self._handles)

    def start(self, spec: ServiceSpec) -> ServiceHandle:
        """Launch a service and wait for it to answer its health check.

        Returns:
            Handle with status HEALTHY, or DEGRADED if the retry budget ran out.

        Raises:
            ServiceStartFailure: If the port is taken, the process cannot be
                spawned, or it exits before answering.
        """
        if self._port_check(spec.host, spec.port):
            raise ServiceStartFailure(
                spec.name, f"port {spec.port} on {spec.host} is already in use"
            )

        spec.log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = spec.log_path.open("w", encoding="utf-8")
        try:
            process = subprocess.Popen(
                list(spec.command),
                stdout=log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=spec.cwd or self._cwd,
                env={**os.environ, **spec.env},
                start_new_session=True,
            )
        except OSError as e:
            log_file.close()
            raise ServiceStartFailure(spec.name, str(e)) from e

        handle = ServiceHandle(
            name=spec.name,
            process_id=process.pid,
            host=spec.host,
            port=spec.port,
            health_check_target=spec.health_check_target,
            log_path=spec.log_path,
            env_var=spec.url_env,
            process=process,
            log_file=log_file,
        )
        # Tracked before polling so a failed start is still cleaned up
        self._handles.append(handle)
        log.info("service_spawned", service=spec.name, pid=process.pid, port=spec.port)

        self._wait_until_healthy(handle, spec)
        return handle

    def _wait_until_healthy(self, handle: ServiceHandle, spec: ServiceSpec) -> None:
        probe_timeout = max(spec.poll_interval, 0.5)
        for attempt in range(1, spec.max_attempts + 1):
            if handle.process is not None and handle.process.poll() is not None:
                returncode = handle.process.returncode
                self.stop(handle)
                raise ServiceStartFailure(
                    spec.name,
                    f"process exited with code {returncode} before becoming healthy "
                    f"(see {spec.log_path})",
                )
            if self._probe(handle.health_check_target, probe_timeout):
                handle.status = ServiceStatus.HEALTHY
                log.info("service_healthy", service=spec.name, attempts=attempt)
                return
            log.debug("service_probe_failed", service=spec.name, attempt=attempt)
            if attempt < spec.max_attempts:
                self._sleep(spec.poll_interval)

        handle.status = ServiceStatus.DEGRADED
        log.warning(
            "service_degraded",
            service=spec.name,
            attempts=spec.max_attempts,
            target=handle.health_check_target,
        )

    def stop(self, handle: ServiceHandle) -> None:
        """Terminate the service's own process group. No-op if already stopped."""
        if handle.status is ServiceStatus.STOPPED:
            return

        returncode: int | None = None
        if handle.process is not None:
            returncode = terminate_process_group(handle.process, self._stop_grace)
        if handle.log_file is not None:
            handle.log_file.close()
            handle.log_file = None

        handle.status = ServiceStatus.STOPPED
        log.info("service_stopped", service=handle.name, pid=handle.process_id, returncode=returncode)

    def stop_all(self) -> None:
        """Stop every handle this manager started, most recent first."""
        for handle in reversed(self._handles):
            self.stop(handle)
