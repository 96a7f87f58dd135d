"""Error types raised at the service and stage boundaries."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class PlaybookError(Exception):
    """Base class for playbook failures."""


class ServiceStartFailure(PlaybookError):
    """Raised when an auxiliary service cannot be brought up.

    Covers a port that is already bound, a missing binary and a process that
    exits before its health check succeeds.
    """

    def __init__(self, service: str, reason: str) -> None:
        self.service = service
        self.reason = reason
        super().__init__(f"Service '{service}' failed to start: {reason}")


class StageExecutionFailure(PlaybookError):
    """Raised when a fail-fast stage exits nonzero or times out."""

    def __init__(self, stage: str, exit_code: int, *, timed_out: bool = False) -> None:
        self.stage = stage
        self.exit_code = exit_code
        self.timed_out = timed_out
        detail = "timed out" if timed_out else f"exited with code {exit_code}"
        super().__init__(f"Stage '{stage}' {detail}")


class PlaybookConfigError(PlaybookError):
    """Raised when playbook configuration cannot be loaded."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load playbook config at {path}: {reason}")
