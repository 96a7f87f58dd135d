"""Stage definitions for the verification pipeline.

Stages are plain data: the orchestrator walks them in order, the runner
executes them and their extractor turns the outcome into a metric record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from qaplaybook.pipeline.extractors import MetricExtractor

DEFAULT_STAGE_TIMEOUT = 900.0


class FailurePolicy(Enum):
    """What a nonzero exit of a stage means for the rest of the pipeline."""

    FAIL_FAST = "fail-fast"  # abort every later stage
    TOLERANT = "tolerant"  # record and continue


@dataclass(frozen=True)
class Stage:
    """One verification step of the pipeline.

    Attributes:
        name: Unique stage identifier, used in logs and the report.
        command: Argument vector to execute.
        failure_policy: How a nonzero exit is handled.
        log_path: File receiving the stage's combined stdout/stderr.
        extractor: Turns the stage outcome into a MetricRecord.
        artifact_path: Report file the stage is expected to leave behind.
        mandatory: Whether failures of this stage count as quality-gate issues.
        timeout_seconds: Wall-clock limit for the stage process.
        env: Extra environment variables for this stage only.
        mode_commands: Command overrides keyed by execution mode.
        cwd: Working directory; defaults to the project root.
    """

    name: str
    command: tuple[str, ...]
    failure_policy: FailurePolicy
    log_path: Path
    extractor: MetricExtractor
    artifact_path: Path | None = None
    mandatory: bool = True
    timeout_seconds: float = DEFAULT_STAGE_TIMEOUT
    env: dict[str, str] = field(default_factory=dict)
    mode_commands: dict[str, tuple[str, ...]] = field(default_factory=dict)
    cwd: Path | None = None

    @property
    def fail_fast(self) -> bool:
        return self.failure_policy is FailurePolicy.FAIL_FAST

    def command_for(self, mode: str) -> tuple[str, ...]:
        """Command to run in the given execution mode."""
        return self.mode_commands.get(mode, self.command)


@dataclass(frozen=True)
class StageOutcome:
    """What the runner observed after a stage process terminated.

    Attributes:
        stage: Name of the stage.
        exit_code: Process exit code, or a synthetic code on timeout/spawn failure.
        captured_output: Combined stdout/stderr as written to the stage log.
        timed_out: True if the runner killed the process on timeout.
        duration_seconds: Wall-clock run time.
    """

    stage: str
    exit_code: int
    captured_output: str = ""
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0
