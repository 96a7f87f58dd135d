"""Run-level execution context threaded through every pipeline component."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from qaplaybook.models import MetricRecord
    from qaplaybook.pipeline.services import ServiceHandle
    from qaplaybook.pipeline.stages import StageOutcome


@dataclass
class ExecutionContext:
    """State of a single playbook run.

    The orchestrator owns the context for the lifetime of the run. Service
    handles are kept here so they survive stage boundaries and can be stopped
    during cleanup whatever the exit path.

    Attributes:
        project_path: Root directory stages run in.
        mode: Execution mode selector ("pr" or "nightly").
        seed: Deterministic seed forwarded to stages.
        handles: Started services by name, in start order.
        outcomes: Runner outcomes for the stages that were executed.
        records: Metric records, in stage order.
        preflight_issues: Service failures that stop the run before any stage.
        warnings: Non-fatal notes collected outside of metric classification.
        history: States the orchestrator passed through, in order.
        transient_files: Files created for the run and removed on cleanup.
    """

    project_path: Path
    mode: str = "pr"
    seed: int | None = None
    handles: dict[str, ServiceHandle] = field(default_factory=dict)
    outcomes: list[StageOutcome] = field(default_factory=list)
    records: list[MetricRecord] = field(default_factory=list)
    preflight_issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    history: list[str] = field(default_factory=list)
    transient_files: list[Path] = field(default_factory=list)

    def stage_env(self) -> dict[str, str]:
        """Environment variables every stage receives.

        Only services that reached ``healthy`` or ``degraded`` are advertised.
        """
        env = {
            "QA_MODE": self.mode,
            "PBT_MODE": self.mode.upper(),
        }
        if self.seed is not None:
            env["QA_SEED"] = str(self.seed)
            env["PBT_SEED"] = str(self.seed)
        for handle in self.handles.values():
            if handle.usable and handle.env_var:
                env[handle.env_var] = handle.base_url
        return env
