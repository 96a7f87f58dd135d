"""In-process stand-ins for the stage runner and service manager."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING

from qaplaybook.pipeline import (
    FailurePolicy,
    PatternExtractor,
    ServiceHandle,
    ServiceSpec,
    ServiceStatus,
    Stage,
    StageOutcome,
)

if TYPE_CHECKING:
    from pathlib import Path

    from qaplaybook.pipeline import ExecutionContext, MetricExtractor


@dataclass
class ScriptedStage:
    """Canned result a FakeRunner returns for one stage."""

    exit_code: int = 0
    output: str = ""
    artifact: str | None = None
    timed_out: bool = False


class FakeRunner:
    """Stage runner that never spawns processes."""

    def __init__(self, script: dict[str, ScriptedStage] | None = None) -> None:
        self.script = script or {}
        self.invoked: list[str] = []
        self.env_seen: dict[str, dict[str, str]] = {}
        self.env_file_present: dict[str, bool] = {}
        self.env_file: Path | None = None

    def run(self, stage: Stage, context: ExecutionContext) -> StageOutcome:
        self.invoked.append(stage.name)
        self.env_seen[stage.name] = context.stage_env()
        if self.env_file is not None:
            self.env_file_present[stage.name] = self.env_file.exists()
        step = self.script.get(stage.name, ScriptedStage())
        if stage.artifact_path is not None:
            stage.artifact_path.unlink(missing_ok=True)
            if step.artifact is not None:
                stage.artifact_path.parent.mkdir(parents=True, exist_ok=True)
                stage.artifact_path.write_text(step.artifact)
        return StageOutcome(
            stage=stage.name,
            exit_code=step.exit_code,
            captured_output=step.output,
            timed_out=step.timed_out,
        )


class FakeServiceManager:
    """Service manager that hands out handles without spawning processes.

    ``outcomes`` maps a service name to the status its handle should reach,
    or to an exception ``start`` should raise.
    """

    def __init__(self, outcomes: dict[str, ServiceStatus | Exception] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.started: list[ServiceHandle] = []
        self.stop_calls: Counter[str] = Counter()

    def start(self, spec: ServiceSpec) -> ServiceHandle:
        outcome = self.outcomes.get(spec.name, ServiceStatus.HEALTHY)
        if isinstance(outcome, Exception):
            raise outcome
        handle = ServiceHandle(
            name=spec.name,
            process_id=4000 + len(self.started),
            host=spec.host,
            port=spec.port,
            health_check_target=spec.health_check_target,
            log_path=spec.log_path,
            status=outcome,
            env_var=spec.url_env,
        )
        self.started.append(handle)
        return handle

    def stop(self, handle: ServiceHandle) -> None:
        if handle.status is ServiceStatus.STOPPED:
            return
        self.stop_calls[handle.name] += 1
        handle.status = ServiceStatus.STOPPED

    def stop_all(self) -> None:
        for handle in reversed(self.started):
            self.stop(handle)


def make_stage(
    tmp_path: Path,
    name: str,
    extractor: MetricExtractor | None = None,
    *,
    policy: FailurePolicy = FailurePolicy.TOLERANT,
    artifact: str | None = None,
    mandatory: bool = True,
) -> Stage:
    """Stage rooted in tmp_path, counting "N passing" by default."""
    return Stage(
        name=name,
        command=("true",),
        failure_policy=policy,
        log_path=tmp_path / "logs" / f"{name}.log",
        extractor=extractor or PatternExtractor([r"(?P<count>\d+) passing"]),
        artifact_path=tmp_path / artifact if artifact else None,
        mandatory=mandatory,
    )


def make_service(
    tmp_path: Path,
    name: str,
    *,
    port: int,
    mandatory: bool = True,
    on_degraded: str = "abort",
    url_env: str | None = None,
) -> ServiceSpec:
    return ServiceSpec(
        name=name,
        command=("serve", name),
        host="127.0.0.1",
        port=port,
        log_path=tmp_path / "logs" / f"{name}.log",
        mandatory=mandatory,
        on_degraded=on_degraded,  # type: ignore[arg-type]
        url_env=url_env,
    )
