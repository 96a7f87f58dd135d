"""Pipeline orchestrator for the QA playbook.

Drives one run end to end::

    INIT -> SERVICES_STARTING -> SERVICES_READY -> STAGE_RUNNING(i)*
         -> STAGES_DONE -> ANALYZING -> DONE | FAILED -> CLEANING_UP -> TERMINAL

A mandatory service failure jumps from SERVICES_STARTING to ANALYZING with
every stage reported as not reached. Cleanup runs on every path.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Protocol

from qaplaybook.models import MetricRecord
from qaplaybook.observability.logging import bind_run_context, clear_run_context, get_logger
from qaplaybook.pipeline.context import ExecutionContext
from qaplaybook.pipeline.errors import ServiceStartFailure, StageExecutionFailure
from qaplaybook.pipeline.extractors import safe_extract
from qaplaybook.pipeline.gates import combine
from qaplaybook.pipeline.report import write_reports
from qaplaybook.pipeline.runner import StageRunner
from qaplaybook.pipeline.services import ServiceLifecycleManager, ServiceStatus

if TYPE_CHECKING:
    from qaplaybook.models import ExecutionReport
    from qaplaybook.pipeline.config import PlaybookConfig
    from qaplaybook.pipeline.services import ServiceHandle, ServiceSpec
    from qaplaybook.pipeline.stages import Stage, StageOutcome

log = get_logger(__name__)


class PipelineState(Enum):
    """States of a playbook run."""

    INIT = "init"
    SERVICES_STARTING = "services_starting"
    SERVICES_READY = "services_ready"
    STAGE_RUNNING = "stage_running"
    STAGES_DONE = "stages_done"
    ANALYZING = "analyzing"
    DONE = "done"
    FAILED = "failed"
    CLEANING_UP = "cleaning_up"
    TERMINAL = "terminal"


class ServiceManager(Protocol):
    """What the orchestrator needs from a service lifecycle manager."""

    def start(self, spec: ServiceSpec) -> ServiceHandle: ...

    def stop(self, handle: ServiceHandle) -> None: ...

    def stop_all(self) -> None: ...


class Runner(Protocol):
    """What the orchestrator needs from a stage runner."""

    def run(self, stage: Stage, context: ExecutionContext) -> StageOutcome: ...


class PipelineOrchestrator:
    """Run the configured services and stages and decide the quality gate.

    Attributes:
        config: Playbook configuration.
        context: Execution context of the current (or last) run.
    """

    def __init__(
        self,
        config: PlaybookConfig,
        *,
        mode: str | None = None,
        seed: int | None = None,
        strict: bool | None = None,
        services: ServiceManager | None = None,
        runner: Runner | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Loaded playbook configuration.
            mode: Execution mode override; defaults to QA_MODE or the config.
            seed: Seed override; defaults to QA_SEED or the config.
            strict: Treat warnings as issues; defaults to the config.
            services: Service manager; defaults to a ServiceLifecycleManager.
            runner: Stage runner; defaults to a StageRunner.

        Raises:
            ValueError: If the resolved mode or seed is invalid.
        """
        self.config = config
        self._strict = config.strict if strict is None else strict
        self._services = services or ServiceLifecycleManager(config.project_path)
        self._runner = runner or StageRunner()
        self.context = ExecutionContext(
            project_path=config.project_path,
            mode=config.effective_mode(mode),
            seed=seed if seed is not None else config.effective_seed(),
        )
        self.run_id: str | None = None
        self.state = PipelineState.INIT
        self._enter(PipelineState.INIT)

    def _enter(self, state: PipelineState, **kw: object) -> None:
        self.state = state
        label = state.value
        if state is PipelineState.STAGE_RUNNING and "index" in kw:
            label = f"{label}({kw['index']})"
        self.context.history.append(label)
        log.debug("pipeline_state", state=label, **kw)

    def run(self) -> ExecutionReport:
        """Execute the whole playbook.

        Returns:
            The consolidated ExecutionReport; it is also written to the
            reports directory before services are stopped.
        """
        self.run_id = bind_run_context(mode=self.context.mode, seed=self.context.seed)
        log.info("pipeline_start", playbook=self.config.name, stages=len(self.config.stages))
        try:
            services_ready = self._start_services()
            if services_ready:
                self._run_stages()
            else:
                self._mark_unreached(0)
            return self._analyze()
        finally:
            self._cleanup()

    def _start_services(self) -> bool:
        self._enter(PipelineState.SERVICES_STARTING)
        for spec in self.config.services:
            try:
                handle = self._services.start(spec)
            except ServiceStartFailure as e:
                if spec.mandatory:
                    log.error("mandatory_service_failed", service=spec.name, reason=e.reason)
                    self.context.preflight_issues.append(str(e))
                    return False
                log.warning("optional_service_failed", service=spec.name, reason=e.reason)
                self.context.warnings.append(f"{e} (optional service)")
                continue

            self.context.handles[spec.name] = handle
            if handle.status is ServiceStatus.DEGRADED:
                message = (
                    f"Service '{spec.name}' did not pass its health check "
                    f"at {handle.health_check_target}"
                )
                if spec.mandatory and spec.on_degraded == "abort":
                    log.error("mandatory_service_degraded", service=spec.name)
                    self.context.preflight_issues.append(message)
                    return False
                self.context.warnings.append(message)

        self._write_env_file()
        self._enter(PipelineState.SERVICES_READY)
        return True

    def _write_env_file(self) -> None:
        env_file = self.config.env_file
        if env_file is None:
            return
        lines = [
            f"{handle.env_var}={handle.base_url}"
            for handle in self.context.handles.values()
            if handle.usable and handle.env_var
        ]
        env_file.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        self.context.transient_files.append(env_file)
        log.debug("env_file_written", path=str(env_file), entries=len(lines))

    def _run_stages(self) -> None:
        stages = self.config.stages
        for index, stage in enumerate(stages):
            self._enter(PipelineState.STAGE_RUNNING, index=index, stage=stage.name)
            outcome = self._runner.run(stage, self.context)
            self.context.outcomes.append(outcome)
            # Extraction only after the runner has observed termination
            record = safe_extract(stage.extractor, stage, outcome)
            self.context.records.append(record)

            try:
                self._enforce_policy(stage, outcome)
            except StageExecutionFailure as e:
                log.error("pipeline_aborted", stage=stage.name, reason=str(e))
                self._mark_unreached(index + 1)
                break
            if not outcome.succeeded:
                log.warning("stage_failed_tolerated", stage=stage.name, exit_code=outcome.exit_code)

        self._enter(PipelineState.STAGES_DONE)

    def _enforce_policy(self, stage: Stage, outcome: StageOutcome) -> None:
        if stage.fail_fast and not outcome.succeeded:
            raise StageExecutionFailure(stage.name, outcome.exit_code, timed_out=outcome.timed_out)

    def _mark_unreached(self, start: int) -> None:
        for stage in self.config.stages[start:]:
            self.context.records.append(
                MetricRecord.not_reached(
                    stage.name, stage.extractor.kind, mandatory=stage.mandatory
                )
            )

    def _analyze(self) -> ExecutionReport:
        self._enter(PipelineState.ANALYZING)
        report = combine(
            self.context.records,
            self.config.thresholds,
            preflight_issues=self.context.preflight_issues,
            preflight_warnings=self.context.warnings,
            strict=self._strict,
            mode=self.context.mode,
            seed=self.context.seed,
            services={name: h.status.value for name, h in self.context.handles.items()},
            run_id=self.run_id,
        )
        final = PipelineState.DONE if report.overall_status == "done" else PipelineState.FAILED
        self._enter(final, issues=len(report.issues))

        paths = write_reports(report, self.config.reports_path)
        log.info(
            "pipeline_complete",
            status=report.overall_status,
            issues=len(report.issues),
            warnings=len(report.warnings),
            report=str(paths.structured),
        )
        return report

    def _cleanup(self) -> None:
        self._enter(PipelineState.CLEANING_UP)
        try:
            self._services.stop_all()
        finally:
            for path in self.context.transient_files:
                path.unlink(missing_ok=True)
            self.context.transient_files.clear()
            self._enter(PipelineState.TERMINAL)
            clear_run_context()
