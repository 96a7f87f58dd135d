"""Quality-gate models: metric records, thresholds and the execution report.

A MetricRecord is the normalized result of one stage. Records are created once,
after the stage's process has terminated, and never mutated afterwards. The
ExecutionReport is the single consolidated outcome of a run and is what the
process exit code is derived from.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

MetricKind = Literal["count", "ratio", "score", "boolean-presence"]
Severity = Literal["pass", "warn", "fail"]
OverallStatus = Literal["done", "failed"]

# Why a record carries no usable value. A legitimate zero has reason=None.
NotRunReason = Literal[
    "not_reached",
    "artifact_missing",
    "field_missing",
    "unparsable",
    "no_match",
]


class MetricRecord(BaseModel):
    """Normalized metric extracted from a single stage.

    ``not_run`` records always carry ``value == 0`` and a ``reason`` so that a
    failed extraction is never mistaken for a measured zero.
    """

    model_config = ConfigDict(frozen=True)

    stage_name: str = Field(min_length=1)
    metric_kind: MetricKind
    value: float = 0.0
    not_run: bool = False
    raw_source: str = Field(
        default="",
        description="Matched log text or artifact path the value came from",
    )
    reason: NotRunReason | None = None
    exit_code: int | None = Field(
        default=None,
        description="Exit code of the stage process; None when it never ran",
    )
    timed_out: bool = Field(
        default=False,
        description="The runner killed the stage at its time limit",
    )
    mandatory: bool = True
    details: dict[str, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _not_run_has_no_value(self) -> MetricRecord:
        if self.not_run and self.value != 0:
            raise ValueError("not_run records must have value 0")
        if self.not_run and self.reason is None:
            raise ValueError("not_run records must state a reason")
        return self

    @classmethod
    def not_reached(
        cls,
        stage_name: str,
        metric_kind: MetricKind,
        *,
        mandatory: bool = True,
    ) -> MetricRecord:
        """Record for a stage the pipeline never executed."""
        return cls(
            stage_name=stage_name,
            metric_kind=metric_kind,
            not_run=True,
            reason="not_reached",
            mandatory=mandatory,
        )


class Threshold(BaseModel):
    """Minimum acceptable value for a metric.

    A threshold applies to every record of ``metric_kind`` unless ``stage`` is
    set, in which case it only applies to that stage and takes precedence over
    kind-wide thresholds.
    """

    model_config = ConfigDict(frozen=True)

    metric_kind: MetricKind
    min_value: float
    severity: Severity = "fail"
    stage: str | None = None


class StageVerdict(BaseModel):
    """Classification of one stage's record against the thresholds."""

    model_config = ConfigDict(frozen=True)

    stage_name: str
    severity: Severity
    message: str = ""


class ExecutionReport(BaseModel):
    """Consolidated outcome of one playbook run."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    mode: str = "pr"
    seed: int | None = None
    run_id: str | None = Field(
        default=None,
        description="Identifier shared with the run's debug.jsonl events",
    )
    per_stage: list[MetricRecord] = Field(default_factory=list)
    verdicts: list[StageVerdict] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    services: dict[str, str] = Field(default_factory=dict)
    overall_status: OverallStatus

    @model_validator(mode="after")
    def _status_matches_issues(self) -> ExecutionReport:
        expected = "done" if not self.issues else "failed"
        if self.overall_status != expected:
            raise ValueError(
                f"overall_status '{self.overall_status}' inconsistent with "
                f"{len(self.issues)} issue(s)"
            )
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def exit_code(self) -> int:
        """Process exit code: 0 only when no issues were recorded."""
        return 0 if self.overall_status == "done" else 1

    def record_for(self, stage_name: str) -> MetricRecord | None:
        """Look up the metric record of a stage by name."""
        for record in self.per_stage:
            if record.stage_name == stage_name:
                return record
        return None

    def verdict_for(self, stage_name: str) -> StageVerdict | None:
        """Look up the verdict of a stage by name."""
        for verdict in self.verdicts:
            if verdict.stage_name == stage_name:
                return verdict
        return None
