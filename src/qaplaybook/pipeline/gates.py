"""Quality gate: classify metric records against thresholds.

``combine`` is a pure function of its inputs apart from the report timestamp:
the same records and thresholds always yield the same verdicts, issues and
overall status.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from qaplaybook.models import ExecutionReport, MetricRecord, StageVerdict, Threshold

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

_REASON_TEXT = {
    "not_reached": "stage not reached",
    "artifact_missing": "report artifact missing",
    "field_missing": "metric field missing from artifact",
    "unparsable": "output could not be parsed",
    "no_match": "no recognizable summary in log",
}


def find_threshold(record: MetricRecord, thresholds: Iterable[Threshold]) -> Threshold | None:
    """Threshold applicable to a record.

    A threshold scoped to the record's stage wins over one matched by kind only.
    """
    by_kind: Threshold | None = None
    for threshold in thresholds:
        if threshold.metric_kind != record.metric_kind:
            continue
        if threshold.stage == record.stage_name:
            return threshold
        if threshold.stage is None and by_kind is None:
            by_kind = threshold
    return by_kind


def classify(record: MetricRecord, thresholds: Sequence[Threshold]) -> StageVerdict:
    """Classify one record as pass, warn or fail.

    Order of checks: process failure, missing metric, then threshold. A value
    equal to the threshold minimum passes.
    """
    name = record.stage_name

    if record.exit_code not in (0, None):
        if record.timed_out:
            message = f"{name}: timed out"
        else:
            message = f"{name}: exited with code {record.exit_code}"
        return StageVerdict(stage_name=name, severity="fail", message=message)

    if record.not_run:
        reason = _REASON_TEXT.get(record.reason or "", record.reason or "unknown")
        return StageVerdict(
            stage_name=name, severity="warn", message=f"{name}: not run ({reason})"
        )

    threshold = find_threshold(record, thresholds)
    value_text = f"{record.metric_kind} {record.value:g}"
    if threshold is None or record.value >= threshold.min_value:
        return StageVerdict(stage_name=name, severity="pass", message=f"{name}: {value_text}")

    message = f"{name}: {value_text} below minimum {threshold.min_value:g}"
    return StageVerdict(stage_name=name, severity=threshold.severity, message=message)


def combine(
    metrics: Sequence[MetricRecord],
    thresholds: Sequence[Threshold],
    *,
    preflight_issues: Sequence[str] = (),
    preflight_warnings: Sequence[str] = (),
    strict: bool = False,
    mode: str = "pr",
    seed: int | None = None,
    services: Mapping[str, str] | None = None,
    timestamp: datetime | None = None,
    run_id: str | None = None,
) -> ExecutionReport:
    """Combine stage records into the consolidated execution report.

    Args:
        metrics: Records in stage order, including not-reached stages.
        thresholds: Configured thresholds.
        preflight_issues: Failures that happened before any stage (service start).
        preflight_warnings: Non-fatal notes from the service phase.
        strict: Count warnings as issues.
        mode: Execution mode, recorded in the report.
        seed: Seed, recorded in the report.
        services: Final observed status of each service.
        timestamp: Report time; defaults to now.
        run_id: Identifier of the run, shared with its log events.

    Returns:
        ExecutionReport whose overall_status is "done" iff no issues.
    """
    issues: list[str] = list(preflight_issues)
    warnings: list[str] = list(preflight_warnings)
    verdicts: list[StageVerdict] = []

    for record in metrics:
        verdict = classify(record, thresholds)
        verdicts.append(verdict)
        if verdict.severity == "fail":
            if record.mandatory:
                issues.append(verdict.message)
            else:
                warnings.append(f"{verdict.message} (optional stage)")
        elif verdict.severity == "warn":
            warnings.append(verdict.message)
            if strict and record.mandatory:
                issues.append(verdict.message)
        survived = _survived_mutants(record)
        if survived:
            # Advisory only; the score threshold decides pass or fail
            warnings.append(
                f"{record.stage_name}: {survived:g} mutant(s) survived - review test coverage"
            )

    return ExecutionReport(
        timestamp=timestamp or datetime.now(UTC),
        mode=mode,
        seed=seed,
        run_id=run_id,
        per_stage=list(metrics),
        verdicts=verdicts,
        issues=issues,
        warnings=warnings,
        services=dict(services or {}),
        overall_status="done" if not issues else "failed",
    )


def _survived_mutants(record: MetricRecord) -> float:
    if record.metric_kind != "score" or record.not_run:
        return 0
    return record.details.get("survived", 0)
