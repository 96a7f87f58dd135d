"""Pydantic models for the quality gate.

These models define metric records produced per stage, the thresholds they
are judged against, and the consolidated execution report.
"""

from qaplaybook.models.report import (
    ExecutionReport,
    MetricKind,
    MetricRecord,
    NotRunReason,
    OverallStatus,
    Severity,
    StageVerdict,
    Threshold,
)

__all__ = [
    "ExecutionReport",
    "MetricKind",
    "MetricRecord",
    "NotRunReason",
    "OverallStatus",
    "Severity",
    "StageVerdict",
    "Threshold",
]
