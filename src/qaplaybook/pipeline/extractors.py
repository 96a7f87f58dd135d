"""Metric extraction from stage logs and artifacts.

Each stage is paired with one extractor that turns its outcome into a
MetricRecord. Extraction is total: missing files, malformed JSON and
unmatched logs all produce a ``not_run`` record with a reason, never an
exception.

Variants:
- ArtifactFieldExtractor: numeric field of a JSON report (mutation score).
- PatternExtractor: ordered regexes over the captured log (first pattern wins).
- PresenceExtractor: existence of an expected report file.
- FallbackExtractor: first extractor that yields a usable record.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol

from qaplaybook.models import MetricKind, MetricRecord, NotRunReason
from qaplaybook.observability.logging import get_logger

if TYPE_CHECKING:
    from qaplaybook.pipeline.stages import Stage, StageOutcome

log = get_logger(__name__)


class MetricExtractor(Protocol):
    """Protocol for turning a finished stage into a metric record."""

    kind: MetricKind

    def extract(self, stage: Stage, outcome: StageOutcome) -> MetricRecord:
        """Build the stage's record. Must not raise for malformed input."""
        ...


def _record(
    stage: Stage,
    outcome: StageOutcome,
    kind: MetricKind,
    value: float,
    raw_source: str,
    details: dict[str, float] | None = None,
) -> MetricRecord:
    return MetricRecord(
        stage_name=stage.name,
        metric_kind=kind,
        value=value,
        raw_source=raw_source,
        exit_code=outcome.exit_code,
        timed_out=outcome.timed_out,
        mandatory=stage.mandatory,
        details=details or {},
    )


def _not_run(
    stage: Stage,
    outcome: StageOutcome,
    kind: MetricKind,
    reason: NotRunReason,
    raw_source: str = "",
) -> MetricRecord:
    return MetricRecord(
        stage_name=stage.name,
        metric_kind=kind,
        not_run=True,
        reason=reason,
        raw_source=raw_source,
        exit_code=outcome.exit_code,
        timed_out=outcome.timed_out,
        mandatory=stage.mandatory,
    )


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _find_key(data: Any, key: str) -> Any:
    """Depth-first search for the first occurrence of ``key``."""
    if isinstance(data, dict):
        if key in data:
            return data[key]
        children: Any = data.values()
    elif isinstance(data, list):
        children = data
    else:
        return None
    for child in children:
        found = _find_key(child, key)
        if found is not None:
            return found
    return None


def _compile_details(detail_patterns: Mapping[str, str] | None) -> dict[str, re.Pattern[str]]:
    return {
        name: re.compile(pattern, re.MULTILINE)
        for name, pattern in (detail_patterns or {}).items()
    }


def _log_details(text: str, patterns: Mapping[str, re.Pattern[str]]) -> dict[str, float]:
    """Numbers found by named detail patterns, last occurrence wins.

    Stryker prints killed and survived counts but no total, so the total is
    derived when both are present.
    """
    found: dict[str, float] = {}
    for name, pattern in patterns.items():
        matches = list(pattern.finditer(text))
        if not matches:
            continue
        groups = matches[-1].groups()
        number = _as_number(groups[0] if groups else matches[-1].group(0))
        if number is not None:
            found[name] = number
    if "killed" in found and "survived" in found and "total" not in found:
        found["total"] = found["killed"] + found["survived"]
    return found


def _lookup(data: Any, field: str) -> Any:
    """Resolve a dotted field path; bare names fall back to a nested search."""
    if "." not in field:
        return _find_key(data, field)
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


class ArtifactFieldExtractor:
    """Read a numeric field from a structured JSON artifact.

    Attributes:
        field: Field name or dotted path (e.g. "metrics.mutationScore").
        kind: Metric kind of the value.
        path: Artifact to read; defaults to the stage's artifact_path.
    """

    def __init__(self, field: str, kind: MetricKind = "score", path: Path | None = None) -> None:
        self.field = field
        self.kind = kind
        self.path = path

    def extract(self, stage: Stage, outcome: StageOutcome) -> MetricRecord:
        path = self.path or stage.artifact_path
        if path is None or not path.is_file():
            return _not_run(stage, outcome, self.kind, "artifact_missing", str(path or ""))

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            log.warning("artifact_unparsable", stage=stage.name, path=str(path), error=str(e))
            return _not_run(stage, outcome, self.kind, "unparsable", str(path))

        value = _as_number(_lookup(data, self.field))
        if value is None:
            return _not_run(stage, outcome, self.kind, "field_missing", str(path))
        return _record(stage, outcome, self.kind, value, str(path))


class PatternExtractor:
    """Scan the captured log against an ordered list of regexes.

    The first pattern that matches anywhere wins. Within that pattern the
    last occurrence is used by default, since test runners print their
    summary at the end.

    Named groups become record details. The value is derived per kind:
    ``count`` from group "count", ``score`` from group "score" (both fall
    back to the first group), ``ratio`` as passed/total where total may be
    given or computed as passed+failed, ``boolean-presence`` is 1 on match.
    """

    def __init__(
        self,
        patterns: Sequence[str | re.Pattern[str]],
        kind: MetricKind = "count",
        *,
        occurrence: Literal["first", "last"] = "last",
        detail_patterns: Mapping[str, str] | None = None,
    ) -> None:
        self.patterns = [
            p if isinstance(p, re.Pattern) else re.compile(p, re.MULTILINE) for p in patterns
        ]
        self.kind = kind
        self.occurrence = occurrence
        self.detail_patterns = _compile_details(detail_patterns)

    def _match(self, text: str) -> re.Match[str] | None:
        for pattern in self.patterns:
            matches = list(pattern.finditer(text))
            if matches:
                return matches[0] if self.occurrence == "first" else matches[-1]
        return None

    def extract(self, stage: Stage, outcome: StageOutcome) -> MetricRecord:
        text = outcome.captured_output or ""
        match = self._match(text)
        if match is None:
            return _not_run(stage, outcome, self.kind, "no_match", str(stage.log_path))

        raw = match.group(0).strip()
        details: dict[str, float] = {}
        for name, group in match.groupdict().items():
            number = _as_number(group)
            if number is not None:
                details[name] = number
        positional = [n for n in (_as_number(g) for g in match.groups()) if n is not None]

        value = self._value(details, positional)
        if value is None:
            return _not_run(stage, outcome, self.kind, "unparsable", raw)

        for name, number in _log_details(text, self.detail_patterns).items():
            details.setdefault(name, number)
        return _record(stage, outcome, self.kind, value, raw, details)

    def _value(self, details: dict[str, float], positional: list[float]) -> float | None:
        if self.kind == "boolean-presence":
            return 1.0
        if self.kind in ("count", "score"):
            if self.kind in details:
                return details[self.kind]
            return positional[0] if positional else None

        # ratio
        if "ratio" in details:
            return details["ratio"]
        passed = details.get("passed")
        failed = details.get("failed")
        total = details.get("total")
        if passed is None and total is not None and failed is not None:
            passed = total - failed
            details["passed"] = passed
        if passed is None:
            return None
        if total is None:
            total = passed + (failed or 0.0)
            details["total"] = total
        if failed is None:
            details["failed"] = total - passed
        if total <= 0:
            return None
        return passed / total


class PresenceExtractor:
    """Signal that a stage executed by the existence of its report file."""

    kind: MetricKind = "boolean-presence"

    def __init__(self, path: Path | None = None) -> None:
        self.path = path

    def extract(self, stage: Stage, outcome: StageOutcome) -> MetricRecord:
        path = self.path or stage.artifact_path
        if path is not None and path.exists():
            return _record(stage, outcome, self.kind, 1.0, str(path))
        return _not_run(stage, outcome, self.kind, "artifact_missing", str(path or ""))


class FallbackExtractor:
    """Try extractors in order; keep the first record that is not ``not_run``.

    ``detail_patterns`` are matched against the captured log whichever
    extractor wins, so a score read from a JSON report still carries the
    killed/survived counts printed by the tool.
    """

    def __init__(
        self,
        extractors: Sequence[MetricExtractor],
        *,
        detail_patterns: Mapping[str, str] | None = None,
    ) -> None:
        if not extractors:
            raise ValueError("FallbackExtractor needs at least one extractor")
        self.extractors = list(extractors)
        self.kind = self.extractors[0].kind
        self.detail_patterns = _compile_details(detail_patterns)

    def extract(self, stage: Stage, outcome: StageOutcome) -> MetricRecord:
        attempts: list[MetricRecord] = []
        for extractor in self.extractors:
            record = safe_extract(extractor, stage, outcome)
            if not record.not_run:
                return self._with_log_details(record, outcome)
            attempts.append(record)
        return attempts[0]

    def _with_log_details(self, record: MetricRecord, outcome: StageOutcome) -> MetricRecord:
        found = _log_details(outcome.captured_output or "", self.detail_patterns)
        if not found:
            return record
        return record.model_copy(update={"details": {**found, **record.details}})


def safe_extract(
    extractor: MetricExtractor, stage: Stage, outcome: StageOutcome
) -> MetricRecord:
    """Run an extractor, converting any unexpected error into a not_run record."""
    try:
        return extractor.extract(stage, outcome)
    except Exception as e:
        log.warning("metric_extraction_failed", stage=stage.name, error=str(e), exc_info=True)
        return _not_run(stage, outcome, extractor.kind, "unparsable")


# Config "type" -> factory(data, project_path)
ExtractorFactory = Callable[[Mapping[str, Any], Path], MetricExtractor]


def _resolve(project_path: Path, value: Any) -> Path | None:
    if not value:
        return None
    path = Path(str(value))
    return path if path.is_absolute() else project_path / path


def _build_artifact_field(data: Mapping[str, Any], project_path: Path) -> MetricExtractor:
    return ArtifactFieldExtractor(
        field=str(data["field"]),
        kind=data.get("kind", "score"),
        path=_resolve(project_path, data.get("path")),
    )


def _build_pattern(data: Mapping[str, Any], _project_path: Path) -> MetricExtractor:
    patterns = data.get("patterns") or [data["pattern"]]
    return PatternExtractor(
        [str(p) for p in patterns],
        kind=data.get("kind", "count"),
        occurrence=data.get("occurrence", "last"),
        detail_patterns={str(k): str(v) for k, v in (data.get("details") or {}).items()},
    )


def _build_presence(data: Mapping[str, Any], project_path: Path) -> MetricExtractor:
    return PresenceExtractor(path=_resolve(project_path, data.get("path")))


def _build_fallback(data: Mapping[str, Any], project_path: Path) -> MetricExtractor:
    return FallbackExtractor(
        [build_extractor(d, project_path) for d in data["extractors"]],
        detail_patterns={str(k): str(v) for k, v in (data.get("details") or {}).items()},
    )


_EXTRACTOR_TYPES: dict[str, ExtractorFactory] = {
    "artifact-field": _build_artifact_field,
    "pattern": _build_pattern,
    "presence": _build_presence,
    "fallback": _build_fallback,
}


def build_extractor(data: Mapping[str, Any], project_path: Path) -> MetricExtractor:
    """Create an extractor from its playbook.yaml description.

    Args:
        data: Mapping with a "type" key and the variant's options.
        project_path: Root used to resolve relative artifact paths.

    Raises:
        ValueError: If the type is unknown or a required option is missing.
    """
    extractor_type = data.get("type")
    factory = _EXTRACTOR_TYPES.get(str(extractor_type))
    if factory is None:
        raise ValueError(
            f"Unknown extractor type '{extractor_type}'. "
            f"Expected one of: {', '.join(sorted(_EXTRACTOR_TYPES))}"
        )
    try:
        return factory(data, project_path)
    except KeyError as e:
        raise ValueError(f"Extractor '{extractor_type}' is missing option {e}") from e
