"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from qaplaybook.models import Threshold
from qaplaybook.pipeline import (
    ArtifactFieldExtractor,
    FailurePolicy,
    PatternExtractor,
    PlaybookConfig,
    ServiceStartFailure,
)
from tests.fixtures.pipeline_fakes import ScriptedStage, make_service, make_stage

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture(autouse=True)
def clear_playbook_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep QA_MODE/QA_SEED from the developer's shell out of tests."""
    monkeypatch.delenv("QA_MODE", raising=False)
    monkeypatch.delenv("QA_SEED", raising=False)


@pytest.fixture
def five_stage_config(tmp_path: Path) -> PlaybookConfig:
    """Five-stage playbook with an optional web server and a mandatory mock API."""
    stages = [
        make_stage(
            tmp_path,
            "bundle-validation",
            PatternExtractor([r"Validation passed"], kind="boolean-presence"),
            policy=FailurePolicy.FAIL_FAST,
        ),
        make_stage(
            tmp_path,
            "contract",
            PatternExtractor(
                [
                    r"scenarios:\s*(?P<total>\d+)\s*\|?\s*passed:\s*(?P<passed>\d+)"
                    r"\s*\|?\s*failed:\s*(?P<failed>\d+)"
                ],
                kind="ratio",
            ),
        ),
        make_stage(tmp_path, "ui", PatternExtractor([r"(?P<count>\d+) passing"])),
        make_stage(
            tmp_path,
            "mutation",
            ArtifactFieldExtractor("mutationScore"),
            artifact="reports/mutation/mutation.json",
        ),
        make_stage(
            tmp_path,
            "property",
            PatternExtractor(
                [
                    r"Tests:\s+(?:(?P<failed>\d+) failed,\s+)?(?P<passed>\d+) passed,"
                    r"\s+(?P<total>\d+) total"
                ],
                kind="ratio",
            ),
        ),
    ]
    return PlaybookConfig(
        name="test-playbook",
        project_path=tmp_path,
        seed=42,
        services=[
            make_service(tmp_path, "web", port=18080, mandatory=False, on_degraded="continue"),
            make_service(tmp_path, "mock-api", port=14010, url_env="BASE_URL"),
        ],
        stages=stages,
        thresholds=[
            Threshold(metric_kind="boolean-presence", min_value=1, severity="fail"),
            Threshold(metric_kind="ratio", min_value=1.0, severity="fail"),
            Threshold(metric_kind="count", min_value=1, severity="fail"),
            Threshold(metric_kind="score", min_value=80, severity="fail"),
        ],
        logs_dir=tmp_path / "logs",
        reports_dir=tmp_path / "reports",
        env_file=tmp_path / ".env.mock",
    )


@pytest.fixture
def passing_script() -> dict[str, ScriptedStage]:
    """Every stage of five_stage_config succeeds; mutation score 95.16."""
    return {
        "bundle-validation": ScriptedStage(output="✅ Validation passed!\n"),
        "contract": ScriptedStage(output="scenarios:  6 | passed:  6 | failed:  0 | time: 2.1\n"),
        "ui": ScriptedStage(output="Spec Files: 1 passed\n3 passing (2.1s)\n"),
        "mutation": ScriptedStage(
            output="Final mutation score of 95.16 is greater than or equal to break threshold 60\n",
            artifact='{"schemaVersion": "1", "mutationScore": 95.16}',
        ),
        "property": ScriptedStage(output="Tests:       12 passed, 12 total\n"),
    }


@pytest.fixture
def service_failure() -> ServiceStartFailure:
    return ServiceStartFailure("mock-api", "port 14010 on 127.0.0.1 is already in use")
