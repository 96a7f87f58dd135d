"""Playbook configuration loading.

The playbook is described in ``playbook.yaml`` at the project root. When the
file is absent the built-in default playbook is used, which mirrors the
reservations QA suite: a Prism mock API, a static web server and six
verification stages.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from ruamel.yaml import YAML

from qaplaybook.models import Threshold
from qaplaybook.pipeline.errors import PlaybookConfigError
from qaplaybook.pipeline.extractors import build_extractor
from qaplaybook.pipeline.services import DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_INTERVAL, ServiceSpec
from qaplaybook.pipeline.stages import DEFAULT_STAGE_TIMEOUT, FailurePolicy, Stage

CONFIG_FILENAME = "playbook.yaml"
MODES = ("pr", "nightly")
DEFAULT_MODE = "pr"
DEFAULT_SEED = 42

# Built-in playbook, in the same shape as playbook.yaml
DEFAULT_PLAYBOOK: dict[str, Any] = {
    "name": "reservations-qa",
    "mode": DEFAULT_MODE,
    "seed": DEFAULT_SEED,
    "logs_dir": "logs",
    "reports_dir": "reports",
    "env_file": ".env.mock",
    "strict": False,
    "services": [
        {
            "name": "mock-api",
            "command": "npx prism mock openapi/reservations.yaml --port 4010 --host 127.0.0.1",
            "host": "127.0.0.1",
            "port": 4010,
            "log": "logs/prism.log",
            "mandatory": True,
            "on_degraded": "abort",
            "url_env": "BASE_URL",
        },
        {
            "name": "web",
            "command": "node server.cjs",
            "host": "127.0.0.1",
            "port": 8080,
            "log": "logs/web-server.log",
            "mandatory": False,
            "on_degraded": "continue",
            "url_env": "WEB_URL",
        },
    ],
    "stages": [
        {
            "name": "bundle-validation",
            "command": (
                "node tools/validate.mjs schemas/bundle.schema.json data/reservations.bundle.json"
            ),
            "policy": "fail-fast",
            "log": "logs/ajv-validation.log",
            "timeout": 120,
            "extractor": {
                "type": "pattern",
                "kind": "boolean-presence",
                "patterns": [r"Validation passed"],
            },
        },
        {
            "name": "contract",
            "command": (
                "java -jar karate.jar --configdir karate karate/reservations.feature "
                "--output reports/karate"
            ),
            "policy": "tolerant",
            "log": "logs/karate-run.log",
            "artifact": "reports/karate/karate-reports/karate-summary.html",
            "extractor": {
                "type": "pattern",
                "kind": "ratio",
                "patterns": [
                    r"scenarios:\s*(?P<total>\d+)\s*\|?\s*passed:\s*(?P<passed>\d+)"
                    r"\s*\|?\s*failed:\s*(?P<failed>\d+)",
                    r"passed:\s*(?P<passed>\d+)\s*\|?\s*failed:\s*(?P<failed>\d+)",
                ],
            },
        },
        {
            "name": "ui",
            "command": "npx wdio run wdio/wdio.conf.ts --spec wdio/features/reservation-ui.feature",
            "policy": "tolerant",
            "log": "logs/wdio-ui.log",
            "extractor": {
                "type": "pattern",
                "kind": "count",
                "occurrence": "first",
                "patterns": [r"(?P<count>\d+) passing"],
            },
        },
        {
            "name": "api",
            "command": (
                "npx wdio run wdio/wdio.conf.ts --spec wdio/features/reservation-api.feature"
            ),
            "policy": "tolerant",
            "mandatory": False,
            "log": "logs/wdio-api.log",
            "extractor": {
                "type": "pattern",
                "kind": "count",
                "occurrence": "first",
                "patterns": [r"(?P<count>\d+) passing"],
            },
        },
        {
            "name": "mutation",
            "command": "npm run mutation",
            "modes": {"nightly": "npm run mutation:nightly"},
            "policy": "tolerant",
            "log": "logs/stryker-run.log",
            "artifact": "reports/mutation/mutation.json",
            "timeout": 1800,
            "extractor": {
                "type": "fallback",
                "extractors": [
                    {"type": "artifact-field", "field": "mutationScore", "kind": "score"},
                    {
                        "type": "pattern",
                        "kind": "score",
                        "patterns": [r"mutation score of (?P<score>\d+(?:\.\d+)?)"],
                    },
                ],
                "details": {
                    "killed": r"(\d+) killed",
                    "survived": r"(\d+) survived",
                },
            },
        },
        {
            "name": "property",
            "command": "npm run test:pbt",
            "policy": "tolerant",
            "log": "logs/pbt-execution.log",
            "extractor": {
                "type": "pattern",
                "kind": "ratio",
                "patterns": [
                    r"Tests:\s+(?:(?P<failed>\d+) failed,\s+)?(?:\d+ skipped,\s+)?"
                    r"(?P<passed>\d+) passed,\s+(?P<total>\d+) total",
                    r"Tests:\s+(?P<failed>\d+) failed,\s+(?P<total>\d+) total",
                ],
            },
        },
    ],
    "thresholds": [
        {"stage": "bundle-validation", "kind": "boolean-presence", "min": 1, "severity": "fail"},
        {"kind": "ratio", "min": 1.0, "severity": "fail"},
        {"stage": "ui", "kind": "count", "min": 1, "severity": "fail"},
        {"stage": "api", "kind": "count", "min": 1, "severity": "warn"},
        {"kind": "score", "min": 80, "severity": "fail"},
    ],
}


def _command(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = tuple(shlex.split(value))
    elif isinstance(value, list | tuple):
        parts = tuple(str(part) for part in value)
    else:
        raise ValueError(f"command must be a string or list, got {type(value).__name__}")
    if not parts:
        raise ValueError("command must not be empty")
    return parts


def _path(project_path: Path, value: Any) -> Path:
    path = Path(str(value))
    return path if path.is_absolute() else project_path / path


def _str_dict(value: Any) -> dict[str, str]:
    return {str(k): str(v) for k, v in (value or {}).items()}


@dataclass
class PlaybookConfig:
    """Configuration for one QA playbook.

    Attributes:
        name: Playbook name shown in reports.
        project_path: Root directory stages and services run in.
        mode: Default execution mode ("pr" or "nightly").
        seed: Default deterministic seed for stages.
        services: Auxiliary services, in start order.
        stages: Verification stages, in execution order.
        thresholds: Quality-gate thresholds.
        logs_dir: Directory for stage and service logs.
        reports_dir: Directory for the consolidated reports.
        env_file: Transient environment file advertising service URLs.
        strict: Treat warnings as quality-gate issues.
    """

    name: str
    project_path: Path
    mode: str = DEFAULT_MODE
    seed: int | None = DEFAULT_SEED
    services: list[ServiceSpec] = field(default_factory=list)
    stages: list[Stage] = field(default_factory=list)
    thresholds: list[Threshold] = field(default_factory=list)
    logs_dir: Path | None = None
    reports_dir: Path | None = None
    env_file: Path | None = None
    strict: bool = False

    @property
    def logs_path(self) -> Path:
        return self.logs_dir or self.project_path / "logs"

    @property
    def reports_path(self) -> Path:
        return self.reports_dir or self.project_path / "reports"

    def effective_mode(self, override: str | None = None) -> str:
        """Execution mode: explicit override, QA_MODE environment variable, then config.

        Raises:
            ValueError: If the mode is not one of MODES.
        """
        mode = (override or os.getenv("QA_MODE") or self.mode).lower()
        if mode not in MODES:
            raise ValueError(f"Unknown execution mode '{mode}'. Expected one of: {', '.join(MODES)}")
        return mode

    def effective_seed(self) -> int | None:
        """Seed: QA_SEED environment variable, then config.

        Raises:
            ValueError: If QA_SEED is not an integer.
        """
        env_seed = os.getenv("QA_SEED")
        if env_seed:
            try:
                return int(env_seed)
            except ValueError as e:
                raise ValueError(f"QA_SEED must be an integer, got '{env_seed}'") from e
        return self.seed

    @classmethod
    def from_dict(cls, data: dict[str, Any], project_path: Path) -> PlaybookConfig:
        """Create config from dictionary.

        Args:
            data: Parsed playbook.yaml contents.
            project_path: Root directory relative paths are resolved against.

        Returns:
            PlaybookConfig instance.

        Raises:
            ValueError: If a stage, service or threshold entry is invalid.
        """
        logs_dir = _path(project_path, data.get("logs_dir", "logs"))
        reports_dir = _path(project_path, data.get("reports_dir", "reports"))

        services = [
            _service_from_dict(dict(entry), project_path, logs_dir)
            for entry in data.get("services", [])
        ]
        stages = [
            _stage_from_dict(dict(entry), project_path, logs_dir)
            for entry in data.get("stages", [])
        ]
        names = [stage.name for stage in stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage names: {', '.join(duplicates)}")

        thresholds = [
            Threshold(
                metric_kind=entry["kind"],
                min_value=float(entry["min"]),
                severity=entry.get("severity", "fail"),
                stage=entry.get("stage"),
            )
            for entry in data.get("thresholds", [])
        ]

        seed = data.get("seed", DEFAULT_SEED)
        env_file = data.get("env_file")
        return cls(
            name=data.get("name", project_path.resolve().name or "playbook"),
            project_path=project_path,
            mode=str(data.get("mode", DEFAULT_MODE)),
            seed=None if seed is None else int(seed),
            services=services,
            stages=stages,
            thresholds=thresholds,
            logs_dir=logs_dir,
            reports_dir=reports_dir,
            env_file=_path(project_path, env_file) if env_file else None,
            strict=bool(data.get("strict", False)),
        )


def _service_from_dict(data: dict[str, Any], project_path: Path, logs_dir: Path) -> ServiceSpec:
    name = str(data["name"])
    log_value = data.get("log")
    return ServiceSpec(
        name=name,
        command=_command(data["command"]),
        host=str(data.get("host", "127.0.0.1")),
        port=int(data["port"]),
        log_path=_path(project_path, log_value) if log_value else logs_dir / f"{name}.log",
        health_check_url=data.get("health_check_url"),
        mandatory=bool(data.get("mandatory", True)),
        on_degraded=_on_degraded(name, data.get("on_degraded", "abort")),
        poll_interval=float(data.get("poll_interval", DEFAULT_POLL_INTERVAL)),
        max_attempts=int(data.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
        env=_str_dict(data.get("env")),
        url_env=data.get("url_env"),
        cwd=_path(project_path, data["cwd"]) if data.get("cwd") else None,
    )


def _on_degraded(service: str, value: Any) -> Literal["abort", "continue"]:
    if value == "abort":
        return "abort"
    if value == "continue":
        return "continue"
    raise ValueError(
        f"Service '{service}': on_degraded must be 'abort' or 'continue', got '{value}'"
    )


def _stage_from_dict(data: dict[str, Any], project_path: Path, logs_dir: Path) -> Stage:
    name = str(data["name"])
    log_value = data.get("log")
    artifact = data.get("artifact")
    extractor_data = data.get("extractor") or {"type": "presence"}
    return Stage(
        name=name,
        command=_command(data["command"]),
        failure_policy=FailurePolicy(data.get("policy", FailurePolicy.TOLERANT.value)),
        log_path=_path(project_path, log_value) if log_value else logs_dir / f"{name}.log",
        extractor=build_extractor(dict(extractor_data), project_path),
        artifact_path=_path(project_path, artifact) if artifact else None,
        mandatory=bool(data.get("mandatory", True)),
        timeout_seconds=float(data.get("timeout", DEFAULT_STAGE_TIMEOUT)),
        env=_str_dict(data.get("env")),
        mode_commands={
            str(mode): _command(command) for mode, command in (data.get("modes") or {}).items()
        },
        cwd=_path(project_path, data["cwd"]) if data.get("cwd") else None,
    )


def load_playbook_config(project_path: Path) -> PlaybookConfig:
    """Load playbook configuration from playbook.yaml.

    Args:
        project_path: Path to the project root directory.

    Returns:
        PlaybookConfig instance.

    Raises:
        PlaybookConfigError: If the file is missing or invalid.
    """
    config_path = project_path / CONFIG_FILENAME

    if not config_path.exists():
        raise PlaybookConfigError(config_path, "File not found")

    yaml = YAML(typ="safe")
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            raise PlaybookConfigError(config_path, "Empty file")

        return PlaybookConfig.from_dict(dict(data), project_path)
    except Exception as e:
        if isinstance(e, PlaybookConfigError):
            raise
        raise PlaybookConfigError(config_path, str(e)) from e


def create_default_config(project_path: Path) -> PlaybookConfig:
    """Build the built-in default playbook for a project directory."""
    return PlaybookConfig.from_dict(DEFAULT_PLAYBOOK, project_path)


def load_or_default_config(project_path: Path) -> PlaybookConfig:
    """Load playbook.yaml, falling back to the default playbook if it is absent.

    Raises:
        PlaybookConfigError: If playbook.yaml exists but is invalid.
    """
    if not (project_path / CONFIG_FILENAME).exists():
        return create_default_config(project_path)
    return load_playbook_config(project_path)


def write_default_config(project_path: Path) -> Path:
    """Write the default playbook to playbook.yaml.

    Returns:
        Path to the written file.
    """
    config_path = project_path / CONFIG_FILENAME
    yaml = YAML()
    yaml.default_flow_style = False
    yaml.indent(mapping=2, sequence=4, offset=2)
    project_path.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as f:
        yaml.dump(DEFAULT_PLAYBOOK, f)
    return config_path
