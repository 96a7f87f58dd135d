"""Pipeline orchestration and stage execution."""

from qaplaybook.pipeline.config import (
    PlaybookConfig,
    create_default_config,
    load_or_default_config,
    load_playbook_config,
)
from qaplaybook.pipeline.context import ExecutionContext
from qaplaybook.pipeline.errors import (
    PlaybookConfigError,
    PlaybookError,
    ServiceStartFailure,
    StageExecutionFailure,
)
from qaplaybook.pipeline.extractors import (
    ArtifactFieldExtractor,
    FallbackExtractor,
    MetricExtractor,
    PatternExtractor,
    PresenceExtractor,
)
from qaplaybook.pipeline.gates import classify, combine
from qaplaybook.pipeline.orchestrator import PipelineOrchestrator, PipelineState
from qaplaybook.pipeline.runner import StageRunner
from qaplaybook.pipeline.services import (
    ServiceHandle,
    ServiceLifecycleManager,
    ServiceSpec,
    ServiceStatus,
)
from qaplaybook.pipeline.stages import FailurePolicy, Stage, StageOutcome

__all__ = [
    "ArtifactFieldExtractor",
    "ExecutionContext",
    "FailurePolicy",
    "FallbackExtractor",
    "MetricExtractor",
    "PatternExtractor",
    "PipelineOrchestrator",
    "PipelineState",
    "PlaybookConfig",
    "PlaybookConfigError",
    "PlaybookError",
    "PresenceExtractor",
    "ServiceHandle",
    "ServiceLifecycleManager",
    "ServiceSpec",
    "ServiceStartFailure",
    "ServiceStatus",
    "Stage",
    "StageExecutionFailure",
    "StageOutcome",
    "StageRunner",
    "classify",
    "combine",
    "create_default_config",
    "load_or_default_config",
    "load_playbook_config",
]
