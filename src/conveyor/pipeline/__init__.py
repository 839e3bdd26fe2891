"""Stage-ordered pipeline execution engine.

Key exports:
    PipelineEngine — plans and runs pipelines, controls active runs
    Scheduler — drives one execution plan to completion
    build_plan — order resolver
    RunRegistry — SQLite persistence of finished runs
    PipelineDefinition, JobSpec — definition models
    PipelineRun, JobRun — runtime state models
"""

from conveyor.pipeline.aggregator import stage_status, summarize
from conveyor.pipeline.artifacts import ArtifactTracker, LocalBlobStore, MemoryBlobStore
from conveyor.pipeline.engine import PipelineEngine
from conveyor.pipeline.errors import (
    ArtifactError,
    ArtifactNotFoundError,
    CancellationError,
    ConfigError,
    ConveyorError,
    JobFailure,
    RuleEvaluationError,
)
from conveyor.pipeline.interfaces import BlobStore, JobRunner, RefProvider
from conveyor.pipeline.models import (
    ActivationRule,
    ArtifactHandle,
    ArtifactSpec,
    ArtifactWhen,
    ExecutionPlan,
    JobResult,
    JobRun,
    JobSpec,
    JobState,
    PipelineDefinition,
    PipelineRun,
    PipelineStatus,
    PlannedJob,
    Ref,
    RuleDecision,
    RunContext,
    StagePlan,
    StageStatus,
    WhenPolicy,
)
from conveyor.pipeline.planner import build_plan
from conveyor.pipeline.refs import EnvRefProvider, GitRefProvider, StaticRefProvider
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.rules import evaluate, explain, match_pattern
from conveyor.pipeline.runners import RunnerPool, ShellRunner
from conveyor.pipeline.scheduler import Scheduler
from conveyor.pipeline.settings import EngineSettings
from conveyor.pipeline.variables import resolve_variables

__all__ = [
    # Engine
    "PipelineEngine",
    "Scheduler",
    "build_plan",
    "RunRegistry",
    "EngineSettings",
    # Rules / variables / aggregation
    "evaluate",
    "explain",
    "match_pattern",
    "resolve_variables",
    "stage_status",
    "summarize",
    # Collaborators
    "JobRunner",
    "RefProvider",
    "BlobStore",
    "ShellRunner",
    "RunnerPool",
    "StaticRefProvider",
    "EnvRefProvider",
    "GitRefProvider",
    "ArtifactTracker",
    "LocalBlobStore",
    "MemoryBlobStore",
    # Errors
    "ConveyorError",
    "ConfigError",
    "RuleEvaluationError",
    "JobFailure",
    "ArtifactError",
    "ArtifactNotFoundError",
    "CancellationError",
    # Models
    "ActivationRule",
    "ArtifactHandle",
    "ArtifactSpec",
    "ArtifactWhen",
    "ExecutionPlan",
    "JobResult",
    "JobRun",
    "JobSpec",
    "JobState",
    "PipelineDefinition",
    "PipelineRun",
    "PipelineStatus",
    "PlannedJob",
    "Ref",
    "RuleDecision",
    "RunContext",
    "StagePlan",
    "StageStatus",
    "WhenPolicy",
]
