"""Pipeline Pydantic models — definitions, plans and runtime state.

Key exports:
    Definition models: PipelineDefinition, JobSpec, ActivationRule, ArtifactSpec
    Run inputs: RunContext, Ref
    Plan models: ExecutionPlan, StagePlan, PlannedJob
    Runtime state models: PipelineRun, JobRun, JobResult, ArtifactHandle
    Enums: WhenPolicy, ArtifactWhen, JobState, StageStatus, PipelineStatus, RuleDecision
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Iterator

from pydantic import BaseModel, Field, field_validator, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class WhenPolicy(str, Enum):
    """When a job is started relative to the outcome of earlier stages."""

    ON_SUCCESS = "on_success"
    MANUAL = "manual"
    ALWAYS = "always"


class ArtifactWhen(str, Enum):
    """Which job outcomes have their artifacts collected."""

    ON_SUCCESS = "on_success"
    ALWAYS = "always"


class RuleDecision(str, Enum):
    """Result of evaluating an activation rule against a run context."""

    RUN = "run"
    SKIP = "skip"


class JobState(str, Enum):
    """Job run lifecycle states."""

    PENDING = "pending"
    MANUAL_WAIT = "manual"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"


TERMINAL_JOB_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELED}
)


class StageStatus(str, Enum):
    """Aggregate status of one stage."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"


class PipelineStatus(str, Enum):
    """Pipeline run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


DEFAULT_STAGES = ("build", "test", "deploy")


# ── Definition Models (parsed from YAML) ─────────────────────────────────────


class ActivationRule(BaseModel):
    """only/except match lists deciding whether a job is eligible for a run."""

    only: list[str] = []
    except_: list[str] = Field(default_factory=list, alias="except")

    model_config = {"populate_by_name": True}

    @property
    def is_unconditional(self) -> bool:
        return not self.only and not self.except_


class ArtifactSpec(BaseModel):
    """Paths a job publishes for later stages."""

    paths: list[str] = Field(min_length=1)
    when: ArtifactWhen = ArtifactWhen.ON_SUCCESS

    @field_validator("paths")
    @classmethod
    def _validate_paths(cls, v: list[str]) -> list[str]:
        """Artifact paths must stay inside the job workspace."""
        for raw in v:
            p = PurePosixPath(raw)
            if p.is_absolute():
                raise ValueError(f"artifact path must be relative, got absolute: {raw!r}")
            if ".." in p.parts:
                raise ValueError(f"artifact path must not contain '..': {raw!r}")
        return v


class JobSpec(BaseModel):
    """A single job in a pipeline definition."""

    name: str
    stage: str = "test"
    image: str | None = None
    variables: dict[str, str] = {}
    before_script: list[str] = []
    script: list[str] = Field(min_length=1)
    rule: ActivationRule = Field(default_factory=ActivationRule)
    tags: set[str] = set()
    artifacts: ArtifactSpec | None = None
    when: WhenPolicy = WhenPolicy.ON_SUCCESS
    allow_failure: bool = False
    blocking: bool = False
    timeout: str | None = None

    @field_validator("variables", mode="before")
    @classmethod
    def _stringify_variables(cls, v: Any) -> Any:
        # YAML happily yields ints/bools for unquoted values
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    @model_validator(mode="after")
    def validate_job(self) -> JobSpec:
        if not self.name.strip():
            raise ValueError("job name must not be empty")
        if self.blocking and self.when != WhenPolicy.MANUAL:
            msg = f"Job '{self.name}': 'blocking' only applies to 'when: manual' jobs"
            raise ValueError(msg)
        if self.timeout is not None:
            _parse_duration_seconds(self.timeout)
        return self

    def parse_timeout_seconds(self) -> int | None:
        """Parse timeout string (e.g. '30m', '2h') to seconds."""
        if not self.timeout:
            return None
        return _parse_duration_seconds(self.timeout)


class PipelineDefinition(BaseModel):
    """Complete pipeline definition parsed from YAML."""

    stages: list[str] = Field(default_factory=lambda: list(DEFAULT_STAGES), min_length=1)
    variables: dict[str, str] = {}
    jobs: dict[str, JobSpec] = {}

    @field_validator("variables", mode="before")
    @classmethod
    def _stringify_variables(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    @model_validator(mode="after")
    def validate_structure(self) -> PipelineDefinition:
        dupes = sorted({s for s in self.stages if self.stages.count(s) > 1})
        if dupes:
            msg = f"Duplicate stage names: {dupes}"
            raise ValueError(msg)

        declared = set(self.stages)
        for key, job in self.jobs.items():
            if job.name != key:
                msg = f"Job key '{key}' does not match job name '{job.name}'"
                raise ValueError(msg)
            if job.stage not in declared:
                msg = f"Job '{key}' references unknown stage '{job.stage}'"
                raise ValueError(msg)
        return self

    def jobs_for_stage(self, stage: str) -> list[JobSpec]:
        """Jobs belonging to a stage, in declaration order."""
        return [job for job in self.jobs.values() if job.stage == stage]

    def get_job(self, name: str) -> JobSpec | None:
        return self.jobs.get(name)


# ── Run Inputs ───────────────────────────────────────────────────────────────


class Ref(BaseModel):
    """A source-control ref as reported by a RefProvider."""

    name: str
    is_tag: bool = False


class RunContext(BaseModel):
    """Immutable inputs of one pipeline execution."""

    ref: str
    is_tag: bool = False
    manual_triggers: frozenset[str] = frozenset()
    pipeline_id: str = Field(default_factory=lambda: f"pl-{uuid.uuid4().hex[:12]}")
    variables: dict[str, str] = {}

    model_config = {"frozen": True}

    @classmethod
    def from_ref(cls, ref: Ref, **kwargs: Any) -> RunContext:
        return cls(ref=ref.name, is_tag=ref.is_tag, **kwargs)


# ── Plan Models ──────────────────────────────────────────────────────────────


class PlannedJob(BaseModel):
    """A job placed into a stage plan with its resolved initial state."""

    job: JobSpec
    initial_state: JobState
    reason: str = ""


class StagePlan(BaseModel):
    """All jobs of one stage, in declaration order."""

    name: str
    index: int
    jobs: list[PlannedJob] = []


class ExecutionPlan(BaseModel):
    """Ordered stage barriers produced by the order resolver."""

    pipeline_name: str = "pipeline"
    context: RunContext
    variables: dict[str, str] = {}
    stages: list[StagePlan] = []

    def iter_jobs(self) -> Iterator[tuple[StagePlan, PlannedJob]]:
        for stage in self.stages:
            for planned in stage.jobs:
                yield stage, planned

    def get_job(self, name: str) -> PlannedJob | None:
        for _, planned in self.iter_jobs():
            if planned.job.name == name:
                return planned
        return None


# ── Runtime State Models ─────────────────────────────────────────────────────


class ArtifactHandle(BaseModel):
    """Reference to a published artifact set."""

    job_name: str
    key: str
    location: str
    stage_index: int
    paths: list[str] = []

    model_config = {"frozen": True}


class JobResult(BaseModel):
    """What a runner reports back for a submitted job."""

    exit_code: int
    output: str = ""


class JobRun(BaseModel):
    """Runtime state of a single job execution."""

    name: str
    stage: str
    stage_index: int
    state: JobState = JobState.PENDING
    allow_failure: bool = False
    blocking: bool = False

    # Results
    exit_code: int | None = None
    error_message: str | None = None
    reason: str = ""
    artifact: ArtifactHandle | None = None

    # Timing
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class PipelineRun(BaseModel):
    """Runtime state of a pipeline execution."""

    run_id: str
    pipeline_name: str
    context: RunContext
    plan: ExecutionPlan
    jobs: dict[str, JobRun] = {}

    status: PipelineStatus = PipelineStatus.PENDING
    cancel_requested: bool = False

    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    error_message: str | None = None
    error_stage: str | None = None

    @classmethod
    def from_plan(cls, plan: ExecutionPlan, *, run_id: str | None = None) -> PipelineRun:
        """Create a run with one JobRun per planned job, in plan order.

        Every run gets a fresh id; the context's pipeline_id only feeds CI_PIPELINE_ID.
        """
        jobs: dict[str, JobRun] = {}
        for stage, planned in plan.iter_jobs():
            jobs[planned.job.name] = JobRun(
                name=planned.job.name,
                stage=stage.name,
                stage_index=stage.index,
                state=planned.initial_state,
                allow_failure=planned.job.allow_failure,
                blocking=planned.job.blocking,
                reason=planned.reason,
            )
        return cls(
            run_id=run_id or new_run_id(),
            pipeline_name=plan.pipeline_name,
            context=plan.context,
            plan=plan,
            jobs=jobs,
            created_at=datetime.now(timezone.utc),
        )

    def jobs_in_stage(self, index: int) -> list[JobRun]:
        return [j for j in self.jobs.values() if j.stage_index == index]

    @property
    def is_finished(self) -> bool:
        return self.completed_at is not None


# ── Helpers ──────────────────────────────────────────────────────────────────


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


def _parse_duration_seconds(duration: str) -> int:
    """Parse a duration string like '30s', '5m', '2h', '1d' to seconds.

    Raises ValueError on invalid format.
    """
    match = re.match(r"^(\d+)\s*(s|m|h|d)$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number><s|m|h|d>"
        raise ValueError(msg)
    value = int(match.group(1))
    unit = match.group(2)
    multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    return value * multipliers[unit]
