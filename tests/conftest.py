"""Shared fixtures and fakes for the pipeline engine tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict

import pytest
import yaml

from conveyor.config import parse_definition
from conveyor.pipeline.artifacts import ArtifactTracker, MemoryBlobStore
from conveyor.pipeline.models import (
    ArtifactHandle,
    JobResult,
    JobSpec,
    PipelineDefinition,
    PipelineRun,
    RunContext,
)
from conveyor.pipeline.planner import build_plan
from conveyor.pipeline.scheduler import Scheduler
from conveyor.pipeline.settings import EngineSettings


class ScriptedRunner:
    """JobRunner whose outcome per job is decided by the test.

    exit_codes: job → exit code (default 0)
    errors: job → exception raised from submit()
    gates: job → asyncio.Event the job waits on before finishing
    delays: job → seconds to sleep before finishing
    """

    def __init__(
        self,
        exit_codes: dict[str, int] | None = None,
        *,
        errors: dict[str, BaseException] | None = None,
        gates: dict[str, asyncio.Event] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.exit_codes = exit_codes or {}
        self.errors = errors or {}
        self.gates = gates or {}
        self.delays = delays or {}

        self.calls: list[str] = []
        self.cancelled: list[str] = []
        self.inputs: dict[str, dict[str, ArtifactHandle]] = {}
        self.variables: dict[str, dict[str, str]] = {}
        self.images: dict[str, str | None] = {}
        self.started: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.active = 0
        self.max_active = 0

    async def submit(
        self,
        job: JobSpec,
        variables: dict[str, str],
        artifact_inputs: dict[str, ArtifactHandle],
    ) -> JobResult:
        self.calls.append(job.name)
        self.inputs[job.name] = dict(artifact_inputs)
        self.variables[job.name] = dict(variables)
        self.images[job.name] = job.image
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started[job.name].set()
        try:
            if job.name in self.gates:
                await self.gates[job.name].wait()
            if job.name in self.delays:
                await asyncio.sleep(self.delays[job.name])
            if job.name in self.errors:
                raise self.errors[job.name]
            return JobResult(exit_code=self.exit_codes.get(job.name, 0), output=f"ran {job.name}")
        except asyncio.CancelledError:
            self.cancelled.append(job.name)
            raise
        finally:
            self.active -= 1


def make_definition(text: str) -> PipelineDefinition:
    """Parse a YAML pipeline document."""
    return parse_definition(yaml.safe_load(text))


def make_context(ref: str = "main", *, is_tag: bool = False, **kwargs) -> RunContext:
    return RunContext(ref=ref, is_tag=is_tag, **kwargs)


async def execute(
    definition: PipelineDefinition,
    ctx: RunContext,
    runner,
    *,
    store=None,
    settings: EngineSettings | None = None,
) -> PipelineRun:
    """Plan and run a definition with a fresh Scheduler."""
    plan = build_plan(definition, ctx)
    tracker = ArtifactTracker(store or MemoryBlobStore())
    scheduler = Scheduler(runner, tracker, settings=settings)
    return await scheduler.execute(plan)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true, yielding to the event loop."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def store() -> MemoryBlobStore:
    return MemoryBlobStore()
