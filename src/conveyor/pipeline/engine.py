"""Pipeline engine — owns definitions and the lifecycle of pipeline runs.

Key exports:
    PipelineEngine — add_pipeline(), plan(), run_pipeline(), start_pipeline(),
        trigger_manual(), cancel_pipeline(), wait().
"""

from __future__ import annotations

import asyncio
import functools
import logging

from conveyor.pipeline.artifacts import ArtifactTracker
from conveyor.pipeline.errors import ConfigError
from conveyor.pipeline.interfaces import BlobStore, JobRunner
from conveyor.pipeline.models import (
    ExecutionPlan,
    PipelineDefinition,
    PipelineRun,
    RunContext,
)
from conveyor.pipeline.planner import build_plan
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.scheduler import Scheduler
from conveyor.pipeline.settings import EngineSettings

logger = logging.getLogger("conveyor.pipeline.engine")


class PipelineEngine:
    """Plans and executes pipeline runs.

    Each run gets its own Scheduler and ArtifactTracker; the runner and blob
    store are shared. Finished runs are persisted when a registry is given.

    Usage:
        engine = PipelineEngine(ShellRunner(workspace), LocalBlobStore(workspace, root))
        engine.add_pipeline("ci", load_definition(path))
        run = await engine.run_pipeline("ci", RunContext(ref="main"))
    """

    def __init__(
        self,
        runner: JobRunner,
        store: BlobStore,
        *,
        settings: EngineSettings | None = None,
        registry: RunRegistry | None = None,
    ):
        self._runner = runner
        self._store = store
        self._settings = settings or EngineSettings()
        self._registry = registry

        # Pipeline definitions (name → definition)
        self._pipelines: dict[str, PipelineDefinition] = {}

        # Runs started by this engine (run_id → run), finished ones included
        self._runs: dict[str, PipelineRun] = {}
        self._schedulers: dict[str, Scheduler] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Configuration ────────────────────────────────────────────────────────

    def add_pipeline(self, name: str, definition: PipelineDefinition) -> None:
        """Register a pipeline definition."""
        self._pipelines[name] = definition

    def get_pipeline(self, name: str) -> PipelineDefinition | None:
        return self._pipelines.get(name)

    @property
    def pipeline_names(self) -> list[str]:
        return list(self._pipelines)

    # ── Planning ─────────────────────────────────────────────────────────────

    def plan(self, name: str, ctx: RunContext) -> ExecutionPlan:
        """Resolve the execution plan of a registered pipeline.

        Raises:
            ConfigError: If no pipeline is registered under ``name``.
        """
        definition = self._pipelines.get(name)
        if definition is None:
            raise ConfigError(f"Unknown pipeline: '{name}'")
        return build_plan(definition, ctx, pipeline_name=name)

    # ── Execution ────────────────────────────────────────────────────────────

    async def run_pipeline(self, name: str, ctx: RunContext) -> PipelineRun:
        """Plan and execute a pipeline, returning once the run has finished."""
        run = self._prepare(name, ctx)
        return await self._execute(run)

    async def start_pipeline(self, name: str, ctx: RunContext) -> PipelineRun | None:
        """Start a pipeline in the background. Returns None for an unknown pipeline."""
        try:
            run = self._prepare(name, ctx)
        except ConfigError as exc:
            logger.error("Cannot start pipeline '%s': %s", name, exc)
            return None

        self._track(run.run_id, self._execute(run))
        # Let the scheduler take ownership of the run before returning
        await asyncio.sleep(0)
        return run

    async def wait(self, run_id: str) -> PipelineRun | None:
        """Wait for a background run (or a replay of played manual jobs) to finish."""
        run = self._runs.get(run_id)
        task = self._tasks.get(run_id)
        while task is not None:
            await asyncio.shield(task)
            # A job played meanwhile may have started a replay
            task = self._tasks.get(run_id)
        return run

    def _track(self, run_id: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"pipeline-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(functools.partial(self._forget_task, run_id))
        return task

    def _forget_task(self, run_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]

    def _prepare(self, name: str, ctx: RunContext) -> PipelineRun:
        plan = self.plan(name, ctx)
        run = PipelineRun.from_plan(plan)
        tracker = ArtifactTracker(self._store, namespace=run.run_id)
        self._runs[run.run_id] = run
        self._schedulers[run.run_id] = Scheduler(self._runner, tracker, settings=self._settings)
        return run

    async def _execute(self, run: PipelineRun) -> PipelineRun:
        scheduler = self._schedulers[run.run_id]
        try:
            await scheduler.execute(run.plan, run=run)
        finally:
            await self._settle(run, scheduler)
        return run

    async def _replay(self, run: PipelineRun, scheduler: Scheduler) -> PipelineRun:
        try:
            await scheduler.replay()
        finally:
            await self._settle(run, scheduler)
        return run

    async def _settle(self, run: PipelineRun, scheduler: Scheduler) -> None:
        """Persist a finished run; keep it controllable while manual jobs can be played."""
        active = not scheduler.finished or scheduler.playable
        if not active and self._schedulers.get(run.run_id) is scheduler:
            del self._schedulers[run.run_id]
        if await self._persist(run) and not active:
            # The registry now serves it
            self._runs.pop(run.run_id, None)

    async def _persist(self, run: PipelineRun) -> bool:
        if self._registry is None:
            return False
        try:
            await self._registry.save_run(run)
        except Exception:
            logger.exception("Failed to persist pipeline run %s", run.run_id)
            return False
        return True

    # ── Run Control ──────────────────────────────────────────────────────────

    def get_run(self, run_id: str) -> PipelineRun | None:
        return self._runs.get(run_id)

    def list_runs(self) -> list[PipelineRun]:
        """Runs started by this engine, newest first."""
        return list(reversed(self._runs.values()))

    def trigger_manual(self, run_id: str, job_name: str) -> bool:
        """Play a manual job of an active run.

        Jobs left waiting by a finished run can still be played; the run is
        then reopened and settled again in the background.
        """
        scheduler = self._schedulers.get(run_id)
        if scheduler is None:
            logger.warning("Cannot play '%s': run %s is not active", job_name, run_id)
            return False
        reopened = scheduler.finished
        if not scheduler.trigger_manual(job_name):
            return False
        if reopened:
            self._track(run_id, self._replay(scheduler.run, scheduler))
        return True

    def cancel_pipeline(self, run_id: str) -> bool:
        """Request cancellation of an active run."""
        scheduler = self._schedulers.get(run_id)
        if scheduler is None:
            return False
        return scheduler.cancel()

    def cancel_all(self) -> int:
        """Request cancellation of every active run. Returns how many were signalled."""
        return sum(1 for run_id in list(self._schedulers) if self.cancel_pipeline(run_id))
