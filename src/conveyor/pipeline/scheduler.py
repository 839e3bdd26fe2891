"""Scheduler — drive an execution plan to completion.

Stages run strictly in order. Inside a stage every pending job is submitted
at once as its own asyncio task; the scheduler then sleeps on an event that
is set whenever a job reaches a terminal state (or a manual job is played)
and re-checks the stage barrier.

Manual jobs left waiting when the last stage settles can still be played;
that reopens the run until `replay()` settles it again.

Key exports:
    Scheduler — execute(), trigger_manual(), replay(), cancel()
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timezone

from conveyor.pipeline import aggregator
from conveyor.pipeline.artifacts import ArtifactTracker
from conveyor.pipeline.errors import ArtifactError, CancellationError, JobFailure
from conveyor.pipeline.interfaces import JobRunner
from conveyor.pipeline.models import (
    ArtifactWhen,
    ExecutionPlan,
    JobRun,
    JobSpec,
    JobState,
    PipelineRun,
    PipelineStatus,
    StagePlan,
    StageStatus,
    WhenPolicy,
)
from conveyor.pipeline.settings import EngineSettings
from conveyor.pipeline.variables import resolve_image, resolve_variables

logger = logging.getLogger("conveyor.pipeline.scheduler")

_HALTING_STAGE_STATUSES = (StageStatus.FAILED, StageStatus.CANCELED)


class Scheduler:
    """Executes one pipeline run. Not reusable across runs."""

    def __init__(
        self,
        runner: JobRunner,
        tracker: ArtifactTracker,
        *,
        settings: EngineSettings | None = None,
    ):
        self._runner = runner
        self._tracker = tracker
        self._settings = settings or EngineSettings()

        self._run: PipelineRun | None = None
        self._plan: ExecutionPlan | None = None
        self._changed = asyncio.Event()
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancelling: set[str] = set()
        self._manual_timers: dict[str, asyncio.TimerHandle] = {}
        self._slots = (
            asyncio.Semaphore(self._settings.max_parallel) if self._settings.max_parallel else None
        )
        self._current_stage = -1
        self._failed_stages: set[int] = set()
        self._halted_by: str | None = None
        self._finished = False

    @property
    def run(self) -> PipelineRun | None:
        return self._run

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def playable(self) -> bool:
        """Finished, but some manual jobs can still be played."""
        run = self._run
        return (
            self._finished
            and run is not None
            and not run.cancel_requested
            and any(job.state == JobState.MANUAL_WAIT for job in run.jobs.values())
        )

    # ── Execution ────────────────────────────────────────────────────────────

    async def execute(self, plan: ExecutionPlan, *, run: PipelineRun | None = None) -> PipelineRun:
        """Run every stage of the plan and return the finished PipelineRun."""
        if self._run is not None:
            msg = "Scheduler instances execute a single run"
            raise RuntimeError(msg)

        run = run or PipelineRun.from_plan(plan)
        self._run = run
        self._plan = plan
        run.status = PipelineStatus.RUNNING
        run.started_at = datetime.now(timezone.utc)
        logger.info(
            "Pipeline '%s' run %s started (ref '%s')",
            run.pipeline_name,
            run.run_id,
            run.context.ref,
        )

        try:
            for stage in plan.stages:
                if run.cancel_requested:
                    break
                self._current_stage = stage.index
                self._halt_on_earlier_failure(stage.index)
                if self._halted_by is not None:
                    self._skip_after_failure(stage)
                self._start_manual_timers(stage)
                await self._run_stage(stage)

                stage_result = aggregator.stage_status(run, stage.index)
                logger.info(
                    "Stage '%s' settled: %s (pipeline %s)",
                    stage.name,
                    stage_result.value,
                    run.run_id,
                )
                if stage_result in _HALTING_STAGE_STATUSES and self._halted_by is None:
                    self._halted_by = stage.name
                if stage_result == StageStatus.FAILED and run.error_stage is None:
                    run.error_stage = stage.name
                    run.error_message = self._first_failure_message(stage)
                aggregator.update(run)

            await self._drain()
        finally:
            self._finish()

        return run

    async def replay(self) -> PipelineRun:
        """Settle manual jobs played after the run had finished."""
        if self._finished:
            return self._run
        try:
            await self._drain(wait_for_manual=False)
        finally:
            self._finish()
        return self._run

    async def _run_stage(self, stage: StagePlan) -> None:
        run = self._run
        for planned in stage.jobs:
            if run.jobs[planned.job.name].state == JobState.PENDING:
                self._submit(planned.job, stage.index)

        while True:
            self._changed.clear()
            jobs = run.jobs_in_stage(stage.index)
            self._halt_on_earlier_failure(stage.index)
            if run.cancel_requested:
                self._cancel_unstarted()
            elif stage.index not in self._failed_stages:
                failed = next((j for j in jobs if aggregator.is_disallowed_failure(j)), None)
                if failed is not None:
                    self._fail_fast(stage, failed)
            if aggregator.stage_settled(jobs):
                break
            await self._changed.wait()

        await self._gather(j.name for j in run.jobs_in_stage(stage.index))

    async def _drain(self, *, wait_for_manual: bool = True) -> None:
        """Wait for jobs still in flight after the last stage.

        With a manual expiry configured, untriggered manual jobs are also
        waited for until they are played or expire.
        """
        run = self._run
        wait_for_manual = (
            wait_for_manual
            and self._settings.manual_expiry_seconds() is not None
            and self._halted_by is None
            and not run.cancel_requested
        )
        while True:
            self._changed.clear()
            if run.cancel_requested:
                self._cancel_unstarted()
            in_flight = [t for t in self._tasks.values() if not t.done()]
            waiting = wait_for_manual and any(
                j.state in (JobState.MANUAL_WAIT, JobState.PENDING) for j in run.jobs.values()
            )
            if not in_flight and not waiting:
                break
            await self._changed.wait()
        await self._gather(self._tasks)

    async def _gather(self, names) -> None:
        tasks = [self._tasks[name] for name in names if name in self._tasks]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _finish(self) -> None:
        run = self._run
        for handle in self._manual_timers.values():
            handle.cancel()
        self._manual_timers.clear()
        for name in self._tasks:
            self._cancel_task(name)

        if run.cancel_requested or self._halted_by is not None:
            for job in run.jobs.values():
                if job.state == JobState.MANUAL_WAIT:
                    self._set_state(job, JobState.SKIPPED, reason="pipeline did not succeed")

        aggregator.update(run)
        if run.status == PipelineStatus.FAILED and run.error_stage is None:
            # A late failure, e.g. a played or expired manual job
            for stage in self._plan.stages:
                if aggregator.stage_status(run, stage.index) == StageStatus.FAILED:
                    run.error_stage = stage.name
                    run.error_message = self._first_failure_message(stage)
                    break
        run.completed_at = datetime.now(timezone.utc)
        self._finished = True
        log = logger.info if run.status == PipelineStatus.SUCCEEDED else logger.warning
        log("Pipeline '%s' run %s finished: %s", run.pipeline_name, run.run_id, run.status.value)

    # ── Job Execution ────────────────────────────────────────────────────────

    def _submit(self, job: JobSpec, stage_index: int) -> None:
        logger.debug("Submitting job '%s' (pipeline %s)", job.name, self._run.run_id)
        task = asyncio.create_task(self._run_job(job, stage_index), name=f"job-{job.name}")
        task.add_done_callback(functools.partial(self._on_task_done, job.name))
        self._tasks[job.name] = task

    def _on_task_done(self, job_name: str, task: asyncio.Task) -> None:
        # A task cancelled before its first step never enters _run_job
        job_run = self._run.jobs[job_name]
        if job_run.is_terminal:
            return
        if task.cancelled():
            self._set_state(job_run, JobState.CANCELED, error="canceled")
        else:
            self._set_state(job_run, JobState.FAILED, error=f"Runner error: {task.exception()}")

    async def _run_job(self, job: JobSpec, stage_index: int) -> None:
        job_run = self._run.jobs[job.name]
        if self._slots is None:
            await self._execute_job(job, job_run, stage_index)
            return
        async with self._slots:
            await self._execute_job(job, job_run, stage_index)

    async def _execute_job(self, job: JobSpec, job_run: JobRun, stage_index: int) -> None:
        run = self._run
        variables = resolve_variables(self._plan.variables, job, run.context)
        resolved = job.model_copy(update={"image": resolve_image(job, variables)})
        inputs = self._tracker.inputs_for(stage_index)

        self._set_state(job_run, JobState.RUNNING)
        logger.info(
            "Job '%s' started in stage '%s' (pipeline %s)", job.name, job.stage, run.run_id
        )

        try:
            result = await self._submit_to_runner(resolved, variables, inputs)
            job_run.exit_code = result.exit_code
            if result.exit_code != 0:
                raise JobFailure(
                    f"Job exited with code {result.exit_code}", exit_code=result.exit_code
                )
            if job.artifacts:
                job_run.artifact = await self._tracker.publish(
                    job.name, job.artifacts.paths, stage_index=stage_index
                )
            self._set_state(job_run, JobState.SUCCEEDED)
        except JobFailure as exc:
            if (
                job.allow_failure
                and job.artifacts
                and job.artifacts.when == ArtifactWhen.ALWAYS
                and not isinstance(exc, ArtifactError)
            ):
                await self._collect_after_failure(job, job_run, stage_index)
            self._set_state(job_run, JobState.FAILED, error=str(exc))
        except CancellationError as exc:
            self._set_state(job_run, JobState.CANCELED, error=str(exc) or "canceled")
        except Exception as exc:
            logger.exception("Runner error for job '%s' (pipeline %s)", job.name, run.run_id)
            self._set_state(job_run, JobState.FAILED, error=f"Runner error: {exc}")

    async def _submit_to_runner(self, job: JobSpec, variables, inputs):
        timeout = job.parse_timeout_seconds()
        if timeout is None:
            return await self._runner.submit(job, variables, inputs)
        try:
            return await asyncio.wait_for(self._runner.submit(job, variables, inputs), timeout)
        except asyncio.TimeoutError:
            raise JobFailure(f"Job timed out after {job.timeout}") from None

    async def _collect_after_failure(self, job: JobSpec, job_run: JobRun, stage_index: int) -> None:
        try:
            job_run.artifact = await self._tracker.publish(
                job.name, job.artifacts.paths, stage_index=stage_index
            )
        except ArtifactError as exc:
            logger.warning("Could not collect artifacts of failed job '%s': %s", job.name, exc)

    def _set_state(
        self,
        job_run: JobRun,
        state: JobState,
        *,
        error: str | None = None,
        reason: str | None = None,
    ) -> None:
        job_run.state = state
        now = datetime.now(timezone.utc)
        if state == JobState.RUNNING:
            job_run.started_at = now
        elif job_run.is_terminal:
            job_run.completed_at = now
            timer = self._manual_timers.pop(job_run.name, None)
            if timer:
                timer.cancel()
        if error is not None:
            job_run.error_message = error
        if reason is not None:
            job_run.reason = reason
        if state == JobState.FAILED:
            level = logging.INFO if job_run.allow_failure else logging.WARNING
            logger.log(level, "Job '%s' failed: %s", job_run.name, job_run.error_message)
        elif job_run.is_terminal:
            logger.info("Job '%s' %s", job_run.name, state.value)
        self._changed.set()

    # ── Failure Propagation ──────────────────────────────────────────────────

    def _fail_fast(self, stage: StagePlan, failed: JobRun) -> None:
        """Cancel every other unfinished job of the stage."""
        self._failed_stages.add(stage.index)
        logger.warning(
            "Job '%s' failed in stage '%s'; cancelling remaining jobs of the stage",
            failed.name,
            stage.name,
        )
        for job_run in self._run.jobs_in_stage(stage.index):
            if job_run.name == failed.name or job_run.is_terminal:
                continue
            if self._cancel_task(job_run.name):
                continue
            if job_run.state == JobState.MANUAL_WAIT:
                self._set_state(
                    job_run, JobState.SKIPPED, reason=f"stage '{stage.name}' failed"
                )
            elif job_run.state == JobState.PENDING:
                self._set_state(job_run, JobState.CANCELED, error="canceled by fail-fast")

    def _skip_after_failure(self, stage: StagePlan) -> None:
        """Skip a stage's jobs after an earlier failure, keeping ``when: always`` jobs."""
        for planned in stage.jobs:
            job_run = self._run.jobs[planned.job.name]
            if planned.job.when == WhenPolicy.ALWAYS and job_run.state == JobState.PENDING:
                continue
            if job_run.state in (JobState.PENDING, JobState.MANUAL_WAIT):
                self._set_state(
                    job_run,
                    JobState.SKIPPED,
                    reason=f"stage '{self._halted_by}' did not succeed",
                )

    def _halt_on_earlier_failure(self, before: int) -> None:
        """Halt when a settled stage fails late, e.g. a played or expired manual job."""
        if self._halted_by is not None:
            return
        for stage in self._plan.stages:
            if stage.index >= before:
                break
            if aggregator.stage_status(self._run, stage.index) != StageStatus.FAILED:
                continue
            self._halted_by = stage.name
            if self._run.error_stage is None:
                self._run.error_stage = stage.name
                self._run.error_message = self._first_failure_message(stage)
            logger.warning(
                "Stage '%s' failed after settling; later stages will be skipped (pipeline %s)",
                stage.name,
                self._run.run_id,
            )
            return

    def _first_failure_message(self, stage: StagePlan) -> str:
        for job_run in self._run.jobs_in_stage(stage.index):
            if aggregator.is_disallowed_failure(job_run):
                return f"Job '{job_run.name}' failed: {job_run.error_message}"
        return f"Stage '{stage.name}' failed"

    # ── Manual Jobs ──────────────────────────────────────────────────────────

    def _start_manual_timers(self, stage: StagePlan) -> None:
        seconds = self._settings.manual_expiry_seconds()
        if seconds is None:
            return
        loop = asyncio.get_running_loop()
        for job_run in self._run.jobs_in_stage(stage.index):
            if job_run.state == JobState.MANUAL_WAIT:
                self._manual_timers[job_run.name] = loop.call_later(
                    seconds, self._expire_manual, job_run.name
                )

    def _expire_manual(self, job_name: str) -> None:
        self._manual_timers.pop(job_name, None)
        job_run = self._run.jobs[job_name]
        if job_run.state != JobState.MANUAL_WAIT:
            return
        logger.info("Manual job '%s' expired without a trigger", job_name)
        if self._settings.manual_expiry_action == "fail":
            self._set_state(job_run, JobState.FAILED, error="manual action expired")
        else:
            self._set_state(job_run, JobState.SKIPPED, reason="manual action expired")

    def trigger_manual(self, job_name: str) -> bool:
        """Play a job waiting for a manual trigger. Returns False if not playable.

        Playing a job of a finished run reopens it; the caller then awaits
        `replay()` to settle the run again.
        """
        if self._run is None or self._run.cancel_requested:
            return False
        job_run = self._run.jobs.get(job_name)
        if job_run is None or job_run.state != JobState.MANUAL_WAIT:
            return False

        timer = self._manual_timers.pop(job_name, None)
        if timer:
            timer.cancel()
        job_run.state = JobState.PENDING
        job_run.reason = "manually triggered"
        logger.info("Manual job '%s' triggered (pipeline %s)", job_name, self._run.run_id)
        if self._finished:
            self._finished = False
            self._run.status = PipelineStatus.RUNNING
            self._run.completed_at = None
        if job_run.stage_index <= self._current_stage:
            planned = self._plan.get_job(job_name)
            self._submit(planned.job, job_run.stage_index)
        self._changed.set()
        return True

    # ── Cancellation ─────────────────────────────────────────────────────────

    def cancel(self) -> bool:
        """Request cancellation of the whole run. Returns False if already finished."""
        if self._run is None or self._finished:
            return False
        if not self._run.cancel_requested:
            logger.warning("Cancelling pipeline run %s", self._run.run_id)
        self._run.cancel_requested = True
        self._changed.set()
        return True

    def _cancel_unstarted(self) -> None:
        for job_run in self._run.jobs.values():
            if job_run.is_terminal:
                continue
            if self._cancel_task(job_run.name):
                continue
            if job_run.state in (JobState.PENDING, JobState.MANUAL_WAIT):
                self._set_state(job_run, JobState.CANCELED, error="pipeline canceled")

    def _cancel_task(self, job_name: str) -> bool:
        """Signal a job's task once. True if the job has a task still in flight."""
        task = self._tasks.get(job_name)
        if task is None or task.done():
            return False
        if job_name not in self._cancelling:
            self._cancelling.add(job_name)
            task.cancel()
        return True
