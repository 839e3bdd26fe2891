"""Tests for the Scheduler — stage barriers, fail-fast, manual jobs, cancellation.

Covers:
- Stage ordering and in-stage concurrency
- Failure propagation (fail-fast, skip later stages, allow_failure, when: always)
- Artifact visibility and collection rules
- Manual jobs (non-blocking, blocking, triggers, expiry)
- Cancellation, timeouts, runner errors, max_parallel
"""

from __future__ import annotations

import asyncio

import pytest
from conftest import ScriptedRunner, execute, make_context, make_definition, wait_until

from conveyor.pipeline.artifacts import ArtifactTracker, MemoryBlobStore
from conveyor.pipeline.errors import CancellationError
from conveyor.pipeline.models import JobState, PipelineStatus, StageStatus
from conveyor.pipeline.aggregator import stage_status
from conveyor.pipeline.planner import build_plan
from conveyor.pipeline.scheduler import Scheduler
from conveyor.pipeline.settings import EngineSettings

THREE_STAGES = """
stages: [build, test, deploy]
compile:
  stage: build
  script: make
unit:
  stage: test
  script: pytest
lint:
  stage: test
  script: ruff .
ship:
  stage: deploy
  script: ./ship.sh
"""


class _FastExpiry(EngineSettings):
    """Settings whose manual expiry fires after a fraction of a second."""

    def manual_expiry_seconds(self):
        return 0.05


def _scheduler(runner, store=None, settings=None) -> Scheduler:
    return Scheduler(runner, ArtifactTracker(store or MemoryBlobStore()), settings=settings)


# ── Tests: Stage Ordering ────────────────────────────────────────────────────


class TestStageOrdering:
    async def test_all_stages_succeed(self, runner):
        run = await execute(make_definition(THREE_STAGES), make_context(), runner)

        assert run.status == PipelineStatus.SUCCEEDED
        assert run.is_finished
        assert runner.calls[0] == "compile"
        assert set(runner.calls[1:3]) == {"unit", "lint"}
        assert runner.calls[3] == "ship"
        assert all(job.state == JobState.SUCCEEDED for job in run.jobs.values())
        assert all(job.exit_code == 0 for job in run.jobs.values())

    async def test_next_stage_waits_for_barrier(self):
        gate = asyncio.Event()
        runner = ScriptedRunner(gates={"compile": gate})
        task = asyncio.create_task(execute(make_definition(THREE_STAGES), make_context(), runner))

        await runner.started["compile"].wait()
        await asyncio.sleep(0.05)
        assert runner.calls == ["compile"]

        gate.set()
        run = await task
        assert run.status == PipelineStatus.SUCCEEDED
        assert len(runner.calls) == 4

    async def test_jobs_in_a_stage_run_concurrently(self):
        gate = asyncio.Event()
        runner = ScriptedRunner(gates={"unit": gate, "lint": gate})
        task = asyncio.create_task(execute(make_definition(THREE_STAGES), make_context(), runner))

        await wait_until(lambda: runner.active == 2)
        gate.set()
        run = await task
        assert runner.max_active == 2
        assert run.status == PipelineStatus.SUCCEEDED

    async def test_max_parallel_bounds_concurrency(self):
        runner = ScriptedRunner(delays={"unit": 0.02, "lint": 0.02})
        settings = EngineSettings(max_parallel=1)
        run = await execute(make_definition(THREE_STAGES), make_context(), runner, settings=settings)
        assert runner.max_active == 1
        assert run.status == PipelineStatus.SUCCEEDED

    async def test_scheduler_executes_a_single_run(self, runner):
        plan = build_plan(make_definition(THREE_STAGES), make_context())
        scheduler = _scheduler(runner)
        await scheduler.execute(plan)
        with pytest.raises(RuntimeError):
            await scheduler.execute(plan)


# ── Tests: Failure Propagation ───────────────────────────────────────────────


class TestFailurePropagation:
    async def test_failure_skips_later_stages(self):
        runner = ScriptedRunner({"compile": 2})
        run = await execute(make_definition(THREE_STAGES), make_context(), runner)

        assert run.status == PipelineStatus.FAILED
        assert run.jobs["compile"].state == JobState.FAILED
        assert run.jobs["compile"].exit_code == 2
        for name in ("unit", "lint", "ship"):
            assert run.jobs[name].state == JobState.SKIPPED
            assert "did not succeed" in run.jobs[name].reason
        assert runner.calls == ["compile"]
        assert run.error_stage == "build"
        assert "compile" in run.error_message
        assert stage_status(run, 1) == StageStatus.SKIPPED

    async def test_fail_fast_cancels_siblings(self):
        never = asyncio.Event()
        runner = ScriptedRunner({"unit": 1}, gates={"lint": never})
        run = await execute(make_definition(THREE_STAGES), make_context(), runner)

        assert run.status == PipelineStatus.FAILED
        assert run.jobs["unit"].state == JobState.FAILED
        assert run.jobs["lint"].state == JobState.CANCELED
        assert run.jobs["ship"].state == JobState.SKIPPED
        assert runner.cancelled == ["lint"]
        assert stage_status(run, 1) == StageStatus.FAILED

    async def test_allow_failure_does_not_fail_stage(self):
        definition = make_definition(
            THREE_STAGES.replace("  script: ruff .", "  script: ruff .\n  allow_failure: true")
        )
        runner = ScriptedRunner({"lint": 1})
        run = await execute(definition, make_context(), runner)

        assert run.status == PipelineStatus.SUCCEEDED
        assert run.jobs["lint"].state == JobState.FAILED
        assert run.jobs["ship"].state == JobState.SUCCEEDED
        assert run.error_message is None

    async def test_always_job_runs_after_failure(self):
        definition = make_definition(
            THREE_STAGES + "cleanup:\n  stage: deploy\n  script: ./cleanup.sh\n  when: always\n"
        )
        runner = ScriptedRunner({"compile": 1})
        run = await execute(definition, make_context(), runner)

        assert run.status == PipelineStatus.FAILED
        assert run.jobs["cleanup"].state == JobState.SUCCEEDED
        assert run.jobs["ship"].state == JobState.SKIPPED
        assert runner.calls == ["compile", "cleanup"]

    async def test_late_failure_of_settled_stage_skips_later_stages(self):
        definition = make_definition(
            "stages: [build, deploy, release]\n"
            "compile:\n  stage: build\n  script: make\n"
            "smoke:\n  stage: build\n  script: ./smoke.sh\n  when: manual\n"
            "ship:\n  stage: deploy\n  script: ./ship.sh\n"
            "publish:\n  stage: release\n  script: ./publish.sh\n"
            "cleanup:\n  stage: release\n  script: ./cleanup.sh\n  when: always\n"
        )
        gate = asyncio.Event()
        runner = ScriptedRunner({"smoke": 1}, gates={"ship": gate})
        scheduler = _scheduler(runner)
        task = asyncio.create_task(scheduler.execute(build_plan(definition, make_context())))

        await runner.started["ship"].wait()
        assert scheduler.trigger_manual("smoke")
        await wait_until(lambda: scheduler.run.jobs["smoke"].state == JobState.FAILED)
        gate.set()
        run = await task

        assert run.jobs["ship"].state == JobState.SUCCEEDED
        assert run.jobs["publish"].state == JobState.SKIPPED
        assert run.jobs["publish"].reason == "stage 'build' did not succeed"
        assert run.jobs["cleanup"].state == JobState.SUCCEEDED
        assert "publish" not in runner.calls
        assert run.status == PipelineStatus.FAILED
        assert run.error_stage == "build"
        assert "smoke" in run.error_message

    async def test_runner_exception_fails_job(self):
        runner = ScriptedRunner(errors={"compile": OSError("runner vanished")})
        run = await execute(make_definition(THREE_STAGES), make_context(), runner)

        assert run.status == PipelineStatus.FAILED
        assert run.jobs["compile"].error_message == "Runner error: runner vanished"

    async def test_timeout_fails_job(self):
        definition = make_definition(
            "stages: [test]\nhang:\n  stage: test\n  script: sleep 100\n  timeout: 1s\n"
        )
        runner = ScriptedRunner(gates={"hang": asyncio.Event()})
        run = await execute(definition, make_context(), runner)

        assert run.jobs["hang"].state == JobState.FAILED
        assert run.jobs["hang"].error_message == "Job timed out after 1s"
        assert runner.cancelled == ["hang"]


# ── Tests: Artifacts ─────────────────────────────────────────────────────────


ARTIFACTS = """
stages: [build, test, deploy]
compile:
  stage: build
  script: make
  artifacts:
    paths: [dist/]
docs:
  stage: build
  script: make docs
unit:
  stage: test
  script: pytest
  allow_failure: true
  artifacts:
    paths: [coverage/]
    when: always
ship:
  stage: deploy
  script: ./ship.sh
"""


class TestArtifacts:
    async def test_visible_to_later_stages_only(self, runner):
        run = await execute(make_definition(ARTIFACTS), make_context(), runner)

        assert run.jobs["compile"].artifact is not None
        assert runner.inputs["docs"] == {}
        assert set(runner.inputs["unit"]) == {"compile"}
        assert set(runner.inputs["ship"]) == {"compile", "unit"}
        assert runner.inputs["ship"]["compile"].location == run.jobs["compile"].artifact.location

    async def test_missing_paths_fail_the_job(self):
        store = MemoryBlobStore(available={"coverage/"})
        runner = ScriptedRunner()
        run = await execute(make_definition(ARTIFACTS), make_context(), runner, store=store)

        assert run.jobs["compile"].state == JobState.FAILED
        assert "dist/" in run.jobs["compile"].error_message
        assert run.status == PipelineStatus.FAILED

    async def test_collected_for_allowed_failure_with_always(self):
        runner = ScriptedRunner({"unit": 1})
        run = await execute(make_definition(ARTIFACTS), make_context(), runner)

        assert run.jobs["unit"].state == JobState.FAILED
        assert run.jobs["unit"].artifact is not None
        assert "unit" in runner.inputs["ship"]

    async def test_not_collected_for_failed_job_by_default(self):
        definition = make_definition(ARTIFACTS.replace("    when: always\n", ""))
        runner = ScriptedRunner({"unit": 1})
        run = await execute(definition, make_context(), runner)

        assert run.jobs["unit"].artifact is None
        assert "unit" not in runner.inputs["ship"]


# ── Tests: Variables ─────────────────────────────────────────────────────────


class TestVariables:
    async def test_resolved_variables_and_image_reach_runner(self, runner):
        definition = make_definition(
            """
stages: [test]
variables:
  PY: "3.12"
unit:
  stage: test
  image: python:$PY
  variables:
    TARGET: $CI_COMMIT_REF_NAME
  script: pytest
"""
        )
        await execute(definition, make_context("feature/x"), runner)

        assert runner.images["unit"] == "python:3.12"
        assert runner.variables["unit"]["TARGET"] == "feature/x"
        assert runner.variables["unit"]["CI_JOB_STAGE"] == "test"


# ── Tests: Manual Jobs ───────────────────────────────────────────────────────


MANUAL = """
stages: [build, deploy, notify]
compile:
  stage: build
  script: make
approve:
  stage: deploy
  script: ./approve.sh
  when: manual
announce:
  stage: notify
  script: ./announce.sh
"""


class TestManualJobs:
    async def test_manual_job_never_auto_executes(self, runner):
        run = await execute(make_definition(MANUAL), make_context(), runner)

        assert run.status == PipelineStatus.SUCCEEDED
        assert run.jobs["approve"].state == JobState.MANUAL_WAIT
        assert "approve" not in runner.calls
        assert runner.calls == ["compile", "announce"]

    async def test_blocking_manual_holds_the_barrier(self, runner):
        definition = make_definition(MANUAL.replace("  when: manual", "  when: manual\n  blocking: true"))
        scheduler = _scheduler(runner)
        task = asyncio.create_task(scheduler.execute(build_plan(definition, make_context())))

        await wait_until(lambda: scheduler.run is not None and scheduler.run.jobs["compile"].is_terminal)
        await asyncio.sleep(0.05)
        assert "announce" not in runner.calls
        assert not task.done()

        assert scheduler.trigger_manual("approve")
        run = await task
        assert runner.calls == ["compile", "approve", "announce"]
        assert run.jobs["approve"].state == JobState.SUCCEEDED
        assert run.jobs["approve"].reason == "manually triggered"
        assert run.status == PipelineStatus.SUCCEEDED

    async def test_trigger_during_running_stage(self):
        gate = asyncio.Event()
        definition = make_definition(
            "stages: [test]\nunit:\n  script: pytest\n"
            "approve:\n  script: ./approve.sh\n  when: manual\n"
        )
        runner = ScriptedRunner(gates={"unit": gate})
        scheduler = _scheduler(runner)
        task = asyncio.create_task(scheduler.execute(build_plan(definition, make_context())))

        await runner.started["unit"].wait()
        assert scheduler.trigger_manual("approve")
        await runner.started["approve"].wait()
        gate.set()

        run = await task
        assert run.jobs["approve"].state == JobState.SUCCEEDED

    async def test_failed_manual_job_fails_pipeline(self):
        definition = make_definition(
            "stages: [test]\nunit:\n  script: pytest\n  when: manual\n  blocking: true\n"
        )
        runner = ScriptedRunner({"unit": 1})
        scheduler = _scheduler(runner)
        task = asyncio.create_task(scheduler.execute(build_plan(definition, make_context())))

        await wait_until(lambda: scheduler.run is not None)
        assert scheduler.trigger_manual("unit")
        run = await task
        assert run.status == PipelineStatus.FAILED
        assert run.error_stage == "test"

    async def test_trigger_rejected_for_non_manual_jobs(self, runner):
        definition = make_definition(MANUAL.replace("  when: manual", "  when: manual\n  blocking: true"))
        scheduler = _scheduler(runner)
        task = asyncio.create_task(scheduler.execute(build_plan(definition, make_context())))
        await wait_until(lambda: scheduler.run is not None)

        assert not scheduler.trigger_manual("compile")
        assert not scheduler.trigger_manual("does-not-exist")
        assert scheduler.trigger_manual("approve")
        assert not scheduler.trigger_manual("approve")
        await task

    async def test_job_played_after_finish_reopens_run(self, runner):
        scheduler = _scheduler(runner)
        run = await scheduler.execute(build_plan(make_definition(MANUAL), make_context()))
        assert run.status == PipelineStatus.SUCCEEDED
        assert scheduler.playable

        assert scheduler.trigger_manual("approve")
        assert run.status == PipelineStatus.RUNNING
        assert run.completed_at is None
        assert not scheduler.finished

        await scheduler.replay()
        assert run.jobs["approve"].state == JobState.SUCCEEDED
        assert run.status == PipelineStatus.SUCCEEDED
        assert run.completed_at is not None
        assert runner.calls == ["compile", "announce", "approve"]
        assert not scheduler.playable
        assert not scheduler.trigger_manual("approve")

    async def test_late_played_job_failure_fails_run(self):
        runner = ScriptedRunner({"approve": 1})
        scheduler = _scheduler(runner)
        run = await scheduler.execute(build_plan(make_definition(MANUAL), make_context()))

        assert scheduler.trigger_manual("approve")
        await scheduler.replay()
        assert run.status == PipelineStatus.FAILED
        assert run.error_stage == "deploy"
        assert "approve" in run.error_message

    async def test_trigger_after_failed_run_rejected(self):
        scheduler = _scheduler(ScriptedRunner({"compile": 1}))
        await scheduler.execute(build_plan(make_definition(MANUAL), make_context()))
        assert not scheduler.playable
        assert not scheduler.trigger_manual("approve")

    async def test_pre_triggered_manual_job_runs(self, runner):
        ctx = make_context(manual_triggers=frozenset({"approve"}))
        run = await execute(make_definition(MANUAL), ctx, runner)
        assert runner.calls == ["compile", "approve", "announce"]
        assert run.jobs["approve"].state == JobState.SUCCEEDED

    async def test_manual_jobs_skipped_after_failure(self):
        runner = ScriptedRunner({"compile": 1})
        run = await execute(make_definition(MANUAL), make_context(), runner)
        assert run.jobs["approve"].state == JobState.SKIPPED


class TestManualExpiry:
    async def test_expiry_skips_by_default(self, runner):
        settings = _FastExpiry(manual_expiry="1s")
        run = await execute(make_definition(MANUAL), make_context(), runner, settings=settings)

        assert run.jobs["approve"].state == JobState.SKIPPED
        assert run.jobs["approve"].reason == "manual action expired"
        assert run.status == PipelineStatus.SUCCEEDED

    async def test_expiry_can_fail(self, runner):
        settings = _FastExpiry(manual_expiry="1s", manual_expiry_action="fail")
        run = await execute(make_definition(MANUAL), make_context(), runner, settings=settings)

        assert run.jobs["approve"].state == JobState.FAILED
        assert run.jobs["approve"].error_message == "manual action expired"
        assert run.status == PipelineStatus.FAILED
        assert run.error_stage == "deploy"

    async def test_expiry_releases_blocking_job(self, runner):
        definition = make_definition(MANUAL.replace("  when: manual", "  when: manual\n  blocking: true"))
        settings = _FastExpiry(manual_expiry="1s")
        run = await execute(definition, make_context(), runner, settings=settings)

        assert run.jobs["approve"].state == JobState.SKIPPED
        assert runner.calls == ["compile", "announce"]


# ── Tests: Cancellation ──────────────────────────────────────────────────────


class TestCancellation:
    async def test_cancel_running_pipeline(self):
        gate = asyncio.Event()
        runner = ScriptedRunner(gates={"unit": gate, "lint": gate})
        scheduler = _scheduler(runner)
        task = asyncio.create_task(scheduler.execute(build_plan(make_definition(THREE_STAGES), make_context())))

        await wait_until(lambda: runner.active == 2)
        assert scheduler.cancel()
        run = await task

        assert run.status == PipelineStatus.CANCELED
        assert run.cancel_requested
        assert run.jobs["compile"].state == JobState.SUCCEEDED
        assert run.jobs["unit"].state == JobState.CANCELED
        assert run.jobs["lint"].state == JobState.CANCELED
        assert run.jobs["ship"].state == JobState.CANCELED
        assert sorted(runner.cancelled) == ["lint", "unit"]
        assert "ship" not in runner.calls

    async def test_cancel_after_finish_rejected(self, runner):
        scheduler = _scheduler(runner)
        await scheduler.execute(build_plan(make_definition(THREE_STAGES), make_context()))
        assert not scheduler.cancel()

    async def test_runner_cancellation_marks_job_canceled(self):
        runner = ScriptedRunner(errors={"compile": CancellationError("aborted by runner")})
        run = await execute(make_definition(THREE_STAGES), make_context(), runner)

        assert run.jobs["compile"].state == JobState.CANCELED
        assert run.jobs["compile"].error_message == "aborted by runner"
        assert run.jobs["unit"].state == JobState.SKIPPED
        assert run.status == PipelineStatus.CANCELED
