"""Tests for the local shell runner and the tag-routing runner pool."""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import ScriptedRunner

from conveyor.pipeline.errors import JobFailure
from conveyor.pipeline.models import ArtifactHandle, JobSpec
from conveyor.pipeline.runners import RunnerPool, ShellRunner


def _job(*script: str, **kwargs) -> JobSpec:
    return JobSpec(name=kwargs.pop("name", "job"), script=list(script), **kwargs)


# ── Tests: ShellRunner ───────────────────────────────────────────────────────


class TestShellRunner:
    async def test_success_captures_output(self, tmp_path):
        result = await ShellRunner(tmp_path).submit(_job("echo hello"), {}, {})
        assert result.exit_code == 0
        assert result.output.strip() == "hello"

    async def test_non_zero_exit(self, tmp_path):
        result = await ShellRunner(tmp_path).submit(_job("exit 4"), {}, {})
        assert result.exit_code == 4

    async def test_stops_at_first_failing_command(self, tmp_path):
        job = _job("false", "echo unreachable")
        result = await ShellRunner(tmp_path).submit(job, {}, {})
        assert result.exit_code != 0
        assert "unreachable" not in result.output

    async def test_before_script_runs_first(self, tmp_path):
        job = _job("cat marker", before_script=["echo prepared > marker"])
        result = await ShellRunner(tmp_path).submit(job, {}, {})
        assert result.output.strip() == "prepared"

    async def test_runs_in_workspace(self, tmp_path):
        await ShellRunner(tmp_path).submit(_job("touch created.txt"), {}, {})
        assert (tmp_path / "created.txt").exists()

    async def test_variables_exported(self, tmp_path):
        runner = ShellRunner(tmp_path, inherit_env=False)
        result = await runner.submit(_job('echo "$GREETING"'), {"GREETING": "hi there"}, {})
        assert result.output.strip() == "hi there"

    async def test_artifact_inputs_exported(self, tmp_path):
        handle = ArtifactHandle(
            job_name="build", key="r/build", location="/tmp/r/build.zip", stage_index=0
        )
        result = await ShellRunner(tmp_path).submit(
            _job('printf "%s" "$CONVEYOR_ARTIFACT_INPUTS"'), {}, {"build": handle}
        )
        assert json.loads(result.output) == {"build": "/tmp/r/build.zip"}

    async def test_cancel_terminates_process(self, tmp_path):
        runner = ShellRunner(tmp_path)
        task = asyncio.create_task(runner.submit(_job("sleep 30"), {}, {}))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=5)


# ── Tests: RunnerPool ────────────────────────────────────────────────────────


class TestRunnerPool:
    async def test_routes_by_tags(self):
        default, docker = ScriptedRunner(), ScriptedRunner()
        pool = RunnerPool()
        pool.add(default)
        pool.add(docker, {"docker", "linux"})

        await pool.submit(_job("make", name="plain"), {}, {})
        await pool.submit(_job("make", name="tagged", tags={"docker"}), {}, {})

        assert default.calls == ["plain"]
        assert docker.calls == ["tagged"]

    async def test_first_matching_runner_wins(self):
        first, second = ScriptedRunner(), ScriptedRunner()
        pool = RunnerPool()
        pool.add(first, {"docker"})
        pool.add(second, {"docker"})
        assert pool.select(_job("make", tags={"docker"})) is first

    async def test_no_runner_for_tags(self):
        pool = RunnerPool()
        pool.add(ScriptedRunner(), {"linux"})
        with pytest.raises(JobFailure, match="gpu"):
            await pool.submit(_job("train", tags={"gpu"}), {}, {})
