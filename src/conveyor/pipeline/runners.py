"""Job runners — execute job scripts for the scheduler.

Key exports:
    ShellRunner — runs before_script + script in a local shell
    RunnerPool — routes jobs to runners by tag
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

from conveyor.pipeline.errors import JobFailure
from conveyor.pipeline.interfaces import JobRunner
from conveyor.pipeline.models import ArtifactHandle, JobResult, JobSpec

logger = logging.getLogger("conveyor.pipeline.runners")

# Seconds a terminated script gets before it is killed
_TERMINATE_GRACE = 10.0


class ShellRunner:
    """Run a job's commands as one ``sh`` script inside a local workspace.

    The job image is not provisioned; jobs run directly on the host. Artifact
    inputs are exposed as JSON in ``CONVEYOR_ARTIFACT_INPUTS``.
    """

    def __init__(self, workspace: Path, *, inherit_env: bool = True):
        self._workspace = workspace
        self._inherit_env = inherit_env

    async def submit(
        self,
        job: JobSpec,
        variables: dict[str, str],
        artifact_inputs: dict[str, ArtifactHandle],
    ) -> JobResult:
        if job.image:
            logger.debug("Job '%s': image '%s' ignored by local shell runner", job.name, job.image)

        env = dict(os.environ) if self._inherit_env else {}
        env.update(variables)
        env["CONVEYOR_ARTIFACT_INPUTS"] = json.dumps(
            {name: handle.location for name, handle in artifact_inputs.items()}
        )
        script = "\n".join(["set -e", *job.before_script, *job.script])

        proc = await asyncio.create_subprocess_shell(
            script,
            cwd=str(self._workspace),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await proc.communicate()
        except asyncio.CancelledError:
            await _terminate(proc)
            raise

        output = stdout.decode(errors="replace")
        for line in output.splitlines():
            logger.debug("[%s] %s", job.name, line)
        return JobResult(exit_code=proc.returncode or 0, output=output)


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()


class RunnerPool:
    """Route each job to the first runner whose tags cover the job's tags."""

    def __init__(self) -> None:
        self._runners: list[tuple[frozenset[str], JobRunner]] = []

    def add(self, runner: JobRunner, tags: set[str] | None = None) -> None:
        self._runners.append((frozenset(tags or ()), runner))

    def select(self, job: JobSpec) -> JobRunner | None:
        for tags, runner in self._runners:
            if job.tags <= tags:
                return runner
        return None

    async def submit(
        self,
        job: JobSpec,
        variables: dict[str, str],
        artifact_inputs: dict[str, ArtifactHandle],
    ) -> JobResult:
        runner = self.select(job)
        if runner is None:
            raise JobFailure(f"No runner available for tags {sorted(job.tags)}")
        return await runner.submit(job, variables, artifact_inputs)
