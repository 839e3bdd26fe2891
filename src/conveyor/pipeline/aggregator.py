"""Run aggregator — fold job states into stage and pipeline status."""

from __future__ import annotations

from typing import Any

from conveyor.pipeline.models import (
    JobRun,
    JobState,
    PipelineRun,
    PipelineStatus,
    StageStatus,
)

_FINAL_PIPELINE_STATES = (PipelineStatus.FAILED, PipelineStatus.CANCELED)
_STARTED_JOB_STATES = (JobState.RUNNING, JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED)


def is_disallowed_failure(job: JobRun) -> bool:
    return job.state == JobState.FAILED and not job.allow_failure


def stage_settled(jobs: list[JobRun]) -> bool:
    """All jobs that hold the barrier have reached a terminal state.

    Non-blocking manual jobs never hold the barrier.
    """
    return all(
        job.is_terminal or (job.state == JobState.MANUAL_WAIT and not job.blocking)
        for job in jobs
    )


def stage_status(run: PipelineRun, index: int) -> StageStatus:
    jobs = run.jobs_in_stage(index)
    if any(is_disallowed_failure(job) for job in jobs):
        return StageStatus.FAILED
    if not stage_settled(jobs):
        started = any(job.started_at or job.state in _STARTED_JOB_STATES for job in jobs)
        return StageStatus.RUNNING if started else StageStatus.PENDING
    if all(job.state in (JobState.SKIPPED, JobState.MANUAL_WAIT) for job in jobs):
        return StageStatus.SKIPPED
    if any(job.state == JobState.CANCELED for job in jobs):
        return StageStatus.CANCELED
    return StageStatus.SUCCEEDED


def status(run: PipelineRun) -> PipelineStatus:
    """Current pipeline status. FAILED and CANCELED are sticky."""
    if run.status in _FINAL_PIPELINE_STATES:
        return run.status

    stage_statuses = [stage_status(run, stage.index) for stage in run.plan.stages]
    if any(s == StageStatus.FAILED for s in stage_statuses):
        return PipelineStatus.FAILED
    if run.cancel_requested or any(s == StageStatus.CANCELED for s in stage_statuses):
        return PipelineStatus.CANCELED
    if any(s in (StageStatus.PENDING, StageStatus.RUNNING) for s in stage_statuses):
        return PipelineStatus.RUNNING
    return PipelineStatus.SUCCEEDED


def update(run: PipelineRun) -> PipelineStatus:
    """Recompute and store the run's status."""
    run.status = status(run)
    return run.status


def summarize(run: PipelineRun) -> dict[str, Any]:
    """JSON-ready view of a run grouped by stage."""
    stages = []
    for stage in run.plan.stages:
        stages.append(
            {
                "name": stage.name,
                "status": stage_status(run, stage.index).value,
                "jobs": [
                    {
                        "name": job.name,
                        "state": job.state.value,
                        "allow_failure": job.allow_failure,
                        "exit_code": job.exit_code,
                        "error_message": job.error_message,
                        "reason": job.reason,
                        "artifact": job.artifact.location if job.artifact else None,
                        "duration_seconds": job.duration_seconds,
                    }
                    for job in run.jobs_in_stage(stage.index)
                ],
            }
        )
    return {
        "run_id": run.run_id,
        "pipeline_name": run.pipeline_name,
        "ref": run.context.ref,
        "is_tag": run.context.is_tag,
        "status": run.status.value,
        "error_message": run.error_message,
        "error_stage": run.error_stage,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "stages": stages,
    }
