"""Order resolver — turn a definition plus run context into an execution plan.

Stage order is the only ordering dependency: the plan is a sequence of stage
barriers, each holding its jobs in declaration order with an initial state.
"""

from __future__ import annotations

import logging

from conveyor.pipeline.models import (
    ExecutionPlan,
    JobState,
    PipelineDefinition,
    PlannedJob,
    RuleDecision,
    RunContext,
    StagePlan,
    WhenPolicy,
)
from conveyor.pipeline.rules import explain

logger = logging.getLogger("conveyor.pipeline.planner")


def build_plan(
    definition: PipelineDefinition,
    ctx: RunContext,
    *,
    pipeline_name: str = "pipeline",
) -> ExecutionPlan:
    """Evaluate every job's rule once and place it into its stage barrier."""
    stages: list[StagePlan] = []
    for index, stage_name in enumerate(definition.stages):
        planned: list[PlannedJob] = []
        for job in definition.jobs_for_stage(stage_name):
            verdict = explain(job.rule, ctx)
            if verdict.decision == RuleDecision.SKIP:
                planned.append(
                    PlannedJob(job=job, initial_state=JobState.SKIPPED, reason=verdict.reason)
                )
            elif job.when == WhenPolicy.MANUAL and job.name not in ctx.manual_triggers:
                planned.append(
                    PlannedJob(
                        job=job,
                        initial_state=JobState.MANUAL_WAIT,
                        reason="waiting for manual trigger",
                    )
                )
            else:
                planned.append(PlannedJob(job=job, initial_state=JobState.PENDING))
        stages.append(StagePlan(name=stage_name, index=index, jobs=planned))

    plan = ExecutionPlan(
        pipeline_name=pipeline_name,
        context=ctx,
        variables=dict(definition.variables),
        stages=stages,
    )
    counts = {state: 0 for state in (JobState.PENDING, JobState.MANUAL_WAIT, JobState.SKIPPED)}
    for _, job in plan.iter_jobs():
        counts[job.initial_state] += 1
    logger.info(
        "Planned pipeline '%s' for ref '%s' (tag=%s): %d pending, %d manual, %d skipped",
        pipeline_name,
        ctx.ref,
        ctx.is_tag,
        counts[JobState.PENDING],
        counts[JobState.MANUAL_WAIT],
        counts[JobState.SKIPPED],
    )
    return plan
