"""Job variable resolution and ``$NAME`` expansion."""

from __future__ import annotations

import re

from conveyor.pipeline.models import JobSpec, RunContext

_VARIABLE_REF = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


def predefined_variables(job: JobSpec, ctx: RunContext) -> dict[str, str]:
    """CI_* variables every job sees."""
    variables = {
        "CI": "true",
        "CI_PIPELINE_ID": ctx.pipeline_id,
        "CI_COMMIT_REF_NAME": ctx.ref,
        "CI_JOB_NAME": job.name,
        "CI_JOB_STAGE": job.stage,
    }
    if ctx.is_tag:
        variables["CI_COMMIT_TAG"] = ctx.ref
    else:
        variables["CI_COMMIT_BRANCH"] = ctx.ref
    if job.image:
        variables["CI_JOB_IMAGE"] = job.image
    return variables


def expand(value: str, variables: dict[str, str]) -> str:
    """Expand ``$NAME``/``${NAME}``; unknown names become empty."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        return variables.get(name, "")

    return _VARIABLE_REF.sub(_sub, value)


def resolve_variables(
    pipeline_variables: dict[str, str],
    job: JobSpec,
    ctx: RunContext,
) -> dict[str, str]:
    """Merge variable scopes (job overrides pipeline overrides context overrides CI_*).

    Each scope is expanded against the scopes below it plus its own earlier
    entries, so ``FLAGS: "$FLAGS -g"`` extends the lower-precedence FLAGS.
    """
    merged = predefined_variables(job, ctx)
    for scope in (ctx.variables, pipeline_variables, job.variables):
        lower = dict(merged)
        for name, value in scope.items():
            # A self-reference sees the value from the scopes below
            visible = {**merged, name: lower.get(name, "")}
            merged[name] = expand(value, visible)
    return merged


def resolve_image(job: JobSpec, variables: dict[str, str]) -> str | None:
    if not job.image:
        return None
    return expand(job.image, variables)
