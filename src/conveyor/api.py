"""Control API — REST endpoints for starting and steering pipeline runs.

Endpoints:
    - POST /pipelines/runs - Start a run for a ref
    - GET /pipelines/runs - Recent runs (active and persisted)
    - GET /pipelines/runs/{run_id} - One run, grouped by stage
    - POST /pipelines/runs/{run_id}/jobs/{job_name}/play - Play a manual job
    - POST /pipelines/runs/{run_id}/cancel - Cancel an active run
    - GET /pipelines/status - Registered pipelines and security status

Security:
    All endpoints respect CONVEYOR_API_KEY when configured.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from conveyor.api_security import get_security_config, require_api_key
from conveyor.pipeline.aggregator import summarize
from conveyor.pipeline.models import RunContext

if TYPE_CHECKING:
    from conveyor.pipeline.engine import PipelineEngine
    from conveyor.pipeline.registry import RunRegistry

logger = logging.getLogger("conveyor.api")

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

# Module-level references (configured at startup)
_engine: "PipelineEngine | None" = None
_registry: "RunRegistry | None" = None
_default_pipeline: str | None = None


def configure(
    engine: "PipelineEngine",
    registry: "RunRegistry | None" = None,
    *,
    default_pipeline: str | None = None,
) -> None:
    """Configure the router with the engine it controls."""
    global _engine, _registry, _default_pipeline
    _engine = engine
    _registry = registry
    _default_pipeline = default_pipeline
    logger.info("Pipelines router configured (registry=%s)", "yes" if registry else "no")


def _require_engine() -> "PipelineEngine":
    if _engine is None:
        raise HTTPException(status_code=503, detail="Pipeline engine not configured")
    return _engine


async def _find_run(engine: "PipelineEngine", run_id: str):
    """A run held by the engine, else one from the registry. 404 if neither has it."""
    run = engine.get_run(run_id)
    if run is None and _registry is not None:
        run = await _registry.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run


class StartRunRequest(BaseModel):
    ref: str
    is_tag: bool = False
    manual: list[str] = []
    pipeline: str | None = None
    variables: dict[str, str] = {}


# ── Runs ─────────────────────────────────────────────────────────────────────


@router.post("/runs", status_code=201)
async def start_run(body: StartRunRequest, _: bool = Depends(require_api_key)):
    engine = _require_engine()
    name = body.pipeline or _default_pipeline
    if name is None:
        raise HTTPException(status_code=400, detail="No pipeline given and no default configured")

    ctx = RunContext(
        ref=body.ref,
        is_tag=body.is_tag,
        manual_triggers=frozenset(body.manual),
        variables=body.variables,
    )
    run = await engine.start_pipeline(name, ctx)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Pipeline '{name}' not found")
    return summarize(run)


@router.get("/runs")
async def list_runs(
    limit: int = Query(20, ge=1, le=500),
    _: bool = Depends(require_api_key),
):
    engine = _require_engine()
    runs = {run.run_id: run for run in engine.list_runs()}
    if _registry is not None:
        for run in await _registry.list_runs(limit):
            runs.setdefault(run.run_id, run)

    ordered = sorted(
        runs.values(),
        key=lambda r: r.created_at.isoformat() if r.created_at else "",
        reverse=True,
    )
    return {"runs": [summarize(run) for run in ordered[:limit]]}


@router.get("/runs/{run_id}")
async def get_run(run_id: str, _: bool = Depends(require_api_key)):
    run = await _find_run(_require_engine(), run_id)
    return summarize(run)


@router.post("/runs/{run_id}/jobs/{job_name}/play")
async def play_job(run_id: str, job_name: str, _: bool = Depends(require_api_key)):
    engine = _require_engine()
    run = await _find_run(engine, run_id)
    if job_name not in run.jobs:
        raise HTTPException(status_code=404, detail=f"Job '{job_name}' not found in run {run_id}")
    if not engine.trigger_manual(run_id, job_name):
        state = run.jobs[job_name].state.value
        raise HTTPException(
            status_code=409, detail=f"Job '{job_name}' is not waiting for a trigger ({state})"
        )
    return {"run_id": run_id, "job": job_name, "triggered": True}


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, _: bool = Depends(require_api_key)):
    engine = _require_engine()
    await _find_run(engine, run_id)
    if not engine.cancel_pipeline(run_id):
        raise HTTPException(status_code=409, detail=f"Run {run_id} is not active")
    return {"run_id": run_id, "cancel_requested": True}


# ── Status ───────────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status(_: bool = Depends(require_api_key)):
    engine = _require_engine()
    return {
        "pipelines": engine.pipeline_names,
        "default_pipeline": _default_pipeline,
        "security": get_security_config(),
    }
