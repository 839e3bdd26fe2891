"""Run registry — SQLite persistence for finished pipeline runs.

Key exports:
    RunRegistry — save_run / get_run / list_runs / get_job_runs over
        the pipeline_runs and job_runs tables.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

import aiosqlite

from conveyor.pipeline.models import (
    ArtifactHandle,
    ExecutionPlan,
    JobRun,
    JobState,
    PipelineRun,
    PipelineStatus,
)

logger = logging.getLogger("conveyor.pipeline.registry")


class RunRegistry:
    """SQLite-backed history of pipeline runs.

    Takes an already-open aiosqlite connection with ``row_factory`` set to
    ``aiosqlite.Row``. Call `initialize()` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create the registry tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run registry tables initialized")

    # ── Pipeline Runs ────────────────────────────────────────────────────────

    async def save_run(self, run: PipelineRun) -> None:
        """Insert or replace a run together with all of its job runs."""
        await self._db.execute(
            """
            INSERT OR REPLACE INTO pipeline_runs (
                run_id, pipeline_name, ref, is_tag, plan_snapshot,
                status, cancel_requested,
                created_at, started_at, completed_at,
                error_message, error_stage
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.pipeline_name,
                run.context.ref,
                int(run.context.is_tag),
                run.plan.model_dump_json(by_alias=True),
                run.status.value,
                int(run.cancel_requested),
                _dt_to_str(run.created_at),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
                run.error_stage,
            ),
        )
        await self._db.execute("DELETE FROM job_runs WHERE run_id = ?", (run.run_id,))
        await self._db.executemany(
            """
            INSERT INTO job_runs (
                run_id, name, stage, stage_index, position, state,
                allow_failure, blocking, exit_code, error_message, reason,
                artifact, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    run.run_id,
                    job.name,
                    job.stage,
                    job.stage_index,
                    position,
                    job.state.value,
                    int(job.allow_failure),
                    int(job.blocking),
                    job.exit_code,
                    job.error_message,
                    job.reason,
                    job.artifact.model_dump_json() if job.artifact else None,
                    _dt_to_str(job.started_at),
                    _dt_to_str(job.completed_at),
                )
                for position, job in enumerate(run.jobs.values())
            ],
        )
        await self._db.commit()

    async def get_run(self, run_id: str) -> PipelineRun | None:
        """Fetch a run (with its job runs) by ID."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        jobs = await self.get_job_runs(run_id)
        return _row_to_pipeline_run(row, jobs)

    async def list_runs(self, limit: int = 20) -> list[PipelineRun]:
        """Most recent runs first."""
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        rows = await cursor.fetchall()
        runs = []
        for row in rows:
            jobs = await self.get_job_runs(row["run_id"])
            runs.append(_row_to_pipeline_run(row, jobs))
        return runs

    # ── Job Runs ─────────────────────────────────────────────────────────────

    async def get_job_runs(self, run_id: str) -> list[JobRun]:
        """Job runs of a pipeline run, in plan order."""
        cursor = await self._db.execute(
            "SELECT * FROM job_runs WHERE run_id = ? ORDER BY position", (run_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_job_run(r) for r in rows]


# ── Schema ──────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    pipeline_name TEXT NOT NULL,
    ref TEXT NOT NULL,
    is_tag INTEGER DEFAULT 0,
    plan_snapshot TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    cancel_requested INTEGER DEFAULT 0,

    created_at TEXT,
    started_at TEXT,
    completed_at TEXT,

    error_message TEXT,
    error_stage TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_created
    ON pipeline_runs(created_at);

CREATE TABLE IF NOT EXISTS job_runs (
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    stage TEXT NOT NULL,
    stage_index INTEGER NOT NULL,
    position INTEGER NOT NULL,
    state TEXT NOT NULL,
    allow_failure INTEGER DEFAULT 0,
    blocking INTEGER DEFAULT 0,
    exit_code INTEGER,
    error_message TEXT,
    reason TEXT DEFAULT '',
    artifact TEXT,

    started_at TEXT,
    completed_at TEXT,
    PRIMARY KEY(run_id, name)
);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_pipeline_run(row: aiosqlite.Row, jobs: list[JobRun]) -> PipelineRun:
    """Convert a database row plus its job runs to a PipelineRun model."""
    plan = ExecutionPlan.model_validate_json(row["plan_snapshot"])
    return PipelineRun(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        context=plan.context,
        plan=plan,
        jobs={job.name: job for job in jobs},
        status=PipelineStatus(row["status"]),
        cancel_requested=bool(row["cancel_requested"]),
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        error_message=row["error_message"],
        error_stage=row["error_stage"],
    )


def _row_to_job_run(row: aiosqlite.Row) -> JobRun:
    """Convert a database row to a JobRun model."""
    artifact = row["artifact"]
    return JobRun(
        name=row["name"],
        stage=row["stage"],
        stage_index=row["stage_index"],
        state=JobState(row["state"]),
        allow_failure=bool(row["allow_failure"]),
        blocking=bool(row["blocking"]),
        exit_code=row["exit_code"],
        error_message=row["error_message"],
        reason=row["reason"] or "",
        artifact=ArtifactHandle.model_validate_json(artifact) if artifact else None,
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )
