"""Conveyor Server — FastAPI application exposing the pipeline engine.

Startup sequence:
1. Load engine settings and the pipeline definition
2. Open the run registry database (when db_path is configured)
3. Build the engine with a local shell runner and blob store
4. Configure the /pipelines router

Shutdown:
1. Cancel active runs and wait for them to settle
2. Close database
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
from fastapi import FastAPI

from conveyor.api import configure as configure_api
from conveyor.api import router as pipelines_router
from conveyor.config import load_definition, load_settings, pipeline_name_for
from conveyor.pipeline import (
    EngineSettings,
    LocalBlobStore,
    PipelineEngine,
    RunRegistry,
    ShellRunner,
)

logger = logging.getLogger("conveyor.server")


class ConveyorServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, definition_path: Path, settings_path: Path | None = None):
        self.definition_path = definition_path
        self.settings_path = settings_path

        # Components (initialized in start())
        self.settings: EngineSettings | None = None
        self.engine: PipelineEngine | None = None
        self.db: aiosqlite.Connection | None = None
        self.registry: RunRegistry | None = None
        self.pipeline_name = pipeline_name_for(definition_path)

    async def start(self) -> None:
        self.settings = load_settings(self.settings_path)
        definition = load_definition(self.definition_path)

        if self.settings.db_path is not None:
            self.settings.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.db = await aiosqlite.connect(str(self.settings.db_path))
            self.db.row_factory = aiosqlite.Row
            self.registry = RunRegistry(self.db)
            await self.registry.initialize()

        self.engine = build_engine(self.settings, registry=self.registry)
        self.engine.add_pipeline(self.pipeline_name, definition)
        configure_api(self.engine, self.registry, default_pipeline=self.pipeline_name)
        logger.info(
            "Conveyor server started (pipeline '%s', registry=%s)",
            self.pipeline_name,
            "yes" if self.registry else "no",
        )

    async def stop(self) -> None:
        if self.engine is not None:
            active = [run.run_id for run in self.engine.list_runs() if not run.is_finished]
            self.engine.cancel_all()
            if active:
                logger.info("Waiting for %d active run(s) to cancel", len(active))
                await asyncio.gather(
                    *(self.engine.wait(run_id) for run_id in active), return_exceptions=True
                )
        if self.db is not None:
            await self.db.close()
            self.db = None
        logger.info("Conveyor server stopped")


def build_engine(settings: EngineSettings, *, registry: RunRegistry | None = None) -> PipelineEngine:
    """Engine wired to a shell runner and zip blob store under the workspace."""
    workspace = settings.workspace.resolve()
    artifact_root = settings.artifact_dir
    if not artifact_root.is_absolute():
        artifact_root = workspace / artifact_root
    return PipelineEngine(
        ShellRunner(workspace),
        LocalBlobStore(workspace, artifact_root),
        settings=settings,
        registry=registry,
    )


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(definition_path: Path, settings_path: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    server = ConveyorServer(definition_path, settings_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan — startup and shutdown."""
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="Conveyor",
        version="0.1.0",
        description="Stage-ordered CI pipeline execution engine",
        lifespan=lifespan,
    )
    app.state.server = server
    app.include_router(pipelines_router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        active = 0
        if server.engine:
            active = sum(1 for run in server.engine.list_runs() if not run.is_finished)
        return {
            "status": "ok",
            "pipeline": server.pipeline_name,
            "active_runs": active,
        }

    return app
