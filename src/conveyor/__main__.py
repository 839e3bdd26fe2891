"""Conveyor CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import aiosqlite

from conveyor.config import load_definition, load_settings, pipeline_name_for
from conveyor.pipeline import (
    ConfigError,
    EngineSettings,
    GitRefProvider,
    JobState,
    PipelineRun,
    PipelineStatus,
    Ref,
    RunContext,
    RunRegistry,
    build_plan,
    stage_status,
    summarize,
)

logger = logging.getLogger("conveyor.cli")

DEFAULT_DEFINITION = Path(".conveyor-ci.yml")

EXIT_CONFIG_ERROR = 3
EXIT_CODES = {
    PipelineStatus.SUCCEEDED: 0,
    PipelineStatus.FAILED: 1,
    PipelineStatus.CANCELED: 2,
}


# ── Commands ─────────────────────────────────────────────────────────────────


def _cmd_validate(args: argparse.Namespace) -> int:
    definition = load_definition(args.file)
    print(
        f"{args.file}: OK ({len(definition.stages)} stages, {len(definition.jobs)} jobs)"
    )
    for stage in definition.stages:
        names = [job.name for job in definition.jobs_for_stage(stage)]
        print(f"  {stage}: {', '.join(names) if names else '-'}")
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    definition = load_definition(args.file)
    ref = asyncio.run(_resolve_ref(args))
    ctx = RunContext.from_ref(ref, manual_triggers=frozenset(args.manual or ()))
    plan = build_plan(definition, ctx, pipeline_name=pipeline_name_for(args.file))

    if args.json:
        print(plan.model_dump_json(by_alias=True, indent=2))
        return 0

    kind = "tag" if ref.is_tag else "branch"
    print(f"Plan for {kind} '{ref.name}':")
    for stage in plan.stages:
        print(f"  [{stage.index}] {stage.name}")
        for planned in stage.jobs:
            reason = f"  ({planned.reason})" if planned.reason else ""
            print(f"      {planned.job.name:<24} {planned.initial_state.value}{reason}")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    run = asyncio.run(_run_pipeline(args))
    _print_run(run)
    return EXIT_CODES.get(run.status, 1)


def _cmd_runs(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    if settings.db_path is None:
        raise ConfigError("No run database configured (use --db or CONVEYOR_DB_PATH)")
    return asyncio.run(_show_runs(settings.db_path, args.run_id, args.limit))


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from conveyor.server import create_app

    # Fail early on an invalid definition instead of inside the lifespan
    load_definition(args.file)
    app = create_app(args.file, args.settings)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


# ── Helpers ──────────────────────────────────────────────────────────────────


def _settings_from_args(args: argparse.Namespace) -> EngineSettings:
    settings = load_settings(getattr(args, "settings", None))
    if getattr(args, "db", None) is not None:
        settings = settings.model_copy(update={"db_path": args.db})
    return settings


async def _resolve_ref(args: argparse.Namespace, workspace: Path | None = None) -> Ref:
    if args.tag:
        return Ref(name=args.tag, is_tag=True)
    if args.ref:
        return Ref(name=args.ref)
    return await GitRefProvider(workspace or Path.cwd()).current_ref()


async def _run_pipeline(args: argparse.Namespace) -> PipelineRun:
    from conveyor.server import build_engine

    settings = _settings_from_args(args)
    definition = load_definition(args.file)
    ref = await _resolve_ref(args, settings.workspace)
    ctx = RunContext.from_ref(ref, manual_triggers=frozenset(args.manual or ()))

    db: aiosqlite.Connection | None = None
    registry: RunRegistry | None = None
    if settings.db_path is not None:
        settings.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(settings.db_path))
        db.row_factory = aiosqlite.Row
        registry = RunRegistry(db)
        await registry.initialize()

    try:
        engine = build_engine(settings, registry=registry)
        name = pipeline_name_for(args.file)
        engine.add_pipeline(name, definition)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, engine.cancel_all)
            except NotImplementedError:
                logger.debug("Signal handlers not supported on this platform")
                break
        return await engine.run_pipeline(name, ctx)
    finally:
        if db is not None:
            await db.close()


async def _show_runs(db_path: Path, run_id: str | None, limit: int) -> int:
    if not db_path.exists():
        print(f"No run database at {db_path}", file=sys.stderr)
        return 1
    async with aiosqlite.connect(str(db_path)) as db:
        db.row_factory = aiosqlite.Row
        registry = RunRegistry(db)
        await registry.initialize()

        if run_id:
            run = await registry.get_run(run_id)
            if run is None:
                print(f"Run {run_id} not found", file=sys.stderr)
                return 1
            print(json.dumps(summarize(run), indent=2))
            return 0

        runs = await registry.list_runs(limit)
    if not runs:
        print("No runs recorded.")
        return 0
    print(f"{'RUN':<18} {'PIPELINE':<16} {'REF':<24} {'STATUS':<10} CREATED")
    for run in runs:
        created = run.created_at.strftime("%Y-%m-%d %H:%M:%S") if run.created_at else "-"
        print(
            f"{run.run_id:<18} {run.pipeline_name:<16} {run.context.ref:<24} "
            f"{run.status.value:<10} {created}"
        )
    return 0


def _print_run(run: PipelineRun) -> None:
    print(f"Pipeline '{run.pipeline_name}' run {run.run_id}: {run.status.value}")
    for stage in run.plan.stages:
        print(f"  {stage.name}: {stage_status(run, stage.index).value}")
        for job in run.jobs_in_stage(stage.index):
            detail = job.error_message or job.reason
            suffix = f"  ({detail})" if detail else ""
            flag = " [allowed to fail]" if job.allow_failure and job.state == JobState.FAILED else ""
            print(f"      {job.name:<24} {job.state.value}{flag}{suffix}")
    if run.error_message:
        print(f"  error: {run.error_message}")


# ── Argument Parsing ─────────────────────────────────────────────────────────


def _add_file_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--file",
        "-f",
        type=Path,
        default=DEFAULT_DEFINITION,
        help=f"Pipeline definition file (default: {DEFAULT_DEFINITION})",
    )


def _add_ref_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--ref", help="Branch to run for (default: detected from git)")
    group.add_argument("--tag", help="Tag to run for")
    parser.add_argument(
        "--manual",
        action="append",
        metavar="JOB",
        help="Pre-trigger a manual job (repeatable)",
    )


def _add_log_level_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conveyor",
        description="Conveyor — stage-ordered CI pipeline runner",
    )
    subparsers = parser.add_subparsers(dest="command")

    # conveyor validate
    validate_parser = subparsers.add_parser("validate", help="Validate a pipeline definition")
    _add_file_arg(validate_parser)
    _add_log_level_arg(validate_parser)

    # conveyor plan
    plan_parser = subparsers.add_parser("plan", help="Show which jobs would run for a ref")
    _add_file_arg(plan_parser)
    _add_ref_args(plan_parser)
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")
    _add_log_level_arg(plan_parser)

    # conveyor run
    run_parser = subparsers.add_parser("run", help="Execute a pipeline locally")
    _add_file_arg(run_parser)
    _add_ref_args(run_parser)
    run_parser.add_argument("--settings", type=Path, help="Engine settings YAML file")
    run_parser.add_argument("--db", type=Path, help="SQLite file to record the run in")
    _add_log_level_arg(run_parser)

    # conveyor runs
    runs_parser = subparsers.add_parser("runs", help="List recorded pipeline runs")
    runs_parser.add_argument("run_id", nargs="?", help="Show a single run in detail")
    runs_parser.add_argument("--settings", type=Path, help="Engine settings YAML file")
    runs_parser.add_argument("--db", type=Path, help="SQLite run database")
    runs_parser.add_argument("--limit", type=int, default=20, help="Maximum runs to list")
    _add_log_level_arg(runs_parser)

    # conveyor serve
    serve_parser = subparsers.add_parser("serve", help="Start the pipeline control API")
    _add_file_arg(serve_parser)
    serve_parser.add_argument("--settings", type=Path, help="Engine settings YAML file")
    serve_parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    _add_log_level_arg(serve_parser)

    return parser


_COMMANDS = {
    "validate": _cmd_validate,
    "plan": _cmd_plan,
    "run": _cmd_run,
    "runs": _cmd_runs,
    "serve": _cmd_serve,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        code = _COMMANDS[args.command](args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)
    sys.exit(code)


if __name__ == "__main__":
    main()
