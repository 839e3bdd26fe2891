"""Ref providers — where a pipeline's branch/tag context comes from."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from conveyor.pipeline.errors import ConfigError
from conveyor.pipeline.models import Ref

logger = logging.getLogger("conveyor.pipeline.refs")


class StaticRefProvider:
    def __init__(self, name: str, *, is_tag: bool = False):
        self._ref = Ref(name=name, is_tag=is_tag)

    async def current_ref(self) -> Ref:
        return self._ref


class EnvRefProvider:
    """Read the ref from CI_COMMIT_TAG / CI_COMMIT_REF_NAME / CI_COMMIT_BRANCH."""

    def __init__(self, environ: dict[str, str] | None = None):
        self._environ = os.environ if environ is None else environ

    async def current_ref(self) -> Ref:
        tag = self._environ.get("CI_COMMIT_TAG", "").strip()
        if tag:
            return Ref(name=tag, is_tag=True)
        for var in ("CI_COMMIT_REF_NAME", "CI_COMMIT_BRANCH"):
            name = self._environ.get(var, "").strip()
            if name:
                return Ref(name=name)
        raise ConfigError("No ref found in CI_COMMIT_TAG, CI_COMMIT_REF_NAME or CI_COMMIT_BRANCH")


class GitRefProvider:
    """Ask git for the checked-out branch, or the tag pointing at HEAD."""

    def __init__(self, repo_root: Path, git_exe: str = "git"):
        self._repo_root = repo_root
        self._git = git_exe

    async def current_ref(self) -> Ref:
        rc, out, _ = await self._git_cmd("symbolic-ref", "--quiet", "--short", "HEAD")
        if rc == 0 and out:
            return Ref(name=out)

        rc, out, _ = await self._git_cmd("describe", "--tags", "--exact-match", "HEAD")
        if rc == 0 and out:
            return Ref(name=out, is_tag=True)

        rc, out, err = await self._git_cmd("rev-parse", "--short", "HEAD")
        if rc != 0:
            raise ConfigError(f"Cannot determine git ref in {self._repo_root}: {err.strip()}")
        logger.warning("Detached HEAD without a tag; using commit %s as ref", out)
        return Ref(name=out)

    async def _git_cmd(self, *args: str) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._git,
                *args,
                cwd=str(self._repo_root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ConfigError(f"git executable not found: {self._git}") from exc
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=30)
        return (
            proc.returncode or 0,
            stdout.decode(errors="replace").strip(),
            stderr.decode(errors="replace"),
        )
