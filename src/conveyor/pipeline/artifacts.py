"""Artifact tracking — which job produced which paths, and who may see them.

Key exports:
    ArtifactTracker — write-once job → handle map with stage-scoped visibility
    LocalBlobStore — zips matched workspace files into an artifact directory
    MemoryBlobStore — in-process store for tests and dry runs
"""

from __future__ import annotations

import asyncio
import logging
import zipfile
from pathlib import Path

from conveyor.pipeline.errors import ArtifactError, ArtifactNotFoundError
from conveyor.pipeline.interfaces import BlobStore
from conveyor.pipeline.models import ArtifactHandle

logger = logging.getLogger("conveyor.pipeline.artifacts")


class ArtifactTracker:
    """Records published artifacts for the lifetime of one pipeline run.

    A job's artifacts are visible to every job in a strictly later stage;
    jobs in the publisher's own stage never see them. Each job name can be
    published at most once.
    """

    def __init__(self, store: BlobStore, *, namespace: str = ""):
        self._store = store
        self._namespace = namespace
        self._handles: dict[str, ArtifactHandle] = {}

    async def publish(self, job_name: str, paths: list[str], *, stage_index: int) -> ArtifactHandle:
        """Store a job's declared paths. Raises ArtifactError on failure."""
        if job_name in self._handles:
            raise ArtifactError(f"Artifacts for job '{job_name}' were already published")

        key = f"{self._namespace}/{job_name}" if self._namespace else job_name
        location = await self._store.put(key, list(paths))
        handle = ArtifactHandle(
            job_name=job_name,
            key=key,
            location=location,
            stage_index=stage_index,
            paths=list(paths),
        )
        self._handles[job_name] = handle
        logger.info("Published artifacts for job '%s' at %s", job_name, location)
        return handle

    def resolve(self, job_name: str, *, requester_stage: int) -> ArtifactHandle:
        """Look up a job's artifacts on behalf of a job in ``requester_stage``."""
        handle = self._handles.get(job_name)
        if handle is None or handle.stage_index >= requester_stage:
            raise ArtifactNotFoundError(job_name)
        return handle

    def inputs_for(self, stage_index: int) -> dict[str, ArtifactHandle]:
        """Every artifact visible to jobs of the given stage."""
        return {
            name: handle
            for name, handle in self._handles.items()
            if handle.stage_index < stage_index
        }

    async def fetch(self, handle: ArtifactHandle) -> bytes:
        return await self._store.get(handle.location)

    def __len__(self) -> int:
        return len(self._handles)


class LocalBlobStore:
    """Zip archives on local disk, one per published key.

    Each path is a glob relative to ``workspace``; a matched directory is
    archived recursively. A pattern matching nothing is an ArtifactError.
    """

    def __init__(self, workspace: Path, root: Path):
        self._workspace = workspace
        self._root = root

    async def put(self, key: str, paths: list[str]) -> str:
        return await asyncio.to_thread(self._put_sync, key, paths)

    async def get(self, location: str) -> bytes:
        path = Path(location)
        if not path.is_file():
            raise ArtifactNotFoundError(location)
        return await asyncio.to_thread(path.read_bytes)

    def _put_sync(self, key: str, paths: list[str]) -> str:
        files: list[Path] = []
        for pattern in paths:
            matches = sorted(self._workspace.glob(pattern))
            if not matches:
                raise ArtifactError(f"Artifact path '{pattern}' matched no files")
            for match in matches:
                if match.is_dir():
                    files.extend(p for p in sorted(match.rglob("*")) if p.is_file())
                else:
                    files.append(match)

        archive = self._root / f"{key}.zip"
        archive.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for file in dict.fromkeys(files):
                zf.write(file, arcname=file.relative_to(self._workspace).as_posix())
        return str(archive)


class MemoryBlobStore:
    """In-memory store. When ``available`` is given, other paths count as missing."""

    def __init__(self, available: set[str] | None = None):
        self._available = available
        self._blobs: dict[str, bytes] = {}

    async def put(self, key: str, paths: list[str]) -> str:
        if self._available is not None:
            missing = [p for p in paths if p not in self._available]
            if missing:
                raise ArtifactError(f"Artifact path '{missing[0]}' matched no files")
        location = f"memory://{key}"
        self._blobs[location] = "\n".join(paths).encode()
        return location

    async def get(self, location: str) -> bytes:
        try:
            return self._blobs[location]
        except KeyError:
            raise ArtifactNotFoundError(location) from None
