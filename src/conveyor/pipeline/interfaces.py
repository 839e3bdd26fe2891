"""Collaborator protocols consumed by the engine.

Script execution, source-control lookups and blob storage live outside the
engine; these are the narrow seams it talks to.
"""

from __future__ import annotations

from typing import Protocol

from conveyor.pipeline.models import ArtifactHandle, JobResult, JobSpec, Ref


class JobRunner(Protocol):
    """Executes one job and reports its exit indication.

    Cancellation is cooperative: the engine cancels the awaiting task and the
    runner is expected to stop its work as soon as possible.
    """

    async def submit(
        self,
        job: JobSpec,
        variables: dict[str, str],
        artifact_inputs: dict[str, ArtifactHandle],
    ) -> JobResult:
        ...


class RefProvider(Protocol):
    """Reports the ref a pipeline should run for."""

    async def current_ref(self) -> Ref:
        ...


class BlobStore(Protocol):
    """Stores artifact file sets. ``put`` raises ArtifactError on missing paths."""

    async def put(self, key: str, paths: list[str]) -> str:
        """Store the files matched by ``paths``. Returns a location handle."""
        ...

    async def get(self, location: str) -> bytes:
        ...
