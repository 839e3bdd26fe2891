"""Error taxonomy for the pipeline engine.

Only ConfigError escapes a pipeline execution. Every other error is scoped to
a job (or stage) and recorded on the PipelineRun instead of being raised to
the caller.
"""

from __future__ import annotations


class ConveyorError(Exception):
    """Base class for all engine errors."""


class ConfigError(ConveyorError):
    """The pipeline definition (or engine settings) is malformed.

    Fatal: raised before any job is planned or submitted.
    """


class RuleEvaluationError(ConveyorError):
    """An only/except pattern could not be evaluated (e.g. invalid regex).

    The rule evaluator treats the job as skipped and surfaces a warning.
    """

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Invalid activation pattern '{pattern}': {reason}")


class JobFailure(ConveyorError):
    """A job finished unsuccessfully (non-zero exit, timeout, runner crash)."""

    def __init__(self, message: str, *, exit_code: int | None = None):
        self.exit_code = exit_code
        super().__init__(message)


class ArtifactError(JobFailure):
    """Artifact publication failed; demoted to a failure of the owning job."""


class ArtifactNotFoundError(ConveyorError):
    """No artifact visible to the requester under the given job name."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"No artifacts available from job '{job_name}'")


class CancellationError(ConveyorError):
    """A job was stopped by fail-fast or an external abort."""
