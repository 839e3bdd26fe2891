"""Engine settings model (loaded by conveyor.config.load_settings)."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from conveyor.pipeline.models import _parse_duration_seconds


class EngineSettings(BaseModel):
    """Tunables of the scheduler and its local collaborators."""

    # Unplayed manual jobs expire after this long (e.g. "2h"); None = never
    manual_expiry: str | None = None
    manual_expiry_action: Literal["skip", "fail"] = "skip"

    # Upper bound on concurrently running jobs; None = unbounded
    max_parallel: int | None = Field(None, ge=1)

    workspace: Path = Path(".")
    artifact_dir: Path = Path(".conveyor/artifacts")
    db_path: Path | None = None

    @field_validator("manual_expiry")
    @classmethod
    def _validate_expiry(cls, v: str | None) -> str | None:
        if v is not None:
            _parse_duration_seconds(v)
        return v

    def manual_expiry_seconds(self) -> int | None:
        if not self.manual_expiry:
            return None
        return _parse_duration_seconds(self.manual_expiry)
