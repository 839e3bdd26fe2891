"""Configuration loading for Conveyor.

Reads a GitLab-CI shaped pipeline document into a PipelineDefinition and the
optional engine settings file into EngineSettings.

Key exports:
    load_definition — pipeline YAML file → PipelineDefinition
    parse_definition — already-parsed mapping → PipelineDefinition
    load_settings — settings YAML + CONVEYOR_* env overrides → EngineSettings
    pipeline_name_for — pipeline name derived from a definition path
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from yaml.constructor import ConstructorError

from conveyor.pipeline.errors import ConfigError
from conveyor.pipeline.models import PipelineDefinition
from conveyor.pipeline.settings import EngineSettings

logger = logging.getLogger("conveyor.config")

# Top-level keys that are not jobs
RESERVED_KEYS = frozenset({"stages", "variables", "image", "before_script", "default"})

# Job keys copied verbatim into JobSpec
_JOB_FIELDS = (
    "stage",
    "image",
    "variables",
    "before_script",
    "script",
    "artifacts",
    "when",
    "tags",
    "allow_failure",
    "blocking",
    "timeout",
)

_SETTINGS_ENV = {
    "CONVEYOR_MANUAL_EXPIRY": "manual_expiry",
    "CONVEYOR_MANUAL_EXPIRY_ACTION": "manual_expiry_action",
    "CONVEYOR_MAX_PARALLEL": "max_parallel",
    "CONVEYOR_WORKSPACE": "workspace",
    "CONVEYOR_ARTIFACT_DIR": "artifact_dir",
    "CONVEYOR_DB_PATH": "db_path",
}


# ── Definition Loader ────────────────────────────────────────────────────────


def load_definition(path: Path) -> PipelineDefinition:
    """Load and validate a pipeline definition file.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or fails
            validation.
    """
    if not path.exists():
        raise ConfigError(f"Pipeline definition not found: {path}")
    raw = _read_yaml(path)
    definition = parse_definition(raw)
    logger.info(
        "Loaded pipeline definition %s: %d stages, %d jobs",
        path,
        len(definition.stages),
        len(definition.jobs),
    )
    return definition


def pipeline_name_for(path: Path) -> str:
    """Name a pipeline after its definition file (``.ci.yml`` → ``ci``)."""
    name = path.name
    for suffix in (".yml", ".yaml"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name.lstrip(".") or "pipeline"


def parse_definition(raw: Any) -> PipelineDefinition:
    """Build a PipelineDefinition from a parsed YAML document."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("Pipeline definition must be a mapping at the top level")

    defaults = raw.get("default") or {}
    if not isinstance(defaults, dict):
        raise ConfigError("'default' must be a mapping")
    inherited = {
        "image": defaults.get("image", raw.get("image")),
        "before_script": defaults.get("before_script", raw.get("before_script")),
        "tags": defaults.get("tags"),
    }

    jobs: dict[str, dict[str, Any]] = {}
    for key, body in raw.items():
        if key in RESERVED_KEYS or str(key).startswith("."):
            continue
        if not isinstance(body, dict):
            raise ConfigError(f"Job '{key}' must be a mapping, got {type(body).__name__}")
        jobs[str(key)] = _job_fields(str(key), body, inherited)

    fields: dict[str, Any] = {"jobs": jobs}
    if "stages" in raw:
        fields["stages"] = raw["stages"]
    if "variables" in raw:
        fields["variables"] = raw["variables"] or {}

    try:
        return PipelineDefinition(**fields)
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline definition:\n{_format_errors(exc)}") from exc


def _job_fields(name: str, body: dict[str, Any], inherited: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {"name": name}
    for key, value in inherited.items():
        if value is not None:
            fields[key] = value
    for key in _JOB_FIELDS:
        if key in body:
            fields[key] = body[key]

    for key in ("script", "before_script"):
        if isinstance(fields.get(key), str):
            fields[key] = [fields[key]]
    if fields.get("before_script") is None:
        fields.pop("before_script", None)

    fields["rule"] = {
        "only": _rule_patterns(name, "only", body.get("only")),
        "except": _rule_patterns(name, "except", body.get("except")),
    }
    return fields


def _rule_patterns(job: str, key: str, value: Any) -> list[str]:
    """Accept ``only: [..]``, ``only: pattern`` and ``only: {refs: [..]}``."""
    if value is None:
        return []
    if isinstance(value, dict):
        unknown = sorted(set(value) - {"refs"})
        if unknown:
            raise ConfigError(f"Job '{job}': '{key}' supports only 'refs', got {unknown}")
        value = value.get("refs", [])
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    raise ConfigError(f"Job '{job}': '{key}' must be a list of patterns")


# ── Settings Loader ──────────────────────────────────────────────────────────


def load_settings(path: Path | None = None) -> EngineSettings:
    """Load engine settings, then apply environment variable overrides.

    A missing ``path`` means defaults plus environment.
    """
    raw: dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Settings file not found: {path}")
        raw = _read_yaml(path) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Settings file {path} must contain a mapping")

    for env_name, field in _SETTINGS_ENV.items():
        value = os.environ.get(env_name)
        if value:
            raw[field] = value

    try:
        settings = EngineSettings(**raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid engine settings:\n{_format_errors(exc)}") from exc
    logger.debug("Engine settings: %s", settings.model_dump(mode="json"))
    return settings


# ── Helpers ──────────────────────────────────────────────────────────────────


_MERGE_TAG = "tag:yaml.org,2002:merge"


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys (e.g. a job defined twice)."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            # Merge keys (<<) may legitimately repeat inherited keys
            if not isinstance(key_node, yaml.ScalarNode) or key_node.tag == _MERGE_TAG:
                continue
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key '{key}'",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _read_yaml(path: Path) -> Any:
    try:
        with open(path) as f:
            return yaml.load(f, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc


def _format_errors(exc: ValidationError) -> str:
    lines = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        lines.append(f"  {loc}: {err['msg']}")
    return "\n".join(lines)
