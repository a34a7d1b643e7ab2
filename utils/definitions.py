"""
Pipeline definition loader.

Pipelines are JSON documents:

    {
      "name": "web",
      "secret_scope": "web",
      "stages": [
        {"id": "backend", "kind": "build-and-push", "needs": [],
         "secrets": ["registry_password"], "params": {...}},
        ...
      ]
    }

Documents are validated with pydantic, then turned into frozen
StageDefinition / PipelineDefinition objects. Anything wrong (cycle,
duplicate id, unknown need, undeclared secret, missing param) raises a
DefinitionError so the pipeline never runs.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

import config
from models.errors import DefinitionError
from models.schemas import PipelineDefinition, SecretReference, StageDefinition, StageKind
from utils.dag import StageGraph

log = logging.getLogger(__name__)

REQUIRED_PARAMS: dict[StageKind, tuple[str, ...]] = {
    StageKind.BUILD_AND_PUSH: ("repository",),
    StageKind.REMOTE_DEPLOY: ("host", "image", "container_name"),
    StageKind.ARTIFACT_SYNC: ("local_path", "bucket"),
    StageKind.CACHE_INVALIDATE: ("distribution_id",),
}

# Params whose values name secrets: "<x>_secret" strings and these mappings
SECRET_MAPPING_PARAMS = ("env_secrets", "credentials")


class SecretRefDocument(BaseModel):
    name: str
    scope: str | None = None


class StageDocument(BaseModel):
    id: str = Field(min_length=1)
    kind: StageKind
    needs: list[str] = Field(default_factory=list)
    secrets: list[SecretRefDocument | str] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int | None = Field(default=None, ge=1)


class PipelineDocument(BaseModel):
    name: str = Field(min_length=1)
    secret_scope: str | None = None
    stages: list[StageDocument]

    @field_validator("stages")
    @classmethod
    def _not_empty(cls, v: list[StageDocument]) -> list[StageDocument]:
        if not v:
            raise ValueError("a pipeline needs at least one stage")
        return v


def parse_pipeline(data: dict) -> PipelineDefinition:
    """Validate a pipeline document and build its definition."""
    try:
        doc = PipelineDocument.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(f"Invalid pipeline definition: {e}") from e

    scope = doc.secret_scope or doc.name
    stages = tuple(_build_stage(s, scope) for s in doc.stages)
    build_graph(stages)
    for stage in stages:
        _check_params(stage)
    return PipelineDefinition(name=doc.name, stages=stages, secret_scope=scope)


def build_graph(stages: tuple[StageDefinition, ...]) -> StageGraph:
    """Build and fully validate the dependency graph for a set of stages."""
    graph = StageGraph(stages)
    graph.validate()
    return graph


def load_pipeline(path: Path) -> PipelineDefinition:
    """Load one pipeline definition file."""
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise DefinitionError(f"{path.name}: not valid JSON: {e}") from e
    return parse_pipeline(data)


def load_pipelines(directory: Path | None = None) -> dict[str, PipelineDefinition]:
    """Load every *.json pipeline in a directory, keyed by pipeline name."""
    directory = directory or config.PIPELINES_DIR
    pipelines: dict[str, PipelineDefinition] = {}
    if not directory.is_dir():
        log.warning("Pipelines directory not found: %s", directory)
        return pipelines
    for path in sorted(directory.glob("*.json")):
        definition = load_pipeline(path)
        if definition.name in pipelines:
            raise DefinitionError(f"Duplicate pipeline name: {definition.name} ({path.name})")
        pipelines[definition.name] = definition
        log.info("Loaded pipeline %s (%d stages) from %s",
                 definition.name, len(definition.stages), path.name)
    return pipelines


def _build_stage(doc: StageDocument, scope: str) -> StageDefinition:
    refs = []
    for ref in doc.secrets:
        if isinstance(ref, str):
            refs.append(SecretReference(name=ref, scope=scope))
        else:
            refs.append(SecretReference(name=ref.name, scope=ref.scope or scope))
    return StageDefinition(
        id=doc.id,
        kind=doc.kind,
        needs=tuple(doc.needs),
        secrets=tuple(refs),
        params=doc.params,
        max_attempts=doc.max_attempts,
    )


def _check_params(stage: StageDefinition) -> None:
    missing = [p for p in REQUIRED_PARAMS[stage.kind] if not stage.params.get(p)]
    if missing:
        raise DefinitionError(
            f"Stage {stage.id} ({stage.kind.value}) is missing param(s): {', '.join(missing)}"
        )

    declared = stage.secret_names
    for name in sorted(referenced_secrets(stage.params)):
        if name not in declared:
            raise DefinitionError(
                f"Stage {stage.id} references secret '{name}' that is not in its secrets list"
            )

    template = stage.params.get("tag_template")
    if template is not None:
        try:
            template.format(run_id="", pipeline="", ref_name="", commit_id="", short_sha="")
        except (KeyError, IndexError, ValueError, AttributeError) as e:
            raise DefinitionError(f"Stage {stage.id} has a bad tag_template: {template!r}") from e


def referenced_secrets(params: dict) -> set[str]:
    """Secret names referenced from a stage's params."""
    names: set[str] = set()
    for key, value in params.items():
        if key.endswith("_secret") and isinstance(value, str):
            names.add(value)
        elif key in SECRET_MAPPING_PARAMS and isinstance(value, dict):
            names.update(str(v) for v in value.values())
    return names
