"""
Core data models for pipeline definitions, triggers and runs.

Stage attempts and run records live with the ledger feature
(features.ledger.models) and are re-exported here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

# Ledger domain models — canonical home is features.ledger.models
from features.ledger.models import AttemptOutcome, Run, RunStatus, StageAttempt  # noqa: F401


class StageKind(str, Enum):
    BUILD_AND_PUSH = "build-and-push"
    REMOTE_DEPLOY = "remote-deploy"
    ARTIFACT_SYNC = "artifact-sync"
    CACHE_INVALIDATE = "cache-invalidate"


@dataclass(frozen=True)
class SecretReference:
    """A secret name plus the scope it resolves in."""
    name: str
    scope: str | None = None


@dataclass(frozen=True)
class StageDefinition:
    """One unit of work within a pipeline. Immutable once loaded."""
    id: str
    kind: StageKind
    needs: tuple[str, ...] = ()
    secrets: tuple[SecretReference, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    max_attempts: int | None = None  # overrides the engine retry policy

    def __post_init__(self):
        # Freeze params so a running stage can't be edited in place
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def secret_names(self) -> set[str]:
        return {ref.name for ref in self.secrets}


@dataclass(frozen=True)
class PipelineDefinition:
    """A named, ordered set of stages. Shared read-only across runs."""
    name: str
    stages: tuple[StageDefinition, ...]
    secret_scope: str | None = None


@dataclass(frozen=True)
class Trigger:
    """Inbound event that creates a run."""
    pipeline_name: str
    ref_name: str = ""
    commit_id: str = ""

    def to_dict(self) -> dict:
        return {
            "pipeline_name": self.pipeline_name,
            "ref_name": self.ref_name,
            "commit_id": self.commit_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Trigger":
        return cls(
            pipeline_name=data["pipeline_name"],
            ref_name=data.get("ref_name", ""),
            commit_id=data.get("commit_id", ""),
        )


@dataclass
class RunContext:
    """Per-attempt context handed to the stage executor."""
    run_id: str
    pipeline_name: str
    trigger: Trigger
    stage_id: str = ""
    attempt: int = 1
    staging_dir: Path | None = None

    def render(self, template: str) -> str:
        """Fill a tag/path template from the run identity."""
        return template.format(
            run_id=self.run_id,
            pipeline=self.pipeline_name,
            ref_name=self.trigger.ref_name,
            commit_id=self.trigger.commit_id,
            short_sha=self.trigger.commit_id[:7],
        )


@dataclass
class StageOutcome:
    """Structured result returned by the stage executor."""
    outcome: AttemptOutcome
    diagnostic: dict = field(default_factory=dict)
