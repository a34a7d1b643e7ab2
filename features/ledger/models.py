"""
Data models for the run ledger feature.

Run and StageAttempt are the durable record of a pipeline execution.
Attempts are append-only: once written they are never mutated.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StageAttempt:
    """One execution of one stage within a run."""
    run_id: str
    stage_id: str
    attempt: int
    outcome: AttemptOutcome
    started_at: str
    completed_at: str
    duration_sec: float = 0.0
    error_kind: str | None = None
    error: str | None = None
    retryable: bool = False
    diagnostic: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StageAttempt":
        return cls(
            run_id=data["run_id"],
            stage_id=data["stage_id"],
            attempt=int(data["attempt"]),
            outcome=AttemptOutcome(data["outcome"]),
            started_at=str(data["started_at"]),
            completed_at=str(data["completed_at"]),
            duration_sec=float(data.get("duration_sec") or 0.0),
            error_kind=data.get("error_kind"),
            error=data.get("error"),
            retryable=bool(data.get("retryable", False)),
            diagnostic=dict(data.get("diagnostic") or {}),
        )


@dataclass
class Run:
    """One execution instance of a pipeline definition."""
    run_id: str
    pipeline_name: str
    trigger: dict
    status: RunStatus = RunStatus.RUNNING
    started_at: str = ""
    completed_at: str | None = None
    duration_sec: float | None = None
    error: str | None = None
    cancel_requested: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Run":
        return cls(
            run_id=data["run_id"],
            pipeline_name=data["pipeline_name"],
            trigger=dict(data.get("trigger") or {}),
            status=RunStatus(data.get("status", "running")),
            started_at=str(data.get("started_at") or ""),
            completed_at=str(data["completed_at"]) if data.get("completed_at") else None,
            duration_sec=data.get("duration_sec"),
            error=data.get("error"),
            cancel_requested=bool(data.get("cancel_requested", False)),
        )
