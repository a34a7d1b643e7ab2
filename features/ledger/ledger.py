"""
Run Ledger — append-only record of stage attempts, plus run records.

The ledger serves two purposes: audit, and crash recovery. On restart the
engine replays attempts_for(run_id) to rebuild which stages already
succeeded, so no side effect is repeated.

RunLedger keeps everything in memory. PostgresRunLedger writes through to
Postgres on every append so the audit trail survives crashes.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any

import config
from features.ledger.models import Run, RunStatus, StageAttempt
from models.errors import EngineInvariantError, RunNotFoundError

log = logging.getLogger(__name__)


class RunLedger:
    """In-memory ledger. Also the base class for durable backends."""

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: dict[str, Run] = {}
        self._attempts: dict[str, list[StageAttempt]] = {}
        self._claims: dict[str, tuple[str, float]] = {}  # run_id -> (owner, expires_at)

    # ── Stage attempts ───────────────────────────────────────────────

    def append(self, attempt: StageAttempt) -> None:
        """Append an attempt. Attempt numbers per stage must strictly increase."""
        with self._lock:
            previous = self._last_attempt_number(attempt.run_id, attempt.stage_id)
            if attempt.attempt <= previous:
                raise EngineInvariantError(
                    f"Attempt {attempt.attempt} for {attempt.run_id}/{attempt.stage_id} "
                    f"does not follow attempt {previous}"
                )
            self._write_attempt(attempt)
        log.debug("[LEDGER] %s/%s attempt %d → %s",
                  attempt.run_id, attempt.stage_id, attempt.attempt, attempt.outcome.value)

    def attempts_for(self, run_id: str, stage_id: str | None = None) -> list[StageAttempt]:
        """Attempts for a run (or one stage of it), ordered by attempt number."""
        attempts = [
            a for a in self._read_attempts(run_id)
            if stage_id is None or a.stage_id == stage_id
        ]
        return sorted(attempts, key=lambda a: (a.attempt, a.stage_id))

    def _last_attempt_number(self, run_id: str, stage_id: str) -> int:
        numbers = [a.attempt for a in self._read_attempts(run_id) if a.stage_id == stage_id]
        return max(numbers, default=0)

    def _write_attempt(self, attempt: StageAttempt) -> None:
        self._attempts.setdefault(attempt.run_id, []).append(attempt)

    def _read_attempts(self, run_id: str) -> list[StageAttempt]:
        return list(self._attempts.get(run_id, []))

    # ── Runs ─────────────────────────────────────────────────────────

    def save_run(self, run: Run) -> None:
        with self._lock:
            existing = self._runs.get(run.run_id)
            if existing and existing.cancel_requested:
                run.cancel_requested = True
            self._runs[run.run_id] = Run.from_dict(run.to_dict())

    def get_run(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return Run.from_dict(run.to_dict())

    def list_runs(self, status: str | None = None, limit: int = 50) -> list[Run]:
        runs = [r for r in self._runs.values() if status is None or r.status.value == status]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return [Run.from_dict(r.to_dict()) for r in runs[:limit]]

    def request_cancel(self, run_id: str) -> None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(f"Run not found: {run_id}")
            run.cancel_requested = True

    def cancel_requested(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        return bool(run and run.cancel_requested)

    # ── Ownership ────────────────────────────────────────────────────

    def claim_run(self, run_id: str, owner: str, lease_sec: float) -> bool:
        """Take or renew the claim on a run. False while another owner's lease is live."""
        with self._lock:
            if run_id not in self._runs:
                raise RunNotFoundError(f"Run not found: {run_id}")
            now = time.monotonic()
            holder = self._claims.get(run_id)
            if holder and holder[0] != owner and holder[1] > now:
                return False
            self._claims[run_id] = (owner, now + lease_sec)
            return True

    def release_run(self, run_id: str, owner: str) -> None:
        with self._lock:
            holder = self._claims.get(run_id)
            if holder and holder[0] == owner:
                del self._claims[run_id]


class PostgresRunLedger(RunLedger):
    """Ledger persisted to Postgres via features.ledger.db."""

    def __init__(self, dsn: str | None = None):
        super().__init__()
        from features.ledger import db as ledger_db

        self._db = ledger_db
        self._db.init_db(dsn)

    def _write_attempt(self, attempt: StageAttempt) -> None:
        self._db.insert_stage_attempt(attempt.to_dict())

    def _read_attempts(self, run_id: str) -> list[StageAttempt]:
        return [StageAttempt.from_dict(_serialize(row)) for row in self._db.get_stage_attempts(run_id)]

    def save_run(self, run: Run) -> None:
        self._db.upsert_pipeline_run(run.to_dict())

    def get_run(self, run_id: str) -> Run:
        row = self._db.get_pipeline_run(run_id)
        if row is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return Run.from_dict(_serialize(row))

    def list_runs(self, status: str | None = None, limit: int = 50) -> list[Run]:
        return [Run.from_dict(_serialize(r)) for r in self._db.list_pipeline_runs(limit=limit, status=status)]

    def request_cancel(self, run_id: str) -> None:
        if not self._db.set_cancel_requested(run_id):
            # Either unknown or already terminal; get_run raises for unknown
            self.get_run(run_id)

    def cancel_requested(self, run_id: str) -> bool:
        row = self._db.get_pipeline_run(run_id)
        return bool(row and row.get("cancel_requested"))

    def claim_run(self, run_id: str, owner: str, lease_sec: float) -> bool:
        if self._db.claim_pipeline_run(run_id, owner, lease_sec):
            return True
        self.get_run(run_id)
        return False

    def release_run(self, run_id: str, owner: str) -> None:
        self._db.release_pipeline_run(run_id, owner)


# ── Run log archive ───────────────────────────────────────────────────

def save_run_log(run: Run, attempts: list[StageAttempt], runs_dir: Path | None = None) -> str:
    """Archive a terminal run to the pipeline_runs/ directory."""
    runs_dir = runs_dir or config.PIPELINE_RUNS_DIR
    runs_dir.mkdir(parents=True, exist_ok=True)
    file_path = runs_dir / f"{run.run_id}.json"
    record = {**run.to_dict(), "stage_attempts": [a.to_dict() for a in attempts]}
    with open(file_path, "w") as f:
        json.dump(record, f, indent=2, default=str)
    log.info("Run log saved: %s", file_path)
    return str(file_path)


def _serialize(obj: Any) -> Any:
    """Make a DB row JSON-friendly (datetimes to ISO strings)."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj
