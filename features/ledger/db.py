"""
Postgres backing store for pipeline runs and stage attempts.

Tables:
  pipeline_runs   — one row per run
  stage_attempts  — one row per stage attempt, FK to pipeline_runs

Attempts are inserted once and never updated, so the table is an
append-only audit trail that survives crashes.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.extras

import config

log = logging.getLogger(__name__)

# ── Connection ────────────────────────────────────────────────────────

_pool: list[Any] = []


def _get_conn(dsn: str | None = None):
    """Get a Postgres connection (simple single-connection reuse)."""
    if _pool:
        conn = _pool[0]
        if not conn.closed:
            return conn
        _pool.clear()

    conn = psycopg2.connect(dsn or config.DATABASE_URL)
    conn.autocommit = True
    _pool.append(conn)
    return conn


@contextmanager
def get_cursor(dsn: str | None = None):
    """Yield a dict cursor."""
    conn = _get_conn(dsn)
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id            TEXT PRIMARY KEY,
    pipeline_name     TEXT NOT NULL,
    trigger           JSONB DEFAULT '{}'::jsonb,
    status            TEXT NOT NULL DEFAULT 'running',
    started_at        TIMESTAMPTZ,
    completed_at      TIMESTAMPTZ,
    duration_sec      DOUBLE PRECISION,
    error             TEXT,
    cancel_requested  BOOLEAN NOT NULL DEFAULT false,
    owner             TEXT,
    heartbeat_at      TIMESTAMPTZ,
    created_at        TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS stage_attempts (
    run_id          TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    stage_id        TEXT NOT NULL,
    attempt         INTEGER NOT NULL CHECK (attempt >= 1),
    outcome         TEXT NOT NULL,
    started_at      TIMESTAMPTZ,
    completed_at    TIMESTAMPTZ,
    duration_sec    DOUBLE PRECISION,
    error_kind      TEXT,
    error           TEXT,
    retryable       BOOLEAN NOT NULL DEFAULT false,
    diagnostic      JSONB DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ DEFAULT now(),
    PRIMARY KEY (run_id, stage_id, attempt)
);

CREATE INDEX IF NOT EXISTS idx_stage_attempts_run_id ON stage_attempts(run_id);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_status ON pipeline_runs(status);

ALTER TABLE pipeline_runs ADD COLUMN IF NOT EXISTS owner TEXT;
ALTER TABLE pipeline_runs ADD COLUMN IF NOT EXISTS heartbeat_at TIMESTAMPTZ;
"""


def init_db(dsn: str | None = None):
    """Create tables if they don't exist."""
    try:
        with get_cursor(dsn) as cur:
            cur.execute(SCHEMA_SQL)
        log.info("Ledger schema initialized")
    except Exception as e:
        log.error("Failed to initialize ledger database: %s", e)
        raise


# ── Pipeline Run CRUD ─────────────────────────────────────────────────

def upsert_pipeline_run(run: dict) -> None:
    """Insert or update a run record."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO pipeline_runs (
                run_id, pipeline_name, trigger, status,
                started_at, completed_at, duration_sec, error, cancel_requested
            ) VALUES (
                %(run_id)s, %(pipeline_name)s, %(trigger)s, %(status)s,
                %(started_at)s, %(completed_at)s, %(duration_sec)s, %(error)s,
                %(cancel_requested)s
            )
            ON CONFLICT (run_id) DO UPDATE SET
                status = EXCLUDED.status,
                completed_at = EXCLUDED.completed_at,
                duration_sec = EXCLUDED.duration_sec,
                error = EXCLUDED.error,
                cancel_requested = pipeline_runs.cancel_requested OR EXCLUDED.cancel_requested
        """, {
            "run_id": run["run_id"],
            "pipeline_name": run["pipeline_name"],
            "trigger": json.dumps(run.get("trigger", {})),
            "status": run.get("status", "running"),
            "started_at": run.get("started_at") or None,
            "completed_at": run.get("completed_at"),
            "duration_sec": run.get("duration_sec"),
            "error": run.get("error"),
            "cancel_requested": bool(run.get("cancel_requested", False)),
        })


def get_pipeline_run(run_id: str) -> dict | None:
    """Fetch a run by ID."""
    with get_cursor() as cur:
        cur.execute("SELECT * FROM pipeline_runs WHERE run_id = %s", (run_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def list_pipeline_runs(limit: int = 50, status: str | None = None) -> list[dict]:
    """List runs, newest first."""
    with get_cursor() as cur:
        if status:
            cur.execute(
                "SELECT * FROM pipeline_runs WHERE status = %s ORDER BY created_at DESC LIMIT %s",
                (status, limit),
            )
        else:
            cur.execute(
                "SELECT * FROM pipeline_runs ORDER BY created_at DESC LIMIT %s",
                (limit,),
            )
        return [dict(row) for row in cur.fetchall()]


def set_cancel_requested(run_id: str) -> bool:
    """Flag a running run for cancellation. Returns False if nothing matched."""
    with get_cursor() as cur:
        cur.execute(
            "UPDATE pipeline_runs SET cancel_requested = true WHERE run_id = %s AND status = 'running'",
            (run_id,),
        )
        return cur.rowcount > 0


def claim_pipeline_run(run_id: str, owner: str, lease_sec: float) -> bool:
    """
    Take or renew ownership of a run. Succeeds when the run is unowned, already
    ours, or its owner stopped renewing more than lease_sec ago.
    """
    with get_cursor() as cur:
        cur.execute("""
            UPDATE pipeline_runs
               SET owner = %(owner)s, heartbeat_at = now()
             WHERE run_id = %(run_id)s
               AND (owner IS NULL
                    OR owner = %(owner)s
                    OR heartbeat_at < now() - make_interval(secs => %(lease_sec)s))
        """, {"run_id": run_id, "owner": owner, "lease_sec": lease_sec})
        return cur.rowcount > 0


def release_pipeline_run(run_id: str, owner: str) -> None:
    with get_cursor() as cur:
        cur.execute(
            "UPDATE pipeline_runs SET owner = NULL, heartbeat_at = NULL WHERE run_id = %s AND owner = %s",
            (run_id, owner),
        )


# ── Stage attempt CRUD ────────────────────────────────────────────────

def insert_stage_attempt(attempt: dict) -> None:
    """Append a stage attempt. Raises on a duplicate (run, stage, attempt)."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO stage_attempts (
                run_id, stage_id, attempt, outcome,
                started_at, completed_at, duration_sec,
                error_kind, error, retryable, diagnostic
            ) VALUES (
                %(run_id)s, %(stage_id)s, %(attempt)s, %(outcome)s,
                %(started_at)s, %(completed_at)s, %(duration_sec)s,
                %(error_kind)s, %(error)s, %(retryable)s, %(diagnostic)s
            )
        """, {
            **attempt,
            "diagnostic": json.dumps(attempt.get("diagnostic", {}), default=str),
        })


def get_stage_attempts(run_id: str, stage_id: str | None = None) -> list[dict]:
    """Fetch attempts for a run (optionally one stage), by attempt number."""
    with get_cursor() as cur:
        if stage_id:
            cur.execute(
                "SELECT * FROM stage_attempts WHERE run_id = %s AND stage_id = %s ORDER BY attempt ASC",
                (run_id, stage_id),
            )
        else:
            cur.execute(
                "SELECT * FROM stage_attempts WHERE run_id = %s ORDER BY attempt ASC, stage_id ASC",
                (run_id,),
            )
        return [dict(row) for row in cur.fetchall()]
