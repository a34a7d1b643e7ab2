"""
Runtime wiring — builds the process-wide engine from config.

The API and the Temporal worker both go through get_engine(), so a run
started in either place lands in the same ledger.
"""

from __future__ import annotations

import logging

import config
from activities.executor import StageExecutor
from features.ledger import PostgresRunLedger, RunLedger
from features.secrets import EnvSecretBackend, SecretStoreAdapter
from utils.definitions import load_pipelines
from workflows.engine import PipelineEngine, RetryPolicy

log = logging.getLogger(__name__)

_engine: PipelineEngine | None = None


def build_ledger() -> RunLedger:
    """Postgres ledger when DATABASE_URL is set and reachable, else in-memory."""
    if not config.DATABASE_URL:
        log.info("DATABASE_URL not set — run ledger is in-memory only")
        return RunLedger()
    try:
        ledger = PostgresRunLedger()
        log.info("Run ledger backed by Postgres")
        return ledger
    except Exception as e:
        log.warning("Could not connect to Postgres: %s (ledger will be in-memory only)", e)
        return RunLedger()


def build_engine() -> PipelineEngine:
    pipelines = load_pipelines()
    return PipelineEngine(
        pipelines=pipelines,
        secrets=SecretStoreAdapter(EnvSecretBackend()),
        executor=StageExecutor(),
        ledger=build_ledger(),
        retry=RetryPolicy(),
        max_workers=config.MAX_WORKERS,
    )


def get_engine() -> PipelineEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: PipelineEngine | None) -> None:
    """Replace the process-wide engine (tests, embedding)."""
    global _engine
    _engine = engine
