"""
Ledger feature — append-only record of runs and stage attempts.

Public API:
    from features.ledger import RunLedger, PostgresRunLedger, StageAttempt, Run
    from features.ledger import db as ledger_db
"""

from features.ledger.ledger import PostgresRunLedger, RunLedger, save_run_log
from features.ledger.models import AttemptOutcome, Run, RunStatus, StageAttempt

__all__ = [
    "AttemptOutcome",
    "PostgresRunLedger",
    "Run",
    "RunLedger",
    "RunStatus",
    "StageAttempt",
    "save_run_log",
]
