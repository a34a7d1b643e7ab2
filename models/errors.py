"""
Exception hierarchy for the deployment engine.

Stage-level errors carry the failing stage id, attempt number and an error
kind. Messages never include resolved secret values.
"""

from __future__ import annotations


class DeployPilotError(Exception):
    """Base class for every error raised by the engine."""

    kind = "DeployPilotError"


# ── Definition errors (load time) ─────────────────────────────────────

class DefinitionError(DeployPilotError):
    """The pipeline definition is invalid and can never run."""

    kind = "DefinitionError"


class CycleError(DefinitionError):
    kind = "CycleError"


class DuplicateIdError(DefinitionError):
    kind = "DuplicateIdError"


# ── Secret resolution ────────────────────────────────────────────────

class SecretResolutionError(DeployPilotError):
    """A stage's secrets could not be resolved. Retried per stage policy."""

    kind = "SecretResolutionError"


class SecretNotFoundError(SecretResolutionError):
    kind = "SecretNotFoundError"

    def __init__(self, name: str, scope: str | None = None):
        self.name = name
        self.scope = scope
        where = f" in scope '{scope}'" if scope else ""
        super().__init__(f"Secret not found: {name}{where}")


class SecretStoreUnavailableError(SecretResolutionError):
    kind = "SecretStoreUnavailableError"


# ── Executor errors ──────────────────────────────────────────────────

class ExecutorError(DeployPilotError):
    """A stage side effect failed."""

    kind = "ExecutorError"
    retryable = True

    def __init__(self, message: str, diagnostic: dict | None = None):
        super().__init__(message)
        self.diagnostic = diagnostic or {}


class ExecutorTransientError(ExecutorError):
    """Network failure, timeout or similar. Retried with backoff."""

    kind = "ExecutorTransientError"
    retryable = True


class ExecutorPermanentError(ExecutorError):
    """Authentication rejected, malformed script, bad params. Never retried."""

    kind = "ExecutorPermanentError"
    retryable = False


# ── Engine / run errors ──────────────────────────────────────────────

class EngineInvariantError(DeployPilotError):
    """Ledger corruption or an unknown stage id. Fatal to the run."""

    kind = "EngineInvariantError"


class RunNotFoundError(DeployPilotError):
    kind = "RunNotFoundError"


class RunClaimedError(DeployPilotError):
    """Another process holds a live claim on the run."""

    kind = "RunClaimedError"

    def __init__(self, run_id: str, owner: str | None = None):
        self.run_id = run_id
        self.owner = owner
        super().__init__(f"Run {run_id} is being driven by {owner or 'another process'}")


class AlreadyTerminalError(DeployPilotError):
    kind = "AlreadyTerminalError"

    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run {run_id} is already {status}")


class StageFailure(DeployPilotError):
    """Summary of an exhausted stage, surfaced on the run record."""

    kind = "StageFailure"

    def __init__(self, stage_id: str, attempt: int, error_kind: str, message: str = ""):
        self.stage_id = stage_id
        self.attempt = attempt
        self.error_kind = error_kind
        super().__init__(
            f"Stage {stage_id} failed on attempt {attempt} ({error_kind})"
            + (f": {message}" if message else "")
        )
