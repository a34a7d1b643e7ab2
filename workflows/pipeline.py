"""
Temporal Workflow: Deployment Pipeline

Durable wrapper around the pipeline engine. The workflow executes one
activity, execute_run, which starts the run (or resumes it when the ledger
already knows the run id). If the worker dies mid-run Temporal retries the
activity, and the engine's ledger replay skips every stage that already
succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from temporalio import activity, workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from models.errors import RunNotFoundError
    from workflows.runtime import get_engine

log = logging.getLogger(__name__)

# RunClaimedError stays retryable: the claim lapses if its owner died
NON_RETRYABLE_ERRORS = ["DefinitionError", "CycleError", "DuplicateIdError", "EngineInvariantError"]


@workflow.defn
class DeploymentPipeline:
    """Temporal workflow for one run of a pipeline definition."""

    @workflow.run
    async def run(self, pipeline_name: str, trigger: dict, run_id: str) -> dict:
        workflow.logger.info("Deployment %s starting for %s", run_id, pipeline_name)
        result = await workflow.execute_activity(
            execute_run,
            args=[pipeline_name, trigger, run_id],
            start_to_close_timeout=timedelta(hours=2),
            retry_policy=RetryPolicy(
                initial_interval=timedelta(seconds=5),
                maximum_attempts=5,
                non_retryable_error_types=NON_RETRYABLE_ERRORS,
            ),
        )
        workflow.logger.info("Deployment %s finished: %s", run_id, result.get("status"))
        return result


# ── Activities (registered by worker.py) ──────────────────────────────

@activity.defn
async def execute_run(pipeline_name: str, trigger: dict, run_id: str) -> dict:
    """Start or resume a run and drive it to a terminal status."""
    engine = get_engine()
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, _ensure_run, engine, pipeline_name, trigger, run_id)

    run = await engine.run(run_id)
    log.info("Run %s complete — status: %s", run_id, run.status.value)
    return await loop.run_in_executor(None, engine.get_run_status, run_id)


def _ensure_run(engine, pipeline_name: str, trigger: dict, run_id: str) -> None:
    try:
        engine.ledger.get_run(run_id)
        log.info("Run %s found in ledger — resuming", run_id)
    except RunNotFoundError:
        engine.start_run(pipeline_name, trigger, run_id=run_id)
