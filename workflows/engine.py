"""
Pipeline Engine — drives a run through its stage graph.

Per run:
  1. Ask the graph for stages whose needs have all succeeded
  2. Dispatch each ready stage concurrently (bounded by MAX_WORKERS)
  3. Per attempt: resolve secrets, call the stage executor, append the
     attempt to the ledger (the write happens before dependents unlock)
  4. Retry failed attempts with exponential backoff; once a stage is
     exhausted, record its transitive dependents as skipped. Unrelated
     branches keep running.
  5. The run succeeds only when every stage succeeded.

Crash recovery: run()/resume() replay the ledger first, so stages that
already succeeded are never executed again.

Ownership: a process claims a run in the ledger before replaying it and
renews the claim while driving it, so two processes sharing a Postgres
ledger never drive the same run. A crashed owner's claim lapses after
RUN_LEASE_SEC.

Ledger calls go through run_in_executor; with PostgresRunLedger each one
is a database round trip.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Protocol

import config
from features.ledger import RunLedger, save_run_log
from features.secrets import SecretStoreAdapter, redact
from models.errors import (
    AlreadyTerminalError,
    DefinitionError,
    DeployPilotError,
    EngineInvariantError,
    ExecutorError,
    RunClaimedError,
    SecretResolutionError,
    StageFailure,
)
from models.schemas import (
    AttemptOutcome,
    PipelineDefinition,
    Run,
    RunContext,
    RunStatus,
    StageAttempt,
    StageDefinition,
    StageOutcome,
    Trigger,
)
from utils.dag import StageGraph
from utils.definitions import build_graph

log = logging.getLogger(__name__)


class Executor(Protocol):
    async def execute(self, stage: StageDefinition, secrets: Mapping[str, str],
                      ctx: RunContext) -> StageOutcome: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    base_delay: float = config.RETRY_BASE_DELAY
    factor: float = config.RETRY_FACTOR
    max_delay: float = config.RETRY_MAX_DELAY

    def delay(self, attempt: int) -> float:
        """Backoff after a failed attempt number `attempt` (1-based)."""
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)


@dataclass
class _RunState:
    run: Run
    definition: PipelineDefinition
    graph: StageGraph
    completed: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    skipped: set[str] = field(default_factory=set)
    running: set[str] = field(default_factory=set)
    next_attempt: dict[str, int] = field(default_factory=dict)
    failures: list[str] = field(default_factory=list)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    lease_lost: bool = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def new_run_id() -> str:
    return f"run-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PipelineEngine:
    """Schedules stages of runs. One engine can drive many runs concurrently."""

    def __init__(
        self,
        pipelines: Mapping[str, PipelineDefinition],
        secrets: SecretStoreAdapter,
        executor: Executor,
        ledger: RunLedger | None = None,
        retry: RetryPolicy | None = None,
        max_workers: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        runs_dir: Path | None = None,
        owner: str | None = None,
        lease_sec: float | None = None,
    ):
        self.pipelines = dict(pipelines)
        self._graphs = {name: build_graph(d.stages) for name, d in self.pipelines.items()}
        self._secrets = secrets
        self._executor = executor
        self.ledger = ledger or RunLedger()
        self.retry = retry or RetryPolicy()
        self._max_workers = max_workers or config.MAX_WORKERS
        self._sleep = sleep
        self._runs_dir = runs_dir
        self.owner = owner or f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self._lease_sec = lease_sec or config.RUN_LEASE_SEC
        # run_id -> state; None while the run is being claimed and replayed
        self._active: dict[str, _RunState | None] = {}

    # ── Public API ───────────────────────────────────────────────────

    def start_run(self, pipeline_name: str, trigger: Trigger | dict | None = None,
                  run_id: str | None = None) -> str:
        """Create a run for a trigger event. Call run(run_id) to execute it."""
        if pipeline_name not in self.pipelines:
            raise DefinitionError(f"Unknown pipeline: {pipeline_name}")
        if trigger is None:
            trigger = Trigger(pipeline_name)
        elif isinstance(trigger, dict):
            trigger = Trigger.from_dict({"pipeline_name": pipeline_name, **trigger})

        run = Run(
            run_id=run_id or new_run_id(),
            pipeline_name=pipeline_name,
            trigger=trigger.to_dict(),
            status=RunStatus.RUNNING,
            started_at=_now(),
        )
        self.ledger.save_run(run)
        log.info("[RUN] %s created for %s (ref=%s commit=%s)",
                 run.run_id, pipeline_name, trigger.ref_name or "-", trigger.commit_id[:12] or "-")
        return run.run_id

    async def run(self, run_id: str) -> Run:
        """Drive a run to a terminal status, replaying the ledger first."""
        if run_id in self._active:
            raise EngineInvariantError(f"Run {run_id} is already being driven")
        self._active[run_id] = None

        claimed = False
        run: Run | None = None
        state: _RunState | None = None
        keeper: asyncio.Task | None = None
        try:
            claimed = await self._ledger(self.ledger.claim_run, run_id, self.owner, self._lease_sec)
            if not claimed:
                raise RunClaimedError(run_id)
            run = await self._ledger(self.ledger.get_run, run_id)
            if run.status.terminal:
                log.info("[RUN] %s already %s — nothing to do", run_id, run.status.value)
                return run

            attempts = await self._ledger(self.ledger.attempts_for, run_id)
            state = self._replay(run, attempts)
            self._active[run_id] = state
            keeper = asyncio.create_task(self._keep_claim(state))
            if await self._ledger(self.ledger.cancel_requested, run_id):
                state.cancel_event.set()
            await self._drive(state)
        except EngineInvariantError as e:
            log.error("[RUN] %s invariant violated: %s", run_id, e)
            if state is not None:
                await self._finish(state, RunStatus.FAILED, error=str(e))
            elif run is not None:
                run.status = RunStatus.FAILED
                run.error = str(e)
                run.completed_at = _now()
                await self._ledger(self.ledger.save_run, run)
            raise
        finally:
            if keeper is not None:
                keeper.cancel()
            self._active.pop(run_id, None)
            if claimed:
                await self._ledger(self.ledger.release_run, run_id, self.owner)
        return state.run

    async def resume(self, run_id: str) -> Run:
        """Continue a run after a crash. Succeeded stages are not re-executed."""
        # An attempt that was waiting out its backoff when the process died starts right away
        log.info("[RUN] %s resuming from ledger", run_id)
        return await self.run(run_id)

    async def start_and_run(self, pipeline_name: str, trigger: Trigger | dict | None = None) -> Run:
        return await self.run(self.start_run(pipeline_name, trigger))

    def cancel_run(self, run_id: str) -> None:
        """Stop scheduling new stages; in-flight attempts are allowed to finish."""
        run = self.ledger.get_run(run_id)
        if run.status.terminal:
            raise AlreadyTerminalError(run_id, run.status.value)
        self.ledger.request_cancel(run_id)
        state = self._active.get(run_id)
        if state is not None:
            state.cancel_event.set()
        log.info("[RUN] %s cancel requested", run_id)

    def get_run_status(self, run_id: str) -> dict:
        run = self.ledger.get_run(run_id)
        attempts = self.ledger.attempts_for(run_id)
        state = self._active.get(run_id)

        last: dict[str, StageAttempt] = {}
        counts: dict[str, int] = {}
        for a in attempts:
            last[a.stage_id] = a
            counts[a.stage_id] = counts.get(a.stage_id, 0) + 1

        stages = {}
        graph = self._graphs.get(run.pipeline_name)
        for stage_id in (graph.stage_ids if graph else sorted(last)):
            if state is not None and stage_id in state.running:
                status = "running"
            elif stage_id in last:
                status = last[stage_id].outcome.value
            else:
                status = "pending"
            stages[stage_id] = {"status": status, "attempts": counts.get(stage_id, 0)}

        return {
            **run.to_dict(),
            "stages": stages,
            "stage_attempts": [a.to_dict() for a in attempts],
        }

    # ── Replay ───────────────────────────────────────────────────────

    def _replay(self, run: Run, attempts: list[StageAttempt]) -> _RunState:
        """Rebuild completed/failed/skipped sets from the run's ledger attempts."""
        definition = self.pipelines.get(run.pipeline_name)
        if definition is None:
            raise EngineInvariantError(f"Run {run.run_id} references unknown pipeline {run.pipeline_name}")
        graph = self._graphs[run.pipeline_name]
        state = _RunState(run=run, definition=definition, graph=graph)

        last: dict[str, StageAttempt] = {}
        for attempt in attempts:
            if attempt.stage_id not in graph:
                raise EngineInvariantError(
                    f"Ledger for {run.run_id} references unknown stage {attempt.stage_id}"
                )
            expected = last[attempt.stage_id].attempt + 1 if attempt.stage_id in last else 1
            if attempt.attempt != expected:
                raise EngineInvariantError(
                    f"Ledger for {run.run_id}/{attempt.stage_id} jumps to attempt "
                    f"{attempt.attempt} (expected {expected})"
                )
            last[attempt.stage_id] = attempt

        for stage_id, attempt in last.items():
            if attempt.outcome is AttemptOutcome.SUCCESS:
                state.completed.add(stage_id)
            elif attempt.outcome is AttemptOutcome.SKIPPED:
                state.skipped.add(stage_id)
            elif attempt.retryable and attempt.attempt < self._max_attempts(graph.stage(stage_id)):
                state.next_attempt[stage_id] = attempt.attempt + 1
            else:
                state.failed.add(stage_id)
                state.failures.append(str(StageFailure(stage_id, attempt.attempt,
                                                       attempt.error_kind or "ExecutorError")))

        for stage_id in state.completed:
            unmet = set(graph.stage(stage_id).needs) - state.completed
            if unmet:
                raise EngineInvariantError(
                    f"Ledger for {run.run_id} has {stage_id} succeeded before {', '.join(sorted(unmet))}"
                )

        if last:
            log.info("[RUN] %s replayed %d stage(s): %d succeeded, %d failed, %d skipped",
                     run.run_id, len(last), len(state.completed), len(state.failed), len(state.skipped))
        return state

    # ── Scheduling loop ──────────────────────────────────────────────

    async def _drive(self, state: _RunState) -> None:
        run, graph = state.run, state.graph
        workers = asyncio.Semaphore(max(1, min(len(graph), self._max_workers)))
        in_flight: dict[asyncio.Task, str] = {}
        pipeline_start = time.monotonic()

        for stage_id in sorted(state.failed):
            await self._skip_dependents(state, stage_id)

        try:
            while True:
                await self._cancelled(state)

                if not state.cancelled and not state.lease_lost:
                    for stage_id in graph.ready_stages(state.completed):
                        if stage_id in state.running or stage_id in state.failed or stage_id in state.skipped:
                            continue
                        state.running.add(stage_id)
                        task = asyncio.create_task(self._run_stage(state, graph.stage(stage_id), workers))
                        in_flight[task] = stage_id

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: in_flight[t]):
                    stage_id = in_flight.pop(task)
                    state.running.discard(stage_id)
                    attempt = task.result()
                    if attempt.outcome is AttemptOutcome.SUCCESS:
                        state.completed.add(stage_id)
                    else:
                        state.failed.add(stage_id)
                        state.failures.append(str(StageFailure(
                            stage_id, attempt.attempt, attempt.error_kind or "ExecutorError", attempt.error or "",
                        )))
                        await self._skip_dependents(state, stage_id)
        except EngineInvariantError:
            # Let dispatched side effects settle before failing the run
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            raise

        if state.lease_lost and not graph.is_complete(state.completed):
            # The new owner replays our attempts and finishes the run
            raise RunClaimedError(run.run_id)

        if graph.is_complete(state.completed):
            status = RunStatus.SUCCEEDED
        elif state.cancelled:
            status = RunStatus.CANCELLED
        else:
            status = RunStatus.FAILED
        log.info("[RUN] %s scheduling finished in %.1fs", run.run_id, time.monotonic() - pipeline_start)
        await self._finish(state, status, error="; ".join(state.failures) or None)

    async def _run_stage(self, state: _RunState, stage: StageDefinition,
                         workers: asyncio.Semaphore) -> StageAttempt:
        """Run one stage's attempts serially until success or exhaustion."""
        max_attempts = self._max_attempts(stage)
        attempt_no = state.next_attempt.get(stage.id, 1)

        while True:
            started_at = _now()
            start = time.monotonic()
            secrets: dict[str, str] = {}
            error: Exception | None = None
            outcome: StageOutcome | None = None

            async with workers:
                try:
                    loop = asyncio.get_running_loop()
                    secrets = await loop.run_in_executor(
                        None, self._secrets.resolve, stage.secrets, state.definition.secret_scope,
                    )
                    ctx = RunContext(
                        run_id=state.run.run_id,
                        pipeline_name=state.definition.name,
                        trigger=Trigger.from_dict(state.run.trigger),
                        stage_id=stage.id,
                        attempt=attempt_no,
                    )
                    outcome = await self._executor.execute(stage, secrets, ctx)
                except EngineInvariantError:
                    raise
                except (SecretResolutionError, ExecutorError) as e:
                    error = e
                except Exception as e:
                    log.exception("[STAGE] %s attempt %d raised unexpectedly", stage.id, attempt_no)
                    error = e

            duration = round(time.monotonic() - start, 2)
            if error is None and outcome is not None and outcome.outcome is AttemptOutcome.SUCCESS:
                attempt = StageAttempt(
                    run_id=state.run.run_id, stage_id=stage.id, attempt=attempt_no,
                    outcome=AttemptOutcome.SUCCESS, started_at=started_at, completed_at=_now(),
                    duration_sec=duration, diagnostic=redact(dict(outcome.diagnostic), secrets),
                )
                await self._ledger(self.ledger.append, attempt)
                log.info("[STAGE] %s succeeded on attempt %d (%.2fs)", stage.id, attempt_no, duration)
                return attempt

            if error is None:
                # Executor reported failure without raising
                kind, retryable, message = "ExecutorError", True, "stage reported failure"
                diagnostic = dict(outcome.diagnostic) if outcome else {}
            else:
                kind = error.kind if isinstance(error, DeployPilotError) else "ExecutorError"
                retryable = getattr(error, "retryable", True)
                message = str(error)
                diagnostic = dict(getattr(error, "diagnostic", {}) or {})

            attempt = StageAttempt(
                run_id=state.run.run_id, stage_id=stage.id, attempt=attempt_no,
                outcome=AttemptOutcome.FAILURE, started_at=started_at, completed_at=_now(),
                duration_sec=duration, error_kind=kind, error=redact(message, secrets),
                retryable=retryable, diagnostic=redact(diagnostic, secrets),
            )
            await self._ledger(self.ledger.append, attempt)
            log.warning("[STAGE] %s attempt %d/%d failed (%s): %s",
                        stage.id, attempt_no, max_attempts, kind, attempt.error)

            if not retryable or attempt_no >= max_attempts or await self._cancelled(state):
                return attempt

            delay = self.retry.delay(attempt_no)
            log.info("[STAGE] %s retrying in %.1fs", stage.id, delay)
            await self._backoff(state, delay)
            if await self._cancelled(state):
                return attempt
            attempt_no += 1

    async def _backoff(self, state: _RunState, delay: float) -> None:
        """Sleep before a retry; a cancel request cuts the wait short."""
        sleeper = asyncio.ensure_future(self._sleep(delay))
        canceller = asyncio.ensure_future(state.cancel_event.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            canceller.cancel()

    async def _cancelled(self, state: _RunState) -> bool:
        if not state.cancelled and await self._ledger(self.ledger.cancel_requested, state.run.run_id):
            state.cancel_event.set()
        return state.cancelled

    async def _skip_dependents(self, state: _RunState, stage_id: str) -> None:
        for dependent in state.graph.dependents_of(stage_id):
            if dependent in state.skipped or dependent in state.completed or dependent in state.failed:
                continue
            state.skipped.add(dependent)
            now = _now()
            await self._ledger(self.ledger.append, StageAttempt(
                run_id=state.run.run_id, stage_id=dependent,
                attempt=state.next_attempt.get(dependent, 1),
                outcome=AttemptOutcome.SKIPPED, started_at=now, completed_at=now,
                error_kind="UpstreamFailed", error=f"needs failed stage {stage_id}",
            ))
            log.info("[STAGE] %s skipped — upstream %s failed", dependent, stage_id)

    async def _finish(self, state: _RunState, status: RunStatus, error: str | None = None) -> None:
        run = state.run
        run.status = status
        run.error = error
        run.completed_at = _now()
        try:
            started = datetime.fromisoformat(run.started_at)
            run.duration_sec = round((datetime.now(timezone.utc) - started).total_seconds(), 2)
        except (TypeError, ValueError):
            run.duration_sec = None
        if state.cancelled:
            run.cancel_requested = True
        await self._ledger(self._archive, run)
        log.info("[RUN] %s finished: %s", run.run_id, status.value)

    def _archive(self, run: Run) -> None:
        self.ledger.save_run(run)
        save_run_log(run, self.ledger.attempts_for(run.run_id), self._runs_dir)

    async def _ledger(self, fn: Callable, *args):
        """Run a blocking ledger call off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def _keep_claim(self, state: _RunState) -> None:
        """Renew the run's claim until cancelled. Losing it stops new stages from starting."""
        run_id = state.run.run_id
        while True:
            await asyncio.sleep(self._lease_sec / 3)
            try:
                held = await self._ledger(self.ledger.claim_run, run_id, self.owner, self._lease_sec)
            except Exception as e:
                log.warning("[RUN] %s could not renew claim: %s", run_id, e)
                continue
            if not held:
                log.error("[RUN] %s claim taken over by another process — no new stages will start", run_id)
                state.lease_lost = True
                return

    def _max_attempts(self, stage: StageDefinition) -> int:
        return stage.max_attempts or self.retry.max_attempts
