"""
FastAPI application — REST API for Deploy Pilot.

Endpoints:
  POST /runs                            — Trigger a pipeline run
  GET  /runs                            — List runs
  GET  /runs/{run_id}                   — Run status and stage attempts
  GET  /runs/{run_id}/stages/{stage_id} — Attempts for one stage
  POST /runs/{run_id}/cancel            — Cancel a running run
  GET  /pipelines                       — Loaded pipeline definitions
  GET  /health                          — Health check
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from temporalio.client import Client

import config
from models.errors import (
    AlreadyTerminalError,
    DefinitionError,
    EngineInvariantError,
    RunClaimedError,
    RunNotFoundError,
)
from workflows.engine import new_run_id
from workflows.pipeline import DeploymentPipeline
from workflows.runtime import get_engine

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

temporal_client: Client | None = None
_background: set[asyncio.Task] = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global temporal_client
    engine = get_engine()
    log.info("Loaded %d pipeline(s)", len(engine.pipelines))
    # Connect to Temporal
    try:
        temporal_client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
        log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
    except Exception as e:
        log.warning("Could not connect to Temporal: %s (runs will execute in-process)", e)
        temporal_client = None
        # Resume what no worker is driving. Runs another process still owns
        # are skipped by the ledger claim in engine.run().
        for run in await run_in_threadpool(engine.ledger.list_runs, status="running", limit=1000):
            log.info("Resuming interrupted run %s", run.run_id)
            _spawn(run.run_id)
    yield


app = FastAPI(
    title="Deploy Pilot",
    description="Multi-stage deployment pipeline engine with Temporal orchestration and an append-only run ledger",
    version="1.0.0",
    lifespan=lifespan,
)


class RunStartRequest(BaseModel):
    pipeline_name: str
    ref_name: str = ""
    commit_id: str = ""


class RunStartResponse(BaseModel):
    run_id: str
    status: str
    message: str


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "deploy-pilot",
        "temporal_connected": temporal_client is not None,
    }


# ── Pipelines ─────────────────────────────────────────────────────────

@app.get("/pipelines")
def list_pipelines():
    engine = get_engine()
    return {
        "pipelines": [
            {
                "name": d.name,
                "stages": [
                    {"id": s.id, "kind": s.kind.value, "needs": list(s.needs),
                     "secrets": sorted(s.secret_names)}
                    for s in d.stages
                ],
            }
            for d in engine.pipelines.values()
        ]
    }


# ── Runs ──────────────────────────────────────────────────────────────

@app.post("/runs", response_model=RunStartResponse, status_code=202)
async def start_run(req: RunStartRequest):
    """Trigger a run of a pipeline for a pushed ref/commit."""
    engine = get_engine()
    if req.pipeline_name not in engine.pipelines:
        raise HTTPException(status_code=404, detail=f"Pipeline not found: {req.pipeline_name}")
    trigger = {"pipeline_name": req.pipeline_name, "ref_name": req.ref_name, "commit_id": req.commit_id}

    if temporal_client:
        run_id = new_run_id()
        await temporal_client.start_workflow(
            DeploymentPipeline.run,
            args=[req.pipeline_name, trigger, run_id],
            id=run_id,
            task_queue=config.TEMPORAL_TASK_QUEUE,
        )
        return RunStartResponse(
            run_id=run_id,
            status="started",
            message=f"Run started via Temporal. Workflow ID: {run_id}",
        )

    try:
        run_id = await run_in_threadpool(engine.start_run, req.pipeline_name, trigger)
    except DefinitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _spawn(run_id)
    return RunStartResponse(
        run_id=run_id,
        status="running",
        message=f"Run started in-process (no Temporal). Run ID: {run_id}",
    )


@app.get("/runs")
def list_runs(status: str | None = None, limit: int = 50):
    engine = get_engine()
    return {"runs": [r.to_dict() for r in engine.ledger.list_runs(status=status, limit=limit)]}


@app.get("/runs/{run_id}")
async def get_run(run_id: str):
    """Run status plus every stage attempt recorded so far."""
    engine = get_engine()
    try:
        return _serialize(await run_in_threadpool(engine.get_run_status, run_id))
    except RunNotFoundError:
        pass

    # Started through Temporal but not yet picked up by a worker
    if temporal_client:
        try:
            desc = await temporal_client.get_workflow_handle(run_id).describe()
            return {"run_id": run_id, "temporal_status": desc.status.name if desc.status else None}
        except Exception:
            log.debug("No Temporal workflow for %s", run_id)
    raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")


@app.get("/runs/{run_id}/stages/{stage_id}")
def get_stage_attempts(run_id: str, stage_id: str):
    engine = get_engine()
    try:
        engine.ledger.get_run(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    attempts = engine.ledger.attempts_for(run_id, stage_id)
    return {"run_id": run_id, "stage_id": stage_id, "attempts": [_serialize(a.to_dict()) for a in attempts]}


@app.post("/runs/{run_id}/cancel")
def cancel_run(run_id: str):
    engine = get_engine()
    try:
        engine.cancel_run(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    except AlreadyTerminalError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"run_id": run_id, "status": "cancel_requested"}


def _spawn(run_id: str) -> None:
    """Drive a run in the background of this process."""
    task = asyncio.create_task(_drive(run_id))
    _background.add(task)
    task.add_done_callback(_background.discard)


async def _drive(run_id: str) -> None:
    try:
        run = await get_engine().run(run_id)
        log.info("Run %s complete — %s", run_id, run.status.value)
    except RunClaimedError as e:
        log.info("Run %s left alone: %s", run_id, e)
    except EngineInvariantError as e:
        log.error("Run %s aborted: %s", run_id, e)
    except Exception as e:
        # Run stays "running" in the ledger and is resumed on next startup
        log.error("Run %s interrupted: %s", run_id, e, exc_info=True)


def _serialize(obj: Any) -> Any:
    """Make a dict JSON-serializable (handle datetimes, Decimals, etc)."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj
