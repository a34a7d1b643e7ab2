"""
Stage Executor — runs one stage attempt's side effect and reports an outcome.

Each stage kind maps to one handler. Handlers are blocking (they shell out),
so they run in the default thread pool. Every attempt gets its own staging
directory, removed when the attempt ends.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Mapping

import config
from activities.artifact_sync import AwsS3SyncClient, ObjectStoreClient, artifact_sync
from activities.build_push import DockerRegistryClient, RegistryClient, build_and_push
from activities.cache_invalidate import CdnClient, CloudFrontClient, cache_invalidate
from activities.remote_deploy import RemoteChannel, SshChannel, remote_deploy
from features.secrets import redact
from models.errors import ExecutorError, ExecutorPermanentError
from models.schemas import AttemptOutcome, RunContext, StageDefinition, StageKind, StageOutcome

log = logging.getLogger(__name__)


class StageExecutor:
    """Dispatches a resolved stage to the handler for its kind."""

    def __init__(
        self,
        registry: RegistryClient | None = None,
        channel: RemoteChannel | None = None,
        store: ObjectStoreClient | None = None,
        cdn: CdnClient | None = None,
        staging_root: Path | None = None,
    ):
        self.registry = registry or DockerRegistryClient()
        self.channel = channel or SshChannel()
        self.store = store or AwsS3SyncClient()
        self.cdn = cdn or CloudFrontClient()
        self.staging_root = staging_root or config.STAGING_DIR

        self._handlers: dict[StageKind, Callable[..., dict]] = {
            StageKind.BUILD_AND_PUSH: lambda s, sec, ctx: build_and_push(s, sec, ctx, self.registry),
            StageKind.REMOTE_DEPLOY: lambda s, sec, ctx: remote_deploy(s, sec, ctx, self.channel),
            StageKind.ARTIFACT_SYNC: lambda s, sec, ctx: artifact_sync(s, sec, ctx, self.store),
            StageKind.CACHE_INVALIDATE: lambda s, sec, ctx: cache_invalidate(s, sec, ctx, self.cdn),
        }

    async def execute(
        self,
        stage: StageDefinition,
        secrets: Mapping[str, str],
        ctx: RunContext,
    ) -> StageOutcome:
        """Run the stage off the event loop. Raises ExecutorError on failure."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.execute_sync, stage, secrets, ctx)

    def execute_sync(
        self,
        stage: StageDefinition,
        secrets: Mapping[str, str],
        ctx: RunContext,
    ) -> StageOutcome:
        handler = self._handlers.get(stage.kind)
        if handler is None:
            raise ExecutorPermanentError(f"No executor for stage kind {stage.kind}")

        staging = self._staging_dir(ctx)
        ctx.staging_dir = staging
        start = time.monotonic()
        log.info("[STAGE] %s (%s) attempt %d starting", stage.id, stage.kind.value, ctx.attempt)
        try:
            diagnostic = handler(stage, secrets, ctx)
        except ExecutorError as e:
            # Scrub any secret echoed back in stderr before it leaves here
            e.diagnostic = redact(e.diagnostic, secrets)
            e.args = tuple(redact(list(e.args), secrets))
            raise
        except KeyError as e:
            raise ExecutorPermanentError(f"Stage {stage.id} is missing {e.args[0]!r}") from None
        finally:
            shutil.rmtree(staging, ignore_errors=True)
            ctx.staging_dir = None

        diagnostic = redact(dict(diagnostic), secrets)
        diagnostic["duration_sec"] = round(time.monotonic() - start, 2)
        log.info("[STAGE] %s attempt %d done: %s", stage.id, ctx.attempt, diagnostic.get("status"))
        return StageOutcome(AttemptOutcome.SUCCESS, diagnostic)

    def _staging_dir(self, ctx: RunContext) -> Path:
        path = self.staging_root / ctx.run_id / ctx.stage_id / f"attempt-{ctx.attempt}"
        shutil.rmtree(path, ignore_errors=True)
        path.mkdir(parents=True)
        return path
