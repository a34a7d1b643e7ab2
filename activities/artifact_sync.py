"""
Activity: Artifact Sync — mirrors a local build output to an object store.

One-way sync: local is the source of truth, remote objects missing locally
are deleted. Syncing an unchanged tree again copies and deletes nothing.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol

import config
from activities import shell
from models.errors import ExecutorPermanentError, ExecutorTransientError
from models.schemas import RunContext, StageDefinition

log = logging.getLogger(__name__)


@dataclass
class SyncResult:
    copied: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)


class ObjectStoreClient(Protocol):
    def sync_tree(self, local_path: str, remote_bucket: str, delete_stale: bool,
                  env: Mapping[str, str] | None = None) -> SyncResult: ...


class AwsS3SyncClient:
    """Object store sync backed by `aws s3 sync`."""

    def __init__(self, aws: str | None = None):
        self.aws = aws or config.AWS_CLI

    def sync_tree(self, local_path, remote_bucket, delete_stale, env=None) -> SyncResult:
        target = remote_bucket if remote_bucket.startswith("s3://") else f"s3://{remote_bucket}"
        args = [self.aws, "s3", "sync", local_path, target, "--no-progress"]
        if delete_stale:
            args.append("--delete")
        result = shell.run(args, env=dict(env or {}))
        sync = _parse_sync_output(result.stdout)
        if not result.ok:
            sync.errors.append((result.stderr or result.stdout).strip()[-2000:] or f"exit {result.exit_code}")
            if shell.is_permanent(result.stderr):
                raise ExecutorPermanentError(
                    f"sync to {target} failed",
                    {"copied": sync.copied, "deleted": sync.deleted, "errors": sync.errors},
                )
        return sync


def _parse_sync_output(stdout: str) -> SyncResult:
    result = SyncResult()
    for line in stdout.splitlines():
        line = line.strip()
        if re.match(r"^(upload|copy):", line):
            result.copied += 1
        elif line.startswith("delete:"):
            result.deleted += 1
    return result


def artifact_sync(
    stage: StageDefinition,
    secrets: Mapping[str, str],
    ctx: RunContext,
    store: ObjectStoreClient,
) -> dict:
    """
    Optionally build the bundle, then mirror local_path to bucket/prefix.

    Returns:
        {"status": "synced", "bucket": str, "copied": int, "deleted": int}
    """
    params = stage.params
    env = {name: secrets[secret] for name, secret in (params.get("credentials") or {}).items()}

    if params.get("build_command"):
        source_dir = params.get("source_dir", ".")
        log.info("Building bundle in %s: %s", source_dir, params["build_command"])
        result = shell.run(["bash", "-c", params["build_command"]], cwd=source_dir,
                           env={**env, "GIT_COMMIT": ctx.trigger.commit_id})
        shell.raise_for_result(result, "bundle build")

    local_path = params["local_path"]
    if not Path(local_path).is_dir():
        raise ExecutorPermanentError(f"Local path not found: {local_path}")

    prefix = (params.get("prefix") or "").strip("/")
    remote = params["bucket"].rstrip("/") + (f"/{prefix}" if prefix else "")
    delete_stale = params.get("delete_stale", True)

    log.info("Syncing %s → %s (delete_stale=%s)", local_path, remote, delete_stale)
    sync = store.sync_tree(local_path, remote, delete_stale, env=env)
    if sync.errors:
        raise ExecutorTransientError(
            f"sync to {remote} reported {len(sync.errors)} error(s)",
            {"copied": sync.copied, "deleted": sync.deleted, "errors": sync.errors[:20]},
        )
    log.info("Synced %s: %d copied, %d deleted", remote, sync.copied, sync.deleted)
    return {"status": "synced", "bucket": remote, "copied": sync.copied, "deleted": sync.deleted}
