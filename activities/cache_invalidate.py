"""
Activity: Cache Invalidate — invalidates CDN paths after a sync.

The caller reference is derived from run and stage, so a retry sends the
same request. An "already exists" response counts as success; a throttled
request ("too many invalidations in progress") created nothing and is
retried.
"""

from __future__ import annotations

import json
import logging
from typing import Mapping, Protocol

import config
from activities import shell
from models.errors import ExecutorTransientError
from models.schemas import RunContext, StageDefinition

log = logging.getLogger(__name__)


class InvalidationConflict(Exception):
    """The CDN already has this invalidation."""

    def __init__(self, reason: str, invalidation_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.invalidation_id = invalidation_id


class CdnClient(Protocol):
    def invalidate(self, distribution_ref: str, path_patterns: list[str], caller_reference: str,
                   env: Mapping[str, str] | None = None) -> str: ...


class CloudFrontClient:
    """CDN invalidation backed by `aws cloudfront create-invalidation`."""

    CONFLICT_MARKERS = {
        "invalidationbatchalreadyexists": "already_invalidated",
    }
    # Throttled: CloudFront refused the request, nothing was created
    THROTTLE_MARKERS = ("toomanyinvalidationsinprogress", "throttling")

    def __init__(self, aws: str | None = None):
        self.aws = aws or config.AWS_CLI

    def invalidate(self, distribution_ref, path_patterns, caller_reference, env=None) -> str:
        batch = {
            "Paths": {"Quantity": len(path_patterns), "Items": list(path_patterns)},
            "CallerReference": caller_reference,
        }
        result = shell.run(
            [
                self.aws, "cloudfront", "create-invalidation",
                "--distribution-id", distribution_ref,
                "--invalidation-batch", json.dumps(batch),
                "--output", "json",
            ],
            env=dict(env or {}),
            timeout=120,
        )
        if not result.ok:
            lowered = result.stderr.lower()
            for marker, reason in self.CONFLICT_MARKERS.items():
                if marker in lowered:
                    raise InvalidationConflict(reason)
            if any(marker in lowered for marker in self.THROTTLE_MARKERS):
                raise ExecutorTransientError(
                    f"invalidate {distribution_ref} throttled",
                    {"action": f"invalidate {distribution_ref}", "exit_code": result.exit_code,
                     "stderr": result.stderr.strip()[-2000:]},
                )
            shell.raise_for_result(result, f"invalidate {distribution_ref}")
        try:
            return json.loads(result.stdout)["Invalidation"]["Id"]
        except (json.JSONDecodeError, KeyError, TypeError):
            log.warning("Unexpected create-invalidation output: %s", result.stdout[:500])
            return ""


def cache_invalidate(
    stage: StageDefinition,
    secrets: Mapping[str, str],
    ctx: RunContext,
    cdn: CdnClient,
) -> dict:
    """
    Invalidate the stage's paths on its distribution.

    Returns:
        {"status": "requested" | "already_invalidated",
         "distribution_id": str, "invalidation_id": str | None}
    """
    params = stage.params
    distribution = params["distribution_id"]
    paths = list(params.get("paths") or ["/*"])
    env = {name: secrets[secret] for name, secret in (params.get("credentials") or {}).items()}
    caller_reference = f"{ctx.run_id}-{stage.id}"

    log.info("Invalidating %s on %s (ref %s)", ", ".join(paths), distribution, caller_reference)
    try:
        invalidation_id = cdn.invalidate(distribution, paths, caller_reference, env=env)
    except InvalidationConflict as e:
        log.info("Invalidation on %s not needed: %s", distribution, e.reason)
        return {"status": e.reason, "distribution_id": distribution,
                "invalidation_id": e.invalidation_id}
    return {"status": "requested", "distribution_id": distribution,
            "invalidation_id": invalidation_id}
