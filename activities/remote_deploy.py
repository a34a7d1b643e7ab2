"""
Activity: Remote Deploy — replaces the running container on a remote host.

Runs over SSH: pull the run's image, stop and remove the prior container,
start the new one. "Already stopped" and "no such container" are not
errors. If the host already runs the target image the stage does nothing,
so a retry after a partial deploy picks up where it left off.
"""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path
from typing import Mapping, Protocol

import config
from activities import shell
from activities.build_push import remote_tag_for
from activities.locks import HostLock
from activities.shell import CommandResult
from models.errors import ExecutorPermanentError
from models.schemas import RunContext, StageDefinition

log = logging.getLogger(__name__)

SSH_CONNECTION_ERROR = 255


class RemoteChannel(Protocol):
    def run_command(self, host_ref: str, script: str,
                    identity_file: str | None = None) -> CommandResult: ...


class SshChannel:
    """Remote execution over the ssh CLI; the script is fed to bash on stdin."""

    def __init__(self, user: str | None = None, port: int = 22):
        self.user = user or config.SSH_USER
        self.port = port

    def run_command(self, host_ref: str, script: str,
                    identity_file: str | None = None) -> CommandResult:
        target = host_ref if "@" in host_ref else f"{self.user}@{host_ref}"
        args = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-p", str(self.port),
        ]
        if identity_file:
            args += ["-i", identity_file, "-o", "IdentitiesOnly=yes"]
        args += [target, "bash", "-s"]
        return shell.run(args, input=script)


def inspect_script(container_name: str) -> str:
    name = shlex.quote(container_name)
    return (
        f"docker inspect --format '{{{{.Config.Image}}}}|{{{{.State.Running}}}}' {name} "
        "2>/dev/null || true\n"
    )


def deploy_script(image: str, container_name: str, params: Mapping, env: Mapping[str, str]) -> str:
    """Shell script that swaps the container to the new image."""
    img = shlex.quote(image)
    name = shlex.quote(container_name)
    run_args = ["-d", "--name", name, "--restart", shlex.quote(params.get("restart", "unless-stopped"))]
    for port in params.get("ports") or []:
        run_args += ["-p", shlex.quote(str(port))]
    for key, value in sorted(env.items()):
        run_args += ["-e", shlex.quote(f"{key}={value}")]
    for extra in params.get("docker_args") or []:
        run_args.append(shlex.quote(str(extra)))
    return "\n".join([
        "set -euo pipefail",
        f"docker pull {img}",
        f"docker stop {name} >/dev/null 2>&1 || true",
        f"docker rm {name} >/dev/null 2>&1 || true",
        f"docker run {' '.join(run_args)} {img}",
        "",
    ])


def remote_deploy(
    stage: StageDefinition,
    secrets: Mapping[str, str],
    ctx: RunContext,
    channel: RemoteChannel,
) -> dict:
    """
    Deploy the run's image to the stage's host.

    Returns:
        {"status": "deployed" | "already_running", "host": str, "image": str}
    """
    params = stage.params
    host = params["host"]
    container_name = params["container_name"]
    image = remote_tag_for_image(stage, ctx)

    env = {k: str(v) for k, v in (params.get("env") or {}).items()}
    for env_name, secret_name in (params.get("env_secrets") or {}).items():
        env[env_name] = secrets[secret_name]

    identity_file = None
    if params.get("ssh_key_secret"):
        identity_file = _write_identity(ctx, secrets[params["ssh_key_secret"]])

    with HostLock(host):
        current = _check(channel.run_command(host, inspect_script(container_name), identity_file),
                         f"inspect {container_name} on {host}")
        running_image, _, running = current.stdout.strip().partition("|")
        if running_image == image and running == "true":
            log.info("%s on %s already runs %s — nothing to do", container_name, host, image)
            return {"status": "already_running", "host": host, "image": image}

        log.info("Deploying %s to %s as %s", image, host, container_name)
        result = channel.run_command(host, deploy_script(image, container_name, params, env), identity_file)
        _check(result, f"deploy {container_name} on {host}")

    return {"status": "deployed", "host": host, "image": image}


def remote_tag_for_image(stage: StageDefinition, ctx: RunContext) -> str:
    # Same tag derivation as build-and-push, with "image" as the repository
    return remote_tag_for(
        StageDefinition(
            id=stage.id,
            kind=stage.kind,
            params={"repository": stage.params["image"],
                    "tag_template": stage.params.get("tag_template")},
        ),
        ctx,
    )


def _check(result: CommandResult, action: str) -> CommandResult:
    # ssh exits 255 on connection errors; "Permission denied" there is permanent
    if result.exit_code == SSH_CONNECTION_ERROR:
        action = f"ssh ({action})"
    shell.raise_for_result(result, action)
    return result


def _write_identity(ctx: RunContext, key: str) -> str:
    if ctx.staging_dir is None:
        raise ExecutorPermanentError("No staging area for the SSH identity")
    path = Path(ctx.staging_dir) / "id_deploy"
    fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(key if key.endswith("\n") else key + "\n")
    return str(path)
