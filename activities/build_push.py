"""
Activity: Build and Push — builds an image tagged from the run and pushes it.

The remote tag is derived from the run identity, so a retry of the same run
targets the same tag. If the registry already has it the stage is a no-op.
"""

from __future__ import annotations

import logging
from typing import Mapping, Protocol

import config
from activities import shell
from models.errors import ExecutorPermanentError
from models.schemas import RunContext, StageDefinition

log = logging.getLogger(__name__)


class RegistryClient(Protocol):
    def image_exists(self, remote_tag: str) -> bool: ...

    def build_image(self, context_dir: str, dockerfile: str | None, local_ref: str,
                    build_args: Mapping[str, str]) -> None: ...

    def push_image(self, local_ref: str, remote_tag: str) -> None: ...

    def login(self, registry: str, username: str, password: str) -> None: ...


class DockerRegistryClient:
    """Registry client backed by the docker CLI."""

    def __init__(self, docker: str | None = None):
        self.docker = docker or config.DOCKER_CLI

    def image_exists(self, remote_tag: str) -> bool:
        result = shell.run([self.docker, "manifest", "inspect", remote_tag], timeout=60)
        if result.ok:
            return True
        stderr = result.stderr.lower()
        if "no such manifest" in stderr or "manifest unknown" in stderr or "not found" in stderr:
            return False
        shell.raise_for_result(result, f"inspect {remote_tag}")
        return False

    def build_image(self, context_dir, dockerfile, local_ref, build_args) -> None:
        args = [self.docker, "build", "-t", local_ref]
        if dockerfile:
            args += ["-f", dockerfile]
        for key, value in sorted(build_args.items()):
            args += ["--build-arg", f"{key}={value}"]
        args.append(context_dir)
        shell.raise_for_result(shell.run(args), f"build {local_ref}")

    def push_image(self, local_ref: str, remote_tag: str) -> None:
        if local_ref != remote_tag:
            shell.raise_for_result(shell.run([self.docker, "tag", local_ref, remote_tag], timeout=60),
                                   f"tag {remote_tag}")
        shell.raise_for_result(shell.run([self.docker, "push", remote_tag]), f"push {remote_tag}")

    def login(self, registry: str, username: str, password: str) -> None:
        result = shell.run(
            [self.docker, "login", registry, "--username", username, "--password-stdin"],
            input=password,
            timeout=60,
        )
        shell.raise_for_result(result, f"login {registry}")


def remote_tag_for(stage: StageDefinition, ctx: RunContext) -> str:
    """Deterministic image reference for this run, e.g. ghcr.io/acme/api:run-2026..."""
    template = stage.params.get("tag_template") or config.DEFAULT_TAG_TEMPLATE
    try:
        tag = ctx.render(template)
    except (KeyError, IndexError, ValueError) as e:
        raise ExecutorPermanentError(f"Bad tag_template {template!r}") from e
    return f"{stage.params['repository']}:{tag}"


def build_and_push(
    stage: StageDefinition,
    secrets: Mapping[str, str],
    ctx: RunContext,
    registry: RegistryClient,
) -> dict:
    """
    Build the stage's image and push it under the run's tag.

    Returns:
        {"status": "pushed" | "already_pushed", "image": "<repository>:<tag>"}
    """
    params = stage.params
    remote_tag = remote_tag_for(stage, ctx)

    username_secret = params.get("username_secret")
    password_secret = params.get("password_secret")
    if password_secret:
        registry.login(
            params.get("registry") or params["repository"].split("/")[0],
            secrets[username_secret] if username_secret else params.get("username", ""),
            secrets[password_secret],
        )

    if registry.image_exists(remote_tag):
        log.info("Image %s already in registry — skipping build", remote_tag)
        return {"status": "already_pushed", "image": remote_tag}

    build_args = {k: str(v) for k, v in (params.get("build_args") or {}).items()}
    build_args.setdefault("GIT_COMMIT", ctx.trigger.commit_id)
    log.info("Building %s from %s", remote_tag, params.get("context", "."))
    registry.build_image(params.get("context", "."), params.get("dockerfile"), remote_tag, build_args)
    registry.push_image(remote_tag, remote_tag)
    log.info("Pushed %s", remote_tag)
    return {"status": "pushed", "image": remote_tag}
