"""
Subprocess helpers shared by the stage executors.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass

import config
from models.errors import ExecutorPermanentError, ExecutorTransientError

log = logging.getLogger(__name__)

# stderr fragments that mean retrying won't help
PERMANENT_MARKERS = (
    "permission denied",
    "unauthorized",
    "authentication required",
    "access denied",
    "accessdenied",
    "invalidclienttokenid",
    "signaturedoesnotmatch",
    "syntax error",
    "invalid reference format",
    "no such file or directory",
    "nosuchbucket",
    "nosuchdistribution",
)


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run(
    args: list[str],
    cwd: str | None = None,
    env: dict | None = None,
    input: str | None = None,
    timeout: int | None = None,
) -> CommandResult:
    """Run a command, mapping launch failures and timeouts to executor errors."""
    timeout = timeout or config.COMMAND_TIMEOUT
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)
    try:
        proc = subprocess.run(
            args,
            capture_output=True,
            text=True,
            cwd=cwd,
            env=full_env,
            input=input,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ExecutorTransientError(f"{args[0]} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise ExecutorPermanentError(f"Command not found: {args[0]}") from e
    except OSError as e:
        raise ExecutorTransientError(f"{args[0]} could not be started: {e}") from e
    return CommandResult(proc.returncode, proc.stdout, proc.stderr)


def raise_for_result(result: CommandResult, action: str) -> None:
    """Raise a transient or permanent executor error for a failed command."""
    if result.ok:
        return
    detail = (result.stderr or result.stdout).strip()[-2000:]
    diagnostic = {"action": action, "exit_code": result.exit_code, "stderr": detail}
    if is_permanent(detail):
        raise ExecutorPermanentError(f"{action} failed (exit {result.exit_code})", diagnostic)
    raise ExecutorTransientError(f"{action} failed (exit {result.exit_code})", diagnostic)


def is_permanent(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in PERMANENT_MARKERS)
