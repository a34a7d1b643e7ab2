"""
Shared pytest fixtures and fake backends.

The fakes record how often they were called *and* the remote state they
leave behind, so idempotence can be checked as "same end state, no
duplicate effect".
"""

import asyncio
import shlex
from pathlib import Path

import pytest

import config
from activities.artifact_sync import SyncResult
from activities.cache_invalidate import InvalidationConflict
from activities.executor import StageExecutor
from activities.shell import CommandResult
from features.ledger import RunLedger
from features.secrets import MappingSecretBackend, SecretStoreAdapter
from models.schemas import AttemptOutcome, StageOutcome
from utils.definitions import parse_pipeline
from workflows.engine import PipelineEngine, RetryPolicy


# ── Remote-side fakes ─────────────────────────────────────────────────

class FakeRegistry:
    def __init__(self):
        self.tags = set()
        self.builds = 0
        self.pushes = 0
        self.logins = []

    def image_exists(self, remote_tag):
        return remote_tag in self.tags

    def build_image(self, context_dir, dockerfile, local_ref, build_args):
        self.builds += 1

    def push_image(self, local_ref, remote_tag):
        self.pushes += 1
        self.tags.add(remote_tag)

    def login(self, registry, username, password):
        self.logins.append((registry, username))


class FakeHost:
    """A remote host running docker containers, driven by the deploy scripts."""

    def __init__(self):
        self.containers = {}  # name -> {"image": str, "running": bool}
        self.deploys = 0
        self.scripts = []
        self.identity_files = []
        self.fail_next = []  # CommandResults returned before normal handling

    def run_command(self, host_ref, script, identity_file=None):
        self.scripts.append(script)
        self.identity_files.append(identity_file)
        if self.fail_next:
            return self.fail_next.pop(0)
        if "docker inspect" in script:
            name = shlex.split(script.splitlines()[0])[4]
            c = self.containers.get(name)
            if c is None:
                return CommandResult(0, "", "")
            return CommandResult(0, f"{c['image']}|{'true' if c['running'] else 'false'}\n", "")
        run_line = next(line for line in script.splitlines() if line.startswith("docker run"))
        tokens = shlex.split(run_line)
        name = tokens[tokens.index("--name") + 1]
        self.containers[name] = {"image": tokens[-1], "running": True, "args": tokens}
        self.deploys += 1
        return CommandResult(0, "container-id\n", "")


class FakeObjectStore:
    def __init__(self):
        self.objects = {}  # (bucket, key) -> bytes
        self.calls = 0
        self.total_copied = 0
        self.total_deleted = 0

    def sync_tree(self, local_path, remote_bucket, delete_stale, env=None):
        self.calls += 1
        root = Path(local_path)
        local = {
            str(p.relative_to(root)): p.read_bytes()
            for p in root.rglob("*") if p.is_file()
        }
        result = SyncResult()
        for key, data in local.items():
            if self.objects.get((remote_bucket, key)) != data:
                self.objects[(remote_bucket, key)] = data
                result.copied += 1
        if delete_stale:
            for bucket, key in list(self.objects):
                if bucket == remote_bucket and key not in local:
                    del self.objects[(bucket, key)]
                    result.deleted += 1
        self.total_copied += result.copied
        self.total_deleted += result.deleted
        return result

    def keys(self, bucket):
        return sorted(k for b, k in self.objects if b == bucket)


class FakeCdn:
    def __init__(self):
        self.invalidations = {}  # caller_reference -> (id, paths)
        self.calls = 0

    def invalidate(self, distribution_ref, path_patterns, caller_reference, env=None):
        self.calls += 1
        if caller_reference in self.invalidations:
            raise InvalidationConflict("already_invalidated", self.invalidations[caller_reference][0])
        invalidation_id = f"I{len(self.invalidations) + 1:04d}"
        self.invalidations[caller_reference] = (invalidation_id, list(path_patterns))
        return invalidation_id


# ── Engine-side fakes ─────────────────────────────────────────────────

class ScriptedExecutor:
    """Executor whose per-stage behaviour is scripted by the test."""

    def __init__(self, failures=None, always=None, delay=0.0):
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.always = dict(always or {})
        self.delay = delay
        self.calls = []
        self.seen_secrets = []
        self.gates = {}
        self.active = 0
        self.max_active = 0

    def gate(self, stage_id):
        """Block stage_id until release(stage_id); returns the 'started' event."""
        self.gates[stage_id] = (asyncio.Event(), asyncio.Event())
        return self.gates[stage_id][0]

    def release(self, stage_id):
        self.gates[stage_id][1].set()

    def called(self, stage_id):
        return [attempt for sid, attempt in self.calls if sid == stage_id]

    async def execute(self, stage, secrets, ctx):
        self.calls.append((stage.id, ctx.attempt))
        self.seen_secrets.append(dict(secrets))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if stage.id in self.gates:
                started, release = self.gates[stage.id]
                started.set()
                await release.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if stage.id in self.always:
                raise self.always[stage.id]()
            pending = self.failures.get(stage.id)
            if pending:
                raise pending.pop(0)
            return StageOutcome(AttemptOutcome.SUCCESS, {"status": "ok", "stage": stage.id})
        finally:
            self.active -= 1


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


# ── Helpers ───────────────────────────────────────────────────────────

def stage_doc(stage_id, needs=(), secrets=(), kind="cache-invalidate", params=None, **extra):
    doc = {
        "id": stage_id,
        "kind": kind,
        "needs": list(needs),
        "secrets": list(secrets),
        "params": params if params is not None else {"distribution_id": "DIST"},
    }
    doc.update(extra)
    return doc


def pipeline_of(*stages, name="p"):
    return parse_pipeline({"name": name, "stages": list(stages)})


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Keep locks, staging and run logs out of the project tree."""
    monkeypatch.setattr(config, "LOCK_DIR", tmp_path / "locks")
    monkeypatch.setattr(config, "STAGING_DIR", tmp_path / "staging")
    monkeypatch.setattr(config, "PIPELINE_RUNS_DIR", tmp_path / "runs")
    return tmp_path


@pytest.fixture
def secret_backend():
    return MappingSecretBackend({
        "registry_password": "hunter2-registry",
        "ssh_key": "-----BEGIN KEY-----\nabc\n-----END KEY-----",
        "db_url": "postgres://app:s3cret@db/app",
        "aws_key": "AKIAEXAMPLE",
        "aws_secret": "wJalrEXAMPLEKEY",
    })


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay=1.0, factor=2.0, max_delay=30.0)


@pytest.fixture
def make_engine(secret_backend, retry_policy, tmp_path):
    """Build an engine for a list of stage docs with a scripted executor."""
    def _make(stages, executor=None, ledger=None, sleep=None, **kwargs):
        definition = pipeline_of(*stages)
        executor = executor or ScriptedExecutor()
        retry = kwargs.pop("retry", retry_policy)
        engine = PipelineEngine(
            pipelines={definition.name: definition},
            secrets=SecretStoreAdapter(secret_backend),
            executor=executor,
            ledger=ledger or RunLedger(),
            retry=retry,
            sleep=sleep or RecordingSleep(),
            runs_dir=tmp_path / "runs",
            **kwargs,
        )
        return engine, executor
    return _make


@pytest.fixture
def fakes():
    return {
        "registry": FakeRegistry(),
        "host": FakeHost(),
        "store": FakeObjectStore(),
        "cdn": FakeCdn(),
    }


@pytest.fixture
def stage_executor(fakes, tmp_path):
    return StageExecutor(
        registry=fakes["registry"],
        channel=fakes["host"],
        store=fakes["store"],
        cdn=fakes["cdn"],
        staging_root=tmp_path / "staging",
    )
