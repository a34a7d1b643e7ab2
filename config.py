"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
PIPELINES_DIR = Path(os.getenv("PIPELINES_DIR", str(PROJECT_ROOT / "pipelines")))
PIPELINE_RUNS_DIR = Path(os.getenv("PIPELINE_RUNS_DIR", str(PROJECT_ROOT / "pipeline_runs")))
STAGING_DIR = Path(os.getenv("STAGING_DIR", str(PROJECT_ROOT / ".staging")))
LOCK_DIR = Path(os.getenv("LOCK_DIR", str(PROJECT_ROOT / ".locks")))

# Postgres (run ledger). Empty means in-memory only.
DATABASE_URL = os.getenv("DATABASE_URL", "")

# Temporal
TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_TASK_QUEUE = "deploy-pilot-queue"
TEMPORAL_NAMESPACE = "default"

# Engine
MAX_WORKERS = int(os.getenv("MAX_WORKERS", "8"))
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
RETRY_FACTOR = float(os.getenv("RETRY_FACTOR", "2.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "30.0"))
# A process driving a run renews its claim every RUN_LEASE_SEC / 3 seconds.
# Claims not renewed within RUN_LEASE_SEC can be taken over.
RUN_LEASE_SEC = float(os.getenv("RUN_LEASE_SEC", "60"))

# Executors
COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "600"))  # seconds
HOST_LOCK_TIMEOUT = float(os.getenv("HOST_LOCK_TIMEOUT", "300"))
DEFAULT_TAG_TEMPLATE = "{run_id}"
SSH_USER = os.getenv("SSH_USER", "deploy")
AWS_CLI = os.getenv("AWS_CLI", "aws")
DOCKER_CLI = os.getenv("DOCKER_CLI", "docker")
