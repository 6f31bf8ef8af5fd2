"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    RUNNER_EXECUTOR                   — "local" (subprocess) or "docker" (default: local)
    DOCKER_IMAGE                      — Image used when RUNNER_EXECUTOR=docker and a
                                        stage declares no container (default: ubuntu:22.04)
    DEFAULT_STEP_TIMEOUT              — Max seconds for one step (default: 1800)
    DEFAULT_APPROVAL_TIMEOUT_MINUTES  — How long a manual gate waits (default: 1440)
    RESULTS_DIR                       — Where run snapshots are written (default: results)
    WORKSPACE_ROOT                    — Default workspace for triggered runs (default: cwd)
    DEFAULT_PIPELINE_PATH             — Pipeline file used by webhooks / POST /runs
    GITHUB_WEBHOOK_SECRET             — Shared secret for X-Hub-Signature-256 checks
    LOG_DIR                           — Directory for the daily log file (default: logs)
    API_HOST / API_PORT               — uvicorn bind address (default: 127.0.0.1:8000)

Timeout Philosophy:
    DEFAULT_STEP_TIMEOUT applies to a single step when neither the step nor
    its stage declares timeout-minutes. A stage timeout bounds the sum of its
    steps; whichever is smaller wins for each step.
"""
import os
from dotenv import load_dotenv

load_dotenv()

RUNNER_EXECUTOR = os.getenv("RUNNER_EXECUTOR", "local").lower()
DOCKER_IMAGE = os.getenv("DOCKER_IMAGE", "ubuntu:22.04")

# Execution timeout in seconds: max time for a single step
DEFAULT_STEP_TIMEOUT = int(os.getenv("DEFAULT_STEP_TIMEOUT", 1800))

# Manual approval gates expire after this many minutes
DEFAULT_APPROVAL_TIMEOUT_MINUTES = int(os.getenv("DEFAULT_APPROVAL_TIMEOUT_MINUTES", 1440))

RESULTS_DIR = os.getenv("RESULTS_DIR", "results")
WORKSPACE_ROOT = os.getenv("WORKSPACE_ROOT", os.getcwd())
DEFAULT_PIPELINE_PATH = os.getenv("DEFAULT_PIPELINE_PATH", "")
LOG_DIR = os.getenv("LOG_DIR", "logs")

GITHUB_WEBHOOK_SECRET = os.getenv("GITHUB_WEBHOOK_SECRET", "")

API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", 8000))

# Docker sandbox limits
CONTAINER_MEMORY_LIMIT = os.getenv("CONTAINER_MEMORY_LIMIT", "2g")
CONTAINER_CPU_COUNT = int(os.getenv("CONTAINER_CPU_COUNT", 2))
