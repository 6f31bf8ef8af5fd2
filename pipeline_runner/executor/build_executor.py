"""
Build Executor
==============
Runs one step's shell script, either directly on the host (subprocess) or
inside an ephemeral Docker container. Returns structured execution results
(log, exit code, timing).

BOUNDARY RULES:
    - Executor ONLY runs commands and observes them.
    - Executor NEVER decides whether a stage should run. That is the Gate
      Controller's job.
    - Executor NEVER resolves ${{ }} expressions. Scripts arrive already
      interpolated; the Orchestrator masks secrets in the returned log.
    - Executor NEVER raises for execution problems. Infrastructure failures
      come back as exit_code -1 with `error` set.

DOCKER STRATEGY:
    - One container per step (ephemeral).
    - Workspace mounted as volume at /workspace.
    - Container destroyed after execution.
"""
import os
import subprocess
import time
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

import docker
from docker.errors import ContainerError, ImageNotFound, APIError
from requests.exceptions import ConnectionError as RequestsConnectionError, ReadTimeout

from pipeline_runner.core.config import (
    CONTAINER_CPU_COUNT,
    CONTAINER_MEMORY_LIMIT,
    DEFAULT_STEP_TIMEOUT,
    DOCKER_IMAGE,
    RUNNER_EXECUTOR,
)
from pipeline_runner.core.constants import HOST_ENV_ALLOWLIST, TIMEOUT_EXIT_CODE
from pipeline_runner.executor.command_resolver import shell_argv

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"


# ---------------------------------------------------------------------------
# Execution Result (returned to the Orchestrator)
# ---------------------------------------------------------------------------
@dataclass
class ExecutionResult:
    """
    Structured output from a single step execution.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, non-zero = failure, -1 = never ran).
    full_log : str
        Combined stdout + stderr.
    log_excerpt : str
        Abbreviated log (first + last N lines) for API previews.
    execution_time_seconds : float
        Wall clock duration of the execution.
    timed_out : bool
        True if the step was killed for exceeding its timeout.
    environment_metadata : dict
        Runtime info: executor kind, image, container id, timeout applied.
    error : str | None
        Error message if execution infrastructure failed (not script errors).
    """
    exit_code: int = -1
    full_log: str = ""
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0
    timed_out: bool = False
    environment_metadata: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough, returns it as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


def _decode(output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


# ---------------------------------------------------------------------------
# Local Execution
# ---------------------------------------------------------------------------
def run_local(
    script: str,
    shell: str = "bash",
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
    timeout_seconds: float = DEFAULT_STEP_TIMEOUT,
) -> ExecutionResult:
    """
    Execute a script on the host with subprocess.

    Parameters
    ----------
    script : str
        Shell script text (already interpolated).
    shell : str
        "bash" (errexit + pipefail) or "sh" (errexit).
    env : Mapping[str, str] | None
        Step variables. Of the host environment only HOST_ENV_ALLOWLIST
        (PATH, HOME, locale, Docker client settings) is passed through.
    cwd : str | None
        Working directory. Must exist.
    timeout_seconds : float
        The process is killed after this many seconds.

    Returns
    -------
    ExecutionResult
        Always returned, never raises.
    """
    result = ExecutionResult()
    start_time = time.monotonic()

    full_env = {k: os.environ[k] for k in HOST_ENV_ALLOWLIST if k in os.environ}
    full_env.update(env or {})
    full_env["CI"] = "true"

    result.environment_metadata = {
        "executor": "local",
        "shell": shell,
        "cwd": cwd or os.getcwd(),
        "timeout_applied": timeout_seconds,
    }

    try:
        completed = subprocess.run(
            shell_argv(shell, script),
            cwd=cwd or None,
            env=full_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout_seconds,
        )
        result.exit_code = completed.returncode
        result.full_log = _decode(completed.stdout)

    except subprocess.TimeoutExpired as e:
        result.exit_code = TIMEOUT_EXIT_CODE
        result.timed_out = True
        result.full_log = _decode(e.stdout) + f"\n>>> Step timed out after {timeout_seconds:.0f}s\n"
        logger.warning("Step timed out after %.0fs", timeout_seconds)

    except (FileNotFoundError, NotADirectoryError) as e:
        result.error = f"Could not start shell '{shell}': {e}"
        result.exit_code = -1
        logger.error(result.error)

    except Exception as e:
        # Catch-all: orchestrator must always receive a result
        result.error = f"Unexpected executor error: {type(e).__name__}: {e}"
        result.exit_code = -1
        logger.exception(result.error)

    result.execution_time_seconds = round(time.monotonic() - start_time, 3)
    result.log_excerpt = create_log_excerpt(result.full_log)

    logger.info(
        "Local execution complete | exit=%d | time=%.2fs",
        result.exit_code, result.execution_time_seconds,
    )
    return result


# ---------------------------------------------------------------------------
# Container Execution
# ---------------------------------------------------------------------------
def run_in_container(
    script: str,
    workspace_path: str,
    docker_image: str = DOCKER_IMAGE,
    shell: str = "bash",
    env: Optional[Mapping[str, str]] = None,
    working_dir: str = "",
    timeout_seconds: float = DEFAULT_STEP_TIMEOUT,
) -> ExecutionResult:
    """
    Execute a script inside an ephemeral Docker container.

    Lifecycle:
        1. Create container with the workspace mounted at /workspace
        2. Wait for it (with timeout)
        3. Capture logs, exit code, timing
        4. Destroy container

    Parameters
    ----------
    script : str
        Shell script text (already interpolated).
    workspace_path : str
        Absolute path to the workspace on the host.
    docker_image : str
        Image the step runs in.
    shell : str
        "bash" or "sh". The image must provide it.
    env : Mapping[str, str] | None
        Container environment (CI=true is always added).
    working_dir : str
        Sub-directory within the workspace to use as working directory.
    timeout_seconds : float
        Max execution time before the container is killed.

    Returns
    -------
    ExecutionResult
        Always returned — never raises unhandled exceptions.
    """
    result = ExecutionResult()
    start_time = time.monotonic()

    container = None
    container_workdir = CONTAINER_WORKSPACE
    if working_dir:
        container_workdir = f"{CONTAINER_WORKSPACE}/{working_dir.strip('/')}"

    environment = dict(env or {})
    environment["CI"] = "true"

    try:
        client = docker.from_env()

        logger.info(
            "Starting container | image=%s | timeout=%ds | workdir=%s",
            docker_image, timeout_seconds, container_workdir,
        )

        container = client.containers.run(
            image=docker_image,
            command=shell_argv(shell, script),
            volumes={
                os.path.abspath(workspace_path): {"bind": CONTAINER_WORKSPACE, "mode": "rw"},
            },
            environment=environment,
            working_dir=container_workdir,
            mem_limit=CONTAINER_MEMORY_LIMIT,
            nano_cpus=CONTAINER_CPU_COUNT * 1_000_000_000,
            labels={"project": "pipeline-runner", "role": "step"},
            detach=True,
        )

        try:
            wait_result = container.wait(timeout=timeout_seconds)
            result.exit_code = wait_result.get("StatusCode", -1)
        except (ReadTimeout, RequestsConnectionError):
            # docker-py surfaces a wait timeout through requests
            container.kill()
            result.exit_code = TIMEOUT_EXIT_CODE
            result.timed_out = True

        log_bytes = container.logs(stdout=True, stderr=True)
        result.full_log = _decode(log_bytes)
        if result.timed_out:
            result.full_log += f"\n>>> Step timed out after {timeout_seconds:.0f}s\n"

        result.environment_metadata = {
            "executor": "docker",
            "image": docker_image,
            "container_id": container.short_id,
            "timeout_applied": timeout_seconds,
            "memory_limit": CONTAINER_MEMORY_LIMIT,
            "cpu_count": CONTAINER_CPU_COUNT,
        }

    except ImageNotFound:
        result.error = f"Docker image '{docker_image}' not found"
        result.exit_code = -1
        logger.error(result.error)

    except ContainerError as e:
        result.error = f"Container execution error: {e}"
        result.exit_code = getattr(e, "exit_status", -1)
        result.full_log = str(e)
        logger.error(result.error)

    except APIError as e:
        result.error = f"Docker API error: {e}"
        result.exit_code = -1
        logger.error(result.error)

    except Exception as e:
        result.error = f"Unexpected executor error: {type(e).__name__}: {e}"
        result.exit_code = -1
        logger.exception(result.error)

    finally:
        # Always destroy the container
        if container is not None:
            try:
                container.remove(force=True)
                logger.info("Container %s destroyed", container.short_id)
            except Exception:
                logger.warning("Failed to remove container", exc_info=True)

    result.execution_time_seconds = round(time.monotonic() - start_time, 3)
    result.log_excerpt = create_log_excerpt(result.full_log)

    logger.info(
        "Container execution complete | exit=%d | time=%.2fs | image=%s",
        result.exit_code, result.execution_time_seconds, docker_image,
    )
    return result


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------
class StepExecutor:
    """
    Chooses where a step runs.

    A stage that declares `container:` always runs in Docker. Otherwise the
    configured default applies (RUNNER_EXECUTOR=local|docker).
    """

    def __init__(self, default_kind: str = RUNNER_EXECUTOR, default_image: str = DOCKER_IMAGE) -> None:
        if default_kind not in ("local", "docker"):
            raise ValueError(f"Unknown executor kind '{default_kind}' (expected local or docker)")
        self.default_kind = default_kind
        self.default_image = default_image

    def kind_for(self, container: Optional[str]) -> str:
        return "docker" if container else self.default_kind

    def execute(
        self,
        script: str,
        workspace_path: str,
        shell: str = "bash",
        env: Optional[Mapping[str, str]] = None,
        working_dir: str = "",
        timeout_seconds: float = DEFAULT_STEP_TIMEOUT,
        container: Optional[str] = None,
    ) -> ExecutionResult:
        if self.kind_for(container) == "docker":
            return run_in_container(
                script,
                workspace_path=workspace_path,
                docker_image=container or self.default_image,
                shell=shell,
                env=env,
                working_dir=working_dir,
                timeout_seconds=timeout_seconds,
            )

        cwd = os.path.join(workspace_path, working_dir) if working_dir else workspace_path
        if not os.path.isdir(cwd):
            result = ExecutionResult(error=f"Working directory does not exist: {cwd}")
            logger.error(result.error)
            return result

        return run_local(
            script,
            shell=shell,
            env=env,
            cwd=cwd,
            timeout_seconds=timeout_seconds,
        )
