"""
Pipeline Loader
===============
Parses a GitHub-Actions-style workflow file into a PipelineSpec.

Strategy:
    The pipeline file is the source of truth. Everything the runner does
    (which stages exist, their order, gates, commands) comes from it.

Supported keys:
    top level : name, on, env, environments, jobs
    job       : name, needs, if, environment, approval, container, runs-on,
                env, timeout-minutes, steps
    step      : name, run, uses, env, working-directory, shell,
                continue-on-error, timeout-minutes, if

Discovery:
    Pipelines live in .github/workflows/*.yml|*.yaml, sorted by file name.

Validation:
    Structural problems raise PipelineDefinitionError naming the job/step.
    if: conditions and ${{ }} placeholders in run, env and
    working-directory are syntax-checked here so a typo fails before any
    stage runs. The Stage Graph is built once at load so unknown needs
    and cycles are rejected too.
"""
import os
import re
import logging
from typing import Any, Optional

import yaml

from pipeline_runner.core.constants import SUPPORTED_EVENTS
from pipeline_runner.core.errors import ExpressionError, PipelineDefinitionError
from pipeline_runner.graph.stage_graph import StageGraph
from pipeline_runner.parser.default_pipeline import build_default_pipeline
from pipeline_runner.parser.expressions import validate_condition, validate_interpolations
from pipeline_runner.parser.pipeline_spec import (
    ApprovalGateSpec,
    EventFilter,
    PipelineSpec,
    StageSpec,
    StepSpec,
)

logger = logging.getLogger(__name__)

WORKFLOW_DIR = ".github/workflows"

_STAGE_ID_RE = re.compile(r"^[A-Za-z_][\w-]*$")
_SUPPORTED_SHELLS = {"bash", "sh"}


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------
def discover_pipelines(workspace_path: str) -> list[str]:
    """
    Find all workflow files in the workspace.

    Returns
    -------
    list[str]
        Relative paths (forward slashes), sorted. Empty if none exist.
    """
    workflow_dir = os.path.join(workspace_path, WORKFLOW_DIR)
    if not os.path.isdir(workflow_dir):
        return []
    return [
        f"{WORKFLOW_DIR}/{fname}"
        for fname in sorted(os.listdir(workflow_dir))
        if fname.endswith((".yml", ".yaml"))
    ]


# ---------------------------------------------------------------------------
# Small coercion helpers
# ---------------------------------------------------------------------------
def _as_str_list(value: Any, what: str, job_id: Optional[str] = None) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return tuple(str(v) for v in value)
    raise PipelineDefinitionError(f"'{what}' must be a string or a list of strings", stage=job_id)


def _check_interpolations(text: Optional[str], where: str, job_id: Optional[str] = None) -> None:
    try:
        validate_interpolations(text)
    except ExpressionError as e:
        raise ExpressionError(f"Invalid expression in {where}: {e}", stage=job_id) from e


def _as_env(value: Any, job_id: Optional[str] = None) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PipelineDefinitionError("'env' must be a mapping", stage=job_id)
    env = {}
    for key, val in value.items():
        if isinstance(val, bool):
            val = "true" if val else "false"
        env[str(key)] = "" if val is None else str(val)
        _check_interpolations(env[str(key)], f"env.{key}", job_id)
    return env


def _as_condition(value: Any, job_id: Optional[str] = None) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        value = "true" if value else "false"
    condition = str(value)
    try:
        validate_condition(condition)
    except ExpressionError as e:
        raise ExpressionError(f"Invalid if: condition: {e}", stage=job_id) from e
    return condition


def _as_timeout(value: Any, job_id: Optional[str] = None) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise PipelineDefinitionError("'timeout-minutes' must be a positive number", stage=job_id)
    return float(value)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------
def _parse_event_filter(event: str, value: Any) -> EventFilter:
    if value is None:
        return EventFilter()
    if not isinstance(value, dict):
        raise PipelineDefinitionError(f"Trigger '{event}' must be a mapping")
    return EventFilter(
        branches=_as_str_list(value.get("branches"), f"on.{event}.branches"),
        branches_ignore=_as_str_list(value.get("branches-ignore"), f"on.{event}.branches-ignore"),
        tags=_as_str_list(value.get("tags"), f"on.{event}.tags"),
    )


def _parse_triggers(value: Any) -> dict[str, EventFilter]:
    if value is None:
        return {}
    if isinstance(value, str):
        events = {value: EventFilter()}
    elif isinstance(value, list):
        events = {str(e): EventFilter() for e in value}
    elif isinstance(value, dict):
        events = {str(e): _parse_event_filter(str(e), f) for e, f in value.items()}
    else:
        raise PipelineDefinitionError("'on' must be a string, list or mapping")

    for event in events:
        if event not in SUPPORTED_EVENTS:
            logger.warning("Trigger event '%s' is not supported and will never fire", event)
    return events


# ---------------------------------------------------------------------------
# Environments / approval gates
# ---------------------------------------------------------------------------
def _parse_gate(value: Any, environment: str, where: str, job_id: Optional[str] = None) -> ApprovalGateSpec:
    if value is True or value is None:
        return ApprovalGateSpec(environment=environment)
    if not isinstance(value, dict):
        raise PipelineDefinitionError(f"'{where}' must be true or a mapping", stage=job_id)
    timeout = value.get("timeout-minutes")
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0):
        raise PipelineDefinitionError(f"'{where}.timeout-minutes' must be a positive integer", stage=job_id)
    return ApprovalGateSpec(
        environment=environment,
        reviewers=_as_str_list(value.get("reviewers"), f"{where}.reviewers", job_id),
        timeout_minutes=timeout,
    )


def _parse_environments(value: Any) -> dict[str, ApprovalGateSpec]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PipelineDefinitionError("'environments' must be a mapping")
    return {
        str(name): _parse_gate(rules, str(name), f"environments.{name}")
        for name, rules in value.items()
    }


# ---------------------------------------------------------------------------
# Steps and jobs
# ---------------------------------------------------------------------------
def _default_step_name(index: int, run: Optional[str], uses: Optional[str]) -> str:
    if run:
        first_line = run.strip().splitlines()[0] if run.strip() else ""
        return f"Run {first_line}"[:80] if first_line else f"step-{index}"
    if uses:
        return f"Run {uses}"
    return f"step-{index}"


def _parse_step(index: int, step_def: Any, job_id: str) -> StepSpec:
    if not isinstance(step_def, dict):
        raise PipelineDefinitionError(f"Step {index} must be a mapping", stage=job_id)

    run = step_def.get("run")
    uses = step_def.get("uses")
    if run is None and uses is None:
        raise PipelineDefinitionError(f"Step {index} needs either 'run' or 'uses'", stage=job_id)
    if run is not None and uses is not None:
        raise PipelineDefinitionError(f"Step {index} cannot have both 'run' and 'uses'", stage=job_id)

    shell = str(step_def.get("shell", "bash"))
    if shell not in _SUPPORTED_SHELLS:
        raise PipelineDefinitionError(
            f"Step {index} uses unsupported shell '{shell}' (supported: bash, sh)", stage=job_id
        )

    run_text = str(run).strip() if run is not None else None
    working_directory = str(step_def.get("working-directory", "") or "")
    _check_interpolations(run_text, f"step {index} run", job_id)
    _check_interpolations(working_directory, f"step {index} working-directory", job_id)

    return StepSpec(
        name=str(step_def.get("name") or _default_step_name(index, run_text, uses)),
        run=run_text,
        uses=str(uses) if uses is not None else None,
        env=_as_env(step_def.get("env"), job_id),
        working_directory=working_directory,
        shell=shell,
        continue_on_error=bool(step_def.get("continue-on-error", False)),
        timeout_minutes=_as_timeout(step_def.get("timeout-minutes"), job_id),
        condition=_as_condition(step_def.get("if"), job_id),
    )


def _parse_stage(job_id: str, job_def: Any, environments: dict[str, ApprovalGateSpec]) -> StageSpec:
    if not _STAGE_ID_RE.match(job_id):
        raise PipelineDefinitionError(
            f"Invalid job id '{job_id}' (letters, digits, '-' and '_' only)", stage=job_id
        )
    if not isinstance(job_def, dict):
        raise PipelineDefinitionError(f"Job '{job_id}' must be a mapping", stage=job_id)

    # environment: production  |  environment: {name: production, url: ...}
    environment = job_def.get("environment") or ""
    if isinstance(environment, dict):
        environment = environment.get("name", "")
    environment = str(environment)

    approval = environments.get(environment) if environment else None
    if "approval" in job_def and job_def["approval"] is not False:
        approval = _parse_gate(job_def["approval"], environment, "approval", job_id)

    container = job_def.get("container")
    if isinstance(container, dict):
        container = container.get("image")
    if container is not None and not isinstance(container, str):
        raise PipelineDefinitionError("'container' must be an image name", stage=job_id)

    steps_def = job_def.get("steps")
    if not isinstance(steps_def, list) or not steps_def:
        raise PipelineDefinitionError(f"Job '{job_id}' must define a non-empty 'steps' list", stage=job_id)

    runs_on = job_def.get("runs-on", "")
    if isinstance(runs_on, list):
        runs_on = ",".join(str(r) for r in runs_on)

    return StageSpec(
        id=job_id,
        name=str(job_def.get("name", "") or ""),
        needs=_as_str_list(job_def.get("needs"), "needs", job_id),
        condition=_as_condition(job_def.get("if"), job_id),
        steps=tuple(_parse_step(i, s, job_id) for i, s in enumerate(steps_def)),
        env=_as_env(job_def.get("env"), job_id),
        environment=environment,
        approval=approval,
        container=container,
        timeout_minutes=_as_timeout(job_def.get("timeout-minutes"), job_id),
        runs_on=str(runs_on or ""),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_pipeline(content: str, source_path: str = "") -> PipelineSpec:
    """
    Parse pipeline YAML text.

    Raises
    ------
    PipelineDefinitionError
        If the YAML is invalid or does not describe a pipeline. GraphError
        and ExpressionError (both subclasses) report bad `needs` and bad
        ${{ }} expressions.
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(f"Invalid YAML in {source_path or '<string>'}: {e}") from e

    if not isinstance(data, dict):
        raise PipelineDefinitionError("Pipeline file must contain a mapping at the top level")

    # YAML 1.1 reads a bare `on:` key as boolean True
    triggers_raw = data.get("on", data.get(True))

    jobs = data.get("jobs")
    if not isinstance(jobs, dict) or not jobs:
        raise PipelineDefinitionError("Pipeline must define at least one job under 'jobs'")

    environments = _parse_environments(data.get("environments"))
    stages = tuple(_parse_stage(str(job_id), job_def, environments) for job_id, job_def in jobs.items())

    default_name = os.path.splitext(os.path.basename(source_path))[0] if source_path else "pipeline"
    spec = PipelineSpec(
        name=str(data.get("name") or default_name),
        triggers=_parse_triggers(triggers_raw),
        env=_as_env(data.get("env")),
        stages=stages,
        environments=environments,
        source_path=source_path,
    )

    # Unknown needs, self references and cycles fail at load time
    StageGraph(spec)

    logger.info(
        "Loaded pipeline '%s' | stages=%d | gated=%d",
        spec.name,
        len(spec.stages),
        sum(1 for s in spec.stages if s.approval is not None),
    )
    return spec


def load_pipeline(path: str) -> PipelineSpec:
    """Read and parse a pipeline file from disk."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise PipelineDefinitionError(f"Could not read pipeline file {path}: {e}") from e
    return parse_pipeline(content, source_path=path)


def resolve_pipeline(
    workspace_path: str,
    pipeline_path: Optional[str] = None,
    default_path: Optional[str] = None,
) -> PipelineSpec:
    """
    Pick the pipeline definition for a run.

    Order: explicit path → *default_path* → first file in
    .github/workflows → the generated default pipeline.
    Relative paths are resolved against the workspace.
    """
    candidate = pipeline_path or default_path
    if not candidate:
        discovered = discover_pipelines(workspace_path)
        if discovered:
            candidate = discovered[0]

    if candidate:
        path = candidate if os.path.isabs(candidate) else os.path.join(workspace_path, candidate)
        return load_pipeline(path)

    logger.info("No pipeline file in %s, using the default pipeline", workspace_path)
    return build_default_pipeline(workspace_path)
