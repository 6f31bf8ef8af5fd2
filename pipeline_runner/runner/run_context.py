"""
Run Context
Builds the values ${{ }} expressions see for one stage of one run.
"""
from typing import Mapping, Optional

from pipeline_runner.models.pipeline_run import PipelineRun
from pipeline_runner.parser.pipeline_spec import PipelineSpec, StageSpec


def expression_values(
    run: PipelineRun,
    spec: PipelineSpec,
    stage: StageSpec,
    secrets: Optional[Mapping[str, str]] = None,
    step_env: Optional[Mapping[str, str]] = None,
) -> dict:
    """
    Roots available to expressions:
        trigger.*   — the run's Trigger fields (plus ref_name)
        github.*    — GitHub Actions aliases (ref, ref_name, sha, event_name, actor, run_id)
        env.*       — pipeline env, overlaid by stage env, overlaid by step env
        needs.<id>.result — status of each direct dependency
        run.id      — run identifier
        secrets.*   — secret values
    """
    trigger = run.trigger.model_dump()
    trigger["ref_name"] = run.trigger.ref_name

    env = dict(spec.env)
    env.update(stage.env)
    env.update(step_env or {})

    statuses = run.stage_statuses()
    return {
        "trigger": trigger,
        "github": {
            "ref": run.trigger.ref,
            "ref_name": run.trigger.ref_name,
            "sha": run.trigger.sha,
            "event_name": run.trigger.event,
            "actor": run.trigger.actor,
            "run_id": run.run_id,
        },
        "env": env,
        "needs": {dep: {"result": statuses.get(dep, "")} for dep in stage.needs},
        "run": {"id": run.run_id, "pipeline": run.pipeline_name},
        "secrets": dict(secrets or {}),
    }
