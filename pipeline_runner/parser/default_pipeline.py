"""
Default Pipeline
================
Scaffolds a build → scan → image → approve → deploy pipeline for a
workspace that has no pipeline file yet, and renders specs back to YAML.

Stages (linear, each needs the previous one):
    build        lint, unit tests, package (commands from the Command Resolver)
    code-scan    SonarCloud analysis (Maven and Gradle projects only)
    secret-scan  gitleaks over the working tree
    image        docker login / build / push   (only with a Dockerfile)
    image-scan   trivy, fails on HIGH/CRITICAL (only with a Dockerfile)
    deploy       manual approval on `production`, then SSH to EC2_HOST
                 and restart the container (main branch only)

Secrets referenced: DOCKER_USERNAME, DOCKER_PASSWORD, EC2_SSH_KEY,
EC2_HOST, EC2_USER, SONAR_TOKEN. They are passed to scripts through step
env, never inlined into command text.
"""
import os
import re
from typing import Optional

import yaml

from pipeline_runner.executor.command_resolver import resolve_commands
from pipeline_runner.executor.project_detector import detect_project_type, has_dockerfile
from pipeline_runner.parser.pipeline_spec import (
    ApprovalGateSpec,
    EventFilter,
    PipelineSpec,
    StageSpec,
    StepSpec,
)

DEFAULT_BRANCH = "main"
PRODUCTION_ENVIRONMENT = "production"
DEPLOY_APPROVAL_TIMEOUT_MINUTES = 60
APP_PORT = 8080


def _image_basename(workspace_path: str) -> str:
    name = os.path.basename(os.path.abspath(workspace_path)).lower()
    name = re.sub(r"[^a-z0-9._-]+", "-", name).strip("-.")
    return name or "app"


def build_default_pipeline(workspace_path: str, image_name: Optional[str] = None) -> PipelineSpec:
    """
    Build the default pipeline for the project found in *workspace_path*.

    Parameters
    ----------
    workspace_path : str
        Repository root.
    image_name : str | None
        Repository part of the image name (without the Docker Hub user).
        Defaults to the workspace directory name.
    """
    project_type = detect_project_type(workspace_path)
    commands = resolve_commands(project_type)
    image_name = image_name or _image_basename(workspace_path)
    image_ref = f"$DOCKER_USERNAME/{image_name}"

    stages: list[StageSpec] = []

    build_steps = []
    if commands.lint_command:
        build_steps.append(StepSpec(name="Lint", run=commands.lint_command))
    build_steps.append(StepSpec(name="Unit tests", run=commands.test_command))
    if commands.package_command:
        build_steps.append(StepSpec(name="Package", run=commands.package_command))
    stages.append(StageSpec(id="build", name="Build and test", steps=tuple(build_steps)))

    if commands.sonar_command:
        stages.append(StageSpec(
            id="code-scan",
            name="SonarCloud analysis",
            needs=(stages[-1].id,),
            env={"SONAR_TOKEN": "${{ secrets.SONAR_TOKEN }}"},
            steps=(StepSpec(name="Sonar scan", run=commands.sonar_command),),
        ))

    stages.append(StageSpec(
        id="secret-scan",
        name="Gitleaks secret scan",
        needs=(stages[-1].id,),
        steps=(StepSpec(name="Gitleaks", run="gitleaks detect --source . --no-banner --redact"),),
    ))

    environments = {}
    if has_dockerfile(workspace_path):
        docker_env = {
            "DOCKER_USERNAME": "${{ secrets.DOCKER_USERNAME }}",
            "DOCKER_PASSWORD": "${{ secrets.DOCKER_PASSWORD }}",
            "IMAGE_TAG": "${{ github.sha }}",
        }
        stages.append(StageSpec(
            id="image",
            name="Build and push image",
            needs=(stages[-1].id,),
            env=docker_env,
            steps=(
                StepSpec(
                    name="Docker login",
                    run='printf \'%s\' "$DOCKER_PASSWORD" | docker login -u "$DOCKER_USERNAME" --password-stdin',
                ),
                StepSpec(
                    name="Docker build",
                    run=f'docker build -t "{image_ref}:${{IMAGE_TAG:-latest}}" -t "{image_ref}:latest" .',
                ),
                StepSpec(
                    name="Docker push",
                    run=(
                        f'docker push "{image_ref}:${{IMAGE_TAG:-latest}}"\n'
                        f'docker push "{image_ref}:latest"'
                    ),
                ),
            ),
        ))
        stages.append(StageSpec(
            id="image-scan",
            name="Trivy image scan",
            needs=(stages[-1].id,),
            env=docker_env,
            steps=(StepSpec(
                name="Trivy",
                run=f'trivy image --exit-code 1 --severity HIGH,CRITICAL "{image_ref}:${{IMAGE_TAG:-latest}}"',
            ),),
        ))

        gate = ApprovalGateSpec(
            environment=PRODUCTION_ENVIRONMENT,
            timeout_minutes=DEPLOY_APPROVAL_TIMEOUT_MINUTES,
        )
        environments[PRODUCTION_ENVIRONMENT] = gate
        stages.append(StageSpec(
            id="deploy",
            name="Deploy to EC2",
            needs=(stages[-1].id,),
            condition=f"github.ref == 'refs/heads/{DEFAULT_BRANCH}'",
            environment=PRODUCTION_ENVIRONMENT,
            approval=gate,
            env={
                "DOCKER_USERNAME": "${{ secrets.DOCKER_USERNAME }}",
                "EC2_SSH_KEY": "${{ secrets.EC2_SSH_KEY }}",
                "EC2_HOST": "${{ secrets.EC2_HOST }}",
                "EC2_USER": "${{ secrets.EC2_USER }}",
            },
            steps=(StepSpec(
                name="Deploy over SSH",
                run=(
                    'key_file="$(mktemp)"\n'
                    "trap 'rm -f \"$key_file\"' EXIT\n"
                    'printf \'%s\\n\' "$EC2_SSH_KEY" > "$key_file"\n'
                    'chmod 600 "$key_file"\n'
                    'ssh -i "$key_file" -o StrictHostKeyChecking=no "$EC2_USER@$EC2_HOST" '
                    f'"docker pull {image_ref}:latest && '
                    f'(docker rm -f {image_name} || true) && '
                    f'docker run -d --name {image_name} -p {APP_PORT}:{APP_PORT} {image_ref}:latest"'
                ),
            ),),
        ))

    return PipelineSpec(
        name=f"{image_name} CI/CD",
        triggers={
            "push": EventFilter(branches=(DEFAULT_BRANCH,)),
            "pull_request": EventFilter(branches=(DEFAULT_BRANCH,)),
            "workflow_dispatch": EventFilter(),
        },
        stages=tuple(stages),
        environments=environments,
    )


# ---------------------------------------------------------------------------
# YAML rendering
# ---------------------------------------------------------------------------
class _WorkflowDumper(yaml.SafeDumper):
    pass


def _str_representer(dumper: yaml.SafeDumper, data: str):
    style = "|" if "\n" in data else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style=style)


_WorkflowDumper.add_representer(str, _str_representer)


def _event_filter_dict(event_filter: EventFilter) -> Optional[dict]:
    data = {}
    if event_filter.branches:
        data["branches"] = list(event_filter.branches)
    if event_filter.branches_ignore:
        data["branches-ignore"] = list(event_filter.branches_ignore)
    if event_filter.tags:
        data["tags"] = list(event_filter.tags)
    return data or None


def _gate_dict(gate: ApprovalGateSpec):
    data = {}
    if gate.reviewers:
        data["reviewers"] = list(gate.reviewers)
    if gate.timeout_minutes:
        data["timeout-minutes"] = gate.timeout_minutes
    return data or True


def _step_dict(step: StepSpec) -> dict:
    data: dict = {"name": step.name}
    if step.condition:
        data["if"] = step.condition
    if step.run is not None:
        data["run"] = step.run
    if step.uses is not None:
        data["uses"] = step.uses
    if step.env:
        data["env"] = dict(step.env)
    if step.working_directory:
        data["working-directory"] = step.working_directory
    if step.shell != "bash":
        data["shell"] = step.shell
    if step.continue_on_error:
        data["continue-on-error"] = True
    if step.timeout_minutes:
        data["timeout-minutes"] = step.timeout_minutes
    return data


def _stage_dict(stage: StageSpec, environments: dict) -> dict:
    data: dict = {}
    if stage.name:
        data["name"] = stage.name
    data["runs-on"] = stage.runs_on or "self-hosted"
    if stage.needs:
        data["needs"] = list(stage.needs)
    if stage.condition:
        data["if"] = stage.condition
    if stage.environment:
        data["environment"] = stage.environment
    if stage.approval is not None and environments.get(stage.environment) != stage.approval:
        data["approval"] = _gate_dict(stage.approval)
    if stage.container:
        data["container"] = stage.container
    if stage.timeout_minutes:
        data["timeout-minutes"] = stage.timeout_minutes
    if stage.env:
        data["env"] = dict(stage.env)
    data["steps"] = [_step_dict(s) for s in stage.steps]
    return data


def dump_pipeline(spec: PipelineSpec) -> str:
    """Render a PipelineSpec as workflow YAML that load_pipeline() reads back."""
    document: dict = {"name": spec.name}
    if spec.triggers:
        document["on"] = {e: _event_filter_dict(f) for e, f in spec.triggers.items()}
    if spec.env:
        document["env"] = dict(spec.env)
    if spec.environments:
        document["environments"] = {n: _gate_dict(g) for n, g in spec.environments.items()}
    document["jobs"] = {s.id: _stage_dict(s, spec.environments) for s in spec.stages}
    return yaml.dump(document, Dumper=_WorkflowDumper, sort_keys=False, default_flow_style=False)
