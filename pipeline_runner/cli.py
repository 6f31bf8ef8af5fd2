"""
Command-Line Interface

Usage:
    pipeline-runner validate .github/workflows/ci.yml
    pipeline-runner graph .github/workflows/ci.yml
    pipeline-runner run --workspace . --branch main --approve-all
    pipeline-runner init --workspace .
    pipeline-runner serve --port 8000
"""
import argparse
import json
import logging
import os
import sys
from typing import Optional, Sequence

import uvicorn

from pipeline_runner.core import config
from pipeline_runner.core.constants import RunStatus, StageStatus
from pipeline_runner.core.errors import ApprovalError, PipelineDefinitionError, PipelineError
from pipeline_runner.executor.build_executor import StepExecutor
from pipeline_runner.graph.stage_graph import StageGraph
from pipeline_runner.models.pipeline_run import PipelineRun
from pipeline_runner.models.trigger import Trigger
from pipeline_runner.parser.default_pipeline import build_default_pipeline, dump_pipeline
from pipeline_runner.parser.pipeline_loader import WORKFLOW_DIR, load_pipeline, resolve_pipeline
from pipeline_runner.parser.pipeline_spec import referenced_secrets
from pipeline_runner.runner.orchestrator import PipelineOrchestrator
from pipeline_runner.secrets.secret_store import SecretStore
from pipeline_runner.services.results_writer import ResultsWriter
from pipeline_runner.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

DEFAULT_INIT_FILE = "pipeline.yml"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipeline-runner",
        description="Run CI/CD pipelines with manual approval gates",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set logging level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Check a pipeline file and its stage graph")
    validate.add_argument("pipeline", help="Path to the pipeline YAML")

    graph = sub.add_parser("graph", help="Print stages in execution order")
    graph.add_argument("pipeline", help="Path to the pipeline YAML")
    graph.add_argument("--json", action="store_true", help="Print as JSON")

    run = sub.add_parser("run", help="Execute a pipeline in the foreground")
    run.add_argument("pipeline", nargs="?", default=None,
                     help="Pipeline YAML (default: first file in .github/workflows, else the default pipeline)")
    run.add_argument("--workspace", default=config.WORKSPACE_ROOT, help="Repository root to run in")
    run.add_argument("--event", default="workflow_dispatch", help="Triggering event name")
    run.add_argument("--branch", default="main", help="Branch the run is for")
    run.add_argument("--tag", default=None, help="Run for a tag instead of a branch")
    run.add_argument("--sha", default="", help="Commit SHA")
    run.add_argument("--actor", default=os.getenv("USER", "cli"), help="Who triggers and approves")
    run.add_argument("--auto-approve", action="append", default=[], metavar="STAGE",
                     help="Approve this gated stage without prompting (repeatable)")
    run.add_argument("--approve-all", action="store_true", help="Approve every gate without prompting")
    run.add_argument("--results-dir", default=config.RESULTS_DIR, help="Where to write the run JSON")

    init = sub.add_parser("init", help="Write the default pipeline for a workspace")
    init.add_argument("--workspace", default=config.WORKSPACE_ROOT, help="Repository root")
    init.add_argument("--image-name", default=None, help="Docker image repository name")
    init.add_argument("--output", default=None, help=f"Target file (default: {WORKFLOW_DIR}/{DEFAULT_INIT_FILE})")
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    serve = sub.add_parser("serve", help="Start the HTTP API")
    serve.add_argument("--host", default=config.API_HOST)
    serve.add_argument("--port", type=int, default=config.API_PORT)
    serve.add_argument("--reload", action="store_true")

    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
def cmd_validate(args: argparse.Namespace) -> int:
    spec = load_pipeline(args.pipeline)
    graph = StageGraph(spec)
    print(f"OK: '{spec.name}' with {len(graph)} stage(s): {' -> '.join(graph.order())}")

    missing = SecretStore.from_env().missing(referenced_secrets(spec))
    if missing:
        print(f"Warning: secrets not configured: {', '.join(missing)}")
    return 0


def cmd_graph(args: argparse.Namespace) -> int:
    graph = StageGraph(load_pipeline(args.pipeline))
    stages = graph.describe()
    if args.json:
        print(json.dumps(stages, indent=2))
        return 0
    for position, stage in enumerate(stages, start=1):
        needs = f" (needs: {', '.join(stage['needs'])})" if stage["needs"] else ""
        gate = " [approval]" if stage["gated"] else ""
        print(f"{position}. {stage['id']}{gate}{needs}")
    return 0


def _ask(prompt: str) -> bool:
    if not sys.stdin.isatty():
        return False
    try:
        return input(prompt).strip().lower() in ("y", "yes")
    except EOFError:
        return False


def _decide_gates(orchestrator: PipelineOrchestrator, run: PipelineRun, args: argparse.Namespace) -> None:
    for stage_run in run.stages:
        if stage_run.status != StageStatus.WAITING_APPROVAL:
            continue
        approval = stage_run.approval
        reviewers = f" (reviewers: {', '.join(approval.reviewers)})" if approval and approval.reviewers else ""
        if args.approve_all or stage_run.name in args.auto_approve:
            orchestrator.approve(run.run_id, stage_run.name, args.actor, "approved from CLI flags")
        elif _ask(f"Approve stage '{stage_run.name}'{reviewers}? [y/N] "):
            orchestrator.approve(run.run_id, stage_run.name, args.actor, "approved interactively")
        else:
            orchestrator.reject(run.run_id, stage_run.name, args.actor, "not approved from CLI")


def _print_run(run: PipelineRun) -> None:
    print(f"\nRun {run.run_id} ({run.pipeline_name}): {run.status.upper()}")
    for stage_run in run.stages:
        note = f"  {stage_run.skip_reason}" if stage_run.skip_reason else ""
        print(f"  {stage_run.name:<20} {stage_run.status:<17}{note}")
    if run.error:
        print(f"Error: {run.error}")


def cmd_run(args: argparse.Namespace, secrets: SecretStore) -> int:
    pipeline_path = os.path.abspath(args.pipeline) if args.pipeline else None
    spec = resolve_pipeline(args.workspace, pipeline_path, config.DEFAULT_PIPELINE_PATH)
    ref = f"refs/tags/{args.tag}" if args.tag else args.branch
    trigger = Trigger.from_ref(args.event, ref, sha=args.sha, actor=args.actor)

    orchestrator = PipelineOrchestrator(
        secrets=secrets,
        executor=StepExecutor(),
        writer=ResultsWriter(args.results_dir),
    )
    run = orchestrator.create_run(spec, trigger=trigger, workspace_path=args.workspace)
    run = orchestrator.advance(run.run_id)

    while run.status == RunStatus.WAITING_APPROVAL:
        try:
            _decide_gates(orchestrator, run, args)
        except ApprovalError as e:
            print(f"Error: {e}")
            orchestrator.cancel(run.run_id)
        run = orchestrator.advance(run.run_id)

    _print_run(run)
    return 0 if run.status == RunStatus.SUCCESS else 1


def cmd_init(args: argparse.Namespace) -> int:
    target = args.output or os.path.join(args.workspace, WORKFLOW_DIR, DEFAULT_INIT_FILE)
    if os.path.exists(target) and not args.force:
        print(f"Error: {target} already exists (use --force to overwrite)")
        return 1

    spec = build_default_pipeline(args.workspace, image_name=args.image_name)
    os.makedirs(os.path.dirname(os.path.abspath(target)), exist_ok=True)
    with open(target, "w", encoding="utf-8") as f:
        f.write(dump_pipeline(spec))
    print(f"Wrote {target} with stages: {', '.join(spec.stage_ids)}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    uvicorn.run("main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    level = getattr(logging, args.log_level)

    if args.command == "serve":
        return cmd_serve(args)

    secrets = SecretStore.from_env()
    setup_logging(level=level, secrets=secrets, log_dir=None)

    try:
        if args.command == "validate":
            return cmd_validate(args)
        if args.command == "graph":
            return cmd_graph(args)
        if args.command == "run":
            return cmd_run(args, secrets)
        if args.command == "init":
            return cmd_init(args)
    except PipelineDefinitionError as e:
        print(f"Invalid pipeline: {e}")
        return 1
    except PipelineError as e:
        print(f"Error: {e}")
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
