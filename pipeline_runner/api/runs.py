"""
Run endpoints
=============
POST /runs                                   Start a run (202, executes in the background)
GET  /runs                                   List runs, newest first
GET  /runs/{run_id}                          Full run record
GET  /runs/{run_id}/stages/{stage}/log       Masked stage log as plain text
POST /runs/{run_id}/cancel                   Request cancellation
"""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from pipeline_runner.core import config
from pipeline_runner.core.errors import PipelineError, RunNotFoundError
from pipeline_runner.models.trigger import Trigger
from pipeline_runner.runner.orchestrator import PipelineOrchestrator
from pipeline_runner.api.deps import get_orchestrator, http_error, resolve_pipeline

logger = logging.getLogger(__name__)

router = APIRouter()


class RunRequest(BaseModel):
    pipeline_path: Optional[str] = None
    workspace_path: Optional[str] = None
    event: str = "workflow_dispatch"
    branch: str = "main"
    sha: str = ""
    actor: str = ""


def advance_in_background(orchestrator: PipelineOrchestrator, run_id: str) -> None:
    try:
        orchestrator.advance(run_id)
    except PipelineError as e:
        logger.error("Run %s could not advance: %s", run_id, e, exc_info=True)


@router.post("/runs", status_code=202)
def start_run(
    request: RunRequest,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    workspace = request.workspace_path or config.WORKSPACE_ROOT
    try:
        spec = resolve_pipeline(workspace, request.pipeline_path)
        trigger = Trigger.from_ref(request.event, request.branch, sha=request.sha, actor=request.actor)
        run = orchestrator.create_run(spec, trigger=trigger, workspace_path=workspace)
    except PipelineError as e:
        raise http_error(e)

    background_tasks.add_task(advance_in_background, orchestrator, run.run_id)
    return run.model_dump(mode="json")


@router.get("/runs")
def list_runs(status: Optional[str] = None, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return {"runs": [run.summary() for run in orchestrator.store.list(status=status)]}


@router.get("/runs/{run_id}")
def get_run(run_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.get_run(run_id).model_dump(mode="json")
    except RunNotFoundError as e:
        # Runs from an earlier process only exist on disk
        if orchestrator.writer is not None:
            stored = orchestrator.writer.read_run(run_id)
            if stored is not None:
                return stored.model_dump(mode="json")
        raise http_error(e)


@router.get("/runs/{run_id}/stages/{stage}/log", response_class=PlainTextResponse)
def get_stage_log(run_id: str, stage: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        run = orchestrator.get_run(run_id)
    except RunNotFoundError as e:
        raise http_error(e)
    try:
        stage_run = run.stage(stage)
    except KeyError:
        raise http_error(RunNotFoundError(f"Run '{run_id}' has no stage '{stage}'", run_id=run_id, stage=stage))
    return PlainTextResponse(stage_run.log)


@router.post("/runs/{run_id}/cancel")
def cancel_run(
    run_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    try:
        run = orchestrator.cancel(run_id)
    except PipelineError as e:
        raise http_error(e)
    # Settles runs parked at a gate; a run mid-stage stops after its current step
    background_tasks.add_task(advance_in_background, orchestrator, run_id)
    return {"run_id": run.run_id, "status": run.status, "cancel_requested": run.cancel_requested}
