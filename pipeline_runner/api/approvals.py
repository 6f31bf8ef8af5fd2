"""
Manual approval endpoints
=========================
POST /runs/{run_id}/stages/{stage}/approve   Approve a waiting gate and resume the run
POST /runs/{run_id}/stages/{stage}/reject    Reject a waiting gate
GET  /approvals                              Gates currently waiting, across all runs
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel

from pipeline_runner.core.errors import PipelineError
from pipeline_runner.runner.orchestrator import PipelineOrchestrator
from pipeline_runner.api.deps import get_orchestrator, http_error
from pipeline_runner.api.runs import advance_in_background

logger = logging.getLogger(__name__)

router = APIRouter()


class DecisionRequest(BaseModel):
    actor: str
    comment: str = ""


@router.post("/runs/{run_id}/stages/{stage}/approve")
def approve_stage(
    run_id: str,
    stage: str,
    decision: DecisionRequest,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    try:
        approval = orchestrator.approve(run_id, stage, decision.actor, decision.comment)
    except PipelineError as e:
        raise http_error(e)
    logger.info("Stage %s of run %s approved by %s", stage, run_id, decision.actor)
    background_tasks.add_task(advance_in_background, orchestrator, run_id)
    return {"run_id": run_id, "stage": stage, "approval": approval.model_dump(mode="json")}


@router.post("/runs/{run_id}/stages/{stage}/reject")
def reject_stage(
    run_id: str,
    stage: str,
    decision: DecisionRequest,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    try:
        approval = orchestrator.reject(run_id, stage, decision.actor, decision.comment)
    except PipelineError as e:
        raise http_error(e)
    logger.info("Stage %s of run %s rejected by %s", stage, run_id, decision.actor)
    background_tasks.add_task(advance_in_background, orchestrator, run_id)
    return {"run_id": run_id, "stage": stage, "approval": approval.model_dump(mode="json")}


@router.get("/approvals")
def list_pending_approvals(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    pending = []
    for run, stage_run in orchestrator.pending_approvals():
        approval = stage_run.approval
        pending.append({
            "run_id": run.run_id,
            "pipeline_name": run.pipeline_name,
            "stage": stage_run.name,
            "environment": approval.environment if approval else "",
            "reviewers": approval.reviewers if approval else [],
            "requested_at": approval.requested_at.isoformat() if approval else None,
            "expires_at": approval.expires_at.isoformat() if approval else None,
        })
    return {"approvals": pending}
