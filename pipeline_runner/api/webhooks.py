"""
POST /webhooks/github
Receives GitHub push / pull_request / workflow_dispatch deliveries, checks
the X-Hub-Signature-256 header when GITHUB_WEBHOOK_SECRET is set, and starts
a run when the event matches the pipeline's `on:` filters.
"""
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from pipeline_runner.core import config
from pipeline_runner.core.errors import PipelineError
from pipeline_runner.runner.orchestrator import PipelineOrchestrator
from pipeline_runner.services.trigger_service import matches_trigger, trigger_from_github_event, verify_signature
from pipeline_runner.api.deps import get_orchestrator, http_error, resolve_pipeline
from pipeline_runner.api.runs import advance_in_background

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/github")
async def github_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    body = await request.body()

    if config.GITHUB_WEBHOOK_SECRET:
        signature = request.headers.get("X-Hub-Signature-256")
        if not verify_signature(config.GITHUB_WEBHOOK_SECRET, body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    event = request.headers.get("X-GitHub-Event", "")
    if event == "ping":
        return {"triggered": False, "reason": "pong"}

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    trigger = trigger_from_github_event(event, payload)
    if trigger is None:
        return {"triggered": False, "reason": f"event '{event}' is not handled"}

    try:
        spec = resolve_pipeline(config.WORKSPACE_ROOT)
    except PipelineError as e:
        raise http_error(e)

    if not matches_trigger(spec, trigger):
        logger.info("Webhook %s on %s does not match pipeline '%s'", event, trigger.ref, spec.name)
        return {"triggered": False, "reason": "no matching trigger"}

    try:
        run = orchestrator.create_run(spec, trigger=trigger, workspace_path=config.WORKSPACE_ROOT)
    except PipelineError as e:
        raise http_error(e)

    background_tasks.add_task(advance_in_background, orchestrator, run.run_id)
    return {"triggered": True, "run_id": run.run_id}
