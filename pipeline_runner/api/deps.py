"""
Shared state for the HTTP API.

One orchestrator (with its run store, results writer and secret store) lives
for the lifetime of the process. Routers receive it through FastAPI's
dependency injection so tests can swap it via ``app.dependency_overrides``.
"""
import logging
from typing import Optional

from fastapi import HTTPException

from pipeline_runner.core import config
from pipeline_runner.core.errors import ApprovalError, PipelineDefinitionError, PipelineError, RunNotFoundError
from pipeline_runner.parser import pipeline_loader
from pipeline_runner.parser.pipeline_spec import PipelineSpec
from pipeline_runner.runner.orchestrator import PipelineOrchestrator
from pipeline_runner.secrets.secret_store import SecretStore
from pipeline_runner.services.results_writer import ResultsWriter

logger = logging.getLogger(__name__)

_orchestrator: Optional[PipelineOrchestrator] = None


def get_orchestrator() -> PipelineOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator(
            secrets=SecretStore.from_env(),
            writer=ResultsWriter(config.RESULTS_DIR),
        )
        logger.info("Orchestrator initialised | results_dir=%s", config.RESULTS_DIR)
    return _orchestrator


def resolve_pipeline(workspace_path: str, pipeline_path: Optional[str] = None) -> PipelineSpec:
    return pipeline_loader.resolve_pipeline(workspace_path, pipeline_path, config.DEFAULT_PIPELINE_PATH)


def http_error(error: PipelineError) -> HTTPException:
    """Map a runner exception onto an HTTP status."""
    if isinstance(error, RunNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ApprovalError):
        return HTTPException(status_code=403 if error.unauthorized else 409, detail=str(error))
    if isinstance(error, PipelineDefinitionError):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
