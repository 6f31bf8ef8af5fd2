"""
Pipeline Run Models
===================
Pydantic models for one execution of a pipeline and the stages inside it.

A PipelineRun holds one StageRun per stage, in graph order. Stage logs are
stored already masked; nothing in these models ever carries a secret value.

Used by:
    - Orchestrator to track progress across stages
    - Gate Controller to evaluate conditions against upstream results
    - Results writer and the HTTP API to serialise run state
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel

from pipeline_runner.core.constants import RunStatus, StageStatus
from pipeline_runner.models.approval import Approval
from pipeline_runner.models.step_result import StepResult
from pipeline_runner.models.trigger import Trigger


class StageRun(BaseModel):
    name: str
    display_name: str = ""
    needs: List[str] = []
    status: str = StageStatus.PENDING
    steps: List[StepResult] = []
    log: str = ""
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    approval: Optional[Approval] = None
    skip_reason: str = ""


class PipelineRun(BaseModel):
    run_id: str
    pipeline_name: str
    pipeline_path: str = ""
    trigger: Trigger
    status: str = RunStatus.QUEUED
    stages: List[StageRun] = []
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False
    workspace_path: str = ""
    error: Optional[str] = None

    def stage(self, name: str) -> StageRun:
        for stage_run in self.stages:
            if stage_run.name == name:
                return stage_run
        raise KeyError(name)

    def stage_statuses(self) -> Dict[str, str]:
        return {s.name: s.status for s in self.stages}

    def summary(self) -> dict:
        """Compact view for list endpoints."""
        return {
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "status": self.status,
            "event": self.trigger.event,
            "ref": self.trigger.ref,
            "sha": self.trigger.sha,
            "created_at": self.created_at.isoformat(),
            "stages": self.stage_statuses(),
        }
