"""
Step Result Model
=================
Pydantic model for the outcome of one step inside a stage.

Fields:
    name              — step display name
    status            — success / failure / skipped
    exit_code         — process exit code (None when the step never started)
    duration_seconds  — wall clock time spent executing
    log_excerpt       — first + last lines of the masked step log
    error             — infrastructure or configuration error, if any
    continue_on_error — True if a failure here did not fail the stage
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class StepResult(BaseModel):
    name: str
    status: str
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    log_excerpt: str = ""
    error: Optional[str] = None
    continue_on_error: bool = False
