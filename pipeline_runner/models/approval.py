"""
Approval Model
Pydantic model for the state of one manual approval gate.
"""
from datetime import datetime, timedelta
from typing import List, Optional
from pydantic import BaseModel


class Approval(BaseModel):
    stage: str
    environment: str = ""
    reviewers: List[str] = []
    requested_at: datetime
    timeout_minutes: int
    decision: Optional[str] = None      # approved / rejected / expired
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    comment: str = ""

    @property
    def pending(self) -> bool:
        return self.decision is None

    @property
    def expires_at(self) -> datetime:
        return self.requested_at + timedelta(minutes=self.timeout_minutes)
