"""
Trigger Model
Pydantic model describing what started a pipeline run.
"""
from typing import Optional
from pydantic import BaseModel


class Trigger(BaseModel):
    event: str = "workflow_dispatch"
    ref: str = ""
    branch: Optional[str] = None
    tag: Optional[str] = None
    sha: str = ""
    actor: str = ""

    @classmethod
    def from_ref(cls, event: str, ref: str, sha: str = "", actor: str = "") -> "Trigger":
        """Build a trigger from a full git ref (refs/heads/x or refs/tags/y)."""
        branch = None
        tag = None
        if ref.startswith("refs/heads/"):
            branch = ref[len("refs/heads/"):]
        elif ref.startswith("refs/tags/"):
            tag = ref[len("refs/tags/"):]
        elif ref:
            branch = ref
            ref = f"refs/heads/{ref}"
        return cls(event=event, ref=ref, branch=branch, tag=tag, sha=sha, actor=actor)

    @property
    def ref_name(self) -> str:
        return self.branch or self.tag or ""
