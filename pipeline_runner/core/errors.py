"""
Exception hierarchy for the pipeline runner.

Every exception inherits from PipelineError so callers can catch broadly or
narrowly. Each one carries the run id / stage it concerns, when known.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all runner errors."""

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        stage: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.run_id = run_id
        self.stage = stage
        self.details = details or {}
        super().__init__(message)


class PipelineDefinitionError(PipelineError):
    """The pipeline YAML is malformed or references things that do not exist."""
    pass


class ExpressionError(PipelineDefinitionError):
    """A ${{ }} expression or if: condition could not be parsed or evaluated."""
    pass


class GraphError(PipelineDefinitionError):
    """Stage dependencies are unknown, self-referencing or cyclic."""
    pass


class MissingSecretError(PipelineError):
    """A step referenced a secret that is not configured."""

    def __init__(self, name: str, **kwargs) -> None:
        self.name = name
        super().__init__(f"Secret '{name}' is not configured", **kwargs)


class ApprovalError(PipelineError):
    """An approval decision was not allowed (wrong state or reviewer)."""

    def __init__(self, message: str, *, unauthorized: bool = False, **kwargs) -> None:
        self.unauthorized = unauthorized
        super().__init__(message, **kwargs)


class RunNotFoundError(PipelineError):
    """No run with the given id exists."""
    pass
