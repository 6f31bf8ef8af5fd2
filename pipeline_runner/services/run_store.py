"""
Run Store
=========
In-memory registry of pipeline runs for the lifetime of the process.

Runs are kept as live PipelineRun objects; the Orchestrator mutates them in
place and the Results Writer snapshots them to disk. A single lock guards
the registry itself. Per-run serialisation is the Orchestrator's concern.
"""
import logging
import threading
from typing import Optional

from pipeline_runner.core.errors import RunNotFoundError
from pipeline_runner.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class RunStore:

    def __init__(self) -> None:
        self._runs: dict[str, PipelineRun] = {}
        self._lock = threading.Lock()

    def add(self, run: PipelineRun) -> None:
        with self._lock:
            self._runs[run.run_id] = run
        logger.debug("Run %s registered", run.run_id)

    def get(self, run_id: str) -> PipelineRun:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run '{run_id}' not found", run_id=run_id)
        return run

    def list(self, status: Optional[str] = None) -> list[PipelineRun]:
        """Runs newest first, optionally filtered by status."""
        with self._lock:
            runs = list(self._runs.values())
        if status:
            runs = [r for r in runs if r.status == status]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
