"""
Results Writer
==============
Serializes a PipelineRun into <results_dir>/<run_id>.json.

Written after every state change, so the file always reflects the latest
known state of the run (including runs paused at an approval gate).
"""
import json
import logging
import os
from typing import Optional

from pipeline_runner.core.config import RESULTS_DIR
from pipeline_runner.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class ResultsWriter:
    """
    Service responsible for persisting run snapshots as JSON.
    """

    def __init__(self, results_dir: str = RESULTS_DIR) -> None:
        self.results_dir = results_dir

    def path_for(self, run_id: str) -> str:
        return os.path.join(self.results_dir, f"{run_id}.json")

    def write_run(self, run: PipelineRun) -> bool:
        """
        Write the run snapshot. Returns False (and logs) on I/O failure so a
        full disk never breaks a pipeline run.
        """
        try:
            os.makedirs(self.results_dir, exist_ok=True)
            data = {
                "run": run.model_dump(mode="json"),
                "summary": run.summary(),
            }

            path = self.path_for(run.run_id)
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, path)
            logger.debug("Run %s written to %s", run.run_id, os.path.abspath(path))
            return True

        except OSError as e:
            logger.error("Failed to write results for run %s: %s", run.run_id, e, exc_info=True)
            return False

    def read_run(self, run_id: str) -> Optional[PipelineRun]:
        """Load a previously written run, or None if there is no snapshot."""
        path = self.path_for(run_id)
        if not os.path.isfile(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return PipelineRun.model_validate(data["run"])
