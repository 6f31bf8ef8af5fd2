"""
Unit Tests — Results Writer / Run Store
=======================================
Snapshot persistence and the in-memory run registry.
"""
import json
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from pipeline_runner.core.constants import RunStatus, StageStatus, StepStatus
from pipeline_runner.core.errors import RunNotFoundError
from pipeline_runner.models.pipeline_run import PipelineRun, StageRun
from pipeline_runner.models.step_result import StepResult
from pipeline_runner.models.trigger import Trigger
from pipeline_runner.services.results_writer import ResultsWriter
from pipeline_runner.services.run_store import RunStore

CREATED = datetime(2026, 2, 3, 10, 30, tzinfo=timezone.utc)


def _make_run(run_id="abc123", status=RunStatus.SUCCESS, created_at=CREATED):
    return PipelineRun(
        run_id=run_id,
        pipeline_name="shop CI/CD",
        trigger=Trigger.from_ref("push", "main", sha="deadbeef"),
        status=status,
        created_at=created_at,
        stages=[
            StageRun(
                name="build",
                status=StageStatus.SUCCESS,
                exit_code=0,
                steps=[StepResult(name="Unit tests", status=StepStatus.SUCCESS, exit_code=0)],
            ),
            StageRun(name="deploy", needs=["build"], status=StageStatus.SKIPPED, skip_reason="not main"),
        ],
    )


# ---------------------------------------------------------------------------
# 1. ResultsWriter
# ---------------------------------------------------------------------------
class TestResultsWriter:

    def test_write_creates_directory_and_file(self, tmp_path):
        writer = ResultsWriter(str(tmp_path / "nested" / "results"))
        assert writer.write_run(_make_run()) is True
        assert os.path.isfile(writer.path_for("abc123"))

    def test_written_json_shape(self, tmp_path):
        writer = ResultsWriter(str(tmp_path))
        writer.write_run(_make_run())
        data = json.loads((tmp_path / "abc123.json").read_text())

        assert data["run"]["pipeline_name"] == "shop CI/CD"
        assert data["run"]["trigger"]["sha"] == "deadbeef"
        assert data["summary"]["status"] == "success"
        assert data["summary"]["stages"] == {"build": "success", "deploy": "skipped"}
        assert data["summary"]["created_at"] == CREATED.isoformat()

    def test_no_temp_file_left_behind(self, tmp_path):
        ResultsWriter(str(tmp_path)).write_run(_make_run())
        assert sorted(os.listdir(tmp_path)) == ["abc123.json"]

    def test_overwrite_keeps_latest(self, tmp_path):
        writer = ResultsWriter(str(tmp_path))
        writer.write_run(_make_run(status=RunStatus.RUNNING))
        writer.write_run(_make_run(status=RunStatus.FAILURE))
        assert writer.read_run("abc123").status == RunStatus.FAILURE

    def test_read_round_trip(self, tmp_path):
        writer = ResultsWriter(str(tmp_path))
        writer.write_run(_make_run())
        run = writer.read_run("abc123")
        assert run.stage("deploy").skip_reason == "not main"
        assert run.stage("build").steps[0].name == "Unit tests"
        assert run.created_at == CREATED

    def test_read_missing_returns_none(self, tmp_path):
        assert ResultsWriter(str(tmp_path)).read_run("nope") is None

    @patch("pipeline_runner.services.results_writer.os.replace", side_effect=OSError("disk full"))
    def test_io_failure_returns_false(self, _mock_replace, tmp_path):
        assert ResultsWriter(str(tmp_path)).write_run(_make_run()) is False


# ---------------------------------------------------------------------------
# 2. RunStore
# ---------------------------------------------------------------------------
class TestRunStore:

    def test_add_and_get(self):
        store = RunStore()
        run = _make_run()
        store.add(run)
        assert store.get("abc123") is run
        assert len(store) == 1

    def test_unknown_run(self):
        with pytest.raises(RunNotFoundError):
            RunStore().get("missing")

    def test_list_newest_first_and_filter(self):
        store = RunStore()
        store.add(_make_run("old", created_at=CREATED))
        store.add(_make_run("new", status=RunStatus.FAILURE, created_at=CREATED + timedelta(minutes=5)))

        assert [r.run_id for r in store.list()] == ["new", "old"]
        assert [r.run_id for r in store.list(status=RunStatus.FAILURE)] == ["new"]

    def test_clear(self):
        store = RunStore()
        store.add(_make_run())
        store.clear()
        assert len(store) == 0
