"""
Orchestrator Tests
==================
Drives whole pipelines through the orchestrator with the step executor
mocked: sequencing, failure propagation, approval gates, cancellation,
secret handling and persistence.
"""
import json
import textwrap
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from pipeline_runner.core.constants import RunStatus, StageStatus, StepStatus
from pipeline_runner.core.errors import ApprovalError, ExpressionError, RunNotFoundError
from pipeline_runner.executor.build_executor import ExecutionResult, StepExecutor
from pipeline_runner.models.trigger import Trigger
from pipeline_runner.parser.pipeline_loader import parse_pipeline
from pipeline_runner.parser.pipeline_spec import PipelineSpec, StageSpec, StepSpec
from pipeline_runner.runner.orchestrator import PipelineOrchestrator
from pipeline_runner.secrets.secret_store import SecretStore
from pipeline_runner.services.results_writer import ResultsWriter
from pipeline_runner.services.run_store import RunStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def _fake_execute(script, **kwargs):
    """Scripts containing 'exit N' fail with N; everything else passes."""
    exit_code = 0
    for token in script.split("\n"):
        if token.startswith("exit "):
            exit_code = int(token.split()[1])
    return ExecutionResult(exit_code=exit_code, full_log=f"ran: {script}\n")


@pytest.fixture
def executor():
    mock = MagicMock(spec=StepExecutor)
    mock.execute.side_effect = _fake_execute
    return mock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orchestrator(executor, clock, tmp_path):
    return PipelineOrchestrator(
        secrets=SecretStore({"DOCKER_PASSWORD": "hunter22", "EC2_HOST": "10.1.2.3"}),
        executor=executor,
        store=RunStore(),
        writer=ResultsWriter(str(tmp_path / "results")),
        approval_timeout_minutes=60,
        clock=clock,
    )


def _spec(text):
    return parse_pipeline(textwrap.dedent(text), source_path="ci.yml")


def _start(orchestrator, text, branch="main"):
    run = orchestrator.create_run(_spec(text), trigger=Trigger.from_ref("push", branch), workspace_path="/ws")
    return orchestrator.advance(run.run_id)


def _scripts(executor):
    return [c.args[0] for c in executor.execute.call_args_list]


LINEAR = """
    jobs:
      build:
        steps: [{run: echo build}]
      scan:
        needs: build
        steps: [{run: echo scan}]
      package:
        needs: scan
        steps: [{run: echo package}]
"""

GATED = """
    environments:
      production:
        reviewers: [alice]
    jobs:
      build:
        steps: [{run: echo build}]
      deploy:
        needs: build
        environment: production
        steps: [{run: echo deploy}]
      smoke:
        needs: deploy
        steps: [{run: echo smoke}]
"""


# ---------------------------------------------------------------------------
# 1. Sequencing and failures
# ---------------------------------------------------------------------------
class TestSequencing:

    def test_linear_pipeline_succeeds(self, orchestrator, executor):
        run = _start(orchestrator, LINEAR)
        assert run.status == RunStatus.SUCCESS
        assert run.stage_statuses() == {"build": "success", "scan": "success", "package": "success"}
        assert _scripts(executor) == ["echo build", "echo scan", "echo package"]
        assert run.started_at is not None and run.finished_at is not None

    def test_failure_skips_later_stages(self, orchestrator, executor):
        run = _start(orchestrator, """
            jobs:
              build:
                steps: [{run: "echo compiling\\nexit 2"}]
              scan:
                needs: build
                steps: [{run: echo scan}]
        """)
        assert run.status == RunStatus.FAILURE
        assert run.stage("build").status == StageStatus.FAILURE
        assert run.stage("build").exit_code == 2
        assert run.stage("scan").status == StageStatus.SKIPPED
        assert "build" in run.stage("scan").skip_reason
        assert executor.execute.call_count == 1

    def test_always_and_failure_stages_run_after_failure(self, orchestrator, executor):
        run = _start(orchestrator, """
            jobs:
              build:
                steps: [{run: exit 1}]
              notify:
                needs: build
                if: failure()
                steps: [{run: echo notify}]
              cleanup:
                needs: build
                if: always()
                steps: [{run: echo cleanup}]
        """)
        assert run.status == RunStatus.FAILURE
        assert run.stage("notify").status == StageStatus.SUCCESS
        assert run.stage("cleanup").status == StageStatus.SUCCESS

    def test_failing_step_stops_stage(self, orchestrator, executor):
        run = _start(orchestrator, """
            jobs:
              build:
                steps:
                  - run: exit 1
                  - run: echo never
                  - run: echo report
                    if: always()
        """)
        steps = run.stage("build").steps
        assert [s.status for s in steps] == [StepStatus.FAILURE, StepStatus.SKIPPED, StepStatus.SUCCESS]
        assert _scripts(executor) == ["exit 1", "echo report"]

    def test_continue_on_error(self, orchestrator):
        run = _start(orchestrator, """
            jobs:
              build:
                steps:
                  - run: exit 1
                    continue-on-error: true
                  - run: echo next
        """)
        assert run.stage("build").status == StageStatus.SUCCESS
        assert run.stage("build").exit_code == 0
        assert run.status == RunStatus.SUCCESS

    def test_step_condition_false(self, orchestrator, executor):
        run = _start(orchestrator, """
            jobs:
              build:
                steps:
                  - run: echo release-only
                    if: github.ref == 'refs/heads/release'
                  - run: echo always-here
        """)
        assert run.stage("build").steps[0].status == StepStatus.SKIPPED
        assert _scripts(executor) == ["echo always-here"]

    def test_uses_step_is_skipped(self, orchestrator, executor):
        run = _start(orchestrator, """
            jobs:
              build:
                steps:
                  - uses: actions/checkout@v4
                  - run: echo built
        """)
        assert run.stage("build").steps[0].status == StepStatus.SKIPPED
        assert "is not executed" in run.stage("build").log
        assert executor.execute.call_count == 1

    def test_stage_condition_on_branch(self, orchestrator):
        text = """
            jobs:
              deploy:
                if: github.ref == 'refs/heads/main'
                steps: [{run: echo deploy}]
        """
        assert _start(orchestrator, text, branch="main").stage("deploy").status == StageStatus.SUCCESS
        assert _start(orchestrator, text, branch="feature").stage("deploy").status == StageStatus.SKIPPED

    def test_executor_crash_fails_stage(self, orchestrator, executor):
        executor.execute.side_effect = RuntimeError("socket closed")
        run = _start(orchestrator, LINEAR)
        assert run.stage("build").status == StageStatus.FAILURE
        assert "INTERNAL ERROR" in run.stage("build").log
        assert run.status == RunStatus.FAILURE


# ---------------------------------------------------------------------------
# 2. Step inputs
# ---------------------------------------------------------------------------
class TestStepInputs:

    def test_interpolation_env_and_timeout(self, orchestrator, executor):
        _start(orchestrator, """
            env:
              APP: shop
            jobs:
              build:
                container: maven:3.9
                env:
                  TARGET: ${{ github.ref_name }}
                steps:
                  - run: echo ${{ env.APP }} ${{ github.ref_name }}
                    env:
                      EXTRA: "1"
                    working-directory: api
                    timeout-minutes: 2
        """)
        call = executor.execute.call_args
        assert call.args[0] == "echo shop main"
        assert call.kwargs["env"] == {"APP": "shop", "TARGET": "main", "EXTRA": "1"}
        assert call.kwargs["working_dir"] == "api"
        assert call.kwargs["timeout_seconds"] == 120
        assert call.kwargs["container"] == "maven:3.9"
        assert call.kwargs["workspace_path"] == "/ws"

    def test_missing_secret_fails_step_without_running(self, orchestrator, executor):
        run = _start(orchestrator, """
            jobs:
              scan:
                steps:
                  - run: sonar -Dsonar.token=${{ secrets.SONAR_TOKEN }}
        """)
        step = run.stage("scan").steps[0]
        assert step.status == StepStatus.FAILURE
        assert "SONAR_TOKEN" in step.error
        assert run.stage("scan").status == StageStatus.FAILURE
        executor.execute.assert_not_called()

    def test_secrets_masked_in_logs_and_results(self, orchestrator, tmp_path):
        run = _start(orchestrator, """
            jobs:
              image:
                env:
                  DOCKER_PASSWORD: ${{ secrets.DOCKER_PASSWORD }}
                steps:
                  - run: echo ${{ secrets.DOCKER_PASSWORD }} | docker login --password-stdin
                  - run: ssh deploy@${{ secrets.EC2_HOST }}
        """)
        log = run.stage("image").log
        assert "hunter22" not in log
        assert "10.1.2.3" not in log
        assert "***" in log

        stored = (tmp_path / "results" / f"{run.run_id}.json").read_text()
        assert "hunter22" not in stored
        assert "10.1.2.3" not in stored


# ---------------------------------------------------------------------------
# 3. Approval gates
# ---------------------------------------------------------------------------
class TestApprovalGates:

    def test_gate_pauses_run(self, orchestrator, executor):
        run = _start(orchestrator, GATED)
        assert run.status == RunStatus.WAITING_APPROVAL
        assert run.stage("deploy").status == StageStatus.WAITING_APPROVAL
        assert run.stage("smoke").status == StageStatus.PENDING
        assert run.finished_at is None
        assert _scripts(executor) == ["echo build"]

    def test_approval_resumes_run(self, orchestrator, executor):
        run = _start(orchestrator, GATED)
        orchestrator.approve(run.run_id, "deploy", "alice", "LGTM")
        run = orchestrator.advance(run.run_id)
        assert run.status == RunStatus.SUCCESS
        assert run.stage("deploy").approval.decided_by == "alice"
        assert _scripts(executor) == ["echo build", "echo deploy", "echo smoke"]

    def test_rejection_fails_run(self, orchestrator, executor):
        run = _start(orchestrator, GATED)
        orchestrator.reject(run.run_id, "deploy", "alice", "freeze")
        run = orchestrator.advance(run.run_id)
        assert run.status == RunStatus.FAILURE
        assert run.stage("deploy").status == StageStatus.REJECTED
        assert run.stage("smoke").status == StageStatus.SKIPPED
        assert "echo deploy" not in _scripts(executor)

    def test_unauthorized_approval(self, orchestrator):
        run = _start(orchestrator, GATED)
        with pytest.raises(ApprovalError):
            orchestrator.approve(run.run_id, "deploy", "mallory")
        assert orchestrator.get_run(run.run_id).status == RunStatus.WAITING_APPROVAL

    def test_expired_approval_acts_as_rejection(self, orchestrator, clock):
        run = _start(orchestrator, GATED)
        clock.advance(minutes=61)
        run = orchestrator.advance(run.run_id)
        assert run.status == RunStatus.FAILURE
        assert run.stage("deploy").status == StageStatus.REJECTED
        assert run.stage("deploy").approval.decision == "expired"

    def test_pending_approvals(self, orchestrator, clock):
        run = _start(orchestrator, GATED)
        pending = orchestrator.pending_approvals()
        assert [(r.run_id, s.name) for r, s in pending] == [(run.run_id, "deploy")]

        clock.advance(minutes=61)
        assert orchestrator.pending_approvals() == []
        assert orchestrator.get_run(run.run_id).status == RunStatus.FAILURE

    def test_advance_is_idempotent_while_waiting(self, orchestrator, executor):
        run = _start(orchestrator, GATED)
        run = orchestrator.advance(run.run_id)
        assert run.status == RunStatus.WAITING_APPROVAL
        assert executor.execute.call_count == 1


# ---------------------------------------------------------------------------
# 4. Cancellation and bookkeeping
# ---------------------------------------------------------------------------
class TestCancellation:

    def test_cancel_waiting_run(self, orchestrator):
        run = _start(orchestrator, GATED)
        orchestrator.cancel(run.run_id)
        run = orchestrator.advance(run.run_id)
        assert run.status == RunStatus.CANCELLED
        assert run.stage("deploy").status == StageStatus.CANCELLED
        assert run.stage("smoke").status == StageStatus.CANCELLED

    def test_cancel_before_start_runs_only_always_stages(self, orchestrator, executor):
        run = orchestrator.create_run(_spec("""
            jobs:
              build:
                steps: [{run: echo build}]
              cleanup:
                needs: build
                if: always()
                steps:
                  - run: echo cleanup
                    if: always()
        """))
        orchestrator.cancel(run.run_id)
        run = orchestrator.advance(run.run_id)
        assert run.status == RunStatus.CANCELLED
        assert run.stage("build").status == StageStatus.CANCELLED
        assert run.stage("cleanup").status == StageStatus.SUCCESS
        assert _scripts(executor) == ["echo cleanup"]

    def test_cancel_finished_run_is_noop(self, orchestrator):
        run = _start(orchestrator, LINEAR)
        assert orchestrator.cancel(run.run_id).cancel_requested is False

    def test_unknown_run(self, orchestrator):
        with pytest.raises(RunNotFoundError):
            orchestrator.advance("missing")

    def test_results_file_written(self, orchestrator, tmp_path):
        run = _start(orchestrator, LINEAR)
        data = json.loads((tmp_path / "results" / f"{run.run_id}.json").read_text())
        assert data["run"]["status"] == "success"
        assert data["summary"]["stages"]["package"] == "success"

    def test_stage_log_format(self, orchestrator):
        run = _start(orchestrator, LINEAR)
        log = run.stage("build").log
        assert ">>> STEP 1/1: Run echo build" in log
        assert ">>> STEP Run echo build: SUCCESS" in log
        assert "ran: echo build" in log

    def test_cancel_during_stage_skips_remaining_steps(self, orchestrator, executor):
        run = orchestrator.create_run(_spec("""
            jobs:
              build:
                steps:
                  - run: echo one
                  - run: echo two
                  - run: echo cleanup
                    if: always()
              package:
                needs: build
                steps: [{run: echo package}]
        """))

        def cancel_on_first_step(script, **kwargs):
            if executor.execute.call_count == 1:
                orchestrator.cancel(run.run_id)
            return _fake_execute(script, **kwargs)

        executor.execute.side_effect = cancel_on_first_step
        run = orchestrator.advance(run.run_id)

        steps = run.stage("build").steps
        assert [s.status for s in steps] == [StepStatus.SUCCESS, StepStatus.SKIPPED, StepStatus.SUCCESS]
        assert "run was cancelled" in run.stage("build").log
        assert _scripts(executor) == ["echo one", "echo cleanup"]
        assert run.stage("package").status == StageStatus.CANCELLED
        assert run.status == RunStatus.CANCELLED


# ---------------------------------------------------------------------------
# 5. Stage timeout
# ---------------------------------------------------------------------------
class TestStageTimeout:

    @pytest.fixture
    def monotonic(self, monkeypatch):
        fake_time = MagicMock()
        fake_time.monotonic.return_value = 1000.0
        monkeypatch.setattr("pipeline_runner.runner.orchestrator.time", fake_time)
        return fake_time.monotonic

    def _slow_executor(self, executor, monotonic, seconds):
        def slow(script, **kwargs):
            monotonic.return_value += seconds
            return _fake_execute(script, **kwargs)
        executor.execute.side_effect = slow

    def test_step_timeout_capped_by_stage_deadline(self, orchestrator, executor, monotonic):
        self._slow_executor(executor, monotonic, 10)
        _start(orchestrator, """
            jobs:
              build:
                timeout-minutes: 1
                steps:
                  - run: echo one
                    timeout-minutes: 5
                  - run: echo two
        """)
        timeouts = [c.kwargs["timeout_seconds"] for c in executor.execute.call_args_list]
        assert timeouts == [60, 50]

    def test_exhausted_deadline_fails_remaining_steps(self, orchestrator, executor, monotonic):
        self._slow_executor(executor, monotonic, 90)
        run = _start(orchestrator, """
            jobs:
              build:
                timeout-minutes: 1
                steps:
                  - run: echo one
                  - run: echo two
              package:
                needs: build
                steps: [{run: echo package}]
        """)
        build = run.stage("build")
        assert [s.status for s in build.steps] == [StepStatus.SUCCESS, StepStatus.FAILURE]
        assert "stage timeout of 1 minute(s) exceeded" in build.steps[1].error
        assert build.status == StageStatus.FAILURE
        assert _scripts(executor) == ["echo one"]
        assert run.stage("package").status == StageStatus.SKIPPED
        assert run.status == RunStatus.FAILURE


# ---------------------------------------------------------------------------
# 6. Construction and run validation
# ---------------------------------------------------------------------------
class TestConstruction:

    def test_empty_collaborators_are_kept(self):
        store = RunStore()
        secrets = SecretStore({})
        orchestrator = PipelineOrchestrator(secrets=secrets, store=store)
        assert orchestrator.store is store
        assert orchestrator.secrets is secrets

    def test_invalid_interpolation_registers_nothing(self, orchestrator, tmp_path):
        spec = PipelineSpec(
            name="bad",
            stages=(StageSpec(id="build", steps=(StepSpec(name="s", run="echo ${{ matrix[0] }}"),)),),
        )
        with pytest.raises(ExpressionError):
            orchestrator.create_run(spec)
        assert orchestrator.store.list() == []
        assert not (tmp_path / "results").exists() or list((tmp_path / "results").iterdir()) == []

    def test_unparseable_expression_registers_nothing(self, orchestrator):
        spec = PipelineSpec(
            name="bad",
            stages=(StageSpec(id="build", steps=(StepSpec(name="s", run="echo ${{ github.ref == }}"),)),),
        )
        with pytest.raises(ExpressionError):
            orchestrator.create_run(spec)
        assert orchestrator.store.list() == []
