"""
Pipeline Orchestrator
=====================
Drives one PipelineRun through its Stage Graph.

Loop (advance):
    1. Expire stale approvals; cancel waiting gates if a cancel was requested
    2. Take the first ready stage in graph order (needs all finished)
    3. Ask the Gate Controller: RUN / SKIP / WAIT / REJECT / CANCEL
    4. RUN → execute the stage's steps in order through the Step Executor
    5. Persist, then repeat from 2 until no stage can progress
    6. Compute the run status (waiting_approval / cancelled / failure / success)

Stages run strictly one at a time. A run paused at an approval gate is
resumed by calling advance() again after approve()/reject().

Fault Tolerance:
    - The executor never raises; a failing command is a failed step.
    - A missing secret or bad expression fails the step, not the runner.
    - Any unexpected exception inside a stage fails that stage and is logged.

Per-run locks serialise concurrent advance() calls for the same run.
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from pipeline_runner.core.config import DEFAULT_APPROVAL_TIMEOUT_MINUTES, DEFAULT_STEP_TIMEOUT, WORKSPACE_ROOT
from pipeline_runner.core.constants import (
    FAILED_STAGE_STATUSES,
    TERMINAL_RUN_STATUSES,
    RunStatus,
    StageStatus,
    StepStatus,
)
from pipeline_runner.core.errors import PipelineError, RunNotFoundError
from pipeline_runner.executor.build_executor import ExecutionResult, StepExecutor, create_log_excerpt
from pipeline_runner.gates.gate_controller import GateAction, GateController, survives_cancel
from pipeline_runner.graph.stage_graph import StageGraph
from pipeline_runner.models.approval import Approval
from pipeline_runner.models.pipeline_run import PipelineRun, StageRun
from pipeline_runner.models.step_result import StepResult
from pipeline_runner.models.trigger import Trigger
from pipeline_runner.parser.expressions import ExpressionContext, evaluate_condition, interpolate
from pipeline_runner.parser.pipeline_spec import PipelineSpec, StageSpec, StepSpec, referenced_secrets
from pipeline_runner.runner.run_context import expression_values
from pipeline_runner.secrets.secret_store import SecretStore
from pipeline_runner.services.results_writer import ResultsWriter
from pipeline_runner.services.run_store import RunStore

logger = logging.getLogger(__name__)

_LOG_RULE = "=" * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _RunPipeline:
    """Per-run view of the pipeline definition."""
    spec: PipelineSpec
    graph: StageGraph
    gates: GateController


class PipelineOrchestrator:
    """
    Creates runs and moves them forward.

    Parameters
    ----------
    secrets : SecretStore | None
        Source of ${{ secrets.* }} values and log masking.
    executor : StepExecutor | None
        Runs step scripts (local or Docker).
    store : RunStore | None
        Registry the runs live in.
    writer : ResultsWriter | None
        Persists snapshots. None disables persistence.
    approval_timeout_minutes : int
        Default timeout for gates that do not declare one.
    clock : Callable[[], datetime]
        Source of "now" (UTC).
    """

    def __init__(
        self,
        secrets: Optional[SecretStore] = None,
        executor: Optional[StepExecutor] = None,
        store: Optional[RunStore] = None,
        writer: Optional[ResultsWriter] = None,
        approval_timeout_minutes: int = DEFAULT_APPROVAL_TIMEOUT_MINUTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.secrets = secrets if secrets is not None else SecretStore()
        self.executor = executor if executor is not None else StepExecutor()
        self.store = store if store is not None else RunStore()
        self.writer = writer
        self.approval_timeout_minutes = approval_timeout_minutes
        self.clock = clock

        self._pipelines: dict[str, _RunPipeline] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registry helpers
    # ------------------------------------------------------------------
    def _lock_for(self, run_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(run_id, threading.Lock())

    def _pipeline(self, run_id: str) -> _RunPipeline:
        with self._registry_lock:
            pipeline = self._pipelines.get(run_id)
        if pipeline is None:
            raise RunNotFoundError(f"Run '{run_id}' not found", run_id=run_id)
        return pipeline

    def _persist(self, run: PipelineRun) -> None:
        if self.writer is not None:
            self.writer.write_run(run)

    def get_run(self, run_id: str) -> PipelineRun:
        return self.store.get(run_id)

    # ------------------------------------------------------------------
    # Run creation
    # ------------------------------------------------------------------
    def create_run(
        self,
        spec: PipelineSpec,
        trigger: Optional[Trigger] = None,
        workspace_path: str = WORKSPACE_ROOT,
    ) -> PipelineRun:
        """
        Register a queued run with one pending StageRun per stage.

        Raises GraphError / ExpressionError if the pipeline is invalid.
        Nothing is registered or persisted in that case.
        """
        graph = StageGraph(spec)
        gates = GateController(graph, self.approval_timeout_minutes, clock=self.clock)
        missing = self.secrets.missing(referenced_secrets(spec))

        run = PipelineRun(
            run_id=uuid.uuid4().hex[:12],
            pipeline_name=spec.name,
            pipeline_path=spec.source_path,
            trigger=trigger or Trigger(),
            created_at=self.clock(),
            workspace_path=workspace_path,
            stages=[
                StageRun(
                    name=stage_id,
                    display_name=spec.stage(stage_id).display_name,
                    needs=list(graph.needs(stage_id)),
                )
                for stage_id in graph.order()
            ],
        )

        with self._registry_lock:
            self._pipelines[run.run_id] = _RunPipeline(spec=spec, graph=graph, gates=gates)
        self.store.add(run)
        self._persist(run)

        if missing:
            logger.warning("Run %s references unconfigured secrets: %s", run.run_id, missing)

        logger.info(
            "Run created | run=%s | pipeline=%s | event=%s | ref=%s | stages=%s",
            run.run_id, spec.name, run.trigger.event, run.trigger.ref, graph.order(),
        )
        return run

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    def advance(self, run_id: str) -> PipelineRun:
        """Run every stage that can currently make progress, then return the run."""
        pipeline = self._pipeline(run_id)

        with self._lock_for(run_id):
            run = self.store.get(run_id)
            if run.status in TERMINAL_RUN_STATUSES:
                return run

            if run.started_at is None:
                run.started_at = self.clock()
            run.status = RunStatus.RUNNING

            expired = pipeline.gates.expire_stale(run)
            if expired:
                logger.info("Run %s: approvals expired for %s", run_id, expired)
            if run.cancel_requested:
                self._cancel_waiting(run)
            self._persist(run)

            while True:
                ready = pipeline.graph.ready(run.stage_statuses())
                if not ready:
                    break
                self._process_stage(run, pipeline, pipeline.spec.stage(ready[0]))
                self._persist(run)

            run.status = self._final_status(run)
            if run.status in TERMINAL_RUN_STATUSES:
                run.finished_at = self.clock()
            self._persist(run)

            logger.info("Run %s advanced | status=%s | stages=%s", run_id, run.status, run.stage_statuses())
            return run

    def _process_stage(self, run: PipelineRun, pipeline: _RunPipeline, stage: StageSpec) -> None:
        stage_run = run.stage(stage.id)
        decision = pipeline.gates.evaluate(run, stage, self.secrets.as_context())
        logger.info(
            "[STAGE] %s | decision=%s%s", stage.id, decision.action,
            f" | {decision.reason}" if decision.reason else "",
        )

        if decision.action == GateAction.RUN:
            try:
                self._run_stage(run, pipeline.spec, stage, stage_run)
            except Exception as e:
                logger.exception("Stage %s crashed", stage.id)
                stage_run.status = StageStatus.FAILURE
                stage_run.log += f"\n>>> INTERNAL ERROR: {type(e).__name__}: {self.secrets.mask(str(e))}\n"
                stage_run.finished_at = self.clock()
        elif decision.action == GateAction.WAIT:
            stage_run.status = StageStatus.WAITING_APPROVAL
            stage_run.skip_reason = decision.reason
        elif decision.action == GateAction.SKIP:
            self._finish_without_running(stage_run, StageStatus.SKIPPED, decision.reason)
        elif decision.action == GateAction.CANCEL:
            self._finish_without_running(stage_run, StageStatus.CANCELLED, decision.reason)
        elif decision.action == GateAction.REJECT:
            # The gate controller already recorded the rejection details
            if stage_run.status != StageStatus.REJECTED:
                self._finish_without_running(stage_run, StageStatus.REJECTED, decision.reason)

    def _finish_without_running(self, stage_run: StageRun, status: str, reason: str) -> None:
        stage_run.status = status
        stage_run.skip_reason = reason
        stage_run.finished_at = self.clock()

    def _cancel_waiting(self, run: PipelineRun) -> None:
        for stage_run in run.stages:
            if stage_run.status == StageStatus.WAITING_APPROVAL:
                self._finish_without_running(stage_run, StageStatus.CANCELLED, "run was cancelled")

    def _final_status(self, run: PipelineRun) -> str:
        statuses = [s.status for s in run.stages]
        if StageStatus.WAITING_APPROVAL in statuses:
            return RunStatus.WAITING_APPROVAL
        if run.cancel_requested:
            return RunStatus.CANCELLED
        if any(s in FAILED_STAGE_STATUSES for s in statuses):
            return RunStatus.FAILURE
        if StageStatus.PENDING in statuses or StageStatus.RUNNING in statuses:
            # Nothing ready yet something unfinished: a graph bug, not a user error
            run.error = "Run stalled with unfinished stages"
            return RunStatus.FAILURE
        return RunStatus.SUCCESS

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------
    def _run_stage(self, run: PipelineRun, spec: PipelineSpec, stage: StageSpec, stage_run: StageRun) -> None:
        stage_run.status = StageStatus.RUNNING
        stage_run.started_at = self.clock()
        stage_run.skip_reason = ""
        self._persist(run)

        logs: list[str] = []
        stage_failed = False
        last_exit = 0
        deadline = (
            time.monotonic() + stage.timeout_minutes * 60 if stage.timeout_minutes else None
        )

        logger.info("[STAGE] %s started | steps=%d", stage.id, len(stage.steps))

        for index, step in enumerate(stage.steps, 1):
            step_result, step_log = self._run_step(run, spec, stage, step, stage_failed, deadline)
            stage_run.steps.append(step_result)

            logs.append(f"{_LOG_RULE}\n>>> STEP {index}/{len(stage.steps)}: {step.name}\n{_LOG_RULE}")
            if step_log:
                logs.append(step_log.rstrip("\n"))
            if step_result.error:
                logs.append(f">>> STEP ERROR: {step_result.error}")
            logs.append(f">>> STEP {step.name}: {step_result.status.upper()}"
                        + (f" (exit {step_result.exit_code})" if step_result.exit_code not in (None, 0) else ""))

            if step_result.exit_code not in (None, 0):
                last_exit = step_result.exit_code
            if step_result.status == StepStatus.FAILURE and not step.continue_on_error:
                stage_failed = True

        stage_run.log = self.secrets.mask("\n".join(logs) + "\n")
        stage_run.exit_code = last_exit if stage_failed else 0
        stage_run.status = StageStatus.FAILURE if stage_failed else StageStatus.SUCCESS
        stage_run.finished_at = self.clock()

        logger.info("[STAGE] %s finished | status=%s", stage.id, stage_run.status)

    def _step_context(
        self,
        run: PipelineRun,
        spec: PipelineSpec,
        stage: StageSpec,
        step: StepSpec,
        stage_failed: bool,
        strict_secrets: bool,
    ) -> ExpressionContext:
        return ExpressionContext(
            values=expression_values(run, spec, stage, self.secrets.as_context(), step.env),
            status_functions={
                "success": lambda: not stage_failed,
                "failure": lambda: stage_failed,
                "cancelled": lambda: run.cancel_requested,
            },
            strict_secrets=strict_secrets,
        )

    def _step_timeout(self, step: StepSpec, deadline: Optional[float]) -> float:
        timeout = step.timeout_minutes * 60 if step.timeout_minutes else float(DEFAULT_STEP_TIMEOUT)
        if deadline is not None:
            timeout = min(timeout, deadline - time.monotonic())
        return timeout

    def _run_step(
        self,
        run: PipelineRun,
        spec: PipelineSpec,
        stage: StageSpec,
        step: StepSpec,
        stage_failed: bool,
        deadline: Optional[float],
    ) -> tuple[StepResult, str]:
        started = self.clock()

        def skipped(reason: str) -> tuple[StepResult, str]:
            return StepResult(
                name=step.name, status=StepStatus.SKIPPED, started_at=started,
                finished_at=started, continue_on_error=step.continue_on_error,
            ), f">>> skipped: {reason}"

        def failed(error: str) -> tuple[StepResult, str]:
            return StepResult(
                name=step.name, status=StepStatus.FAILURE, started_at=started,
                finished_at=self.clock(), error=self.secrets.mask(error),
                continue_on_error=step.continue_on_error,
            ), ""

        if run.cancel_requested and not survives_cancel(step.condition):
            return skipped("run was cancelled")

        try:
            condition_ctx = self._step_context(run, spec, stage, step, stage_failed, strict_secrets=False)
            if not evaluate_condition(step.condition, condition_ctx):
                return skipped(f"condition '{step.condition or 'success()'}' was false")
        except PipelineError as e:
            return failed(str(e))

        if step.uses:
            return skipped(f"action '{step.uses}' is not executed by this runner")

        timeout = self._step_timeout(step, deadline)
        if timeout <= 0:
            return failed(f"stage timeout of {stage.timeout_minutes:g} minute(s) exceeded")

        try:
            ctx = self._step_context(run, spec, stage, step, stage_failed, strict_secrets=True)
            script = interpolate(step.run or "", ctx)
            env = {k: interpolate(v, ctx) for k, v in ctx.values["env"].items()}
            working_dir = interpolate(step.working_directory, ctx)
        except PipelineError as e:
            logger.error("[STEP] %s/%s could not be prepared: %s", stage.id, step.name, e)
            return failed(str(e))

        logger.info("[STEP] %s/%s | timeout=%.0fs", stage.id, step.name, timeout)
        result: ExecutionResult = self.executor.execute(
            script,
            workspace_path=run.workspace_path,
            shell=step.shell,
            env=env,
            working_dir=working_dir,
            timeout_seconds=timeout,
            container=stage.container,
        )

        full_log = self.secrets.mask(result.full_log)
        return StepResult(
            name=step.name,
            status=StepStatus.SUCCESS if result.succeeded else StepStatus.FAILURE,
            exit_code=result.exit_code,
            started_at=started,
            finished_at=self.clock(),
            duration_seconds=result.execution_time_seconds,
            log_excerpt=create_log_excerpt(full_log),
            error=self.secrets.mask(result.error) if result.error else None,
            continue_on_error=step.continue_on_error,
        ), full_log

    # ------------------------------------------------------------------
    # Gates and cancellation
    # ------------------------------------------------------------------
    def approve(self, run_id: str, stage_id: str, actor: str, comment: str = "") -> Approval:
        """Record an approval. Call advance() afterwards to resume the run."""
        pipeline = self._pipeline(run_id)
        with self._lock_for(run_id):
            run = self.store.get(run_id)
            approval = pipeline.gates.approve(run, stage_id, actor, comment)
            self._persist(run)
        return approval

    def reject(self, run_id: str, stage_id: str, actor: str, comment: str = "") -> Approval:
        """Record a rejection. Call advance() afterwards to settle the run."""
        pipeline = self._pipeline(run_id)
        with self._lock_for(run_id):
            run = self.store.get(run_id)
            approval = pipeline.gates.reject(run, stage_id, actor, comment)
            self._persist(run)
        return approval

    def cancel(self, run_id: str) -> PipelineRun:
        """
        Request cancellation. The step currently executing finishes; no new
        stage starts unless its condition uses always() or cancelled().
        Call advance() afterwards to settle the run.
        """
        run = self.store.get(run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            return run
        run.cancel_requested = True
        logger.info("Run %s: cancel requested", run_id)
        return run

    def pending_approvals(self) -> list[tuple[PipelineRun, StageRun]]:
        """Every stage currently waiting for a decision, after expiring stale ones."""
        pending: list[tuple[PipelineRun, StageRun]] = []
        for run in self.store.list(status=RunStatus.WAITING_APPROVAL):
            pipeline = self._pipeline(run.run_id)
            with self._lock_for(run.run_id):
                expired = pipeline.gates.expire_stale(run)
            if expired:
                # Settle the stages behind the expired gates
                self.advance(run.run_id)
            pending.extend(
                (run, s) for s in run.stages if s.status == StageStatus.WAITING_APPROVAL
            )
        return pending

