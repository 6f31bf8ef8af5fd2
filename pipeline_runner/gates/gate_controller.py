"""
Gate Controller
===============
Decides, between stages, whether the next stage may start.

Decisions (GateAction):
    RUN    — condition holds and any approval gate is approved
    SKIP   — the stage's if: condition is false
    WAIT   — condition holds but a manual approval is still pending
    REJECT — the approval was rejected or expired
    CANCEL — the run was cancelled and the stage does not opt in with
             always() / cancelled()

Status functions seen by if: conditions:
    success()   — every transitive upstream stage finished with success
    failure()   — some transitive upstream stage failed or was rejected
    always()    — true
    cancelled() — the run was cancelled

The default condition is success(), which gives the classic CI rule:
run stage N+1 only if stage N succeeded.

Approvals:
    The first time a gated stage becomes runnable an Approval request is
    recorded on its StageRun (once). approve() / reject() record a decision.
    Pending requests older than their timeout expire and count as rejected.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from pipeline_runner.core.config import DEFAULT_APPROVAL_TIMEOUT_MINUTES
from pipeline_runner.core.constants import (
    ApprovalDecision,
    FAILED_STAGE_STATUSES,
    StageStatus,
)
from pipeline_runner.core.errors import ApprovalError
from pipeline_runner.graph.stage_graph import StageGraph
from pipeline_runner.models.approval import Approval
from pipeline_runner.models.pipeline_run import PipelineRun, StageRun
from pipeline_runner.parser.expressions import (
    ExpressionContext,
    evaluate_condition,
    parse_expression,
    strip_wrapper,
)
from pipeline_runner.parser.pipeline_spec import StageSpec
from pipeline_runner.runner.run_context import expression_values

logger = logging.getLogger(__name__)


class GateAction:
    RUN = "run"
    SKIP = "skip"
    WAIT = "wait"
    REJECT = "reject"
    CANCEL = "cancel"


@dataclass(frozen=True)
class GateDecision:
    action: str
    reason: str = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def survives_cancel(condition: Optional[str]) -> bool:
    """True if the condition calls always() or cancelled()."""
    if not condition or not str(condition).strip():
        return False

    def _walk(node: tuple) -> bool:
        kind = node[0]
        if kind == "call":
            return node[1] in ("always", "cancelled") or any(_walk(a) for a in node[2])
        if kind in ("and", "or", "eq", "ne"):
            return _walk(node[1]) or _walk(node[2])
        if kind == "not":
            return _walk(node[1])
        return False

    return _walk(parse_expression(strip_wrapper(str(condition))))


class GateController:
    """
    Evaluates pass/fail and manual-approval conditions for stages of a run.

    Parameters
    ----------
    graph : StageGraph
        Dependency graph of the pipeline the runs belong to.
    default_timeout_minutes : int
        Approval timeout used when a gate does not declare one.
    clock : Callable[[], datetime]
        Source of "now" (UTC). Injected by tests.
    """

    def __init__(
        self,
        graph: StageGraph,
        default_timeout_minutes: int = DEFAULT_APPROVAL_TIMEOUT_MINUTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.graph = graph
        self.default_timeout_minutes = default_timeout_minutes
        self.clock = clock

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------
    def condition_context(
        self,
        run: PipelineRun,
        stage: StageSpec,
        secrets: Optional[Mapping[str, str]] = None,
    ) -> ExpressionContext:
        statuses = run.stage_statuses()
        upstream = [statuses.get(s) for s in self.graph.upstream(stage.id)]

        return ExpressionContext(
            values=expression_values(run, self.graph.spec, stage, secrets),
            status_functions={
                "success": lambda: all(s == StageStatus.SUCCESS for s in upstream),
                "failure": lambda: any(s in FAILED_STAGE_STATUSES for s in upstream),
                "cancelled": lambda: run.cancel_requested,
            },
            strict_secrets=False,
        )

    def _skip_reason(self, run: PipelineRun, stage: StageSpec) -> str:
        if stage.condition:
            return f"condition '{stage.condition}' was false"
        statuses = run.stage_statuses()
        blocked = sorted(
            s for s in self.graph.upstream(stage.id) if statuses.get(s) != StageStatus.SUCCESS
        )
        return f"upstream stage(s) did not succeed: {', '.join(blocked)}"

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def evaluate(
        self,
        run: PipelineRun,
        stage: StageSpec,
        secrets: Optional[Mapping[str, str]] = None,
    ) -> GateDecision:
        """
        Decide what happens to a stage whose needs have all finished.

        May record an approval request on the stage run (first WAIT only)
        and may mark a pending approval as expired.
        """
        stage_run = run.stage(stage.id)

        if run.cancel_requested and not survives_cancel(stage.condition):
            return GateDecision(GateAction.CANCEL, "run was cancelled")

        context = self.condition_context(run, stage, secrets)
        if not evaluate_condition(stage.condition, context):
            return GateDecision(GateAction.SKIP, self._skip_reason(run, stage))

        if stage.approval is None:
            return GateDecision(GateAction.RUN)

        approval = stage_run.approval
        if approval is None:
            approval = self._request_approval(run, stage, stage_run)
            return GateDecision(GateAction.WAIT, self._waiting_reason(approval))

        if approval.pending and self._expire_if_stale(run, stage_run):
            return GateDecision(GateAction.REJECT, "approval request expired")

        if approval.decision == ApprovalDecision.APPROVED:
            return GateDecision(GateAction.RUN, f"approved by {approval.decided_by}")
        if approval.decision in (ApprovalDecision.REJECTED, ApprovalDecision.EXPIRED):
            return GateDecision(GateAction.REJECT, f"approval {approval.decision}")
        return GateDecision(GateAction.WAIT, self._waiting_reason(approval))

    def _waiting_reason(self, approval: Approval) -> str:
        who = ", ".join(approval.reviewers) if approval.reviewers else "any reviewer"
        return f"waiting for approval from {who}"

    def _request_approval(self, run: PipelineRun, stage: StageSpec, stage_run: StageRun) -> Approval:
        gate = stage.approval
        approval = Approval(
            stage=stage.id,
            environment=gate.environment or stage.environment,
            reviewers=list(gate.reviewers),
            requested_at=self.clock(),
            timeout_minutes=gate.timeout_minutes or self.default_timeout_minutes,
        )
        stage_run.approval = approval
        logger.info(
            "[GATE] Approval requested | run=%s | stage=%s | reviewers=%s | timeout=%dm",
            run.run_id, stage.id, approval.reviewers or "any", approval.timeout_minutes,
        )
        return approval

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def _pending_approval(self, run: PipelineRun, stage_id: str) -> tuple[StageRun, Approval]:
        try:
            stage_run = run.stage(stage_id)
        except KeyError:
            raise ApprovalError(f"Run has no stage '{stage_id}'", run_id=run.run_id, stage=stage_id)

        approval = stage_run.approval
        if stage_run.status != StageStatus.WAITING_APPROVAL or approval is None or not approval.pending:
            raise ApprovalError(
                f"Stage '{stage_id}' is not waiting for approval (status: {stage_run.status})",
                run_id=run.run_id, stage=stage_id,
            )
        if self._expire_if_stale(run, stage_run):
            raise ApprovalError(
                f"Approval request for stage '{stage_id}' has expired",
                run_id=run.run_id, stage=stage_id,
            )
        return stage_run, approval

    def _check_reviewer(self, run: PipelineRun, approval: Approval, actor: str) -> None:
        if not actor:
            raise ApprovalError("An approver name is required", run_id=run.run_id, stage=approval.stage)
        allowed = {r.casefold() for r in approval.reviewers}
        if allowed and actor.casefold() not in allowed:
            raise ApprovalError(
                f"'{actor}' is not an allowed reviewer for stage '{approval.stage}'",
                unauthorized=True, run_id=run.run_id, stage=approval.stage,
            )

    def approve(self, run: PipelineRun, stage_id: str, actor: str, comment: str = "") -> Approval:
        stage_run, approval = self._pending_approval(run, stage_id)
        self._check_reviewer(run, approval, actor)

        approval.decision = ApprovalDecision.APPROVED
        approval.decided_by = actor
        approval.decided_at = self.clock()
        approval.comment = comment
        # Back to pending so the orchestrator picks the stage up again
        stage_run.status = StageStatus.PENDING
        logger.info("[GATE] Approved | run=%s | stage=%s | by=%s", run.run_id, stage_id, actor)
        return approval

    def reject(self, run: PipelineRun, stage_id: str, actor: str, comment: str = "") -> Approval:
        stage_run, approval = self._pending_approval(run, stage_id)
        self._check_reviewer(run, approval, actor)

        approval.decision = ApprovalDecision.REJECTED
        approval.decided_by = actor
        approval.decided_at = self.clock()
        approval.comment = comment
        self._mark_rejected(stage_run, f"rejected by {actor}" + (f": {comment}" if comment else ""))
        logger.info("[GATE] Rejected | run=%s | stage=%s | by=%s", run.run_id, stage_id, actor)
        return approval

    def _mark_rejected(self, stage_run: StageRun, reason: str) -> None:
        stage_run.status = StageStatus.REJECTED
        stage_run.skip_reason = reason
        stage_run.finished_at = self.clock()

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------
    def _expire_if_stale(self, run: PipelineRun, stage_run: StageRun) -> bool:
        approval = stage_run.approval
        if approval is None or not approval.pending:
            return False
        now = self.clock()
        if now < approval.expires_at:
            return False

        approval.decision = ApprovalDecision.EXPIRED
        approval.decided_at = now
        self._mark_rejected(stage_run, f"approval expired after {approval.timeout_minutes} minute(s)")
        logger.warning(
            "[GATE] Approval expired | run=%s | stage=%s | requested_at=%s",
            run.run_id, stage_run.name, approval.requested_at.isoformat(),
        )
        return True

    def expire_stale(self, run: PipelineRun) -> list[str]:
        """Expire every stale pending approval in the run. Returns expired stage ids."""
        return [
            stage_run.name
            for stage_run in run.stages
            if stage_run.status == StageStatus.WAITING_APPROVAL and self._expire_if_stale(run, stage_run)
        ]
