"""
Unit Tests — Stage Graph
========================
Dependency validation, deterministic ordering and readiness.
"""
import pytest

from pipeline_runner.core.constants import StageStatus
from pipeline_runner.core.errors import GraphError, PipelineDefinitionError
from pipeline_runner.graph.stage_graph import StageGraph
from pipeline_runner.parser.pipeline_spec import ApprovalGateSpec, PipelineSpec, StageSpec, StepSpec


def _stage(stage_id, needs=(), **extra):
    return StageSpec(id=stage_id, needs=tuple(needs), steps=(StepSpec(name="s", run="true"),), **extra)


def _spec(*stages):
    return PipelineSpec(name="test", stages=tuple(stages))


LINEAR = _spec(
    _stage("build"),
    _stage("scan", ["build"]),
    _stage("package", ["scan"]),
    _stage("deploy", ["package"]),
)


# ---------------------------------------------------------------------------
# 1. Validation
# ---------------------------------------------------------------------------
class TestValidation:

    def test_unknown_dependency(self):
        with pytest.raises(GraphError, match="unknown stage 'tests'"):
            StageGraph(_spec(_stage("build"), _stage("deploy", ["tests"])))

    def test_self_dependency(self):
        with pytest.raises(GraphError, match="cannot need itself"):
            StageGraph(_spec(_stage("build", ["build"])))

    def test_cycle_detected(self):
        with pytest.raises(GraphError) as exc:
            StageGraph(_spec(_stage("a", ["c"]), _stage("b", ["a"]), _stage("c", ["b"])))
        cycle = exc.value.details["cycle"]
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_graph_error_is_definition_error(self):
        with pytest.raises(PipelineDefinitionError):
            StageGraph(_spec(_stage("a", ["b"]), _stage("b", ["a"])))


# ---------------------------------------------------------------------------
# 2. Ordering
# ---------------------------------------------------------------------------
class TestOrdering:

    def test_linear_order(self):
        assert StageGraph(LINEAR).order() == ["build", "scan", "package", "deploy"]

    def test_declaration_order_breaks_ties(self):
        spec = _spec(_stage("lint"), _stage("unit"), _stage("report", ["unit", "lint"]), _stage("docs"))
        assert StageGraph(spec).order() == ["lint", "unit", "report", "docs"]

    def test_dependency_declared_later_still_runs_first(self):
        spec = _spec(_stage("deploy", ["build"]), _stage("build"))
        assert StageGraph(spec).order() == ["build", "deploy"]

    def test_order_is_deterministic(self):
        assert StageGraph(LINEAR).order() == StageGraph(LINEAR).order()

    def test_roots_upstream_downstream(self):
        graph = StageGraph(LINEAR)
        assert graph.roots() == ["build"]
        assert graph.upstream("deploy") == {"build", "scan", "package"}
        assert graph.downstream("scan") == {"package", "deploy"}
        assert len(graph) == 4
        assert list(graph) == graph.order()


# ---------------------------------------------------------------------------
# 3. Readiness
# ---------------------------------------------------------------------------
class TestReady:

    def test_only_roots_ready_initially(self):
        assert StageGraph(LINEAR).ready({}) == ["build"]

    def test_next_stage_ready_after_finish(self):
        graph = StageGraph(LINEAR)
        statuses = {"build": StageStatus.SUCCESS, "scan": StageStatus.PENDING}
        assert graph.ready(statuses) == ["scan"]

    def test_skipped_dependency_counts_as_finished(self):
        graph = StageGraph(LINEAR)
        statuses = {"build": StageStatus.FAILURE, "scan": StageStatus.SKIPPED}
        assert graph.ready(statuses) == ["package"]

    def test_waiting_stage_blocks_dependents(self):
        graph = StageGraph(LINEAR)
        statuses = {
            "build": StageStatus.SUCCESS,
            "scan": StageStatus.SUCCESS,
            "package": StageStatus.WAITING_APPROVAL,
        }
        assert graph.ready(statuses) == []

    def test_describe_marks_gates(self):
        spec = _spec(_stage("build"), _stage("deploy", ["build"], approval=ApprovalGateSpec()))
        described = StageGraph(spec).describe()
        assert described[1] == {"id": "deploy", "name": "deploy", "needs": ["build"], "gated": True}
