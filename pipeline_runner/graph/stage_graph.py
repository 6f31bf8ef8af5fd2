"""
Stage Graph
===========
Dependency graph of the stages in one pipeline.

Invariants (checked at construction):
    - Every `needs` entry names a stage that exists.
    - No stage needs itself.
    - There are no cycles.

Ordering:
    order() is a topological order with ties broken by declaration order,
    so a linear pipeline (build → scan → package → deploy) runs exactly as
    written and the result is deterministic.
"""
import heapq
import logging
from typing import Iterator, Mapping

from pipeline_runner.core.constants import FINISHED_STAGE_STATUSES, StageStatus
from pipeline_runner.core.errors import GraphError
from pipeline_runner.parser.pipeline_spec import PipelineSpec

logger = logging.getLogger(__name__)


class StageGraph:

    def __init__(self, spec: PipelineSpec) -> None:
        self.spec = spec
        self._index = {stage.id: i for i, stage in enumerate(spec.stages)}
        self._needs: dict[str, tuple] = {stage.id: tuple(stage.needs) for stage in spec.stages}
        self._dependents: dict[str, list[str]] = {stage.id: [] for stage in spec.stages}

        for stage_id, needs in self._needs.items():
            for dep in needs:
                if dep == stage_id:
                    raise GraphError(f"Stage '{stage_id}' cannot need itself", stage=stage_id)
                if dep not in self._index:
                    raise GraphError(
                        f"Stage '{stage_id}' needs unknown stage '{dep}'",
                        stage=stage_id,
                        details={"known": list(self._index)},
                    )
                self._dependents[dep].append(stage_id)

        self._order = self._topological_order()

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    def _topological_order(self) -> list[str]:
        in_degree = {stage_id: len(needs) for stage_id, needs in self._needs.items()}
        heap = [(self._index[s], s) for s, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)

        order: list[str] = []
        while heap:
            _, stage_id = heapq.heappop(heap)
            order.append(stage_id)
            for dependent in self._dependents[stage_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self._index[dependent], dependent))

        if len(order) != len(self._needs):
            remaining = [s for s in self._needs if s not in order]
            cycle = self._find_cycle(remaining)
            raise GraphError(
                f"Stage dependencies form a cycle: {' -> '.join(cycle)}",
                details={"cycle": cycle},
            )
        return order

    def _find_cycle(self, candidates: list[str]) -> list[str]:
        """Walk needs edges from a stuck stage until a stage repeats (a -> b means a needs b)."""
        stuck = set(candidates)
        path: list[str] = []
        seen: dict[str, int] = {}
        current = candidates[0]
        while current not in seen:
            seen[current] = len(path)
            path.append(current)
            current = next(dep for dep in self._needs[current] if dep in stuck)
        return path[seen[current]:] + [current]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def order(self) -> list[str]:
        return list(self._order)

    def needs(self, stage_id: str) -> tuple:
        return self._needs[stage_id]

    def roots(self) -> list[str]:
        return [s for s in self._order if not self._needs[s]]

    def upstream(self, stage_id: str) -> set[str]:
        """All stages this one transitively depends on."""
        result: set[str] = set()
        stack = list(self._needs[stage_id])
        while stack:
            dep = stack.pop()
            if dep not in result:
                result.add(dep)
                stack.extend(self._needs[dep])
        return result

    def downstream(self, stage_id: str) -> set[str]:
        """All stages that transitively depend on this one."""
        result: set[str] = set()
        stack = list(self._dependents[stage_id])
        while stack:
            dependent = stack.pop()
            if dependent not in result:
                result.add(dependent)
                stack.extend(self._dependents[dependent])
        return result

    def ready(self, statuses: Mapping[str, str]) -> list[str]:
        """
        Pending stages whose needs have all finished, in graph order.

        Parameters
        ----------
        statuses : Mapping[str, str]
            stage id → current StageStatus value. Missing ids count as pending.
        """
        return [
            stage_id
            for stage_id in self._order
            if statuses.get(stage_id, StageStatus.PENDING) == StageStatus.PENDING
            and all(statuses.get(dep) in FINISHED_STAGE_STATUSES for dep in self._needs[stage_id])
        ]

    def describe(self) -> list[dict]:
        """Stages in order with their needs, for CLI / API display."""
        return [
            {
                "id": stage_id,
                "name": self.spec.stage(stage_id).display_name,
                "needs": list(self._needs[stage_id]),
                "gated": self.spec.stage(stage_id).approval is not None,
            }
            for stage_id in self._order
        ]

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._order)
