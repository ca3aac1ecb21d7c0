"""
Secondary Suppression Framework.

Every strategy shares one contract: given a table with primary (unsafe)
cells, the constraint graph and optional override pins, return a
SuppressionPlan in which

1. every unsafe and every must-suppress cell is suppressed,
2. no must-publish cell is suppressed,
3. no roll-up constraint has exactly one suppressed term, and
4. (when ranges are verified) every unsafe cell's attacker interval is at
   least as wide as its required protection margin,

or raise InfeasibleError.

Strategies only differ in how they pick the first pattern. The common tail
(structural closure, range repair, re-audit) lives in SecondarySolver.solve().
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, Optional, Set

from core.config import OBJECTIVES, SolverConfig
from core.errors import InfeasibleError
from engine.constraints import ConstraintGraph
from schema.table import CellStatus, CellTable, Key


logger = logging.getLogger(__name__)


def cell_weight(objective: str, frequency: int, aggregate: float) -> float:
    """
    Cost of suppressing one cell under an objective.

    Every weight is strictly positive, so suppressing a cell is never free.
    """
    if objective == "count":
        return 1.0
    if objective == "value":
        return abs(aggregate) + 1.0
    if objective == "frequency":
        return frequency + 1.0
    if objective == "information-loss":
        return 1.0 + math.log1p(abs(aggregate))
    raise ValueError(f"objective must be one of {OBJECTIVES}, got {objective!r}")


@dataclass
class SuppressionProblem:
    """
    Input of a secondary suppression run.

    Attributes:
        table: Table carrying PRIMARY statuses and protection margins
        graph: Constraint graph over (a subset of) the table's cells
        unsafe: Primary cells that must be suppressed and protected
        margins: Required attacker interval width per unsafe cell
        must_publish: Cells that may never be suppressed
        must_suppress: Cells pinned as suppressed (they count toward constraints)
        objective: Weighting used to compare candidate suppressions
        nonnegative: Attacker assumes suppressed values are >= 0
    """
    table: CellTable
    graph: ConstraintGraph
    unsafe: FrozenSet[Key]
    margins: Dict[Key, float]
    must_publish: FrozenSet[Key] = frozenset()
    must_suppress: FrozenSet[Key] = frozenset()
    objective: str = "value"
    nonnegative: bool = True
    _weights: Dict[Key, float] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_table(
        cls,
        table: CellTable,
        graph: Optional[ConstraintGraph] = None,
        objective: str = "value",
        must_publish: Iterable[Key] = (),
        must_suppress: Iterable[Key] = (),
        nonnegative: bool = True
    ) -> "SuppressionProblem":
        """
        Build a problem from an evaluated table.

        Args:
            table: Output of PrimarySuppressionEvaluator.apply()
            graph: Pre-built constraint graph (built here when omitted)
            objective: Suppression cost objective
            must_publish: Keys that must stay published
            must_suppress: Keys that must be suppressed
            nonnegative: Attacker model for range audits
        """
        unsafe = frozenset(table.unsafe_keys())
        return cls(
            table=table,
            graph=graph if graph is not None else ConstraintGraph.build(table),
            unsafe=unsafe,
            margins={k: table.protection(k) for k in unsafe},
            must_publish=frozenset(must_publish),
            must_suppress=frozenset(must_suppress),
            objective=objective,
            nonnegative=nonnegative,
        )

    @property
    def pinned(self) -> FrozenSet[Key]:
        """Cells suppressed before any strategy runs."""
        return self.unsafe | self.must_suppress

    def weight(self, key: Key) -> float:
        w = self._weights.get(key)
        if w is None:
            w = cell_weight(self.objective, self.table.frequency(key), self.table.aggregate(key))
            self._weights[key] = w
        return w

    def value(self, key: Key) -> float:
        return self.table.aggregate(key)

    def order(self, key: Key):
        return self.table.order_key(key)

    def candidate(self, key: Key, suppressed: Set[Key]) -> bool:
        """
        Whether a cell may be added to the pattern.

        Empty cells never qualify: their published frequency of 0 gives the
        value away, so suppressing them hides nothing.
        """
        return (
            key not in suppressed
            and key not in self.must_publish
            and self.table.frequency(key) > 0
        )

    def prefill_weights(self, cells: Iterable[Key]) -> None:
        """Compute weights up front so sub-problems only read the cache."""
        for key in cells:
            self.weight(key)

    def restrict(self, cells: Iterable[Key], suppressed: Iterable[Key] = ()) -> "SuppressionProblem":
        """
        Sub-problem over a subset of cells.

        Cells already suppressed globally are pinned inside the sub-problem.
        """
        cells = list(cells)
        inside = set(cells)
        pinned = (set(suppressed) | self.must_suppress) & inside
        unsafe = frozenset(self.unsafe & inside)
        return replace(
            self,
            graph=self.graph.restrict(cells),
            unsafe=unsafe,
            margins={k: self.margins.get(k, 0.0) for k in unsafe},
            must_publish=frozenset(self.must_publish & inside),
            must_suppress=frozenset(pinned - unsafe),
            _weights={k: self._weights[k] for k in cells if k in self._weights},
        )

    def without_publish_pins(self) -> "SuppressionProblem":
        return replace(self, must_publish=frozenset())


@dataclass(frozen=True)
class SuppressionPlan:
    """
    Final cell -> {publish, suppress} decision of one protection run.

    Immutable; the ResultExporter and the override finalisation read it.
    """
    suppressed: FrozenSet[Key]
    primary: FrozenSet[Key]
    method: str
    objective: str
    cost: float = 0.0

    @property
    def secondary(self) -> FrozenSet[Key]:
        return self.suppressed - self.primary

    def is_suppressed(self, key: Key) -> bool:
        return key in self.suppressed

    def decision(self, key: Key) -> str:
        return "suppress" if key in self.suppressed else "publish"

    def apply(self, table: CellTable) -> CellTable:
        """Table with PRIMARY / SECONDARY statuses following this plan."""
        statuses = {
            key: CellStatus.PRIMARY if key in self.primary else CellStatus.SECONDARY
            for key in self.suppressed
        }
        return table.with_statuses(statuses)

    def summary(self) -> str:
        """Generate a summary of the plan."""
        lines = [
            "=" * 60,
            "Suppression Plan Summary",
            "=" * 60,
            f"Method: {self.method}",
            f"Objective: {self.objective} (cost {self.cost:,.2f})",
            f"Primary suppressions: {len(self.primary):,}",
            f"Secondary suppressions: {len(self.secondary):,}",
            f"Total suppressed: {len(self.suppressed):,}",
            "=" * 60,
        ]
        return "\n".join(lines)


class SecondarySolver(ABC):
    """
    Base class of all secondary suppression strategies.

    Subclasses implement _suppress(); solve() wraps it with pin checks,
    structural closure and range repair.
    """

    name = "base"

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()

    def solve(self, problem: SuppressionProblem) -> SuppressionPlan:
        """
        Produce a protected suppression pattern.

        Args:
            problem: Table, constraints, unsafe cells and pins

        Returns:
            SuppressionPlan satisfying the shared feasibility contract

        Raises:
            InfeasibleError: if the pins contradict each other or protection
                cannot be reached without suppressing a must-publish cell
            SolverError: strategy specific, retryable with another method
        """
        logger.info("=" * 60)
        logger.info(f"Secondary suppression: method={self.name}, objective={problem.objective}")
        logger.info("=" * 60)
        logger.info(f"Unsafe cells: {len(problem.unsafe):,}, "
                    f"pins: {len(problem.must_publish):,} publish / {len(problem.must_suppress):,} suppress")

        self.check_pins(problem)
        suppressed = set(problem.pinned)

        # Step 1: Strategy
        suppressed = set(self._suppress(problem, suppressed))
        logger.info(f"Step 1 ({self.name}): {len(suppressed) - len(problem.pinned):,} cells added")

        # Step 2: Structural closure
        before = len(suppressed)
        suppressed = self.close(problem, suppressed)
        if len(suppressed) > before:
            logger.info(f"Step 2 (closure): {len(suppressed) - before:,} cells added")

        # Step 3: Range audit and repair
        if self.config.verify_ranges:
            suppressed = self.repair_ranges(problem, suppressed)

        plan = SuppressionPlan(
            suppressed=frozenset(suppressed),
            primary=frozenset(problem.unsafe),
            method=self.name,
            objective=problem.objective,
            cost=sum(problem.weight(k) for k in suppressed - problem.pinned),
        )
        logger.info(f"Secondary suppression complete: {len(plan.secondary):,} secondary, "
                    f"{len(plan.suppressed):,} total suppressed")
        return plan

    @abstractmethod
    def _suppress(self, problem: SuppressionProblem, suppressed: Set[Key]) -> Set[Key]:
        """Strategy step: extend the pinned pattern."""

    @staticmethod
    def check_pins(problem: SuppressionProblem) -> None:
        """Raise InfeasibleError on contradictory pins."""
        clash = sorted(problem.unsafe & problem.must_publish, key=problem.order)
        if clash:
            raise InfeasibleError(
                f"{len(clash)} unsafe cell(s) are marked must-publish", cells=clash
            )
        clash = sorted(problem.must_suppress & problem.must_publish, key=problem.order)
        if clash:
            raise InfeasibleError(
                f"{len(clash)} cell(s) are marked both must-publish and must-suppress", cells=clash
            )

    def close(self, problem: SuppressionProblem, suppressed: Set[Key]) -> Set[Key]:
        """
        Greedy structural closure.

        Every constraint with a single suppressed term gains its cheapest
        published partner until no such constraint remains.
        """
        suppressed = set(suppressed)
        while True:
            violations = problem.graph.violations(suppressed)
            if not violations:
                return suppressed
            for constraint in violations:
                lone = problem.graph.unknowns(constraint, suppressed)
                if len(lone) != 1:
                    continue
                candidates = [k for k in constraint.cells if problem.candidate(k, suppressed)]
                if not candidates:
                    raise InfeasibleError(
                        f"Cell {problem.table.names_of(lone[0])} is recoverable from its "
                        f"constraint and every partner is must-publish or empty",
                        cells=lone,
                    )
                best = min(candidates, key=lambda k: (problem.weight(k), problem.order(k)))
                logger.debug(f"  closure: suppress {problem.table.names_of(best)}")
                suppressed.add(best)

    def repair_ranges(self, problem: SuppressionProblem, suppressed: Set[Key]) -> Set[Key]:
        """
        Widen attacker intervals that are narrower than the required margin.

        Each round suppresses, per under-protected cell, the cheapest published
        cell adjacent to the cell's suppressed component, then re-closes.
        """
        suppressed = set(suppressed)
        graph = problem.graph
        while True:
            short = graph.under_protected(problem.margins, suppressed, problem.value, problem.nonnegative)
            if not short:
                return suppressed

            components = {k: members for members in graph.components(suppressed) for k in members}
            for key in sorted(short, key=problem.order):
                width, margin = short[key]
                if key not in components:
                    continue
                frontier = {
                    n for member in components[key] for n in graph.neighbours(member)
                    if problem.candidate(n, suppressed)
                }
                if not frontier:
                    raise InfeasibleError(
                        f"Cell {problem.table.names_of(key)} has range {width:.4g} < margin "
                        f"{margin:.4g} and every adjacent cell is must-publish or empty",
                        cells=[key],
                    )
                best = min(frontier, key=lambda k: (problem.weight(k), problem.order(k)))
                logger.warning(
                    f"Range repair: {problem.table.names_of(key)} width {width:.4g} < "
                    f"margin {margin:.4g}; suppressing {problem.table.names_of(best)}"
                )
                suppressed.add(best)
                # Components merge once a frontier cell joins
                components = {k: members for members in graph.components(suppressed) for k in members}

            suppressed = self.close(problem, suppressed)


def get_solver(method: str, config: Optional[SolverConfig] = None) -> SecondarySolver:
    """
    Strategy factory.

    Args:
        method: 'exact', 'top-down', 'geometric' or 'simple'
        config: Solver settings (defaults apply when omitted)

    Returns:
        SecondarySolver instance
    """
    if method == "exact":
        from engine.exact import ExactSolver
        cls = ExactSolver
    elif method == "top-down":
        from engine.topdown import TopDownSolver
        cls = TopDownSolver
    elif method == "geometric":
        from engine.hypercube import HypercubeSolver
        cls = HypercubeSolver
    elif method == "simple":
        from engine.simple import SimpleSolver
        cls = SimpleSolver
    else:
        raise ValueError(f"Unknown suppression method: {method!r}")

    if config is None:
        config = SolverConfig(method=method)
    return cls(config)

