"""
Top-Down Subtable Suppression (HITAS-style).

Splits the hierarchical table into two-level subtables and protects each
with the exact method:

    subtable = product over dimensions of {node} ∪ children(node)

for one interior node per dimension (a dimension without interior nodes
contributes its root only). Within a subtable every constraint is one of the
table's own roll-up equalities, so each subtable is a small non-hierarchical
cross-tabulation.

ORDERING:
- Dimensions are enumerated largest first (node count, then position), and
  nodes in pre-order, so the subtable sequence is reproducible.
- Subtables are grouped into waves by total depth of their nodes. Waves run
  deepest first: a parent-level subtable only starts after every subtable
  below it has returned, so suppressions chosen for details propagate into
  the totals above them.

CONCURRENCY:
- Subtables of one wave are independent. They are solved in a thread pool
  against a read-only snapshot of the current pattern, and their results are
  merged only after the whole wave has finished.
- A failure inside a wave cancels the outstanding futures and propagates; the
  global pattern is left as it was before the wave.

FIXPOINT:
- A subtable whose cells gained a suppression after it was solved is marked
  dirty and solved again. Patterns only grow, so the loop terminates.

The result is feasible per subtable but not globally optimal; the common
closure and range repair in SecondarySolver.solve() cover constraints that
only appear across subtables.
"""

import concurrent.futures as cf
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Set, Tuple

from engine.base import SecondarySolver, SuppressionProblem
from engine.exact import ExactSolver
from schema.table import Key


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Subtable:
    """One two-level block of the table."""
    index: int
    nodes: Tuple[int, ...]  # In key order (one node per dimension)
    depth: int
    cells: Tuple[Key, ...]


class TopDownSolver(SecondarySolver):
    """
    Hierarchical decomposition solver.

    Each subtable is protected with ExactSolver; the subtable size is bounded
    by the largest sibling group, so even large tables stay within the exact
    method's limits as long as no single node has too many children.
    """

    name = "top-down"

    def __init__(self, config=None):
        super().__init__(config)
        self._exact = ExactSolver(self.config)

    def subtables(self, problem: SuppressionProblem) -> List[Subtable]:
        """
        Enumerate subtables in deterministic order.

        Returns:
            Subtables ordered by enumeration (largest dimension slowest)
        """
        hierarchies = problem.table.hierarchies
        ndim = len(hierarchies)
        dim_order = sorted(range(ndim), key=lambda d: (-len(hierarchies[d]), d))

        per_dim: List[List[int]] = []
        for d in dim_order:
            interior = list(hierarchies[d].interior())
            per_dim.append(interior or [hierarchies[d].ROOT])

        result: List[Subtable] = []
        for combo in itertools.product(*per_dim):
            nodes = [0] * ndim
            for d, node in zip(dim_order, combo):
                nodes[d] = node

            axes = []
            for d, node in enumerate(nodes):
                tree = hierarchies[d]
                axes.append((node,) + tree.children_of(node))
            cells = tuple(itertools.product(*axes))
            depth = sum(hierarchies[d].depth_of(node) for d, node in enumerate(nodes))
            result.append(Subtable(len(result), tuple(nodes), depth, cells))
        return result

    def _suppress(self, problem: SuppressionProblem, suppressed: Set[Key]) -> Set[Key]:
        subtables = self.subtables(problem)

        waves: Dict[int, List[Subtable]] = defaultdict(list)
        containing: Dict[Key, List[int]] = defaultdict(list)
        for sub in subtables:
            waves[sub.depth].append(sub)
            for key in sub.cells:
                containing[key].append(sub.index)

        depths = sorted(waves, reverse=True)
        logger.info(f"Top-down: {len(subtables):,} subtables in {len(depths)} wave(s), "
                    f"workers={self.config.workers}")

        # Sub-problems copy the weight cache; fill it before threads start
        problem.prefill_weights(problem.graph.cells)

        suppressed = set(suppressed)
        dirty: Set[int] = {sub.index for sub in subtables}
        passes = 0

        while dirty:
            passes += 1
            for depth in depths:
                wave = [sub for sub in waves[depth] if sub.index in dirty]
                if not wave:
                    continue
                dirty.difference_update(sub.index for sub in wave)

                added = self._solve_wave(problem, wave, frozenset(suppressed))
                if added:
                    suppressed |= added
                    for key in added:
                        dirty.update(containing[key])
                    logger.debug(f"  pass {passes}, depth {depth}: {len(wave)} subtable(s), "
                                 f"{len(added)} cell(s) added")

        logger.info(f"Top-down: fixpoint after {passes} pass(es)")
        return suppressed

    def _solve_wave(
        self,
        problem: SuppressionProblem,
        wave: List[Subtable],
        snapshot: FrozenSet[Key]
    ) -> Set[Key]:
        """Solve one wave against a snapshot; returns cells added by the wave."""
        work = [sub for sub in wave if any(k in snapshot for k in sub.cells)]
        if not work:
            return set()

        if self.config.workers == 1 or len(work) == 1:
            results = [self._solve_subtable(problem, sub, snapshot) for sub in work]
        else:
            results = [None] * len(work)
            with cf.ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                futures = {
                    pool.submit(self._solve_subtable, problem, sub, snapshot): i
                    for i, sub in enumerate(work)
                }
                try:
                    for fut in cf.as_completed(futures):
                        results[futures[fut]] = fut.result()
                except Exception:
                    for fut in futures:
                        fut.cancel()
                    raise

        added: Set[Key] = set()
        for pattern in results:
            added |= pattern - snapshot
        return added

    def _solve_subtable(
        self,
        problem: SuppressionProblem,
        sub: Subtable,
        snapshot: FrozenSet[Key]
    ) -> Set[Key]:
        sub_problem = problem.restrict(sub.cells, snapshot)
        pinned = set(sub_problem.pinned)
        if not sub_problem.graph.violations(pinned) and not (
            self.config.verify_ranges and sub_problem.graph.under_protected(
                sub_problem.margins, pinned, sub_problem.value, sub_problem.nonnegative
            )
        ):
            return pinned
        names = tuple(
            problem.table.hierarchies[d].name_of(node) for d, node in enumerate(sub.nodes)
        )
        logger.debug(f"  solving subtable {names} ({len(sub.cells)} cells)")
        return self._exact.solve_pattern(sub_problem, pinned)
