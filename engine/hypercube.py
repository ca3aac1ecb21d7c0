"""
Geometric Secondary Suppression (hypercube heuristic).

For an unsafe cell u, every dimension in which u sits on an unprotected line
(a constraint where u is the only suppressed term) needs a partner: another
cell on that line, differing from u only in that dimension's coordinate.
Choosing one partner coordinate p_d for each such dimension spans a cube
whose 2^k corners are

    { c : c_d ∈ {u_d, p_d} for chosen d, c_e = u_e otherwise }

Suppressing all corners gives every line through a corner a second unknown
within the cube. Among all cubes the smallest one wins: fewest new
suppressions, then smallest suppressed value, then canonical order.

Unsafe cells are processed greedily in descending aggregate order and every
cube is committed before the next cell. Lone cells of remaining violations
are then treated the same way; whatever is still open is left to the common
closure step.
"""

import itertools
import logging
from typing import Dict, List, Optional, Set, Tuple

from engine.base import SecondarySolver, SuppressionProblem
from schema.table import Key


logger = logging.getLogger(__name__)


class HypercubeSolver(SecondarySolver):
    """Greedy cube-by-cube suppression."""

    name = "geometric"

    # Cheapest partner coordinates considered per dimension
    max_partners = 8

    def _suppress(self, problem: SuppressionProblem, suppressed: Set[Key]) -> Set[Key]:
        suppressed = set(suppressed)
        table = problem.table

        order = sorted(problem.unsafe, key=lambda k: (-abs(table.aggregate(k)), problem.order(k)))
        cubes = 0
        for key in order:
            cube = self._best_cube(problem, key, suppressed)
            if cube:
                suppressed |= cube
                cubes += 1
        logger.info(f"Geometric: {cubes:,} cube(s) for {len(order):,} unsafe cell(s)")

        # Secondary cells may now be alone on some line of their own
        for _ in range(len(problem.graph.cells)):
            lone = self._lone_cells(problem, suppressed)
            progress = False
            for key in lone:
                cube = self._best_cube(problem, key, suppressed)
                if cube:
                    suppressed |= cube
                    progress = True
            if not progress:
                break
        return suppressed

    @staticmethod
    def _lone_cells(problem: SuppressionProblem, suppressed: Set[Key]) -> List[Key]:
        graph = problem.graph
        lone = {k for c in graph.violations(suppressed) for k in graph.unknowns(c, suppressed)}
        return sorted(lone, key=lambda k: (-abs(problem.table.aggregate(k)), problem.order(k)))

    def _partners(self, problem: SuppressionProblem, key: Key, suppressed: Set[Key]) -> Dict[int, List[int]]:
        """Candidate partner coordinates per dimension with an unprotected line through key."""
        choices: Dict[int, List[int]] = {}
        for constraint in problem.graph.constraints_for(key):
            if len(problem.graph.unknowns(constraint, suppressed)) != 1:
                continue
            d = constraint.dimension
            options = [
                k for k in constraint.cells
                if k != key and problem.candidate(k, suppressed)
            ]
            current = set(choices.get(d, ()))
            current.update(k[d] for k in options)
            choices[d] = list(current)

        for d, coords in choices.items():
            ranked = sorted(
                coords,
                key=lambda c: (problem.weight(key[:d] + (c,) + key[d + 1:]),
                               problem.order(key[:d] + (c,) + key[d + 1:])),
            )
            choices[d] = ranked[:self.max_partners]
        return choices

    def _best_cube(self, problem: SuppressionProblem, key: Key, suppressed: Set[Key]) -> Optional[Set[Key]]:
        """Cheapest cube of new suppressions around key, or None."""
        choices = self._partners(problem, key, suppressed)
        if not choices:
            return None
        if any(not coords for coords in choices.values()):
            logger.debug(f"  no partner for {problem.table.names_of(key)} in some dimension")
            choices = {d: coords for d, coords in choices.items() if coords}
            if not choices:
                return None

        dims = sorted(choices)
        best: Optional[Tuple[Tuple, Set[Key]]] = None
        for partner in itertools.product(*(choices[d] for d in dims)):
            corners = self._corners(key, dict(zip(dims, partner)))
            if any(c not in suppressed and not problem.candidate(c, suppressed) for c in corners):
                continue
            new = {c for c in corners if c not in suppressed}
            cost = (
                len(new),
                sum(abs(problem.value(c)) for c in new),
                sorted(problem.order(c) for c in new),
            )
            if best is None or cost < best[0]:
                best = (cost, new)

        if best is None:
            return None
        logger.debug(f"  cube for {problem.table.names_of(key)}: {len(best[1])} new cell(s)")
        return best[1]

    @staticmethod
    def _corners(key: Key, partner: Dict[int, int]) -> List[Key]:
        axes = [
            (coord, partner[d]) if d in partner else (coord,)
            for d, coord in enumerate(key)
        ]
        return [tuple(c) for c in itertools.product(*axes)]
