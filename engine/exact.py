"""
Exact Secondary Suppression (branch-and-cut).

Formulates the cheapest protected pattern as a 0/1 integer program and
solves it with HiGHS through scipy.optimize.milp:

    minimize    Σ w_i x_i
    subject to  Σ_{j ∈ E, j ≠ i} x_j ≥ x_i      for every constraint E, term i ∈ E
                x_i = 1                         for unsafe and must-suppress cells
                x_i = 0                         for must-publish cells
                x_i ∈ {0, 1}

The linear rows encode "no constraint with a single suppressed term".
Range sufficiency is not linear in x, so it is enforced lazily: after every
solve the attacker intervals are audited and each under-protected cell adds
a combinatorial cut

    Σ_{j ∈ F} x_j + Σ_{j ∈ S} (1 − x_j) ≥ 1

where S is the cell's suppressed component and F the published cells adjacent
to it. Any protected pattern either extends the component or drops part of
it, so the cut never removes a protected pattern.

Only practical for small cell counts; ProblemTooLargeError / SolverTimeoutError
signal that the caller should switch to a heuristic.
"""

import logging
import time
from typing import Dict, List, Set, Tuple

import numpy as np
from scipy.optimize import Bounds, LinearConstraint, milp
from scipy.sparse import csr_matrix

from core.errors import InfeasibleError, ProblemTooLargeError, SolverError, SolverTimeoutError
from engine.base import SecondarySolver, SuppressionProblem
from schema.table import Key


logger = logging.getLogger(__name__)


Cut = Tuple[Dict[int, float], float]


class ExactSolver(SecondarySolver):
    """Optimal suppression pattern by mixed-integer programming."""

    name = "exact"

    def _suppress(self, problem: SuppressionProblem, suppressed: Set[Key]) -> Set[Key]:
        return self.solve_pattern(problem, suppressed)

    def _variables(self, problem: SuppressionProblem, suppressed: Set[Key]) -> List[Key]:
        graph = problem.graph
        keys = [k for k in graph.cells if graph.constraints_for(k) or k in suppressed]
        extra = sorted((k for k in suppressed if k not in graph), key=problem.order)
        return keys + extra

    @staticmethod
    def _structure(problem: SuppressionProblem, column: Dict[Key, int]) -> csr_matrix:
        """
        One row per (constraint, term): other terms minus the term itself.

        Empty cells are left out, suppressing them never hides anything.
        """
        rows, cols, data = [], [], []
        r = 0
        empty = problem.graph.empty
        for constraint in problem.graph:
            cells = [column[k] for k in constraint.cells if k not in empty]
            if not cells:
                continue
            for i in cells:
                for j in cells:
                    rows.append(r)
                    cols.append(j)
                    data.append(-1.0 if j == i else 1.0)
                r += 1
        return csr_matrix((data, (rows, cols)), shape=(r, len(column)))

    def solve_pattern(self, problem: SuppressionProblem, suppressed: Set[Key]) -> Set[Key]:
        """
        Cheapest protected extension of a pinned pattern.

        Args:
            problem: Problem (possibly a sub-problem of a larger table)
            suppressed: Cells that must be suppressed

        Returns:
            Suppressed cell set

        Raises:
            ProblemTooLargeError: too many variables, or cut rounds exhausted
            SolverTimeoutError: time limit reached without a feasible pattern
            InfeasibleError: pins admit no feasible pattern
        """
        variables = self._variables(problem, suppressed)
        n = len(variables)
        if n > self.config.max_exact_cells:
            raise ProblemTooLargeError(
                f"Exact method limited to {self.config.max_exact_cells:,} cells, problem has {n:,}"
            )
        if n == 0:
            return set(suppressed)

        column = {k: i for i, k in enumerate(variables)}
        lower = np.array([1.0 if k in suppressed else 0.0 for k in variables])
        upper = np.array([
            0.0 if k in problem.must_publish
            or (k not in suppressed and problem.table.frequency(k) == 0) else 1.0
            for k in variables
        ])
        clash = [k for k in variables if lower[column[k]] > upper[column[k]]]
        if clash:
            raise InfeasibleError("Pinned cells are both suppressed and published", cells=clash)

        costs = np.array([problem.weight(k) for k in variables])
        structure = self._structure(problem, column)
        logger.info(f"Exact model: {n:,} binary variables, {structure.shape[0]:,} rows")

        cuts: List[Cut] = []
        deadline = time.monotonic() + self.config.time_limit

        for round_num in range(1, self.config.max_cut_rounds + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SolverTimeoutError(
                    f"Exact method exceeded {self.config.time_limit}s after {round_num - 1} rounds"
                )

            constraints = []
            if structure.shape[0]:
                constraints.append(LinearConstraint(structure, lb=0.0, ub=np.inf))
            if cuts:
                constraints.append(self._cut_constraint(cuts, n))

            res = milp(
                costs,
                integrality=np.ones(n),
                bounds=Bounds(lower, upper),
                constraints=constraints or None,
                options={"time_limit": remaining, "disp": False},
            )

            if res.status == 2:
                raise InfeasibleError("Exact model is infeasible under the given pins")
            if res.x is None:
                if res.status == 1:
                    raise SolverTimeoutError(
                        f"Exact method found no pattern within {self.config.time_limit}s"
                    )
                raise SolverError(f"MILP solver failed: {res.message}")
            if res.status == 1:
                logger.warning("Exact method hit its time limit; using best pattern found")

            pattern = {variables[i] for i in np.flatnonzero(res.x > 0.5)}
            pattern |= suppressed
            logger.debug(f"  round {round_num}: objective={res.fun:.4f}, {len(pattern):,} suppressed")

            if not self.config.verify_ranges:
                return pattern

            short = problem.graph.under_protected(
                problem.margins, pattern, problem.value, problem.nonnegative
            )
            if not short:
                logger.info(f"Exact method: protected pattern after {round_num} round(s)")
                return pattern

            new_cuts = self._protection_cuts(problem, pattern, short, column, lower)
            logger.info(f"  round {round_num}: {len(short)} under-protected cell(s), "
                        f"{len(new_cuts)} cut(s) added")
            cuts.extend(new_cuts)

        raise ProblemTooLargeError(
            f"Exact method did not converge within {self.config.max_cut_rounds} cut rounds"
        )

    @staticmethod
    def _protection_cuts(
        problem: SuppressionProblem,
        pattern: Set[Key],
        short: Dict[Key, Tuple[float, float]],
        column: Dict[Key, int],
        lower: np.ndarray
    ) -> List[Cut]:
        graph = problem.graph
        members_of = {k: members for members in graph.components(pattern) for k in members}
        cuts: List[Cut] = []
        seen = set()
        for key in sorted(short, key=problem.order):
            component = tuple(members_of[key])
            if component in seen:
                continue
            seen.add(component)

            frontier = {
                n for member in component for n in graph.neighbours(member)
                if n in column and problem.candidate(n, pattern)
            }
            free = [k for k in component if k in column and lower[column[k]] < 0.5]
            if not frontier and not free:
                raise InfeasibleError(
                    f"Cell {problem.table.names_of(key)} cannot reach its protection margin",
                    cells=[key],
                )

            coefs = {column[k]: 1.0 for k in frontier}
            for k in free:
                coefs[column[k]] = -1.0
            cuts.append((coefs, 1.0 - len(free)))
        return cuts

    @staticmethod
    def _cut_constraint(cuts: List[Cut], n: int) -> LinearConstraint:
        rows, cols, data = [], [], []
        lb = []
        for r, (coefs, rhs) in enumerate(cuts):
            for c, v in sorted(coefs.items()):
                rows.append(r)
                cols.append(c)
                data.append(v)
            lb.append(rhs)
        matrix = csr_matrix((data, (rows, cols)), shape=(len(cuts), n))
        return LinearConstraint(matrix, lb=np.array(lb), ub=np.inf)
