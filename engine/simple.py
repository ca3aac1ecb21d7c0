"""
Simple Secondary Suppression (greedy cover).

Repeatedly suppresses the published cell that appears in the most
currently violated constraints (ties: lower weight, then canonical order)
until no constraint has a single suppressed term. Fast and deterministic,
with no optimality guarantee; meant as the fallback for large tables.
"""

import logging
from collections import Counter
from typing import Set

from core.errors import InfeasibleError
from engine.base import SecondarySolver, SuppressionProblem
from schema.table import Key


logger = logging.getLogger(__name__)


class SimpleSolver(SecondarySolver):
    """Greedy set-cover over violated constraints."""

    name = "simple"

    def _suppress(self, problem: SuppressionProblem, suppressed: Set[Key]) -> Set[Key]:
        suppressed = set(suppressed)
        steps = 0
        while True:
            violations = problem.graph.violations(suppressed)
            if not violations:
                break

            coverage: Counter = Counter()
            for constraint in violations:
                candidates = [k for k in constraint.cells if problem.candidate(k, suppressed)]
                if not candidates:
                    lone = problem.graph.unknowns(constraint, suppressed)
                    raise InfeasibleError(
                        f"Cell {problem.table.names_of(lone[0])} cannot be protected: "
                        "every partner on its line is must-publish or empty",
                        cells=lone,
                    )
                coverage.update(candidates)

            best = min(coverage, key=lambda k: (-coverage[k], problem.weight(k), problem.order(k)))
            suppressed.add(best)
            steps += 1
            logger.debug(f"  greedy: suppress {problem.table.names_of(best)} "
                         f"(resolves {coverage[best]} violation(s))")

        logger.info(f"Simple: {steps:,} greedy step(s)")
        return suppressed
