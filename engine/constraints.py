"""
Roll-up Constraint Graph.

Every interior node of every dimension, combined with every choice of nodes
in the other dimensions, gives one linear equality:

    value(total) = Σ value(children)

The full set is what an attacker can combine with published cells to narrow
down a suppressed value. The graph answers two questions:

1. Structural: which constraints hold exactly one suppressed term (that term
   is then recoverable by subtraction)?
2. Quantitative: for a suppressed cell, what is the tightest interval
   [lower, upper] an attacker can derive by linear programming over all
   constraints, given the published values?

Cells without any record are public knowledge: the exported frequency of 0
tells the attacker their value is 0. They never count as unknowns, neither
in the structural check nor in the interval LP.
"""

import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
from scipy.optimize import linprog
from scipy.sparse import csr_matrix

from schema.table import CellTable, Key


logger = logging.getLogger(__name__)


Interval = Tuple[float, float]


@dataclass(frozen=True)
class Constraint:
    """Represents a sum constraint: total equals the sum of its children."""
    index: int
    dimension: int
    total: Key
    children: Tuple[Key, ...]

    @property
    def cells(self) -> Tuple[Key, ...]:
        return (self.total,) + self.children

    def coefficient(self, key: Key) -> int:
        return 1 if key == self.total else -1


class ConstraintGraph:
    """
    All roll-up equalities of a table, indexed by cell.

    Built once per table and shared read-only by the solvers.
    """

    def __init__(
        self,
        cells: Sequence[Key],
        constraints: Sequence[Constraint],
        empty: Iterable[Key] = ()
    ):
        """
        Initialize graph.

        Args:
            cells: All cell keys covered, in canonical order
            constraints: Equalities over those cells (indices are reassigned)
            empty: Cells with frequency 0 (value known to be 0)
        """
        self.cells: List[Key] = list(cells)
        self.empty: FrozenSet[Key] = frozenset(empty)
        self._cell_index: Dict[Key, int] = {k: i for i, k in enumerate(self.cells)}
        self.constraints: List[Constraint] = [
            Constraint(i, c.dimension, c.total, c.children) for i, c in enumerate(constraints)
        ]
        self._by_cell: Dict[Key, List[int]] = defaultdict(list)
        for c in self.constraints:
            for key in c.cells:
                self._by_cell[key].append(c.index)

    @classmethod
    def build(cls, table: CellTable) -> "ConstraintGraph":
        """
        Generate every roll-up equality of a table.

        Order is deterministic: dimension, then interior node in pre-order,
        then the other coordinates in canonical order.
        """
        constraints: List[Constraint] = []
        for d, tree in enumerate(table.hierarchies):
            others = [h.preorder() for e, h in enumerate(table.hierarchies) if e != d]
            for node in tree.interior():
                children = tree.children_of(node)
                for combo in itertools.product(*others):
                    total = combo[:d] + (node,) + combo[d:]
                    kids = tuple(combo[:d] + (c,) + combo[d:] for c in children)
                    constraints.append(Constraint(len(constraints), d, total, kids))

        cells = list(table.keys())
        graph = cls(cells, constraints, empty=[k for k in cells if table.frequency(k) == 0])
        logger.info(f"Constraint graph: {len(graph.constraints):,} equalities over "
                    f"{len(graph.cells):,} cells")
        return graph

    def restrict(self, cells: Iterable[Key]) -> "ConstraintGraph":
        """Sub-graph with the given cells and the constraints lying entirely inside them."""
        wanted = set(cells)
        ordered = [k for k in self.cells if k in wanted]
        inside = [c for c in self.constraints if all(k in wanted for k in c.cells)]
        return ConstraintGraph(ordered, inside, empty=self.empty & wanted)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.constraints)

    def __iter__(self) -> Iterator[Constraint]:
        return iter(self.constraints)

    def __contains__(self, key: object) -> bool:
        return key in self._cell_index

    def cell_index(self, key: Key) -> int:
        return self._cell_index[key]

    def constraints_for(self, key: Key) -> List[Constraint]:
        """Constraints the cell participates in (as total or as child)."""
        return [self.constraints[i] for i in self._by_cell.get(key, ())]

    def neighbours(self, key: Key) -> Set[Key]:
        """Cells sharing at least one constraint with `key`."""
        result: Set[Key] = set()
        for i in self._by_cell.get(key, ()):
            result.update(self.constraints[i].cells)
        result.discard(key)
        return result

    # ------------------------------------------------------------------
    # Structural feasibility
    # ------------------------------------------------------------------

    def unknowns(self, constraint: Constraint, suppressed: Set[Key]) -> List[Key]:
        """Suppressed terms of a constraint whose value is not public."""
        return [k for k in constraint.cells if k in suppressed and k not in self.empty]

    def violations(self, suppressed: Set[Key]) -> List[Constraint]:
        """Constraints with exactly one unknown (suppressed, non-empty) term."""
        touched: Set[int] = set()
        for key in suppressed:
            if key not in self.empty:
                touched.update(self._by_cell.get(key, ()))
        return [
            self.constraints[i] for i in sorted(touched)
            if len(self.unknowns(self.constraints[i], suppressed)) == 1
        ]

    def is_feasible(self, suppressed: Set[Key], unsafe: Iterable[Key] = ()) -> bool:
        """Every unsafe cell suppressed and no constraint with a single unknown."""
        if any(k not in suppressed for k in unsafe):
            return False
        return not self.violations(suppressed)

    def to_matrix(self) -> csr_matrix:
        """Equalities as a sparse matrix: +1 for the total, -1 for each child."""
        rows, cols, data = [], [], []
        for c in self.constraints:
            for key in c.cells:
                rows.append(c.index)
                cols.append(self._cell_index[key])
                data.append(c.coefficient(key))
        return csr_matrix(
            (np.array(data, dtype=np.float64), (rows, cols)),
            shape=(len(self.constraints), len(self.cells)),
        )

    # ------------------------------------------------------------------
    # Attacker intervals
    # ------------------------------------------------------------------

    def components(self, suppressed: Set[Key]) -> List[List[Key]]:
        """Groups of suppressed cells linked through shared constraints."""
        parent: Dict[Key, Key] = {k: k for k in suppressed}

        def find(k: Key) -> Key:
            while parent[k] != k:
                parent[k] = parent[parent[k]]
                k = parent[k]
            return k

        for c in self.constraints:
            members = [k for k in c.cells if k in suppressed]
            for other in members[1:]:
                a, b = find(members[0]), find(other)
                if a != b:
                    parent[b] = a

        groups: Dict[Key, List[Key]] = defaultdict(list)
        for key in sorted(suppressed, key=self._order):
            groups[find(key)].append(key)
        return list(groups.values())

    def _order(self, key: Key) -> int:
        return self._cell_index.get(key, len(self.cells))

    def intervals(
        self,
        targets: Iterable[Key],
        suppressed: Set[Key],
        values: Callable[[Key], float],
        nonnegative: bool = True
    ) -> Dict[Key, Interval]:
        """
        Attacker intervals for suppressed target cells.

        Solves min/max x_t subject to the constraints touching the target's
        component, with published cells fixed at their values.

        Args:
            targets: Suppressed cells to bound
            suppressed: Full suppression pattern
            values: True cell values (published ones are known to the attacker)
            nonnegative: Use 0 as a-priori lower bound for non-negative cells

        Returns:
            Dict mapping target -> (lower, upper); unbounded sides are ±inf
        """
        targets = [t for t in targets if t in suppressed]
        if not targets:
            return {}

        component_of: Dict[Key, int] = {}
        components = self.components(suppressed)
        for i, members in enumerate(components):
            for key in members:
                component_of[key] = i

        result: Dict[Key, Interval] = {}
        by_component: Dict[int, List[Key]] = defaultdict(list)
        for t in targets:
            by_component[component_of[t]].append(t)

        for comp, comp_targets in sorted(by_component.items()):
            members = components[comp]
            result.update(self._component_intervals(members, comp_targets, suppressed, values, nonnegative))
        return result

    def _component_intervals(
        self,
        members: List[Key],
        targets: List[Key],
        suppressed: Set[Key],
        values: Callable[[Key], float],
        nonnegative: bool
    ) -> Dict[Key, Interval]:
        column = {k: i for i, k in enumerate(members)}
        row_ids = sorted({i for k in members for i in self._by_cell.get(k, ())})

        rows, cols, data, rhs = [], [], [], []
        for r, ci in enumerate(row_ids):
            c = self.constraints[ci]
            known = 0.0
            for key in c.cells:
                coef = c.coefficient(key)
                if key in suppressed:
                    rows.append(r)
                    cols.append(column[key])
                    data.append(float(coef))
                else:
                    known += coef * values(key)
            rhs.append(-known)

        n = len(members)
        bounds = [
            (0.0, 0.0) if k in self.empty
            else (0.0, None) if nonnegative and values(k) >= 0
            else (None, None)
            for k in members
        ]
        if not row_ids:
            return {t: self._box(bounds[column[t]]) for t in targets}

        A = csr_matrix((data, (rows, cols)), shape=(len(row_ids), n))
        b = np.array(rhs)

        result: Dict[Key, Interval] = {}
        for t in targets:
            objective = np.zeros(n)
            objective[column[t]] = 1.0
            low = linprog(objective, A_eq=A, b_eq=b, bounds=bounds, method="highs")
            high = linprog(-objective, A_eq=A, b_eq=b, bounds=bounds, method="highs")
            result[t] = (self._bound(low, t, +1), self._bound(high, t, -1))
        return result

    @staticmethod
    def _box(bound: Tuple[Optional[float], Optional[float]]) -> Interval:
        low, high = bound
        return (-np.inf if low is None else low, np.inf if high is None else high)

    @staticmethod
    def _bound(res, key: Key, sign: int) -> float:
        if res.status == 3:
            return -np.inf if sign > 0 else np.inf
        if res.status != 0:
            raise RuntimeError(f"Interval LP failed for cell {key}: {res.message}")
        return sign * res.fun

    def under_protected(
        self,
        margins: Mapping[Key, float],
        suppressed: Set[Key],
        values: Callable[[Key], float],
        nonnegative: bool = True,
        tolerance: float = 1e-6
    ) -> Dict[Key, Tuple[float, float]]:
        """
        Primary cells whose attacker interval is narrower than their margin.

        A cell with margin 0 still needs a non-degenerate interval: width 0
        means its value is recoverable. Empty cells are skipped, their value
        is public through the frequency.

        Returns:
            Dict mapping cell -> (interval width, required margin)
        """
        required = {
            k: m for k, m in margins.items() if k in suppressed and k not in self.empty
        }
        if not required:
            return {}
        bounds = self.intervals(required, suppressed, values, nonnegative)
        short = {}
        for key, margin in required.items():
            low, high = bounds[key]
            width = high - low
            if width + tolerance * max(1.0, margin) < margin or width <= tolerance:
                short[key] = (width, margin)
        return short

    def summary(self, suppressed: Optional[Set[Key]] = None) -> str:
        """Generate a summary of the constraint graph."""
        per_dim: Dict[int, int] = defaultdict(int)
        for c in self.constraints:
            per_dim[c.dimension] += 1
        lines = [
            "=" * 60,
            "Constraint Graph Summary",
            "=" * 60,
            f"Cells: {len(self.cells):,}",
            f"Constraints: {len(self.constraints):,}",
        ]
        for d, n in sorted(per_dim.items()):
            lines.append(f"  dimension {d}: {n:,}")
        if suppressed is not None:
            lines.append(f"Violations (single unknown): {len(self.violations(suppressed)):,}")
        lines.append("=" * 60)
        return "\n".join(lines)
