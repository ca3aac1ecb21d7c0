"""
Sparse Cell Table for Hierarchical Aggregates.

A table is the cross product of one hierarchy per dimension. Cells are
addressed by a composite key holding one node index per dimension. Only
populated cells are stored; every other combination reads as an empty cell
(zero frequency, zero aggregate).
"""

import itertools
import logging
import numbers
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from core.errors import UnknownNodeError
from schema.hierarchy import HierarchyTree


logger = logging.getLogger(__name__)


Key = Tuple[int, ...]


class CellStatus(Enum):
    """Publication status of a cell."""
    SAFE = "safe"
    PRIMARY = "primary-unsafe"
    SECONDARY = "secondary-suppressed"
    OVERRIDE_PUBLISHED = "override-published"
    OVERRIDE_SUPPRESSED = "override-suppressed"

    @property
    def suppressed(self) -> bool:
        return self in (CellStatus.PRIMARY, CellStatus.SECONDARY, CellStatus.OVERRIDE_SUPPRESSED)


@dataclass(frozen=True)
class Cell:
    """One cell of the table."""
    key: Key
    frequency: int = 0
    aggregate: float = 0.0
    status: CellStatus = CellStatus.SAFE

    @property
    def suppressed(self) -> bool:
        return self.status.suppressed


@dataclass(frozen=True)
class MicrodataRecord:
    """One input record: contributor id, a category per dimension, and the measure."""
    id: Any
    categories: Tuple[str, ...]
    value: float


class CellTable:
    """
    Sparse multi-dimensional table of cells.

    The table is never mutated after construction; status changes produce a
    new table through with_statuses(). Contributor lists are only present
    between TableBuilder and primary suppression.
    """

    def __init__(
        self,
        hierarchies: Sequence[HierarchyTree],
        values: Dict[Key, Tuple[int, float]],
        contributions: Optional[Dict[Key, Dict[Any, float]]] = None,
        statuses: Optional[Mapping[Key, CellStatus]] = None,
        protection: Optional[Mapping[Key, float]] = None
    ):
        """
        Initialize table.

        Args:
            hierarchies: One frozen hierarchy per dimension
            values: Key -> (frequency, aggregate) for populated cells
            contributions: Key -> {contributor id: summed contribution}
            statuses: Key -> status for every cell that is not SAFE
            protection: Key -> required protection margin for unsafe cells
        """
        self.hierarchies: Tuple[HierarchyTree, ...] = tuple(hierarchies)
        self._values = values
        self._contributions = contributions
        self._statuses: Dict[Key, CellStatus] = {
            k: s for k, s in (statuses or {}).items() if s is not CellStatus.SAFE
        }
        self._protection: Dict[Key, float] = dict(protection or {})

        # Pre-order position of every node, per dimension
        self._positions: List[Dict[int, int]] = [
            {idx: pos for pos, idx in enumerate(h.preorder())}
            for h in self.hierarchies
        ]

    # ------------------------------------------------------------------
    # Shape
    # ------------------------------------------------------------------

    @property
    def ndim(self) -> int:
        return len(self.hierarchies)

    @property
    def dimension_names(self) -> List[str]:
        return [h.name for h in self.hierarchies]

    @property
    def size(self) -> int:
        """Number of cells, including empty ones."""
        total = 1
        for h in self.hierarchies:
            total *= len(h)
        return total

    @property
    def populated(self) -> int:
        """Number of stored (non-empty) cells."""
        return len(self._values)

    @property
    def grand_total_key(self) -> Key:
        return tuple(HierarchyTree.ROOT for _ in self.hierarchies)

    def keys(self) -> Iterator[Key]:
        """All cell keys in canonical order (per-dimension pre-order, first dimension slowest)."""
        return itertools.product(*(h.preorder() for h in self.hierarchies))

    def populated_keys(self) -> List[Key]:
        return sorted(self._values, key=self.order_key)

    def order_key(self, key: Key) -> Tuple[int, ...]:
        """Sort key matching the canonical export order."""
        return tuple(pos[idx] for pos, idx in zip(self._positions, key))

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    def key_of(self, names: Sequence[str]) -> Key:
        """Translate a tuple of category names into a cell key."""
        if len(names) != self.ndim:
            raise ValueError(f"Expected {self.ndim} categories, got {len(names)}: {tuple(names)}")
        return tuple(h.index_of(n) for h, n in zip(self.hierarchies, names))

    def names_of(self, key: Key) -> Tuple[str, ...]:
        return tuple(h.name_of(i) for h, i in zip(self.hierarchies, key))

    def resolve(self, key: Union[Key, Sequence[str]]) -> Key:
        """Accept either a cell key or a tuple of category names."""
        key = tuple(key)
        if key and all(isinstance(k, numbers.Integral) for k in key):
            if len(key) != self.ndim:
                raise ValueError(f"Expected {self.ndim} indices, got {key}")
            for h, i in zip(self.hierarchies, key):
                if not 0 <= i < len(h):
                    raise UnknownNodeError(str(i), f"hierarchy {h.name!r}")
            return key
        return self.key_of(key)

    def is_leaf_key(self, key: Key) -> bool:
        return all(h.is_leaf(i) for h, i in zip(self.hierarchies, key))

    # ------------------------------------------------------------------
    # Cell access
    # ------------------------------------------------------------------

    def cell(self, key: Union[Key, Sequence[str]]) -> Cell:
        key = self.resolve(key)
        frequency, aggregate = self._values.get(key, (0, 0.0))
        return Cell(key, frequency, aggregate, self._statuses.get(key, CellStatus.SAFE))

    def frequency(self, key: Key) -> int:
        return self._values.get(key, (0, 0.0))[0]

    def aggregate(self, key: Key) -> float:
        return self._values.get(key, (0, 0.0))[1]

    def status(self, key: Key) -> CellStatus:
        return self._statuses.get(key, CellStatus.SAFE)

    def protection(self, key: Key) -> float:
        """Required protection margin of an unsafe cell (0 for safe cells)."""
        return self._protection.get(key, 0.0)

    @property
    def protection_levels(self) -> Dict[Key, float]:
        return dict(self._protection)

    @property
    def has_contributions(self) -> bool:
        return self._contributions is not None

    def contributions(self, key: Key) -> List[float]:
        """Per-contributor sums for a cell, largest first."""
        if self._contributions is None:
            raise RuntimeError("Contributor lists were discarded after primary suppression")
        return sorted(self._contributions.get(key, {}).values(), reverse=True)

    def keys_with_status(self, *statuses: CellStatus) -> List[Key]:
        wanted = set(statuses)
        return sorted((k for k, s in self._statuses.items() if s in wanted), key=self.order_key)

    def unsafe_keys(self) -> List[Key]:
        return self.keys_with_status(CellStatus.PRIMARY)

    def suppressed_keys(self) -> List[Key]:
        return sorted((k for k, s in self._statuses.items() if s.suppressed), key=self.order_key)

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def with_statuses(
        self,
        statuses: Mapping[Key, CellStatus],
        protection: Optional[Mapping[Key, float]] = None,
        keep_contributions: bool = False
    ) -> "CellTable":
        """
        Return a new table sharing values with this one but carrying new statuses.

        Args:
            statuses: Complete status mapping (cells not listed become SAFE)
            protection: Protection margins (defaults to the current ones)
            keep_contributions: Whether the contributor lists travel along
        """
        return CellTable(
            self.hierarchies,
            self._values,
            contributions=self._contributions if keep_contributions else None,
            statuses=statuses,
            protection=self._protection if protection is None else protection,
        )

    def status_counts(self) -> Dict[CellStatus, int]:
        counts = {s: 0 for s in CellStatus}
        for s in self._statuses.values():
            counts[s] += 1
        counts[CellStatus.SAFE] = self.size - sum(
            n for s, n in counts.items() if s is not CellStatus.SAFE
        )
        return counts

    def summary(self) -> str:
        """Generate a summary of the table."""
        counts = self.status_counts()
        lines = [
            "=" * 60,
            "Cell Table Summary",
            "=" * 60,
            f"Dimensions: {', '.join(f'{h.name} ({len(h)})' for h in self.hierarchies)}",
            f"Total Cells: {self.size:,}",
            f"Populated Cells: {self.populated:,} ({100 * self.populated / max(self.size, 1):.2f}%)",
            f"Grand Total: {self.aggregate(self.grand_total_key):,.2f} "
            f"(frequency {self.frequency(self.grand_total_key):,})",
            "",
            "Statuses:",
        ]
        for status, n in counts.items():
            lines.append(f"  {status.value:22s}: {n:,}")
        lines.append("=" * 60)
        return "\n".join(lines)


def records_from_dataframe(
    df,
    id_column: str,
    dimension_columns: Sequence[str],
    measure_column: str
) -> List[MicrodataRecord]:
    """
    Adapt a pandas DataFrame into microdata records.

    Args:
        df: DataFrame with one row per record
        id_column: Contributor identifier column
        dimension_columns: One category column per dimension, in table order
        measure_column: Numeric measure column

    Returns:
        List of MicrodataRecord
    """
    columns = [id_column, *dimension_columns, measure_column]
    records = []
    for row in df[columns].itertuples(index=False, name=None):
        records.append(MicrodataRecord(
            id=row[0],
            categories=tuple(str(c) for c in row[1:-1]),
            value=float(row[-1]),
        ))
    return records
