"""
Table Construction from Microdata.

Cross-joins the dimension hierarchies, aggregates microdata into leaf cells
and computes every roll-up total.

Algorithm:
1. Aggregate records by leaf tuple (sum the measure, count the records,
   sum contributions per contributor id)
2. Roll up one dimension at a time: walking that dimension's tree in
   post-order, each interior node's cell equals the sum of its children's
   cells with every other coordinate held fixed

After step 2 every combination of nodes has a defined cell. Combinations
without records are never materialized (they read as zero).
"""

import logging
import math
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

from core.errors import DuplicateNameError, HierarchyError, UnknownNodeError, UnmatchedCategoryError
from schema.hierarchy import HierarchyTree
from schema.table import CellTable, Key, MicrodataRecord


logger = logging.getLogger(__name__)


RecordLike = Union[MicrodataRecord, Sequence[Any]]


class TableBuilder:
    """
    Builds a CellTable from microdata and one hierarchy per dimension.

    Hierarchies are frozen on construction; a builder can be reused for
    several builds and hierarchies can be shared between builders.
    """

    def __init__(
        self,
        hierarchies: Sequence[HierarchyTree],
        track_contributions: bool = True,
        unique_names: bool = True
    ):
        """
        Initialize builder.

        Args:
            hierarchies: One hierarchy per dimension, in key order
            track_contributions: Keep per-contributor sums for rule evaluation
                (not needed by the frequency rule)
            unique_names: Reject category names shared between dimensions

        Raises:
            HierarchyError: if no hierarchy is given
            DuplicateNameError: if unique_names and two dimensions share a name
        """
        if not hierarchies:
            raise HierarchyError("At least one hierarchy is required")

        self.hierarchies: Tuple[HierarchyTree, ...] = tuple(h.freeze() for h in hierarchies)
        self.track_contributions = track_contributions

        if unique_names:
            owner: Dict[str, str] = {}
            for h in self.hierarchies:
                for name in h.names:
                    if name in owner:
                        raise DuplicateNameError(
                            name, f"dimensions {owner[name]!r} and {h.name!r}"
                        )
                    owner[name] = h.name

    @property
    def ndim(self) -> int:
        return len(self.hierarchies)

    def build(self, records: Iterable[RecordLike]) -> CellTable:
        """
        Aggregate records into a complete hierarchical table.

        Args:
            records: MicrodataRecord objects or (id, category_1, ..., category_k, value)
                sequences

        Returns:
            CellTable with every roll-up total and, when tracked, contributor lists

        Raises:
            UnmatchedCategoryError: if a category is not a leaf of its hierarchy
        """
        logger.info("=" * 60)
        logger.info("Building cell table")
        logger.info("=" * 60)
        logger.info(f"Dimensions: {', '.join(f'{h.name} ({len(h)} nodes)' for h in self.hierarchies)}")

        # Step 1: Leaf aggregation (all records are validated before any roll-up)
        values, contributions, num_records = self._aggregate_leaves(records)
        logger.info(f"Step 1: {num_records:,} records -> {len(values):,} leaf cells")

        # Step 2: Roll up dimension by dimension
        for d in range(self.ndim):
            before = len(values)
            self._roll_up(d, values, contributions)
            logger.info(
                f"Step 2.{d + 1}: rolled up {self.hierarchies[d].name!r}: "
                f"{before:,} -> {len(values):,} populated cells"
            )

        frozen_values = {k: (int(v[0]), float(v[1])) for k, v in values.items()}
        table = CellTable(
            self.hierarchies,
            frozen_values,
            contributions=dict(contributions) if self.track_contributions else None,
        )
        logger.info(f"Table complete: {table.populated:,} of {table.size:,} cells populated")
        return table

    def _leaf_index(self, d: int, value: Any, record_id: Any) -> int:
        tree = self.hierarchies[d]
        try:
            idx = tree.index_of(str(value))
        except UnknownNodeError:
            raise UnmatchedCategoryError(str(value), tree.name, record_id) from None
        if not tree.is_leaf(idx):
            raise UnmatchedCategoryError(str(value), tree.name, record_id)
        return idx

    def _normalize(self, record: RecordLike) -> Tuple[Any, Tuple[Any, ...], float]:
        if isinstance(record, MicrodataRecord):
            record_id, categories, value = record.id, tuple(record.categories), record.value
        else:
            record = tuple(record)
            if len(record) != self.ndim + 2:
                raise ValueError(
                    f"Record must have id, {self.ndim} categories and a value, got {record}"
                )
            record_id, categories, value = record[0], record[1:-1], record[-1]

        if len(categories) != self.ndim:
            raise ValueError(
                f"Record {record_id!r} has {len(categories)} categories, expected {self.ndim}"
            )
        value = float(value)
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"Record {record_id!r} has a non-finite measure: {value}")
        return record_id, categories, value

    def _aggregate_leaves(
        self,
        records: Iterable[RecordLike]
    ) -> Tuple[Dict[Key, List[float]], Dict[Key, Dict[Any, float]], int]:
        values: Dict[Key, List[float]] = {}
        contributions: Dict[Key, Dict[Any, float]] = defaultdict(lambda: defaultdict(float))
        num_records = 0

        for record in records:
            record_id, categories, value = self._normalize(record)
            key = tuple(self._leaf_index(d, c, record_id) for d, c in enumerate(categories))

            acc = values.get(key)
            if acc is None:
                values[key] = [1, value]
            else:
                acc[0] += 1
                acc[1] += value
            if self.track_contributions:
                contributions[key][record_id] += value
            num_records += 1

        return values, contributions, num_records

    def _roll_up(
        self,
        d: int,
        values: Dict[Key, List[float]],
        contributions: Dict[Key, Dict[Any, float]]
    ) -> None:
        """Fill in every interior node of dimension d (all keys are leaves in d on entry)."""
        tree = self.hierarchies[d]

        by_node: Dict[int, List[Key]] = defaultdict(list)
        for key in values:
            by_node[key[d]].append(key)

        for node in tree.postorder():
            children = tree.children_of(node)
            if not children:
                continue
            for child in children:
                for key in by_node.get(child, ()):
                    target = key[:d] + (node,) + key[d + 1:]
                    freq, agg = values[key]
                    acc = values.get(target)
                    if acc is None:
                        values[target] = [freq, agg]
                        by_node[node].append(target)
                    else:
                        acc[0] += freq
                        acc[1] += agg
                    if self.track_contributions:
                        merged = contributions[target]
                        for contributor, amount in contributions[key].items():
                            merged[contributor] += amount
