"""
Caller-forced publication decisions.

Must-publish cells are removed from every candidate set; must-suppress cells
are pinned and count toward satisfying constraints. After solving, cells
whose final status is owed to an override get their own status:

- override-published: must-publish cell that the solver would have
  suppressed without the pin (publish despite risk)
- override-suppressed: must-suppress cell that is not primary unsafe
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from core.errors import InfeasibleError
from engine.base import SuppressionPlan, SuppressionProblem
from schema.table import CellStatus, CellTable, Key


logger = logging.getLogger(__name__)


CellRef = Tuple[str, ...]


@dataclass
class Overrides:
    """Override lists, one category name per dimension for each cell."""
    must_publish: List[CellRef] = field(default_factory=list)
    must_suppress: List[CellRef] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Overrides":
        """
        Expected format:
        {"publish": [["Galway", "Y"], ...], "suppress": [["Mayo", "N"]]}
        """
        unknown = set(data) - {"publish", "suppress"}
        if unknown:
            raise ValueError(f"Unknown override keys: {sorted(unknown)}")
        return cls(
            must_publish=[tuple(ref) for ref in data.get("publish", ())],
            must_suppress=[tuple(ref) for ref in data.get("suppress", ())],
        )

    def __bool__(self) -> bool:
        return bool(self.must_publish or self.must_suppress)


class OverrideManager:
    """Resolves overrides against a table and tags override statuses."""

    def __init__(self, overrides: Optional[Overrides] = None):
        self.overrides = overrides or Overrides()
        self._publish: FrozenSet[Key] = frozenset()
        self._suppress: FrozenSet[Key] = frozenset()

    @property
    def must_publish(self) -> FrozenSet[Key]:
        return self._publish

    @property
    def must_suppress(self) -> FrozenSet[Key]:
        return self._suppress

    def resolve(self, table: CellTable) -> Tuple[FrozenSet[Key], FrozenSet[Key]]:
        """
        Translate category names into cell keys.

        Raises:
            UnknownNodeError: if a name is not in its hierarchy
            InfeasibleError: if a cell is both must-publish and must-suppress
        """
        publish = frozenset(table.key_of(ref) for ref in self.overrides.must_publish)
        suppress = frozenset(table.key_of(ref) for ref in self.overrides.must_suppress)

        clash = sorted(publish & suppress, key=table.order_key)
        if clash:
            raise InfeasibleError(
                f"Cells marked both must-publish and must-suppress: "
                f"{[table.names_of(k) for k in clash]}",
                cells=clash,
            )

        self._publish, self._suppress = publish, suppress
        logger.info(f"Overrides resolved: {len(publish)} must-publish, {len(suppress)} must-suppress")
        return publish, suppress

    def validate(self, table: CellTable) -> None:
        """Fail immediately if an unsafe cell is pinned must-publish."""
        clash = [k for k in table.unsafe_keys() if k in self._publish]
        if clash:
            raise InfeasibleError(
                f"Unsafe cells marked must-publish: {[table.names_of(k) for k in clash]}",
                cells=clash,
            )

    def apply(self, problem: SuppressionProblem) -> SuppressionProblem:
        """Problem carrying the resolved pins."""
        return replace(problem, must_publish=self._publish, must_suppress=self._suppress)

    def finalize(
        self,
        table: CellTable,
        plan: SuppressionPlan,
        baseline: Optional[SuppressionPlan] = None
    ) -> CellTable:
        """
        Final statuses for the protected table.

        Args:
            table: Evaluated table (PRIMARY statuses)
            plan: Plan solved with every pin
            baseline: Plan solved without the must-publish pins, used to tell
                override-published cells from ordinary safe ones

        Returns:
            New table with final statuses
        """
        statuses: Dict[Key, CellStatus] = {}
        for key in plan.suppressed:
            if key in plan.primary:
                statuses[key] = CellStatus.PRIMARY
            elif key in self._suppress:
                statuses[key] = CellStatus.OVERRIDE_SUPPRESSED
            else:
                statuses[key] = CellStatus.SECONDARY

        forced = []
        if baseline is not None:
            forced = [k for k in self._publish if k in baseline.suppressed]
            for key in forced:
                statuses[key] = CellStatus.OVERRIDE_PUBLISHED
            if forced:
                logger.warning(f"{len(forced)} cell(s) published only because of must-publish overrides")

        return table.with_statuses(statuses)

