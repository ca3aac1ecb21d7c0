"""
Invariant checks for a protected table.

Roll-up invariant:
- Every non-leaf cell equals the sum of its children, along every
  dimension independently (frequency and aggregate)
- When the total and all children are published, the published numbers
  add up; otherwise the total is suppressed or derivable from a published
  total and the published children

Protection invariant:
- No primary cell is published
- No constraint has exactly one suppressed term
- Every primary cell's attacker interval is at least its protection margin
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from engine.constraints import ConstraintGraph
from schema.table import CellStatus, CellTable


logger = logging.getLogger(__name__)


@dataclass
class VerificationReport:
    """Outcome of an invariant check."""
    rollup_errors: List[str] = field(default_factory=list)
    protection_errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.rollup_errors and not self.protection_errors

    def summary(self) -> str:
        """Generate a summary of the verification."""
        lines = [
            "=" * 60,
            "Invariant Verification",
            "=" * 60,
            f"Roll-up: {'OK' if not self.rollup_errors else f'{len(self.rollup_errors)} error(s)'}",
            f"Protection: {'OK' if not self.protection_errors else f'{len(self.protection_errors)} error(s)'}",
        ]
        for msg in (self.rollup_errors + self.protection_errors)[:10]:
            lines.append(f"  {msg}")
        lines.append("=" * 60)
        return "\n".join(lines)


class InvariantChecker:
    """Verifies the roll-up and protection invariants of a table."""

    def __init__(self, graph: ConstraintGraph, tolerance: float = 1e-6):
        """
        Initialize checker.

        Args:
            graph: Constraint graph of the table to check
            tolerance: Relative tolerance for sum checks
        """
        self.graph = graph
        self.tolerance = tolerance

    def _close(self, a: float, b: float) -> bool:
        return abs(a - b) <= self.tolerance * max(1.0, abs(a), abs(b))

    def verify_rollup(self, table: CellTable) -> List[str]:
        """Every constraint holds on the true values."""
        errors = []
        for c in self.graph:
            freq = sum(table.frequency(k) for k in c.children)
            agg = sum(table.aggregate(k) for k in c.children)
            if table.frequency(c.total) != freq or not self._close(table.aggregate(c.total), agg):
                errors.append(
                    f"{table.names_of(c.total)}: total {table.aggregate(c.total):.6g} "
                    f"(n={table.frequency(c.total)}) != children {agg:.6g} (n={freq})"
                )
        return errors

    def verify_protection(
        self,
        table: CellTable,
        nonnegative: bool = True,
        verify_ranges: bool = True
    ) -> List[str]:
        """Primary cells suppressed and protected under the final pattern."""
        errors = []
        suppressed = set(table.suppressed_keys())

        for key in table.keys_with_status(CellStatus.PRIMARY):
            if key not in suppressed:
                errors.append(f"{table.names_of(key)}: primary cell is published")

        for c in self.graph.violations(suppressed):
            lone = self.graph.unknowns(c, suppressed)[0]
            errors.append(f"{table.names_of(lone)}: recoverable from {table.names_of(c.total)} roll-up")

        if verify_ranges:
            short = self.graph.under_protected(table.protection_levels, suppressed, table.aggregate, nonnegative)
            for key, (width, margin) in sorted(short.items(), key=lambda kv: table.order_key(kv[0])):
                errors.append(f"{table.names_of(key)}: range {width:.6g} narrower than margin {margin:.6g}")
        return errors

    def verify(
        self,
        table: CellTable,
        nonnegative: bool = True,
        verify_ranges: bool = True,
        original: Optional[CellTable] = None
    ) -> VerificationReport:
        """
        Run every check and log the outcome.

        Args:
            table: Protected table
            nonnegative: Attacker model for the range check
            verify_ranges: Whether to run the range check
            original: Evaluated table before secondary suppression; its primary
                cells must all still be suppressed
        """
        report = VerificationReport(
            rollup_errors=self.verify_rollup(table),
            protection_errors=self.verify_protection(table, nonnegative, verify_ranges),
        )
        if original is not None:
            for key in original.unsafe_keys():
                if not table.status(key).suppressed:
                    report.protection_errors.append(f"{table.names_of(key)}: unsafe cell was published")

        if report.ok:
            logger.info("  [Roll-up and protection invariants verified]")
        else:
            for msg in report.rollup_errors + report.protection_errors:
                logger.error(f"  {msg}")
        return report
