"""
Primary Suppression Rules.

Marks cells whose own contributor distribution discloses too much:
- frequency: too few contributing records
- dominance (n, k): the n largest contributors dominate the aggregate
- p-percent: the second largest contributor can estimate the largest
  one to within p%
- pq: as p-percent, with prior knowledge q% about the remainder

Besides the unsafe flag every rule yields the required protection margin
(upper protection level): the minimum width an attacker's interval for the
cell must keep once secondary suppression is applied.
"""

import concurrent.futures as cf
import logging
from typing import Callable, Dict, List, Sequence, Tuple

from core.config import RuleConfig
from schema.table import CellStatus, CellTable, Key


logger = logging.getLogger(__name__)


RuleResult = Tuple[bool, float]


def frequency_rule(frequency: int, aggregate: float, max_n: int, protection_pct: float) -> RuleResult:
    """Unsafe if frequency <= max_n."""
    unsafe = frequency <= max_n
    margin = protection_pct / 100.0 * abs(aggregate) if unsafe else 0.0
    return unsafe, margin


def dominance_rule(contributions: Sequence[float], aggregate: float, n: int, k: float) -> RuleResult:
    """
    Unsafe if the n largest contributions exceed k% of the aggregate.

    Args:
        contributions: Per-contributor values, largest first
        aggregate: Cell total
        n: Number of dominating contributors
        k: Dominance threshold in percent
    """
    top = sum(contributions[:n])
    unsafe = top > k / 100.0 * aggregate
    margin = max(0.0, 100.0 / k * top - aggregate) if unsafe else 0.0
    return unsafe, margin


def p_percent_rule(contributions: Sequence[float], aggregate: float, p: float) -> RuleResult:
    """
    Unsafe if the total without the two largest contributions is below p% of the largest.

    A missing second contribution counts as zero.
    """
    x1 = contributions[0] if contributions else 0.0
    x2 = contributions[1] if len(contributions) > 1 else 0.0
    remainder = aggregate - x1 - x2
    unsafe = remainder < p / 100.0 * x1
    margin = max(0.0, p / 100.0 * x1 - remainder) if unsafe else 0.0
    return unsafe, margin


def pq_rule(contributions: Sequence[float], aggregate: float, p: float, q: float) -> RuleResult:
    """Unsafe if q% of the remainder is below p% of the largest contribution."""
    x1 = contributions[0] if contributions else 0.0
    x2 = contributions[1] if len(contributions) > 1 else 0.0
    remainder = aggregate - x1 - x2
    unsafe = q / 100.0 * remainder < p / 100.0 * x1
    margin = max(0.0, p / q * x1 - remainder) if unsafe else 0.0
    return unsafe, margin


class PrimarySuppressionEvaluator:
    """
    Applies one disclosure rule independently to every cell.

    Evaluation only reads frequencies, aggregates and contributor lists; it
    returns a new table carrying PRIMARY statuses and protection margins, with
    the contributor lists discarded.
    """

    def __init__(self, config: RuleConfig, workers: int = 1):
        """
        Initialize the evaluator.

        Args:
            config: Validated rule configuration
            workers: Thread pool size (cells are evaluated in chunks)
        """
        config.validate()
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")

        self.config = config
        self.workers = workers
        self._rule = self._make_rule(config)

        logger.info(f"PrimarySuppressionEvaluator initialized: rule={config.rule}, "
                    f"parameters={config.parameters}")

    @property
    def needs_contributions(self) -> bool:
        return self.config.rule != "frequency"

    @staticmethod
    def _make_rule(config: RuleConfig) -> Callable[[int, float, List[float]], RuleResult]:
        if config.rule == "frequency":
            return lambda freq, agg, contribs: frequency_rule(
                freq, agg, config.max_n, config.protection_pct
            )
        if config.rule == "dominance":
            return lambda freq, agg, contribs: dominance_rule(contribs, agg, config.n, config.k)
        if config.rule == "p-percent":
            return lambda freq, agg, contribs: p_percent_rule(contribs, agg, config.p)
        return lambda freq, agg, contribs: pq_rule(contribs, agg, config.p, config.q)

    def evaluate_cell(self, table: CellTable, key: Key) -> RuleResult:
        """Evaluate the rule on one cell."""
        frequency = table.frequency(key)
        if frequency == 0 and not self.config.empty_cells_unsafe:
            return False, 0.0
        contributions = table.contributions(key) if self.needs_contributions else []
        return self._rule(frequency, table.aggregate(key), contributions)

    def _evaluate_chunk(self, table: CellTable, keys: List[Key]) -> Dict[Key, float]:
        unsafe = {}
        for key in keys:
            flagged, margin = self.evaluate_cell(table, key)
            if flagged:
                unsafe[key] = margin
        return unsafe

    def apply(self, table: CellTable) -> CellTable:
        """
        Mark unsafe cells.

        Args:
            table: Table built with contributor lists (unless the rule is frequency)

        Returns:
            New table with PRIMARY statuses and protection margins
        """
        if self.needs_contributions and not table.has_contributions:
            raise ValueError(
                f"Rule {self.config.rule!r} needs contributor lists; "
                "build the table with track_contributions=True"
            )

        # Empty cells can only trigger the frequency rule
        if self.config.empty_cells_unsafe and self.config.rule == "frequency":
            keys = list(table.keys())
        else:
            keys = table.populated_keys()

        logger.info(f"Evaluating {self.config.rule} rule on {len(keys):,} cells "
                    f"(workers={self.workers})")

        if self.workers == 1 or len(keys) < 2 * self.workers:
            unsafe = self._evaluate_chunk(table, keys)
        else:
            size = -(-len(keys) // self.workers)
            chunks = [keys[i:i + size] for i in range(0, len(keys), size)]
            unsafe = {}
            with cf.ThreadPoolExecutor(max_workers=self.workers) as pool:
                for part in pool.map(lambda chunk: self._evaluate_chunk(table, chunk), chunks):
                    unsafe.update(part)

        statuses = {key: CellStatus.PRIMARY for key in unsafe}
        result = table.with_statuses(statuses, protection=unsafe, keep_contributions=False)

        rate = 100.0 * len(unsafe) / table.size if table.size else 0.0
        logger.info(f"Primary suppression complete: {len(unsafe):,}/{table.size:,} cells unsafe ({rate:.2f}%)")
        return result

    def get_suppression_stats(self, table: CellTable) -> dict:
        """
        Get statistics about primary suppression in a table.

        Args:
            table: Table returned by apply()

        Returns:
            Dictionary with suppression statistics
        """
        unsafe = table.unsafe_keys()
        return {
            "rule": self.config.rule,
            "parameters": self.config.parameters,
            "unsafe_count": len(unsafe),
            "total_count": table.size,
            "unsafe_rate": len(unsafe) / table.size if table.size else 0.0,
            "unsafe_value": sum(table.aggregate(k) for k in unsafe),
        }
