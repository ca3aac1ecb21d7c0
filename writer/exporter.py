"""
Result Exporter for Protected Tables.

Flattens a protected table into one record per cell, in canonical order
(per-dimension pre-order, first dimension slowest). Suppressed values are
replaced according to the output configuration:
- marker: a string marker such as "x"
- null: None
- value: a numeric sentinel
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from core.config import OutputConfig
from schema.table import CellStatus, CellTable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportRecord:
    """One published or suppressed cell."""
    categories: Tuple[str, ...]
    depths: Tuple[int, ...]
    frequency: Union[int, str, None]
    value: Union[float, str, None]
    status: str
    suppressed: bool


@dataclass
class AuditRecord:
    """Companion record of one protection run."""
    rule: str
    parameters: Dict[str, Any]
    method: str
    requested_method: str
    objective: str
    primary_count: int = 0
    secondary_count: int = 0
    override_published_count: int = 0
    override_suppressed_count: int = 0
    total_cells: int = 0
    suppressed_share: float = 0.0  # Suppressed leaf value as a share of the grand total
    fallback_used: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    notes: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data['started_at'] = self.started_at.isoformat() if self.started_at else None
        data['finished_at'] = self.finished_at.isoformat() if self.finished_at else None
        data['duration_seconds'] = self.duration_seconds
        return data


class ResultExporter:
    """
    Pure flattening of a protected table.

    export() never mutates the table; calling it twice yields equal records.
    """

    def __init__(self, config: Optional[OutputConfig] = None):
        """
        Initialize exporter.

        Args:
            config: Output configuration (defaults to marker "x")
        """
        self.config = config or OutputConfig()
        self.config.validate()

    def _masked(self) -> Union[str, float, None]:
        if self.config.suppression_method == "marker":
            return self.config.suppression_marker
        if self.config.suppression_method == "null":
            return None
        return self.config.suppression_sentinel

    def export(self, table: CellTable, mask_frequency: bool = False) -> List[ExportRecord]:
        """
        Flatten a table into records.

        Args:
            table: Protected table
            mask_frequency: Also hide the frequency of suppressed cells

        Returns:
            Records in canonical order
        """
        masked = self._masked()
        records = []
        for key in table.keys():
            if not self.config.include_totals and not table.is_leaf_key(key):
                continue
            status = table.status(key)
            suppressed = status.suppressed
            frequency = table.frequency(key)
            records.append(ExportRecord(
                categories=table.names_of(key),
                depths=tuple(h.depth_of(i) for h, i in zip(table.hierarchies, key)),
                frequency=masked if suppressed and mask_frequency else frequency,
                value=masked if suppressed else table.aggregate(key),
                status=status.value,
                suppressed=suppressed,
            ))

        logger.info(f"Exported {len(records):,} records "
                    f"({sum(r.suppressed for r in records):,} suppressed)")
        return records

    @staticmethod
    def to_dataframe(records: List[ExportRecord], dimension_names: Optional[List[str]] = None) -> pd.DataFrame:
        """
        Convert records to a DataFrame with one column per dimension.

        Args:
            records: Output of export()
            dimension_names: Column names for the categories (dim_0, dim_1, ... by default)
        """
        if not records:
            columns = list(dimension_names or []) + ['frequency', 'value', 'status', 'suppressed']
            return pd.DataFrame(columns=columns)

        ndim = len(records[0].categories)
        names = list(dimension_names) if dimension_names else [f"dim_{d}" for d in range(ndim)]
        if len(names) != ndim:
            raise ValueError(f"Expected {ndim} dimension names, got {len(names)}")

        rows = []
        for r in records:
            row = dict(zip(names, r.categories))
            for name, depth in zip(names, r.depths):
                row[f"{name}_depth"] = depth
            row.update(frequency=r.frequency, value=r.value, status=r.status, suppressed=r.suppressed)
            rows.append(row)
        return pd.DataFrame(rows)


def build_audit(
    table: CellTable,
    rule: str,
    parameters: Dict[str, Any],
    method: str,
    requested_method: str,
    objective: str,
    fallback_used: bool = False
) -> AuditRecord:
    """Audit record with suppression counts of a protected table."""
    counts = table.status_counts()
    grand_total = abs(table.aggregate(table.grand_total_key))
    hidden = sum(
        abs(table.aggregate(k)) for k in table.suppressed_keys() if table.is_leaf_key(k)
    )
    return AuditRecord(
        rule=rule,
        parameters=dict(parameters),
        method=method,
        requested_method=requested_method,
        objective=objective,
        primary_count=counts[CellStatus.PRIMARY],
        secondary_count=counts[CellStatus.SECONDARY],
        override_published_count=counts[CellStatus.OVERRIDE_PUBLISHED],
        override_suppressed_count=counts[CellStatus.OVERRIDE_SUPPRESSED],
        total_cells=table.size,
        suppressed_share=hidden / grand_total if grand_total else 0.0,
        fallback_used=fallback_used,
    )
