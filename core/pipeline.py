"""
Suppression Pipeline Orchestration.

This module coordinates the entire disclosure control workflow:
1. Build the hierarchical cell table from microdata
2. Apply the primary suppression rule
3. Select secondary suppressions with the configured strategy
4. Apply override statuses and verify the protected table
5. Export the protected records and an audit record

Each stage returns a new value; no stage mutates its input.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.config import Config
from core.errors import SolverError
from core.invariants import InvariantChecker, VerificationReport
from core.memory_monitor import MemoryMonitor
from core.overrides import OverrideManager, Overrides
from core.suppression import PrimarySuppressionEvaluator
from engine.base import SuppressionPlan, SuppressionProblem, get_solver
from engine.constraints import ConstraintGraph
from schema.builder import RecordLike, TableBuilder
from schema.hierarchy import HierarchyTree
from schema.table import CellTable
from writer.exporter import AuditRecord, ExportRecord, ResultExporter, build_audit


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SolveOutcome:
    """Output of the solve stage."""
    plan: SuppressionPlan
    graph: ConstraintGraph
    method: str
    fallback_used: bool = False
    baseline: Optional[SuppressionPlan] = None


@dataclass
class ProtectionResult:
    """Result of a pipeline execution."""
    table: CellTable
    plan: SuppressionPlan
    records: List[ExportRecord]
    audit: AuditRecord
    verification: Optional[VerificationReport] = None
    memory: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dataframe(self, dimension_names: Optional[List[str]] = None):
        """Records as a pandas DataFrame (dimension columns named after the hierarchies)."""
        return ResultExporter.to_dataframe(self.records, dimension_names or self.table.dimension_names)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "audit": self.audit.to_dict(),
            "records": len(self.records),
            "suppressed": len(self.plan.suppressed),
            "verified": self.verification.ok if self.verification else None,
        }


class SDCPipeline:
    """
    Main pipeline for tabular suppression.

    The pipeline follows these steps:
    1. Build the cell table (memory checkpoints around the roll-up)
    2. Evaluate the primary rule
    3. Resolve overrides and solve secondary suppression, falling back to
       the configured fallback method on a retryable solver error
    4. Finalize statuses (override tags) and verify invariants
    5. Export records and the audit record
    """

    def __init__(self, config: Optional[Config] = None):
        """
        Initialize pipeline.

        Args:
            config: Configuration object (defaults apply when omitted)
        """
        self.config = config or Config()
        self.monitor = MemoryMonitor()

    def validate(self) -> bool:
        """
        Validate configuration without running the pipeline.

        Returns:
            True if configuration is valid
        """
        try:
            self.config.validate()
            return True
        except ValueError as e:
            logger.error(f"Configuration validation failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def build_table(
        self,
        records: Iterable[RecordLike],
        hierarchies: Sequence[HierarchyTree]
    ) -> CellTable:
        """Stage 1: aggregate microdata into a complete hierarchical table."""
        builder = TableBuilder(hierarchies, track_contributions=self.config.rule.rule != "frequency")
        self.monitor.log_memory("before table build")
        table = builder.build(records)
        self.monitor.log_memory("after table build")
        return table

    def evaluate(self, table: CellTable) -> CellTable:
        """Stage 2: mark primary unsafe cells."""
        evaluator = PrimarySuppressionEvaluator(self.config.rule, workers=self.config.solver.workers)
        return evaluator.apply(table)

    def solve(
        self,
        table: CellTable,
        overrides: Optional[Overrides] = None,
        graph: Optional[ConstraintGraph] = None
    ) -> SolveOutcome:
        """
        Stage 3: secondary suppression.

        Raises:
            InfeasibleError: override contradiction (never retried)
            SolverError: the method failed and no fallback is configured
        """
        solver_config = self.config.solver
        manager = OverrideManager(overrides)
        manager.resolve(table)
        manager.validate(table)

        graph = graph if graph is not None else ConstraintGraph.build(table)
        problem = manager.apply(SuppressionProblem.from_table(
            table,
            graph=graph,
            objective=solver_config.objective,
            nonnegative=solver_config.nonnegative,
        ))

        method = solver_config.method
        fallback_used = False
        try:
            plan = get_solver(method, solver_config).solve(problem)
        except SolverError as e:
            if not e.retryable or solver_config.fallback_method is None:
                raise
            logger.warning(f"Method {method!r} failed ({e}); falling back to "
                           f"{solver_config.fallback_method!r}")
            method = solver_config.fallback_method
            fallback_used = True
            plan = get_solver(method, solver_config).solve(problem)

        baseline = None
        if problem.must_publish:
            baseline = get_solver(method, solver_config).solve(problem.without_publish_pins())

        return SolveOutcome(plan=plan, graph=graph, method=method,
                            fallback_used=fallback_used, baseline=baseline)

    def finalize(
        self,
        table: CellTable,
        outcome: SolveOutcome,
        overrides: Optional[Overrides] = None
    ) -> CellTable:
        """Stage 4: final statuses, including override tags."""
        manager = OverrideManager(overrides)
        manager.resolve(table)
        return manager.finalize(table, outcome.plan, outcome.baseline)

    def export(self, table: CellTable) -> List[ExportRecord]:
        """Stage 5: flatten to records."""
        return ResultExporter(self.config.output).export(table)

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(
        self,
        records: Iterable[RecordLike],
        hierarchies: Sequence[HierarchyTree],
        overrides: Optional[Overrides] = None
    ) -> ProtectionResult:
        """
        Execute the full pipeline.

        Args:
            records: Microdata records
            hierarchies: One hierarchy per dimension
            overrides: Optional must-publish / must-suppress lists

        Returns:
            ProtectionResult with the protected table, plan, records and audit
        """
        started = datetime.now()
        self.config.validate()

        logger.info("=" * 60)
        logger.info("Tabular Suppression Pipeline")
        logger.info("=" * 60)
        logger.info(f"Rule: {self.config.rule.rule} {self.config.rule.parameters}")
        logger.info(f"Method: {self.config.solver.method} (objective={self.config.solver.objective}, "
                    f"fallback={self.config.solver.fallback_method})")

        table = self.build_table(records, hierarchies)
        evaluated = self.evaluate(table)
        outcome = self.solve(evaluated, overrides)
        self.monitor.log_memory("after secondary suppression")
        protected = self.finalize(evaluated, outcome, overrides)

        logger.info("")
        logger.info("Verification: Roll-up and Protection Invariants")
        verification = InvariantChecker(outcome.graph).verify(
            protected,
            nonnegative=self.config.solver.nonnegative,
            verify_ranges=self.config.solver.verify_ranges,
            original=evaluated,
        )

        exported = self.export(protected)
        audit = build_audit(
            protected,
            rule=self.config.rule.rule,
            parameters=self.config.rule.parameters,
            method=outcome.method,
            requested_method=self.config.solver.method,
            objective=self.config.solver.objective,
            fallback_used=outcome.fallback_used,
        )
        if outcome.fallback_used:
            audit.notes.append(
                f"method {self.config.solver.method!r} failed; used {outcome.method!r}"
            )
        if not verification.ok:
            audit.notes.extend(verification.rollup_errors + verification.protection_errors)
        audit.started_at = started
        audit.finished_at = datetime.now()

        logger.info(protected.summary())
        logger.info("=" * 60)
        logger.info(f"Pipeline complete: {audit.primary_count} primary, "
                    f"{audit.secondary_count} secondary suppressions")
        logger.info("=" * 60)

        return ProtectionResult(
            table=protected,
            plan=outcome.plan,
            records=exported,
            audit=audit,
            verification=verification,
            memory=self.monitor.checkpoints,
        )
