"""
Test secondary suppression strategies.

Every strategy must satisfy the same contract: unsafe cells suppressed, no
roll-up equality with a single unknown, and no unsafe value recoverable by
linear elimination over the published cells.
"""

import concurrent.futures as cf
import logging

import numpy as np
import pytest

from core.config import RuleConfig, SolverConfig
from core.errors import InfeasibleError, ProblemTooLargeError
from core.suppression import PrimarySuppressionEvaluator
from engine.base import SuppressionProblem, cell_weight, get_solver
from engine.constraints import ConstraintGraph
from engine.exact import ExactSolver
from engine.hypercube import HypercubeSolver
from engine.simple import SimpleSolver
from engine.topdown import TopDownSolver
from schema.builder import TableBuilder
from schema.hierarchy import HierarchyTree
from schema.table import CellStatus


METHODS = ["exact", "top-down", "geometric", "simple"]


def evaluate(table, max_n=2, protection_pct=10.0):
    config = RuleConfig(rule="frequency", max_n=max_n, protection_pct=protection_pct)
    return PrimarySuppressionEvaluator(config).apply(table)


def solve(method, table, **problem_kwargs):
    problem = SuppressionProblem.from_table(table, **problem_kwargs)
    return get_solver(method, SolverConfig(method=method)).solve(problem)


def random_table(seed):
    """3-level county hierarchy x aid, 1-4 records per leaf cell."""
    rng = np.random.default_rng(seed)
    county = HierarchyTree.create_root("Connaught", ["Galway Total", "Mayo", "Sligo", "Leitrim"], name="County")
    county.attach_children("Galway Total", ["Galway City", "Galway County"])
    aid = HierarchyTree.create_root("All companies", ["Y", "N", "Unknown"], name="Aid")

    records = []
    for c in ["Galway City", "Galway County", "Mayo", "Sligo", "Leitrim"]:
        for a in ["Y", "N", "Unknown"]:
            for i in range(int(rng.integers(1, 5))):
                records.append((f"{c}-{a}-{i}", c, a, float(rng.integers(1, 100))))
    return TableBuilder([county, aid]).build(records)


def test_factory():
    assert isinstance(get_solver("exact"), ExactSolver)
    assert isinstance(get_solver("top-down"), TopDownSolver)
    assert isinstance(get_solver("geometric"), HypercubeSolver)
    assert isinstance(get_solver("simple"), SimpleSolver)
    with pytest.raises(ValueError):
        get_solver("annealing")


def test_cell_weights():
    assert cell_weight("count", 5, 100.0) == 1.0
    assert cell_weight("value", 5, -100.0) == 101.0
    assert cell_weight("frequency", 5, 100.0) == 6.0
    assert cell_weight("information-loss", 5, 0.0) == 1.0
    with pytest.raises(ValueError):
        cell_weight("entropy", 5, 100.0)


@pytest.mark.parametrize("method", METHODS)
def test_connaught_pattern(method, connaught_table):
    table = evaluate(connaught_table)
    plan = solve(method, table)

    names = {table.names_of(k) for k in plan.suppressed}
    # Cheapest blocking pattern: the Leitrim/Sligo rectangle
    assert names == {("Leitrim", "Y"), ("Leitrim", "N"), ("Sligo", "Y"), ("Sligo", "N")}
    assert {table.names_of(k) for k in plan.primary} == {("Leitrim", "Y")}
    assert len(plan.secondary) == 3
    assert plan.method == get_solver(method).name


@pytest.mark.parametrize("method", METHODS)
def test_no_unsafe_value_recoverable(method, connaught_table, galway_tree, aid_tree, galway_records, is_determined):
    galway_table = TableBuilder([galway_tree, aid_tree]).build(galway_records)

    for raw in (connaught_table, galway_table):
        table = evaluate(raw)
        graph = ConstraintGraph.build(table)
        plan = solve(method, table, graph=graph)

        assert plan.primary <= plan.suppressed
        assert graph.violations(set(plan.suppressed)) == []
        for key in plan.primary:
            assert not is_determined(table, graph, plan.suppressed, key)


@pytest.mark.parametrize("method", METHODS)
@pytest.mark.parametrize("seed", [1, 7, 42])
def test_random_tables(method, seed, is_determined):
    table = evaluate(random_table(seed))
    graph = ConstraintGraph.build(table)
    plan = solve(method, table, graph=graph)

    assert plan.primary == frozenset(table.unsafe_keys())
    assert plan.primary <= plan.suppressed
    assert graph.violations(set(plan.suppressed)) == []
    assert graph.under_protected(table.protection_levels, set(plan.suppressed), table.aggregate) == {}
    for key in plan.primary:
        assert not is_determined(table, graph, plan.suppressed, key)


@pytest.mark.parametrize("method", METHODS)
def test_deterministic(method):
    first = solve(method, evaluate(random_table(3)))
    second = solve(method, evaluate(random_table(3)))
    assert first.suppressed == second.suppressed


def test_exact_is_no_worse_than_heuristics():
    table = evaluate(random_table(11))
    exact = solve("exact", table)
    for method in ("geometric", "simple"):
        # HiGHS stops within its default relative MIP gap
        assert exact.cost <= solve(method, table).cost * (1 + 1e-3)


def test_exact_too_large(connaught_table):
    table = evaluate(connaught_table)
    solver = ExactSolver(SolverConfig(method="exact", max_exact_cells=3))

    with pytest.raises(ProblemTooLargeError) as exc:
        solver.solve(SuppressionProblem.from_table(table))
    assert exc.value.retryable


@pytest.mark.parametrize("method", METHODS)
def test_contradictory_pins(method, connaught_table):
    table = evaluate(connaught_table)

    # Unsafe cell pinned published
    with pytest.raises(InfeasibleError):
        solve(method, table, must_publish=[table.key_of(("Leitrim", "Y"))])

    # Every partner on the Leitrim row pinned published
    with pytest.raises(InfeasibleError) as exc:
        solve(method, table, must_publish=[
            table.key_of(("Leitrim", "N")),
            table.key_of(("Leitrim", "All companies")),
        ])
    assert not exc.value.retryable


@pytest.mark.parametrize("method", METHODS)
def test_must_suppress_counts_toward_constraints(method, connaught_table):
    table = evaluate(connaught_table)
    pinned = table.key_of(("Galway", "N"))
    graph = ConstraintGraph.build(table)
    plan = solve(method, table, graph=graph, must_suppress=[pinned])

    assert pinned in plan.suppressed
    assert graph.violations(set(plan.suppressed)) == []


def test_topdown_subtables(galway_tree, aid_tree, galway_records):
    table = evaluate(TableBuilder([galway_tree, aid_tree]).build(galway_records))
    problem = SuppressionProblem.from_table(table)
    subtables = TopDownSolver(SolverConfig()).subtables(problem)

    assert [table.names_of(s.nodes) for s in subtables] == [
        ("Connaught", "All companies"),
        ("Galway Total", "All companies"),
    ]
    assert [s.depth for s in subtables] == [0, 1]
    assert len(subtables[1].cells) == 3 * 3


def test_topdown_parallel_matches_sequential():
    table = evaluate(random_table(5))
    sequential = TopDownSolver(SolverConfig(workers=1)).solve(SuppressionProblem.from_table(table))
    parallel = TopDownSolver(SolverConfig(workers=4)).solve(SuppressionProblem.from_table(table))
    assert sequential.suppressed == parallel.suppressed


def test_plan_apply(connaught_table):
    table = evaluate(connaught_table)
    plan = solve("simple", table)
    protected = plan.apply(table)

    assert protected.status(table.key_of(("Leitrim", "Y"))) is CellStatus.PRIMARY
    assert protected.status(table.key_of(("Sligo", "N"))) is CellStatus.SECONDARY
    assert protected.status(table.key_of(("Galway", "Y"))) is CellStatus.SAFE
    assert plan.decision(table.key_of(("Sligo", "N"))) == "suppress"
    assert "Secondary suppressions: 3" in plan.summary()


@pytest.mark.parametrize("method", METHODS)
def test_empty_cells_are_never_secondary(method, sparse_table, is_determined):
    table = evaluate(sparse_table)
    graph = ConstraintGraph.build(table)
    plan = solve(method, table, graph=graph)
    suppressed = set(plan.suppressed)

    assert table.key_of(("Leitrim", "N")) in graph.empty
    assert not suppressed & graph.empty
    # Leitrim N is known to be 0, so the row needs another suppressed term
    leitrim_row = [k for k in suppressed if table.names_of(k)[0] == "Leitrim"]
    assert len(leitrim_row) >= 2
    assert graph.violations(suppressed) == []
    assert graph.under_protected(table.protection_levels, suppressed, table.aggregate) == {}
    for key in plan.primary:
        assert not is_determined(table, graph, suppressed, key)


def test_closure_skips_empty_partners(sparse_table):
    table = evaluate(sparse_table)
    problem = SuppressionProblem.from_table(table)
    leitrim_n = table.key_of(("Leitrim", "N"))

    assert not problem.candidate(leitrim_n, set())
    closed = SimpleSolver(SolverConfig(method="simple")).close(problem, set(problem.pinned))
    assert leitrim_n not in closed
    assert problem.graph.violations(closed) == []


def test_exact_accepts_published_empty_pin(sparse_table):
    table = evaluate(sparse_table)
    problem = SuppressionProblem.from_table(table, must_publish=[table.key_of(("Leitrim", "N"))])
    plan = get_solver("exact").solve(problem)

    assert table.key_of(("Leitrim", "N")) not in plan.suppressed
    assert problem.graph.violations(set(plan.suppressed)) == []


# Log line emitted when a pattern first falls short of a wide margin
WIDENING_LOG = {
    "exact": "cut(s) added",
    "top-down": "cut(s) added",
    "geometric": "Range repair",
    "simple": "Range repair",
}


@pytest.mark.parametrize("method", METHODS)
def test_wide_margin_is_reached(method, connaught_table, caplog):
    # 480% of Leitrim Y (25) asks for a range of 120; the Sligo rectangle gives 115
    table = evaluate(connaught_table, protection_pct=480.0)
    leitrim_y = table.key_of(("Leitrim", "Y"))
    graph = ConstraintGraph.build(table)
    assert table.protection(leitrim_y) == pytest.approx(120.0)

    with caplog.at_level(logging.INFO):
        plan = solve(method, table, graph=graph)
    suppressed = set(plan.suppressed)

    assert graph.under_protected(table.protection_levels, suppressed, table.aggregate) == {}
    low, high = graph.intervals([leitrim_y], suppressed, table.aggregate)[leitrim_y]
    assert high - low >= 120.0 - 1e-6
    assert any(WIDENING_LOG[method] in r.getMessage() for r in caplog.records)


def test_range_repair_extends_the_component(connaught_table, caplog):
    table = evaluate(connaught_table, protection_pct=480.0)
    problem = SuppressionProblem.from_table(table)
    rectangle = {table.key_of(n) for n in [("Leitrim", "Y"), ("Leitrim", "N"), ("Sligo", "Y"), ("Sligo", "N")]}

    with caplog.at_level(logging.WARNING, logger="engine.base"):
        repaired = SimpleSolver(SolverConfig(method="simple")).repair_ranges(problem, rectangle)

    assert rectangle < repaired
    assert problem.graph.violations(repaired) == []
    assert problem.graph.under_protected(problem.margins, repaired, problem.value) == {}
    assert any(r.getMessage().startswith("Range repair: ('Leitrim', 'Y')") for r in caplog.records)


def test_restricted_problem_has_own_weight_cache(connaught_table):
    table = evaluate(connaught_table)
    problem = SuppressionProblem.from_table(table)
    leitrim_y = table.key_of(("Leitrim", "Y"))
    sligo_y = table.key_of(("Sligo", "Y"))

    weight = problem.weight(leitrim_y)
    sub = problem.restrict([leitrim_y, sligo_y])

    assert sub._weights is not problem._weights
    assert sub._weights == {leitrim_y: weight}
    sub.weight(sligo_y)
    assert sligo_y not in problem._weights


def test_topdown_wave_runs_in_thread_pool(monkeypatch, galway_tree, is_determined):
    aid = HierarchyTree.create_root("All companies", ["Aided", "N"], name="Aid")
    aid.attach_children("Aided", ["Grant", "Loan"])
    data = {
        (county, kind): [40, 55, 70]
        for county in ["Galway City", "Galway County", "Mayo", "Leitrim"]
        for kind in ["Grant", "Loan", "N"]
    }
    data[("Mayo", "Grant")] = [45]
    data[("Galway City", "N")] = [110, 95]
    records = [
        (f"{county}-{kind}-{i}", county, kind, float(v))
        for (county, kind), values in data.items()
        for i, v in enumerate(values)
    ]
    table = evaluate(TableBuilder([galway_tree, aid]).build(records))
    graph = ConstraintGraph.build(table)

    # One primary in each of the two depth-1 subtables
    subtables = TopDownSolver(SolverConfig()).subtables(SuppressionProblem.from_table(table, graph=graph))
    assert sorted(table.names_of(s.nodes) for s in subtables if s.depth == 1) == [
        ("Connaught", "Aided"),
        ("Galway Total", "All companies"),
    ]

    pools = []

    class RecordingPool(cf.ThreadPoolExecutor):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            pools.append(self)

    monkeypatch.setattr(cf, "ThreadPoolExecutor", RecordingPool)

    parallel = TopDownSolver(SolverConfig(workers=4)).solve(SuppressionProblem.from_table(table, graph=graph))
    assert pools
    threaded = len(pools)
    sequential = TopDownSolver(SolverConfig(workers=1)).solve(SuppressionProblem.from_table(table, graph=graph))
    assert len(pools) == threaded

    assert parallel.suppressed == sequential.suppressed
    suppressed = set(parallel.suppressed)
    assert {table.names_of(k) for k in parallel.primary} == {("Mayo", "Grant"), ("Galway City", "N")}
    assert graph.violations(suppressed) == []
    assert graph.under_protected(table.protection_levels, suppressed, table.aggregate) == {}
    for key in parallel.primary:
        assert not is_determined(table, graph, suppressed, key)
