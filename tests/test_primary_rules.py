"""
Test primary suppression rules and the evaluator.
"""

import pytest

from core.config import RuleConfig
from core.suppression import (
    PrimarySuppressionEvaluator,
    dominance_rule,
    frequency_rule,
    p_percent_rule,
    pq_rule,
)
from schema.builder import TableBuilder
from schema.table import CellStatus


def test_frequency_rule():
    assert frequency_rule(2, 50.0, max_n=2, protection_pct=10.0) == (True, 5.0)
    assert frequency_rule(3, 50.0, max_n=2, protection_pct=10.0) == (False, 0.0)
    unsafe, margin = frequency_rule(1, -40.0, max_n=2, protection_pct=10.0)
    assert unsafe and margin == pytest.approx(4.0)


def test_dominance_rule():
    unsafe, margin = dominance_rule([80.0, 10.0, 10.0], 100.0, n=1, k=75.0)
    assert unsafe
    assert margin == pytest.approx(100.0 / 75.0 * 80.0 - 100.0)

    assert dominance_rule([50.0, 30.0, 20.0], 100.0, n=1, k=75.0) == (False, 0.0)
    # Two contributors together dominate
    assert dominance_rule([50.0, 30.0, 20.0], 100.0, n=2, k=75.0)[0]


def test_p_percent_rule():
    unsafe, margin = p_percent_rule([100.0, 50.0, 5.0], 155.0, p=10.0)
    assert unsafe
    assert margin == pytest.approx(5.0)

    assert p_percent_rule([100.0, 50.0, 30.0], 180.0, p=10.0) == (False, 0.0)


def test_p_percent_missing_contributions_count_as_zero():
    # A single contributor: remainder 0 < 10% of x1
    unsafe, margin = p_percent_rule([100.0], 100.0, p=10.0)
    assert unsafe
    assert margin == pytest.approx(10.0)

    # No contributors at all: 0 < 0 is false
    assert p_percent_rule([], 0.0, p=10.0) == (False, 0.0)


def test_pq_rule():
    unsafe, margin = pq_rule([100.0, 50.0, 5.0], 155.0, p=10.0, q=50.0)
    assert unsafe
    assert margin == pytest.approx(10.0 / 50.0 * 100.0 - 5.0)

    # Remainder large enough even after discounting by q
    assert pq_rule([100.0, 50.0, 40.0], 190.0, p=10.0, q=50.0) == (False, 0.0)


def test_frequency_evaluation(connaught_table):
    evaluator = PrimarySuppressionEvaluator(RuleConfig(rule="frequency", max_n=2))
    table = evaluator.apply(connaught_table)

    unsafe = [table.names_of(k) for k in table.unsafe_keys()]
    assert unsafe == [("Leitrim", "Y")]
    key = table.key_of(("Leitrim", "Y"))
    assert table.status(key) is CellStatus.PRIMARY
    assert table.protection(key) == pytest.approx(2.5)

    # Input table untouched
    assert connaught_table.unsafe_keys() == []
    # Contributor lists dropped after evaluation
    assert not table.has_contributions


def test_dominance_needs_contributions(county_tree, aid_tree, connaught_records):
    table = TableBuilder([county_tree, aid_tree], track_contributions=False).build(connaught_records)
    evaluator = PrimarySuppressionEvaluator(RuleConfig(rule="dominance", n=1, k=75.0))

    with pytest.raises(ValueError):
        evaluator.apply(table)


def test_dominance_evaluation(county_tree, aid_tree):
    records = [
        ("big", "Galway", "Y", 900.0),
        ("s1", "Galway", "Y", 50.0),
        ("s2", "Galway", "Y", 50.0),
        ("m1", "Mayo", "Y", 300.0),
        ("m2", "Mayo", "Y", 350.0),
        ("m3", "Mayo", "Y", 350.0),
    ]
    table = TableBuilder([county_tree, aid_tree]).build(records)
    result = PrimarySuppressionEvaluator(RuleConfig(rule="dominance", n=1, k=75.0)).apply(table)

    galway_y = table.key_of(("Galway", "Y"))
    assert result.status(galway_y) is CellStatus.PRIMARY
    assert result.protection(galway_y) == pytest.approx(100.0 / 75.0 * 900.0 - 1000.0)
    assert result.status(table.key_of(("Mayo", "Y"))) is CellStatus.SAFE


def test_empty_cells(county_tree, aid_tree):
    records = [("a", "Galway", "Y", 1.0), ("b", "Galway", "Y", 1.0), ("c", "Galway", "Y", 1.0)]
    table = TableBuilder([county_tree, aid_tree]).build(records)

    safe = PrimarySuppressionEvaluator(RuleConfig(rule="frequency", max_n=2)).apply(table)
    assert safe.unsafe_keys() == []

    strict = PrimarySuppressionEvaluator(
        RuleConfig(rule="frequency", max_n=2, empty_cells_unsafe=True)
    ).apply(table)
    assert table.key_of(("Mayo", "N")) in strict.unsafe_keys()
    assert table.key_of(("Galway", "Y")) not in strict.unsafe_keys()


def test_parallel_evaluation_matches_sequential(connaught_table):
    config = RuleConfig(rule="p-percent", p=25.0)
    sequential = PrimarySuppressionEvaluator(config).apply(connaught_table)
    parallel = PrimarySuppressionEvaluator(config, workers=4).apply(connaught_table)

    assert sequential.unsafe_keys() == parallel.unsafe_keys()
    assert sequential.protection_levels == parallel.protection_levels


def test_invalid_rule_configuration():
    with pytest.raises(ValueError):
        PrimarySuppressionEvaluator(RuleConfig(rule="threshold"))

    with pytest.raises(ValueError):
        PrimarySuppressionEvaluator(RuleConfig(rule="pq", p=20.0, q=10.0))

    with pytest.raises(ValueError):
        PrimarySuppressionEvaluator(RuleConfig(rule="frequency"), workers=0)


def test_suppression_stats(connaught_table):
    evaluator = PrimarySuppressionEvaluator(RuleConfig(rule="frequency", max_n=2))
    stats = evaluator.get_suppression_stats(evaluator.apply(connaught_table))

    assert stats["unsafe_count"] == 1
    assert stats["total_count"] == 18
    assert stats["unsafe_value"] == 25.0
