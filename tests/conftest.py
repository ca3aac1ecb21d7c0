"""Shared fixtures: small Connaught tables and a linear-elimination oracle."""

import numpy as np
import pytest

from schema.builder import TableBuilder
from schema.hierarchy import HierarchyTree
from schema.table import MicrodataRecord


COUNTIES = ["Galway", "Mayo", "Roscommon", "Sligo", "Leitrim"]

# (county, aid) -> contributions; Leitrim x Y has a single contributor
CONNAUGHT_DATA = {
    ("Galway", "Y"): [100, 120, 90],
    ("Galway", "N"): [200, 210, 190, 205],
    ("Mayo", "Y"): [80, 70, 60],
    ("Mayo", "N"): [150, 140, 160],
    ("Roscommon", "Y"): [50, 55, 45],
    ("Roscommon", "N"): [90, 95, 100],
    ("Sligo", "Y"): [40, 42, 38],
    ("Sligo", "N"): [60, 65, 70],
    ("Leitrim", "Y"): [25],
    ("Leitrim", "N"): [30, 35, 25],
}

# Galway split into City and County under a "Galway Total" subtotal
GALWAY_DATA = {
    ("Galway City", "Y"): [60, 40],
    ("Galway City", "N"): [110, 95, 120],
    ("Galway County", "Y"): [90, 85, 70],
    ("Galway County", "N"): [130, 140, 125],
    ("Mayo", "Y"): [80, 70, 60],
    ("Mayo", "N"): [150, 140, 160],
    ("Leitrim", "Y"): [30, 35, 45],
    ("Leitrim", "N"): [30, 35, 25],
}

# Connaught x {Y, N, Unknown}: Leitrim has one aided company and no unaided ones
SPARSE_DATA = {
    (county, aid): [40, 55, 70]
    for county in ["Galway", "Mayo", "Sligo", "Leitrim"]
    for aid in ["Y", "N", "Unknown"]
}
SPARSE_DATA[("Leitrim", "Y")] = [25]
del SPARSE_DATA[("Leitrim", "N")]


def make_records(data):
    records = []
    for (county, aid), values in data.items():
        for i, value in enumerate(values):
            records.append(MicrodataRecord(f"{county}-{aid}-{i}", (county, aid), float(value)))
    return records


@pytest.fixture
def county_tree():
    return HierarchyTree.create_root("Connaught", COUNTIES, name="County")


@pytest.fixture
def aid_tree():
    return HierarchyTree.create_root("All companies", ["Y", "N"], name="Aid")


@pytest.fixture
def galway_tree():
    tree = HierarchyTree.create_root("Connaught", ["Galway Total", "Mayo", "Leitrim"], name="County")
    tree.attach_children("Galway Total", ["Galway City", "Galway County"])
    return tree


@pytest.fixture
def connaught_records():
    return make_records(CONNAUGHT_DATA)


@pytest.fixture
def galway_records():
    return make_records(GALWAY_DATA)


@pytest.fixture
def connaught_table(county_tree, aid_tree, connaught_records):
    return TableBuilder([county_tree, aid_tree]).build(connaught_records)


@pytest.fixture
def is_determined():
    """
    Exhaustive linear elimination: is a suppressed cell's value implied by the
    published cells and the roll-up equalities?

    The cell is determined exactly when its unit vector lies in the row space
    of the equalities restricted to the suppressed cells.
    """
    def check(table, graph, suppressed, key):
        columns = sorted(suppressed, key=table.order_key)
        index = {k: i for i, k in enumerate(columns)}
        rows = []
        for constraint in graph:
            row = np.zeros(len(columns))
            for cell in constraint.cells:
                if cell in index:
                    row[index[cell]] += constraint.coefficient(cell)
            if row.any():
                rows.append(row)
        if not rows:
            return False
        A = np.array(rows)
        target = np.zeros(len(columns))
        target[index[key]] = 1.0
        return np.linalg.matrix_rank(np.vstack([A, target])) == np.linalg.matrix_rank(A)

    return check


@pytest.fixture
def sparse_hierarchies():
    county = HierarchyTree.create_root("Connaught", ["Galway", "Mayo", "Sligo", "Leitrim"], name="County")
    aid = HierarchyTree.create_root("All companies", ["Y", "N", "Unknown"], name="Aid")
    return [county, aid]


@pytest.fixture
def sparse_records():
    return make_records(SPARSE_DATA)


@pytest.fixture
def sparse_table(sparse_hierarchies, sparse_records):
    return TableBuilder(sparse_hierarchies).build(sparse_records)
